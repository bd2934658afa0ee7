"""
Модуль контекста ценообразования (Pricing Context).

Отвечает за расчет стоимости проживания, включая:
- Базовые ставки и сезонные корректировки
- Правила динамического ценообразования
- Промоакции, налоги и сборы
- Кеширование результатов расчета
"""

from . import application, configuration, domain, infrastructure, interfaces, rules

__all__ = [
    "domain",
    "rules",
    "application",
    "configuration",
    "infrastructure",
    "interfaces",
]
