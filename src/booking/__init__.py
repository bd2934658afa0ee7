"""
Модуль контекста бронирования (Booking Context).

Отвечает за жизненный цикл бронирования:
- Создание бронирования по котировке контекста ценообразования
- Подтверждение с авторизацией оплаты
- Изменение, отмена и расчет возврата
- Расчет депозита
"""

from . import application, domain, event_handlers, infrastructure, interfaces

__all__ = [
    "domain",
    "application",
    "event_handlers",
    "infrastructure",
    "interfaces",
]
