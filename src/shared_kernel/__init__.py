"""
Общее ядро (Shared Kernel) системы расчета цен и бронирования.

Содержит общие типы данных и утилиты, используемые в различных ограниченных контекстах.
"""

from .config import Settings, get_settings
from .domain import (
    ConcurrencyException,
    ConflictError,
    DateRange,
    DomainEvent,
    # Исключения
    DomainException,
    # Базовые типы
    EntityId,
    NotFoundError,
    PaymentError,
    Property,
    # Перечисления
    PropertyStatus,
    RoomType,
    ValidationError,
    generate_id,
    minor_units,
    # Утилиты
    now,
    parse_request,
    round_money,
    today,
)

__all__ = [
    # Базовые типы
    "EntityId",
    "generate_id",
    # Основные классы
    "DateRange",
    "DomainEvent",
    "Property",
    "RoomType",
    # Перечисления
    "PropertyStatus",
    # Исключения
    "DomainException",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "ConcurrencyException",
    "PaymentError",
    # Конфигурация
    "Settings",
    "get_settings",
    # Утилиты
    "now",
    "today",
    "round_money",
    "minor_units",
    "parse_request",
]
