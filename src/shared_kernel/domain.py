"""
Основные доменные типы и утилиты общего ядра.
"""

from datetime import date, datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Iterator, Mapping, Optional, Type, TypeVar, Union
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

# Общие типы идентификаторов
EntityId = UUID

Number = Union[Decimal, int, float, str]


def generate_id() -> UUID:
    """Генерирует новый UUID."""
    return uuid4()


# Количество знаков после запятой для валют, отличных от двух
_MINOR_UNITS = {
    "JPY": 0,
    "KRW": 0,
    "VND": 0,
    "CLP": 0,
    "ISK": 0,
    "BHD": 3,
    "KWD": 3,
    "OMR": 3,
    "JOD": 3,
    "TND": 3,
}


def minor_units(currency: str) -> int:
    """Возвращает количество знаков минимальной денежной единицы."""
    return _MINOR_UNITS.get(currency.upper(), 2)


def round_money(amount: Number, currency: str = "USD") -> Decimal:
    """Округляет сумму до минимальной единицы валюты."""
    exponent = Decimal(1).scaleb(-minor_units(currency))
    return Decimal(str(amount)).quantize(exponent, rounding=ROUND_HALF_UP)


class DateRange(BaseModel):
    """Диапазон дат проживания [check_in, check_out)."""

    model_config = ConfigDict(frozen=True)

    check_in: date
    check_out: date

    @classmethod
    def create(cls, check_in: date, check_out: date) -> "DateRange":
        """Создает диапазон, проверяя порядок дат."""
        if check_out <= check_in:
            raise ValidationError(
                "Check-out date must be after check-in date", field="check_out"
            )
        return cls(check_in=check_in, check_out=check_out)

    @property
    def nights(self) -> int:
        """Количество ночей в бронировании."""
        return (self.check_out - self.check_in).days

    def dates(self) -> Iterator[date]:
        """Перебирает даты ночей проживания."""
        for offset in range(self.nights):
            yield self.check_in + timedelta(days=offset)

    def contains(self, day: date) -> bool:
        return self.check_in <= day < self.check_out


class DomainEvent(BaseModel):
    """Базовый класс для всех доменных событий."""

    event_id: UUID = Field(default_factory=uuid4)
    occurred_on: datetime = Field(default_factory=lambda: now())
    event_type: str


# Каталог объектов размещения
class PropertyStatus(str, Enum):
    """Статусы объекта размещения."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    MAINTENANCE = "maintenance"


class Property(BaseModel):
    """Объект размещения (отель)."""

    id: EntityId = Field(default_factory=generate_id)
    name: str
    status: PropertyStatus = PropertyStatus.ACTIVE
    currency: str = "USD"
    timezone: str = "UTC"

    @property
    def is_active(self) -> bool:
        return self.status == PropertyStatus.ACTIVE


class RoomType(BaseModel):
    """Тип номера объекта размещения."""

    id: EntityId = Field(default_factory=generate_id)
    property_id: EntityId
    name: str
    is_active: bool = True
    max_occupancy: int = Field(2, ge=1)
    base_rate: Decimal = Field(Decimal("0"), ge=0)


# Общие исключения
class DomainException(Exception):
    """Базовое исключение для доменных ошибок."""

    pass


class ValidationError(DomainException):
    """Некорректные или выходящие за допустимые границы входные данные."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.field = field


class NotFoundError(DomainException):
    """Запрошенная сущность не найдена."""

    pass


class ConflictError(DomainException):
    """Нарушение бизнес-правила или недопустимый переход состояния."""

    pass


class ConcurrencyException(DomainException):
    """Исключение при конфликте версий."""

    pass


class PaymentError(DomainException):
    """Платежный шлюз отклонил операцию."""

    def __init__(self, message: str, transaction_id: Optional[str] = None):
        super().__init__(message)
        self.transaction_id = transaction_id


# Общие утилиты
def now() -> datetime:
    """Возвращает текущую дату и время в UTC."""
    return datetime.now(timezone.utc)


def today() -> date:
    """Возвращает текущую дату."""
    return now().date()


ModelT = TypeVar("ModelT", bound=BaseModel)


def parse_request(
    model_class: Type[ModelT], payload: Union[ModelT, Mapping[str, Any]]
) -> ModelT:
    """
    Преобразует входные данные в модель запроса.

    Ошибки валидации pydantic превращаются в ValidationError
    с именем первого некорректного поля.
    """
    if isinstance(payload, model_class):
        return payload
    try:
        return model_class.model_validate(payload)
    except PydanticValidationError as exc:
        error = exc.errors()[0]
        field = ".".join(str(part) for part in error["loc"]) or None
        raise ValidationError(f"Invalid {field}: {error['msg']}", field=field) from exc
