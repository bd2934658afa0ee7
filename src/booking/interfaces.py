"""
Интерфейсы (порты) для контекста бронирования.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol

from pydantic import BaseModel, Field
from shared_kernel import EntityId

from .domain import Booking, BookingStatus, CancellationPolicy


class PaymentResult(BaseModel):
    """Ответ платежного шлюза."""

    success: bool
    status: str
    transaction_id: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    message: Optional[str] = None


class NotificationResult(BaseModel):
    """Ответ сервиса уведомлений."""

    id: str
    status: str
    channels: List[str] = Field(default_factory=list)


class IBookingRepository(Protocol):
    """Интерфейс репозитория для бронирований."""

    async def add(self, booking: Booking) -> None: ...
    async def get_by_id(self, booking_id: EntityId) -> Optional[Booking]: ...
    async def get_by_confirmation_number(self, number: str) -> Optional[Booking]: ...
    async def update(self, booking: Booking, expected_status: BookingStatus) -> None:
        """
        Условная запись: сохраняет бронирование, только если в хранилище
        оно все еще в статусе expected_status и той же версии.
        Иначе выбрасывает ConcurrencyException.
        """
        ...

    async def find_by_guest(self, guest_id: EntityId) -> List[Booking]: ...
    async def find_by_status(self, status: BookingStatus) -> List[Booking]: ...


class ICancellationPolicyRepository(Protocol):
    """Интерфейс хранилища политик отмены."""

    async def get_for_property(self, property_id: EntityId) -> Optional[CancellationPolicy]: ...
    async def save(self, policy: CancellationPolicy) -> None: ...


class IPaymentGateway(Protocol):
    """Интерфейс для взаимодействия с платежным шлюзом."""

    async def authorize(
        self, amount: Decimal, currency: str, idempotency_key: str
    ) -> PaymentResult: ...
    async def capture(
        self, transaction_id: str, amount: Decimal, idempotency_key: str
    ) -> PaymentResult: ...
    async def void(self, transaction_id: str, idempotency_key: str) -> PaymentResult: ...
    async def refund(
        self,
        transaction_id: str,
        amount: Decimal,
        reason: Optional[str],
        idempotency_key: str,
    ) -> PaymentResult: ...


class INotificationService(Protocol):
    """Интерфейс сервиса уведомлений гостей."""

    async def send_booking_confirmation(self, data: Dict[str, Any]) -> NotificationResult: ...
    async def send_booking_update(self, data: Dict[str, Any]) -> NotificationResult: ...
    async def send_booking_reminder(self, data: Dict[str, Any]) -> NotificationResult: ...


class IPricingEngine(Protocol):
    """
    Порт к контексту ценообразования.

    calculate_booking_price применяет промоакции один раз ко всему бронированию;
    record_promotion_usage идемпотентна по бронированию и выбрасывает
    ConflictError, когда лимит промоакции исчерпан.
    """

    async def calculate_booking_price(self, request: Any) -> Any: ...
    async def record_promotion_usage(
        self,
        promotion_id: EntityId,
        booking_id: EntityId,
        discount_amount: Decimal,
        guest_id: Optional[EntityId] = None,
    ) -> Any: ...


class IBookingUnitOfWork(Protocol):
    """Интерфейс Unit of Work для контекста Booking."""

    @property
    def bookings(self) -> IBookingRepository: ...
    @property
    def cancellation_policies(self) -> ICancellationPolicyRepository: ...

    async def __aenter__(self) -> IBookingUnitOfWork: ...
    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None: ...
    async def commit(self) -> None: ...
    async def rollback(self) -> None: ...
