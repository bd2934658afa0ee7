"""
Инфраструктурный слой контекста бронирования.

Содержит реализации репозиториев и внешних сервисов
(платежный шлюз, уведомления), пригодные для тестов и локального запуска.
"""

import asyncio
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import uuid4

from shared_kernel import ConcurrencyException, ConflictError, EntityId
from shared_kernel.infrastructure import StdLogger
from shared_kernel.interfaces import ILogger

from . import interfaces as ports
from .domain import Booking, BookingStatus, CancellationPolicy
from .interfaces import NotificationResult, PaymentResult


class InMemoryBookingRepository(ports.IBookingRepository):
    """Реализация репозитория бронирований в памяти с условной записью."""

    def __init__(self) -> None:
        self._bookings: Dict[EntityId, Booking] = {}
        self._lock = asyncio.Lock()

    async def add(self, booking: Booking) -> None:
        async with self._lock:
            if booking.id in self._bookings:
                raise ConflictError(f"Booking with id {booking.id} already exists")
            self._bookings[booking.id] = booking.model_copy(deep=True)

    async def get_by_id(self, booking_id: EntityId) -> Optional[Booking]:
        booking = self._bookings.get(booking_id)
        return booking.model_copy(deep=True) if booking else None

    async def get_by_confirmation_number(self, number: str) -> Optional[Booking]:
        for booking in self._bookings.values():
            if booking.confirmation_number == number.upper():
                return booking.model_copy(deep=True)
        return None

    async def update(self, booking: Booking, expected_status: BookingStatus) -> None:
        async with self._lock:
            stored = self._bookings.get(booking.id)
            if stored is None:
                raise ConcurrencyException(f"Booking {booking.id} no longer exists")
            if stored.status != expected_status or stored.version != booking.version:
                raise ConcurrencyException(
                    f"Booking {booking.confirmation_number} was changed concurrently: "
                    f"expected {expected_status.value} v{booking.version}, "
                    f"found {stored.status.value} v{stored.version}"
                )
            booking.version += 1
            self._bookings[booking.id] = booking.model_copy(deep=True)

    async def find_by_guest(self, guest_id: EntityId) -> List[Booking]:
        bookings = [
            booking.model_copy(deep=True)
            for booking in self._bookings.values()
            if booking.guest_id == guest_id
        ]
        return sorted(bookings, key=lambda booking: booking.booked_at, reverse=True)

    async def find_by_status(self, status: BookingStatus) -> List[Booking]:
        return [
            booking.model_copy(deep=True)
            for booking in self._bookings.values()
            if booking.status == status
        ]


class InMemoryCancellationPolicyRepository(ports.ICancellationPolicyRepository):
    """Политики отмены в памяти, по одной на объект размещения."""

    def __init__(self) -> None:
        self._policies: Dict[EntityId, CancellationPolicy] = {}

    async def get_for_property(self, property_id: EntityId) -> Optional[CancellationPolicy]:
        return self._policies.get(property_id)

    async def save(self, policy: CancellationPolicy) -> None:
        if policy.property_id is None:
            raise ValueError("Cancellation policy must reference a property")
        self._policies[policy.property_id] = policy


class BookingUnitOfWork(ports.IBookingUnitOfWork):
    """Единица работы для контекста бронирования."""

    def __init__(
        self,
        bookings_repo: Optional[ports.IBookingRepository] = None,
        policies_repo: Optional[ports.ICancellationPolicyRepository] = None,
        logger: Optional[ILogger] = None,
    ):
        self._bookings = bookings_repo or InMemoryBookingRepository()
        self._policies = policies_repo or InMemoryCancellationPolicyRepository()
        self._logger = logger or StdLogger("hotel.booking.uow")
        self._committed = True

    @property
    def bookings(self) -> ports.IBookingRepository:
        return self._bookings

    @property
    def cancellation_policies(self) -> ports.ICancellationPolicyRepository:
        return self._policies

    async def commit(self) -> None:
        """Фиксирует все изменения."""
        self._committed = True
        self._logger.debug("BookingUnitOfWork committed")

    async def rollback(self) -> None:
        """Откатывает все изменения."""
        if not self._committed:
            self._logger.warning("BookingUnitOfWork rolled back")
        self._committed = True

    async def __aenter__(self) -> "BookingUnitOfWork":
        self._committed = False
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if exc_type is None:
            await self.commit()
        else:
            await self.rollback()


class DummyPaymentGateway(ports.IPaymentGateway):
    """
    Заглушка платежного шлюза для тестирования.

    Повторный вызов с тем же ключом идемпотентности возвращает
    сохраненный ответ, не создавая новую операцию.
    """

    def __init__(self, fail_authorizations: bool = False, fail_refunds: bool = False):
        self.fail_authorizations = fail_authorizations
        self.fail_refunds = fail_refunds
        self.processed: Dict[str, PaymentResult] = {}
        self.operations: List[Dict[str, Any]] = []

    def _remember(self, key: str, operation: str, result: PaymentResult) -> PaymentResult:
        self.processed[key] = result
        self.operations.append({"operation": operation, "key": key, "result": result})
        return result

    async def authorize(
        self, amount: Decimal, currency: str, idempotency_key: str
    ) -> PaymentResult:
        """Авторизует сумму на карте гостя."""
        if idempotency_key in self.processed:
            return self.processed[idempotency_key]
        if self.fail_authorizations:
            result = PaymentResult(
                success=False,
                status="declined",
                amount=amount,
                currency=currency,
                message="Card declined",
            )
        else:
            result = PaymentResult(
                success=True,
                status="authorized",
                transaction_id=f"TXN-{uuid4().hex[:8].upper()}",
                amount=amount,
                currency=currency,
            )
        return self._remember(idempotency_key, "authorize", result)

    async def capture(
        self, transaction_id: str, amount: Decimal, idempotency_key: str
    ) -> PaymentResult:
        if idempotency_key in self.processed:
            return self.processed[idempotency_key]
        result = PaymentResult(
            success=True, status="captured", transaction_id=transaction_id, amount=amount
        )
        return self._remember(idempotency_key, "capture", result)

    async def void(self, transaction_id: str, idempotency_key: str) -> PaymentResult:
        if idempotency_key in self.processed:
            return self.processed[idempotency_key]
        result = PaymentResult(success=True, status="voided", transaction_id=transaction_id)
        return self._remember(idempotency_key, "void", result)

    async def refund(
        self,
        transaction_id: str,
        amount: Decimal,
        reason: Optional[str],
        idempotency_key: str,
    ) -> PaymentResult:
        """Возвращает средства по проведенному платежу."""
        if idempotency_key in self.processed:
            return self.processed[idempotency_key]
        if self.fail_refunds:
            result = PaymentResult(
                success=False,
                status="failed",
                transaction_id=transaction_id,
                amount=amount,
                message="Refund rejected by processor",
            )
        else:
            result = PaymentResult(
                success=True,
                status="refunded",
                transaction_id=f"RFND-{uuid4().hex[:8].upper()}",
                amount=amount,
                message=reason,
            )
        return self._remember(idempotency_key, "refund", result)


class LoggingNotificationService(ports.INotificationService):
    """Сервис уведомлений, который только пишет в лог."""

    def __init__(self, logger: Optional[ILogger] = None):
        self._logger = logger or StdLogger("hotel.notifications")
        self.sent: List[Dict[str, Any]] = []

    async def _send(self, kind: str, data: Dict[str, Any]) -> NotificationResult:
        self.sent.append({"kind": kind, **data})
        self._logger.info(f"Notification sent: {kind}", **data)
        return NotificationResult(id=uuid4().hex, status="sent", channels=["email"])

    async def send_booking_confirmation(self, data: Dict[str, Any]) -> NotificationResult:
        return await self._send("booking_confirmation", data)

    async def send_booking_update(self, data: Dict[str, Any]) -> NotificationResult:
        return await self._send("booking_update", data)

    async def send_booking_reminder(self, data: Dict[str, Any]) -> NotificationResult:
        return await self._send("booking_reminder", data)
