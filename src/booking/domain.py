"""
Доменная модель контекста бронирования.

Агрегат бронирования с машиной состояний, калькуляторы возврата
и депозита, правила изменения бронирования.
"""

import secrets
import string
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from pydantic import BaseModel, Field, PrivateAttr
from shared_kernel import (
    ConflictError,
    DateRange,
    DomainEvent,
    EntityId,
    RoomType,
    ValidationError,
    generate_id,
    now,
    round_money,
)

HUNDRED = Decimal("100")


# ===================================================================
# Статусы и переходы
# ===================================================================


class BookingStatus(str, Enum):
    """Статусы бронирования."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    CHECKED_IN = "checked_in"
    CHECKED_OUT = "checked_out"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"
    MODIFIED = "modified"
    EXPIRED = "expired"


ALLOWED_TRANSITIONS: Dict[BookingStatus, FrozenSet[BookingStatus]] = {
    BookingStatus.PENDING: frozenset(
        {BookingStatus.CONFIRMED, BookingStatus.CANCELLED, BookingStatus.EXPIRED}
    ),
    BookingStatus.CONFIRMED: frozenset(
        {
            BookingStatus.CHECKED_IN,
            BookingStatus.CANCELLED,
            BookingStatus.MODIFIED,
            BookingStatus.NO_SHOW,
        }
    ),
    BookingStatus.CHECKED_IN: frozenset({BookingStatus.CHECKED_OUT}),
    BookingStatus.MODIFIED: frozenset({BookingStatus.CONFIRMED, BookingStatus.CANCELLED}),
    BookingStatus.CHECKED_OUT: frozenset(),
    BookingStatus.CANCELLED: frozenset(),
    BookingStatus.NO_SHOW: frozenset(),
    BookingStatus.EXPIRED: frozenset(),
}

TERMINAL_STATUSES = frozenset(
    status for status, targets in ALLOWED_TRANSITIONS.items() if not targets
)

CANCELLABLE_STATUSES = frozenset(
    {BookingStatus.PENDING, BookingStatus.CONFIRMED, BookingStatus.MODIFIED}
)

MODIFIABLE_STATUSES = frozenset(
    {BookingStatus.PENDING, BookingStatus.CONFIRMED, BookingStatus.MODIFIED}
)


def can_transition(current: BookingStatus, target: BookingStatus) -> bool:
    """Разрешен ли переход между статусами."""
    return target in ALLOWED_TRANSITIONS[current]


class PaymentStatus(str, Enum):
    """Статусы оплаты бронирования."""

    PENDING = "pending"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    FAILED = "failed"
    VOIDED = "voided"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class BookingSource(str, Enum):
    """Каналы поступления бронирований."""

    DIRECT = "direct"
    WEBSITE = "website"
    MOBILE_APP = "mobile_app"
    PHONE = "phone"
    OTA = "ota"
    TRAVEL_AGENT = "travel_agent"
    CORPORATE = "corporate"
    WALK_IN = "walk_in"


# ===================================================================
# Составные части бронирования
# ===================================================================


class BookedRoom(BaseModel):
    """Забронированные номера одного типа."""

    id: EntityId = Field(default_factory=generate_id)
    room_type_id: EntityId
    quantity: int
    guest_count: int
    nightly_rates: List[Decimal]
    rate_per_night: Decimal
    subtotal: Decimal
    discount_amount: Decimal = Decimal("0")
    tax_amount: Decimal = Decimal("0")
    fee_amount: Decimal = Decimal("0")
    total_price: Decimal


class AppliedDiscount(BaseModel):
    """Промоакция, учтенная в цене бронирования."""

    promotion_id: EntityId
    code: Optional[str] = None
    discount_amount: Decimal


class BookingPricing(BaseModel):
    """Снимок стоимости бронирования."""

    base_amount: Decimal
    discount_amount: Decimal
    tax_amount: Decimal
    fee_amount: Decimal
    total_amount: Decimal
    currency: str
    applied_promotions: List[AppliedDiscount] = Field(default_factory=list)
    quoted_at: datetime
    valid_until: datetime
    frozen_at: Optional[datetime] = None


class PaymentAuthorization(BaseModel):
    """Удержание средств на карте гостя по одной транзакции шлюза."""

    transaction_id: str
    amount: Decimal
    refunded_amount: Decimal = Decimal("0")
    purpose: str = "confirmation"
    created_at: datetime = Field(default_factory=now)

    @property
    def refundable(self) -> Decimal:
        return self.amount - self.refunded_amount


class BookingHistoryEntry(BaseModel):
    """Запись журнала изменений бронирования."""

    id: EntityId = Field(default_factory=generate_id)
    action: str
    from_status: Optional[BookingStatus] = None
    to_status: Optional[BookingStatus] = None
    changed_by: str
    reason: Optional[str] = None
    changes: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=now)


# ===================================================================
# Доменные события
# ===================================================================


class BookingCreated(DomainEvent):
    """Событие создания бронирования."""

    event_type: str = "booking_created"
    booking_id: EntityId
    confirmation_number: str
    guest_id: EntityId
    property_id: EntityId
    check_in: date
    check_out: date
    total_amount: Decimal
    currency: str


class BookingConfirmed(DomainEvent):
    """Событие подтверждения бронирования."""

    event_type: str = "booking_confirmed"
    booking_id: EntityId
    confirmation_number: str
    guest_id: EntityId
    property_id: EntityId
    check_in: date
    check_out: date
    total_amount: Decimal
    currency: str
    transaction_id: Optional[str] = None


class BookingStatusChanged(DomainEvent):
    """Событие смены статуса бронирования."""

    event_type: str = "booking_status_changed"
    booking_id: EntityId
    from_status: BookingStatus
    to_status: BookingStatus
    changed_by: str


class BookingModified(DomainEvent):
    """Событие изменения бронирования."""

    event_type: str = "booking_modified"
    booking_id: EntityId
    confirmation_number: str
    guest_id: EntityId
    changes: Dict[str, Any]
    difference: Decimal


class BookingCancelled(DomainEvent):
    """Событие отмены бронирования."""

    event_type: str = "booking_cancelled"
    booking_id: EntityId
    confirmation_number: str
    guest_id: EntityId
    reason: Optional[str] = None
    refund_amount: Decimal
    cancellation_fee: Decimal


# ===================================================================
# Агрегат бронирования
# ===================================================================

_BASE36 = string.digits + string.ascii_uppercase


def _to_base36(value: int) -> str:
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits)) or "0"


def generate_confirmation_number(moment: Optional[datetime] = None) -> str:
    """Номер подтверждения: BK + время в base36 + случайный суффикс."""
    moment = moment or now()
    suffix = "".join(secrets.choice(_BASE36) for _ in range(4))
    return f"BK{_to_base36(int(moment.timestamp() * 1000))}{suffix}"


class Booking(BaseModel):
    """Бронирование (корень агрегата)."""

    id: EntityId = Field(default_factory=generate_id)
    confirmation_number: str
    property_id: EntityId
    guest_id: EntityId
    check_in: date
    check_out: date
    rooms: List[BookedRoom]
    pricing: BookingPricing
    status: BookingStatus = BookingStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_transaction_id: Optional[str] = None
    payment_authorizations: List[PaymentAuthorization] = Field(default_factory=list)
    booking_source: BookingSource = BookingSource.DIRECT
    special_requests: Optional[str] = None
    promotion_codes: List[str] = Field(default_factory=list)
    corporate_code: Optional[str] = None
    loyalty_member_id: Optional[str] = None
    booked_at: datetime = Field(default_factory=now)
    confirmed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    refund_amount: Optional[Decimal] = None
    cancellation_fee: Optional[Decimal] = None
    original_check_in: Optional[date] = None
    original_check_out: Optional[date] = None
    modification_count: int = 0
    history: List[BookingHistoryEntry] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=now)
    version: int = 0

    _domain_events: List[DomainEvent] = PrivateAttr(default_factory=list)

    @property
    def nights(self) -> int:
        return (self.check_out - self.check_in).days

    @property
    def stay(self) -> DateRange:
        return DateRange(check_in=self.check_in, check_out=self.check_out)

    @property
    def total_amount(self) -> Decimal:
        return self.pricing.total_amount

    @property
    def currency(self) -> str:
        return self.pricing.currency

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def domain_events(self) -> List[DomainEvent]:
        """Возвращает список доменных событий."""
        return self._domain_events

    def pull_domain_events(self) -> List[DomainEvent]:
        """Возвращает накопленные события и очищает список."""
        events, self._domain_events = self._domain_events, []
        return events

    def _record(
        self,
        action: str,
        changed_by: str,
        from_status: Optional[BookingStatus] = None,
        to_status: Optional[BookingStatus] = None,
        reason: Optional[str] = None,
        changes: Optional[Dict[str, Any]] = None,
        at: Optional[datetime] = None,
    ) -> None:
        at = at or now()
        self.history.append(
            BookingHistoryEntry(
                action=action,
                from_status=from_status,
                to_status=to_status,
                changed_by=changed_by,
                reason=reason,
                changes=changes or {},
                created_at=at,
            )
        )
        self.updated_at = at

    @classmethod
    def create(
        cls,
        property_id: EntityId,
        guest_id: EntityId,
        stay: DateRange,
        rooms: List[BookedRoom],
        pricing: BookingPricing,
        booking_source: BookingSource = BookingSource.DIRECT,
        special_requests: Optional[str] = None,
        promotion_codes: Optional[List[str]] = None,
        corporate_code: Optional[str] = None,
        loyalty_member_id: Optional[str] = None,
        created_by: str = "guest",
        at: Optional[datetime] = None,
    ) -> "Booking":
        """Создает новое бронирование в статусе PENDING."""
        at = at or now()
        booking = cls(
            confirmation_number=generate_confirmation_number(at),
            property_id=property_id,
            guest_id=guest_id,
            check_in=stay.check_in,
            check_out=stay.check_out,
            rooms=rooms,
            pricing=pricing,
            booking_source=booking_source,
            special_requests=special_requests,
            promotion_codes=promotion_codes or [],
            corporate_code=corporate_code,
            loyalty_member_id=loyalty_member_id,
            booked_at=at,
            updated_at=at,
        )
        booking._record(
            "created",
            created_by,
            to_status=BookingStatus.PENDING,
            changes={"total_amount": str(pricing.total_amount)},
            at=at,
        )
        booking._domain_events.append(
            BookingCreated(
                booking_id=booking.id,
                confirmation_number=booking.confirmation_number,
                guest_id=guest_id,
                property_id=property_id,
                check_in=stay.check_in,
                check_out=stay.check_out,
                total_amount=pricing.total_amount,
                currency=pricing.currency,
            )
        )
        return booking

    def transition_to(
        self,
        new_status: BookingStatus,
        changed_by: str,
        reason: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> None:
        """Переводит бронирование в новый статус по таблице переходов."""
        if not can_transition(self.status, new_status):
            raise ConflictError(
                f"Cannot transition booking from {self.status.value} to {new_status.value}"
            )
        at = at or now()
        previous = self.status
        self.status = new_status
        if new_status == BookingStatus.CONFIRMED and self.confirmed_at is None:
            self.confirmed_at = at
        self._record(
            "status_changed",
            changed_by,
            from_status=previous,
            to_status=new_status,
            reason=reason,
            at=at,
        )
        self._domain_events.append(
            BookingStatusChanged(
                booking_id=self.id,
                from_status=previous,
                to_status=new_status,
                changed_by=changed_by,
            )
        )

    def confirm(
        self, transaction_id: Optional[str], changed_by: str = "system", at: Optional[datetime] = None
    ) -> None:
        """Подтверждает бронирование после авторизации платежа."""
        if self.status != BookingStatus.PENDING:
            raise ConflictError(
                f"Booking {self.confirmation_number} cannot be confirmed "
                f"in status {self.status.value}"
            )
        at = at or now()
        self.status = BookingStatus.CONFIRMED
        self.payment_status = PaymentStatus.AUTHORIZED
        self.payment_transaction_id = transaction_id
        if transaction_id:
            self.payment_authorizations.append(
                PaymentAuthorization(
                    transaction_id=transaction_id, amount=self.total_amount, created_at=at
                )
            )
        self.confirmed_at = at
        self.pricing = self.pricing.model_copy(update={"frozen_at": at})
        self._record(
            "confirmed",
            changed_by,
            from_status=BookingStatus.PENDING,
            to_status=BookingStatus.CONFIRMED,
            changes={"transaction_id": transaction_id},
            at=at,
        )
        self._domain_events.append(
            BookingConfirmed(
                booking_id=self.id,
                confirmation_number=self.confirmation_number,
                guest_id=self.guest_id,
                property_id=self.property_id,
                check_in=self.check_in,
                check_out=self.check_out,
                total_amount=self.total_amount,
                currency=self.currency,
                transaction_id=transaction_id,
            )
        )

    def mark_payment_failed(self, reason: str, at: Optional[datetime] = None) -> None:
        """Фиксирует отказ в авторизации; статус бронирования не меняется."""
        self.payment_status = PaymentStatus.FAILED
        self._record("payment_failed", "system", reason=reason, at=at)

    def update_payment(
        self,
        payment_status: PaymentStatus,
        note: str,
        at: Optional[datetime] = None,
    ) -> None:
        previous = self.payment_status
        self.payment_status = payment_status
        self._record(
            "payment_updated",
            "system",
            reason=note,
            changes={"from": previous.value, "to": payment_status.value},
            at=at,
        )

    def register_refund(self, transaction_id: str, amount: Decimal) -> None:
        """Учитывает возврат по одной из авторизаций."""
        for authorization in self.payment_authorizations:
            if authorization.transaction_id == transaction_id:
                authorization.refunded_amount += amount
                return
        raise ValueError(f"Unknown payment transaction {transaction_id}")

    def cancel(
        self,
        refund: "RefundCalculation",
        reason: Optional[str] = None,
        changed_by: str = "guest",
        at: Optional[datetime] = None,
    ) -> None:
        """Отменяет бронирование, фиксируя сумму возврата и штраф."""
        if self.status not in CANCELLABLE_STATUSES:
            raise ConflictError(
                f"Booking {self.confirmation_number} cannot be cancelled "
                f"in status {self.status.value}"
            )
        at = at or now()
        previous = self.status
        self.status = BookingStatus.CANCELLED
        self.cancelled_at = at
        self.cancellation_reason = reason
        self.refund_amount = refund.refundable_amount
        self.cancellation_fee = refund.cancellation_fee
        self._record(
            "cancelled",
            changed_by,
            from_status=previous,
            to_status=BookingStatus.CANCELLED,
            reason=reason,
            changes={
                "refund_amount": str(refund.refundable_amount),
                "cancellation_fee": str(refund.cancellation_fee),
            },
            at=at,
        )
        self._domain_events.append(
            BookingCancelled(
                booking_id=self.id,
                confirmation_number=self.confirmation_number,
                guest_id=self.guest_id,
                reason=reason,
                refund_amount=refund.refundable_amount,
                cancellation_fee=refund.cancellation_fee,
            )
        )

    def apply_modification(
        self,
        stay: DateRange,
        rooms: List[BookedRoom],
        pricing: BookingPricing,
        changed_by: str,
        reason: Optional[str] = None,
        special_requests: Optional[str] = None,
        authorization: Optional[PaymentAuthorization] = None,
        at: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Применяет изменение: новый снимок цены, CONFIRMED переходит в MODIFIED.

        Дополнительное удержание за доплату добавляется к списку авторизаций.
        """
        if self.status not in MODIFIABLE_STATUSES:
            raise ConflictError(
                f"Booking {self.confirmation_number} cannot be modified "
                f"in status {self.status.value}"
            )
        at = at or now()
        changes: Dict[str, Any] = {}
        if stay.check_in != self.check_in or stay.check_out != self.check_out:
            changes["dates"] = {
                "from": [self.check_in.isoformat(), self.check_out.isoformat()],
                "to": [stay.check_in.isoformat(), stay.check_out.isoformat()],
            }
        if [(r.room_type_id, r.quantity, r.guest_count) for r in rooms] != [
            (r.room_type_id, r.quantity, r.guest_count) for r in self.rooms
        ]:
            changes["rooms"] = {
                "from": [str(r.room_type_id) for r in self.rooms],
                "to": [str(r.room_type_id) for r in rooms],
            }
        if special_requests is not None and special_requests != self.special_requests:
            changes["special_requests"] = special_requests
            self.special_requests = special_requests
        difference = pricing.total_amount - self.pricing.total_amount
        changes["total_amount"] = {
            "from": str(self.pricing.total_amount),
            "to": str(pricing.total_amount),
        }

        if self.original_check_in is None:
            self.original_check_in = self.check_in
            self.original_check_out = self.check_out
        previous = self.status
        if previous == BookingStatus.CONFIRMED:
            self.status = BookingStatus.MODIFIED
        self.check_in = stay.check_in
        self.check_out = stay.check_out
        self.rooms = rooms
        if previous != BookingStatus.PENDING:
            pricing = pricing.model_copy(update={"frozen_at": at})
        self.pricing = pricing
        if authorization is not None:
            self.payment_authorizations.append(authorization)
            changes["authorization"] = authorization.transaction_id
        self.modification_count += 1
        self._record(
            "modified",
            changed_by,
            from_status=previous,
            to_status=self.status,
            reason=reason,
            changes=changes,
            at=at,
        )
        self._domain_events.append(
            BookingModified(
                booking_id=self.id,
                confirmation_number=self.confirmation_number,
                guest_id=self.guest_id,
                changes=changes,
                difference=difference,
            )
        )
        return changes


# ===================================================================
# Политики бронирования
# ===================================================================


class BookingPolicy:
    """Политики и бизнес-правила для бронирований."""

    @staticmethod
    def validate_stay(
        check_in: date, check_out: date, today: date, max_advance_days: int
    ) -> DateRange:
        """Проверяет даты проживания относительно текущей даты."""
        stay = DateRange.create(check_in, check_out)
        if check_in < today:
            raise ValidationError("Check-in date cannot be in the past", field="check_in")
        if check_in > today + timedelta(days=max_advance_days):
            raise ValidationError(
                f"Check-in date cannot be more than {max_advance_days} days in advance",
                field="check_in",
            )
        return stay

    @staticmethod
    def validate_room(
        room_type: RoomType,
        property_id: EntityId,
        quantity: int,
        guest_count: int,
        field: str = "rooms",
    ) -> None:
        """Проверяет тип номера и размещение гостей."""
        if room_type.property_id != property_id:
            raise ValidationError(
                f"Room type {room_type.name} does not belong to the property",
                field=f"{field}.room_type_id",
            )
        if not room_type.is_active:
            raise ValidationError(
                f"Room type {room_type.name} is not available", field=f"{field}.room_type_id"
            )
        if quantity < 1:
            raise ValidationError("Room quantity must be at least 1", field=f"{field}.quantity")
        if guest_count < 1:
            raise ValidationError(
                "Guest count must be at least 1", field=f"{field}.guest_count"
            )
        if guest_count > room_type.max_occupancy:
            raise ValidationError(
                f"Guest count {guest_count} exceeds maximum occupancy "
                f"{room_type.max_occupancy} for {room_type.name}",
                field=f"{field}.guest_count",
            )


# ===================================================================
# Отмена и возврат средств
# ===================================================================


class PenaltyType(str, Enum):
    """Единица, в которой выражен штраф за отмену."""

    PERCENTAGE = "percentage"
    FIXED_AMOUNT = "fixed_amount"
    NIGHTS = "nights"
    NO_PENALTY = "no_penalty"


class CancellationPolicy(BaseModel):
    """Политика отмены объекта размещения."""

    id: EntityId = Field(default_factory=generate_id)
    property_id: Optional[EntityId] = None
    name: str = "Standard"
    refund_percentage: Decimal = Field(Decimal("100"), ge=0, le=100)
    hours_before_check_in: int = Field(24, ge=0)
    penalty_type: PenaltyType = PenaltyType.PERCENTAGE
    penalty_value: Decimal = Field(Decimal("0"), ge=0)


class RefundCalculation(BaseModel):
    """Результат расчета возврата при отмене."""

    original_amount: Decimal
    refundable_amount: Decimal
    cancellation_fee: Decimal
    refund_percentage: Decimal
    hours_until_check_in: float
    within_penalty_window: bool
    policy_applied: CancellationPolicy


class CancellationRefundCalculator:
    """Рассчитывает возврат и штраф по политике отмены и времени до заезда."""

    @staticmethod
    def hours_until_check_in(booking: Booking, at: datetime) -> float:
        check_in_at = datetime.combine(booking.check_in, time.min, tzinfo=at.tzinfo)
        return max((check_in_at - at).total_seconds() / 3600, 0.0)

    def calculate_refund(
        self, booking: Booking, policy: CancellationPolicy, at: Optional[datetime] = None
    ) -> RefundCalculation:
        at = at or now()
        currency = booking.currency
        original = booking.total_amount
        hours = self.hours_until_check_in(booking, at)
        refundable = original * policy.refund_percentage / HUNDRED
        within_window = hours < policy.hours_before_check_in

        if not within_window:
            fee = Decimal("0")
        elif policy.penalty_type == PenaltyType.PERCENTAGE:
            fee = original * policy.penalty_value / HUNDRED
        elif policy.penalty_type == PenaltyType.FIXED_AMOUNT:
            fee = policy.penalty_value
        elif policy.penalty_type == PenaltyType.NIGHTS:
            fee = original / max(booking.nights, 1) * policy.penalty_value
        else:
            fee = Decimal("0")

        return RefundCalculation(
            original_amount=original,
            refundable_amount=round_money(_clamp(refundable, original), currency),
            cancellation_fee=round_money(_clamp(fee, original), currency),
            refund_percentage=policy.refund_percentage,
            hours_until_check_in=round(hours, 2),
            within_penalty_window=within_window,
            policy_applied=policy,
        )


def _clamp(amount: Decimal, upper: Decimal) -> Decimal:
    return min(max(amount, Decimal("0")), upper)


# ===================================================================
# Депозиты
# ===================================================================


class DepositType(str, Enum):
    """Способы расчета депозита."""

    FIXED_AMOUNT = "fixed_amount"
    PERCENTAGE = "percentage"
    FIRST_NIGHT = "first_night"
    FULL_AMOUNT = "full_amount"
    NO_DEPOSIT = "no_deposit"


class DepositCalculation(BaseModel):
    """Рассчитанный депозит."""

    deposit_type: DepositType
    amount: Decimal
    currency: str
    due_date: Optional[date] = None
    is_required: bool


class DepositCalculator:
    """Рассчитывает депозит с ограничением минимальной и максимальной суммой."""

    def __init__(
        self,
        minimum_amount: Decimal = Decimal("50"),
        maximum_amount: Decimal = Decimal("10000"),
        default_percentage: Decimal = Decimal("30"),
        due_days_before_check_in: int = 7,
    ):
        self.minimum_amount = minimum_amount
        self.maximum_amount = maximum_amount
        self.default_percentage = default_percentage
        self.due_days_before_check_in = due_days_before_check_in

    def calculate(
        self,
        booking: Booking,
        deposit_type: DepositType,
        value: Optional[Decimal] = None,
    ) -> DepositCalculation:
        currency = booking.currency
        total = booking.total_amount
        if deposit_type == DepositType.NO_DEPOSIT:
            return DepositCalculation(
                deposit_type=deposit_type,
                amount=round_money(0, currency),
                currency=currency,
                is_required=False,
            )

        if deposit_type == DepositType.FIXED_AMOUNT:
            if value is None:
                raise ValidationError("Fixed deposit requires an amount", field="value")
            amount = Decimal(value)
        elif deposit_type == DepositType.PERCENTAGE:
            percentage = Decimal(value) if value is not None else self.default_percentage
            if percentage < 0 or percentage > HUNDRED:
                raise ValidationError(
                    "Deposit percentage must be between 0 and 100", field="value"
                )
            amount = total * percentage / HUNDRED
        elif deposit_type == DepositType.FIRST_NIGHT:
            amount = total / max(booking.nights, 1)
        else:
            amount = total

        amount = max(amount, self.minimum_amount)
        amount = min(amount, self.maximum_amount, total)
        return DepositCalculation(
            deposit_type=deposit_type,
            amount=round_money(amount, currency),
            currency=currency,
            due_date=booking.check_in - timedelta(days=self.due_days_before_check_in),
            is_required=True,
        )


# ===================================================================
# Изменение бронирования
# ===================================================================


class ModificationOptions(BaseModel):
    """Что можно изменить в бронировании."""

    can_modify_dates: bool
    can_modify_rooms: bool
    can_modify_guests: bool
    can_cancel: bool
    restrictions: List[str] = Field(default_factory=list)
    cutoff_at: datetime


class ValidationIssue(BaseModel):
    """Ошибка или предупреждение проверки запроса."""

    code: str
    message: str
    field: Optional[str] = None


class FeeLine(BaseModel):
    name: str
    amount: Decimal


class PricingImpact(BaseModel):
    """Влияние изменения на стоимость."""

    original_amount: Decimal
    new_amount: Decimal
    difference: Decimal
    additional_payment: Decimal
    refund_amount: Decimal
    fees: List[FeeLine] = Field(default_factory=list)
    currency: str


class ModificationValidation(BaseModel):
    """Результат проверки изменения бронирования."""

    is_valid: bool
    errors: List[ValidationIssue] = Field(default_factory=list)
    warnings: List[ValidationIssue] = Field(default_factory=list)
    pricing_impact: Optional[PricingImpact] = None


class ModificationPolicy:
    """Правила изменения бронирования по времени до заезда."""

    def __init__(self, cutoff_hours: int = 24):
        self.cutoff_hours = cutoff_hours

    def cutoff_at(self, booking: Booking) -> datetime:
        check_in_at = datetime.combine(booking.check_in, time.min, tzinfo=booking.booked_at.tzinfo)
        return check_in_at - timedelta(hours=self.cutoff_hours)

    def options(self, booking: Booking, at: datetime) -> ModificationOptions:
        modifiable = booking.status in MODIFIABLE_STATUSES
        cutoff = self.cutoff_at(booking)
        outside_cutoff = at < cutoff
        restrictions = []
        if not modifiable:
            restrictions.append(
                f"Booking in status {booking.status.value} cannot be modified"
            )
        elif not outside_cutoff:
            restrictions.append(
                f"Dates and rooms cannot be changed within {self.cutoff_hours} hours of check-in"
            )
        return ModificationOptions(
            can_modify_dates=modifiable and outside_cutoff,
            can_modify_rooms=modifiable and outside_cutoff,
            can_modify_guests=modifiable,
            can_cancel=booking.status in CANCELLABLE_STATUSES,
            restrictions=restrictions,
            cutoff_at=cutoff,
        )

    @staticmethod
    def pricing_impact(
        original: Decimal, new: Decimal, fees: List[FeeLine], currency: str
    ) -> PricingImpact:
        fee_total = sum((fee.amount for fee in fees), Decimal("0"))
        difference = new - original
        balance = difference + fee_total
        return PricingImpact(
            original_amount=original,
            new_amount=new,
            difference=round_money(difference, currency),
            additional_payment=round_money(max(balance, Decimal("0")), currency),
            refund_amount=round_money(max(-balance, Decimal("0")), currency),
            fees=fees,
            currency=currency,
        )
