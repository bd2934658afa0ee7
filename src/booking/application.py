"""
Прикладной слой контекста бронирования.

Содержит DTO, команды и прикладной сервис, управляющий жизненным циклом
бронирования: создание, подтверждение с оплатой, смена статуса,
изменение и отмена с расчетом возврата.
"""

from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, List, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, Field
from pricing.application import BookingPriceLine, BookingPriceRequest
from shared_kernel import (
    ConcurrencyException,
    ConflictError,
    DateRange,
    DomainEvent,
    EntityId,
    NotFoundError,
    PaymentError,
    Property,
    RoomType,
    ValidationError,
    get_settings,
    now,
    parse_request,
    round_money,
)
from shared_kernel.config import Settings
from shared_kernel.infrastructure import InMemoryEventBus, StdLogger
from shared_kernel.interfaces import IEventBus, ILogger, IPropertyCatalog

from .domain import (
    CANCELLABLE_STATUSES,
    MODIFIABLE_STATUSES,
    AppliedDiscount,
    BookedRoom,
    Booking,
    BookingPolicy,
    BookingPricing,
    BookingSource,
    BookingStatus,
    CancellationPolicy,
    CancellationRefundCalculator,
    DepositCalculation,
    DepositCalculator,
    DepositType,
    FeeLine,
    ModificationOptions,
    ModificationPolicy,
    ModificationValidation,
    PaymentAuthorization,
    PaymentStatus,
    PenaltyType,
    PricingImpact,
    RefundCalculation,
    ValidationIssue,
)
from .event_handlers import register_notification_handlers
from .infrastructure import BookingUnitOfWork, DummyPaymentGateway, LoggingNotificationService
from .interfaces import (
    IBookingUnitOfWork,
    INotificationService,
    IPaymentGateway,
    IPricingEngine,
    PaymentResult,
)

# ===================================================================
# DTO (Data Transfer Objects)
# ===================================================================


class BookedRoomDTO(BaseModel):
    room_type_id: EntityId
    quantity: int
    guest_count: int
    rate_per_night: Decimal
    total_price: Decimal


class BookingDTO(BaseModel):
    """DTO для передачи данных о бронировании."""

    id: EntityId
    confirmation_number: str
    property_id: EntityId
    guest_id: EntityId
    check_in: date
    check_out: date
    nights: int
    status: BookingStatus
    payment_status: PaymentStatus
    rooms: List[BookedRoomDTO]
    pricing: BookingPricing
    booked_at: datetime
    confirmed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    refund_amount: Optional[Decimal] = None
    cancellation_fee: Optional[Decimal] = None
    modification_count: int
    version: int

    @property
    def total_amount(self) -> Decimal:
        return self.pricing.total_amount

    @classmethod
    def from_domain(cls, booking: Booking) -> "BookingDTO":
        """Создает DTO из доменной модели."""
        return cls(
            id=booking.id,
            confirmation_number=booking.confirmation_number,
            property_id=booking.property_id,
            guest_id=booking.guest_id,
            check_in=booking.check_in,
            check_out=booking.check_out,
            nights=booking.nights,
            status=booking.status,
            payment_status=booking.payment_status,
            rooms=[
                BookedRoomDTO(
                    room_type_id=room.room_type_id,
                    quantity=room.quantity,
                    guest_count=room.guest_count,
                    rate_per_night=room.rate_per_night,
                    total_price=room.total_price,
                )
                for room in booking.rooms
            ],
            pricing=booking.pricing,
            booked_at=booking.booked_at,
            confirmed_at=booking.confirmed_at,
            cancelled_at=booking.cancelled_at,
            refund_amount=booking.refund_amount,
            cancellation_fee=booking.cancellation_fee,
            modification_count=booking.modification_count,
            version=booking.version,
        )


class BookingRoomRequest(BaseModel):
    room_type_id: EntityId
    quantity: int = 1
    guest_count: int = 1


class CreateBookingRequest(BaseModel):
    """Команда на создание бронирования."""

    property_id: EntityId
    guest_id: EntityId
    check_in: date
    check_out: date
    rooms: List[BookingRoomRequest]
    promotion_codes: List[str] = Field(default_factory=list)
    corporate_code: Optional[str] = None
    loyalty_member_id: Optional[str] = None
    booking_source: BookingSource = BookingSource.DIRECT
    special_requests: Optional[str] = None
    created_by: str = "guest"


class ModifyBookingRequest(BaseModel):
    """Команда на изменение бронирования. Незаданные поля не меняются."""

    check_in: Optional[date] = None
    check_out: Optional[date] = None
    rooms: Optional[List[BookingRoomRequest]] = None
    special_requests: Optional[str] = None
    reason: Optional[str] = None
    changed_by: str = "guest"


class BookingResult(BaseModel):
    booking: BookingDTO
    confirmation_number: str


class ConfirmationResult(BaseModel):
    booking: BookingDTO
    confirmation_number: str
    payment_result: PaymentResult


class CancellationResult(BaseModel):
    booking: BookingDTO
    refund_amount: Decimal
    cancellation_fee: Decimal
    refund_eligible: bool
    refund_status: str


class CancellationInfo(BaseModel):
    can_cancel: bool
    reason: Optional[str] = None
    refund: Optional[RefundCalculation] = None


class ModificationResult(BaseModel):
    booking: BookingDTO
    pricing_impact: PricingImpact
    payment_result: Optional[PaymentResult] = None
    refund_status: str = "not_required"


class BookingValidationResult(BaseModel):
    is_valid: bool
    errors: List[ValidationIssue] = Field(default_factory=list)
    warnings: List[ValidationIssue] = Field(default_factory=list)


_CONFLICT_CODES = {"INVALID_STATUS", "MODIFICATION_CUTOFF"}


# ===================================================================
# Прикладные сервисы (Application Services)
# ===================================================================


class BookingApplicationService:
    """Прикладной сервис для работы с бронированиями."""

    def __init__(
        self,
        uow: IBookingUnitOfWork,
        catalog: IPropertyCatalog,
        pricing: IPricingEngine,
        payment_gateway: IPaymentGateway,
        event_bus: IEventBus,
        settings: Optional[Settings] = None,
        logger: Optional[ILogger] = None,
        clock: Callable[[], datetime] = now,
    ):
        self.uow = uow
        self.catalog = catalog
        self.pricing = pricing
        self.payment_gateway = payment_gateway
        self.event_bus = event_bus
        self.settings = settings or get_settings()
        self.logger = logger or StdLogger("hotel.booking")
        self.clock = clock
        self.refund_calculator = CancellationRefundCalculator()
        self.deposit_calculator = DepositCalculator(
            minimum_amount=self.settings.deposit_minimum_amount,
            maximum_amount=self.settings.deposit_maximum_amount,
            default_percentage=self.settings.deposit_default_percentage,
            due_days_before_check_in=self.settings.deposit_due_days_before_check_in,
        )
        self.modification_policy = ModificationPolicy(self.settings.modification_cutoff_hours)

    # ===============================================================
    # Создание и проверка
    # ===============================================================

    async def create_booking(
        self, request: Union[CreateBookingRequest, Mapping[str, Any]]
    ) -> BookingResult:
        """Создает бронирование в статусе PENDING."""
        request = parse_request(CreateBookingRequest, request)
        moment = self.clock()
        stay = BookingPolicy.validate_stay(
            request.check_in,
            request.check_out,
            moment.date(),
            self.settings.max_advance_booking_days,
        )
        if not request.rooms:
            raise ValidationError("At least one room is required", field="rooms")
        await self._require_active_property(request.property_id)
        await self._resolve_rooms(request.property_id, request.rooms)

        rooms, pricing = await self._price_rooms(
            request.property_id,
            stay,
            request.rooms,
            promotion_codes=request.promotion_codes,
            corporate_code=request.corporate_code,
            loyalty_member_id=request.loyalty_member_id,
            booking_source=request.booking_source,
            guest_id=request.guest_id,
        )
        booking = Booking.create(
            property_id=request.property_id,
            guest_id=request.guest_id,
            stay=stay,
            rooms=rooms,
            pricing=pricing,
            booking_source=request.booking_source,
            special_requests=request.special_requests,
            promotion_codes=request.promotion_codes,
            corporate_code=request.corporate_code,
            loyalty_member_id=request.loyalty_member_id,
            created_by=request.created_by,
            at=moment,
        )
        events = await self._persist(booking)
        await self._publish(events)

        self.logger.info(
            "Booking created",
            booking_id=booking.id,
            confirmation_number=booking.confirmation_number,
            total=booking.total_amount,
            currency=booking.currency,
        )
        return BookingResult(
            booking=BookingDTO.from_domain(booking),
            confirmation_number=booking.confirmation_number,
        )

    async def validate_booking_request(
        self, request: Union[CreateBookingRequest, Mapping[str, Any]]
    ) -> BookingValidationResult:
        """Проверяет запрос на бронирование, собирая все ошибки и предупреждения."""
        try:
            request = parse_request(CreateBookingRequest, request)
        except ValidationError as e:
            return BookingValidationResult(
                is_valid=False,
                errors=[ValidationIssue(code="INVALID_REQUEST", message=e.message, field=e.field)],
            )

        errors: List[ValidationIssue] = []
        warnings: List[ValidationIssue] = []
        today = self.clock().date()
        try:
            BookingPolicy.validate_stay(
                request.check_in,
                request.check_out,
                today,
                self.settings.max_advance_booking_days,
            )
        except ValidationError as e:
            errors.append(ValidationIssue(code="INVALID_DATES", message=e.message, field=e.field))
        else:
            horizon = today + timedelta(days=self.settings.advance_booking_warning_days)
            if request.check_in > horizon:
                warnings.append(
                    ValidationIssue(
                        code="FAR_ADVANCE_BOOKING",
                        message=(
                            "Check-in is more than "
                            f"{self.settings.advance_booking_warning_days} days in advance"
                        ),
                        field="check_in",
                    )
                )

        if not request.rooms:
            errors.append(
                ValidationIssue(
                    code="NO_ROOMS", message="At least one room is required", field="rooms"
                )
            )

        try:
            await self._require_active_property(request.property_id)
        except (NotFoundError, ValidationError) as e:
            errors.append(
                ValidationIssue(code="INVALID_PROPERTY", message=str(e), field="property_id")
            )
        else:
            for index, room in enumerate(request.rooms):
                try:
                    await self._resolve_room(request.property_id, room, f"rooms.{index}")
                except NotFoundError as e:
                    errors.append(
                        ValidationIssue(
                            code="ROOM_TYPE_NOT_FOUND",
                            message=str(e),
                            field=f"rooms.{index}.room_type_id",
                        )
                    )
                except ValidationError as e:
                    errors.append(
                        ValidationIssue(code="INVALID_ROOM", message=e.message, field=e.field)
                    )

        return BookingValidationResult(is_valid=not errors, errors=errors, warnings=warnings)

    # ===============================================================
    # Подтверждение и смена статуса
    # ===============================================================

    async def process_booking_confirmation(self, booking_id: EntityId) -> ConfirmationResult:
        """
        Авторизует оплату и подтверждает бронирование.

        Использование промоакций фиксируется до авторизации: если лимит
        промоакции уже исчерпан, подтверждение отклоняется с ConflictError
        и бронирование нужно пересчитать. Если бронирование изменилось
        конкурентно после авторизации, удержание снимается.
        """
        booking = await self._require_booking(booking_id)
        if booking.status != BookingStatus.PENDING:
            raise ConflictError(
                f"Booking {booking.confirmation_number} cannot be confirmed "
                f"in status {booking.status.value}"
            )

        await self._claim_promotions(booking, booking.pricing)
        moment = self.clock()
        payment = await self.payment_gateway.authorize(
            booking.total_amount, booking.currency, f"booking:{booking.id}:confirm"
        )
        if not payment.success:
            booking.mark_payment_failed(payment.message or payment.status, at=moment)
            try:
                await self._persist(booking, expected_status=BookingStatus.PENDING)
            except ConflictError as e:
                self.logger.warning(
                    "Could not record failed payment", booking_id=booking.id, error=str(e)
                )
            self.logger.error(
                "Payment authorization failed",
                booking_id=booking.id,
                status=payment.status,
                message=payment.message,
            )
            raise PaymentError(
                f"Payment authorization failed: {payment.message or payment.status}",
                transaction_id=payment.transaction_id,
            )

        booking.confirm(payment.transaction_id, at=moment)
        try:
            events = await self._persist(booking, expected_status=BookingStatus.PENDING)
        except ConflictError:
            await self._release_authorization(
                booking, payment.transaction_id, f"booking:{booking.id}:confirm:void"
            )
            raise
        await self._publish(events)

        self.logger.info(
            "Booking confirmed",
            booking_id=booking.id,
            confirmation_number=booking.confirmation_number,
            transaction_id=payment.transaction_id,
        )
        return ConfirmationResult(
            booking=BookingDTO.from_domain(booking),
            confirmation_number=booking.confirmation_number,
            payment_result=payment,
        )

    async def update_booking_status(
        self,
        booking_id: EntityId,
        new_status: Union[BookingStatus, str],
        changed_by: str,
        reason: Optional[str] = None,
    ) -> BookingDTO:
        """Переводит бронирование в новый статус по таблице переходов."""
        try:
            new_status = BookingStatus(new_status)
        except ValueError:
            raise ValidationError(f"Unknown booking status: {new_status}", field="status")

        booking = await self._require_booking(booking_id)
        expected = booking.status
        booking.transition_to(new_status, changed_by, reason=reason, at=self.clock())
        events = await self._persist(booking, expected_status=expected)
        await self._publish(events)

        self.logger.info(
            "Booking status changed",
            booking_id=booking.id,
            from_status=expected.value,
            to_status=new_status.value,
            changed_by=changed_by,
        )
        return BookingDTO.from_domain(booking)

    async def expire_pending_bookings(self) -> List[BookingDTO]:
        """Переводит в EXPIRED неподтвержденные бронирования старше заданного срока."""
        moment = self.clock()
        cutoff = moment - timedelta(minutes=self.settings.pending_booking_ttl_minutes)
        expired: List[BookingDTO] = []
        for booking in await self.uow.bookings.find_by_status(BookingStatus.PENDING):
            if booking.booked_at > cutoff:
                continue
            booking.transition_to(
                BookingStatus.EXPIRED, "system", reason="Pending booking expired", at=moment
            )
            try:
                events = await self._persist(booking, expected_status=BookingStatus.PENDING)
            except ConflictError:
                self.logger.info("Booking changed before expiry", booking_id=booking.id)
                continue
            await self._publish(events)
            expired.append(BookingDTO.from_domain(booking))

        if expired:
            self.logger.info("Expired pending bookings", count=len(expired))
        return expired

    # ===============================================================
    # Отмена
    # ===============================================================

    async def get_cancellation_info(self, booking_id: EntityId) -> CancellationInfo:
        """Показывает, можно ли отменить бронирование и сколько будет возвращено."""
        booking = await self._require_booking(booking_id)
        if booking.status not in CANCELLABLE_STATUSES:
            return CancellationInfo(
                can_cancel=False,
                reason=f"Booking in status {booking.status.value} cannot be cancelled",
            )
        policy = await self._cancellation_policy(booking.property_id)
        refund = self.refund_calculator.calculate_refund(booking, policy, self.clock())
        return CancellationInfo(can_cancel=True, refund=refund)

    async def cancel_booking(
        self,
        booking_id: EntityId,
        reason: Optional[str] = None,
        cancelled_by: str = "guest",
    ) -> CancellationResult:
        """Отменяет бронирование и проводит возврат по политике отмены."""
        booking = await self._require_booking(booking_id)
        if booking.status not in CANCELLABLE_STATUSES:
            raise ConflictError(
                f"Booking {booking.confirmation_number} cannot be cancelled "
                f"in status {booking.status.value}"
            )

        moment = self.clock()
        policy = await self._cancellation_policy(booking.property_id)
        refund = self.refund_calculator.calculate_refund(booking, policy, moment)
        expected = booking.status
        booking.cancel(refund, reason=reason, changed_by=cancelled_by, at=moment)
        events = await self._persist(booking, expected_status=expected)
        refund_status = await self._settle_cancellation(booking, refund, reason)
        await self._publish(events)

        self.logger.info(
            "Booking cancelled",
            booking_id=booking.id,
            refund_amount=refund.refundable_amount,
            cancellation_fee=refund.cancellation_fee,
            refund_status=refund_status,
        )
        return CancellationResult(
            booking=BookingDTO.from_domain(booking),
            refund_amount=refund.refundable_amount,
            cancellation_fee=refund.cancellation_fee,
            refund_eligible=refund.refundable_amount > 0,
            refund_status=refund_status,
        )

    # ===============================================================
    # Изменение
    # ===============================================================

    async def get_modification_options(self, booking_id: EntityId) -> ModificationOptions:
        booking = await self._require_booking(booking_id)
        return self.modification_policy.options(booking, self.clock())

    async def validate_booking_modification(
        self,
        booking_id: EntityId,
        request: Union[ModifyBookingRequest, Mapping[str, Any]],
    ) -> ModificationValidation:
        """Проверяет изменение и рассчитывает его влияние на стоимость."""
        request = parse_request(ModifyBookingRequest, request)
        booking = await self._require_booking(booking_id)
        validation, _ = await self._evaluate_modification(booking, request, self.clock())
        return validation

    async def modify_booking(
        self,
        booking_id: EntityId,
        request: Union[ModifyBookingRequest, Mapping[str, Any]],
    ) -> ModificationResult:
        """Применяет изменение: новый снимок цены, доплата или возврат разницы."""
        request = parse_request(ModifyBookingRequest, request)
        booking = await self._require_booking(booking_id)
        moment = self.clock()
        validation, proposal = await self._evaluate_modification(booking, request, moment)
        if not validation.is_valid or proposal is None:
            issue = validation.errors[0]
            if issue.code in _CONFLICT_CODES:
                raise ConflictError(issue.message)
            raise ValidationError(issue.message, field=issue.field)

        stay, rooms, pricing = proposal
        impact = validation.pricing_impact
        if booking.confirmed_at is not None:
            await self._claim_promotions(booking, pricing)

        payment_result: Optional[PaymentResult] = None
        authorization: Optional[PaymentAuthorization] = None
        if impact.additional_payment > 0 and booking.payment_transaction_id:
            payment_result = await self.payment_gateway.authorize(
                impact.additional_payment,
                booking.currency,
                f"booking:{booking.id}:modify:{booking.version}",
            )
            if not payment_result.success:
                raise PaymentError(
                    "Additional payment authorization failed: "
                    f"{payment_result.message or payment_result.status}",
                    transaction_id=payment_result.transaction_id,
                )
            authorization = PaymentAuthorization(
                transaction_id=payment_result.transaction_id,
                amount=impact.additional_payment,
                purpose="modification",
                created_at=moment,
            )

        expected = booking.status
        booking.apply_modification(
            stay,
            rooms,
            pricing,
            changed_by=request.changed_by,
            reason=request.reason,
            special_requests=request.special_requests,
            authorization=authorization,
            at=moment,
        )
        try:
            events = await self._persist(booking, expected_status=expected)
        except ConflictError:
            if authorization is not None:
                await self._release_authorization(
                    booking,
                    authorization.transaction_id,
                    f"booking:{booking.id}:modify:{booking.version}:void",
                )
            raise

        refund_status = "not_required"
        if impact.refund_amount > 0 and booking.payment_status == PaymentStatus.CAPTURED:
            refund_status = await self._refund(
                booking,
                impact.refund_amount,
                request.reason or "Booking modified",
                f"booking:{booking.id}:modify-refund:{booking.version}",
                PaymentStatus.PARTIALLY_REFUNDED,
                expected_status=booking.status,
            )
        await self._publish(events)

        self.logger.info(
            "Booking modified",
            booking_id=booking.id,
            difference=impact.difference,
            status=booking.status.value,
        )
        return ModificationResult(
            booking=BookingDTO.from_domain(booking),
            pricing_impact=impact,
            payment_result=payment_result,
            refund_status=refund_status,
        )

    # ===============================================================
    # Депозит и запросы
    # ===============================================================

    async def calculate_deposit(
        self,
        booking_id: EntityId,
        deposit_type: Union[DepositType, str] = DepositType.PERCENTAGE,
        value: Optional[Decimal] = None,
    ) -> DepositCalculation:
        try:
            deposit_type = DepositType(deposit_type)
        except ValueError:
            raise ValidationError(f"Unknown deposit type: {deposit_type}", field="deposit_type")
        booking = await self._require_booking(booking_id)
        return self.deposit_calculator.calculate(booking, deposit_type, value)

    async def get_booking(self, booking_id: EntityId) -> BookingDTO:
        return BookingDTO.from_domain(await self._require_booking(booking_id))

    async def get_booking_by_confirmation_number(self, number: str) -> BookingDTO:
        booking = await self.uow.bookings.get_by_confirmation_number(number)
        if booking is None:
            raise NotFoundError(f"Booking {number} not found")
        return BookingDTO.from_domain(booking)

    async def list_guest_bookings(self, guest_id: EntityId) -> List[BookingDTO]:
        bookings = await self.uow.bookings.find_by_guest(guest_id)
        return [BookingDTO.from_domain(booking) for booking in bookings]

    # ===============================================================
    # Вспомогательные методы
    # ===============================================================

    async def _require_booking(self, booking_id: EntityId) -> Booking:
        booking = await self.uow.bookings.get_by_id(booking_id)
        if booking is None:
            raise NotFoundError(f"Booking {booking_id} not found")
        return booking

    async def _require_active_property(self, property_id: EntityId) -> Property:
        property_ = await self.catalog.find_property(property_id)
        if property_ is None:
            raise NotFoundError(f"Property {property_id} not found")
        if not property_.is_active:
            raise ValidationError(
                f"Property {property_.name} is not accepting bookings", field="property_id"
            )
        return property_

    async def _resolve_room(
        self, property_id: EntityId, room: BookingRoomRequest, field: str
    ) -> RoomType:
        room_type = await self.catalog.find_room_type(room.room_type_id)
        if room_type is None:
            raise NotFoundError(f"Room type {room.room_type_id} not found")
        BookingPolicy.validate_room(
            room_type, property_id, room.quantity, room.guest_count, field=field
        )
        return room_type

    async def _resolve_rooms(
        self, property_id: EntityId, rooms: List[BookingRoomRequest]
    ) -> List[RoomType]:
        return [
            await self._resolve_room(property_id, room, f"rooms.{index}")
            for index, room in enumerate(rooms)
        ]

    async def _price_rooms(
        self,
        property_id: EntityId,
        stay: DateRange,
        room_requests: List[BookingRoomRequest],
        promotion_codes: Optional[List[str]] = None,
        corporate_code: Optional[str] = None,
        loyalty_member_id: Optional[str] = None,
        booking_source: Optional[BookingSource] = None,
        guest_id: Optional[EntityId] = None,
        booking_id: Optional[EntityId] = None,
    ) -> Tuple[List[BookedRoom], BookingPricing]:
        """Получает одну котировку на все строки номеров и собирает снимок цены."""
        quote = await self.pricing.calculate_booking_price(
            BookingPriceRequest(
                property_id=property_id,
                check_in=stay.check_in,
                check_out=stay.check_out,
                rooms=[
                    BookingPriceLine(
                        room_type_id=room.room_type_id,
                        guest_count=room.guest_count,
                        room_quantity=room.quantity,
                    )
                    for room in room_requests
                ],
                promotion_codes=promotion_codes or [],
                corporate_code=corporate_code,
                loyalty_member_id=loyalty_member_id,
                booking_source=booking_source.value if booking_source else None,
                guest_id=guest_id,
                booking_id=booking_id,
            )
        )

        rooms = [
            BookedRoom(
                room_type_id=room.room_type_id,
                quantity=room.quantity,
                guest_count=room.guest_count,
                nightly_rates=[night.final_rate for night in line.nightly_rates],
                rate_per_night=round_money(
                    line.base_amount / (line.nights * room.quantity), line.currency
                ),
                subtotal=line.base_amount,
                discount_amount=line.discount_amount,
                tax_amount=line.tax_amount,
                fee_amount=line.fee_amount,
                total_price=line.total_amount,
            )
            for room, line in zip(room_requests, quote.lines)
        ]
        pricing = BookingPricing(
            base_amount=quote.base_amount,
            discount_amount=quote.discount_amount,
            tax_amount=quote.tax_amount,
            fee_amount=quote.fee_amount,
            total_amount=quote.total_amount,
            currency=quote.currency,
            applied_promotions=[
                AppliedDiscount(
                    promotion_id=promotion.promotion_id,
                    code=promotion.code,
                    discount_amount=promotion.discount_amount,
                )
                for promotion in quote.applied_promotions
            ],
            quoted_at=quote.calculated_at,
            valid_until=quote.valid_until,
        )
        return rooms, pricing

    async def _evaluate_modification(
        self, booking: Booking, request: ModifyBookingRequest, moment: datetime
    ) -> Tuple[
        ModificationValidation,
        Optional[Tuple[DateRange, List[BookedRoom], BookingPricing]],
    ]:
        errors: List[ValidationIssue] = []
        warnings: List[ValidationIssue] = []

        if booking.status not in MODIFIABLE_STATUSES:
            errors.append(
                ValidationIssue(
                    code="INVALID_STATUS",
                    message=f"Booking in status {booking.status.value} cannot be modified",
                    field="status",
                )
            )
            return ModificationValidation(is_valid=False, errors=errors), None

        check_in = request.check_in or booking.check_in
        check_out = request.check_out or booking.check_out
        dates_changed = check_in != booking.check_in or check_out != booking.check_out
        room_requests = request.rooms
        if room_requests is None:
            room_requests = [
                BookingRoomRequest(
                    room_type_id=room.room_type_id,
                    quantity=room.quantity,
                    guest_count=room.guest_count,
                )
                for room in booking.rooms
            ]
        rooms_changed = [
            (room.room_type_id, room.quantity, room.guest_count) for room in room_requests
        ] != [(room.room_type_id, room.quantity, room.guest_count) for room in booking.rooms]

        options = self.modification_policy.options(booking, moment)
        if dates_changed and not options.can_modify_dates:
            errors.append(
                ValidationIssue(
                    code="MODIFICATION_CUTOFF",
                    message=(
                        "Dates cannot be changed within "
                        f"{self.modification_policy.cutoff_hours} hours of check-in"
                    ),
                    field="check_in",
                )
            )
        if rooms_changed and not options.can_modify_rooms:
            errors.append(
                ValidationIssue(
                    code="MODIFICATION_CUTOFF",
                    message=(
                        "Rooms cannot be changed within "
                        f"{self.modification_policy.cutoff_hours} hours of check-in"
                    ),
                    field="rooms",
                )
            )
        if rooms_changed and not room_requests:
            errors.append(
                ValidationIssue(
                    code="NO_ROOMS", message="At least one room is required", field="rooms"
                )
            )

        stay = booking.stay
        if dates_changed:
            try:
                stay = BookingPolicy.validate_stay(
                    check_in,
                    check_out,
                    moment.date(),
                    self.settings.max_advance_booking_days,
                )
            except ValidationError as e:
                errors.append(
                    ValidationIssue(code="INVALID_DATES", message=e.message, field=e.field)
                )
        if errors:
            return ModificationValidation(is_valid=False, errors=errors), None

        rooms, pricing = booking.rooms, booking.pricing
        if dates_changed or rooms_changed:
            try:
                await self._resolve_rooms(booking.property_id, room_requests)
                rooms, pricing = await self._price_rooms(
                    booking.property_id,
                    stay,
                    room_requests,
                    promotion_codes=booking.promotion_codes,
                    corporate_code=booking.corporate_code,
                    loyalty_member_id=booking.loyalty_member_id,
                    booking_source=booking.booking_source,
                    guest_id=booking.guest_id,
                    booking_id=booking.id,
                )
            except (ValidationError, NotFoundError) as e:
                errors.append(
                    ValidationIssue(
                        code="PRICING_FAILED",
                        message=str(e),
                        field=getattr(e, "field", None),
                    )
                )
                return ModificationValidation(is_valid=False, errors=errors), None

        fees: List[FeeLine] = []
        if dates_changed and self.settings.modification_fee > 0:
            fees.append(
                FeeLine(
                    name="Date change fee",
                    amount=round_money(self.settings.modification_fee, booking.currency),
                )
            )
        impact = ModificationPolicy.pricing_impact(
            booking.total_amount, pricing.total_amount, fees, booking.currency
        )
        if impact.additional_payment > 0:
            warnings.append(
                ValidationIssue(
                    code="ADDITIONAL_PAYMENT",
                    message=f"Additional payment of {impact.additional_payment} required",
                )
            )
        if impact.refund_amount > 0:
            warnings.append(
                ValidationIssue(
                    code="REFUND_DUE",
                    message=f"Refund of {impact.refund_amount} will be issued",
                )
            )
        return (
            ModificationValidation(
                is_valid=True, warnings=warnings, pricing_impact=impact
            ),
            (stay, rooms, pricing),
        )

    async def _cancellation_policy(self, property_id: EntityId) -> CancellationPolicy:
        policy = await self.uow.cancellation_policies.get_for_property(property_id)
        if policy is not None:
            return policy
        return CancellationPolicy(
            property_id=property_id,
            name="Default",
            refund_percentage=self.settings.default_refund_percentage,
            hours_before_check_in=self.settings.default_cancellation_hours,
            penalty_type=PenaltyType.PERCENTAGE,
            penalty_value=self.settings.default_penalty_percentage,
        )

    async def _settle_cancellation(
        self, booking: Booking, refund: RefundCalculation, reason: Optional[str]
    ) -> str:
        """
        Проводит расчеты по отмене по всем авторизациям бронирования.

        Удерживаемая сумма списывается с авторизаций по порядку, остальные
        снимаются. Проведенные платежи возвращаются. Ошибки шлюза не
        отменяют отмену бронирования.
        """
        authorizations = self._authorizations(booking)
        if not authorizations:
            return "not_required"

        if booking.payment_status == PaymentStatus.CAPTURED:
            if refund.refundable_amount <= 0:
                return "not_eligible"
            fully_refunded = refund.refundable_amount >= refund.original_amount
            return await self._refund(
                booking,
                refund.refundable_amount,
                reason or "Booking cancelled",
                f"booking:{booking.id}:refund",
                PaymentStatus.REFUNDED if fully_refunded else PaymentStatus.PARTIALLY_REFUNDED,
                expected_status=BookingStatus.CANCELLED,
            )

        if booking.payment_status != PaymentStatus.AUTHORIZED:
            return "not_required"

        remaining = max(refund.original_amount - refund.refundable_amount, Decimal("0"))
        failed = False
        captured = False
        for authorization in authorizations:
            txn = authorization.transaction_id
            amount = min(remaining, authorization.amount)
            try:
                if amount > 0:
                    result = await self.payment_gateway.capture(
                        txn, amount, f"booking:{booking.id}:capture:{txn}"
                    )
                else:
                    result = await self.payment_gateway.void(
                        txn, f"booking:{booking.id}:void:{txn}"
                    )
            except Exception as e:
                self.logger.error(
                    "Cancellation settlement failed",
                    booking_id=booking.id,
                    transaction_id=txn,
                    error=str(e),
                )
                failed = True
                continue
            if not result.success:
                self.logger.error(
                    "Cancellation settlement rejected",
                    booking_id=booking.id,
                    transaction_id=txn,
                    status=result.status,
                    message=result.message,
                )
                failed = True
                continue
            if amount > 0:
                remaining -= amount
                captured = True

        if failed:
            return "failed"
        if captured:
            await self._record_payment(
                booking,
                PaymentStatus.PARTIALLY_REFUNDED,
                "Payment captured on cancellation",
                BookingStatus.CANCELLED,
            )
            return "captured"
        await self._record_payment(
            booking, PaymentStatus.VOIDED, "Payment voided on cancellation", BookingStatus.CANCELLED
        )
        return "voided"

    async def _refund(
        self,
        booking: Booking,
        amount: Decimal,
        reason: str,
        key_prefix: str,
        new_status: PaymentStatus,
        expected_status: BookingStatus,
    ) -> str:
        """Возвращает сумму, начиная с последней авторизации."""
        remaining = amount
        refunded = Decimal("0")
        status = "failed"
        for authorization in reversed(self._authorizations(booking)):
            if remaining <= 0:
                break
            part = min(remaining, authorization.refundable)
            if part <= 0:
                continue
            txn = authorization.transaction_id
            try:
                result = await self.payment_gateway.refund(
                    txn, part, reason, f"{key_prefix}:{txn}"
                )
            except Exception as e:
                self.logger.error(
                    "Refund failed", booking_id=booking.id, transaction_id=txn, error=str(e)
                )
                break
            if not result.success:
                self.logger.error(
                    "Refund rejected",
                    booking_id=booking.id,
                    transaction_id=txn,
                    amount=part,
                    message=result.message,
                )
                break
            if booking.payment_authorizations:
                booking.register_refund(txn, part)
            remaining -= part
            refunded += part
            status = result.status

        if refunded <= 0:
            return "failed"
        if remaining > 0:
            await self._record_payment(
                booking,
                PaymentStatus.PARTIALLY_REFUNDED,
                f"Refunded {refunded} of {amount}",
                expected_status,
            )
            return "failed"
        await self._record_payment(booking, new_status, f"Refunded {amount}", expected_status)
        return status

    def _authorizations(self, booking: Booking) -> List[PaymentAuthorization]:
        if booking.payment_authorizations:
            return booking.payment_authorizations
        if booking.payment_transaction_id is None:
            return []
        # Бронирования без журнала авторизаций держат одну транзакцию на всю сумму
        return [
            PaymentAuthorization(
                transaction_id=booking.payment_transaction_id,
                amount=booking.total_amount,
                created_at=booking.confirmed_at or booking.booked_at,
            )
        ]

    async def _record_payment(
        self,
        booking: Booking,
        payment_status: PaymentStatus,
        note: str,
        expected_status: BookingStatus,
    ) -> None:
        booking.update_payment(payment_status, note, at=self.clock())
        try:
            await self._persist(booking, expected_status=expected_status)
        except ConflictError as e:
            self.logger.warning(
                "Payment status not persisted", booking_id=booking.id, error=str(e)
            )

    async def _claim_promotions(self, booking: Booking, pricing: BookingPricing) -> None:
        """Фиксирует использование промоакций снимка цены за бронированием."""
        for applied in pricing.applied_promotions:
            try:
                await self.pricing.record_promotion_usage(
                    applied.promotion_id,
                    booking.id,
                    applied.discount_amount,
                    guest_id=booking.guest_id,
                )
            except NotFoundError as e:
                self.logger.warning(
                    "Applied promotion no longer exists",
                    promotion_id=applied.promotion_id,
                    booking_id=booking.id,
                    error=str(e),
                )
            except ConflictError as e:
                self.logger.warning(
                    "Promotion usage limit reached",
                    promotion_id=applied.promotion_id,
                    booking_id=booking.id,
                    error=str(e),
                )
                raise ConflictError(
                    f"Promotion {applied.code or applied.promotion_id} can no longer be "
                    f"applied to booking {booking.confirmation_number}; re-price the booking"
                ) from e

    async def _release_authorization(
        self, booking: Booking, transaction_id: str, idempotency_key: str
    ) -> None:
        try:
            result = await self.payment_gateway.void(transaction_id, idempotency_key)
        except Exception as e:
            self.logger.error(
                "Authorization not released",
                booking_id=booking.id,
                transaction_id=transaction_id,
                error=str(e),
            )
            return
        if not result.success:
            self.logger.error(
                "Authorization release rejected",
                booking_id=booking.id,
                transaction_id=transaction_id,
                message=result.message,
            )
            return
        self.logger.warning(
            "Authorization released after concurrent change",
            booking_id=booking.id,
            transaction_id=transaction_id,
        )

    async def _persist(
        self, booking: Booking, expected_status: Optional[BookingStatus] = None
    ) -> List[DomainEvent]:
        """
        Сохраняет бронирование и возвращает накопленные события.

        Без expected_status бронирование добавляется, иначе выполняется
        условная запись по статусу и версии.
        """
        events = booking.pull_domain_events()
        try:
            async with self.uow:
                if expected_status is None:
                    await self.uow.bookings.add(booking)
                else:
                    await self.uow.bookings.update(booking, expected_status=expected_status)
        except ConcurrencyException as e:
            raise ConflictError(str(e)) from e
        return events

    async def _publish(self, events: List[DomainEvent]) -> None:
        for event in events:
            await self.event_bus.publish(event)


# ===================================================================
# Фабрики для создания сервисов
# ===================================================================


def create_booking_service(
    catalog: IPropertyCatalog,
    pricing: IPricingEngine,
    uow: Optional[IBookingUnitOfWork] = None,
    payment_gateway: Optional[IPaymentGateway] = None,
    notifications: Optional[INotificationService] = None,
    event_bus: Optional[IEventBus] = None,
    settings: Optional[Settings] = None,
    logger: Optional[ILogger] = None,
    clock: Callable[[], datetime] = now,
) -> BookingApplicationService:
    """Создает экземпляр прикладного сервиса бронирования."""
    logger = logger or StdLogger("hotel.booking")

    if uow is None:
        uow = BookingUnitOfWork(logger=logger)

    if payment_gateway is None:
        payment_gateway = DummyPaymentGateway()

    if event_bus is None:
        event_bus = InMemoryEventBus(logger=logger)
        register_notification_handlers(
            event_bus, notifications or LoggingNotificationService(logger=logger)
        )

    return BookingApplicationService(
        uow=uow,
        catalog=catalog,
        pricing=pricing,
        payment_gateway=payment_gateway,
        event_bus=event_bus,
        settings=settings,
        logger=logger,
        clock=clock,
    )
