"""
Прикладной слой контекста ценообразования.

Содержит DTO запросов расчета, кеш результатов и оркестратор расчета цены
для одного типа номера и для бронирования из нескольких строк.
"""

import asyncio
import hashlib
import json
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError
from shared_kernel import (
    DateRange,
    EntityId,
    NotFoundError,
    Property,
    RoomType,
    ValidationError,
    get_settings,
    now,
    parse_request,
    round_money,
)
from shared_kernel.config import Settings
from shared_kernel.infrastructure import InMemoryCacheStore, StdLogger
from shared_kernel.interfaces import ICacheStore, ILogger, IPropertyCatalog

from .domain import (
    AppliedPromotion,
    BookingPriceResult,
    DiscountItem,
    DynamicPricingRule,
    NightlyRate,
    OccupancySnapshot,
    PriceBreakdown,
    PriceCalculationResult,
    Promotion,
    PromotionType,
    RejectedPromotion,
    RoomCharge,
    SeasonalRate,
)
from .infrastructure import InMemoryOccupancyProvider, PricingUnitOfWork
from .interfaces import IOccupancyProvider, IPricingUnitOfWork
from .rules import (
    DynamicPricingRuleEngine,
    PromotionContext,
    PromotionValidator,
    RateResolver,
    SeasonalAdjustmentEngine,
    TaxFeeCalculator,
    allocate,
)

# ===================================================================
# DTO (Data Transfer Objects)
# ===================================================================


class PriceCalculationRequest(BaseModel):
    """Запрос на расчет стоимости проживания."""

    property_id: EntityId
    room_type_id: EntityId
    check_in: date
    check_out: date
    guest_count: int = 1
    room_quantity: int = 1
    promotion_codes: List[str] = Field(default_factory=list)
    corporate_code: Optional[str] = None
    loyalty_member_id: Optional[str] = None
    booking_source: Optional[str] = None
    guest_id: Optional[EntityId] = None


class BookingPriceLine(BaseModel):
    """Строка номеров одного типа в расчете бронирования."""

    room_type_id: EntityId
    guest_count: int = 1
    room_quantity: int = 1


class BookingPriceRequest(BaseModel):
    """
    Запрос на расчет стоимости бронирования из нескольких строк номеров.

    Промоакции применяются один раз к общей базовой сумме. booking_id
    передается при повторном расчете уже созданного бронирования.
    """

    property_id: EntityId
    check_in: date
    check_out: date
    rooms: List[BookingPriceLine]
    promotion_codes: List[str] = Field(default_factory=list)
    corporate_code: Optional[str] = None
    loyalty_member_id: Optional[str] = None
    booking_source: Optional[str] = None
    guest_id: Optional[EntityId] = None
    booking_id: Optional[EntityId] = None


# ===================================================================
# Кеш расчетов
# ===================================================================


class PriceCache:
    """
    Кеш результатов расчета по отпечатку запроса.

    Ошибки хранилища не пробрасываются: чтение превращается в промах,
    запись пропускается.
    """

    def __init__(
        self,
        store: ICacheStore,
        ttl_seconds: int = 1800,
        prefix: str = "price_calc:",
        logger: Optional[ILogger] = None,
    ):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.prefix = prefix
        self.logger = logger or StdLogger("hotel.pricing.cache")

    @staticmethod
    def fingerprint(request: PriceCalculationRequest) -> str:
        """Детерминированный хеш всех входных параметров расчета."""
        payload = json.dumps(
            request.model_dump(mode="json"), sort_keys=True, separators=(",", ":")
        )
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    def key(self, request: PriceCalculationRequest) -> str:
        return f"{self.prefix}{self.fingerprint(request)}"

    async def get(self, request: PriceCalculationRequest) -> Optional[PriceCalculationResult]:
        key = self.key(request)
        try:
            raw = await self.store.get(key)
        except Exception as e:
            self.logger.warning("Price cache read failed", key=key, error=str(e))
            return None
        if raw is None:
            return None
        try:
            return PriceCalculationResult.model_validate_json(raw)
        except PydanticValidationError as e:
            self.logger.warning("Discarding malformed cache entry", key=key, error=str(e))
            return None

    async def set(
        self, request: PriceCalculationRequest, result: PriceCalculationResult
    ) -> None:
        key = self.key(request)
        try:
            await self.store.set(key, result.model_dump_json(), self.ttl_seconds)
        except Exception as e:
            self.logger.warning("Price cache write failed", key=key, error=str(e))


# ===================================================================
# Прикладные сервисы (Application Services)
# ===================================================================


class PricingApplicationService:
    """Оркестратор расчета цены."""

    def __init__(
        self,
        uow: IPricingUnitOfWork,
        catalog: IPropertyCatalog,
        cache: PriceCache,
        occupancy: IOccupancyProvider,
        settings: Optional[Settings] = None,
        logger: Optional[ILogger] = None,
        clock: Callable[[], datetime] = now,
    ):
        self.uow = uow
        self.catalog = catalog
        self.cache = cache
        self.occupancy = occupancy
        self.settings = settings or get_settings()
        self.logger = logger or StdLogger("hotel.pricing")
        self.clock = clock
        self.rate_resolver = RateResolver(uow.rates, self.settings.default_currency)
        self.seasonal_engine = SeasonalAdjustmentEngine()
        self.dynamic_engine = DynamicPricingRuleEngine(clock=clock)
        self.promotion_validator = PromotionValidator()
        self.tax_calculator = TaxFeeCalculator()
        self._usage_lock = asyncio.Lock()

    async def calculate_price(
        self, request: Union[PriceCalculationRequest, Mapping[str, Any]]
    ) -> PriceCalculationResult:
        """Рассчитывает стоимость проживания для одного типа номера."""
        request = parse_request(PriceCalculationRequest, request)
        stay = self._validate_request(request)
        await self._require_room_type(request.property_id, request.room_type_id)

        moment = self.clock()
        cached = await self.cache.get(request)
        if cached is not None and cached.is_valid_at(moment):
            if await self._cached_promotions_hold(cached, request, stay, moment):
                self.logger.debug("Price served from cache", property_id=request.property_id)
                return cached
            self.logger.info(
                "Cached price discarded, promotion no longer applicable",
                property_id=request.property_id,
            )

        quote = await self._quote(
            BookingPriceRequest(
                property_id=request.property_id,
                check_in=request.check_in,
                check_out=request.check_out,
                rooms=[
                    BookingPriceLine(
                        room_type_id=request.room_type_id,
                        guest_count=request.guest_count,
                        room_quantity=request.room_quantity,
                    )
                ],
                promotion_codes=request.promotion_codes,
                corporate_code=request.corporate_code,
                loyalty_member_id=request.loyalty_member_id,
                booking_source=request.booking_source,
                guest_id=request.guest_id,
            ),
            stay,
            moment,
        )
        result = quote.lines[0].model_copy(
            update={"rejected_promotions": quote.rejected_promotions}
        )

        await self.cache.set(request, result)
        self.logger.info(
            "Price calculated",
            property_id=request.property_id,
            room_type_id=request.room_type_id,
            nights=stay.nights,
            total=result.total_amount,
            currency=result.currency,
        )
        return result

    async def calculate_booking_price(
        self, request: Union[BookingPriceRequest, Mapping[str, Any]]
    ) -> BookingPriceResult:
        """
        Рассчитывает стоимость бронирования из нескольких строк номеров.

        Каждая строка получает свои ночные ставки, промоакции применяются
        один раз к общей сумме и распределяются по строкам пропорционально
        их базовой стоимости. Результат не кешируется.
        """
        request = parse_request(BookingPriceRequest, request)
        stay = DateRange.create(request.check_in, request.check_out)
        if not request.rooms:
            raise ValidationError("At least one room is required", field="rooms")
        for index, line in enumerate(request.rooms):
            self._validate_line(line.guest_count, line.room_quantity, f"rooms.{index}.")
            await self._require_room_type(request.property_id, line.room_type_id)

        quote = await self._quote(request, stay, self.clock())
        self.logger.info(
            "Booking price calculated",
            property_id=request.property_id,
            booking_id=request.booking_id,
            lines=len(quote.lines),
            total=quote.total_amount,
            currency=quote.currency,
        )
        return quote

    async def record_promotion_usage(
        self,
        promotion_id: EntityId,
        booking_id: EntityId,
        discount_amount: Decimal,
        guest_id: Optional[EntityId] = None,
    ) -> Promotion:
        """
        Фиксирует использование промоакции бронированием.

        Повторный вызов для того же бронирования ничего не меняет.
        Исчерпанный лимит приводит к ConflictError.
        """
        async with self._usage_lock:
            async with self.uow:
                promotion = await self.uow.promotions.get_by_id(promotion_id)
                if promotion is None:
                    raise NotFoundError(f"Promotion {promotion_id} not found")
                recorded = promotion.record_usage(
                    booking_id=booking_id,
                    discount_amount=discount_amount,
                    guest_id=guest_id,
                    at=self.clock(),
                )
                if recorded:
                    await self.uow.promotions.save(promotion)

        if recorded:
            self.logger.info(
                "Promotion usage recorded",
                promotion_id=promotion_id,
                booking_id=booking_id,
                current_usage=promotion.usage.current_usage,
            )
        return promotion

    def _validate_request(self, request: PriceCalculationRequest) -> DateRange:
        stay = DateRange.create(request.check_in, request.check_out)
        self._validate_line(request.guest_count, request.room_quantity)
        return stay

    @staticmethod
    def _validate_line(guest_count: int, room_quantity: int, prefix: str = "") -> None:
        if guest_count < 1:
            raise ValidationError(
                "Guest count must be at least 1", field=f"{prefix}guest_count"
            )
        if room_quantity < 1:
            raise ValidationError(
                "Room quantity must be at least 1", field=f"{prefix}room_quantity"
            )

    async def _require_room_type(
        self, property_id: EntityId, room_type_id: EntityId
    ) -> Tuple[Property, RoomType]:
        property_ = await self.catalog.find_property(property_id)
        if property_ is None:
            raise NotFoundError(f"Property {property_id} not found")
        room_type = await self.catalog.find_room_type(room_type_id)
        if room_type is None:
            raise NotFoundError(f"Room type {room_type_id} not found")
        if room_type.property_id != property_id:
            raise ValidationError(
                "Room type does not belong to the property", field="room_type_id"
            )
        return property_, room_type

    async def _cached_promotions_hold(
        self,
        cached: PriceCalculationResult,
        request: PriceCalculationRequest,
        stay: DateRange,
        moment: datetime,
    ) -> bool:
        """Остаются ли примененные в кешированном расчете промоакции применимыми."""
        if not cached.applied_promotions:
            return True
        context = self._promotion_context(
            request, stay, [request.room_type_id], cached.base_amount, moment
        )
        for applied in cached.applied_promotions:
            promotion = await self.uow.promotions.get_by_id(applied.promotion_id)
            if promotion is None or self.promotion_validator.validate(promotion, context):
                return False
        return True

    @staticmethod
    def _promotion_context(
        request: Union[PriceCalculationRequest, BookingPriceRequest],
        stay: DateRange,
        room_type_ids: List[EntityId],
        base_amount: Decimal,
        moment: datetime,
        booking_id: Optional[EntityId] = None,
    ) -> PromotionContext:
        return PromotionContext(
            property_id=request.property_id,
            room_type_ids=room_type_ids,
            stay=stay,
            base_amount=base_amount,
            guest_id=request.guest_id,
            booking_id=booking_id,
            booking_source=request.booking_source,
            loyalty_member_id=request.loyalty_member_id,
            booked_at=moment,
        )

    async def _quote(
        self, request: BookingPriceRequest, stay: DateRange, moment: datetime
    ) -> BookingPriceResult:
        """Общий расчет: ставки по строкам, промоакции на сумму, налоги по строкам."""
        last_night = stay.check_out - timedelta(days=1)
        seasonal_rates = await self.uow.seasonal_rates.find_for_period(
            request.property_id, stay.check_in, last_night
        )
        rules = await self.uow.dynamic_rules.list_by_property(
            request.property_id, active_only=True
        )
        occupancy = {}
        if rules:
            occupancy = await self.occupancy.get_occupancy(
                request.property_id, list(stay.dates())
            )

        priced = []
        currency: Optional[str] = None
        for line in request.rooms:
            nightly_rates, room_charges, line_base, line_currency = await self._price_nights(
                request.property_id, line, stay, seasonal_rates, rules, occupancy
            )
            if currency is not None and line_currency != currency:
                raise ValidationError(
                    "All rooms in a booking must be priced in the same currency",
                    field="rooms",
                )
            currency = line_currency
            priced.append((line, nightly_rates, room_charges, line_base))

        bases = [line_base for _, _, _, line_base in priced]
        room_type_ids = [line.room_type_id for line in request.rooms]
        base_amount = sum(bases, round_money(0, currency))
        context = self._promotion_context(
            request, stay, room_type_ids, base_amount, moment, request.booking_id
        )
        discounts, applied, rejected, eligible = await self._apply_promotions(
            request, context, bases, currency
        )

        # Каждая скидка делится между строками, на чьи типы номеров она распространяется
        line_discounts: List[List[DiscountItem]] = [[] for _ in priced]
        for item in discounts:
            weights = [
                base if room_type_id in eligible[item.promotion_id] else Decimal("0")
                for room_type_id, base in zip(room_type_ids, bases)
            ]
            for index, share in enumerate(allocate(item.amount, weights, currency)):
                if share > 0:
                    line_discounts[index].append(item.model_copy(update={"amount": share}))

        tax_configs = await self.uow.taxes.list_by_property(
            request.property_id, active_only=True
        )
        valid_until = moment + timedelta(hours=self.settings.quote_validity_hours)
        lines: List[PriceCalculationResult] = []
        for (line, nightly_rates, room_charges, line_base), items in zip(priced, line_discounts):
            line_discount = sum((item.amount for item in items), round_money(0, currency))
            charges = self.tax_calculator.calculate(
                tax_configs,
                line_base,
                line_discount,
                line.room_type_id,
                currency,
                stay.check_in,
            )
            total = line_base - line_discount + charges.tax_amount + charges.fee_amount
            lines.append(
                PriceCalculationResult(
                    property_id=request.property_id,
                    room_type_id=line.room_type_id,
                    check_in=stay.check_in,
                    check_out=stay.check_out,
                    nights=stay.nights,
                    room_quantity=line.room_quantity,
                    guest_count=line.guest_count,
                    base_amount=line_base,
                    discount_amount=line_discount,
                    tax_amount=charges.tax_amount,
                    fee_amount=charges.fee_amount,
                    total_amount=round_money(max(total, Decimal("0")), currency),
                    currency=currency,
                    breakdown=PriceBreakdown(
                        room_charges=room_charges,
                        taxes=charges.taxes,
                        fees=charges.fees,
                        discounts=items,
                    ),
                    nightly_rates=nightly_rates,
                    applied_promotions=[
                        AppliedPromotion(
                            promotion_id=item.promotion_id,
                            code=item.code,
                            name=item.name,
                            discount_amount=item.amount,
                        )
                        for item in items
                    ],
                    calculated_at=moment,
                    valid_until=valid_until,
                )
            )

        zero = round_money(0, currency)
        discount_amount = sum((line.discount_amount for line in lines), zero)
        tax_amount = sum((line.tax_amount for line in lines), zero)
        fee_amount = sum((line.fee_amount for line in lines), zero)
        return BookingPriceResult(
            property_id=request.property_id,
            check_in=stay.check_in,
            check_out=stay.check_out,
            nights=stay.nights,
            lines=lines,
            base_amount=base_amount,
            discount_amount=discount_amount,
            tax_amount=tax_amount,
            fee_amount=fee_amount,
            total_amount=sum((line.total_amount for line in lines), zero),
            currency=currency,
            applied_promotions=applied,
            rejected_promotions=rejected,
            calculated_at=moment,
            valid_until=valid_until,
        )

    async def _price_nights(
        self,
        property_id: EntityId,
        line: BookingPriceLine,
        stay: DateRange,
        seasonal_rates: List[SeasonalRate],
        rules: List[DynamicPricingRule],
        occupancy: Mapping[date, OccupancySnapshot],
    ) -> Tuple[List[NightlyRate], List[RoomCharge], Decimal, str]:
        """Ночные ставки строки: база, сезонные корректировки, динамические правила."""
        records, currency = await self.rate_resolver.load_base_rates(
            property_id, line.room_type_id, stay
        )
        nightly_rates: List[NightlyRate] = []
        room_charges: List[RoomCharge] = []
        base_amount = round_money(0, currency)
        for record in records:
            base_rate = round_money(record.rate, currency)
            rate, seasonal_lines = self.seasonal_engine.apply(
                base_rate, record.date, line.room_type_id, seasonal_rates, currency
            )
            rate, dynamic_lines = self.dynamic_engine.apply(
                rate,
                record.date,
                line.room_type_id,
                rules,
                occupancy.get(record.date) or OccupancySnapshot(date=record.date),
                stay.nights,
                currency,
            )
            nightly_rates.append(
                NightlyRate(
                    date=record.date,
                    base_rate=base_rate,
                    adjusted_rate=rate,
                    adjustments=seasonal_lines + dynamic_lines,
                    final_rate=rate,
                )
            )
            amount = round_money(rate * line.room_quantity, currency)
            room_charges.append(
                RoomCharge(
                    date=record.date,
                    room_type_id=line.room_type_id,
                    rate=rate,
                    quantity=line.room_quantity,
                    amount=amount,
                )
            )
            base_amount += amount
        return nightly_rates, room_charges, base_amount, currency

    async def _apply_promotions(
        self,
        request: BookingPriceRequest,
        context: PromotionContext,
        bases: List[Decimal],
        currency: str,
    ) -> Tuple[
        List[DiscountItem],
        List[AppliedPromotion],
        List[RejectedPromotion],
        Dict[EntityId, List[EntityId]],
    ]:
        """Промокоды в порядке передачи, затем автоматические акции по id."""
        discounts: List[DiscountItem] = []
        applied: List[AppliedPromotion] = []
        rejected: List[RejectedPromotion] = []
        eligible: Dict[EntityId, List[EntityId]] = {}
        remaining = context.base_amount

        def apply(promotion: Promotion) -> None:
            nonlocal remaining
            room_types = self.promotion_validator.eligible_room_types(promotion, context)
            eligible_base = sum(
                (
                    base
                    for room_type_id, base in zip(context.room_type_ids, bases)
                    if room_type_id in room_types
                ),
                Decimal("0"),
            )
            amount = self.promotion_validator.calculate_discount(
                promotion, min(remaining, eligible_base), currency
            )
            if amount <= 0:
                return
            remaining -= amount
            eligible[promotion.id] = room_types
            discounts.append(
                DiscountItem(
                    promotion_id=promotion.id,
                    code=promotion.code,
                    name=promotion.name,
                    discount_type=promotion.discount_type,
                    discount_value=promotion.discount_value,
                    amount=amount,
                )
            )
            applied.append(
                AppliedPromotion(
                    promotion_id=promotion.id,
                    code=promotion.code,
                    name=promotion.name,
                    discount_amount=amount,
                )
            )

        requested: List[Tuple[str, Optional[PromotionType]]] = [
            (code, None) for code in request.promotion_codes
        ]
        if request.corporate_code:
            requested.append((request.corporate_code, PromotionType.CORPORATE))

        for code, required_type in requested:
            promotion = await self.uow.promotions.get_by_code(request.property_id, code)
            if promotion is None:
                rejected.append(RejectedPromotion(code=code, reason="Promotion code not found"))
                continue
            if promotion.id in eligible:
                rejected.append(RejectedPromotion(code=code, reason="Promotion already applied"))
                continue
            if required_type is not None and promotion.promotion_type != required_type:
                rejected.append(
                    RejectedPromotion(code=code, reason="Not a corporate promotion code")
                )
                continue
            reason = self.promotion_validator.validate(promotion, context)
            if reason:
                rejected.append(RejectedPromotion(code=code, reason=reason))
                continue
            apply(promotion)

        active = await self.uow.promotions.list_by_property(
            request.property_id, active_only=True
        )
        for promotion in sorted(active, key=lambda p: str(p.id)):
            if not promotion.is_auto_applied or promotion.id in eligible:
                continue
            if self.promotion_validator.validate(promotion, context) is None:
                apply(promotion)

        return discounts, applied, rejected, eligible


# ===================================================================
# Фабрики для создания сервисов
# ===================================================================


def create_pricing_service(
    catalog: IPropertyCatalog,
    uow: Optional[IPricingUnitOfWork] = None,
    cache_store: Optional[ICacheStore] = None,
    occupancy: Optional[IOccupancyProvider] = None,
    settings: Optional[Settings] = None,
    logger: Optional[ILogger] = None,
    clock: Callable[[], datetime] = now,
) -> PricingApplicationService:
    """Создает экземпляр оркестратора расчета цены."""
    settings = settings or get_settings()
    logger = logger or StdLogger("hotel.pricing")

    if uow is None:
        uow = PricingUnitOfWork(logger=logger)

    if cache_store is None:
        cache_store = InMemoryCacheStore(clock=clock)

    if occupancy is None:
        occupancy = InMemoryOccupancyProvider()

    cache = PriceCache(
        cache_store,
        ttl_seconds=settings.price_cache_ttl_seconds,
        prefix=settings.price_cache_prefix,
        logger=logger,
    )
    return PricingApplicationService(
        uow=uow,
        catalog=catalog,
        cache=cache,
        occupancy=occupancy,
        settings=settings,
        logger=logger,
        clock=clock,
    )
