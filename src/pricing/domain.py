"""
Доменный слой контекста ценообразования.

Конфигурационные сущности (тарифы, сезонные корректировки, правила
динамического ценообразования, промоакции, налоги), снимок результата
расчета цены и политики валидации конфигурации.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, List, Optional, Tuple, Union

from pydantic import BaseModel, Field, field_validator
from shared_kernel import ConflictError, EntityId, ValidationError, generate_id, now


# ===================================================================
# Перечисления
# ===================================================================


class RateType(str, Enum):
    """Типы тарифных записей."""

    BASE = "base"
    SEASONAL = "seasonal"
    PROMOTIONAL = "promotional"
    CORPORATE = "corporate"
    GROUP = "group"
    LAST_MINUTE = "last_minute"
    EARLY_BIRD = "early_bird"


class AdjustmentMethod(str, Enum):
    """Способы изменения ставки."""

    PERCENTAGE = "percentage"
    FIXED_AMOUNT = "fixed_amount"
    MULTIPLIER = "multiplier"
    SET_RATE = "set_rate"


class AdjustmentType(str, Enum):
    """Категории корректировок, попадающие в детализацию."""

    SEASONAL = "seasonal"
    DEMAND_BASED = "demand_based"
    OCCUPANCY_BASED = "occupancy_based"
    ADVANCE_BOOKING = "advance_booking"
    LENGTH_OF_STAY = "length_of_stay"
    DAY_OF_WEEK = "day_of_week"
    SPECIAL_EVENT = "special_event"
    COMPETITOR_BASED = "competitor_based"


class DynamicPricingType(str, Enum):
    """Типы правил динамического ценообразования."""

    OCCUPANCY_BASED = "occupancy_based"
    DEMAND_BASED = "demand_based"
    COMPETITOR_BASED = "competitor_based"
    SEASONAL = "seasonal"
    EVENT_BASED = "event_based"
    ADVANCE_BOOKING = "advance_booking"
    LENGTH_OF_STAY = "length_of_stay"
    DAY_OF_WEEK = "day_of_week"


class ConditionType(str, Enum):
    """Показатели, по которым проверяются условия правил."""

    OCCUPANCY_RATE = "occupancy_rate"
    ADVANCE_BOOKING_DAYS = "advance_booking_days"
    LENGTH_OF_STAY = "length_of_stay"
    DAY_OF_WEEK = "day_of_week"
    DEMAND_SCORE = "demand_score"
    BOOKING_PACE = "booking_pace"
    COMPETITOR_RATE = "competitor_rate"


class ConditionOperator(str, Enum):
    """Операторы сравнения условий."""

    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    GREATER_THAN_OR_EQUAL = "greater_than_or_equal"
    LESS_THAN = "less_than"
    LESS_THAN_OR_EQUAL = "less_than_or_equal"
    IN = "in"
    NOT_IN = "not_in"
    BETWEEN = "between"


class DiscountType(str, Enum):
    """Типы скидок промоакций."""

    PERCENTAGE = "percentage"
    FIXED_AMOUNT = "fixed_amount"


class PromotionType(str, Enum):
    """Типы промоакций."""

    PUBLIC = "public"
    PRIVATE = "private"
    LOYALTY = "loyalty"
    CORPORATE = "corporate"
    GROUP = "group"
    FLASH_SALE = "flash_sale"


class PromotionConditionType(str, Enum):
    """Типы условий применимости промоакций."""

    MINIMUM_STAY = "minimum_stay"
    ADVANCE_BOOKING = "advance_booking"
    BOOKING_WINDOW = "booking_window"
    ROOM_TYPES = "room_types"
    BOOKING_SOURCE = "booking_source"
    MINIMUM_AMOUNT = "minimum_amount"
    BLACKOUT_DATES = "blackout_dates"


class TaxType(str, Enum):
    """Типы налогов."""

    CITY_TAX = "city_tax"
    TOURISM_TAX = "tourism_tax"
    VAT = "vat"
    GST = "gst"
    SERVICE_TAX = "service_tax"
    OCCUPANCY_TAX = "occupancy_tax"
    RESORT_TAX = "resort_tax"


class FeeType(str, Enum):
    """Типы сборов."""

    RESORT_FEE = "resort_fee"
    CLEANING_FEE = "cleaning_fee"
    SERVICE_FEE = "service_fee"
    BOOKING_FEE = "booking_fee"
    PARKING_FEE = "parking_fee"
    WIFI_FEE = "wifi_fee"


ChargeType = Union[TaxType, FeeType]


# ===================================================================
# Тарифы
# ===================================================================


class RateRecord(BaseModel):
    """Ставка за ночь для типа номера на конкретную дату."""

    id: EntityId = Field(default_factory=generate_id)
    property_id: EntityId
    room_type_id: EntityId
    date: date
    rate: Decimal = Field(..., ge=0)
    currency: Optional[str] = None
    rate_type: RateType = RateType.BASE
    is_active: bool = True


# ===================================================================
# Сезонные корректировки
# ===================================================================


class SeasonalRoomTypeRate(BaseModel):
    """Корректировка ставки сезона для одного типа номера."""

    room_type_id: EntityId
    adjustment_type: AdjustmentMethod
    adjustment_value: Decimal
    minimum_rate: Optional[Decimal] = None
    maximum_rate: Optional[Decimal] = None


class SeasonalRate(BaseModel):
    """Сезонная корректировка, действующая в интервале дат."""

    id: EntityId = Field(default_factory=generate_id)
    property_id: EntityId
    name: str
    description: Optional[str] = None
    start_date: date
    end_date: date
    priority: int = 0
    room_type_rates: List[SeasonalRoomTypeRate] = Field(default_factory=list)
    is_active: bool = True
    created_at: datetime = Field(default_factory=now)
    updated_at: datetime = Field(default_factory=now)

    def covers(self, day: date) -> bool:
        """Попадает ли дата в сезон (границы включительно)."""
        return self.start_date <= day <= self.end_date

    def rate_for(self, room_type_id: EntityId) -> Optional[SeasonalRoomTypeRate]:
        for room_rate in self.room_type_rates:
            if room_rate.room_type_id == room_type_id:
                return room_rate
        return None

    def overlaps(self, other: "SeasonalRate") -> bool:
        return self.start_date <= other.end_date and other.start_date <= self.end_date

    def room_type_ids(self) -> List[EntityId]:
        return [room_rate.room_type_id for room_rate in self.room_type_rates]


# ===================================================================
# Динамическое ценообразование
# ===================================================================


class PricingCondition(BaseModel):
    """Условие правила: показатель, оператор и эталонное значение."""

    type: ConditionType
    operator: ConditionOperator
    value: Union[float, List[float]]

    @field_validator("value", mode="before")
    @classmethod
    def split_comma_separated(cls, v: Any) -> Any:
        if isinstance(v, str):
            return [float(part) for part in v.split(",") if part.strip()]
        return v


class PricingAdjustment(BaseModel):
    """Корректировка ставки при срабатывании правила."""

    type: Optional[AdjustmentType] = None
    method: AdjustmentMethod
    value: Decimal
    max_adjustment: Optional[Decimal] = Field(None, ge=0)
    min_rate: Optional[Decimal] = None
    max_rate: Optional[Decimal] = None


class DynamicPricingRule(BaseModel):
    """Правило динамического ценообразования."""

    id: EntityId = Field(default_factory=generate_id)
    property_id: EntityId
    name: str
    description: Optional[str] = None
    type: DynamicPricingType
    priority: int = 0
    conditions: List[PricingCondition] = Field(default_factory=list)
    adjustments: List[PricingAdjustment] = Field(default_factory=list)
    valid_from: date
    valid_to: date
    applicable_room_types: Optional[List[EntityId]] = None
    min_rate: Optional[Decimal] = None
    max_rate: Optional[Decimal] = None
    is_active: bool = True
    created_at: datetime = Field(default_factory=now)
    updated_at: datetime = Field(default_factory=now)

    def applies_to_room_type(self, room_type_id: EntityId) -> bool:
        return not self.applicable_room_types or room_type_id in self.applicable_room_types

    def is_valid_on(self, day: date) -> bool:
        return self.valid_from <= day <= self.valid_to


class OccupancySnapshot(BaseModel):
    """Показатели загрузки на дату."""

    date: date
    occupancy_rate: float = 0.0
    demand_score: float = 0.0
    booking_pace: float = 0.0
    competitor_rate: Optional[float] = None


# ===================================================================
# Промоакции
# ===================================================================


class PromotionCondition(BaseModel):
    """Условие применимости промоакции."""

    type: PromotionConditionType
    value: Any


class PromotionUsageRecord(BaseModel):
    """Факт использования промоакции."""

    guest_id: Optional[EntityId] = None
    booking_id: EntityId
    discount_amount: Decimal
    used_at: datetime = Field(default_factory=now)


class PromotionUsage(BaseModel):
    """Лимиты и счетчики использования промоакции."""

    max_total_usage: Optional[int] = Field(None, ge=0)
    max_usage_per_guest: Optional[int] = Field(None, ge=0)
    current_usage: int = Field(0, ge=0)
    usage_history: List[PromotionUsageRecord] = Field(default_factory=list)


class Promotion(BaseModel):
    """Промоакция со скидкой."""

    id: EntityId = Field(default_factory=generate_id)
    property_id: EntityId
    code: Optional[str] = None
    name: str
    description: Optional[str] = None
    promotion_type: PromotionType = PromotionType.PUBLIC
    discount_type: DiscountType
    discount_value: Decimal
    max_discount: Optional[Decimal] = None
    valid_from: datetime
    valid_to: datetime
    applicable_room_types: Optional[List[EntityId]] = None
    conditions: List[PromotionCondition] = Field(default_factory=list)
    usage: PromotionUsage = Field(default_factory=PromotionUsage)
    is_active: bool = True
    created_at: datetime = Field(default_factory=now)
    updated_at: datetime = Field(default_factory=now)

    @field_validator("code")
    @classmethod
    def normalize_code(cls, v: Optional[str]) -> Optional[str]:
        return v.strip().upper() if v else v

    @property
    def is_auto_applied(self) -> bool:
        """Публичные акции без кода применяются автоматически."""
        return self.promotion_type == PromotionType.PUBLIC and not self.code

    @property
    def is_exhausted(self) -> bool:
        limit = self.usage.max_total_usage
        return limit is not None and self.usage.current_usage >= limit

    def is_used_by(self, booking_id: Optional[EntityId]) -> bool:
        if booking_id is None:
            return False
        return any(record.booking_id == booking_id for record in self.usage.usage_history)

    def usage_count_for(
        self, guest_id: Optional[EntityId], exclude_booking_id: Optional[EntityId] = None
    ) -> int:
        if guest_id is None:
            return 0
        return sum(
            1
            for record in self.usage.usage_history
            if record.guest_id == guest_id and record.booking_id != exclude_booking_id
        )

    def is_within_validity(self, moment: datetime) -> bool:
        return self.valid_from <= moment <= self.valid_to

    def record_usage(
        self,
        booking_id: EntityId,
        discount_amount: Decimal,
        guest_id: Optional[EntityId] = None,
        at: Optional[datetime] = None,
    ) -> bool:
        """
        Фиксирует использование бронированием.

        Повторная запись для того же бронирования ничего не меняет и
        возвращает False. Счетчик только растет; при исчерпанном общем
        или гостевом лимите выбрасывается ConflictError.
        """
        if self.is_used_by(booking_id):
            return False
        if self.is_exhausted:
            raise ConflictError(f"Promotion {self.code or self.name} usage limit reached")
        per_guest = self.usage.max_usage_per_guest
        if per_guest is not None and self.usage_count_for(guest_id) >= per_guest:
            raise ConflictError(
                f"Promotion {self.code or self.name} guest usage limit reached"
            )
        at = at or now()
        self.usage.current_usage += 1
        self.usage.usage_history.append(
            PromotionUsageRecord(
                guest_id=guest_id,
                booking_id=booking_id,
                discount_amount=discount_amount,
                used_at=at,
            )
        )
        self.updated_at = at
        return True


# ===================================================================
# Налоги и сборы
# ===================================================================


class TaxConfiguration(BaseModel):
    """Налог или сбор объекта размещения."""

    id: EntityId = Field(default_factory=generate_id)
    property_id: EntityId
    name: str
    type: ChargeType
    rate: Decimal = Field(..., ge=0)
    is_percentage: bool = True
    is_inclusive: bool = False
    is_active: bool = True
    valid_from: date
    valid_to: Optional[date] = None
    applicable_room_types: Optional[List[EntityId]] = None

    @property
    def is_fee(self) -> bool:
        return isinstance(self.type, FeeType) or not self.is_percentage

    def is_applicable(self, on_date: date, room_type_id: EntityId) -> bool:
        if not self.is_active or on_date < self.valid_from:
            return False
        if self.valid_to is not None and on_date > self.valid_to:
            return False
        return not self.applicable_room_types or room_type_id in self.applicable_room_types


# ===================================================================
# Результат расчета
# ===================================================================


class RateAdjustment(BaseModel):
    """Одна примененная к ночной ставке корректировка."""

    source: str
    source_id: EntityId
    name: str
    category: Optional[AdjustmentType] = None
    method: AdjustmentMethod
    value: Decimal
    rate_before: Decimal
    rate_after: Decimal
    amount: Decimal


class NightlyRate(BaseModel):
    """Расчет ставки за одну ночь."""

    date: date
    base_rate: Decimal
    adjusted_rate: Decimal
    adjustments: List[RateAdjustment] = Field(default_factory=list)
    final_rate: Decimal


class RoomCharge(BaseModel):
    """Стоимость проживания за ночь с учетом количества номеров."""

    date: date
    room_type_id: EntityId
    rate: Decimal
    quantity: int
    amount: Decimal


class ChargeItem(BaseModel):
    """Налог или сбор в детализации."""

    configuration_id: EntityId
    name: str
    type: ChargeType
    rate: Decimal
    is_percentage: bool
    is_inclusive: bool
    amount: Decimal


class DiscountItem(BaseModel):
    """Скидка в детализации."""

    promotion_id: EntityId
    code: Optional[str] = None
    name: str
    discount_type: DiscountType
    discount_value: Decimal
    amount: Decimal


class AppliedPromotion(BaseModel):
    """Примененная промоакция."""

    promotion_id: EntityId
    code: Optional[str] = None
    name: str
    discount_amount: Decimal


class RejectedPromotion(BaseModel):
    """Промокод, который не удалось применить."""

    code: str
    reason: str


class PriceBreakdown(BaseModel):
    """Детализация стоимости."""

    room_charges: List[RoomCharge] = Field(default_factory=list)
    taxes: List[ChargeItem] = Field(default_factory=list)
    fees: List[ChargeItem] = Field(default_factory=list)
    discounts: List[DiscountItem] = Field(default_factory=list)


class PriceCalculationResult(BaseModel):
    """Неизменяемый снимок расчета стоимости проживания."""

    property_id: EntityId
    room_type_id: EntityId
    check_in: date
    check_out: date
    nights: int
    room_quantity: int
    guest_count: int
    base_amount: Decimal
    discount_amount: Decimal
    tax_amount: Decimal
    fee_amount: Decimal
    total_amount: Decimal
    currency: str
    breakdown: PriceBreakdown
    nightly_rates: List[NightlyRate]
    applied_promotions: List[AppliedPromotion] = Field(default_factory=list)
    rejected_promotions: List[RejectedPromotion] = Field(default_factory=list)
    calculated_at: datetime
    valid_until: datetime

    def is_valid_at(self, moment: datetime) -> bool:
        """Действительно ли ценовое предложение на указанный момент."""
        return moment < self.valid_until


class BookingPriceResult(BaseModel):
    """Расчет стоимости бронирования из нескольких строк номеров."""

    property_id: EntityId
    check_in: date
    check_out: date
    nights: int
    lines: List[PriceCalculationResult]
    base_amount: Decimal
    discount_amount: Decimal
    tax_amount: Decimal
    fee_amount: Decimal
    total_amount: Decimal
    currency: str
    applied_promotions: List[AppliedPromotion] = Field(default_factory=list)
    rejected_promotions: List[RejectedPromotion] = Field(default_factory=list)
    calculated_at: datetime
    valid_until: datetime


# ===================================================================
# Политики валидации конфигурации
# ===================================================================


def _check_rate_bounds(
    minimum: Optional[Decimal], maximum: Optional[Decimal], field: str
) -> None:
    if minimum is not None and minimum < 0:
        raise ValidationError("Minimum rate cannot be negative", field=field)
    if maximum is not None and maximum < 0:
        raise ValidationError("Maximum rate cannot be negative", field=field)
    if minimum is not None and maximum is not None and maximum <= minimum:
        raise ValidationError(
            "Maximum rate must be greater than minimum rate", field=field
        )


def _check_adjustment_value(method: AdjustmentMethod, value: Decimal, field: str) -> None:
    if method == AdjustmentMethod.PERCENTAGE and value < -100:
        raise ValidationError(
            "Percentage adjustment cannot be less than -100%", field=field
        )
    if method == AdjustmentMethod.MULTIPLIER and value <= 0:
        raise ValidationError("Multiplier adjustment must be greater than 0", field=field)
    if method == AdjustmentMethod.SET_RATE and value < 0:
        raise ValidationError("Set rate cannot be negative", field=field)


class SeasonalRatePolicy:
    """Правила корректности сезонной корректировки."""

    @staticmethod
    def validate(rate: SeasonalRate) -> None:
        if rate.end_date <= rate.start_date:
            raise ValidationError("End date must be after start date", field="end_date")
        if not rate.room_type_rates:
            raise ValidationError(
                "At least one room type rate is required", field="room_type_rates"
            )
        for index, room_rate in enumerate(rate.room_type_rates):
            field = f"room_type_rates.{index}"
            _check_adjustment_value(
                room_rate.adjustment_type,
                room_rate.adjustment_value,
                f"{field}.adjustment_value",
            )
            _check_rate_bounds(
                room_rate.minimum_rate, room_rate.maximum_rate, f"{field}.maximum_rate"
            )


class DynamicPricingRulePolicy:
    """Правила корректности правила динамического ценообразования."""

    @staticmethod
    def validate(rule: DynamicPricingRule) -> None:
        if not rule.conditions:
            raise ValidationError("At least one condition is required", field="conditions")
        if not rule.adjustments:
            raise ValidationError(
                "At least one adjustment is required", field="adjustments"
            )
        if rule.valid_to <= rule.valid_from:
            raise ValidationError(
                "Valid to date must be after valid from date", field="valid_to"
            )
        for index, condition in enumerate(rule.conditions):
            DynamicPricingRulePolicy._validate_condition(condition, f"conditions.{index}")
        for index, adjustment in enumerate(rule.adjustments):
            field = f"adjustments.{index}"
            _check_adjustment_value(adjustment.method, adjustment.value, f"{field}.value")
            _check_rate_bounds(adjustment.min_rate, adjustment.max_rate, f"{field}.max_rate")
        _check_rate_bounds(rule.min_rate, rule.max_rate, "max_rate")

    @staticmethod
    def _validate_condition(condition: PricingCondition, field: str) -> None:
        multi = condition.operator in (
            ConditionOperator.IN,
            ConditionOperator.NOT_IN,
            ConditionOperator.BETWEEN,
        )
        if multi and not isinstance(condition.value, list):
            raise ValidationError(
                f"Operator {condition.operator.value} requires a list value",
                field=f"{field}.value",
            )
        if not multi and isinstance(condition.value, list):
            raise ValidationError(
                f"Operator {condition.operator.value} requires a single value",
                field=f"{field}.value",
            )
        if condition.operator == ConditionOperator.BETWEEN and len(condition.value) != 2:
            raise ValidationError(
                "Between operator requires exactly two values", field=f"{field}.value"
            )
        if condition.type == ConditionType.DAY_OF_WEEK:
            days = condition.value if isinstance(condition.value, list) else [condition.value]
            if any(day < 0 or day > 6 for day in days):
                raise ValidationError(
                    "Day of week must be between 0 (Sunday) and 6 (Saturday)",
                    field=f"{field}.value",
                )


class PromotionPolicy:
    """Правила корректности промоакции."""

    @staticmethod
    def validate(promotion: Promotion) -> None:
        if promotion.valid_to <= promotion.valid_from:
            raise ValidationError(
                "Valid to date must be after valid from date", field="valid_to"
            )
        if promotion.discount_value <= 0:
            raise ValidationError(
                "Discount value must be greater than 0", field="discount_value"
            )
        if (
            promotion.discount_type == DiscountType.PERCENTAGE
            and promotion.discount_value > 100
        ):
            raise ValidationError(
                "Percentage discount cannot exceed 100%", field="discount_value"
            )
        if promotion.max_discount is not None and promotion.max_discount <= 0:
            raise ValidationError(
                "Maximum discount must be greater than 0", field="max_discount"
            )
        if promotion.promotion_type != PromotionType.PUBLIC and not promotion.code:
            raise ValidationError(
                "Promotion code is required for non-public promotions", field="code"
            )
        for index, condition in enumerate(promotion.conditions):
            PromotionPolicy._validate_condition(condition, f"conditions.{index}.value")

    @staticmethod
    def _validate_condition(condition: PromotionCondition, field: str) -> None:
        value = condition.value
        kind = condition.type
        if kind in (
            PromotionConditionType.MINIMUM_STAY,
            PromotionConditionType.ADVANCE_BOOKING,
            PromotionConditionType.MINIMUM_AMOUNT,
        ):
            if isinstance(value, (list, dict)) or value is None:
                raise ValidationError(f"{kind.value} requires a number", field=field)
            try:
                number = Decimal(str(value))
            except ArithmeticError:
                raise ValidationError(f"{kind.value} requires a number", field=field)
            if number < 0:
                raise ValidationError(f"{kind.value} cannot be negative", field=field)
        elif kind == PromotionConditionType.BOOKING_WINDOW:
            if not isinstance(value, (list, tuple)) or len(value) != 2:
                raise ValidationError(
                    "booking_window requires [min_days, max_days]", field=field
                )
        elif not isinstance(value, (list, tuple)):
            raise ValidationError(f"{kind.value} requires a list", field=field)

    @staticmethod
    def booking_window(condition: PromotionCondition) -> Tuple[int, int]:
        low, high = condition.value
        return int(low), int(high)


class TaxConfigurationPolicy:
    """Правила корректности налоговой конфигурации."""

    @staticmethod
    def validate(config: TaxConfiguration) -> None:
        if config.is_percentage and config.rate > 100:
            raise ValidationError("Percentage tax rate cannot exceed 100%", field="rate")
        if config.valid_to is not None and config.valid_to < config.valid_from:
            raise ValidationError(
                "Valid to date must not be before valid from date", field="valid_to"
            )
