"""
Доменные сервисы расчета цены.

Порядок наложения корректировок фиксирован:
сезонные корректировки (по возрастанию приоритета, затем по id),
правила динамического ценообразования (так же), промоакции, налоги и сборы.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple
from uuid import UUID

from pydantic import BaseModel, Field
from shared_kernel import DateRange, EntityId, ValidationError, now, round_money

from .domain import (
    AdjustmentMethod,
    AdjustmentType,
    ChargeItem,
    ConditionOperator,
    ConditionType,
    DiscountType,
    DynamicPricingRule,
    OccupancySnapshot,
    PricingCondition,
    Promotion,
    PromotionCondition,
    PromotionConditionType,
    PromotionPolicy,
    PromotionType,
    RateAdjustment,
    RateRecord,
    RateType,
    SeasonalRate,
    TaxConfiguration,
)
from .interfaces import IRateRepository

HUNDRED = Decimal("100")


def apply_adjustment(rate: Decimal, method: AdjustmentMethod, value: Decimal) -> Decimal:
    """Применяет один способ корректировки к ставке."""
    if method == AdjustmentMethod.PERCENTAGE:
        return rate * (1 + value / HUNDRED)
    if method == AdjustmentMethod.FIXED_AMOUNT:
        return rate + value
    if method == AdjustmentMethod.MULTIPLIER:
        return rate * value
    if method == AdjustmentMethod.SET_RATE:
        return value
    raise ValidationError(f"Unknown adjustment method: {method}", field="method")


def clamp(
    rate: Decimal, minimum: Optional[Decimal] = None, maximum: Optional[Decimal] = None
) -> Decimal:
    if minimum is not None and rate < minimum:
        rate = minimum
    if maximum is not None and rate > maximum:
        rate = maximum
    return rate


def priority_order(items: Iterable) -> list:
    """Сортирует по возрастанию приоритета; при равенстве по id."""
    return sorted(items, key=lambda item: (item.priority, str(item.id)))


# ===================================================================
# Базовые ставки
# ===================================================================


class RateResolver:
    """Загружает базовые ставки за каждую ночь проживания."""

    def __init__(self, rates: IRateRepository, default_currency: str = "USD"):
        self.rates = rates
        self.default_currency = default_currency

    async def load_base_rates(
        self, property_id: EntityId, room_type_id: EntityId, stay: DateRange
    ) -> Tuple[List[RateRecord], str]:
        """Возвращает ставки по датам и валюту расчета."""
        records = await self.rates.find_rates(
            property_id, room_type_id, stay.check_in, stay.check_out, RateType.BASE
        )
        by_date: Dict[date, RateRecord] = {}
        for record in records:
            if record.is_active:
                by_date.setdefault(record.date, record)

        missing = [day for day in stay.dates() if day not in by_date]
        if missing:
            listed = ", ".join(day.isoformat() for day in missing)
            raise ValidationError(
                f"No base rates found for dates: {listed}", field="check_in"
            )

        ordered = [by_date[day] for day in stay.dates()]
        currencies = {record.currency for record in ordered if record.currency}
        if len(currencies) > 1:
            raise ValidationError(
                "Base rates use mixed currencies: " + ", ".join(sorted(currencies)),
                field="currency",
            )
        currency = currencies.pop() if currencies else self.default_currency
        return ordered, currency


# ===================================================================
# Сезонные корректировки
# ===================================================================


class SeasonalAdjustmentEngine:
    """Последовательно накладывает сезонные корректировки на ставку."""

    def matching(
        self, seasonal_rates: Iterable[SeasonalRate], day: date, room_type_id: EntityId
    ) -> List[SeasonalRate]:
        return [
            season
            for season in priority_order(seasonal_rates)
            if season.is_active
            and season.covers(day)
            and season.rate_for(room_type_id) is not None
        ]

    def apply(
        self,
        rate: Decimal,
        day: date,
        room_type_id: EntityId,
        seasonal_rates: Iterable[SeasonalRate],
        currency: str,
    ) -> Tuple[Decimal, List[RateAdjustment]]:
        running = rate
        lines: List[RateAdjustment] = []
        for season in self.matching(seasonal_rates, day, room_type_id):
            room_rate = season.rate_for(room_type_id)
            before = running
            running = apply_adjustment(
                running, room_rate.adjustment_type, room_rate.adjustment_value
            )
            running = clamp(running, room_rate.minimum_rate, room_rate.maximum_rate)
            running = round_money(max(running, Decimal("0")), currency)
            lines.append(
                RateAdjustment(
                    source="seasonal",
                    source_id=season.id,
                    name=season.name,
                    category=AdjustmentType.SEASONAL,
                    method=room_rate.adjustment_type,
                    value=room_rate.adjustment_value,
                    rate_before=before,
                    rate_after=running,
                    amount=running - before,
                )
            )
        return running, lines


# ===================================================================
# Динамическое ценообразование
# ===================================================================


def _day_of_week(day: date) -> int:
    # 0 = воскресенье .. 6 = суббота
    return day.isoweekday() % 7


class DynamicPricingRuleEngine:
    """Интерпретатор условий и корректировок правил динамического ценообразования."""

    def __init__(self, clock: Callable[[], datetime] = now):
        self.clock = clock
        self._metrics: Dict[
            ConditionType, Callable[[OccupancySnapshot, date, int], Optional[float]]
        ] = {
            ConditionType.OCCUPANCY_RATE: lambda occ, day, los: occ.occupancy_rate,
            ConditionType.ADVANCE_BOOKING_DAYS: lambda occ, day, los: float(
                (day - self.clock().date()).days
            ),
            ConditionType.LENGTH_OF_STAY: lambda occ, day, los: float(los),
            ConditionType.DAY_OF_WEEK: lambda occ, day, los: float(_day_of_week(day)),
            ConditionType.DEMAND_SCORE: lambda occ, day, los: occ.demand_score,
            ConditionType.BOOKING_PACE: lambda occ, day, los: occ.booking_pace,
            ConditionType.COMPETITOR_RATE: lambda occ, day, los: occ.competitor_rate,
        }

    @staticmethod
    def compare(actual: float, operator: ConditionOperator, expected) -> bool:
        if operator == ConditionOperator.EQUALS:
            return actual == expected
        if operator == ConditionOperator.NOT_EQUALS:
            return actual != expected
        if operator == ConditionOperator.GREATER_THAN:
            return actual > expected
        if operator == ConditionOperator.GREATER_THAN_OR_EQUAL:
            return actual >= expected
        if operator == ConditionOperator.LESS_THAN:
            return actual < expected
        if operator == ConditionOperator.LESS_THAN_OR_EQUAL:
            return actual <= expected
        if operator == ConditionOperator.IN:
            return actual in expected
        if operator == ConditionOperator.NOT_IN:
            return actual not in expected
        if operator == ConditionOperator.BETWEEN:
            low, high = expected
            return low <= actual <= high
        raise ValidationError(f"Unknown condition operator: {operator}", field="operator")

    def evaluate_condition(
        self,
        condition: PricingCondition,
        occupancy: OccupancySnapshot,
        day: date,
        length_of_stay: int,
    ) -> bool:
        actual = self._metrics[condition.type](occupancy, day, length_of_stay)
        if actual is None:
            return False
        return self.compare(actual, condition.operator, condition.value)

    def evaluate_rule(
        self,
        rule: DynamicPricingRule,
        occupancy: OccupancySnapshot,
        day: date,
        length_of_stay: int,
        room_type_id: EntityId,
    ) -> bool:
        """Проверяет, применимо ли правило к ночи проживания."""
        if not rule.is_active or not rule.is_valid_on(day):
            return False
        if not rule.applies_to_room_type(room_type_id):
            return False
        return all(
            self.evaluate_condition(condition, occupancy, day, length_of_stay)
            for condition in rule.conditions
        )

    def calculate_adjustment(
        self, rule: DynamicPricingRule, rate: Decimal, currency: str
    ) -> Tuple[Decimal, List[RateAdjustment]]:
        """
        Применяет корректировки правила к ставке.

        max_adjustment ограничивает изменение относительно ставки,
        с которой правило начало работу.
        """
        start = rate
        running = rate
        lines: List[RateAdjustment] = []
        for adjustment in rule.adjustments:
            before = running
            running = apply_adjustment(running, adjustment.method, adjustment.value)
            running = clamp(running, adjustment.min_rate, adjustment.max_rate)
            if adjustment.max_adjustment is not None:
                max_change = start * adjustment.max_adjustment / HUNDRED
                if abs(running - start) > max_change:
                    running = start + max_change if running > start else start - max_change
            running = round_money(max(running, Decimal("0")), currency)
            lines.append(
                RateAdjustment(
                    source="dynamic",
                    source_id=rule.id,
                    name=rule.name,
                    category=adjustment.type,
                    method=adjustment.method,
                    value=adjustment.value,
                    rate_before=before,
                    rate_after=running,
                    amount=running - before,
                )
            )

        bounded = round_money(clamp(running, rule.min_rate, rule.max_rate), currency)
        if bounded != running and lines:
            last = lines[-1]
            lines[-1] = last.model_copy(
                update={"rate_after": bounded, "amount": bounded - last.rate_before}
            )
        return bounded, lines

    def apply(
        self,
        rate: Decimal,
        day: date,
        room_type_id: EntityId,
        rules: Iterable[DynamicPricingRule],
        occupancy: OccupancySnapshot,
        length_of_stay: int,
        currency: str,
    ) -> Tuple[Decimal, List[RateAdjustment]]:
        running = rate
        lines: List[RateAdjustment] = []
        for rule in priority_order(rules):
            if not self.evaluate_rule(rule, occupancy, day, length_of_stay, room_type_id):
                continue
            running, rule_lines = self.calculate_adjustment(rule, running, currency)
            lines.extend(rule_lines)
        return running, lines


# ===================================================================
# Промоакции
# ===================================================================


class PromotionContext(BaseModel):
    """
    Контекст бронирования для проверки промоакции.

    booking_id задается при повторном расчете существующего бронирования:
    его собственное использование промоакции не считается против лимитов.
    """

    property_id: EntityId
    room_type_ids: List[EntityId]
    stay: DateRange
    base_amount: Decimal
    guest_id: Optional[EntityId] = None
    booking_id: Optional[EntityId] = None
    booking_source: Optional[str] = None
    loyalty_member_id: Optional[str] = None
    booked_at: datetime = Field(default_factory=now)

    @property
    def advance_days(self) -> int:
        return (self.stay.check_in - self.booked_at.date()).days


def _as_date(value) -> date:
    return value if isinstance(value, date) else date.fromisoformat(str(value))


def _as_uuid(value) -> UUID:
    return value if isinstance(value, UUID) else UUID(str(value))


class PromotionValidator:
    """Проверяет применимость промоакции и рассчитывает скидку."""

    def validate(self, promotion: Promotion, context: PromotionContext) -> Optional[str]:
        """Возвращает причину отказа или None, если промоакция применима."""
        if not promotion.is_active:
            return "Promotion is not active"
        if promotion.property_id != context.property_id:
            return "Promotion is not valid for this property"
        if not promotion.is_within_validity(context.booked_at):
            return "Promotion is not valid at this time"
        if (
            promotion.promotion_type == PromotionType.LOYALTY
            and not context.loyalty_member_id
        ):
            return "Loyalty membership is required"
        already_used = promotion.is_used_by(context.booking_id)
        if promotion.is_exhausted and not already_used:
            return "Promotion usage limit reached"
        per_guest = promotion.usage.max_usage_per_guest
        if (
            per_guest is not None
            and promotion.usage_count_for(context.guest_id, exclude_booking_id=context.booking_id)
            >= per_guest
        ):
            return "Guest usage limit reached"
        if not self.eligible_room_types(promotion, context):
            return "Promotion is not valid for this room type"
        for condition in promotion.conditions:
            reason = self._check_condition(condition, context)
            if reason:
                return reason
        return None

    def eligible_room_types(
        self, promotion: Promotion, context: PromotionContext
    ) -> List[EntityId]:
        """Типы номеров бронирования, на которые распространяется скидка."""
        eligible = list(context.room_type_ids)
        if promotion.applicable_room_types:
            eligible = [rt for rt in eligible if rt in promotion.applicable_room_types]
        for condition in promotion.conditions:
            if condition.type == PromotionConditionType.ROOM_TYPES:
                allowed = {_as_uuid(item) for item in condition.value}
                eligible = [rt for rt in eligible if rt in allowed]
        return eligible

    def _check_condition(
        self, condition: PromotionCondition, context: PromotionContext
    ) -> Optional[str]:
        kind = condition.type
        value = condition.value
        if kind == PromotionConditionType.MINIMUM_STAY:
            if context.stay.nights < int(value):
                return f"Minimum stay of {int(value)} nights required"
        elif kind == PromotionConditionType.ADVANCE_BOOKING:
            if context.advance_days < int(value):
                return f"Booking must be made at least {int(value)} days in advance"
        elif kind == PromotionConditionType.BOOKING_WINDOW:
            low, high = PromotionPolicy.booking_window(condition)
            if not low <= context.advance_days <= high:
                return f"Booking must be made between {low} and {high} days in advance"
        elif kind == PromotionConditionType.BOOKING_SOURCE:
            allowed = {str(item).lower() for item in value}
            if (context.booking_source or "").lower() not in allowed:
                return "Promotion is not valid for this booking source"
        elif kind == PromotionConditionType.MINIMUM_AMOUNT:
            if context.base_amount < Decimal(str(value)):
                return f"Minimum booking amount of {value} required"
        elif kind == PromotionConditionType.BLACKOUT_DATES:
            if any(context.stay.contains(_as_date(item)) for item in value):
                return "Stay includes blackout dates"
        return None

    def calculate_discount(
        self, promotion: Promotion, amount: Decimal, currency: str
    ) -> Decimal:
        """Скидка от суммы: процент с ограничением max_discount или фиксированная."""
        if promotion.discount_type == DiscountType.PERCENTAGE:
            discount = amount * promotion.discount_value / HUNDRED
            if promotion.max_discount is not None:
                discount = min(discount, promotion.max_discount)
        else:
            discount = promotion.discount_value
        discount = min(max(discount, Decimal("0")), amount)
        return round_money(discount, currency)


def allocate(amount: Decimal, weights: Sequence[Decimal], currency: str) -> List[Decimal]:
    """
    Делит сумму пропорционально весам.

    Доли округляются до минимальной единицы валюты, остаток округления
    получает последняя доля с ненулевым весом, так что сумма долей равна amount.
    """
    shares = [round_money(0, currency) for _ in weights]
    total = sum(weights, Decimal("0"))
    if total <= 0:
        return shares
    last = max(index for index, weight in enumerate(weights) if weight > 0)
    assigned = Decimal("0")
    for index, weight in enumerate(weights):
        if weight <= 0:
            continue
        if index == last:
            shares[index] = round_money(amount - assigned, currency)
        else:
            shares[index] = round_money(amount * weight / total, currency)
            assigned += shares[index]
    return shares


# ===================================================================
# Налоги и сборы
# ===================================================================


class TaxFeeResult(BaseModel):
    """Результат расчета налогов и сборов."""

    taxes: List[ChargeItem] = Field(default_factory=list)
    fees: List[ChargeItem] = Field(default_factory=list)
    tax_amount: Decimal = Decimal("0")
    fee_amount: Decimal = Decimal("0")


class TaxFeeCalculator:
    """
    Применяет налоговые конфигурации.

    Процентные налоги считаются от суммы за вычетом скидок, включенные в цену
    налоги попадают в детализацию, но не в итог. Фиксированные сборы
    добавляются как есть.
    """

    def calculate(
        self,
        configurations: Sequence[TaxConfiguration],
        base_amount: Decimal,
        discount_amount: Decimal,
        room_type_id: EntityId,
        currency: str,
        on_date: date,
    ) -> TaxFeeResult:
        taxable = max(base_amount - discount_amount, Decimal("0"))
        result = TaxFeeResult(
            tax_amount=round_money(0, currency), fee_amount=round_money(0, currency)
        )
        applicable = [c for c in configurations if c.is_applicable(on_date, room_type_id)]
        for config in sorted(applicable, key=lambda c: (c.name, str(c.id))):
            if config.is_percentage:
                if config.is_inclusive:
                    amount = taxable * config.rate / (HUNDRED + config.rate)
                else:
                    amount = taxable * config.rate / HUNDRED
            else:
                amount = config.rate
            item = ChargeItem(
                configuration_id=config.id,
                name=config.name,
                type=config.type,
                rate=config.rate,
                is_percentage=config.is_percentage,
                is_inclusive=config.is_inclusive,
                amount=round_money(amount, currency),
            )
            if config.is_fee:
                result.fees.append(item)
                if not config.is_inclusive:
                    result.fee_amount += item.amount
            else:
                result.taxes.append(item)
                if not config.is_inclusive:
                    result.tax_amount += item.amount
        return result
