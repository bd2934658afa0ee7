"""
Прикладные сервисы конфигурации ценообразования.

Создание, изменение, удаление и просмотр сезонных корректировок, правил
динамического ценообразования, промоакций и налогов. Каждое изменение
проходит доменную валидацию и проверку ссылок на объект размещения
и типы номеров.
"""

from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Type, TypeVar, Union

from pydantic import BaseModel, Field
from shared_kernel import (
    ConflictError,
    EntityId,
    NotFoundError,
    now,
    parse_request,
)
from shared_kernel.infrastructure import StdLogger
from shared_kernel.interfaces import ILogger, IPropertyCatalog

from .domain import (
    AdjustmentMethod,
    AdjustmentType,
    ChargeType,
    ConditionOperator,
    ConditionType,
    DiscountType,
    DynamicPricingRule,
    DynamicPricingRulePolicy,
    DynamicPricingType,
    OccupancySnapshot,
    PricingAdjustment,
    PricingCondition,
    Promotion,
    PromotionCondition,
    PromotionConditionType,
    PromotionPolicy,
    PromotionType,
    PromotionUsage,
    SeasonalRate,
    SeasonalRatePolicy,
    SeasonalRoomTypeRate,
    TaxConfiguration,
    TaxConfigurationPolicy,
)
from .interfaces import IPricingUnitOfWork
from .rules import (
    DynamicPricingRuleEngine,
    PromotionContext,
    PromotionValidator,
    SeasonalAdjustmentEngine,
)

ModelT = TypeVar("ModelT", bound=BaseModel)
Payload = Union[BaseModel, Mapping[str, Any]]

# ===================================================================
# Команды
# ===================================================================


class CreateSeasonalRateRequest(BaseModel):
    """Команда создания сезонной корректировки."""

    property_id: EntityId
    name: str
    description: Optional[str] = None
    start_date: date
    end_date: date
    priority: int = 0
    room_type_rates: List[SeasonalRoomTypeRate]
    is_active: bool = True


class UpdateSeasonalRateRequest(BaseModel):
    """Команда изменения сезонной корректировки."""

    name: Optional[str] = None
    description: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    priority: Optional[int] = None
    room_type_rates: Optional[List[SeasonalRoomTypeRate]] = None
    is_active: Optional[bool] = None


class CreateDynamicPricingRuleRequest(BaseModel):
    """Команда создания правила динамического ценообразования."""

    property_id: EntityId
    name: str
    description: Optional[str] = None
    type: DynamicPricingType
    priority: int = 0
    conditions: List[PricingCondition]
    adjustments: List[PricingAdjustment]
    valid_from: date
    valid_to: date
    applicable_room_types: Optional[List[EntityId]] = None
    min_rate: Optional[Decimal] = None
    max_rate: Optional[Decimal] = None
    is_active: bool = True


class UpdateDynamicPricingRuleRequest(BaseModel):
    """Команда изменения правила динамического ценообразования."""

    name: Optional[str] = None
    description: Optional[str] = None
    type: Optional[DynamicPricingType] = None
    priority: Optional[int] = None
    conditions: Optional[List[PricingCondition]] = None
    adjustments: Optional[List[PricingAdjustment]] = None
    valid_from: Optional[date] = None
    valid_to: Optional[date] = None
    applicable_room_types: Optional[List[EntityId]] = None
    min_rate: Optional[Decimal] = None
    max_rate: Optional[Decimal] = None
    is_active: Optional[bool] = None


class CreatePromotionRequest(BaseModel):
    """Команда создания промоакции."""

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
    max_total_usage: Optional[int] = None
    max_usage_per_guest: Optional[int] = None
    is_active: bool = True


class UpdatePromotionRequest(BaseModel):
    """Команда изменения промоакции."""

    code: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    discount_type: Optional[DiscountType] = None
    discount_value: Optional[Decimal] = None
    max_discount: Optional[Decimal] = None
    valid_from: Optional[datetime] = None
    valid_to: Optional[datetime] = None
    applicable_room_types: Optional[List[EntityId]] = None
    conditions: Optional[List[PromotionCondition]] = None
    is_active: Optional[bool] = None


class CreateTaxConfigurationRequest(BaseModel):
    """Команда создания налога или сбора."""

    property_id: EntityId
    name: str
    type: ChargeType
    rate: Decimal
    is_percentage: bool = True
    is_inclusive: bool = False
    is_active: bool = True
    valid_from: date
    valid_to: Optional[date] = None
    applicable_room_types: Optional[List[EntityId]] = None


class UpdateTaxConfigurationRequest(BaseModel):
    """Команда изменения налога или сбора."""

    name: Optional[str] = None
    rate: Optional[Decimal] = None
    is_percentage: Optional[bool] = None
    is_inclusive: Optional[bool] = None
    is_active: Optional[bool] = None
    valid_from: Optional[date] = None
    valid_to: Optional[date] = None
    applicable_room_types: Optional[List[EntityId]] = None


# ===================================================================
# Базовый сервис
# ===================================================================


class _ConfigurationService:
    """Общие проверки ссылок и слияние изменений."""

    def __init__(
        self,
        uow: IPricingUnitOfWork,
        catalog: IPropertyCatalog,
        logger: Optional[ILogger] = None,
    ):
        self.uow = uow
        self.catalog = catalog
        self.logger = logger or StdLogger("hotel.pricing.config")

    async def _require_property(self, property_id: EntityId) -> None:
        if await self.catalog.find_property(property_id) is None:
            raise NotFoundError(f"Property {property_id} not found")

    async def _require_room_types(
        self, property_id: EntityId, room_type_ids: Iterable[EntityId]
    ) -> None:
        missing = []
        for room_type_id in room_type_ids:
            room_type = await self.catalog.find_room_type(room_type_id)
            if room_type is None or room_type.property_id != property_id:
                missing.append(str(room_type_id))
        if missing:
            raise NotFoundError(f"Room types not found: {', '.join(missing)}")

    @staticmethod
    def _merge(model_class: Type[ModelT], existing: ModelT, changes: BaseModel) -> ModelT:
        data: Dict[str, Any] = existing.model_dump()
        data.update(changes.model_dump(exclude_unset=True))
        data["updated_at"] = now()
        return parse_request(model_class, data)


# ===================================================================
# Сезонные корректировки
# ===================================================================


class SeasonalPricingService(_ConfigurationService):
    """Управление сезонными корректировками."""

    async def create_seasonal_rate(self, payload: Payload) -> SeasonalRate:
        """Создает сезонную корректировку."""
        request = parse_request(CreateSeasonalRateRequest, payload)
        rate = parse_request(SeasonalRate, request.model_dump())
        await self._validate(rate)

        async with self.uow:
            await self.uow.seasonal_rates.save(rate)

        self.logger.info("Seasonal rate created", rate_id=rate.id, name=rate.name)
        return rate

    async def update_seasonal_rate(self, rate_id: EntityId, payload: Payload) -> SeasonalRate:
        """Изменяет сезонную корректировку."""
        changes = parse_request(UpdateSeasonalRateRequest, payload)
        existing = await self.get_seasonal_rate(rate_id)
        rate = self._merge(SeasonalRate, existing, changes)
        await self._validate(rate)

        async with self.uow:
            await self.uow.seasonal_rates.save(rate)

        self.logger.info("Seasonal rate updated", rate_id=rate.id)
        return rate

    async def delete_seasonal_rate(self, rate_id: EntityId) -> None:
        await self.get_seasonal_rate(rate_id)
        async with self.uow:
            await self.uow.seasonal_rates.delete(rate_id)
        self.logger.info("Seasonal rate deleted", rate_id=rate_id)

    async def get_seasonal_rate(self, rate_id: EntityId) -> SeasonalRate:
        rate = await self.uow.seasonal_rates.get_by_id(rate_id)
        if rate is None:
            raise NotFoundError(f"Seasonal rate {rate_id} not found")
        return rate

    async def list_seasonal_rates(
        self, property_id: EntityId, active_only: bool = False
    ) -> List[SeasonalRate]:
        rates = await self.uow.seasonal_rates.list_by_property(property_id, active_only)
        return sorted(rates, key=lambda r: (r.start_date, r.priority, str(r.id)))

    async def toggle_seasonal_rate(self, rate_id: EntityId, is_active: bool) -> SeasonalRate:
        """Включает или выключает сезонную корректировку."""
        return await self.update_seasonal_rate(rate_id, {"is_active": is_active})

    async def get_adjustments_for_date(
        self, property_id: EntityId, room_type_id: EntityId, day: date
    ) -> List[SeasonalRate]:
        """Сезонные корректировки, которые будут применены к дате, в порядке применения."""
        rates = await self.uow.seasonal_rates.find_for_period(property_id, day, day)
        return SeasonalAdjustmentEngine().matching(rates, day, room_type_id)

    async def _validate(self, rate: SeasonalRate) -> None:
        SeasonalRatePolicy.validate(rate)
        await self._require_property(rate.property_id)
        await self._require_room_types(rate.property_id, rate.room_type_ids())
        if not rate.is_active:
            return

        room_types = set(rate.room_type_ids())
        existing = await self.uow.seasonal_rates.find_for_period(
            rate.property_id, rate.start_date, rate.end_date
        )
        for other in existing:
            if other.id == rate.id or not other.is_active:
                continue
            if other.priority > rate.priority and room_types & set(other.room_type_ids()):
                raise ConflictError(
                    f"Seasonal rate overlaps higher-priority rate '{other.name}'"
                )


# ===================================================================
# Динамическое ценообразование
# ===================================================================


class DynamicPricingRuleService(_ConfigurationService):
    """Управление правилами динамического ценообразования."""

    def __init__(
        self,
        uow: IPricingUnitOfWork,
        catalog: IPropertyCatalog,
        logger: Optional[ILogger] = None,
        clock: Callable[[], datetime] = now,
    ):
        super().__init__(uow, catalog, logger)
        self.clock = clock
        self.engine = DynamicPricingRuleEngine(clock=clock)

    async def create_rule(self, payload: Payload) -> DynamicPricingRule:
        """Создает правило."""
        request = parse_request(CreateDynamicPricingRuleRequest, payload)
        rule = parse_request(DynamicPricingRule, request.model_dump())
        await self._validate(rule)

        async with self.uow:
            await self.uow.dynamic_rules.save(rule)

        self.logger.info("Dynamic pricing rule created", rule_id=rule.id, name=rule.name)
        return rule

    async def update_rule(self, rule_id: EntityId, payload: Payload) -> DynamicPricingRule:
        changes = parse_request(UpdateDynamicPricingRuleRequest, payload)
        existing = await self.get_rule(rule_id)
        rule = self._merge(DynamicPricingRule, existing, changes)
        await self._validate(rule)

        async with self.uow:
            await self.uow.dynamic_rules.save(rule)

        self.logger.info("Dynamic pricing rule updated", rule_id=rule.id)
        return rule

    async def delete_rule(self, rule_id: EntityId) -> None:
        await self.get_rule(rule_id)
        async with self.uow:
            await self.uow.dynamic_rules.delete(rule_id)
        self.logger.info("Dynamic pricing rule deleted", rule_id=rule_id)

    async def get_rule(self, rule_id: EntityId) -> DynamicPricingRule:
        rule = await self.uow.dynamic_rules.get_by_id(rule_id)
        if rule is None:
            raise NotFoundError(f"Dynamic pricing rule {rule_id} not found")
        return rule

    async def list_rules(
        self, property_id: EntityId, active_only: bool = False
    ) -> List[DynamicPricingRule]:
        rules = await self.uow.dynamic_rules.list_by_property(property_id, active_only)
        return sorted(rules, key=lambda r: (r.priority, str(r.id)))

    async def toggle_rule(self, rule_id: EntityId, is_active: bool) -> DynamicPricingRule:
        return await self.update_rule(rule_id, {"is_active": is_active})

    async def evaluate(
        self,
        rule_id: EntityId,
        occupancy: OccupancySnapshot,
        length_of_stay: int,
        room_type_id: EntityId,
    ) -> bool:
        """Проверяет, сработает ли правило для даты из снимка загрузки."""
        rule = await self.get_rule(rule_id)
        return self.engine.evaluate_rule(
            rule, occupancy, occupancy.date, length_of_stay, room_type_id
        )

    async def create_predefined_rules(self, property_id: EntityId) -> List[DynamicPricingRule]:
        """Создает набор типовых правил для объекта размещения."""
        valid_from = self.clock().date()
        valid_to = valid_from + timedelta(days=365)
        templates = [
            ("High Occupancy Premium", DynamicPricingType.OCCUPANCY_BASED, 100,
             ConditionType.OCCUPANCY_RATE, ConditionOperator.GREATER_THAN, 80,
             AdjustmentType.OCCUPANCY_BASED, Decimal("15"), Decimal("25")),
            ("Last Minute Booking Premium", DynamicPricingType.ADVANCE_BOOKING, 90,
             ConditionType.ADVANCE_BOOKING_DAYS, ConditionOperator.LESS_THAN_OR_EQUAL, 3,
             AdjustmentType.ADVANCE_BOOKING, Decimal("10"), Decimal("20")),
            ("Extended Stay Discount", DynamicPricingType.LENGTH_OF_STAY, 80,
             ConditionType.LENGTH_OF_STAY, ConditionOperator.GREATER_THAN, 7,
             AdjustmentType.LENGTH_OF_STAY, Decimal("-10"), Decimal("15")),
            ("Weekend Premium", DynamicPricingType.DAY_OF_WEEK, 70,
             ConditionType.DAY_OF_WEEK, ConditionOperator.IN, [5, 6],
             AdjustmentType.DAY_OF_WEEK, Decimal("20"), Decimal("30")),
        ]

        created = []
        for (name, rule_type, priority, condition_type, operator, value,
             adjustment_type, adjustment_value, max_adjustment) in templates:
            rule = await self.create_rule(
                CreateDynamicPricingRuleRequest(
                    property_id=property_id,
                    name=name,
                    type=rule_type,
                    priority=priority,
                    conditions=[
                        PricingCondition(type=condition_type, operator=operator, value=value)
                    ],
                    adjustments=[
                        PricingAdjustment(
                            type=adjustment_type,
                            method=AdjustmentMethod.PERCENTAGE,
                            value=adjustment_value,
                            max_adjustment=max_adjustment,
                        )
                    ],
                    valid_from=valid_from,
                    valid_to=valid_to,
                )
            )
            created.append(rule)
        return created

    async def _validate(self, rule: DynamicPricingRule) -> None:
        DynamicPricingRulePolicy.validate(rule)
        await self._require_property(rule.property_id)
        if rule.applicable_room_types:
            await self._require_room_types(rule.property_id, rule.applicable_room_types)


# ===================================================================
# Промоакции
# ===================================================================


class PromotionService(_ConfigurationService):
    """Управление промоакциями."""

    def __init__(
        self,
        uow: IPricingUnitOfWork,
        catalog: IPropertyCatalog,
        logger: Optional[ILogger] = None,
        clock: Callable[[], datetime] = now,
    ):
        super().__init__(uow, catalog, logger)
        self.clock = clock
        self.validator = PromotionValidator()

    async def create_promotion(self, payload: Payload) -> Promotion:
        """Создает промоакцию."""
        request = parse_request(CreatePromotionRequest, payload)
        data = request.model_dump(exclude={"max_total_usage", "max_usage_per_guest"})
        data["usage"] = PromotionUsage(
            max_total_usage=request.max_total_usage,
            max_usage_per_guest=request.max_usage_per_guest,
        )
        promotion = parse_request(Promotion, data)
        await self._validate(promotion)

        async with self.uow:
            await self.uow.promotions.save(promotion)

        self.logger.info(
            "Promotion created", promotion_id=promotion.id, code=promotion.code
        )
        return promotion

    async def update_promotion(self, promotion_id: EntityId, payload: Payload) -> Promotion:
        """Изменяет промоакцию. Счетчики использования не меняются."""
        changes = parse_request(UpdatePromotionRequest, payload)
        existing = await self.get_promotion(promotion_id)
        promotion = self._merge(Promotion, existing, changes)
        await self._validate(promotion)

        async with self.uow:
            await self.uow.promotions.save(promotion)

        self.logger.info("Promotion updated", promotion_id=promotion.id)
        return promotion

    async def delete_promotion(self, promotion_id: EntityId) -> None:
        await self.get_promotion(promotion_id)
        async with self.uow:
            await self.uow.promotions.delete(promotion_id)
        self.logger.info("Promotion deleted", promotion_id=promotion_id)

    async def get_promotion(self, promotion_id: EntityId) -> Promotion:
        promotion = await self.uow.promotions.get_by_id(promotion_id)
        if promotion is None:
            raise NotFoundError(f"Promotion {promotion_id} not found")
        return promotion

    async def get_by_code(self, property_id: EntityId, code: str) -> Promotion:
        promotion = await self.uow.promotions.get_by_code(property_id, code)
        if promotion is None:
            raise NotFoundError(f"Promotion code {code} not found")
        return promotion

    async def list_promotions(
        self, property_id: EntityId, active_only: bool = False
    ) -> List[Promotion]:
        promotions = await self.uow.promotions.list_by_property(property_id, active_only)
        return sorted(promotions, key=lambda p: (p.valid_from, str(p.id)))

    async def toggle_promotion(self, promotion_id: EntityId, is_active: bool) -> Promotion:
        return await self.update_promotion(promotion_id, {"is_active": is_active})

    async def validate_code(
        self,
        property_id: EntityId,
        code: str,
        context: PromotionContext,
    ) -> Dict[str, Any]:
        """Проверяет промокод и показывает размер скидки без применения."""
        promotion = await self.uow.promotions.get_by_code(property_id, code)
        if promotion is None:
            return {"is_valid": False, "reason": "Promotion code not found"}
        reason = self.validator.validate(promotion, context)
        if reason:
            return {"is_valid": False, "reason": reason, "promotion_id": promotion.id}
        property_ = await self.catalog.find_property(property_id)
        currency = property_.currency if property_ else "USD"
        return {
            "is_valid": True,
            "promotion_id": promotion.id,
            "discount_amount": self.validator.calculate_discount(
                promotion, context.base_amount, currency
            ),
        }

    async def _validate(self, promotion: Promotion) -> None:
        PromotionPolicy.validate(promotion)
        await self._require_property(promotion.property_id)

        room_types = list(promotion.applicable_room_types or [])
        for condition in promotion.conditions:
            if condition.type == PromotionConditionType.ROOM_TYPES:
                room_types.extend(EntityId(str(item)) for item in condition.value)
        if room_types:
            await self._require_room_types(promotion.property_id, room_types)

        if promotion.code and promotion.is_active:
            duplicate = await self.uow.promotions.get_by_code(
                promotion.property_id, promotion.code
            )
            if duplicate is not None and duplicate.id != promotion.id and duplicate.is_active:
                raise ConflictError(f"Promotion code {promotion.code} already exists")


# ===================================================================
# Налоги и сборы
# ===================================================================


class TaxConfigurationService(_ConfigurationService):
    """Управление налогами и сборами."""

    async def create_tax(self, payload: Payload) -> TaxConfiguration:
        request = parse_request(CreateTaxConfigurationRequest, payload)
        config = parse_request(TaxConfiguration, request.model_dump())
        await self._validate(config)

        async with self.uow:
            await self.uow.taxes.save(config)

        self.logger.info("Tax configuration created", tax_id=config.id, name=config.name)
        return config

    async def update_tax(self, config_id: EntityId, payload: Payload) -> TaxConfiguration:
        changes = parse_request(UpdateTaxConfigurationRequest, payload)
        existing = await self.get_tax(config_id)
        data = existing.model_dump()
        data.update(changes.model_dump(exclude_unset=True))
        config = parse_request(TaxConfiguration, data)
        await self._validate(config)

        async with self.uow:
            await self.uow.taxes.save(config)

        self.logger.info("Tax configuration updated", tax_id=config.id)
        return config

    async def delete_tax(self, config_id: EntityId) -> None:
        await self.get_tax(config_id)
        async with self.uow:
            await self.uow.taxes.delete(config_id)
        self.logger.info("Tax configuration deleted", tax_id=config_id)

    async def get_tax(self, config_id: EntityId) -> TaxConfiguration:
        config = await self.uow.taxes.get_by_id(config_id)
        if config is None:
            raise NotFoundError(f"Tax configuration {config_id} not found")
        return config

    async def list_taxes(
        self, property_id: EntityId, active_only: bool = False
    ) -> List[TaxConfiguration]:
        configs = await self.uow.taxes.list_by_property(property_id, active_only)
        return sorted(configs, key=lambda c: (c.name, str(c.id)))

    async def list_active(self, property_id: EntityId, on_date: date) -> List[TaxConfiguration]:
        """Налоги, действующие на дату, для любого типа номера."""
        configs = await self.list_taxes(property_id, active_only=True)
        return [
            c
            for c in configs
            if c.valid_from <= on_date and (c.valid_to is None or on_date <= c.valid_to)
        ]

    async def _validate(self, config: TaxConfiguration) -> None:
        TaxConfigurationPolicy.validate(config)
        await self._require_property(config.property_id)
        if config.applicable_room_types:
            await self._require_room_types(config.property_id, config.applicable_room_types)
