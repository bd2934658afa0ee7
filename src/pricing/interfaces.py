"""
Интерфейсы (порты) для контекста ценообразования.
"""

from __future__ import annotations

from datetime import date
from typing import Dict, List, Optional, Protocol

from shared_kernel import EntityId

from .domain import (
    DynamicPricingRule,
    OccupancySnapshot,
    Promotion,
    RateRecord,
    RateType,
    SeasonalRate,
    TaxConfiguration,
)


class IRateRepository(Protocol):
    """Интерфейс хранилища тарифных записей."""

    async def find_rates(
        self,
        property_id: EntityId,
        room_type_id: EntityId,
        start_date: date,
        end_date: date,
        rate_type: RateType = RateType.BASE,
    ) -> List[RateRecord]: ...
    async def upsert(self, record: RateRecord) -> RateRecord: ...


class ISeasonalRateRepository(Protocol):
    """Интерфейс хранилища сезонных корректировок."""

    async def get_by_id(self, rate_id: EntityId) -> Optional[SeasonalRate]: ...
    async def list_by_property(
        self, property_id: EntityId, active_only: bool = False
    ) -> List[SeasonalRate]: ...
    async def find_for_period(
        self, property_id: EntityId, start_date: date, end_date: date
    ) -> List[SeasonalRate]: ...
    async def save(self, rate: SeasonalRate) -> None: ...
    async def delete(self, rate_id: EntityId) -> None: ...


class IDynamicPricingRuleRepository(Protocol):
    """Интерфейс хранилища правил динамического ценообразования."""

    async def get_by_id(self, rule_id: EntityId) -> Optional[DynamicPricingRule]: ...
    async def list_by_property(
        self, property_id: EntityId, active_only: bool = False
    ) -> List[DynamicPricingRule]: ...
    async def save(self, rule: DynamicPricingRule) -> None: ...
    async def delete(self, rule_id: EntityId) -> None: ...


class IPromotionRepository(Protocol):
    """Интерфейс хранилища промоакций."""

    async def get_by_id(self, promotion_id: EntityId) -> Optional[Promotion]: ...
    async def get_by_code(
        self, property_id: EntityId, code: str
    ) -> Optional[Promotion]: ...
    async def list_by_property(
        self, property_id: EntityId, active_only: bool = False
    ) -> List[Promotion]: ...
    async def save(self, promotion: Promotion) -> None: ...
    async def delete(self, promotion_id: EntityId) -> None: ...


class ITaxConfigurationRepository(Protocol):
    """Интерфейс хранилища налоговых конфигураций."""

    async def get_by_id(self, config_id: EntityId) -> Optional[TaxConfiguration]: ...
    async def list_by_property(
        self, property_id: EntityId, active_only: bool = False
    ) -> List[TaxConfiguration]: ...
    async def save(self, config: TaxConfiguration) -> None: ...
    async def delete(self, config_id: EntityId) -> None: ...


class IOccupancyProvider(Protocol):
    """Источник показателей загрузки."""

    async def get_occupancy(
        self, property_id: EntityId, dates: List[date]
    ) -> Dict[date, OccupancySnapshot]: ...


class IPricingUnitOfWork(Protocol):
    """Интерфейс Unit of Work для контекста ценообразования."""

    rates: IRateRepository
    seasonal_rates: ISeasonalRateRepository
    dynamic_rules: IDynamicPricingRuleRepository
    promotions: IPromotionRepository
    taxes: ITaxConfigurationRepository

    async def __aenter__(self) -> IPricingUnitOfWork: ...
    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None: ...
    async def commit(self) -> None: ...
    async def rollback(self) -> None: ...
