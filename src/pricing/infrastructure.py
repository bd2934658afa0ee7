"""
Инфраструктурный слой контекста ценообразования.

In-memory реализации хранилищ конфигурации, источника загрузки и Unit of Work.
"""

from datetime import date
from typing import Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel
from shared_kernel import ConflictError, EntityId
from shared_kernel.infrastructure import StdLogger
from shared_kernel.interfaces import ILogger

from .domain import (
    DynamicPricingRule,
    OccupancySnapshot,
    Promotion,
    RateRecord,
    RateType,
    SeasonalRate,
    TaxConfiguration,
)
from .interfaces import IPricingUnitOfWork

T = TypeVar("T", bound=BaseModel)


class _InMemoryStore(Generic[T]):
    """Базовое хранилище: отдает копии, чтобы изменения попадали только через save."""

    def __init__(self) -> None:
        self._items: Dict[EntityId, T] = {}

    async def get_by_id(self, item_id: EntityId) -> Optional[T]:
        item = self._items.get(item_id)
        return item.model_copy(deep=True) if item else None

    async def list_by_property(
        self, property_id: EntityId, active_only: bool = False
    ) -> List[T]:
        return [
            item.model_copy(deep=True)
            for item in self._items.values()
            if item.property_id == property_id and (item.is_active or not active_only)
        ]

    async def save(self, item: T) -> None:
        self._items[item.id] = item.model_copy(deep=True)

    async def delete(self, item_id: EntityId) -> None:
        self._items.pop(item_id, None)


class InMemoryRateRepository:
    """Тарифные записи в памяти: одна активная запись на (тип номера, дата, тип тарифа)."""

    def __init__(self) -> None:
        self._records: Dict[tuple, RateRecord] = {}

    async def find_rates(
        self,
        property_id: EntityId,
        room_type_id: EntityId,
        start_date: date,
        end_date: date,
        rate_type: RateType = RateType.BASE,
    ) -> List[RateRecord]:
        result = [
            record
            for record in self._records.values()
            if record.property_id == property_id
            and record.room_type_id == room_type_id
            and record.rate_type == rate_type
            and start_date <= record.date < end_date
        ]
        return sorted(result, key=lambda record: record.date)

    async def upsert(self, record: RateRecord) -> RateRecord:
        key = (record.property_id, record.room_type_id, record.date, record.rate_type)
        self._records[key] = record
        return record


class InMemorySeasonalRateRepository(_InMemoryStore[SeasonalRate]):
    """Сезонные корректировки в памяти."""

    async def find_for_period(
        self, property_id: EntityId, start_date: date, end_date: date
    ) -> List[SeasonalRate]:
        return [
            rate.model_copy(deep=True)
            for rate in self._items.values()
            if rate.property_id == property_id
            and rate.start_date <= end_date
            and rate.end_date >= start_date
        ]


class InMemoryDynamicPricingRuleRepository(_InMemoryStore[DynamicPricingRule]):
    """Правила динамического ценообразования в памяти."""


class InMemoryPromotionRepository(_InMemoryStore[Promotion]):
    """Промоакции в памяти с индексом активных кодов."""

    async def get_by_code(self, property_id: EntityId, code: str) -> Optional[Promotion]:
        normalized = code.strip().upper()
        for promotion in self._items.values():
            if promotion.property_id == property_id and promotion.code == normalized:
                return promotion.model_copy(deep=True)
        return None

    async def save(self, item: Promotion) -> None:
        if item.code and item.is_active:
            for other in self._items.values():
                if (
                    other.id != item.id
                    and other.is_active
                    and other.property_id == item.property_id
                    and other.code == item.code
                ):
                    raise ConflictError(f"Promotion code {item.code} already exists")
        await super().save(item)


class InMemoryTaxConfigurationRepository(_InMemoryStore[TaxConfiguration]):
    """Налоговые конфигурации в памяти."""


class InMemoryOccupancyProvider:
    """Показатели загрузки, заданные вручную; по умолчанию нулевые."""

    def __init__(self) -> None:
        self._snapshots: Dict[tuple, OccupancySnapshot] = {}

    def set_occupancy(self, property_id: EntityId, snapshot: OccupancySnapshot) -> None:
        self._snapshots[(property_id, snapshot.date)] = snapshot

    async def get_occupancy(
        self, property_id: EntityId, dates: List[date]
    ) -> Dict[date, OccupancySnapshot]:
        return {
            day: self._snapshots.get((property_id, day), OccupancySnapshot(date=day))
            for day in dates
        }


class PricingUnitOfWork(IPricingUnitOfWork):
    """
    Единица работы для конфигурации ценообразования.

    Каждая операция сохраняет не более одного агрегата, и сохранение
    выполняется после всех проверок, поэтому откатывать нечего.
    """

    def __init__(self, logger: Optional[ILogger] = None) -> None:
        self.rates = InMemoryRateRepository()
        self.seasonal_rates = InMemorySeasonalRateRepository()
        self.dynamic_rules = InMemoryDynamicPricingRuleRepository()
        self.promotions = InMemoryPromotionRepository()
        self.taxes = InMemoryTaxConfigurationRepository()
        self._logger = logger or StdLogger("hotel.pricing.uow")
        self._committed = True

    async def __aenter__(self) -> "PricingUnitOfWork":
        self._committed = False
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if exc_type:
            await self.rollback()
        else:
            await self.commit()

    async def commit(self) -> None:
        """Фиксирует все изменения в рамках единицы работы."""
        self._committed = True

    async def rollback(self) -> None:
        """Откатывает все изменения в рамках единицы работы."""
        if not self._committed:
            self._logger.warning("PricingUnitOfWork rolled back")
        self._committed = True
