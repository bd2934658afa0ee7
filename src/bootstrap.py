from datetime import datetime
from typing import Callable, Optional

from booking.application import create_booking_service
from booking.event_handlers import register_notification_handlers
from booking.infrastructure import BookingUnitOfWork, LoggingNotificationService
from pricing.application import create_pricing_service
from pricing.configuration import (
    DynamicPricingRuleService,
    PromotionService,
    SeasonalPricingService,
    TaxConfigurationService,
)
from pricing.infrastructure import PricingUnitOfWork
from shared_kernel import Settings, get_settings, now
from shared_kernel.infrastructure import (
    InMemoryCacheStore,
    InMemoryEventBus,
    InMemoryPropertyCatalog,
    RedisCacheStore,
    StdLogger,
    configure_logging,
)


def bootstrap_app(
    settings: Optional[Settings] = None,
    use_redis: bool = False,
    clock: Callable[[], datetime] = now,
):
    """Создает и настраивает все компоненты приложения."""
    settings = settings or get_settings()
    configure_logging(settings)
    logger = StdLogger("hotel", settings.log_format)

    # 1. Общие компоненты: каталог объектов, шина событий, кеш
    catalog = InMemoryPropertyCatalog()
    event_bus = InMemoryEventBus(logger=logger)
    if use_redis:
        cache_store = RedisCacheStore(url=settings.redis_url)
    else:
        cache_store = InMemoryCacheStore(clock=clock)

    # 2. Контекст ценообразования
    pricing_uow = PricingUnitOfWork(logger=logger)
    pricing_service = create_pricing_service(
        catalog,
        uow=pricing_uow,
        cache_store=cache_store,
        settings=settings,
        logger=logger,
        clock=clock,
    )

    # 3. Контекст бронирования получает ценообразование через порт
    notifications = LoggingNotificationService(logger=logger)
    booking_service = create_booking_service(
        catalog,
        pricing_service,
        uow=BookingUnitOfWork(logger=logger),
        event_bus=event_bus,
        settings=settings,
        logger=logger,
        clock=clock,
    )

    # 4. Подписываем уведомления на события бронирования
    register_notification_handlers(event_bus, notifications)

    async def close() -> None:
        """Закрывает соединения с внешними хранилищами."""
        if isinstance(cache_store, RedisCacheStore):
            await cache_store.close()

    return {
        "catalog": catalog,
        "event_bus": event_bus,
        "cache_store": cache_store,
        "pricing_service": pricing_service,
        "seasonal_service": SeasonalPricingService(pricing_uow, catalog, logger),
        "dynamic_rule_service": DynamicPricingRuleService(
            pricing_uow, catalog, logger, clock=clock
        ),
        "promotion_service": PromotionService(pricing_uow, catalog, logger, clock=clock),
        "tax_service": TaxConfigurationService(pricing_uow, catalog, logger),
        "booking_service": booking_service,
        "notifications": notifications,
        "close": close,
    }
