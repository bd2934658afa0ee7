"""
Конфигурация тестов для pytest.

Общие фикстуры: фиксированные часы, каталог с отелем и типом номера,
сервисы ценообразования и бронирования на in-memory адаптерах.
"""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest
from booking.application import create_booking_service
from booking.infrastructure import (
    BookingUnitOfWork,
    DummyPaymentGateway,
    LoggingNotificationService,
)
from booking.event_handlers import register_notification_handlers
from pricing.application import create_pricing_service
from pricing.domain import RateRecord
from pricing.infrastructure import InMemoryOccupancyProvider, PricingUnitOfWork
from shared_kernel import Property, RoomType, Settings
from shared_kernel.infrastructure import (
    InMemoryCacheStore,
    InMemoryEventBus,
    InMemoryPropertyCatalog,
)

# Понедельник, полдень UTC
FIXED_NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
CHECK_IN = date(2026, 3, 16)
CHECK_OUT = date(2026, 3, 17)


class FixedClock:
    """Часы, которые двигаются только вручную."""

    def __init__(self, moment: datetime):
        self.moment = moment

    def __call__(self) -> datetime:
        return self.moment

    def advance(self, **kwargs) -> None:
        self.moment += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FixedClock(FIXED_NOW)


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def hotel():
    return Property(name="Grand Hotel", currency="USD")


@pytest.fixture
def room_type(hotel):
    return RoomType(
        property_id=hotel.id,
        name="Standard Double",
        max_occupancy=2,
        base_rate=Decimal("100"),
    )


@pytest.fixture
def suite(hotel):
    return RoomType(
        property_id=hotel.id,
        name="Suite",
        max_occupancy=4,
        base_rate=Decimal("250"),
    )


@pytest.fixture
def catalog(hotel, room_type, suite):
    catalog = InMemoryPropertyCatalog()
    catalog.add_property(hotel)
    catalog.add_room_type(room_type)
    catalog.add_room_type(suite)
    return catalog


@pytest.fixture
def pricing_uow():
    return PricingUnitOfWork()


@pytest.fixture
def occupancy():
    return InMemoryOccupancyProvider()


@pytest.fixture
def cache_store(clock):
    return InMemoryCacheStore(clock=clock)


@pytest.fixture
def seed_rates(pricing_uow, hotel):
    """Заполняет базовые ставки за каждую ночь периода."""

    async def seed(room_type_id, start=CHECK_IN, nights=1, rate="100.00", currency="USD"):
        for offset in range(nights):
            await pricing_uow.rates.upsert(
                RateRecord(
                    property_id=hotel.id,
                    room_type_id=room_type_id,
                    date=start + timedelta(days=offset),
                    rate=Decimal(rate),
                    currency=currency,
                )
            )

    return seed


@pytest.fixture
def pricing_service(catalog, pricing_uow, cache_store, occupancy, settings, clock):
    return create_pricing_service(
        catalog,
        uow=pricing_uow,
        cache_store=cache_store,
        occupancy=occupancy,
        settings=settings,
        clock=clock,
    )


@pytest.fixture
def payment_gateway():
    return DummyPaymentGateway()


@pytest.fixture
def notifications():
    return LoggingNotificationService()


@pytest.fixture
def event_bus(notifications):
    bus = InMemoryEventBus()
    register_notification_handlers(bus, notifications)
    return bus


@pytest.fixture
def booking_uow():
    return BookingUnitOfWork()


@pytest.fixture
def booking_service(
    catalog, pricing_service, booking_uow, payment_gateway, event_bus, settings, clock
):
    return create_booking_service(
        catalog,
        pricing_service,
        uow=booking_uow,
        payment_gateway=payment_gateway,
        event_bus=event_bus,
        settings=settings,
        clock=clock,
    )


@pytest.fixture
def booking_payload(hotel, room_type):
    """Запрос на бронирование одного стандартного номера на одну ночь."""

    def build(**overrides):
        payload = {
            "property_id": hotel.id,
            "guest_id": "aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa",
            "check_in": CHECK_IN,
            "check_out": CHECK_OUT,
            "rooms": [{"room_type_id": room_type.id, "quantity": 1, "guest_count": 2}],
        }
        payload.update(overrides)
        return payload

    return build
