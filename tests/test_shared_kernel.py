"""
Тесты общего ядра: округление денег, даты, ошибки разбора, кеш, шина событий, логирование.
"""

import logging
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest
from pydantic import BaseModel
from shared_kernel import (
    DateRange,
    DomainEvent,
    Settings,
    ValidationError,
    parse_request,
    round_money,
)
from shared_kernel.infrastructure import InMemoryCacheStore, InMemoryEventBus, StdLogger

FIXED_NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class TestRoundMoney:
    """Тесты округления до минимальной единицы валюты."""

    @pytest.mark.parametrize(
        "amount, currency, expected",
        [
            ("2.675", "USD", "2.68"),
            ("2.665", "EUR", "2.67"),
            ("10.005", "usd", "10.01"),
            ("99.5", "KRW", "100"),
            ("1234.5", "JPY", "1235"),
            ("1.0005", "KWD", "1.001"),
        ],
    )
    def test_round_money_half_up(self, amount, currency, expected):
        assert round_money(Decimal(amount), currency) == Decimal(expected)

    def test_zero_keeps_currency_exponent(self):
        assert str(round_money(0, "BHD")) == "0.000"
        assert str(round_money(0, "USD")) == "0.00"


class TestDateRange:
    def test_nights_and_dates(self):
        stay = DateRange.create(date(2026, 3, 16), date(2026, 3, 19))

        assert stay.nights == 3
        assert list(stay.dates()) == [date(2026, 3, 16), date(2026, 3, 17), date(2026, 3, 18)]
        assert stay.contains(date(2026, 3, 18))
        assert not stay.contains(date(2026, 3, 19))

    def test_check_out_must_follow_check_in(self):
        with pytest.raises(ValidationError) as exc_info:
            DateRange.create(date(2026, 3, 16), date(2026, 3, 16))
        assert exc_info.value.field == "check_out"


class Payload(BaseModel):
    name: str
    nights: int


class TestParseRequest:
    def test_model_instance_passes_through(self):
        payload = Payload(name="x", nights=1)

        assert parse_request(Payload, payload) is payload

    def test_mapping_is_validated(self):
        assert parse_request(Payload, {"name": "x", "nights": "2"}).nights == 2

    def test_first_invalid_field_is_named(self):
        with pytest.raises(ValidationError) as exc_info:
            parse_request(Payload, {"name": "x", "nights": "many"})
        assert exc_info.value.field == "nights"
        assert "nights" in exc_info.value.message


class TestInMemoryCacheStore:
    """Тесты кеша в памяти с истечением по часам."""

    async def test_ttl(self):
        moment = {"now": FIXED_NOW}
        store = InMemoryCacheStore(clock=lambda: moment["now"])

        await store.set("key", "value", ttl_seconds=60)
        assert await store.get("key") == "value"

        moment["now"] = FIXED_NOW + timedelta(seconds=60)
        assert await store.get("key") is None
        assert len(store) == 0

    async def test_delete(self):
        store = InMemoryCacheStore()
        await store.set("key", "value", ttl_seconds=60)

        await store.delete("key")
        await store.delete("missing")

        assert await store.get("key") is None


class SomethingHappened(DomainEvent):
    event_type: str = "something_happened"


class TestInMemoryEventBus:
    """Тесты шины событий."""

    async def test_publish_to_subscribers(self):
        bus = InMemoryEventBus()
        received = []

        async def handler(event):
            received.append(event)

        bus.subscribe(SomethingHappened, handler)
        event = SomethingHappened()
        await bus.publish(event)

        assert received == [event]

    async def test_handler_errors_are_swallowed(self):
        bus = InMemoryEventBus()
        received = []

        async def broken(event):
            raise RuntimeError("boom")

        async def handler(event):
            received.append(event)

        bus.subscribe(SomethingHappened, broken)
        bus.subscribe(SomethingHappened, handler)
        await bus.publish(SomethingHappened())

        assert len(received) == 1

    async def test_publish_without_subscribers(self):
        await InMemoryEventBus().publish(SomethingHappened())


class TestStdLogger:
    def test_text_context(self, caplog):
        logger = StdLogger("hotel.test", log_format="text")

        with caplog.at_level(logging.INFO, logger="hotel.test"):
            logger.info("Booking created", booking_id="b1", total=Decimal("10.00"))

        assert caplog.messages == ["Booking created [booking_id=b1 total=10.00]"]

    def test_json_context(self, caplog):
        logger = StdLogger("hotel.test", log_format="json")

        with caplog.at_level(logging.WARNING, logger="hotel.test"):
            logger.warning("Cache read failed", key="price_calc:abc")

        assert caplog.messages == ['Cache read failed {"key": "price_calc:abc"}']


class TestSettings:
    def test_defaults(self):
        settings = Settings()

        assert settings.price_cache_ttl_seconds == 1800
        assert settings.max_advance_booking_days == 730
        assert settings.deposit_minimum_amount == Decimal("50")

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("HOTEL_MODIFICATION_CUTOFF_HOURS", "48")
        monkeypatch.setenv("HOTEL_LOG_FORMAT", "json")

        settings = Settings()

        assert settings.modification_cutoff_hours == 48
        assert settings.log_format == "json"
