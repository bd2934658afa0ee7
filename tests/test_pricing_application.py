"""
Интеграционные тесты для расчета цены (PricingApplicationService).
"""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest
from pricing.application import PriceCalculationRequest, create_pricing_service
from pricing.domain import (
    AdjustmentMethod,
    AdjustmentType,
    ConditionOperator,
    ConditionType,
    DiscountType,
    DynamicPricingRule,
    DynamicPricingType,
    FeeType,
    OccupancySnapshot,
    PricingAdjustment,
    PricingCondition,
    Promotion,
    PromotionCondition,
    PromotionConditionType,
    PromotionType,
    SeasonalRate,
    SeasonalRoomTypeRate,
    TaxConfiguration,
    TaxType,
)
from shared_kernel import ConflictError, NotFoundError, RoomType, ValidationError
from shared_kernel.infrastructure import RedisCacheStore

CHECK_IN = date(2026, 3, 16)
CHECK_OUT = date(2026, 3, 17)
NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def price_request(hotel, room_type, **overrides):
    payload = {
        "property_id": hotel.id,
        "room_type_id": room_type.id,
        "check_in": CHECK_IN,
        "check_out": CHECK_OUT,
        "guest_count": 2,
    }
    payload.update(overrides)
    return payload


def seasonal(hotel, room_type, priority, percent, name=None):
    return SeasonalRate(
        property_id=hotel.id,
        name=name or f"Season {priority}",
        start_date=CHECK_IN - timedelta(days=5),
        end_date=CHECK_IN + timedelta(days=5),
        priority=priority,
        room_type_rates=[
            SeasonalRoomTypeRate(
                room_type_id=room_type.id,
                adjustment_type=AdjustmentMethod.PERCENTAGE,
                adjustment_value=Decimal(percent),
            )
        ],
    )


def occupancy_rule(hotel, threshold=80, percent="15", priority=100):
    return DynamicPricingRule(
        property_id=hotel.id,
        name="High Occupancy Premium",
        type=DynamicPricingType.OCCUPANCY_BASED,
        priority=priority,
        conditions=[
            PricingCondition(
                type=ConditionType.OCCUPANCY_RATE,
                operator=ConditionOperator.GREATER_THAN,
                value=threshold,
            )
        ],
        adjustments=[
            PricingAdjustment(
                type=AdjustmentType.OCCUPANCY_BASED,
                method=AdjustmentMethod.PERCENTAGE,
                value=Decimal(percent),
                max_adjustment=Decimal("25"),
            )
        ],
        valid_from=CHECK_IN - timedelta(days=30),
        valid_to=CHECK_IN + timedelta(days=30),
    )


def promotion(hotel, code="SAVE20", value="20", **overrides):
    data = dict(
        property_id=hotel.id,
        code=code,
        name=f"Promotion {code}",
        promotion_type=PromotionType.PUBLIC,
        discount_type=DiscountType.PERCENTAGE,
        discount_value=Decimal(value),
        valid_from=NOW - timedelta(days=1),
        valid_to=NOW + timedelta(days=60),
    )
    data.update(overrides)
    return Promotion(**data)


def city_tax(hotel, rate="10", **overrides):
    data = dict(
        property_id=hotel.id,
        name="City tax",
        type=TaxType.CITY_TAX,
        rate=Decimal(rate),
        valid_from=CHECK_IN - timedelta(days=365),
    )
    data.update(overrides)
    return TaxConfiguration(**data)


class TestPriceCalculation:
    """Тесты расчета стоимости проживания."""

    async def test_base_rate_only(self, pricing_service, seed_rates, hotel, room_type):
        """Без корректировок итог равен базовой ставке."""
        await seed_rates(room_type.id)

        result = await pricing_service.calculate_price(price_request(hotel, room_type))

        assert result.base_amount == Decimal("100.00")
        assert result.discount_amount == Decimal("0.00")
        assert result.total_amount == Decimal("100.00")
        assert result.currency == "USD"
        assert result.nights == 1
        assert result.valid_until == NOW + timedelta(hours=24)

    async def test_seasonal_rates_stack_by_priority(
        self, pricing_service, pricing_uow, seed_rates, hotel, room_type
    ):
        """+20% и затем более приоритетные +30% дают 100 × 1.2 × 1.3 = 156."""
        await seed_rates(room_type.id)
        await pricing_uow.seasonal_rates.save(seasonal(hotel, room_type, 2, "30", "Peak"))
        await pricing_uow.seasonal_rates.save(seasonal(hotel, room_type, 1, "20", "High"))

        result = await pricing_service.calculate_price(price_request(hotel, room_type))

        night = result.nightly_rates[0]
        assert night.final_rate == Decimal("156.00")
        assert [line.name for line in night.adjustments] == ["High", "Peak"]
        assert night.adjustments[0].rate_after == Decimal("120.00")
        assert result.base_amount == Decimal("156.00")

    async def test_seasonal_rate_outside_period_is_ignored(
        self, pricing_service, pricing_uow, seed_rates, hotel, room_type
    ):
        await seed_rates(room_type.id)
        rate = seasonal(hotel, room_type, 1, "20")
        rate.start_date = CHECK_IN + timedelta(days=10)
        rate.end_date = CHECK_IN + timedelta(days=20)
        await pricing_uow.seasonal_rates.save(rate)

        result = await pricing_service.calculate_price(price_request(hotel, room_type))

        assert result.total_amount == Decimal("100.00")

    async def test_dynamic_rule_applies_on_high_occupancy(
        self, pricing_service, pricing_uow, occupancy, seed_rates, hotel, room_type
    ):
        """Загрузка выше 80% включает надбавку +15%: 100 → 115."""
        await seed_rates(room_type.id)
        await pricing_uow.dynamic_rules.save(occupancy_rule(hotel))
        occupancy.set_occupancy(
            hotel.id, OccupancySnapshot(date=CHECK_IN, occupancy_rate=85)
        )

        result = await pricing_service.calculate_price(price_request(hotel, room_type))

        assert result.nightly_rates[0].final_rate == Decimal("115.00")
        assert result.nightly_rates[0].adjustments[0].source == "dynamic"
        assert result.total_amount == Decimal("115.00")

    async def test_dynamic_rule_skipped_below_threshold(
        self, pricing_service, pricing_uow, occupancy, seed_rates, hotel, room_type
    ):
        await seed_rates(room_type.id)
        await pricing_uow.dynamic_rules.save(occupancy_rule(hotel))
        occupancy.set_occupancy(
            hotel.id, OccupancySnapshot(date=CHECK_IN, occupancy_rate=50)
        )

        result = await pricing_service.calculate_price(price_request(hotel, room_type))

        assert result.total_amount == Decimal("100.00")

    async def test_max_adjustment_caps_rule(
        self, pricing_service, pricing_uow, occupancy, seed_rates, hotel, room_type
    ):
        """Надбавка 40% ограничена max_adjustment 25%."""
        await seed_rates(room_type.id)
        await pricing_uow.dynamic_rules.save(occupancy_rule(hotel, percent="40"))
        occupancy.set_occupancy(
            hotel.id, OccupancySnapshot(date=CHECK_IN, occupancy_rate=90)
        )

        result = await pricing_service.calculate_price(price_request(hotel, room_type))

        assert result.nightly_rates[0].final_rate == Decimal("125.00")

    async def test_seasonal_applies_before_dynamic(
        self, pricing_service, pricing_uow, occupancy, seed_rates, hotel, room_type
    ):
        await seed_rates(room_type.id)
        await pricing_uow.seasonal_rates.save(seasonal(hotel, room_type, 1, "20"))
        await pricing_uow.dynamic_rules.save(occupancy_rule(hotel))
        occupancy.set_occupancy(
            hotel.id, OccupancySnapshot(date=CHECK_IN, occupancy_rate=85)
        )

        result = await pricing_service.calculate_price(price_request(hotel, room_type))

        assert [a.source for a in result.nightly_rates[0].adjustments] == [
            "seasonal",
            "dynamic",
        ]
        assert result.nightly_rates[0].final_rate == Decimal("138.00")

    async def test_promotion_code_discount(
        self, pricing_service, pricing_uow, seed_rates, hotel, room_type
    ):
        """SAVE20 на базе 100 дает скидку 20 и итог 80."""
        await seed_rates(room_type.id)
        await pricing_uow.promotions.save(promotion(hotel))

        result = await pricing_service.calculate_price(
            price_request(hotel, room_type, promotion_codes=["save20"])
        )

        assert result.discount_amount == Decimal("20.00")
        assert result.total_amount == Decimal("80.00")
        assert result.applied_promotions[0].code == "SAVE20"
        assert result.rejected_promotions == []

    async def test_unknown_promotion_code_is_rejected(
        self, pricing_service, seed_rates, hotel, room_type
    ):
        await seed_rates(room_type.id)

        result = await pricing_service.calculate_price(
            price_request(hotel, room_type, promotion_codes=["NOPE"])
        )

        assert result.discount_amount == Decimal("0.00")
        assert result.rejected_promotions[0].code == "NOPE"
        assert result.rejected_promotions[0].reason == "Promotion code not found"

    async def test_expired_promotion_is_rejected(
        self, pricing_service, pricing_uow, seed_rates, hotel, room_type
    ):
        await seed_rates(room_type.id)
        await pricing_uow.promotions.save(
            promotion(
                hotel,
                valid_from=NOW - timedelta(days=30),
                valid_to=NOW - timedelta(days=1),
            )
        )

        result = await pricing_service.calculate_price(
            price_request(hotel, room_type, promotion_codes=["SAVE20"])
        )

        assert result.discount_amount == Decimal("0.00")
        assert result.rejected_promotions[0].reason == "Promotion is not valid at this time"

    @pytest.mark.parametrize(
        "blackout, discount",
        [(CHECK_IN, Decimal("0.00")), (CHECK_OUT, Decimal("20.00"))],
    )
    async def test_blackout_dates_cover_nights_only(
        self, pricing_service, pricing_uow, seed_rates, hotel, room_type, blackout, discount
    ):
        await seed_rates(room_type.id)
        await pricing_uow.promotions.save(
            promotion(
                hotel,
                conditions=[
                    PromotionCondition(
                        type=PromotionConditionType.BLACKOUT_DATES,
                        value=[blackout.isoformat()],
                    )
                ],
            )
        )

        result = await pricing_service.calculate_price(
            price_request(hotel, room_type, promotion_codes=["SAVE20"])
        )

        assert result.discount_amount == discount

    async def test_percentage_discount_respects_max_discount(
        self, pricing_service, pricing_uow, seed_rates, hotel, room_type
    ):
        await seed_rates(room_type.id)
        await pricing_uow.promotions.save(
            promotion(hotel, code="HALF", value="50", max_discount=Decimal("30"))
        )

        result = await pricing_service.calculate_price(
            price_request(hotel, room_type, promotion_codes=["HALF"])
        )

        assert result.discount_amount == Decimal("30.00")

    async def test_stacked_promotions_apply_to_remaining_amount(
        self, pricing_service, pricing_uow, seed_rates, hotel, room_type
    ):
        """Вторая скидка считается от суммы после первой."""
        await seed_rates(room_type.id)
        await pricing_uow.promotions.save(promotion(hotel))
        await pricing_uow.promotions.save(promotion(hotel, code="TEN", value="10"))

        result = await pricing_service.calculate_price(
            price_request(hotel, room_type, promotion_codes=["SAVE20", "TEN"])
        )

        assert [d.amount for d in result.breakdown.discounts] == [
            Decimal("20.00"),
            Decimal("8.00"),
        ]
        assert result.total_amount == Decimal("72.00")

    async def test_corporate_code_requires_corporate_promotion(
        self, pricing_service, pricing_uow, seed_rates, hotel, room_type
    ):
        await seed_rates(room_type.id)
        await pricing_uow.promotions.save(
            promotion(hotel, code="ACME", value="15", promotion_type=PromotionType.CORPORATE)
        )
        await pricing_uow.promotions.save(promotion(hotel))

        corporate = await pricing_service.calculate_price(
            price_request(hotel, room_type, corporate_code="ACME")
        )
        public = await pricing_service.calculate_price(
            price_request(hotel, room_type, corporate_code="SAVE20")
        )

        assert corporate.discount_amount == Decimal("15.00")
        assert public.discount_amount == Decimal("0.00")
        assert public.rejected_promotions[0].reason == "Not a corporate promotion code"

    async def test_public_promotion_without_code_is_auto_applied(
        self, pricing_service, pricing_uow, seed_rates, hotel, room_type
    ):
        await seed_rates(room_type.id)
        await pricing_uow.promotions.save(promotion(hotel, code=None, value="5"))

        result = await pricing_service.calculate_price(price_request(hotel, room_type))

        assert result.discount_amount == Decimal("5.00")

    async def test_exclusive_tax(self, pricing_service, pricing_uow, seed_rates, hotel, room_type):
        """Городской налог 10% сверху: налог 10, итог 110."""
        await seed_rates(room_type.id)
        await pricing_uow.taxes.save(city_tax(hotel))

        result = await pricing_service.calculate_price(price_request(hotel, room_type))

        assert result.tax_amount == Decimal("10.00")
        assert result.total_amount == Decimal("110.00")
        assert result.breakdown.taxes[0].name == "City tax"

    async def test_inclusive_tax_is_reported_not_added(
        self, pricing_service, pricing_uow, seed_rates, hotel, room_type
    ):
        await seed_rates(room_type.id)
        await pricing_uow.taxes.save(city_tax(hotel, is_inclusive=True))

        result = await pricing_service.calculate_price(price_request(hotel, room_type))

        assert result.tax_amount == Decimal("0.00")
        assert result.breakdown.taxes[0].amount == Decimal("9.09")
        assert result.total_amount == Decimal("100.00")

    async def test_flat_fee_is_added(
        self, pricing_service, pricing_uow, seed_rates, hotel, room_type
    ):
        await seed_rates(room_type.id)
        await pricing_uow.taxes.save(
            TaxConfiguration(
                property_id=hotel.id,
                name="Cleaning",
                type=FeeType.CLEANING_FEE,
                rate=Decimal("25"),
                is_percentage=False,
                valid_from=CHECK_IN - timedelta(days=1),
            )
        )

        result = await pricing_service.calculate_price(price_request(hotel, room_type))

        assert result.fee_amount == Decimal("25.00")
        assert result.breakdown.fees[0].name == "Cleaning"
        assert result.total_amount == Decimal("125.00")

    async def test_tax_is_computed_after_discount(
        self, pricing_service, pricing_uow, seed_rates, hotel, room_type
    ):
        await seed_rates(room_type.id)
        await pricing_uow.promotions.save(promotion(hotel))
        await pricing_uow.taxes.save(city_tax(hotel))

        result = await pricing_service.calculate_price(
            price_request(hotel, room_type, promotion_codes=["SAVE20"])
        )

        assert result.tax_amount == Decimal("8.00")
        assert result.total_amount == Decimal("88.00")

    async def test_total_matches_components(
        self, pricing_service, pricing_uow, occupancy, seed_rates, hotel, room_type
    ):
        """Итог равен базе минус скидки плюс налоги и сборы при любом наборе правил."""
        await seed_rates(room_type.id, nights=3, rate="133.33")
        await pricing_uow.seasonal_rates.save(seasonal(hotel, room_type, 1, "7.5"))
        await pricing_uow.dynamic_rules.save(occupancy_rule(hotel))
        occupancy.set_occupancy(
            hotel.id, OccupancySnapshot(date=CHECK_IN, occupancy_rate=95)
        )
        await pricing_uow.promotions.save(promotion(hotel, value="12.5"))
        await pricing_uow.taxes.save(city_tax(hotel, rate="7.25"))

        result = await pricing_service.calculate_price(
            price_request(
                hotel,
                room_type,
                check_out=CHECK_IN + timedelta(days=3),
                room_quantity=2,
                promotion_codes=["SAVE20"],
            )
        )

        assert result.nights == 3
        assert len(result.breakdown.room_charges) == 3
        assert result.total_amount == (
            result.base_amount - result.discount_amount + result.tax_amount + result.fee_amount
        )
        assert result.total_amount >= 0

    async def test_room_quantity_multiplies_charges(
        self, pricing_service, seed_rates, hotel, room_type
    ):
        await seed_rates(room_type.id, nights=2)

        result = await pricing_service.calculate_price(
            price_request(
                hotel, room_type, check_out=CHECK_IN + timedelta(days=2), room_quantity=3
            )
        )

        assert result.base_amount == Decimal("600.00")
        assert result.breakdown.room_charges[0].amount == Decimal("300.00")


class TestPriceCalculationErrors:
    """Тесты ошибок расчета цены."""

    async def test_check_out_before_check_in(self, pricing_service, hotel, room_type):
        with pytest.raises(ValidationError) as exc_info:
            await pricing_service.calculate_price(
                price_request(hotel, room_type, check_out=CHECK_IN - timedelta(days=1))
            )
        assert exc_info.value.field == "check_out"

    async def test_zero_guests(self, pricing_service, hotel, room_type):
        with pytest.raises(ValidationError) as exc_info:
            await pricing_service.calculate_price(
                price_request(hotel, room_type, guest_count=0)
            )
        assert exc_info.value.field == "guest_count"

    async def test_malformed_payload_names_field(self, pricing_service, hotel, room_type):
        with pytest.raises(ValidationError) as exc_info:
            await pricing_service.calculate_price(
                price_request(hotel, room_type, check_in="not-a-date")
            )
        assert exc_info.value.field == "check_in"

    async def test_unknown_property(self, pricing_service, room_type):
        with pytest.raises(NotFoundError):
            await pricing_service.calculate_price(
                {
                    "property_id": uuid4(),
                    "room_type_id": room_type.id,
                    "check_in": CHECK_IN,
                    "check_out": CHECK_OUT,
                }
            )

    async def test_unknown_room_type(self, pricing_service, hotel, room_type):
        with pytest.raises(NotFoundError):
            await pricing_service.calculate_price(
                price_request(hotel, room_type, room_type_id=uuid4())
            )

    async def test_room_type_of_another_property(self, pricing_service, catalog, hotel, room_type):
        foreign = catalog.add_room_type(RoomType(property_id=uuid4(), name="Elsewhere"))
        with pytest.raises(ValidationError) as exc_info:
            await pricing_service.calculate_price(
                price_request(hotel, room_type, room_type_id=foreign.id)
            )
        assert exc_info.value.field == "room_type_id"

    async def test_missing_base_rates(self, pricing_service, seed_rates, hotel, room_type):
        await seed_rates(room_type.id, nights=1)
        with pytest.raises(ValidationError, match="No base rates found"):
            await pricing_service.calculate_price(
                price_request(hotel, room_type, check_out=CHECK_IN + timedelta(days=2))
            )


class CountingCall:
    """Обертка, считающая вызовы асинхронного метода."""

    def __init__(self, target):
        self.target = target
        self.calls = 0

    async def __call__(self, *args, **kwargs):
        self.calls += 1
        return await self.target(*args, **kwargs)


class BrokenCacheStore:
    async def get(self, key):
        raise ConnectionError("cache unavailable")

    async def set(self, key, value, ttl_seconds):
        raise ConnectionError("cache unavailable")

    async def delete(self, key):
        raise ConnectionError("cache unavailable")


class FakeRedis:
    """Минимальный асинхронный клиент Redis для тестов."""

    def __init__(self):
        self.data = {}
        self.expiry = {}
        self.closed = False

    async def get(self, key):
        value = self.data.get(key)
        return value.encode("utf-8") if value is not None else None

    async def set(self, key, value, ex=None):
        self.data[key] = value
        self.expiry[key] = ex

    async def delete(self, key):
        self.data.pop(key, None)

    async def aclose(self):
        self.closed = True


class TestPriceCache:
    """Тесты кеширования расчетов."""

    async def test_repeated_request_is_served_from_cache(
        self, pricing_service, pricing_uow, seed_rates, hotel, room_type
    ):
        """Повторный запрос возвращает побайтно тот же результат без обращений к хранилищам."""
        await seed_rates(room_type.id)
        await pricing_uow.taxes.save(city_tax(hotel))
        find_rates = CountingCall(pricing_uow.rates.find_rates)
        find_seasons = CountingCall(pricing_uow.seasonal_rates.find_for_period)
        list_taxes = CountingCall(pricing_uow.taxes.list_by_property)
        pricing_uow.rates.find_rates = find_rates
        pricing_uow.seasonal_rates.find_for_period = find_seasons
        pricing_uow.taxes.list_by_property = list_taxes

        first = await pricing_service.calculate_price(price_request(hotel, room_type))
        second = await pricing_service.calculate_price(price_request(hotel, room_type))

        assert first.model_dump_json() == second.model_dump_json()
        assert find_rates.calls == 1
        assert find_seasons.calls == 1
        assert list_taxes.calls == 1

    async def test_cache_key_depends_on_request(self, pricing_service, hotel, room_type):
        cache = pricing_service.cache
        base = PriceCalculationRequest(**price_request(hotel, room_type))
        other = PriceCalculationRequest(**price_request(hotel, room_type, guest_count=1))

        assert cache.key(base).startswith("price_calc:")
        assert cache.key(base) == cache.key(PriceCalculationRequest(**price_request(hotel, room_type)))
        assert cache.key(base) != cache.key(other)

    async def test_entry_expires_after_ttl(
        self, pricing_service, pricing_uow, seed_rates, clock, hotel, room_type
    ):
        await seed_rates(room_type.id)
        find_rates = CountingCall(pricing_uow.rates.find_rates)
        pricing_uow.rates.find_rates = find_rates

        await pricing_service.calculate_price(price_request(hotel, room_type))
        clock.advance(minutes=31)
        await pricing_service.calculate_price(price_request(hotel, room_type))

        assert find_rates.calls == 2

    async def test_cache_errors_degrade_to_miss(
        self, catalog, pricing_uow, seed_rates, settings, clock, hotel, room_type
    ):
        await seed_rates(room_type.id)
        service = create_pricing_service(
            catalog,
            uow=pricing_uow,
            cache_store=BrokenCacheStore(),
            settings=settings,
            clock=clock,
        )

        result = await service.calculate_price(price_request(hotel, room_type))

        assert result.total_amount == Decimal("100.00")

    async def test_malformed_cache_entry_is_recomputed(
        self, pricing_service, cache_store, seed_rates, hotel, room_type
    ):
        await seed_rates(room_type.id)
        request = PriceCalculationRequest(**price_request(hotel, room_type))
        await cache_store.set(pricing_service.cache.key(request), "{not json", 60)

        result = await pricing_service.calculate_price(request)

        assert result.total_amount == Decimal("100.00")

    async def test_redis_store(
        self, catalog, pricing_uow, seed_rates, settings, clock, hotel, room_type
    ):
        await seed_rates(room_type.id)
        client = FakeRedis()
        store = RedisCacheStore(client=client)
        service = create_pricing_service(
            catalog, uow=pricing_uow, cache_store=store, settings=settings, clock=clock
        )

        first = await service.calculate_price(price_request(hotel, room_type))
        second = await service.calculate_price(price_request(hotel, room_type))
        await store.close()

        [key] = client.data.keys()
        assert key.startswith("price_calc:")
        assert client.expiry[key] == settings.price_cache_ttl_seconds
        assert first.model_dump_json() == second.model_dump_json()
        assert client.closed


class TestPromotionUsage:
    async def test_record_usage_increments_counter(
        self, pricing_service, pricing_uow, hotel
    ):
        promo = promotion(hotel)
        await pricing_uow.promotions.save(promo)

        await pricing_service.record_promotion_usage(promo.id, uuid4(), Decimal("20"))
        updated = await pricing_service.record_promotion_usage(
            promo.id, uuid4(), Decimal("20")
        )

        assert updated.usage.current_usage == 2
        assert len(updated.usage.usage_history) == 2

    async def test_exhausted_promotion_is_rejected(
        self, pricing_service, pricing_uow, seed_rates, hotel, room_type
    ):
        await seed_rates(room_type.id)
        promo = promotion(hotel)
        promo.usage.max_total_usage = 1
        await pricing_uow.promotions.save(promo)
        await pricing_service.record_promotion_usage(promo.id, uuid4(), Decimal("20"))

        result = await pricing_service.calculate_price(
            price_request(hotel, room_type, promotion_codes=["SAVE20"])
        )

        assert result.discount_amount == Decimal("0.00")
        assert result.rejected_promotions[0].reason == "Promotion usage limit reached"

    async def test_unknown_promotion(self, pricing_service):
        with pytest.raises(NotFoundError):
            await pricing_service.record_promotion_usage(uuid4(), uuid4(), Decimal("1"))

    async def test_usage_is_recorded_once_per_booking(
        self, pricing_service, pricing_uow, hotel
    ):
        promo = promotion(hotel)
        await pricing_uow.promotions.save(promo)
        booking_id = uuid4()

        await pricing_service.record_promotion_usage(promo.id, booking_id, Decimal("20"))
        updated = await pricing_service.record_promotion_usage(
            promo.id, booking_id, Decimal("20")
        )

        assert updated.usage.current_usage == 1

    async def test_recording_beyond_total_limit_conflicts(
        self, pricing_service, pricing_uow, hotel
    ):
        promo = promotion(hotel)
        promo.usage.max_total_usage = 1
        await pricing_uow.promotions.save(promo)
        await pricing_service.record_promotion_usage(promo.id, uuid4(), Decimal("20"))

        with pytest.raises(ConflictError):
            await pricing_service.record_promotion_usage(promo.id, uuid4(), Decimal("20"))

        stored = await pricing_uow.promotions.get_by_id(promo.id)
        assert stored.usage.current_usage == 1

    async def test_recording_beyond_guest_limit_conflicts(
        self, pricing_service, pricing_uow, hotel
    ):
        promo = promotion(hotel)
        promo.usage.max_usage_per_guest = 1
        await pricing_uow.promotions.save(promo)
        guest_id = uuid4()
        await pricing_service.record_promotion_usage(
            promo.id, uuid4(), Decimal("20"), guest_id=guest_id
        )

        with pytest.raises(ConflictError):
            await pricing_service.record_promotion_usage(
                promo.id, uuid4(), Decimal("20"), guest_id=guest_id
            )
        other_guest = await pricing_service.record_promotion_usage(
            promo.id, uuid4(), Decimal("20"), guest_id=uuid4()
        )
        assert other_guest.usage.current_usage == 2

    async def test_cached_quote_with_exhausted_promotion_is_recalculated(
        self, pricing_service, pricing_uow, seed_rates, hotel, room_type
    ):
        await seed_rates(room_type.id)
        promo = promotion(hotel)
        promo.usage.max_total_usage = 1
        await pricing_uow.promotions.save(promo)
        request = price_request(hotel, room_type, promotion_codes=["SAVE20"])

        first = await pricing_service.calculate_price(request)
        await pricing_service.record_promotion_usage(promo.id, uuid4(), Decimal("20"))
        second = await pricing_service.calculate_price(request)

        assert first.discount_amount == Decimal("20.00")
        assert second.discount_amount == Decimal("0.00")
        assert second.rejected_promotions[0].reason == "Promotion usage limit reached"


class TestBookingPrice:
    """Тесты расчета бронирования из нескольких строк номеров."""

    @staticmethod
    def booking_request(hotel, room_type, suite, **overrides):
        payload = {
            "property_id": hotel.id,
            "check_in": CHECK_IN,
            "check_out": CHECK_OUT,
            "rooms": [
                {"room_type_id": room_type.id, "guest_count": 2},
                {"room_type_id": suite.id, "guest_count": 3},
            ],
        }
        payload.update(overrides)
        return payload

    async def test_fixed_promotion_is_granted_once(
        self, pricing_service, pricing_uow, seed_rates, hotel, room_type, suite
    ):
        await seed_rates(room_type.id)
        await seed_rates(suite.id, rate="300.00")
        await pricing_uow.promotions.save(
            promotion(hotel, code="TAKE30", value="30", discount_type=DiscountType.FIXED_AMOUNT)
        )

        result = await pricing_service.calculate_booking_price(
            self.booking_request(hotel, room_type, suite, promotion_codes=["TAKE30"])
        )

        assert result.base_amount == Decimal("400.00")
        assert result.discount_amount == Decimal("30.00")
        assert result.total_amount == Decimal("370.00")
        assert [line.discount_amount for line in result.lines] == [
            Decimal("7.50"),
            Decimal("22.50"),
        ]
        assert result.applied_promotions[0].discount_amount == Decimal("30.00")

    async def test_max_discount_caps_whole_booking(
        self, pricing_service, pricing_uow, seed_rates, hotel, room_type, suite
    ):
        await seed_rates(room_type.id)
        await seed_rates(suite.id, rate="300.00")
        await pricing_uow.promotions.save(
            promotion(hotel, code="HALF", value="50", max_discount=Decimal("60"))
        )

        result = await pricing_service.calculate_booking_price(
            self.booking_request(hotel, room_type, suite, promotion_codes=["HALF"])
        )

        assert result.discount_amount == Decimal("60.00")

    async def test_room_type_restriction_limits_discounted_lines(
        self, pricing_service, pricing_uow, seed_rates, hotel, room_type, suite
    ):
        await seed_rates(room_type.id)
        await seed_rates(suite.id, rate="300.00")
        await pricing_uow.promotions.save(
            promotion(hotel, code="SUITE10", value="10", applicable_room_types=[suite.id])
        )

        result = await pricing_service.calculate_booking_price(
            self.booking_request(hotel, room_type, suite, promotion_codes=["SUITE10"])
        )

        assert result.discount_amount == Decimal("30.00")
        assert [line.discount_amount for line in result.lines] == [
            Decimal("0.00"),
            Decimal("30.00"),
        ]

    async def test_taxes_follow_allocated_discount(
        self, pricing_service, pricing_uow, seed_rates, hotel, room_type, suite
    ):
        await seed_rates(room_type.id)
        await seed_rates(suite.id, rate="300.00")
        await pricing_uow.taxes.save(city_tax(hotel))
        await pricing_uow.promotions.save(
            promotion(hotel, code="TAKE40", value="40", discount_type=DiscountType.FIXED_AMOUNT)
        )

        result = await pricing_service.calculate_booking_price(
            self.booking_request(hotel, room_type, suite, promotion_codes=["TAKE40"])
        )

        assert [line.tax_amount for line in result.lines] == [
            Decimal("9.00"),
            Decimal("27.00"),
        ]
        assert result.tax_amount == Decimal("36.00")
        assert result.total_amount == Decimal("396.00")

    async def test_repricing_ignores_own_usage(
        self, pricing_service, pricing_uow, seed_rates, hotel, room_type, suite
    ):
        await seed_rates(room_type.id)
        await seed_rates(suite.id, rate="300.00")
        promo = promotion(hotel)
        promo.usage.max_total_usage = 1
        promo.usage.max_usage_per_guest = 1
        await pricing_uow.promotions.save(promo)
        booking_id, guest_id = uuid4(), uuid4()
        await pricing_service.record_promotion_usage(
            promo.id, booking_id, Decimal("80"), guest_id=guest_id
        )
        request = self.booking_request(
            hotel, room_type, suite, promotion_codes=["SAVE20"], guest_id=guest_id
        )

        own = await pricing_service.calculate_booking_price({**request, "booking_id": booking_id})
        other = await pricing_service.calculate_booking_price(request)

        assert own.discount_amount == Decimal("80.00")
        assert other.discount_amount == Decimal("0.00")

    async def test_line_errors_name_the_line(self, pricing_service, hotel, room_type, suite):
        with pytest.raises(ValidationError) as exc_info:
            await pricing_service.calculate_booking_price(
                self.booking_request(
                    hotel,
                    room_type,
                    suite,
                    rooms=[{"room_type_id": room_type.id, "guest_count": 0}],
                )
            )
        assert exc_info.value.field == "rooms.0.guest_count"

    async def test_mixed_currencies_are_rejected(
        self, pricing_service, seed_rates, hotel, room_type, suite
    ):
        await seed_rates(room_type.id)
        await seed_rates(suite.id, rate="300.00", currency="EUR")

        with pytest.raises(ValidationError) as exc_info:
            await pricing_service.calculate_booking_price(
                self.booking_request(hotel, room_type, suite)
            )
        assert exc_info.value.field == "rooms"
