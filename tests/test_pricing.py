"""
Unit tests for the pricing engine.
"""
from datetime import timedelta
from decimal import Decimal
from typing import Any

import pytest

from registration_payments.config import Settings
from registration_payments.core.errors import NotFoundError
from registration_payments.core.pricing import (
    PricingEngine,
    discount_amount,
    quantize,
    select_batch,
)
from registration_payments.database.models import DiscountBatch, utcnow


class TestDiscountMath:
    """Pure helpers."""

    @pytest.mark.unit
    def test_quantize_rounds_half_up(self) -> None:
        assert quantize(Decimal("8.505")) == Decimal("8.51")
        assert quantize(Decimal("8.504")) == Decimal("8.50")

    @pytest.mark.unit
    def test_percentage_and_fixed_discounts(self) -> None:
        assert discount_amount(Decimal("100.00"), "PERCENTAGE", Decimal("15")) == Decimal("15.00")
        assert discount_amount(Decimal("100.00"), "FIXED", Decimal("7.50")) == Decimal("7.50")

    @pytest.mark.unit
    def test_discount_capped_at_price(self) -> None:
        assert discount_amount(Decimal("20.00"), "FIXED", Decimal("50.00")) == Decimal("20.00")
        assert discount_amount(Decimal("0.00"), "PERCENTAGE", Decimal("10")) == Decimal("0.00")

    @pytest.mark.unit
    def test_batch_tie_break_is_deterministic(self) -> None:
        now = utcnow()
        later = DiscountBatch(
            id="b", name="later", type="DATE", active=True, current_sales=0,
            start_date=now - timedelta(hours=1), end_date=now + timedelta(days=1),
            discount_type="FIXED", discount_value=Decimal("10"),
        )
        earlier = DiscountBatch(
            id="c", name="earlier", type="DATE", active=True, current_sales=0,
            start_date=now - timedelta(days=2), end_date=now + timedelta(days=1),
            discount_type="PERCENTAGE", discount_value=Decimal("10"),
        )
        volume = DiscountBatch(
            id="a", name="volume", type="VOLUME", active=True, current_sales=0, max_sales=5,
            discount_type="FIXED", discount_value=Decimal("10"),
        )
        price = Decimal("100.00")

        for ordering in ([later, earlier, volume], [volume, earlier, later], [earlier, volume, later]):
            assert select_batch(ordering, price, now).id == "c"

    @pytest.mark.unit
    def test_largest_discount_wins(self) -> None:
        now = utcnow()
        small = DiscountBatch(
            id="1", name="small", type="VOLUME", active=True, current_sales=0, max_sales=10,
            discount_type="FIXED", discount_value=Decimal("5"),
        )
        big = DiscountBatch(
            id="2", name="big", type="VOLUME", active=True, current_sales=0, max_sales=10,
            discount_type="PERCENTAGE", discount_value=Decimal("20"),
        )
        full = DiscountBatch(
            id="3", name="full", type="VOLUME", active=True, current_sales=10, max_sales=10,
            discount_type="PERCENTAGE", discount_value=Decimal("50"),
        )
        assert select_batch([small, big, full], Decimal("100.00"), now).id == "2"


class TestPricingEngine:
    """Test suite for PricingEngine.quote."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_quote_scenario(self, test_settings: Settings, test_db: Any, seed: Any) -> None:
        """Base 100, batch 10, coupon 5 and a 10% fee give 85.00 + 8.50 = 93.50."""
        event = await seed.event()
        modality = await seed.modality(event, price=Decimal("100.00"))
        await seed.batch(event, discount_type="FIXED", discount_value=Decimal("10.00"))
        await seed.coupon(event, code="FRIEND5", discount_type="FIXED", discount_value=Decimal("5.00"))

        quote = await PricingEngine(test_settings).quote(
            test_db, event.id, modality.id, coupon_code="friend5"
        )

        assert quote.base_price == Decimal("100.00")
        assert quote.batch_discount == Decimal("10.00")
        assert quote.coupon_discount == Decimal("5.00")
        assert quote.subtotal == Decimal("85.00")
        assert quote.platform_fee == Decimal("8.50")
        assert quote.total == Decimal("93.50")
        assert quote.discount == Decimal("15.00")
        assert quote.discount_percentage == Decimal("15.00")
        assert quote.coupon_code == "FRIEND5"
        assert quote.coupon_rejection is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_quote_is_pure(self, test_settings: Settings, test_db: Any, seed: Any) -> None:
        event = await seed.event()
        modality = await seed.modality(event, price=Decimal("79.90"))
        await seed.batch(event, discount_type="PERCENTAGE", discount_value=Decimal("12.5"))
        engine = PricingEngine(test_settings)
        now = utcnow()

        first = await engine.quote(test_db, event.id, modality.id, now=now)
        second = await engine.quote(test_db, event.id, modality.id, now=now)

        assert first == second
        assert first.subtotal + first.platform_fee == first.total

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_invalid_coupon_reports_reason(
        self, test_settings: Settings, test_db: Any, seed: Any
    ) -> None:
        event = await seed.event()
        modality = await seed.modality(event)
        await seed.coupon(event, code="USED", max_uses=1, current_uses=1)
        engine = PricingEngine(test_settings)

        exhausted = await engine.quote(test_db, event.id, modality.id, coupon_code="USED")
        unknown = await engine.quote(test_db, event.id, modality.id, coupon_code="NOPE")

        assert exhausted.coupon_discount == Decimal("0.00")
        assert exhausted.coupon_rejection == "Coupon usage limit reached"
        assert exhausted.total == Decimal("110.00")
        assert unknown.coupon_rejection == "Coupon not found"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_coupon_restricted_to_other_modality(
        self, test_settings: Settings, test_db: Any, seed: Any
    ) -> None:
        event = await seed.event()
        five_k = await seed.modality(event, name="5K")
        ten_k = await seed.modality(event, name="10K")
        await seed.coupon(event, code="ONLY5K", modality_ids=[five_k.id])

        quote = await PricingEngine(test_settings).quote(
            test_db, event.id, ten_k.id, coupon_code="ONLY5K"
        )

        assert quote.coupon_id is None
        assert quote.coupon_rejection == "Coupon is not valid for this modality"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_flat_platform_fee(self, test_settings: Settings, test_db: Any, seed: Any) -> None:
        settings = test_settings.model_copy(
            update={"platform_fee_mode": "flat", "platform_fee_flat": Decimal("4.99")}
        )
        event = await seed.event()
        modality = await seed.modality(event, price=Decimal("50.00"))

        quote = await PricingEngine(settings).quote(test_db, event.id, modality.id)

        assert quote.platform_fee == Decimal("4.99")
        assert quote.total == Decimal("54.99")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_free_registration(self, test_settings: Settings, test_db: Any, seed: Any) -> None:
        event = await seed.event()
        modality = await seed.modality(event, price=Decimal("0.00"))

        quote = await PricingEngine(test_settings).quote(test_db, event.id, modality.id)

        assert quote.total == Decimal("0.00")
        assert quote.discount_percentage == Decimal("0.00")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_modality_of_other_event(
        self, test_settings: Settings, test_db: Any, seed: Any
    ) -> None:
        event = await seed.event()
        other = await seed.event(name="Other")
        modality = await seed.modality(other)

        with pytest.raises(NotFoundError):
            await PricingEngine(test_settings).quote(test_db, event.id, modality.id)
