"""
Price computation for registrations.

A quote combines the modality price, the best applicable discount batch,
an optional coupon and the platform fee. Quotes are pure: the same inputs
and the same ``now`` always produce an equal breakdown, so the price shown
to the buyer is the price charged.
"""
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional

import structlog
from pydantic import BaseModel, ConfigDict
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from registration_payments.config import Settings
from registration_payments.core.errors import NotFoundError
from registration_payments.database.models import (
    BatchType,
    Coupon,
    DiscountBatch,
    DiscountType,
    Modality,
    utcnow,
)

logger = structlog.get_logger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
HUNDRED = Decimal("100")


def quantize(value: Decimal) -> Decimal:
    """Round a money amount to cents (half up)."""
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def discount_amount(price: Decimal, discount_type: str, value: Decimal) -> Decimal:
    """
    Compute a discount against a price.

    PERCENTAGE takes ``value`` percent of the price, FIXED takes ``value``.
    The result never exceeds the price.
    """
    if price <= 0:
        return ZERO
    if discount_type == DiscountType.PERCENTAGE.value:
        amount = price * Decimal(value) / HUNDRED
    else:
        amount = Decimal(value)
    return quantize(min(max(amount, ZERO), price))


def batch_is_applicable(batch: DiscountBatch, now: datetime) -> bool:
    if not batch.active:
        return False
    if batch.type == BatchType.DATE.value:
        if batch.start_date is None or batch.end_date is None:
            return False
        return batch.start_date <= now <= batch.end_date
    if batch.type == BatchType.VOLUME.value:
        return batch.max_sales is not None and batch.current_sales < batch.max_sales
    return False


def select_batch(
    batches: Iterable[DiscountBatch], price: Decimal, now: datetime
) -> Optional[DiscountBatch]:
    """
    Pick the discount batch for a price.

    Among applicable batches the largest discount wins. Ties go to the
    batch with the earliest start date (undated batches last), then to the
    lowest id, so the choice never depends on row order.
    """
    applicable = [b for b in batches if batch_is_applicable(b, now)]
    if not applicable:
        return None

    def rank(batch: DiscountBatch) -> tuple:
        amount = discount_amount(price, batch.discount_type, batch.discount_value)
        return (-amount, batch.start_date is None, batch.start_date or now, batch.id)

    return min(applicable, key=rank)


def coupon_rejection_reason(
    coupon: Coupon, modality_id: str, price: Decimal, now: datetime
) -> Optional[str]:
    """
    Check a coupon against a modality and the price after batch discount.

    Returns:
        Optional[str]: Why the coupon does not apply, or None when it does
    """
    if not coupon.active:
        return "Coupon is inactive"
    if coupon.start_date is not None and now < coupon.start_date:
        return "Coupon is not valid yet"
    if coupon.end_date is not None and now > coupon.end_date:
        return "Coupon has expired"
    if coupon.max_uses is not None and coupon.current_uses >= coupon.max_uses:
        return "Coupon usage limit reached"
    if coupon.modality_ids and modality_id not in coupon.modality_ids:
        return "Coupon is not valid for this modality"
    if coupon.min_purchase is not None and price < coupon.min_purchase:
        return f"Minimum purchase of {quantize(coupon.min_purchase)} not reached"
    return None


class PriceBreakdown(BaseModel):
    """Price of one registration, every amount rounded to cents."""

    model_config = ConfigDict(frozen=True)

    base_price: Decimal
    batch_discount: Decimal = ZERO
    coupon_discount: Decimal = ZERO
    subtotal: Decimal
    platform_fee: Decimal
    total: Decimal
    discount_percentage: Decimal = ZERO
    batch_id: Optional[str] = None
    batch_name: Optional[str] = None
    coupon_id: Optional[str] = None
    coupon_code: Optional[str] = None
    coupon_rejection: Optional[str] = None

    @property
    def discount(self) -> Decimal:
        return self.batch_discount + self.coupon_discount


class PricingEngine:
    """
    Computes price breakdowns from modality, batch and coupon records.

    The platform fee is either ``platform_fee_rate`` of the subtotal or the
    flat ``platform_fee_flat``, per configuration.
    """

    def __init__(self, settings: Settings):
        self.fee_mode = settings.platform_fee_mode
        self.fee_rate = settings.platform_fee_rate
        self.fee_flat = settings.platform_fee_flat

    def platform_fee(self, subtotal: Decimal) -> Decimal:
        if self.fee_mode == "flat":
            return quantize(self.fee_flat)
        return quantize(subtotal * self.fee_rate)

    async def _find_coupon(
        self, db: AsyncSession, event_id: str, code: str
    ) -> Optional[Coupon]:
        stmt = select(Coupon).where(
            Coupon.event_id == event_id,
            func.upper(Coupon.code) == code.strip().upper(),
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def quote(
        self,
        db: AsyncSession,
        event_id: str,
        modality_id: str,
        coupon_code: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> PriceBreakdown:
        """
        Quote the price of one registration.

        Args:
            db: Database session
            event_id: Event ID
            modality_id: Modality ID, must belong to the event
            coupon_code: Optional coupon code (case-insensitive)
            now: Instant to evaluate batches and coupons at (defaults to now)

        Returns:
            PriceBreakdown: Computed breakdown

        Raises:
            NotFoundError: If the modality does not exist in the event
        """
        now = now or utcnow()

        modality = await db.get(Modality, modality_id)
        if modality is None or modality.event_id != event_id:
            raise NotFoundError(f"Modality {modality_id} not found for event {event_id}")

        base_price = quantize(modality.price)

        result = await db.execute(
            select(DiscountBatch).where(
                DiscountBatch.event_id == event_id,
                DiscountBatch.active.is_(True),
            )
        )
        batch = select_batch(result.scalars().all(), base_price, now)
        batch_discount = (
            discount_amount(base_price, batch.discount_type, batch.discount_value)
            if batch
            else ZERO
        )
        price_after_batch = base_price - batch_discount

        coupon: Optional[Coupon] = None
        coupon_discount = ZERO
        rejection: Optional[str] = None
        if coupon_code and coupon_code.strip():
            coupon = await self._find_coupon(db, event_id, coupon_code)
            if coupon is None:
                rejection = "Coupon not found"
            else:
                rejection = coupon_rejection_reason(coupon, modality_id, price_after_batch, now)
            if rejection is None:
                coupon_discount = discount_amount(
                    price_after_batch, coupon.discount_type, coupon.discount_value
                )
            else:
                logger.info(
                    "coupon_not_applied",
                    event_id=event_id,
                    modality_id=modality_id,
                    coupon_code=coupon_code,
                    reason=rejection,
                )
                coupon = None

        subtotal = quantize(max(ZERO, base_price - batch_discount - coupon_discount))
        platform_fee = self.platform_fee(subtotal)
        total = subtotal + platform_fee

        discount_percentage = ZERO
        if base_price > 0:
            discount_percentage = quantize(
                (batch_discount + coupon_discount) / base_price * HUNDRED
            )

        return PriceBreakdown(
            base_price=base_price,
            batch_discount=batch_discount,
            coupon_discount=coupon_discount,
            subtotal=subtotal,
            platform_fee=platform_fee,
            total=total,
            discount_percentage=discount_percentage,
            batch_id=batch.id if batch else None,
            batch_name=batch.name if batch else None,
            coupon_id=coupon.id if coupon else None,
            coupon_code=coupon.code if coupon else None,
            coupon_rejection=rejection,
        )
