"""
Atomic inventory counters.

Every reservation is a single conditional UPDATE whose WHERE clause carries
the capacity check, so concurrent requests can never oversell: a request
that loses the race simply matches zero rows. Callers run these inside the
order transaction and roll back on failure.
"""
import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from registration_payments.core.errors import ConflictError, NotFoundError, ValidationError
from registration_payments.database.models import (
    BatchType,
    Coupon,
    DiscountBatch,
    Event,
    Modality,
    SizeStock,
)
from registration_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


async def reserve_size(db: AsyncSession, event_id: str, size: str) -> None:
    """
    Reserve one unit of an apparel size.

    Raises:
        ValidationError: If the event does not offer the size
        ConflictError: If the size is sold out
    """
    stmt = (
        update(SizeStock)
        .where(
            SizeStock.event_id == event_id,
            SizeStock.size == size,
            SizeStock.stock - SizeStock.reserved - SizeStock.sold > 0,
        )
        .values(reserved=SizeStock.reserved + 1)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    if result.rowcount == 1:
        logger.debug("size_reserved", event_id=event_id, size=size)
        return

    exists = await db.execute(
        select(SizeStock.id).where(SizeStock.event_id == event_id, SizeStock.size == size)
    )
    if exists.scalar_one_or_none() is None:
        raise ValidationError(f"Size {size} is not available for this event")

    metrics.record_reservation_conflict("size")
    logger.info("size_sold_out", event_id=event_id, size=size)
    raise ConflictError(f"Size {size} sold out")


async def commit_size(db: AsyncSession, event_id: str, size: str) -> bool:
    """Move one reserved unit of a size to sold."""
    stmt = (
        update(SizeStock)
        .where(
            SizeStock.event_id == event_id,
            SizeStock.size == size,
            SizeStock.reserved > 0,
        )
        .values(reserved=SizeStock.reserved - 1, sold=SizeStock.sold + 1)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    if result.rowcount == 0:
        logger.warning("size_commit_without_reservation", event_id=event_id, size=size)
    return result.rowcount == 1


async def release_size(db: AsyncSession, event_id: str, size: str) -> bool:
    """Return one reserved unit of a size to stock."""
    stmt = (
        update(SizeStock)
        .where(
            SizeStock.event_id == event_id,
            SizeStock.size == size,
            SizeStock.reserved > 0,
        )
        .values(reserved=SizeStock.reserved - 1)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    return result.rowcount == 1


async def reserve_slot(db: AsyncSession, modality_id: str) -> None:
    """
    Take one registration slot of a modality.

    ``reserved_slots`` counts the modality's PENDING and CONFIRMED orders.

    Raises:
        ConflictError: If the modality is full
    """
    stmt = (
        update(Modality)
        .where(
            Modality.id == modality_id,
            (Modality.max_slots.is_(None)) | (Modality.reserved_slots < Modality.max_slots),
        )
        .values(reserved_slots=Modality.reserved_slots + 1)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    if result.rowcount == 0:
        metrics.record_reservation_conflict("slot")
        logger.info("modality_full", modality_id=modality_id)
        raise ConflictError("No registration slots left for this modality")


async def release_slot(db: AsyncSession, modality_id: str) -> bool:
    stmt = (
        update(Modality)
        .where(Modality.id == modality_id, Modality.reserved_slots > 0)
        .values(reserved_slots=Modality.reserved_slots - 1)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    return result.rowcount == 1


async def record_batch_sale(db: AsyncSession, batch_id: str) -> None:
    """
    Count one sale against a discount batch.

    Raises:
        ConflictError: If a volume batch filled up after the quote
    """
    stmt = (
        update(DiscountBatch)
        .where(
            DiscountBatch.id == batch_id,
            DiscountBatch.active.is_(True),
            (DiscountBatch.type != BatchType.VOLUME.value)
            | (DiscountBatch.current_sales < DiscountBatch.max_sales),
        )
        .values(current_sales=DiscountBatch.current_sales + 1)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    if result.rowcount == 0:
        metrics.record_reservation_conflict("batch")
        raise ConflictError("Discount batch is no longer available, please request a new quote")


async def release_batch_sale(db: AsyncSession, batch_id: str) -> bool:
    stmt = (
        update(DiscountBatch)
        .where(DiscountBatch.id == batch_id, DiscountBatch.current_sales > 0)
        .values(current_sales=DiscountBatch.current_sales - 1)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    return result.rowcount == 1


async def consume_coupon(db: AsyncSession, coupon_id: str) -> None:
    """
    Count one use of a coupon.

    Raises:
        ConflictError: If the coupon ran out of uses after the quote
    """
    stmt = (
        update(Coupon)
        .where(
            Coupon.id == coupon_id,
            (Coupon.max_uses.is_(None)) | (Coupon.current_uses < Coupon.max_uses),
        )
        .values(current_uses=Coupon.current_uses + 1)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    if result.rowcount == 0:
        metrics.record_reservation_conflict("coupon")
        raise ConflictError("Coupon usage limit reached")


async def release_coupon(db: AsyncSession, coupon_id: str) -> bool:
    stmt = (
        update(Coupon)
        .where(Coupon.id == coupon_id, Coupon.current_uses > 0)
        .values(current_uses=Coupon.current_uses - 1)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    return result.rowcount == 1


async def next_order_number(db: AsyncSession, event_id: str) -> int:
    """
    Allocate the next order number of an event.

    The increment and read happen in one statement, which holds the event
    row lock until the surrounding transaction ends, so numbers are unique
    and gap-free among committed orders.

    Raises:
        NotFoundError: If the event does not exist
    """
    stmt = (
        update(Event)
        .where(Event.id == event_id)
        .values(last_order_number=Event.last_order_number + 1)
        .returning(Event.last_order_number)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    number = result.scalar_one_or_none()
    if number is None:
        raise NotFoundError(f"Event {event_id} not found")
    return number
