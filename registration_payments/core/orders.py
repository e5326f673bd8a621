"""
Order creation.

Validates eligibility, prices each registration, reserves inventory and
assigns sequential order numbers. All orders of one request are created in
a single transaction: any failure rolls back every counter and row.
"""
import time
from datetime import datetime
from typing import List, Optional

import structlog
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from registration_payments.core import inventory
from registration_payments.core.errors import (
    ConflictError,
    NotFoundError,
    RegistrationError,
    ValidationError,
)
from registration_payments.core.pricing import PricingEngine
from registration_payments.database.models import (
    ACTIVE_ORDER_STATUSES,
    Event,
    EventStatus,
    Modality,
    Order,
    OrderEvent,
    OrderStatus,
    PaymentStatus,
    utcnow,
)
from registration_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

_OUTCOMES = {
    ValidationError: "validation_error",
    NotFoundError: "not_found",
    ConflictError: "conflict",
}


class OrderItem(BaseModel):
    """One participant registering for one modality."""

    participant_id: str = Field(..., min_length=1, max_length=36)
    modality_id: str = Field(..., min_length=1, max_length=36)
    apparel_size: Optional[str] = Field(default=None, max_length=10)
    coupon_code: Optional[str] = Field(default=None, max_length=50)


class OrderService:
    """Creates PENDING orders with race-safe reservations."""

    def __init__(self, pricing: PricingEngine):
        self.pricing = pricing

    async def create_order(
        self,
        db: AsyncSession,
        buyer_id: str,
        event_id: str,
        item: OrderItem,
        now: Optional[datetime] = None,
    ) -> Order:
        """Create a single order. See ``create_orders``."""
        orders = await self.create_orders(db, buyer_id, event_id, [item], now=now)
        return orders[0]

    async def create_orders(
        self,
        db: AsyncSession,
        buyer_id: str,
        event_id: str,
        items: List[OrderItem],
        now: Optional[datetime] = None,
    ) -> List[Order]:
        """
        Create the orders of one checkout.

        Args:
            db: Database session (committed or rolled back here)
            buyer_id: Principal paying for the orders
            event_id: Event ID
            items: One entry per participant registration
            now: Creation instant (defaults to now)

        Returns:
            List[Order]: Created orders, in request order

        Raises:
            NotFoundError: If the event or a modality is missing
            ValidationError: If the event is closed, a modality is inactive
                or a required size is missing
            ConflictError: If a participant already holds an active order or
                capacity ran out
        """
        start_time = time.time()
        now = now or utcnow()

        try:
            if not items:
                raise ValidationError("At least one registration is required")

            event = await db.get(Event, event_id)
            if event is None:
                raise NotFoundError(f"Event {event_id} not found")
            if event.status != EventStatus.PUBLISHED.value:
                raise ValidationError("Event is not open for registration")
            if not (event.registration_start <= now <= event.registration_end):
                raise ValidationError("Registration window is closed")

            seen = set()
            for item in items:
                key = (item.participant_id, item.modality_id)
                if key in seen:
                    raise ValidationError(
                        f"Participant {item.participant_id} is listed twice for the same modality"
                    )
                seen.add(key)

            orders = []
            for item in items:
                orders.append(await self._create_one(db, event, buyer_id, item, now))

            await db.commit()

        except IntegrityError as e:
            await db.rollback()
            metrics.record_reservation_conflict("duplicate")
            metrics.record_order_creation("conflict", time.time() - start_time)
            logger.info("order_duplicate_rejected", event_id=event_id, error=str(e.orig))
            raise ConflictError(
                "Participant already has an active registration for this modality"
            )

        except RegistrationError as e:
            await db.rollback()
            metrics.record_order_creation(
                _OUTCOMES.get(type(e), "error"), time.time() - start_time
            )
            logger.info(
                "order_creation_rejected",
                event_id=event_id,
                buyer_id=buyer_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise

        except Exception:
            await db.rollback()
            raise

        duration = time.time() - start_time
        metrics.record_order_creation("created", duration, count=len(orders))
        logger.info(
            "orders_created",
            event_id=event_id,
            buyer_id=buyer_id,
            order_ids=[o.id for o in orders],
            order_numbers=[o.order_number for o in orders],
            duration_seconds=duration,
        )
        return orders

    async def _create_one(
        self,
        db: AsyncSession,
        event: Event,
        buyer_id: str,
        item: OrderItem,
        now: datetime,
    ) -> Order:
        modality = await db.get(Modality, item.modality_id)
        if modality is None or modality.event_id != event.id:
            raise NotFoundError(f"Modality {item.modality_id} not found for event {event.id}")
        if not modality.active:
            raise ValidationError(f"Modality {modality.name} is not accepting registrations")

        existing = await db.execute(
            select(Order.id).where(
                Order.participant_id == item.participant_id,
                Order.event_id == event.id,
                Order.modality_id == modality.id,
                Order.status.in_(ACTIVE_ORDER_STATUSES),
            )
        )
        if existing.first() is not None:
            metrics.record_reservation_conflict("duplicate")
            raise ConflictError(
                f"Participant {item.participant_id} already has an active registration "
                f"for {modality.name}"
            )

        size = item.apparel_size.strip().upper() if item.apparel_size else None
        if event.requires_apparel_size and not size:
            raise ValidationError("Apparel size is required for this event")

        quote = await self.pricing.quote(
            db, event.id, modality.id, coupon_code=item.coupon_code, now=now
        )

        await inventory.reserve_slot(db, modality.id)
        if size:
            await inventory.reserve_size(db, event.id, size)
        if quote.batch_id:
            await inventory.record_batch_sale(db, quote.batch_id)
        if quote.coupon_id:
            await inventory.consume_coupon(db, quote.coupon_id)
        order_number = await inventory.next_order_number(db, event.id)

        order = Order(
            event_id=event.id,
            modality_id=modality.id,
            participant_id=item.participant_id,
            buyer_id=buyer_id,
            coupon_id=quote.coupon_id,
            batch_id=quote.batch_id,
            order_number=order_number,
            base_price=quote.base_price,
            discount=quote.discount,
            subtotal=quote.subtotal,
            platform_fee=quote.platform_fee,
            total=quote.total,
            status=OrderStatus.PENDING.value,
            payment_status=PaymentStatus.PENDING.value,
            apparel_size=size,
            created_at=now,
            updated_at=now,
        )
        db.add(order)
        await db.flush()

        db.add(
            OrderEvent(
                order_id=order.id,
                event_type="order.created",
                event_data={
                    "order_number": order_number,
                    "total": str(quote.total),
                    "batch_id": quote.batch_id,
                    "coupon_id": quote.coupon_id,
                },
                created_at=now,
            )
        )
        return order

    async def get_order(self, db: AsyncSession, order_id: str) -> Order:
        """
        Load an order.

        Raises:
            NotFoundError: If the order does not exist
        """
        order = await db.get(Order, order_id)
        if order is None:
            raise NotFoundError(f"Order {order_id} not found")
        return order
