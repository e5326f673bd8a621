"""
Order grouping for display.

Orders paid together carry payment ids of the form
``<processor payment id>_<order id>``, so the shared prefix identifies the
checkout. Orders that were checked out but not paid yet share their
``checkout_reference``. Anything else falls back to a heuristic: same
buyer and event, created within the same minute. The heuristic can merge
unrelated orders placed by one buyer in the same minute; it only drives
presentation, never settlement.
"""
from datetime import timedelta
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from registration_payments.core.errors import AccessDeniedError, NotFoundError
from registration_payments.database.models import Order

logger = structlog.get_logger(__name__)

PAYMENT_ID_SEPARATOR = "_"
GROUPING_WINDOW = timedelta(seconds=60)


def compose_payment_id(processor_payment_id: str, order_id: str) -> str:
    return f"{processor_payment_id}{PAYMENT_ID_SEPARATOR}{order_id}"


def payment_prefix(payment_id: Optional[str]) -> Optional[str]:
    """Shared prefix of a composed payment id, or None for plain ids."""
    if not payment_id or PAYMENT_ID_SEPARATOR not in payment_id:
        return None
    prefix, _ = payment_id.rsplit(PAYMENT_ID_SEPARATOR, 1)
    return prefix or None


def processor_payment_id(payment_id: Optional[str]) -> Optional[str]:
    """Id to query the processor with, for composed and plain ids alike."""
    if not payment_id:
        return None
    return payment_prefix(payment_id) or payment_id


def group_key(order: Order) -> str:
    prefix = payment_prefix(order.payment_id)
    if prefix:
        return f"payment:{prefix}"
    if order.checkout_reference:
        return f"checkout:{order.checkout_reference}"
    minute = order.created_at.replace(second=0, microsecond=0)
    return f"window:{order.buyer_id}:{order.event_id}:{minute.isoformat()}"


class OrderGroup:
    """Orders shown together as one checkout."""

    def __init__(self, key: str, orders: List[Order]):
        self.key = key
        self.orders = sorted(orders, key=lambda o: o.order_number)

    @property
    def strategy(self) -> str:
        return self.key.split(":", 1)[0]

    @property
    def total(self) -> Decimal:
        return sum((o.total for o in self.orders), Decimal("0.00"))

    @property
    def platform_fee(self) -> Decimal:
        return sum((o.platform_fee for o in self.orders), Decimal("0.00"))

    @property
    def order_ids(self) -> List[str]:
        return [o.id for o in self.orders]

    def __len__(self) -> int:
        return len(self.orders)


def group_orders(orders: Iterable[Order]) -> List[OrderGroup]:
    """Group orders by their key, keeping the order groups first appear in."""
    buckets: Dict[str, List[Order]] = {}
    for order in orders:
        buckets.setdefault(group_key(order), []).append(order)
    return [OrderGroup(key, members) for key, members in buckets.items()]


class OrderGrouping:
    """Finds the group an order belongs to."""

    async def get_group(
        self, db: AsyncSession, order_id: str, principal_id: Optional[str] = None
    ) -> OrderGroup:
        """
        Load all orders of the checkout ``order_id`` belongs to.

        Args:
            db: Database session
            order_id: Any order of the group
            principal_id: When given, must be the order's buyer or participant

        Returns:
            OrderGroup: The group, including ``order_id`` itself

        Raises:
            NotFoundError: If the order does not exist
            AccessDeniedError: If the principal is unrelated to the order
        """
        order = await db.get(Order, order_id)
        if order is None:
            raise NotFoundError(f"Order {order_id} not found")
        if principal_id is not None and principal_id not in (order.buyer_id, order.participant_id):
            raise AccessDeniedError("Not allowed to view this order")

        stmt = select(Order).where(Order.event_id == order.event_id)
        prefix = payment_prefix(order.payment_id)
        if prefix:
            stmt = stmt.where(
                Order.payment_id.startswith(prefix + PAYMENT_ID_SEPARATOR, autoescape=True)
            )
        elif order.checkout_reference:
            stmt = stmt.where(Order.checkout_reference == order.checkout_reference)
        else:
            minute = order.created_at.replace(second=0, microsecond=0)
            stmt = stmt.where(
                Order.buyer_id == order.buyer_id,
                Order.payment_id.is_(None),
                Order.checkout_reference.is_(None),
                Order.created_at >= minute,
                Order.created_at < minute + GROUPING_WINDOW,
            )

        result = await db.execute(stmt)
        members = list(result.scalars().all())
        group = OrderGroup(group_key(order), members)

        logger.debug("order_group_resolved", order_id=order_id, key=group.key, size=len(group))
        return group
