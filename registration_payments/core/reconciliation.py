"""
Payment reconciliation.

Aligns order state with the processor's authoritative payment state. Three
triggers feed the same state machine: webhook notifications, a pull sync of
one order and a bounded sweep over recent pending orders.

Transitions are conditional UPDATEs guarded by the order's current status,
so a webhook racing a manual sync confirms an order exactly once. Database
sessions are opened only around reads and writes, never across a
processor call.
"""
import asyncio
import time
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Tuple

import structlog
from pydantic import BaseModel, Field
from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from registration_payments.config import Settings
from registration_payments.core import inventory
from registration_payments.core.credentials import CredentialStore, ProcessorAccess
from registration_payments.core.errors import (
    AccessDeniedError,
    GatewayError,
    NotFoundError,
    ReconciliationError,
)
from registration_payments.core.grouping import (
    PAYMENT_ID_SEPARATOR,
    compose_payment_id,
    processor_payment_id,
)
from registration_payments.core.pricing import quantize
from registration_payments.database.models import (
    Event,
    Order,
    OrderEvent,
    OrderStatus,
    PaymentStatus,
    ProcessorCredential,
    utcnow,
)
from registration_payments.integrations.mercadopago_client import (
    MercadoPagoClient,
    ProcessorPayment,
)
from registration_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

_STATUS_MAP = {
    "approved": PaymentStatus.APPROVED,
    "rejected": PaymentStatus.REJECTED,
    "cancelled": PaymentStatus.CANCELLED,
    "refunded": PaymentStatus.REFUNDED,
    "charged_back": PaymentStatus.REFUNDED,
    "in_process": PaymentStatus.PROCESSING,
    "in_mediation": PaymentStatus.PROCESSING,
    "authorized": PaymentStatus.PROCESSING,
}


def map_processor_status(status: str) -> PaymentStatus:
    """Map a processor payment status to ours. Unknown statuses stay PENDING."""
    return _STATUS_MAP.get((status or "").lower(), PaymentStatus.PENDING)


def compute_processor_fee(
    payment: ProcessorPayment, fallback_marketplace_fee: Decimal = Decimal("0")
) -> Optional[Decimal]:
    """
    Fee the processor kept for a payment.

    Tries, in order: the sum of itemized fee entries; the amount paid minus
    the net received and the marketplace fee; otherwise None.

    Args:
        payment: Payment as fetched from the processor
        fallback_marketplace_fee: Marketplace fee to assume when the payment
            does not report one

    Returns:
        Optional[Decimal]: Processor fee, or None when it cannot be derived
    """
    itemized = sum((detail.amount for detail in payment.itemized_fees), Decimal("0"))
    if itemized > 0:
        return quantize(itemized)

    paid = payment.transaction_amount
    if paid is None and payment.transaction_details is not None:
        paid = payment.transaction_details.total_paid_amount
    net = payment.net_received_amount
    if paid is not None and net is not None:
        marketplace_fee = (
            payment.marketplace_fee
            if payment.marketplace_fee is not None
            else fallback_marketplace_fee
        )
        derived = paid - net - marketplace_fee
        if derived > 0:
            return quantize(derived)

    return None


class LookupContext(BaseModel):
    """What is known locally about the payment of one checkout."""

    external_reference: str
    payment_id: Optional[str] = None


class PaymentLookupStrategy:
    """One way of finding the processor payment for a checkout."""

    name = "base"

    async def find(
        self, client: MercadoPagoClient, access: ProcessorAccess, context: LookupContext
    ) -> Optional[ProcessorPayment]:
        """
        Look the payment up.

        Returns:
            Optional[ProcessorPayment]: The payment, or None when this strategy
            does not apply or finds nothing

        Raises:
            GatewayError: If the processor call fails
            ReconciliationError: If the payment found belongs elsewhere
        """
        raise NotImplementedError


class DirectPaymentLookup(PaymentLookupStrategy):
    """Fetch by a payment id already stored on the order."""

    name = "direct"

    async def find(
        self, client: MercadoPagoClient, access: ProcessorAccess, context: LookupContext
    ) -> Optional[ProcessorPayment]:
        if not context.payment_id:
            return None
        try:
            payment = await client.get_payment(access.token, context.payment_id)
        except GatewayError as e:
            if e.http_status == 404:
                return None
            raise
        if payment.external_reference and payment.external_reference != context.external_reference:
            raise ReconciliationError(
                f"Payment {payment.id} references {payment.external_reference}, "
                f"expected {context.external_reference}"
            )
        return payment


class ExternalReferenceLookup(PaymentLookupStrategy):
    """Search by ``external_reference``, preferring an approved payment."""

    name = "external_reference"

    async def find(
        self, client: MercadoPagoClient, access: ProcessorAccess, context: LookupContext
    ) -> Optional[ProcessorPayment]:
        payments = await client.search_payments(access.token, context.external_reference)
        matches = [p for p in payments if p.external_reference == context.external_reference]
        if not matches:
            return None
        approved = [p for p in matches if p.status == "approved"]
        # Results are newest first
        return (approved or matches)[0]


DEFAULT_STRATEGIES: Tuple[PaymentLookupStrategy, ...] = (
    DirectPaymentLookup(),
    ExternalReferenceLookup(),
)


class SyncResult(BaseModel):
    """Outcome of reconciling one checkout."""

    order_id: str
    outcome: str  # confirmed, cancelled, refunded, processing, unchanged, not_found, error
    processor_payment_id: Optional[str] = None
    processor_status: Optional[str] = None
    order_status: Optional[str] = None
    payment_status: Optional[str] = None
    strategy: Optional[str] = None
    transitioned_order_ids: List[str] = Field(default_factory=list)
    message: Optional[str] = None


class SweepResult(BaseModel):
    checked: int
    updated: int
    errors: int
    results: List[SyncResult]


class ReconciliationEngine:
    """
    Resolves the true payment state of orders and applies it.

    Args:
        session_factory: Factory for short-lived database sessions
        client: Processor client
        credentials: Credential resolver
        settings: Application settings
        strategies: Ordered lookup strategies, first success wins
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        client: MercadoPagoClient,
        credentials: CredentialStore,
        settings: Settings,
        strategies: Optional[Sequence[PaymentLookupStrategy]] = None,
    ):
        self.session_factory = session_factory
        self.client = client
        self.credentials = credentials
        self.settings = settings
        self.strategies = list(strategies or DEFAULT_STRATEGIES)

    async def lookup_payment(
        self, access: ProcessorAccess, context: LookupContext
    ) -> Tuple[Optional[ProcessorPayment], Optional[str]]:
        """
        Run the lookup strategies in order until one finds the payment.

        Returns:
            Tuple: The payment and the name of the strategy that found it,
            or ``(None, None)``

        Raises:
            ReconciliationError: If nothing was found and at least one
                strategy failed
        """
        failures: List[str] = []
        for strategy in self.strategies:
            try:
                payment = await strategy.find(self.client, access, context)
            except (GatewayError, ReconciliationError) as e:
                logger.warning(
                    "payment_lookup_strategy_failed",
                    strategy=strategy.name,
                    external_reference=context.external_reference,
                    error=str(e),
                )
                failures.append(f"{strategy.name}: {e}")
                continue
            if payment is not None:
                logger.info(
                    "payment_found",
                    strategy=strategy.name,
                    payment_id=payment.id,
                    status=payment.status,
                    external_reference=context.external_reference,
                )
                return payment, strategy.name

        if failures:
            raise ReconciliationError("; ".join(failures))
        return None, None

    async def _group_orders(self, db: AsyncSession, primary_order_id: str) -> List[Order]:
        result = await db.execute(
            select(Order)
            .where(
                or_(
                    Order.checkout_reference == primary_order_id,
                    Order.id == primary_order_id,
                )
            )
            .order_by(Order.order_number)
        )
        return list(result.scalars().all())

    async def _known_payment_id(self, db: AsyncSession, order: Order) -> Optional[str]:
        if order.payment_id:
            return processor_payment_id(order.payment_id)
        result = await db.execute(
            select(Order.payment_id)
            .where(
                Order.checkout_reference == order.primary_order_id,
                Order.payment_id.is_not(None),
            )
            .limit(1)
        )
        return processor_payment_id(result.scalar_one_or_none())

    async def sync_order(
        self,
        order_id: str,
        principal_id: Optional[str] = None,
        trigger: str = "sync",
    ) -> SyncResult:
        """
        Pull the payment state of one order's checkout and apply it.

        Syncing an order that is no longer pending is a no-op.

        Args:
            order_id: Any order of the checkout
            principal_id: When given, must be the order's buyer or participant
            trigger: Label for logs and metrics

        Returns:
            SyncResult: What happened

        Raises:
            NotFoundError: If the order does not exist
            AccessDeniedError: If the principal is unrelated to the order
            CredentialError: If the organizer's credential is unusable
            ReconciliationError: If every lookup strategy failed
        """
        async with self.session_factory() as db:
            order = await db.get(Order, order_id)
            if order is None:
                raise NotFoundError(f"Order {order_id} not found")
            if principal_id is not None and principal_id not in (
                order.buyer_id,
                order.participant_id,
            ):
                raise AccessDeniedError("Not allowed to sync this order")

            if order.status != OrderStatus.PENDING.value:
                metrics.record_reconciliation(trigger, "unchanged")
                return SyncResult(
                    order_id=order.id,
                    outcome="unchanged",
                    processor_payment_id=processor_payment_id(order.payment_id),
                    order_status=order.status,
                    payment_status=order.payment_status,
                    message=f"Order is already {order.status}",
                )

            context = LookupContext(
                external_reference=order.primary_order_id,
                payment_id=await self._known_payment_id(db, order),
            )
            event = await db.get(Event, order.event_id)
            if event is None:
                raise NotFoundError(f"Event {order.event_id} not found")
            organizer_id = event.organizer_id

        access = await self.credentials.resolve(organizer_id)
        payment, strategy = await self.lookup_payment(access, context)
        if payment is None:
            metrics.record_reconciliation(trigger, "not_found")
            logger.info(
                "payment_not_found",
                order_id=order_id,
                external_reference=context.external_reference,
            )
            return SyncResult(
                order_id=order_id,
                outcome="not_found",
                order_status=order.status,
                payment_status=order.payment_status,
                message="No payment found at the processor yet",
            )

        result = await self.apply_payment(payment, context.external_reference, trigger=trigger)
        result.order_id = order_id
        result.strategy = strategy
        return result

    async def _organizer_for_processor_user(
        self, db: AsyncSession, processor_user_id: Optional[str]
    ) -> Optional[str]:
        if not processor_user_id:
            return None
        result = await db.execute(
            select(ProcessorCredential.organizer_id).where(
                ProcessorCredential.processor_user_id == processor_user_id
            )
        )
        return result.scalar_one_or_none()

    async def handle_payment_notification(
        self, payment_id: str, processor_user_id: Optional[str] = None
    ) -> SyncResult:
        """
        Reconcile after a processor notification about a payment.

        The payment is always re-fetched; nothing in the notification body
        besides its id is trusted.

        Args:
            payment_id: Processor payment id from the notification
            processor_user_id: Processor account the payment belongs to, if sent

        Returns:
            SyncResult: What happened (``not_found`` when no order matches)
        """
        trigger = "webhook"
        async with self.session_factory() as db:
            result = await db.execute(
                select(Order)
                .where(
                    or_(
                        Order.payment_id == payment_id,
                        Order.payment_id.startswith(
                            payment_id + PAYMENT_ID_SEPARATOR, autoescape=True
                        ),
                    )
                )
                .limit(1)
            )
            order = result.scalar_one_or_none()

            if order is not None:
                event = await db.get(Event, order.event_id)
                if event is None:
                    raise NotFoundError(f"Event {order.event_id} not found")
                organizer_id: Optional[str] = event.organizer_id
            else:
                organizer_id = await self._organizer_for_processor_user(db, processor_user_id)

        access: Optional[ProcessorAccess]
        if organizer_id is not None:
            access = await self.credentials.resolve(organizer_id)
        else:
            access = self.credentials.fallback_access()

        if access is None:
            metrics.record_reconciliation(trigger, "not_found")
            logger.warning("notification_without_credential", payment_id=payment_id)
            return SyncResult(
                order_id="",
                outcome="not_found",
                processor_payment_id=payment_id,
                message="No credential available to fetch the payment",
            )

        payment = await self.client.get_payment(access.token, payment_id)
        reference = order.primary_order_id if order is not None else payment.external_reference
        if not reference:
            metrics.record_reconciliation(trigger, "not_found")
            logger.warning("notification_payment_without_reference", payment_id=payment_id)
            return SyncResult(
                order_id="",
                outcome="not_found",
                processor_payment_id=payment_id,
                processor_status=payment.status,
                message="Payment has no external_reference",
            )

        return await self.apply_payment(payment, reference, trigger=trigger)

    async def apply_payment(
        self,
        payment: ProcessorPayment,
        primary_order_id: str,
        trigger: str = "sync",
        now: Optional[datetime] = None,
    ) -> SyncResult:
        """
        Apply a processor payment to every order of its checkout.

        Only PENDING orders transition (CONFIRMED orders may additionally be
        marked refunded). The processor fee is recorded on the primary order
        in the same statement that confirms it, so it is never counted twice.

        Raises:
            ReconciliationError: If the payment belongs to another checkout
        """
        if payment.external_reference and payment.external_reference != primary_order_id:
            raise ReconciliationError(
                f"Payment {payment.id} references {payment.external_reference}, "
                f"expected {primary_order_id}"
            )

        now = now or utcnow()
        status = map_processor_status(payment.status)

        async with self.session_factory() as db:
            try:
                orders = await self._group_orders(db, primary_order_id)
                if not orders:
                    metrics.record_reconciliation(trigger, "not_found")
                    logger.warning(
                        "payment_orders_not_found",
                        payment_id=payment.id,
                        external_reference=primary_order_id,
                    )
                    return SyncResult(
                        order_id=primary_order_id,
                        outcome="not_found",
                        processor_payment_id=payment.id,
                        processor_status=payment.status,
                        message="No orders match the payment's external_reference",
                    )

                fee = None
                if status == PaymentStatus.APPROVED:
                    platform_fee = sum((o.platform_fee for o in orders), Decimal("0"))
                    fee = compute_processor_fee(payment, platform_fee)

                transitioned: List[str] = []
                for order in orders:
                    changed = await self._apply_to_order(
                        db, order, payment, status, order.id == primary_order_id, fee, now
                    )
                    if changed:
                        transitioned.append(order.id)

                await db.commit()
            except Exception:
                await db.rollback()
                raise

        outcome = self._outcome(status, transitioned)
        metrics.record_reconciliation(trigger, outcome)
        logger.info(
            "payment_reconciled",
            trigger=trigger,
            payment_id=payment.id,
            processor_status=payment.status,
            external_reference=primary_order_id,
            outcome=outcome,
            transitioned_order_ids=transitioned,
            processor_fee=str(fee) if fee is not None else None,
        )

        primary = next((o for o in orders if o.id == primary_order_id), orders[0])
        async with self.session_factory() as db:
            refreshed = await db.get(Order, primary.id)

        return SyncResult(
            order_id=primary.id,
            outcome=outcome,
            processor_payment_id=payment.id,
            processor_status=payment.status,
            order_status=refreshed.status if refreshed else None,
            payment_status=refreshed.payment_status if refreshed else None,
            transitioned_order_ids=transitioned,
        )

    @staticmethod
    def _outcome(status: PaymentStatus, transitioned: List[str]) -> str:
        if status == PaymentStatus.PROCESSING:
            return "processing"
        if not transitioned or status == PaymentStatus.PENDING:
            return "unchanged"
        if status == PaymentStatus.APPROVED:
            return "confirmed"
        if status == PaymentStatus.REFUNDED:
            return "refunded"
        return "cancelled"

    async def _transition(
        self, db: AsyncSession, order_id: str, from_status: OrderStatus, **values: object
    ) -> bool:
        result = await db.execute(
            update(Order)
            .where(Order.id == order_id, Order.status == from_status.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def _release_inventory(self, db: AsyncSession, order: Order) -> None:
        await inventory.release_slot(db, order.modality_id)
        if order.apparel_size:
            await inventory.release_size(db, order.event_id, order.apparel_size)
        if order.batch_id:
            await inventory.release_batch_sale(db, order.batch_id)
        if order.coupon_id:
            await inventory.release_coupon(db, order.coupon_id)

    def _record_event(
        self, db: AsyncSession, order: Order, event_type: str, payment: ProcessorPayment,
        now: datetime, **data: object,
    ) -> None:
        db.add(
            OrderEvent(
                order_id=order.id,
                event_type=event_type,
                event_data={
                    "processor_payment_id": payment.id,
                    "processor_status": payment.status,
                    **data,
                },
                created_at=now,
            )
        )

    async def _apply_to_order(
        self,
        db: AsyncSession,
        order: Order,
        payment: ProcessorPayment,
        status: PaymentStatus,
        is_primary: bool,
        fee: Optional[Decimal],
        now: datetime,
    ) -> bool:
        payment_id = compose_payment_id(payment.id, order.id)

        if status == PaymentStatus.APPROVED:
            values: Dict[str, object] = dict(
                status=OrderStatus.CONFIRMED.value,
                payment_status=PaymentStatus.APPROVED.value,
                payment_method=payment.payment_type_id,
                payment_id=payment_id,
                confirmed_at=now,
                updated_at=now,
            )
            if is_primary and fee is not None:
                values["processor_fee"] = fee
            if not await self._transition(db, order.id, OrderStatus.PENDING, **values):
                if order.status == OrderStatus.CANCELLED.value:
                    logger.warning(
                        "payment_approved_for_cancelled_order",
                        order_id=order.id,
                        payment_id=payment.id,
                    )
                return False
            if order.apparel_size:
                await inventory.commit_size(db, order.event_id, order.apparel_size)
            self._record_event(
                db, order, "order.confirmed", payment, now,
                processor_fee=str(fee) if is_primary and fee is not None else None,
            )
            return True

        if status in (PaymentStatus.REJECTED, PaymentStatus.CANCELLED, PaymentStatus.REFUNDED):
            if status == PaymentStatus.REFUNDED and await self._transition(
                db,
                order.id,
                OrderStatus.CONFIRMED,
                status=OrderStatus.CANCELLED.value,
                payment_status=PaymentStatus.REFUNDED.value,
                cancelled_at=now,
                updated_at=now,
            ):
                self._record_event(db, order, "order.refunded", payment, now)
                return True

            if not await self._transition(
                db,
                order.id,
                OrderStatus.PENDING,
                status=OrderStatus.CANCELLED.value,
                payment_status=status.value,
                payment_id=payment_id,
                cancelled_at=now,
                updated_at=now,
            ):
                return False
            await self._release_inventory(db, order)
            self._record_event(
                db, order, "order.cancelled", payment, now, status_detail=payment.status_detail
            )
            return True

        # Intermediate status: remember the payment, keep the order pending
        await self._transition(
            db,
            order.id,
            OrderStatus.PENDING,
            payment_status=status.value,
            payment_id=payment_id,
            updated_at=now,
        )
        return False

    async def recalculate_fee(self, order_id: str) -> SyncResult:
        """
        Record the processor fee of a confirmed checkout that lacks one.

        Raises:
            NotFoundError: If the order does not exist
        """
        async with self.session_factory() as db:
            order = await db.get(Order, order_id)
            if order is None:
                raise NotFoundError(f"Order {order_id} not found")
            primary = await db.get(Order, order.primary_order_id) or order
            known = processor_payment_id(primary.payment_id)
            if (
                primary.status != OrderStatus.CONFIRMED.value
                or primary.processor_fee is not None
                or known is None
            ):
                return SyncResult(
                    order_id=order_id,
                    outcome="unchanged",
                    processor_payment_id=known,
                    order_status=order.status,
                    payment_status=order.payment_status,
                    message="Fee already recorded or order not confirmed",
                )
            siblings = await self._group_orders(db, primary.id)
            platform_fee = sum((o.platform_fee for o in siblings), Decimal("0"))
            event = await db.get(Event, primary.event_id)
            if event is None:
                raise NotFoundError(f"Event {primary.event_id} not found")
            organizer_id = event.organizer_id

        access = await self.credentials.resolve(organizer_id)
        payment = await self.client.get_payment(access.token, known)
        fee = compute_processor_fee(payment, platform_fee)
        if fee is None:
            return SyncResult(
                order_id=order_id,
                outcome="unchanged",
                processor_payment_id=payment.id,
                processor_status=payment.status,
                order_status=order.status,
                payment_status=order.payment_status,
                message="Processor did not report enough data to derive the fee",
            )

        async with self.session_factory() as db:
            result = await db.execute(
                update(Order)
                .where(Order.id == primary.id, Order.processor_fee.is_(None))
                .values(processor_fee=fee, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await db.commit()

        updated = result.rowcount == 1
        logger.info("processor_fee_recalculated", order_id=primary.id, fee=str(fee), updated=updated)
        return SyncResult(
            order_id=order_id,
            outcome="fee_updated" if updated else "unchanged",
            processor_payment_id=payment.id,
            processor_status=payment.status,
            order_status=order.status,
            payment_status=order.payment_status,
        )

    async def _pending_order_ids(
        self,
        event_id: Optional[str],
        since: datetime,
        limit: int,
    ) -> List[str]:
        """Pending checked-out orders, one per checkout, newest first."""
        async with self.session_factory() as db:
            stmt = (
                select(Order.id, Order.checkout_reference)
                .where(
                    Order.status == OrderStatus.PENDING.value,
                    Order.created_at >= since,
                    or_(Order.checkout_reference.is_not(None), Order.payment_id.is_not(None)),
                )
                .order_by(Order.created_at.desc(), Order.id)
                .limit(limit)
            )
            if event_id is not None:
                stmt = stmt.where(Order.event_id == event_id)
            rows = (await db.execute(stmt)).all()

        seen = set()
        order_ids = []
        for row in rows:
            key = row.checkout_reference or row.id
            if key in seen:
                continue
            seen.add(key)
            order_ids.append(row.id)
        return order_ids

    async def sweep_pending(
        self,
        event_id: Optional[str] = None,
        hours_ago: Optional[int] = None,
        limit: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> SweepResult:
        """
        Reconcile recently created pending orders.

        Each checkout is looked up independently with bounded concurrency;
        a failure is recorded in that item's result and never stops the
        others.

        Args:
            event_id: Restrict to one event
            hours_ago: Age window (defaults to ``sweep_lookback_hours``)
            limit: Max orders to consider (defaults to ``sweep_batch_size``)
            now: Reference instant for the age window

        Returns:
            SweepResult: Per-item results and totals
        """
        start_time = time.time()
        now = now or utcnow()
        if hours_ago is None:
            hours_ago = self.settings.sweep_lookback_hours
        if limit is None:
            limit = self.settings.sweep_batch_size
        since = now - timedelta(hours=hours_ago)
        order_ids = await self._pending_order_ids(event_id, since, limit)

        logger.info("pending_sweep_started", event_id=event_id, orders=len(order_ids))
        semaphore = asyncio.Semaphore(max(1, self.settings.sweep_concurrency))

        async def reconcile(order_id: str) -> SyncResult:
            async with semaphore:
                try:
                    return await self.sync_order(order_id, trigger="sweep")
                except Exception as e:
                    metrics.record_reconciliation("sweep", "error")
                    logger.warning(
                        "pending_sweep_item_failed",
                        order_id=order_id,
                        error_type=type(e).__name__,
                        error=str(e),
                    )
                    return SyncResult(order_id=order_id, outcome="error", message=str(e))

        results = list(await asyncio.gather(*(reconcile(i) for i in order_ids)))

        updated = sum(1 for r in results if r.outcome in ("confirmed", "cancelled", "refunded"))
        errors = sum(1 for r in results if r.outcome == "error")
        duration = time.time() - start_time
        metrics.set_sweep_metrics(len(results), duration)
        logger.info(
            "pending_sweep_completed",
            checked=len(results),
            updated=updated,
            errors=errors,
            duration_seconds=duration,
        )
        return SweepResult(checked=len(results), updated=updated, errors=errors, results=results)
