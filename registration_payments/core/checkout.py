"""
Checkout preference creation.

One preference pays for every order of a checkout. The primary order (the
one with the lowest order number) lends its id as ``external_reference``,
which is how payments are matched back to orders later. No database
session is held while the processor is called.
"""
import uuid
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog
from pydantic import BaseModel
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from registration_payments.config import Settings
from registration_payments.core.credentials import CredentialStore, ProcessorAccess
from registration_payments.core.errors import (
    AccessDeniedError,
    ConflictError,
    GatewayError,
    NotFoundError,
    ValidationError,
)
from registration_payments.database.models import (
    Event,
    Modality,
    Order,
    OrderStatus,
)
from registration_payments.integrations.mercadopago_client import MercadoPagoClient

logger = structlog.get_logger(__name__)


class Payer(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None


class CheckoutSession(BaseModel):
    checkout_url: str
    preference_id: str
    external_reference: str
    order_ids: List[str]
    total: Decimal
    marketplace_fee: Optional[Decimal] = None
    test_mode: bool
    credential_source: str


class CheckoutService:
    """Builds processor checkout sessions for pending orders."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        client: MercadoPagoClient,
        credentials: CredentialStore,
        settings: Settings,
    ):
        self.session_factory = session_factory
        self.client = client
        self.credentials = credentials
        self.settings = settings

    def split_enabled(self, access: ProcessorAccess, platform_fee: Decimal) -> bool:
        """Whether the platform fee is attached as a marketplace fee."""
        if not access.supports_split or platform_fee <= 0:
            return False
        return not (access.is_test and self.settings.disable_split_payments_test)

    def build_preference(
        self,
        event: Event,
        orders: List[Order],
        modality_names: Dict[str, str],
        payer: Optional[Payer],
        marketplace_fee: Optional[Decimal],
    ) -> Dict[str, Any]:
        """
        Build the preference body for a checkout.

        Args:
            event: Event the orders belong to
            orders: Orders sorted by order number; the first is primary
            modality_names: Modality names by id, for the item description
            payer: Optional buyer identity
            marketplace_fee: Platform fee to split, or None

        Returns:
            Dict[str, Any]: JSON-ready preference
        """
        primary = orders[0]
        total = sum((o.total for o in orders), Decimal("0.00"))
        app_url = self.settings.app_url.rstrip("/")
        description = ", ".join(
            f"#{o.order_number} {modality_names.get(o.modality_id, '')}".strip() for o in orders
        )

        preference: Dict[str, Any] = {
            "items": [
                {
                    "id": primary.id,
                    "title": f"{event.name} - {len(orders)} registration(s)",
                    "description": description,
                    "category_id": "tickets",
                    "quantity": 1,
                    "currency_id": self.settings.currency,
                    "unit_price": float(total),
                }
            ],
            "back_urls": {
                "success": f"{app_url}/checkout/success?order={primary.id}",
                "failure": f"{app_url}/checkout/failure?order={primary.id}",
                "pending": f"{app_url}/checkout/pending?order={primary.id}",
            },
            "auto_return": "approved",
            "notification_url": self.settings.notification_url,
            "external_reference": primary.id,
            "statement_descriptor": self.settings.statement_descriptor,
            "metadata": {
                "primary_order_id": primary.id,
                "order_ids": [o.id for o in orders],
                "event_id": event.id,
                "buyer_id": primary.buyer_id,
            },
            "binary_mode": False,
        }
        if payer is not None:
            preference["payer"] = payer.model_dump(exclude_none=True, mode="json")
        if marketplace_fee is not None:
            preference["marketplace_fee"] = float(marketplace_fee)
        return preference

    async def _check_checkout_membership(
        self, db: AsyncSession, orders: List[Order], primary: Order
    ) -> None:
        """
        Refuse to split or merge orders that already belong to a checkout.

        A pending checkout is matched by its primary order id, so every
        order already referencing it must be part of the new checkout and
        the new primary must be the same order.
        """
        references = sorted({o.checkout_reference for o in orders if o.checkout_reference})
        if not references:
            return

        result = await db.execute(
            select(Order.id).where(
                Order.checkout_reference.in_(references),
                Order.status == OrderStatus.PENDING.value,
            )
        )
        members = set(result.scalars().all())
        outside = members - {o.id for o in orders}
        if references != [primary.id] or outside:
            logger.warning(
                "checkout_membership_conflict",
                primary_order_id=primary.id,
                existing_references=references,
                missing_order_ids=sorted(outside),
            )
            raise ConflictError(
                "Orders already belong to another checkout; pay it as a whole or cancel it first"
            )

    async def create_checkout(
        self,
        order_ids: List[str],
        principal_id: Optional[str] = None,
        payer: Optional[Payer] = None,
    ) -> CheckoutSession:
        """
        Create a checkout session paying for one or more pending orders.

        Args:
            order_ids: Orders to pay for
            principal_id: When given, must be the buyer of every order
            payer: Optional buyer identity passed to the processor

        Returns:
            CheckoutSession: URL to redirect the buyer to

        Raises:
            NotFoundError: If an order does not exist
            AccessDeniedError: If the principal is not the buyer
            ValidationError: If orders are not pending or span events
            ConflictError: If orders already belong to a different checkout
            CredentialError: If no usable processor credential exists
            GatewayError: If the processor refuses the preference
        """
        ids = list(dict.fromkeys(order_ids))
        if not ids:
            raise ValidationError("At least one order is required")

        async with self.session_factory() as db:
            result = await db.execute(select(Order).where(Order.id.in_(ids)))
            orders = list(result.scalars().all())

            missing = set(ids) - {o.id for o in orders}
            if missing:
                raise NotFoundError(f"Orders not found: {', '.join(sorted(missing))}")
            if principal_id is not None and any(o.buyer_id != principal_id for o in orders):
                raise AccessDeniedError("Only the buyer can pay for these orders")
            not_pending = [o for o in orders if o.status != OrderStatus.PENDING.value]
            if not_pending:
                numbers = ", ".join(f"#{o.order_number}" for o in not_pending)
                raise ValidationError(f"Orders are not pending payment: {numbers}")
            if len({o.event_id for o in orders}) > 1:
                raise ValidationError("All orders of a checkout must belong to the same event")

            event = await db.get(Event, orders[0].event_id)
            if event is None:
                raise NotFoundError(f"Event {orders[0].event_id} not found")

            orders.sort(key=lambda o: o.order_number)
            primary = orders[0]
            await self._check_checkout_membership(db, orders, primary)

            names = await db.execute(
                select(Modality.id, Modality.name).where(
                    Modality.id.in_(sorted({o.modality_id for o in orders}))
                )
            )
            modality_names = {row.id: row.name for row in names}

        access = await self.credentials.resolve(event.organizer_id)
        total = sum((o.total for o in orders), Decimal("0.00"))
        platform_fee = sum((o.platform_fee for o in orders), Decimal("0.00"))
        marketplace_fee = platform_fee if self.split_enabled(access, platform_fee) else None

        preference = self.build_preference(event, orders, modality_names, payer, marketplace_fee)
        created = await self.client.create_preference(
            access.token, preference, idempotency_key=str(uuid.uuid4())
        )

        if created.external_reference != primary.id:
            logger.error(
                "preference_reference_mismatch",
                expected=primary.id,
                returned=created.external_reference,
                preference_id=created.id,
            )
            raise GatewayError("Processor returned a preference with a mismatched external_reference")

        checkout_url = created.sandbox_init_point if access.is_test else created.init_point
        if not checkout_url:
            raise GatewayError("Processor returned a preference without a checkout URL")

        async with self.session_factory() as db:
            await db.execute(
                update(Order)
                .where(Order.id.in_(ids), Order.status == OrderStatus.PENDING.value)
                .values(checkout_reference=primary.id, preference_id=created.id)
                .execution_options(synchronize_session=False)
            )
            await db.commit()

        logger.info(
            "checkout_created",
            preference_id=created.id,
            primary_order_id=primary.id,
            order_count=len(orders),
            total=str(total),
            marketplace_fee=str(marketplace_fee) if marketplace_fee is not None else None,
            test_mode=access.is_test,
            credential_source=access.source.value,
        )

        return CheckoutSession(
            checkout_url=checkout_url,
            preference_id=created.id,
            external_reference=primary.id,
            order_ids=[o.id for o in orders],
            total=total,
            marketplace_fee=marketplace_fee,
            test_mode=access.is_test,
            credential_source=access.source.value,
        )
