"""
Service wiring.

Builds every long-lived component once from settings. The API lifespan and
the reconciliation worker share this so they run with identical
configuration.
"""
from typing import Optional

import httpx
import redis.asyncio as aioredis
import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from registration_payments.config import Settings
from registration_payments.core.checkout import CheckoutService
from registration_payments.core.credentials import CredentialStore
from registration_payments.core.grouping import OrderGrouping
from registration_payments.core.orders import OrderService
from registration_payments.core.pricing import PricingEngine
from registration_payments.core.reconciliation import ReconciliationEngine
from registration_payments.core.vault import CredentialVault
from registration_payments.database.connection import close_db, create_engine, create_session_factory
from registration_payments.integrations.mercadopago_client import MercadoPagoClient
from registration_payments.integrations.webhook_handler import WebhookHandler
from registration_payments.monitoring.health import HealthCheck

logger = structlog.get_logger(__name__)


class Services:
    """Container for the application's components."""

    def __init__(
        self,
        settings: Settings,
        engine: AsyncEngine,
        session_factory: async_sessionmaker[AsyncSession],
        client: MercadoPagoClient,
        redis_client: aioredis.Redis,
    ):
        self.settings = settings
        self.engine = engine
        self.session_factory = session_factory
        self.client = client
        self.redis_client = redis_client

        self.vault = CredentialVault.from_hex(settings.encryption_key)
        self.credentials = CredentialStore(session_factory, self.vault, client, settings)
        self.pricing = PricingEngine(settings)
        self.orders = OrderService(self.pricing)
        self.grouping = OrderGrouping()
        self.checkout = CheckoutService(session_factory, client, self.credentials, settings)
        self.reconciliation = ReconciliationEngine(
            session_factory, client, self.credentials, settings
        )
        self.webhooks = WebhookHandler(settings, self.reconciliation, redis_client)
        self.health = HealthCheck(session_factory, redis_client)

    async def close(self) -> None:
        """Release HTTP, Redis and database connections."""
        await self.client.close()
        await self.redis_client.aclose()
        await close_db(self.engine)
        logger.info("services_closed")


def build_services(
    settings: Settings,
    engine: Optional[AsyncEngine] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    redis_client: Optional[aioredis.Redis] = None,
) -> Services:
    """
    Build all components from settings.

    Args:
        settings: Application settings
        engine: Existing database engine (created from settings if omitted)
        http_client: HTTP client for the processor API
        redis_client: Redis client for webhook de-duplication

    Returns:
        Services: Wired components
    """
    engine = engine or create_engine(settings)
    if redis_client is None:
        redis_client = aioredis.from_url(
            settings.redis_url, encoding="utf-8", decode_responses=True
        )

    services = Services(
        settings=settings,
        engine=engine,
        session_factory=create_session_factory(engine),
        client=MercadoPagoClient(settings, http_client=http_client),
        redis_client=redis_client,
    )
    logger.info("services_built", app_env=settings.app_env)
    return services
