"""
Pytest configuration and fixtures.
"""
import json
from datetime import timedelta
from decimal import Decimal
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional, Set

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from registration_payments.api.main import create_app
from registration_payments.config import Settings
from registration_payments.core.orders import OrderItem
from registration_payments.core.vault import CredentialVault
from registration_payments.database.connection import create_session_factory
from registration_payments.database.models import (
    Base,
    Coupon,
    DiscountBatch,
    Event,
    EventStatus,
    Modality,
    ProcessorCredential,
    SizeStock,
    utcnow,
)
from registration_payments.integrations.mercadopago_client import MercadoPagoClient
from registration_payments.services import Services

TEST_ENCRYPTION_KEY = "0f1e2d3c4b5a69788796a5b4c3d2e1f00112233445566778899aabbccddeeff0"
TEST_WEBHOOK_SECRET = "whsec-test-secret"
ORGANIZER_ID = "organizer-1"


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings."""
    return Settings(
        encryption_key=TEST_ENCRYPTION_KEY,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'registrations.db'}",
        redis_url="redis://localhost:6379/1",
        app_name="registration-payments-test",
        app_env="test",
        log_level="DEBUG",
        debug=True,
        app_url="https://events.test",
        mp_api_base_url="https://api.mercadopago.test",
        mp_webhook_secret=TEST_WEBHOOK_SECRET,
        processor_retry_base_delay=0,
        processor_max_attempts=3,
        sweep_concurrency=3,
    )


@pytest_asyncio.fixture
async def engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, Any]:
    """Create a file-backed SQLite engine so concurrent sessions share one database."""
    engine = create_async_engine(
        test_settings.database_url,
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest_asyncio.fixture
async def test_db(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, Any]:
    """Create test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def vault() -> CredentialVault:
    return CredentialVault.from_hex(TEST_ENCRYPTION_KEY)


class Seeder:
    """Inserts reference data, each call in its own committed session."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def add(self, *objects: Any) -> None:
        async with self.session_factory() as db:
            db.add_all(objects)
            await db.commit()

    async def event(self, **overrides: Any) -> Event:
        now = utcnow()
        values: Dict[str, Any] = dict(
            organizer_id=ORGANIZER_ID,
            name="City Marathon",
            status=EventStatus.PUBLISHED.value,
            registration_start=now - timedelta(days=1),
            registration_end=now + timedelta(days=30),
            requires_apparel_size=False,
        )
        values.update(overrides)
        event = Event(**values)
        await self.add(event)
        return event

    async def modality(self, event: Event, **overrides: Any) -> Modality:
        values: Dict[str, Any] = dict(
            event_id=event.id, name="10K", price=Decimal("100.00"), active=True
        )
        values.update(overrides)
        modality = Modality(**values)
        await self.add(modality)
        return modality

    async def sizes(self, event: Event, **stock: int) -> List[SizeStock]:
        rows = [SizeStock(event_id=event.id, size=size, stock=qty) for size, qty in stock.items()]
        await self.add(*rows)
        return rows

    async def batch(self, event: Event, **overrides: Any) -> DiscountBatch:
        now = utcnow()
        values: Dict[str, Any] = dict(
            event_id=event.id,
            name="Early bird",
            type="DATE",
            start_date=now - timedelta(days=1),
            end_date=now + timedelta(days=7),
            discount_type="FIXED",
            discount_value=Decimal("10.00"),
        )
        values.update(overrides)
        batch = DiscountBatch(**values)
        await self.add(batch)
        return batch

    async def coupon(self, event: Event, **overrides: Any) -> Coupon:
        values: Dict[str, Any] = dict(
            event_id=event.id,
            code="FRIEND5",
            discount_type="FIXED",
            discount_value=Decimal("5.00"),
        )
        values.update(overrides)
        coupon = Coupon(**values)
        await self.add(coupon)
        return coupon

    async def credential(
        self,
        vault: CredentialVault,
        organizer_id: str = ORGANIZER_ID,
        access_token: str = "APP_USR-organizer-token",
        **overrides: Any,
    ) -> ProcessorCredential:
        values: Dict[str, Any] = dict(
            organizer_id=organizer_id,
            access_token=vault.encrypt(access_token),
            processor_user_id="998877",
            live_mode=True,
        )
        values.update(overrides)
        credential = ProcessorCredential(**values)
        await self.add(credential)
        return credential


@pytest.fixture
def seed(session_factory: async_sessionmaker[AsyncSession]) -> Seeder:
    return Seeder(session_factory)


class FakeMercadoPago:
    """In-memory stand-in for the processor REST API, served through httpx.MockTransport."""

    def __init__(self) -> None:
        self.payments: Dict[str, Dict[str, Any]] = {}
        self.preferences: List[Dict[str, Any]] = []
        self.requests: List[httpx.Request] = []
        self.queued: List[httpx.Response] = []
        self.oauth_token: Dict[str, Any] = {}
        self.used_refresh_tokens: Set[str] = set()
        self.on_request: Optional[Callable[[httpx.Request], None]] = None

    def add_payment(
        self, payment_id: str, external_reference: Optional[str], status: str = "approved", **extra: Any
    ) -> Dict[str, Any]:
        payment = {
            "id": int(payment_id) if payment_id.isdigit() else payment_id,
            "status": status,
            "status_detail": "accredited" if status == "approved" else status,
            "external_reference": external_reference,
            "payment_type_id": "credit_card",
            "payment_method_id": "visa",
            **extra,
        }
        self.payments[payment_id] = payment
        return payment

    def calls(self, method: str, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.on_request is not None:
            self.on_request(request)
        if self.queued:
            return self.queued.pop(0)

        path = request.url.path
        if request.method == "POST" and path == "/checkout/preferences":
            body = json.loads(request.content)
            self.preferences.append(body)
            preference_id = f"pref-{len(self.preferences)}"
            return httpx.Response(
                201,
                json={
                    "id": preference_id,
                    "init_point": f"https://www.mercadopago.test/checkout?pref_id={preference_id}",
                    "sandbox_init_point": f"https://sandbox.mercadopago.test/checkout?pref_id={preference_id}",
                    "external_reference": body.get("external_reference"),
                },
            )

        if request.method == "GET" and path == "/v1/payments/search":
            reference = request.url.params.get("external_reference")
            results = [
                p for p in reversed(list(self.payments.values()))
                if p.get("external_reference") == reference
            ]
            return httpx.Response(200, json={"results": results, "paging": {"total": len(results)}})

        if request.method == "GET" and path.startswith("/v1/payments/"):
            payment_id = path.rsplit("/", 1)[1]
            if payment_id in self.payments:
                return httpx.Response(200, json=self.payments[payment_id])
            return httpx.Response(404, json={"message": "Payment not found", "status": 404})

        if request.method == "POST" and path == "/oauth/token":
            # Refresh tokens are single-use
            refresh_token = json.loads(request.content).get("refresh_token")
            if refresh_token in self.used_refresh_tokens:
                return httpx.Response(
                    400, json={"error": "invalid_grant", "message": "invalid_grant", "status": 400}
                )
            self.used_refresh_tokens.add(refresh_token)
            return httpx.Response(200, json=self.oauth_token)

        return httpx.Response(404, json={"message": f"Unknown route {path}"})


@pytest.fixture
def fake_processor() -> FakeMercadoPago:
    return FakeMercadoPago()


@pytest_asyncio.fixture
async def mp_client(
    test_settings: Settings, fake_processor: FakeMercadoPago
) -> AsyncGenerator[MercadoPagoClient, Any]:
    http_client = httpx.AsyncClient(
        transport=httpx.MockTransport(fake_processor.handler),
        base_url=test_settings.mp_api_base_url,
    )
    client = MercadoPagoClient(test_settings, http_client=http_client)
    yield client
    await http_client.aclose()


class FakeRedis:
    """Minimal async Redis double for de-duplication and health checks."""

    def __init__(self) -> None:
        self.store: Dict[str, str] = {}
        self.available = True

    def _check(self) -> None:
        if not self.available:
            raise ConnectionError("redis unavailable")

    async def exists(self, key: str) -> int:
        self._check()
        return int(key in self.store)

    async def setex(self, key: str, ttl: int, value: str) -> bool:
        self._check()
        self.store[key] = value
        return True

    async def ping(self) -> bool:
        self._check()
        return True

    async def aclose(self) -> None:
        pass


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def services(
    test_settings: Settings,
    engine: AsyncEngine,
    session_factory: async_sessionmaker[AsyncSession],
    mp_client: MercadoPagoClient,
    fake_redis: FakeRedis,
) -> Services:
    return Services(
        settings=test_settings,
        engine=engine,
        session_factory=session_factory,
        client=mp_client,
        redis_client=fake_redis,  # type: ignore[arg-type]
    )


@pytest_asyncio.fixture
async def client(services: Services) -> AsyncGenerator[AsyncClient, Any]:
    """Create test HTTP client."""
    app = create_app(services=services)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
def place_orders(services: Services) -> Any:
    """Create the orders of one checkout and optionally open the processor checkout."""

    async def _place(
        event: Event,
        modality: Modality,
        participants: Any = ("buyer-1",),
        buyer_id: str = "buyer-1",
        checkout: bool = True,
        **item_fields: Any,
    ) -> List[Any]:
        items = [
            OrderItem(participant_id=participant, modality_id=modality.id, **item_fields)
            for participant in participants
        ]
        async with services.session_factory() as db:
            orders = await services.orders.create_orders(db, buyer_id, event.id, items)
        if checkout:
            await services.checkout.create_checkout([o.id for o in orders], principal_id=buyer_id)
        return orders

    return _place
