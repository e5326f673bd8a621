"""
Unit tests for the Mercado Pago client.
"""
from decimal import Decimal
from typing import Any

import httpx
import pytest

from registration_payments.core.errors import (
    GatewayError,
    GatewayErrorType,
    SandboxCounterpartError,
)
from registration_payments.integrations.mercadopago_client import (
    CircuitBreaker,
    MercadoPagoClient,
    ProcessorPayment,
)

TOKEN = "APP_USR-organizer-token"


class TestMercadoPagoClient:
    """Test suite for MercadoPagoClient."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_get_payment(self, mp_client: MercadoPagoClient, fake_processor: Any) -> None:
        fake_processor.add_payment("123456", "order-1", transaction_amount=93.5)

        payment = await mp_client.get_payment(TOKEN, "123456")

        assert payment.id == "123456"
        assert payment.status == "approved"
        assert payment.external_reference == "order-1"
        assert payment.transaction_amount == Decimal("93.5")
        request = fake_processor.requests[-1]
        assert request.headers["Authorization"] == f"Bearer {TOKEN}"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_payment_is_permanent_404(
        self, mp_client: MercadoPagoClient, fake_processor: Any
    ) -> None:
        with pytest.raises(GatewayError) as exc_info:
            await mp_client.get_payment(TOKEN, "404404")

        assert exc_info.value.http_status == 404
        assert exc_info.value.error_type == GatewayErrorType.PERMANENT
        assert len(fake_processor.requests) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(
        self, mp_client: MercadoPagoClient, fake_processor: Any
    ) -> None:
        fake_processor.add_payment("42", "order-1")
        fake_processor.queued = [
            httpx.Response(503, json={"message": "unavailable"}),
            httpx.Response(429, json={"message": "slow down"}),
        ]

        payment = await mp_client.get_payment(TOKEN, "42")

        assert payment.id == "42"
        assert len(fake_processor.requests) == 3

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_retries_are_bounded(
        self, mp_client: MercadoPagoClient, fake_processor: Any
    ) -> None:
        fake_processor.queued = [httpx.Response(500, json={"message": "boom"}) for _ in range(5)]

        with pytest.raises(GatewayError) as exc_info:
            await mp_client.get_payment(TOKEN, "42")

        assert exc_info.value.is_retryable
        assert len(fake_processor.requests) == 3

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_timeout_is_transient(self, test_settings: Any) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        http_client = httpx.AsyncClient(
            transport=httpx.MockTransport(handler), base_url=test_settings.mp_api_base_url
        )
        client = MercadoPagoClient(test_settings, http_client=http_client)

        with pytest.raises(GatewayError, match="timed out") as exc_info:
            await client.get_payment(TOKEN, "1")

        assert exc_info.value.error_type == GatewayErrorType.TRANSIENT
        await http_client.aclose()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_search_payments(self, mp_client: MercadoPagoClient, fake_processor: Any) -> None:
        fake_processor.add_payment("1", "order-1", status="rejected")
        fake_processor.add_payment("2", "order-1", status="approved")
        fake_processor.add_payment("3", "order-2")

        payments = await mp_client.search_payments(TOKEN, "order-1")

        assert [p.id for p in payments] == ["2", "1"]
        params = fake_processor.requests[-1].url.params
        assert params["external_reference"] == "order-1"
        assert params["sort"] == "date_created"
        assert params["criteria"] == "desc"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_create_preference_sends_idempotency_key(
        self, mp_client: MercadoPagoClient, fake_processor: Any
    ) -> None:
        preference = await mp_client.create_preference(
            TOKEN, {"items": [], "external_reference": "order-1"}, idempotency_key="key-1"
        )

        assert preference.id == "pref-1"
        assert preference.external_reference == "order-1"
        assert fake_processor.requests[-1].headers["X-Idempotency-Key"] == "key-1"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_sandbox_counterpart_error(
        self, mp_client: MercadoPagoClient, fake_processor: Any
    ) -> None:
        fake_processor.queued = [
            httpx.Response(
                400,
                json={"message": "Uma das partes com as quais você está tentando fazer o pagamento é de teste"},
            )
        ]

        with pytest.raises(SandboxCounterpartError) as exc_info:
            await mp_client.create_preference(TOKEN, {"external_reference": "order-1"})

        assert exc_info.value.status_code == 400
        assert exc_info.value.http_status == 400

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refresh_access_token(
        self, mp_client: MercadoPagoClient, fake_processor: Any
    ) -> None:
        fake_processor.oauth_token = {
            "access_token": "APP_USR-new",
            "refresh_token": "TG-new",
            "user_id": 998877,
            "live_mode": True,
            "expires_in": 15552000,
        }

        token = await mp_client.refresh_access_token("TG-old")

        assert token.access_token == "APP_USR-new"
        assert token.user_id == "998877"
        assert "Authorization" not in fake_processor.requests[-1].headers


class TestProcessorPayment:
    """Payment model parsing."""

    @pytest.mark.unit
    def test_itemized_fees_fall_back_to_transaction_details(self) -> None:
        payment = ProcessorPayment.model_validate(
            {
                "id": 1,
                "status": "approved",
                "transaction_details": {
                    "net_received_amount": 80.0,
                    "fee_details": [{"type": "mercadopago_fee", "amount": 4.5}],
                },
            }
        )

        assert payment.net_received_amount == Decimal("80.0")
        assert [f.amount for f in payment.itemized_fees] == [Decimal("4.5")]


class TestCircuitBreaker:
    """Test suite for CircuitBreaker."""

    @pytest.mark.unit
    def test_opens_after_threshold(self) -> None:
        breaker = CircuitBreaker(failure_threshold=2, timeout=60)
        breaker.on_failure()
        breaker.before_call()
        breaker.on_failure()

        assert breaker.state == "open"
        with pytest.raises(GatewayError, match="circuit breaker is open"):
            breaker.before_call()

    @pytest.mark.unit
    def test_half_open_then_closed(self) -> None:
        breaker = CircuitBreaker(failure_threshold=1, timeout=0, success_threshold=1)
        breaker.on_failure()
        breaker.last_failure_time -= 1

        breaker.before_call()
        assert breaker.state == "half_open"
        breaker.on_success()
        assert breaker.state == "closed"
