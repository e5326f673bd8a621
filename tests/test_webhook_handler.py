"""
Unit tests for webhook handler.
"""
import hashlib
import hmac
from typing import Any
from unittest.mock import AsyncMock

import pytest

from registration_payments.config import Settings
from registration_payments.core.reconciliation import ReconciliationEngine, SyncResult
from registration_payments.integrations.webhook_handler import (
    PaymentNotification,
    WebhookError,
    WebhookHandler,
    parse_signature_header,
    signature_manifest,
)
from registration_payments.services import Services

# Matches the secret in the test_settings fixture
TEST_WEBHOOK_SECRET = "whsec-test-secret"


def sign(data_id: str, request_id: str, ts: str = "1742505638683", secret: str = TEST_WEBHOOK_SECRET) -> str:
    manifest = f"id:{data_id.lower()};request-id:{request_id};ts:{ts};"
    digest = hmac.new(secret.encode(), manifest.encode(), hashlib.sha256).hexdigest()
    return f"ts={ts},v1={digest}"


def payment_notification(payment_id: str, **extra: Any) -> PaymentNotification:
    return PaymentNotification.model_validate(
        {"type": "payment", "action": "payment.updated", "data": {"id": payment_id}, **extra}
    )


@pytest.fixture
def handler(test_settings: Settings) -> WebhookHandler:
    return WebhookHandler(test_settings, AsyncMock(spec=ReconciliationEngine))


class TestSignatureVerification:
    """Test suite for x-signature verification."""

    @pytest.mark.unit
    def test_manifest_format(self) -> None:
        assert signature_manifest("ABC123", "req-1", "99") == "id:abc123;request-id:req-1;ts:99;"
        assert parse_signature_header("ts=99, v1=abcd") == {"ts": "99", "v1": "abcd"}

    @pytest.mark.unit
    def test_valid_signature(self, handler: WebhookHandler) -> None:
        handler.verify_signature(sign("123456", "req-1"), "req-1", "123456")

    @pytest.mark.unit
    def test_invalid_signature(self, handler: WebhookHandler) -> None:
        header = sign("123456", "req-1", secret="someone-else")

        with pytest.raises(WebhookError, match="Invalid webhook signature"):
            handler.verify_signature(header, "req-1", "123456")

    @pytest.mark.unit
    def test_signature_bound_to_resource(self, handler: WebhookHandler) -> None:
        with pytest.raises(WebhookError):
            handler.verify_signature(sign("123456", "req-1"), "req-1", "654321")

    @pytest.mark.unit
    def test_missing_or_malformed_headers(self, handler: WebhookHandler) -> None:
        with pytest.raises(WebhookError, match="Missing"):
            handler.verify_signature(None, "req-1", "123456")
        with pytest.raises(WebhookError, match="Missing"):
            handler.verify_signature(sign("123456", "req-1"), None, "123456")
        with pytest.raises(WebhookError, match="Malformed"):
            handler.verify_signature("v1=abcd", "req-1", "123456")

    @pytest.mark.unit
    def test_no_secret_outside_production_skips(self, test_settings: Settings) -> None:
        settings = test_settings.model_copy(update={"mp_webhook_secret": None})
        handler = WebhookHandler(settings, AsyncMock(spec=ReconciliationEngine))

        handler.verify_signature(None, None, None)

    @pytest.mark.unit
    def test_no_secret_in_production_rejects(self, test_settings: Settings) -> None:
        settings = test_settings.model_copy(
            update={"mp_webhook_secret": None, "app_env": "production"}
        )
        handler = WebhookHandler(settings, AsyncMock(spec=ReconciliationEngine))

        with pytest.raises(WebhookError, match="not configured"):
            handler.verify_signature(sign("1", "req-1"), "req-1", "1")


class TestWebhookProcessing:
    """Test suite for notification processing."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_payment_notification_confirms_order(
        self, services: Services, seed: Any, vault: Any, place_orders: Any, fake_processor: Any
    ) -> None:
        event = await seed.event()
        modality = await seed.modality(event)
        await seed.credential(vault)
        (order,) = await place_orders(event, modality)
        fake_processor.add_payment("2002", order.id)

        result = await services.webhooks.process_notification(
            payment_notification("2002", user_id=998877), request_id="req-1"
        )

        assert result["status"] == "processed"
        assert result["result"]["outcome"] == "confirmed"
        assert await services.webhooks.is_notification_processed("req-1")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_duplicate_delivery(
        self, services: Services, seed: Any, vault: Any, place_orders: Any, fake_processor: Any
    ) -> None:
        event = await seed.event()
        modality = await seed.modality(event)
        await seed.credential(vault)
        (order,) = await place_orders(event, modality)
        fake_processor.add_payment("2002", order.id)
        notification = payment_notification("2002", user_id="998877")

        await services.webhooks.process_notification(notification, request_id="req-1")
        fetches = len(fake_processor.calls("GET", "/v1/payments/2002"))
        second = await services.webhooks.process_notification(notification, request_id="req-1")

        assert second["status"] == "duplicate"
        assert len(fake_processor.calls("GET", "/v1/payments/2002")) == fetches

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_redis_down_still_processes(
        self,
        services: Services,
        seed: Any,
        vault: Any,
        place_orders: Any,
        fake_processor: Any,
        fake_redis: Any,
    ) -> None:
        event = await seed.event()
        modality = await seed.modality(event)
        await seed.credential(vault)
        (order,) = await place_orders(event, modality)
        fake_processor.add_payment("2002", order.id)
        fake_redis.available = False

        result = await services.webhooks.process_notification(
            payment_notification("2002", user_id="998877"), request_id="req-1"
        )

        assert result["status"] == "processed"
        assert result["result"]["outcome"] == "confirmed"
        assert fake_redis.store == {}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_legacy_topic_is_accepted(
        self, services: Services, seed: Any, vault: Any, place_orders: Any, fake_processor: Any
    ) -> None:
        event = await seed.event()
        modality = await seed.modality(event)
        await seed.credential(vault)
        (order,) = await place_orders(event, modality)
        fake_processor.add_payment("2002", order.id, status="rejected")
        notification = PaymentNotification.model_validate(
            {"topic": "payment", "data": {"id": 2002}, "user_id": 998877}
        )

        result = await services.webhooks.process_notification(notification)

        assert result["result"]["outcome"] == "cancelled"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_other_topics_are_ignored(
        self, services: Services, fake_processor: Any, fake_redis: Any
    ) -> None:
        for body in (
            {"type": "merchant_order", "data": {"id": "77"}},
            {"type": "payment", "data": {}},
        ):
            result = await services.webhooks.process_notification(
                PaymentNotification.model_validate(body), request_id="req-9"
            )
            assert result["status"] == "ignored"

        assert fake_processor.requests == []
        assert fake_redis.store == {}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_only_payment_id_is_forwarded(self, handler: WebhookHandler, fake_redis: Any) -> None:
        handler.redis_client = fake_redis
        engine = handler.reconciliation
        engine.handle_payment_notification.return_value = SyncResult(order_id="o1", outcome="confirmed")

        await handler.process_notification(
            payment_notification("555", user_id=42, data_extra="ignored"), request_id="req-2"
        )

        engine.handle_payment_notification.assert_awaited_once_with("555", processor_user_id="42")
        assert "webhook:processed:req-2" in fake_redis.store
