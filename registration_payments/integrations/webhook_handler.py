"""
Mercado Pago webhook handler with signature verification and notification deduplication.

Implements:
- ``x-signature`` HMAC-SHA256 verification
- Notification deduplication using Redis (keyed by ``x-request-id``)
- Re-fetching the payment instead of trusting the notification body
"""
import hashlib
import hmac
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
import structlog
from pydantic import BaseModel, ConfigDict, Field, field_validator

from registration_payments.config import Settings
from registration_payments.core.reconciliation import ReconciliationEngine

logger = structlog.get_logger(__name__)

PAYMENT_TOPIC = "payment"


class WebhookError(Exception):
    """Raised when a webhook notification is rejected."""

    pass


class NotificationData(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> Optional[str]:
        return None if v is None else str(v)


class PaymentNotification(BaseModel):
    """
    Notification body. Newer deliveries carry ``type``, legacy IPN ones ``topic``.
    """

    model_config = ConfigDict(extra="allow")

    type: Optional[str] = None
    topic: Optional[str] = None
    action: Optional[str] = None
    data: NotificationData = Field(default_factory=NotificationData)
    user_id: Optional[str] = None

    @field_validator("user_id", mode="before")
    @classmethod
    def coerce_user_id(cls, v: Any) -> Optional[str]:
        return None if v is None else str(v)

    @property
    def kind(self) -> Optional[str]:
        return self.type or self.topic

    @property
    def resource_id(self) -> Optional[str]:
        return self.data.id


def parse_signature_header(header: str) -> Dict[str, str]:
    """Split ``ts=...,v1=...`` into its parts."""
    parts: Dict[str, str] = {}
    for item in header.split(","):
        key, sep, value = item.partition("=")
        if sep:
            parts[key.strip()] = value.strip()
    return parts


def signature_manifest(data_id: str, request_id: str, ts: str) -> str:
    """Message the processor signs for a notification."""
    # Alphanumeric ids are signed lower-cased
    return f"id:{data_id.lower()};request-id:{request_id};ts:{ts};"


class WebhookHandler:
    """
    Handles Mercado Pago notifications with deduplication.

    Only ``payment`` notifications are acted upon; anything else is
    acknowledged and ignored so the processor stops retrying it.
    """

    def __init__(
        self,
        settings: Settings,
        reconciliation: ReconciliationEngine,
        redis_client: Optional[aioredis.Redis] = None,
    ):
        """
        Initialize webhook handler.

        Args:
            settings: Application settings
            reconciliation: Engine that applies payment state
            redis_client: Optional Redis client for notification deduplication
        """
        self.settings = settings
        self.reconciliation = reconciliation
        self.redis_client = redis_client
        self._owns_redis = False

        logger.info("webhook_handler_initialized")

    async def _ensure_redis(self) -> aioredis.Redis:
        """Ensure Redis client is initialized."""
        if self.redis_client is None:
            self.redis_client = aioredis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            self._owns_redis = True
        return self.redis_client

    def verify_signature(
        self,
        x_signature: Optional[str],
        x_request_id: Optional[str],
        data_id: Optional[str],
    ) -> None:
        """
        Verify the ``x-signature`` header of a notification.

        Without a configured secret, verification is skipped outside
        production and every notification is rejected in production.

        Args:
            x_signature: ``x-signature`` header value (``ts=...,v1=...``)
            x_request_id: ``x-request-id`` header value
            data_id: Resource id from the notification (``data.id``)

        Raises:
            WebhookError: If the signature is missing or invalid
        """
        secret = self.settings.mp_webhook_secret
        if not secret:
            if self.settings.is_production:
                logger.error("webhook_secret_not_configured")
                raise WebhookError("Webhook secret is not configured")
            logger.warning("webhook_signature_check_skipped")
            return

        if not x_signature or not x_request_id or not data_id:
            logger.warning(
                "webhook_signature_missing",
                has_signature=bool(x_signature),
                has_request_id=bool(x_request_id),
                has_data_id=bool(data_id),
            )
            raise WebhookError("Missing webhook signature headers")

        parts = parse_signature_header(x_signature)
        ts = parts.get("ts")
        received = parts.get("v1")
        if not ts or not received:
            raise WebhookError("Malformed x-signature header")

        expected = hmac.new(
            secret.encode("utf-8"),
            signature_manifest(data_id, x_request_id, ts).encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

        if not hmac.compare_digest(expected, received.lower()):
            logger.error("webhook_signature_verification_failed", request_id=x_request_id)
            raise WebhookError("Invalid webhook signature")

        logger.info("webhook_signature_verified", request_id=x_request_id, data_id=data_id)

    async def is_notification_processed(self, request_id: str) -> bool:
        """
        Check if a notification delivery has already been processed.

        Args:
            request_id: ``x-request-id`` of the delivery

        Returns:
            bool: True if already processed, False otherwise
        """
        try:
            redis = await self._ensure_redis()
            exists = await redis.exists(f"webhook:processed:{request_id}")
            return bool(exists)
        except Exception as e:
            logger.warning("webhook_dedup_check_error", error=str(e), request_id=request_id)
            # If Redis is down, process anyway; reconciliation is idempotent
            return False

    async def mark_notification_processed(self, request_id: str) -> None:
        """Mark a notification delivery as processed."""
        try:
            redis = await self._ensure_redis()
            await redis.setex(
                f"webhook:processed:{request_id}",
                self.settings.webhook_dedup_ttl_seconds,
                "1",
            )
            logger.info("webhook_marked_processed", request_id=request_id)
        except Exception as e:
            logger.warning("webhook_mark_processed_error", error=str(e), request_id=request_id)

    async def process_notification(
        self, notification: PaymentNotification, request_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Process a verified notification.

        Args:
            notification: Parsed notification body
            request_id: ``x-request-id`` of the delivery, used for deduplication

        Returns:
            Dict[str, Any]: Processing result

        Raises:
            RegistrationError: If the payment cannot be fetched or applied;
                the processor retries the delivery
        """
        kind = notification.kind
        resource_id = notification.resource_id

        logger.info(
            "processing_webhook_notification",
            kind=kind,
            action=notification.action,
            resource_id=resource_id,
            request_id=request_id,
        )

        if kind != PAYMENT_TOPIC or not resource_id:
            logger.info("webhook_notification_ignored", kind=kind, resource_id=resource_id)
            return {"status": "ignored", "type": kind, "resource_id": resource_id}

        if request_id and await self.is_notification_processed(request_id):
            logger.info("webhook_notification_already_processed", request_id=request_id)
            return {
                "status": "duplicate",
                "type": kind,
                "resource_id": resource_id,
                "message": "Notification already processed",
            }

        result = await self.reconciliation.handle_payment_notification(
            resource_id, processor_user_id=notification.user_id
        )

        if request_id:
            await self.mark_notification_processed(request_id)

        logger.info(
            "webhook_notification_processed",
            resource_id=resource_id,
            outcome=result.outcome,
        )
        return {
            "status": "processed",
            "type": kind,
            "resource_id": resource_id,
            "result": result.model_dump(mode="json"),
        }

    async def close(self) -> None:
        """Close the Redis connection if this handler opened it."""
        if self.redis_client is not None and self._owns_redis:
            await self.redis_client.aclose()
