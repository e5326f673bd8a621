"""
Mercado Pago REST client with retry logic and error classification.

Implements:
- Explicit per-request timeout
- Exponential backoff for transient errors (network, 5xx, 429)
- Circuit breaker pattern
- Idempotent checkout preference creation
"""
import time
from decimal import Decimal
from typing import Any, Dict, List, Optional

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field, field_validator
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from registration_payments.config import Settings
from registration_payments.core.errors import (
    GatewayError,
    GatewayErrorType,
    SandboxCounterpartError,
)
from registration_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

# Fragments of the processor's message when one party of a split is a sandbox account
_SANDBOX_COUNTERPART_MARKERS = ("teste", "test", "partes")


class FeeDetail(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: Optional[str] = None
    amount: Decimal = Decimal("0")
    fee_payer: Optional[str] = None


class TransactionDetails(BaseModel):
    model_config = ConfigDict(extra="allow")

    net_received_amount: Optional[Decimal] = None
    total_paid_amount: Optional[Decimal] = None
    fee_details: List[FeeDetail] = Field(default_factory=list)


class ProcessorPayment(BaseModel):
    """Payment as reported by the processor. Unknown fields are kept."""

    model_config = ConfigDict(extra="allow")

    id: str
    status: str
    status_detail: Optional[str] = None
    external_reference: Optional[str] = None
    payment_type_id: Optional[str] = None
    payment_method_id: Optional[str] = None
    transaction_amount: Optional[Decimal] = None
    marketplace_fee: Optional[Decimal] = None
    fee_details: List[FeeDetail] = Field(default_factory=list)
    transaction_details: Optional[TransactionDetails] = None
    date_created: Optional[str] = None
    date_approved: Optional[str] = None
    live_mode: Optional[bool] = None

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> str:
        """Payment ids arrive as JSON numbers."""
        return str(v)

    @property
    def net_received_amount(self) -> Optional[Decimal]:
        if self.transaction_details is None:
            return None
        return self.transaction_details.net_received_amount

    @property
    def itemized_fees(self) -> List[FeeDetail]:
        """Fee entries, reported either top-level or inside transaction details."""
        if self.fee_details:
            return self.fee_details
        if self.transaction_details is not None:
            return self.transaction_details.fee_details
        return []


class CheckoutPreference(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    init_point: Optional[str] = None
    sandbox_init_point: Optional[str] = None
    external_reference: Optional[str] = None


class OAuthToken(BaseModel):
    model_config = ConfigDict(extra="allow")

    access_token: str
    refresh_token: Optional[str] = None
    user_id: Optional[str] = None
    public_key: Optional[str] = None
    live_mode: bool = False
    expires_in: Optional[int] = None

    @field_validator("user_id", mode="before")
    @classmethod
    def coerce_user_id(cls, v: Any) -> Optional[str]:
        return None if v is None else str(v)


class CircuitBreaker:
    """
    Circuit breaker for processor API calls.

    Opens after ``failure_threshold`` consecutive transient failures and
    rejects calls until ``timeout`` seconds have passed.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    def before_call(self) -> None:
        """
        Check the circuit before a call.

        Raises:
            GatewayError: If circuit is open
        """
        if self.state != "open":
            return
        if self.last_failure_time and time.time() - self.last_failure_time > self.timeout:
            self.state = "half_open"
            self.success_count = 0
            metrics.set_circuit_breaker_state(self.state)
            logger.info("circuit_breaker_half_open")
            return
        raise GatewayError("Payment processor circuit breaker is open", GatewayErrorType.TRANSIENT)

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self.state = "closed"
                metrics.set_circuit_breaker_state(self.state)
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.failure_count >= self.failure_threshold or self.state == "half_open":
            self.state = "open"
            metrics.set_circuit_breaker_state(self.state)
            logger.warning(
                "circuit_breaker_opened",
                failure_count=self.failure_count,
            )


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, GatewayError) and error.is_retryable


class MercadoPagoClient:
    """
    Wrapper for the Mercado Pago REST API.

    Every call takes the access token to act with, so one client serves all
    organizers. The underlying ``httpx.AsyncClient`` can be injected.
    """

    def __init__(self, settings: Settings, http_client: Optional[httpx.AsyncClient] = None):
        """
        Initialize client.

        Args:
            settings: Application settings
            http_client: Optional preconfigured HTTP client
        """
        self.settings = settings
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(
            base_url=settings.mp_api_base_url,
            timeout=httpx.Timeout(settings.processor_timeout_seconds),
        )
        self.circuit_breaker = CircuitBreaker()

        logger.info(
            "mercadopago_client_initialized",
            base_url=settings.mp_api_base_url,
            timeout_seconds=settings.processor_timeout_seconds,
        )

    @staticmethod
    def _classify_status(status_code: int) -> GatewayErrorType:
        if status_code == 429:
            return GatewayErrorType.RATE_LIMIT
        if status_code >= 500:
            return GatewayErrorType.TRANSIENT
        return GatewayErrorType.PERMANENT

    def _error_from_response(self, operation: str, response: httpx.Response) -> GatewayError:
        try:
            payload = response.json()
            if not isinstance(payload, dict):
                payload = {"body": payload}
        except ValueError:
            payload = {"message": response.text}

        message = str(
            payload.get("message")
            or payload.get("error_description")
            or payload.get("error")
            or response.reason_phrase
        )
        error_type = self._classify_status(response.status_code)

        logger.error(
            "processor_api_error",
            operation=operation,
            http_status=response.status_code,
            error_type=error_type.value,
            error_message=message,
        )
        return GatewayError(
            f"Payment processor error ({response.status_code}): {message}",
            error_type=error_type,
            http_status=response.status_code,
            payload=payload,
        )

    async def _send(
        self,
        operation: str,
        method: str,
        path: str,
        access_token: Optional[str],
        **kwargs: Any,
    ) -> Any:
        self.circuit_breaker.before_call()

        headers = dict(kwargs.pop("headers", None) or {})
        headers.setdefault("Accept", "application/json")
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"

        start_time = time.time()
        try:
            response = await self._http.request(method, path, headers=headers, **kwargs)
        except httpx.TimeoutException as e:
            self.circuit_breaker.on_failure()
            metrics.record_processor_api_error(GatewayErrorType.TRANSIENT.value)
            metrics.record_processor_api_call(operation, "timeout", time.time() - start_time)
            logger.warning("processor_api_timeout", operation=operation, path=path)
            raise GatewayError(
                f"Payment processor timed out during {operation}", GatewayErrorType.TRANSIENT
            ) from e
        except httpx.HTTPError as e:
            self.circuit_breaker.on_failure()
            metrics.record_processor_api_error(GatewayErrorType.TRANSIENT.value)
            metrics.record_processor_api_call(operation, "network_error", time.time() - start_time)
            logger.warning("processor_api_network_error", operation=operation, error=str(e))
            raise GatewayError(
                f"Payment processor unreachable during {operation}: {e}",
                GatewayErrorType.TRANSIENT,
            ) from e

        duration = time.time() - start_time
        if response.is_error:
            error = self._error_from_response(operation, response)
            if error.is_retryable:
                self.circuit_breaker.on_failure()
            metrics.record_processor_api_error(error.error_type.value)
            metrics.record_processor_api_call(operation, str(response.status_code), duration)
            raise error

        self.circuit_breaker.on_success()
        metrics.record_processor_api_call(operation, "success", duration)
        return response.json()

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        access_token: Optional[str],
        **kwargs: Any,
    ) -> Any:
        """Send a request, retrying transient failures with exponential backoff."""
        base_delay = self.settings.processor_retry_base_delay
        retrying = AsyncRetrying(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(self.settings.processor_max_attempts),
            wait=wait_exponential(multiplier=base_delay, min=base_delay, max=8),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                result = await self._send(operation, method, path, access_token, **kwargs)
        return result

    async def create_preference(
        self,
        access_token: str,
        preference: Dict[str, Any],
        idempotency_key: Optional[str] = None,
    ) -> CheckoutPreference:
        """
        Create a checkout preference.

        Args:
            access_token: Token of the account receiving the payment
            preference: Preference body (items, payer, back_urls, ...)
            idempotency_key: Optional key preventing duplicate preferences

        Returns:
            CheckoutPreference: Created preference

        Raises:
            SandboxCounterpartError: If a split is refused because one party is a sandbox account
            GatewayError: If preference creation fails
        """
        logger.info(
            "creating_checkout_preference",
            external_reference=preference.get("external_reference"),
            has_marketplace_fee="marketplace_fee" in preference,
        )
        headers = {"X-Idempotency-Key": idempotency_key} if idempotency_key else {}

        try:
            data = await self._request(
                "create_preference",
                "POST",
                "/checkout/preferences",
                access_token,
                json=preference,
                headers=headers,
            )
        except GatewayError as e:
            message = str(e).lower()
            if (
                e.error_type == GatewayErrorType.PERMANENT
                and e.http_status is not None
                and any(marker in message for marker in _SANDBOX_COUNTERPART_MARKERS)
            ):
                raise SandboxCounterpartError(
                    "One of the parties in the split payment is a sandbox account; "
                    "use test credentials on both sides or disable split payments for tests",
                    error_type=e.error_type,
                    http_status=e.http_status,
                    payload=e.payload,
                ) from e
            raise

        created = CheckoutPreference.model_validate(data)
        logger.info(
            "checkout_preference_created",
            preference_id=created.id,
            external_reference=created.external_reference,
        )
        return created

    async def get_payment(self, access_token: str, payment_id: str) -> ProcessorPayment:
        """
        Fetch a payment by processor id.

        Raises:
            GatewayError: If the payment cannot be fetched (404 included)
        """
        logger.debug("retrieving_payment", payment_id=payment_id)
        data = await self._request("get_payment", "GET", f"/v1/payments/{payment_id}", access_token)
        return ProcessorPayment.model_validate(data)

    async def search_payments(
        self, access_token: str, external_reference: str, limit: int = 50
    ) -> List[ProcessorPayment]:
        """
        Search payments by ``external_reference``, newest first.

        Returns:
            List[ProcessorPayment]: Matching payments as returned by the processor
        """
        logger.debug("searching_payments", external_reference=external_reference)
        data = await self._request(
            "search_payments",
            "GET",
            "/v1/payments/search",
            access_token,
            params={
                "external_reference": external_reference,
                "sort": "date_created",
                "criteria": "desc",
                "limit": limit,
            },
        )
        return [ProcessorPayment.model_validate(item) for item in data.get("results") or []]

    async def refresh_access_token(self, refresh_token: str) -> OAuthToken:
        """
        Exchange a refresh token for a new token pair.

        Raises:
            GatewayError: If the processor refuses the refresh
        """
        data = await self._request(
            "refresh_token",
            "POST",
            "/oauth/token",
            None,
            json={
                "client_id": self.settings.mp_client_id,
                "client_secret": self.settings.mp_client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
        )
        logger.info("processor_token_refreshed")
        return OAuthToken.model_validate(data)

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client:
            await self._http.aclose()
