"""
API routes for registration orders and payments.
"""
import time
from decimal import Decimal
from typing import Any, AsyncGenerator, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from registration_payments.core.errors import (
    GatewayError,
    ReconciliationError,
    RegistrationError,
)
from registration_payments.integrations.webhook_handler import PaymentNotification, WebhookError
from registration_payments.monitoring.metrics import metrics
from registration_payments.services import Services

from .schemas import (
    CheckoutRequest,
    CheckoutResponse,
    CreateOrdersRequest,
    CreateOrdersResponse,
    HealthCheckResponse,
    OrderGroupResponse,
    OrderResponse,
    QuoteRequest,
    QuoteResponse,
    ReconcileRequest,
    ReconcileResponse,
    SyncRequest,
    SyncResponse,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
quote_router = APIRouter(prefix="/quotes", tags=["pricing"])
order_router = APIRouter(prefix="/orders", tags=["orders"])
checkout_router = APIRouter(prefix="/checkout", tags=["checkout"])
payment_router = APIRouter(prefix="/payments", tags=["payments"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])


def get_services(request: Request) -> Services:
    return request.app.state.services


async def get_db(services: Services = Depends(get_services)) -> AsyncGenerator[AsyncSession, None]:
    """Yield a database session for one request."""
    async with services.session_factory() as session:
        yield session


async def get_principal(
    x_principal_id: Optional[str] = Header(default=None, alias="X-Principal-Id"),
) -> str:
    """Id of the authenticated user, set by the upstream gateway."""
    if not x_principal_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing principal")
    return x_principal_id


def _http_error(operation: str, error: RegistrationError) -> HTTPException:
    """Log a domain error and translate it to an HTTP response."""
    log = logger.error if error.status_code >= 500 else logger.warning
    log(f"api_{operation}_error", error_type=type(error).__name__, error=str(error))
    return HTTPException(status_code=error.status_code, detail=str(error))


def _unexpected(operation: str, error: Exception, detail: str) -> HTTPException:
    logger.error(f"api_{operation}_unexpected_error", error_type=type(error).__name__, error=str(error))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=detail)


@quote_router.post(
    "",
    response_model=QuoteResponse,
    summary="Quote a registration",
    description="Compute base price, discounts, platform fee and total",
)
async def create_quote(
    request: QuoteRequest,
    services: Services = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """Quote one registration. An inapplicable coupon is reported, not rejected."""
    try:
        quote = await services.pricing.quote(
            db, request.event_id, request.modality_id, coupon_code=request.coupon_code
        )
        if quote.coupon_id:
            metrics.record_quote("applied")
        else:
            metrics.record_quote("rejected" if quote.coupon_rejection else "none")
        return {**quote.model_dump(), "discount": quote.discount}

    except RegistrationError as e:
        raise _http_error("quote", e)
    except Exception as e:
        raise _unexpected("quote", e, "Failed to compute quote")


@order_router.post(
    "",
    response_model=CreateOrdersResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create orders",
    description="Create the pending orders of one checkout, reserving capacity",
)
async def create_orders(
    request: CreateOrdersRequest,
    principal_id: str = Depends(get_principal),
    services: Services = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """Create orders. Either every order is created or none is."""
    try:
        logger.info(
            "api_create_orders_request",
            event_id=request.event_id,
            buyer_id=principal_id,
            items=len(request.items),
        )
        orders = await services.orders.create_orders(
            db, principal_id, request.event_id, request.items
        )
        return {
            "orders": [OrderResponse.model_validate(o) for o in orders],
            "total": sum((o.total for o in orders), Decimal("0.00")),
        }

    except RegistrationError as e:
        raise _http_error("create_orders", e)
    except Exception as e:
        raise _unexpected("create_orders", e, "Order creation failed")


@order_router.get(
    "/{order_id}/group",
    response_model=OrderGroupResponse,
    summary="Get order group",
    description="All orders created or paid together with the given order",
)
async def get_order_group(
    order_id: str,
    principal_id: str = Depends(get_principal),
    services: Services = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    try:
        group = await services.grouping.get_group(db, order_id, principal_id=principal_id)
        return {
            "key": group.key,
            "strategy": group.strategy,
            "order_ids": group.order_ids,
            "total": group.total,
            "platform_fee": group.platform_fee,
            "orders": [OrderResponse.model_validate(o) for o in group.orders],
        }

    except RegistrationError as e:
        raise _http_error("get_order_group", e)
    except Exception as e:
        raise _unexpected("get_order_group", e, "Failed to load order group")


@order_router.post(
    "/{order_id}/recalculate-fee",
    response_model=SyncResponse,
    summary="Recalculate processor fee",
    description="Re-fetch the payment of a confirmed order and record the missing processor fee",
)
async def recalculate_fee(
    order_id: str,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    try:
        result = await services.reconciliation.recalculate_fee(order_id)
        return result.model_dump()

    except RegistrationError as e:
        raise _http_error("recalculate_fee", e)
    except Exception as e:
        raise _unexpected("recalculate_fee", e, "Fee recalculation failed")


@checkout_router.post(
    "",
    response_model=CheckoutResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create checkout",
    description="Create a processor checkout session for pending orders",
)
async def create_checkout(
    request: CheckoutRequest,
    principal_id: str = Depends(get_principal),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    try:
        session = await services.checkout.create_checkout(
            request.order_ids, principal_id=principal_id, payer=request.payer
        )
        return session.model_dump()

    except RegistrationError as e:
        raise _http_error("create_checkout", e)
    except Exception as e:
        raise _unexpected("create_checkout", e, "Checkout creation failed")


@payment_router.post(
    "/sync",
    response_model=SyncResponse,
    summary="Sync payment status",
    description="Ask the processor for the payment state of an order and apply it",
)
async def sync_payment(
    request: SyncRequest,
    principal_id: str = Depends(get_principal),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    try:
        result = await services.reconciliation.sync_order(
            request.order_id, principal_id=principal_id
        )
        return result.model_dump()

    except RegistrationError as e:
        raise _http_error("sync_payment", e)
    except Exception as e:
        raise _unexpected("sync_payment", e, "Payment sync failed")


def _notification_from_request(request: Request, payload: Dict[str, Any]) -> PaymentNotification:
    """Build a notification from the body, or from the query string for legacy IPN calls."""
    if not payload:
        params = request.query_params
        payload = {
            "topic": params.get("topic") or params.get("type"),
            "data": {"id": params.get("data.id") or params.get("id")},
        }
    return PaymentNotification.model_validate(payload)


@webhook_router.post(
    "/mercadopago",
    response_model=WebhookResponse,
    summary="Mercado Pago webhook endpoint",
    description="Handle Mercado Pago payment notifications",
)
async def mercadopago_webhook(
    request: Request,
    x_signature: Optional[str] = Header(default=None, alias="x-signature"),
    x_request_id: Optional[str] = Header(default=None, alias="x-request-id"),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """
    Handle Mercado Pago notifications.

    Verifies the signature and reconciles the notified payment. Unknown
    notification types are acknowledged so the processor stops retrying.
    """
    start_time = time.time()
    handler = services.webhooks

    body = await request.body()
    try:
        payload = await request.json() if body else {}
        if not isinstance(payload, dict):
            raise ValueError("Notification body must be an object")
        notification = _notification_from_request(request, payload)
    except (ValueError, PydanticValidationError) as e:
        logger.warning("api_webhook_invalid_payload", error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid notification")

    kind = notification.kind or "unknown"
    try:
        data_id = request.query_params.get("data.id") or notification.resource_id
        handler.verify_signature(x_signature, x_request_id, data_id)

        logger.info(
            "api_webhook_received",
            kind=kind,
            resource_id=notification.resource_id,
            request_id=x_request_id,
        )
        result = await handler.process_notification(notification, request_id=x_request_id)

    except WebhookError as e:
        metrics.record_webhook_notification(kind, "rejected", time.time() - start_time)
        logger.error("api_webhook_error", error=str(e))
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e))

    except (GatewayError, ReconciliationError) as e:
        # Non-2xx makes the processor deliver the notification again
        metrics.record_webhook_notification(kind, "retry", time.time() - start_time)
        raise _http_error("webhook", e)

    except RegistrationError as e:
        metrics.record_webhook_notification(kind, "failed", time.time() - start_time)
        logger.warning("api_webhook_not_applied", error_type=type(e).__name__, error=str(e))
        return {
            "status": "failed",
            "type": kind,
            "resource_id": notification.resource_id,
            "message": str(e),
        }

    except Exception as e:
        metrics.record_webhook_notification(kind, "error", time.time() - start_time)
        raise _unexpected("webhook", e, "Webhook processing failed")

    metrics.record_webhook_notification(kind, result["status"], time.time() - start_time)
    return result


@webhook_router.get(
    "/mercadopago",
    summary="Webhook reachability check",
)
async def mercadopago_webhook_probe() -> Dict[str, str]:
    return {"status": "ok"}


@admin_router.post(
    "/reconcile",
    response_model=ReconcileResponse,
    summary="Run reconciliation",
    description="Reconcile recent pending orders against the processor",
)
async def run_reconciliation(
    request: ReconcileRequest,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    try:
        logger.info(
            "api_reconciliation_started",
            event_id=request.event_id,
            hours_ago=request.hours_ago,
            limit=request.limit,
        )
        result = await services.reconciliation.sweep_pending(
            event_id=request.event_id, hours_ago=request.hours_ago, limit=request.limit
        )
        logger.info(
            "api_reconciliation_completed",
            checked=result.checked,
            updated=result.updated,
            errors=result.errors,
        )
        return result.model_dump()

    except Exception as e:
        raise _unexpected("reconciliation", e, f"Reconciliation failed: {str(e)}")


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    try:
        return await services.health.check_all()
    except Exception as e:
        logger.error("health_check_error", error=str(e))
        return {
            "status": "unhealthy",
            "checks": {"error": str(e)},
        }


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
    description="Kubernetes liveness probe endpoint",
)
async def liveness(services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Liveness probe endpoint."""
    return await services.health.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
    description="Kubernetes readiness probe endpoint",
)
async def readiness(services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Readiness probe endpoint."""
    try:
        result = await services.health.readiness()
        if result["status"] != "healthy":
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
        return result
    except HTTPException:
        raise
    except Exception as e:
        logger.error("readiness_check_error", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"status": "unhealthy", "error": str(e)},
        )


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
