"""FastAPI application and routes."""
from .main import create_app
from .schemas import (
    CheckoutRequest,
    CheckoutResponse,
    CreateOrdersRequest,
    CreateOrdersResponse,
    QuoteRequest,
    QuoteResponse,
    SyncResponse,
)

__all__ = [
    "create_app",
    "CheckoutRequest",
    "CheckoutResponse",
    "CreateOrdersRequest",
    "CreateOrdersResponse",
    "QuoteRequest",
    "QuoteResponse",
    "SyncResponse",
]
