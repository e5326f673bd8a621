"""
Pydantic schemas for API request/response models.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from registration_payments.core.checkout import Payer
from registration_payments.core.orders import OrderItem


class QuoteRequest(BaseModel):
    """Request schema for a price quote."""

    event_id: str = Field(..., description="Event ID")
    modality_id: str = Field(..., description="Modality ID")
    coupon_code: Optional[str] = Field(default=None, max_length=50, description="Coupon code")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "event_id": "5f0c6c2e-3f43-4d4e-9a55-1d1b1f0a9e01",
                    "modality_id": "a3b1c2d4-0000-4000-8000-000000000001",
                    "coupon_code": "EARLY10",
                }
            ]
        }
    }


class QuoteResponse(BaseModel):
    """Response schema for a price quote."""

    base_price: Decimal
    batch_discount: Decimal
    coupon_discount: Decimal
    discount: Decimal
    subtotal: Decimal
    platform_fee: Decimal
    total: Decimal
    discount_percentage: Decimal
    batch_id: Optional[str] = None
    batch_name: Optional[str] = None
    coupon_id: Optional[str] = None
    coupon_code: Optional[str] = None
    coupon_rejection: Optional[str] = Field(
        default=None, description="Why the requested coupon was not applied"
    )


class CreateOrdersRequest(BaseModel):
    """Request schema for creating the orders of one checkout."""

    event_id: str = Field(..., description="Event ID")
    items: List[OrderItem] = Field(..., min_length=1, description="One entry per participant")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "event_id": "5f0c6c2e-3f43-4d4e-9a55-1d1b1f0a9e01",
                    "items": [
                        {
                            "participant_id": "user-1",
                            "modality_id": "a3b1c2d4-0000-4000-8000-000000000001",
                            "apparel_size": "M",
                        },
                        {
                            "participant_id": "user-2",
                            "modality_id": "a3b1c2d4-0000-4000-8000-000000000001",
                            "apparel_size": "G",
                            "coupon_code": "FRIEND",
                        },
                    ],
                }
            ]
        }
    }


class OrderResponse(BaseModel):
    """Response schema for an order."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    event_id: str
    modality_id: str
    participant_id: str
    buyer_id: str
    order_number: int
    base_price: Decimal
    discount: Decimal
    subtotal: Decimal
    platform_fee: Decimal
    total: Decimal
    processor_fee: Optional[Decimal] = None
    status: str
    payment_status: str
    payment_id: Optional[str] = None
    payment_method: Optional[str] = None
    apparel_size: Optional[str] = None
    batch_id: Optional[str] = None
    coupon_id: Optional[str] = None
    checkout_reference: Optional[str] = None
    created_at: datetime
    confirmed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


class CreateOrdersResponse(BaseModel):
    orders: List[OrderResponse]
    total: Decimal


class OrderGroupResponse(BaseModel):
    """Response schema for an order group."""

    key: str = Field(..., description="Group key")
    strategy: str = Field(..., description="payment, checkout or window")
    order_ids: List[str]
    total: Decimal
    platform_fee: Decimal
    orders: List[OrderResponse]


class CheckoutRequest(BaseModel):
    """Request schema for creating a checkout session."""

    order_ids: List[str] = Field(..., min_length=1, description="Orders paid together")
    payer: Optional[Payer] = Field(default=None, description="Buyer identity for the processor")


class CheckoutResponse(BaseModel):
    checkout_url: str
    preference_id: str
    external_reference: str
    order_ids: List[str]
    total: Decimal
    marketplace_fee: Optional[Decimal] = None
    test_mode: bool
    credential_source: str


class SyncRequest(BaseModel):
    """Request schema for a manual payment sync."""

    order_id: str = Field(..., description="Any order of the checkout")


class SyncResponse(BaseModel):
    order_id: str
    outcome: str
    processor_payment_id: Optional[str] = None
    processor_status: Optional[str] = None
    order_status: Optional[str] = None
    payment_status: Optional[str] = None
    strategy: Optional[str] = None
    transitioned_order_ids: List[str] = Field(default_factory=list)
    message: Optional[str] = None


class ReconcileRequest(BaseModel):
    """Request schema for a pending-order sweep."""

    event_id: Optional[str] = Field(default=None, description="Restrict to one event")
    hours_ago: Optional[int] = Field(default=None, gt=0, le=24 * 30, description="Age window")
    limit: Optional[int] = Field(default=None, gt=0, le=1000, description="Max orders")


class ReconcileResponse(BaseModel):
    checked: int
    updated: int
    errors: int
    results: List[SyncResponse]


class WebhookResponse(BaseModel):
    """Response schema for webhook processing."""

    status: str = Field(..., description="Processing status")
    type: Optional[str] = Field(default=None, description="Notification type")
    resource_id: Optional[str] = Field(default=None, description="Notified resource ID")
    message: Optional[str] = Field(default=None, description="Status message")
    result: Optional[Dict[str, Any]] = None


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")
