"""Database package for registration payments."""
from .connection import close_db, create_engine, create_session_factory, init_db
from .models import (
    Base,
    Coupon,
    DiscountBatch,
    Event,
    Modality,
    Order,
    OrderEvent,
    ProcessorCredential,
    SizeStock,
)

__all__ = [
    "Base",
    "Coupon",
    "DiscountBatch",
    "Event",
    "Modality",
    "Order",
    "OrderEvent",
    "ProcessorCredential",
    "SizeStock",
    "close_db",
    "create_engine",
    "create_session_factory",
    "init_db",
]
