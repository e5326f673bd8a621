"""SQLAlchemy database models for event registration orders."""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# SQLite only auto-increments INTEGER primary keys
BigIntegerPK = BigInteger().with_variant(Integer, "sqlite")
Money = Numeric(10, 2)


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (all columns store UTC)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class EventStatus(str, Enum):
    DRAFT = "DRAFT"
    PUBLISHED = "PUBLISHED"
    CANCELLED = "CANCELLED"
    FINISHED = "FINISHED"


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class BatchType(str, Enum):
    DATE = "DATE"
    VOLUME = "VOLUME"


class DiscountType(str, Enum):
    PERCENTAGE = "PERCENTAGE"
    FIXED = "FIXED"


ACTIVE_ORDER_STATUSES = (OrderStatus.PENDING.value, OrderStatus.CONFIRMED.value)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Event(Base):
    """
    Events open for registration.

    ``last_order_number`` is the per-event sequence used to number orders;
    it is only ever advanced with a single conditional UPDATE.
    """

    __tablename__ = "events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    organizer_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=EventStatus.DRAFT.value
    )
    registration_start: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    registration_end: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    requires_apparel_size: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_order_number: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint(
            "status IN ('DRAFT', 'PUBLISHED', 'CANCELLED', 'FINISHED')",
            name="valid_event_status",
        ),
    )

    def __repr__(self) -> str:
        return f"<Event(id={self.id}, name={self.name}, status={self.status})>"


class Modality(Base):
    """Registration categories of an event, each with its own price and capacity."""

    __tablename__ = "modalities"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    event_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("events.id"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    max_slots: Mapped[int | None] = mapped_column(Integer, nullable=True)
    reserved_slots: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        CheckConstraint("price >= 0", name="non_negative_price"),
        CheckConstraint(
            "max_slots IS NULL OR reserved_slots <= max_slots", name="slots_not_oversold"
        ),
    )

    def __repr__(self) -> str:
        return f"<Modality(id={self.id}, name={self.name}, price={self.price})>"


class DiscountBatch(Base):
    """
    Automatic discount tiers.

    DATE batches apply inside their date range, VOLUME batches until
    ``current_sales`` reaches ``max_sales``.
    """

    __tablename__ = "discount_batches"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    event_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("events.id"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[str] = mapped_column(String(10), nullable=False)
    start_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    end_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    max_sales: Mapped[int | None] = mapped_column(Integer, nullable=True)
    current_sales: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    discount_type: Mapped[str] = mapped_column(String(12), nullable=False)
    discount_value: Mapped[Decimal] = mapped_column(Money, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("type IN ('DATE', 'VOLUME')", name="valid_batch_type"),
        CheckConstraint(
            "discount_type IN ('PERCENTAGE', 'FIXED')", name="valid_batch_discount_type"
        ),
        CheckConstraint("discount_value >= 0", name="non_negative_batch_discount"),
    )

    def __repr__(self) -> str:
        return f"<DiscountBatch(id={self.id}, name={self.name}, type={self.type})>"


class Coupon(Base):
    """Promotional codes, unique per event and stored upper-case."""

    __tablename__ = "coupons"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    event_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("events.id"), nullable=False, index=True
    )
    code: Mapped[str] = mapped_column(String(50), nullable=False)
    discount_type: Mapped[str] = mapped_column(String(12), nullable=False)
    discount_value: Mapped[Decimal] = mapped_column(Money, nullable=False)
    start_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    end_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    max_uses: Mapped[int | None] = mapped_column(Integer, nullable=True)
    current_uses: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    modality_ids: Mapped[List[str] | None] = mapped_column(JSON, nullable=True)
    min_purchase: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (
        UniqueConstraint("event_id", "code", name="uq_coupons_event_code"),
        CheckConstraint(
            "discount_type IN ('PERCENTAGE', 'FIXED')", name="valid_coupon_discount_type"
        ),
        CheckConstraint(
            "max_uses IS NULL OR current_uses <= max_uses", name="coupon_uses_within_limit"
        ),
    )

    def __repr__(self) -> str:
        return f"<Coupon(id={self.id}, code={self.code})>"


class SizeStock(Base):
    """Apparel stock per size. ``stock - reserved - sold`` never goes negative."""

    __tablename__ = "size_stocks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    event_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("events.id"), nullable=False, index=True
    )
    size: Mapped[str] = mapped_column(String(10), nullable=False)
    stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reserved: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sold: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("event_id", "size", name="uq_size_stocks_event_size"),
        CheckConstraint("stock - reserved - sold >= 0", name="size_not_oversold"),
        CheckConstraint("reserved >= 0 AND sold >= 0", name="non_negative_size_counters"),
    )

    @property
    def available(self) -> int:
        return self.stock - self.reserved - self.sold

    def __repr__(self) -> str:
        return (
            f"<SizeStock(size={self.size}, stock={self.stock}, "
            f"reserved={self.reserved}, sold={self.sold})>"
        )


class Order(Base):
    """
    One participant's registration and its payment lifecycle.

    ``checkout_reference`` holds the id of the primary order of the checkout
    session the order was paid through; it equals the processor's
    ``external_reference``. ``payment_id`` is stored as
    ``<processor payment id>_<order id>``.
    """

    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    event_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("events.id"), nullable=False, index=True
    )
    modality_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("modalities.id"), nullable=False
    )
    participant_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    buyer_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    coupon_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("coupons.id"), nullable=True
    )
    batch_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("discount_batches.id"), nullable=True
    )
    order_number: Mapped[int] = mapped_column(Integer, nullable=False)
    base_price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    discount: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0.00"))
    subtotal: Mapped[Decimal] = mapped_column(Money, nullable=False)
    platform_fee: Mapped[Decimal] = mapped_column(Money, nullable=False)
    total: Mapped[Decimal] = mapped_column(Money, nullable=False)
    processor_fee: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=OrderStatus.PENDING.value, index=True
    )
    payment_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PaymentStatus.PENDING.value
    )
    payment_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    payment_method: Mapped[str | None] = mapped_column(String(50), nullable=True)
    apparel_size: Mapped[str | None] = mapped_column(String(10), nullable=True)
    checkout_reference: Mapped[str | None] = mapped_column(
        String(36), nullable=True, index=True
    )
    preference_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("event_id", "order_number", name="uq_orders_event_number"),
        CheckConstraint(
            "status IN ('PENDING', 'CONFIRMED', 'CANCELLED')", name="valid_order_status"
        ),
        CheckConstraint(
            "payment_status IN ('PENDING', 'PROCESSING', 'APPROVED', 'REJECTED', "
            "'CANCELLED', 'REFUNDED')",
            name="valid_payment_status",
        ),
        CheckConstraint("total >= 0 AND subtotal >= 0", name="non_negative_totals"),
        Index(
            "uq_orders_active_registration",
            "participant_id",
            "event_id",
            "modality_id",
            unique=True,
            postgresql_where=text("status IN ('PENDING', 'CONFIRMED')"),
            sqlite_where=text("status IN ('PENDING', 'CONFIRMED')"),
        ),
        Index("idx_orders_buyer_event_created", "buyer_id", "event_id", "created_at"),
        Index("idx_orders_status_created", "status", "created_at"),
    )

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_ORDER_STATUSES

    @property
    def primary_order_id(self) -> str:
        """Id sent to the processor as ``external_reference`` for this order's checkout."""
        return self.checkout_reference or self.id

    def __repr__(self) -> str:
        return (
            f"<Order(id={self.id}, number={self.order_number}, "
            f"status={self.status}, payment_status={self.payment_status})>"
        )


class OrderEvent(Base):
    """
    Order audit trail table.

    One row per lifecycle transition (created, confirmed, cancelled,
    refunded). Immutable once written.
    """

    __tablename__ = "order_events"

    id: Mapped[int] = mapped_column(BigIntegerPK, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_data: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, index=True
    )

    __table_args__ = (Index("idx_order_events_type", "event_type"),)

    def __repr__(self) -> str:
        return f"<OrderEvent(id={self.id}, order_id={self.order_id}, type={self.event_type})>"


class ProcessorCredential(Base):
    """
    Organizer's connected payment processor account.

    Tokens are stored encrypted as ``ivHex:authTagHex:cipherHex``.
    """

    __tablename__ = "processor_credentials"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    organizer_id: Mapped[str] = mapped_column(String(36), nullable=False, unique=True)
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    processor_user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    live_mode: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    def __repr__(self) -> str:
        return (
            f"<ProcessorCredential(organizer_id={self.organizer_id}, "
            f"live_mode={self.live_mode})>"
        )
