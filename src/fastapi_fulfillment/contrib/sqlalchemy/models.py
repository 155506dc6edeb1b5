"""SQLAlchemy order/webhook/retry models."""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
    relationship,
)


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


class Base(DeclarativeBase):
    """SQLAlchemy declarative base."""


class OrderModel(Base):
    """Order row including fulfillment state."""

    __tablename__ = "fulfillment_orders"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    order_number: Mapped[str] = mapped_column(String(64), unique=True)
    status: Mapped[str] = mapped_column(String(32), default="pending")
    payment_method: Mapped[str] = mapped_column(
        String(16), default="prepaid"
    )
    subtotal: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), default=Decimal("0")
    )
    shipping_cost: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), default=Decimal("0")
    )
    tax: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    discount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), default=Decimal("0")
    )
    total: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), default=Decimal("0")
    )
    currency: Mapped[str] = mapped_column(String(3), default="INR")
    customer: Mapped[dict] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    carrier_order_id: Mapped[str | None] = mapped_column(
        String(64), nullable=True
    )
    shipment_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    awb_code: Mapped[str | None] = mapped_column(
        String(64), nullable=True, index=True
    )
    tracking_url: Mapped[str | None] = mapped_column(
        String(512), nullable=True
    )
    courier_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    courier_name: Mapped[str | None] = mapped_column(
        String(128), nullable=True
    )
    pickup_location: Mapped[str | None] = mapped_column(
        String(128), nullable=True
    )
    needs_attention: Mapped[bool] = mapped_column(Boolean, default=False)
    fulfillment_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    items: Mapped[list[OrderItemModel]] = relationship(
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="OrderItemModel.position",
    )


class OrderItemModel(Base):
    """Line item belonging to an order."""

    __tablename__ = "fulfillment_order_items"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(
        ForeignKey("fulfillment_orders.id", ondelete="CASCADE")
    )
    position: Mapped[int] = mapped_column(Integer, default=0)
    name: Mapped[str] = mapped_column(String(255))
    sku: Mapped[str] = mapped_column(String(64), default="")
    quantity: Mapped[int] = mapped_column(Integer, default=1)
    unit_price: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), default=Decimal("0")
    )

    order: Mapped[OrderModel] = relationship(back_populates="items")


class WebhookLogModel(Base):
    """Append-only audit log of carrier webhook events."""

    __tablename__ = "fulfillment_webhook_logs"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    dedup_key: Mapped[str] = mapped_column(String(64), unique=True)
    awb_code: Mapped[str] = mapped_column(String(64), index=True)
    status: Mapped[str] = mapped_column(String(64))
    event_timestamp: Mapped[str] = mapped_column(String(64), default="")
    payload: Mapped[dict] = mapped_column(JSON, default=dict)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )


class RetryModel(Base):
    """Queued notification or webhook retry."""

    __tablename__ = "fulfillment_retries"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    kind: Mapped[str] = mapped_column(String(32))
    reference: Mapped[str] = mapped_column(String(128))
    payload: Mapped[dict] = mapped_column(JSON, default=dict)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="pending")
    next_retry_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )
