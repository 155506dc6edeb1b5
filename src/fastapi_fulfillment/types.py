"""Typed models shared across the fulfillment workflow."""

from __future__ import annotations

import hashlib
import re
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from enum import StrEnum
from typing import Any, ClassVar

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_serializer,
    field_validator,
)


class OrderStatus(StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentMethod(StrEnum):
    PREPAID = "prepaid"
    COD = "cod"


class ErrorKind(StrEnum):
    AUTHENTICATION_FAILED = "authentication_failed"
    VALIDATION_ERROR = "validation_error"
    CARRIER_REJECTED = "carrier_rejected"
    NO_PICKUP_LOCATION = "no_pickup_location"
    TRANSIENT_ERROR = "transient_error"
    COURIER_ASSIGNMENT_FAILED = "courier_assignment_failed"
    NOTIFICATION_FAILED = "notification_failed"


class NotificationOutcome(StrEnum):
    SENT = "sent"
    SKIPPED = "skipped"
    FAILED = "failed"


class ReconcileOutcome(StrEnum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    UNMAPPED = "unmapped"
    ORDER_NOT_FOUND = "order_not_found"
    STALE = "stale"
    FAILED = "failed"
    UNAUTHORIZED = "unauthorized"


# --- Order ---


class Address(BaseModel):
    name: str = ""
    line1: str = ""
    line2: str = ""
    city: str = ""
    state: str = ""
    postal_code: str = ""
    country: str = "India"
    phone: str = ""


class CustomerSnapshot(BaseModel):
    """Contact details frozen at order placement."""

    model_config = ConfigDict(frozen=True)

    name: str = ""
    email: str | None = None
    phone: str = ""
    address: Address = Field(default_factory=Address)

    @property
    def first_name(self) -> str:
        return self.name.split(" ", 1)[0] if self.name else ""

    @property
    def last_name(self) -> str:
        parts = self.name.split(" ", 1)
        return parts[1] if len(parts) > 1 else ""


class OrderItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    sku: str = ""
    quantity: int = Field(default=1, ge=1)
    unit_price: Decimal = Decimal("0")

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


class Order(BaseModel):
    """Order record as seen by the fulfillment workflow."""

    id: str
    order_number: str
    status: OrderStatus = OrderStatus.PENDING
    payment_method: PaymentMethod = PaymentMethod.PREPAID
    subtotal: Decimal = Decimal("0")
    shipping_cost: Decimal = Decimal("0")
    tax: Decimal = Decimal("0")
    discount: Decimal = Decimal("0")
    total: Decimal = Decimal("0")
    currency: str = "INR"
    items: tuple[OrderItem, ...] = ()
    customer: CustomerSnapshot = Field(default_factory=CustomerSnapshot)
    created_at: datetime = Field(default_factory=lambda: datetime.now(tz=UTC))
    updated_at: datetime | None = None

    carrier_order_id: str | None = None
    shipment_id: str | None = None
    awb_code: str | None = None
    tracking_url: str | None = None
    courier_id: str | None = None
    courier_name: str | None = None
    pickup_location: str | None = None

    needs_attention: bool = False
    fulfillment_error: str | None = None

    @property
    def total_quantity(self) -> int:
        return sum(item.quantity for item in self.items)

    @property
    def is_terminal(self) -> bool:
        return self.status in (OrderStatus.DELIVERED, OrderStatus.CANCELLED)


# --- Carrier payloads ---


class ShipmentLineItem(BaseModel):
    name: str
    sku: str
    units: int
    selling_price: Decimal

    @field_serializer("selling_price")
    def _as_number(self, value: Decimal) -> float:
        return float(value)


class ShipmentRequest(BaseModel):
    """Body of the aggregator's ad-hoc order creation call."""

    order_id: str
    order_date: str
    pickup_location: str
    billing_customer_name: str
    billing_last_name: str = ""
    billing_address: str
    billing_address_2: str = ""
    billing_city: str
    billing_pincode: str
    billing_state: str
    billing_country: str
    billing_email: str = ""
    billing_phone: str
    shipping_is_billing: bool = True
    order_items: list[ShipmentLineItem]
    payment_method: str
    sub_total: Decimal
    length: Decimal
    breadth: Decimal
    height: Decimal
    weight: Decimal

    REQUIRED_FIELDS: ClassVar[tuple[str, ...]] = (
        "billing_customer_name",
        "billing_address",
        "billing_city",
        "billing_pincode",
        "billing_state",
        "billing_country",
        "billing_phone",
        "order_items",
        "payment_method",
        "sub_total",
        "weight",
        "length",
        "breadth",
        "height",
    )

    @field_validator("billing_phone", mode="before")
    @classmethod
    def _normalise_phone(cls, value: Any) -> str:
        digits = re.sub(r"[^0-9]", "", str(value or ""))
        return digits[-10:]

    @field_serializer("sub_total", "length", "breadth", "height", "weight")
    def _as_number(self, value: Decimal) -> float:
        return float(value)

    def missing_fields(self) -> list[str]:
        missing = []
        for name in self.REQUIRED_FIELDS:
            value = getattr(self, name)
            if isinstance(value, Decimal):
                if value <= 0:
                    missing.append(name)
            elif not value:
                missing.append(name)
        return missing

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class CarrierToken(BaseModel):
    value: str
    expires_at: datetime

    def expires_within(
        self, seconds: float, now: datetime | None = None
    ) -> bool:
        now = now or datetime.now(tz=UTC)
        return now + timedelta(seconds=seconds) >= self.expires_at


class PickupLocation(BaseModel):
    name: str
    postal_code: str = ""
    city: str = ""
    address: str = ""
    is_primary: bool = False


class CourierQuote(BaseModel):
    courier_id: int
    courier_name: str
    rate: Decimal
    eta: str = ""


class ShipmentCreated(BaseModel):
    carrier_order_id: str | None = None
    shipment_id: str
    status: str = ""
    awb_code: str | None = None


class CourierAssignment(BaseModel):
    awb_code: str
    courier_id: str | None = None
    courier_name: str = ""
    assign_status: int = 1


class TrackingCheckpoint(BaseModel):
    timestamp: str
    status: str
    location: str = ""
    detail: str = ""


class DocumentLinks(BaseModel):
    urls: list[str] = Field(default_factory=list)
    not_created: list[str] = Field(default_factory=list)


# --- Webhooks ---


class WebhookEvent(BaseModel):
    """Inbound carrier status event.

    The aggregator has shipped several payload revisions, so each field
    accepts a short fixed list of names rather than the full payload.
    """

    model_config = ConfigDict(populate_by_name=True)

    awb_code: str = Field(validation_alias=AliasChoices("awb_code", "awb"))
    status: str = Field(
        validation_alias=AliasChoices(
            "current_status", "status", "shipment_status"
        )
    )
    timestamp: str = Field(
        default="",
        validation_alias=AliasChoices(
            "current_timestamp", "timestamp", "event_time"
        ),
    )
    courier_name: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)

    @field_validator("awb_code", "status", "timestamp", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> str:
        return str(value).strip() if value is not None else ""

    @field_validator("awb_code", "status")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value:
            raise ValueError("must not be blank")
        return value

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> WebhookEvent:
        return cls.model_validate({**payload, "payload": payload})

    @property
    def dedup_key(self) -> str:
        raw = f"{self.awb_code}|{self.status}|{self.timestamp}"
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class WebhookLogEntry(BaseModel):
    dedup_key: str
    awb_code: str
    status: str
    event_timestamp: str = ""
    payload: dict[str, Any] = Field(default_factory=dict)
    received_at: datetime = Field(
        default_factory=lambda: datetime.now(tz=UTC)
    )

    @classmethod
    def from_event(cls, event: WebhookEvent) -> WebhookLogEntry:
        return cls(
            dedup_key=event.dedup_key,
            awb_code=event.awb_code,
            status=event.status,
            event_timestamp=event.timestamp,
            payload=event.payload,
        )


# --- Results ---


class EmailResult(BaseModel):
    success: bool
    message_id: str | None = None
    error: str | None = None


class FulfillmentResult(BaseModel):
    order_id: str
    status: OrderStatus
    shipment_id: str | None = None
    awb: str | None = None
    courier_name: str | None = None
    courier_assigned: bool = False
    notification_sent: bool = False
    notification_skipped: bool = False
    needs_attention: bool = False
    error_kind: ErrorKind | None = None
    errors: list[str] = Field(default_factory=list)

    @property
    def outcome(self) -> str:
        if self.shipment_id is None and self.error_kind is not None:
            return "failed"
        if self.error_kind is not None or self.needs_attention:
            return "partial"
        return "succeeded"


class ReconcileResult(BaseModel):
    outcome: ReconcileOutcome
    order_id: str | None = None
    status: OrderStatus | None = None

    @property
    def processed(self) -> bool:
        return self.outcome == ReconcileOutcome.APPLIED
