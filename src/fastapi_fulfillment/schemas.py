"""Request and response schemas for the HTTP surface."""

from __future__ import annotations

from pydantic import BaseModel

from fastapi_fulfillment.types import (
    ErrorKind,
    FulfillmentResult,
    OrderStatus,
    TrackingCheckpoint,
)


class RunFulfillmentRequest(BaseModel):
    courier_id: int | None = None


class AssignCourierRequest(BaseModel):
    courier_id: int


class FulfillmentResponse(BaseModel):
    order_id: str
    status: OrderStatus
    outcome: str
    shipment_id: str | None = None
    awb: str | None = None
    courier_name: str | None = None
    courier_assigned: bool
    notification_sent: bool
    notification_skipped: bool
    needs_attention: bool
    error_kind: ErrorKind | None = None
    errors: list[str]

    @classmethod
    def from_result(cls, result: FulfillmentResult) -> FulfillmentResponse:
        return cls(outcome=result.outcome, **result.model_dump())


class TrackingResponse(BaseModel):
    order_id: str
    awb: str | None = None
    checkpoints: list[TrackingCheckpoint]


class WebhookResponse(BaseModel):
    received: bool = True
    processed: bool
    outcome: str
