"""Fulfillment trigger endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from fastapi_fulfillment.dependencies import (
    get_carrier,
    get_orchestrator,
    get_repository,
)
from fastapi_fulfillment.schemas import (
    AssignCourierRequest,
    FulfillmentResponse,
    RunFulfillmentRequest,
    TrackingResponse,
)

router = APIRouter(prefix="/fulfillment")


@router.get("/health")
async def fulfillment_health() -> dict[str, str]:
    """Healthcheck endpoint for fulfillment routes."""
    return {"status": "ok"}


@router.post("/orders/{order_id}", response_model=FulfillmentResponse)
async def run_fulfillment(
    order_id: str,
    body: RunFulfillmentRequest | None = None,
    orchestrator=Depends(get_orchestrator),
) -> FulfillmentResponse:
    """Run the fulfillment workflow; failures come back in the body."""
    courier_id = body.courier_id if body is not None else None
    result = await orchestrator.run_fulfillment(
        order_id, courier_id=courier_id
    )
    return FulfillmentResponse.from_result(result)


@router.post(
    "/orders/{order_id}/courier", response_model=FulfillmentResponse
)
async def assign_courier(
    order_id: str,
    body: AssignCourierRequest,
    orchestrator=Depends(get_orchestrator),
) -> FulfillmentResponse:
    """Manually assign a courier to an already created shipment."""
    result = await orchestrator.assign_courier(order_id, body.courier_id)
    return FulfillmentResponse.from_result(result)


@router.get("/orders/{order_id}/tracking", response_model=TrackingResponse)
async def order_tracking(
    order_id: str,
    repository=Depends(get_repository),
    carrier=Depends(get_carrier),
) -> TrackingResponse:
    """Fetch carrier checkpoints for an order's shipment."""
    order = await repository.get_order(order_id)
    if order.awb_code:
        checkpoints = await carrier.get_tracking(awb_code=order.awb_code)
    elif order.shipment_id:
        checkpoints = await carrier.get_tracking(
            shipment_id=order.shipment_id
        )
    else:
        checkpoints = []
    return TrackingResponse(
        order_id=order.id, awb=order.awb_code, checkpoints=checkpoints
    )
