"""Carrier webhook endpoint."""

from __future__ import annotations

import hmac
import logging

from fastapi import APIRouter, Depends, Request
from pydantic import ValidationError

from fastapi_fulfillment.config import FulfillmentConfig
from fastapi_fulfillment.dependencies import get_config, get_reconciler
from fastapi_fulfillment.schemas import WebhookResponse
from fastapi_fulfillment.types import ReconcileOutcome, WebhookEvent

logger = logging.getLogger(__name__)

router = APIRouter()

TOKEN_HEADERS = ("x-api-key", "x-webhook-secret")


def _token_matches(request: Request, config: FulfillmentConfig) -> bool:
    expected = config.carrier.webhook_token
    if expected is None or not expected.get_secret_value():
        return True
    for header in TOKEN_HEADERS:
        supplied = request.headers.get(header)
        if supplied is not None:
            return hmac.compare_digest(
                supplied.encode(), expected.get_secret_value().encode()
            )
    return False


@router.post("/webhooks/carrier", response_model=WebhookResponse)
async def carrier_webhook(
    request: Request,
    config: FulfillmentConfig = Depends(get_config),
    reconciler=Depends(get_reconciler),
) -> WebhookResponse:
    """Receive a carrier status event.

    The carrier expects 200 for every delivery it should not retry, so
    rejected and unprocessable events are answered with 200 as well.
    """
    if not _token_matches(request, config):
        logger.warning("Carrier webhook: token mismatch")
        return WebhookResponse(
            processed=False, outcome=ReconcileOutcome.UNAUTHORIZED
        )

    try:
        payload = await request.json()
    except ValueError:
        logger.warning("Carrier webhook: invalid JSON body")
        return WebhookResponse(processed=False, outcome="invalid_payload")
    if not isinstance(payload, dict):
        logger.warning("Carrier webhook: payload is not an object")
        return WebhookResponse(processed=False, outcome="invalid_payload")

    try:
        event = WebhookEvent.from_payload(payload)
    except ValidationError as exc:
        logger.warning(
            "Carrier webhook: missing AWB or status (%s)",
            exc.error_count(),
        )
        return WebhookResponse(processed=False, outcome="invalid_payload")

    result = await reconciler.handle(event)
    return WebhookResponse(
        processed=result.processed, outcome=result.outcome
    )
