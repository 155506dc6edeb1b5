"""Fulfillment error taxonomy and HTTP exception handlers."""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse


class FulfillmentError(Exception):
    """Base class for every categorised fulfillment failure."""

    code = "fulfillment_error"


class AuthenticationFailed(FulfillmentError):
    """Carrier rejected the credentials or login could not complete."""

    code = "authentication_failed"


class ShipmentValidationError(FulfillmentError):
    """Required shipment fields are missing or malformed."""

    code = "validation_error"

    def __init__(self, missing: list[str]) -> None:
        self.missing = list(missing)
        super().__init__(
            "Missing required shipment fields: " + ", ".join(self.missing)
        )


class CarrierRejected(FulfillmentError):
    """Carrier refused the request.

    Covers both 4xx responses and semantic failures embedded in an
    otherwise successful response body (``status_code`` is ``None`` then).
    """

    code = "carrier_rejected"

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        response: Any = None,
    ) -> None:
        self.status_code = status_code
        self.response = response
        super().__init__(message)


class NoPickupLocationConfigured(CarrierRejected):
    """No usable pickup location could be resolved."""

    code = "no_pickup_location"


class TransientNetworkError(FulfillmentError):
    """Timeout, transport failure or 5xx; safe to retry later."""

    code = "transient_error"

    def __init__(self, message: str, *, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class OrderNotFoundError(FulfillmentError):
    """Order does not exist in the persistent store."""

    code = "order_not_found"

    def __init__(self, order_id: str) -> None:
        self.order_id = order_id
        super().__init__(f"Order {order_id} not found")


class NotificationError(FulfillmentError):
    """Customer notification could not be delivered."""

    code = "notification_failed"


_STATUS_CODES: list[tuple[type[FulfillmentError], int]] = [
    (OrderNotFoundError, 404),
    (ShipmentValidationError, 422),
    (AuthenticationFailed, 502),
    (NoPickupLocationConfigured, 502),
    (CarrierRejected, 502),
    (TransientNetworkError, 503),
    (NotificationError, 502),
    (FulfillmentError, 400),
]


def register_exception_handlers(app: FastAPI) -> None:
    """Register fulfillment exception handlers on a FastAPI app.

    More specific handlers are registered first so FastAPI matches them
    before the generic FulfillmentError handler.
    """
    for exc_class, status_code in _STATUS_CODES:
        app.add_exception_handler(exc_class, _make_handler(status_code))


def _make_handler(status_code: int):
    async def _handler(
        request: Request,
        exc: FulfillmentError,
    ) -> JSONResponse:
        return JSONResponse(
            status_code=status_code,
            content={"detail": str(exc), "code": exc.code},
        )

    return _handler
