"""Typed client for the shipping aggregator's REST API."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx

from fastapi_fulfillment.config import FulfillmentConfig
from fastapi_fulfillment.exceptions import (
    AuthenticationFailed,
    CarrierRejected,
    NoPickupLocationConfigured,
    TransientNetworkError,
)
from fastapi_fulfillment.retry import retry_transient
from fastapi_fulfillment.token_cache import TokenCache
from fastapi_fulfillment.types import (
    CarrierToken,
    CourierAssignment,
    CourierQuote,
    DocumentLinks,
    PickupLocation,
    ShipmentCreated,
    ShipmentRequest,
    TrackingCheckpoint,
)

logger = logging.getLogger(__name__)

_TRANSIENT_STATUSES = frozenset({408, 429})


def _error_message(body: Any, status_code: int) -> str:
    if not isinstance(body, dict):
        return f"Carrier API error (status {status_code})"
    message = (
        body.get("message")
        or body.get("error")
        or f"Carrier API error (status {status_code})"
    )
    errors = body.get("errors")
    if isinstance(errors, dict):
        details = "; ".join(
            f"{key}: {', '.join(map(str, value))}"
            if isinstance(value, list)
            else f"{key}: {value}"
            for key, value in errors.items()
        )
    elif isinstance(errors, list):
        details = ", ".join(map(str, errors))
    else:
        details = str(errors) if errors else ""
    return f"{message}: {details}" if details else str(message)


def _json_or_none(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


def _str_or_none(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


@contextmanager
def _parsing(operation: str, body: Any) -> Iterator[None]:
    """Report a 2xx body of the wrong shape as ``CarrierRejected``."""
    try:
        yield
    except (KeyError, TypeError, AttributeError, ValueError) as exc:
        raise CarrierRejected(
            f"Unexpected carrier response for {operation}: {exc!r}",
            response=body,
        ) from exc


def cheapest_courier(quotes: Iterable[CourierQuote]) -> CourierQuote | None:
    """Lowest rate wins; ties keep the carrier's original order."""
    return min(quotes, key=lambda quote: quote.rate, default=None)


class CarrierAuthenticator:
    """Exchanges account credentials for a bearer token."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        email: str,
        password: str,
        token_ttl_seconds: int = 24 * 60 * 60,
        timeout: float = 15.0,
    ) -> None:
        self.http = http
        self.email = email
        self._password = password
        self.token_ttl_seconds = token_ttl_seconds
        self.timeout = timeout

    async def authenticate(self) -> CarrierToken:
        if not self.email or not self._password:
            raise AuthenticationFailed("Carrier credentials are not configured")
        try:
            response = await self.http.post(
                "/auth/login",
                json={"email": self.email, "password": self._password},
                timeout=self.timeout,
            )
        except httpx.HTTPError as exc:
            raise AuthenticationFailed(
                f"Could not reach carrier authentication endpoint: {exc}"
            ) from exc

        body = _json_or_none(response)
        if response.status_code >= 400:
            raise AuthenticationFailed(
                _error_message(body, response.status_code)
            )
        token = body.get("token") if isinstance(body, dict) else None
        if not token:
            raise AuthenticationFailed("No token received from carrier")
        return CarrierToken(
            value=token,
            expires_at=datetime.now(tz=UTC)
            + timedelta(seconds=self.token_ttl_seconds),
        )


class CarrierClient:
    """Shipping aggregator operations.

    Every call is classified into the fulfillment error taxonomy:
    ``AuthenticationFailed`` after one invalidate-and-retry cycle on 401,
    ``TransientNetworkError`` for timeouts, transport errors, 408, 429 and
    5xx, and ``CarrierRejected`` for other 4xx responses and for failures
    reported inside a 2xx body. Read-only calls retry transient errors;
    mutating calls never do.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        token_cache: TokenCache,
        *,
        timeout: float = 15.0,
        retry_attempts: int = 2,
        retry_backoff_seconds: float = 1.0,
        tracking_url_template: str = "https://shiprocket.co/tracking/{awb}",
    ) -> None:
        self.http = http
        self.token_cache = token_cache
        self.timeout = timeout
        self.retry_attempts = retry_attempts
        self.retry_backoff_seconds = retry_backoff_seconds
        self.tracking_url_template = tracking_url_template

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self.http.aclose()

    # --- transport ---

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        for attempt in (1, 2):
            token = await self.token_cache.get_token()
            try:
                response = await self.http.request(
                    method,
                    path,
                    json=json,
                    params=params,
                    headers={"Authorization": f"Bearer {token}"},
                    timeout=self.timeout,
                )
            except httpx.TimeoutException as exc:
                raise TransientNetworkError(
                    f"Carrier request {method} {path} timed out"
                ) from exc
            except httpx.TransportError as exc:
                raise TransientNetworkError(
                    f"Carrier request {method} {path} failed: {exc}"
                ) from exc

            if response.status_code == 401:
                self.token_cache.invalidate()
                if attempt == 1:
                    logger.info(
                        "Carrier returned 401 for %s %s, refreshing token",
                        method,
                        path,
                    )
                    continue
                raise AuthenticationFailed(
                    "Carrier rejected a freshly issued token"
                )
            break

        body = _json_or_none(response)
        status_code = response.status_code
        if status_code >= 500 or status_code in _TRANSIENT_STATUSES:
            raise TransientNetworkError(
                _error_message(body, status_code), status_code=status_code
            )
        if status_code >= 400:
            raise CarrierRejected(
                _error_message(body, status_code),
                status_code=status_code,
                response=body,
            )
        if body is None:
            raise CarrierRejected(
                f"Carrier returned a non-JSON response for {path}",
                status_code=status_code,
            )
        return body

    async def _get(
        self, path: str, params: dict[str, Any] | None = None
    ) -> Any:
        return await retry_transient(
            lambda: self._request("GET", path, params=params),
            retries=self.retry_attempts,
            backoff_seconds=self.retry_backoff_seconds,
        )

    async def _post(self, path: str, payload: Any) -> Any:
        return await self._request("POST", path, json=payload)

    def tracking_url(self, awb_code: str) -> str:
        return self.tracking_url_template.format(awb=awb_code)

    # --- serviceability and couriers ---

    async def check_serviceability(
        self,
        origin_pincode: str,
        destination_pincode: str,
        weight: float,
        cod: bool,
    ) -> list[CourierQuote]:
        body = await self._get(
            "/courier/serviceability/",
            {
                "pickup_postcode": origin_pincode,
                "delivery_postcode": destination_pincode,
                "weight": weight,
                "cod": 1 if cod else 0,
            },
        )
        with _parsing("serviceability", body):
            data = body.get("data") or {}
            companies = (
                data.get("available_courier_companies", [])
                if isinstance(data, dict)
                else []
            )
            return [
                CourierQuote(
                    courier_id=company["courier_company_id"],
                    courier_name=company.get("courier_name", ""),
                    rate=company.get("rate", 0),
                    eta=str(
                        company.get("etd")
                        or company.get("estimated_delivery_days")
                        or ""
                    ),
                )
                for company in companies
            ]

    # --- shipments ---

    async def create_shipment(
        self, request: ShipmentRequest
    ) -> ShipmentCreated:
        body = await self._post("/orders/create/adhoc", request.to_payload())
        with _parsing("shipment creation", body):
            shipment_id = _str_or_none(body.get("shipment_id"))
            if body.get("status_code") == 0 or shipment_id is None:
                raise CarrierRejected(
                    _error_message(body, 200), response=body
                )
            return ShipmentCreated(
                carrier_order_id=_str_or_none(body.get("order_id")),
                shipment_id=shipment_id,
                status=str(body.get("status") or ""),
                awb_code=_str_or_none(body.get("awb_code")),
            )

    async def find_shipment(
        self, client_reference: str
    ) -> ShipmentCreated | None:
        """Look up a shipment previously created for ``client_reference``."""
        body = await self._get("/orders", {"search": client_reference})
        with _parsing("order search", body):
            for order in body.get("data") or []:
                if str(order.get("channel_order_id")) != client_reference:
                    continue
                shipments = order.get("shipments") or []
                if not shipments:
                    continue
                shipment = shipments[0]
                return ShipmentCreated(
                    carrier_order_id=_str_or_none(order.get("id")),
                    shipment_id=str(shipment["id"]),
                    status=str(order.get("status") or ""),
                    awb_code=_str_or_none(shipment.get("awb")),
                )
        return None

    async def assign_courier(
        self, shipment_id: str, courier_id: int | str
    ) -> CourierAssignment:
        body = await self._post(
            "/courier/assign/awb",
            {"shipment_id": shipment_id, "courier_id": courier_id},
        )
        with _parsing("courier assignment", body):
            nested = (body.get("response") or {}).get("data") or {}
            top_awb = _str_or_none(body.get("awb_code"))
        if not isinstance(nested, dict):
            nested = {}
        nested_awb = _str_or_none(nested.get("awb_code"))
        if nested_awb and top_awb and nested_awb != top_awb:
            logger.warning(
                "Courier assignment for shipment %s returned two AWB codes "
                "(nested %s, top-level %s); using nested",
                shipment_id,
                nested_awb,
                top_awb,
            )
        awb_code = nested_awb or top_awb
        assign_status = body.get(
            "awb_assign_status", nested.get("awb_assign_status")
        )
        if assign_status != 1 or not awb_code:
            message = (
                nested.get("awb_assign_error")
                or body.get("message")
                or "Courier assignment failed"
            )
            raise CarrierRejected(str(message), response=body)
        return CourierAssignment(
            awb_code=awb_code,
            courier_id=_str_or_none(
                nested.get("courier_company_id", courier_id)
            ),
            courier_name=str(
                nested.get("courier_name") or body.get("courier_name") or ""
            ),
            assign_status=assign_status,
        )

    async def cancel_shipment(self, awb_codes: list[str]) -> dict[str, Any]:
        return await self._post(
            "/orders/cancel/shipment/awbs", {"awbs": awb_codes}
        )

    async def create_return_order(
        self, return_data: dict[str, Any]
    ) -> dict[str, Any]:
        return await self._post("/orders/create/return", return_data)

    async def request_pickup(self, shipment_ids: list[str]) -> dict[str, Any]:
        return await self._post(
            "/courier/generate/pickup", {"shipment_id": shipment_ids}
        )

    # --- documents ---

    async def generate_label(self, shipment_ids: list[str]) -> DocumentLinks:
        body = await self._post(
            "/courier/generate/label", {"shipment_id": shipment_ids}
        )
        return self._document_links(body, "label_url")

    async def generate_invoice(self, order_ids: list[str]) -> DocumentLinks:
        body = await self._post("/orders/print/invoice", {"ids": order_ids})
        return self._document_links(body, "invoice_url")

    async def generate_manifest(
        self, shipment_ids: list[str]
    ) -> DocumentLinks:
        body = await self._post(
            "/manifests/generate", {"shipment_id": shipment_ids}
        )
        return self._document_links(body, "manifest_url")

    @staticmethod
    def _document_links(body: dict[str, Any], key: str) -> DocumentLinks:
        with _parsing(key, body):
            url = body.get(key)
            if not url:
                raise CarrierRejected(
                    _error_message(body, 200), response=body
                )
            urls = url if isinstance(url, list) else [url]
            return DocumentLinks(
                urls=[str(u) for u in urls],
                not_created=[str(i) for i in body.get("not_created") or []],
            )

    # --- tracking ---

    async def get_tracking(
        self,
        *,
        shipment_id: str | None = None,
        awb_code: str | None = None,
    ) -> list[TrackingCheckpoint]:
        if (shipment_id is None) == (awb_code is None):
            raise ValueError("Pass exactly one of shipment_id or awb_code")
        if shipment_id is not None:
            body = await self._get(f"/courier/track/shipment/{shipment_id}")
        else:
            body = await self._get(f"/courier/track/awb/{awb_code}")

        with _parsing("tracking", body):
            # Tracking by shipment id is keyed by the id itself.
            if "tracking_data" not in body and len(body) == 1:
                (inner,) = body.values()
                if isinstance(inner, dict):
                    body = inner
            tracking = body.get("tracking_data") or {}
            activities = tracking.get("shipment_track_activities") or []
            checkpoints = [
                TrackingCheckpoint(
                    timestamp=str(activity.get("date", "")),
                    status=str(
                        activity.get("sr-status-label")
                        or activity.get("status")
                        or ""
                    ),
                    location=str(activity.get("location") or ""),
                    detail=str(activity.get("activity") or ""),
                )
                for activity in activities
            ]
        return sorted(checkpoints, key=lambda c: c.timestamp)

    # --- pickup locations ---

    async def get_pickup_locations(self) -> list[PickupLocation]:
        body = await self._get("/settings/company/pickup")
        with _parsing("pickup locations", body):
            addresses = (body.get("data") or {}).get("shipping_address") or []
            return [
                PickupLocation(
                    name=address["pickup_location"],
                    postal_code=str(address.get("pin_code") or ""),
                    city=str(address.get("city") or ""),
                    address=str(address.get("address") or ""),
                    is_primary=bool(address.get("is_primary_location")),
                )
                for address in addresses
            ]

    async def resolve_pickup_location(
        self, name: str | None = None
    ) -> PickupLocation:
        """Pick the named location, else the primary one, else the first."""
        locations = await self.get_pickup_locations()
        if name is not None:
            for location in locations:
                if location.name == name:
                    return location
            raise NoPickupLocationConfigured(
                f"Pickup location {name!r} is not registered with the carrier"
            )
        for location in locations:
            if location.is_primary:
                return location
        if locations:
            return locations[0]
        raise NoPickupLocationConfigured(
            "No pickup locations are registered with the carrier"
        )


def create_carrier_client(
    config: FulfillmentConfig,
    http: httpx.AsyncClient | None = None,
) -> CarrierClient:
    """Wire authenticator, token cache and client from config."""
    settings = config.carrier
    http = http or httpx.AsyncClient(
        base_url=settings.base_url, timeout=settings.timeout_seconds
    )
    authenticator = CarrierAuthenticator(
        http,
        email=settings.email,
        password=settings.password.get_secret_value(),
        token_ttl_seconds=settings.token_ttl_seconds,
        timeout=settings.timeout_seconds,
    )
    token_cache = TokenCache(
        authenticator,
        refresh_margin_seconds=settings.token_refresh_margin_seconds,
    )
    return CarrierClient(
        http,
        token_cache,
        timeout=settings.timeout_seconds,
        retry_attempts=settings.retry_attempts,
        retry_backoff_seconds=settings.retry_backoff_seconds,
        tracking_url_template=settings.tracking_url_template,
    )
