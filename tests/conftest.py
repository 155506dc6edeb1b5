"""Shared fixtures for fastapi-fulfillment tests."""

from __future__ import annotations

from decimal import Decimal
from typing import Any

import httpx
import pytest

from fastapi_fulfillment.carrier import create_carrier_client
from fastapi_fulfillment.config import FulfillmentConfig
from fastapi_fulfillment.exceptions import OrderNotFoundError
from fastapi_fulfillment.notifications import NotificationDispatcher
from fastapi_fulfillment.status import should_apply
from fastapi_fulfillment.types import (
    Address,
    CustomerSnapshot,
    EmailResult,
    Order,
    OrderItem,
    OrderStatus,
    PaymentMethod,
    ShipmentLineItem,
    ShipmentRequest,
    WebhookLogEntry,
)

CARRIER_BASE_URL = "https://carrier.test"


def make_order(**overrides: Any) -> Order:
    data: dict[str, Any] = {
        "id": "ord-1",
        "order_number": "1001",
        "payment_method": PaymentMethod.PREPAID,
        "subtotal": Decimal("1998.00"),
        "shipping_cost": Decimal("0"),
        "total": Decimal("1998.00"),
        "items": (
            OrderItem(
                name="Kurta", sku="KRT-1", quantity=2, unit_price=Decimal("999")
            ),
        ),
        "customer": CustomerSnapshot(
            name="Aarav Sharma",
            email="aarav.sharma@gmail.com",
            phone="+91 98765 43210",
            address=Address(
                name="Aarav Sharma",
                line1="12 MG Road",
                city="Bengaluru",
                state="Karnataka",
                postal_code="560001",
                phone="+91 98765 43210",
            ),
        ),
    }
    data.update(overrides)
    return Order(**data)


def make_shipment_request(**overrides: Any) -> ShipmentRequest:
    data: dict[str, Any] = {
        "order_id": "1001",
        "order_date": "2026-10-18",
        "pickup_location": "Warehouse",
        "billing_customer_name": "Aarav",
        "billing_address": "12 MG Road",
        "billing_city": "Bengaluru",
        "billing_pincode": "560001",
        "billing_state": "Karnataka",
        "billing_country": "India",
        "billing_phone": "+91 98765-43210",
        "order_items": [
            ShipmentLineItem(
                name="Kurta", sku="KRT-1", units=2, selling_price=Decimal("999")
            )
        ],
        "payment_method": "Prepaid",
        "sub_total": Decimal("1998"),
        "length": Decimal("15"),
        "breadth": Decimal("15"),
        "height": Decimal("10"),
        "weight": Decimal("1.0"),
    }
    data.update(overrides)
    return ShipmentRequest(**data)


class InMemoryOrderRepository:
    def __init__(self, orders: list[Order] | None = None) -> None:
        self.orders: dict[str, Order] = {o.id: o for o in orders or []}
        self.webhook_logs: dict[str, WebhookLogEntry] = {}

    def add(self, order: Order) -> Order:
        self.orders[order.id] = order
        return order

    async def get_order(self, order_id: str) -> Order:
        try:
            return self.orders[order_id]
        except KeyError as e:
            raise OrderNotFoundError(order_id) from e

    async def get_order_by_tracking_number(
        self, awb_code: str
    ) -> Order | None:
        for order in self.orders.values():
            if order.awb_code == awb_code:
                return order
        return None

    async def update_order(self, order_id: str, **fields) -> Order:
        order = await self.get_order(order_id)
        order = order.model_copy(update=fields)
        self.orders[order_id] = order
        return order

    async def transition_status(
        self, order_id: str, status: OrderStatus, **fields
    ) -> tuple[Order, bool]:
        order = await self.get_order(order_id)
        if not should_apply(order.status, status):
            return order, False
        order = order.model_copy(update={**fields, "status": status})
        self.orders[order_id] = order
        return order, True

    async def insert_webhook_log(self, entry: WebhookLogEntry) -> bool:
        if entry.dedup_key in self.webhook_logs:
            return False
        self.webhook_logs[entry.dedup_key] = entry
        return True

    async def find_webhook_log(
        self, dedup_key: str
    ) -> WebhookLogEntry | None:
        return self.webhook_logs.get(dedup_key)


class FakeEmailProvider:
    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.error: str | None = None

    async def send(
        self,
        to: str,
        subject: str,
        html: str,
        *,
        from_email: str | None = None,
        reply_to: str | None = None,
    ) -> EmailResult:
        if self.error is not None:
            return EmailResult(success=False, error=self.error)
        self.sent.append({"to": to, "subject": subject, "html": html})
        return EmailResult(success=True, message_id=f"msg-{len(self.sent)}")


class InMemoryRetryStore:
    def __init__(self) -> None:
        self.retries: dict[str, dict] = {}

    async def store_failed(
        self, kind: str, reference: str, payload: dict
    ) -> str:
        retry_id = f"retry-{len(self.retries) + 1}"
        self.retries[retry_id] = {
            "id": retry_id,
            "kind": kind,
            "reference": reference,
            "payload": payload,
            "attempts": 0,
            "status": "pending",
        }
        return retry_id

    async def get_due_retries(self, limit: int = 10) -> list[dict]:
        due = [r for r in self.retries.values() if r["status"] == "pending"]
        return [dict(r) for r in due[:limit]]

    async def mark_succeeded(self, retry_id: str) -> None:
        self.retries[retry_id]["status"] = "succeeded"

    async def mark_failed(self, retry_id: str, error: str) -> None:
        self.retries[retry_id]["attempts"] += 1
        self.retries[retry_id]["last_error"] = error

    async def mark_exhausted(self, retry_id: str) -> None:
        self.retries[retry_id]["status"] = "exhausted"


class FakeCarrierAPI:
    """Routes carrier requests to canned responses.

    A route maps ``(method, path)`` to a JSON body, a ``(status, body)``
    tuple, an exception to raise, a callable, or a list of those consumed
    in order (the last one repeats).
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.routes: dict[tuple[str, str], Any] = {
            ("POST", "/auth/login"): {"token": "tok-1"},
            ("GET", "/settings/company/pickup"): {
                "data": {
                    "shipping_address": [
                        {
                            "pickup_location": "Warehouse",
                            "pin_code": "110001",
                            "city": "Delhi",
                            "address": "Plot 4, Okhla",
                            "is_primary_location": 1,
                        }
                    ]
                }
            },
            ("POST", "/orders/create/adhoc"): {
                "order_id": 9001,
                "shipment_id": 7001,
                "status": "NEW",
                "status_code": 1,
            },
            ("POST", "/courier/assign/awb"): {
                "awb_assign_status": 1,
                "response": {
                    "data": {
                        "awb_code": "AWB123",
                        "courier_company_id": 10,
                        "courier_name": "Delhivery",
                    }
                },
            },
            ("GET", "/orders"): {"data": []},
        }

    def set(self, method: str, path: str, responder) -> None:
        self.routes[(method, path)] = responder

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [
            r
            for r in self.requests
            if r.method == method and r.url.path == path
        ]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, request.url.path)
        responder = self.routes.get(key)
        if responder is None:
            return httpx.Response(404, json={"message": "Not found"})
        if isinstance(responder, list):
            responder = responder.pop(0) if len(responder) > 1 else responder[0]
        if isinstance(responder, Exception):
            raise responder
        if isinstance(responder, tuple):
            status_code, body = responder
            return httpx.Response(status_code, json=body)
        if callable(responder):
            return responder(request)
        return httpx.Response(200, json=responder)


@pytest.fixture()
def config() -> FulfillmentConfig:
    return FulfillmentConfig(
        carrier={
            "base_url": CARRIER_BASE_URL,
            "email": "ops@shop.in",
            "password": "secret",
            "retry_attempts": 2,
            "retry_backoff_seconds": 0,
        },
        email={"store_name": "Test Store"},
        auto_assign_courier_id=10,
    )


@pytest.fixture()
def order() -> Order:
    return make_order()


@pytest.fixture()
def repository(order) -> InMemoryOrderRepository:
    return InMemoryOrderRepository([order])


@pytest.fixture()
def email_provider() -> FakeEmailProvider:
    return FakeEmailProvider()


@pytest.fixture()
def retry_store() -> InMemoryRetryStore:
    return InMemoryRetryStore()


@pytest.fixture()
def dispatcher(
    email_provider, retry_store, config
) -> NotificationDispatcher:
    return NotificationDispatcher(
        email_provider,
        store_name=config.email.store_name,
        retry_store=retry_store,
        tracking_url_template=config.carrier.tracking_url_template,
    )


@pytest.fixture()
def carrier_api() -> FakeCarrierAPI:
    return FakeCarrierAPI()


@pytest.fixture()
def carrier_http(carrier_api) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        transport=httpx.MockTransport(carrier_api.handler),
        base_url=CARRIER_BASE_URL,
    )


@pytest.fixture()
def carrier(config, carrier_http):
    return create_carrier_client(config, http=carrier_http)


@pytest.fixture()
async def async_engine():
    """Create an in-memory aiosqlite async engine."""
    sa = pytest.importorskip("sqlalchemy")  # noqa: F841
    from sqlalchemy.ext.asyncio import create_async_engine

    from fastapi_fulfillment.contrib.sqlalchemy.models import Base

    engine = create_async_engine("sqlite+aiosqlite://", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture()
async def async_session_factory(async_engine):
    """Create an async session factory bound to the in-memory engine."""
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    factory = async_sessionmaker(
        async_engine, class_=AsyncSession, expire_on_commit=False
    )
    yield factory


@pytest.fixture()
def sqlalchemy_repository(async_session_factory):
    """Create an SQLAlchemyOrderRepository."""
    from fastapi_fulfillment.contrib.sqlalchemy.repository import (
        SQLAlchemyOrderRepository,
    )

    return SQLAlchemyOrderRepository(async_session_factory)


@pytest.fixture()
def sqlalchemy_retry_store(async_session_factory):
    """Create an SQLAlchemyRetryStore."""
    from fastapi_fulfillment.contrib.sqlalchemy.retry_store import (
        SQLAlchemyRetryStore,
    )

    return SQLAlchemyRetryStore(async_session_factory, backoff_seconds=0)
