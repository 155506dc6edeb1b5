"""Notification dispatcher tests."""

from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from conftest import make_order
from fastapi_fulfillment.config import FulfillmentConfig
from fastapi_fulfillment.exceptions import NotificationError
from fastapi_fulfillment.notifications import (
    NotificationDispatcher,
    format_money,
    valid_email,
)
from fastapi_fulfillment.types import (
    CustomerSnapshot,
    NotificationOutcome,
    OrderStatus,
)


def test_format_money() -> None:
    assert format_money(Decimal("1998"), "INR") == "₹1,998.00"
    assert format_money(5, "JPY") == "JPY 5.00"


@pytest.mark.parametrize(
    ("address", "expected"),
    [
        ("aarav.sharma@gmail.com", "aarav.sharma@gmail.com"),
        ("  aarav.sharma@gmail.com ", "aarav.sharma@gmail.com"),
        ("", None),
        (None, None),
        ("not-an-email", None),
    ],
)
def test_valid_email(address, expected) -> None:
    assert valid_email(address) == expected


@pytest.mark.parametrize(
    ("status", "template"),
    [
        (OrderStatus.PENDING, "confirmed"),
        (OrderStatus.PROCESSING, "processing"),
        (OrderStatus.SHIPPED, "shipped"),
        (OrderStatus.DELIVERED, "delivered"),
        (OrderStatus.CANCELLED, "cancelled"),
    ],
)
def test_template_for_status(status, template) -> None:
    assert NotificationDispatcher.template_for(status) == template


class TestRender:
    def test_processing_email_includes_tracking(self, dispatcher) -> None:
        order = make_order(
            status=OrderStatus.PROCESSING,
            awb_code="AWB123",
            courier_name="Delhivery",
        )

        subject, html = dispatcher.render(order, OrderStatus.PROCESSING)

        assert subject == "Your order is being prepared #1001"
        assert "Test Store" in html
        assert "AWB123" in html
        assert "https://shiprocket.co/tracking/AWB123" in html
        assert "Delhivery" in html
        assert "₹1,998.00" in html

    def test_customer_content_is_escaped(self, dispatcher) -> None:
        order = make_order(
            customer=CustomerSnapshot(
                name="<script>x</script>", email="a@gmail.com"
            )
        )

        _, html = dispatcher.render(order, OrderStatus.PENDING)

        assert "<script>x</script>" not in html
        assert "&lt;script&gt;" in html


class TestNotify:
    async def test_sends_email(self, dispatcher, email_provider) -> None:
        outcome = await dispatcher.notify(make_order(), OrderStatus.SHIPPED)

        assert outcome == NotificationOutcome.SENT
        (sent,) = email_provider.sent
        assert sent["to"] == "aarav.sharma@gmail.com"
        assert sent["subject"] == "Your order is on its way #1001"

    async def test_invalid_email_is_skipped(
        self, dispatcher, email_provider
    ) -> None:
        order = make_order(customer=CustomerSnapshot(email="nope"))

        outcome = await dispatcher.notify(order, OrderStatus.SHIPPED)

        assert outcome == NotificationOutcome.SKIPPED
        assert email_provider.sent == []

    async def test_provider_failure_is_queued(
        self, dispatcher, email_provider, retry_store
    ) -> None:
        email_provider.error = "rate limited"

        outcome = await dispatcher.notify(make_order(), OrderStatus.DELIVERED)

        assert outcome == NotificationOutcome.FAILED
        (retry,) = retry_store.retries.values()
        assert retry["kind"] == "notification"
        assert retry["payload"] == {
            "order_id": "ord-1",
            "status": "delivered",
        }

    async def test_failure_without_retry_store(self, email_provider) -> None:
        email_provider.error = "down"
        dispatcher = NotificationDispatcher(email_provider)

        outcome = await dispatcher.notify(make_order(), OrderStatus.SHIPPED)

        assert outcome == NotificationOutcome.FAILED

    async def test_unexpected_provider_error_is_contained(
        self, dispatcher, email_provider, retry_store
    ) -> None:
        email_provider.send = AsyncMock(side_effect=RuntimeError("boom"))

        outcome = await dispatcher.notify(make_order(), OrderStatus.SHIPPED)

        assert outcome == NotificationOutcome.FAILED
        (retry,) = retry_store.retries.values()
        assert retry["payload"]["status"] == "shipped"

    async def test_retry_store_failure_is_contained(
        self, dispatcher, email_provider, retry_store
    ) -> None:
        email_provider.error = "down"
        retry_store.store_failed = AsyncMock(
            side_effect=RuntimeError("database is locked")
        )

        outcome = await dispatcher.notify(make_order(), OrderStatus.SHIPPED)

        assert outcome == NotificationOutcome.FAILED
        retry_store.store_failed.assert_awaited_once()


class TestFromConfig:
    def test_uses_store_name_and_tracking_template(
        self, email_provider, retry_store
    ) -> None:
        config = FulfillmentConfig(
            email={"store_name": "Kapda"},
            carrier={"tracking_url_template": "https://t.example/{awb}"},
        )

        dispatcher = NotificationDispatcher.from_config(
            email_provider, config, retry_store=retry_store
        )

        assert dispatcher.store_name == "Kapda"
        assert dispatcher.tracking_url_template == "https://t.example/{awb}"
        assert dispatcher.retry_store is retry_store

    async def test_retries_disabled_drops_retry_store(
        self, email_provider, retry_store
    ) -> None:
        email_provider.error = "down"
        dispatcher = NotificationDispatcher.from_config(
            email_provider,
            FulfillmentConfig(retry_enabled=False),
            retry_store=retry_store,
        )

        outcome = await dispatcher.notify(make_order(), OrderStatus.SHIPPED)

        assert outcome == NotificationOutcome.FAILED
        assert dispatcher.retry_store is None
        assert retry_store.retries == {}

    async def test_aclose_closes_provider(self) -> None:
        provider = AsyncMock()
        dispatcher = NotificationDispatcher.from_config(
            provider, FulfillmentConfig()
        )

        await dispatcher.aclose()

        provider.aclose.assert_awaited_once()

    async def test_aclose_without_provider_close(self, email_provider) -> None:
        await NotificationDispatcher(email_provider).aclose()


class TestDeliver:
    async def test_raises_on_invalid_recipient(self, dispatcher) -> None:
        order = make_order(customer=CustomerSnapshot(email=None))

        with pytest.raises(NotificationError):
            await dispatcher.deliver(order, OrderStatus.SHIPPED)

    async def test_raises_on_provider_failure(
        self, dispatcher, email_provider
    ) -> None:
        email_provider.error = "down"

        with pytest.raises(NotificationError, match="down"):
            await dispatcher.deliver(make_order(), OrderStatus.SHIPPED)
