"""Model tests for shipment requests and webhook events."""

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
from pydantic import ValidationError

from conftest import make_order, make_shipment_request
from fastapi_fulfillment.types import (
    CarrierToken,
    CustomerSnapshot,
    ErrorKind,
    FulfillmentResult,
    OrderStatus,
    WebhookEvent,
    WebhookLogEntry,
)


class TestShipmentRequest:
    def test_phone_keeps_last_ten_digits(self) -> None:
        assert make_shipment_request().billing_phone == "9876543210"

    def test_complete_request_has_no_missing_fields(self) -> None:
        assert make_shipment_request().missing_fields() == []

    def test_missing_fields_are_reported(self) -> None:
        request = make_shipment_request(
            billing_city="", billing_pincode="", weight=Decimal("0")
        )
        assert request.missing_fields() == [
            "billing_city",
            "billing_pincode",
            "weight",
        ]

    def test_empty_items_are_missing(self) -> None:
        request = make_shipment_request(order_items=[])
        assert request.missing_fields() == ["order_items"]

    def test_payload_serialises_decimals_as_numbers(self) -> None:
        payload = make_shipment_request().to_payload()
        assert payload["sub_total"] == 1998.0
        assert payload["weight"] == 1.0
        assert payload["order_items"][0]["selling_price"] == 999.0
        assert payload["billing_phone"] == "9876543210"


class TestWebhookEvent:
    def test_accepts_current_field_names(self) -> None:
        event = WebhookEvent.from_payload(
            {
                "awb": "AWB1",
                "current_status": "IN TRANSIT",
                "current_timestamp": "2026-10-18 10:00:00",
            }
        )
        assert event.awb_code == "AWB1"
        assert event.status == "IN TRANSIT"
        assert event.timestamp == "2026-10-18 10:00:00"

    def test_accepts_legacy_field_names(self) -> None:
        event = WebhookEvent.from_payload(
            {"awb_code": 12345, "shipment_status": "DELIVERED"}
        )
        assert event.awb_code == "12345"
        assert event.status == "DELIVERED"
        assert event.timestamp == ""

    def test_keeps_raw_payload(self) -> None:
        payload = {"awb": "AWB1", "current_status": "SHIPPED", "extra": 1}
        assert WebhookEvent.from_payload(payload).payload == payload

    def test_missing_awb_is_rejected(self) -> None:
        with pytest.raises(ValidationError):
            WebhookEvent.from_payload({"current_status": "SHIPPED"})

    def test_blank_status_is_rejected(self) -> None:
        with pytest.raises(ValidationError):
            WebhookEvent.from_payload({"awb": "AWB1", "current_status": " "})

    def test_dedup_key_is_stable(self) -> None:
        first = WebhookEvent.from_payload(
            {"awb": "AWB1", "current_status": "SHIPPED", "timestamp": "t1"}
        )
        again = WebhookEvent.from_payload(
            {"awb_code": "AWB1", "status": "SHIPPED", "event_time": "t1"}
        )
        later = WebhookEvent.from_payload(
            {"awb": "AWB1", "current_status": "SHIPPED", "timestamp": "t2"}
        )
        assert first.dedup_key == again.dedup_key
        assert first.dedup_key != later.dedup_key
        assert len(first.dedup_key) == 64

    def test_log_entry_from_event(self) -> None:
        event = WebhookEvent.from_payload(
            {"awb": "AWB1", "current_status": "SHIPPED", "timestamp": "t1"}
        )
        entry = WebhookLogEntry.from_event(event)
        assert entry.dedup_key == event.dedup_key
        assert entry.event_timestamp == "t1"


class TestOrder:
    def test_total_quantity(self) -> None:
        assert make_order().total_quantity == 2

    def test_terminal_states(self) -> None:
        assert make_order(status=OrderStatus.DELIVERED).is_terminal
        assert make_order(status=OrderStatus.CANCELLED).is_terminal
        assert not make_order(status=OrderStatus.SHIPPED).is_terminal

    def test_customer_name_split(self) -> None:
        customer = CustomerSnapshot(name="Aarav Kumar Sharma")
        assert customer.first_name == "Aarav"
        assert customer.last_name == "Kumar Sharma"
        assert CustomerSnapshot(name="Cher").last_name == ""


class TestFulfillmentResultOutcome:
    def test_succeeded(self) -> None:
        result = FulfillmentResult(
            order_id="o", status=OrderStatus.PROCESSING, shipment_id="1"
        )
        assert result.outcome == "succeeded"

    def test_partial_when_shipment_exists(self) -> None:
        result = FulfillmentResult(
            order_id="o",
            status=OrderStatus.PENDING,
            shipment_id="1",
            error_kind=ErrorKind.COURIER_ASSIGNMENT_FAILED,
        )
        assert result.outcome == "partial"

    def test_failed_without_shipment(self) -> None:
        result = FulfillmentResult(
            order_id="o",
            status=OrderStatus.PENDING,
            error_kind=ErrorKind.VALIDATION_ERROR,
        )
        assert result.outcome == "failed"


def test_token_expires_within_margin() -> None:
    now = datetime(2026, 10, 18, tzinfo=UTC)
    token = CarrierToken(value="t", expires_at=now + timedelta(seconds=30))
    assert token.expires_within(60, now=now)
    assert not token.expires_within(10, now=now)
