"""Order fulfillment orchestration.

Drives a placed order through pickup resolution, shipment creation,
courier assignment, persistence and customer notification. Each step is
gated on the previous one and whatever the carrier has already done is
kept on the order when a later step fails.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any

from fastapi_fulfillment.carrier import CarrierClient, cheapest_courier
from fastapi_fulfillment.config import FulfillmentConfig
from fastapi_fulfillment.exceptions import (
    AuthenticationFailed,
    CarrierRejected,
    FulfillmentError,
    NoPickupLocationConfigured,
    ShipmentValidationError,
    TransientNetworkError,
)
from fastapi_fulfillment.notifications import (
    NotificationDispatcher,
    has_valid_email,
)
from fastapi_fulfillment.protocols import OrderRepository
from fastapi_fulfillment.retry import retry_transient
from fastapi_fulfillment.types import (
    CourierAssignment,
    ErrorKind,
    FulfillmentResult,
    NotificationOutcome,
    Order,
    OrderStatus,
    PaymentMethod,
    PickupLocation,
    ShipmentCreated,
    ShipmentLineItem,
    ShipmentRequest,
)

logger = logging.getLogger(__name__)

MANUAL_ASSIGNMENT_NOTE = "awaiting manual courier assignment"

_ERROR_KINDS: list[tuple[type[FulfillmentError], ErrorKind]] = [
    (AuthenticationFailed, ErrorKind.AUTHENTICATION_FAILED),
    (ShipmentValidationError, ErrorKind.VALIDATION_ERROR),
    (NoPickupLocationConfigured, ErrorKind.NO_PICKUP_LOCATION),
    (CarrierRejected, ErrorKind.CARRIER_REJECTED),
    (TransientNetworkError, ErrorKind.TRANSIENT_ERROR),
]


def error_kind_for(exc: FulfillmentError) -> ErrorKind:
    for exc_class, kind in _ERROR_KINDS:
        if isinstance(exc, exc_class):
            return kind
    return ErrorKind.CARRIER_REJECTED


def build_shipment_request(
    order: Order,
    pickup: PickupLocation,
    config: FulfillmentConfig,
) -> ShipmentRequest:
    """Assemble the carrier payload from the order's frozen snapshot."""
    customer = order.customer
    address = customer.address
    package = config.package
    return ShipmentRequest(
        order_id=order.order_number,
        order_date=order.created_at.date().isoformat(),
        pickup_location=pickup.name,
        billing_customer_name=customer.first_name,
        billing_last_name=customer.last_name,
        billing_address=address.line1,
        billing_address_2=address.line2,
        billing_city=address.city,
        billing_pincode=address.postal_code,
        billing_state=address.state,
        billing_country=address.country,
        billing_email=customer.email or "",
        billing_phone=address.phone or customer.phone,
        order_items=[
            ShipmentLineItem(
                name=item.name,
                sku=item.sku or item.name,
                units=item.quantity,
                selling_price=item.unit_price,
            )
            for item in order.items
        ],
        payment_method=(
            "COD" if order.payment_method == PaymentMethod.COD else "Prepaid"
        ),
        sub_total=order.subtotal or order.total,
        length=package.length,
        breadth=package.breadth,
        height=package.height,
        weight=package.weight_per_unit_kg * Decimal(order.total_quantity),
    )


class FulfillmentOrchestrator:
    """Runs the synchronous fulfillment path for one order at a time."""

    def __init__(
        self,
        *,
        repository: OrderRepository,
        carrier: CarrierClient,
        dispatcher: NotificationDispatcher,
        config: FulfillmentConfig,
    ) -> None:
        self.repository = repository
        self.carrier = carrier
        self.dispatcher = dispatcher
        self.config = config

    async def run_fulfillment(
        self,
        order_id: str,
        *,
        courier_id: int | None = None,
    ) -> FulfillmentResult:
        order = await self.repository.get_order(order_id)
        logger.info("Starting fulfillment for order %s", order.id)

        if order.is_terminal or order.awb_code:
            logger.info(
                "Order %s is %s with AWB %s, nothing to fulfil",
                order.id,
                order.status,
                order.awb_code,
            )
            return self._result(order, courier_assigned=bool(order.awb_code))

        # Quotes for the cheapest courier need the pickup postcode.
        if order.shipment_id is None or self.config.auto_assign_cheapest:
            try:
                pickup = await self._resolve_pickup()
            except FulfillmentError as exc:
                return await self._fail(order, exc, step="pickup resolution")
        else:
            pickup = PickupLocation(name=order.pickup_location or "")

        if order.shipment_id is None:
            request = build_shipment_request(order, pickup, self.config)
            missing = request.missing_fields()
            if missing:
                return await self._fail(
                    order, ShipmentValidationError(missing), step="validation"
                )

        email_ok = has_valid_email(order)
        if not email_ok:
            logger.warning(
                "Order %s has no valid billing email; the carrier will not "
                "notify the customer and no email will be sent",
                order.id,
            )

        if order.shipment_id is None:
            try:
                shipment = await self._create_shipment(order, request)
            except FulfillmentError as exc:
                return await self._fail(order, exc, step="shipment creation")
            order = await self.repository.update_order(
                order.id,
                shipment_id=shipment.shipment_id,
                carrier_order_id=shipment.carrier_order_id,
                pickup_location=pickup.name,
                needs_attention=False,
                fulfillment_error=None,
            )
            if shipment.awb_code:
                assignment = CourierAssignment(awb_code=shipment.awb_code)
                return await self._complete(
                    order, assignment, notify=email_ok
                )
        else:
            logger.info(
                "Order %s already has shipment %s, not re-creating it",
                order.id,
                order.shipment_id,
            )

        return await self._assign_and_complete(
            order, pickup, courier_id=courier_id, notify=email_ok
        )

    async def assign_courier(
        self, order_id: str, courier_id: int
    ) -> FulfillmentResult:
        """Assign a courier to an order whose shipment already exists."""
        order = await self.repository.get_order(order_id)
        if order.shipment_id is None:
            raise ShipmentValidationError(["shipment_id"])
        if order.is_terminal or order.awb_code:
            return self._result(order, courier_assigned=bool(order.awb_code))
        pickup = PickupLocation(name=order.pickup_location or "")
        return await self._assign_and_complete(
            order,
            pickup,
            courier_id=courier_id,
            notify=has_valid_email(order),
        )

    # --- steps ---

    async def _resolve_pickup(self) -> PickupLocation:
        return await self.carrier.resolve_pickup_location(
            self.config.pickup_location
        )

    async def _create_shipment(
        self, order: Order, request: ShipmentRequest
    ) -> ShipmentCreated:
        async def existing() -> ShipmentCreated | None:
            return await self.carrier.find_shipment(order.order_number)

        # An earlier failed run may have created the shipment before its
        # response was lost.
        if order.fulfillment_error is not None:
            shipment = await existing()
            if shipment is not None:
                logger.info(
                    "Adopting shipment %s created by an earlier attempt "
                    "for order %s",
                    shipment.shipment_id,
                    order.id,
                )
                return shipment

        settings = self.config.carrier
        shipment = await retry_transient(
            lambda: self.carrier.create_shipment(request),
            retries=settings.retry_attempts,
            backoff_seconds=settings.retry_backoff_seconds,
            before_retry=existing,
        )
        logger.info(
            "Created shipment %s for order %s",
            shipment.shipment_id,
            order.id,
        )
        return shipment

    async def _courier_preference(
        self,
        order: Order,
        pickup: PickupLocation,
        courier_id: int | None,
    ) -> tuple[int | None, str | None]:
        if courier_id is not None:
            return courier_id, None
        if self.config.auto_assign_courier_id is not None:
            return self.config.auto_assign_courier_id, None
        if not self.config.auto_assign_cheapest:
            return None, None
        quotes = await self.carrier.check_serviceability(
            pickup.postal_code,
            order.customer.address.postal_code,
            float(
                self.config.package.weight_per_unit_kg
                * Decimal(order.total_quantity)
            ),
            cod=order.payment_method == PaymentMethod.COD,
        )
        best = cheapest_courier(quotes)
        if best is None:
            raise CarrierRejected("No serviceable couriers for this route")
        return best.courier_id, best.courier_name

    async def _assign_and_complete(
        self,
        order: Order,
        pickup: PickupLocation,
        *,
        courier_id: int | None,
        notify: bool,
    ) -> FulfillmentResult:
        try:
            chosen, chosen_name = await self._courier_preference(
                order, pickup, courier_id
            )
            if chosen is None:
                logger.info(
                    "No courier preference for order %s; shipment %s left "
                    "for manual assignment",
                    order.id,
                    order.shipment_id,
                )
                return self._result(order, notification_skipped=not notify)
            assignment = await self._assign(order, chosen)
        except FulfillmentError as exc:
            return await self._assignment_failed(order, exc, notify=notify)

        if not assignment.courier_name and chosen_name:
            assignment = assignment.model_copy(
                update={"courier_name": chosen_name}
            )
        return await self._complete(order, assignment, notify=notify)

    async def _assign(self, order: Order, courier_id: int) -> CourierAssignment:
        async def existing() -> CourierAssignment | None:
            shipment = await self.carrier.find_shipment(order.order_number)
            if shipment is not None and shipment.awb_code:
                return CourierAssignment(awb_code=shipment.awb_code)
            return None

        settings = self.config.carrier
        return await retry_transient(
            lambda: self.carrier.assign_courier(order.shipment_id, courier_id),
            retries=settings.retry_attempts,
            backoff_seconds=settings.retry_backoff_seconds,
            before_retry=existing,
        )

    async def _complete(
        self,
        order: Order,
        assignment: CourierAssignment,
        *,
        notify: bool,
    ) -> FulfillmentResult:
        fields: dict[str, Any] = {
            "awb_code": assignment.awb_code,
            "tracking_url": self.carrier.tracking_url(assignment.awb_code),
            "courier_id": assignment.courier_id,
            "courier_name": assignment.courier_name or None,
            "needs_attention": False,
            "fulfillment_error": None,
        }
        order, applied = await self.repository.transition_status(
            order.id, OrderStatus.PROCESSING, **fields
        )
        if not applied:
            # A webhook may already have moved the order further along.
            order = await self.repository.update_order(order.id, **fields)
        logger.info(
            "Order %s assigned AWB %s (%s)",
            order.id,
            assignment.awb_code,
            assignment.courier_name or "courier unknown",
        )

        result = self._result(order, courier_assigned=True)
        if not applied or not notify:
            result.notification_skipped = not notify
            return result

        outcome = await self.dispatcher.notify(order, OrderStatus.PROCESSING)
        if outcome == NotificationOutcome.SENT:
            result.notification_sent = True
        elif outcome == NotificationOutcome.SKIPPED:
            result.notification_skipped = True
        else:
            result.error_kind = ErrorKind.NOTIFICATION_FAILED
            result.errors.append("Customer notification failed")
        return result

    # --- failure handling ---

    async def _fail(
        self, order: Order, exc: FulfillmentError, *, step: str
    ) -> FulfillmentResult:
        logger.error(
            "Fulfillment for order %s failed at %s: %s", order.id, step, exc
        )
        order = await self.repository.update_order(
            order.id,
            needs_attention=True,
            fulfillment_error=f"{step}: {exc}",
        )
        result = self._result(order)
        result.error_kind = error_kind_for(exc)
        result.errors.append(str(exc))
        return result

    async def _assignment_failed(
        self, order: Order, exc: FulfillmentError, *, notify: bool
    ) -> FulfillmentResult:
        logger.warning(
            "Courier assignment for order %s (shipment %s) failed, %s: %s",
            order.id,
            order.shipment_id,
            MANUAL_ASSIGNMENT_NOTE,
            exc,
        )
        order = await self.repository.update_order(
            order.id,
            needs_attention=True,
            fulfillment_error=f"courier assignment: {exc}; "
            f"{MANUAL_ASSIGNMENT_NOTE}",
        )
        result = self._result(order, notification_skipped=not notify)
        result.error_kind = (
            ErrorKind.AUTHENTICATION_FAILED
            if isinstance(exc, AuthenticationFailed)
            else ErrorKind.COURIER_ASSIGNMENT_FAILED
        )
        result.errors.append(str(exc))
        return result

    @staticmethod
    def _result(
        order: Order,
        *,
        courier_assigned: bool = False,
        notification_skipped: bool = False,
    ) -> FulfillmentResult:
        return FulfillmentResult(
            order_id=order.id,
            status=order.status,
            shipment_id=order.shipment_id,
            awb=order.awb_code,
            courier_name=order.courier_name,
            courier_assigned=courier_assigned,
            notification_skipped=notification_skipped,
            needs_attention=order.needs_attention,
        )
