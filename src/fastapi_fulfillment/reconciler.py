"""Carrier webhook reconciliation."""

from __future__ import annotations

import logging
from typing import Any

from fastapi_fulfillment.notifications import NotificationDispatcher
from fastapi_fulfillment.protocols import OrderRepository, RetryStore
from fastapi_fulfillment.retry import WEBHOOK
from fastapi_fulfillment.status import map_carrier_status
from fastapi_fulfillment.types import (
    ReconcileOutcome,
    ReconcileResult,
    WebhookEvent,
    WebhookLogEntry,
)

logger = logging.getLogger(__name__)


class WebhookReconciler:
    """Applies carrier status events to orders.

    Events are deduplicated on (AWB, status, timestamp) through the
    webhook log and go through the same apply-if-newer transition as the
    orchestrator, so the two paths can interleave in any order.
    """

    def __init__(
        self,
        *,
        repository: OrderRepository,
        dispatcher: NotificationDispatcher,
        tracking_url_template: str | None = None,
        retry_store: RetryStore | None = None,
    ) -> None:
        self.repository = repository
        self.dispatcher = dispatcher
        self.tracking_url_template = tracking_url_template
        self.retry_store = retry_store

    async def handle(self, event: WebhookEvent) -> ReconcileResult:
        """Log, deduplicate and apply one event.

        Raises only if the event could not be logged; once the log entry
        is durable every failure is reported as ``FAILED``.
        """
        key = event.dedup_key
        if await self.repository.find_webhook_log(key) is not None:
            logger.info(
                "Duplicate webhook for AWB %s (%s), ignoring",
                event.awb_code,
                event.status,
            )
            return ReconcileResult(outcome=ReconcileOutcome.DUPLICATE)

        inserted = await self.repository.insert_webhook_log(
            WebhookLogEntry.from_event(event)
        )
        if not inserted:
            logger.info(
                "Webhook for AWB %s (%s) logged concurrently, ignoring",
                event.awb_code,
                event.status,
            )
            return ReconcileResult(outcome=ReconcileOutcome.DUPLICATE)

        try:
            result = await self.apply(event)
        except Exception:
            logger.exception(
                "Failed to apply webhook for AWB %s (%s)",
                event.awb_code,
                event.status,
            )
            await self._enqueue_retry(event)
            return ReconcileResult(outcome=ReconcileOutcome.FAILED)

        # The AWB may not be stored yet when the carrier reports early.
        if result.outcome == ReconcileOutcome.ORDER_NOT_FOUND:
            await self._enqueue_retry(event)
        return result

    async def apply(self, event: WebhookEvent) -> ReconcileResult:
        """Map the carrier status and advance the order if it is progress."""
        target = map_carrier_status(event.status)
        if target is None:
            logger.warning(
                "Unmapped carrier status %r for AWB %s; order left unchanged",
                event.status,
                event.awb_code,
            )
            return ReconcileResult(outcome=ReconcileOutcome.UNMAPPED)

        order = await self.repository.get_order_by_tracking_number(
            event.awb_code
        )
        if order is None:
            logger.warning("No order found for AWB %s", event.awb_code)
            return ReconcileResult(outcome=ReconcileOutcome.ORDER_NOT_FOUND)

        order, applied = await self.repository.transition_status(
            order.id, target, **self._tracking_fields(event)
        )
        if not applied:
            logger.info(
                "Order %s stays %s; carrier status %s (%s) is not progress",
                order.id,
                order.status,
                event.status,
                target,
            )
            return ReconcileResult(
                outcome=ReconcileOutcome.STALE,
                order_id=order.id,
                status=order.status,
            )

        logger.info(
            "Order %s moved to %s by carrier status %s",
            order.id,
            order.status,
            event.status,
        )
        await self.dispatcher.notify(order, order.status)
        return ReconcileResult(
            outcome=ReconcileOutcome.APPLIED,
            order_id=order.id,
            status=order.status,
        )

    def _tracking_fields(self, event: WebhookEvent) -> dict[str, Any]:
        fields: dict[str, Any] = {}
        if self.tracking_url_template:
            fields["tracking_url"] = self.tracking_url_template.format(
                awb=event.awb_code
            )
        if event.courier_name:
            fields["courier_name"] = event.courier_name
        return fields

    async def _enqueue_retry(self, event: WebhookEvent) -> None:
        if self.retry_store is None:
            return
        try:
            await self.retry_store.store_failed(
                kind=WEBHOOK,
                reference=event.awb_code,
                payload=event.payload
                or event.model_dump(exclude={"payload"}),
            )
        except Exception:
            logger.exception(
                "Could not queue webhook for AWB %s (%s) for retry",
                event.awb_code,
                event.status,
            )
            return
        logger.info(
            "Queued webhook for AWB %s (%s) for retry",
            event.awb_code,
            event.status,
        )
