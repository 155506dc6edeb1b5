"""Bounded retries with exponential backoff and the deferred retry queue."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, TypeVar

from fastapi_fulfillment.config import FulfillmentConfig
from fastapi_fulfillment.exceptions import (
    OrderNotFoundError,
    TransientNetworkError,
)
from fastapi_fulfillment.protocols import OrderRepository, RetryStore
from fastapi_fulfillment.types import (
    OrderStatus,
    ReconcileOutcome,
    WebhookEvent,
)

if TYPE_CHECKING:
    from fastapi_fulfillment.notifications import NotificationDispatcher
    from fastapi_fulfillment.reconciler import WebhookReconciler

logger = logging.getLogger(__name__)

T = TypeVar("T")

NOTIFICATION = "notification"
WEBHOOK = "webhook"


def compute_backoff(attempt: int, backoff_seconds: float) -> float:
    """delay = backoff_seconds * 2^(attempt - 1)"""
    return backoff_seconds * (2 ** (attempt - 1))


def compute_next_retry_at(
    attempt: int,
    backoff_seconds: int,
) -> datetime:
    """Compute the next retry time with exponential backoff."""
    delay = compute_backoff(attempt, backoff_seconds)
    return datetime.now(tz=UTC) + timedelta(seconds=delay)


async def retry_transient(
    call: Callable[[], Awaitable[T]],
    *,
    retries: int,
    backoff_seconds: float,
    before_retry: Callable[[], Awaitable[T | None]] | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run ``call``, retrying up to ``retries`` times on transient errors.

    ``before_retry`` runs after each backoff and before the call is
    re-issued, and once more after the last failed attempt. A non-None
    result is returned instead of retrying or raising, which lets callers
    adopt a side effect a timed-out call already produced.
    """
    attempt = 0
    while True:
        try:
            return await call()
        except TransientNetworkError as exc:
            attempt += 1
            if attempt > retries:
                if before_retry is not None:
                    existing = await before_retry()
                    if existing is not None:
                        return existing
                raise
            delay = compute_backoff(attempt, backoff_seconds)
            logger.warning(
                "Transient carrier error (attempt %d/%d), retrying in "
                "%.1fs: %s",
                attempt,
                retries,
                delay,
                exc,
            )
            await sleep(delay)
            if before_retry is not None:
                existing = await before_retry()
                if existing is not None:
                    return existing


async def process_due_retries(
    *,
    retry_store: RetryStore,
    repository: OrderRepository,
    dispatcher: NotificationDispatcher,
    reconciler: WebhookReconciler,
    config: FulfillmentConfig,
) -> int:
    """Process all due notification and webhook retries.

    Returns the number of retries processed.
    """
    retries = await retry_store.get_due_retries(limit=10)
    processed = 0

    for retry in retries:
        retry_id = retry["id"]
        kind = retry["kind"]
        reference = retry["reference"]
        payload = retry["payload"]
        attempts = retry["attempts"]

        if attempts >= config.retry_max_attempts:
            logger.warning(
                "Retry exhausted for %s %s after %d attempts",
                kind,
                reference,
                attempts,
            )
            await retry_store.mark_exhausted(retry_id)
            processed += 1
            continue

        try:
            if kind == NOTIFICATION:
                order = await repository.get_order(payload["order_id"])
                await dispatcher.deliver(order, OrderStatus(payload["status"]))
            elif kind == WEBHOOK:
                result = await reconciler.apply(
                    WebhookEvent.from_payload(payload)
                )
                if result.outcome == ReconcileOutcome.ORDER_NOT_FOUND:
                    raise LookupError(f"No order carries AWB {reference} yet")
            else:
                logger.error(
                    "Retry %s: unknown kind %r, marking exhausted",
                    retry_id,
                    kind,
                )
                await retry_store.mark_exhausted(retry_id)
                processed += 1
                continue
        except OrderNotFoundError:
            logger.error(
                "Retry %s: order for %s %s not found, marking exhausted",
                retry_id,
                kind,
                reference,
            )
            await retry_store.mark_exhausted(retry_id)
            processed += 1
            continue
        except Exception as exc:
            new_attempts = attempts + 1
            await retry_store.mark_failed(retry_id, error=str(exc))
            if new_attempts >= config.retry_max_attempts:
                logger.warning(
                    "Retry exhausted for %s %s after %d attempts: %s",
                    kind,
                    reference,
                    new_attempts,
                    exc,
                )
                await retry_store.mark_exhausted(retry_id)
            else:
                logger.info(
                    "Retry %s: attempt %d failed: %s",
                    retry_id,
                    new_attempts,
                    exc,
                )
        else:
            await retry_store.mark_succeeded(retry_id)
            logger.info("Retry %s: %s %s succeeded", retry_id, kind, reference)

        processed += 1

    return processed
