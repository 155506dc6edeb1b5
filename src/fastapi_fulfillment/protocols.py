"""Collaborator protocols for the fulfillment workflow."""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from fastapi_fulfillment.types import (
    EmailResult,
    Order,
    OrderStatus,
    WebhookLogEntry,
)


@runtime_checkable
class OrderRepository(Protocol):
    """Read/write access to orders and the webhook audit log."""

    async def get_order(self, order_id: str) -> Order: ...

    async def get_order_by_tracking_number(
        self, awb_code: str
    ) -> Order | None: ...

    async def update_order(self, order_id: str, **fields: Any) -> Order: ...

    async def transition_status(
        self,
        order_id: str,
        status: OrderStatus,
        **fields: Any,
    ) -> tuple[Order, bool]:
        """Atomically apply ``status`` if it is progress.

        ``fields`` are written only when the transition is applied.
        Returns the stored order and whether anything changed.
        """
        ...

    async def insert_webhook_log(self, entry: WebhookLogEntry) -> bool:
        """Store an event; False when the dedup key already exists."""
        ...

    async def find_webhook_log(
        self, dedup_key: str
    ) -> WebhookLogEntry | None: ...


@runtime_checkable
class EmailProvider(Protocol):
    """Transactional email delivery."""

    async def send(
        self,
        to: str,
        subject: str,
        html: str,
        *,
        from_email: str | None = None,
        reply_to: str | None = None,
    ) -> EmailResult: ...


@runtime_checkable
class RetryStore(Protocol):
    """Storage abstraction for deferred retries."""

    async def store_failed(
        self,
        kind: str,
        reference: str,
        payload: dict,
    ) -> str: ...

    async def get_due_retries(self, limit: int = 10) -> list[dict]: ...

    async def mark_succeeded(self, retry_id: str) -> None: ...

    async def mark_failed(
        self,
        retry_id: str,
        error: str,
    ) -> None: ...

    async def mark_exhausted(self, retry_id: str) -> None: ...
