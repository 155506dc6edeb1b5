"""SQLAlchemy retry store."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fastapi_fulfillment.config import FulfillmentConfig
from fastapi_fulfillment.contrib.sqlalchemy.models import RetryModel
from fastapi_fulfillment.retry import compute_next_retry_at

PENDING = "pending"
SUCCEEDED = "succeeded"
EXHAUSTED = "exhausted"


class SQLAlchemyRetryStore:
    """Persist notification and webhook retries in a SQLAlchemy table."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        backoff_seconds: int = 60,
    ) -> None:
        self.session_factory = session_factory
        self.backoff_seconds = backoff_seconds

    @classmethod
    def from_config(
        cls,
        session_factory: async_sessionmaker[AsyncSession],
        config: FulfillmentConfig,
    ) -> SQLAlchemyRetryStore:
        return cls(
            session_factory, backoff_seconds=config.retry_backoff_seconds
        )

    async def store_failed(
        self,
        kind: str,
        reference: str,
        payload: dict,
    ) -> str:
        retry_id = str(uuid.uuid4())
        async with self.session_factory() as session:
            session.add(
                RetryModel(
                    id=retry_id,
                    kind=kind,
                    reference=reference,
                    payload=payload,
                    attempts=0,
                    status=PENDING,
                    next_retry_at=compute_next_retry_at(
                        1, self.backoff_seconds
                    ),
                )
            )
            await session.commit()
        return retry_id

    async def get_due_retries(self, limit: int = 10) -> list[dict]:
        now = datetime.now(tz=UTC)
        async with self.session_factory() as session:
            result = await session.execute(
                select(RetryModel)
                .where(
                    RetryModel.status == PENDING,
                    RetryModel.next_retry_at <= now,
                )
                .order_by(RetryModel.next_retry_at)
                .limit(limit)
            )
            return [
                {
                    "id": row.id,
                    "kind": row.kind,
                    "reference": row.reference,
                    "payload": row.payload,
                    "attempts": row.attempts,
                    "last_error": row.last_error,
                }
                for row in result.scalars().all()
            ]

    async def mark_succeeded(self, retry_id: str) -> None:
        async with self.session_factory() as session:
            row = await session.get(RetryModel, retry_id)
            if row is not None:
                row.status = SUCCEEDED
                await session.commit()

    async def mark_failed(self, retry_id: str, error: str) -> None:
        async with self.session_factory() as session:
            row = await session.get(RetryModel, retry_id)
            if row is not None:
                row.attempts += 1
                row.last_error = error
                row.next_retry_at = compute_next_retry_at(
                    row.attempts + 1, self.backoff_seconds
                )
                await session.commit()

    async def mark_exhausted(self, retry_id: str) -> None:
        async with self.session_factory() as session:
            row = await session.get(RetryModel, retry_id)
            if row is not None:
                row.status = EXHAUSTED
                await session.commit()

    async def get(self, retry_id: str) -> dict | None:
        """Return one retry row as a dict."""
        async with self.session_factory() as session:
            row = await session.get(RetryModel, retry_id)
            if row is None:
                return None
            return {
                "id": row.id,
                "kind": row.kind,
                "reference": row.reference,
                "attempts": row.attempts,
                "last_error": row.last_error,
                "status": row.status,
            }
