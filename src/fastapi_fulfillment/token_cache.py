"""Shared carrier bearer token with single-flight refresh."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Protocol

from fastapi_fulfillment.exceptions import (
    AuthenticationFailed,
    FulfillmentError,
)
from fastapi_fulfillment.types import CarrierToken

logger = logging.getLogger(__name__)


class Authenticator(Protocol):
    async def authenticate(self) -> CarrierToken: ...


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


class TokenCache:
    """Holds the aggregator token and refreshes it before expiry.

    Concurrent callers that find the token missing or stale await the
    same refresh future instead of each logging in. The event loop is
    cooperative, so checking and installing that future needs no lock.
    """

    def __init__(
        self,
        authenticator: Authenticator,
        *,
        refresh_margin_seconds: float = 60,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.authenticator = authenticator
        self.refresh_margin_seconds = refresh_margin_seconds
        self._clock = clock
        self._token: CarrierToken | None = None
        self._refresh: asyncio.Future[CarrierToken] | None = None
        self.refresh_count = 0

    async def init(self) -> None:
        """Fetch a token eagerly, e.g. during application startup."""
        await self.get_token()

    def invalidate(self) -> None:
        """Force the next get_token() call to log in again."""
        self._token = None

    def _is_fresh(self) -> bool:
        return self._token is not None and not self._token.expires_within(
            self.refresh_margin_seconds, now=self._clock()
        )

    async def get_token(self) -> str:
        if self._is_fresh():
            return self._token.value
        if self._refresh is None:
            self._refresh = asyncio.ensure_future(self._do_refresh())
        token = await asyncio.shield(self._refresh)
        return token.value

    async def _do_refresh(self) -> CarrierToken:
        self.refresh_count += 1
        logger.info("Refreshing carrier token")
        try:
            token = await self.authenticator.authenticate()
        except AuthenticationFailed:
            raise
        except FulfillmentError as exc:
            raise AuthenticationFailed(
                f"Carrier authentication failed: {exc}"
            ) from exc
        finally:
            self._refresh = None
        self._token = token
        return token
