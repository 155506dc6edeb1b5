"""Token cache tests."""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from fastapi_fulfillment.exceptions import (
    AuthenticationFailed,
    TransientNetworkError,
)
from fastapi_fulfillment.token_cache import TokenCache
from fastapi_fulfillment.types import CarrierToken


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2026, 10, 18, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now


class _Authenticator:
    def __init__(self, clock: _Clock, ttl: int = 3600) -> None:
        self.clock = clock
        self.ttl = ttl
        self.calls = 0
        self.error: Exception | None = None

    async def authenticate(self) -> CarrierToken:
        self.calls += 1
        # Yield so concurrent callers pile up behind the refresh.
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return CarrierToken(
            value=f"tok-{self.calls}",
            expires_at=self.clock.now + timedelta(seconds=self.ttl),
        )


@pytest.fixture()
def clock() -> _Clock:
    return _Clock()


@pytest.fixture()
def authenticator(clock) -> _Authenticator:
    return _Authenticator(clock)


@pytest.fixture()
def cache(authenticator, clock) -> TokenCache:
    return TokenCache(authenticator, refresh_margin_seconds=60, clock=clock)


async def test_concurrent_callers_share_one_login(
    cache, authenticator
) -> None:
    tokens = await asyncio.gather(*(cache.get_token() for _ in range(20)))

    assert set(tokens) == {"tok-1"}
    assert authenticator.calls == 1
    assert cache.refresh_count == 1


async def test_fresh_token_is_reused(cache, authenticator) -> None:
    await cache.init()
    await cache.get_token()
    await cache.get_token()

    assert authenticator.calls == 1


async def test_token_refreshed_inside_margin(
    cache, authenticator, clock
) -> None:
    assert await cache.get_token() == "tok-1"

    clock.now += timedelta(seconds=3600 - 30)

    assert await cache.get_token() == "tok-2"
    assert authenticator.calls == 2


async def test_invalidate_forces_login(cache, authenticator) -> None:
    await cache.get_token()
    cache.invalidate()

    assert await cache.get_token() == "tok-2"


async def test_failed_refresh_is_shared_and_not_cached(
    cache, authenticator
) -> None:
    authenticator.error = AuthenticationFailed("bad credentials")

    results = await asyncio.gather(
        *(cache.get_token() for _ in range(5)), return_exceptions=True
    )

    assert all(isinstance(r, AuthenticationFailed) for r in results)
    assert authenticator.calls == 1

    authenticator.error = None
    assert await cache.get_token() == "tok-2"


async def test_other_errors_become_authentication_failed(
    cache, authenticator
) -> None:
    authenticator.error = TransientNetworkError("timeout")

    with pytest.raises(AuthenticationFailed, match="timeout"):
        await cache.get_token()
