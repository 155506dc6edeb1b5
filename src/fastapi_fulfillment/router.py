"""Router factory for fastapi-fulfillment."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import APIRouter, FastAPI

from fastapi_fulfillment.carrier import CarrierClient
from fastapi_fulfillment.config import FulfillmentConfig
from fastapi_fulfillment.exceptions import register_exception_handlers
from fastapi_fulfillment.notifications import NotificationDispatcher
from fastapi_fulfillment.protocols import OrderRepository, RetryStore
from fastapi_fulfillment.routes.fulfillment import (
    router as fulfillment_router,
)
from fastapi_fulfillment.routes.webhooks import router as webhooks_router


def create_fulfillment_router(
    *,
    config: FulfillmentConfig,
    repository: OrderRepository,
    carrier: CarrierClient,
    dispatcher: NotificationDispatcher,
    retry_store: RetryStore | None = None,
) -> APIRouter:
    """Create a configured API router."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
        app.state.fulfillment_config = config
        app.state.fulfillment_repository = repository
        app.state.fulfillment_carrier = carrier
        app.state.fulfillment_dispatcher = dispatcher
        app.state.fulfillment_retry_store = retry_store
        register_exception_handlers(app)
        try:
            yield
        finally:
            await carrier.aclose()
            await dispatcher.aclose()

    router = APIRouter(lifespan=lifespan)
    router.include_router(fulfillment_router)
    router.include_router(webhooks_router)
    return router
