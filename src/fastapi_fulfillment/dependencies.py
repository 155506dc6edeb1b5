"""Dependency providers for request handlers."""

from __future__ import annotations

from fastapi import Request

from fastapi_fulfillment.carrier import CarrierClient
from fastapi_fulfillment.config import FulfillmentConfig
from fastapi_fulfillment.notifications import NotificationDispatcher
from fastapi_fulfillment.orchestrator import FulfillmentOrchestrator
from fastapi_fulfillment.protocols import OrderRepository, RetryStore
from fastapi_fulfillment.reconciler import WebhookReconciler


def get_config(request: Request) -> FulfillmentConfig:
    """Read config from FastAPI app state."""
    return request.app.state.fulfillment_config


def get_repository(request: Request) -> OrderRepository:
    """Read order repository from FastAPI app state."""
    return request.app.state.fulfillment_repository


def get_carrier(request: Request) -> CarrierClient:
    """Read carrier client from FastAPI app state."""
    return request.app.state.fulfillment_carrier


def get_dispatcher(request: Request) -> NotificationDispatcher:
    """Read notification dispatcher from FastAPI app state."""
    return request.app.state.fulfillment_dispatcher


def get_retry_store(request: Request) -> RetryStore | None:
    """Read retry store from FastAPI app state, unless retries are off."""
    if not get_config(request).retry_enabled:
        return None
    return getattr(request.app.state, "fulfillment_retry_store", None)


def get_orchestrator(request: Request) -> FulfillmentOrchestrator:
    """Create a FulfillmentOrchestrator for the current request."""
    return FulfillmentOrchestrator(
        repository=get_repository(request),
        carrier=get_carrier(request),
        dispatcher=get_dispatcher(request),
        config=get_config(request),
    )


def get_reconciler(request: Request) -> WebhookReconciler:
    """Create a WebhookReconciler for the current request."""
    config = get_config(request)
    return WebhookReconciler(
        repository=get_repository(request),
        dispatcher=get_dispatcher(request),
        tracking_url_template=config.carrier.tracking_url_template,
        retry_store=get_retry_store(request),
    )
