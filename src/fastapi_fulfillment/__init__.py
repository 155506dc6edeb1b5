"""FastAPI order fulfillment public API."""

from typing import TYPE_CHECKING

__version__ = "0.1.0"

__all__ = [
    "CarrierClient",
    "FulfillmentConfig",
    "FulfillmentOrchestrator",
    "NotificationDispatcher",
    "OrderNotFoundError",
    "OrderRepository",
    "RetryStore",
    "WebhookReconciler",
    "__version__",
    "create_carrier_client",
    "create_fulfillment_router",
    "register_exception_handlers",
]

if TYPE_CHECKING:
    from fastapi_fulfillment.carrier import (
        CarrierClient,
        create_carrier_client,
    )
    from fastapi_fulfillment.config import FulfillmentConfig
    from fastapi_fulfillment.exceptions import (
        OrderNotFoundError,
        register_exception_handlers,
    )
    from fastapi_fulfillment.notifications import NotificationDispatcher
    from fastapi_fulfillment.orchestrator import FulfillmentOrchestrator
    from fastapi_fulfillment.protocols import OrderRepository, RetryStore
    from fastapi_fulfillment.reconciler import WebhookReconciler
    from fastapi_fulfillment.router import create_fulfillment_router


def __getattr__(name: str):
    # Lazy imports to avoid loading all submodules on package import.
    if name == "FulfillmentConfig":
        from fastapi_fulfillment.config import FulfillmentConfig

        return FulfillmentConfig
    if name == "create_fulfillment_router":
        from fastapi_fulfillment.router import create_fulfillment_router

        return create_fulfillment_router
    if name in ("CarrierClient", "create_carrier_client"):
        from fastapi_fulfillment import carrier

        return getattr(carrier, name)
    if name == "FulfillmentOrchestrator":
        from fastapi_fulfillment.orchestrator import FulfillmentOrchestrator

        return FulfillmentOrchestrator
    if name == "WebhookReconciler":
        from fastapi_fulfillment.reconciler import WebhookReconciler

        return WebhookReconciler
    if name == "NotificationDispatcher":
        from fastapi_fulfillment.notifications import NotificationDispatcher

        return NotificationDispatcher
    if name in ("OrderNotFoundError", "register_exception_handlers"):
        from fastapi_fulfillment import exceptions

        return getattr(exceptions, name)
    if name in ("OrderRepository", "RetryStore"):
        from fastapi_fulfillment import protocols

        return getattr(protocols, name)
    raise AttributeError(
        f"module 'fastapi_fulfillment' has no attribute {name!r}"
    )
