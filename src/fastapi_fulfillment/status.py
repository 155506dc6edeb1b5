"""Order status ordering and carrier status vocabulary."""

from __future__ import annotations

import re

from fastapi_fulfillment.types import OrderStatus

TERMINAL_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED})

_RANK = {
    OrderStatus.PENDING: 0,
    OrderStatus.PROCESSING: 1,
    OrderStatus.SHIPPED: 2,
    OrderStatus.DELIVERED: 3,
}

CARRIER_STATUS_MAP: dict[str, OrderStatus] = {
    "NEW": OrderStatus.PENDING,
    # Courier booked, parcel still at the pickup address.
    "AWB_ASSIGNED": OrderStatus.PROCESSING,
    "LABEL_GENERATED": OrderStatus.PROCESSING,
    "MANIFEST_GENERATED": OrderStatus.PROCESSING,
    "PICKUP_SCHEDULED": OrderStatus.PROCESSING,
    "PICKUP_GENERATED": OrderStatus.PROCESSING,
    "PICKUP_QUEUED": OrderStatus.PROCESSING,
    "OUT_FOR_PICKUP": OrderStatus.PROCESSING,
    "READY_TO_SHIP": OrderStatus.PROCESSING,
    # Parcel has left the pickup address.
    "PICKED_UP": OrderStatus.SHIPPED,
    "SHIPPED": OrderStatus.SHIPPED,
    "IN_TRANSIT": OrderStatus.SHIPPED,
    "DISPATCHED": OrderStatus.SHIPPED,
    "DISPATCHED_FROM_ORIGIN": OrderStatus.SHIPPED,
    "REACHED_DESTINATION_HUB": OrderStatus.SHIPPED,
    "OUT_FOR_DELIVERY": OrderStatus.SHIPPED,
    "UNDELIVERED": OrderStatus.SHIPPED,
    "DELAYED": OrderStatus.SHIPPED,
    "RTO": OrderStatus.SHIPPED,
    "RTO_INITIATED": OrderStatus.SHIPPED,
    "RTO_IN_TRANSIT": OrderStatus.SHIPPED,
    "DELIVERED": OrderStatus.DELIVERED,
    "CANCELLED": OrderStatus.CANCELLED,
    "CANCELED": OrderStatus.CANCELLED,
    "RTO_DELIVERED": OrderStatus.CANCELLED,
}


def normalize_carrier_status(raw: str) -> str:
    """Upper-case a carrier status and join words with underscores."""
    return re.sub(r"[\s\-]+", "_", raw.strip()).upper()


def map_carrier_status(raw: str) -> OrderStatus | None:
    """Translate a carrier status; ``None`` when the status is unknown."""
    return CARRIER_STATUS_MAP.get(normalize_carrier_status(raw))


def is_terminal(status: OrderStatus) -> bool:
    return status in TERMINAL_STATUSES


def should_apply(current: OrderStatus, target: OrderStatus) -> bool:
    """Return True when moving from ``current`` to ``target`` is progress.

    Terminal states accept nothing. Cancellation is accepted from any
    non-terminal state. Everything else must rank strictly later.
    """
    if is_terminal(current):
        return False
    if target == OrderStatus.CANCELLED:
        return True
    return _RANK[target] > _RANK[current]
