"""SQLAlchemy repository implementation."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fastapi_fulfillment.contrib.sqlalchemy.models import (
    OrderItemModel,
    OrderModel,
    WebhookLogModel,
)
from fastapi_fulfillment.exceptions import OrderNotFoundError
from fastapi_fulfillment.status import should_apply
from fastapi_fulfillment.types import (
    CustomerSnapshot,
    Order,
    OrderItem,
    OrderStatus,
    WebhookLogEntry,
)

# Columns the workflow is allowed to write through update_order.
WRITABLE_FIELDS = frozenset(
    {
        "carrier_order_id",
        "shipment_id",
        "awb_code",
        "tracking_url",
        "courier_id",
        "courier_name",
        "pickup_location",
        "needs_attention",
        "fulfillment_error",
    }
)


def _column_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return value


def _to_order(row: OrderModel) -> Order:
    return Order(
        id=row.id,
        order_number=row.order_number,
        status=OrderStatus(row.status),
        payment_method=row.payment_method,
        subtotal=row.subtotal,
        shipping_cost=row.shipping_cost,
        tax=row.tax,
        discount=row.discount,
        total=row.total,
        currency=row.currency,
        items=tuple(
            OrderItem(
                name=item.name,
                sku=item.sku,
                quantity=item.quantity,
                unit_price=item.unit_price,
            )
            for item in row.items
        ),
        customer=CustomerSnapshot.model_validate(row.customer or {}),
        created_at=row.created_at,
        updated_at=row.updated_at,
        carrier_order_id=row.carrier_order_id,
        shipment_id=row.shipment_id,
        awb_code=row.awb_code,
        tracking_url=row.tracking_url,
        courier_id=row.courier_id,
        courier_name=row.courier_name,
        pickup_location=row.pickup_location,
        needs_attention=row.needs_attention,
        fulfillment_error=row.fulfillment_error,
    )


def _to_entry(row: WebhookLogModel) -> WebhookLogEntry:
    return WebhookLogEntry(
        dedup_key=row.dedup_key,
        awb_code=row.awb_code,
        status=row.status,
        event_timestamp=row.event_timestamp,
        payload=row.payload or {},
        received_at=row.received_at,
    )


def _apply_fields(row: OrderModel, fields: dict[str, Any]) -> None:
    unknown = set(fields) - WRITABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot update order fields: {sorted(unknown)}")
    for key, value in fields.items():
        setattr(row, key, _column_value(value))
    row.updated_at = datetime.now(tz=UTC)


class SQLAlchemyOrderRepository:
    """Order repository backed by SQLAlchemy async sessions."""

    def __init__(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        self.session_factory = session_factory

    async def add_order(self, order: Order) -> Order:
        """Persist a new order with its line items."""
        row = OrderModel(
            id=order.id,
            order_number=order.order_number,
            status=order.status.value,
            payment_method=order.payment_method.value,
            subtotal=order.subtotal,
            shipping_cost=order.shipping_cost,
            tax=order.tax,
            discount=order.discount,
            total=order.total,
            currency=order.currency,
            customer=order.customer.model_dump(mode="json"),
            created_at=order.created_at,
            **{
                name: getattr(order, name)
                for name in sorted(WRITABLE_FIELDS)
            },
            items=[
                OrderItemModel(
                    position=position,
                    name=item.name,
                    sku=item.sku,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                )
                for position, item in enumerate(order.items)
            ],
        )
        async with self.session_factory() as session:
            session.add(row)
            await session.commit()
        return await self.get_order(order.id)

    async def get_order(self, order_id: str) -> Order:
        async with self.session_factory() as session:
            row = await session.get(OrderModel, order_id)
            if row is None:
                raise OrderNotFoundError(order_id)
            return _to_order(row)

    async def get_order_by_tracking_number(
        self, awb_code: str
    ) -> Order | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(OrderModel).where(OrderModel.awb_code == awb_code)
            )
            row = result.scalars().first()
            return _to_order(row) if row is not None else None

    async def update_order(self, order_id: str, **fields: Any) -> Order:
        async with self.session_factory() as session:
            row = await session.get(OrderModel, order_id)
            if row is None:
                raise OrderNotFoundError(order_id)
            _apply_fields(row, fields)
            await session.flush()
            order = _to_order(row)
            await session.commit()
        return order

    async def transition_status(
        self,
        order_id: str,
        status: OrderStatus,
        **fields: Any,
    ) -> tuple[Order, bool]:
        """Apply ``status`` under a row lock if it moves the order forward."""
        async with self.session_factory() as session, session.begin():
            result = await session.execute(
                select(OrderModel)
                .where(OrderModel.id == order_id)
                .with_for_update()
            )
            row = result.scalar_one_or_none()
            if row is None:
                raise OrderNotFoundError(order_id)
            if not should_apply(OrderStatus(row.status), status):
                return _to_order(row), False
            row.status = status.value
            _apply_fields(row, fields)
            await session.flush()
            order = _to_order(row)
        return order, True

    async def insert_webhook_log(self, entry: WebhookLogEntry) -> bool:
        async with self.session_factory() as session:
            session.add(
                WebhookLogModel(
                    dedup_key=entry.dedup_key,
                    awb_code=entry.awb_code,
                    status=entry.status,
                    event_timestamp=entry.event_timestamp,
                    payload=entry.payload,
                    received_at=entry.received_at,
                )
            )
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return False
        return True

    async def find_webhook_log(
        self, dedup_key: str
    ) -> WebhookLogEntry | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(WebhookLogModel).where(
                    WebhookLogModel.dedup_key == dedup_key
                )
            )
            row = result.scalar_one_or_none()
            return _to_entry(row) if row is not None else None

    async def list_webhook_logs(
        self, awb_code: str | None = None
    ) -> list[WebhookLogEntry]:
        """List logged events, oldest first."""
        async with self.session_factory() as session:
            stmt = select(WebhookLogModel).order_by(WebhookLogModel.id)
            if awb_code is not None:
                stmt = stmt.where(WebhookLogModel.awb_code == awb_code)
            result = await session.execute(stmt)
            return [_to_entry(row) for row in result.scalars().all()]
