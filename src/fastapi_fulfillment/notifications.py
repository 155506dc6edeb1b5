"""Customer notifications for order status transitions."""

from __future__ import annotations

import logging
from decimal import Decimal

from email_validator import EmailNotValidError, validate_email
from jinja2 import Environment, PackageLoader, select_autoescape

from fastapi_fulfillment.config import FulfillmentConfig
from fastapi_fulfillment.exceptions import NotificationError
from fastapi_fulfillment.protocols import EmailProvider, RetryStore
from fastapi_fulfillment.retry import NOTIFICATION
from fastapi_fulfillment.types import (
    EmailResult,
    NotificationOutcome,
    Order,
    OrderStatus,
)

logger = logging.getLogger(__name__)

CURRENCY_SYMBOLS = {
    "INR": "₹",
    "USD": "$",
    "GBP": "£",
    "EUR": "€",
    "AED": "AED ",
    "SAR": "SAR ",
}

TEMPLATES = {
    OrderStatus.PENDING: "confirmed",
    OrderStatus.PROCESSING: "processing",
    OrderStatus.SHIPPED: "shipped",
    OrderStatus.DELIVERED: "delivered",
    OrderStatus.CANCELLED: "cancelled",
}

SUBJECTS = {
    "confirmed": "Order confirmed #{number}",
    "processing": "Your order is being prepared #{number}",
    "shipped": "Your order is on its way #{number}",
    "delivered": "Your order has arrived #{number}",
    "cancelled": "Order cancelled #{number}",
}


def format_money(amount: Decimal | float | int, currency: str) -> str:
    symbol = CURRENCY_SYMBOLS.get(currency, f"{currency} ")
    return f"{symbol}{Decimal(amount):,.2f}"


def valid_email(address: str | None) -> str | None:
    """Return the normalised address, or None if it is not usable."""
    if not address or not address.strip():
        return None
    try:
        return validate_email(
            address.strip(), check_deliverability=False
        ).normalized
    except EmailNotValidError:
        return None


def has_valid_email(order: Order) -> bool:
    return valid_email(order.customer.email) is not None


def _build_environment() -> Environment:
    env = Environment(
        loader=PackageLoader("fastapi_fulfillment", "templates"),
        autoescape=select_autoescape(["html"]),
    )
    env.filters["money"] = format_money
    return env


class NotificationDispatcher:
    """Maps a status to an email template and sends it.

    ``notify`` is fire-and-forget from the caller's point of view: it
    never raises. ``deliver`` is the strict variant used by retries.
    """

    def __init__(
        self,
        provider: EmailProvider,
        *,
        store_name: str = "Store",
        retry_store: RetryStore | None = None,
        tracking_url_template: str | None = None,
    ) -> None:
        self.provider = provider
        self.store_name = store_name
        self.retry_store = retry_store
        self.tracking_url_template = tracking_url_template
        self._env = _build_environment()

    @classmethod
    def from_config(
        cls,
        provider: EmailProvider,
        config: FulfillmentConfig,
        retry_store: RetryStore | None = None,
    ) -> NotificationDispatcher:
        """Build from config, ignoring ``retry_store`` if retries are off."""
        return cls(
            provider,
            store_name=config.email.store_name,
            retry_store=retry_store if config.retry_enabled else None,
            tracking_url_template=config.carrier.tracking_url_template,
        )

    async def aclose(self) -> None:
        """Close the provider's HTTP client, if it owns one."""
        close = getattr(self.provider, "aclose", None)
        if close is not None:
            await close()

    @staticmethod
    def template_for(status: OrderStatus) -> str:
        return TEMPLATES[status]

    def _tracking_url(self, order: Order) -> str | None:
        if order.tracking_url:
            return order.tracking_url
        if order.awb_code and self.tracking_url_template:
            return self.tracking_url_template.format(awb=order.awb_code)
        return None

    def render(self, order: Order, status: OrderStatus) -> tuple[str, str]:
        name = self.template_for(status)
        subject = SUBJECTS[name].format(number=order.order_number)
        html = self._env.get_template(f"{name}.html").render(
            subject=subject,
            order=order,
            store_name=self.store_name,
            customer_name=order.customer.name or "there",
            tracking_url=self._tracking_url(order),
        )
        return subject, html

    async def deliver(self, order: Order, status: OrderStatus) -> EmailResult:
        recipient = valid_email(order.customer.email)
        if recipient is None:
            raise NotificationError(
                f"Order {order.id} has no valid recipient email"
            )
        subject, html = self.render(order, status)
        result = await self.provider.send(recipient, subject, html)
        if not result.success:
            raise NotificationError(
                result.error or "Email provider reported a failure"
            )
        logger.info(
            "Sent %s email for order %s (message %s)",
            self.template_for(status),
            order.id,
            result.message_id,
        )
        return result

    async def notify(
        self, order: Order, status: OrderStatus
    ) -> NotificationOutcome:
        if not has_valid_email(order):
            logger.warning(
                "Skipping %s notification for order %s: no valid email",
                status,
                order.id,
            )
            return NotificationOutcome.SKIPPED
        try:
            await self.deliver(order, status)
        except NotificationError as exc:
            logger.error(
                "Notification %s for order %s failed: %s",
                status,
                order.id,
                exc,
            )
        except Exception:
            logger.exception(
                "Notification %s for order %s failed unexpectedly",
                status,
                order.id,
            )
        else:
            return NotificationOutcome.SENT
        await self._enqueue_retry(order, status)
        return NotificationOutcome.FAILED

    async def _enqueue_retry(self, order: Order, status: OrderStatus) -> None:
        if self.retry_store is None:
            return
        try:
            await self.retry_store.store_failed(
                kind=NOTIFICATION,
                reference=order.id,
                payload={"order_id": order.id, "status": str(status)},
            )
        except Exception:
            logger.exception(
                "Could not queue %s notification for order %s for retry",
                status,
                order.id,
            )
            return
        logger.info(
            "Queued %s notification for order %s for retry", status, order.id
        )
