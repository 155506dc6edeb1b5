"""HTTP transactional email provider."""

from __future__ import annotations

import logging

import httpx

from fastapi_fulfillment.config import EmailSettings
from fastapi_fulfillment.types import EmailResult

logger = logging.getLogger(__name__)


class ResendEmailProvider:
    """Sends email through a Resend-compatible ``POST /emails`` API.

    Provider failures are returned as ``EmailResult(success=False)``
    rather than raised.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        default_from: str,
        default_reply_to: str | None = None,
        timeout: float = 10.0,
    ) -> None:
        self.http = http
        self.default_from = default_from
        self.default_reply_to = default_reply_to
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: EmailSettings) -> ResendEmailProvider:
        http = httpx.AsyncClient(
            base_url=settings.base_url,
            headers={
                "Authorization": (
                    f"Bearer {settings.api_key.get_secret_value()}"
                ),
                "Content-Type": "application/json",
            },
            timeout=settings.timeout_seconds,
        )
        return cls(
            http,
            default_from=settings.from_email,
            default_reply_to=settings.reply_to,
            timeout=settings.timeout_seconds,
        )

    async def aclose(self) -> None:
        await self.http.aclose()

    async def send(
        self,
        to: str,
        subject: str,
        html: str,
        *,
        from_email: str | None = None,
        reply_to: str | None = None,
    ) -> EmailResult:
        payload = {
            "from": from_email or self.default_from,
            "to": [to],
            "subject": subject,
            "html": html,
        }
        reply_to = reply_to or self.default_reply_to
        if reply_to:
            payload["reply_to"] = reply_to

        try:
            response = await self.http.post(
                "/emails", json=payload, timeout=self.timeout
            )
        except httpx.HTTPError as exc:
            logger.error("Email request to %s failed: %s", to, exc)
            return EmailResult(success=False, error=str(exc) or repr(exc))

        if response.status_code >= 400:
            error = f"Email API error: {response.status_code} - {response.text}"
            logger.error(error)
            return EmailResult(success=False, error=error)

        try:
            message_id = response.json().get("id")
        except ValueError:
            message_id = None
        return EmailResult(success=True, message_id=message_id)
