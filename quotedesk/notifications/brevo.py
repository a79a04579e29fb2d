"""
Brevo transactional email client (POST /v3/smtp/email).
"""

from typing import Optional

import httpx
import structlog

from quotedesk.config import settings
from quotedesk.errors import EmailDeliveryError

logger = structlog.get_logger(__name__)


class BrevoClient:

    def __init__(
        self,
        api_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.BREVO_API_KEY
        self._transport = transport

    async def send_email(
        self,
        to_email: str,
        subject: str,
        html: str,
        to_name: Optional[str] = None,
        tags: Optional[list[str]] = None,
    ) -> Optional[str]:
        """Send one email. Returns Brevo's messageId; raises EmailDeliveryError."""
        if not self.api_key:
            raise EmailDeliveryError("BREVO_API_KEY not configured", error_code="ERR_EMAIL_NOT_CONFIGURED")

        payload: dict = {
            "sender": {"name": settings.EMAIL_SENDER_NAME, "email": settings.EMAIL_SENDER_ADDRESS},
            "to": [{"email": to_email, "name": to_name or "Customer"}],
            "subject": subject,
            "htmlContent": html,
        }
        if settings.EMAIL_REPLY_TO:
            payload["replyTo"] = {"email": settings.EMAIL_REPLY_TO}
        if tags:
            payload["tags"] = tags

        headers = {"api-key": self.api_key, "Content-Type": "application/json"}
        try:
            async with httpx.AsyncClient(
                timeout=settings.BREVO_TIMEOUT_SECONDS, transport=self._transport,
            ) as client:
                resp = await client.post(settings.BREVO_API_URL, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise EmailDeliveryError(f"Brevo unreachable: {e}") from e

        if resp.status_code >= 400:
            raise EmailDeliveryError(f"Brevo email failed: {resp.status_code} {resp.text[:500]}")

        message_id = None
        if resp.content:
            message_id = resp.json().get("messageId")
        logger.info("email_sent", to_email=to_email, subject=subject, message_id=message_id)
        return message_id
