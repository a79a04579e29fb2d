"""
Notification dispatcher.

Best-effort: send() never raises. Callers persist their state first and then
notify; a failed email is reported back in the DeliveryResult and logged.
"""

from enum import Enum
from typing import Optional

import structlog
from pydantic import BaseModel

from quotedesk.errors import QuoteDeskError
from quotedesk.notifications.brevo import BrevoClient
from quotedesk.notifications.templates import render
from quotedesk.observability.metrics import notifications_total

logger = structlog.get_logger(__name__)


class NotificationEvent(str, Enum):
    QUOTE_READY = "quote_ready"
    PAYMENT_REQUESTED = "payment_requested"
    REVIEW_REQUIRED = "review_required"
    BETTER_SCAN_REQUESTED = "better_scan_requested"
    QUOTE_REJECTED = "quote_rejected"
    QUOTE_UPDATED = "quote_updated"
    ORDER_CANCELLED = "order_cancelled"


class DeliveryResult(BaseModel):
    sent: bool
    error: Optional[str] = None
    message_id: Optional[str] = None


class NotificationDispatcher:

    def __init__(self, client: Optional[BrevoClient] = None):
        self.client = client or BrevoClient()

    async def send(
        self,
        event: NotificationEvent,
        to_email: Optional[str],
        context: dict,
        to_name: Optional[str] = None,
    ) -> DeliveryResult:
        if not to_email:
            notifications_total.labels(event=event.value, outcome="skipped").inc()
            logger.info("notification_skipped", notification_event=event.value, reason="no_recipient")
            return DeliveryResult(sent=False, error="No recipient email address")

        try:
            subject, html = render(event.value, context)
            message_id = await self.client.send_email(
                to_email, subject, html, to_name=to_name, tags=[event.value],
            )
        except QuoteDeskError as e:
            notifications_total.labels(event=event.value, outcome="failed").inc()
            logger.warning(
                "notification_failed",
                notification_event=event.value,
                to_email=to_email,
                error=e.message,
            )
            return DeliveryResult(sent=False, error=e.message)
        except Exception as e:
            # template or transport bugs must not break the caller's flow
            notifications_total.labels(event=event.value, outcome="failed").inc()
            logger.error(
                "notification_error",
                notification_event=event.value,
                to_email=to_email,
                error=str(e),
            )
            return DeliveryResult(sent=False, error=str(e))

        notifications_total.labels(event=event.value, outcome="sent").inc()
        return DeliveryResult(sent=True, message_id=message_id)
