"""
Stripe refunds over the REST API (form-encoded, amounts in cents).
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

import httpx
import structlog

from quotedesk.config import settings
from quotedesk.errors import ConfigurationError, PaymentGatewayError

logger = structlog.get_logger(__name__)


def to_cents(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class StripeClient:

    def __init__(
        self,
        secret_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.secret_key = secret_key if secret_key is not None else settings.STRIPE_SECRET_KEY
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.secret_key)

    async def create_refund(
        self,
        payment_intent: str,
        amount: Decimal,
        metadata: Optional[dict[str, str]] = None,
        reason: str = "requested_by_customer",
        idempotency_key: Optional[str] = None,
    ) -> str:
        """Refund part or all of a PaymentIntent. Returns the refund id."""
        if not self.secret_key:
            raise ConfigurationError("STRIPE_SECRET_KEY not configured")

        form = {
            "payment_intent": payment_intent,
            "amount": str(to_cents(amount)),
            "reason": reason,
        }
        for key, value in (metadata or {}).items():
            form[f"metadata[{key}]"] = str(value)

        headers = {"Authorization": f"Bearer {self.secret_key}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        try:
            async with httpx.AsyncClient(
                base_url=settings.STRIPE_API_BASE,
                timeout=settings.STRIPE_TIMEOUT_SECONDS,
                transport=self._transport,
            ) as client:
                resp = await client.post("/refunds", data=form, headers=headers)
        except httpx.HTTPError as e:
            raise PaymentGatewayError(f"Stripe unreachable: {e}") from e

        try:
            body = resp.json() if resp.content else {}
        except ValueError:
            body = None
        if not isinstance(body, dict):
            body = {}

        if resp.status_code >= 400:
            error = body.get("error")
            message = (error.get("message") if isinstance(error, dict) else None) or resp.text[:200]
            raise PaymentGatewayError(f"Stripe refund failed (HTTP {resp.status_code}): {message}")

        refund_id = body.get("id")
        if not isinstance(refund_id, str) or not refund_id:
            raise PaymentGatewayError(
                f"Stripe returned HTTP {resp.status_code} without a refund id",
                error_code="ERR_STRIPE_BAD_RESPONSE",
            )

        logger.info(
            "stripe_refund_created",
            refund_id=refund_id,
            payment_intent=payment_intent,
            amount_cents=form["amount"],
            status=body.get("status"),
        )
        return refund_id
