"""
Per-quote cost instrumentation for vision API calls.
Token counts come from the provider response, not estimates.
"""

import uuid
from decimal import Decimal
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from quotedesk.config import settings
from quotedesk.models.tables import CostEvent
from quotedesk.observability.metrics import external_api_cost_usd, external_api_latency_seconds

logger = structlog.get_logger(__name__)


def token_cost_usd(input_tokens: int, output_tokens: int) -> float:
    return (
        input_tokens * settings.VISION_INPUT_COST_PER_MTOK
        + output_tokens * settings.VISION_OUTPUT_COST_PER_MTOK
    ) / 1_000_000


class CostTracker:
    """Track costs of external API calls for one quote."""

    def __init__(self, session: AsyncSession, quote_id: Optional[uuid.UUID] = None):
        self.session = session
        self.quote_id = quote_id
        self._events: list[dict] = []

    def record(
        self,
        engine_name: str,
        operation: str,
        input_tokens: int = 0,
        output_tokens: int = 0,
        latency_ms: int = 0,
        quote_file_id: Optional[uuid.UUID] = None,
    ) -> None:
        """Stage a cost event on the session and update Prometheus."""
        cost_usd = token_cost_usd(input_tokens, output_tokens)
        self.session.add(CostEvent(
            quote_id=self.quote_id,
            quote_file_id=quote_file_id,
            engine_name=engine_name,
            operation=operation,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_usd=Decimal(str(round(cost_usd, 6))),
            latency_ms=latency_ms,
        ))

        external_api_cost_usd.labels(engine_name=engine_name, operation=operation).inc(cost_usd)
        external_api_latency_seconds.labels(
            engine_name=engine_name, operation=operation,
        ).observe(latency_ms / 1000.0)

        self._events.append({
            "engine_name": engine_name,
            "operation": operation,
            "input_tokens": input_tokens,
            "output_tokens": output_tokens,
            "cost_usd": cost_usd,
            "latency_ms": latency_ms,
        })

        logger.info(
            "cost_event_recorded",
            engine_name=engine_name,
            operation=operation,
            cost_usd=round(cost_usd, 6),
            latency_ms=latency_ms,
        )

    def summary(self) -> dict:
        return {
            "total_cost_usd": round(sum(e["cost_usd"] for e in self._events), 6),
            "input_tokens": sum(e["input_tokens"] for e in self._events),
            "output_tokens": sum(e["output_tokens"] for e in self._events),
            "event_count": len(self._events),
        }
