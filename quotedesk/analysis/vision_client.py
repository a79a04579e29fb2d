"""
Thin async client for the Anthropic Messages API.
Returns response text plus token usage for cost tracking.
"""

import time
from typing import Optional

import httpx
import structlog
from pydantic import BaseModel

from quotedesk.config import settings
from quotedesk.errors import ConfigurationError, VisionServiceError

logger = structlog.get_logger(__name__)


class VisionResponse(BaseModel):
    text: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    latency_ms: int = 0


class VisionClient:
    """Send a single user message (images + text) and collect the text reply."""

    engine_name = "anthropic"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.ANTHROPIC_API_KEY
        self.model = model or settings.VISION_MODEL
        self._transport = transport

    def _headers(self) -> dict:
        return {
            "Content-Type": "application/json",
            "x-api-key": self.api_key or "",
            "anthropic-version": settings.ANTHROPIC_API_VERSION,
        }

    async def complete(self, content: list[dict]) -> VisionResponse:
        if not self.api_key:
            raise ConfigurationError("ANTHROPIC_API_KEY not configured")

        payload = {
            "model": self.model,
            "max_tokens": settings.VISION_MAX_TOKENS,
            "messages": [{"role": "user", "content": content}],
        }

        started = time.monotonic()
        try:
            async with httpx.AsyncClient(
                timeout=settings.VISION_TIMEOUT_SECONDS,
                transport=self._transport,
            ) as client:
                resp = await client.post(
                    settings.ANTHROPIC_API_URL, json=payload, headers=self._headers(),
                )
        except httpx.HTTPError as e:
            raise VisionServiceError(f"Vision API unreachable: {e}") from e

        latency_ms = int((time.monotonic() - started) * 1000)
        if resp.status_code >= 400:
            raise VisionServiceError(
                f"Vision API error: {resp.status_code} {resp.text[:200]}"
            )

        try:
            data = resp.json()
            if not isinstance(data, dict):
                raise ValueError(f"expected a JSON object, got {type(data).__name__}")
            text = "".join(
                part.get("text") or ""
                for part in data.get("content") or []
                if isinstance(part, dict) and part.get("type") == "text"
            )
            usage = data.get("usage") or {}
            input_tokens = int(usage.get("input_tokens") or 0)
            output_tokens = int(usage.get("output_tokens") or 0)
        except (ValueError, TypeError, AttributeError) as e:
            raise VisionServiceError(
                f"Vision API returned an unreadable body: {e}", error_code="ERR_VISION_BAD_RESPONSE",
            ) from e
        model = str(data.get("model") or self.model)

        logger.info(
            "vision_call_completed",
            model=model,
            latency_ms=latency_ms,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )

        return VisionResponse(
            text=text,
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            latency_ms=latency_ms,
        )
