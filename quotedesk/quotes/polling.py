"""
Processing-status poller used by clients waiting on analysis.

Reads processing_status every CLIENT_POLL_INTERVAL_SECONDS until it settles.
After CLIENT_PROCESSING_TIMEOUT_SECONDS it asks the server to apply the
processing -> review_required fallback, which only happens if the quote is
still processing. Once the token is cancelled the poller performs no further
reads, writes or callbacks.
"""

import asyncio
import uuid
from typing import Awaitable, Callable, Optional

import structlog
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from quotedesk.config import settings
from quotedesk.models.enums import ProcessingStatus
from quotedesk.models.tables import Quote
from quotedesk.quotes.state_machine import TimeoutOutcome, apply_processing_timeout

logger = structlog.get_logger(__name__)

SETTLED_STATUSES = frozenset({
    ProcessingStatus.QUOTE_READY.value,
    ProcessingStatus.REVIEW_REQUIRED.value,
})


class CancellationToken:
    """Cooperative cancellation shared between a poller and its owner."""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def sleep(self, seconds: float) -> bool:
        """Sleep up to `seconds`; returns True if cancelled meanwhile."""
        try:
            await asyncio.wait_for(self._event.wait(), timeout=max(0.0, seconds))
        except asyncio.TimeoutError:
            return False
        return True


class PollResult(BaseModel):
    processing_status: Optional[str] = None
    polls: int = 0
    cancelled: bool = False
    timed_out: bool = False
    fallback_applied: bool = False


async def poll_processing_status(
    fetch_status: Callable[[], Awaitable[Optional[str]]],
    on_timeout: Callable[[], Awaitable[TimeoutOutcome]],
    token: CancellationToken,
    on_status: Optional[Callable[[str], None]] = None,
    interval: Optional[float] = None,
    timeout: Optional[float] = None,
) -> PollResult:
    interval = settings.CLIENT_POLL_INTERVAL_SECONDS if interval is None else interval
    timeout = settings.CLIENT_PROCESSING_TIMEOUT_SECONDS if timeout is None else timeout

    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    result = PollResult()

    while True:
        if token.cancelled:
            result.cancelled = True
            return result

        status = await fetch_status()
        if token.cancelled:
            # response arrived after cancellation: drop it
            result.cancelled = True
            return result

        result.polls += 1
        result.processing_status = status
        if on_status is not None and status is not None:
            on_status(status)
        if status in SETTLED_STATUSES:
            return result

        remaining = deadline - loop.time()
        if remaining <= 0:
            outcome = await on_timeout()
            result.timed_out = True
            result.fallback_applied = outcome.applied
            result.processing_status = outcome.processing_status
            if on_status is not None and outcome.processing_status and not token.cancelled:
                on_status(outcome.processing_status)
            logger.info("processing_poll_timed_out", applied=outcome.applied, status=outcome.status)
            return result

        if await token.sleep(min(interval, remaining)):
            result.cancelled = True
            return result


async def poll_quote(
    session_factory: async_sessionmaker[AsyncSession],
    quote_id: uuid.UUID,
    token: CancellationToken,
    on_status: Optional[Callable[[str], None]] = None,
    interval: Optional[float] = None,
    timeout: Optional[float] = None,
) -> PollResult:
    """Poll a quote straight from the database, one short session per read."""

    async def fetch_status() -> Optional[str]:
        async with session_factory() as session:
            return (await session.execute(
                select(Quote.processing_status).where(Quote.id == quote_id)
            )).scalar_one_or_none()

    async def on_timeout() -> TimeoutOutcome:
        async with session_factory() as session:
            return await apply_processing_timeout(session, quote_id)

    return await poll_processing_status(fetch_status, on_timeout, token, on_status, interval, timeout)
