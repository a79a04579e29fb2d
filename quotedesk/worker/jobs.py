"""
RQ job functions for quote processing and lifecycle sweeps.
These are the entry points that the worker calls.
"""

import asyncio
import uuid
from typing import Optional

import structlog
from redis import Redis
from rq import Queue

from quotedesk.config import settings

logger = structlog.get_logger(__name__)


def get_queue() -> Queue:
    """Get the quote job queue."""
    conn = Redis.from_url(settings.REDIS_URL)
    return Queue(settings.QUEUE_NAME, connection=conn)


def enqueue_processing(quote_id: str, file_id: Optional[str] = None) -> str:
    """
    Enqueue a quote for analysis and pricing.
    Returns the job ID.
    """
    q = get_queue()
    job = q.enqueue(
        process_quote_job,
        quote_id,
        file_id,
        job_timeout=settings.JOB_TIMEOUT_SECONDS,
        result_ttl=86400,  # Keep results for 24 hours
        failure_ttl=604800,  # Keep failures for 7 days
    )
    logger.info("job_enqueued", quote_id=quote_id, job_id=job.id)
    return job.id


def process_quote_job(quote_id: str, file_id: Optional[str] = None) -> dict:
    """
    Main job function: analyse and price a quote.
    This runs inside the RQ worker process.
    """
    logger.info("job_started", job="process_quote", quote_id=quote_id)
    try:
        result = asyncio.run(_process_quote_async(quote_id, file_id))
        logger.info("job_completed", job="process_quote", quote_id=quote_id, status=result.get("quote_status"))
        return result
    except Exception as e:
        logger.error("job_failed", job="process_quote", quote_id=quote_id, error=str(e))
        raise


def expire_quotes_job() -> dict:
    logger.info("job_started", job="expire_quotes")
    result = asyncio.run(_expire_quotes_async())
    logger.info("job_completed", job="expire_quotes", **result)
    return result


def purge_drafts_job() -> dict:
    logger.info("job_started", job="purge_drafts")
    result = asyncio.run(_purge_drafts_async())
    logger.info("job_completed", job="purge_drafts", **result)
    return result


# ── Async bodies ─────────────────────────────────────────────
# Each job runs in a fresh event loop, so pooled connections are
# disposed before the loop closes.

async def _process_quote_async(quote_id: str, file_id: Optional[str]) -> dict:
    from quotedesk.models.database import async_session_factory, close_db
    from quotedesk.quotes.processing import process_quote

    try:
        async with async_session_factory() as session:
            outcome = await process_quote(
                session,
                uuid.UUID(quote_id),
                uuid.UUID(file_id) if file_id else None,
            )
            return outcome.model_dump(mode="json")
    finally:
        await close_db()


async def _expire_quotes_async() -> dict:
    from quotedesk.models.database import async_session_factory, close_db
    from quotedesk.quotes.maintenance import expire_stale_quotes

    try:
        async with async_session_factory() as session:
            return (await expire_stale_quotes(session)).model_dump()
    finally:
        await close_db()


async def _purge_drafts_async() -> dict:
    from quotedesk.models.database import async_session_factory, close_db
    from quotedesk.quotes.maintenance import purge_drafts

    try:
        async with async_session_factory() as session:
            return (await purge_drafts(session)).model_dump()
    finally:
        await close_db()
