"""
Scheduled housekeeping: quote expiry and draft purge.
"""

from datetime import datetime, timedelta
from typing import Optional

import structlog
from pydantic import BaseModel
from sqlalchemy import and_, delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from quotedesk.config import settings
from quotedesk.errors import InvalidStateError
from quotedesk.models.enums import QuoteStatus
from quotedesk.models.tables import (
    AIAnalysisResult,
    HITLReview,
    Quote,
    QuoteActivityLog,
    QuoteFile,
    QuoteVersion,
    utcnow,
)
from quotedesk.quotes.state_machine import TERMINAL_STATES, apply_transition
from quotedesk.storage.file_store import FileStore

logger = structlog.get_logger(__name__)


class ExpirySummary(BaseModel):
    expired: int = 0
    skipped: int = 0


class PurgeSummary(BaseModel):
    purged: int = 0
    files_deleted: int = 0


async def expire_stale_quotes(session: AsyncSession, now: Optional[datetime] = None) -> ExpirySummary:
    """
    Expire every non-terminal quote past its validity window: expires_at when
    set, otherwise created_at + QUOTE_VALIDITY_DAYS.
    """
    now = now or utcnow()
    cutoff = now - timedelta(days=settings.QUOTE_VALIDITY_DAYS)
    candidates = (await session.execute(
        select(Quote.id, Quote.status).where(
            Quote.status.notin_([s.value for s in TERMINAL_STATES]),
            or_(
                Quote.expires_at < now,
                and_(Quote.expires_at.is_(None), Quote.created_at < cutoff),
            ),
        )
    )).all()

    summary = ExpirySummary()
    for quote_id, status in candidates:
        try:
            await apply_transition(
                session, quote_id, status, QuoteStatus.EXPIRED,
                {"reason": "validity_window_elapsed"},
                action_type="quote_expired",
            )
            summary.expired += 1
        except InvalidStateError:
            # changed status since the scan; the next sweep picks it up if still stale
            summary.skipped += 1

    logger.info("quote_expiry_sweep_completed", expired=summary.expired, skipped=summary.skipped)
    return summary


async def purge_drafts(
    session: AsyncSession,
    store: Optional[FileStore] = None,
    now: Optional[datetime] = None,
) -> PurgeSummary:
    """Delete draft quotes older than DRAFT_PURGE_DAYS with their files."""
    now = now or utcnow()
    cutoff = now - timedelta(days=settings.DRAFT_PURGE_DAYS)
    quote_ids = list((await session.execute(
        select(Quote.id).where(Quote.status == QuoteStatus.DRAFT.value, Quote.created_at < cutoff)
    )).scalars().all())

    summary = PurgeSummary()
    if not quote_ids:
        return summary

    for model in (AIAnalysisResult, QuoteFile, HITLReview, QuoteVersion, QuoteActivityLog):
        await session.execute(delete(model).where(model.quote_id.in_(quote_ids)))
    result = await session.execute(
        delete(Quote).where(Quote.id.in_(quote_ids), Quote.status == QuoteStatus.DRAFT.value)
    )
    await session.commit()
    summary.purged = result.rowcount

    store = store or FileStore()
    for quote_id in quote_ids:
        summary.files_deleted += store.delete_quote_files(str(quote_id))

    logger.info("draft_quotes_purged", purged=summary.purged, files_deleted=summary.files_deleted)
    return summary
