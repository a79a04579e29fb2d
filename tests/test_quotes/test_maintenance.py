"""
Tests for the expiry sweep and the draft purge.
"""

from datetime import timedelta

from sqlalchemy import func, select

from quotedesk.models.tables import AIAnalysisResult, Quote, QuoteActivityLog, QuoteFile, utcnow
from quotedesk.quotes.maintenance import expire_stale_quotes, purge_drafts
from quotedesk.quotes.state_machine import get_quote


class TestExpireStaleQuotes:

    async def test_past_expires_at_is_expired(self, session, make_quote):
        quote = await make_quote(status="quote_ready", expires_at=utcnow() - timedelta(hours=1))

        summary = await expire_stale_quotes(session)

        assert summary.expired == 1
        refreshed = await get_quote(session, quote.id)
        assert refreshed.status == "expired"
        log = (await session.execute(
            select(QuoteActivityLog).where(QuoteActivityLog.quote_id == quote.id)
        )).scalars().one()
        assert log.action_type == "quote_expired"

    async def test_old_quote_without_expiry_uses_created_at(self, session, make_quote):
        quote = await make_quote(status="awaiting_payment", created_at=utcnow() - timedelta(days=60))

        summary = await expire_stale_quotes(session)

        assert summary.expired == 1
        assert (await get_quote(session, quote.id)).status == "expired"

    async def test_fresh_and_terminal_quotes_untouched(self, session, make_quote):
        fresh = await make_quote(status="quote_ready", expires_at=utcnow() + timedelta(days=10))
        converted = await make_quote(status="converted", expires_at=utcnow() - timedelta(days=10))

        summary = await expire_stale_quotes(session)

        assert summary.expired == 0
        assert (await get_quote(session, fresh.id)).status == "quote_ready"
        assert (await get_quote(session, converted.id)).status == "converted"

    async def test_sweep_is_idempotent(self, session, make_quote):
        await make_quote(status="quote_ready", expires_at=utcnow() - timedelta(hours=1))

        await expire_stale_quotes(session)
        second = await expire_stale_quotes(session)

        assert second.expired == 0


class TestPurgeDrafts:

    async def test_old_drafts_removed_with_files(self, session, make_quote, make_file, make_analysis, file_store):
        old = await make_quote(status="draft", created_at=utcnow() - timedelta(days=90))
        qf = await make_file(old)
        await make_analysis(old, qf)

        summary = await purge_drafts(session, store=file_store)

        assert summary.purged == 1
        assert summary.files_deleted == 1
        assert not file_store.exists(qf.storage_path)
        assert (await session.execute(select(func.count(Quote.id)))).scalar_one() == 0
        assert (await session.execute(select(func.count(QuoteFile.id)))).scalar_one() == 0
        assert (await session.execute(select(func.count(AIAnalysisResult.id)))).scalar_one() == 0

    async def test_recent_drafts_and_other_states_kept(self, session, make_quote, file_store):
        await make_quote(status="draft")
        await make_quote(status="quote_ready", created_at=utcnow() - timedelta(days=90))

        summary = await purge_drafts(session, store=file_store)

        assert summary.purged == 0
        assert (await session.execute(select(func.count(Quote.id)))).scalar_one() == 2
