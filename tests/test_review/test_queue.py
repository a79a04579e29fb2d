"""
Tests for the HITL review queue lifecycle.
"""

import uuid

import pytest
from sqlalchemy import func, select

from quotedesk.errors import InvalidStateError, PermissionDenied
from quotedesk.models.enums import QuoteStatus
from quotedesk.models.tables import HITLReview, Quote, QuoteFile, StaffActivityLog
from quotedesk.quotes.processing import process_quote
from quotedesk.quotes.revisions import replace_file
from quotedesk.review.queue import (
    approve_review,
    claim_review,
    get_pending_reviews,
    get_review_queue_stats,
    is_permanently_rejected,
    open_review,
    reject_review,
    request_better_scan,
)


@pytest.fixture
def pending_review(session, make_quote, make_customer):
    async def _make(status="hitl_pending", reasons=("low_ocr_confidence",), priority=5):
        customer = await make_customer()
        quote = await make_quote(status=status, customer_id=customer.id)
        opened = await open_review(session, quote.id, list(reasons), priority)
        await session.commit()
        return quote, uuid.UUID(opened.review_id)
    return _make


async def _quote_status(session, quote_id) -> str:
    return (await session.get(Quote, quote_id, populate_existing=True)).status


class TestOpenReview:

    async def test_creates_pending_review_with_sla(self, session, make_quote):
        quote = await make_quote(status="quote_ready")
        opened = await open_review(session, quote.id, ["high_page_count"], 4)
        await session.commit()

        assert opened.created
        review = await session.get(HITLReview, uuid.UUID(opened.review_id))
        assert review.status == "pending"
        assert review.priority == 4
        assert review.sla_deadline is not None

    async def test_second_open_reuses_existing(self, session, make_quote):
        quote = await make_quote(status="quote_ready")
        first = await open_review(session, quote.id, ["low_ocr_confidence"], 5)
        second = await open_review(session, quote.id, ["high_order_value"], 4)
        await session.commit()

        assert first.created and not second.created
        assert first.review_id == second.review_id
        count = (await session.execute(
            select(func.count(HITLReview.id)).where(HITLReview.quote_id == quote.id)
        )).scalar_one()
        assert count == 1

    async def test_closed_review_does_not_block_new_one(self, session, make_quote):
        quote = await make_quote(status="quote_ready")
        first = await open_review(session, quote.id, ["low_ocr_confidence"], 5)
        review = await session.get(HITLReview, uuid.UUID(first.review_id))
        review.status = "approved"
        await session.commit()

        second = await open_review(session, quote.id, ["high_page_count"], 5)
        assert second.created
        assert second.review_id != first.review_id


class TestClaimReview:

    async def test_claim_moves_quote_into_review(self, session, pending_review, make_staff):
        quote, review_id = await pending_review()
        reviewer = await make_staff()

        result = await claim_review(session, review_id, reviewer.id)

        assert result.message == "Review claimed"
        assert not result.is_override
        review = await session.get(HITLReview, review_id, populate_existing=True)
        assert review.status == "in_progress"
        assert review.assigned_to == reviewer.id
        assert await _quote_status(session, quote.id) == "hitl_in_review"

    async def test_reclaim_by_same_reviewer_is_noop(self, session, pending_review, make_staff):
        _, review_id = await pending_review()
        reviewer = await make_staff()
        await claim_review(session, review_id, reviewer.id)

        result = await claim_review(session, review_id, reviewer.id)
        assert result.message == "Already claimed by you"

    async def test_claimed_by_other_needs_override(self, session, pending_review, make_staff):
        _, review_id = await pending_review()
        first = await make_staff()
        second = await make_staff()
        await claim_review(session, review_id, first.id)

        with pytest.raises(InvalidStateError) as exc:
            await claim_review(session, review_id, second.id)
        assert exc.value.error_code == "ERR_ALREADY_CLAIMED"
        assert exc.value.status_code == 400

    async def test_override_requires_strictly_higher_role(self, session, pending_review, make_staff):
        _, review_id = await pending_review()
        first = await make_staff(role="senior_reviewer")
        peer = await make_staff(role="senior_reviewer")
        await claim_review(session, review_id, first.id)

        with pytest.raises(PermissionDenied) as exc:
            await claim_review(session, review_id, peer.id, is_override=True)
        assert exc.value.error_code == "ERR_OVERRIDE_NOT_ALLOWED"

    async def test_override_by_higher_role(self, session, pending_review, make_staff):
        _, review_id = await pending_review()
        reviewer = await make_staff(role="reviewer")
        admin = await make_staff(role="admin")
        await claim_review(session, review_id, reviewer.id)

        result = await claim_review(session, review_id, admin.id, is_override=True)

        assert result.is_override
        assert result.previous_assigned_to == str(reviewer.id)
        review = await session.get(HITLReview, review_id, populate_existing=True)
        assert review.assigned_to == admin.id
        assert review.previous_assigned_to == reviewer.id
        overrides = (await session.execute(
            select(func.count(StaffActivityLog.id)).where(StaffActivityLog.action_type == "hitl_review_claim_override")
        )).scalar_one()
        assert overrides == 1

    async def test_inactive_staff_rejected(self, session, pending_review, make_staff):
        _, review_id = await pending_review()
        inactive = await make_staff(is_active=False)
        with pytest.raises(PermissionDenied):
            await claim_review(session, review_id, inactive.id)


class TestApproveReview:

    async def test_approve_releases_quote_and_emails(self, session, pending_review, make_staff, dispatcher, sent_emails):
        quote, review_id = await pending_review()
        reviewer = await make_staff()
        await claim_review(session, review_id, reviewer.id)

        result = await approve_review(session, review_id, reviewer.id, notes="Checked", dispatcher=dispatcher)

        assert result.review_status == "approved"
        assert result.quote_status == "awaiting_payment"
        assert result.email_sent
        assert sent_emails[0]["tags"] == ["payment_requested"]
        refreshed = await session.get(Quote, quote.id, populate_existing=True)
        assert refreshed.hitl_required is False
        assert refreshed.expires_at is not None

    async def test_approve_to_quote_ready(self, session, pending_review, make_staff):
        quote, review_id = await pending_review()
        reviewer = await make_staff()
        result = await approve_review(session, review_id, reviewer.id, next_status=QuoteStatus.QUOTE_READY)
        assert result.quote_status == "quote_ready"

    async def test_approve_rejects_other_targets(self, session, pending_review, make_staff):
        _, review_id = await pending_review()
        reviewer = await make_staff()
        with pytest.raises(InvalidStateError):
            await approve_review(session, review_id, reviewer.id, next_status=QuoteStatus.CONVERTED)

    async def test_email_failure_does_not_undo_approval(self, session, pending_review, make_staff, failing_dispatcher):
        quote, review_id = await pending_review()
        reviewer = await make_staff()

        result = await approve_review(session, review_id, reviewer.id, dispatcher=failing_dispatcher)

        assert not result.email_sent
        assert "500" in result.email_error
        assert await _quote_status(session, quote.id) == "awaiting_payment"


class TestRequestBetterScan:

    async def test_flags_files_and_waits_on_customer(self, session, pending_review, make_staff, make_file, dispatcher, sent_emails):
        quote, review_id = await pending_review()
        qf = await make_file(quote, name="blurry.jpg", mime_type="image/jpeg")
        reviewer = await make_staff()

        result = await request_better_scan(
            session, review_id, reviewer.id, [qf.id], "Too blurry",
            customer_message="Please rescan page 2", dispatcher=dispatcher,
        )

        assert result.review_status == "awaiting_customer"
        assert result.quote_status == "awaiting_customer"
        refreshed = await session.get(QuoteFile, qf.id, populate_existing=True)
        assert refreshed.needs_replacement is True
        assert "blurry.jpg" in sent_emails[0]["htmlContent"]

    async def test_foreign_file_rejected(self, session, pending_review, make_staff, make_quote, make_file):
        _, review_id = await pending_review()
        other = await make_file(await make_quote())
        reviewer = await make_staff()
        from quotedesk.errors import NotFoundError
        with pytest.raises(NotFoundError):
            await request_better_scan(session, review_id, reviewer.id, [other.id], "Wrong file")


class TestReplacementReopensReview:

    async def _await_rescan(self, session, pending_review, make_staff, make_file):
        quote, review_id = await pending_review()
        qf = await make_file(quote, name="blurry.png")
        reviewer = await make_staff()
        await request_better_scan(session, review_id, reviewer.id, [qf.id], "Too blurry")
        return quote, review_id, qf

    async def test_review_back_in_queue(self, session, pending_review, make_staff, make_file, file_store):
        quote, review_id, qf = await self._await_rescan(session, pending_review, make_staff, make_file)

        result = await replace_file(session, quote.id, qf.id, b"\x89PNG sharp", "sharp.png", "image/png", store=file_store)

        assert result.quote_status == "processing"
        assert result.reopened_review_id == str(review_id)
        review = await session.get(HITLReview, review_id, populate_existing=True)
        assert review.status == "pending"
        assert review.resolution_notes == "Too blurry"

    async def test_reprocessing_reuses_the_reopened_review(
        self, session, pending_review, make_staff, make_file, file_store, vision_client, good_reply, set_thresholds, dispatcher,
    ):
        await set_thresholds(ocr_confidence_min="0.80")
        quote, review_id, qf = await self._await_rescan(session, pending_review, make_staff, make_file)
        await replace_file(session, quote.id, qf.id, b"\x89PNG sharp", "sharp.png", "image/png", store=file_store)

        outcome = await process_quote(
            session, quote.id, store=file_store,
            client=vision_client({**good_reply, "ocr_confidence": 0.5}), dispatcher=dispatcher,
        )

        assert outcome.hitl.review_id == str(review_id)
        count = (await session.execute(
            select(func.count(HITLReview.id)).where(HITLReview.quote_id == quote.id)
        )).scalar_one()
        assert count == 1
        statuses = (await session.execute(
            select(HITLReview.status).where(HITLReview.quote_id == quote.id)
        )).scalars().all()
        assert "awaiting_customer" not in statuses


class TestRejectReview:

    async def test_rejection_leaves_quote_status(self, session, pending_review, make_staff, dispatcher, sent_emails):
        quote, review_id = await pending_review()
        reviewer = await make_staff()

        result = await reject_review(session, review_id, reviewer.id, "Forged document", dispatcher=dispatcher)

        assert result.review_status == "rejected"
        assert result.quote_status == "hitl_pending"
        assert await _quote_status(session, quote.id) == "hitl_pending"
        assert await is_permanently_rejected(session, quote.id)
        assert sent_emails[0]["tags"] == ["quote_rejected"]

    async def test_no_email_when_disabled(self, session, pending_review, make_staff, dispatcher, sent_emails):
        _, review_id = await pending_review()
        reviewer = await make_staff()
        result = await reject_review(session, review_id, reviewer.id, "Duplicate", send_email=False, dispatcher=dispatcher)
        assert not result.email_sent
        assert sent_emails == []

    async def test_cannot_reject_twice(self, session, pending_review, make_staff):
        _, review_id = await pending_review()
        reviewer = await make_staff()
        await reject_review(session, review_id, reviewer.id, "Forged document")
        with pytest.raises(InvalidStateError):
            await reject_review(session, review_id, reviewer.id, "Again")


class TestQueueListing:

    async def test_ordered_by_priority(self, session, pending_review):
        await pending_review(priority=5)
        _, urgent = await pending_review(priority=2)

        reviews = await get_pending_reviews(session)
        assert reviews[0].id == urgent
        stats = await get_review_queue_stats(session)
        assert stats["pending"] == 2
        assert stats["total"] == 2
