"""
HITL review queue: opening reviews and the staff review lifecycle.

One open review per quote is guaranteed by the partial unique index
uq_hitl_reviews_open_quote; open_review is an insert-or-nothing against it.
"""

import uuid
from datetime import timedelta
from typing import Optional

import structlog
from pydantic import BaseModel
from sqlalchemy import func, select, text, update
from sqlalchemy.ext.asyncio import AsyncSession

from quotedesk.config import settings
from quotedesk.errors import InvalidStateError, NotFoundError, PermissionDenied
from quotedesk.models.activity import log_quote_activity, log_staff_activity
from quotedesk.models.database import dialect_insert
from quotedesk.models.enums import OPEN_REVIEW_STATUSES, QuoteStatus, ReviewStatus, StaffRole
from quotedesk.models.tables import (
    OPEN_REVIEW_PREDICATE,
    HITLReview,
    QuoteFile,
    StaffUser,
    utcnow,
)
from quotedesk.notifications.contexts import quote_context, quote_recipient
from quotedesk.notifications.dispatcher import NotificationDispatcher, NotificationEvent
from quotedesk.observability.metrics import hitl_queue_depth, hitl_reviews_opened_total
from quotedesk.quotes.state_machine import apply_transition, get_quote

logger = structlog.get_logger(__name__)

ROLE_LEVELS = {
    StaffRole.REVIEWER.value: 1,
    StaffRole.SENIOR_REVIEWER.value: 2,
    StaffRole.ADMIN.value: 3,
    StaffRole.SUPER_ADMIN.value: 4,
}


class OpenedReview(BaseModel):
    review_id: str
    created: bool


class ClaimResult(BaseModel):
    review_id: str
    assigned_to: str
    message: str
    is_override: bool = False
    previous_assigned_to: Optional[str] = None


class ReviewActionResult(BaseModel):
    review_id: str
    review_status: str
    quote_id: str
    quote_status: str
    email_sent: bool = False
    email_error: Optional[str] = None


def role_level(role: Optional[str]) -> int:
    return ROLE_LEVELS.get(role or "", 0)


# ── Opening ──────────────────────────────────────────────────

async def open_review(
    session: AsyncSession,
    quote_id: uuid.UUID,
    trigger_reasons: list[str],
    priority: int,
) -> OpenedReview:
    """
    Insert a pending review unless the quote already has an open one.
    Staged on the session; the caller commits.
    """
    insert = dialect_insert(session)
    now = utcnow()
    new_id = uuid.uuid4()
    stmt = (
        insert(HITLReview)
        .values(
            id=new_id,
            quote_id=quote_id,
            status=ReviewStatus.PENDING.value,
            priority=priority,
            trigger_reasons=list(trigger_reasons),
            sla_deadline=now + timedelta(hours=settings.HITL_SLA_HOURS),
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing(
            index_elements=[HITLReview.quote_id],
            index_where=text(OPEN_REVIEW_PREDICATE),
        )
    )
    await session.execute(stmt)

    review_id = (
        await session.execute(
            select(HITLReview.id).where(
                HITLReview.quote_id == quote_id,
                HITLReview.status.in_(OPEN_REVIEW_STATUSES),
            )
        )
    ).scalar_one()
    created = review_id == new_id

    if created:
        for reason in trigger_reasons:
            hitl_reviews_opened_total.labels(trigger_reason=reason).inc()
    logger.info(
        "hitl_review_opened" if created else "hitl_review_reused",
        quote_id=str(quote_id),
        review_id=str(review_id),
        trigger_reasons=trigger_reasons,
        priority=priority,
    )
    return OpenedReview(review_id=str(review_id), created=created)


async def reopen_after_replacement(session: AsyncSession, quote_id: uuid.UUID) -> Optional[uuid.UUID]:
    """
    The customer re-uploaded everything staff asked for: put the review that
    was waiting on them back in the queue with a fresh SLA. Staged on the
    session; the caller commits.
    """
    waiting = (await session.execute(
        select(HITLReview)
        .where(HITLReview.quote_id == quote_id, HITLReview.status == ReviewStatus.AWAITING_CUSTOMER.value)
        .order_by(HITLReview.created_at.desc())
    )).scalars().first()
    if waiting is None:
        return None

    already_open = (await session.execute(
        select(HITLReview.id).where(HITLReview.quote_id == quote_id, HITLReview.status.in_(OPEN_REVIEW_STATUSES))
    )).scalar()
    if already_open is not None:
        logger.info("hitl_review_reopen_skipped", quote_id=str(quote_id), review_id=str(waiting.id), open_review_id=str(already_open))
        return None

    now = utcnow()
    waiting.status = ReviewStatus.PENDING.value
    waiting.sla_deadline = now + timedelta(hours=settings.HITL_SLA_HOURS)
    waiting.updated_at = now
    logger.info("hitl_review_reopened", quote_id=str(quote_id), review_id=str(waiting.id))
    return waiting.id


# ── Lookups ──────────────────────────────────────────────────

async def _get_review(session: AsyncSession, review_id: uuid.UUID) -> HITLReview:
    review = await session.get(HITLReview, review_id, populate_existing=True)
    if review is None:
        raise NotFoundError(f"Review not found: {review_id}")
    return review


async def _get_staff(session: AsyncSession, staff_id: uuid.UUID) -> StaffUser:
    staff = await session.get(StaffUser, staff_id)
    if staff is None:
        raise NotFoundError(f"Staff member not found: {staff_id}")
    if not staff.is_active:
        raise PermissionDenied("Staff account is inactive")
    return staff


async def get_pending_reviews(
    session: AsyncSession,
    limit: int = 50,
    offset: int = 0,
    status: Optional[str] = None,
) -> list[HITLReview]:
    """Open reviews (or one status), most urgent first, oldest first within a priority."""
    query = select(HITLReview)
    if status:
        query = query.where(HITLReview.status == status)
    else:
        query = query.where(HITLReview.status.in_(OPEN_REVIEW_STATUSES))
    result = await session.execute(
        query.order_by(HITLReview.priority, HITLReview.created_at).offset(offset).limit(limit)
    )
    return list(result.scalars().all())


async def get_review_queue_stats(session: AsyncSession) -> dict:
    result = await session.execute(
        select(HITLReview.status, func.count(HITLReview.id)).group_by(HITLReview.status)
    )
    stats = {row[0]: row[1] for row in result.all()}
    for status in ReviewStatus:
        hitl_queue_depth.labels(status=status.value).set(stats.get(status.value, 0))
    return {
        "pending": stats.get(ReviewStatus.PENDING.value, 0),
        "in_progress": stats.get(ReviewStatus.IN_PROGRESS.value, 0),
        "awaiting_customer": stats.get(ReviewStatus.AWAITING_CUSTOMER.value, 0),
        "approved": stats.get(ReviewStatus.APPROVED.value, 0),
        "rejected": stats.get(ReviewStatus.REJECTED.value, 0),
        "total": sum(stats.values()),
    }


# ── Claim ────────────────────────────────────────────────────

async def claim_review(
    session: AsyncSession,
    review_id: uuid.UUID,
    staff_id: uuid.UUID,
    is_override: bool = False,
) -> ClaimResult:
    """
    Assign a review to a staff member.
    Taking over someone else's claim needs is_override and a strictly higher role.
    """
    review = await _get_review(session, review_id)
    staff = await _get_staff(session, staff_id)

    if review.status not in OPEN_REVIEW_STATUSES:
        raise InvalidStateError(f"Review is {review.status} and cannot be claimed", status_code=400)

    if review.assigned_to == staff_id:
        return ClaimResult(
            review_id=str(review.id),
            assigned_to=str(staff_id),
            message="Already claimed by you",
        )

    previous = review.assigned_to
    override = previous is not None
    if override:
        if not is_override:
            raise InvalidStateError(
                "Review is already claimed by another reviewer",
                error_code="ERR_ALREADY_CLAIMED",
                status_code=400,
            )
        holder = await session.get(StaffUser, previous)
        if role_level(staff.role) <= role_level(holder.role if holder else None):
            raise PermissionDenied(
                "Only a higher role can take over a claimed review",
                error_code="ERR_OVERRIDE_NOT_ALLOWED",
            )

    now = utcnow()
    changes = {
        "assigned_to": staff_id,
        "status": ReviewStatus.IN_PROGRESS.value,
        "updated_at": now,
    }
    if override:
        changes.update(previous_assigned_to=previous, claim_override_at=now, claim_override_by=staff_id)

    assignee_matches = (
        HITLReview.assigned_to.is_(None) if previous is None else HITLReview.assigned_to == previous
    )
    result = await session.execute(
        update(HITLReview)
        .where(HITLReview.id == review_id, assignee_matches, HITLReview.status.in_(OPEN_REVIEW_STATUSES))
        .values(**changes)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await session.rollback()
        raise InvalidStateError("Review was claimed concurrently, reload and retry", error_code="ERR_CLAIM_RACE")

    log_staff_activity(
        session, staff_id,
        "hitl_review_claim_override" if override else "hitl_review_claimed",
        "hitl_review", review.id,
        {"quote_id": str(review.quote_id), "previous_assigned_to": str(previous) if previous else None},
    )

    quote = await get_quote(session, review.quote_id)
    if quote.status == QuoteStatus.HITL_PENDING.value:
        await apply_transition(
            session, quote.id, QuoteStatus.HITL_PENDING, QuoteStatus.HITL_IN_REVIEW,
            {"review_id": str(review.id)},
            staff_id=staff_id, action_type="hitl_claimed",
        )
    else:
        await session.commit()

    logger.info(
        "hitl_review_claimed",
        review_id=str(review.id),
        staff_id=str(staff_id),
        is_override=override,
    )
    return ClaimResult(
        review_id=str(review.id),
        assigned_to=str(staff_id),
        message="Review claimed" if not override else "Review claim overridden",
        is_override=override,
        previous_assigned_to=str(previous) if previous else None,
    )


# ── Resolution ───────────────────────────────────────────────

async def approve_review(
    session: AsyncSession,
    review_id: uuid.UUID,
    staff_id: uuid.UUID,
    notes: Optional[str] = None,
    next_status: QuoteStatus = QuoteStatus.AWAITING_PAYMENT,
    dispatcher: Optional[NotificationDispatcher] = None,
) -> ReviewActionResult:
    """Close the review as approved and release the quote to the customer."""
    if next_status not in (QuoteStatus.AWAITING_PAYMENT, QuoteStatus.QUOTE_READY):
        raise InvalidStateError(f"Approval cannot move a quote to {next_status.value}", status_code=400)

    review = await _get_review(session, review_id)
    await _get_staff(session, staff_id)
    if review.status not in OPEN_REVIEW_STATUSES:
        raise InvalidStateError(f"Review is {review.status} and cannot be approved")

    quote = await get_quote(session, review.quote_id)
    now = utcnow()

    review.status = ReviewStatus.APPROVED.value
    review.completed_at = now
    review.completed_by = staff_id
    review.resolution_notes = notes
    log_staff_activity(session, staff_id, "hitl_review_approved", "hitl_review", review.id,
                       {"quote_id": str(quote.id), "next_status": next_status.value})

    await apply_transition(
        session, quote.id, quote.status, next_status,
        {"review_id": str(review.id), "notes": notes},
        staff_id=staff_id,
        values={
            "hitl_required": False,
            "expires_at": now + timedelta(days=settings.QUOTE_VALIDITY_DAYS),
        },
        action_type="hitl_approved",
    )

    quote = await get_quote(session, quote.id)
    result = ReviewActionResult(
        review_id=str(review.id),
        review_status=ReviewStatus.APPROVED.value,
        quote_id=str(quote.id),
        quote_status=quote.status,
    )
    if dispatcher is not None:
        recipient = await quote_recipient(session, quote)
        event = (
            NotificationEvent.PAYMENT_REQUESTED
            if next_status == QuoteStatus.AWAITING_PAYMENT
            else NotificationEvent.QUOTE_READY
        )
        delivery = await dispatcher.send(event, recipient.email, quote_context(quote, recipient), recipient.name)
        result.email_sent, result.email_error = delivery.sent, delivery.error
    return result


async def request_better_scan(
    session: AsyncSession,
    review_id: uuid.UUID,
    staff_id: uuid.UUID,
    file_ids: list[uuid.UUID],
    reason: str,
    customer_message: Optional[str] = None,
    dispatcher: Optional[NotificationDispatcher] = None,
) -> ReviewActionResult:
    """Ask the customer to re-upload named files; the quote waits on them."""
    review = await _get_review(session, review_id)
    await _get_staff(session, staff_id)
    if review.status not in OPEN_REVIEW_STATUSES:
        raise InvalidStateError(f"Review is {review.status}; better scan cannot be requested")
    if not file_ids:
        raise InvalidStateError("At least one file must be named", status_code=400)

    quote = await get_quote(session, review.quote_id)
    files = list((await session.execute(
        select(QuoteFile).where(QuoteFile.quote_id == quote.id, QuoteFile.id.in_(file_ids))
    )).scalars().all())
    if len(files) != len(set(file_ids)):
        raise NotFoundError("One or more files do not belong to this quote")

    for f in files:
        f.needs_replacement = True
    review.status = ReviewStatus.AWAITING_CUSTOMER.value
    review.resolution_notes = reason
    log_staff_activity(session, staff_id, "hitl_better_scan_requested", "hitl_review", review.id, {
        "quote_id": str(quote.id),
        "file_ids": [str(f.id) for f in files],
        "reason": reason,
    })

    await apply_transition(
        session, quote.id, quote.status, QuoteStatus.AWAITING_CUSTOMER,
        {"review_id": str(review.id), "reason": reason, "file_ids": [str(f.id) for f in files]},
        staff_id=staff_id, action_type="better_scan_requested",
    )

    quote = await get_quote(session, quote.id)
    result = ReviewActionResult(
        review_id=str(review.id),
        review_status=ReviewStatus.AWAITING_CUSTOMER.value,
        quote_id=str(quote.id),
        quote_status=quote.status,
    )
    if dispatcher is not None:
        recipient = await quote_recipient(session, quote)
        context = quote_context(
            quote, recipient,
            file_names=[f.original_filename for f in files],
            message=customer_message or reason,
        )
        delivery = await dispatcher.send(
            NotificationEvent.BETTER_SCAN_REQUESTED, recipient.email, context, recipient.name,
        )
        result.email_sent, result.email_error = delivery.sent, delivery.error
    return result


async def reject_review(
    session: AsyncSession,
    review_id: uuid.UUID,
    staff_id: uuid.UUID,
    reason: str,
    send_email: bool = True,
    dispatcher: Optional[NotificationDispatcher] = None,
) -> ReviewActionResult:
    """
    Permanently reject. The review carries the terminal state;
    quotes.status is left where it is.
    """
    review = await _get_review(session, review_id)
    await _get_staff(session, staff_id)
    if review.status in (ReviewStatus.APPROVED.value, ReviewStatus.REJECTED.value):
        raise InvalidStateError(f"Review is already {review.status}")

    quote = await get_quote(session, review.quote_id)
    review.status = ReviewStatus.REJECTED.value
    review.completed_at = utcnow()
    review.completed_by = staff_id
    review.resolution_notes = reason
    log_quote_activity(session, quote.id, "quote_rejected", staff_id, {"review_id": str(review.id), "reason": reason})
    log_staff_activity(session, staff_id, "hitl_review_rejected", "hitl_review", review.id,
                       {"quote_id": str(quote.id), "reason": reason})
    await session.commit()

    logger.info("hitl_review_rejected", review_id=str(review.id), quote_id=str(quote.id))

    result = ReviewActionResult(
        review_id=str(review.id),
        review_status=ReviewStatus.REJECTED.value,
        quote_id=str(quote.id),
        quote_status=quote.status,
    )
    if send_email and dispatcher is not None:
        recipient = await quote_recipient(session, quote)
        delivery = await dispatcher.send(
            NotificationEvent.QUOTE_REJECTED, recipient.email,
            quote_context(quote, recipient, reason=reason), recipient.name,
        )
        result.email_sent, result.email_error = delivery.sent, delivery.error
    return result


async def is_permanently_rejected(session: AsyncSession, quote_id: uuid.UUID) -> bool:
    """Rejection lives on hitl_reviews, not on quotes.status."""
    count = (await session.execute(
        select(func.count(HITLReview.id)).where(
            HITLReview.quote_id == quote_id,
            HITLReview.status == ReviewStatus.REJECTED.value,
        )
    )).scalar_one()
    return count > 0
