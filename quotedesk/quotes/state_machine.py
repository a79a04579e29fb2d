"""
Quote lifecycle: legal states, legal transitions, and the single
all-or-nothing way to apply one.

Every transition is a compare-and-swap on quotes.status plus an audit row in
quote_activity_log, committed together with whatever the caller has already
staged on the session (review rows, version snapshots, ...).
"""

import uuid
from typing import Any, Optional

import structlog
from pydantic import BaseModel
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from quotedesk.errors import InvalidStateError, NotFoundError
from quotedesk.models.enums import ProcessingStatus, QuoteStatus
from quotedesk.models.tables import Quote, QuoteActivityLog, utcnow
from quotedesk.observability.metrics import quote_transitions_rejected_total, quote_transitions_total

logger = structlog.get_logger(__name__)

S = QuoteStatus

TERMINAL_STATES = frozenset({S.CONVERTED, S.EXPIRED})

TRANSITIONS: dict[QuoteStatus, frozenset[QuoteStatus]] = {
    S.DRAFT: frozenset({S.DETAILS_PENDING, S.PROCESSING, S.EXPIRED}),
    S.DETAILS_PENDING: frozenset({S.PROCESSING, S.EXPIRED}),
    S.PROCESSING: frozenset({S.QUOTE_READY, S.REVIEW_REQUIRED, S.HITL_PENDING, S.EXPIRED}),
    S.REVIEW_REQUIRED: frozenset({
        S.PROCESSING, S.QUOTE_READY, S.HITL_PENDING, S.AWAITING_CUSTOMER, S.EXPIRED,
    }),
    S.QUOTE_READY: frozenset({
        S.HITL_PENDING, S.AWAITING_PAYMENT, S.REVISION_NEEDED, S.CONVERTED, S.EXPIRED,
    }),
    S.HITL_PENDING: frozenset({
        S.HITL_IN_REVIEW, S.QUOTE_READY, S.AWAITING_PAYMENT, S.AWAITING_CUSTOMER, S.EXPIRED,
    }),
    S.HITL_IN_REVIEW: frozenset({
        S.QUOTE_READY, S.AWAITING_PAYMENT, S.AWAITING_CUSTOMER, S.EXPIRED,
    }),
    S.AWAITING_CUSTOMER: frozenset({S.PROCESSING, S.EXPIRED}),
    S.CUSTOMER_ACTION_AWAITED: frozenset({S.PROCESSING, S.EXPIRED}),
    S.REVISION_NEEDED: frozenset({S.PROCESSING, S.QUOTE_READY, S.EXPIRED}),
    S.AWAITING_PAYMENT: frozenset({S.CONVERTED, S.REVISION_NEEDED, S.EXPIRED}),
    S.CONVERTED: frozenset(),
    S.EXPIRED: frozenset(),
}

# States a staff revision can be applied in
REVISABLE_STATES = frozenset({
    S.REVIEW_REQUIRED, S.QUOTE_READY, S.HITL_PENDING, S.HITL_IN_REVIEW,
    S.REVISION_NEEDED, S.AWAITING_PAYMENT,
})


def _coerce(status: "QuoteStatus | str") -> QuoteStatus:
    try:
        return QuoteStatus(status)
    except ValueError:
        raise InvalidStateError(f"Unknown quote status: {status}", error_code="ERR_UNKNOWN_STATUS")


def is_terminal(status: "QuoteStatus | str") -> bool:
    return _coerce(status) in TERMINAL_STATES


def can_transition(from_status: "QuoteStatus | str", to_status: "QuoteStatus | str") -> bool:
    return _coerce(to_status) in TRANSITIONS[_coerce(from_status)]


class TransitionResult(BaseModel):
    quote_id: str
    from_status: str
    to_status: str
    activity_id: str


async def get_quote(session: AsyncSession, quote_id: uuid.UUID) -> Quote:
    quote = await session.get(Quote, quote_id, populate_existing=True)
    if quote is None:
        raise NotFoundError(f"Quote not found: {quote_id}")
    return quote


async def apply_transition(
    session: AsyncSession,
    quote_id: uuid.UUID,
    from_status: "QuoteStatus | str",
    to_status: "QuoteStatus | str",
    metadata: Optional[dict[str, Any]] = None,
    *,
    staff_id: Optional[uuid.UUID] = None,
    values: Optional[dict[str, Any]] = None,
    action_type: str = "status_change",
) -> TransitionResult:
    """
    Move a quote from `from_status` to `to_status`, or change nothing.

    The status update only matches while the row is still in `from_status`.
    On success the audit row and everything already pending on the session
    are committed together. On an illegal or stale transition the session is
    rolled back and InvalidStateError is raised.
    """
    source = _coerce(from_status)
    target = _coerce(to_status)

    if target not in TRANSITIONS[source]:
        quote_transitions_rejected_total.labels(reason="illegal").inc()
        await session.rollback()
        raise InvalidStateError(
            f"Illegal quote transition {source.value} -> {target.value}",
            error_code="ERR_ILLEGAL_TRANSITION",
        )

    changes = dict(values or {})
    changes["status"] = target.value
    changes["updated_at"] = utcnow()

    result = await session.execute(
        update(Quote)
        .where(Quote.id == quote_id, Quote.status == source.value)
        .values(**changes)
        .execution_options(synchronize_session=False)
    )

    if result.rowcount != 1:
        current = (
            await session.execute(select(Quote.status).where(Quote.id == quote_id))
        ).scalar_one_or_none()
        await session.rollback()
        if current is None:
            raise NotFoundError(f"Quote not found: {quote_id}")
        quote_transitions_rejected_total.labels(reason="stale").inc()
        logger.info(
            "quote_transition_stale",
            quote_id=str(quote_id),
            expected=source.value,
            actual=current,
            target=target.value,
        )
        raise InvalidStateError(
            f"Quote {quote_id} is {current}, expected {source.value}",
            error_code="ERR_STALE_TRANSITION",
        )

    activity = QuoteActivityLog(
        quote_id=quote_id,
        staff_id=staff_id,
        action_type=action_type,
        from_status=source.value,
        to_status=target.value,
        details=metadata or {},
    )
    session.add(activity)
    await session.commit()

    quote_transitions_total.labels(from_status=source.value, to_status=target.value).inc()
    logger.info(
        "quote_transition_applied",
        quote_id=str(quote_id),
        from_status=source.value,
        to_status=target.value,
        action_type=action_type,
    )

    return TransitionResult(
        quote_id=str(quote_id),
        from_status=source.value,
        to_status=target.value,
        activity_id=str(activity.id),
    )


# ── Client timeout fallback ──────────────────────────────────

class TimeoutOutcome(BaseModel):
    applied: bool
    status: str
    processing_status: Optional[str] = None


async def apply_processing_timeout(session: AsyncSession, quote_id: uuid.UUID) -> TimeoutOutcome:
    """
    Flip processing -> review_required, but only if the quote is still processing.
    A server that finished first wins and is left untouched.
    """
    try:
        await apply_transition(
            session,
            quote_id,
            S.PROCESSING,
            S.REVIEW_REQUIRED,
            {"reason": "client_processing_timeout"},
            values={"processing_status": ProcessingStatus.REVIEW_REQUIRED.value},
            action_type="processing_timeout",
        )
        applied = True
    except InvalidStateError:
        applied = False

    quote = await get_quote(session, quote_id)
    logger.info(
        "processing_timeout_handled",
        quote_id=str(quote_id),
        applied=applied,
        status=quote.status,
    )
    return TimeoutOutcome(applied=applied, status=quote.status, processing_status=quote.processing_status)
