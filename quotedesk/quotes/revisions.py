"""
Staff-side quote changes: revisions with version history, replacement
uploads after a better-scan request, and conversion to an order.
"""

import uuid
from datetime import timedelta
from decimal import Decimal
from typing import Optional

import structlog
from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from quotedesk.config import settings
from quotedesk.errors import InvalidStateError, NotFoundError, ValidationFailed
from quotedesk.models.activity import log_quote_activity, log_staff_activity
from quotedesk.models.enums import FileProcessingStatus, OrderStatus, PaymentStatus, ProcessingStatus, QuoteStatus
from quotedesk.models.tables import AIAnalysisResult, Order, Payment, QuoteFile, QuoteVersion, utcnow
from quotedesk.notifications.contexts import quote_context, quote_recipient
from quotedesk.notifications.dispatcher import NotificationDispatcher, NotificationEvent
from quotedesk.pricing.calculator import (
    QuoteTotals,
    billable_pages,
    complexity_multiplier,
    round_cents,
    to_decimal,
)
from quotedesk.quotes.state_machine import REVISABLE_STATES, apply_transition, get_quote
from quotedesk.quotes.totals import recalculate_quote_totals
from quotedesk.review.queue import is_permanently_rejected, reopen_after_replacement
from quotedesk.storage.file_store import FileStore
from quotedesk.storage.paths import quote_file_path

logger = structlog.get_logger(__name__)

REPLACEMENT_STATES = frozenset({
    QuoteStatus.AWAITING_CUSTOMER.value,
    QuoteStatus.REVISION_NEEDED.value,
    QuoteStatus.CUSTOMER_ACTION_AWAITED.value,
})

CONVERTIBLE_STATES = frozenset({
    QuoteStatus.QUOTE_READY.value,
    QuoteStatus.AWAITING_PAYMENT.value,
})


# ── Revision ─────────────────────────────────────────────────

class DocumentOverride(BaseModel):
    """Per-document staff override; unset fields keep their current value."""
    file_id: uuid.UUID
    word_count: Optional[int] = None
    complexity: Optional[str] = None
    billable_pages: Optional[Decimal] = None
    base_rate: Optional[Decimal] = None
    certification_type_id: Optional[str] = None
    certification_price: Optional[Decimal] = None


class QuoteRevision(BaseModel):
    reason: str
    is_rush: Optional[bool] = None
    rush_fee: Optional[Decimal] = None
    delivery_fee: Optional[Decimal] = None
    tax_rate: Optional[Decimal] = None
    tax_is_compound: Optional[bool] = None
    documents: list[DocumentOverride] = []


class RevisionResult(BaseModel):
    quote_id: str
    old_version: int
    new_version: int
    previous_total: Decimal
    totals: QuoteTotals
    email_sent: bool = False
    email_error: Optional[str] = None


def _apply_document_override(row: AIAnalysisResult, override: DocumentOverride) -> None:
    if override.complexity is not None:
        row.assessed_complexity = override.complexity.strip().lower()
        row.complexity_multiplier = complexity_multiplier(row.assessed_complexity)
    if override.word_count is not None:
        if override.word_count < 0:
            raise ValidationFailed("word_count must be >= 0")
        row.word_count = override.word_count
    if override.billable_pages is not None:
        if override.billable_pages < 0:
            raise ValidationFailed("billable_pages must be >= 0")
        row.billable_pages = override.billable_pages
    elif override.word_count is not None or override.complexity is not None:
        row.billable_pages = billable_pages(row.word_count, to_decimal(row.complexity_multiplier))
    if override.base_rate is not None:
        row.base_rate = override.base_rate
    if override.certification_type_id is not None:
        row.certification_type_id = override.certification_type_id
    if override.certification_price is not None:
        row.certification_price = round_cents(override.certification_price)
    row.line_total = round_cents(to_decimal(row.billable_pages) * to_decimal(row.base_rate))


async def revise_quote(
    session: AsyncSession,
    quote_id: uuid.UUID,
    staff_id: uuid.UUID,
    revision: QuoteRevision,
    send_email: bool = False,
    dispatcher: Optional[NotificationDispatcher] = None,
) -> RevisionResult:
    """
    Snapshot the current totals into quote_versions, bump the version, apply
    the edits and recalculate. One commit.
    """
    quote = await get_quote(session, quote_id)
    if QuoteStatus(quote.status) not in REVISABLE_STATES:
        raise InvalidStateError(f"Quote is {quote.status} and cannot be revised")
    if not revision.reason.strip():
        raise ValidationFailed("A reason is required for quote revisions")

    old_version = quote.version or 1
    previous_total = quote.total

    snapshot = QuoteVersion(
        quote_id=quote.id,
        version=old_version,
        subtotal=quote.subtotal,
        certification_total=quote.certification_total,
        tax_amount=quote.tax_amount,
        total=quote.total,
        calculated_totals=quote.calculated_totals,
        is_rush=quote.is_rush,
        rush_fee=quote.rush_fee,
        delivery_fee=quote.delivery_fee,
        updated_by=staff_id,
        update_reason=revision.reason,
    )

    if revision.is_rush is not None:
        quote.is_rush = revision.is_rush
    if revision.rush_fee is not None:
        quote.rush_fee = round_cents(revision.rush_fee)
    if revision.delivery_fee is not None:
        quote.delivery_fee = round_cents(revision.delivery_fee)
    if revision.tax_rate is not None:
        quote.tax_rate = revision.tax_rate
    if revision.tax_is_compound is not None:
        quote.tax_is_compound = revision.tax_is_compound

    if revision.documents:
        rows = {
            row.quote_file_id: row
            for row in (await session.execute(
                select(AIAnalysisResult).where(AIAnalysisResult.quote_id == quote.id)
            )).scalars().all()
        }
        for override in revision.documents:
            row = rows.get(override.file_id)
            if row is None:
                raise NotFoundError(f"No analysis for file {override.file_id} on this quote")
            _apply_document_override(row, override)

    totals = await recalculate_quote_totals(session, quote)
    quote.version = old_version + 1
    quote.updated_by_staff_id = staff_id
    quote.update_reason = revision.reason
    quote.expires_at = utcnow() + timedelta(days=settings.QUOTE_VALIDITY_DAYS)

    details = {
        "reason": revision.reason,
        "old_version": old_version,
        "new_version": old_version + 1,
        "previous_total": str(previous_total),
        "new_total": str(totals.total),
    }
    session.add(snapshot)
    log_quote_activity(session, quote.id, "quote_revised", staff_id, details)
    log_staff_activity(session, staff_id, "update_quote", "quote", quote.id, details)

    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise InvalidStateError("Quote was revised concurrently, reload and retry", error_code="ERR_VERSION_CONFLICT")

    logger.info("quote_revised", quote_id=str(quote.id), old_version=old_version, new_version=old_version + 1)

    result = RevisionResult(
        quote_id=str(quote.id),
        old_version=old_version,
        new_version=old_version + 1,
        previous_total=previous_total,
        totals=totals,
    )
    if send_email and dispatcher is not None:
        recipient = await quote_recipient(session, quote)
        delivery = await dispatcher.send(
            NotificationEvent.QUOTE_UPDATED,
            recipient.email,
            quote_context(quote, recipient, previous_total=f"{previous_total:.2f}", reason=revision.reason),
            recipient.name,
        )
        result.email_sent, result.email_error = delivery.sent, delivery.error
    return result


async def recalculate(session: AsyncSession, quote_id: uuid.UUID) -> QuoteTotals:
    """Recompute and persist totals without creating a version."""
    quote = await get_quote(session, quote_id)
    totals = await recalculate_quote_totals(session, quote)
    await session.commit()
    return totals


# ── Replacement upload ───────────────────────────────────────

class ReplacementResult(BaseModel):
    quote_id: str
    file_id: str
    quote_status: str
    remaining_replacements: int
    processing_started: bool
    reopened_review_id: Optional[str] = None


async def replace_file(
    session: AsyncSession,
    quote_id: uuid.UUID,
    file_id: uuid.UUID,
    data: bytes,
    file_name: str,
    mime_type: str,
    store: Optional[FileStore] = None,
) -> ReplacementResult:
    """
    Swap in a customer's re-upload. Once no file still needs replacing the
    quote goes back to processing; the caller schedules the analysis.
    """
    quote = await get_quote(session, quote_id)
    if quote.status not in REPLACEMENT_STATES:
        raise InvalidStateError(f"Quote is {quote.status}; replacement uploads are not expected")

    qf = await session.get(QuoteFile, file_id)
    if qf is None or qf.quote_id != quote.id:
        raise NotFoundError(f"File not found on this quote: {file_id}")

    store = store or FileStore()
    path = store.save_bytes(quote_file_path(str(quote.id), str(uuid.uuid4()), file_name), data)

    qf.storage_path = path
    qf.original_filename = file_name
    qf.mime_type = mime_type
    qf.file_size = len(data)
    qf.needs_replacement = False
    qf.ai_processing_status = FileProcessingStatus.PENDING.value
    log_quote_activity(session, quote.id, "file_replaced", details={"file_id": str(file_id), "file_name": file_name})

    remaining = (await session.execute(
        select(func.count(QuoteFile.id)).where(
            QuoteFile.quote_id == quote.id,
            QuoteFile.needs_replacement.is_(True),
        )
    )).scalar_one()

    reopened = None
    if remaining == 0:
        reopened = await reopen_after_replacement(session, quote.id)
        await apply_transition(
            session, quote.id, quote.status, QuoteStatus.PROCESSING,
            {
                "file_id": str(file_id),
                "reason": "replacement_uploaded",
                "reopened_review_id": str(reopened) if reopened else None,
            },
            values={"processing_status": ProcessingStatus.PROCESSING.value},
            action_type="replacement_uploaded",
        )
    else:
        await session.commit()

    quote = await get_quote(session, quote.id)
    logger.info("quote_file_replaced", quote_id=str(quote.id), file_id=str(file_id), remaining=remaining)
    return ReplacementResult(
        quote_id=str(quote.id),
        file_id=str(file_id),
        quote_status=quote.status,
        remaining_replacements=remaining,
        processing_started=remaining == 0,
        reopened_review_id=str(reopened) if reopened else None,
    )


# ── Conversion ───────────────────────────────────────────────

async def convert_quote(
    session: AsyncSession,
    quote_id: uuid.UUID,
    amount_paid: Decimal,
    payment_method: str = "stripe",
    stripe_payment_intent_id: Optional[str] = None,
) -> Order:
    """Payment succeeded: create the order and its payment, mark the quote converted."""
    quote = await get_quote(session, quote_id)
    if quote.status not in CONVERTIBLE_STATES:
        raise InvalidStateError(f"Quote is {quote.status} and cannot be converted")
    if await is_permanently_rejected(session, quote.id):
        raise InvalidStateError("Quote was permanently rejected", error_code="ERR_QUOTE_REJECTED")
    if amount_paid <= 0:
        raise ValidationFailed("amount_paid must be positive")

    order = Order(
        order_number=f"ORD-{quote.quote_number}",
        quote_id=quote.id,
        customer_id=quote.customer_id,
        total_amount=quote.total,
        amount_paid=round_cents(amount_paid),
        status=OrderStatus.ACTIVE.value,
    )
    session.add(order)
    await session.flush()
    session.add(Payment(
        order_id=order.id,
        amount=round_cents(amount_paid),
        payment_method=payment_method,
        status=PaymentStatus.SUCCEEDED.value,
        stripe_payment_intent_id=stripe_payment_intent_id,
    ))

    await apply_transition(
        session, quote.id, quote.status, QuoteStatus.CONVERTED,
        {"order_id": str(order.id), "amount_paid": str(round_cents(amount_paid))},
        action_type="quote_converted",
    )
    logger.info("quote_converted", quote_id=str(quote.id), order_id=str(order.id))
    return order
