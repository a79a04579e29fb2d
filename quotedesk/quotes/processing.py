"""
Quote document processing.

draft/details_pending -> processing -> analyse every uploaded file ->
price -> quote_ready | review_required -> HITL gate -> notify.

Files are analysed concurrently, at most ANALYSIS_CONCURRENCY at a time; the
vision calls are I/O bound. Only the analysis I/O runs concurrently, all
database writes happen afterwards on the one session. A failing file never
aborts the quote; it is recorded and the quote goes to review instead.
"""

import asyncio
import time
import uuid
from datetime import timedelta
from decimal import Decimal
from typing import Optional

import structlog
from pydantic import BaseModel
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from quotedesk.analysis.adapter import AnalysisResult, DocumentImage, analyze, is_pdf, low_confidence_result
from quotedesk.analysis.pdf_text import extract_pdf_text
from quotedesk.analysis.vision_client import VisionClient
from quotedesk.config import settings
from quotedesk.errors import InvalidStateError, QuoteDeskError
from quotedesk.models.database import dialect_insert
from quotedesk.models.enums import Complexity, FileProcessingStatus, ProcessingStatus, QuoteStatus
from quotedesk.models.tables import AIAnalysisResult, Quote, QuoteFile, utcnow
from quotedesk.notifications.contexts import quote_context, quote_recipient
from quotedesk.notifications.dispatcher import NotificationDispatcher, NotificationEvent
from quotedesk.observability.cost_tracker import CostTracker
from quotedesk.observability.metrics import (
    files_analyzed_total,
    quote_processing_duration_seconds,
    quotes_processed_total,
)
from quotedesk.pricing.calculator import billable_pages, complexity_multiplier, round_cents
from quotedesk.quotes.state_machine import TRANSITIONS, apply_transition, get_quote
from quotedesk.quotes.totals import recalculate_quote_totals
from quotedesk.review.gate import check_thresholds
from quotedesk.storage.file_store import FileStore

logger = structlog.get_logger(__name__)


class ProcessingFailed(QuoteDeskError):
    status_code = 500
    default_code = "ERR_PROCESSING"


class ProcessingTotals(BaseModel):
    translation_cost: Decimal
    document_count: int
    total_pages: Decimal
    total_words: int


class HitlSummary(BaseModel):
    required: bool
    reasons: list[str] = []
    review_id: Optional[str] = None


class ProcessingOutcome(BaseModel):
    success: bool = True
    quote_id: str
    documents_processed: int
    totals: ProcessingTotals
    hitl: HitlSummary
    quote_status: str
    processing_status: Optional[str] = None


class FileAnalysis(BaseModel):
    file_id: uuid.UUID
    file_name: str
    result: AnalysisResult
    elapsed_ms: int = 0


# ── Per-file analysis (no database access) ───────────────────

async def _analyse_file(
    qf: QuoteFile,
    store: FileStore,
    client: VisionClient,
    semaphore: asyncio.Semaphore,
) -> FileAnalysis:
    async with semaphore:
        started = time.monotonic()
        try:
            data = await asyncio.to_thread(store.load_bytes, qf.storage_path)
        except OSError as e:
            logger.warning("file_download_failed", file_id=str(qf.id), error=str(e))
            result = low_confidence_result(f"File could not be read: {e}")
        else:
            try:
                result = await _analyse_bytes(qf, data, client)
            except Exception as e:
                # failures stay with this file
                logger.error("file_analysis_failed", file_id=str(qf.id), error=str(e))
                result = low_confidence_result(f"Analysis failed: {e}")
        elapsed_ms = int((time.monotonic() - started) * 1000)

    files_analyzed_total.labels(ai_processing_status=result.status).inc()
    return FileAnalysis(file_id=qf.id, file_name=qf.original_filename, result=result, elapsed_ms=elapsed_ms)


async def _analyse_bytes(qf: QuoteFile, data: bytes, client: VisionClient) -> AnalysisResult:
    if is_pdf(qf.mime_type, qf.original_filename):
        pdf = await asyncio.to_thread(extract_pdf_text, data)
        return await analyze(
            [],
            file_name=qf.original_filename,
            mime_type=qf.mime_type,
            ocr_text=pdf.text,
            page_count=pdf.page_count or 1,
            client=client,
        )
    return await analyze(
        [DocumentImage(media_type=qf.mime_type, data=data)],
        file_name=qf.original_filename,
        mime_type=qf.mime_type,
        client=client,
    )


def review_reasons(analysis: FileAnalysis) -> list[str]:
    """Staff-facing reasons a single file needs a human."""
    result = analysis.result
    reasons = []
    if result.degraded:
        reasons.append(f"{analysis.file_name}: {result.notes}")
    if result.complexity == Complexity.HARD.value:
        reasons.append(f"High complexity document: {analysis.file_name}")
    return reasons


# ── Persistence ──────────────────────────────────────────────

async def _store_analysis(session: AsyncSession, quote_id: uuid.UUID, fa: FileAnalysis) -> None:
    """Insert or refresh the analysis row for a file; staff pricing overrides survive."""
    existing = (await session.execute(
        select(AIAnalysisResult.base_rate, AIAnalysisResult.certification_type_id, AIAnalysisResult.certification_price)
        .where(AIAnalysisResult.quote_file_id == fa.file_id)
    )).first()
    base_rate = existing.base_rate if existing else settings.DEFAULT_BASE_RATE

    r = fa.result
    multiplier = complexity_multiplier(r.complexity)
    pages = billable_pages(r.word_count, multiplier)
    now = utcnow()

    values = {
        "detected_language": r.detected_language,
        "language_confidence": r.language_confidence,
        "detected_document_type": r.document_type,
        "document_type_confidence": r.document_type_confidence,
        "assessed_complexity": r.complexity,
        "complexity_multiplier": multiplier,
        "complexity_confidence": r.complexity_confidence,
        "ocr_confidence": r.ocr_confidence,
        "word_count": r.word_count,
        "page_count": r.page_count,
        "billable_pages": pages,
        "line_total": round_cents(pages * base_rate),
        "llm_model": r.llm_model,
        "processing_status": r.status,
        "processing_time_ms": fa.elapsed_ms,
        "notes": r.notes,
        "updated_at": now,
    }
    insert = dialect_insert(session)
    stmt = insert(AIAnalysisResult).values(
        id=uuid.uuid4(),
        quote_id=quote_id,
        quote_file_id=fa.file_id,
        base_rate=base_rate,
        created_at=now,
        **values,
    )
    await session.execute(stmt.on_conflict_do_update(index_elements=[AIAnalysisResult.quote_file_id], set_=values))

    await session.execute(
        update(QuoteFile)
        .where(QuoteFile.id == fa.file_id)
        .values(ai_processing_status=r.status)
        .execution_options(synchronize_session=False)
    )


def _processable_from(status: str) -> bool:
    return status == QuoteStatus.PROCESSING.value or QuoteStatus.PROCESSING in TRANSITIONS[QuoteStatus(status)]


# ── Orchestrator ─────────────────────────────────────────────

async def process_quote(
    session: AsyncSession,
    quote_id: uuid.UUID,
    file_id: Optional[uuid.UUID] = None,
    *,
    store: Optional[FileStore] = None,
    client: Optional[VisionClient] = None,
    dispatcher: Optional[NotificationDispatcher] = None,
) -> ProcessingOutcome:
    """
    Analyse a quote's uploaded files and price it.
    Unexpected failures push the quote to review_required and raise ProcessingFailed.
    """
    started = time.monotonic()
    quote = await get_quote(session, quote_id)

    if not _processable_from(quote.status):
        raise InvalidStateError(f"Quote {quote.quote_number} is {quote.status} and cannot be processed")

    if quote.status != QuoteStatus.PROCESSING.value:
        await apply_transition(
            session, quote_id, quote.status, QuoteStatus.PROCESSING,
            {"file_id": str(file_id) if file_id else None},
            values={"processing_status": ProcessingStatus.PROCESSING.value},
            action_type="processing_started",
        )
    elif quote.processing_status != ProcessingStatus.PROCESSING.value:
        quote.processing_status = ProcessingStatus.PROCESSING.value
        await session.commit()

    logger.info("quote_processing_started", quote_id=str(quote_id), file_id=str(file_id) if file_id else None)

    try:
        return await _run(session, quote_id, file_id, store, client, dispatcher, started)
    except QuoteDeskError:
        raise
    except Exception as e:
        logger.error("quote_processing_failed", quote_id=str(quote_id), error=str(e))
        await session.rollback()
        await _fall_back_to_review(session, quote_id, str(e))
        quotes_processed_total.labels(processing_status="error").inc()
        raise ProcessingFailed(f"Processing failed: {e}") from e


async def _fall_back_to_review(session: AsyncSession, quote_id: uuid.UUID, error: str) -> None:
    try:
        await apply_transition(
            session, quote_id, QuoteStatus.PROCESSING, QuoteStatus.REVIEW_REQUIRED,
            {"error": error[:500]},
            values={"processing_status": ProcessingStatus.REVIEW_REQUIRED.value},
            action_type="processing_failed",
        )
    except InvalidStateError:
        logger.info("processing_fallback_skipped", quote_id=str(quote_id))


async def _run(
    session: AsyncSession,
    quote_id: uuid.UUID,
    file_id: Optional[uuid.UUID],
    store: Optional[FileStore],
    client: Optional[VisionClient],
    dispatcher: Optional[NotificationDispatcher],
    started: float,
) -> ProcessingOutcome:
    store = store or FileStore()
    client = client or VisionClient()

    query = select(QuoteFile).where(
        QuoteFile.quote_id == quote_id,
        QuoteFile.upload_status == "uploaded",
        QuoteFile.is_reference.is_(False),
    )
    if file_id is not None:
        query = query.where(QuoteFile.id == file_id)
    files = list((await session.execute(query.order_by(QuoteFile.created_at))).scalars().all())

    for qf in files:
        qf.ai_processing_status = FileProcessingStatus.PROCESSING.value
    await session.commit()

    semaphore = asyncio.Semaphore(max(1, settings.ANALYSIS_CONCURRENCY))
    analyses = await asyncio.gather(*(_analyse_file(qf, store, client, semaphore) for qf in files))

    costs = CostTracker(session, quote_id)
    reasons: list[str] = []
    for fa in analyses:
        await _store_analysis(session, quote_id, fa)
        reasons.extend(review_reasons(fa))
        if fa.result.input_tokens or fa.result.output_tokens:
            costs.record(
                VisionClient.engine_name, "analyze_document",
                input_tokens=fa.result.input_tokens,
                output_tokens=fa.result.output_tokens,
                latency_ms=fa.result.latency_ms,
                quote_file_id=fa.file_id,
            )
    if not files:
        reasons.append("No uploaded files to analyse")

    quote = await get_quote(session, quote_id)
    totals = await recalculate_quote_totals(session, quote)
    needs_review = bool(reasons)
    target = QuoteStatus.REVIEW_REQUIRED if needs_review else QuoteStatus.QUOTE_READY
    values = {
        "processing_status": (ProcessingStatus.REVIEW_REQUIRED if needs_review else ProcessingStatus.QUOTE_READY).value,
        "subtotal": quote.subtotal,
        "certification_total": quote.certification_total,
        "tax_amount": quote.tax_amount,
        "total": quote.total,
        "calculated_totals": quote.calculated_totals,
    }
    if not needs_review:
        values["expires_at"] = utcnow() + timedelta(days=settings.QUOTE_VALIDITY_DAYS)

    try:
        await apply_transition(
            session, quote_id, QuoteStatus.PROCESSING, target,
            {"documents_processed": len(analyses), "reasons": reasons},
            values=values,
            action_type="processing_completed",
        )
    except InvalidStateError:
        # The client timeout (or staff) moved the quote first. Keep the
        # analysis and totals, leave the status alone.
        logger.info("processing_completed_after_status_change", quote_id=str(quote_id))
        for fa in analyses:
            await _store_analysis(session, quote_id, fa)
        quote = await get_quote(session, quote_id)
        await recalculate_quote_totals(session, quote)
        await session.commit()

    gate = await check_thresholds(session, quote_id)
    hitl_required = needs_review or not gate.passed
    hitl_reasons = reasons + gate.trigger_reasons

    quote = await get_quote(session, quote_id)
    await _notify(session, quote, dispatcher, hitl_required, hitl_reasons, gate.review_id, gate.priority)

    quotes_processed_total.labels(processing_status=quote.processing_status or "unknown").inc()
    quote_processing_duration_seconds.observe(time.monotonic() - started)
    logger.info(
        "quote_processing_completed",
        quote_id=str(quote_id),
        documents_processed=len(analyses),
        status=quote.status,
        processing_status=quote.processing_status,
        hitl_required=hitl_required,
        **costs.summary(),
    )

    return ProcessingOutcome(
        quote_id=str(quote_id),
        documents_processed=len(analyses),
        totals=ProcessingTotals(
            translation_cost=totals.translation_total,
            document_count=totals.document_count,
            total_pages=totals.billable_pages,
            total_words=sum(fa.result.word_count for fa in analyses),
        ),
        hitl=HitlSummary(required=hitl_required, reasons=hitl_reasons, review_id=gate.review_id),
        quote_status=quote.status,
        processing_status=quote.processing_status,
    )


async def _notify(
    session: AsyncSession,
    quote: Quote,
    dispatcher: Optional[NotificationDispatcher],
    hitl_required: bool,
    reasons: list[str],
    review_id: Optional[str],
    priority: Optional[int],
) -> None:
    if dispatcher is None:
        return
    if hitl_required:
        await dispatcher.send(
            NotificationEvent.REVIEW_REQUIRED,
            settings.STAFF_NOTIFICATION_EMAIL,
            quote_context(quote, reasons=reasons, review_id=review_id, priority=priority),
            "Quotes team",
        )
    elif quote.status == QuoteStatus.QUOTE_READY.value:
        recipient = await quote_recipient(session, quote)
        await dispatcher.send(
            NotificationEvent.QUOTE_READY, recipient.email, quote_context(quote, recipient), recipient.name,
        )
