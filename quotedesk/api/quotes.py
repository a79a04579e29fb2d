"""
/api/v1/quotes endpoints.
Analysis trigger, processing-status polling and timeout fallback,
staff revisions, and replacement uploads.
"""

import uuid

import structlog
from fastapi import APIRouter, Depends, File, HTTPException, Query, UploadFile, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from quotedesk.analysis.vision_client import VisionClient
from quotedesk.config import settings
from quotedesk.dependencies import (
    get_db,
    get_dispatcher,
    get_file_store,
    get_vision_client,
    verify_api_key,
)
from quotedesk.notifications.dispatcher import NotificationDispatcher
from quotedesk.quotes.processing import ProcessingFailed, process_quote
from quotedesk.quotes.revisions import (
    DocumentOverride,
    QuoteRevision,
    recalculate,
    replace_file,
    revise_quote,
)
from quotedesk.quotes.state_machine import apply_processing_timeout, get_quote
from quotedesk.schemas.quotes import (
    ProcessingStatusResponse,
    ProcessingTimeoutResponse,
    ProcessQueuedResponse,
    ProcessQuoteRequest,
    ProcessQuoteResponse,
    QuoteTotalsOut,
    RecalculateResponse,
    ReplaceFileResponse,
    ReviseQuoteRequest,
    ReviseQuoteResponse,
)
from quotedesk.storage.file_store import FileStore

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1/quotes", tags=["quotes"], dependencies=[Depends(verify_api_key)])


@router.post("/process", response_model=ProcessQuoteResponse | ProcessQueuedResponse)
async def process(
    body: ProcessQuoteRequest,
    background: bool = Query(False),
    session: AsyncSession = Depends(get_db),
    store: FileStore = Depends(get_file_store),
    client: VisionClient = Depends(get_vision_client),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """
    Analyse and price a quote's files.
    With ?background=true the work is queued and a job id is returned.
    """
    if background:
        from quotedesk.worker.jobs import enqueue_processing

        await get_quote(session, body.quote_id)
        job_id = enqueue_processing(str(body.quote_id), str(body.file_id) if body.file_id else None)
        return JSONResponse(
            status_code=status.HTTP_202_ACCEPTED,
            content=ProcessQueuedResponse(quote_id=str(body.quote_id), job_id=job_id).model_dump(by_alias=True),
        )

    try:
        outcome = await process_quote(
            session, body.quote_id, body.file_id,
            store=store, client=client, dispatcher=dispatcher,
        )
    except ProcessingFailed as e:
        return JSONResponse(
            status_code=e.status_code,
            content={
                "success": False,
                "error": e.message,
                "code": e.error_code,
                "hitl": {"required": True, "reasons": ["processing_error"]},
            },
        )
    return ProcessQuoteResponse.model_validate(outcome.model_dump())


@router.get("/{quote_id}/processing-status", response_model=ProcessingStatusResponse)
async def processing_status(
    quote_id: uuid.UUID,
    session: AsyncSession = Depends(get_db),
):
    quote = await get_quote(session, quote_id)
    return ProcessingStatusResponse(
        quote_id=str(quote.id),
        quote_number=quote.quote_number,
        status=quote.status,
        processing_status=quote.processing_status,
        hitl_required=bool(quote.hitl_required),
    )


@router.post("/{quote_id}/processing-timeout", response_model=ProcessingTimeoutResponse)
async def processing_timeout(
    quote_id: uuid.UUID,
    session: AsyncSession = Depends(get_db),
):
    """Client gave up waiting: route to review unless processing already finished."""
    outcome = await apply_processing_timeout(session, quote_id)
    return ProcessingTimeoutResponse.model_validate(outcome.model_dump())


@router.post("/{quote_id}/revise", response_model=ReviseQuoteResponse)
async def revise(
    quote_id: uuid.UUID,
    body: ReviseQuoteRequest,
    session: AsyncSession = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    revision = QuoteRevision(
        reason=body.reason,
        is_rush=body.is_rush,
        rush_fee=body.rush_fee,
        delivery_fee=body.delivery_fee,
        tax_rate=body.tax_rate,
        tax_is_compound=body.tax_is_compound,
        documents=[DocumentOverride.model_validate(d.model_dump()) for d in body.documents],
    )
    result = await revise_quote(
        session, quote_id, body.staff_id, revision,
        send_email=body.send_email, dispatcher=dispatcher,
    )
    return ReviseQuoteResponse.model_validate(result.model_dump())


@router.post("/{quote_id}/recalculate", response_model=RecalculateResponse)
async def recalculate_totals(
    quote_id: uuid.UUID,
    session: AsyncSession = Depends(get_db),
):
    totals = await recalculate(session, quote_id)
    return RecalculateResponse(quote_id=str(quote_id), totals=QuoteTotalsOut.model_validate(totals.model_dump()))


@router.post("/{quote_id}/files/{file_id}/replace", response_model=ReplaceFileResponse)
async def replace(
    quote_id: uuid.UUID,
    file_id: uuid.UUID,
    file: UploadFile = File(...),
    session: AsyncSession = Depends(get_db),
    store: FileStore = Depends(get_file_store),
):
    """Customer re-upload for a file staff flagged as unreadable."""
    if file.content_type not in settings.ALLOWED_MIME_TYPES.split(","):
        raise HTTPException(
            status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
            detail=f"Unsupported file type: {file.content_type}. Allowed: {settings.ALLOWED_MIME_TYPES}",
        )

    file_bytes = await file.read()
    max_bytes = settings.MAX_UPLOAD_SIZE_MB * 1024 * 1024
    if len(file_bytes) > max_bytes:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File too large: {len(file_bytes)} bytes. Max: {max_bytes} bytes",
        )
    if not file_bytes:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Empty file uploaded")

    result = await replace_file(
        session, quote_id, file_id, file_bytes,
        file.filename or "document", file.content_type or "application/octet-stream",
        store=store,
    )

    if result.processing_started:
        try:
            from quotedesk.worker.jobs import enqueue_processing
            enqueue_processing(str(quote_id))
        except Exception as enqueue_err:
            # Redis unavailable: the quote stays in processing and the client poller times it out to review
            logger.warning("enqueue_failed", quote_id=str(quote_id), error=str(enqueue_err))

    return ReplaceFileResponse.model_validate(result.model_dump())
