"""
/api/v1/hitl endpoints.
Threshold gate and the staff review queue.
"""

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from quotedesk.dependencies import get_db, get_dispatcher, verify_api_key
from quotedesk.models.enums import QuoteStatus
from quotedesk.notifications.dispatcher import NotificationDispatcher
from quotedesk.review.gate import check_thresholds
from quotedesk.review.queue import (
    approve_review,
    claim_review,
    get_pending_reviews,
    get_review_queue_stats,
    reject_review,
    request_better_scan,
)
from quotedesk.schemas.hitl import (
    ApproveReviewRequest,
    BetterScanRequest,
    CheckThresholdsRequest,
    CheckThresholdsResponse,
    ClaimReviewRequest,
    ClaimReviewResponse,
    RejectReviewRequest,
    ReviewActionResponse,
    ReviewListResponse,
    ReviewOut,
    ReviewQueueStats,
)

router = APIRouter(prefix="/api/v1/hitl", tags=["hitl"], dependencies=[Depends(verify_api_key)])


@router.post("/check-thresholds", response_model=CheckThresholdsResponse)
async def check(
    body: CheckThresholdsRequest,
    session: AsyncSession = Depends(get_db),
):
    """Route the quote to human review when any aggregate metric misses its threshold."""
    outcome = await check_thresholds(session, body.quote_id)
    return CheckThresholdsResponse.model_validate(outcome.model_dump(exclude={"fail_open_reason"}))


@router.get("/reviews", response_model=ReviewListResponse)
async def list_reviews(
    status_filter: Optional[str] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    session: AsyncSession = Depends(get_db),
):
    """Open reviews by priority, or one status when filtered."""
    reviews = await get_pending_reviews(session, limit=limit, offset=offset, status=status_filter)
    stats = await get_review_queue_stats(session)
    return ReviewListResponse(
        reviews=[ReviewOut.model_validate(r) for r in reviews],
        stats=ReviewQueueStats(**stats),
        limit=limit,
        offset=offset,
    )


@router.post("/reviews/{review_id}/claim", response_model=ClaimReviewResponse)
async def claim(
    review_id: uuid.UUID,
    body: ClaimReviewRequest,
    session: AsyncSession = Depends(get_db),
):
    result = await claim_review(session, review_id, body.staff_id, is_override=body.is_override)
    return ClaimReviewResponse.model_validate(result.model_dump())


@router.post("/reviews/{review_id}/approve", response_model=ReviewActionResponse)
async def approve(
    review_id: uuid.UUID,
    body: ApproveReviewRequest,
    session: AsyncSession = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    result = await approve_review(
        session, review_id, body.staff_id,
        notes=body.notes,
        next_status=QuoteStatus(body.next_status),
        dispatcher=dispatcher,
    )
    return ReviewActionResponse.model_validate(result.model_dump())


@router.post("/reviews/{review_id}/reject", response_model=ReviewActionResponse)
async def reject(
    review_id: uuid.UUID,
    body: RejectReviewRequest,
    session: AsyncSession = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    result = await reject_review(
        session, review_id, body.staff_id, body.reason,
        send_email=body.send_email, dispatcher=dispatcher,
    )
    return ReviewActionResponse.model_validate(result.model_dump())


@router.post("/reviews/{review_id}/request-better-scan", response_model=ReviewActionResponse)
async def better_scan(
    review_id: uuid.UUID,
    body: BetterScanRequest,
    session: AsyncSession = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    result = await request_better_scan(
        session, review_id, body.staff_id, body.file_ids, body.reason,
        customer_message=body.customer_message, dispatcher=dispatcher,
    )
    return ReviewActionResponse.model_validate(result.model_dump())
