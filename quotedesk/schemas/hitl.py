"""
Schemas for the /api/v1/hitl endpoints.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional

from pydantic import Field

from quotedesk.schemas.common import CamelModel


class CheckThresholdsRequest(CamelModel):
    quote_id: uuid.UUID


class ThresholdCheckOut(CamelModel):
    value: Decimal
    threshold: Decimal
    passed: bool


class CheckThresholdsResponse(CamelModel):
    success: bool = True
    passed: bool
    trigger_reasons: list[str] = []
    review_id: Optional[str] = None
    already_in_hitl: bool = False
    priority: Optional[int] = None
    checks: dict[str, ThresholdCheckOut] = {}


class ReviewOut(CamelModel):
    id: uuid.UUID
    quote_id: uuid.UUID
    status: str
    priority: int
    trigger_reasons: list[str]
    sla_deadline: datetime
    assigned_to: Optional[uuid.UUID] = None
    created_at: datetime


class ReviewQueueStats(CamelModel):
    pending: int
    in_progress: int
    awaiting_customer: int
    approved: int
    rejected: int
    total: int


class ReviewListResponse(CamelModel):
    reviews: list[ReviewOut]
    stats: ReviewQueueStats
    limit: int
    offset: int


class ClaimReviewRequest(CamelModel):
    staff_id: uuid.UUID
    is_override: bool = False


class ClaimReviewResponse(CamelModel):
    success: bool = True
    review_id: str
    assigned_to: str
    message: str
    is_override: bool = False
    previous_assigned_to: Optional[str] = None


class ApproveReviewRequest(CamelModel):
    staff_id: uuid.UUID
    notes: Optional[str] = None
    next_status: Literal["awaiting_payment", "quote_ready"] = "awaiting_payment"


class RejectReviewRequest(CamelModel):
    staff_id: uuid.UUID
    reason: str = Field(min_length=1)
    send_email: bool = True


class BetterScanRequest(CamelModel):
    staff_id: uuid.UUID
    file_ids: list[uuid.UUID] = Field(min_length=1)
    reason: str = Field(min_length=1)
    customer_message: Optional[str] = None


class ReviewActionResponse(CamelModel):
    success: bool = True
    review_id: str
    review_status: str
    quote_id: str
    quote_status: str
    email_sent: bool = False
    email_error: Optional[str] = None
