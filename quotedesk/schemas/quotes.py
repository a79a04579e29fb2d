"""
Schemas for the /api/v1/quotes endpoints.
"""

import uuid
from decimal import Decimal
from typing import Optional

from pydantic import Field

from quotedesk.schemas.common import CamelModel


# ── Processing ───────────────────────────────────────────────

class ProcessQuoteRequest(CamelModel):
    quote_id: uuid.UUID
    file_id: Optional[uuid.UUID] = None


class ProcessingTotalsOut(CamelModel):
    translation_cost: Decimal
    document_count: int
    total_pages: Decimal
    total_words: int


class HitlOut(CamelModel):
    required: bool
    reasons: list[str] = []
    review_id: Optional[str] = None


class ProcessQuoteResponse(CamelModel):
    success: bool = True
    quote_id: str
    documents_processed: int
    totals: ProcessingTotalsOut
    hitl: HitlOut
    quote_status: str
    processing_status: Optional[str] = None


class ProcessQueuedResponse(CamelModel):
    success: bool = True
    quote_id: str
    job_id: str
    message: str = "Processing queued."


class ProcessingStatusResponse(CamelModel):
    quote_id: str
    quote_number: str
    status: str
    processing_status: Optional[str] = None
    hitl_required: bool


class ProcessingTimeoutResponse(CamelModel):
    applied: bool
    status: str
    processing_status: Optional[str] = None


# ── Totals / revisions ───────────────────────────────────────

class QuoteTotalsOut(CamelModel):
    translation_total: Decimal
    certification_total: Decimal
    rush_fee: Decimal
    delivery_fee: Decimal
    subtotal: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    total: Decimal
    billable_pages: Decimal
    document_count: int


class DocumentOverrideIn(CamelModel):
    file_id: uuid.UUID
    word_count: Optional[int] = Field(default=None, ge=0)
    complexity: Optional[str] = None
    billable_pages: Optional[Decimal] = Field(default=None, ge=0)
    base_rate: Optional[Decimal] = Field(default=None, ge=0)
    certification_type_id: Optional[str] = None
    certification_price: Optional[Decimal] = Field(default=None, ge=0)


class ReviseQuoteRequest(CamelModel):
    staff_id: uuid.UUID
    reason: str = Field(min_length=1)
    is_rush: Optional[bool] = None
    rush_fee: Optional[Decimal] = Field(default=None, ge=0)
    delivery_fee: Optional[Decimal] = Field(default=None, ge=0)
    tax_rate: Optional[Decimal] = Field(default=None, ge=0, le=1)
    tax_is_compound: Optional[bool] = None
    documents: list[DocumentOverrideIn] = []
    send_email: bool = False


class ReviseQuoteResponse(CamelModel):
    success: bool = True
    quote_id: str
    old_version: int
    new_version: int
    previous_total: Decimal
    totals: QuoteTotalsOut
    email_sent: bool = False
    email_error: Optional[str] = None


class RecalculateResponse(CamelModel):
    success: bool = True
    quote_id: str
    totals: QuoteTotalsOut


class ReplaceFileResponse(CamelModel):
    success: bool = True
    quote_id: str
    file_id: str
    quote_status: str
    remaining_replacements: int
    processing_started: bool
    reopened_review_id: Optional[str] = None
