"""
Schemas for the /api/v1/orders endpoints.
"""

import uuid
from decimal import Decimal
from typing import Optional

from quotedesk.schemas.common import CamelModel


class CancelOrderRequest(CamelModel):
    order_id: Optional[uuid.UUID] = None
    staff_id: uuid.UUID
    reason_code: str
    refund_type: str
    additional_notes: Optional[str] = None
    refund_amount: Optional[Decimal] = None
    refund_method: Optional[str] = None
    refund_reference: Optional[str] = None
    refund_notes: Optional[str] = None
    refund_already_completed: bool = False
    send_email: bool = True


class CancelOrderResponse(CamelModel):
    success: bool = True
    cancellation_id: str
    refund_status: str
    refund_amount: Decimal
    refund_method: Optional[str] = None
    stripe_refund_id: Optional[str] = None
    stripe_error: Optional[str] = None
    email_sent: bool = False
    email_error: Optional[str] = None


class ExpireQuotesResponse(CamelModel):
    success: bool = True
    expired: int
    skipped: int


class PurgeDraftsResponse(CamelModel):
    success: bool = True
    purged: int
    files_deleted: int
