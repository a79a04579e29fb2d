"""
SQLAlchemy ORM models.
Column names match the tables the rest of the platform reads and writes.
Types are portable: JSONB and native UUID on PostgreSQL, plain JSON/CHAR elsewhere.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    BigInteger,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from quotedesk.errors import NotFoundError
from quotedesk.models.database import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")

Money = Numeric(12, 2)
Confidence = Numeric(5, 4)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def parse_id(value: "uuid.UUID | str", label: str = "Record") -> uuid.UUID:
    """Coerce a path/body identifier to UUID; malformed ids are simply not found."""
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        raise NotFoundError(f"{label} not found: {value}")


def _pk() -> Mapped[uuid.UUID]:
    return mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)


def _created_at() -> Mapped[datetime]:
    return mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )


# ────────────────────────────────────────────────────────────
# CUSTOMERS / STAFF
# ────────────────────────────────────────────────────────────
class Customer(Base):
    __tablename__ = "customers"

    id: Mapped[uuid.UUID] = _pk()
    email: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    full_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = _created_at()


class StaffUser(Base):
    __tablename__ = "staff_users"

    id: Mapped[uuid.UUID] = _pk()
    full_name: Mapped[str] = mapped_column(Text, nullable=False)
    email: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    role: Mapped[str] = mapped_column(String(32), nullable=False, default="reviewer")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = _created_at()


# ────────────────────────────────────────────────────────────
# QUOTES
# ────────────────────────────────────────────────────────────
class Quote(Base):
    __tablename__ = "quotes"

    id: Mapped[uuid.UUID] = _pk()
    quote_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    customer_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("customers.id"), nullable=True
    )
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="draft")
    processing_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    entry_point: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    subtotal: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0.00"))
    certification_total: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0.00"))
    is_rush: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    rush_fee: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0.00"))
    delivery_fee: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0.00"))
    tax_rate: Mapped[Decimal] = mapped_column(Numeric(6, 4), nullable=False, default=Decimal("0.05"))
    tax_is_compound: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    tax_amount: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0.00"))
    total: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0.00"))
    calculated_totals: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    hitl_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    hitl_requested_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_by_staff_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), nullable=True)
    update_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow,
        server_default=func.now(),
    )

    __table_args__ = (
        Index("idx_quotes_status", "status"),
        Index("idx_quotes_created", "created_at"),
    )


class QuoteFile(Base):
    __tablename__ = "quote_files"

    id: Mapped[uuid.UUID] = _pk()
    quote_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("quotes.id", ondelete="CASCADE"), nullable=False
    )
    original_filename: Mapped[str] = mapped_column(Text, nullable=False)
    storage_path: Mapped[str] = mapped_column(Text, nullable=False)
    mime_type: Mapped[str] = mapped_column(String(100), nullable=False)
    file_size: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    upload_status: Mapped[str] = mapped_column(String(20), nullable=False, default="uploaded")
    is_reference: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    ai_processing_status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    needs_replacement: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = _created_at()

    __table_args__ = (
        Index("idx_quote_files_quote", "quote_id"),
    )


class AIAnalysisResult(Base):
    __tablename__ = "ai_analysis_results"

    id: Mapped[uuid.UUID] = _pk()
    quote_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("quotes.id", ondelete="CASCADE"), nullable=False
    )
    quote_file_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("quote_files.id", ondelete="CASCADE"), nullable=False
    )
    detected_language: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    language_confidence: Mapped[Optional[Decimal]] = mapped_column(Confidence, nullable=True)
    detected_document_type: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    document_type_confidence: Mapped[Optional[Decimal]] = mapped_column(Confidence, nullable=True)
    assessed_complexity: Mapped[str] = mapped_column(String(10), nullable=False, default="easy")
    complexity_multiplier: Mapped[Decimal] = mapped_column(Numeric(4, 2), nullable=False, default=Decimal("1.00"))
    complexity_confidence: Mapped[Optional[Decimal]] = mapped_column(Confidence, nullable=True)
    ocr_confidence: Mapped[Optional[Decimal]] = mapped_column(Confidence, nullable=True)
    word_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    page_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    billable_pages: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0.00"))
    base_rate: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("65.00"))
    line_total: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0.00"))
    certification_type_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    certification_price: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0.00"))
    ocr_raw_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    llm_model: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    processing_status: Mapped[str] = mapped_column(String(20), nullable=False, default="completed")
    processing_time_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow,
        server_default=func.now(),
    )

    __table_args__ = (
        UniqueConstraint("quote_file_id", name="uq_analysis_quote_file"),
        Index("idx_analysis_quote", "quote_id"),
    )


# ────────────────────────────────────────────────────────────
# HITL
# ────────────────────────────────────────────────────────────
OPEN_REVIEW_PREDICATE = "status IN ('pending', 'in_progress')"


class HITLReview(Base):
    __tablename__ = "hitl_reviews"

    id: Mapped[uuid.UUID] = _pk()
    quote_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("quotes.id", ondelete="CASCADE"), nullable=False
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    trigger_reasons: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    sla_deadline: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    assigned_to: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), nullable=True)
    previous_assigned_to: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), nullable=True)
    claim_override_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    claim_override_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), nullable=True)
    resolution_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), nullable=True)
    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow,
        server_default=func.now(),
    )

    __table_args__ = (
        # One open review per quote
        Index(
            "uq_hitl_reviews_open_quote", "quote_id", unique=True,
            postgresql_where=text(OPEN_REVIEW_PREDICATE),
            sqlite_where=text(OPEN_REVIEW_PREDICATE),
        ),
        Index("idx_hitl_reviews_status_priority", "status", "priority"),
    )


class HITLThreshold(Base):
    __tablename__ = "hitl_thresholds"

    id: Mapped[uuid.UUID] = _pk()
    threshold_key: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    threshold_value: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = _created_at()


# ────────────────────────────────────────────────────────────
# AUDIT / HISTORY
# ────────────────────────────────────────────────────────────
class QuoteVersion(Base):
    __tablename__ = "quote_versions"

    id: Mapped[uuid.UUID] = _pk()
    quote_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("quotes.id", ondelete="CASCADE"), nullable=False
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    subtotal: Mapped[Decimal] = mapped_column(Money, nullable=False)
    certification_total: Mapped[Decimal] = mapped_column(Money, nullable=False)
    tax_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    total: Mapped[Decimal] = mapped_column(Money, nullable=False)
    calculated_totals: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    is_rush: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    rush_fee: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0.00"))
    delivery_fee: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0.00"))
    updated_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), nullable=True)
    update_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = _created_at()

    __table_args__ = (
        UniqueConstraint("quote_id", "version", name="uq_quote_version"),
    )


class QuoteActivityLog(Base):
    __tablename__ = "quote_activity_log"

    id: Mapped[uuid.UUID] = _pk()
    quote_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("quotes.id", ondelete="CASCADE"), nullable=False
    )
    staff_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), nullable=True)
    action_type: Mapped[str] = mapped_column(String(64), nullable=False)
    from_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    to_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    details: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = _created_at()

    __table_args__ = (
        Index("idx_quote_activity_log_quote_id", "quote_id"),
    )


class StaffActivityLog(Base):
    __tablename__ = "staff_activity_log"

    id: Mapped[uuid.UUID] = _pk()
    staff_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), nullable=True)
    action_type: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    details: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = _created_at()


# ────────────────────────────────────────────────────────────
# ORDERS / PAYMENTS
# ────────────────────────────────────────────────────────────
class Order(Base):
    __tablename__ = "orders"

    id: Mapped[uuid.UUID] = _pk()
    order_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    quote_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("quotes.id"), nullable=False, unique=True
    )
    customer_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("customers.id"), nullable=True
    )
    total_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    amount_paid: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0.00"))
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    work_status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = _created_at()


class Payment(Base):
    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = _pk()
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    payment_method: Mapped[str] = mapped_column(String(32), nullable=False, default="stripe")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="succeeded")
    stripe_payment_intent_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = _created_at()

    __table_args__ = (
        Index("idx_payments_order", "order_id"),
    )


class OrderCancellation(Base):
    __tablename__ = "order_cancellations"

    id: Mapped[uuid.UUID] = _pk()
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    cancelled_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), nullable=True)
    reason_code: Mapped[str] = mapped_column(String(32), nullable=False)
    reason_text: Mapped[str] = mapped_column(Text, nullable=False)
    additional_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    refund_type: Mapped[str] = mapped_column(String(10), nullable=False)
    refund_amount: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0.00"))
    refund_method: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    refund_status: Mapped[str] = mapped_column(String(20), nullable=False)
    refund_reference: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    refund_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    refund_completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    refund_completed_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), nullable=True)
    stripe_refund_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    stripe_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    original_payment_method: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    original_payment_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), nullable=True)
    email_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    email_sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    email_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = _created_at()


# ────────────────────────────────────────────────────────────
# COST EVENTS
# ────────────────────────────────────────────────────────────
class CostEvent(Base):
    __tablename__ = "cost_events"

    id: Mapped[uuid.UUID] = _pk()
    quote_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), nullable=True)
    quote_file_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), nullable=True)
    engine_name: Mapped[str] = mapped_column(String(64), nullable=False)
    operation: Mapped[str] = mapped_column(String(64), nullable=False)
    input_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    output_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cost_usd: Mapped[Decimal] = mapped_column(Numeric(12, 6), nullable=False, default=Decimal("0"))
    latency_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = _created_at()
