"""
Python enums for status and code columns.
Values MUST match what is stored in the database.
"""

from enum import Enum


class QuoteStatus(str, Enum):
    DRAFT = "draft"
    DETAILS_PENDING = "details_pending"
    PROCESSING = "processing"
    REVIEW_REQUIRED = "review_required"
    QUOTE_READY = "quote_ready"
    HITL_PENDING = "hitl_pending"
    HITL_IN_REVIEW = "hitl_in_review"
    AWAITING_CUSTOMER = "awaiting_customer"
    REVISION_NEEDED = "revision_needed"
    AWAITING_PAYMENT = "awaiting_payment"
    CONVERTED = "converted"
    EXPIRED = "expired"
    CUSTOMER_ACTION_AWAITED = "customer_action_awaited"


class ProcessingStatus(str, Enum):
    """Sub-state polled by the customer's browser while analysis runs."""
    PROCESSING = "processing"
    REVIEW_REQUIRED = "review_required"
    QUOTE_READY = "quote_ready"


class FileProcessingStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class Complexity(str, Enum):
    EASY = "easy"
    MEDIUM = "medium"
    HARD = "hard"


class ReviewStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    AWAITING_CUSTOMER = "awaiting_customer"
    APPROVED = "approved"
    REJECTED = "rejected"


OPEN_REVIEW_STATUSES = (ReviewStatus.PENDING.value, ReviewStatus.IN_PROGRESS.value)


class TriggerReason(str, Enum):
    LOW_OCR_CONFIDENCE = "low_ocr_confidence"
    LOW_LANGUAGE_CONFIDENCE = "low_language_confidence"
    LOW_CLASSIFICATION_CONFIDENCE = "low_classification_confidence"
    LOW_COMPLEXITY_CONFIDENCE = "low_complexity_confidence"
    HIGH_PAGE_COUNT = "high_page_count"
    HIGH_ORDER_VALUE = "high_order_value"


class StaffRole(str, Enum):
    REVIEWER = "reviewer"
    SENIOR_REVIEWER = "senior_reviewer"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"


class OrderStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class RefundType(str, Enum):
    FULL = "full"
    PARTIAL = "partial"
    NONE = "none"


class RefundStatus(str, Enum):
    NOT_APPLICABLE = "not_applicable"
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class RefundMethod(str, Enum):
    STRIPE = "stripe"
    CASH = "cash"
    BANK_TRANSFER = "bank_transfer"
    CHEQUE = "cheque"
    E_TRANSFER = "e_transfer"
    STORE_CREDIT = "store_credit"
    ORIGINAL_METHOD = "original_method"
    OTHER = "other"


class CancellationReason(str, Enum):
    CUSTOMER_REQUEST = "customer_request"
    PAYMENT_FAILED = "payment_failed"
    DOCUMENT_ISSUE = "document_issue"
    SERVICE_UNAVAILABLE = "service_unavailable"
    DUPLICATE_ORDER = "duplicate_order"
    FRAUD_SUSPECTED = "fraud_suspected"
    OTHER = "other"


class PaymentStatus(str, Enum):
    SUCCEEDED = "succeeded"
    REFUNDED = "refunded"
    FAILED = "failed"
