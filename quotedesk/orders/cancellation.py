"""
Order cancellation and refund orchestration.

validate -> compute refund -> claim the order (status flip + cancellation row,
one commit) -> Stripe refund when electronic -> record refund outcome ->
email. Everything after the claim is best-effort against the persisted
record: gateway and email failures are written onto the cancellation row and
returned to staff, never rolled back and never reported as completed.
"""

import uuid
from decimal import Decimal
from typing import Optional

import structlog
from pydantic import BaseModel
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from quotedesk.config import settings
from quotedesk.errors import InvalidStateError, NotFoundError, QuoteDeskError, ValidationFailed
from quotedesk.models.activity import log_staff_activity
from quotedesk.models.enums import (
    CancellationReason,
    OrderStatus,
    PaymentStatus,
    RefundMethod,
    RefundStatus,
    RefundType,
)
from quotedesk.models.tables import Customer, Order, OrderCancellation, Payment, utcnow
from quotedesk.notifications.dispatcher import NotificationDispatcher, NotificationEvent
from quotedesk.observability.metrics import order_cancellations_total
from quotedesk.payments.stripe_client import StripeClient
from quotedesk.pricing.calculator import ZERO, round_cents, to_decimal

logger = structlog.get_logger(__name__)

REASON_LABELS = {
    CancellationReason.CUSTOMER_REQUEST.value: "Customer requested cancellation",
    CancellationReason.PAYMENT_FAILED.value: "Payment could not be processed",
    CancellationReason.DOCUMENT_ISSUE.value: "Document quality/authenticity issue",
    CancellationReason.SERVICE_UNAVAILABLE.value: "Translation service unavailable for this language",
    CancellationReason.DUPLICATE_ORDER.value: "Duplicate order detected",
    CancellationReason.FRAUD_SUSPECTED.value: "Suspected fraudulent activity",
    CancellationReason.OTHER.value: "Other",
}

REFUND_METHOD_LABELS = {
    RefundMethod.STRIPE.value: "Stripe (Card)",
    RefundMethod.CASH.value: "Cash",
    RefundMethod.BANK_TRANSFER.value: "Bank Transfer",
    RefundMethod.CHEQUE.value: "Cheque",
    RefundMethod.E_TRANSFER.value: "E-Transfer (Interac)",
    RefundMethod.STORE_CREDIT.value: "Store Credit",
    RefundMethod.ORIGINAL_METHOD.value: "Original Payment Method",
    RefundMethod.OTHER.value: "Other",
}


class CancellationRequest(BaseModel):
    order_id: uuid.UUID
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


class CancellationResult(BaseModel):
    success: bool = True
    cancellation_id: str
    refund_status: str
    refund_amount: Decimal
    refund_method: Optional[str] = None
    stripe_refund_id: Optional[str] = None
    stripe_error: Optional[str] = None
    email_sent: bool = False
    email_error: Optional[str] = None


# ── Pure rules ───────────────────────────────────────────────

def validate_request(req: CancellationRequest) -> None:
    if req.reason_code not in REASON_LABELS:
        raise ValidationFailed(f"Invalid reason code: {req.reason_code}", error_code="ERR_INVALID_REASON")
    if req.reason_code == CancellationReason.OTHER.value and not (req.additional_notes or "").strip():
        raise ValidationFailed("Additional notes required for 'Other' reason")
    if req.refund_type not in {t.value for t in RefundType}:
        raise ValidationFailed(f"Invalid refund type: {req.refund_type}")
    if req.refund_type != RefundType.NONE.value:
        if req.refund_method not in REFUND_METHOD_LABELS:
            raise ValidationFailed(f"Invalid refund method: {req.refund_method}")
    if req.refund_type == RefundType.PARTIAL.value and (req.refund_amount is None or req.refund_amount < 0):
        raise ValidationFailed("Partial refunds need a non-negative refund amount")


def compute_refund_amount(refund_type: str, amount_paid: Decimal, requested: Optional[Decimal] = None) -> Decimal:
    """Full refunds return what was paid; partial refunds never exceed it."""
    if refund_type == RefundType.FULL.value:
        return round_cents(amount_paid)
    if refund_type == RefundType.PARTIAL.value:
        return round_cents(min(to_decimal(requested), amount_paid))
    return ZERO


def initial_refund_status(
    refund_type: str,
    amount: Decimal,
    refund_method: Optional[str],
    already_completed: bool = False,
) -> RefundStatus:
    if refund_type == RefundType.NONE.value or amount <= 0:
        return RefundStatus.NOT_APPLICABLE
    if already_completed:
        return RefundStatus.COMPLETED
    if refund_method == RefundMethod.STRIPE.value:
        return RefundStatus.PROCESSING
    return RefundStatus.PENDING


def refund_message(status: str, method: Optional[str]) -> str:
    label = REFUND_METHOD_LABELS.get(method or "", method or "")
    if status == RefundStatus.COMPLETED.value:
        if method == RefundMethod.STRIPE.value:
            return "Your refund has been processed and should appear on your card within 5-10 business days."
        return f"Your refund has been processed via {label}."
    if status == RefundStatus.PENDING.value:
        return f"Your refund will be processed via {label}. We will notify you once it's complete."
    if status in (RefundStatus.PROCESSING.value, RefundStatus.FAILED.value):
        return "Your refund is being processed."
    return ""


# ── Orchestrator ─────────────────────────────────────────────

async def cancel_order(
    session: AsyncSession,
    req: CancellationRequest,
    stripe: Optional[StripeClient] = None,
    dispatcher: Optional[NotificationDispatcher] = None,
) -> CancellationResult:
    validate_request(req)

    order = await session.get(Order, req.order_id)
    if order is None:
        raise NotFoundError("Order not found")
    if order.status == OrderStatus.CANCELLED.value:
        raise InvalidStateError("Order is already cancelled", error_code="ERR_ALREADY_CANCELLED", status_code=400)

    payment = (await session.execute(
        select(Payment)
        .where(Payment.order_id == order.id, Payment.status == PaymentStatus.SUCCEEDED.value)
        .order_by(Payment.created_at.desc())
        .limit(1)
    )).scalar_one_or_none()

    amount_paid = to_decimal(payment.amount if payment and payment.amount else order.amount_paid)
    refund_amount = compute_refund_amount(req.refund_type, amount_paid, req.refund_amount)
    status = initial_refund_status(req.refund_type, refund_amount, req.refund_method, req.refund_already_completed)
    refund_method = req.refund_method if req.refund_type != RefundType.NONE.value else None
    now = utcnow()

    # ── Claim: order flip + cancellation row in one commit ──
    flipped = await session.execute(
        update(Order)
        .where(Order.id == order.id, Order.status != OrderStatus.CANCELLED.value)
        .values(status=OrderStatus.CANCELLED.value, cancelled_at=now, work_status="cancelled")
        .execution_options(synchronize_session=False)
    )
    if flipped.rowcount != 1:
        await session.rollback()
        raise InvalidStateError("Order is already cancelled", error_code="ERR_ALREADY_CANCELLED", status_code=400)

    cancellation = OrderCancellation(
        order_id=order.id,
        cancelled_by=req.staff_id,
        reason_code=req.reason_code,
        reason_text=REASON_LABELS[req.reason_code],
        additional_notes=req.additional_notes or None,
        refund_type=req.refund_type,
        refund_amount=refund_amount,
        refund_method=refund_method,
        refund_status=status.value,
        refund_reference=req.refund_reference or None,
        refund_notes=req.refund_notes or None,
        refund_completed_at=now if status == RefundStatus.COMPLETED else None,
        refund_completed_by=req.staff_id if status == RefundStatus.COMPLETED else None,
        original_payment_method=payment.payment_method if payment else "unknown",
        original_payment_id=payment.id if payment else None,
    )
    session.add(cancellation)
    log_staff_activity(session, req.staff_id, "cancel_order", "order", order.id, {
        "order_number": order.order_number,
        "reason_code": req.reason_code,
        "reason_text": REASON_LABELS[req.reason_code],
        "refund_type": req.refund_type,
        "refund_amount": str(refund_amount),
        "refund_method": refund_method,
    })
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise InvalidStateError("Order is already cancelled", error_code="ERR_ALREADY_CANCELLED", status_code=400)

    logger.info(
        "order_cancelled",
        order_id=str(order.id),
        cancellation_id=str(cancellation.id),
        refund_type=req.refund_type,
        refund_amount=str(refund_amount),
        refund_status=status.value,
    )

    # ── Electronic refund ──
    if status == RefundStatus.PROCESSING:
        await _refund_via_stripe(session, cancellation, order, payment, req, stripe or StripeClient())

    result = CancellationResult(
        cancellation_id=str(cancellation.id),
        refund_status=cancellation.refund_status,
        refund_amount=refund_amount,
        refund_method=refund_method,
        stripe_refund_id=cancellation.stripe_refund_id,
        stripe_error=cancellation.stripe_error,
    )
    order_cancellations_total.labels(refund_status=cancellation.refund_status).inc()

    # ── Customer email ──
    if req.send_email:
        result.email_sent, result.email_error = await _send_cancellation_email(
            session, cancellation, order, dispatcher or NotificationDispatcher(),
        )
    return result


async def _refund_via_stripe(
    session: AsyncSession,
    cancellation: OrderCancellation,
    order: Order,
    payment: Optional[Payment],
    req: CancellationRequest,
    stripe: StripeClient,
) -> None:
    try:
        if payment is None or not payment.stripe_payment_intent_id:
            raise InvalidStateError("No Stripe payment on record for this order", error_code="ERR_NO_STRIPE_PAYMENT")
        refund_id = await stripe.create_refund(
            payment.stripe_payment_intent_id,
            cancellation.refund_amount,
            metadata={
                "order_id": str(order.id),
                "order_number": order.order_number,
                "cancelled_by": str(req.staff_id),
                "reason_code": req.reason_code,
            },
            idempotency_key=f"order-cancellation-{cancellation.id}",
        )
    except QuoteDeskError as e:
        cancellation.refund_status = RefundStatus.FAILED.value
        cancellation.stripe_error = e.message
        logger.warning("stripe_refund_failed", order_id=str(order.id), error=e.message)
    except Exception as e:
        # the order is already cancelled; the refund outcome must still be recorded
        cancellation.refund_status = RefundStatus.FAILED.value
        cancellation.stripe_error = f"Unexpected refund error: {e}"[:500]
        logger.error("stripe_refund_error", order_id=str(order.id), error=str(e))
    else:
        cancellation.refund_status = RefundStatus.COMPLETED.value
        cancellation.stripe_refund_id = refund_id
        cancellation.refund_completed_at = utcnow()
        cancellation.refund_completed_by = req.staff_id
    await session.commit()


async def _send_cancellation_email(
    session: AsyncSession,
    cancellation: OrderCancellation,
    order: Order,
    dispatcher: NotificationDispatcher,
) -> tuple[bool, Optional[str]]:
    customer = await session.get(Customer, order.customer_id) if order.customer_id else None
    if customer is None or not customer.email:
        cancellation.email_error = "Customer has no email address"
        await session.commit()
        return False, cancellation.email_error

    has_refund = cancellation.refund_amount > 0
    context = {
        "customer_name": customer.full_name or "Valued Customer",
        "order_number": order.order_number,
        "order_total": f"${order.total_amount:.2f} {settings.CURRENCY}",
        "cancellation_reason": cancellation.reason_text,
        "cancellation_notes": cancellation.additional_notes or "",
        "has_refund": has_refund,
        "refund_amount": f"${cancellation.refund_amount:.2f} {settings.CURRENCY}",
        "refund_method": REFUND_METHOD_LABELS.get(cancellation.refund_method or "", cancellation.refund_method or ""),
        "refund_message": refund_message(cancellation.refund_status, cancellation.refund_method),
    }
    delivery = await dispatcher.send(NotificationEvent.ORDER_CANCELLED, customer.email, context, customer.full_name)

    if delivery.sent:
        cancellation.email_sent = True
        cancellation.email_sent_at = utcnow()
    else:
        cancellation.email_error = (delivery.error or "Email send failed")[:500]
    await session.commit()
    return delivery.sent, delivery.error
