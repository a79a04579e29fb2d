"""
Tests for order cancellation and refunds.
"""

import uuid
from decimal import Decimal
from urllib.parse import parse_qs

import httpx
import pytest
from sqlalchemy import func, select

from quotedesk.errors import InvalidStateError, NotFoundError, PaymentGatewayError, ValidationFailed
from quotedesk.models.enums import RefundStatus
from quotedesk.models.tables import Order, OrderCancellation, StaffActivityLog
from quotedesk.orders.cancellation import (
    CancellationRequest,
    cancel_order,
    compute_refund_amount,
    initial_refund_status,
    refund_message,
)
from quotedesk.payments.stripe_client import StripeClient, to_cents


@pytest.fixture
def stripe_calls():
    return []


@pytest.fixture
def stripe(stripe_calls):
    """StripeClient whose refunds succeed and are captured in stripe_calls."""
    def handler(request: httpx.Request) -> httpx.Response:
        stripe_calls.append(request)
        return httpx.Response(200, json={"id": "re_123", "status": "succeeded"})
    return StripeClient(secret_key="sk_test", transport=httpx.MockTransport(handler))


@pytest.fixture
def declining_stripe():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": {"message": "Charge already refunded"}})
    return StripeClient(secret_key="sk_test", transport=httpx.MockTransport(handler))


def stripe_replying(handler) -> StripeClient:
    return StripeClient(secret_key="sk_test", transport=httpx.MockTransport(handler))


def cancellation(order, **kwargs) -> CancellationRequest:
    fields = {
        "order_id": order.id,
        "staff_id": uuid.uuid4(),
        "reason_code": "customer_request",
        "refund_type": "full",
        "refund_method": "stripe",
        "send_email": False,
    }
    fields.update(kwargs)
    return CancellationRequest(**fields)


class TestRefundRules:

    def test_full_refund_is_amount_paid(self):
        assert compute_refund_amount("full", Decimal("300.00")) == Decimal("300.00")

    def test_partial_refund_capped_at_amount_paid(self):
        assert compute_refund_amount("partial", Decimal("300.00"), Decimal("500")) == Decimal("300.00")
        assert compute_refund_amount("partial", Decimal("300.00"), Decimal("120.555")) == Decimal("120.56")

    def test_no_refund(self):
        assert compute_refund_amount("none", Decimal("300.00"), Decimal("50")) == Decimal("0.00")

    def test_initial_status(self):
        assert initial_refund_status("none", Decimal("0"), None) == RefundStatus.NOT_APPLICABLE
        assert initial_refund_status("partial", Decimal("0"), "cash") == RefundStatus.NOT_APPLICABLE
        assert initial_refund_status("full", Decimal("10"), "stripe") == RefundStatus.PROCESSING
        assert initial_refund_status("full", Decimal("10"), "cash") == RefundStatus.PENDING
        assert initial_refund_status("full", Decimal("10"), "cash", already_completed=True) == RefundStatus.COMPLETED

    def test_refund_message(self):
        assert "5-10 business days" in refund_message("completed", "stripe")
        assert "Bank Transfer" in refund_message("pending", "bank_transfer")
        assert refund_message("not_applicable", None) == ""

    def test_to_cents(self):
        assert to_cents(Decimal("300.00")) == 30000
        assert to_cents(Decimal("0.005")) == 1


class TestStripeClient:

    async def test_html_error_page(self):
        client = stripe_replying(lambda request: httpx.Response(502, text="<html><body>Bad Gateway</body></html>"))
        with pytest.raises(PaymentGatewayError) as exc:
            await client.create_refund("pi_123", Decimal("10.00"))
        assert "HTTP 502" in exc.value.message
        assert "Bad Gateway" in exc.value.message

    async def test_success_without_refund_id(self):
        client = stripe_replying(lambda request: httpx.Response(200, json={"status": "succeeded"}))
        with pytest.raises(PaymentGatewayError) as exc:
            await client.create_refund("pi_123", Decimal("10.00"))
        assert exc.value.error_code == "ERR_STRIPE_BAD_RESPONSE"

    async def test_success_with_non_json_body(self):
        client = stripe_replying(lambda request: httpx.Response(200, text="ok"))
        with pytest.raises(PaymentGatewayError):
            await client.create_refund("pi_123", Decimal("10.00"))

    async def test_error_field_not_an_object(self):
        client = stripe_replying(lambda request: httpx.Response(400, json={"error": "card_declined"}))
        with pytest.raises(PaymentGatewayError) as exc:
            await client.create_refund("pi_123", Decimal("10.00"))
        assert "card_declined" in exc.value.message


class TestCancelOrder:

    async def test_stripe_refund_completed(self, session, make_order, stripe, stripe_calls):
        order = await make_order(amount_paid="300.00", payment_intent="pi_123")

        result = await cancel_order(session, cancellation(order), stripe=stripe)

        assert result.refund_status == "completed"
        assert result.refund_amount == Decimal("300.00")
        assert result.stripe_refund_id == "re_123"
        assert len(stripe_calls) == 1
        request = stripe_calls[0]
        form = parse_qs(request.content.decode())
        assert form["payment_intent"] == ["pi_123"]
        assert form["amount"] == ["30000"]
        assert request.headers["Idempotency-Key"] == f"order-cancellation-{result.cancellation_id}"

        row = (await session.execute(select(OrderCancellation))).scalars().one()
        assert row.refund_status == "completed"
        assert row.refund_completed_at is not None
        refreshed = await session.get(Order, order.id, populate_existing=True)
        assert refreshed.status == "cancelled"
        assert refreshed.cancelled_at is not None

    async def test_partial_refund_clamped(self, session, make_order, stripe, stripe_calls):
        order = await make_order(amount_paid="300.00")

        result = await cancel_order(
            session, cancellation(order, refund_type="partial", refund_amount=Decimal("500")), stripe=stripe,
        )

        assert result.refund_amount == Decimal("300.00")
        assert parse_qs(stripe_calls[0].content.decode())["amount"] == ["30000"]

    async def test_stripe_failure_recorded_not_rolled_back(self, session, make_order, declining_stripe):
        order = await make_order()

        result = await cancel_order(session, cancellation(order), stripe=declining_stripe)

        assert result.success is True
        assert result.refund_status == "failed"
        assert "Charge already refunded" in result.stripe_error
        refreshed = await session.get(Order, order.id, populate_existing=True)
        assert refreshed.status == "cancelled"
        row = (await session.execute(select(OrderCancellation))).scalars().one()
        assert row.refund_status == "failed"
        assert row.stripe_refund_id is None

    async def test_stripe_html_outage_recorded(self, session, make_order):
        order = await make_order()
        gateway = stripe_replying(lambda request: httpx.Response(502, text="<html>Bad Gateway</html>"))

        result = await cancel_order(session, cancellation(order), stripe=gateway)

        assert result.refund_status == "failed"
        assert "HTTP 502" in result.stripe_error
        refreshed = await session.get(Order, order.id, populate_existing=True)
        assert refreshed.status == "cancelled"

    async def test_unexpected_refund_error_recorded(self, session, make_order):
        order = await make_order()

        def handler(request: httpx.Request) -> httpx.Response:
            raise RuntimeError("socket exploded")

        result = await cancel_order(session, cancellation(order), stripe=stripe_replying(handler))

        assert result.refund_status == "failed"
        assert "socket exploded" in result.stripe_error
        row = (await session.execute(select(OrderCancellation))).scalars().one()
        assert row.refund_status == "failed"
        assert row.stripe_error == result.stripe_error

    async def test_missing_stripe_key_fails_refund(self, session, make_order):
        order = await make_order()

        result = await cancel_order(session, cancellation(order), stripe=StripeClient(secret_key=""))

        assert result.refund_status == "failed"
        assert "STRIPE_SECRET_KEY" in result.stripe_error

    async def test_no_payment_intent_fails_refund(self, session, make_order, stripe, stripe_calls):
        order = await make_order(payment_intent=None)

        result = await cancel_order(session, cancellation(order), stripe=stripe)

        assert result.refund_status == "failed"
        assert stripe_calls == []

    async def test_manual_refund_pending(self, session, make_order, stripe, stripe_calls):
        order = await make_order(payment_method="cash", payment_intent=None)

        result = await cancel_order(session, cancellation(order, refund_method="cash"), stripe=stripe)

        assert result.refund_status == "pending"
        assert stripe_calls == []

    async def test_manual_refund_already_completed(self, session, make_order, stripe):
        order = await make_order(payment_method="cash", payment_intent=None)
        staff_id = uuid.uuid4()

        result = await cancel_order(
            session,
            cancellation(order, staff_id=staff_id, refund_method="cash", refund_already_completed=True, refund_reference="R-1"),
            stripe=stripe,
        )

        assert result.refund_status == "completed"
        row = (await session.execute(select(OrderCancellation))).scalars().one()
        assert row.refund_completed_by == staff_id
        assert row.refund_reference == "R-1"

    async def test_no_refund(self, session, make_order, stripe, stripe_calls):
        order = await make_order()

        result = await cancel_order(session, cancellation(order, refund_type="none", refund_method=None), stripe=stripe)

        assert result.refund_status == "not_applicable"
        assert result.refund_amount == Decimal("0.00")
        assert result.refund_method is None
        assert stripe_calls == []

    async def test_staff_activity_logged(self, session, make_order, stripe):
        order = await make_order()

        await cancel_order(session, cancellation(order), stripe=stripe)

        log = (await session.execute(select(StaffActivityLog))).scalars().one()
        assert log.action_type == "cancel_order"
        assert log.entity_id == order.id
        assert log.details["refund_amount"] == "300.00"

    async def test_already_cancelled(self, session, make_order, stripe):
        order = await make_order()
        await cancel_order(session, cancellation(order), stripe=stripe)

        with pytest.raises(InvalidStateError) as exc:
            await cancel_order(session, cancellation(order), stripe=stripe)
        assert exc.value.error_code == "ERR_ALREADY_CANCELLED"
        assert exc.value.status_code == 400
        count = (await session.execute(select(func.count(OrderCancellation.id)))).scalar_one()
        assert count == 1

    async def test_unknown_order(self, session, stripe):
        req = CancellationRequest(
            order_id=uuid.uuid4(), staff_id=uuid.uuid4(), reason_code="customer_request", refund_type="none",
        )
        with pytest.raises(NotFoundError):
            await cancel_order(session, req, stripe=stripe)

    async def test_other_reason_needs_notes(self, session, make_order, stripe):
        order = await make_order()
        with pytest.raises(ValidationFailed):
            await cancel_order(session, cancellation(order, reason_code="other"), stripe=stripe)
        refreshed = await session.get(Order, order.id, populate_existing=True)
        assert refreshed.status == "active"

    async def test_invalid_reason_and_method(self, session, make_order, stripe):
        order = await make_order()
        with pytest.raises(ValidationFailed) as exc:
            await cancel_order(session, cancellation(order, reason_code="bored"), stripe=stripe)
        assert exc.value.error_code == "ERR_INVALID_REASON"
        with pytest.raises(ValidationFailed):
            await cancel_order(session, cancellation(order, refund_method="bitcoin"), stripe=stripe)


class TestCancellationEmail:

    async def test_email_sent_and_recorded(self, session, make_customer, make_order, stripe, dispatcher, sent_emails):
        customer = await make_customer(email="client@example.com")
        order = await make_order(customer=customer)

        result = await cancel_order(session, cancellation(order, send_email=True), stripe=stripe, dispatcher=dispatcher)

        assert result.email_sent is True
        assert sent_emails[0]["to"][0]["email"] == "client@example.com"
        assert order.order_number in sent_emails[0]["subject"]
        assert "$300.00" in sent_emails[0]["htmlContent"]
        row = (await session.execute(select(OrderCancellation))).scalars().one()
        assert row.email_sent is True
        assert row.email_sent_at is not None

    async def test_email_failure_recorded(self, session, make_customer, make_order, stripe, failing_dispatcher):
        customer = await make_customer()
        order = await make_order(customer=customer)

        result = await cancel_order(session, cancellation(order, send_email=True), stripe=stripe, dispatcher=failing_dispatcher)

        assert result.email_sent is False
        assert result.refund_status == "completed"
        row = (await session.execute(select(OrderCancellation))).scalars().one()
        assert row.email_sent is False
        assert "500" in row.email_error

    async def test_no_customer_email(self, session, make_order, stripe, dispatcher, sent_emails):
        order = await make_order()

        result = await cancel_order(session, cancellation(order, send_email=True), stripe=stripe, dispatcher=dispatcher)

        assert result.email_sent is False
        assert result.email_error == "Customer has no email address"
        assert sent_emails == []
