"""
HTTP-level tests: routing, camelCase bodies, error mapping and auth.
"""

import uuid

import httpx
import pytest

from quotedesk.config import settings
from quotedesk.dependencies import get_db, get_dispatcher, get_stripe_client
from quotedesk.main import create_app
from quotedesk.payments.stripe_client import StripeClient


@pytest.fixture
def app(session, dispatcher):
    def refund_handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"id": "re_api", "status": "succeeded"})

    async def override_db():
        yield session

    app = create_app()
    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    app.dependency_overrides[get_stripe_client] = lambda: StripeClient(
        secret_key="sk_test", transport=httpx.MockTransport(refund_handler),
    )
    return app


@pytest.fixture
async def client(app):
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        yield c


class TestHealth:

    async def test_health_always_200(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["version"] == settings.APP_VERSION
        assert set(body["integrations"]) == {"vision", "stripe", "email"}


class TestErrorMapping:

    async def test_not_found(self, client):
        resp = await client.get(f"/api/v1/quotes/{uuid.uuid4()}/processing-status")
        assert resp.status_code == 404
        body = resp.json()
        assert body["success"] is False
        assert body["code"] == "ERR_NOT_FOUND"

    async def test_missing_fields_are_400(self, client):
        resp = await client.post(f"/api/v1/orders/{uuid.uuid4()}/cancel", json={"reasonCode": "customer_request"})
        assert resp.status_code == 400
        body = resp.json()
        assert body["code"] == "ERR_VALIDATION"
        assert "staffId" in body["error"]

    async def test_illegal_transition_is_409(self, client, make_quote):
        quote = await make_quote(status="converted")
        resp = await client.post("/api/v1/quotes/process", json={"quoteId": str(quote.id)})
        assert resp.status_code == 409
        assert resp.json()["code"] == "ERR_INVALID_STATE"


class TestQuotesApi:

    async def test_processing_status_is_camel_case(self, client, make_quote):
        quote = await make_quote(status="processing", processing_status="processing")
        resp = await client.get(f"/api/v1/quotes/{quote.id}/processing-status")
        assert resp.status_code == 200
        body = resp.json()
        assert body["quoteNumber"] == quote.quote_number
        assert body["processingStatus"] == "processing"
        assert body["hitlRequired"] is False

    async def test_processing_timeout(self, client, make_quote):
        quote = await make_quote(status="processing", processing_status="processing")
        resp = await client.post(f"/api/v1/quotes/{quote.id}/processing-timeout")
        assert resp.status_code == 200
        assert resp.json() == {"applied": True, "status": "review_required", "processingStatus": "review_required"}

    async def test_replace_rejects_unsupported_type(self, client, make_quote):
        quote = await make_quote(status="awaiting_customer")
        resp = await client.post(
            f"/api/v1/quotes/{quote.id}/files/{uuid.uuid4()}/replace",
            files={"file": ("notes.exe", b"MZ", "application/x-msdownload")},
        )
        assert resp.status_code == 415


class TestOrdersApi:

    async def test_cancel_order(self, client, make_order):
        order = await make_order()
        resp = await client.post(f"/api/v1/orders/{order.id}/cancel", json={
            "staffId": str(uuid.uuid4()),
            "reasonCode": "customer_request",
            "refundType": "full",
            "refundMethod": "stripe",
            "sendEmail": False,
        })
        assert resp.status_code == 200
        body = resp.json()
        assert body["refundStatus"] == "completed"
        assert body["stripeRefundId"] == "re_api"

    async def test_body_order_id_must_match(self, client, make_order):
        order = await make_order()
        resp = await client.post(f"/api/v1/orders/{order.id}/cancel", json={
            "orderId": str(uuid.uuid4()),
            "staffId": str(uuid.uuid4()),
            "reasonCode": "customer_request",
            "refundType": "none",
        })
        assert resp.status_code == 400

    async def test_second_cancel_is_400(self, client, make_order):
        order = await make_order()
        payload = {"staffId": str(uuid.uuid4()), "reasonCode": "customer_request", "refundType": "none", "sendEmail": False}
        assert (await client.post(f"/api/v1/orders/{order.id}/cancel", json=payload)).status_code == 200
        resp = await client.post(f"/api/v1/orders/{order.id}/cancel", json=payload)
        assert resp.status_code == 400
        assert resp.json()["code"] == "ERR_ALREADY_CANCELLED"


class TestAuth:

    async def test_api_key_required_when_configured(self, client, monkeypatch):
        monkeypatch.setattr(settings, "API_KEY", "secret")
        resp = await client.get(f"/api/v1/quotes/{uuid.uuid4()}/processing-status")
        assert resp.status_code == 401
        resp = await client.get(f"/api/v1/quotes/{uuid.uuid4()}/processing-status", headers={"X-API-Key": "secret"})
        assert resp.status_code == 404

    async def test_cron_secret(self, client, monkeypatch):
        monkeypatch.setattr(settings, "CRON_SECRET", "tick")
        assert (await client.post("/api/v1/maintenance/expire-quotes")).status_code == 401
        resp = await client.post("/api/v1/maintenance/expire-quotes", headers={"Authorization": "Bearer tick"})
        assert resp.status_code == 200
        assert resp.json() == {"success": True, "expired": 0, "skipped": 0}
