"""
Shared test fixtures.
Database tests run against an in-memory SQLite database (aiosqlite);
outbound HTTP goes through httpx.MockTransport.
"""

import json
import os
import tempfile
import uuid
from decimal import Decimal

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("FILE_STORE_ROOT", tempfile.mkdtemp(prefix="quotedesk-tests-"))

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from quotedesk.analysis.vision_client import VisionClient
from quotedesk.models.database import Base
from quotedesk.models.tables import (
    AIAnalysisResult,
    Customer,
    HITLThreshold,
    Order,
    Payment,
    Quote,
    QuoteFile,
    StaffUser,
)
from quotedesk.notifications.brevo import BrevoClient
from quotedesk.notifications.dispatcher import NotificationDispatcher
from quotedesk.storage.file_store import FileStore


# ── Database ─────────────────────────────────────────────────

@pytest.fixture
async def db_engine():
    engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, expire_on_commit=False, class_=AsyncSession)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def file_store(tmp_path):
    return FileStore(root=str(tmp_path / "files"))


# ── Seed helpers ─────────────────────────────────────────────

@pytest.fixture
def make_customer(session):
    async def _make(email="ana@example.com", full_name="Ana Souza") -> Customer:
        customer = Customer(email=email, full_name=full_name)
        session.add(customer)
        await session.commit()
        return customer
    return _make


@pytest.fixture
def make_staff(session):
    async def _make(role="reviewer", full_name="Reviewer", is_active=True) -> StaffUser:
        staff = StaffUser(full_name=full_name, role=role, is_active=is_active, email=f"{uuid.uuid4().hex[:6]}@staff.example")
        session.add(staff)
        await session.commit()
        return staff
    return _make


@pytest.fixture
def make_quote(session):
    async def _make(status="draft", **kwargs) -> Quote:
        kwargs.setdefault("tax_rate", Decimal("0.05"))
        quote = Quote(quote_number=f"Q-{uuid.uuid4().hex[:8].upper()}", status=status, **kwargs)
        session.add(quote)
        await session.commit()
        return quote
    return _make


@pytest.fixture
def make_file(session, file_store):
    async def _make(quote, data=b"\x89PNG fake image", name="scan.png", mime_type="image/png", **kwargs) -> QuoteFile:
        file_id = uuid.uuid4()
        path = file_store.save_bytes(f"{quote.id}/files/{file_id}/{name}", data)
        qf = QuoteFile(
            id=file_id,
            quote_id=quote.id,
            original_filename=name,
            storage_path=path,
            mime_type=mime_type,
            file_size=len(data),
            **kwargs,
        )
        session.add(qf)
        await session.commit()
        return qf
    return _make


@pytest.fixture
def make_analysis(session):
    async def _make(quote, quote_file, **kwargs) -> AIAnalysisResult:
        defaults = {
            "detected_language": "it",
            "language_confidence": Decimal("0.95"),
            "detected_document_type": "birth_certificate",
            "document_type_confidence": Decimal("0.95"),
            "assessed_complexity": "easy",
            "complexity_multiplier": Decimal("1.00"),
            "complexity_confidence": Decimal("0.95"),
            "ocr_confidence": Decimal("0.95"),
            "word_count": 225,
            "page_count": 1,
            "billable_pages": Decimal("1.00"),
            "base_rate": Decimal("65.00"),
            "line_total": Decimal("65.00"),
        }
        defaults.update(kwargs)
        row = AIAnalysisResult(quote_id=quote.id, quote_file_id=quote_file.id, **defaults)
        session.add(row)
        await session.commit()
        return row
    return _make


@pytest.fixture
def set_thresholds(session):
    async def _set(**values) -> None:
        for key, value in values.items():
            session.add(HITLThreshold(threshold_key=key, threshold_value=Decimal(str(value))))
        await session.commit()
    return _set


@pytest.fixture
def make_order(session, make_quote):
    async def _make(amount_paid="300.00", payment_method="stripe", payment_intent="pi_123", customer=None) -> Order:
        quote = await make_quote(status="converted", total=Decimal(amount_paid), customer_id=customer.id if customer else None)
        order = Order(
            order_number=f"ORD-{quote.quote_number}",
            quote_id=quote.id,
            customer_id=quote.customer_id,
            total_amount=Decimal(amount_paid),
            amount_paid=Decimal(amount_paid),
        )
        session.add(order)
        await session.flush()
        session.add(Payment(
            order_id=order.id,
            amount=Decimal(amount_paid),
            payment_method=payment_method,
            stripe_payment_intent_id=payment_intent,
        ))
        await session.commit()
        return order
    return _make


# ── Fake outbound HTTP ───────────────────────────────────────

def _vision_body(text: str) -> dict:
    return {
        "model": "claude-test",
        "content": [{"type": "text", "text": text}],
        "usage": {"input_tokens": 1200, "output_tokens": 150},
    }


@pytest.fixture
def vision_client():
    """Build a VisionClient whose API replies with the given JSON (or raw text)."""
    def _make(reply=None, status_code=200) -> VisionClient:
        def handler(request: httpx.Request) -> httpx.Response:
            if status_code >= 400:
                return httpx.Response(status_code, text="upstream unavailable")
            text = reply if isinstance(reply, str) else json.dumps(reply or {})
            return httpx.Response(200, json=_vision_body(text))
        return VisionClient(api_key="test-key", transport=httpx.MockTransport(handler))
    return _make


@pytest.fixture
def sent_emails():
    return []


@pytest.fixture
def dispatcher(sent_emails):
    """Dispatcher whose Brevo calls are captured in sent_emails."""
    def handler(request: httpx.Request) -> httpx.Response:
        sent_emails.append(json.loads(request.content))
        return httpx.Response(201, json={"messageId": f"<msg-{len(sent_emails)}@brevo>"})
    return NotificationDispatcher(BrevoClient(api_key="test-key", transport=httpx.MockTransport(handler)))


@pytest.fixture
def failing_dispatcher():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="smtp relay down")
    return NotificationDispatcher(BrevoClient(api_key="test-key", transport=httpx.MockTransport(handler)))


@pytest.fixture
def good_reply():
    return {
        "document_type": "birth_certificate",
        "detected_language": "it",
        "language_name": "Italian",
        "complexity": "medium",
        "word_count": 450,
        "page_count": 1,
        "suggested_label": "Italian Birth Certificate",
        "ocr_confidence": 0.95,
        "language_confidence": 0.97,
        "document_type_confidence": 0.93,
        "complexity_confidence": 0.9,
        "confidence": 0.94,
    }
