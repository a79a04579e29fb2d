"""
FastAPI dependency injection.
Provides DB sessions, outbound clients, file store, and API key / cron secret validation.
"""

from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from quotedesk.analysis.vision_client import VisionClient
from quotedesk.config import settings
from quotedesk.models.database import get_session
from quotedesk.notifications.dispatcher import NotificationDispatcher
from quotedesk.payments.stripe_client import StripeClient
from quotedesk.storage.file_store import FileStore


# ── Singleton instances ──────────────────────────────────────
_file_store: Optional[FileStore] = None
_dispatcher: Optional[NotificationDispatcher] = None
_vision_client: Optional[VisionClient] = None
_stripe_client: Optional[StripeClient] = None


def get_file_store() -> FileStore:
    """Get or create the file store singleton."""
    global _file_store
    if _file_store is None:
        _file_store = FileStore()
    return _file_store


def get_dispatcher() -> NotificationDispatcher:
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = NotificationDispatcher()
    return _dispatcher


def get_vision_client() -> VisionClient:
    global _vision_client
    if _vision_client is None:
        _vision_client = VisionClient()
    return _vision_client


def get_stripe_client() -> StripeClient:
    global _stripe_client
    if _stripe_client is None:
        _stripe_client = StripeClient()
    return _stripe_client


async def get_db() -> AsyncSession:
    """Yield an async DB session."""
    async for session in get_session():
        yield session


async def verify_api_key(
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
) -> Optional[str]:
    """
    Verify API key if configured.
    If API_KEY is not set, all requests are allowed (dev mode).
    """
    if settings.API_KEY is None:
        return None

    if x_api_key is None or x_api_key != settings.API_KEY:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
        )
    return x_api_key


async def verify_cron_secret(
    x_cron_secret: Optional[str] = Header(None, alias="X-Cron-Secret"),
    authorization: Optional[str] = Header(None),
) -> None:
    """
    Scheduled jobs authenticate with CRON_SECRET, either as X-Cron-Secret
    or as a Bearer token. Unset secret means open (dev mode).
    """
    if settings.CRON_SECRET is None:
        return None

    supplied = x_cron_secret
    if supplied is None and authorization and authorization.lower().startswith("bearer "):
        supplied = authorization[7:].strip()

    if supplied != settings.CRON_SECRET:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing cron secret",
        )
    return None
