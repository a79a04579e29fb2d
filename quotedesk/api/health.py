"""
Health check endpoint.
/health always returns 200 so the platform healthcheck passes;
DB connectivity is reported but does not block the response.
"""

from fastapi import APIRouter
from sqlalchemy import text

from quotedesk.config import settings
from quotedesk.models.database import async_session_factory

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Verify the API is running and test DB connectivity."""
    db_ok = False
    db_error = None
    try:
        async with async_session_factory() as session:
            result = await session.execute(text("SELECT 1"))
            db_ok = result.scalar() == 1
    except Exception as e:
        db_ok = False
        db_error = str(e)[:200]

    response = {
        "status": "healthy" if db_ok else "degraded",
        "version": settings.APP_VERSION,
        "database": "connected" if db_ok else "unreachable",
        "integrations": {
            "vision": bool(settings.ANTHROPIC_API_KEY),
            "stripe": bool(settings.STRIPE_SECRET_KEY),
            "email": bool(settings.BREVO_API_KEY),
        },
    }
    if db_error:
        response["database_error"] = db_error

    return response


@router.get("/health/ready")
async def readiness_check():
    """Readiness check: ready only when the database answers."""
    try:
        async with async_session_factory() as session:
            await session.execute(text("SELECT 1"))
            return {"ready": True}
    except Exception:
        return {"ready": False}
