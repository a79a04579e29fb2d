"""
Top-level API router.
Combines all sub-routers into a single router.
"""

from fastapi import APIRouter

from quotedesk.api.health import router as health_router
from quotedesk.api.hitl import router as hitl_router
from quotedesk.api.maintenance import router as maintenance_router
from quotedesk.api.orders import router as orders_router
from quotedesk.api.quotes import router as quotes_router

api_router = APIRouter()

api_router.include_router(health_router)
api_router.include_router(quotes_router)
api_router.include_router(hitl_router)
api_router.include_router(orders_router)
api_router.include_router(maintenance_router)
