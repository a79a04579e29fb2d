"""
/api/v1/maintenance endpoints.
Called by the scheduler; protected by CRON_SECRET instead of the API key.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from quotedesk.dependencies import get_db, get_file_store, verify_cron_secret
from quotedesk.quotes.maintenance import expire_stale_quotes, purge_drafts
from quotedesk.schemas.orders import ExpireQuotesResponse, PurgeDraftsResponse
from quotedesk.storage.file_store import FileStore

router = APIRouter(prefix="/api/v1/maintenance", tags=["maintenance"], dependencies=[Depends(verify_cron_secret)])


@router.post("/expire-quotes", response_model=ExpireQuotesResponse)
async def expire_quotes(session: AsyncSession = Depends(get_db)):
    summary = await expire_stale_quotes(session)
    return ExpireQuotesResponse(expired=summary.expired, skipped=summary.skipped)


@router.post("/purge-drafts", response_model=PurgeDraftsResponse)
async def purge(
    session: AsyncSession = Depends(get_db),
    store: FileStore = Depends(get_file_store),
):
    summary = await purge_drafts(session, store=store)
    return PurgeDraftsResponse(purged=summary.purged, files_deleted=summary.files_deleted)
