"""External calendar router - connection, selection and sync endpoints"""

import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from redis.exceptions import RedisError
from sqlalchemy.orm import Session

from ...auth import get_current_user, verify_oauth_state
from ...database import get_db
from ...errors import NotConnected, ReauthRequired
from ...models import User
from ...worker import enqueue_user_sync, get_sync_job_status, sync_job_id
from .dependencies import get_sync_orchestrator, get_token_vault
from .schemas import (
    CalendarInfo,
    ConnectRequest,
    SelectionRequest,
    StatusResponse,
    SyncJobResponse,
    SyncResponse,
    ToggleSyncRequest,
)
from .service import ExternalCalendarService
from .sync import DISCONNECTED, SyncOrchestrator, SyncResult
from .token_vault import TokenVault

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/external-calendar", tags=["External Calendar"])


def get_external_calendar_service(
    db: Session = Depends(get_db),
    vault: TokenVault = Depends(get_token_vault),
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
) -> ExternalCalendarService:
    """Dependency injection for ExternalCalendarService"""
    return ExternalCalendarService(db, vault, orchestrator)


def _sync_response(result: SyncResult) -> SyncResponse:
    return SyncResponse(
        status=result.status,
        needsReauth=result.needs_reauth,
        pushedCreated=result.pushed_created,
        pushedUpdated=result.pushed_updated,
        pushedDeleted=result.pushed_deleted,
        pulledCreated=result.pulled_created,
        pulledUpdated=result.pulled_updated,
        pulledDeleted=result.pulled_deleted,
        conflicts=result.conflicts,
        failedEventIds=result.failed_event_ids,
        failedExternalIds=result.failed_external_ids,
        error=result.error,
    )


@router.get("/status", response_model=StatusResponse)
async def get_status(
    current_user: User = Depends(get_current_user),
    service: ExternalCalendarService = Depends(get_external_calendar_service),
):
    """Get external calendar connection status"""
    return service.status(current_user)


@router.get("/authorize")
async def get_authorization_url(
    current_user: User = Depends(get_current_user),
    vault: TokenVault = Depends(get_token_vault),
):
    """Initiate the provider OAuth flow"""
    from ...config import GOOGLE_CLIENT_ID, GOOGLE_CLIENT_SECRET

    if not GOOGLE_CLIENT_ID or not GOOGLE_CLIENT_SECRET:
        raise HTTPException(status_code=500, detail="Google Calendar not configured")

    logger.info(f"External calendar OAuth initiated for user: {current_user.email}")
    return {"authorization_url": vault.authorization_url(current_user.id)}


@router.post("/connect", response_model=StatusResponse)
async def connect(
    data: ConnectRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    vault: TokenVault = Depends(get_token_vault),
    service: ExternalCalendarService = Depends(get_external_calendar_service),
):
    """Handle the OAuth callback code and connect the user's calendar"""
    if data.state is not None and not verify_oauth_state(data.state, current_user.id):
        raise HTTPException(status_code=400, detail="Invalid OAuth state")

    await vault.connect(db, current_user.id, data.code)
    return service.status(current_user)


@router.post("/disconnect")
async def disconnect(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    vault: TokenVault = Depends(get_token_vault),
):
    """Disconnect the external calendar; events already mirrored stay in it"""
    await vault.disconnect(db, current_user.id)
    return {"success": True, "message": "External calendar disconnected"}


@router.get("/calendars", response_model=list[CalendarInfo])
async def list_calendars(
    current_user: User = Depends(get_current_user),
    service: ExternalCalendarService = Depends(get_external_calendar_service),
):
    """List provider calendars with the user's display selection"""
    return await service.list_calendars(current_user)


@router.post("/selection")
async def save_selection(
    data: SelectionRequest,
    current_user: User = Depends(get_current_user),
    service: ExternalCalendarService = Depends(get_external_calendar_service),
):
    """Save which provider calendars are shown and in which color"""
    selections = service.save_selection(current_user, data.calendars)
    return {
        "calendars": [
            {
                "calendar_id": s.external_calendar_id,
                "calendar_name": s.calendar_name,
                "color": s.color,
                "selected": s.selected,
            }
            for s in selections
        ]
    }


@router.post("/toggle-sync", response_model=StatusResponse)
async def toggle_sync(
    data: ToggleSyncRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    vault: TokenVault = Depends(get_token_vault),
    service: ExternalCalendarService = Depends(get_external_calendar_service),
):
    """Enable or disable two-way sync"""
    vault.set_sync_enabled(db, current_user.id, data.enabled)
    return service.status(current_user)


@router.post("/sync")
async def sync_now(
    background: bool = Query(False),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    vault: TokenVault = Depends(get_token_vault),
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
):
    """Run a sync pass now, or queue one when background=true"""
    vault.require_account(db, current_user.id)

    if background:
        try:
            job_id = await enqueue_user_sync(current_user.id)
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            logger.error(f"❌ Failed to queue sync for user {current_user.id}: {str(e)}")
            raise HTTPException(status_code=503, detail="Sync queue unavailable") from e
        return SyncJobResponse(jobId=job_id, status="queued")

    result = await orchestrator.sync_all(current_user.id)
    if result.needs_reauth:
        raise ReauthRequired(result.error)
    if result.status == DISCONNECTED:
        raise NotConnected()
    return _sync_response(result)


@router.get("/sync/jobs/{job_id}", response_model=SyncJobResponse)
async def get_sync_job(job_id: str, current_user: User = Depends(get_current_user)):
    """Poll a queued sync job"""
    if job_id != sync_job_id(current_user.id):
        raise HTTPException(status_code=404, detail="Job not found")

    try:
        status = await get_sync_job_status(job_id)
    except (RedisError, OSError, asyncio.TimeoutError) as e:
        logger.warning(f"⏰ Sync queue unreachable while polling {job_id}: {str(e)}")
        raise HTTPException(status_code=504, detail="Timeout connecting to job queue - please try again") from e

    if status is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return SyncJobResponse(**status)
