"""Process-wide external calendar components, shared by the API and the worker"""

from functools import lru_cache

from ...database import SessionLocal
from ...services.google_calendar_client import GoogleCalendarClient
from .sync import SyncOrchestrator
from .token_vault import TokenVault


@lru_cache
def get_google_client() -> GoogleCalendarClient:
    return GoogleCalendarClient()


@lru_cache
def get_token_vault() -> TokenVault:
    # One vault per process so the per-user refresh locks are shared
    return TokenVault(get_google_client())


@lru_cache
def get_sync_orchestrator() -> SyncOrchestrator:
    return SyncOrchestrator(SessionLocal, get_google_client(), get_token_vault())
