"""External calendar schemas - Pydantic models for validation"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, field_validator

from ...shared.validators import validate_hex_color


class ConnectRequest(BaseModel):
    code: str
    state: Optional[str] = None


class ToggleSyncRequest(BaseModel):
    enabled: bool


class SelectionItem(BaseModel):
    calendar_id: str
    calendar_name: Optional[str] = None
    color: Optional[str] = None
    selected: bool = True

    @field_validator("color")
    @classmethod
    def validate_color(cls, v):
        return validate_hex_color(v)


class SelectionRequest(BaseModel):
    calendars: list[SelectionItem]


class StatusResponse(BaseModel):
    connected: bool
    syncEnabled: bool = False
    lastSyncedAt: Optional[datetime] = None
    needsReauth: bool = False
    calendarId: Optional[str] = None
    email: Optional[str] = None
    lastSyncError: Optional[str] = None
    state: str


class CalendarInfo(BaseModel):
    """Provider calendar merged with the user's display choice"""

    id: str
    name: Optional[str] = None
    color: Optional[str] = None
    selected: bool = True
    primary: bool = False
    isShared: bool = False


class SyncResponse(BaseModel):
    status: str
    needsReauth: bool = False
    pushedCreated: int = 0
    pushedUpdated: int = 0
    pushedDeleted: int = 0
    pulledCreated: int = 0
    pulledUpdated: int = 0
    pulledDeleted: int = 0
    conflicts: int = 0
    failedEventIds: list[int] = []
    failedExternalIds: list[str] = []
    error: Optional[str] = None


class SyncJobResponse(BaseModel):
    jobId: str
    status: str
    result: Optional[dict] = None
    error: Optional[str] = None
