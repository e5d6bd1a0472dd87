"""Calendar domain schemas - Pydantic models for validation"""

from datetime import date, datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator

from ...shared.validators import validate_hex_color

EventType = Literal["custody_transfer", "appointment", "activity", "school", "other"]
ApprovalStatus = Literal["pending", "approved", "rejected"]
ScheduleType = Literal["weekly", "biweekly", "monthly", "custom"]


class EventCreate(BaseModel):
    """Schema for creating a calendar event"""

    title: str
    description: Optional[str] = None
    start_time: datetime
    end_time: datetime
    is_all_day: bool = False
    location: Optional[str] = None
    event_type: EventType = "other"
    responsible_parent_id: Optional[int] = None
    status: ApprovalStatus = "approved"
    color: Optional[str] = None
    notes: Optional[str] = None
    child_ids: list[int] = []

    @field_validator("color")
    @classmethod
    def validate_color(cls, v):
        return validate_hex_color(v)


class EventUpdate(BaseModel):
    """Schema for updating an event; omitted fields are left unchanged"""

    title: Optional[str] = None
    description: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    is_all_day: Optional[bool] = None
    location: Optional[str] = None
    event_type: Optional[EventType] = None
    responsible_parent_id: Optional[int] = None
    color: Optional[str] = None
    notes: Optional[str] = None
    child_ids: Optional[list[int]] = None

    @field_validator("color")
    @classmethod
    def validate_color(cls, v):
        return validate_hex_color(v)


class StatusUpdate(BaseModel):
    status: Literal["approved", "rejected"]


class EventResponse(BaseModel):
    """Schema for event response, including the caller's visibility projection"""

    id: int
    title: str
    description: Optional[str] = None
    start_time: datetime
    end_time: datetime
    is_all_day: bool
    location: Optional[str] = None
    event_type: str
    responsible_parent_id: Optional[int] = None
    created_by_id: int
    status: str
    color: Optional[str] = None
    notes: Optional[str] = None
    child_ids: list[int] = []
    schedule_id: Optional[int] = None
    schedule_date: Optional[date] = None
    detached: bool = False
    source_calendar_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    visible: bool = True
    display_color: Optional[str] = None
    possibly_out_of_sync: bool = False

    class Config:
        from_attributes = True


class ExternalEventResponse(BaseModel):
    """Read-only event shown from a provider calendar the user selected for display"""

    external_event_id: str
    calendar_id: str
    calendar_name: Optional[str] = None
    title: str
    description: Optional[str] = None
    location: Optional[str] = None
    start_time: datetime
    end_time: datetime
    is_all_day: bool = False
    visible: bool = True
    display_color: Optional[str] = None


class EventListResponse(BaseModel):
    events: list[EventResponse]
    external_events: list[ExternalEventResponse] = []


class ScheduleCreate(BaseModel):
    """Schema for proposing a custody schedule"""

    title: str
    description: Optional[str] = None
    start_date: date
    end_date: Optional[date] = None
    schedule_type: ScheduleType = "weekly"
    schedule_pattern: dict
    is_active: bool = True
    child_ids: list[int] = []
    parent_ids: list[int] = []


class ScheduleResponse(BaseModel):
    id: int
    title: str
    description: Optional[str] = None
    start_date: date
    end_date: Optional[date] = None
    schedule_type: str
    schedule_pattern: dict
    is_active: bool
    status: str
    created_by_id: int
    parent_ids: list[int] = []
    child_ids: list[int] = []
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ChildCreate(BaseModel):
    """Schema for adding a child profile; the caller is always linked as a parent"""

    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    date_of_birth: Optional[date] = None
    color: Optional[str] = None
    notes: Optional[str] = None
    parent_ids: list[int] = []

    @field_validator("color")
    @classmethod
    def validate_color(cls, v):
        return validate_hex_color(v)


class ChildUpdate(BaseModel):
    first_name: Optional[str] = Field(None, min_length=1, max_length=100)
    last_name: Optional[str] = Field(None, min_length=1, max_length=100)
    date_of_birth: Optional[date] = None
    color: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("color")
    @classmethod
    def validate_color(cls, v):
        return validate_hex_color(v)


class ChildResponse(BaseModel):
    id: int
    first_name: str
    last_name: str
    date_of_birth: Optional[date] = None
    color: Optional[str] = None
    notes: Optional[str] = None
    parent_ids: list[int] = []
    created_at: Optional[datetime] = None
