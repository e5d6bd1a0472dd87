"""Calendar router - FastAPI endpoints for events, custody schedules and children"""

import logging
from datetime import datetime
from typing import Iterable

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from sqlalchemy.orm import Session

from ...auth import get_current_user
from ...database import get_db
from ...models import CalendarEvent, Child, CustodySchedule, User
from ..external_calendar.dependencies import get_sync_orchestrator, get_token_vault
from ..external_calendar.service import ExternalCalendarService
from ..external_calendar.sync import SyncOrchestrator
from ..external_calendar.token_vault import TokenVault
from ..external_calendar.translation import default_color
from ..external_calendar.visibility import DisplayItem, project
from .schemas import (
    ChildCreate,
    ChildResponse,
    ChildUpdate,
    EventCreate,
    EventListResponse,
    EventResponse,
    EventUpdate,
    ScheduleCreate,
    ScheduleResponse,
    StatusUpdate,
)
from .service import ChildStore, EventStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/calendar", tags=["Calendar"])


def get_event_store(db: Session = Depends(get_db)) -> EventStore:
    """Dependency injection for EventStore"""
    return EventStore(db)


def get_external_calendar_service(
    db: Session = Depends(get_db),
    vault: TokenVault = Depends(get_token_vault),
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
) -> ExternalCalendarService:
    return ExternalCalendarService(db, vault, orchestrator)


def schedule_push(
    background_tasks: BackgroundTasks, orchestrator: SyncOrchestrator, user_ids: Iterable[int]
) -> None:
    """Push local changes to the affected users' external calendars after the response"""
    user_ids = sorted(set(user_ids))
    if user_ids:
        background_tasks.add_task(orchestrator.sync_users, user_ids)


def event_response(
    event: CalendarEvent, visible: bool = True, color=None, out_of_sync: bool = False
) -> EventResponse:
    response = EventResponse.model_validate(event)
    return response.model_copy(
        update={
            "visible": visible,
            "display_color": color or event.color or default_color(event.event_type),
            "possibly_out_of_sync": out_of_sync,
        }
    )


def schedule_response(schedule: CustodySchedule) -> ScheduleResponse:
    return ScheduleResponse(
        id=schedule.id,
        title=schedule.title,
        description=schedule.description,
        start_date=schedule.start_date,
        end_date=schedule.end_date,
        schedule_type=schedule.schedule_type,
        schedule_pattern=schedule.schedule_pattern,
        is_active=schedule.is_active,
        status=schedule.status,
        created_by_id=schedule.created_by_id,
        parent_ids=sorted(schedule.parent_ids),
        child_ids=sorted(child.id for child in schedule.children),
        created_at=schedule.created_at,
    )


# ============================================================================
# EVENTS
# ============================================================================


@router.get("/events", response_model=EventListResponse)
async def list_events(
    start: datetime = Query(...),
    end: datetime = Query(...),
    include_external: bool = Query(False),
    current_user: User = Depends(get_current_user),
    store: EventStore = Depends(get_event_store),
    external: ExternalCalendarService = Depends(get_external_calendar_service),
):
    """Events in a window, with custody schedules expanded and display settings applied"""
    events = store.list_events(current_user, start, end)
    selections = external.get_selections(current_user.id)
    out_of_sync = external.out_of_sync_event_ids(current_user.id)

    projected = project(
        [
            DisplayItem(
                payload=event,
                calendar_id=event.source_calendar_id,
                color=event.color,
                default_color=default_color(event.event_type),
            )
            for event in events
        ],
        selections,
    )
    response = EventListResponse(
        events=[
            event_response(item.payload, item.visible, item.color, item.payload.id in out_of_sync)
            for item in projected
        ]
    )

    if include_external:
        response.external_events = [
            item.payload.model_copy(update={"visible": item.visible, "display_color": item.color})
            for item in await external.overlay_events(current_user, start, end)
        ]
    return response


@router.get("/events/{event_id}", response_model=EventResponse)
async def get_event(
    event_id: int,
    current_user: User = Depends(get_current_user),
    store: EventStore = Depends(get_event_store),
):
    return event_response(store.get_event(event_id, current_user))


@router.post("/events", response_model=EventResponse, status_code=201)
async def create_event(
    data: EventCreate,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(get_current_user),
    store: EventStore = Depends(get_event_store),
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
):
    """Create an event and push it to connected calendars"""
    event = store.create_event(data, current_user)
    schedule_push(background_tasks, orchestrator, store.sync_user_ids(event))
    return event_response(event)


@router.put("/events/{event_id}", response_model=EventResponse)
async def update_event(
    event_id: int,
    data: EventUpdate,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(get_current_user),
    store: EventStore = Depends(get_event_store),
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
):
    """Update an event (creator or responsible parent only)"""
    previous_parent = store.get_event(event_id, current_user).responsible_parent_id
    event = store.update_event(event_id, data, current_user)
    user_ids = store.sync_user_ids(event)
    if previous_parent:
        user_ids.add(previous_parent)
    schedule_push(background_tasks, orchestrator, user_ids)
    return event_response(event)


@router.put("/events/{event_id}/status", response_model=EventResponse)
async def set_event_status(
    event_id: int,
    data: StatusUpdate,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(get_current_user),
    store: EventStore = Depends(get_event_store),
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
):
    """Approve or reject an event proposed by the co-parent"""
    event = store.set_event_status(event_id, data.status, current_user)
    schedule_push(background_tasks, orchestrator, store.sync_user_ids(event))
    return event_response(event)


@router.delete("/events/{event_id}")
async def delete_event(
    event_id: int,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(get_current_user),
    store: EventStore = Depends(get_event_store),
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
):
    """Delete an event (creator or responsible parent only)"""
    user_ids = store.delete_event(event_id, current_user)
    schedule_push(background_tasks, orchestrator, user_ids)
    return {"message": "Event deleted"}


# ============================================================================
# CUSTODY SCHEDULES
# ============================================================================


@router.get("/custody-schedules", response_model=list[ScheduleResponse])
async def list_schedules(
    current_user: User = Depends(get_current_user),
    store: EventStore = Depends(get_event_store),
):
    return [schedule_response(s) for s in store.list_schedules(current_user)]


@router.post("/custody-schedules", response_model=ScheduleResponse, status_code=201)
async def create_schedule(
    data: ScheduleCreate,
    current_user: User = Depends(get_current_user),
    store: EventStore = Depends(get_event_store),
):
    """Propose a custody schedule; events are generated once a co-parent approves it"""
    return schedule_response(store.create_schedule(data, current_user))


@router.put("/custody-schedules/{schedule_id}/status", response_model=ScheduleResponse)
async def set_schedule_status(
    schedule_id: int,
    data: StatusUpdate,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(get_current_user),
    store: EventStore = Depends(get_event_store),
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
):
    """Approve or reject a custody schedule"""
    created = store.set_schedule_status(schedule_id, data.status, current_user)
    schedule = store.get_schedule(schedule_id)
    if created:
        schedule_push(background_tasks, orchestrator, schedule.parent_ids)
    return schedule_response(schedule)


@router.delete("/custody-schedules/{schedule_id}")
async def delete_schedule(
    schedule_id: int,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(get_current_user),
    store: EventStore = Depends(get_event_store),
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
):
    """Delete a custody schedule and the events it generated that were not edited"""
    user_ids = store.delete_schedule(schedule_id, current_user)
    schedule_push(background_tasks, orchestrator, user_ids)
    return {"message": "Custody schedule deleted"}


# ============================================================================
# CHILDREN
# ============================================================================


def get_child_store(db: Session = Depends(get_db)) -> ChildStore:
    return ChildStore(db)


def child_response(child: Child) -> ChildResponse:
    return ChildResponse(
        id=child.id,
        first_name=child.first_name,
        last_name=child.last_name,
        date_of_birth=child.date_of_birth,
        color=child.color,
        notes=child.notes,
        parent_ids=sorted(parent.id for parent in child.parents),
        created_at=child.created_at,
    )


@router.get("/children", response_model=list[ChildResponse])
async def list_children(
    current_user: User = Depends(get_current_user),
    children: ChildStore = Depends(get_child_store),
):
    """Children linked to the current parent"""
    return [child_response(child) for child in children.list_children(current_user)]


@router.post("/children", response_model=ChildResponse, status_code=201)
async def create_child(
    data: ChildCreate,
    current_user: User = Depends(get_current_user),
    children: ChildStore = Depends(get_child_store),
):
    return child_response(children.create_child(data, current_user))


@router.get("/children/{child_id}", response_model=ChildResponse)
async def get_child(
    child_id: int,
    current_user: User = Depends(get_current_user),
    children: ChildStore = Depends(get_child_store),
):
    return child_response(children.get_child(child_id, current_user))


@router.put("/children/{child_id}", response_model=ChildResponse)
async def update_child(
    child_id: int,
    data: ChildUpdate,
    current_user: User = Depends(get_current_user),
    children: ChildStore = Depends(get_child_store),
):
    return child_response(children.update_child(child_id, data, current_user))


@router.delete("/children/{child_id}")
async def delete_child(
    child_id: int,
    current_user: User = Depends(get_current_user),
    children: ChildStore = Depends(get_child_store),
):
    """Delete a child profile; events and schedules that listed the child are kept"""
    children.delete_child(child_id, current_user)
    return {"message": "Child deleted"}
