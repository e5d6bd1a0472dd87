"""Calendar service - Business logic for events, custody schedules and children"""

import logging
from datetime import date, datetime, time, timedelta
from typing import Optional

from fastapi import HTTPException
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...config import MATERIALIZE_WINDOW_DAYS
from ...errors import InvalidTimeRange, NotFound, PermissionDenied
from ...models import CalendarEvent, Child, CustodySchedule, User, to_naive_utc, utcnow
from ..external_calendar.link_registry import ExternalLinkRegistry
from .patterns import CUSTODY_EVENT_TYPE, expand, parse_pattern
from .repository import CalendarRepository
from .schemas import ChildCreate, ChildUpdate, EventCreate, EventUpdate, ScheduleCreate

logger = logging.getLogger(__name__)

# Fields a direct edit may change; status, creator and schedule linkage are managed elsewhere
EDITABLE_EVENT_FIELDS = (
    "title",
    "description",
    "start_time",
    "end_time",
    "is_all_day",
    "location",
    "event_type",
    "responsible_parent_id",
    "color",
    "notes",
)
REQUIRED_EVENT_FIELDS = {"title", "start_time", "end_time", "is_all_day", "event_type"}


def all_day_bounds(first_day: date, last_day: Optional[date] = None) -> tuple[datetime, datetime]:
    """Stored start/end pair for an all-day span, inclusive of last_day"""
    last_day = last_day or first_day
    return datetime.combine(first_day, time.min), datetime.combine(last_day, time(23, 59, 59))


class EventStore:
    """Service layer for calendar events and custody schedules"""

    def __init__(self, db: Session):
        self.db = db
        self.repo = CalendarRepository()
        self.links = ExternalLinkRegistry(db)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def list_events(self, user: User, start: datetime, end: datetime) -> list[CalendarEvent]:
        """Events overlapping the window that the user may see, materializing schedules first"""
        start, end = to_naive_utc(start), to_naive_utc(end)
        if end < start:
            raise InvalidTimeRange("Window end must not be before window start")

        for schedule in self.repo.get_materializable_schedules(
            self.db, user.id, start.date(), end.date()
        ):
            self.materialize_schedule_window(schedule.id, start.date(), end.date())

        return self.repo.get_events_in_window(self.db, user.id, start, end)

    def get_event(self, event_id: int, user: User) -> CalendarEvent:
        event = self.repo.get_event(self.db, event_id)
        if not event:
            raise NotFound("Event not found")
        if not self.repo.user_can_see(self.db, event_id, user.id):
            raise PermissionDenied("Not authorized to view this event")
        return event

    def create_event(self, data: EventCreate, user: User) -> CalendarEvent:
        """Create a one-off event owned by the caller"""
        logger.info(f"📥 Creating event for user_id: {user.id}")

        start_time, end_time = self._normalize_range(
            to_naive_utc(data.start_time), to_naive_utc(data.end_time), data.is_all_day
        )
        self._check_responsible_parent(data.responsible_parent_id)

        event = self.repo.create_event(
            self.db,
            title=data.title,
            description=data.description,
            start_time=start_time,
            end_time=end_time,
            is_all_day=data.is_all_day,
            location=data.location,
            event_type=data.event_type,
            responsible_parent_id=data.responsible_parent_id,
            created_by_id=user.id,
            status=data.status,
            color=data.color,
            notes=data.notes,
        )
        event.children = self._load_children(data.child_ids)
        self.db.commit()
        self.db.refresh(event)

        logger.info(f"✅ Event {event.id} created by user {user.id}")
        return event

    def update_event(self, event_id: int, data: EventUpdate, user: User) -> CalendarEvent:
        """Edit an event under a row lock; schedule-derived events become detached"""
        event = self.repo.get_event_for_update(self.db, event_id)
        if not event:
            raise NotFound("Event not found")
        self._check_can_modify(event, user)

        updates = data.model_dump(exclude_unset=True)
        child_ids = updates.pop("child_ids", None)
        for key in ("start_time", "end_time"):
            if updates.get(key) is not None:
                updates[key] = to_naive_utc(updates[key])
        if "responsible_parent_id" in updates:
            self._check_responsible_parent(updates["responsible_parent_id"])

        is_all_day = updates.get("is_all_day", event.is_all_day)
        start_time, end_time = self._normalize_range(
            updates.get("start_time") or event.start_time,
            updates.get("end_time") or event.end_time,
            is_all_day,
        )
        updates["start_time"], updates["end_time"] = start_time, end_time

        for key, value in updates.items():
            if key not in EDITABLE_EVENT_FIELDS:
                continue
            if value is None and key in REQUIRED_EVENT_FIELDS:
                continue
            setattr(event, key, value)
        if child_ids is not None:
            event.children = self._load_children(child_ids)

        if event.schedule_id is not None and not event.detached:
            event.detached = True
            logger.info(f"✂️ Event {event.id} detached from schedule {event.schedule_id}")

        # Direct edits always count as a local change for the next push
        event.updated_at = utcnow()
        self.db.commit()
        self.db.refresh(event)

        logger.info(f"✅ Event {event.id} updated by user {user.id}")
        return event

    def set_event_status(self, event_id: int, status: str, user: User) -> CalendarEvent:
        """Approve or reject an event proposed to the caller"""
        event = self.repo.get_event_for_update(self.db, event_id)
        if not event:
            raise NotFound("Event not found")
        if event.responsible_parent_id != user.id or event.created_by_id == user.id:
            raise PermissionDenied("Only the responsible parent can approve or reject this event")

        event.status = status
        event.updated_at = utcnow()
        self.db.commit()
        self.db.refresh(event)

        logger.info(f"✅ Event {event.id} marked {status} by user {user.id}")
        return event

    def delete_event(self, event_id: int, user: User) -> set[int]:
        """
        Delete an event; its external copies are removed by the next sync pass.

        Returns:
            Ids of the users whose external calendars mirrored the event
        """
        event = self.repo.get_event_for_update(self.db, event_id)
        if not event:
            raise NotFound("Event not found")
        self._check_can_modify(event, user)
        sync_user_ids = self.sync_user_ids(event)

        if event.schedule is not None:
            skipped = list(event.schedule.skipped_dates or [])
            if event.schedule_date and event.schedule_date.isoformat() not in skipped:
                skipped.append(event.schedule_date.isoformat())
                event.schedule.skipped_dates = skipped

        orphaned = self.links.orphan_event(event.id)
        self.db.delete(event)
        self.db.commit()

        logger.info(f"🗑️ Event {event_id} deleted by user {user.id} ({orphaned} external copies pending removal)")
        return sync_user_ids

    # ------------------------------------------------------------------
    # Custody schedules
    # ------------------------------------------------------------------

    def list_schedules(self, user: User) -> list[CustodySchedule]:
        return self.repo.get_schedules_for_user(self.db, user.id)

    def get_schedule(self, schedule_id: int) -> CustodySchedule:
        schedule = self.repo.get_schedule(self.db, schedule_id)
        if not schedule:
            raise NotFound("Custody schedule not found")
        return schedule

    def create_schedule(self, data: ScheduleCreate, user: User) -> CustodySchedule:
        """Propose a custody schedule; it stays pending until a co-parent approves it"""
        logger.info(f"📥 Creating {data.schedule_type} custody schedule for user_id: {user.id}")

        pattern = parse_pattern(data.schedule_type, data.schedule_pattern, data.start_date, data.end_date)

        parent_ids = set(data.parent_ids) | {user.id}
        parents = self.repo.get_users(self.db, sorted(parent_ids))
        if len(parents) != len(parent_ids):
            raise NotFound("One or more parents not found")

        schedule = CustodySchedule(
            title=data.title,
            description=data.description,
            start_date=data.start_date,
            end_date=data.end_date,
            schedule_type=data.schedule_type,
            schedule_pattern=pattern.to_dict(),
            is_active=data.is_active,
            created_by_id=user.id,
            status="pending",
            skipped_dates=[],
        )
        schedule.parents = parents
        schedule.children = self._load_children(data.child_ids)
        self.db.add(schedule)
        self.db.commit()
        self.db.refresh(schedule)

        logger.info(f"✅ Custody schedule {schedule.id} proposed by user {user.id}")
        return schedule

    def set_schedule_status(self, schedule_id: int, status: str, user: User) -> list[CalendarEvent]:
        """
        Approve or reject a pending schedule.

        Only a schedule parent other than the creator may decide, unless the creator
        is the schedule's only parent. Approval validates the pattern against the
        schedule's parents and materializes the current window.

        Returns:
            Events created by the approval
        """
        schedule = self.get_schedule(schedule_id)
        parent_ids = schedule.parent_ids
        if user.id not in parent_ids:
            raise PermissionDenied("Not a parent on this custody schedule")
        if user.id == schedule.created_by_id and parent_ids != {user.id}:
            raise PermissionDenied("The co-parent must approve or reject this custody schedule")
        if schedule.status != "pending":
            raise HTTPException(status_code=400, detail=f"Custody schedule is already {schedule.status}")

        if status == "approved":
            pattern = parse_pattern(
                schedule.schedule_type, schedule.schedule_pattern, schedule.start_date, schedule.end_date
            )
            pattern.validate(parent_ids)

        schedule.status = status
        self.db.commit()
        logger.info(f"✅ Custody schedule {schedule.id} marked {status} by user {user.id}")

        if status != "approved":
            return []
        today = utcnow().date()
        return self.materialize_schedule_window(
            schedule.id, today, today + timedelta(days=MATERIALIZE_WINDOW_DAYS)
        )

    def materialize_schedule_window(
        self, schedule_id: int, start: date, end: date
    ) -> list[CalendarEvent]:
        """
        Insert the schedule-derived events missing from [start, end].

        Existing events for a (schedule, date) are authoritative and skipped dates are
        never regenerated, so repeated or overlapping calls create nothing twice.
        """
        schedule = self.get_schedule(schedule_id)
        if schedule.status != "approved" or not schedule.is_active:
            return []

        pattern = parse_pattern(
            schedule.schedule_type, schedule.schedule_pattern, schedule.start_date, schedule.end_date
        )
        instances = expand(pattern, start, end)
        if not instances:
            return []

        skipped = set(schedule.skipped_dates or [])
        created = []
        for attempt in range(2):
            existing = self.repo.get_schedule_event_dates(self.db, schedule.id, start, end)
            created = []
            for instance in instances:
                if instance.date in existing or instance.date.isoformat() in skipped:
                    continue
                start_time, end_time = all_day_bounds(instance.date)
                event = CalendarEvent(
                    title=schedule.title,
                    description=schedule.description,
                    start_time=start_time,
                    end_time=end_time,
                    is_all_day=True,
                    event_type=CUSTODY_EVENT_TYPE,
                    responsible_parent_id=instance.responsible_parent_id,
                    created_by_id=schedule.created_by_id,
                    status="approved",
                    schedule_id=schedule.id,
                    schedule_date=instance.date,
                )
                event.children = list(schedule.children)
                self.db.add(event)
                created.append(event)
            try:
                self.db.commit()
                break
            except IntegrityError:
                # Another request materialized an overlapping window first
                self.db.rollback()
                logger.warning(f"⚠️ Concurrent materialization of schedule {schedule_id}, retrying")
                created = []
                schedule = self.get_schedule(schedule_id)
                skipped = set(schedule.skipped_dates or [])
                if attempt == 1:
                    raise

        if created:
            logger.info(
                f"📅 Materialized {len(created)} custody events for schedule {schedule.id} "
                f"({start.isoformat()}..{end.isoformat()})"
            )
        return created

    def delete_schedule(self, schedule_id: int, user: User) -> set[int]:
        """
        Delete a schedule and the derived events nobody edited directly.
        Detached events survive as one-off events.

        Returns:
            Ids of the schedule's parents, whose external calendars need a push
        """
        schedule = self.get_schedule(schedule_id)
        if schedule.created_by_id != user.id:
            raise PermissionDenied("Only the creator can delete this custody schedule")

        parent_ids = schedule.parent_ids
        removed = 0
        for event in list(schedule.events):
            if event.detached:
                event.schedule_id = None
                continue
            self.links.orphan_event(event.id)
            self.db.delete(event)
            removed += 1

        self.db.delete(schedule)
        self.db.commit()

        logger.info(f"🗑️ Custody schedule {schedule_id} deleted by user {user.id} ({removed} events removed)")
        return parent_ids

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def sync_user_ids(event: CalendarEvent) -> set[int]:
        """Users whose external calendars mirror this event"""
        user_ids = {event.created_by_id}
        if event.responsible_parent_id:
            user_ids.add(event.responsible_parent_id)
        if event.schedule is not None:
            user_ids |= event.schedule.parent_ids
        return user_ids

    def _check_can_modify(self, event: CalendarEvent, user: User) -> None:
        if user.id not in (event.created_by_id, event.responsible_parent_id):
            logger.warning(f"⚠️ User {user.id} denied modifying event {event.id}")
            raise PermissionDenied("Only the creator or responsible parent can modify this event")

    def _check_responsible_parent(self, user_id: Optional[int]) -> None:
        if user_id is not None and not self.repo.get_users(self.db, [user_id]):
            raise NotFound("Responsible parent not found")

    def _load_children(self, child_ids: list[int]):
        children = self.repo.get_children(self.db, list(dict.fromkeys(child_ids)))
        if len(children) != len(set(child_ids)):
            raise NotFound("One or more children not found")
        return children

    @staticmethod
    def _normalize_range(start: datetime, end: datetime, is_all_day: bool) -> tuple[datetime, datetime]:
        if end < start:
            raise InvalidTimeRange()
        if is_all_day:
            return all_day_bounds(start.date(), end.date())
        return start, end


class ChildStore:
    """Service layer for child profiles; a parent sees and manages the children linked to them"""

    def __init__(self, db: Session):
        self.db = db
        self.repo = CalendarRepository()

    def list_children(self, user: User) -> list[Child]:
        return self.repo.get_children_for_parent(self.db, user.id)

    def get_child(self, child_id: int, user: User) -> Child:
        child = self.repo.get_child(self.db, child_id)
        if not child:
            raise NotFound("Child not found")
        if user.id not in {parent.id for parent in child.parents}:
            raise PermissionDenied("Not authorized to access this child")
        return child

    def create_child(self, data: ChildCreate, user: User) -> Child:
        """Add a child profile linked to the caller and any co-parents named"""
        logger.info(f"📥 Creating child profile for user_id: {user.id}")

        parent_ids = set(data.parent_ids) | {user.id}
        parents = self.repo.get_users(self.db, sorted(parent_ids))
        if len(parents) != len(parent_ids):
            raise NotFound("One or more parents not found")

        child = Child(
            first_name=data.first_name,
            last_name=data.last_name,
            date_of_birth=data.date_of_birth,
            color=data.color,
            notes=data.notes,
        )
        child.parents = parents
        self.db.add(child)
        self.db.commit()
        self.db.refresh(child)

        logger.info(f"✅ Child {child.id} created by user {user.id}")
        return child

    def update_child(self, child_id: int, data: ChildUpdate, user: User) -> Child:
        child = self.get_child(child_id, user)
        changes = data.model_dump(exclude_unset=True)
        for field in ("first_name", "last_name"):
            if field in changes and changes[field] is None:
                del changes[field]
        for key, value in changes.items():
            setattr(child, key, value)
        self.db.commit()
        self.db.refresh(child)

        logger.info(f"✅ Child {child.id} updated by user {user.id}")
        return child

    def delete_child(self, child_id: int, user: User) -> None:
        child = self.get_child(child_id, user)
        self.repo.delete_child(self.db, child)
        self.db.commit()
        logger.info(f"🗑️ Child {child_id} deleted by user {user.id}")
