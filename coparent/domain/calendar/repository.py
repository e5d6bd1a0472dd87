"""Calendar repository - Database operations for events, custody schedules and children"""

from datetime import date, datetime
from typing import Optional

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session, selectinload

from ...models import (
    CalendarEvent,
    Child,
    CustodySchedule,
    User,
    event_children,
    schedule_children,
    schedule_parents,
)


class CalendarRepository:
    """Repository for calendar event and custody schedule queries"""

    # Events
    @staticmethod
    def visible_to(user_id: int):
        """Filter clause for events a user may see"""
        schedule_ids = select(schedule_parents.c.schedule_id).where(schedule_parents.c.user_id == user_id)
        return or_(
            CalendarEvent.created_by_id == user_id,
            CalendarEvent.responsible_parent_id == user_id,
            CalendarEvent.schedule_id.in_(schedule_ids),
        )

    @staticmethod
    def hidden_from(user_id: int):
        """Negation of visible_to that also holds for rows with null links"""
        schedule_ids = select(schedule_parents.c.schedule_id).where(schedule_parents.c.user_id == user_id)
        return and_(
            CalendarEvent.created_by_id != user_id,
            or_(CalendarEvent.responsible_parent_id.is_(None), CalendarEvent.responsible_parent_id != user_id),
            or_(CalendarEvent.schedule_id.is_(None), CalendarEvent.schedule_id.notin_(schedule_ids)),
        )

    @staticmethod
    def get_event(db: Session, event_id: int) -> Optional[CalendarEvent]:
        return db.query(CalendarEvent).filter(CalendarEvent.id == event_id).first()

    @staticmethod
    def get_event_for_update(db: Session, event_id: int) -> Optional[CalendarEvent]:
        """Load an event with a row lock so concurrent writers serialize on it"""
        return (
            db.query(CalendarEvent)
            .filter(CalendarEvent.id == event_id)
            .with_for_update()
            .first()
        )

    @staticmethod
    def get_events_in_window(
        db: Session, user_id: int, start: datetime, end: datetime
    ) -> list[CalendarEvent]:
        """Events overlapping [start, end] that the user can see"""
        return (
            db.query(CalendarEvent)
            .options(selectinload(CalendarEvent.children))
            .filter(
                CalendarRepository.visible_to(user_id),
                CalendarEvent.start_time <= end,
                CalendarEvent.end_time >= start,
            )
            .order_by(CalendarEvent.start_time.asc(), CalendarEvent.id.asc())
            .all()
        )

    @staticmethod
    def get_events_for_push(db: Session, user_id: int, ending_after: datetime) -> list[CalendarEvent]:
        """Events a user mirrors externally: visible, not rejected, not long past"""
        return (
            db.query(CalendarEvent)
            .filter(
                CalendarRepository.visible_to(user_id),
                CalendarEvent.status != "rejected",
                CalendarEvent.end_time >= ending_after,
            )
            .order_by(CalendarEvent.id.asc())
            .all()
        )

    @staticmethod
    def user_can_see(db: Session, event_id: int, user_id: int) -> bool:
        return (
            db.query(CalendarEvent.id)
            .filter(CalendarEvent.id == event_id, CalendarRepository.visible_to(user_id))
            .first()
            is not None
        )

    @staticmethod
    def create_event(db: Session, **event_data) -> CalendarEvent:
        """Stage a new event; the caller commits"""
        event = CalendarEvent(**event_data)
        db.add(event)
        db.flush()
        return event

    @staticmethod
    def get_children(db: Session, child_ids: list[int]) -> list[Child]:
        if not child_ids:
            return []
        return db.query(Child).filter(Child.id.in_(child_ids)).all()

    @staticmethod
    def get_users(db: Session, user_ids: list[int]) -> list[User]:
        if not user_ids:
            return []
        return db.query(User).filter(User.id.in_(user_ids)).all()

    @staticmethod
    def get_schedule_event_dates(
        db: Session, schedule_id: int, start: date, end: date
    ) -> set[date]:
        rows = (
            db.query(CalendarEvent.schedule_date)
            .filter(
                CalendarEvent.schedule_id == schedule_id,
                CalendarEvent.schedule_date >= start,
                CalendarEvent.schedule_date <= end,
            )
            .all()
        )
        return {row[0] for row in rows}

    @staticmethod
    def get_attached_schedule_events(db: Session, schedule_id: int) -> list[CalendarEvent]:
        """Schedule-derived events nobody has edited directly"""
        return (
            db.query(CalendarEvent)
            .filter(CalendarEvent.schedule_id == schedule_id, CalendarEvent.detached.is_(False))
            .all()
        )

    # Custody schedules
    @staticmethod
    def get_schedule(db: Session, schedule_id: int) -> Optional[CustodySchedule]:
        return db.query(CustodySchedule).filter(CustodySchedule.id == schedule_id).first()

    @staticmethod
    def get_schedules_for_user(db: Session, user_id: int) -> list[CustodySchedule]:
        return (
            db.query(CustodySchedule)
            .filter(CustodySchedule.parents.any(User.id == user_id))
            .order_by(CustodySchedule.start_date.asc())
            .all()
        )

    @staticmethod
    def get_materializable_schedules(
        db: Session, user_id: int, start: date, end: date
    ) -> list[CustodySchedule]:
        """Approved, active schedules for a user that overlap [start, end]"""
        return (
            db.query(CustodySchedule)
            .filter(
                CustodySchedule.parents.any(User.id == user_id),
                CustodySchedule.status == "approved",
                CustodySchedule.is_active.is_(True),
                CustodySchedule.start_date <= end,
                or_(CustodySchedule.end_date.is_(None), CustodySchedule.end_date >= start),
            )
            .all()
        )

    # Children
    @staticmethod
    def get_child(db: Session, child_id: int) -> Optional[Child]:
        return (
            db.query(Child)
            .options(selectinload(Child.parents))
            .filter(Child.id == child_id)
            .first()
        )

    @staticmethod
    def get_children_for_parent(db: Session, user_id: int) -> list[Child]:
        return (
            db.query(Child)
            .options(selectinload(Child.parents))
            .filter(Child.parents.any(User.id == user_id))
            .order_by(Child.first_name.asc(), Child.id.asc())
            .all()
        )

    @staticmethod
    def delete_child(db: Session, child: Child) -> None:
        """Remove a child along with its event and schedule links; the caller commits"""
        db.execute(event_children.delete().where(event_children.c.child_id == child.id))
        db.execute(schedule_children.delete().where(schedule_children.c.child_id == child.id))
        child.parents = []
        db.delete(child)
        db.flush()
