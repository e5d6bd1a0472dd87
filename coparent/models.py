from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base

EVENT_TYPES = ("custody_transfer", "appointment", "activity", "school", "other")
APPROVAL_STATUSES = ("pending", "approved", "rejected")
SCHEDULE_TYPES = ("weekly", "biweekly", "monthly", "custom")


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how every DateTime column is stored"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Shift an aware datetime to UTC and drop the offset; naive values are taken as UTC"""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


parent_children = Table(
    "parent_children",
    Base.metadata,
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("child_id", Integer, ForeignKey("children.id", ondelete="CASCADE"), primary_key=True),
)

event_children = Table(
    "event_children",
    Base.metadata,
    Column(
        "event_id", Integer, ForeignKey("calendar_events.id", ondelete="CASCADE"), primary_key=True
    ),
    Column("child_id", Integer, ForeignKey("children.id", ondelete="CASCADE"), primary_key=True),
)

schedule_children = Table(
    "schedule_children",
    Base.metadata,
    Column(
        "schedule_id",
        Integer,
        ForeignKey("custody_schedules.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column("child_id", Integer, ForeignKey("children.id", ondelete="CASCADE"), primary_key=True),
)

schedule_parents = Table(
    "schedule_parents",
    Base.metadata,
    Column(
        "schedule_id",
        Integer,
        ForeignKey("custody_schedules.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
)


class User(Base):
    """Account row owned by the auth service; read here for authorization and display"""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    created_at = Column(DateTime, server_default=func.now())

    children = relationship("Child", secondary=parent_children, back_populates="parents")

    @property
    def display_name(self) -> str:
        name = " ".join(part for part in (self.first_name, self.last_name) if part)
        return name or self.email


class Child(Base):
    __tablename__ = "children"

    id = Column(Integer, primary_key=True, index=True)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    date_of_birth = Column(Date, nullable=True)
    color = Column(String(7), nullable=True)  # e.g., #RRGGBB
    notes = Column(Text, nullable=True)
    # Set when the child has their own login
    user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, server_default=func.now())

    parents = relationship("User", secondary=parent_children, back_populates="children")


class CustodySchedule(Base):
    __tablename__ = "custody_schedules"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=True)  # Null means indefinite
    schedule_type = Column(String(20), nullable=False, default="weekly")  # weekly, biweekly, monthly, custom
    schedule_pattern = Column(JSON, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_by_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    status = Column(String(20), default="pending", nullable=False)  # pending, approved, rejected
    # ISO dates whose generated event was deleted by a parent; never regenerated
    skipped_dates = Column(JSON, default=list, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    creator = relationship("User", foreign_keys=[created_by_id])
    children = relationship("Child", secondary=schedule_children)
    parents = relationship("User", secondary=schedule_parents)
    events = relationship("CalendarEvent", back_populates="schedule")

    @property
    def parent_ids(self) -> set[int]:
        return {parent.id for parent in self.parents}


class CalendarEvent(Base):
    __tablename__ = "calendar_events"
    __table_args__ = (
        UniqueConstraint("schedule_id", "schedule_date", name="uq_calendar_events_schedule_date"),
    )

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    start_time = Column(DateTime, nullable=False, index=True)
    end_time = Column(DateTime, nullable=False, index=True)
    is_all_day = Column(Boolean, default=False, nullable=False)
    location = Column(String(500), nullable=True)
    event_type = Column(String(30), default="other", nullable=False)
    responsible_parent_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    created_by_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    status = Column(String(20), default="approved", nullable=False)  # pending, approved, rejected
    color = Column(String(7), nullable=True)
    notes = Column(Text, nullable=True)

    # Schedule-derived events
    schedule_id = Column(
        Integer, ForeignKey("custody_schedules.id", ondelete="SET NULL"), nullable=True, index=True
    )
    schedule_date = Column(Date, nullable=True)
    # Set once a parent edits a schedule-derived event directly
    detached = Column(Boolean, default=False, nullable=False)

    # Provider calendar the event was first pulled from (null for events created here)
    source_calendar_id = Column(String(500), nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    creator = relationship("User", foreign_keys=[created_by_id])
    responsible_parent = relationship("User", foreign_keys=[responsible_parent_id])
    children = relationship("Child", secondary=event_children)
    schedule = relationship("CustodySchedule", back_populates="events")

    @property
    def child_ids(self) -> list[int]:
        return [child.id for child in self.children]
