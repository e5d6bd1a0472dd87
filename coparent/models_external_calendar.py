"""
External Calendar Integration Models
"""
from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base
from .models import utcnow


class ExternalCalendarAccount(Base):
    __tablename__ = "external_calendar_accounts"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, unique=True)

    # OAuth tokens (encrypted)
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text, nullable=False)
    token_expires_at = Column(DateTime, nullable=False)

    # Provider account info
    external_email = Column(String(255), nullable=True)
    # Provider calendar designated as the shared calendar
    calendar_id = Column(String(500), nullable=True)

    # Settings
    sync_enabled = Column(Boolean, default=True, nullable=False)
    # Set when a refresh was rejected; cleared on reconnect
    needs_reauth = Column(Boolean, default=False, nullable=False)

    # Incremental pull cursor issued by the provider
    sync_token = Column(Text, nullable=True)
    last_synced_at = Column(DateTime, nullable=True)
    last_sync_error = Column(Text, nullable=True)
    # Held by the process running a pass for this user
    sync_lease_until = Column(DateTime, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    user = relationship("User")


class CalendarSelection(Base):
    """Per-user display choice for one provider calendar, independent of sync"""

    __tablename__ = "calendar_selections"
    __table_args__ = (
        UniqueConstraint("user_id", "external_calendar_id", name="uq_calendar_selection_user_cal"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    external_calendar_id = Column(String(500), nullable=False)
    calendar_name = Column(String(255), nullable=True)
    color = Column(String(7), nullable=True)
    selected = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class EventSyncMapping(Base):
    """Link between one internal event and its copy in one provider calendar"""

    __tablename__ = "event_sync_mappings"
    __table_args__ = (
        UniqueConstraint(
            "internal_event_id", "external_calendar_id", name="uq_event_sync_internal_per_calendar"
        ),
        UniqueConstraint(
            "external_calendar_id", "external_event_id", name="uq_event_sync_external_event"
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    # Null once the internal event is deleted; the next push removes the external copy
    internal_event_id = Column(
        Integer, ForeignKey("calendar_events.id", ondelete="SET NULL"), nullable=True, index=True
    )
    external_event_id = Column(String(1024), nullable=False)
    external_calendar_id = Column(String(500), nullable=False)
    external_etag = Column(String(255), nullable=True)
    last_synced = Column(DateTime, nullable=False)
    possibly_out_of_sync = Column(Boolean, default=False, nullable=False)
    orphaned_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    event = relationship("CalendarEvent")
