"""External link registry - which internal event lives as which external event"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from ...models import utcnow
from ...models_external_calendar import EventSyncMapping

logger = logging.getLogger(__name__)


class ExternalLinkRegistry:
    """
    Owns EventSyncMapping rows. A mapping is the only record that an event has
    already been pushed; nothing compares titles or dates to find copies.

    Methods stage changes on the session and leave committing to the caller so
    a provider write and its mapping update land in the same commit.
    """

    def __init__(self, db: Session):
        self.db = db

    def get_for_event(self, internal_event_id: int, calendar_id: str) -> Optional[EventSyncMapping]:
        return (
            self.db.query(EventSyncMapping)
            .filter(
                EventSyncMapping.internal_event_id == internal_event_id,
                EventSyncMapping.external_calendar_id == calendar_id,
            )
            .first()
        )

    def get_by_external_id(self, calendar_id: str, external_event_id: str) -> Optional[EventSyncMapping]:
        return (
            self.db.query(EventSyncMapping)
            .filter(
                EventSyncMapping.external_calendar_id == calendar_id,
                EventSyncMapping.external_event_id == external_event_id,
            )
            .first()
        )

    def mappings_for_calendar(self, user_id: int, calendar_id: str) -> dict[int, EventSyncMapping]:
        """Live mappings for a user's calendar keyed by internal event id"""
        rows = (
            self.db.query(EventSyncMapping)
            .filter(
                EventSyncMapping.user_id == user_id,
                EventSyncMapping.external_calendar_id == calendar_id,
                EventSyncMapping.internal_event_id.isnot(None),
            )
            .all()
        )
        return {row.internal_event_id: row for row in rows}

    def pending_deletes(self, user_id: int, calendar_id: str) -> list[EventSyncMapping]:
        """Mappings whose internal event was deleted; the external copy still exists"""
        return (
            self.db.query(EventSyncMapping)
            .filter(
                EventSyncMapping.user_id == user_id,
                EventSyncMapping.external_calendar_id == calendar_id,
                EventSyncMapping.internal_event_id.is_(None),
            )
            .order_by(EventSyncMapping.id.asc())
            .all()
        )

    def upsert(
        self,
        user_id: int,
        internal_event_id: int,
        calendar_id: str,
        external_event_id: str,
        etag: Optional[str],
        synced_at: datetime,
    ) -> EventSyncMapping:
        """Record that an internal event is mirrored as external_event_id as of synced_at"""
        mapping = self.get_for_event(internal_event_id, calendar_id)
        if mapping is None:
            mapping = EventSyncMapping(
                user_id=user_id,
                internal_event_id=internal_event_id,
                external_calendar_id=calendar_id,
            )
            self.db.add(mapping)
        mapping.external_event_id = external_event_id
        mapping.external_etag = etag
        mapping.last_synced = synced_at
        mapping.possibly_out_of_sync = False
        mapping.orphaned_at = None
        self.db.flush()
        return mapping

    def orphan_event(self, internal_event_id: int) -> int:
        """Detach every mapping of a deleted event so the next push removes the external copies"""
        return (
            self.db.query(EventSyncMapping)
            .filter(EventSyncMapping.internal_event_id == internal_event_id)
            .update(
                {EventSyncMapping.internal_event_id: None, EventSyncMapping.orphaned_at: utcnow()},
                synchronize_session="fetch",
            )
        )

    def remove(self, mapping: EventSyncMapping) -> None:
        self.db.delete(mapping)
        self.db.flush()

    def clear_calendar(self, user_id: int, calendar_id: Optional[str] = None) -> int:
        """Drop a user's mappings, for one calendar or all; external events are left as they are"""
        query = self.db.query(EventSyncMapping).filter(EventSyncMapping.user_id == user_id)
        if calendar_id is not None:
            query = query.filter(EventSyncMapping.external_calendar_id == calendar_id)
        removed = query.delete(synchronize_session="fetch")
        if removed:
            logger.info(f"🧹 Cleared {removed} sync mappings for user {user_id}")
        return removed
