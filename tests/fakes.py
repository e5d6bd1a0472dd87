"""In-memory Google Calendar stand-in used by the sync and API tests."""

import asyncio
import copy
import itertools
from typing import Optional

from coparent.services.google_calendar_client import (
    EventPage,
    ExternalEventNotFound,
    InvalidGrant,
    SyncTokenExpired,
)

SHARED_CALENDAR_ID = "shared-cal@group.calendar.google.com"


class FakeGoogleCalendar:
    """
    Mirrors the GoogleCalendarClient coroutine interface.

    Every change to a calendar gets a sequence number; a sync token is the last
    sequence number a listing saw, so incremental listings return exactly the
    events changed after it, like Google's syncToken.
    """

    SHARED_CALENDAR_ID = SHARED_CALENDAR_ID

    def __init__(self):
        self.calendars: dict[str, dict[str, dict]] = {self.SHARED_CALENDAR_ID: {}}
        self.calendar_list = [
            {"id": "primary@example.com", "summary": "Me", "primary": True, "backgroundColor": "#9fe1e7"},
            {"id": self.SHARED_CALENDAR_ID, "summary": "Coparent", "accessRole": "owner"},
        ]
        self.changes: list[tuple[int, str, str]] = []
        self.writes: list[tuple[str, str]] = []
        self.refresh_calls = 0
        self.revoked: list[str] = []
        self.list_calls: list[dict] = []

        # Failure injection
        self.refresh_error: Optional[Exception] = None
        self.list_error: Optional[Exception] = None
        self.expired_sync_tokens: set[str] = set()
        self.insert_failures: dict[str, Exception] = {}

        self._seq = itertools.count(1)
        self._ids = itertools.count(1)
        self._etags = itertools.count(1)
        self._last_seq = 0

    # Helpers ----------------------------------------------------------------

    def _record(self, calendar_id: str, event_id: str) -> None:
        self._last_seq = next(self._seq)
        self.changes.append((self._last_seq, calendar_id, event_id))

    def _etag(self) -> str:
        return f'"{next(self._etags)}"'

    def events(self, calendar_id: str = SHARED_CALENDAR_ID, include_cancelled: bool = False) -> list[dict]:
        return [
            item
            for item in self.calendars.get(calendar_id, {}).values()
            if include_cancelled or item.get("status") != "cancelled"
        ]

    def write_count(self) -> int:
        return len(self.writes)

    # Simulated edits made by the user in Google Calendar ----------------------

    def remote_create(self, calendar_id: str = SHARED_CALENDAR_ID, **body) -> dict:
        event_id = f"remote-{next(self._ids)}"
        item = {"id": event_id, "status": "confirmed", **copy.deepcopy(body), "etag": self._etag()}
        self.calendars.setdefault(calendar_id, {})[event_id] = item
        self._record(calendar_id, event_id)
        return item

    def remote_edit(self, event_id: str, calendar_id: str = SHARED_CALENDAR_ID, **changes) -> dict:
        item = self.calendars[calendar_id][event_id]
        item.update(copy.deepcopy(changes))
        item["etag"] = self._etag()
        self._record(calendar_id, event_id)
        return item

    def remote_cancel(self, event_id: str, calendar_id: str = SHARED_CALENDAR_ID) -> dict:
        return self.remote_edit(event_id, calendar_id, status="cancelled")

    # OAuth ----------------------------------------------------------------------

    def authorization_url(self, state: str) -> str:
        return f"https://accounts.example.com/auth?state={state}"

    async def exchange_code(self, code: str) -> dict:
        return {"access_token": f"access-for-{code}", "refresh_token": f"refresh-for-{code}", "expires_in": 3600}

    async def refresh_access_token(self, refresh_token: str) -> dict:
        self.refresh_calls += 1
        await asyncio.sleep(0)
        if self.refresh_error is not None:
            raise self.refresh_error
        return {"access_token": f"refreshed-{self.refresh_calls}", "expires_in": 3600}

    async def revoke_token(self, token: str) -> bool:
        self.revoked.append(token)
        return True

    async def get_user_email(self, access_token: str) -> Optional[str]:
        return "parent@gmail.com"

    async def aclose(self) -> None:
        return None

    # Calendars -------------------------------------------------------------------

    async def list_calendars(self, access_token: str) -> list[dict]:
        return copy.deepcopy(self.calendar_list)

    async def get_or_create_calendar(self, access_token: str, name: str, time_zone: str) -> str:
        return self.SHARED_CALENDAR_ID

    # Events ------------------------------------------------------------------------

    async def list_events(
        self,
        access_token: str,
        calendar_id: str,
        sync_token: Optional[str] = None,
        time_min: Optional[str] = None,
        time_max: Optional[str] = None,
    ) -> EventPage:
        self.list_calls.append(
            {"calendar_id": calendar_id, "sync_token": sync_token, "time_min": time_min, "time_max": time_max}
        )
        await asyncio.sleep(0)
        if self.list_error is not None:
            raise self.list_error
        if sync_token in self.expired_sync_tokens:
            raise SyncTokenExpired("Sync token expired", http_status=410)

        items = self.calendars.get(calendar_id, {})
        if sync_token:
            since = int(sync_token.split("-")[1])
            changed = dict.fromkeys(
                event_id for seq, cal, event_id in self.changes if cal == calendar_id and seq > since
            )
            selected = [items[event_id] for event_id in changed if event_id in items]
        else:
            selected = list(items.values())
        return EventPage(items=copy.deepcopy(selected), next_sync_token=f"token-{self._last_seq}")

    async def insert_event(self, access_token: str, calendar_id: str, body: dict) -> dict:
        await asyncio.sleep(0)
        failure = self.insert_failures.get(body.get("summary"))
        if failure is not None:
            raise failure
        event_id = f"g-{next(self._ids)}"
        item = {"id": event_id, **copy.deepcopy(body), "etag": self._etag()}
        self.calendars.setdefault(calendar_id, {})[event_id] = item
        self._record(calendar_id, event_id)
        self.writes.append(("insert", event_id))
        return copy.deepcopy(item)

    async def update_event(self, access_token: str, calendar_id: str, event_id: str, body: dict) -> dict:
        await asyncio.sleep(0)
        existing = self.calendars.get(calendar_id, {}).get(event_id)
        if existing is None or existing.get("status") == "cancelled":
            raise ExternalEventNotFound(f"Event {event_id} not found", http_status=404)
        item = {"id": event_id, **copy.deepcopy(body), "etag": self._etag()}
        self.calendars[calendar_id][event_id] = item
        self._record(calendar_id, event_id)
        self.writes.append(("update", event_id))
        return copy.deepcopy(item)

    async def delete_event(self, access_token: str, calendar_id: str, event_id: str) -> None:
        await asyncio.sleep(0)
        existing = self.calendars.get(calendar_id, {}).get(event_id)
        self.writes.append(("delete", event_id))
        if existing is None:
            return
        existing["status"] = "cancelled"
        existing["etag"] = self._etag()
        self._record(calendar_id, event_id)


def invalid_grant() -> InvalidGrant:
    return InvalidGrant("Refresh token rejected: invalid_grant", http_status=400)
