"""External calendar service - connection status, calendar selection and read-only overlays"""

import logging
from datetime import datetime

from sqlalchemy.orm import Session

from ...errors import NotConnected, ProviderError, RateLimited, ReauthRequired
from ...models import User, to_naive_utc
from ...models_external_calendar import CalendarSelection, EventSyncMapping
from ..calendar.schemas import ExternalEventResponse
from .schemas import CalendarInfo, SelectionItem, StatusResponse
from .sync import SyncOrchestrator
from .token_vault import TokenVault
from .translation import UNTITLED, is_cancelled, item_color, parse_event_times
from .visibility import DisplayItem, ProjectedItem, project

logger = logging.getLogger(__name__)


class ExternalCalendarService:
    """Service layer for the external calendar endpoints"""

    def __init__(self, db: Session, vault: TokenVault, orchestrator: SyncOrchestrator):
        self.db = db
        self.vault = vault
        self.orchestrator = orchestrator

    def status(self, user: User) -> StatusResponse:
        account = self.vault.get_account(self.db, user.id)
        state = self.orchestrator.state(self.db, user.id)
        if not account:
            return StatusResponse(connected=False, state=state)
        return StatusResponse(
            connected=True,
            syncEnabled=account.sync_enabled,
            lastSyncedAt=account.last_synced_at,
            needsReauth=account.needs_reauth,
            calendarId=account.calendar_id,
            email=account.external_email,
            lastSyncError=account.last_sync_error,
            state=state,
        )

    def get_selections(self, user_id: int) -> list[CalendarSelection]:
        return self.db.query(CalendarSelection).filter(CalendarSelection.user_id == user_id).all()

    async def list_calendars(self, user: User) -> list[CalendarInfo]:
        """Provider calendars with the user's selection and color applied"""
        account = self.vault.require_account(self.db, user.id)
        access_token = await self.vault.get_valid_token(self.db, user.id)
        calendars = await self.vault.client.list_calendars(access_token)
        selections = {s.external_calendar_id: s for s in self.get_selections(user.id)}

        result = []
        for calendar in calendars:
            selection = selections.get(calendar["id"])
            result.append(
                CalendarInfo(
                    id=calendar["id"],
                    name=calendar.get("summaryOverride") or calendar.get("summary"),
                    color=(selection.color if selection and selection.color else calendar.get("backgroundColor")),
                    selected=selection.selected if selection else True,
                    primary=bool(calendar.get("primary")),
                    isShared=calendar["id"] == account.calendar_id,
                )
            )
        return result

    def save_selection(self, user: User, items: list[SelectionItem]) -> list[CalendarSelection]:
        """Upsert display choices; calendars not mentioned keep their current choice"""
        existing = {s.external_calendar_id: s for s in self.get_selections(user.id)}
        for item in items:
            selection = existing.get(item.calendar_id)
            if selection is None:
                selection = CalendarSelection(user_id=user.id, external_calendar_id=item.calendar_id)
                self.db.add(selection)
                existing[item.calendar_id] = selection
            if item.calendar_name is not None:
                selection.calendar_name = item.calendar_name
            selection.color = item.color
            selection.selected = item.selected
        self.db.commit()

        logger.info(f"✅ Saved {len(items)} calendar selections for user {user.id}")
        return self.get_selections(user.id)

    def out_of_sync_event_ids(self, user_id: int) -> set[int]:
        rows = (
            self.db.query(EventSyncMapping.internal_event_id)
            .filter(
                EventSyncMapping.user_id == user_id,
                EventSyncMapping.possibly_out_of_sync.is_(True),
                EventSyncMapping.internal_event_id.isnot(None),
            )
            .all()
        )
        return {row[0] for row in rows}

    async def overlay_events(self, user: User, start: datetime, end: datetime) -> list[ProjectedItem]:
        """
        Read-only events from the user's selected calendars other than the shared one.
        Provider problems drop the overlay rather than failing the calendar view.
        """
        account = self.vault.get_account(self.db, user.id)
        if account is None:
            return []
        selections = self.get_selections(user.id)
        wanted = [
            s for s in selections if s.selected and s.external_calendar_id != account.calendar_id
        ]
        if not wanted:
            return []

        items = []
        try:
            access_token = await self.vault.get_valid_token(self.db, user.id)
            for selection in wanted:
                page = await self.vault.client.list_events(
                    access_token,
                    selection.external_calendar_id,
                    time_min=to_naive_utc(start).isoformat() + "Z",
                    time_max=to_naive_utc(end).isoformat() + "Z",
                )
                for remote in page.items:
                    if is_cancelled(remote) or "start" not in remote:
                        continue
                    start_time, end_time, is_all_day = parse_event_times(remote)
                    payload = ExternalEventResponse(
                        external_event_id=remote["id"],
                        calendar_id=selection.external_calendar_id,
                        calendar_name=selection.calendar_name,
                        title=remote.get("summary") or UNTITLED,
                        description=remote.get("description"),
                        location=remote.get("location"),
                        start_time=start_time,
                        end_time=end_time,
                        is_all_day=is_all_day,
                    )
                    items.append(
                        DisplayItem(
                            payload=payload,
                            calendar_id=selection.external_calendar_id,
                            color=item_color(remote),
                        )
                    )
        except (NotConnected, ReauthRequired, RateLimited, ProviderError) as e:
            logger.warning(f"⚠️ External overlay unavailable for user {user.id}: {e.detail}")
            return []

        return project(items, selections)
