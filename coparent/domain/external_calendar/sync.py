"""
Sync Orchestrator
Bidirectional sync between the shared calendar and each parent's external
calendar. One pass per user: fetch remote changes, push local changes, pull
remote changes, persist the cursor.
"""
import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ...config import (
    SYNC_LEASE_POLL_SECONDS,
    SYNC_LEASE_SECONDS,
    SYNC_LEASE_WAIT_SECONDS,
    SYNC_PULL_FUTURE_DAYS,
    SYNC_PULL_PAST_DAYS,
    SYNC_PUSH_LOOKBACK_DAYS,
)
from ...errors import CalendarError, NotConnected, ProviderError, RateLimited, ReauthRequired
from ...models import CalendarEvent, utcnow
from ...models_external_calendar import EventSyncMapping, ExternalCalendarAccount
from ...services.google_calendar_client import (
    EventPage,
    ExternalEventNotFound,
    GoogleCalendarClient,
    SyncTokenExpired,
)
from ..calendar.repository import CalendarRepository
from .link_registry import ExternalLinkRegistry
from .token_vault import TokenVault
from .translation import from_google_payload, internal_event_id, is_cancelled, to_google_payload

logger = logging.getLogger(__name__)

# Per-user sync states
DISCONNECTED = "disconnected"
IDLE = "idle"
SYNCING = "syncing"

# Failures that only affect one event; everything else aborts the pass
EVENT_FAILURES = (RateLimited, ProviderError)


def _rfc3339(value: datetime) -> str:
    return value.replace(microsecond=0).isoformat() + "Z"


@dataclass
class SyncResult:
    user_id: int
    status: str = "completed"  # completed, partial, skipped, disconnected
    needs_reauth: bool = False
    pushed_created: int = 0
    pushed_updated: int = 0
    pushed_deleted: int = 0
    pulled_created: int = 0
    pulled_updated: int = 0
    pulled_deleted: int = 0
    conflicts: int = 0
    failed_event_ids: list[int] = field(default_factory=list)
    failed_external_ids: list[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def provider_writes(self) -> int:
        return self.pushed_created + self.pushed_updated + self.pushed_deleted

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class _Pass:
    """Working state of one sync pass"""

    db: Session
    account: ExternalCalendarAccount
    access_token: str
    started_at: datetime
    result: SyncResult
    remote_items: list[dict] = field(default_factory=list)
    pull_ok: bool = False
    next_sync_token: Optional[str] = None
    deleted_external_ids: set[str] = field(default_factory=set)
    # False when some pulled item could not be applied; the old cursor is kept so it is retried
    cursor_complete: bool = True

    @property
    def user_id(self) -> int:
        return self.account.user_id

    @property
    def calendar_id(self) -> str:
        return self.account.calendar_id


class SyncOrchestrator:
    """Runs sync passes; concurrent requests for the same user join the pass in flight"""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        client: GoogleCalendarClient,
        vault: TokenVault,
        lease_wait_seconds: float = SYNC_LEASE_WAIT_SECONDS,
        lease_poll_seconds: float = SYNC_LEASE_POLL_SECONDS,
    ):
        self.session_factory = session_factory
        self.client = client
        self.vault = vault
        self.repo = CalendarRepository()
        self.lease_wait_seconds = lease_wait_seconds
        self.lease_poll_seconds = lease_poll_seconds
        self._inflight: dict[int, asyncio.Task] = {}

    def state(self, db: Session, user_id: int) -> str:
        if user_id in self._inflight:
            return SYNCING
        account = TokenVault.get_account(db, user_id)
        if account is None or account.needs_reauth:
            return DISCONNECTED
        if account.sync_lease_until is not None and account.sync_lease_until > utcnow():
            return SYNCING
        return IDLE

    async def run_sync(self, user_id: int) -> SyncResult:
        """Run (or join) a sync pass for one user"""
        task = self._inflight.get(user_id)
        if task is None or task.done():
            task = asyncio.get_running_loop().create_task(self._run_pass(user_id))
            self._inflight[user_id] = task
            task.add_done_callback(lambda finished: self._forget(user_id, finished))
        else:
            logger.info(f"🔗 Joining sync already in flight for user {user_id}")
        # Shielded so a cancelled caller does not cancel the pass other callers wait on
        return await asyncio.shield(task)

    async def sync_all(self, user_id: int) -> SyncResult:
        """On-demand full pass; same logic the periodic job runs"""
        return await self.run_sync(user_id)

    async def sync_users(self, user_ids: Iterable[int]) -> None:
        """Background push after local changes; connected users with sync enabled only"""
        db = self.session_factory()
        try:
            enabled = {
                account.user_id
                for account in db.query(ExternalCalendarAccount).filter(
                    ExternalCalendarAccount.user_id.in_(list(user_ids)),
                    ExternalCalendarAccount.sync_enabled.is_(True),
                    ExternalCalendarAccount.needs_reauth.is_(False),
                )
            }
        finally:
            db.close()

        for user_id in sorted(enabled):
            try:
                await self.run_sync(user_id)
            except (CalendarError, SQLAlchemyError) as e:
                logger.error(f"❌ Background sync failed for user {user_id}: {str(e)}")

    def _forget(self, user_id: int, task: asyncio.Task) -> None:
        if self._inflight.get(user_id) is task:
            del self._inflight[user_id]

    async def _run_pass(self, user_id: int) -> SyncResult:
        db = self.session_factory()
        try:
            return await self._sync_user(db, user_id)
        except SQLAlchemyError:
            db.rollback()
            logger.exception(f"❌ Sync aborted for user {user_id}: database error")
            raise
        finally:
            db.close()

    async def _sync_user(self, db: Session, user_id: int) -> SyncResult:
        result = SyncResult(user_id=user_id)

        account = TokenVault.get_account(db, user_id)
        if account is None:
            result.status = DISCONNECTED
            return result
        if not account.sync_enabled:
            logger.info(f"⏸️ Sync disabled for user {user_id}, skipping")
            result.status = "skipped"
            return result

        if not await self._acquire_lease(db, user_id):
            logger.warning(f"⏳ Another process is still syncing user {user_id}, skipping")
            result.status = "skipped"
            result.error = "Another sync pass is still running"
            return result
        try:
            return await self._sync_leased(db, user_id, result)
        finally:
            self._release_lease(db, user_id)

    async def _acquire_lease(self, db: Session, user_id: int) -> bool:
        """
        Claim the account's sync lease, waiting up to lease_wait_seconds for a pass
        running in another process to finish. The claim is a single conditional
        UPDATE, so two processes can never both hold it.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.lease_wait_seconds
        while True:
            now = utcnow()
            claimed = (
                db.query(ExternalCalendarAccount)
                .filter(
                    ExternalCalendarAccount.user_id == user_id,
                    or_(
                        ExternalCalendarAccount.sync_lease_until.is_(None),
                        ExternalCalendarAccount.sync_lease_until <= now,
                    ),
                )
                .update(
                    {ExternalCalendarAccount.sync_lease_until: now + timedelta(seconds=SYNC_LEASE_SECONDS)},
                    synchronize_session=False,
                )
            )
            db.commit()
            if claimed:
                return True
            if loop.time() >= deadline:
                return False
            await asyncio.sleep(self.lease_poll_seconds)

    def _release_lease(self, db: Session, user_id: int) -> None:
        try:
            db.rollback()
            db.query(ExternalCalendarAccount).filter(ExternalCalendarAccount.user_id == user_id).update(
                {ExternalCalendarAccount.sync_lease_until: None}, synchronize_session=False
            )
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"❌ Could not release sync lease for user {user_id}, it will expire: {str(e)}")

    async def _sync_leased(self, db: Session, user_id: int, result: SyncResult) -> SyncResult:
        account = TokenVault.get_account(db, user_id)
        if account is None:
            result.status = DISCONNECTED
            return result

        try:
            access_token = await self.vault.get_valid_token(db, user_id)
        except NotConnected:
            result.status = DISCONNECTED
            return result
        except ReauthRequired as e:
            logger.warning(f"⚠️ Sync for user {user_id} stopped: {e.detail}")
            result.status = DISCONNECTED
            result.needs_reauth = True
            result.error = e.detail
            return result

        logger.info(f"🔄 Sync pass started for user {user_id}")
        sync_pass = _Pass(
            db=db, account=account, access_token=access_token, started_at=utcnow(), result=result
        )

        await self._fetch_remote_changes(sync_pass)
        await self._push(sync_pass)
        if sync_pass.pull_ok:
            self._pull(sync_pass)

        failures = len(result.failed_event_ids) + len(result.failed_external_ids)
        if failures or not sync_pass.pull_ok:
            result.status = "partial"
        if failures and not result.error:
            result.error = f"{failures} events failed to sync"

        account.last_synced_at = sync_pass.started_at
        account.last_sync_error = result.error
        if sync_pass.pull_ok and sync_pass.cursor_complete and sync_pass.next_sync_token:
            account.sync_token = sync_pass.next_sync_token
        db.commit()

        logger.info(
            f"✅ Sync pass for user {user_id} {result.status}: "
            f"pushed +{result.pushed_created}/~{result.pushed_updated}/-{result.pushed_deleted}, "
            f"pulled +{result.pulled_created}/~{result.pulled_updated}/-{result.pulled_deleted}, "
            f"conflicts {result.conflicts}"
        )
        return result

    # ------------------------------------------------------------------
    # Remote changes
    # ------------------------------------------------------------------

    async def _fetch_remote_changes(self, sync_pass: _Pass) -> None:
        account = sync_pass.account
        try:
            page = None
            if account.sync_token:
                try:
                    page = await self.client.list_events(
                        sync_pass.access_token, sync_pass.calendar_id, sync_token=account.sync_token
                    )
                except SyncTokenExpired:
                    logger.info(f"ℹ️ Sync token expired for user {account.user_id}, pulling full window")
            if page is None:
                page = await self.client.list_events(
                    sync_pass.access_token,
                    sync_pass.calendar_id,
                    time_min=_rfc3339(sync_pass.started_at - timedelta(days=SYNC_PULL_PAST_DAYS)),
                    time_max=_rfc3339(sync_pass.started_at + timedelta(days=SYNC_PULL_FUTURE_DAYS)),
                )
        except EVENT_FAILURES as e:
            logger.warning(f"⚠️ Could not list remote changes for user {account.user_id}: {e.detail}")
            sync_pass.result.error = f"Pull skipped: {e.detail}"
            page = EventPage()
            sync_pass.pull_ok = False
        else:
            sync_pass.pull_ok = True

        sync_pass.remote_items = page.items
        sync_pass.next_sync_token = page.next_sync_token

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------

    async def _push(self, sync_pass: _Pass) -> None:
        db, result = sync_pass.db, sync_pass.result
        links = ExternalLinkRegistry(db)

        for mapping in links.pending_deletes(sync_pass.user_id, sync_pass.calendar_id):
            await self._delete_remote(sync_pass, links, mapping)

        for mapping in self._stale_mappings(sync_pass):
            await self._delete_remote(sync_pass, links, mapping)

        remote_by_id = {item["id"]: item for item in sync_pass.remote_items if "id" in item}
        remote_by_internal_id = {
            internal_event_id(item): item
            for item in sync_pass.remote_items
            if internal_event_id(item) is not None and not is_cancelled(item)
        }

        mappings = links.mappings_for_calendar(sync_pass.user_id, sync_pass.calendar_id)
        events = self.repo.get_events_for_push(
            db, sync_pass.user_id, sync_pass.started_at - timedelta(days=SYNC_PUSH_LOOKBACK_DAYS)
        )
        for event in events:
            mapping = mappings.get(event.id)
            try:
                if mapping is None:
                    stray = remote_by_internal_id.get(event.id)
                    if stray is not None and links.get_by_external_id(sync_pass.calendar_id, stray["id"]) is None:
                        # Copy from an earlier connection; link it instead of creating a duplicate
                        links.upsert(
                            sync_pass.user_id, event.id, sync_pass.calendar_id,
                            stray["id"], stray.get("etag"), sync_pass.started_at,
                        )
                        db.commit()
                        logger.info(f"🔗 Re-linked event {event.id} to existing external event {stray['id']}")
                        continue
                    await self._create_remote(sync_pass, links, event)
                elif event.updated_at > mapping.last_synced:
                    remote = remote_by_id.get(mapping.external_event_id)
                    if remote is not None and remote.get("etag") != mapping.external_etag:
                        # Changed on both sides since the last sync; the remote version wins
                        mapping.possibly_out_of_sync = True
                        db.commit()
                        result.conflicts += 1
                        logger.warning(
                            f"⚠️ Event {event.id} changed locally and remotely, keeping remote version"
                        )
                        continue
                    await self._update_remote(sync_pass, links, event, mapping)
            except EVENT_FAILURES as e:
                db.rollback()
                logger.warning(f"⚠️ Failed to push event {event.id} for user {sync_pass.user_id}: {e.detail}")
                result.failed_event_ids.append(event.id)

    async def _create_remote(self, sync_pass: _Pass, links: ExternalLinkRegistry, event: CalendarEvent) -> None:
        created = await self.client.insert_event(
            sync_pass.access_token, sync_pass.calendar_id, to_google_payload(event)
        )
        links.upsert(
            sync_pass.user_id, event.id, sync_pass.calendar_id,
            created["id"], created.get("etag"), sync_pass.started_at,
        )
        sync_pass.db.commit()
        sync_pass.result.pushed_created += 1
        logger.info(f"✅ Created external event {created['id']} for event {event.id}")

    async def _update_remote(
        self, sync_pass: _Pass, links: ExternalLinkRegistry, event: CalendarEvent, mapping: EventSyncMapping
    ) -> None:
        payload = to_google_payload(event)
        try:
            updated = await self.client.update_event(
                sync_pass.access_token, sync_pass.calendar_id, mapping.external_event_id, payload
            )
        except ExternalEventNotFound:
            logger.info(f"ℹ️ External copy of event {event.id} is gone, recreating")
            updated = await self.client.insert_event(sync_pass.access_token, sync_pass.calendar_id, payload)

        links.upsert(
            sync_pass.user_id, event.id, sync_pass.calendar_id,
            updated["id"], updated.get("etag"), sync_pass.started_at,
        )
        sync_pass.db.commit()
        sync_pass.result.pushed_updated += 1
        logger.info(f"✅ Updated external event {updated['id']} for event {event.id}")

    async def _delete_remote(self, sync_pass: _Pass, links: ExternalLinkRegistry, mapping: EventSyncMapping) -> None:
        external_id = mapping.external_event_id
        try:
            await self.client.delete_event(sync_pass.access_token, sync_pass.calendar_id, external_id)
        except EVENT_FAILURES as e:
            logger.warning(f"⚠️ Failed to delete external event {external_id}: {e.detail}")
            sync_pass.result.failed_external_ids.append(external_id)
            return
        links.remove(mapping)
        sync_pass.db.commit()
        sync_pass.deleted_external_ids.add(external_id)
        sync_pass.result.pushed_deleted += 1
        logger.info(f"🗑️ Deleted external event {external_id}")

    def _stale_mappings(self, sync_pass: _Pass) -> list[EventSyncMapping]:
        """Mapped events that were rejected or stopped being shared with the user after being pushed"""
        return (
            sync_pass.db.query(EventSyncMapping)
            .join(CalendarEvent, CalendarEvent.id == EventSyncMapping.internal_event_id)
            .filter(
                EventSyncMapping.user_id == sync_pass.user_id,
                EventSyncMapping.external_calendar_id == sync_pass.calendar_id,
                or_(CalendarEvent.status == "rejected", self.repo.hidden_from(sync_pass.user_id)),
            )
            .all()
        )

    # ------------------------------------------------------------------
    # Pull
    # ------------------------------------------------------------------

    def _pull(self, sync_pass: _Pass) -> None:
        db, result = sync_pass.db, sync_pass.result
        links = ExternalLinkRegistry(db)

        for item in sync_pass.remote_items:
            external_id = item.get("id")
            if not external_id or external_id in sync_pass.deleted_external_ids:
                continue
            try:
                mapping = links.get_by_external_id(sync_pass.calendar_id, external_id)
                if mapping is not None:
                    if mapping.internal_event_id is None or item.get("etag") == mapping.external_etag:
                        # Pending delete, or our own write echoing back
                        continue
                    if is_cancelled(item):
                        self._apply_remote_cancel(sync_pass, links, mapping)
                    else:
                        self._apply_remote_update(sync_pass, links, mapping, item)
                elif not is_cancelled(item):
                    self._apply_remote_new(sync_pass, links, item)
                db.commit()
            except (KeyError, ValueError) as e:
                db.rollback()
                logger.warning(f"⚠️ Skipping malformed external event {external_id}: {str(e)}")
                result.failed_external_ids.append(external_id)
                sync_pass.cursor_complete = False

    def _apply_remote_update(
        self, sync_pass: _Pass, links: ExternalLinkRegistry, mapping: EventSyncMapping, item: dict
    ) -> None:
        event = self.repo.get_event_for_update(sync_pass.db, mapping.internal_event_id)
        if event is None:
            links.remove(mapping)
            return

        user_id = sync_pass.user_id
        if user_id not in (event.created_by_id, event.responsible_parent_id):
            # Read-only copy for this user; the shared event stays and its copy is restored next pass
            mapping.external_etag = item.get("etag")
            mapping.last_synced = event.updated_at - timedelta(seconds=1)
            mapping.possibly_out_of_sync = True
            sync_pass.result.conflicts += 1
            logger.warning(
                f"⚠️ User {user_id} edited external copy of event {event.id} without edit rights, reverting"
            )
            return

        for key, value in from_google_payload(item).items():
            setattr(event, key, value)
        if event.schedule_id is not None:
            event.detached = True
        # Matching timestamps keep the pulled change from being pushed back
        event.updated_at = sync_pass.started_at
        mapping.external_etag = item.get("etag")
        mapping.last_synced = sync_pass.started_at
        sync_pass.result.pulled_updated += 1
        logger.info(f"📥 Pulled external change into event {event.id}")

    def _apply_remote_cancel(self, sync_pass: _Pass, links: ExternalLinkRegistry, mapping: EventSyncMapping) -> None:
        event = self.repo.get_event_for_update(sync_pass.db, mapping.internal_event_id)
        links.remove(mapping)
        if event is None:
            return

        user_id = sync_pass.user_id
        may_delete = user_id in (event.created_by_id, event.responsible_parent_id)
        if event.source_calendar_id == sync_pass.calendar_id and may_delete:
            event_id = event.id
            links.orphan_event(event_id)
            sync_pass.db.delete(event)
            sync_pass.result.pulled_deleted += 1
            logger.info(f"🗑️ Deleted event {event_id} after it was removed externally")
        else:
            logger.info(
                f"ℹ️ External copy of event {event.id} removed by user {user_id}; "
                "it will be recreated on the next pass"
            )

    def _apply_remote_new(self, sync_pass: _Pass, links: ExternalLinkRegistry, item: dict) -> None:
        db = sync_pass.db
        linked_id = internal_event_id(item)
        if linked_id is not None:
            event = self.repo.get_event(db, linked_id)
            if event is None or not self.repo.user_can_see(db, linked_id, sync_pass.user_id):
                # Copy of an event that was deleted here or is not shared with this user
                return
            if links.get_for_event(linked_id, sync_pass.calendar_id) is not None:
                logger.info(f"ℹ️ Ignoring duplicate external copy {item['id']} of event {linked_id}")
                return
            mapping = links.upsert(
                sync_pass.user_id, linked_id, sync_pass.calendar_id,
                item["id"], None, sync_pass.started_at,
            )
            self._apply_remote_update(sync_pass, links, mapping, item)
            return

        fields = from_google_payload(item)
        event = self.repo.create_event(
            db,
            **fields,
            event_type="other",
            status="approved",
            created_by_id=sync_pass.user_id,
            responsible_parent_id=sync_pass.user_id,
            source_calendar_id=sync_pass.calendar_id,
            updated_at=sync_pass.started_at,
        )
        links.upsert(
            sync_pass.user_id, event.id, sync_pass.calendar_id,
            item["id"], item.get("etag"), sync_pass.started_at,
        )
        sync_pass.result.pulled_created += 1
        logger.info(f"📥 Created event {event.id} from external event {item['id']}")
