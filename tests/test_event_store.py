"""Tests for the EventStore service: permissions, ranges and custody schedule lifecycle."""

from datetime import date, datetime

import pytest
from fastapi import HTTPException

from coparent.domain.calendar.schemas import EventCreate, EventUpdate, ScheduleCreate
from coparent.domain.calendar.service import EventStore
from coparent.errors import InvalidRecurrence, InvalidTimeRange, NotFound, PermissionDenied
from coparent.models import CalendarEvent, CustodySchedule, utcnow
from coparent.models_external_calendar import EventSyncMapping

ALL_WEEK = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


@pytest.fixture
def store(db):
    return EventStore(db)


@pytest.fixture
def make_event(store, mom):
    def _make(user=None, **fields):
        data = {
            "title": "Soccer practice",
            "start_time": datetime(2024, 3, 1, 16, 0),
            "end_time": datetime(2024, 3, 1, 17, 30),
            "event_type": "activity",
        }
        data.update(fields)
        return store.create_event(EventCreate(**data), user or mom)

    return _make


@pytest.fixture
def alternating_weeks(store, mom, dad, child):
    """Pending biweekly schedule proposed by mom; ends in the past so approval creates nothing."""
    data = ScheduleCreate(
        title="Alternating weeks",
        start_date=date(2024, 1, 1),
        end_date=date(2024, 3, 31),
        schedule_type="biweekly",
        schedule_pattern={
            "week_a": {day: mom.id for day in ALL_WEEK},
            "week_b": {day: dad.id for day in ALL_WEEK},
        },
        parent_ids=[dad.id],
        child_ids=[child.id],
    )
    return store.create_schedule(data, mom)


@pytest.fixture
def approved_schedule(store, dad, alternating_weeks):
    store.set_schedule_status(alternating_weeks.id, "approved", dad)
    return alternating_weeks


class TestEvents:
    def test_create_event_with_children(self, make_event, child, mom):
        event = make_event(child_ids=[child.id])

        assert event.id is not None
        assert event.created_by_id == mom.id
        assert event.child_ids == [child.id]
        assert event.status == "approved"

    def test_end_before_start_is_rejected(self, make_event):
        with pytest.raises(InvalidTimeRange):
            make_event(start_time=datetime(2024, 3, 1, 17), end_time=datetime(2024, 3, 1, 16))

    def test_unknown_child_is_not_found(self, make_event):
        with pytest.raises(NotFound):
            make_event(child_ids=[999])

    def test_all_day_event_spans_whole_days(self, make_event):
        event = make_event(
            is_all_day=True,
            start_time=datetime(2024, 3, 1, 10, 0),
            end_time=datetime(2024, 3, 2, 9, 0),
        )

        assert event.start_time == datetime(2024, 3, 1, 0, 0, 0)
        assert event.end_time == datetime(2024, 3, 2, 23, 59, 59)

    def test_get_event_checks_visibility(self, store, make_event, dad, stranger):
        event = make_event(responsible_parent_id=dad.id)

        assert store.get_event(event.id, dad).id == event.id
        with pytest.raises(PermissionDenied):
            store.get_event(event.id, stranger)
        with pytest.raises(NotFound):
            store.get_event(12345, dad)

    def test_update_requires_creator_or_responsible_parent(self, store, make_event, dad, stranger):
        event = make_event()

        with pytest.raises(PermissionDenied):
            store.update_event(event.id, EventUpdate(title="Hijacked"), dad)
        with pytest.raises(PermissionDenied):
            store.update_event(event.id, EventUpdate(title="Hijacked"), stranger)

        event = make_event(responsible_parent_id=dad.id)
        updated = store.update_event(event.id, EventUpdate(title="Practice moved", location="Field 2"), dad)
        assert updated.title == "Practice moved"
        assert updated.location == "Field 2"

    def test_update_validates_resulting_range(self, store, make_event, mom):
        event = make_event()

        with pytest.raises(InvalidTimeRange):
            store.update_event(event.id, EventUpdate(end_time=datetime(2024, 3, 1, 15)), mom)

    def test_update_bumps_updated_at(self, store, make_event, mom):
        event = make_event()
        before = event.updated_at

        updated = store.update_event(event.id, EventUpdate(notes="Bring shin guards"), mom)

        assert updated.updated_at >= before
        assert updated.notes == "Bring shin guards"

    def test_only_responsible_co_parent_decides_status(self, store, make_event, mom, dad):
        event = make_event(responsible_parent_id=dad.id, status="pending")

        with pytest.raises(PermissionDenied):
            store.set_event_status(event.id, "approved", mom)

        decided = store.set_event_status(event.id, "approved", dad)
        assert decided.status == "approved"

    def test_delete_event_orphans_mappings(self, db, store, make_event, mom):
        event = make_event()
        db.add(
            EventSyncMapping(
                user_id=mom.id,
                internal_event_id=event.id,
                external_event_id="g-1",
                external_calendar_id="cal",
                last_synced=utcnow(),
            )
        )
        db.commit()

        sync_users = store.delete_event(event.id, mom)

        assert sync_users == {mom.id}
        mapping = db.query(EventSyncMapping).one()
        assert mapping.internal_event_id is None
        assert mapping.orphaned_at is not None
        assert db.query(CalendarEvent).count() == 0

    def test_delete_requires_permission(self, store, make_event, dad):
        event = make_event()
        with pytest.raises(PermissionDenied):
            store.delete_event(event.id, dad)


class TestScheduleApproval:
    def test_schedule_starts_pending_with_creator_as_parent(self, alternating_weeks, mom, dad):
        assert alternating_weeks.status == "pending"
        assert alternating_weeks.parent_ids == {mom.id, dad.id}
        assert alternating_weeks.schedule_pattern["week_a"]["monday"] == mom.id

    def test_malformed_pattern_rejected_at_creation(self, store, mom):
        data = ScheduleCreate(
            title="Broken",
            start_date=date(2024, 1, 1),
            schedule_type="weekly",
            schedule_pattern={"days": {"someday": mom.id}},
        )
        with pytest.raises(InvalidRecurrence):
            store.create_schedule(data, mom)

    def test_creator_cannot_approve_when_co_parent_exists(self, store, alternating_weeks, mom, stranger):
        with pytest.raises(PermissionDenied):
            store.set_schedule_status(alternating_weeks.id, "approved", mom)
        with pytest.raises(PermissionDenied):
            store.set_schedule_status(alternating_weeks.id, "approved", stranger)

    def test_sole_parent_may_approve_own_schedule(self, store, mom):
        data = ScheduleCreate(
            title="Weekends",
            start_date=date(2024, 1, 1),
            end_date=date(2024, 1, 31),
            schedule_type="weekly",
            schedule_pattern={"days": {"saturday": mom.id, "sunday": mom.id}},
        )
        schedule = store.create_schedule(data, mom)

        store.set_schedule_status(schedule.id, "approved", mom)

        assert store.get_schedule(schedule.id).status == "approved"

    def test_schedule_can_only_be_decided_once(self, store, approved_schedule, dad):
        with pytest.raises(HTTPException) as exc_info:
            store.set_schedule_status(approved_schedule.id, "rejected", dad)
        assert exc_info.value.status_code == 400

    def test_approval_rejects_unassigned_days(self, store, mom, dad):
        data = ScheduleCreate(
            title="Half assigned",
            start_date=date(2024, 1, 1),
            schedule_type="weekly",
            schedule_pattern={"days": {"monday": mom.id, "tuesday": None}},
            parent_ids=[dad.id],
        )
        schedule = store.create_schedule(data, mom)

        with pytest.raises(InvalidRecurrence):
            store.set_schedule_status(schedule.id, "approved", dad)
        assert store.get_schedule(schedule.id).status == "pending"

    def test_rejected_schedule_materializes_nothing(self, store, alternating_weeks, dad):
        store.set_schedule_status(alternating_weeks.id, "rejected", dad)

        created = store.materialize_schedule_window(alternating_weeks.id, date(2024, 1, 1), date(2024, 1, 31))

        assert created == []


class TestMaterialization:
    def test_materialize_is_idempotent(self, db, store, approved_schedule):
        first = store.materialize_schedule_window(approved_schedule.id, date(2024, 1, 1), date(2024, 1, 14))
        again = store.materialize_schedule_window(approved_schedule.id, date(2024, 1, 1), date(2024, 1, 14))
        overlapping = store.materialize_schedule_window(approved_schedule.id, date(2024, 1, 10), date(2024, 1, 20))

        assert len(first) == 14
        assert again == []
        assert len(overlapping) == 6
        dates = [row[0] for row in db.query(CalendarEvent.schedule_date).all()]
        assert len(dates) == len(set(dates)) == 20

    def test_materialized_events_follow_biweekly_parity(self, store, approved_schedule, mom, dad, child):
        created = store.materialize_schedule_window(approved_schedule.id, date(2024, 1, 8), date(2024, 1, 21))
        by_date = {event.schedule_date: event for event in created}

        assert by_date[date(2024, 1, 10)].responsible_parent_id == dad.id
        assert by_date[date(2024, 1, 17)].responsible_parent_id == mom.id
        event = by_date[date(2024, 1, 17)]
        assert event.is_all_day
        assert event.event_type == "custody_transfer"
        assert event.child_ids == [child.id]

    def test_list_events_materializes_lazily(self, store, approved_schedule, mom, dad, stranger):
        window = (datetime(2024, 1, 1), datetime(2024, 1, 7, 23, 59, 59))

        mom_events = store.list_events(mom, *window)
        dad_events = store.list_events(dad, *window)

        assert len(mom_events) == 7
        assert [e.id for e in dad_events] == [e.id for e in mom_events]
        assert store.list_events(stranger, *window) == []

    def test_list_events_rejects_inverted_window(self, store, mom):
        with pytest.raises(InvalidTimeRange):
            store.list_events(mom, datetime(2024, 1, 2), datetime(2024, 1, 1))

    def test_deleted_instance_is_not_regenerated(self, db, store, approved_schedule, mom):
        created = store.materialize_schedule_window(approved_schedule.id, date(2024, 1, 1), date(2024, 1, 7))
        target = next(e for e in created if e.schedule_date == date(2024, 1, 3))

        store.delete_event(target.id, mom)
        regenerated = store.materialize_schedule_window(approved_schedule.id, date(2024, 1, 1), date(2024, 1, 7))

        assert regenerated == []
        assert "2024-01-03" in store.get_schedule(approved_schedule.id).skipped_dates
        assert db.query(CalendarEvent).count() == 6


class TestScheduleDeletion:
    def test_edit_detaches_derived_event(self, store, approved_schedule, mom):
        created = store.materialize_schedule_window(approved_schedule.id, date(2024, 1, 1), date(2024, 1, 3))

        edited = store.update_event(created[0].id, EventUpdate(title="Swapped with grandma"), mom)

        assert edited.detached is True
        assert edited.schedule_id == approved_schedule.id

    def test_delete_schedule_keeps_detached_events(self, db, store, approved_schedule, mom, dad):
        created = store.materialize_schedule_window(approved_schedule.id, date(2024, 1, 1), date(2024, 1, 5))
        kept_id = created[0].id
        store.update_event(kept_id, EventUpdate(title="Swapped with grandma"), mom)

        parent_ids = store.delete_schedule(approved_schedule.id, mom)

        db.expire_all()
        remaining = db.query(CalendarEvent).all()
        assert [event.id for event in remaining] == [kept_id]
        assert remaining[0].schedule_id is None
        assert db.query(CustodySchedule).count() == 0
        assert parent_ids == {mom.id, dad.id}

    def test_only_creator_deletes_schedule(self, store, approved_schedule, dad):
        with pytest.raises(PermissionDenied):
            store.delete_schedule(approved_schedule.id, dad)
