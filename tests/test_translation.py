"""Tests for Google payload translation."""

from datetime import datetime

from coparent.domain.external_calendar.translation import (
    INTERNAL_ID_PROPERTY,
    UNTITLED,
    default_color,
    from_google_payload,
    internal_event_id,
    item_color,
    nearest_color_id,
    to_google_payload,
)
from coparent.models import CalendarEvent


def make_event(**fields):
    data = {
        "id": 42,
        "title": "School conference",
        "description": None,
        "start_time": datetime(2024, 4, 2, 15, 30),
        "end_time": datetime(2024, 4, 2, 16, 0),
        "is_all_day": False,
        "location": None,
        "event_type": "school",
        "status": "approved",
        "color": None,
    }
    data.update(fields)
    return CalendarEvent(**data)


class TestToGoogle:
    def test_timed_event(self):
        payload = to_google_payload(make_event(location="Room 12"))

        assert payload["start"] == {"dateTime": "2024-04-02T15:30:00", "timeZone": "UTC"}
        assert payload["end"] == {"dateTime": "2024-04-02T16:00:00", "timeZone": "UTC"}
        assert payload["status"] == "confirmed"
        assert payload["location"] == "Room 12"
        assert payload["colorId"] == "5"
        assert payload["extendedProperties"]["private"][INTERNAL_ID_PROPERTY] == "42"

    def test_pending_event_is_tentative(self):
        assert to_google_payload(make_event(status="pending"))["status"] == "tentative"

    def test_custom_color_maps_to_nearest_palette_entry(self):
        assert to_google_payload(make_event(color="#d40000"))["colorId"] == "11"
        assert nearest_color_id("#7a86cc") == "1"


class TestFromGoogle:
    def test_offset_times_are_stored_as_utc(self):
        fields = from_google_payload(
            {
                "summary": "Game",
                "start": {"dateTime": "2024-04-02T09:00:00-06:00"},
                "end": {"dateTime": "2024-04-02T11:00:00-06:00"},
            }
        )

        assert fields["start_time"] == datetime(2024, 4, 2, 15, 0)
        assert fields["end_time"] == datetime(2024, 4, 2, 17, 0)
        assert fields["is_all_day"] is False

    def test_missing_summary(self):
        fields = from_google_payload({"start": {"date": "2024-04-02"}, "end": {"date": "2024-04-03"}})

        assert fields["title"] == UNTITLED
        assert fields["is_all_day"] is True
        assert fields["end_time"] == datetime(2024, 4, 2, 23, 59, 59)

    def test_internal_id_property(self):
        item = {"extendedProperties": {"private": {INTERNAL_ID_PROPERTY: "17"}}}

        assert internal_event_id(item) == 17
        assert internal_event_id({"extendedProperties": {"private": {INTERNAL_ID_PROPERTY: "x"}}}) is None
        assert internal_event_id({}) is None

    def test_colors(self):
        assert item_color({"colorId": "2"}) == "#33b679"
        assert item_color({}) is None
        assert default_color("custody_transfer") == "#8e24aa"
        assert default_color(None) == default_color("other")
