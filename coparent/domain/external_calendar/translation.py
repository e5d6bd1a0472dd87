"""
Translation between internal calendar events and Google Calendar event payloads
"""
from datetime import date, datetime, time, timedelta
from typing import Any, Optional

from ...models import CalendarEvent

# Private extended property carrying the internal event id, used to re-link copies
INTERNAL_ID_PROPERTY = "coparentEventId"

# Google's fixed event palette (colorId -> hex)
GOOGLE_EVENT_COLORS = {
    "1": "#7986cb",
    "2": "#33b679",
    "3": "#8e24aa",
    "4": "#e67c73",
    "5": "#f6bf26",
    "6": "#f4511e",
    "7": "#039be5",
    "8": "#616161",
    "9": "#3f51b5",
    "10": "#0b8043",
    "11": "#d50000",
}

EVENT_TYPE_COLOR_IDS = {
    "custody_transfer": "3",
    "appointment": "7",
    "activity": "2",
    "school": "5",
    "other": "8",
}

UNTITLED = "(No title)"


def _type_color_id(event_type: Optional[str]) -> str:
    return EVENT_TYPE_COLOR_IDS.get(event_type or "other", EVENT_TYPE_COLOR_IDS["other"])


def default_color(event_type: Optional[str]) -> str:
    return GOOGLE_EVENT_COLORS[_type_color_id(event_type)]


def nearest_color_id(hex_color: str) -> str:
    """Closest Google palette entry for an arbitrary #rrggbb color"""

    def rgb(value: str) -> tuple[int, int, int]:
        value = value.lstrip("#")
        return int(value[0:2], 16), int(value[2:4], 16), int(value[4:6], 16)

    target = rgb(hex_color)
    return min(
        GOOGLE_EVENT_COLORS,
        key=lambda color_id: sum(
            (a - b) ** 2 for a, b in zip(rgb(GOOGLE_EVENT_COLORS[color_id]), target)
        ),
    )


def to_google_payload(event: CalendarEvent) -> dict:
    """Build the Google event body for an internal event"""
    if event.is_all_day:
        # Google all-day end dates are exclusive
        start = {"date": event.start_time.date().isoformat()}
        end = {"date": (event.end_time.date() + timedelta(days=1)).isoformat()}
    else:
        start = {"dateTime": event.start_time.isoformat(), "timeZone": "UTC"}
        end = {"dateTime": event.end_time.isoformat(), "timeZone": "UTC"}

    payload: dict[str, Any] = {
        "summary": event.title,
        "description": event.description or "",
        "start": start,
        "end": end,
        "status": "tentative" if event.status == "pending" else "confirmed",
        "colorId": nearest_color_id(event.color) if event.color else _type_color_id(event.event_type),
        "extendedProperties": {"private": {INTERNAL_ID_PROPERTY: str(event.id)}},
    }
    if event.location:
        payload["location"] = event.location
    return payload


def _parse_datetime(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        return parsed
    return (parsed - parsed.utcoffset()).replace(tzinfo=None)


def parse_event_times(item: dict) -> tuple[datetime, datetime, bool]:
    """
    Stored (start, end, is_all_day) for a Google event.
    All-day spans end at 23:59:59 of their last day.
    """
    start = item.get("start") or {}
    end = item.get("end") or {}

    if "date" in start:
        first_day = date.fromisoformat(start["date"])
        last_day = date.fromisoformat(end["date"]) - timedelta(days=1) if "date" in end else first_day
        last_day = max(last_day, first_day)
        return datetime.combine(first_day, time.min), datetime.combine(last_day, time(23, 59, 59)), True

    start_time = _parse_datetime(start["dateTime"])
    end_time = _parse_datetime(end["dateTime"]) if "dateTime" in end else start_time
    return start_time, max(end_time, start_time), False


def from_google_payload(item: dict) -> dict:
    """Internal content fields for a Google event; status, creator and children are never included"""
    start_time, end_time, is_all_day = parse_event_times(item)
    return {
        "title": item.get("summary") or UNTITLED,
        "description": item.get("description"),
        "location": item.get("location"),
        "start_time": start_time,
        "end_time": end_time,
        "is_all_day": is_all_day,
    }


def internal_event_id(item: dict) -> Optional[int]:
    """Internal event id stamped on a Google event we created, if any"""
    private = (item.get("extendedProperties") or {}).get("private") or {}
    value = private.get(INTERNAL_ID_PROPERTY)
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def is_cancelled(item: dict) -> bool:
    return item.get("status") == "cancelled"


def item_color(item: dict) -> Optional[str]:
    color_id = item.get("colorId")
    return GOOGLE_EVENT_COLORS.get(color_id) if color_id else None
