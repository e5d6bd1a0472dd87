"""
Custody Pattern Expansion
Turns a custody schedule's recurrence pattern into the dated parent
assignments it implies for a window. No database access happens here.
"""

from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Iterable, Optional

from ...errors import InvalidRecurrence

CUSTODY_EVENT_TYPE = "custody_transfer"

WEEKDAY_NAMES = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


@dataclass(frozen=True)
class CustodyInstance:
    date: date
    responsible_parent_id: int
    event_type: str = CUSTODY_EVENT_TYPE


@dataclass(frozen=True)
class CustodyPattern:
    """Base of the pattern variants; subclasses own the day → parent lookup"""

    start_date: date
    end_date: Optional[date]

    schedule_type = ""

    def __post_init__(self):
        if self.end_date is not None and self.end_date < self.start_date:
            raise InvalidRecurrence("Schedule end date is before its start date")

    def slot(self, day: date) -> tuple[Mapping[int, Optional[int]], int]:
        """Return the assignment table governing a day and the day's key in it"""
        raise NotImplementedError

    def includes(self, day: date) -> bool:
        table, key = self.slot(day)
        return key in table

    def parent_for(self, day: date) -> Optional[int]:
        table, key = self.slot(day)
        return table.get(key)

    def assignments(self) -> Iterable[Optional[int]]:
        raise NotImplementedError

    def to_dict(self) -> dict:
        raise NotImplementedError

    def candidate_days(self, first: date, last: date) -> Iterator[date]:
        day = first
        while day <= last:
            yield day
            day += timedelta(days=1)

    def validate(self, parent_ids: Optional[Iterable[int]] = None) -> None:
        """
        Check that every included day resolves to exactly one responsible parent.
        Called before a schedule is approved.
        """
        values = list(self.assignments())
        if not values:
            raise InvalidRecurrence("Schedule pattern does not include any day")
        if any(value is None for value in values):
            raise InvalidRecurrence("Every included day must have a responsible parent")
        if parent_ids is not None:
            unknown = set(values) - set(parent_ids)
            if unknown:
                raise InvalidRecurrence(
                    f"Responsible parents {sorted(unknown)} are not parents on this schedule"
                )


@dataclass(frozen=True)
class WeeklyPattern(CustodyPattern):
    days: dict[int, Optional[int]] = field(default_factory=dict)

    schedule_type = "weekly"

    def slot(self, day: date) -> tuple[Mapping[int, Optional[int]], int]:
        return self.days, day.weekday()

    def assignments(self) -> Iterable[Optional[int]]:
        return self.days.values()

    def to_dict(self) -> dict:
        return {"days": _weekday_table_to_dict(self.days)}


@dataclass(frozen=True)
class BiweeklyPattern(CustodyPattern):
    week_a: dict[int, Optional[int]] = field(default_factory=dict)
    week_b: dict[int, Optional[int]] = field(default_factory=dict)

    schedule_type = "biweekly"

    def slot(self, day: date) -> tuple[Mapping[int, Optional[int]], int]:
        # Phase is anchored to start_date, never to the requested window
        weeks_elapsed = (day - self.start_date).days // 7
        table = self.week_a if weeks_elapsed % 2 == 0 else self.week_b
        return table, day.weekday()

    def assignments(self) -> Iterable[Optional[int]]:
        return [*self.week_a.values(), *self.week_b.values()]

    def to_dict(self) -> dict:
        return {
            "week_a": _weekday_table_to_dict(self.week_a),
            "week_b": _weekday_table_to_dict(self.week_b),
        }


@dataclass(frozen=True)
class MonthlyPattern(CustodyPattern):
    # Day of month (1-31) -> parent; days a month lacks are skipped for that month
    days_of_month: dict[int, Optional[int]] = field(default_factory=dict)

    schedule_type = "monthly"

    def slot(self, day: date) -> tuple[Mapping[int, Optional[int]], int]:
        return self.days_of_month, day.day

    def assignments(self) -> Iterable[Optional[int]]:
        return self.days_of_month.values()

    def candidate_days(self, first: date, last: date) -> Iterator[date]:
        for day in super().candidate_days(first, last):
            if day.day in self.days_of_month:
                yield day

    def to_dict(self) -> dict:
        return {"days_of_month": {str(k): v for k, v in sorted(self.days_of_month.items())}}


@dataclass(frozen=True)
class CustomPattern(CustodyPattern):
    # Day offset from start_date -> parent, repeating every cycle_days when set
    offsets: dict[int, Optional[int]] = field(default_factory=dict)
    cycle_days: Optional[int] = None

    schedule_type = "custom"

    def __post_init__(self):
        super().__post_init__()
        if self.cycle_days is not None:
            if self.cycle_days <= 0:
                raise InvalidRecurrence("cycle_days must be positive")
            out_of_cycle = [offset for offset in self.offsets if offset >= self.cycle_days]
            if out_of_cycle:
                raise InvalidRecurrence(f"Offsets {out_of_cycle} fall outside the cycle")

    def slot(self, day: date) -> tuple[Mapping[int, Optional[int]], int]:
        offset = (day - self.start_date).days
        if self.cycle_days:
            offset %= self.cycle_days
        return self.offsets, offset

    def assignments(self) -> Iterable[Optional[int]]:
        return self.offsets.values()

    def candidate_days(self, first: date, last: date) -> Iterator[date]:
        if self.cycle_days:
            yield from super().candidate_days(first, last)
            return
        for offset in sorted(self.offsets):
            day = self.start_date + timedelta(days=offset)
            if first <= day <= last:
                yield day

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"offsets": {str(k): v for k, v in sorted(self.offsets.items())}}
        if self.cycle_days:
            data["cycle_days"] = self.cycle_days
        return data


def expand(pattern: CustodyPattern, window_start: date, window_end: date) -> list[CustodyInstance]:
    """
    Produce the custody instances a pattern implies inside [window_start, window_end].

    The window is clipped to the pattern's own date range (end_date inclusive).
    Output is ordered by date with at most one instance per date, so repeated or
    overlapping calls over the same dates always agree.
    """
    first = max(window_start, pattern.start_date)
    last = window_end if pattern.end_date is None else min(window_end, pattern.end_date)
    if first > last:
        return []

    instances = []
    for day in pattern.candidate_days(first, last):
        if not pattern.includes(day):
            continue
        parent_id = pattern.parent_for(day)
        if parent_id is None:
            raise InvalidRecurrence(f"No responsible parent assigned for {day.isoformat()}")
        instances.append(CustodyInstance(date=day, responsible_parent_id=parent_id))
    return instances


def parse_pattern(
    schedule_type: str, blob: Any, start_date: date, end_date: Optional[date] = None
) -> CustodyPattern:
    """
    Build the pattern variant for a schedule type from its stored JSON blob.
    Malformed shapes raise InvalidRecurrence here; unassigned days are allowed
    until CustodyPattern.validate() runs at approval time.
    """
    if not isinstance(blob, Mapping):
        raise InvalidRecurrence("Schedule pattern must be an object")

    tag = blob.get("type")
    if tag is not None and tag != schedule_type:
        raise InvalidRecurrence(f"Pattern type '{tag}' does not match schedule type '{schedule_type}'")
    body = {key: value for key, value in blob.items() if key != "type"}

    if schedule_type == "weekly":
        _require_keys(body, required={"days"})
        return WeeklyPattern(
            start_date=start_date, end_date=end_date, days=_parse_weekday_table(body["days"])
        )
    if schedule_type == "biweekly":
        _require_keys(body, required={"week_a", "week_b"})
        return BiweeklyPattern(
            start_date=start_date,
            end_date=end_date,
            week_a=_parse_weekday_table(body["week_a"]),
            week_b=_parse_weekday_table(body["week_b"]),
        )
    if schedule_type == "monthly":
        _require_keys(body, required={"days_of_month"})
        return MonthlyPattern(
            start_date=start_date,
            end_date=end_date,
            days_of_month=_parse_int_table(body["days_of_month"], low=1, high=31, label="day of month"),
        )
    if schedule_type == "custom":
        _require_keys(body, required={"offsets"}, optional={"cycle_days"})
        cycle_days = body.get("cycle_days")
        if cycle_days is not None and (isinstance(cycle_days, bool) or not isinstance(cycle_days, int)):
            raise InvalidRecurrence("cycle_days must be an integer")
        return CustomPattern(
            start_date=start_date,
            end_date=end_date,
            offsets=_parse_int_table(body["offsets"], low=0, high=None, label="offset"),
            cycle_days=cycle_days,
        )
    raise InvalidRecurrence(f"Unknown schedule type: {schedule_type}")


def _require_keys(body: Mapping, required: set, optional: frozenset = frozenset()) -> None:
    missing = required - set(body)
    if missing:
        raise InvalidRecurrence(f"Pattern is missing {sorted(missing)}")
    unexpected = set(body) - required - set(optional)
    if unexpected:
        raise InvalidRecurrence(f"Unexpected pattern keys {sorted(unexpected)}")


def _parse_parent(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidRecurrence(f"Responsible parent must be a user id, got {value!r}")
    return value


def _parse_weekday(key: Any) -> int:
    if isinstance(key, str):
        name = key.strip().lower()
        if name in WEEKDAY_NAMES:
            return WEEKDAY_NAMES.index(name)
        if name.isdigit():
            key = int(name)
    if isinstance(key, int) and not isinstance(key, bool) and 0 <= key <= 6:
        return key
    raise InvalidRecurrence(f"Unknown weekday: {key!r}")


def _parse_weekday_table(raw: Any) -> dict[int, Optional[int]]:
    if not isinstance(raw, Mapping):
        raise InvalidRecurrence("Weekday assignments must be an object")
    table: dict[int, Optional[int]] = {}
    for key, value in raw.items():
        weekday = _parse_weekday(key)
        if weekday in table:
            raise InvalidRecurrence(f"Weekday {WEEKDAY_NAMES[weekday]} is assigned twice")
        table[weekday] = _parse_parent(value)
    return table


def _parse_int_table(raw: Any, low: int, high: Optional[int], label: str) -> dict[int, Optional[int]]:
    if not isinstance(raw, Mapping):
        raise InvalidRecurrence(f"{label.capitalize()} assignments must be an object")
    table: dict[int, Optional[int]] = {}
    for key, value in raw.items():
        try:
            number = int(key)
        except (TypeError, ValueError) as e:
            raise InvalidRecurrence(f"Invalid {label}: {key!r}") from e
        if number < low or (high is not None and number > high):
            raise InvalidRecurrence(f"Invalid {label}: {key!r}")
        if number in table:
            raise InvalidRecurrence(f"{label.capitalize()} {number} is assigned twice")
        table[number] = _parse_parent(value)
    return table


def _weekday_table_to_dict(table: Mapping[int, Optional[int]]) -> dict[str, Optional[int]]:
    return {WEEKDAY_NAMES[weekday]: parent for weekday, parent in sorted(table.items())}
