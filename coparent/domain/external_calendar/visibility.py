"""
Visibility Filter
Read-time overlay deciding whether and in which color each item is shown to a
user. Nothing here touches the database.
"""
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any, Optional, Protocol


class Selection(Protocol):
    external_calendar_id: str
    selected: bool
    color: Optional[str]


@dataclass(frozen=True)
class DisplayItem:
    """
    Something that can appear on a calendar view.

    calendar_id is the external calendar the item came from, or None for
    events created in the app, which are always shown.
    color is the item's own override; default_color is what the provider
    (or the event type) would use otherwise.
    """

    payload: Any
    calendar_id: Optional[str] = None
    color: Optional[str] = None
    default_color: Optional[str] = None


@dataclass(frozen=True)
class ProjectedItem:
    payload: Any
    visible: bool
    color: Optional[str]


def project(items: Iterable[DisplayItem], selections: Iterable[Selection]) -> list[ProjectedItem]:
    """Attach visibility and display color to each item, in input order"""
    by_calendar = {selection.external_calendar_id: selection for selection in selections}

    projected = []
    for item in items:
        selection = by_calendar.get(item.calendar_id) if item.calendar_id else None
        visible = selection.selected if selection is not None else True
        color = item.color or (selection.color if selection is not None else None) or item.default_color
        projected.append(ProjectedItem(payload=item.payload, visible=visible, color=color))
    return projected
