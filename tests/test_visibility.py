"""Tests for the read-time visibility projection."""

from types import SimpleNamespace

from coparent.domain.external_calendar.visibility import DisplayItem, project


def selection(calendar_id, selected=True, color=None):
    return SimpleNamespace(external_calendar_id=calendar_id, selected=selected, color=color)


class TestProject:
    def test_internal_items_are_always_visible(self):
        items = [DisplayItem(payload="event", color=None, default_color="#616161")]

        [projected] = project(items, [selection("work", selected=False)])

        assert projected.visible is True
        assert projected.color == "#616161"

    def test_unselected_calendar_is_hidden(self):
        items = [
            DisplayItem(payload="a", calendar_id="work"),
            DisplayItem(payload="b", calendar_id="school"),
            DisplayItem(payload="c", calendar_id="unknown"),
        ]

        projected = project(items, [selection("work", selected=False), selection("school")])

        assert [(p.payload, p.visible) for p in projected] == [("a", False), ("b", True), ("c", True)]

    def test_color_precedence(self):
        selections = [selection("school", color="#0b8043")]
        items = [
            DisplayItem(payload="override", calendar_id="school", color="#d50000", default_color="#039be5"),
            DisplayItem(payload="calendar", calendar_id="school", default_color="#039be5"),
            DisplayItem(payload="default", calendar_id="other", default_color="#039be5"),
        ]

        colors = {p.payload: p.color for p in project(items, selections)}

        assert colors == {"override": "#d50000", "calendar": "#0b8043", "default": "#039be5"}

    def test_preserves_input_order(self):
        items = [DisplayItem(payload=n, calendar_id="c") for n in range(5)]

        assert [p.payload for p in project(items, [])] == [0, 1, 2, 3, 4]
