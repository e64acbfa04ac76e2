"""iCalendar parser adapter: VEVENT/VTODO components into ParsedRecord."""

from __future__ import annotations

from datetime import UTC, date, datetime, time, timedelta
from typing import Any

from icalendar import Calendar

from core.models import ParsedRecord, ParseResult, RecordKind
from core.pipeline import RecordParser


def _to_datetime(value: Any) -> datetime | None:
    """
    Normalize an icalendar date value.

    All-day dates become midnight UTC; naive datetimes are read as UTC.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=UTC)
    return None


def _decoded_date(component: Any, name: str) -> datetime | None:
    prop = component.get(name)
    if prop is None:
        return None
    return _to_datetime(getattr(prop, "dt", None))


def _text(component: Any, name: str) -> str | None:
    value = component.get(name)
    if value is None:
        return None
    return str(value)


class IcsRecordParser(RecordParser):
    """
    Project iCalendar text into records using the `icalendar` library.

    Malformed input never raises: a calendar that cannot be read at all yields
    zero records and one warning; a component that cannot be projected is
    skipped with a warning naming its position.
    """

    def parse(self, text: str) -> ParseResult:
        warnings: list[str] = []
        try:
            calendar = Calendar.from_ical(text)
        except ValueError as exc:
            return ParseResult(warnings=[f"Invalid iCalendar data: {exc}"])

        if getattr(calendar, "name", None) != "VCALENDAR":
            return ParseResult(warnings=["Invalid iCalendar data: missing VCALENDAR"])

        records: list[ParsedRecord] = []
        for kind, component_name in ((RecordKind.EVENT, "VEVENT"), (RecordKind.TASK, "VTODO")):
            for index, component in enumerate(calendar.walk(component_name)):
                try:
                    records.append(self._project(kind, component))
                except (ValueError, TypeError) as exc:
                    warnings.append(f"Skipped {component_name} #{index + 1}: {exc}")

        return ParseResult(records=records, warnings=warnings)

    @staticmethod
    def _project(kind: RecordKind, component: Any) -> ParsedRecord:
        start_date = _decoded_date(component, "dtstart")
        end_date = None
        due_date = None

        if kind == RecordKind.EVENT:
            end_date = _decoded_date(component, "dtend")
            if end_date is None and start_date is not None and "duration" in component:
                duration = component.decoded("duration")
                if isinstance(duration, timedelta):
                    end_date = start_date + duration
        else:
            due_date = _decoded_date(component, "due")

        return ParsedRecord(
            kind=kind,
            uid=_text(component, "uid"),
            title=_text(component, "summary") or "",
            start_date=start_date,
            end_date=end_date,
            due_date=due_date,
            location=_text(component, "location"),
            description=_text(component, "description"),
        )
