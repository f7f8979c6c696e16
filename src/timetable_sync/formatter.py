"""
Local event → remote calendar wire payload.

Payloads are plain dicts in the remote service's event shape::

    {
        "summary": "CS101 Programming (A1)",
        "description": "Teacher: Dr. Smith\\nRoom: B204",
        "location": "B204",
        "start": {"dateTime": "2024-01-15T09:00:00", "timeZone": "Asia/Bangkok"},
        "end": {"dateTime": "2024-01-15T10:30:00", "timeZone": "Asia/Bangkok"},
        "colorId": "9",
        "reminders": {"useDefault": False, "overrides": [{"method": "popup", "minutes": 15}]},
        "recurrence": ["RRULE:FREQ=WEEKLY;INTERVAL=1;BYDAY=MO,WE;UNTIL=20240126T235959Z"],
    }

Times are wall-clock values tagged with a timezone; no UTC conversion happens.
"""

from dataclasses import dataclass
from dataclasses import field
from datetime import date
from datetime import time
from typing import Any
from typing import Sequence

from timetable_sync.colors import map_color
from timetable_sync.models import DEFAULT_TIMEZONE
from timetable_sync.models import FormatError
from timetable_sync.models import InvalidArgument
from timetable_sync.models import LocalEvent
from timetable_sync.models import ReminderConfig
from timetable_sync.models import Section
from timetable_sync.models import Subject

# RRULE weekday codes, Sunday first (canonical order).
WEEKDAY_CODES = ("SU", "MO", "TU", "WE", "TH", "FR", "SA")

_SCALAR_TYPES = (str, int, float, bool)


@dataclass
class FormatOptions:
    timezone: str = DEFAULT_TIMEZONE
    include_reminders: bool = True
    reminder: ReminderConfig = field(default_factory=ReminderConfig)


def sunday_first_weekday(day: date) -> int:
    """Weekday index with Sunday=0 .. Saturday=6."""
    return (day.weekday() + 1) % 7


def format_wall_clock(day: date, at: time) -> str:
    """Render a wall-clock timestamp, preserving HH:MM verbatim."""
    return f"{day.isoformat()}T{at.hour:02d}:{at.minute:02d}:00"


def build_title(event: LocalEvent, subject: Subject, section: Section) -> str:
    if event.title_override:
        return event.title_override
    parts = []
    if subject.code:
        parts.append(subject.code)
    if subject.name:
        parts.append(subject.name)
    if section.code:
        parts.append(f"({section.code})")
    return " ".join(parts)


def effective_room(event: LocalEvent, section: Section) -> str:
    return event.room or section.room or ""


def build_description(event: LocalEvent, subject: Subject, section: Section) -> str:
    lines = []
    if section.teacher:
        lines.append(f"Teacher: {section.teacher}")
    room = effective_room(event, section)
    if room:
        lines.append(f"Room: {room}")
    for key, value in (subject.meta or {}).items():
        # Nested structures (e.g. stored reminder settings) are not user-facing
        if not isinstance(value, _SCALAR_TYPES) or value == "":
            continue
        lines.append(f"{key}: {value}")
    return "\n".join(lines)


def build_reminders(reminder: ReminderConfig) -> dict[str, Any]:
    if not reminder.enabled:
        return {"useDefault": False, "overrides": []}
    return {
        "useDefault": False,
        "overrides": [{"method": reminder.channel.value, "minutes": reminder.lead_minutes}],
    }


def format_single(
    event: LocalEvent,
    subject: Subject,
    section: Section,
    options: FormatOptions | None = None,
) -> dict[str, Any]:
    """Build the remote payload for one occurrence.

    Raises FormatError when the event cannot be rendered (missing context,
    end time not after start time, malformed subject color).
    """
    options = options or FormatOptions()

    if subject is None or section is None:
        raise FormatError(f"event {event.id} is missing its subject or section")
    if subject.id != event.subject_id or section.id != event.section_id:
        raise FormatError(f"event {event.id} does not belong to the given subject/section")
    if event.end_time <= event.start_time:
        raise FormatError(
            f"event {event.id} ends at {event.end_time:%H:%M}, "
            f"not after its start {event.start_time:%H:%M}"
        )

    payload: dict[str, Any] = {
        "summary": build_title(event, subject, section),
        "description": build_description(event, subject, section),
        "location": effective_room(event, section),
        "start": {
            "dateTime": format_wall_clock(event.event_date, event.start_time),
            "timeZone": options.timezone,
        },
        "end": {
            "dateTime": format_wall_clock(event.event_date, event.end_time),
            "timeZone": options.timezone,
        },
        "colorId": map_color(subject.color),
    }
    if options.include_reminders:
        payload["reminders"] = build_reminders(options.reminder)
    return payload


def build_weekly_rule(events: Sequence[LocalEvent]) -> str:
    """Return the weekly RRULE covering the weekdays of ``events``.

    The rule ends at 23:59:59 of the latest member's date.
    """
    if not events:
        raise InvalidArgument("cannot synthesize a recurring event from zero occurrences")
    weekdays = sorted({sunday_first_weekday(e.event_date) for e in events})
    last_day = max(e.event_date for e in events)
    parts = [
        "FREQ=WEEKLY",
        "INTERVAL=1",
        "BYDAY=" + ",".join(WEEKDAY_CODES[d] for d in weekdays),
        f"UNTIL={last_day:%Y%m%d}T235959Z",
    ]
    return "RRULE:" + ";".join(parts)


def format_recurring(
    events: Sequence[LocalEvent],
    subject: Subject,
    section: Section,
    options: FormatOptions | None = None,
) -> dict[str, Any]:
    """Build one recurring payload standing in for every member of ``events``.

    Callers guarantee that members share subject, section and start/end time.
    """
    if not events:
        raise InvalidArgument("cannot synthesize a recurring event from zero occurrences")
    ordered = sorted(events, key=lambda e: (e.event_date, e.id))
    payload = format_single(ordered[0], subject, section, options)
    payload["recurrence"] = [build_weekly_rule(ordered)]
    return payload
