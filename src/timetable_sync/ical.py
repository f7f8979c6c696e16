"""
Wire payload ⇄ iCalendar VEVENT conversion for the EDS-backed remote.
"""

import re
from typing import Any

import gi

gi.require_version("ICalGLib", "3.0")
from gi.repository import ICalGLib

from timetable_sync.sync.utils import compute_hash

# Marks events created by this tool.
# (X-properties are stripped by some backends, so we use CATEGORIES.)
MANAGED_CATEGORY = "TIMETABLE-SYNC-MANAGED"
COLOR_CATEGORY_PREFIX = "TIMETABLE-SYNC-COLOR-"

_ALARM_ACTIONS = {"popup": "DISPLAY", "email": "EMAIL"}
_ALARM_METHODS = {v: k for k, v in _ALARM_ACTIONS.items()}

# -P1W, -P1D, -PT1H30M, -P1DT2H ...
_TRIGGER_RE = re.compile(
    r"^-P(?:(?P<weeks>\d+)W)?(?:(?P<days>\d+)D)?"
    r"(?:T(?:(?P<hours>\d+)H)?(?:(?P<minutes>\d+)M)?(?:\d+S)?)?$"
)
_ICAL_DATETIME_RE = re.compile(r"^(\d{4})(\d{2})(\d{2})T(\d{2})(\d{2})(\d{2})")
_WIRE_DATETIME_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})T(\d{2}):(\d{2}):(\d{2})$")


def to_ical_datetime(wall_clock: str) -> str:
    """``2024-01-15T09:00:00`` → ``20240115T090000``."""
    match = _WIRE_DATETIME_RE.match(wall_clock)
    if not match:
        raise ValueError(f"not a wall-clock timestamp: {wall_clock!r}")
    y, mo, d, h, mi, s = match.groups()
    return f"{y}{mo}{d}T{h}{mi}{s}"


def from_ical_datetime(value: str) -> str:
    """``20240115T090000`` → ``2024-01-15T09:00:00``."""
    match = _ICAL_DATETIME_RE.match(value)
    if not match:
        raise ValueError(f"not an iCalendar date-time: {value!r}")
    y, mo, d, h, mi, s = match.groups()
    return f"{y}-{mo}-{d}T{h}:{mi}:{s}"


def trigger_for_minutes(minutes: int) -> str:
    if minutes == 0:
        return "-PT0M"
    days, rest = divmod(minutes, 1440)
    hours, mins = divmod(rest, 60)
    out = "-P"
    if days:
        out += f"{days}D"
    if hours or mins:
        out += "T"
        if hours:
            out += f"{hours}H"
        if mins:
            out += f"{mins}M"
    return out


def minutes_for_trigger(trigger: str) -> int | None:
    match = _TRIGGER_RE.match(trigger.strip())
    if not match:
        return None
    parts = {k: int(v) if v else 0 for k, v in match.groupdict().items()}
    return (
        parts["weeks"] * 10080 + parts["days"] * 1440 + parts["hours"] * 60 + parts["minutes"]
    )


def _time_property(name: str, when: dict[str, str]) -> ICalGLib.Property:
    value = to_ical_datetime(when["dateTime"])
    tzid = when.get("timeZone")
    if tzid:
        return ICalGLib.Property.new_from_string(f"{name};TZID={tzid}:{value}")
    return ICalGLib.Property.new_from_string(f"{name}:{value}")


def _build_alarm(method: str, minutes: int) -> ICalGLib.Component:
    action = _ALARM_ACTIONS.get(method, "DISPLAY")
    return ICalGLib.Component.new_from_string(
        "BEGIN:VALARM\r\n"
        f"ACTION:{action}\r\n"
        f"TRIGGER:{trigger_for_minutes(minutes)}\r\n"
        "DESCRIPTION:Reminder\r\n"
        "END:VALARM\r\n"
    )


def payload_to_vevent(payload: dict[str, Any], uid: str) -> ICalGLib.Component:
    """Build a managed VEVENT carrying ``payload``."""
    event = ICalGLib.Component.new(ICalGLib.ComponentKind.VEVENT_COMPONENT)
    event.add_property(ICalGLib.Property.new_uid(uid))
    event.add_property(ICalGLib.Property.new_summary(payload.get("summary") or ""))
    if payload.get("description"):
        event.add_property(ICalGLib.Property.new_description(payload["description"]))
    if payload.get("location"):
        event.add_property(ICalGLib.Property.new_location(payload["location"]))
    event.add_property(_time_property("DTSTART", payload["start"]))
    event.add_property(_time_property("DTEND", payload["end"]))
    for rule in payload.get("recurrence") or []:
        event.add_property(ICalGLib.Property.new_from_string(rule))

    event.add_property(ICalGLib.Property.new_categories(MANAGED_CATEGORY))
    if payload.get("colorId"):
        event.add_property(
            ICalGLib.Property.new_categories(f"{COLOR_CATEGORY_PREFIX}{payload['colorId']}")
        )

    for override in (payload.get("reminders") or {}).get("overrides", []):
        event.add_component(_build_alarm(override["method"], override["minutes"]))
    return event


def _read_time(event: ICalGLib.Component, kind: ICalGLib.PropertyKind) -> dict[str, str] | None:
    prop = event.get_first_property(kind)
    if not prop:
        return None
    out = {"dateTime": from_ical_datetime(prop.get_value_as_string())}
    tz_param = prop.get_first_parameter(ICalGLib.ParameterKind.TZID_PARAMETER)
    if tz_param:
        out["timeZone"] = tz_param.get_tzid()
    return out


def _categories(event: ICalGLib.Component) -> list[str]:
    found = []
    prop = event.get_first_property(ICalGLib.PropertyKind.CATEGORIES_PROPERTY)
    while prop:
        categories = prop.get_categories()
        if categories:
            found.extend(c.strip() for c in categories.split(","))
        prop = event.get_next_property(ICalGLib.PropertyKind.CATEGORIES_PROPERTY)
    return found


def _read_reminders(event: ICalGLib.Component) -> dict[str, Any] | None:
    overrides = []
    alarm = event.get_first_component(ICalGLib.ComponentKind.VALARM_COMPONENT)
    while alarm:
        action_prop = alarm.get_first_property(ICalGLib.PropertyKind.ACTION_PROPERTY)
        trigger_prop = alarm.get_first_property(ICalGLib.PropertyKind.TRIGGER_PROPERTY)
        minutes = minutes_for_trigger(trigger_prop.get_value_as_string()) if trigger_prop else None
        if minutes is not None:
            action = action_prop.get_value_as_string().upper() if action_prop else "DISPLAY"
            overrides.append({"method": _ALARM_METHODS.get(action, "popup"), "minutes": minutes})
        alarm = event.get_next_component(ICalGLib.ComponentKind.VALARM_COMPONENT)
    if not overrides:
        return None
    return {"useDefault": False, "overrides": overrides}


def find_vevent(component: ICalGLib.Component) -> ICalGLib.Component | None:
    if component.isa() == ICalGLib.ComponentKind.VEVENT_COMPONENT:
        return component
    return component.get_first_component(ICalGLib.ComponentKind.VEVENT_COMPONENT)


def vevent_to_payload(component: ICalGLib.Component) -> dict[str, Any]:
    """Read a VEVENT back into wire-payload form, with its content-hash ``etag``."""
    event = find_vevent(component)
    if event is None:
        raise ValueError("component holds no VEVENT")

    payload: dict[str, Any] = {}
    prop = event.get_first_property(ICalGLib.PropertyKind.SUMMARY_PROPERTY)
    payload["summary"] = prop.get_summary() if prop else ""
    prop = event.get_first_property(ICalGLib.PropertyKind.DESCRIPTION_PROPERTY)
    if prop:
        payload["description"] = prop.get_description()
    prop = event.get_first_property(ICalGLib.PropertyKind.LOCATION_PROPERTY)
    if prop:
        payload["location"] = prop.get_location()

    start = _read_time(event, ICalGLib.PropertyKind.DTSTART_PROPERTY)
    end = _read_time(event, ICalGLib.PropertyKind.DTEND_PROPERTY)
    if start:
        payload["start"] = start
    if end:
        payload["end"] = end

    rules = []
    prop = event.get_first_property(ICalGLib.PropertyKind.RRULE_PROPERTY)
    while prop:
        rules.append(f"RRULE:{prop.get_value_as_string()}")
        prop = event.get_next_property(ICalGLib.PropertyKind.RRULE_PROPERTY)
    if rules:
        payload["recurrence"] = rules

    for category in _categories(event):
        if category.startswith(COLOR_CATEGORY_PREFIX):
            payload["colorId"] = category[len(COLOR_CATEGORY_PREFIX):]

    reminders = _read_reminders(event)
    if reminders:
        payload["reminders"] = reminders

    payload["etag"] = content_version(payload)
    return payload


def content_version(payload: dict[str, Any]) -> str:
    """Version token derived from payload content (the store keeps none of its own)."""
    return compute_hash({k: v for k, v in payload.items() if k != "etag"})[:32]
