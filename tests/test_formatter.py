"""
Unit tests for the event formatter: single payloads and recurring-rule synthesis.
"""

from datetime import date
from datetime import timedelta

import pytest

from timetable_sync.formatter import FormatOptions
from timetable_sync.formatter import build_weekly_rule
from timetable_sync.formatter import format_recurring
from timetable_sync.formatter import format_single
from timetable_sync.formatter import sunday_first_weekday
from timetable_sync.models import FormatError
from timetable_sync.models import InvalidArgument
from timetable_sync.models import ReminderChannel
from timetable_sync.models import ReminderConfig
from tests.conftest import make_event
from tests.conftest import make_section
from tests.conftest import make_subject

MONDAY = date(2024, 1, 15)
WEDNESDAY = date(2024, 1, 17)


class TestFormatSingle:
    def test_basic_payload(self):
        payload = format_single(make_event(MONDAY), make_subject(), make_section())

        assert payload["summary"] == "CS101 Programming (A1)"
        assert payload["description"] == "Teacher: Dr. Smith\nRoom: B204"
        assert payload["location"] == "B204"
        assert payload["start"] == {"dateTime": "2024-01-15T09:00:00", "timeZone": "Asia/Bangkok"}
        assert payload["end"] == {"dateTime": "2024-01-15T10:30:00", "timeZone": "Asia/Bangkok"}
        assert payload["colorId"] == "9"
        assert "recurrence" not in payload

    def test_wall_clock_is_not_converted(self):
        """Times are tagged with the configured zone, never shifted to UTC."""
        options = FormatOptions(timezone="Europe/Amsterdam")
        payload = format_single(
            make_event(MONDAY, "23:15", "23:45"), make_subject(), make_section(), options
        )
        assert payload["start"] == {
            "dateTime": "2024-01-15T23:15:00",
            "timeZone": "Europe/Amsterdam",
        }

    def test_empty_title_parts_are_omitted(self):
        subject = make_subject(code="")
        section = make_section(code="")
        payload = format_single(make_event(MONDAY), subject, section)
        assert payload["summary"] == "Programming"

    def test_title_override_replaces_generated_title(self):
        event = make_event(MONDAY, title_override="Midterm exam")
        payload = format_single(event, make_subject(), make_section())
        assert payload["summary"] == "Midterm exam"

    def test_event_room_overrides_section_room(self):
        event = make_event(MONDAY, room="Lab 3")
        payload = format_single(event, make_subject(), make_section())
        assert payload["location"] == "Lab 3"
        assert "Room: Lab 3" in payload["description"]

    def test_scalar_metadata_lines_only(self):
        subject = make_subject(meta={"credits": 3, "notes": "", "reminders": {"minutes": 5}})
        payload = format_single(make_event(MONDAY), subject, make_section())
        assert payload["description"].splitlines() == [
            "Teacher: Dr. Smith",
            "Room: B204",
            "credits: 3",
        ]

    def test_reminder_from_config(self):
        options = FormatOptions(
            reminder=ReminderConfig(lead_minutes=30, channel=ReminderChannel.EMAIL)
        )
        payload = format_single(make_event(MONDAY), make_subject(), make_section(), options)
        assert payload["reminders"] == {
            "useDefault": False,
            "overrides": [{"method": "email", "minutes": 30}],
        }

    def test_reminders_omitted_when_disabled_by_options(self):
        options = FormatOptions(include_reminders=False)
        payload = format_single(make_event(MONDAY), make_subject(), make_section(), options)
        assert "reminders" not in payload

    @pytest.mark.parametrize("start,end", [("10:00", "10:00"), ("11:00", "10:00")])
    def test_end_not_after_start_raises(self, start, end):
        with pytest.raises(FormatError):
            format_single(make_event(MONDAY, start, end), make_subject(), make_section())

    def test_mismatched_section_raises(self):
        event = make_event(MONDAY, section_id="sec-other")
        with pytest.raises(FormatError):
            format_single(event, make_subject(), make_section())

    def test_malformed_subject_color_raises(self):
        with pytest.raises(FormatError):
            format_single(make_event(MONDAY), make_subject(color="navy"), make_section())


class TestReminderConfig:
    @pytest.mark.parametrize("minutes", [-1, 40321])
    def test_lead_minutes_out_of_range(self, minutes):
        with pytest.raises(InvalidArgument):
            ReminderConfig(lead_minutes=minutes)

    def test_upper_bound_is_inclusive(self):
        assert ReminderConfig(lead_minutes=40320).lead_minutes == 40320

    def test_unknown_channel(self):
        with pytest.raises(InvalidArgument):
            ReminderConfig(channel="sms")


class TestWeeklyRule:
    def test_sunday_first_weekday(self):
        assert sunday_first_weekday(date(2024, 1, 14)) == 0  # Sunday
        assert sunday_first_weekday(MONDAY) == 1
        assert sunday_first_weekday(date(2024, 1, 20)) == 6  # Saturday

    def test_weekdays_in_canonical_order(self):
        events = [
            make_event(date(2024, 1, 19)),  # Friday
            make_event(MONDAY),
            make_event(date(2024, 1, 21)),  # Sunday
            make_event(WEDNESDAY),
        ]
        rule = build_weekly_rule(events)
        assert rule == "RRULE:FREQ=WEEKLY;INTERVAL=1;BYDAY=SU,MO,WE,FR;UNTIL=20240121T235959Z"

    def test_empty_input_raises(self):
        with pytest.raises(InvalidArgument, match="zero occurrences"):
            build_weekly_rule([])


class TestFormatRecurring:
    def test_four_mondays(self):
        events = [make_event(MONDAY + timedelta(weeks=i)) for i in range(4)]
        payload = format_recurring(events, make_subject(), make_section())

        assert payload["recurrence"] == [
            "RRULE:FREQ=WEEKLY;INTERVAL=1;BYDAY=MO;UNTIL=20240205T235959Z"
        ]
        assert payload["start"]["dateTime"] == "2024-01-15T09:00:00"

    def test_base_comes_from_earliest_member(self):
        late = make_event(date(2024, 1, 22), room="Late room")
        early = make_event(MONDAY, room="Early room")
        payload = format_recurring([late, early], make_subject(), make_section())
        assert payload["location"] == "Early room"
        assert payload["start"]["dateTime"].startswith("2024-01-15")

    def test_empty_input_raises(self):
        with pytest.raises(InvalidArgument, match="zero occurrences"):
            format_recurring([], make_subject(), make_section())
