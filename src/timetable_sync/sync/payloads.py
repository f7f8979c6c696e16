"""
Builds remote payloads for local events, loading subject/section context once.
"""

from typing import Any

from timetable_sync.db import EventStore
from timetable_sync.formatter import FormatOptions
from timetable_sync.formatter import format_recurring
from timetable_sync.formatter import format_single
from timetable_sync.models import FormatError
from timetable_sync.models import LocalEvent
from timetable_sync.models import Section
from timetable_sync.models import Subject


class PayloadFactory:
    """Formats events using context read from the event store."""

    def __init__(self, store: EventStore, options: FormatOptions):
        self.store = store
        self.options = options
        self._subjects: dict[str, Subject | None] = {}
        self._sections: dict[str, Section | None] = {}

    def clear(self):
        """Forget cached context so the next call re-reads the store."""
        self._subjects.clear()
        self._sections.clear()

    def context(self, event: LocalEvent) -> tuple[Subject, Section]:
        if event.subject_id not in self._subjects:
            self._subjects[event.subject_id] = self.store.get_subject(event.subject_id)
        if event.section_id not in self._sections:
            self._sections[event.section_id] = self.store.get_section(event.section_id)
        subject = self._subjects[event.subject_id]
        section = self._sections[event.section_id]
        if subject is None:
            raise FormatError(f"event {event.id} references unknown subject {event.subject_id}")
        if section is None:
            raise FormatError(f"event {event.id} references unknown section {event.section_id}")
        return subject, section

    def single(self, event: LocalEvent) -> dict[str, Any]:
        subject, section = self.context(event)
        return format_single(event, subject, section, self.options)

    def recurring(self, events: list[LocalEvent]) -> dict[str, Any]:
        subject, section = self.context(events[0]) if events else (None, None)
        return format_recurring(events, subject, section, self.options)

    def for_members(self, events: list[LocalEvent]) -> dict[str, Any]:
        """One-event payload for a single member, a recurring one for a series."""
        if len(events) == 1:
            return self.single(events[0])
        return self.recurring(events)
