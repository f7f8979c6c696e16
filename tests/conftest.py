"""
Shared pytest fixtures and timetable builders.
"""

from datetime import date
from datetime import time
from itertools import count

import pytest

from timetable_sync.db import EventStore
from timetable_sync.models import EventStatus
from timetable_sync.models import LocalEvent
from timetable_sync.models import ReminderConfig
from timetable_sync.models import Section
from timetable_sync.models import Subject
from timetable_sync.models import SyncConfig
from timetable_sync.sync import CalendarSynchronizer
from tests.fake_client import FakeRemoteClient

OWNER = "user-1"
OTHER_OWNER = "user-2"

# Monday 2024-01-15 .. Friday 2024-02-09
TERM_START = date(2024, 1, 15)
TERM_END = date(2024, 2, 9)

_ids = count(1)


def make_subject(
    subject_id: str = "subj-cs101",
    owner_id: str = OWNER,
    code: str = "CS101",
    name: str = "Programming",
    color: str = "#5484ed",
    meta: dict | None = None,
) -> Subject:
    return Subject(
        id=subject_id, owner_id=owner_id, code=code, name=name, color=color, meta=meta or {}
    )


def make_section(
    section_id: str = "sec-a1",
    subject_id: str = "subj-cs101",
    code: str = "A1",
    teacher: str = "Dr. Smith",
    room: str = "B204",
) -> Section:
    return Section(id=section_id, subject_id=subject_id, code=code, teacher=teacher, room=room)


def make_event(
    event_date: date,
    start: str = "09:00",
    end: str = "10:30",
    event_id: str | None = None,
    owner_id: str = OWNER,
    subject_id: str = "subj-cs101",
    section_id: str = "sec-a1",
    status: EventStatus = EventStatus.PLANNED,
    remote_id: str | None = None,
    remote_version: str | None = None,
    room: str | None = None,
    title_override: str | None = None,
) -> LocalEvent:
    return LocalEvent(
        id=event_id or f"evt-{next(_ids)}",
        owner_id=owner_id,
        subject_id=subject_id,
        section_id=section_id,
        event_date=event_date,
        start_time=time.fromisoformat(start),
        end_time=time.fromisoformat(end),
        room=room,
        title_override=title_override,
        status=status,
        remote_id=remote_id,
        remote_version=remote_version,
    )


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "test_state.db"


@pytest.fixture
def store(db_path):
    with EventStore(db_path) as db:
        yield db


@pytest.fixture
def seeded_store(store):
    """Store holding one subject (CS101) with one section (A1)."""
    store.insert_subject(make_subject())
    store.insert_section(make_section())
    return store


@pytest.fixture
def sync_config(db_path):
    return SyncConfig(
        calendar_id="calendar-test",
        state_db_path=db_path,
        reminder=ReminderConfig(enabled=True, lead_minutes=15),
    )


@pytest.fixture
def remote():
    return FakeRemoteClient()


@pytest.fixture
def synchronizer(seeded_store, remote, sync_config):
    return CalendarSynchronizer(seeded_store, remote, sync_config)
