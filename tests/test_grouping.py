"""
Unit tests for the recurrence grouper.
"""

import logging
from datetime import date
from datetime import timedelta

from timetable_sync.sync.grouping import LINKED
from timetable_sync.sync.grouping import MIXED_LINK_STATE
from timetable_sync.sync.grouping import NON_UNIFORM_TIME
from timetable_sync.sync.grouping import TOO_SMALL
from timetable_sync.sync.grouping import group_events
from timetable_sync.sync.grouping import split_linked_series
from tests.conftest import make_event

MONDAY = date(2024, 1, 15)


def _weekly(n: int, **kwargs):
    return [make_event(MONDAY + timedelta(weeks=i), **kwargs) for i in range(n)]


class TestGroupEvents:
    def test_groups_by_subject_and_section_in_first_appearance_order(self):
        a = make_event(MONDAY, section_id="sec-b")
        b = make_event(MONDAY, section_id="sec-a")
        c = make_event(MONDAY + timedelta(days=1), section_id="sec-b")

        groups = group_events([a, b, c])

        assert [(g.subject_id, g.section_id) for g in groups] == [
            ("subj-cs101", "sec-b"),
            ("subj-cs101", "sec-a"),
        ]
        assert [e.id for e in groups[0].events] == [a.id, c.id]

    def test_uniform_unlinked_group_above_threshold_is_eligible(self):
        (group,) = group_events(_weekly(4), threshold=3)
        assert group.eligible
        assert group.reason is None

    def test_threshold_is_exclusive(self):
        (group,) = group_events(_weekly(3), threshold=3)
        assert not group.eligible
        assert group.reason == TOO_SMALL

    def test_threshold_is_configurable(self):
        (group,) = group_events(_weekly(2), threshold=1)
        assert group.eligible

    def test_non_uniform_time(self):
        events = _weekly(3) + [make_event(MONDAY + timedelta(weeks=3), "13:00", "14:30")]
        (group,) = group_events(events, threshold=3)
        assert not group.eligible
        assert group.reason == NON_UNIFORM_TIME

    def test_all_linked(self):
        events = _weekly(4, remote_id="r1", remote_version="v1")
        (group,) = group_events(events)
        assert group.reason == LINKED

    def test_mixed_link_state_logs_warning(self, caplog):
        events = _weekly(4)
        events[0].remote_id, events[0].remote_version = "r1", "v1"

        with caplog.at_level(logging.WARNING):
            (group,) = group_events(events)

        assert not group.eligible
        assert group.reason == MIXED_LINK_STATE
        assert "already linked" in caplog.text

    def test_empty_input(self):
        assert group_events([]) == []


class TestSplitLinkedSeries:
    def test_shared_remote_id_forms_a_series(self):
        series_members = _weekly(3, remote_id="r1", remote_version="v1")
        single = make_event(MONDAY + timedelta(days=2), remote_id="r2", remote_version="v2")
        planned = make_event(MONDAY + timedelta(days=3))

        series, singles = split_linked_series(series_members + [single, planned])

        assert [[e.id for e in s] for s in series] == [[e.id for e in series_members]]
        assert [e.id for e in singles] == [single.id, planned.id]

    def test_series_with_diverged_times_falls_back_to_singles(self):
        members = _weekly(2, remote_id="r1", remote_version="v1")
        members.append(
            make_event(
                MONDAY + timedelta(weeks=2), "13:00", "14:00", remote_id="r1", remote_version="v1"
            )
        )

        series, singles = split_linked_series(members)

        assert series == []
        assert [e.id for e in singles] == [e.id for e in members]

    def test_loader_pulls_in_members_outside_the_selection(self):
        members = _weekly(4, remote_id="r1", remote_version="v1")
        loaded = []

        def load_series(remote_id):
            loaded.append(remote_id)
            return members

        series, singles = split_linked_series(members[:1], load_series)

        assert loaded == ["r1"]
        assert [[e.id for e in s] for s in series] == [[e.id for e in members]]
        assert singles == []
