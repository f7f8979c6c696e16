"""
Unit tests for conflict classification, suggestions and the link-state machine.
"""

import pytest

from timetable_sync.models import ConflictType
from timetable_sync.models import InvalidArgument
from timetable_sync.models import LinkState
from timetable_sync.models import ResolutionAction
from timetable_sync.sync.conflicts import classify
from timetable_sync.sync.conflicts import suggest_resolution
from timetable_sync.sync.conflicts import transition

LOCAL = {
    "summary": "CS101 Programming (A1)",
    "description": "Teacher: Dr. Smith",
    "location": "B204",
    "start": {"dateTime": "2024-01-15T09:00:00", "timeZone": "Asia/Bangkok"},
    "end": {"dateTime": "2024-01-15T10:30:00", "timeZone": "Asia/Bangkok"},
    "colorId": "9",
}


class TestClassify:
    def test_missing_remote_is_deleted_remotely(self):
        assert classify("v1", None) == ConflictType.DELETED_REMOTELY

    def test_differing_token_is_etag_mismatch(self):
        assert classify("v1", {**LOCAL, "etag": "v2"}) == ConflictType.ETAG_MISMATCH

    def test_missing_token_is_modified_externally(self):
        assert classify("v1", dict(LOCAL)) == ConflictType.MODIFIED_EXTERNALLY

    def test_matching_token_is_clean(self):
        assert classify("v1", {**LOCAL, "etag": "v1"}) is None


class TestSuggestResolution:
    def test_deleted_remotely_suggests_recreate(self):
        suggestion = suggest_resolution(ConflictType.DELETED_REMOTELY)
        assert suggestion.action == ResolutionAction.RECREATE

    def test_only_non_critical_changes_suggest_merge(self):
        remote = {**LOCAL, "location": "C101", "description": "moved", "etag": "v2"}
        suggestion = suggest_resolution(ConflictType.ETAG_MISMATCH, LOCAL, remote)
        assert suggestion.action == ResolutionAction.MERGE

    def test_critical_change_suggests_use_local(self):
        remote = {**LOCAL, "summary": "Renamed", "etag": "v2"}
        suggestion = suggest_resolution(ConflictType.ETAG_MISMATCH, LOCAL, remote)
        assert suggestion.action == ResolutionAction.USE_LOCAL

    def test_time_change_is_critical(self):
        remote = {
            **LOCAL,
            "start": {"dateTime": "2024-01-15T10:00:00", "timeZone": "Asia/Bangkok"},
        }
        suggestion = suggest_resolution(ConflictType.ETAG_MISMATCH, LOCAL, remote)
        assert suggestion.action == ResolutionAction.USE_LOCAL

    def test_merge_fields_are_configurable(self):
        remote = {**LOCAL, "summary": "Renamed"}
        suggestion = suggest_resolution(
            ConflictType.ETAG_MISMATCH, LOCAL, remote, merge_fields=frozenset({"summary"})
        )
        assert suggestion.action == ResolutionAction.MERGE

    def test_modified_externally_suggests_use_google(self):
        suggestion = suggest_resolution(ConflictType.MODIFIED_EXTERNALLY, LOCAL, LOCAL)
        assert suggestion.action == ResolutionAction.USE_GOOGLE


class TestLinkStateMachine:
    @pytest.mark.parametrize(
        "current,target",
        [
            (LinkState.NOT_LINKED, LinkState.LINKED_CLEAN),
            (LinkState.LINKED_CLEAN, LinkState.LINKED_CLEAN),
            (LinkState.LINKED_CLEAN, LinkState.LINKED_CONFLICTED),
            (LinkState.LINKED_CONFLICTED, LinkState.RESOLVED),
            (LinkState.RESOLVED, LinkState.LINKED_CLEAN),
            (LinkState.RESOLVED, LinkState.NOT_LINKED),
        ],
    )
    def test_legal_transitions(self, current, target):
        assert transition(current, target) == target

    @pytest.mark.parametrize(
        "current,target",
        [
            (LinkState.NOT_LINKED, LinkState.LINKED_CONFLICTED),
            (LinkState.NOT_LINKED, LinkState.RESOLVED),
            (LinkState.LINKED_CONFLICTED, LinkState.LINKED_CLEAN),
            (LinkState.LINKED_CLEAN, LinkState.RESOLVED),
            (LinkState.RESOLVED, LinkState.LINKED_CONFLICTED),
        ],
    )
    def test_illegal_transitions_raise(self, current, target):
        with pytest.raises(InvalidArgument):
            transition(current, target)
