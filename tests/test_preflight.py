"""
Unit tests for the state-database preflight check.
"""

from io import StringIO

from rich.console import Console

from timetable_sync.models import SyncConfig
from timetable_sync.preflight import check_state_db
from timetable_sync.preflight import run_preflight_checks


def _console() -> Console:
    return Console(file=StringIO(), width=120)


class TestStateDbCheck:
    def test_fresh_path_passes(self, tmp_path):
        cfg = SyncConfig(state_db_path=tmp_path / "nested" / "state.db")
        assert check_state_db(cfg) == []
        assert (tmp_path / "nested").is_dir()

    def test_existing_database_passes(self, store, db_path):
        assert check_state_db(SyncConfig(state_db_path=db_path)) == []

    def test_parent_that_is_a_file_fails(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("")

        (issue,) = check_state_db(SyncConfig(state_db_path=blocker / "state.db"))

        assert issue[0] == "State database"

    def test_run_reports_issues(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("")
        console = _console()

        ok = run_preflight_checks(
            SyncConfig(state_db_path=blocker / "state.db"), console, check_remote=False
        )

        assert not ok
        assert "Preflight checks failed" in console.file.getvalue()

    def test_run_passes_without_remote_check(self, tmp_path):
        cfg = SyncConfig(state_db_path=tmp_path / "state.db")
        assert run_preflight_checks(cfg, _console(), check_remote=False)
