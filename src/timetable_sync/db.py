"""
SQLite persistence: local events, open conflicts and the idempotency cache.
"""

import json
import logging
import sqlite3
import time
from contextlib import contextmanager
from datetime import date
from datetime import datetime
from datetime import time as dtime
from pathlib import Path
from typing import Any
from typing import Iterable

from timetable_sync.models import Conflict
from timetable_sync.models import DateRange
from timetable_sync.models import EventStatus
from timetable_sync.models import InvalidArgument
from timetable_sync.models import LocalEvent
from timetable_sync.models import Resolution
from timetable_sync.models import ScheduleRule
from timetable_sync.models import Section
from timetable_sync.models import StoreError
from timetable_sync.models import Subject
from timetable_sync.models import SyncDetail

logger = logging.getLogger(__name__)

# The only LocalEvent fields the sync core may write.
MUTABLE_EVENT_FIELDS = frozenset({"status", "remote_id", "remote_version"})


def _parse_time(value: str) -> dtime:
    return dtime.fromisoformat(value)


def _rules_to_json(rules: list[ScheduleRule]) -> str:
    return json.dumps(
        [
            {
                "day_of_week": r.day_of_week,
                "start_time": r.start_time.strftime("%H:%M"),
                "end_time": r.end_time.strftime("%H:%M"),
                "start_date": r.start_date.isoformat(),
                "end_date": r.end_date.isoformat(),
                "skip_dates": [d.isoformat() for d in r.skip_dates],
            }
            for r in rules
        ]
    )


def _rules_from_json(raw: str | None) -> list[ScheduleRule]:
    return [
        ScheduleRule(
            day_of_week=r["day_of_week"],
            start_time=_parse_time(r["start_time"]),
            end_time=_parse_time(r["end_time"]),
            start_date=date.fromisoformat(r["start_date"]),
            end_date=date.fromisoformat(r["end_date"]),
            skip_dates=[date.fromisoformat(d) for d in r.get("skip_dates", [])],
        )
        for r in json.loads(raw or "[]")
    ]


def _row_to_event(row: sqlite3.Row) -> LocalEvent:
    return LocalEvent(
        id=row["id"],
        owner_id=row["owner_id"],
        subject_id=row["subject_id"],
        section_id=row["section_id"],
        event_date=date.fromisoformat(row["event_date"]),
        start_time=_parse_time(row["start_time"]),
        end_time=_parse_time(row["end_time"]),
        room=row["room"],
        title_override=row["title_override"],
        status=EventStatus(row["status"]),
        remote_id=row["remote_id"],
        remote_version=row["remote_version"],
        created_at=datetime.fromtimestamp(row["created_at"]),
        updated_at=datetime.fromtimestamp(row["updated_at"]),
    )


class EventStore:
    """SQLite-backed event store used by the sync orchestrator."""

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self.conn: sqlite3.Connection | None = None

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    @contextmanager
    def _guard(self, operation: str):
        """Translate sqlite failures into StoreError and roll back the transaction."""
        if not self.conn:
            raise StoreError(f"{operation}: store is not connected")
        try:
            yield self.conn
        except sqlite3.Error as e:
            self.conn.rollback()
            raise StoreError(f"{operation} failed: {e}") from e

    def connect(self):
        """Initialize and connect to the store database."""
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self.conn = sqlite3.connect(str(self.db_path))
        except (OSError, sqlite3.Error) as e:
            raise StoreError(f"Cannot open state database {self.db_path}: {e}") from e
        self.conn.row_factory = sqlite3.Row  # Enable column access by name
        self._init_schema()

    def _init_schema(self):
        with self._guard("schema init") as conn:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS subject (
                    id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    code TEXT NOT NULL DEFAULT '',
                    name TEXT NOT NULL,
                    color TEXT NOT NULL,
                    meta TEXT NOT NULL DEFAULT '{}'
                );
                CREATE TABLE IF NOT EXISTS section (
                    id TEXT PRIMARY KEY,
                    subject_id TEXT NOT NULL REFERENCES subject(id),
                    code TEXT NOT NULL DEFAULT '',
                    teacher TEXT NOT NULL DEFAULT '',
                    room TEXT NOT NULL DEFAULT '',
                    schedule_rules TEXT NOT NULL DEFAULT '[]'
                );
                CREATE TABLE IF NOT EXISTS local_event (
                    id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    subject_id TEXT NOT NULL REFERENCES subject(id),
                    section_id TEXT NOT NULL REFERENCES section(id),
                    event_date TEXT NOT NULL,
                    start_time TEXT NOT NULL,
                    end_time TEXT NOT NULL,
                    room TEXT,
                    title_override TEXT,
                    status TEXT NOT NULL DEFAULT 'planned',
                    remote_id TEXT,
                    remote_version TEXT,
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL,
                    UNIQUE(owner_id, subject_id, section_id, event_date, start_time, end_time)
                );
                CREATE INDEX IF NOT EXISTS idx_local_event_owner_date
                    ON local_event(owner_id, event_date);
                CREATE TABLE IF NOT EXISTS sync_conflict (
                    id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    local_event_id TEXT NOT NULL,
                    data TEXT NOT NULL,
                    remote_payload TEXT,
                    resolved INTEGER NOT NULL DEFAULT 0,
                    resolution_details TEXT,
                    created_at INTEGER NOT NULL,
                    resolved_at INTEGER
                );
                CREATE TABLE IF NOT EXISTS idempotency_record (
                    owner_id TEXT NOT NULL,
                    idempotency_key TEXT NOT NULL,
                    fingerprint TEXT NOT NULL,
                    result TEXT NOT NULL,
                    created_at INTEGER NOT NULL,
                    expires_at INTEGER NOT NULL,
                    PRIMARY KEY (owner_id, idempotency_key)
                );
            """)
            conn.commit()

    # ------------------------------------------------------------------ #
    # Upstream writes (quick-add / import collaborators, tests)            #
    # ------------------------------------------------------------------ #

    def insert_subject(self, subject: Subject):
        with self._guard("insert subject") as conn:
            conn.execute(
                "INSERT INTO subject (id, owner_id, code, name, color, meta) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    subject.id,
                    subject.owner_id,
                    subject.code,
                    subject.name,
                    subject.color,
                    json.dumps(subject.meta),
                ),
            )
            conn.commit()

    def insert_section(self, section: Section):
        with self._guard("insert section") as conn:
            conn.execute(
                "INSERT INTO section (id, subject_id, code, teacher, room, schedule_rules) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    section.id,
                    section.subject_id,
                    section.code,
                    section.teacher,
                    section.room,
                    _rules_to_json(section.schedule_rules),
                ),
            )
            conn.commit()

    def insert_event(self, event: LocalEvent):
        timestamp = int(time.time())
        with self._guard("insert event") as conn:
            conn.execute(
                "INSERT INTO local_event "
                "(id, owner_id, subject_id, section_id, event_date, start_time, end_time, "
                " room, title_override, status, remote_id, remote_version, "
                " created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    event.id,
                    event.owner_id,
                    event.subject_id,
                    event.section_id,
                    event.event_date.isoformat(),
                    event.start_time.strftime("%H:%M"),
                    event.end_time.strftime("%H:%M"),
                    event.room,
                    event.title_override,
                    EventStatus(event.status).value,
                    event.remote_id,
                    event.remote_version,
                    timestamp,
                    timestamp,
                ),
            )
            conn.commit()

    # ------------------------------------------------------------------ #
    # Event Store contract                                                 #
    # ------------------------------------------------------------------ #

    def select_by_owner_and_range(
        self,
        owner_id: str,
        date_range: DateRange,
        statuses: Iterable[EventStatus] | None = None,
        event_ids: Iterable[str] | None = None,
    ) -> list[LocalEvent]:
        """Return the owner's events within the inclusive range, oldest first."""
        sql = "SELECT * FROM local_event WHERE owner_id = ? AND event_date >= ? AND event_date <= ?"
        params: list[Any] = [owner_id, date_range.start.isoformat(), date_range.end.isoformat()]
        if statuses is not None:
            status_values = [EventStatus(s).value for s in statuses]
            sql += f" AND status IN ({', '.join('?' * len(status_values))})"
            params.extend(status_values)
        if event_ids is not None:
            ids = list(event_ids)
            if not ids:
                return []
            sql += f" AND id IN ({', '.join('?' * len(ids))})"
            params.extend(ids)
        sql += " ORDER BY event_date, start_time, id"
        with self._guard("select events") as conn:
            return [_row_to_event(row) for row in conn.execute(sql, params).fetchall()]

    def update_fields(self, event_ids: str | Iterable[str], fields: dict[str, Any]) -> int:
        """Write sync fields for one or many events in a single transaction.

        Only status, remote_id and remote_version may be written.  Returns the
        number of affected rows.
        """
        unknown = set(fields) - MUTABLE_EVENT_FIELDS
        if unknown:
            raise InvalidArgument(f"sync core may not write fields: {sorted(unknown)}")
        if not fields:
            return 0
        ids = [event_ids] if isinstance(event_ids, str) else list(event_ids)
        if not ids:
            return 0

        values = dict(fields)
        if "status" in values:
            values["status"] = EventStatus(values["status"]).value
        assignments = ", ".join(f"{name} = ?" for name in values)
        placeholders = ", ".join("?" * len(ids))
        with self._guard("update events") as conn:
            cursor = conn.execute(
                f"UPDATE local_event SET {assignments}, updated_at = ? "
                f"WHERE id IN ({placeholders})",
                [*values.values(), int(time.time()), *ids],
            )
            conn.commit()
            return cursor.rowcount

    def get_event(self, event_id: str) -> LocalEvent | None:
        with self._guard("get event") as conn:
            row = conn.execute("SELECT * FROM local_event WHERE id = ?", (event_id,)).fetchone()
        return _row_to_event(row) if row else None

    def get_events(self, event_ids: Iterable[str]) -> list[LocalEvent]:
        ids = list(event_ids)
        if not ids:
            return []
        with self._guard("get events") as conn:
            rows = conn.execute(
                f"SELECT * FROM local_event WHERE id IN ({', '.join('?' * len(ids))}) "
                "ORDER BY event_date, start_time, id",
                ids,
            ).fetchall()
        return [_row_to_event(row) for row in rows]

    def get_events_by_remote_id(self, owner_id: str, remote_id: str) -> list[LocalEvent]:
        """All of the owner's events linked to ``remote_id`` (a batched series has several)."""
        with self._guard("get linked events") as conn:
            rows = conn.execute(
                "SELECT * FROM local_event WHERE owner_id = ? AND remote_id = ? "
                "ORDER BY event_date, start_time, id",
                (owner_id, remote_id),
            ).fetchall()
        return [_row_to_event(row) for row in rows]

    def get_subject(self, subject_id: str) -> Subject | None:
        with self._guard("get subject") as conn:
            row = conn.execute("SELECT * FROM subject WHERE id = ?", (subject_id,)).fetchone()
        if not row:
            return None
        return Subject(
            id=row["id"],
            owner_id=row["owner_id"],
            code=row["code"],
            name=row["name"],
            color=row["color"],
            meta=json.loads(row["meta"] or "{}"),
        )

    def get_section(self, section_id: str) -> Section | None:
        with self._guard("get section") as conn:
            row = conn.execute("SELECT * FROM section WHERE id = ?", (section_id,)).fetchone()
        if not row:
            return None
        return Section(
            id=row["id"],
            subject_id=row["subject_id"],
            code=row["code"],
            teacher=row["teacher"],
            room=row["room"],
            schedule_rules=_rules_from_json(row["schedule_rules"]),
        )

    # ------------------------------------------------------------------ #
    # Conflicts                                                            #
    # ------------------------------------------------------------------ #

    def save_conflict(self, owner_id: str, conflict: Conflict):
        """Record a conflict; re-recording an unresolved conflict refreshes it."""
        with self._guard("save conflict") as conn:
            conn.execute(
                "INSERT INTO sync_conflict "
                "(id, owner_id, local_event_id, data, remote_payload, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(id) DO UPDATE SET data = excluded.data, "
                "remote_payload = excluded.remote_payload WHERE resolved = 0",
                (
                    conflict.id,
                    owner_id,
                    conflict.local_event_id,
                    json.dumps(conflict.to_dict()),
                    json.dumps(conflict.remote_payload)
                    if conflict.remote_payload is not None
                    else None,
                    int(time.time()),
                ),
            )
            conn.commit()

    def _row_to_conflict(self, row: sqlite3.Row) -> Conflict:
        conflict = Conflict.from_dict(json.loads(row["data"]))
        if row["remote_payload"]:
            conflict.remote_payload = json.loads(row["remote_payload"])
        return conflict

    def get_conflict(self, conflict_id: str) -> tuple[Conflict, list[SyncDetail]] | None:
        """Return a stored conflict and, when resolved, the details it produced."""
        with self._guard("get conflict") as conn:
            row = conn.execute("SELECT * FROM sync_conflict WHERE id = ?", (conflict_id,)).fetchone()
        if not row:
            return None
        details = [SyncDetail.from_dict(d) for d in json.loads(row["resolution_details"] or "[]")]
        return self._row_to_conflict(row), details

    def list_conflicts(self, owner_id: str, include_resolved: bool = False) -> list[Conflict]:
        sql = "SELECT * FROM sync_conflict WHERE owner_id = ?"
        if not include_resolved:
            sql += " AND resolved = 0"
        sql += " ORDER BY created_at, id"
        with self._guard("list conflicts") as conn:
            return [self._row_to_conflict(row) for row in conn.execute(sql, (owner_id,))]

    def mark_conflict_resolved(
        self, conflict: Conflict, resolution: Resolution, details: list[SyncDetail]
    ):
        with self._guard("resolve conflict") as conn:
            conn.execute(
                "UPDATE sync_conflict SET data = ?, resolved = 1, resolution_details = ?, "
                "resolved_at = ? WHERE id = ?",
                (
                    json.dumps(conflict.to_dict()),
                    json.dumps([d.to_dict() for d in details]),
                    int(time.time()),
                    conflict.id,
                ),
            )
            conn.commit()
        logger.debug(f"Conflict {conflict.id} resolved with {resolution.action.value}")

    # ------------------------------------------------------------------ #
    # Idempotency cache                                                    #
    # ------------------------------------------------------------------ #

    def get_cached_result(self, owner_id: str, key: str) -> tuple[str, dict] | None:
        """Return (fingerprint, result) for a live cache entry, or None."""
        with self._guard("read idempotency cache") as conn:
            row = conn.execute(
                "SELECT fingerprint, result FROM idempotency_record "
                "WHERE owner_id = ? AND idempotency_key = ? AND expires_at > ?",
                (owner_id, key, int(time.time())),
            ).fetchone()
        if not row:
            return None
        return row["fingerprint"], json.loads(row["result"])

    def store_result(self, owner_id: str, key: str, fingerprint: str, result: dict, ttl: int):
        now = int(time.time())
        with self._guard("write idempotency cache") as conn:
            conn.execute(
                "INSERT OR REPLACE INTO idempotency_record "
                "(owner_id, idempotency_key, fingerprint, result, created_at, expires_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (owner_id, key, fingerprint, json.dumps(result), now, now + ttl),
            )
            conn.commit()

    def purge_expired_results(self) -> int:
        with self._guard("purge idempotency cache") as conn:
            cursor = conn.execute(
                "DELETE FROM idempotency_record WHERE expires_at <= ?", (int(time.time()),)
            )
            conn.commit()
            return cursor.rowcount

    def close(self):
        """Close the database connection."""
        if self.conn:
            self.conn.close()
            self.conn = None


def query_status_summary(db_path: Path) -> list:
    """
    Return per-owner, per-status event counts plus open conflict counts.

    Each row exposes: owner_id, status, count, open_conflicts.
    Returns an empty list when the DB file does not exist or has no schema yet.
    """
    if not db_path.exists():
        return []
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    try:
        tables = {
            row["name"] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
        }
        if not {"local_event", "sync_conflict"} <= tables:
            return []
        cursor = conn.execute("""
            SELECT
                e.owner_id,
                e.status,
                COUNT(*) AS count,
                (SELECT COUNT(*) FROM sync_conflict c
                 WHERE c.owner_id = e.owner_id AND c.resolved = 0) AS open_conflicts
            FROM local_event e
            GROUP BY e.owner_id, e.status
            ORDER BY e.owner_id, e.status
        """)
        return cursor.fetchall()
    finally:
        conn.close()
