"""
Pure data models and the error taxonomy. No EDS or sqlite imports.
"""

import re
from dataclasses import dataclass
from dataclasses import field
from datetime import date
from datetime import datetime
from datetime import time
from enum import Enum
from pathlib import Path
from typing import Any

DEFAULT_STATE_DB = Path.home() / ".local/share/timetable-sync.db"
DEFAULT_CONFIG = Path.home() / ".config/timetable-sync.conf"

DEFAULT_TIMEZONE = "Asia/Bangkok"
DEFAULT_GROUP_THRESHOLD = 3
DEFAULT_MERGE_FIELDS = frozenset({"description", "location", "colorId", "reminders"})
DEFAULT_IDEMPOTENCY_TTL = 86400

DRY_RUN_REMOTE_ID = "dry-run-id"
DRY_RUN_VERSION = "dry-run-etag"

MAX_REMINDER_MINUTES = 40320  # four weeks, the remote service's upper bound

_IDEMPOTENCY_KEY_RE = re.compile(r"^[A-Za-z0-9_-]{16,64}$")


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class TimetableSyncError(Exception):
    """Base exception for timetable sync errors."""

    code = "error"


class FormatError(TimetableSyncError):
    """Malformed single-event input (bad color, inverted times, missing context)."""

    code = "format"


class InvalidArgument(TimetableSyncError, ValueError):
    """A caller or programming error that invalidates the whole call."""

    code = "invalid"


class PreconditionFailed(TimetableSyncError):
    """The remote rejected an update because the held version token is stale."""

    code = "precondition"

    def __init__(self, message: str, current_version: str | None = None):
        super().__init__(message)
        self.current_version = current_version


class RemoteNotFound(TimetableSyncError):
    """The remote object no longer exists."""

    code = "not_found"


class RemoteTransientError(TimetableSyncError):
    """Network failure, timeout or rate limiting; retryable at request level."""

    code = "transient"


class RemoteAuthError(TimetableSyncError):
    """Expired or revoked credential; needs a token refresh, never retried here."""

    code = "auth"


class StoreError(TimetableSyncError):
    """Local event store read/write failure; aborts the whole call."""

    code = "store"


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class EventStatus(str, Enum):
    PLANNED = "planned"
    SYNCED = "synced"
    DELETED = "deleted"


class SyncAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"
    FAILED = "failed"


class ConflictType(str, Enum):
    ETAG_MISMATCH = "etag_mismatch"
    DELETED_REMOTELY = "deleted_remotely"
    MODIFIED_EXTERNALLY = "modified_externally"


class ResolutionAction(str, Enum):
    USE_LOCAL = "use_local"
    USE_GOOGLE = "use_google"
    MERGE = "merge"
    RECREATE = "recreate"
    UNLINK = "unlink"


class LinkState(str, Enum):
    NOT_LINKED = "not_linked"
    LINKED_CLEAN = "linked_clean"
    LINKED_CONFLICTED = "linked_conflicted"
    RESOLVED = "resolved"


class ReminderChannel(str, Enum):
    POPUP = "popup"
    EMAIL = "email"


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ReminderConfig:
    """Default reminder attached to every formatted event."""

    enabled: bool = True
    lead_minutes: int = 15
    channel: ReminderChannel = ReminderChannel.POPUP

    def __post_init__(self):
        if isinstance(self.lead_minutes, bool) or not isinstance(self.lead_minutes, int):
            raise InvalidArgument(f"reminder lead minutes must be an integer: {self.lead_minutes!r}")
        if not 0 <= self.lead_minutes <= MAX_REMINDER_MINUTES:
            raise InvalidArgument(
                f"reminder lead minutes must be within 0..{MAX_REMINDER_MINUTES}, "
                f"got {self.lead_minutes}"
            )
        try:
            object.__setattr__(self, "channel", ReminderChannel(self.channel))
        except ValueError:
            raise InvalidArgument(f"unknown reminder channel: {self.channel!r}") from None


@dataclass
class SyncConfig:
    """Configuration for a sync operation."""

    calendar_id: str | None = None
    state_db_path: Path = DEFAULT_STATE_DB
    timezone: str = DEFAULT_TIMEZONE
    group_threshold: int = DEFAULT_GROUP_THRESHOLD
    merge_fields: frozenset[str] = DEFAULT_MERGE_FIELDS
    reminder: ReminderConfig = field(default_factory=ReminderConfig)
    idempotency_ttl: int = DEFAULT_IDEMPOTENCY_TTL
    max_retries: int = 3
    retry_base_delay: float = 1.0
    verbose: bool = False
    yes: bool = False  # Auto-confirm without prompting

    def __post_init__(self):
        if self.group_threshold < 1:
            raise InvalidArgument(f"group threshold must be positive, got {self.group_threshold}")
        if self.max_retries < 1:
            raise InvalidArgument(f"max retries must be at least 1, got {self.max_retries}")


# ---------------------------------------------------------------------------
# Domain entities
# ---------------------------------------------------------------------------


@dataclass
class ScheduleRule:
    day_of_week: int  # 0=Sunday .. 6=Saturday
    start_time: time
    end_time: time
    start_date: date
    end_date: date
    skip_dates: list[date] = field(default_factory=list)


@dataclass
class Subject:
    id: str
    owner_id: str
    name: str
    code: str = ""
    color: str = "#a4bdfc"
    meta: dict[str, Any] = field(default_factory=dict)


@dataclass
class Section:
    id: str
    subject_id: str
    code: str = ""
    teacher: str = ""
    room: str = ""
    schedule_rules: list[ScheduleRule] = field(default_factory=list)


@dataclass
class LocalEvent:
    id: str
    owner_id: str
    subject_id: str
    section_id: str
    event_date: date
    start_time: time
    end_time: time
    room: str | None = None
    title_override: str | None = None
    status: EventStatus = EventStatus.PLANNED
    remote_id: str | None = None
    remote_version: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_linked(self) -> bool:
        return self.remote_id is not None

    @property
    def group_key(self) -> tuple[str, str]:
        return (self.subject_id, self.section_id)


@dataclass(frozen=True)
class DateRange:
    start: date
    end: date

    def __post_init__(self):
        if self.start > self.end:
            raise InvalidArgument(f"date range is inverted: {self.start} > {self.end}")

    def __contains__(self, day: date) -> bool:
        return self.start <= day <= self.end


@dataclass
class SyncRequest:
    range: DateRange
    idempotency_key: str
    event_ids: list[str] | None = None
    dry_run: bool = False

    def __post_init__(self):
        if not self.idempotency_key or not _IDEMPOTENCY_KEY_RE.match(self.idempotency_key):
            raise InvalidArgument(
                "idempotency key must be 16-64 characters of letters, digits, '-' or '_'"
            )

    def fingerprint_data(self) -> dict[str, Any]:
        """Canonical request content, used to detect idempotency-key reuse."""
        return {
            "from": self.range.start.isoformat(),
            "to": self.range.end.isoformat(),
            "eventIds": sorted(self.event_ids) if self.event_ids is not None else None,
            "dryRun": self.dry_run,
        }


@dataclass
class RemoteRef:
    """What the remote returns for a successful create/update."""

    remote_id: str
    version: str


@dataclass
class Resolution:
    action: ResolutionAction
    reason: str = ""

    def __post_init__(self):
        try:
            self.action = ResolutionAction(self.action)
        except ValueError:
            raise InvalidArgument(f"unknown resolution action: {self.action!r}") from None

    def to_dict(self) -> dict[str, str]:
        return {"action": self.action.value, "reason": self.reason}


@dataclass
class SyncDetail:
    local_event_id: str
    action: SyncAction
    remote_event_id: str | None = None
    version: str | None = None
    error: str | None = None
    error_code: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"localEventId": self.local_event_id, "action": self.action.value}
        if self.remote_event_id is not None:
            out["remoteEventId"] = self.remote_event_id
        if self.version is not None:
            out["version"] = self.version
        if self.error is not None:
            out["error"] = self.error
        if self.error_code is not None:
            out["errorCode"] = self.error_code
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SyncDetail":
        return cls(
            local_event_id=data["localEventId"],
            action=SyncAction(data["action"]),
            remote_event_id=data.get("remoteEventId"),
            version=data.get("version"),
            error=data.get("error"),
            error_code=data.get("errorCode"),
        )


@dataclass
class Conflict:
    id: str
    local_event_id: str
    remote_id: str
    conflict_type: ConflictType
    suggested_resolution: Resolution
    held_version: str | None = None
    remote_version: str | None = None
    member_event_ids: list[str] = field(default_factory=list)
    remote_payload: dict[str, Any] | None = None
    state: LinkState = LinkState.LINKED_CONFLICTED
    applied_resolution: Resolution | None = None

    def __post_init__(self):
        if not self.member_event_ids:
            self.member_event_ids = [self.local_event_id]

    @property
    def is_resolved(self) -> bool:
        return self.applied_resolution is not None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.id,
            "localEventId": self.local_event_id,
            "remoteEventId": self.remote_id,
            "conflictType": self.conflict_type.value,
            "suggestedResolution": self.suggested_resolution.to_dict(),
            "heldVersion": self.held_version,
            "remoteVersion": self.remote_version,
            "memberEventIds": list(self.member_event_ids),
            "state": self.state.value,
        }
        if self.applied_resolution is not None:
            out["appliedResolution"] = self.applied_resolution.to_dict()
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Conflict":
        applied = data.get("appliedResolution")
        return cls(
            id=data["id"],
            local_event_id=data["localEventId"],
            remote_id=data["remoteEventId"],
            conflict_type=ConflictType(data["conflictType"]),
            suggested_resolution=Resolution(**data["suggestedResolution"]),
            held_version=data.get("heldVersion"),
            remote_version=data.get("remoteVersion"),
            member_event_ids=list(data.get("memberEventIds") or []),
            state=LinkState(data.get("state", LinkState.LINKED_CONFLICTED.value)),
            applied_resolution=Resolution(**applied) if applied else None,
        )


@dataclass
class GroupOutcome:
    """How one (subject, section) group was processed."""

    subject_id: str
    section_id: str
    size: int
    batched: bool
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "subjectId": self.subject_id,
            "sectionId": self.section_id,
            "size": self.size,
            "batched": self.batched,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GroupOutcome":
        return cls(
            subject_id=data["subjectId"],
            section_id=data["sectionId"],
            size=data["size"],
            batched=data["batched"],
            reason=data.get("reason"),
        )


@dataclass
class SyncResult:
    """Aggregated outcome of a sync or resolve call."""

    is_dry_run: bool = False
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    details: list[SyncDetail] = field(default_factory=list)
    conflicts: list[Conflict] = field(default_factory=list)
    groups: list[GroupOutcome] = field(default_factory=list)
    quota_used: int = 0

    def record(self, detail: SyncDetail):
        """Append a detail and bump the matching summary counter."""
        self.details.append(detail)
        counter = detail.action.value
        setattr(self, counter, getattr(self, counter) + 1)

    @property
    def requires_reauth(self) -> bool:
        return any(d.error_code == RemoteAuthError.code for d in self.details)

    def to_dict(self) -> dict[str, Any]:
        return {
            "summary": {
                "created": self.created,
                "updated": self.updated,
                "skipped": self.skipped,
                "failed": self.failed,
            },
            "details": [d.to_dict() for d in self.details],
            "conflicts": [c.to_dict() for c in self.conflicts],
            "groups": [g.to_dict() for g in self.groups],
            "quotaUsed": self.quota_used,
            "isDryRun": self.is_dry_run,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SyncResult":
        summary = data["summary"]
        return cls(
            is_dry_run=data["isDryRun"],
            created=summary["created"],
            updated=summary["updated"],
            skipped=summary["skipped"],
            failed=summary["failed"],
            details=[SyncDetail.from_dict(d) for d in data["details"]],
            conflicts=[Conflict.from_dict(c) for c in data["conflicts"]],
            groups=[GroupOutcome.from_dict(g) for g in data.get("groups", [])],
            quota_used=data["quotaUsed"],
        )
