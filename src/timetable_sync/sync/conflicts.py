"""
Version-token conflict detection, classification and resolution.

Every linked event moves through an explicit link-state machine::

    NOT_LINKED ──create/update──▶ LINKED_CLEAN ──stale token──▶ LINKED_CONFLICTED
         ▲                             ▲                              │
         └──────── unlink ─────── RESOLVED ◀──── resolution ──────────┘

Classification works on what the remote returns, never on error text:
no remote object is ``deleted_remotely``; an object carrying a different
version token is ``etag_mismatch``; an object without any token (a store that
cannot supply one) is ``modified_externally``.
"""

import logging
from typing import Any

from timetable_sync.db import EventStore
from timetable_sync.models import DEFAULT_MERGE_FIELDS
from timetable_sync.models import Conflict
from timetable_sync.models import ConflictType
from timetable_sync.models import EventStatus
from timetable_sync.models import InvalidArgument
from timetable_sync.models import LinkState
from timetable_sync.models import LocalEvent
from timetable_sync.models import PreconditionFailed
from timetable_sync.models import RemoteAuthError
from timetable_sync.models import RemoteNotFound
from timetable_sync.models import RemoteTransientError
from timetable_sync.models import Resolution
from timetable_sync.models import ResolutionAction
from timetable_sync.models import SyncAction
from timetable_sync.models import SyncDetail
from timetable_sync.remote import RemoteCalendarClient
from timetable_sync.sync.payloads import PayloadFactory
from timetable_sync.sync.utils import compute_fingerprint
from timetable_sync.sync.utils import differing_fields
from timetable_sync.sync.utils import payload_digest

logger = logging.getLogger(__name__)

_TRANSITIONS: dict[LinkState, frozenset[LinkState]] = {
    LinkState.NOT_LINKED: frozenset({LinkState.LINKED_CLEAN}),
    LinkState.LINKED_CLEAN: frozenset({LinkState.LINKED_CLEAN, LinkState.LINKED_CONFLICTED}),
    LinkState.LINKED_CONFLICTED: frozenset({LinkState.RESOLVED}),
    LinkState.RESOLVED: frozenset({LinkState.LINKED_CLEAN, LinkState.NOT_LINKED}),
}


def transition(current: LinkState, target: LinkState) -> LinkState:
    """Return ``target`` if the move from ``current`` is legal, else raise."""
    if target not in _TRANSITIONS[current]:
        raise InvalidArgument(f"illegal link-state transition {current.value} -> {target.value}")
    return target


def link_state_of(event: LocalEvent) -> LinkState:
    return LinkState.LINKED_CLEAN if event.remote_id else LinkState.NOT_LINKED


def classify(held_version: str | None, remote_payload: dict[str, Any] | None) -> ConflictType | None:
    """Classify divergence between the held token and the remote copy.

    Returns None when the remote copy carries the token we hold.
    """
    if remote_payload is None:
        return ConflictType.DELETED_REMOTELY
    remote_version = remote_payload.get("etag")
    if remote_version is None:
        return ConflictType.MODIFIED_EXTERNALLY
    if remote_version != held_version:
        return ConflictType.ETAG_MISMATCH
    return None


def has_only_non_critical_changes(
    local_payload: dict[str, Any] | None,
    remote_payload: dict[str, Any] | None,
    merge_fields: frozenset[str],
) -> bool:
    if local_payload is None or remote_payload is None:
        return False
    return differing_fields(local_payload, remote_payload) <= merge_fields


def suggest_resolution(
    conflict_type: ConflictType,
    local_payload: dict[str, Any] | None = None,
    remote_payload: dict[str, Any] | None = None,
    merge_fields: frozenset[str] = DEFAULT_MERGE_FIELDS,
) -> Resolution:
    match conflict_type:
        case ConflictType.DELETED_REMOTELY:
            return Resolution(ResolutionAction.RECREATE, "Event was deleted on the remote calendar")
        case ConflictType.ETAG_MISMATCH:
            if has_only_non_critical_changes(local_payload, remote_payload, merge_fields):
                return Resolution(
                    ResolutionAction.MERGE, "Only non-critical fields changed, safe to merge"
                )
            return Resolution(
                ResolutionAction.USE_LOCAL, "Critical fields changed, recommend using local version"
            )
        case ConflictType.MODIFIED_EXTERNALLY:
            return Resolution(
                ResolutionAction.USE_GOOGLE,
                "Event was modified externally, recommend using remote version",
            )
    raise InvalidArgument(f"unknown conflict type: {conflict_type!r}")


class ConflictResolver:
    """Builds, persists and resolves conflicts for one owner's events."""

    def __init__(
        self,
        store: EventStore,
        payloads: PayloadFactory,
        merge_fields: frozenset[str] = DEFAULT_MERGE_FIELDS,
    ):
        self.store = store
        self.payloads = payloads
        self.merge_fields = merge_fields

    # ------------------------------------------------------------------ #
    # Detection                                                            #
    # ------------------------------------------------------------------ #

    def build_conflict(
        self,
        members: list[LocalEvent],
        conflict_type: ConflictType,
        remote_payload: dict[str, Any] | None,
        local_payload: dict[str, Any] | None,
        remote_version: str | None = None,
    ) -> Conflict:
        lead = members[0]
        if remote_payload is not None and remote_payload.get("etag") is not None:
            remote_version = remote_payload["etag"]
        # Tokenless stores are told apart by content so each new edit is a new conflict.
        observed = remote_version or (payload_digest(remote_payload) if remote_payload else None)
        return Conflict(
            id=compute_fingerprint(lead.id, lead.remote_id, lead.remote_version, observed),
            local_event_id=lead.id,
            member_event_ids=[m.id for m in members],
            remote_id=lead.remote_id,
            held_version=lead.remote_version,
            remote_version=remote_version,
            conflict_type=conflict_type,
            suggested_resolution=suggest_resolution(
                conflict_type, local_payload, remote_payload, self.merge_fields
            ),
            remote_payload=remote_payload,
            state=transition(link_state_of(lead), LinkState.LINKED_CONFLICTED),
        )

    def conflict_from_failure(
        self,
        owner_id: str,
        members: list[LocalEvent],
        local_payload: dict[str, Any],
        error: PreconditionFailed | RemoteNotFound,
        remote: RemoteCalendarClient,
    ) -> Conflict:
        """Classify a rejected update and persist the resulting conflict."""
        lead = members[0]
        if isinstance(error, RemoteNotFound):
            conflict_type, remote_payload = ConflictType.DELETED_REMOTELY, None
        else:
            try:
                remote_payload = remote.get(lead.remote_id)
            except RemoteNotFound:
                conflict_type, remote_payload = ConflictType.DELETED_REMOTELY, None
            except (RemoteTransientError, RemoteAuthError) as e:
                # The rejection already compared tokens; the fetch was only for detail.
                logger.warning(f"Could not fetch remote copy of {lead.remote_id}: {e}")
                conflict_type, remote_payload = ConflictType.ETAG_MISMATCH, None
            else:
                # A token that matches by the time we look does not undo the rejection.
                conflict_type = (
                    classify(lead.remote_version, remote_payload) or ConflictType.ETAG_MISMATCH
                )

        conflict = self.build_conflict(
            members,
            conflict_type,
            remote_payload,
            local_payload,
            remote_version=getattr(error, "current_version", None),
        )
        self.store.save_conflict(owner_id, conflict)
        logger.warning(
            f"Conflict {conflict.id} on {lead.id}: {conflict_type.value} "
            f"(suggest {conflict.suggested_resolution.action.value})"
        )
        return conflict

    def detect(
        self, owner_id: str, members: list[LocalEvent], remote: RemoteCalendarClient
    ) -> Conflict | None:
        """On-demand check of a linked event (or series) against the remote."""
        lead = members[0]
        if not lead.remote_id:
            return None
        try:
            remote_payload = remote.get(lead.remote_id)
        except RemoteNotFound:
            remote_payload = None
        conflict_type = classify(lead.remote_version, remote_payload)
        if conflict_type is None:
            return None
        local_payload = self.payloads.for_members(members)
        conflict = self.build_conflict(members, conflict_type, remote_payload, local_payload)
        self.store.save_conflict(owner_id, conflict)
        return conflict

    # ------------------------------------------------------------------ #
    # Resolution                                                           #
    # ------------------------------------------------------------------ #

    def apply(
        self,
        owner_id: str,
        conflict: Conflict,
        resolution: Resolution,
        remote: RemoteCalendarClient,
    ) -> list[SyncDetail]:
        """Execute ``resolution`` for ``conflict`` and return one detail per member.

        Re-applying the action a conflict was already resolved with replays the
        recorded outcome without touching the remote.
        """
        stored = self.store.get_conflict(conflict.id)
        if stored is not None:
            conflict, recorded = stored
            if conflict.is_resolved:
                if conflict.applied_resolution.action == resolution.action:
                    logger.info(
                        f"Conflict {conflict.id} already resolved with "
                        f"{resolution.action.value}, replaying recorded outcome"
                    )
                    return recorded
                raise InvalidArgument(
                    f"conflict {conflict.id} was already resolved with "
                    f"{conflict.applied_resolution.action.value}"
                )
        else:
            self.store.save_conflict(owner_id, conflict)

        members = self.store.get_events(conflict.member_event_ids)
        if not members:
            raise InvalidArgument(f"conflict {conflict.id} references no known events")
        if any(m.owner_id != owner_id for m in members):
            raise InvalidArgument(f"conflict {conflict.id} does not belong to owner {owner_id}")

        state = transition(conflict.state, LinkState.RESOLVED)
        ids = [m.id for m in members]

        match resolution.action:
            case ResolutionAction.USE_LOCAL | ResolutionAction.MERGE:
                payload = self.payloads.for_members(members)
                ref = remote.update(conflict.remote_id, payload, conflict.remote_version)
                fields = {
                    "remote_id": ref.remote_id,
                    "remote_version": ref.version,
                    "status": EventStatus.SYNCED,
                }
                action, final = SyncAction.UPDATED, LinkState.LINKED_CLEAN
            case ResolutionAction.USE_GOOGLE:
                version = conflict.remote_version or conflict.held_version
                if version is None:
                    raise InvalidArgument(
                        f"conflict {conflict.id} has no remote version to accept"
                    )
                fields = {
                    "remote_id": conflict.remote_id,
                    "remote_version": version,
                    "status": EventStatus.SYNCED,
                }
                action, final = SyncAction.UPDATED, LinkState.LINKED_CLEAN
            case ResolutionAction.RECREATE:
                payload = self.payloads.for_members(members)
                ref = remote.create(payload)
                fields = {
                    "remote_id": ref.remote_id,
                    "remote_version": ref.version,
                    "status": EventStatus.SYNCED,
                }
                action, final = SyncAction.CREATED, LinkState.LINKED_CLEAN
            case ResolutionAction.UNLINK:
                fields = {"remote_id": None, "remote_version": None, "status": EventStatus.PLANNED}
                action, final = SyncAction.UPDATED, LinkState.NOT_LINKED
            case _:
                raise InvalidArgument(f"unknown resolution action: {resolution.action!r}")

        self.store.update_fields(ids, fields)

        conflict.state = transition(state, final)
        conflict.applied_resolution = resolution
        details = [
            SyncDetail(
                local_event_id=event_id,
                action=action,
                remote_event_id=fields["remote_id"],
                version=fields["remote_version"],
            )
            for event_id in ids
        ]
        self.store.mark_conflict_resolved(conflict, resolution, details)
        logger.info(
            f"Resolved conflict {conflict.id} with {resolution.action.value} "
            f"({len(ids)} event(s) now {final.value})"
        )
        return details
