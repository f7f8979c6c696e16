"""
Local → remote push of batched groups, linked series and single events.
"""

import logging
from dataclasses import dataclass

from timetable_sync.db import EventStore
from timetable_sync.models import DRY_RUN_REMOTE_ID
from timetable_sync.models import DRY_RUN_VERSION
from timetable_sync.models import EventStatus
from timetable_sync.models import FormatError
from timetable_sync.models import LinkState
from timetable_sync.models import LocalEvent
from timetable_sync.models import PreconditionFailed
from timetable_sync.models import RemoteAuthError
from timetable_sync.models import RemoteNotFound
from timetable_sync.models import RemoteRef
from timetable_sync.models import RemoteTransientError
from timetable_sync.models import SyncAction
from timetable_sync.models import SyncDetail
from timetable_sync.models import SyncResult
from timetable_sync.models import TimetableSyncError
from timetable_sync.remote import MeteredClient
from timetable_sync.sync.conflicts import ConflictResolver
from timetable_sync.sync.conflicts import link_state_of
from timetable_sync.sync.conflicts import transition
from timetable_sync.sync.grouping import EventGroup
from timetable_sync.sync.payloads import PayloadFactory

# Failures that cost one event (or one batch) but never the whole call.
REMOTE_ERRORS = (RemoteTransientError, RemoteAuthError, RemoteNotFound)


@dataclass
class PushContext:
    owner_id: str
    dry_run: bool
    store: EventStore
    remote: MeteredClient
    payloads: PayloadFactory
    resolver: ConflictResolver
    result: SyncResult
    logger: logging.Logger


def _describe(events: list[LocalEvent]) -> str:
    if len(events) == 1:
        return events[0].id
    return f"{events[0].id} (+{len(events) - 1} more)"


def record_failure(ctx: PushContext, events: list[LocalEvent], error: TimetableSyncError):
    """One failed detail per event, carrying the error code."""
    ctx.logger.error(f"Failed to sync {_describe(events)}: {error}")
    for event in events:
        ctx.result.record(
            SyncDetail(
                local_event_id=event.id,
                action=SyncAction.FAILED,
                remote_event_id=event.remote_id,
                error=str(error),
                error_code=error.code,
            )
        )


def _record_success(ctx: PushContext, events: list[LocalEvent], action: SyncAction, ref: RemoteRef):
    for event in events:
        ctx.result.record(
            SyncDetail(
                local_event_id=event.id,
                action=action,
                remote_event_id=ref.remote_id,
                version=ref.version,
            )
        )


def _stamp(ctx: PushContext, events: list[LocalEvent], ref: RemoteRef):
    """Commit the new link for every member in one transaction."""
    for event in events:
        transition(link_state_of(event), LinkState.LINKED_CLEAN)
    ctx.store.update_fields(
        [e.id for e in events],
        {
            "remote_id": ref.remote_id,
            "remote_version": ref.version,
            "status": EventStatus.SYNCED,
        },
    )


def _create(ctx: PushContext, events: list[LocalEvent], payload: dict):
    if ctx.dry_run:
        ctx.logger.info(f"[DRY RUN] Would CREATE {payload['summary']!r} for {_describe(events)}")
        _record_success(
            ctx, events, SyncAction.CREATED, RemoteRef(DRY_RUN_REMOTE_ID, DRY_RUN_VERSION)
        )
        return
    try:
        ref = ctx.remote.create(payload)
    except REMOTE_ERRORS as e:
        record_failure(ctx, events, e)
        return
    _stamp(ctx, events, ref)
    _record_success(ctx, events, SyncAction.CREATED, ref)
    ctx.logger.debug(f"Created {ref.remote_id} for {_describe(events)}")


def _update(ctx: PushContext, events: list[LocalEvent], payload: dict):
    lead = events[0]
    if ctx.dry_run:
        ctx.logger.info(
            f"[DRY RUN] Would UPDATE {lead.remote_id} ({payload['summary']!r}) "
            f"for {_describe(events)}"
        )
        _record_success(
            ctx, events, SyncAction.UPDATED, RemoteRef(lead.remote_id, DRY_RUN_VERSION)
        )
        return
    try:
        ref = ctx.remote.update(lead.remote_id, payload, lead.remote_version)
    except (PreconditionFailed, RemoteNotFound) as e:
        conflict = ctx.resolver.conflict_from_failure(ctx.owner_id, events, payload, e, ctx.remote)
        ctx.result.conflicts.append(conflict)
        record_failure(ctx, events, e)
        return
    except (RemoteTransientError, RemoteAuthError) as e:
        record_failure(ctx, events, e)
        return
    _stamp(ctx, events, ref)
    _record_success(ctx, events, SyncAction.UPDATED, ref)
    ctx.logger.debug(f"Updated {ref.remote_id} for {_describe(events)}")


def push_batch(ctx: PushContext, group: EventGroup):
    """One recurring create for an eligible group; every member shares the link."""
    try:
        payload = ctx.payloads.recurring(group.events)
    except FormatError as e:
        record_failure(ctx, group.events, e)
        return
    ctx.logger.info(
        f"Batching {group.size} events of {group.subject_id}/{group.section_id} "
        f"into one recurring event"
    )
    _create(ctx, group.events, payload)


def push_series(ctx: PushContext, members: list[LocalEvent]):
    """Update a previously batched series with one recurring payload."""
    try:
        payload = ctx.payloads.recurring(members)
    except FormatError as e:
        record_failure(ctx, members, e)
        return
    _update(ctx, members, payload)


def push_single(ctx: PushContext, event: LocalEvent):
    """Create or update one event, chosen by whether it already has a remote id."""
    try:
        payload = ctx.payloads.single(event)
    except FormatError as e:
        record_failure(ctx, [event], e)
        return
    if event.is_linked:
        _update(ctx, [event], payload)
    else:
        _create(ctx, [event], payload)
