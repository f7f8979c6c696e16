"""
CalendarSynchronizer: thin orchestrator that delegates to sync submodules.
"""

import logging

from timetable_sync.db import EventStore
from timetable_sync.formatter import FormatOptions
from timetable_sync.models import Conflict
from timetable_sync.models import EventStatus
from timetable_sync.models import GroupOutcome
from timetable_sync.models import InvalidArgument
from timetable_sync.models import LocalEvent
from timetable_sync.models import Resolution
from timetable_sync.models import ResolutionAction
from timetable_sync.models import StoreError
from timetable_sync.models import SyncAction
from timetable_sync.models import SyncConfig
from timetable_sync.models import SyncDetail
from timetable_sync.models import SyncRequest
from timetable_sync.models import SyncResult
from timetable_sync.models import TimetableSyncError
from timetable_sync.remote import MeteredClient
from timetable_sync.remote import RemoteCalendarClient
from timetable_sync.sync.conflicts import ConflictResolver
from timetable_sync.sync.grouping import group_events
from timetable_sync.sync.grouping import has_uniform_time
from timetable_sync.sync.grouping import split_linked_series
from timetable_sync.sync.payloads import PayloadFactory
from timetable_sync.sync.push import PushContext
from timetable_sync.sync.push import push_batch
from timetable_sync.sync.push import push_series
from timetable_sync.sync.push import push_single
from timetable_sync.sync.utils import request_fingerprint

# Statuses the orchestrator pushes; deleted events are never synced.
SYNCABLE_STATUSES = (EventStatus.PLANNED, EventStatus.SYNCED)


def _as_resolution(value: Resolution | ResolutionAction | str) -> Resolution:
    if isinstance(value, Resolution):
        return value
    return Resolution(value, "requested explicitly")


class CalendarSynchronizer:
    """Main synchronization engine."""

    def __init__(self, store: EventStore, remote: RemoteCalendarClient, config: SyncConfig):
        self.store = store
        self.remote = remote
        self.config = config
        self.logger = logging.getLogger(__name__)
        self.payloads = PayloadFactory(
            store,
            FormatOptions(
                timezone=config.timezone,
                include_reminders=config.reminder.enabled,
                reminder=config.reminder,
            ),
        )
        self.resolver = ConflictResolver(store, self.payloads, config.merge_fields)

    # ------------------------------------------------------------------ #
    # Push                                                                 #
    # ------------------------------------------------------------------ #

    def sync_to_remote(self, owner_id: str, request: SyncRequest) -> SyncResult:
        """Push the owner's events in ``request.range`` to the remote calendar."""
        if not owner_id:
            raise InvalidArgument("owner id is required")

        fingerprint = request_fingerprint(owner_id, request.fingerprint_data())
        if not request.dry_run:
            cached = self.store.get_cached_result(owner_id, request.idempotency_key)
            if cached is not None:
                cached_fingerprint, data = cached
                if cached_fingerprint != fingerprint:
                    raise InvalidArgument(
                        f"idempotency key {request.idempotency_key} was already used "
                        f"for a different request"
                    )
                self.logger.info(
                    f"Returning cached result for idempotency key {request.idempotency_key}"
                )
                return SyncResult.from_dict(data)

        self.payloads.clear()
        result = SyncResult(is_dry_run=request.dry_run)
        metered = MeteredClient(self.remote)
        ctx = PushContext(
            owner_id=owner_id,
            dry_run=request.dry_run,
            store=self.store,
            remote=metered,
            payloads=self.payloads,
            resolver=self.resolver,
            result=result,
            logger=self.logger,
        )

        self.logger.info(
            f"Selecting events for {owner_id} from {request.range.start} to {request.range.end}..."
        )
        events = self.store.select_by_owner_and_range(
            owner_id, request.range, statuses=SYNCABLE_STATUSES, event_ids=request.event_ids
        )
        if request.event_ids is not None:
            self._skip_unselected(owner_id, request, events, result)

        for group in group_events(events, self.config.group_threshold):
            result.groups.append(
                GroupOutcome(
                    subject_id=group.subject_id,
                    section_id=group.section_id,
                    size=group.size,
                    batched=group.eligible,
                    reason=group.reason,
                )
            )
            if group.eligible:
                push_batch(ctx, group)
                continue
            series, singles = split_linked_series(
                group.events, lambda remote_id: self._linked_members(owner_id, remote_id)
            )
            for members in series:
                push_series(ctx, members)
            for event in singles:
                push_single(ctx, event)

        result.quota_used = metered.calls

        if not request.dry_run:
            purged = self.store.purge_expired_results()
            if purged:
                self.logger.debug(f"Purged {purged} expired idempotency record(s)")
            self.store.store_result(
                owner_id,
                request.idempotency_key,
                fingerprint,
                result.to_dict(),
                self.config.idempotency_ttl,
            )

        prefix = "[DRY RUN] " if request.dry_run else ""
        self.logger.info(
            f"{prefix}Sync finished: {result.created} created, {result.updated} updated, "
            f"{result.skipped} skipped, {result.failed} failed, "
            f"{len(result.conflicts)} conflict(s), {result.quota_used} remote call(s)"
        )
        return result

    def _linked_members(self, owner_id: str, remote_id: str) -> list[LocalEvent]:
        """Every syncable event sharing ``remote_id``, in or out of the request range."""
        return [
            e
            for e in self.store.get_events_by_remote_id(owner_id, remote_id)
            if e.status in SYNCABLE_STATUSES
        ]

    def _skip_unselected(
        self,
        owner_id: str,
        request: SyncRequest,
        selected: list[LocalEvent],
        result: SyncResult,
    ):
        """Report explicitly requested deleted events as skipped."""
        selected_ids = {e.id for e in selected}
        for event_id in dict.fromkeys(request.event_ids):
            if event_id in selected_ids:
                continue
            event = self.store.get_event(event_id)
            if (
                event is not None
                and event.owner_id == owner_id
                and event.status == EventStatus.DELETED
                and event.event_date in request.range
            ):
                self.logger.debug(f"Skipping deleted event {event_id}")
                result.record(
                    SyncDetail(
                        local_event_id=event_id,
                        action=SyncAction.SKIPPED,
                        remote_event_id=event.remote_id,
                        error="event is deleted",
                    )
                )
            else:
                self.logger.warning(f"Requested event {event_id} not found in range for {owner_id}")

    # ------------------------------------------------------------------ #
    # Conflicts                                                            #
    # ------------------------------------------------------------------ #

    def resolve_conflicts(
        self,
        owner_id: str,
        conflicts: list[Conflict],
        resolutions: list[Resolution | ResolutionAction | str],
    ) -> SyncResult:
        """Apply ``resolutions[i]`` to ``conflicts[i]``.

        A failure on one conflict becomes failed details for its members and
        leaves the conflict open; store failures abort the call.
        """
        if len(conflicts) != len(resolutions):
            raise InvalidArgument(
                f"got {len(conflicts)} conflict(s) but {len(resolutions)} resolution(s)"
            )
        pairs = [(c, _as_resolution(r)) for c, r in zip(conflicts, resolutions)]

        self.payloads.clear()
        result = SyncResult()
        metered = MeteredClient(self.remote)
        for conflict, resolution in pairs:
            try:
                details = self.resolver.apply(owner_id, conflict, resolution, metered)
            except StoreError:
                raise
            except TimetableSyncError as e:
                self.logger.error(f"Failed to resolve conflict {conflict.id}: {e}")
                for event_id in conflict.member_event_ids:
                    result.record(
                        SyncDetail(
                            local_event_id=event_id,
                            action=SyncAction.FAILED,
                            remote_event_id=conflict.remote_id,
                            error=str(e),
                            error_code=e.code,
                        )
                    )
                continue
            for detail in details:
                result.record(detail)

        result.quota_used = metered.calls
        return result

    def detect_conflict(self, owner_id: str, event_id: str) -> Conflict | None:
        """Check one linked event against the remote; returns the conflict, if any."""
        event = self.store.get_event(event_id)
        if event is None or event.owner_id != owner_id:
            raise InvalidArgument(f"unknown event {event_id} for owner {owner_id}")
        if not event.is_linked:
            return None

        members = self.store.get_events_by_remote_id(owner_id, event.remote_id)
        if len(members) < 2 or not has_uniform_time(members):
            members = [event]
        return self.resolver.detect(owner_id, members, self.remote)
