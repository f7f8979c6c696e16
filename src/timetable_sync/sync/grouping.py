"""
Partition candidate events by (subject, section) and decide which groups can
be pushed as one recurring remote event.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from dataclasses import field

from timetable_sync.models import DEFAULT_GROUP_THRESHOLD
from timetable_sync.models import LocalEvent

logger = logging.getLogger(__name__)

# Reasons a group falls back to per-event sync
TOO_SMALL = "too_small"
NON_UNIFORM_TIME = "non_uniform_time"
LINKED = "linked"
MIXED_LINK_STATE = "mixed_link_state"


@dataclass
class EventGroup:
    subject_id: str
    section_id: str
    events: list[LocalEvent] = field(default_factory=list)
    eligible: bool = False
    reason: str | None = None

    @property
    def size(self) -> int:
        return len(self.events)


def has_uniform_time(events: list[LocalEvent]) -> bool:
    if not events:
        return False
    first = events[0]
    return all(
        e.start_time == first.start_time
        and e.end_time == first.end_time
        and e.subject_id == first.subject_id
        and e.section_id == first.section_id
        for e in events
    )


def evaluate_group(group: EventGroup, threshold: int = DEFAULT_GROUP_THRESHOLD) -> EventGroup:
    """Set ``eligible``/``reason`` on ``group`` and return it."""
    linked = sum(1 for e in group.events if e.is_linked)

    if 0 < linked < group.size:
        group.eligible, group.reason = False, MIXED_LINK_STATE
        logger.warning(
            f"Group {group.subject_id}/{group.section_id}: {linked} of {group.size} events "
            f"already linked, falling back to per-event sync"
        )
    elif linked:
        group.eligible, group.reason = False, LINKED
    elif group.size <= threshold:
        group.eligible, group.reason = False, TOO_SMALL
    elif not has_uniform_time(group.events):
        group.eligible, group.reason = False, NON_UNIFORM_TIME
    else:
        group.eligible, group.reason = True, None
    return group


def group_events(
    events: list[LocalEvent], threshold: int = DEFAULT_GROUP_THRESHOLD
) -> list[EventGroup]:
    """Group ``events`` by (subject, section) in order of first appearance."""
    groups: dict[tuple[str, str], EventGroup] = {}
    for event in events:
        key = event.group_key
        if key not in groups:
            groups[key] = EventGroup(subject_id=key[0], section_id=key[1])
        groups[key].events.append(event)
    return [evaluate_group(g, threshold) for g in groups.values()]


def split_linked_series(
    events: list[LocalEvent],
    load_series: Callable[[str], list[LocalEvent]] | None = None,
) -> tuple[list[list[LocalEvent]], list[LocalEvent]]:
    """Split an ineligible group's members into batched series and singles.

    Members sharing one remote id were pushed earlier as a single recurring
    event; they have to be updated together.  ``load_series`` returns every
    event linked to a remote id, so a series is rebuilt in full even when only
    some of its members are in ``events``.  Without it only the given events
    are considered.  A series whose members no longer share one time slot
    cannot be re-rendered as a rule and is left to the singles.  Returns
    (series, singles) where singles keeps the original order.
    """
    by_remote: dict[str, list[LocalEvent]] = {}
    for event in events:
        if event.remote_id:
            by_remote.setdefault(event.remote_id, []).append(event)
    if load_series is not None:
        by_remote = {remote_id: load_series(remote_id) for remote_id in by_remote}

    series = [
        members
        for members in by_remote.values()
        if len(members) > 1 and has_uniform_time(members)
    ]
    in_series = {e.id for members in series for e in members}
    singles = [e for e in events if e.id not in in_series]
    return series, singles
