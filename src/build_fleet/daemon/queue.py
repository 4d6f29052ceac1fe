"""Pending-issue backlog: FIFO with a priority lane evaluated first."""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime

from build_fleet.daemon.common import parse_iso_or_none, utc_now
from build_fleet.daemon.models import QueueEntry, SchedulerState
from build_fleet.daemon.state import StateStore

logger = logging.getLogger(__name__)


def _promote_in_state(state: SchedulerState, issue: int, lane_max: int | None) -> bool:
    if issue in state.priority_lane_active:
        return True
    if lane_max is not None and len(state.priority_lane_active) >= lane_max:
        return False
    state.priority_lane_active.append(issue)
    return True


def enqueue(  # noqa: PLR0913
    store: StateStore,
    issue: int,
    *,
    title: str | None = None,
    repo: str | None = None,
    score: float | None = None,
    not_before: str | None = None,
    priority: bool = False,
    lane_max: int | None = None,
) -> bool:
    """Append `issue` to the queue.

    Returns False without touching the queue when the issue is already
    queued or active. `priority` also places it in the priority lane when
    the lane has room (`lane_max=None` means unbounded).
    """

    def _apply(state: SchedulerState) -> bool:
        if title:
            state.titles[issue] = title
        if state.is_inflight(issue):
            return False
        state.queued.append(
            QueueEntry(issue=issue, score=score, not_before=not_before, repo=repo or None),
        )
        if priority and not _promote_in_state(state, issue, lane_max):
            logger.info("Priority lane full; issue #%s queued as normal", issue)
        return True

    added = store.update(_apply)
    if added:
        logger.info("Queued issue #%s", issue)
    else:
        logger.debug("Issue #%s already in flight; not queued again", issue)
    return added


def _is_eligible(entry: QueueEntry, now: datetime) -> bool:
    not_before = parse_iso_or_none(entry.not_before)
    return not_before is None or not_before <= now


def select_next(state: SchedulerState, *, now: datetime) -> QueueEntry | None:
    """Pick the next eligible entry without mutating state."""

    eligible = [
        entry
        for entry in state.queued
        if not state.is_active(entry.issue) and _is_eligible(entry, now)
    ]
    for entry in eligible:
        if entry.issue in state.priority_lane_active:
            return entry
    return eligible[0] if eligible else None


def dequeue_next(store: StateStore, *, now: datetime | None = None) -> QueueEntry | None:
    """Remove and return the next eligible entry, or None when nothing is eligible.

    Priority-lane entries come first (FIFO among themselves), then plain
    entries in insertion order. Entries still inside a retry backoff window
    are skipped but kept. Stale entries for issues that are already active
    are dropped.
    """

    moment = now or utc_now()
    if not store.read().queued:
        return None

    def _apply(state: SchedulerState) -> QueueEntry | None:
        state.queued = [entry for entry in state.queued if not state.is_active(entry.issue)]
        entry = select_next(state, now=moment)
        if entry is not None:
            state.remove_queued(entry.issue)
        return entry

    return store.update(_apply)


def requeue_front(store: StateStore, entry: QueueEntry) -> bool:
    """Put an entry back at the head after an aborted spawn."""

    def _apply(state: SchedulerState) -> bool:
        if state.is_inflight(entry.issue):
            return False
        state.queued.insert(0, entry)
        return True

    return store.update(_apply)


def defer(store: StateStore, entry: QueueEntry, *, not_before: str) -> bool:
    """Move an entry behind the rest of the queue, ineligible until `not_before`."""

    def _apply(state: SchedulerState) -> bool:
        if state.is_inflight(entry.issue):
            return False
        state.queued.append(replace(entry, not_before=not_before))
        return True

    return store.update(_apply)


def promote(store: StateStore, issue: int, *, lane_max: int | None) -> bool:
    """Fast-track a queued or active `issue`; False when the lane is full or it is unknown."""

    def _apply(state: SchedulerState) -> bool:
        if not state.is_inflight(issue):
            return False
        return _promote_in_state(state, issue, lane_max)

    promoted = store.update(_apply)
    if promoted:
        logger.info("Issue #%s promoted to priority lane", issue)
    else:
        logger.info("Issue #%s not promoted (lane max %s or not in flight)", issue, lane_max)
    return promoted


def remove(store: StateStore, issue: int) -> bool:
    """Drop `issue` from the queue (active jobs are untouched)."""

    def _apply(state: SchedulerState) -> bool:
        removed = state.remove_queued(issue) is not None
        if removed and not state.is_active(issue):
            state.drop_priority(issue)
        return removed

    return store.update(_apply)
