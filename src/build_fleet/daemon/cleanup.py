"""Periodic pruning of stale scheduler state and orphaned worktrees."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from build_fleet.daemon.common import parse_iso_or_none, utc_now
from build_fleet.daemon.models import SchedulerState
from build_fleet.daemon.state import StateStore
from build_fleet.daemon.workspace import WorkspaceManager

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CleanupSummary:
    completed_pruned: int = 0
    retry_counts_pruned: int = 0
    titles_pruned: int = 0
    priority_pruned: int = 0
    workspaces_removed: int = 0

    @property
    def total(self) -> int:
        return (
            self.completed_pruned
            + self.retry_counts_pruned
            + self.titles_pruned
            + self.priority_pruned
            + self.workspaces_removed
        )


def _is_recent(value: str, cutoff: datetime) -> bool:
    parsed = parse_iso_or_none(value)
    return parsed is None or parsed >= cutoff


def cleanup_stale(
    store: StateStore,
    workspace: WorkspaceManager,
    *,
    age_days: int,
    now: datetime | None = None,
) -> CleanupSummary:
    """Drop history older than `age_days` and bookkeeping for issues no longer in flight."""

    cutoff = (now or utc_now()) - timedelta(days=age_days)
    summary = CleanupSummary()

    def _apply(state: SchedulerState) -> set[int]:
        kept = [r for r in state.completed if _is_recent(r.completed_at, cutoff)]
        summary.completed_pruned = len(state.completed) - len(kept)
        state.completed = kept

        stale_retries = [i for i in state.retry_counts if not state.is_inflight(i)]
        for issue in stale_retries:
            del state.retry_counts[issue]
        summary.retry_counts_pruned = len(stale_retries)

        referenced = {record.issue for record in state.completed}
        stale_titles = [
            i for i in state.titles if not state.is_inflight(i) and i not in referenced
        ]
        for issue in stale_titles:
            del state.titles[issue]
        summary.titles_pruned = len(stale_titles)

        lane = [i for i in state.priority_lane_active if state.is_inflight(i)]
        summary.priority_pruned = len(state.priority_lane_active) - len(lane)
        state.priority_lane_active = lane
        return {job.issue for job in state.active_jobs}

    active = store.update(_apply)

    for issue, path in workspace.iter_job_workspaces():
        if issue in active:
            continue
        try:
            modified = datetime.fromtimestamp(path.stat().st_mtime, tz=cutoff.tzinfo)
        except OSError:
            continue
        if modified < cutoff and workspace.remove_job_workspace(path):
            summary.workspaces_removed += 1

    if summary.total:
        logger.info(
            "Stale cleanup: %s completed, %s retry counts, %s titles, %s lane, %s worktrees",
            summary.completed_pruned,
            summary.retry_counts_pruned,
            summary.titles_pruned,
            summary.priority_pruned,
            summary.workspaces_removed,
        )
    return summary
