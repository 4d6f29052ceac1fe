"""Controllers for daemon CLI commands."""

from __future__ import annotations

import logging
import logging.handlers
from dataclasses import dataclass
from pathlib import Path

from build_fleet.config import Settings
from build_fleet.daemon import queue
from build_fleet.daemon.cleanup import cleanup_stale
from build_fleet.daemon.models import SchedulerState
from build_fleet.daemon.pause import PauseFlag
from build_fleet.daemon.services import DaemonOverrides, build_daemon, build_store, build_workspace
from build_fleet.daemon.state import StateStore

DAEMON_LOG_MAX_BYTES = 20 * 1024 * 1024
DAEMON_LOG_BACKUPS = 3
_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


@dataclass(slots=True)
class DaemonStateCommand:
    """CLI input for commands that only need the state location."""

    state_dir: Path | None


@dataclass(slots=True)
class DaemonStatusCommand:
    """CLI input for the status report."""

    state_dir: Path | None
    completed_limit: int = 5


@dataclass(slots=True)
class DaemonEnqueueCommand:
    """CLI input for queueing (or immediately spawning) an issue."""

    state_dir: Path | None
    issue: int
    title: str
    repo: str | None
    priority: bool
    score: float | None
    spawn: bool


@dataclass(slots=True)
class DaemonIssueCommand:
    """CLI input for promote/remove of one issue."""

    state_dir: Path | None
    issue: int


@dataclass(slots=True)
class DaemonRunCommand:
    """CLI input for the scheduling loop."""

    state_dir: Path | None
    max_ticks: int | None
    verbose: bool = False


@dataclass(slots=True)
class DaemonPauseCommand:
    """CLI input for pausing new spawns."""

    state_dir: Path | None
    reason: str
    minutes: int | None


@dataclass(slots=True)
class DaemonCleanupCommand:
    """CLI input for stale-state pruning."""

    state_dir: Path | None
    age_days: int | None


class DaemonCliController:
    """Coordinates state, queue and scheduling-loop CLI operations."""

    def __init__(self, overrides: DaemonOverrides | None = None) -> None:
        self.overrides = overrides

    def init(self, command: DaemonStateCommand) -> list[str]:
        settings = Settings.from_env(state_dir=command.state_dir)
        created = self._store(settings).initialize()
        verb = "Created" if created else "Kept existing"
        return [f"{verb} scheduler state: {settings.state_file}"]

    def status(self, command: DaemonStatusCommand) -> list[str]:
        settings = Settings.from_env(state_dir=command.state_dir)
        state = self._store(settings).read()
        pause = PauseFlag(settings.pause_flag_file).read()
        lines = [
            f"State: {settings.state_file} (version {state.version}, pid {state.pid or '-'}, "
            f"last poll {state.last_poll or 'never'})",
        ]
        if pause is None:
            lines.append("Paused: no")
        else:
            lines.append(
                f"Paused: yes ({pause.reason}; resume after {pause.resume_after or 'manual'})",
            )
        lines.extend(_render_state(state, settings, completed_limit=command.completed_limit))
        return lines

    def enqueue(self, command: DaemonEnqueueCommand) -> list[str]:
        settings = Settings.from_env(state_dir=command.state_dir)
        if command.spawn:
            daemon = build_daemon(settings, self.overrides)
            result = daemon.submit(
                command.issue,
                command.title,
                command.repo,
                priority=command.priority,
                score=command.score,
            )
            return [f"Issue #{command.issue}: {result.status.value}"]

        added = queue.enqueue(
            self._store(settings),
            command.issue,
            title=command.title or None,
            repo=command.repo,
            score=command.score,
            priority=command.priority,
            lane_max=settings.dispatch.priority_lane_max,
        )
        if not added:
            return [f"Issue #{command.issue} is already queued or active."]
        return [f"Issue #{command.issue} queued."]

    def promote(self, command: DaemonIssueCommand) -> list[str]:
        settings = Settings.from_env(state_dir=command.state_dir)
        promoted = queue.promote(
            self._store(settings),
            command.issue,
            lane_max=settings.dispatch.priority_lane_max,
        )
        if promoted:
            return [f"Issue #{command.issue} is in the priority lane."]
        return [
            f"Issue #{command.issue} not promoted: not in flight or lane full "
            f"(max {settings.dispatch.priority_lane_max}).",
        ]

    def remove(self, command: DaemonIssueCommand) -> list[str]:
        settings = Settings.from_env(state_dir=command.state_dir)
        if queue.remove(self._store(settings), command.issue):
            return [f"Issue #{command.issue} removed from queue."]
        return [f"Issue #{command.issue} was not queued."]

    def tick(self, command: DaemonStateCommand) -> list[str]:
        settings = Settings.from_env(state_dir=command.state_dir)
        daemon = build_daemon(settings, self.overrides)
        daemon.store.initialize()
        summary = daemon.tick()
        reaped = summary.reaped
        return [
            "Tick summary: "
            f"checked={reaped.checked} alive={reaped.alive} succeeded={reaped.succeeded} "
            f"failed={reaped.failed} retried={reaped.retried} terminal={reaped.terminal} "
            f"errors={reaped.errors} dispatched={summary.dispatched}",
        ]

    def run(self, command: DaemonRunCommand) -> list[str]:
        settings = Settings.from_env(state_dir=command.state_dir)
        configure_daemon_logging(settings.daemon_log_file, verbose=command.verbose)
        daemon = build_daemon(settings, self.overrides)
        daemon.start()
        summary = daemon.run_loop(max_ticks=command.max_ticks)
        return [
            "Daemon summary: "
            f"ticks={summary.ticks} skipped={summary.skipped_ticks} spawned={summary.spawned} "
            f"succeeded={summary.succeeded} failed={summary.failed} "
            f"retried={summary.retried} terminal={summary.terminal}",
        ]

    def pause(self, command: DaemonPauseCommand) -> list[str]:
        settings = Settings.from_env(state_dir=command.state_dir)
        state = PauseFlag(settings.pause_flag_file).pause(
            command.reason,
            resume_after_minutes=command.minutes,
        )
        return [f"Paused ({state.reason}); resume after {state.resume_after or 'manual resume'}."]

    def resume(self, command: DaemonStateCommand) -> list[str]:
        settings = Settings.from_env(state_dir=command.state_dir)
        if PauseFlag(settings.pause_flag_file).resume():
            return ["Resumed."]
        return ["Daemon was not paused."]

    def reset(self, command: DaemonStateCommand) -> list[str]:
        settings = Settings.from_env(state_dir=command.state_dir)
        self._store(settings).reset()
        return [f"Scheduler state reset: {settings.state_file}"]

    def cleanup(self, command: DaemonCleanupCommand) -> list[str]:
        settings = Settings.from_env(state_dir=command.state_dir)
        age_days = command.age_days or settings.housekeeping.stale_reaper_age_days
        git = self.overrides.git if self.overrides is not None else None
        summary = cleanup_stale(
            self._store(settings),
            build_workspace(settings, git),
            age_days=age_days,
        )
        return [
            f"Cleanup (older than {age_days}d): "
            f"completed={summary.completed_pruned} retry_counts={summary.retry_counts_pruned} "
            f"titles={summary.titles_pruned} priority_lane={summary.priority_pruned} "
            f"worktrees={summary.workspaces_removed}",
        ]

    def _store(self, settings: Settings) -> StateStore:
        if self.overrides is not None and self.overrides.store is not None:
            return self.overrides.store
        return build_store(settings)


def _render_state(
    state: SchedulerState,
    settings: Settings,
    *,
    completed_limit: int,
) -> list[str]:
    lines = [f"Active jobs: {len(state.active_jobs)}/{settings.dispatch.max_parallel}"]
    for job in state.active_jobs:
        lane = " [priority]" if job.issue in state.priority_lane_active else ""
        repo = f" {job.repo}" if job.repo else ""
        lines.append(
            f"  #{job.issue}{lane} pid={job.pid}{repo} since {job.started_at or '?'} "
            f"{job.title}".rstrip(),
        )

    lines.append(f"Queued: {len(state.queued)}")
    for entry in state.queued:
        notes: list[str] = []
        if entry.issue in state.priority_lane_active:
            notes.append("priority")
        if entry.not_before:
            notes.append(f"not before {entry.not_before}")
        if entry.score is not None:
            notes.append(f"score {entry.score:g}")
        retries = state.retry_counts.get(entry.issue)
        if retries:
            notes.append(f"retry {retries}")
        suffix = f" ({', '.join(notes)})" if notes else ""
        lines.append(f"  #{entry.issue}{suffix} {state.titles.get(entry.issue, '')}".rstrip())

    recent = state.completed[-completed_limit:] if completed_limit > 0 else []
    lines.append(f"Completed: {len(state.completed)} (showing {len(recent)})")
    for record in reversed(recent):
        lines.append(
            f"  #{record.issue} {record.result.value} in {record.duration or '?'} "
            f"at {record.completed_at}",
        )
    terminal = [r for r in state.failure_history if r.terminal]
    if terminal:
        last = terminal[-1]
        lines.append(
            f"Terminal failures: {len(terminal)} "
            f"(last: #{last.issue} {last.failure_class.value} at {last.ts})",
        )
    return lines


def configure_daemon_logging(log_file: Path, *, verbose: bool = False) -> None:
    """Rotating daemon log plus stderr for the long-running loop."""

    log_file.parent.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=_LOG_FORMAT,
        handlers=[
            logging.handlers.RotatingFileHandler(
                log_file,
                maxBytes=DAEMON_LOG_MAX_BYTES,
                backupCount=DAEMON_LOG_BACKUPS,
                encoding="utf-8",
            ),
            logging.StreamHandler(),
        ],
        force=True,
    )
