"""Admission control and worker spawning."""

from __future__ import annotations

import logging
import shutil
from collections.abc import Callable
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from pathlib import Path

from build_fleet.daemon.common import to_iso, utc_now
from build_fleet.daemon.errors import LaunchError, StateStoreError, WorkspaceError
from build_fleet.daemon.events import EventLog
from build_fleet.daemon.launcher import LaunchRequest, ProcessLauncher
from build_fleet.daemon.models import Job, NotifyEvent, QueueEntry, SchedulerState
from build_fleet.daemon.notify import Notifier, safe_notify
from build_fleet.daemon.pause import PauseFlag
from build_fleet.daemon.queue import defer, dequeue_next, requeue_front
from build_fleet.daemon.rate_limit import RateLimiter
from build_fleet.daemon.state import StateStore
from build_fleet.daemon.workspace import WorkspaceManager

logger = logging.getLogger(__name__)

DEFAULT_MIN_FREE_BYTES = 1024**3
DEFAULT_SPAWN_RETRY_SECONDS = 60

DiskProbe = Callable[[Path], int]


def free_disk_bytes(path: Path) -> int:
    """Free bytes on the volume holding `path` (or its nearest existing parent)."""

    probe = path
    while not probe.exists() and probe != probe.parent:
        probe = probe.parent
    return shutil.disk_usage(probe).free


class SpawnStatus(str, Enum):
    """Why a spawn did or did not happen."""

    SPAWNED = "spawned"
    LOW_DISK = "low_disk"
    PAUSED = "paused"
    RATE_LIMITED = "rate_limited"
    AT_CAPACITY = "at_capacity"
    ALREADY_ACTIVE = "already_active"
    WORKSPACE_FAILED = "workspace_failed"
    LAUNCH_FAILED = "launch_failed"
    REGISTER_FAILED = "register_failed"


# Failures tied to one entry; other queued issues may still spawn.
_ENTRY_FAILURES = frozenset({SpawnStatus.WORKSPACE_FAILED, SpawnStatus.LAUNCH_FAILED})


@dataclass(slots=True)
class SpawnResult:
    status: SpawnStatus
    job: Job | None = None
    detail: str = ""
    transient: bool = False

    @property
    def spawned(self) -> bool:
        return self.status is SpawnStatus.SPAWNED


class Dispatcher:
    """Admits, provisions, launches and registers one job at a time.

    A job is written to `active_jobs` only after its worker process exists,
    and only if capacity still allows it under the lock. A worker that
    cannot be registered is terminated and its workspace released.
    Admission failures leave state untouched so the issue is retried on the
    next tick.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: StateStore,
        workspace: WorkspaceManager,
        launcher: ProcessLauncher,
        events: EventLog,
        notifier: Notifier,
        rate_limiter: RateLimiter,
        pause_flag: PauseFlag | None,
        logs_dir: Path,
        max_parallel: int,
        min_free_bytes: int = DEFAULT_MIN_FREE_BYTES,
        disk_probe: DiskProbe = free_disk_bytes,
        notify_breaker: RateLimiter | None = None,
        spawn_retry_seconds: int = DEFAULT_SPAWN_RETRY_SECONDS,
    ) -> None:
        self.store = store
        self.workspace = workspace
        self.launcher = launcher
        self.events = events
        self.notifier = notifier
        self.rate_limiter = rate_limiter
        self.pause_flag = pause_flag
        self.logs_dir = logs_dir
        self.max_parallel = max_parallel
        self.min_free_bytes = min_free_bytes
        self.disk_probe = disk_probe
        self.notify_breaker = notify_breaker or RateLimiter()
        self.spawn_retry_seconds = spawn_retry_seconds

    def log_path(self, issue: int) -> Path:
        return self.logs_dir / f"issue-{issue}.log"

    def admission_block(
        self,
        issue: int | None = None,
        *,
        snapshot: SchedulerState | None = None,
    ) -> SpawnStatus | None:
        """First admission check that fails, or None when a spawn may proceed."""

        if self._disk_low():
            return SpawnStatus.LOW_DISK
        if self.pause_flag is not None and self.pause_flag.is_paused():
            return SpawnStatus.PAUSED
        if self.rate_limiter.is_rate_limited():
            return SpawnStatus.RATE_LIMITED
        state = snapshot or self.store.read()
        if len(state.active_jobs) >= self.max_parallel:
            return SpawnStatus.AT_CAPACITY
        if issue is not None and state.is_active(issue):
            return SpawnStatus.ALREADY_ACTIVE
        return None

    def spawn(self, issue: int, title: str = "", repo: str | None = None) -> SpawnResult:
        snapshot = self.store.read()
        block = self.admission_block(issue, snapshot=snapshot)
        if block is not None:
            logger.info("Not spawning issue #%s: %s", issue, block.value)
            return SpawnResult(status=block)

        try:
            repo_root = self.workspace.repo_root_for(repo)
            workspace = self.workspace.create_job_workspace(repo_root, issue)
        except WorkspaceError as error:
            logger.error("Workspace for issue #%s failed: %s", issue, error)
            self.events.emit(
                "daemon.spawn_failed",
                issue=issue,
                stage="workspace",
                error=str(error),
            )
            return SpawnResult(status=SpawnStatus.WORKSPACE_FAILED, detail=str(error))

        title = title or snapshot.titles.get(issue, "")
        retry = snapshot.retry_counts.get(issue, 0)
        try:
            launched = self.launcher.launch(
                LaunchRequest(
                    issue=issue,
                    workspace=workspace,
                    log_path=self.log_path(issue),
                    title=title,
                    repo=repo or "",
                    retry=retry,
                ),
            )
        except LaunchError as error:
            logger.error(
                "Launch for issue #%s failed (transient=%s): %s",
                issue,
                error.transient,
                error,
            )
            self.events.emit(
                "daemon.spawn_failed",
                issue=issue,
                stage="launch",
                transient=error.transient,
                error=str(error),
            )
            self.workspace.remove_job_workspace(workspace, repo_root)
            return SpawnResult(
                status=SpawnStatus.LAUNCH_FAILED,
                detail=str(error),
                transient=error.transient,
            )

        job = Job(
            issue=issue,
            pid=launched.pid,
            worktree=str(workspace),
            title=title,
            repo=repo or "",
            started_at=to_iso(utc_now()),
            retry=retry,
        )

        def _register(state: SchedulerState) -> bool:
            # Another daemon may have filled the last slot since the snapshot.
            if not state.is_active(issue) and len(state.active_jobs) >= self.max_parallel:
                return False
            if title:
                state.titles[issue] = title
            state.remove_queued(issue)
            replaced = state.remove_job(issue)
            if replaced is not None:
                logger.warning(
                    "Issue #%s was registered by another daemon (pid %s); tracking pid %s",
                    issue,
                    replaced.pid,
                    job.pid,
                )
            state.active_jobs.append(job)
            return True

        try:
            registered = self.store.update(_register)
        except StateStoreError as error:
            logger.error("Could not register issue #%s (pid %s): %s", issue, job.pid, error)
            self._abandon(job, repo_root, stage="register", error=str(error))
            return SpawnResult(status=SpawnStatus.REGISTER_FAILED, detail=str(error))
        if not registered:
            logger.warning(
                "No free slot left for issue #%s after launch; stopping pid %s",
                issue,
                job.pid,
            )
            self._abandon(job, repo_root, stage="register", error="at capacity")
            return SpawnResult(status=SpawnStatus.AT_CAPACITY)

        logger.info("Spawned pipeline for issue #%s (pid %s) in %s", issue, job.pid, workspace)
        self.events.emit("daemon.spawn", issue=issue, pid=job.pid, repo=job.repo, retry=retry)
        safe_notify(
            self.notifier,
            NotifyEvent.SPAWNED,
            issue,
            f"Pipeline started (pid {job.pid})",
            rate_limiter=self.rate_limiter,
            breaker=self.notify_breaker,
        )
        return SpawnResult(status=SpawnStatus.SPAWNED, job=job)

    def dispatch_from_queue(self) -> int:
        """Fill free capacity from the queue; returns number of jobs spawned.

        An entry whose workspace or launch fails moves behind the rest of the
        queue with a short `not_before` delay, and the round moves on to the
        next entry. Each entry is tried at most once per round.
        A transient launch failure or any admission block ends the round.
        """

        spawned = 0
        attempted: set[int] = set()
        while self.admission_block() is None:
            entry = dequeue_next(self.store)
            if entry is None:
                break
            if entry.issue in attempted:
                self._requeue(entry)
                break
            attempted.add(entry.issue)
            title = self.store.read().titles.get(entry.issue, "")
            result = self.spawn(entry.issue, title, entry.repo)
            if result.spawned:
                spawned += 1
                continue
            if result.status is SpawnStatus.ALREADY_ACTIVE:
                break
            if result.status in _ENTRY_FAILURES:
                self._defer(entry)
                if result.transient:
                    break
                continue
            self._requeue(entry)
            break
        return spawned

    def _defer(self, entry: QueueEntry) -> None:
        not_before = to_iso(utc_now() + timedelta(seconds=self.spawn_retry_seconds))
        logger.info("Issue #%s deferred until %s after a failed spawn", entry.issue, not_before)
        try:
            defer(self.store, entry, not_before=not_before)
        except StateStoreError:
            logger.error("Issue #%s could not be returned to the queue", entry.issue)
            raise

    def _requeue(self, entry: QueueEntry) -> None:
        try:
            requeue_front(self.store, entry)
        except StateStoreError:
            logger.error("Issue #%s could not be returned to the queue", entry.issue)
            raise

    def _abandon(self, job: Job, repo_root: Path, *, stage: str, error: str) -> None:
        self.launcher.terminate(job.pid)
        self.workspace.remove_job_workspace(Path(job.worktree), repo_root)
        self.events.emit(
            "daemon.spawn_failed",
            issue=job.issue,
            stage=stage,
            pid=job.pid,
            error=error,
        )

    def _disk_low(self) -> bool:
        try:
            free = self.disk_probe(self.workspace.worktrees_dir)
        except OSError as error:
            logger.warning("Disk space check failed, not blocking spawn: %s", error)
            return False
        if free >= self.min_free_bytes:
            return False
        logger.warning(
            "Low disk space (%s MB free, need %s MB); skipping spawn",
            free // (1024 * 1024),
            self.min_free_bytes // (1024 * 1024),
        )
        return True
