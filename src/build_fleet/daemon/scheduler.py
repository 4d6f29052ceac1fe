"""Cooperative scheduling loop: reap, then dispatch, once per tick."""

from __future__ import annotations

import logging
import os
import signal
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum

from build_fleet.daemon.cleanup import CleanupSummary, cleanup_stale
from build_fleet.daemon.common import to_iso, utc_now
from build_fleet.daemon.dispatcher import Dispatcher, SpawnResult
from build_fleet.daemon.errors import StateLockTimeout
from build_fleet.daemon.events import EventLog
from build_fleet.daemon.models import SchedulerState
from build_fleet.daemon.pause import PauseFlag
from build_fleet.daemon.queue import enqueue, promote
from build_fleet.daemon.rate_limit import RateLimiter
from build_fleet.daemon.reaper import Reaper, ReapSummary
from build_fleet.daemon.state import StateStore
from build_fleet.daemon.workspace import WorkspaceManager

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TickSummary:
    """What one scheduler tick did."""

    reaped: ReapSummary = field(default_factory=ReapSummary)
    dispatched: int = 0
    cleanup: CleanupSummary | None = None
    rotated_events: bool = False


@dataclass(slots=True)
class DaemonRunSummary:
    """Aggregate loop counters for CLI reporting."""

    ticks: int = 0
    skipped_ticks: int = 0
    spawned: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    terminal: int = 0

    @property
    def attempted(self) -> int:
        return self.ticks + self.skipped_ticks

    def add(self, tick: TickSummary) -> None:
        self.ticks += 1
        self.spawned += tick.dispatched
        self.succeeded += tick.reaped.succeeded
        self.failed += tick.reaped.failed
        self.retried += tick.reaped.retried
        self.terminal += tick.reaped.terminal


class SubmitStatus(str, Enum):
    SPAWNED = "spawned"
    QUEUED = "queued"
    ALREADY_IN_FLIGHT = "already_in_flight"


@dataclass(slots=True)
class SubmitResult:
    status: SubmitStatus
    spawn: SpawnResult | None = None


class DispatchDaemon:
    """Owns the tick: Reaper first, then Dispatcher, never interleaved."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: StateStore,
        dispatcher: Dispatcher,
        reaper: Reaper,
        workspace: WorkspaceManager,
        events: EventLog,
        rate_limiter: RateLimiter,
        pause_flag: PauseFlag | None = None,
        poll_interval_seconds: float = 60.0,
        priority_lane_max: int = 1,
        stale_reaper_enabled: bool = True,
        stale_reaper_interval_ticks: int = 10,
        stale_reaper_age_days: int = 7,
        rotation_interval_ticks: int = 10,
    ) -> None:
        self.store = store
        self.dispatcher = dispatcher
        self.reaper = reaper
        self.workspace = workspace
        self.events = events
        self.rate_limiter = rate_limiter
        self.pause_flag = pause_flag
        self.poll_interval_seconds = poll_interval_seconds
        self.priority_lane_max = priority_lane_max
        self.stale_reaper_enabled = stale_reaper_enabled
        self.stale_reaper_interval_ticks = stale_reaper_interval_ticks
        self.stale_reaper_age_days = stale_reaper_age_days
        self.rotation_interval_ticks = rotation_interval_ticks
        self.tick_count = 0
        self._stop_requested = False

    def start(self) -> bool:
        """Claim the state document for this process; returns True when it was created."""

        created = self.store.initialize(pid=os.getpid())
        self.events.emit(
            "daemon.started",
            pid=os.getpid(),
            max_parallel=self.dispatcher.max_parallel,
            poll_interval_s=self.poll_interval_seconds,
        )
        return created

    def tick(self) -> TickSummary:
        self.tick_count += 1
        summary = TickSummary()
        summary.reaped = self.reaper.reap()
        summary.dispatched = summary.reaped.backfilled + self.dispatcher.dispatch_from_queue()
        self.store.update(_stamp_last_poll)

        if (
            self.stale_reaper_enabled
            and self.tick_count % self.stale_reaper_interval_ticks == 0
        ):
            summary.cleanup = cleanup_stale(
                self.store,
                self.workspace,
                age_days=self.stale_reaper_age_days,
            )
        if self.tick_count % self.rotation_interval_ticks == 0:
            summary.rotated_events = self.events.rotate_if_needed()
        return summary

    def submit(  # noqa: PLR0913
        self,
        issue: int,
        title: str = "",
        repo: str | None = None,
        *,
        priority: bool = False,
        score: float | None = None,
    ) -> SubmitResult:
        """Accept a new work item: spawn now when a slot is free, otherwise queue it.

        Plain items never jump an existing backlog. A priority item takes a
        free slot directly while the priority lane has room.
        """

        snapshot = self.store.read()
        if snapshot.is_inflight(issue):
            logger.info("Issue #%s already in flight; ignoring submit", issue)
            return SubmitResult(status=SubmitStatus.ALREADY_IN_FLIGHT)

        lane_has_room = priority and len(snapshot.priority_lane_active) < self.priority_lane_max
        may_jump = not snapshot.queued or lane_has_room
        if may_jump and self.dispatcher.admission_block(issue, snapshot=snapshot) is None:
            result = self.dispatcher.spawn(issue, title, repo)
            if result.spawned:
                if lane_has_room:
                    promote(self.store, issue, lane_max=self.priority_lane_max)
                return SubmitResult(status=SubmitStatus.SPAWNED, spawn=result)

        enqueue(
            self.store,
            issue,
            title=title or None,
            repo=repo,
            score=score,
            priority=priority,
            lane_max=self.priority_lane_max,
        )
        return SubmitResult(status=SubmitStatus.QUEUED)

    def run_loop(self, *, max_ticks: int | None = None) -> DaemonRunSummary:
        """Tick every `poll_interval_seconds` until stopped or `max_ticks` reached.

        A lock timeout skips the tick; any other store error is fatal.
        """

        aggregate = DaemonRunSummary()
        with self._signal_handlers():
            while not self._stop_requested:
                if max_ticks is not None and aggregate.attempted >= max_ticks:
                    break
                try:
                    aggregate.add(self.tick())
                except StateLockTimeout as error:
                    aggregate.skipped_ticks += 1
                    logger.warning("Skipping tick: %s", error)
                if self._stop_requested:
                    break
                if max_ticks is None or aggregate.attempted < max_ticks:
                    self._sleep_with_stop(self.poll_interval_seconds)
        self.events.emit("daemon.stopped", ticks=aggregate.ticks)
        return aggregate

    def request_stop(self) -> None:
        self._stop_requested = True

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        # Signal handlers can only be installed in main thread.
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.info("Received %s; stopping after current tick", name)
            self.request_stop()

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


def _stamp_last_poll(state: SchedulerState) -> None:
    state.last_poll = to_iso(utc_now())
