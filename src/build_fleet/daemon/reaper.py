"""Detect finished workers and reconcile scheduler state."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from build_fleet.daemon.common import format_duration, parse_iso_or_none, to_iso, utc_now
from build_fleet.daemon.dispatcher import Dispatcher
from build_fleet.daemon.errors import WorkspaceError
from build_fleet.daemon.events import EventLog
from build_fleet.daemon.failure_classifier import (
    ExitContext,
    FailureClassification,
    RetryPolicy,
    classify_failure,
)
from build_fleet.daemon.fsutil import read_log_tail
from build_fleet.daemon.launcher import LivenessChecker
from build_fleet.daemon.models import (
    CompletionRecord,
    FailureRecord,
    Job,
    JobResult,
    NotifyEvent,
    QueueEntry,
    SchedulerState,
)
from build_fleet.daemon.notify import Notifier, safe_notify
from build_fleet.daemon.outcome import JobOutcome, determine_outcome
from build_fleet.daemon.pause import AUTO_PAUSE_THRESHOLD, PauseFlag, auto_pause_minutes
from build_fleet.daemon.rate_limit import RateLimiter
from build_fleet.daemon.state import StateStore
from build_fleet.daemon.workspace import WorkspaceManager

logger = logging.getLogger(__name__)

DEFAULT_PROGRESS_RELPATH = ".claude/loop-logs/progress.md"
_PROGRESS_MAX_BYTES = 64 * 1024


@dataclass(slots=True)
class ReapSummary:
    """Aggregate reap counters for CLI reporting."""

    checked: int = 0
    alive: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    terminal: int = 0
    errors: int = 0
    backfilled: int = 0


@dataclass(slots=True)
class _FailureVerdict:
    retry: bool
    retry_count: int
    max_retries: int
    backoff_seconds: int
    consecutive: int


class Reaper:
    """Probes tracked workers, records outcomes and backfills freed slots."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: StateStore,
        liveness: LivenessChecker,
        dispatcher: Dispatcher,
        workspace: WorkspaceManager,
        events: EventLog,
        notifier: Notifier,
        rate_limiter: RateLimiter,
        retry_policy: RetryPolicy,
        pause_flag: PauseFlag | None = None,
        tail_lines: int = 200,
        progress_relpath: str = DEFAULT_PROGRESS_RELPATH,
        notify_breaker: RateLimiter | None = None,
    ) -> None:
        self.store = store
        self.liveness = liveness
        self.dispatcher = dispatcher
        self.workspace = workspace
        self.events = events
        self.notifier = notifier
        self.rate_limiter = rate_limiter
        self.retry_policy = retry_policy
        self.pause_flag = pause_flag
        self.tail_lines = tail_lines
        self.progress_relpath = progress_relpath
        self.notify_breaker = notify_breaker or RateLimiter()

    def reap(self, *, backfill: bool = True) -> ReapSummary:
        """Reconcile every tracked job, then backfill capacity from the queue.

        With no tracked jobs this returns at once without taking the lock.
        A failure while handling one job is logged and does not affect the
        others.
        """

        summary = ReapSummary()
        snapshot = self.store.read()
        if not snapshot.active_jobs:
            return summary

        for job in snapshot.active_jobs:
            summary.checked += 1
            try:
                self._reconcile(job, summary)
            except Exception:  # noqa: BLE001
                summary.errors += 1
                logger.exception("Failed to reap issue #%s (pid %s)", job.issue, job.pid)

        if backfill:
            summary.backfilled = self.dispatcher.dispatch_from_queue()
        return summary

    def _reconcile(self, job: Job, summary: ReapSummary) -> None:
        probe = self.liveness.probe(job.pid)
        if probe.alive:
            summary.alive += 1
            return

        tail = read_log_tail(self.dispatcher.log_path(job.issue), max_lines=self.tail_lines)
        outcome = determine_outcome(tail, probe.exit_code)
        duration_s = _elapsed_seconds(job)
        if outcome.succeeded:
            owned = self._handle_success(job, outcome, duration_s)
            if owned:
                summary.succeeded += 1
        else:
            verdict = self._handle_failure(job, outcome, tail, duration_s)
            owned = verdict is not None
            if verdict is not None:
                summary.failed += 1
                if verdict.retry:
                    summary.retried += 1
                else:
                    summary.terminal += 1
        if owned:
            self._release_workspace(job)
        else:
            logger.info("Issue #%s (pid %s) was already reaped elsewhere", job.issue, job.pid)

    def _handle_success(self, job: Job, outcome: JobOutcome, duration_s: int) -> bool:
        record = CompletionRecord(
            issue=job.issue,
            result=JobResult.SUCCESS,
            duration_s=duration_s,
            duration=format_duration(duration_s),
            completed_at=to_iso(utc_now()),
            exit_code=outcome.exit_code,
        )

        def _apply(state: SchedulerState) -> bool:
            if state.remove_job(job.issue, job.pid) is None:
                return False
            state.record_completion(record)
            state.retry_counts.pop(job.issue, None)
            state.drop_priority(job.issue)
            return True

        if not self.store.update(_apply):
            return False
        logger.info("Pipeline for issue #%s completed in %s", job.issue, record.duration)
        self.events.emit(
            "daemon.reap",
            issue=job.issue,
            result=JobResult.SUCCESS.value,
            duration_s=duration_s,
            signal=outcome.source,
        )
        safe_notify(
            self.notifier,
            NotifyEvent.COMPLETED,
            job.issue,
            f"Duration: {record.duration}",
            rate_limiter=self.rate_limiter,
            breaker=self.notify_breaker,
        )
        return True

    def _handle_failure(
        self,
        job: Job,
        outcome: JobOutcome,
        tail: str,
        duration_s: int,
    ) -> _FailureVerdict | None:
        classification = classify_failure(
            tail,
            ExitContext(
                exit_code=outcome.exit_code,
                declared_class=outcome.declared_class,
                progress_text=self._read_progress(job),
            ),
        )
        failure_class = classification.failure_class
        now = utc_now()
        max_retries = self.retry_policy.max_retries_for(failure_class)

        def _apply(state: SchedulerState) -> _FailureVerdict | None:
            if state.remove_job(job.issue, job.pid) is None:
                return None
            retry_count = state.retry_counts.get(job.issue, 0)
            retry = self.retry_policy.should_retry(failure_class, retry_count)
            state.record_completion(
                CompletionRecord(
                    issue=job.issue,
                    result=JobResult.FAILED,
                    duration_s=duration_s,
                    duration=format_duration(duration_s),
                    completed_at=to_iso(now),
                    exit_code=outcome.exit_code,
                ),
            )
            backoff = 0
            if retry:
                retry_count += 1
                backoff = self.retry_policy.backoff_seconds(failure_class, retry_count)
                state.retry_counts[job.issue] = retry_count
                if not state.is_queued(job.issue):
                    not_before = to_iso(now + timedelta(seconds=backoff)) if backoff else None
                    state.queued.append(
                        QueueEntry(
                            issue=job.issue,
                            not_before=not_before,
                            repo=job.repo or None,
                        ),
                    )
            else:
                state.retry_counts.pop(job.issue, None)
                state.drop_priority(job.issue)
            state.record_failure(
                FailureRecord(
                    failure_class=failure_class,
                    ts=to_iso(now),
                    issue=job.issue,
                    retry=retry_count,
                    terminal=not retry,
                ),
            )
            return _FailureVerdict(
                retry=retry,
                retry_count=retry_count,
                max_retries=max_retries,
                backoff_seconds=backoff,
                consecutive=state.consecutive_failures(failure_class),
            )

        verdict = self.store.update(_apply)
        if verdict is None:
            return None
        self._after_failure(job, classification, verdict, outcome, duration_s)
        return verdict

    def _after_failure(
        self,
        job: Job,
        classification: FailureClassification,
        verdict: _FailureVerdict,
        outcome: JobOutcome,
        duration_s: int,
    ) -> None:
        failure_class = classification.failure_class
        self.events.emit(
            "daemon.reap",
            issue=job.issue,
            result=JobResult.FAILED.value,
            duration_s=duration_s,
            exit_code=outcome.exit_code,
            signal=outcome.source,
        )
        self.events.emit(
            "daemon.failure_classified",
            issue=job.issue,
            **classification.to_event_details(),
        )
        if verdict.retry:
            logger.warning(
                "Issue #%s failed (%s); retry %s/%s in %ss",
                job.issue,
                failure_class.value,
                verdict.retry_count,
                verdict.max_retries,
                verdict.backoff_seconds,
            )
            self.events.emit(
                "daemon.retry",
                issue=job.issue,
                retry=verdict.retry_count,
                max_retries=verdict.max_retries,
                failure_class=failure_class.value,
                backoff_s=verdict.backoff_seconds,
            )
        else:
            logger.error(
                "Issue #%s failed terminally (%s) after %s retries",
                job.issue,
                failure_class.value,
                verdict.retry_count,
            )
            self.events.emit(
                "daemon.retry_exhausted",
                issue=job.issue,
                retries=verdict.retry_count,
                failure_class=failure_class.value,
            )
            safe_notify(
                self.notifier,
                NotifyEvent.FAILED,
                job.issue,
                f"Failure class: {failure_class.value}; exit code: {outcome.exit_code}",
                rate_limiter=self.rate_limiter,
                breaker=self.notify_breaker,
            )

        if self.pause_flag is not None and verdict.consecutive >= AUTO_PAUSE_THRESHOLD:
            minutes = auto_pause_minutes(verdict.consecutive)
            state = self.pause_flag.pause(
                f"consecutive_{failure_class.value}",
                resume_after_minutes=minutes,
                consecutive_count=verdict.consecutive,
            )
            self.events.emit(
                "daemon.auto_pause",
                reason="consecutive_failures",
                failure_class=failure_class.value,
                count=verdict.consecutive,
                resume_after=state.resume_after,
            )

    def _read_progress(self, job: Job) -> str | None:
        if not job.worktree:
            return None
        path = Path(job.worktree) / self.progress_relpath
        try:
            with path.open("r", encoding="utf-8", errors="replace") as handle:
                return handle.read(_PROGRESS_MAX_BYTES)
        except OSError:
            return None

    def _release_workspace(self, job: Job) -> None:
        if not job.worktree:
            return
        try:
            repo_root = self.workspace.repo_path(job.repo)
        except WorkspaceError as error:
            logger.warning("Cannot resolve repository for issue #%s: %s", job.issue, error)
            repo_root = None
        self.workspace.remove_job_workspace(Path(job.worktree), repo_root)


def _elapsed_seconds(job: Job) -> int:
    started = parse_iso_or_none(job.started_at)
    if started is None:
        return 0
    return max(0, int((utc_now() - started).total_seconds()))
