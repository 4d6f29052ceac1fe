"""Wiring of daemon components from settings."""

from __future__ import annotations

from dataclasses import dataclass

from build_fleet.config import Settings
from build_fleet.daemon.dispatcher import DiskProbe, Dispatcher, free_disk_bytes
from build_fleet.daemon.events import EventLog
from build_fleet.daemon.launcher import (
    LivenessChecker,
    OsLivenessChecker,
    ProcessLauncher,
    SubprocessLauncher,
)
from build_fleet.daemon.notify import (
    CommandNotifier,
    CompositeNotifier,
    Notifier,
    NullNotifier,
    WebhookNotifier,
)
from build_fleet.daemon.pause import PauseFlag
from build_fleet.daemon.rate_limit import RateLimiter
from build_fleet.daemon.reaper import Reaper
from build_fleet.daemon.scheduler import DispatchDaemon
from build_fleet.daemon.state import JsonStateStore, StateStore
from build_fleet.daemon.workspace import GitRunner, WorkspaceManager, run_git


@dataclass(slots=True)
class DaemonOverrides:
    """Collaborators to substitute, mostly for tests and dry runs."""

    store: StateStore | None = None
    launcher: ProcessLauncher | None = None
    liveness: LivenessChecker | None = None
    notifier: Notifier | None = None
    git: GitRunner | None = None
    disk_probe: DiskProbe | None = None
    rate_limiter: RateLimiter | None = None


def build_store(settings: Settings) -> JsonStateStore:
    return JsonStateStore(
        settings.state_file,
        lock_timeout_seconds=settings.dispatch.state_lock_timeout_seconds,
    )


def build_notifier(settings: Settings) -> Notifier:
    notifiers: list[Notifier] = []
    if settings.notify.tracker_command:
        notifiers.append(CommandNotifier(command_template=settings.notify.tracker_command))
    if settings.notify.webhook_url:
        notifiers.append(
            WebhookNotifier(
                url=settings.notify.webhook_url,
                timeout_seconds=settings.notify.webhook_timeout_seconds,
            ),
        )
    if not notifiers:
        return NullNotifier()
    if len(notifiers) == 1:
        return notifiers[0]
    return CompositeNotifier(notifiers)


def build_workspace(settings: Settings, git: GitRunner | None = None) -> WorkspaceManager:
    return WorkspaceManager(
        repo_dir=settings.repo_dir,
        worktrees_dir=settings.effective_worktrees_dir,
        repos_dir=settings.repos_dir,
        base_branch=settings.worker.base_branch,
        clone_url_template=settings.worker.clone_url_template,
        git=git or run_git,
    )


def build_daemon(settings: Settings, overrides: DaemonOverrides | None = None) -> DispatchDaemon:
    """Assemble a daemon whose collaborators all share one store and rate limiter.

    Notification failures trip a separate breaker so they never gate spawning.
    """

    settings.validate()
    extra = overrides or DaemonOverrides()
    store = extra.store or build_store(settings)
    launcher = extra.launcher
    if launcher is None:
        launcher = SubprocessLauncher(command_template=settings.worker.command_template)
    liveness = extra.liveness
    if liveness is None:
        liveness = OsLivenessChecker(
            launcher if isinstance(launcher, SubprocessLauncher) else None,
        )
    notifier = extra.notifier or build_notifier(settings)
    rate_limiter = extra.rate_limiter or RateLimiter()
    notify_breaker = RateLimiter()
    workspace = build_workspace(settings, extra.git)
    events = EventLog(
        settings.events_file,
        max_bytes=settings.housekeeping.events_max_mb * 1024 * 1024,
        backups=settings.housekeeping.events_backups,
    )
    pause_flag = PauseFlag(settings.pause_flag_file)

    dispatcher = Dispatcher(
        store=store,
        workspace=workspace,
        launcher=launcher,
        events=events,
        notifier=notifier,
        rate_limiter=rate_limiter,
        pause_flag=pause_flag,
        logs_dir=settings.logs_dir,
        max_parallel=settings.dispatch.max_parallel,
        min_free_bytes=settings.dispatch.min_free_disk_mb * 1024 * 1024,
        disk_probe=extra.disk_probe or free_disk_bytes,
        notify_breaker=notify_breaker,
    )
    reaper = Reaper(
        store=store,
        liveness=liveness,
        dispatcher=dispatcher,
        workspace=workspace,
        events=events,
        notifier=notifier,
        rate_limiter=rate_limiter,
        retry_policy=settings.retry.to_policy(),
        pause_flag=pause_flag,
        tail_lines=settings.worker.log_tail_lines,
        notify_breaker=notify_breaker,
    )
    return DispatchDaemon(
        store=store,
        dispatcher=dispatcher,
        reaper=reaper,
        workspace=workspace,
        events=events,
        rate_limiter=rate_limiter,
        pause_flag=pause_flag,
        poll_interval_seconds=settings.dispatch.poll_interval_seconds,
        priority_lane_max=settings.dispatch.priority_lane_max,
        stale_reaper_enabled=settings.housekeeping.stale_reaper_enabled,
        stale_reaper_interval_ticks=settings.housekeeping.stale_reaper_interval_ticks,
        stale_reaper_age_days=settings.housekeeping.stale_reaper_age_days,
    )
