"""Runtime configuration for the dispatch daemon."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from string import Formatter

from build_fleet.daemon.failure_classifier import DEFAULT_MAX_RETRIES, RetryPolicy
from build_fleet.daemon.models import FailureClass

DEFAULT_WORKER_COMMAND = "build-pipeline start --issue {issue} --workspace {workspace}"
DEFAULT_CLONE_URL_TEMPLATE = "https://github.com/{org}/{repo}.git"
_WORKER_PLACEHOLDERS = frozenset({"issue", "workspace", "title", "repo", "retry"})


@dataclass(slots=True)
class DispatchSettings:
    """Admission and scheduling loop settings."""

    max_parallel: int = 2
    poll_interval_seconds: float = 60.0
    min_free_disk_mb: int = 1_024
    priority_lane_max: int = 1
    state_lock_timeout_seconds: float = 5.0


@dataclass(slots=True)
class WorkerSettings:
    """How worker pipelines are checked out and started."""

    command_template: str = DEFAULT_WORKER_COMMAND
    base_branch: str = "main"
    clone_url_template: str = DEFAULT_CLONE_URL_TEMPLATE
    log_tail_lines: int = 200


@dataclass(slots=True)
class RetrySettings:
    """Per-class retry ceilings and backoff."""

    max_retries: dict[FailureClass, int] = field(
        default_factory=lambda: dict(DEFAULT_MAX_RETRIES),
    )
    backoff_enabled: bool = True
    backoff_base_seconds: int = 30
    api_backoff_base_seconds: int = 300
    backoff_max_seconds: int = 3_600

    def to_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=dict(self.max_retries),
            backoff_enabled=self.backoff_enabled,
            backoff_base_seconds=self.backoff_base_seconds,
            api_backoff_base_seconds=self.api_backoff_base_seconds,
            backoff_max_seconds=self.backoff_max_seconds,
        )


@dataclass(slots=True)
class HousekeepingSettings:
    """Stale-state reaper and event log rotation."""

    stale_reaper_enabled: bool = True
    stale_reaper_interval_ticks: int = 10
    stale_reaper_age_days: int = 7
    events_max_mb: int = 50
    events_backups: int = 3


@dataclass(slots=True)
class NotifySettings:
    """Tracker adapter command and webhook delivery."""

    tracker_command: str | None = None
    webhook_url: str | None = None
    webhook_timeout_seconds: float = 10.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    state_dir: Path = Path(".build-fleet")
    repo_dir: Path = Path(".")
    worktrees_dir: Path | None = None
    dispatch: DispatchSettings = field(default_factory=DispatchSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    housekeeping: HousekeepingSettings = field(default_factory=HousekeepingSettings)
    notify: NotifySettings = field(default_factory=NotifySettings)

    @property
    def state_file(self) -> Path:
        return self.state_dir / "daemon-state.json"

    @property
    def logs_dir(self) -> Path:
        return self.state_dir / "logs"

    @property
    def events_file(self) -> Path:
        return self.state_dir / "events.jsonl"

    @property
    def pause_flag_file(self) -> Path:
        return self.state_dir / "daemon-pause.flag"

    @property
    def daemon_log_file(self) -> Path:
        return self.state_dir / "daemon.log"

    @property
    def repos_dir(self) -> Path:
        return self.state_dir / "repos"

    @property
    def effective_worktrees_dir(self) -> Path:
        return self.worktrees_dir or self.repo_dir / ".worktrees"

    @classmethod
    def from_env(cls, state_dir: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        worktrees_raw = os.getenv("BUILD_FLEET_WORKTREES_DIR", "").strip()
        return cls(
            state_dir=state_dir or Path(os.getenv("BUILD_FLEET_STATE_DIR", ".build-fleet")),
            repo_dir=Path(os.getenv("BUILD_FLEET_REPO_DIR", ".")),
            worktrees_dir=Path(worktrees_raw) if worktrees_raw else None,
            dispatch=DispatchSettings(
                max_parallel=int(os.getenv("BUILD_FLEET_MAX_PARALLEL", "2")),
                poll_interval_seconds=float(
                    os.getenv("BUILD_FLEET_POLL_INTERVAL_SECONDS", "60"),
                ),
                min_free_disk_mb=int(os.getenv("BUILD_FLEET_MIN_FREE_DISK_MB", "1024")),
                priority_lane_max=int(os.getenv("BUILD_FLEET_PRIORITY_LANE_MAX", "1")),
                state_lock_timeout_seconds=float(
                    os.getenv("BUILD_FLEET_STATE_LOCK_TIMEOUT_SECONDS", "5"),
                ),
            ),
            worker=WorkerSettings(
                command_template=os.getenv("BUILD_FLEET_WORKER_COMMAND", DEFAULT_WORKER_COMMAND),
                base_branch=os.getenv("BUILD_FLEET_BASE_BRANCH", "main"),
                clone_url_template=os.getenv(
                    "BUILD_FLEET_CLONE_URL_TEMPLATE",
                    DEFAULT_CLONE_URL_TEMPLATE,
                ),
                log_tail_lines=int(os.getenv("BUILD_FLEET_LOG_TAIL_LINES", "200")),
            ),
            retry=RetrySettings(
                max_retries=_collect_max_retries(),
                backoff_enabled=_env_bool("BUILD_FLEET_RETRY_BACKOFF_ENABLED", default=True),
                backoff_base_seconds=int(os.getenv("BUILD_FLEET_RETRY_BASE_SECONDS", "30")),
                api_backoff_base_seconds=int(
                    os.getenv("BUILD_FLEET_RETRY_API_BASE_SECONDS", "300"),
                ),
                backoff_max_seconds=int(os.getenv("BUILD_FLEET_RETRY_MAX_SECONDS", "3600")),
            ),
            housekeeping=HousekeepingSettings(
                stale_reaper_enabled=_env_bool("BUILD_FLEET_STALE_REAPER_ENABLED", default=True),
                stale_reaper_interval_ticks=int(
                    os.getenv("BUILD_FLEET_STALE_REAPER_INTERVAL_TICKS", "10"),
                ),
                stale_reaper_age_days=int(os.getenv("BUILD_FLEET_STALE_REAPER_AGE_DAYS", "7")),
                events_max_mb=int(os.getenv("BUILD_FLEET_EVENTS_MAX_MB", "50")),
                events_backups=int(os.getenv("BUILD_FLEET_EVENTS_BACKUPS", "3")),
            ),
            notify=NotifySettings(
                tracker_command=os.getenv("BUILD_FLEET_TRACKER_COMMAND") or None,
                webhook_url=os.getenv("BUILD_FLEET_WEBHOOK_URL") or None,
                webhook_timeout_seconds=float(
                    os.getenv("BUILD_FLEET_WEBHOOK_TIMEOUT_SECONDS", "10"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if daemon settings are unusable."""

        if self.dispatch.max_parallel < 1:
            raise ValueError("BUILD_FLEET_MAX_PARALLEL must be >= 1.")
        if self.dispatch.poll_interval_seconds < 0:
            raise ValueError("BUILD_FLEET_POLL_INTERVAL_SECONDS must be >= 0.")
        if self.dispatch.min_free_disk_mb < 0:
            raise ValueError("BUILD_FLEET_MIN_FREE_DISK_MB must be >= 0.")
        if self.dispatch.priority_lane_max < 0:
            raise ValueError("BUILD_FLEET_PRIORITY_LANE_MAX must be >= 0.")
        if self.dispatch.state_lock_timeout_seconds <= 0:
            raise ValueError("BUILD_FLEET_STATE_LOCK_TIMEOUT_SECONDS must be > 0.")
        if self.worker.log_tail_lines < 1:
            raise ValueError("BUILD_FLEET_LOG_TAIL_LINES must be >= 1.")
        if self.housekeeping.stale_reaper_interval_ticks < 1:
            raise ValueError("BUILD_FLEET_STALE_REAPER_INTERVAL_TICKS must be >= 1.")
        if self.housekeeping.stale_reaper_age_days < 1:
            raise ValueError("BUILD_FLEET_STALE_REAPER_AGE_DAYS must be >= 1.")
        if self.housekeeping.events_backups < 1:
            raise ValueError("BUILD_FLEET_EVENTS_BACKUPS must be >= 1.")
        for failure_class, ceiling in self.retry.max_retries.items():
            if ceiling < 0:
                raise ValueError(
                    f"BUILD_FLEET_MAX_RETRIES_{failure_class.value.upper()} must be >= 0.",
                )
        _validate_worker_command(self.worker.command_template)
        if self.notify.webhook_url and not self.notify.webhook_url.startswith(
            ("http://", "https://"),
        ):
            raise ValueError(
                f"BUILD_FLEET_WEBHOOK_URL must be an http(s) URL: {self.notify.webhook_url}",
            )


def _collect_max_retries() -> dict[FailureClass, int]:
    ceilings = dict(DEFAULT_MAX_RETRIES)
    for failure_class in FailureClass:
        raw = os.getenv(f"BUILD_FLEET_MAX_RETRIES_{failure_class.value.upper()}")
        if raw is None or not raw.strip():
            continue
        try:
            ceilings[failure_class] = int(raw)
        except ValueError as error:
            raise ValueError(
                f"BUILD_FLEET_MAX_RETRIES_{failure_class.value.upper()} must be an integer: "
                f"{raw!r}",
            ) from error
    return ceilings


def _validate_worker_command(template: str) -> None:
    if not template.strip():
        raise ValueError("BUILD_FLEET_WORKER_COMMAND must not be empty.")
    try:
        fields = {name for _, name, _, _ in Formatter().parse(template) if name is not None}
    except ValueError as error:
        raise ValueError(f"BUILD_FLEET_WORKER_COMMAND is malformed: {error}") from error
    unknown = fields - _WORKER_PLACEHOLDERS
    if unknown:
        raise ValueError(
            "BUILD_FLEET_WORKER_COMMAND uses unsupported placeholders: "
            + ", ".join(sorted(unknown)),
        )
    if "issue" not in fields:
        raise ValueError("BUILD_FLEET_WORKER_COMMAND must contain the {issue} placeholder.")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
