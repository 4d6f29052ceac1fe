"""Shared test fixtures."""

from __future__ import annotations

import json
import shutil
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from build_fleet.config import DispatchSettings, Settings
from build_fleet.daemon.errors import LaunchError, NotifyError, WorkspaceError
from build_fleet.daemon.launcher import LaunchedProcess, LaunchRequest, ProcessProbe
from build_fleet.daemon.models import NotifyEvent
from build_fleet.daemon.scheduler import DispatchDaemon
from build_fleet.daemon.services import DaemonOverrides, build_daemon
from build_fleet.daemon.state import InMemoryStateStore

GIB = 1024**3


class FakeLauncher:
    """Hands out increasing pids instead of starting processes."""

    def __init__(self, *, first_pid: int = 4000) -> None:
        self.requests: list[LaunchRequest] = []
        self.terminated: list[int] = []
        self.error: LaunchError | None = None
        self._next_pid = first_pid

    def launch(self, request: LaunchRequest) -> LaunchedProcess:
        if self.error is not None:
            raise self.error
        self.requests.append(request)
        pid = self._next_pid
        self._next_pid += 1
        return LaunchedProcess(pid=pid, log_path=request.log_path)

    def terminate(self, pid: int) -> None:
        self.terminated.append(pid)

    @property
    def launched_issues(self) -> list[int]:
        return [request.issue for request in self.requests]


class FakeLiveness:
    """Every pid is alive until `kill` marks it dead."""

    def __init__(self) -> None:
        self.dead: dict[int, int | None] = {}
        self.probed: list[int] = []

    def kill(self, pid: int, exit_code: int | None = None) -> None:
        self.dead[pid] = exit_code

    def probe(self, pid: int) -> ProcessProbe:
        self.probed.append(pid)
        if pid in self.dead:
            return ProcessProbe(alive=False, exit_code=self.dead[pid])
        return ProcessProbe(alive=True)


class FakeGit:
    """Records git invocations and mimics their filesystem effects."""

    def __init__(self) -> None:
        self.calls: list[tuple[tuple[str, ...], Path | None]] = []
        self.fail_on: set[str] = set()

    def __call__(self, args: Sequence[str], *, cwd: Path | None = None) -> str:
        argv = tuple(args)
        self.calls.append((argv, cwd))
        if argv[0] in self.fail_on or " ".join(argv[:2]) in self.fail_on:
            raise WorkspaceError(f"git {argv[0]} failed (128): simulated")
        if argv[0] == "clone":
            target = Path(argv[-1])
            (target / ".git").mkdir(parents=True)
        elif argv[:2] == ("worktree", "add"):
            target = Path(argv[2])
            target.mkdir(parents=True, exist_ok=True)
            if cwd is not None:
                admin_dir = cwd / ".git" / "worktrees" / target.name
                (target / ".git").write_text(f"gitdir: {admin_dir}\n", encoding="utf-8")
        elif argv[:2] == ("worktree", "remove"):
            shutil.rmtree(argv[2], ignore_errors=True)
        return ""

    def count(self, *prefix: str) -> int:
        return sum(1 for argv, _ in self.calls if argv[: len(prefix)] == prefix)


class RecordingNotifier:
    def __init__(self) -> None:
        self.calls: list[tuple[NotifyEvent, int, str]] = []
        self.fail = False

    def notify(self, event: NotifyEvent, issue: int, detail: str = "") -> None:
        self.calls.append((event, issue, detail))
        if self.fail:
            raise NotifyError("tracker unavailable")

    def events_for(self, issue: int) -> list[NotifyEvent]:
        return [event for event, called_issue, _ in self.calls if called_issue == issue]


@dataclass
class DaemonHarness:
    """A fully wired daemon with fake process, git and disk collaborators."""

    root: Path
    settings: Settings
    store: InMemoryStateStore
    launcher: FakeLauncher
    liveness: FakeLiveness
    git: FakeGit
    notifier: RecordingNotifier
    daemon: DispatchDaemon
    disk: dict[str, int] = field(default_factory=lambda: {"free": 50 * GIB})

    @property
    def dispatcher(self):
        return self.daemon.dispatcher

    @property
    def reaper(self):
        return self.daemon.reaper

    def write_log(self, issue: int, text: str) -> Path:
        path = self.settings.logs_dir / f"issue-{issue}.log"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
        return path

    def events(self, event_type: str | None = None) -> list[dict[str, object]]:
        path = self.settings.events_file
        if not path.exists():
            return []
        records = [json.loads(line) for line in path.read_text().splitlines() if line]
        if event_type is None:
            return records
        return [record for record in records if record["type"] == event_type]


@pytest.fixture()
def make_harness(tmp_path: Path) -> Callable[..., DaemonHarness]:
    def _make(
        *,
        max_parallel: int = 2,
        document: dict[str, object] | None = None,
        priority_lane_max: int = 1,
    ) -> DaemonHarness:
        repo_dir = tmp_path / "repo"
        repo_dir.mkdir(exist_ok=True)
        settings = Settings(
            state_dir=tmp_path / "state",
            repo_dir=repo_dir,
            dispatch=DispatchSettings(
                max_parallel=max_parallel,
                poll_interval_seconds=0,
                priority_lane_max=priority_lane_max,
            ),
        )
        store = InMemoryStateStore(document)
        launcher = FakeLauncher()
        liveness = FakeLiveness()
        git = FakeGit()
        notifier = RecordingNotifier()
        disk = {"free": 50 * GIB}
        daemon = build_daemon(
            settings,
            DaemonOverrides(
                store=store,
                launcher=launcher,
                liveness=liveness,
                notifier=notifier,
                git=git,
                disk_probe=lambda _path: disk["free"],
            ),
        )
        return DaemonHarness(
            root=tmp_path,
            settings=settings,
            store=store,
            launcher=launcher,
            liveness=liveness,
            git=git,
            notifier=notifier,
            daemon=daemon,
            disk=disk,
        )

    return _make


@pytest.fixture()
def fake_git() -> FakeGit:
    return FakeGit()


@pytest.fixture()
def fake_launcher() -> FakeLauncher:
    return FakeLauncher()


@pytest.fixture()
def harness(make_harness: Callable[..., DaemonHarness]) -> DaemonHarness:
    return make_harness()


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "BUILD_FLEET_STATE_DIR",
        "BUILD_FLEET_MAX_PARALLEL",
        "BUILD_FLEET_WORKER_COMMAND",
        "BUILD_FLEET_WEBHOOK_URL",
        "BUILD_FLEET_TRACKER_COMMAND",
    ):
        monkeypatch.delenv(name, raising=False)
