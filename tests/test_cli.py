from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from build_fleet import __version__
from build_fleet import main as cli_main
from build_fleet.daemon import controllers
from build_fleet.daemon.services import DaemonOverrides
from build_fleet.main import build_fleet

pytestmark = [
    allure.epic("Dispatch Daemon"),
    allure.feature("CLI"),
]


@pytest.fixture()
def state_dir(tmp_path: Path, monkeypatch) -> Path:
    repo_dir = tmp_path / "repo"
    repo_dir.mkdir()
    monkeypatch.setenv("BUILD_FLEET_REPO_DIR", str(repo_dir))
    return tmp_path / "state"


def _invoke(*args: str):
    runner = CliRunner()
    result = runner.invoke(build_fleet, list(args), catch_exceptions=False)
    assert result.exit_code == 0, result.output
    return result


def test_version_option() -> None:
    assert __version__ in _invoke("--version").output


def test_init_creates_state_once(state_dir: Path) -> None:
    first = _invoke("daemon", "init", "--state-dir", str(state_dir))
    second = _invoke("daemon", "init", "--state-dir", str(state_dir))

    assert first.output.startswith("Created scheduler state:")
    assert second.output.startswith("Kept existing scheduler state:")
    document = json.loads((state_dir / "daemon-state.json").read_text())
    assert document["active_jobs"] == []


def test_enqueue_promote_remove_and_status(state_dir: Path) -> None:
    added = _invoke(
        "daemon", "enqueue", "70", "--title", "Add login", "--state-dir", str(state_dir)
    )
    again = _invoke("daemon", "enqueue", "70", "--state-dir", str(state_dir))
    _invoke("daemon", "enqueue", "71", "--score", "0.8", "--state-dir", str(state_dir))
    promoted = _invoke("daemon", "promote", "71", "--state-dir", str(state_dir))
    status = _invoke("daemon", "status", "--state-dir", str(state_dir))

    assert added.output.strip() == "Issue #70 queued."
    assert again.output.strip() == "Issue #70 is already queued or active."
    assert promoted.output.strip() == "Issue #71 is in the priority lane."
    assert "Active jobs: 0/2" in status.output
    assert "Queued: 2" in status.output
    assert "#70 Add login" in status.output
    assert "#71 (priority, score 0.8)" in status.output
    assert "Paused: no" in status.output

    removed = _invoke("daemon", "remove", "70", "--state-dir", str(state_dir))
    missing = _invoke("daemon", "remove", "70", "--state-dir", str(state_dir))
    assert removed.output.strip() == "Issue #70 removed from queue."
    assert missing.output.strip() == "Issue #70 was not queued."


def test_pause_and_resume(state_dir: Path) -> None:
    paused = _invoke(
        "daemon", "pause", "--reason", "deploy", "--minutes", "15", "--state-dir", str(state_dir)
    )
    status = _invoke("daemon", "status", "--state-dir", str(state_dir))
    resumed = _invoke("daemon", "resume", "--state-dir", str(state_dir))
    not_paused = _invoke("daemon", "resume", "--state-dir", str(state_dir))

    assert paused.output.startswith("Paused (deploy); resume after ")
    assert "Paused: yes (deploy;" in status.output
    assert resumed.output.strip() == "Resumed."
    assert not_paused.output.strip() == "Daemon was not paused."


def test_reset_requires_confirmation(state_dir: Path) -> None:
    _invoke("daemon", "enqueue", "5", "--state-dir", str(state_dir))
    runner = CliRunner()

    aborted = runner.invoke(
        build_fleet,
        ["daemon", "reset", "--state-dir", str(state_dir)],
        input="n\n",
    )
    assert aborted.exit_code != 0
    assert "Queued: 1" in _invoke("daemon", "status", "--state-dir", str(state_dir)).output

    _invoke("daemon", "reset", "--yes", "--state-dir", str(state_dir))
    assert "Queued: 0" in _invoke("daemon", "status", "--state-dir", str(state_dir)).output


def test_tick_spawns_from_queue(state_dir: Path, monkeypatch, fake_launcher, fake_git) -> None:
    monkeypatch.setattr(
        cli_main.DAEMON_CONTROLLER,
        "overrides",
        DaemonOverrides(launcher=fake_launcher, git=fake_git, disk_probe=lambda _path: 10**12),
    )
    _invoke("daemon", "enqueue", "5", "--title", "Wire CI", "--state-dir", str(state_dir))

    result = _invoke("daemon", "tick", "--state-dir", str(state_dir))

    assert "dispatched=1" in result.output
    assert fake_launcher.launched_issues == [5]
    assert fake_launcher.requests[0].title == "Wire CI"
    status = _invoke("daemon", "status", "--state-dir", str(state_dir))
    assert "Active jobs: 1/2" in status.output


def test_enqueue_with_spawn_starts_immediately(
    state_dir: Path,
    monkeypatch,
    fake_launcher,
    fake_git,
) -> None:
    monkeypatch.setattr(
        cli_main.DAEMON_CONTROLLER,
        "overrides",
        DaemonOverrides(launcher=fake_launcher, git=fake_git, disk_probe=lambda _path: 10**12),
    )

    result = _invoke("daemon", "enqueue", "9", "--spawn", "--state-dir", str(state_dir))

    assert result.output.strip() == "Issue #9: spawned"
    assert fake_launcher.launched_issues == [9]


def test_run_honours_max_ticks(state_dir: Path, monkeypatch, fake_launcher, fake_git) -> None:
    monkeypatch.setattr(controllers, "configure_daemon_logging", lambda *_args, **_kwargs: None)
    monkeypatch.setattr(
        cli_main.DAEMON_CONTROLLER,
        "overrides",
        DaemonOverrides(launcher=fake_launcher, git=fake_git, disk_probe=lambda _path: 10**12),
    )
    monkeypatch.setenv("BUILD_FLEET_POLL_INTERVAL_SECONDS", "0")
    _invoke("daemon", "enqueue", "3", "--state-dir", str(state_dir))

    result = _invoke("daemon", "run", "--max-ticks", "1", "--state-dir", str(state_dir))

    assert "ticks=1" in result.output
    assert "spawned=1" in result.output


def test_cleanup_reports_counts(state_dir: Path) -> None:
    _invoke("daemon", "init", "--state-dir", str(state_dir))

    result = _invoke("daemon", "cleanup", "--age-days", "3", "--state-dir", str(state_dir))

    assert result.output.startswith("Cleanup (older than 3d): completed=0")


def test_invalid_settings_surface_as_error(state_dir: Path, monkeypatch) -> None:
    monkeypatch.setenv("BUILD_FLEET_MAX_PARALLEL", "0")
    runner = CliRunner()

    result = runner.invoke(build_fleet, ["daemon", "tick", "--state-dir", str(state_dir)])

    assert result.exit_code != 0
    assert isinstance(result.exception, ValueError)
