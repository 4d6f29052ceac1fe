from __future__ import annotations

import time
from pathlib import Path

import allure
import pytest

from build_fleet.daemon.errors import LaunchError
from build_fleet.daemon.launcher import (
    LaunchRequest,
    OsLivenessChecker,
    ProcessProbe,
    SubprocessLauncher,
    render_command,
)

pytestmark = [
    allure.epic("Dispatch Daemon"),
    allure.feature("Worker Launch"),
]


def _request(tmp_path: Path, **overrides) -> LaunchRequest:
    workspace = tmp_path / "daemon-issue-5"
    workspace.mkdir(exist_ok=True)
    values = {
        "issue": 5,
        "workspace": workspace,
        "log_path": tmp_path / "logs" / "issue-5.log",
        "title": "Fix it's quoting",
        "repo": "acme/widgets",
    }
    values.update(overrides)
    return LaunchRequest(**values)


def _wait_for_exit(checker: OsLivenessChecker, pid: int) -> ProcessProbe:
    deadline = time.monotonic() + 10
    while time.monotonic() < deadline:
        probe = checker.probe(pid)
        if not probe.alive:
            return probe
        time.sleep(0.05)
    raise AssertionError(f"pid {pid} did not exit")


def test_render_command_quotes_free_text(tmp_path: Path) -> None:
    argv = render_command(
        "pipeline --issue {issue} --title {title} --workspace {workspace}",
        request=_request(tmp_path),
    )

    assert argv[:3] == ["pipeline", "--issue", "5"]
    assert argv[4] == "Fix it's quoting"
    assert argv[-1] == str(tmp_path / "daemon-issue-5")


def test_render_command_rejects_unknown_placeholder(tmp_path: Path) -> None:
    with pytest.raises(LaunchError) as error:
        render_command("pipeline {model}", request=_request(tmp_path))

    assert error.value.transient is False


def test_launch_writes_header_and_collects_exit_code(tmp_path: Path) -> None:
    launcher = SubprocessLauncher(
        command_template=(
            "sh -c 'echo issue=$BUILD_FLEET_ISSUE repo=$BUILD_FLEET_REPO; exit 3' {issue}"
        ),
    )
    checker = OsLivenessChecker(launcher)
    request = _request(tmp_path)

    launched = launcher.launch(request)
    probe = _wait_for_exit(checker, launched.pid)

    assert probe.exit_code == 3
    log_text = request.log_path.read_text()
    assert "===== Pipeline run " in log_text
    assert "issue=5 repo=acme/widgets" in log_text


def test_missing_executable_is_not_transient(tmp_path: Path) -> None:
    launcher = SubprocessLauncher(command_template="definitely-not-a-real-binary-xyz {issue}")

    with pytest.raises(LaunchError) as error:
        launcher.launch(_request(tmp_path))

    assert error.value.transient is False


def test_unknown_pid_is_probed_with_signal_zero() -> None:
    checker = OsLivenessChecker()

    assert checker.probe(2**22 + 12345).alive is False


def test_terminate_stops_worker_session(tmp_path: Path) -> None:
    launcher = SubprocessLauncher(command_template="sleep 30 {issue}")
    checker = OsLivenessChecker(launcher)
    launched = launcher.launch(_request(tmp_path))
    assert checker.probe(launched.pid).alive is True

    launcher.terminate(launched.pid)

    assert checker.probe(launched.pid).alive is False
    launcher.terminate(launched.pid)
