"""Worker process launch and liveness probing."""

from __future__ import annotations

import logging
import os
import shlex
import signal
import subprocess
from collections.abc import Mapping
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from build_fleet.daemon.common import to_iso, utc_now
from build_fleet.daemon.errors import LaunchError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class LaunchRequest:
    """Everything a worker needs to run one issue."""

    issue: int
    workspace: Path
    log_path: Path
    title: str = ""
    repo: str = ""
    retry: int = 0


@dataclass(slots=True)
class LaunchedProcess:
    pid: int
    log_path: Path


@dataclass(slots=True)
class ProcessProbe:
    """Result of a non-blocking liveness check."""

    alive: bool
    exit_code: int | None = None


class ProcessLauncher(Protocol):
    """Starts a detached worker and returns its pid."""

    def launch(self, request: LaunchRequest) -> LaunchedProcess: ...

    def terminate(self, pid: int) -> None:
        """Stop a worker that was launched but could not be tracked."""
        ...


class LivenessChecker(Protocol):
    """Non-blocking probe on a recorded pid."""

    def probe(self, pid: int) -> ProcessProbe: ...


def render_command(template: str, *, request: LaunchRequest) -> list[str]:
    """Render the worker command template into argv."""

    stripped = template.strip()
    if not stripped:
        raise LaunchError("Worker command template is empty.", transient=False)
    try:
        rendered = stripped.format(
            issue=request.issue,
            workspace=shlex.quote(str(request.workspace)),
            title=shlex.quote(request.title),
            repo=shlex.quote(request.repo),
            retry=request.retry,
        )
    except (KeyError, IndexError) as error:
        raise LaunchError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error
    argv = shlex.split(rendered)
    if not argv:
        raise LaunchError("Worker command template rendered empty command.", transient=False)
    return argv


class SubprocessLauncher:
    """Launch the pipeline executable as a detached child in its own session.

    Output is appended to the per-issue log after a run header, so one log
    holds every attempt for that issue. Popen handles are kept so the exit
    status of our own children can be collected without blocking.
    """

    def __init__(self, *, command_template: str, env: Mapping[str, str] | None = None) -> None:
        self.command_template = command_template
        self.env = dict(env) if env is not None else None
        self._children: dict[int, subprocess.Popen[bytes]] = {}

    def launch(self, request: LaunchRequest) -> LaunchedProcess:
        argv = render_command(self.command_template, request=request)
        env = dict(self.env if self.env is not None else os.environ)
        env.update(
            {
                "BUILD_FLEET_ISSUE": str(request.issue),
                "BUILD_FLEET_WORKSPACE": str(request.workspace),
                "BUILD_FLEET_REPO": request.repo,
                "BUILD_FLEET_RETRY": str(request.retry),
            },
        )
        try:
            request.log_path.parent.mkdir(parents=True, exist_ok=True)
            with request.log_path.open("ab") as log_handle:
                log_handle.write(f"\n===== Pipeline run {to_iso(utc_now())} =====\n".encode())
                log_handle.flush()
                process = subprocess.Popen(  # noqa: S603
                    argv,
                    cwd=request.workspace,
                    stdin=subprocess.DEVNULL,
                    stdout=log_handle,
                    stderr=subprocess.STDOUT,
                    env=env,
                    start_new_session=True,
                )
        except FileNotFoundError as error:
            raise LaunchError(
                f"Worker executable not found: {argv[0]}",
                transient=False,
            ) from error
        except OSError as error:
            raise LaunchError(f"Failed to start worker: {error}", transient=True) from error

        self._children[process.pid] = process
        logger.info("Started worker pid %s for issue #%s: %s", process.pid, request.issue, argv[0])
        return LaunchedProcess(pid=process.pid, log_path=request.log_path)

    def terminate(self, pid: int) -> None:
        """SIGTERM the worker's whole session and reap it if it is our child."""

        try:
            os.killpg(pid, signal.SIGTERM)
        except ProcessLookupError:
            logger.debug("Worker pid %s already gone", pid)
        except PermissionError as error:
            logger.warning("Cannot stop worker pid %s: %s", pid, error)
        process = self._children.pop(pid, None)
        if process is not None:
            with suppress(subprocess.TimeoutExpired):
                process.wait(timeout=5)
        logger.info("Stopped untracked worker pid %s", pid)

    def poll_child(self, pid: int) -> tuple[bool, int | None]:
        """Return `(owned, exit_code)`; exit_code stays None while the child runs."""

        process = self._children.get(pid)
        if process is None:
            return False, None
        code = process.poll()
        if code is not None:
            self._children.pop(pid, None)
        return True, code


class OsLivenessChecker:
    """Signal-0 probe, preferring exit codes of children this process launched."""

    def __init__(self, launcher: SubprocessLauncher | None = None) -> None:
        self.launcher = launcher

    def probe(self, pid: int) -> ProcessProbe:
        if self.launcher is not None:
            owned, code = self.launcher.poll_child(pid)
            if owned:
                return ProcessProbe(alive=code is None, exit_code=code)
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return ProcessProbe(alive=False)
        except PermissionError:
            # Exists but belongs to another user.
            return ProcessProbe(alive=True)
        return ProcessProbe(alive=True)
