"""CLI entrypoint for build-fleet."""

from pathlib import Path

import rich_click as click

from build_fleet import __version__
from build_fleet.daemon.controllers import (
    DaemonCleanupCommand,
    DaemonCliController,
    DaemonEnqueueCommand,
    DaemonIssueCommand,
    DaemonPauseCommand,
    DaemonRunCommand,
    DaemonStateCommand,
    DaemonStatusCommand,
)

click.rich_click.USE_MARKDOWN = True
DAEMON_CONTROLLER = DaemonCliController()

_state_dir_option = click.option(
    "--state-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Daemon state directory (defaults to `BUILD_FLEET_STATE_DIR` or `.build-fleet`).",
)


@click.group()
@click.version_option(version=__version__, prog_name="build-fleet")
def build_fleet() -> None:
    """Fleet-of-agents build orchestrator."""


@build_fleet.group()
def daemon() -> None:
    """Dispatch daemon commands.

    The daemon keeps at most `BUILD_FLEET_MAX_PARALLEL` pipeline workers
    running, one isolated git worktree per issue.
    """


@daemon.command("init")
@_state_dir_option
def daemon_init(state_dir: Path | None) -> None:
    """Create the scheduler state document if it does not exist."""

    _emit_lines(DAEMON_CONTROLLER.init(DaemonStateCommand(state_dir=state_dir)))


@daemon.command("status")
@_state_dir_option
@click.option(
    "--completed",
    "completed_limit",
    type=click.IntRange(min=0, max=100),
    default=5,
    show_default=True,
    help="How many recent completions to display.",
)
def daemon_status(state_dir: Path | None, completed_limit: int) -> None:
    """Show active jobs, queue, recent completions and pause state."""

    _emit_lines(
        DAEMON_CONTROLLER.status(
            DaemonStatusCommand(state_dir=state_dir, completed_limit=completed_limit),
        ),
    )


@daemon.command("enqueue")
@_state_dir_option
@click.argument("issue", type=click.IntRange(min=1))
@click.option("--title", default="", help="Human readable issue title.")
@click.option("--repo", default=None, help="`org/repo` for fleet mode.")
@click.option("--priority", is_flag=True, help="Place the issue in the priority lane.")
@click.option("--score", type=float, default=None, help="Informational triage score.")
@click.option(
    "--spawn",
    is_flag=True,
    help="Start immediately when a slot is free instead of only queueing.",
)
def daemon_enqueue(  # noqa: PLR0913
    state_dir: Path | None,
    issue: int,
    title: str,
    repo: str | None,
    priority: bool,
    score: float | None,
    spawn: bool,
) -> None:
    """Add an issue to the dispatch queue."""

    _emit_lines(
        DAEMON_CONTROLLER.enqueue(
            DaemonEnqueueCommand(
                state_dir=state_dir,
                issue=issue,
                title=title,
                repo=repo,
                priority=priority,
                score=score,
                spawn=spawn,
            ),
        ),
    )


@daemon.command("promote")
@_state_dir_option
@click.argument("issue", type=click.IntRange(min=1))
def daemon_promote(state_dir: Path | None, issue: int) -> None:
    """Move a queued issue into the priority lane."""

    _emit_lines(DAEMON_CONTROLLER.promote(DaemonIssueCommand(state_dir=state_dir, issue=issue)))


@daemon.command("remove")
@_state_dir_option
@click.argument("issue", type=click.IntRange(min=1))
def daemon_remove(state_dir: Path | None, issue: int) -> None:
    """Drop a queued issue (running jobs are not touched)."""

    _emit_lines(DAEMON_CONTROLLER.remove(DaemonIssueCommand(state_dir=state_dir, issue=issue)))


@daemon.command("tick")
@_state_dir_option
def daemon_tick(state_dir: Path | None) -> None:
    """Run a single reap-then-dispatch cycle (for cron-driven setups)."""

    _emit_lines(DAEMON_CONTROLLER.tick(DaemonStateCommand(state_dir=state_dir)))


@daemon.command("run")
@_state_dir_option
@click.option(
    "--max-ticks",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many ticks (default: run until SIGINT/SIGTERM).",
)
@click.option("--verbose", "-v", is_flag=True, help="Debug logging.")
def daemon_run(state_dir: Path | None, max_ticks: int | None, verbose: bool) -> None:
    """Run the scheduling loop in the foreground."""

    _emit_lines(
        DAEMON_CONTROLLER.run(
            DaemonRunCommand(state_dir=state_dir, max_ticks=max_ticks, verbose=verbose),
        ),
    )


@daemon.command("pause")
@_state_dir_option
@click.option("--reason", default="manual", show_default=True, help="Why spawning is paused.")
@click.option(
    "--minutes",
    type=click.IntRange(min=1),
    default=None,
    help="Auto-resume after this many minutes.",
)
def daemon_pause(state_dir: Path | None, reason: str, minutes: int | None) -> None:
    """Stop spawning new jobs; running jobs continue."""

    _emit_lines(
        DAEMON_CONTROLLER.pause(
            DaemonPauseCommand(state_dir=state_dir, reason=reason, minutes=minutes),
        ),
    )


@daemon.command("resume")
@_state_dir_option
def daemon_resume(state_dir: Path | None) -> None:
    """Clear the pause flag."""

    _emit_lines(DAEMON_CONTROLLER.resume(DaemonStateCommand(state_dir=state_dir)))


@daemon.command("reset")
@_state_dir_option
@click.confirmation_option(prompt="Drop all queued, active and historical state?")
def daemon_reset(state_dir: Path | None) -> None:
    """Reset the scheduler state to an empty document."""

    _emit_lines(DAEMON_CONTROLLER.reset(DaemonStateCommand(state_dir=state_dir)))


@daemon.command("cleanup")
@_state_dir_option
@click.option(
    "--age-days",
    type=click.IntRange(min=1),
    default=None,
    help="Prune history older than this (default `BUILD_FLEET_STALE_REAPER_AGE_DAYS`).",
)
def daemon_cleanup(state_dir: Path | None, age_days: int | None) -> None:
    """Prune stale history, retry counters and orphaned worktrees."""

    _emit_lines(
        DAEMON_CONTROLLER.cleanup(DaemonCleanupCommand(state_dir=state_dir, age_days=age_days)),
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    build_fleet()
