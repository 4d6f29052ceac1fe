from __future__ import annotations

from pathlib import Path

import allure

from build_fleet.daemon import queue
from build_fleet.daemon.models import FailureClass, JobResult, NotifyEvent

pytestmark = [
    allure.epic("Dispatch Daemon"),
    allure.feature("Reaper"),
]


def _spawn_and_finish(harness, issue: int, log_text: str, exit_code: int | None) -> int:
    result = harness.dispatcher.spawn(issue, f"Issue {issue}")
    assert result.job is not None
    harness.write_log(issue, log_text)
    harness.liveness.kill(result.job.pid, exit_code)
    return result.job.pid


def test_live_jobs_are_left_alone(harness) -> None:
    harness.dispatcher.spawn(1)

    summary = harness.reaper.reap()

    assert (summary.checked, summary.alive) == (1, 1)
    assert harness.store.active_count() == 1


def test_success_records_exactly_one_completion(harness) -> None:
    _spawn_and_finish(harness, 42, "all green\nBUILD_FLEET_RESULT status=success\n", 0)
    worktree = harness.settings.effective_worktrees_dir / "daemon-issue-42"
    assert worktree.exists()

    summary = harness.reaper.reap()
    harness.reaper.reap()

    assert summary.succeeded == 1
    state = harness.store.read()
    assert state.active_jobs == []
    assert [(r.issue, r.result) for r in state.completed] == [(42, JobResult.SUCCESS)]
    assert state.completed[0].exit_code == 0
    assert not worktree.exists()
    assert NotifyEvent.COMPLETED in harness.notifier.events_for(42)
    assert harness.events("daemon.reap")[0]["result"] == "success"


def test_success_clears_retry_count_and_priority_lane(make_harness) -> None:
    harness = make_harness(
        document={"retry_counts": {"42": 1}, "priority_lane_active": [42]},
    )
    _spawn_and_finish(harness, 42, "BUILD_FLEET_RESULT status=success", 0)

    harness.reaper.reap()

    state = harness.store.read()
    assert state.retry_counts == {}
    assert state.priority_lane_active == []


def test_retryable_failure_is_requeued_with_backoff(harness) -> None:
    _spawn_and_finish(harness, 7, "FAILED tests/test_api.py::test_login\n3 tests failed", 1)

    summary = harness.reaper.reap()

    assert (summary.failed, summary.retried, summary.terminal) == (1, 1, 0)
    state = harness.store.read()
    assert state.active_jobs == []
    assert state.retry_counts == {7: 1}
    assert [entry.issue for entry in state.queued] == [7]
    assert state.queued[0].not_before is not None
    assert state.failure_history[-1].failure_class is FailureClass.BUILD_FAILURE
    assert state.failure_history[-1].terminal is False
    assert state.completed[-1].result is JobResult.FAILED
    retry_event = harness.events("daemon.retry")[0]
    assert retry_event["retry"] == 1
    assert retry_event["max_retries"] == 2
    assert retry_event["backoff_s"] == 30
    assert NotifyEvent.FAILED not in harness.notifier.events_for(7)
    # still inside its backoff window, so backfill must not relaunch it
    assert harness.launcher.launched_issues == [7]


def test_auth_error_is_terminal_without_retry(harness) -> None:
    _spawn_and_finish(harness, 8, "Error: not logged in. Run `agent login`.", 1)

    summary = harness.reaper.reap()

    assert (summary.failed, summary.retried, summary.terminal) == (1, 0, 1)
    state = harness.store.read()
    assert state.queued == []
    assert 8 not in state.retry_counts
    assert state.failure_history[-1].failure_class is FailureClass.AUTH_ERROR
    assert state.failure_history[-1].terminal is True
    classified = harness.events("daemon.failure_classified")[0]
    assert classified["class"] == "auth_error"
    assert harness.events("daemon.retry_exhausted")[0]["retries"] == 0
    assert harness.notifier.events_for(8)[-1] is NotifyEvent.FAILED


def test_retries_are_exhausted_after_ceiling(make_harness) -> None:
    harness = make_harness(document={"retry_counts": {"9": 2}})
    _spawn_and_finish(harness, 9, "build error: compile error in main.rs", 2)

    summary = harness.reaper.reap()

    assert summary.terminal == 1
    state = harness.store.read()
    assert state.queued == []
    assert state.retry_counts == {}
    assert harness.events("daemon.retry_exhausted")[0]["retries"] == 2


def test_declared_class_from_trailer_drives_retry_policy(harness) -> None:
    _spawn_and_finish(harness, 4, "BUILD_FLEET_RESULT status=failure class=api_error", 1)

    harness.reaper.reap()

    retry_event = harness.events("daemon.retry")[0]
    assert retry_event["failure_class"] == "api_error"
    assert retry_event["max_retries"] == 4
    assert retry_event["backoff_s"] == 300


def test_progress_file_marks_context_exhaustion(harness) -> None:
    result = harness.dispatcher.spawn(5)
    assert result.job is not None
    progress = Path(result.job.worktree) / ".claude" / "loop-logs" / "progress.md"
    progress.parent.mkdir(parents=True)
    progress.write_text("Iteration: 6\nTests passing: false\n", encoding="utf-8")
    harness.write_log(5, "agent stopped: tests fail")
    harness.liveness.kill(result.job.pid, 1)

    harness.reaper.reap()

    assert harness.store.read().failure_history[-1].failure_class is (
        FailureClass.CONTEXT_EXHAUSTION
    )


def test_reap_with_no_jobs_performs_no_writes(harness) -> None:
    summary = harness.reaper.reap()

    assert summary.checked == 0
    assert harness.store.write_count == 0


def test_malformed_entries_are_skipped_and_valid_job_is_reaped(make_harness) -> None:
    harness = make_harness(
        document={
            "active_jobs": [
                {"issue": "not-a-number", "pid": 1},
                {"issue": 8, "pid": 800, "worktree": ""},
            ],
        },
    )
    harness.write_log(8, "BUILD_FLEET_RESULT status=success")
    harness.liveness.kill(800, 0)

    summary = harness.reaper.reap()

    assert (summary.checked, summary.succeeded, summary.errors) == (1, 1, 0)
    document = harness.store.document
    assert document is not None
    assert document["active_jobs"] == []


def test_freed_slot_is_backfilled_from_queue(make_harness) -> None:
    harness = make_harness(max_parallel=1)
    _spawn_and_finish(harness, 1, "BUILD_FLEET_RESULT status=success", 0)
    queue.enqueue(harness.store, 2)

    summary = harness.reaper.reap()

    assert summary.backfilled == 1
    assert [job.issue for job in harness.store.read().active_jobs] == [2]


def test_job_already_reaped_elsewhere_is_ignored(harness) -> None:
    pid = _spawn_and_finish(harness, 3, "BUILD_FLEET_RESULT status=success", 0)
    stale_snapshot_job = harness.store.read().active_jobs[0]
    harness.store.update(lambda state: state.remove_job(3, pid))

    summary = harness.reaper.reap()

    assert summary.checked == 0
    harness.reaper._reconcile(stale_snapshot_job, summary)
    assert summary.succeeded == 0
    assert harness.store.read().completed == []


def test_consecutive_failures_trigger_auto_pause(make_harness) -> None:
    harness = make_harness(max_parallel=3)
    for issue in (1, 2, 3):
        _spawn_and_finish(harness, issue, "HTTP 401 Unauthorized", 1)

    harness.reaper.reap()

    pause = harness.daemon.pause_flag.read()
    assert pause is not None
    assert pause.reason == "consecutive_auth_error"
    assert pause.consecutive_count == 3
    assert pause.resume_after is not None
    auto_pause = harness.events("daemon.auto_pause")
    assert [event["count"] for event in auto_pause] == [3]


def test_one_broken_job_does_not_block_the_others(harness, monkeypatch) -> None:
    _spawn_and_finish(harness, 1, "BUILD_FLEET_RESULT status=success", 0)
    _spawn_and_finish(harness, 2, "BUILD_FLEET_RESULT status=success", 0)
    original_probe = harness.liveness.probe

    def _probe(pid: int):
        if pid == 4000:
            raise RuntimeError("procfs hiccup")
        return original_probe(pid)

    monkeypatch.setattr(harness.liveness, "probe", _probe)

    summary = harness.reaper.reap()

    assert (summary.errors, summary.succeeded) == (1, 1)
    assert [job.issue for job in harness.store.read().active_jobs] == [1]
