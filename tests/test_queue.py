from __future__ import annotations

from datetime import timedelta

import allure

from build_fleet.daemon import queue
from build_fleet.daemon.common import to_iso, utc_now
from build_fleet.daemon.models import Job, QueueEntry, SchedulerState
from build_fleet.daemon.state import InMemoryStateStore

pytestmark = [
    allure.epic("Dispatch Daemon"),
    allure.feature("Queue"),
]


def _queued(store: InMemoryStateStore) -> list[int]:
    return [entry.issue for entry in store.read().queued]


def test_enqueue_is_fifo_and_idempotent() -> None:
    store = InMemoryStateStore()

    assert queue.enqueue(store, 70) is True
    assert queue.enqueue(store, 71, title="Add login") is True
    assert queue.enqueue(store, 70) is False

    assert _queued(store) == [70, 71]
    assert store.read().titles == {71: "Add login"}
    assert [queue.dequeue_next(store).issue, queue.dequeue_next(store).issue] == [70, 71]
    assert queue.dequeue_next(store) is None


def test_enqueue_skips_active_issue() -> None:
    store = InMemoryStateStore.from_state(
        SchedulerState(active_jobs=[Job(issue=5, pid=55, worktree="/w5")]),
    )

    assert queue.enqueue(store, 5) is False
    assert _queued(store) == []


def test_priority_lane_is_served_first() -> None:
    store = InMemoryStateStore()
    queue.enqueue(store, 1)
    queue.enqueue(store, 2)
    queue.enqueue(store, 3, priority=True, lane_max=1)

    assert queue.dequeue_next(store).issue == 3
    assert queue.dequeue_next(store).issue == 1


def test_priority_lane_respects_max() -> None:
    store = InMemoryStateStore()
    queue.enqueue(store, 1, priority=True, lane_max=1)
    queue.enqueue(store, 2, priority=True, lane_max=1)

    assert store.read().priority_lane_active == [1]
    assert _queued(store) == [1, 2]


def test_promote_requires_inflight_issue_and_lane_room() -> None:
    store = InMemoryStateStore()
    queue.enqueue(store, 10)
    queue.enqueue(store, 11)

    assert queue.promote(store, 99, lane_max=2) is False
    assert queue.promote(store, 11, lane_max=1) is True
    assert queue.promote(store, 11, lane_max=1) is True
    assert queue.promote(store, 10, lane_max=1) is False
    assert queue.dequeue_next(store).issue == 11


def test_dequeue_skips_entries_inside_backoff_window() -> None:
    now = utc_now()
    store = InMemoryStateStore()
    queue.enqueue(store, 1, not_before=to_iso(now + timedelta(minutes=5)))
    queue.enqueue(store, 2)

    assert queue.dequeue_next(store, now=now).issue == 2
    assert queue.dequeue_next(store, now=now) is None
    assert _queued(store) == [1]
    assert queue.dequeue_next(store, now=now + timedelta(minutes=6)).issue == 1


def test_dequeue_drops_entries_already_active() -> None:
    store = InMemoryStateStore.from_state(
        SchedulerState(
            active_jobs=[Job(issue=1, pid=10, worktree="/w1")],
            queued=[QueueEntry(issue=1), QueueEntry(issue=2)],
        ),
    )

    assert queue.dequeue_next(store).issue == 2
    assert _queued(store) == []


def test_dequeue_on_empty_queue_does_not_write() -> None:
    store = InMemoryStateStore()

    assert queue.dequeue_next(store) is None
    assert store.write_count == 0


def test_requeue_front_restores_head_position() -> None:
    store = InMemoryStateStore()
    queue.enqueue(store, 1)
    queue.enqueue(store, 2)
    entry = queue.dequeue_next(store)

    assert queue.requeue_front(store, entry) is True
    assert queue.requeue_front(store, entry) is False
    assert _queued(store) == [1, 2]


def test_defer_moves_entry_behind_backlog_until_not_before() -> None:
    store = InMemoryStateStore()
    queue.enqueue(store, 70, repo="acme/widgets")
    queue.enqueue(store, 71)
    entry = queue.dequeue_next(store)
    later = to_iso(utc_now() + timedelta(minutes=5))

    assert queue.defer(store, entry, not_before=later) is True

    state = store.read()
    assert _queued(store) == [71, 70]
    assert state.queued[1].not_before == later
    assert state.queued[1].repo == "acme/widgets"
    assert queue.dequeue_next(store).issue == 71
    assert queue.dequeue_next(store) is None


def test_remove_drops_queue_entry_and_lane_membership() -> None:
    store = InMemoryStateStore()
    queue.enqueue(store, 1, priority=True, lane_max=1)

    assert queue.remove(store, 1) is True
    assert queue.remove(store, 1) is False
    state = store.read()
    assert state.queued == []
    assert state.priority_lane_active == []
