import threading

import pytest

from ledgerstore.persistence.side_effects import SideEffectQueue


@pytest.fixture()
def queue_events():
    return {
        "release": threading.Event(),
        "started": threading.Event(),
        "done": threading.Event(),
    }


def _make_counters():
    lock = threading.Lock()
    counts = {"checkpoint": 0, "emergency_backup": 0}

    def record(name):
        with lock:
            counts[name] += 1

    return counts, record


def test_queue_runs_requested_tasks():
    counts, record = _make_counters()
    queue = SideEffectQueue(
        tasks={
            "checkpoint": lambda: record("checkpoint"),
            "emergency_backup": lambda: record("emergency_backup"),
        }
    )
    try:
        assert queue.enqueue("emergency_backup")
        assert queue.enqueue("checkpoint")
        assert queue.drain(timeout=2)
    finally:
        queue.shutdown()

    assert counts == {"checkpoint": 1, "emergency_backup": 1}


def test_queue_coalesces_pending_duplicates(queue_events):
    counts, record = _make_counters()

    def blocking():
        queue_events["started"].set()
        queue_events["release"].wait(2)
        record("emergency_backup")

    queue = SideEffectQueue(
        tasks={"checkpoint": lambda: record("checkpoint"), "emergency_backup": blocking}
    )
    try:
        queue.enqueue("emergency_backup")
        assert queue_events["started"].wait(2), "Worker never picked up the first task"
        for _ in range(5):
            queue.enqueue("checkpoint")
        queue_events["release"].set()
        assert queue.drain(timeout=2)
    finally:
        queue.shutdown()

    assert counts["checkpoint"] == 1
    assert counts["emergency_backup"] == 1


def test_failures_are_recorded_not_raised(queue_events):
    def broken():
        raise OSError("disk full")

    queue = SideEffectQueue(
        tasks={"checkpoint": broken},
        on_done_getter=lambda: queue_events["done"].set,
        max_failures=2,
    )
    try:
        for _ in range(3):
            queue.enqueue("checkpoint")
            assert queue.drain(timeout=2)
        assert queue_events["done"].wait(1)
    finally:
        queue.shutdown()

    failures = queue.failures()
    assert len(failures) == 2
    assert failures[-1].task == "checkpoint"
    assert "disk full" in failures[-1].error


def test_unknown_task_and_closed_queue_are_rejected():
    counts, record = _make_counters()
    queue = SideEffectQueue(tasks={"checkpoint": lambda: record("checkpoint")})

    assert not queue.enqueue("vacuum")

    queue.shutdown()
    assert not queue.enqueue("checkpoint")
    assert counts["checkpoint"] == 0
