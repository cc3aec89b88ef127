"""Tests for ordered, idempotent QueueManager shutdown."""

import threading
import time
from unittest.mock import MagicMock

import pytest

from voice_jobs import LifecycleState, QueueManager, ShutdownError


def recorded(calls, label, close, delay=0.0):
    """Wrap a close function so each call is appended to ``calls``."""

    def wrapper():
        calls.append(label)
        if delay:
            time.sleep(delay)
        return close()

    return wrapper


@pytest.fixture
def connection():
    return MagicMock(name="connection")


@pytest.fixture
def manager(connection):
    """A memory-backed manager sharing a mocked connection, with two workers."""
    queue_manager = QueueManager(backend_type="memory", connection=connection, poll_interval_seconds=0.01)
    queue_manager.setup_workers(call_processor=lambda job: None, analytics_processor=lambda job: None)
    yield queue_manager
    queue_manager.shutdown()


def instrument(manager, connection, calls, worker_delay=0.0):
    for name, worker in manager.workers.items():
        worker.close = recorded(calls, f"worker:{name.value}", worker.close, delay=worker_delay)
    for name, queue in manager.registry.items():
        queue.close = recorded(calls, f"queue:{name.value}", queue.close)
    manager.metrics.close = recorded(calls, "metrics", manager.metrics.close)
    connection.close.side_effect = lambda: calls.append("connection")


class TestShutdown:
    """Tests for QueueManager.shutdown."""

    def test_order(self, manager, connection):
        calls = []
        instrument(manager, connection, calls)

        manager.shutdown()

        assert calls == [
            "worker:calls",
            "worker:analytics",
            "queue:calls",
            "queue:analytics",
            "queue:integrations",
            "metrics",
            "connection",
        ]
        assert all(not worker.running for worker in manager.workers.values())

    def test_lifecycle_states(self, manager, connection):
        observed = []
        original = manager.metrics.close

        def observe():
            observed.append(manager.lifecycle_state)
            return original()

        manager.metrics.close = observe

        assert manager.lifecycle_state == LifecycleState.RUNNING
        manager.shutdown()

        assert LifecycleState.DRAINING in observed
        assert manager.lifecycle_state == LifecycleState.CLOSED

    def test_idempotent(self, manager, connection):
        manager.shutdown()
        manager.shutdown()

        connection.close.assert_called_once()
        assert manager.lifecycle_state == LifecycleState.CLOSED

    def test_concurrent_calls_close_once(self, manager, connection):
        calls = []
        instrument(manager, connection, calls, worker_delay=0.1)
        errors = []

        def run():
            try:
                manager.shutdown()
            except Exception as e:  # pragma: no cover - reported below
                errors.append(e)

        threads = [threading.Thread(target=run) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(5)

        assert errors == []
        assert all(not thread.is_alive() for thread in threads)
        assert calls.count("connection") == 1
        assert calls.count("worker:calls") == 1
        assert calls.count("metrics") == 1
        assert manager.lifecycle_state == LifecycleState.CLOSED

    def test_second_caller_waits_for_completion(self, manager, connection):
        calls = []
        instrument(manager, connection, calls, worker_delay=0.2)
        first = threading.Thread(target=manager.shutdown)
        first.start()

        deadline = time.monotonic() + 5
        while manager.lifecycle_state == LifecycleState.RUNNING and time.monotonic() < deadline:
            time.sleep(0.005)
        manager.shutdown()

        assert "connection" in calls
        assert manager.lifecycle_state == LifecycleState.CLOSED
        first.join(5)

    def test_failures_aggregated(self, manager, connection):
        def broken():
            raise RuntimeError("queue close failed")

        manager.registry.get("calls").close = broken
        connection.close.side_effect = ConnectionError("socket already gone")

        with pytest.raises(ShutdownError) as excinfo:
            manager.shutdown()

        steps = [step for step, _ in excinfo.value.failures]
        assert steps == ["close calls queue", "close connection"]
        assert "queue close failed" in str(excinfo.value)
        # Later steps still ran
        assert manager.registry.get("analytics").health_check() is False
        assert manager.metrics.closed is True
        assert manager.lifecycle_state == LifecycleState.CLOSED

    def test_shutdown_after_failure_returns(self, manager, connection):
        connection.close.side_effect = ConnectionError("socket already gone")
        with pytest.raises(ShutdownError):
            manager.shutdown()

        manager.shutdown()
        assert connection.close.call_count == 1

    def test_in_flight_job_finishes(self, connection):
        started = threading.Event()
        finished = []

        def slow(job):
            started.set()
            time.sleep(0.2)
            finished.append(job.id)

        manager = QueueManager(backend_type="memory", connection=connection, poll_interval_seconds=0.01)
        manager.setup_workers(call_processor=slow)
        result = manager.add_call_to_queue("CA123", "transcribe", {"audioUrl": "https://x/a.mp3"})

        assert started.wait(5)
        manager.shutdown()

        assert finished == [result["data"]["jobId"]]
        assert manager.metrics.snapshot()["totalJobsCompleted"] == 1

    def test_shutdown_without_workers(self, connection):
        manager = QueueManager(backend_type="memory", connection=connection)
        manager.shutdown()

        connection.close.assert_called_once()
        assert manager.workers == {}
