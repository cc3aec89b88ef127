"""Integration tests for the Redis backend against a live server.

Run with REDIS_URL pointing at a disposable Redis, e.g.::

    REDIS_URL=redis://localhost:6379 pytest -m integration
"""

import os
import threading
import time
import uuid

import pytest

from voice_jobs.errors import JobLockError
from voice_jobs.queue import (
    ConnectionManager,
    JobOptions,
    JobState,
    QueueJobCreate,
    RetentionPolicy,
    create_queue,
)
from voice_jobs.queue.models import utc_now

pytestmark = pytest.mark.integration

HOUR_MS = 3600 * 1000


@pytest.fixture
def connection():
    """A connection to REDIS_URL, skipping when it is not configured."""
    redis_url = os.environ.get("REDIS_URL")
    if not redis_url:
        pytest.skip("REDIS_URL not configured")

    manager = ConnectionManager(redis_url, max_connection_retries=2)
    if not manager.connect():
        manager.close()
        pytest.skip(f"Redis at {redis_url} is not reachable")
    yield manager
    manager.close()


@pytest.fixture
def key_prefix(connection):
    """A key prefix unique to the test; every key under it is removed afterwards."""
    prefix = f"voice-jobs-test:{uuid.uuid4().hex[:12]}:"
    yield prefix
    keys = list(connection.client.scan_iter(match=f"{prefix}*"))
    if keys:
        connection.client.delete(*keys)


@pytest.fixture
def make_queue(connection, key_prefix):
    queues = []

    def build(**options):
        queue = create_queue(
            "calls",
            "redis",
            connection=connection,
            store_name="voice-calls",
            key_prefix=key_prefix,
            job_options=JobOptions(**options),
        )
        queues.append(queue)
        return queue

    yield build
    for queue in queues:
        queue.close()


def enqueue(queue, job_id, priority=5):
    return queue.enqueue(QueueJobCreate(id=job_id, job_type="transcribe", payload={"callSid": job_id}, priority=priority))


def set_score(queue, state, job_id, score_ms):
    """Move a job's position in a state set, as if it happened at ``score_ms``."""
    queue.config.connection.client.zadd(queue._state_keys[state], {job_id: score_ms})


def now_ms():
    return int(utc_now().timestamp() * 1000)


class TestRedisQueueIntegration:
    """RedisQueue against a live server."""

    def test_enqueue_and_claim_in_priority_order(self, make_queue):
        queue = make_queue()
        enqueue(queue, "low", priority=1)
        enqueue(queue, "high", priority=9)
        enqueue(queue, "normal", priority=5)

        with pytest.raises(ValueError, match="already exists"):
            enqueue(queue, "normal")

        assert [queue.claim("worker-1").id for _ in range(3)] == ["high", "normal", "low"]
        assert queue.claim("worker-1") is None
        assert queue.get_counts().active == 3

    def test_claim_is_exclusive(self, make_queue):
        queue = make_queue()
        for index in range(50):
            enqueue(queue, f"job-{index}")

        claimed = []
        lock = threading.Lock()

        def drain(worker_id):
            while True:
                job = queue.claim(worker_id)
                if job is None:
                    return
                with lock:
                    claimed.append((job.id, worker_id))

        threads = [threading.Thread(target=drain, args=(f"worker-{index}",)) for index in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(30)

        job_ids = [job_id for job_id, _ in claimed]
        assert len(job_ids) == 50
        assert len(set(job_ids)) == 50
        for job_id, worker_id in claimed:
            assert queue.get_job(job_id).locked_by == worker_id

    def test_update_progress_and_complete(self, make_queue):
        queue = make_queue()
        enqueue(queue, "job-1")
        queue.claim("worker-1")

        assert queue.update_progress("job-1", 40).progress == 40
        assert queue.get_job("job-1").progress == 40
        assert queue.update_progress("missing", 10) is None

        job = queue.complete("job-1", {"transcript": "hello"}, worker_id="worker-1")

        assert job.state == JobState.COMPLETED
        stored = queue.get_job("job-1")
        assert stored.state == JobState.COMPLETED
        assert stored.return_value == {"transcript": "hello"}
        assert stored.finished_at is not None
        assert stored.locked_by is None
        counts = queue.get_counts()
        assert counts.active == 0
        assert counts.completed == 1

    def test_retry_delays_and_promotion(self, make_queue):
        queue = make_queue(max_attempts=4)
        enqueue(queue, "job-1")

        delays = []
        for _ in range(3):
            assert queue.claim("worker-1").id == "job-1"
            info = queue.fail("job-1", "provider timeout", "TimeoutError", worker_id="worker-1")
            assert info.will_retry is True
            delays.append(info.delay_ms)

            # Not claimable until the backoff has elapsed
            assert queue.claim("worker-1") is None
            assert queue.get_job("job-1").state == JobState.DELAYED
            score = queue.config.connection.client.zscore(queue._state_keys[JobState.DELAYED], "job-1")
            assert int(score) == int(info.next_attempt_at.timestamp() * 1000)

            set_score(queue, JobState.DELAYED, "job-1", now_ms() - 1)
            assert queue.promote_delayed() == 1

        assert delays == [1000, 2000, 4000]

        assert queue.claim("worker-1").attempts_made == 3
        info = queue.fail("job-1", "provider timeout", worker_id="worker-1")
        assert info.will_retry is False
        assert queue.get_job("job-1").state == JobState.FAILED
        assert queue.claim("worker-1") is None

    def test_delayed_job_promoted_when_due(self, make_queue):
        queue = make_queue()
        enqueue(queue, "job-1")
        queue.claim("worker-1")
        queue.fail("job-1", "boom", worker_id="worker-1")

        assert queue.claim("worker-2") is None
        time.sleep(1.2)

        job = queue.claim("worker-2")
        assert job.id == "job-1"
        assert job.attempts_made == 1
        assert job.delay_until is None

    def test_finish_requires_lock_holder(self, make_queue):
        queue = make_queue()
        enqueue(queue, "job-1")
        queue.claim("worker-1")

        set_score(queue, JobState.ACTIVE, "job-1", now_ms() - 600 * 1000)
        assert queue.requeue_stale_jobs(stale_threshold_seconds=300) == 1
        assert queue.claim("worker-2").id == "job-1"

        with pytest.raises(JobLockError):
            queue.complete("job-1", "late", worker_id="worker-1")
        with pytest.raises(JobLockError):
            queue.fail("job-1", "late", worker_id="worker-1")

        job = queue.get_job("job-1")
        assert job.state == JobState.ACTIVE
        assert job.locked_by == "worker-2"
        assert job.attempts_made == 0

    def test_extend_locks_prevents_stale_requeue(self, make_queue):
        queue = make_queue()
        enqueue(queue, "job-1")
        enqueue(queue, "job-2")
        queue.claim("worker-1")
        queue.claim("worker-2")
        old = now_ms() - 600 * 1000
        set_score(queue, JobState.ACTIVE, "job-1", old)
        set_score(queue, JobState.ACTIVE, "job-2", old)

        assert queue.extend_locks(["job-1", "job-2"], "worker-1") == 1
        assert queue.requeue_stale_jobs(stale_threshold_seconds=300) == 1

        assert queue.get_job("job-1").state == JobState.ACTIVE
        requeued = queue.get_job("job-2")
        assert requeued.state == JobState.WAITING
        assert requeued.locked_by is None

    def test_completed_pruned_after_max_age(self, make_queue):
        queue = make_queue()
        for job_id in ("old", "recent"):
            enqueue(queue, job_id)
            queue.claim("worker-1")
            queue.complete(job_id, worker_id="worker-1")

        set_score(queue, JobState.COMPLETED, "old", now_ms() - 25 * HOUR_MS)
        set_score(queue, JobState.COMPLETED, "recent", now_ms() - 23 * HOUR_MS)

        assert queue.prune() == 1
        assert queue.get_job("old") is None
        assert queue.get_job("recent").state == JobState.COMPLETED

    def test_completed_capped_to_newest(self, make_queue):
        queue = make_queue()
        base = now_ms()
        for index in range(5):
            enqueue(queue, f"job-{index}")
            queue.claim("worker-1")
            queue.complete(f"job-{index}", worker_id="worker-1")
            set_score(queue, JobState.COMPLETED, f"job-{index}", base + index * 1000)

        queue.config.job_options = JobOptions(retention=RetentionPolicy(completed_max_count=3))
        assert queue.prune() == 2

        assert queue.get_counts().completed == 3
        remaining = {job.id for job in queue.list_jobs(state=JobState.COMPLETED)}
        assert remaining == {"job-2", "job-3", "job-4"}
        assert queue.get_job("job-0") is None

    def test_failed_pruned_after_max_age(self, make_queue):
        queue = make_queue(max_attempts=1)
        for job_id in ("old", "recent"):
            enqueue(queue, job_id)
            queue.claim("worker-1")
            assert queue.fail(job_id, "boom", worker_id="worker-1").will_retry is False

        set_score(queue, JobState.FAILED, "old", now_ms() - 49 * HOUR_MS)
        set_score(queue, JobState.FAILED, "recent", now_ms() - 47 * HOUR_MS)

        assert queue.prune() == 1
        assert queue.get_job("old") is None
        assert [job.id for job in queue.list_jobs(state=JobState.FAILED)] == ["recent"]

    def test_failed_jobs_not_requeued(self, make_queue):
        queue = make_queue(max_attempts=1)
        enqueue(queue, "job-1")
        queue.claim("worker-1")
        queue.fail("job-1", "boom", worker_id="worker-1")

        set_score(queue, JobState.FAILED, "job-1", now_ms() - HOUR_MS)
        queue.promote_delayed()
        queue.requeue_stale_jobs(stale_threshold_seconds=0)

        assert queue.claim("worker-2") is None
        assert queue.get_counts().failed == 1
