"""Redis queue backend implementation.

Provides a durable, distributed job queue using Redis.
Uses one sorted set per job state and Lua scripts for the transitions
that must be atomic (enqueue-if-absent, claim, promote, owner-checked
finish, lock extension and stale requeue).

Requires: redis
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import redis

from ..errors import JobLockError
from .base import QueueBackend, QueueConfig
from .models import (
    FailedJobInfo,
    JobState,
    QueueCounts,
    QueueJob,
    QueueJobCreate,
    next_attempt_time,
    utc_now,
)

logger = logging.getLogger(__name__)

# Highest priority accepted by the queue; used to invert priorities into scores
MAX_PRIORITY = 10

ENQUEUE_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
  return 0
end
redis.call('HSET', KEYS[1], unpack(ARGV, 3))
redis.call('ZADD', KEYS[2], ARGV[1], ARGV[2])
return 1
"""

CLAIM_SCRIPT = """
local ids = redis.call('ZRANGE', KEYS[1], 0, 0)
if #ids == 0 then
  return false
end
local id = ids[1]
redis.call('ZREM', KEYS[1], id)
redis.call('ZADD', KEYS[2], ARGV[1], id)
redis.call('HSET', ARGV[3] .. id, 'state', 'active', 'processed_at', ARGV[2],
  'locked_by', ARGV[4], 'progress', '0')
return id
"""

PROMOTE_SCRIPT = """
local ids = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1])
local promoted = 0
for _, id in ipairs(ids) do
  redis.call('ZREM', KEYS[1], id)
  local key = ARGV[2] .. id
  local score = redis.call('HGET', key, 'score')
  if score then
    redis.call('ZADD', KEYS[2], score, id)
    redis.call('HSET', key, 'state', 'waiting', 'delay_until', '')
    promoted = promoted + 1
  end
end
return promoted
"""

# Moves an active job to the completed, delayed or failed set.
# ARGV[1] is the worker that must hold the lock ('' skips the check).
FINISH_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 0 then
  return -1
end
if ARGV[1] ~= '' then
  if redis.call('HGET', KEYS[1], 'state') ~= 'active'
      or redis.call('HGET', KEYS[1], 'locked_by') ~= ARGV[1] then
    return 0
  end
end
redis.call('HSET', KEYS[1], unpack(ARGV, 4))
redis.call('ZREM', KEYS[2], ARGV[3])
redis.call('ZADD', KEYS[3], ARGV[2], ARGV[3])
return 1
"""

EXTEND_LOCKS_SCRIPT = """
local extended = 0
for i = 5, #ARGV do
  local id = ARGV[i]
  local key = ARGV[3] .. id
  if redis.call('HGET', key, 'locked_by') == ARGV[4] and redis.call('ZSCORE', KEYS[1], id) then
    redis.call('ZADD', KEYS[1], ARGV[1], id)
    redis.call('HSET', key, 'processed_at', ARGV[2])
    extended = extended + 1
  end
end
return extended
"""

REQUEUE_STALE_SCRIPT = """
local ids = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1])
local requeued = 0
for _, id in ipairs(ids) do
  redis.call('ZREM', KEYS[1], id)
  local key = ARGV[2] .. id
  local score = redis.call('HGET', key, 'score')
  if score then
    redis.call('ZADD', KEYS[2], score, id)
    redis.call('HSET', key, 'state', 'waiting', 'locked_by', '', 'processed_at', '')
    requeued = requeued + 1
  end
end
return requeued
"""


def _to_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def _iso(value: Optional[datetime]) -> str:
    return value.isoformat() if value else ""


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class RedisQueue(QueueBackend):
    """Redis-based queue backend.

    Key layout under ``{key_prefix}{store_name}``:

    - ``:job:{id}`` hash with the job fields
    - ``:waiting`` sorted by priority then creation time
    - ``:delayed`` sorted by the time the backoff elapses
    - ``:active`` sorted by claim time
    - ``:completed`` / ``:failed`` sorted by finish time
    """

    def __init__(self, config: QueueConfig):
        """Initialize Redis queue.

        Args:
            config: Queue configuration with a connection manager.

        Raises:
            ValueError: If no connection manager is provided.
        """
        if config.connection is None:
            raise ValueError("connection is required for Redis queue")

        self.config = config
        self._initialized = False
        self._closed = False

        self._base = f"{config.key_prefix}{config.store_name}"
        self._job_key = f"{self._base}:job:"
        self._state_keys = {state: f"{self._base}:{state.value}" for state in JobState}

        self._enqueue_script: Optional[Any] = None
        self._claim_script: Optional[Any] = None
        self._promote_script: Optional[Any] = None
        self._finish_script: Optional[Any] = None
        self._extend_locks_script: Optional[Any] = None
        self._requeue_stale_script: Optional[Any] = None

    def _get_client(self) -> redis.Redis:
        """Get the shared Redis client."""
        if self._closed:
            raise redis.ConnectionError(f"Queue '{self.name}' is closed")
        return self.config.connection.client

    def _key(self, job_id: str) -> str:
        return f"{self._job_key}{job_id}"

    def initialize(self) -> None:
        """Register the Lua scripts.

        No command is sent to the server here; scripts are loaded on first use.
        """
        if self._initialized:
            return

        client = self._get_client()
        self._enqueue_script = client.register_script(ENQUEUE_SCRIPT)
        self._claim_script = client.register_script(CLAIM_SCRIPT)
        self._promote_script = client.register_script(PROMOTE_SCRIPT)
        self._finish_script = client.register_script(FINISH_SCRIPT)
        self._extend_locks_script = client.register_script(EXTEND_LOCKS_SCRIPT)
        self._requeue_stale_script = client.register_script(REQUEUE_STALE_SCRIPT)

        self._initialized = True
        logger.info(f"Redis queue '{self.name}' initialized at {self._base}")

    def close(self) -> None:
        """Close the queue handle. The shared connection stays open."""
        self._closed = True

    # === Serialization ===

    def _get_score(self, priority: int, created_at: datetime) -> int:
        """Calculate score for waiting set ordering.

        Higher priority = lower score (claimed first).
        For same priority, earlier created = lower score (FIFO).
        """
        return (MAX_PRIORITY - priority) * 10**13 + _to_ms(created_at)

    def _job_to_dict(self, job: QueueJob) -> Dict[str, Any]:
        """Convert a QueueJob to a dict for storage."""
        return {
            "id": job.id,
            "queue_name": job.queue_name,
            "job_type": job.job_type,
            "payload": json.dumps(job.payload),
            "state": job.state.value,
            "priority": job.priority,
            "score": self._get_score(job.priority, job.created_at),
            "max_attempts": job.max_attempts,
            "attempts_made": job.attempts_made,
            "progress": job.progress,
            "last_error": job.last_error or "",
            "return_value": json.dumps(job.return_value) if job.return_value is not None else "",
            "created_at": _iso(job.created_at),
            "processed_at": _iso(job.processed_at),
            "finished_at": _iso(job.finished_at),
            "delay_until": _iso(job.delay_until),
            "locked_by": job.locked_by or "",
        }

    def _dict_to_job(self, data: Dict[str, Any]) -> QueueJob:
        """Convert a stored dict back to a QueueJob."""
        return QueueJob(
            id=data["id"],
            queue_name=data["queue_name"],
            job_type=data["job_type"],
            payload=json.loads(data["payload"]) if data.get("payload") else {},
            state=JobState(data["state"]),
            priority=int(data["priority"]),
            max_attempts=int(data["max_attempts"]),
            attempts_made=int(data.get("attempts_made") or 0),
            progress=int(data.get("progress") or 0),
            last_error=data.get("last_error") or None,
            return_value=json.loads(data["return_value"]) if data.get("return_value") else None,
            created_at=datetime.fromisoformat(data["created_at"]),
            processed_at=_parse_dt(data.get("processed_at")),
            finished_at=_parse_dt(data.get("finished_at")),
            delay_until=_parse_dt(data.get("delay_until")),
            locked_by=data.get("locked_by") or None,
        )

    # === Enqueue Operations ===

    def enqueue(self, job_create: QueueJobCreate) -> QueueJob:
        """Add a job to the queue."""
        self.initialize()

        job = QueueJob(
            id=job_create.id,
            queue_name=self.name,
            job_type=job_create.job_type,
            payload=job_create.payload,
            state=JobState.WAITING,
            priority=job_create.priority,
            max_attempts=self.config.job_options.max_attempts,
            created_at=utc_now(),
        )

        fields: List[Any] = []
        for name, value in self._job_to_dict(job).items():
            fields.extend([name, value])

        added = self._enqueue_script(
            keys=[self._key(job.id), self._state_keys[JobState.WAITING]],
            args=[self._get_score(job.priority, job.created_at), job.id, *fields],
        )
        if not added:
            raise ValueError(f"Job '{job.id}' already exists in queue '{self.name}'")

        logger.debug(f"Enqueued job {job.id} ({job.job_type}) in {self.name}")
        return job

    # === Claim Operations ===

    def claim(self, worker_id: Optional[str] = None) -> Optional[QueueJob]:
        """Atomically move the best waiting job to active."""
        self.initialize()
        self.promote_delayed()

        now = utc_now()
        job_id = self._claim_script(
            keys=[self._state_keys[JobState.WAITING], self._state_keys[JobState.ACTIVE]],
            args=[_to_ms(now), _iso(now), self._job_key, worker_id or ""],
        )
        if not job_id:
            return None

        job = self.get_job(job_id)
        if job is None:
            # Deleted between claim and read
            self._get_client().zrem(self._state_keys[JobState.ACTIVE], job_id)
            return None

        logger.debug(f"Claimed job {job_id} for worker {worker_id}")
        return job

    # === Job State Management ===

    def _finish(self, job: QueueJob, target: JobState, score: int, worker_id: Optional[str]) -> bool:
        """Move a job to ``target`` after checking who holds it.

        Returns:
            False if the job no longer exists.
        """
        fields: List[Any] = []
        for name, value in self._job_to_dict(job).items():
            fields.extend([name, value])

        result = int(
            self._finish_script(
                keys=[self._key(job.id), self._state_keys[JobState.ACTIVE], self._state_keys[target]],
                args=[worker_id or "", score, job.id, *fields],
            )
        )
        if result == 0:
            raise JobLockError(f"Job {job.id} in '{self.name}' is no longer locked by worker {worker_id}")
        return result > 0

    def complete(
        self,
        job_id: str,
        return_value: Optional[Any] = None,
        worker_id: Optional[str] = None,
    ) -> Optional[QueueJob]:
        """Mark a job as completed."""
        self.initialize()
        job = self.get_job(job_id)
        if job is None:
            return None

        now = utc_now()
        job.state = JobState.COMPLETED
        job.return_value = return_value
        job.finished_at = now
        job.locked_by = None
        job.last_error = None

        if not self._finish(job, JobState.COMPLETED, _to_ms(now), worker_id):
            return None

        logger.debug(f"Completed job {job_id}")
        self._prune_completed()
        return job

    def fail(
        self,
        job_id: str,
        error_message: str,
        error_type: Optional[str] = None,
        worker_id: Optional[str] = None,
    ) -> Optional[FailedJobInfo]:
        """Record a failed attempt."""
        self.initialize()
        job = self.get_job(job_id)
        if job is None:
            return None

        now = utc_now()
        job.attempts_made += 1
        job.last_error = error_message
        job.locked_by = None

        will_retry = job.attempts_made < job.max_attempts
        delay_ms = None
        next_attempt_at = None

        if will_retry:
            delay_ms = self.config.job_options.backoff.get_delay_ms(job.attempts_made)
            next_attempt_at = next_attempt_time(now, delay_ms)
            job.state = JobState.DELAYED
            job.delay_until = next_attempt_at
            if not self._finish(job, JobState.DELAYED, _to_ms(next_attempt_at), worker_id):
                return None
            logger.debug(f"Job {job_id} will retry at {next_attempt_at}")
        else:
            job.state = JobState.FAILED
            job.finished_at = now
            if not self._finish(job, JobState.FAILED, _to_ms(now), worker_id):
                return None
            logger.debug(f"Job {job_id} exhausted {job.max_attempts} attempts, marked as failed")
            self._prune_failed()

        return FailedJobInfo(
            job_id=job_id,
            attempt=job.attempts_made,
            error_message=error_message,
            error_type=error_type,
            failed_at=now,
            will_retry=will_retry,
            next_attempt_at=next_attempt_at,
            delay_ms=delay_ms,
        )

    def extend_locks(self, job_ids: Iterable[str], worker_id: str) -> int:
        """Refresh the lock time of active jobs held by a worker."""
        ids = list(job_ids)
        if not ids:
            return 0
        self.initialize()
        now = utc_now()
        extended = self._extend_locks_script(
            keys=[self._state_keys[JobState.ACTIVE]],
            args=[_to_ms(now), _iso(now), self._job_key, worker_id, *ids],
        )
        return int(extended or 0)

    def update_progress(self, job_id: str, progress: int) -> Optional[QueueJob]:
        """Store the reported progress of a job."""
        client = self._get_client()
        if not client.exists(self._key(job_id)):
            return None
        client.hset(self._key(job_id), "progress", progress)
        return self.get_job(job_id)

    # === Job Lookup ===

    def get_job(self, job_id: str) -> Optional[QueueJob]:
        """Get a job by ID."""
        job_data = self._get_client().hgetall(self._key(job_id))
        if job_data:
            return self._dict_to_job(job_data)
        return None

    def list_jobs(
        self,
        state: Optional[JobState] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[QueueJob]:
        """List jobs with an optional state filter."""
        client = self._get_client()
        states = [state] if state is not None else list(JobState)

        job_ids: List[str] = []
        for current in states:
            job_ids.extend(client.zrange(self._state_keys[current], 0, -1))

        jobs = []
        for job_id in job_ids:
            job = self.get_job(job_id)
            if job is not None:
                jobs.append(job)

        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return jobs[offset : offset + limit]

    # === Queue Maintenance ===

    def promote_delayed(self) -> int:
        """Move due delayed jobs back to waiting."""
        self.initialize()
        promoted = self._promote_script(
            keys=[self._state_keys[JobState.DELAYED], self._state_keys[JobState.WAITING]],
            args=[_to_ms(utc_now()), self._job_key],
        )
        return int(promoted or 0)

    def requeue_stale_jobs(self, stale_threshold_seconds: Optional[int] = None) -> int:
        """Requeue jobs that have been active too long."""
        if stale_threshold_seconds is None:
            stale_threshold_seconds = self.config.stale_job_timeout_seconds

        self.initialize()
        threshold = _to_ms(utc_now()) - stale_threshold_seconds * 1000
        count = int(
            self._requeue_stale_script(
                keys=[self._state_keys[JobState.ACTIVE], self._state_keys[JobState.WAITING]],
                args=[threshold, self._job_key],
            )
            or 0
        )

        if count > 0:
            logger.info(f"Requeued {count} stale jobs in {self.name}")
        return count

    def prune(self) -> int:
        """Apply the retention policy."""
        return self._prune_completed() + self._prune_failed()

    def _remove_jobs(self, state: JobState, job_ids: List[str]) -> int:
        if not job_ids:
            return 0
        pipe = self._get_client().pipeline()
        for job_id in job_ids:
            pipe.delete(self._key(job_id))
        pipe.zrem(self._state_keys[state], *job_ids)
        pipe.execute()
        return len(job_ids)

    def _prune_completed(self) -> int:
        client = self._get_client()
        retention = self.config.job_options.retention
        key = self._state_keys[JobState.COMPLETED]
        threshold = _to_ms(utc_now()) - retention.completed_max_age_seconds * 1000

        expired = set(client.zrangebyscore(key, "-inf", f"({threshold}"))
        # Oldest entries beyond the most recent completed_max_count
        expired.update(client.zrange(key, 0, -(retention.completed_max_count + 1)))
        return self._remove_jobs(JobState.COMPLETED, sorted(expired))

    def _prune_failed(self) -> int:
        client = self._get_client()
        retention = self.config.job_options.retention
        key = self._state_keys[JobState.FAILED]
        threshold = _to_ms(utc_now()) - retention.failed_max_age_seconds * 1000

        expired = client.zrangebyscore(key, "-inf", f"({threshold}")
        return self._remove_jobs(JobState.FAILED, list(expired))

    # === Statistics ===

    def get_counts(self) -> QueueCounts:
        """Get live per-state job counts."""
        pipe = self._get_client().pipeline(transaction=False)
        states = list(JobState)
        for state in states:
            pipe.zcard(self._state_keys[state])
        results = pipe.execute()
        return QueueCounts(**{state.value: int(total) for state, total in zip(states, results)})

    # === Health Check ===

    def health_check(self) -> bool:
        """Check if the queue backend is healthy."""
        try:
            return bool(self._get_client().ping())
        except redis.RedisError as e:
            logger.error(f"Redis queue health check failed: {e}")
            return False
