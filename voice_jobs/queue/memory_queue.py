"""In-memory queue backend implementation.

Provides a thread-safe in-memory queue for testing and local development.
This is the default fallback when no Redis endpoint is configured.
"""

import heapq
import itertools
import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

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


class MemoryQueue(QueueBackend):
    """In-memory queue backend.

    Thread-safe implementation using a priority queue (heap).
    Suitable for testing and single-process local development.

    Note: Data is not persisted and will be lost on restart.
    """

    def __init__(self, config: QueueConfig):
        """Initialize in-memory queue.

        Args:
            config: Queue configuration.
        """
        self.config = config
        self._lock = threading.RLock()

        # Job storage by ID
        self._jobs: Dict[str, QueueJob] = {}

        # Priority queue: (priority * -1, created_at, sequence, job_id)
        # We negate priority so higher priority = smaller number = claimed first
        self._waiting: List[Tuple[int, datetime, int, str]] = []
        self._sequence = itertools.count()

        self._delayed: Set[str] = set()

        self._initialized = False
        self._closed = False

    def initialize(self) -> None:
        """Initialize the in-memory queue."""
        with self._lock:
            if self._initialized:
                return
            self._initialized = True
            logger.info(f"In-memory queue '{self.name}' initialized")

    def close(self) -> None:
        """Close the queue handle."""
        with self._lock:
            self._closed = True

    def _check_open(self) -> None:
        if self._closed:
            raise RuntimeError(f"Queue '{self.name}' is closed")

    def _push_waiting(self, job: QueueJob) -> None:
        """Add a job to the waiting priority queue."""
        heapq.heappush(
            self._waiting,
            (-job.priority, job.created_at, next(self._sequence), job.id),
        )

    # === Enqueue Operations ===

    def enqueue(self, job_create: QueueJobCreate) -> QueueJob:
        """Add a job to the queue."""
        with self._lock:
            self._check_open()
            if job_create.id in self._jobs:
                raise ValueError(f"Job '{job_create.id}' already exists in queue '{self.name}'")

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

            self._jobs[job.id] = job
            self._push_waiting(job)

            logger.debug(f"Enqueued job {job.id} ({job.job_type}) in {self.name}")
            return job

    # === Claim Operations ===

    def claim(self, worker_id: Optional[str] = None) -> Optional[QueueJob]:
        """Claim the next waiting job."""
        with self._lock:
            self._check_open()
            self.promote_delayed()

            while self._waiting:
                _, _, _, job_id = heapq.heappop(self._waiting)
                job = self._jobs.get(job_id)

                # Lazy deletion: skip entries whose job was deleted or moved on
                if job is None or job.state != JobState.WAITING:
                    continue

                now = utc_now()
                job.state = JobState.ACTIVE
                job.processed_at = now
                job.locked_by = worker_id
                job.progress = 0

                logger.debug(f"Claimed job {job_id} for worker {worker_id}")
                return job

            return None

    # === Job State Management ===

    def _check_lock(self, job: QueueJob, worker_id: Optional[str]) -> None:
        if worker_id is None:
            return
        if job.state != JobState.ACTIVE or job.locked_by != worker_id:
            raise JobLockError(f"Job {job.id} in '{self.name}' is no longer locked by worker {worker_id}")

    def complete(
        self,
        job_id: str,
        return_value: Optional[Any] = None,
        worker_id: Optional[str] = None,
    ) -> Optional[QueueJob]:
        """Mark a job as completed."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            self._check_lock(job, worker_id)

            job.state = JobState.COMPLETED
            job.return_value = return_value
            job.finished_at = utc_now()
            job.locked_by = None
            job.last_error = None

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
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            self._check_lock(job, worker_id)

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
                self._delayed.add(job_id)
                logger.debug(f"Job {job_id} will retry at {next_attempt_at}")
            else:
                job.state = JobState.FAILED
                job.finished_at = now
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

    def update_progress(self, job_id: str, progress: int) -> Optional[QueueJob]:
        """Store the reported progress of a job."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            job.progress = progress
            return job

    def extend_locks(self, job_ids: Iterable[str], worker_id: str) -> int:
        """Refresh the lock time of active jobs held by a worker."""
        with self._lock:
            now = utc_now()
            extended = 0
            for job_id in job_ids:
                job = self._jobs.get(job_id)
                if job is not None and job.state == JobState.ACTIVE and job.locked_by == worker_id:
                    job.processed_at = now
                    extended += 1
            return extended

    # === Job Lookup ===

    def get_job(self, job_id: str) -> Optional[QueueJob]:
        """Get a job by ID."""
        with self._lock:
            return self._jobs.get(job_id)

    def list_jobs(
        self,
        state: Optional[JobState] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[QueueJob]:
        """List jobs with an optional state filter."""
        with self._lock:
            jobs = list(self._jobs.values())

            if state is not None:
                jobs = [j for j in jobs if j.state == state]

            jobs.sort(key=lambda j: j.created_at, reverse=True)
            return jobs[offset : offset + limit]

    # === Queue Maintenance ===

    def promote_delayed(self) -> int:
        """Move due delayed jobs back to waiting."""
        with self._lock:
            now = utc_now()
            due = [
                job_id
                for job_id in self._delayed
                if (self._jobs[job_id].delay_until or now) <= now
            ]
            for job_id in due:
                self._delayed.discard(job_id)
                job = self._jobs[job_id]
                job.state = JobState.WAITING
                job.delay_until = None
                self._push_waiting(job)
            return len(due)

    def requeue_stale_jobs(self, stale_threshold_seconds: Optional[int] = None) -> int:
        """Requeue jobs that have been active too long."""
        if stale_threshold_seconds is None:
            stale_threshold_seconds = self.config.stale_job_timeout_seconds
        with self._lock:
            threshold = utc_now() - timedelta(seconds=stale_threshold_seconds)
            count = 0

            for job in self._jobs.values():
                if job.state == JobState.ACTIVE and job.processed_at and job.processed_at < threshold:
                    job.state = JobState.WAITING
                    job.locked_by = None
                    job.processed_at = None
                    self._push_waiting(job)
                    count += 1
                    logger.debug(f"Requeued stale job {job.id}")

            if count > 0:
                logger.info(f"Requeued {count} stale jobs in {self.name}")
            return count

    def prune(self) -> int:
        """Apply the retention policy."""
        with self._lock:
            return self._prune_completed() + self._prune_failed()

    def _prune_completed(self) -> int:
        retention = self.config.job_options.retention
        threshold = utc_now() - timedelta(seconds=retention.completed_max_age_seconds)

        completed = sorted(
            (j for j in self._jobs.values() if j.state == JobState.COMPLETED),
            key=lambda j: j.finished_at,
            reverse=True,
        )
        to_delete = [
            job.id
            for index, job in enumerate(completed)
            if index >= retention.completed_max_count or job.finished_at < threshold
        ]
        for job_id in to_delete:
            del self._jobs[job_id]
        return len(to_delete)

    def _prune_failed(self) -> int:
        retention = self.config.job_options.retention
        threshold = utc_now() - timedelta(seconds=retention.failed_max_age_seconds)

        to_delete = [
            job_id
            for job_id, job in self._jobs.items()
            if job.state == JobState.FAILED and job.finished_at and job.finished_at < threshold
        ]
        for job_id in to_delete:
            del self._jobs[job_id]
        return len(to_delete)

    # === Statistics ===

    def get_counts(self) -> QueueCounts:
        """Get live per-state job counts."""
        with self._lock:
            self._check_open()
            counts: Dict[JobState, int] = {}
            for job in self._jobs.values():
                counts[job.state] = counts.get(job.state, 0) + 1
            return QueueCounts(**{state.value: total for state, total in counts.items()})

    # === Health Check ===

    def health_check(self) -> bool:
        """Check if the queue backend is healthy."""
        return not self._closed
