"""Abstract base class for queue backends.

This module defines the API contract that all queue backends must implement.
"""

import abc
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional

from .models import (
    FailedJobInfo,
    JobOptions,
    JobState,
    QueueCounts,
    QueueJob,
    QueueJobCreate,
)


@dataclass
class QueueConfig:
    """Configuration for queue backends.

    Attributes:
        queue_name: Logical queue name (calls, analytics, integrations).
        backend_type: Type of queue backend (memory, redis).
        store_name: Name of the queue inside the backing store.
        key_prefix: Prefix for every key the backend writes.
        job_options: Default attempts, backoff and retention for jobs.
        stale_job_timeout_seconds: How long an active job stays locked before
            it is assumed to belong to a dead worker.
        connection: Shared connection manager (redis backend only).
    """

    queue_name: str
    backend_type: str = "memory"
    store_name: Optional[str] = None
    key_prefix: str = "legacyai:voice:"
    job_options: JobOptions = field(default_factory=JobOptions)
    stale_job_timeout_seconds: int = 300
    connection: Optional[Any] = None

    def __post_init__(self) -> None:
        if self.store_name is None:
            self.store_name = self.queue_name


class QueueBackend(abc.ABC):
    """Abstract base class for queue backends.

    All queue backends must implement this interface to provide
    job queue functionality with enqueue, claim, and management operations.

    The interface supports:
    - Enqueue with caller-assigned ids and priorities
    - Atomic claiming so a job is active in at most one worker
    - Retry logic with exponential backoff through a delayed state
    - Retention pruning of completed and failed jobs
    - Live per-state counts
    """

    config: QueueConfig

    @property
    def name(self) -> str:
        """Logical queue name."""
        return self.config.queue_name

    @abc.abstractmethod
    def initialize(self) -> None:
        """Initialize the queue backend.

        This should create structures if they don't exist.
        """
        pass

    @abc.abstractmethod
    def close(self) -> None:
        """Close the queue handle.

        The shared connection is owned by the connection manager and is not
        closed here.
        """
        pass

    # === Enqueue Operations ===

    @abc.abstractmethod
    def enqueue(self, job: QueueJobCreate) -> QueueJob:
        """Add a job to the queue in the waiting state.

        Args:
            job: The job to enqueue.

        Returns:
            The created QueueJob with the queue's default policy applied.

        Raises:
            ValueError: If a job with the same id already exists.
        """
        pass

    # === Claim Operations ===

    @abc.abstractmethod
    def claim(self, worker_id: Optional[str] = None) -> Optional[QueueJob]:
        """Atomically claim the next waiting job.

        Gets the highest priority waiting job (oldest first among equal
        priorities) and moves it to the active state.

        Args:
            worker_id: Optional worker identifier for tracking.

        Returns:
            QueueJob if available, None if nothing is waiting.
        """
        pass

    # === Job State Management ===

    @abc.abstractmethod
    def complete(
        self,
        job_id: str,
        return_value: Optional[Any] = None,
        worker_id: Optional[str] = None,
    ) -> Optional[QueueJob]:
        """Mark an active job as completed and apply completed retention.

        Args:
            job_id: The job identifier.
            return_value: Optional result from the processor.
            worker_id: When given, the job must be active and locked by
                this worker.

        Returns:
            Updated QueueJob or None if not found.

        Raises:
            JobLockError: If ``worker_id`` no longer holds the job.
        """
        pass

    @abc.abstractmethod
    def fail(
        self,
        job_id: str,
        error_message: str,
        error_type: Optional[str] = None,
        worker_id: Optional[str] = None,
    ) -> Optional[FailedJobInfo]:
        """Record a failed attempt.

        If attempts remain, the job is delayed by the backoff policy.
        Otherwise it becomes terminal ``failed``.

        Args:
            job_id: The job identifier.
            error_message: Error description.
            error_type: Optional error type/class name.
            worker_id: When given, the job must be active and locked by
                this worker.

        Returns:
            FailedJobInfo with retry information, or None if job not found.

        Raises:
            JobLockError: If ``worker_id`` no longer holds the job.
        """
        pass

    @abc.abstractmethod
    def extend_locks(self, job_ids: Iterable[str], worker_id: str) -> int:
        """Refresh the lock time of active jobs held by a worker.

        Workers call this while jobs are in flight so that long-running
        jobs are never mistaken for stale ones.

        Args:
            job_ids: Ids of the jobs the worker is running.
            worker_id: The worker holding the locks.

        Returns:
            Number of locks refreshed; jobs no longer held are skipped.
        """
        pass

    @abc.abstractmethod
    def update_progress(self, job_id: str, progress: int) -> Optional[QueueJob]:
        """Store the reported progress (0-100) of an active job.

        Args:
            job_id: The job identifier.
            progress: Percentage complete.

        Returns:
            Updated QueueJob or None if not found.
        """
        pass

    # === Job Lookup ===

    @abc.abstractmethod
    def get_job(self, job_id: str) -> Optional[QueueJob]:
        """Get a job by ID.

        Args:
            job_id: The job identifier.

        Returns:
            QueueJob or None if not found.
        """
        pass

    @abc.abstractmethod
    def list_jobs(
        self,
        state: Optional[JobState] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[QueueJob]:
        """List jobs, newest first.

        Args:
            state: Optional state filter.
            limit: Maximum results to return.
            offset: Offset for pagination.

        Returns:
            List of QueueJob objects.
        """
        pass

    # === Queue Maintenance ===

    @abc.abstractmethod
    def promote_delayed(self) -> int:
        """Move delayed jobs whose backoff has elapsed back to waiting.

        Returns:
            Number of jobs promoted.
        """
        pass

    @abc.abstractmethod
    def requeue_stale_jobs(self, stale_threshold_seconds: Optional[int] = None) -> int:
        """Requeue active jobs that have been locked too long.

        Jobs locked longer than the threshold are assumed to be from dead
        workers and go back to waiting without consuming an attempt. Live
        workers keep their locks fresh through :meth:`extend_locks`.

        Args:
            stale_threshold_seconds: Lock age threshold, defaults to the
                configured stale job timeout.

        Returns:
            Number of jobs requeued.
        """
        pass

    @abc.abstractmethod
    def prune(self) -> int:
        """Apply the retention policy to completed and failed jobs.

        Returns:
            Number of jobs removed.
        """
        pass

    # === Statistics ===

    @abc.abstractmethod
    def get_counts(self) -> QueueCounts:
        """Get live per-state job counts.

        Returns:
            QueueCounts for this queue.
        """
        pass

    def count(self) -> int:
        """Number of jobs still to be processed (waiting plus delayed)."""
        return self.get_counts().depth

    # === Health Check ===

    @abc.abstractmethod
    def health_check(self) -> bool:
        """Check if the queue backend is healthy.

        Returns:
            True if healthy, False otherwise.
        """
        pass
