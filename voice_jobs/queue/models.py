"""Queue job models for the job queue layer.

These models support job enqueuing, claiming, state tracking,
retry/backoff and retention of finished jobs.
"""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    """Get current datetime in UTC with timezone info."""
    return datetime.now(timezone.utc)


class JobState(str, Enum):
    """State of a job in the queue."""

    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DELAYED = "delayed"  # Waiting out a retry backoff


class BackoffPolicy(BaseModel):
    """Delay inserted between retry attempts.

    Attributes:
        type: Backoff shape, 'exponential' or 'fixed'.
        base_delay_ms: Delay before the first retry.
    """

    type: str = Field(default="exponential", pattern="^(exponential|fixed)$")
    base_delay_ms: int = Field(default=1000, ge=0)

    def get_delay_ms(self, attempts_made: int) -> int:
        """Calculate the delay before the next attempt.

        Args:
            attempts_made: Number of attempts that have already failed (1-indexed).

        Returns:
            Delay in milliseconds.
        """
        if self.type == "fixed":
            return self.base_delay_ms
        return self.base_delay_ms * (2 ** max(attempts_made - 1, 0))


class RetentionPolicy(BaseModel):
    """How long finished jobs stay queryable.

    Attributes:
        completed_max_age_seconds: Age after which completed jobs are pruned.
        completed_max_count: Number of most recent completed jobs to keep.
        failed_max_age_seconds: Age after which failed jobs are pruned.
    """

    completed_max_age_seconds: int = Field(default=86400, ge=0)
    completed_max_count: int = Field(default=1000, ge=0)
    failed_max_age_seconds: int = Field(default=172800, ge=0)


class JobOptions(BaseModel):
    """Default job policy for a queue."""

    max_attempts: int = Field(default=3, ge=1, le=100)
    backoff: BackoffPolicy = Field(default_factory=BackoffPolicy)
    retention: RetentionPolicy = Field(default_factory=RetentionPolicy)


class QueueJobCreate(BaseModel):
    """Input model for creating a new queue job.

    Attributes:
        id: Job identifier, unique within the queue.
        job_type: Type of job (e.g., 'transcribe').
        payload: Job data.
        priority: Job priority (0-10, higher runs first).
    """

    id: str = Field(min_length=1)
    job_type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    priority: int = Field(default=5, ge=0, le=10)


class QueueJob(BaseModel):
    """A job in the queue with full state.

    Attributes:
        id: Unique job identifier within its queue.
        queue_name: Logical queue the job belongs to.
        job_type: Type of job.
        payload: Job data.
        state: Current job state.
        priority: Job priority.
        max_attempts: Attempts allowed before the job is terminal.
        attempts_made: Failed attempts so far.
        progress: Last reported progress (0-100).
        last_error: Last error message (while retrying or once failed).
        return_value: Processor result (if completed).
        created_at: Job creation timestamp.
        processed_at: When the current or last attempt started.
        finished_at: When the job completed or terminally failed.
        delay_until: When a delayed job becomes claimable again.
        locked_by: Worker ID that holds the job.
    """

    id: str
    queue_name: str
    job_type: str
    payload: Dict[str, Any]
    state: JobState = JobState.WAITING
    priority: int = 5
    max_attempts: int = 3
    attempts_made: int = 0
    progress: int = 0
    last_error: Optional[str] = None
    return_value: Optional[Any] = None
    created_at: datetime
    processed_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    delay_until: Optional[datetime] = None
    locked_by: Optional[str] = None


class QueueCounts(BaseModel):
    """Number of jobs per state in a single queue."""

    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0

    @property
    def depth(self) -> int:
        """Jobs still to be processed (waiting or delayed)."""
        return self.waiting + self.delayed


class FailedJobInfo(BaseModel):
    """Information about a failed job attempt.

    Attributes:
        job_id: The job identifier.
        attempt: Attempt number (1-indexed).
        error_message: Error message from this attempt.
        error_type: Type/class of the error.
        failed_at: When this attempt failed.
        will_retry: Whether job will be retried.
        next_attempt_at: When the next attempt becomes claimable (if any).
        delay_ms: Backoff delay applied (if any).
    """

    job_id: str
    attempt: int
    error_message: str
    error_type: Optional[str] = None
    failed_at: datetime
    will_retry: bool
    next_attempt_at: Optional[datetime] = None
    delay_ms: Optional[int] = None


def next_attempt_time(now: datetime, delay_ms: int) -> datetime:
    """Absolute time at which a delayed job becomes claimable."""
    return now + timedelta(milliseconds=delay_ms)
