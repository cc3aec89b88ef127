"""Exceptions raised by the job queue layer."""

from typing import List, Tuple


class JobValidationError(ValueError):
    """A submission was rejected before reaching the store."""


class QueueClosedError(RuntimeError):
    """The queue manager no longer accepts work."""


class ShutdownError(RuntimeError):
    """One or more shutdown steps failed.

    Attributes:
        failures: (step name, exception) for every failed step.
    """

    def __init__(self, failures: List[Tuple[str, BaseException]]):
        self.failures = failures
        details = "; ".join(f"{step}: {error}" for step, error in failures)
        super().__init__(f"Shutdown incomplete, {len(failures)} step(s) failed: {details}")


class JobLockError(RuntimeError):
    """A worker tried to finish a job it no longer holds."""
