"""Voice Jobs - job queue and worker orchestration for voice-call automation."""

from .errors import JobLockError, JobValidationError, QueueClosedError, ShutdownError
from .queue_manager import LifecycleState, QueueManager
from .registry import AnalyticsType, CallAction, IntegrationType, QueueName
from .worker import JobContext, Worker

__version__ = "0.1.0"

__all__ = [
    "QueueManager",
    "LifecycleState",
    "QueueName",
    "CallAction",
    "AnalyticsType",
    "IntegrationType",
    "JobContext",
    "Worker",
    "JobLockError",
    "JobValidationError",
    "QueueClosedError",
    "ShutdownError",
]
