"""Queue backends for the voice job queues.

This module provides a modular job queue architecture supporting:
- Redis for shared, durable queues (Upstash or self-hosted)
- In-memory queue for testing and local development

Usage:
    from voice_jobs.queue import create_queue, QueueBackend

    # Create in-memory queue (for testing)
    queue = create_queue("calls", "memory")

    # Create Redis-backed queue on a shared connection
    queue = create_queue("calls", "redis", connection=ConnectionManager("redis://..."))

    # Use environment-based auto-detection
    queue = create_queue("calls")  # Checks QUEUE_BACKEND, REDIS_URL, or falls back to memory
"""

from .base import QueueBackend, QueueConfig
from .connection import ConnectionManager, ConnectionSettings, parse_connection_url
from .factory import create_queue, get_queue_type
from .memory_queue import MemoryQueue
from .models import (
    BackoffPolicy,
    FailedJobInfo,
    JobOptions,
    JobState,
    QueueCounts,
    QueueJob,
    QueueJobCreate,
    RetentionPolicy,
)
from .redis_queue import RedisQueue

__all__ = [
    # Base classes
    "QueueBackend",
    "QueueConfig",
    # Factory
    "create_queue",
    "get_queue_type",
    # Connection
    "ConnectionManager",
    "ConnectionSettings",
    "parse_connection_url",
    # Models
    "BackoffPolicy",
    "FailedJobInfo",
    "JobOptions",
    "JobState",
    "QueueCounts",
    "QueueJob",
    "QueueJobCreate",
    "RetentionPolicy",
    # Implementations
    "MemoryQueue",
    "RedisQueue",
]
