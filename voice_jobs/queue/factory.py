"""Queue factory for creating queue backends.

Provides automatic detection and creation of queue backends
based on configuration or environment variables.
"""

import logging
import os
from typing import Any, Optional

from .base import QueueBackend, QueueConfig
from .memory_queue import MemoryQueue
from .models import JobOptions

logger = logging.getLogger(__name__)


def get_queue_type() -> str:
    """Detect the queue type from environment.

    Priority order:
    1. QUEUE_BACKEND -> explicit choice
    2. UPSTASH_REDIS_URL or REDIS_URL -> redis
    3. Default -> memory

    Returns:
        Queue type string: 'redis' or 'memory'
    """
    explicit = os.environ.get("QUEUE_BACKEND", "").strip().lower()
    if explicit:
        return explicit

    if os.environ.get("UPSTASH_REDIS_URL") or os.environ.get("REDIS_URL"):
        return "redis"

    return "memory"


def create_queue(
    queue_name: str,
    backend_type: Optional[str] = None,
    connection: Optional[Any] = None,
    store_name: Optional[str] = None,
    key_prefix: str = "legacyai:voice:",
    job_options: Optional[JobOptions] = None,
    stale_job_timeout_seconds: int = 300,
) -> QueueBackend:
    """Create a queue backend instance.

    If backend_type is not specified, auto-detects based on environment.

    Args:
        queue_name: Logical queue name.
        backend_type: Type of queue ('memory', 'redis'). Auto-detected if None.
        connection: Shared ConnectionManager, required for 'redis'.
        store_name: Name of the queue inside the store (defaults to queue_name).
        key_prefix: Prefix for keys in the store.
        job_options: Default job policy for the queue.
        stale_job_timeout_seconds: Lock age after which active jobs are requeued.

    Returns:
        Initialized QueueBackend instance.

    Raises:
        ValueError: If backend_type is unknown or redis has no connection.

    Example:
        # Explicit memory queue
        queue = create_queue("calls", "memory")

        # Redis queue on a shared connection
        queue = create_queue("calls", "redis", connection=ConnectionManager("localhost:6379"))
    """
    if backend_type is None:
        backend_type = get_queue_type()

    config = QueueConfig(
        queue_name=queue_name,
        backend_type=backend_type,
        store_name=store_name,
        key_prefix=key_prefix,
        job_options=job_options or JobOptions(),
        stale_job_timeout_seconds=stale_job_timeout_seconds,
        connection=connection,
    )

    if backend_type == "memory":
        logger.info(f"Creating in-memory queue '{queue_name}'")
        queue: QueueBackend = MemoryQueue(config)

    elif backend_type == "redis":
        from .redis_queue import RedisQueue

        logger.info(f"Creating Redis queue '{queue_name}'")
        queue = RedisQueue(config)

    else:
        raise ValueError(f"Unknown queue backend type: {backend_type}")

    queue.initialize()
    return queue
