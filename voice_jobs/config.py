"""Configuration settings for the voice job queues."""

import os
from typing import Dict, Optional

# Redis endpoint (Upstash issues "host:port" endpoints plus a token)
REDIS_URL: Optional[str] = os.environ.get("UPSTASH_REDIS_URL") or os.environ.get("REDIS_URL")
REDIS_TOKEN: Optional[str] = os.environ.get("UPSTASH_REDIS_TOKEN")

# Prefix for every queue key in the store
QUEUE_PREFIX: str = os.environ.get("UPSTASH_QUEUE_PREFIX", "legacyai:voice:")

# Reconnect attempts per command before a store error is surfaced
REDIS_MAX_CONNECTION_RETRIES: int = int(os.environ.get("REDIS_MAX_CONNECTION_RETRIES", "20"))

# How often idle workers look for new jobs
QUEUE_POLL_INTERVAL_SECONDS: float = float(os.environ.get("QUEUE_POLL_INTERVAL_SECONDS", "0.5"))

# Active jobs locked longer than this are assumed to belong to a dead worker
QUEUE_STALE_JOB_TIMEOUT_SECONDS: int = int(os.environ.get("QUEUE_STALE_JOB_TIMEOUT_SECONDS", "300"))

# How often workers run promotion/stale-lock/retention maintenance
QUEUE_MAINTENANCE_INTERVAL_SECONDS: float = float(os.environ.get("QUEUE_MAINTENANCE_INTERVAL_SECONDS", "5"))

# Default job policy shared by all queues
MAX_ATTEMPTS: int = 3
BACKOFF_BASE_DELAY_MS: int = 1000
COMPLETED_MAX_AGE_SECONDS: int = 86400  # 24 hours
COMPLETED_MAX_COUNT: int = 1000
FAILED_MAX_AGE_SECONDS: int = 172800  # 48 hours

# Worker concurrency per queue
WORKER_CONCURRENCY: Dict[str, int] = {
    "calls": 5,
    "analytics": 3,
    "integrations": 5,
}

# Submission priority per queue (0-10, higher runs first)
DEFAULT_PRIORITY: Dict[str, int] = {
    "calls": 5,
    "analytics": 3,
    "integrations": 5,
}
