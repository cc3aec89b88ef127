"""The three named work queues and their job types."""

import logging
from enum import Enum
from typing import Dict, Iterator, Optional, Tuple, Type, Union

from .config import (
    BACKOFF_BASE_DELAY_MS,
    COMPLETED_MAX_AGE_SECONDS,
    COMPLETED_MAX_COUNT,
    FAILED_MAX_AGE_SECONDS,
    MAX_ATTEMPTS,
    QUEUE_PREFIX,
    QUEUE_STALE_JOB_TIMEOUT_SECONDS,
)
from .queue import QueueBackend, create_queue
from .queue.models import BackoffPolicy, JobOptions, RetentionPolicy

logger = logging.getLogger(__name__)


class QueueName(str, Enum):
    """Logical queue names."""

    CALLS = "calls"
    ANALYTICS = "analytics"
    INTEGRATIONS = "integrations"


class CallAction(str, Enum):
    """Job types accepted by the calls queue."""

    TRANSCRIBE = "transcribe"
    ANALYZE = "analyze"
    POST_CALL_ACTIONS = "post_call_actions"


class AnalyticsType(str, Enum):
    """Job types accepted by the analytics queue."""

    DAILY_AGGREGATION = "daily_aggregation"
    SENTIMENT_ANALYSIS = "sentiment_analysis"
    TREND_CALCULATION = "trend_calculation"


class IntegrationType(str, Enum):
    """Job types accepted by the integrations queue."""

    WEBHOOK_DELIVERY = "webhook_delivery"
    EMAIL_SEND = "email_send"
    CUSTOMER_SYNC = "customer_sync"


# Queue names inside the backing store
STORE_QUEUE_NAMES: Dict[QueueName, str] = {
    QueueName.CALLS: "voice-calls",
    QueueName.ANALYTICS: "voice-analytics",
    QueueName.INTEGRATIONS: "voice-integrations",
}

JOB_TYPES: Dict[QueueName, Type[Enum]] = {
    QueueName.CALLS: CallAction,
    QueueName.ANALYTICS: AnalyticsType,
    QueueName.INTEGRATIONS: IntegrationType,
}

DEFAULT_JOB_OPTIONS = JobOptions(
    max_attempts=MAX_ATTEMPTS,
    backoff=BackoffPolicy(type="exponential", base_delay_ms=BACKOFF_BASE_DELAY_MS),
    retention=RetentionPolicy(
        completed_max_age_seconds=COMPLETED_MAX_AGE_SECONDS,
        completed_max_count=COMPLETED_MAX_COUNT,
        failed_max_age_seconds=FAILED_MAX_AGE_SECONDS,
    ),
)


def job_type_values(queue_name: Union[QueueName, str]) -> Tuple[str, ...]:
    """Valid job type values for a queue, in declaration order."""
    return tuple(member.value for member in JOB_TYPES[QueueName(queue_name)])


class QueueRegistry:
    """Owns one queue backend per logical queue.

    All queues share the same connection and the same default job policy.
    """

    def __init__(
        self,
        backend_type: Optional[str] = None,
        connection: Optional[object] = None,
        key_prefix: str = QUEUE_PREFIX,
        job_options: Optional[JobOptions] = None,
        stale_job_timeout_seconds: int = QUEUE_STALE_JOB_TIMEOUT_SECONDS,
    ):
        self.job_options = job_options or DEFAULT_JOB_OPTIONS
        self._queues: Dict[QueueName, QueueBackend] = {}

        for name in QueueName:
            self._queues[name] = create_queue(
                name.value,
                backend_type=backend_type,
                connection=connection,
                store_name=STORE_QUEUE_NAMES[name],
                key_prefix=key_prefix,
                job_options=self.job_options,
                stale_job_timeout_seconds=stale_job_timeout_seconds,
            )

        logger.info(f"Queue registry initialized with {len(self._queues)} queues: {', '.join(self.names())}")

    def get(self, name: Union[QueueName, str]) -> QueueBackend:
        """Get the backend for a queue.

        Raises:
            ValueError: If the queue name is unknown.
        """
        return self._queues[QueueName(name)]

    def names(self) -> Tuple[str, ...]:
        return tuple(name.value for name in self._queues)

    def items(self) -> Iterator[Tuple[QueueName, QueueBackend]]:
        return iter(self._queues.items())

    def __iter__(self) -> Iterator[QueueBackend]:
        return iter(self._queues.values())

    def __len__(self) -> int:
        return len(self._queues)
