"""Job counters, Prometheus metrics and OpenTelemetry tracing.

This module provides observability for the job queues:
- An in-process aggregator of added/completed/failed counts per job type
- Prometheus metrics mirroring those counts for scraping
- OpenTelemetry spans around processor execution

Usage:
    from voice_jobs.metrics import MetricsAggregator, track_job_execution

    metrics = MetricsAggregator()
    metrics.record_added("calls", "transcribe")
    metrics.snapshot()["totalJobsAdded"]  # 1
"""

import logging
import queue
import threading
import time
from concurrent.futures import Future
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Generator, Optional

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from prometheus_client import Counter, Gauge, Histogram

logger = logging.getLogger(__name__)

# ============================================================================
# Prometheus Metrics Definitions
# ============================================================================

jobs_added_total = Counter(
    "voice_jobs_added_total",
    "Total number of jobs accepted by a queue",
    ["queue", "job_type"],
)

jobs_completed_total = Counter(
    "voice_jobs_completed_total",
    "Total number of jobs completed successfully",
    ["queue", "job_type"],
)

jobs_failed_total = Counter(
    "voice_jobs_failed_total",
    "Total number of jobs that exhausted their attempts",
    ["queue", "job_type"],
)

job_retries_total = Counter(
    "voice_jobs_retries_total",
    "Total number of failed attempts that were scheduled for retry",
    ["queue", "job_type"],
)

job_duration_seconds = Histogram(
    "voice_jobs_processing_seconds",
    "Processor execution time in seconds",
    ["queue", "status"],
    buckets=(0.05, 0.1, 0.5, 1, 2.5, 5, 10, 30, 60, 120, 300),
)

jobs_in_progress = Gauge(
    "voice_jobs_in_progress",
    "Number of jobs currently being processed",
    ["queue"],
)

queue_depth = Gauge(
    "voice_jobs_queue_depth",
    "Jobs waiting or delayed per queue",
    ["queue"],
)

active_workers = Gauge(
    "voice_jobs_active_workers",
    "Number of running workers",
)


# ============================================================================
# Aggregator
# ============================================================================


@dataclass(frozen=True)
class MetricsEvent:
    """A job outcome posted to the aggregator."""

    kind: str  # added, completed, failed, retried
    queue_name: str
    job_type: str


_COUNTERS = {
    "added": ("totalJobsAdded", "jobsAddedByType", jobs_added_total),
    "completed": ("totalJobsCompleted", "jobsCompletedByType", jobs_completed_total),
    "failed": ("totalJobsFailed", "jobsFailedByType", jobs_failed_total),
}


class MetricsAggregator:
    """Counts job outcomes on a single consumer thread.

    Producers (submission calls and worker event hooks) post events to a
    channel; only the consumer thread touches the counters. Snapshots are
    requests on the same channel, so a snapshot reflects every event posted
    before it.
    """

    def __init__(self) -> None:
        self._events: "queue.Queue[Any]" = queue.Queue()
        self._counts: Dict[str, Any] = {
            "totalJobsAdded": 0,
            "totalJobsCompleted": 0,
            "totalJobsFailed": 0,
            "jobsAddedByType": {},
            "jobsCompletedByType": {},
            "jobsFailedByType": {},
        }
        self._closed = False
        self._close_lock = threading.Lock()
        self._thread = threading.Thread(target=self._consume, name="metrics-aggregator", daemon=True)
        self._thread.start()

    # === Producers ===

    def record_added(self, queue_name: str, job_type: str) -> None:
        self._post(MetricsEvent("added", queue_name, job_type))

    def record_completed(self, queue_name: str, job_type: str) -> None:
        self._post(MetricsEvent("completed", queue_name, job_type))

    def record_failed(self, queue_name: str, job_type: str, will_retry: bool = False) -> None:
        """Record a failed attempt.

        Only terminal failures count towards ``totalJobsFailed``; retried
        attempts are exported to Prometheus only.
        """
        self._post(MetricsEvent("retried" if will_retry else "failed", queue_name, job_type))

    def _post(self, event: MetricsEvent) -> None:
        with self._close_lock:
            if self._closed:
                logger.warning(f"Metrics aggregator closed, dropping {event.kind} event for {event.job_type}")
                return
            self._events.put(event)

    # === Consumer ===

    def _consume(self) -> None:
        while True:
            item = self._events.get()
            if item is None:
                return
            try:
                if isinstance(item, Future):
                    item.set_result(self._copy())
                else:
                    self._apply(item)
            except Exception as e:
                logger.error(f"Failed to apply metrics event {item!r}: {e}")

    def _apply(self, event: MetricsEvent) -> None:
        if event.kind == "retried":
            job_retries_total.labels(queue=event.queue_name, job_type=event.job_type).inc()
            return

        total_key, by_type_key, counter = _COUNTERS[event.kind]
        self._counts[total_key] += 1
        by_type = self._counts[by_type_key]
        by_type[event.job_type] = by_type.get(event.job_type, 0) + 1
        counter.labels(queue=event.queue_name, job_type=event.job_type).inc()

    def _copy(self) -> Dict[str, Any]:
        return {key: dict(value) if isinstance(value, dict) else value for key, value in self._counts.items()}

    # === Readers ===

    def snapshot(self, timeout: Optional[float] = 5.0) -> Dict[str, Any]:
        """Current counters, including every event posted before the call.

        Args:
            timeout: Seconds to wait for the consumer thread.

        Returns:
            Dict with totals and per-type breakdowns.
        """
        with self._close_lock:
            if self._closed:
                return self._copy()
            request: "Future[Dict[str, Any]]" = Future()
            self._events.put(request)
        return request.result(timeout=timeout)

    def close(self) -> None:
        """Apply pending events and stop the consumer thread. Idempotent."""
        with self._close_lock:
            if self._closed:
                return
            self._events.put(None)
            self._thread.join()
            self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed


# ============================================================================
# OpenTelemetry Tracing
# ============================================================================

_tracer: Optional[trace.Tracer] = None


def get_tracer(name: str = "voice_jobs") -> trace.Tracer:
    """Get or create the OpenTelemetry tracer.

    Spans are no-ops unless an SDK tracer provider is configured.
    """
    global _tracer
    if _tracer is None:
        _tracer = trace.get_tracer(name)
    return _tracer


@contextmanager
def track_job_execution(queue_name: str, job_id: str, job_type: str) -> Generator[Any, None, None]:
    """Context manager to track processor execution metrics and tracing.

    Args:
        queue_name: The queue the job came from.
        job_id: The job identifier.
        job_type: The type of job being executed.

    Yields:
        The active span.

    Example:
        with track_job_execution("calls", job.id, "transcribe"):
            processor(job)
    """
    tracer = get_tracer()
    start_time = time.time()
    in_progress = jobs_in_progress.labels(queue=queue_name)
    in_progress.inc()

    try:
        with tracer.start_as_current_span(
            f"job.process.{queue_name}",
            attributes={"job.id": job_id, "job.type": job_type, "job.queue": queue_name},
            record_exception=False,
            set_status_on_exception=False,
        ) as span:
            try:
                yield span
            except Exception as e:
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                job_duration_seconds.labels(queue=queue_name, status="failed").observe(time.time() - start_time)
                raise
            duration = time.time() - start_time
            job_duration_seconds.labels(queue=queue_name, status="completed").observe(duration)
            span.set_attribute("job.duration_seconds", duration)
    finally:
        in_progress.dec()


def update_queue_depth(queue_name: str, depth: int) -> None:
    """Update the queue depth gauge."""
    queue_depth.labels(queue=queue_name).set(depth)


def set_active_workers(count: int) -> None:
    """Update the running worker gauge."""
    active_workers.set(count)
