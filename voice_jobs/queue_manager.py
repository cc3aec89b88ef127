"""Queue manager: typed job submission, worker orchestration and shutdown.

This is the entry point used by the HTTP/webhook layer. It owns the shared
store connection, the three queues, the workers bound to them and the
metrics aggregator fed by worker events.

Usage:
    from voice_jobs import QueueManager

    manager = QueueManager(backend_type="memory")
    result = manager.add_call_to_queue("CA123", "transcribe", {"audioUrl": "https://x/a.mp3"})
    result["data"]["jobId"]  # "CA123-transcribe-1759334400000"

    manager.setup_workers(call_processor=transcribe_call)
    manager.get_metrics()["data"]["totalJobsAdded"]  # 1
    manager.shutdown()
"""

import logging
import threading
import time
from enum import Enum
from functools import partial
from typing import Any, Dict, List, Optional, Tuple

from .config import (
    DEFAULT_PRIORITY,
    QUEUE_MAINTENANCE_INTERVAL_SECONDS,
    QUEUE_POLL_INTERVAL_SECONDS,
    QUEUE_PREFIX,
    QUEUE_STALE_JOB_TIMEOUT_SECONDS,
    REDIS_MAX_CONNECTION_RETRIES,
    REDIS_TOKEN,
    REDIS_URL,
    WORKER_CONCURRENCY,
)
from .errors import JobValidationError, QueueClosedError, ShutdownError
from .metrics import MetricsAggregator, set_active_workers, update_queue_depth
from .payloads import validate_payload
from .queue import ConnectionManager, QueueJob, QueueJobCreate, get_queue_type
from .queue.models import JobOptions, JobState
from .registry import QueueName, QueueRegistry, job_type_values
from .responses import APIResponse, iso_timestamp, new_request_id
from .worker import Processor, Worker

logger = logging.getLogger(__name__)

# Label used in "Invalid <label> type" errors
_TYPE_LABELS: Dict[QueueName, str] = {
    QueueName.CALLS: "action",
    QueueName.ANALYTICS: "analytics",
    QueueName.INTEGRATIONS: "integration",
}

# Job id prefix per queue; calls use the call SID instead
_ID_PREFIXES: Dict[QueueName, str] = {
    QueueName.ANALYTICS: "analytics",
    QueueName.INTEGRATIONS: "integration",
}


class LifecycleState(str, Enum):
    """Lifecycle of a queue manager."""

    RUNNING = "running"
    DRAINING = "draining"
    CLOSED = "closed"


def job_type_of(job: QueueJob) -> str:
    """Job type recorded in a job's payload (``action`` or ``type``)."""
    payload = job.payload or {}
    return payload.get("action") or payload.get("type") or job.job_type


def _validate_priority(priority: Any) -> int:
    if isinstance(priority, bool) or not isinstance(priority, int) or not 0 <= priority <= 10:
        raise JobValidationError(f"Invalid priority: {priority!r}. Must be an integer between 0 and 10")
    return priority


class QueueManager:
    """Manages the calls, analytics and integrations queues.

    Submission methods and :meth:`get_metrics` never raise: they return the
    ``{success, data, error, timestamp, requestId}`` envelope. Worker
    outcomes are counted from worker events, so a misbehaving processor
    cannot skew the counters.
    """

    def __init__(
        self,
        redis_url: Optional[str] = None,
        redis_token: Optional[str] = None,
        queue_prefix: str = QUEUE_PREFIX,
        backend_type: Optional[str] = None,
        connection: Optional[ConnectionManager] = None,
        job_options: Optional[JobOptions] = None,
        poll_interval_seconds: float = QUEUE_POLL_INTERVAL_SECONDS,
        maintenance_interval_seconds: float = QUEUE_MAINTENANCE_INTERVAL_SECONDS,
        stale_job_timeout_seconds: int = QUEUE_STALE_JOB_TIMEOUT_SECONDS,
    ):
        """Initialize the queue manager.

        Args:
            redis_url: Redis endpoint; defaults to UPSTASH_REDIS_URL/REDIS_URL.
            redis_token: Redis credential; defaults to UPSTASH_REDIS_TOKEN.
            queue_prefix: Prefix for every queue key in the store.
            backend_type: 'redis' or 'memory'; auto-detected if None.
            connection: Existing connection manager to share.
            job_options: Override the default job policy of every queue.
            poll_interval_seconds: Idle poll interval of workers.
            maintenance_interval_seconds: How often workers sweep stale jobs.
            stale_job_timeout_seconds: Lock age after which active jobs are requeued.

        Raises:
            ValueError: If the redis backend is selected without a URL.
        """
        logger.info("Initializing QueueManager")

        if backend_type is None:
            backend_type = "redis" if connection is not None else get_queue_type()

        if backend_type == "redis" and connection is None:
            url = redis_url or REDIS_URL
            if not url:
                raise ValueError("A Redis URL is required for the redis backend (set REDIS_URL or UPSTASH_REDIS_URL)")
            connection = ConnectionManager(
                url,
                token=redis_token or REDIS_TOKEN,
                max_connection_retries=REDIS_MAX_CONNECTION_RETRIES,
            )

        self.backend_type = backend_type
        self.connection = connection
        if connection is not None:
            self._watch_connection(connection)
            connection.connect()
        self.poll_interval_seconds = poll_interval_seconds
        self.maintenance_interval_seconds = maintenance_interval_seconds

        self.registry = QueueRegistry(
            backend_type=backend_type,
            connection=connection,
            key_prefix=queue_prefix,
            job_options=job_options,
            stale_job_timeout_seconds=stale_job_timeout_seconds,
        )
        self.metrics = MetricsAggregator()

        # Explicit processor registration: a queue without a processor has no worker
        self.processors: Dict[QueueName, Optional[Processor]] = {name: None for name in QueueName}
        self.workers: Dict[QueueName, Worker] = {}

        self._state = LifecycleState.RUNNING
        self._lock = threading.Lock()
        self._shutdown_done = threading.Event()
        self._id_lock = threading.Lock()
        self._last_millis = 0

        logger.info(f"QueueManager initialized with {len(self.registry)} queues: {', '.join(self.registry.names())}")

    @property
    def lifecycle_state(self) -> LifecycleState:
        return self._state

    @property
    def active_worker_count(self) -> int:
        return sum(1 for worker in self.workers.values() if worker.running)

    # === Job Submission ===

    def add_call_to_queue(
        self,
        call_sid: str,
        action: str,
        data: Optional[Dict[str, Any]] = None,
        priority: int = DEFAULT_PRIORITY["calls"],
    ) -> Dict[str, Any]:
        """Add a call post-processing job.

        Args:
            call_sid: Telephony call SID the job belongs to.
            action: One of transcribe, analyze, post_call_actions.
            data: Job payload.
            priority: Job priority (0-10, higher runs first).

        Returns:
            Envelope whose data is ``{jobId, callSid, action, jobType, queueName, priority}``.

        Example:
            manager.add_call_to_queue("CA123", "transcribe", {"audioUrl": "https://..."})
        """
        return self.submit(QueueName.CALLS, action, data, priority, call_sid=call_sid).to_dict()

    def add_analytics_job(
        self,
        type: str,
        data: Optional[Dict[str, Any]] = None,
        priority: int = DEFAULT_PRIORITY["analytics"],
    ) -> Dict[str, Any]:
        """Add an analytics job.

        Args:
            type: One of daily_aggregation, sentiment_analysis, trend_calculation.
            data: Job payload.
            priority: Job priority (0-10), lower by default for batch work.

        Returns:
            Envelope whose data is ``{jobId, type, jobType, queueName, priority}``.
        """
        return self.submit(QueueName.ANALYTICS, type, data, priority).to_dict()

    def add_integration_job(
        self,
        type: str,
        data: Optional[Dict[str, Any]] = None,
        priority: int = DEFAULT_PRIORITY["integrations"],
    ) -> Dict[str, Any]:
        """Add an outbound integration job.

        Args:
            type: One of webhook_delivery, email_send, customer_sync.
            data: Job payload.
            priority: Job priority (0-10).

        Returns:
            Envelope whose data is ``{jobId, type, jobType, queueName, priority}``.
        """
        return self.submit(QueueName.INTEGRATIONS, type, data, priority).to_dict()

    def submit(
        self,
        queue_name: Any,
        job_type: Any,
        data: Optional[Dict[str, Any]] = None,
        priority: Any = None,
        call_sid: Optional[str] = None,
    ) -> APIResponse:
        """Validate and enqueue a job on any queue.

        Args:
            queue_name: calls, analytics or integrations.
            job_type: A job type valid for the queue.
            data: Job payload.
            priority: Job priority, defaults per queue when None.
            call_sid: Call SID, required for the calls queue.

        Returns:
            The response envelope; ``error_type`` tells validation failures
            (JobValidationError) apart from store failures.
        """
        queue_name = QueueName(queue_name)
        if priority is None:
            priority = DEFAULT_PRIORITY[queue_name.value]
        request_id = new_request_id()
        timestamp = iso_timestamp()
        logger.info(f"Adding {queue_name.value} job to queue: {job_type}")

        try:
            if self._state != LifecycleState.RUNNING:
                raise QueueClosedError(f"Queue manager is {self._state.value}, not accepting new jobs")

            job_type = self._validate_job_type(queue_name, job_type)
            priority = _validate_priority(priority)
            if queue_name == QueueName.CALLS and (not isinstance(call_sid, str) or not call_sid):
                raise JobValidationError(f"Invalid callSid: {call_sid!r}. Must be a non-empty string")
            validate_payload(job_type, data)

            job_data: Dict[str, Any] = {
                "data": data if data is not None else {},
                "priority": priority,
                "attempts": 0,
                "createdAt": timestamp,
                "requestId": request_id,
            }
            if queue_name == QueueName.CALLS:
                job_data = {"callSid": call_sid, "action": job_type, **job_data}
                job_id = f"{call_sid}-{job_type}-{self._next_millis()}"
            else:
                job_data = {"type": job_type, **job_data}
                job_id = f"{_ID_PREFIXES[queue_name]}-{job_type}-{self._next_millis()}"

            job = self.registry.get(queue_name).enqueue(
                QueueJobCreate(id=job_id, job_type=job_type, payload=job_data, priority=priority)
            )
        except Exception as e:
            logger.error(f"Failed to add {queue_name.value} job: {e}")
            return APIResponse.failure(str(e), request_id, timestamp, error_type=type(e).__name__)

        self.metrics.record_added(queue_name.value, job_type)
        logger.info(f"{queue_name.value.capitalize()} job added successfully: {job.id}")

        handle: Dict[str, Any] = {"jobId": job.id}
        if queue_name == QueueName.CALLS:
            handle.update(callSid=call_sid, action=job_type)
        else:
            handle["type"] = job_type
        handle.update(jobType=job_type, queueName=queue_name.value, priority=priority)
        return APIResponse.ok(handle, request_id, timestamp)

    def _validate_job_type(self, queue_name: QueueName, job_type: Any) -> str:
        value = job_type.value if isinstance(job_type, Enum) else job_type
        valid = job_type_values(queue_name)
        if value not in valid:
            raise JobValidationError(
                f"Invalid {_TYPE_LABELS[queue_name]} type: {value}. Must be one of: {', '.join(valid)}"
            )
        return value

    def _next_millis(self) -> int:
        # Strictly increasing so ids from this process never collide
        with self._id_lock:
            now = int(time.time() * 1000)
            if now <= self._last_millis:
                now = self._last_millis + 1
            self._last_millis = now
            return now

    # === Workers ===

    def setup_workers(
        self,
        call_processor: Optional[Processor] = None,
        analytics_processor: Optional[Processor] = None,
        integration_processor: Optional[Processor] = None,
    ) -> List[Worker]:
        """Start a worker for every queue that has a processor.

        Any subset of processors may be supplied; queues without one get no
        worker.

        Returns:
            The workers started by this call.
        """
        logger.info("Setting up workers")
        requested: List[Tuple[QueueName, Optional[Processor]]] = [
            (QueueName.CALLS, call_processor),
            (QueueName.ANALYTICS, analytics_processor),
            (QueueName.INTEGRATIONS, integration_processor),
        ]

        started = [self.register_worker(name, processor) for name, processor in requested if processor is not None]
        logger.info(f"All workers setup complete: {len(self.workers)} workers")
        return started

    def register_worker(
        self,
        queue_name: Any,
        processor: Processor,
        concurrency: Optional[int] = None,
    ) -> Worker:
        """Bind a processor to a queue and start consuming it.

        Args:
            queue_name: calls, analytics or integrations.
            processor: Callable invoked with a JobContext for every job.
            concurrency: Maximum simultaneous jobs, defaults per queue.

        Returns:
            The running worker.

        Raises:
            ValueError: If the queue is unknown or already has a worker.
            TypeError: If the processor is not callable.
            QueueClosedError: If shutdown has begun.
        """
        name = QueueName(queue_name)
        if not callable(processor):
            raise TypeError(f"Processor for {name.value} must be callable")

        with self._lock:
            if self._state != LifecycleState.RUNNING:
                raise QueueClosedError(f"Queue manager is {self._state.value}, cannot register workers")
            if name in self.workers:
                raise ValueError(f"A worker is already registered for the {name.value} queue")

            worker = Worker(
                self.registry.get(name),
                processor,
                concurrency=concurrency or WORKER_CONCURRENCY[name.value],
                poll_interval_seconds=self.poll_interval_seconds,
                maintenance_interval_seconds=self.maintenance_interval_seconds,
            )
            worker.on("completed", partial(self._on_job_completed, name))
            worker.on("failed", partial(self._on_job_failed, name))
            worker.on("progress", partial(self._on_job_progress, name))

            self.processors[name] = processor
            self.workers[name] = worker
            worker.run()

        set_active_workers(self.active_worker_count)
        logger.info(f"{name.value.capitalize()} worker created (concurrency={worker.concurrency})")
        return worker

    def has_worker(self, queue_name: Any) -> bool:
        return QueueName(queue_name) in self.workers

    def _watch_connection(self, connection: ConnectionManager) -> None:
        connection.on("connect", lambda: logger.info("Queue store connected"))
        connection.on("error", lambda error: logger.error(f"Queue store error: {error}"))
        connection.on(
            "reconnecting",
            lambda attempt, delay_ms: logger.warning(f"Queue store reconnecting (attempt {attempt}, delay {delay_ms}ms)"),
        )
        connection.on("close", lambda: logger.info("Queue store connection closed"))

    def _on_job_completed(self, queue_name: QueueName, job: QueueJob, result: Any) -> None:
        self.metrics.record_completed(queue_name.value, job_type_of(job))
        logger.info(f"Job {job.id} completed in {queue_name.value} queue")

    def _on_job_failed(self, queue_name: QueueName, job: QueueJob, error: Exception, will_retry: bool) -> None:
        self.metrics.record_failed(queue_name.value, job_type_of(job), will_retry=will_retry)
        outcome = "will retry" if will_retry else "no attempts left"
        logger.error(f"Job {job.id} failed in {queue_name.value} queue ({outcome}): {error}")

    def _on_job_progress(self, queue_name: QueueName, job: QueueJob, progress: int) -> None:
        logger.debug(f"Job {job.id} progress: {progress}")

    # === Metrics ===

    def get_metrics(self) -> Dict[str, Any]:
        """Get counters plus live queue depths.

        Queue depths are read from the store on every call; a store failure
        is returned as a failure envelope.

        ``totalJobsFailed`` counts terminal failures only: a job that fails
        twice and then succeeds adds nothing to it. Dashboards built on the
        older per-attempt count (every failed attempt, retried or not) will
        read lower; retried attempts are exported separately as the
        ``voice_jobs_retries_total`` Prometheus counter.

        Returns:
            Envelope whose data holds the totals, per-type breakdowns,
            ``currentQueueCounts`` and ``workers``.
        """
        request_id = new_request_id()
        timestamp = iso_timestamp()

        try:
            counts: Dict[str, int] = {}
            for name, queue in self.registry.items():
                depth = queue.count()
                counts[name.value] = depth
                update_queue_depth(name.value, depth)
            data = self.metrics.snapshot()
        except Exception as e:
            logger.error(f"Failed to get metrics: {e}")
            return APIResponse.failure(str(e), request_id, timestamp).to_dict()

        data["currentQueueCounts"] = counts
        data["workers"] = self.active_worker_count
        return APIResponse.ok(data, request_id, timestamp).to_dict()

    def get_failed_jobs(self, queue_name: Any, limit: int = 100) -> APIResponse:
        """List terminally failed jobs of a queue, newest first.

        Failed jobs stay in the store for the failed retention window and
        are never retried automatically; this is what an operator reads
        before re-submitting them.

        Args:
            queue_name: calls, analytics or integrations.
            limit: Maximum number of jobs to return.

        Returns:
            Envelope whose data holds ``queueName`` and ``jobs``.
        """
        request_id = new_request_id()
        timestamp = iso_timestamp()

        try:
            try:
                name = QueueName(queue_name)
            except ValueError:
                raise JobValidationError(f"Invalid queue: {queue_name}") from None
            jobs = self.registry.get(name).list_jobs(state=JobState.FAILED, limit=limit)
        except Exception as e:
            logger.error(f"Failed to list failed jobs of {queue_name}: {e}")
            return APIResponse.failure(str(e), request_id, timestamp, error_type=type(e).__name__)

        data = {
            "queueName": name.value,
            "jobs": [
                {
                    "jobId": job.id,
                    "jobType": job.job_type,
                    "attemptsMade": job.attempts_made,
                    "lastError": job.last_error,
                    "failedAt": job.finished_at.isoformat() if job.finished_at else None,
                    "data": job.payload.get("data", {}),
                }
                for job in jobs
            ],
        }
        return APIResponse.ok(data, request_id, timestamp)

    def health_check(self) -> Dict[str, bool]:
        """Health of every queue and of the shared connection."""
        health = {name.value: queue.health_check() for name, queue in self.registry.items()}
        if self.connection is not None:
            health["connection"] = self.connection.health_check()
        return health

    # === Shutdown ===

    def shutdown(self) -> None:
        """Drain workers, then queues, then metrics, then the connection.

        Idempotent: a concurrent call waits for the first to finish and a
        call after shutdown returns immediately. Every step is attempted
        even if an earlier one fails.

        Raises:
            ShutdownError: If any step failed (first caller only).
        """
        with self._lock:
            if self._state == LifecycleState.CLOSED:
                return
            first_caller = self._state == LifecycleState.RUNNING
            self._state = LifecycleState.DRAINING

        if not first_caller:
            self._shutdown_done.wait()
            return

        logger.info("Shutting down QueueManager")
        failures: List[Tuple[str, BaseException]] = []

        for name, worker in list(self.workers.items()):
            self._run_step(f"close {name.value} worker", worker.close, failures)
        set_active_workers(0)
        logger.info("All workers closed")

        for name, queue in self.registry.items():
            self._run_step(f"close {name.value} queue", queue.close, failures)
        logger.info("All queues closed")

        self._run_step("close metrics listener", self.metrics.close, failures)
        logger.info("All event listeners closed")

        if self.connection is not None:
            self._run_step("close connection", self.connection.close, failures)
            logger.info("Redis connection closed")

        self._state = LifecycleState.CLOSED
        self._shutdown_done.set()

        if failures:
            raise ShutdownError(failures)
        logger.info("Shutdown complete")

    @staticmethod
    def _run_step(step: str, close: Any, failures: List[Tuple[str, BaseException]]) -> None:
        try:
            close()
        except Exception as e:
            logger.error(f"Error during shutdown ({step}): {e}")
            failures.append((step, e))
