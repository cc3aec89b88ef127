"""Bounded worker pools bound to a single queue.

A worker runs a claim loop on its own thread and hands claimed jobs to a
thread pool sized to its concurrency. Outcomes are reported through event
listeners so callers can keep metrics outside the processor.
"""

import importlib
import logging
import threading
import time
import uuid
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from .config import QUEUE_MAINTENANCE_INTERVAL_SECONDS, QUEUE_POLL_INTERVAL_SECONDS
from .errors import JobLockError
from .metrics import track_job_execution
from .queue import QueueBackend
from .queue.models import QueueJob

logger = logging.getLogger(__name__)

WORKER_EVENTS = ("completed", "failed", "progress", "error", "closed")


class WorkerState(str, Enum):
    """Lifecycle of a worker."""

    RUNNING = "running"
    CLOSED = "closed"


class JobContext:
    """The view of a claimed job handed to a processor.

    Attributes:
        job: The claimed job.
        queue_name: Queue the job was claimed from.
    """

    def __init__(self, job: QueueJob, worker: "Worker"):
        self.job = job
        self.queue_name = worker.queue.name
        self._worker = worker

    @property
    def id(self) -> str:
        return self.job.id

    @property
    def job_type(self) -> str:
        return self.job.job_type

    @property
    def data(self) -> Dict[str, Any]:
        return self.job.payload

    @property
    def attempts_made(self) -> int:
        return self.job.attempts_made

    def update_progress(self, progress: int) -> None:
        """Report progress (0-100).

        Failures are logged and never abort the job.
        """
        try:
            value = int(progress)
            if not 0 <= value <= 100:
                raise ValueError(f"progress must be between 0 and 100, got {progress}")
            self._worker.queue.update_progress(self.job.id, value)
            self.job.progress = value
        except Exception as e:
            logger.warning(f"Failed to report progress for job {self.job.id}: {e}")
            return
        self._worker._emit("progress", self.job, value)


Processor = Callable[[JobContext], Any]


def load_processor(path: Optional[str]) -> Optional[Processor]:
    """Import a processor from a 'module:function' path.

    Args:
        path: Import path such as 'myapp.processors:transcribe'.

    Returns:
        The processor callable, or None if no path was given.

    Raises:
        ValueError: If the path is malformed or does not name a callable.
    """
    if not path:
        return None
    if ":" not in path:
        raise ValueError(f"Processor path must look like 'module:function', got '{path}'")

    module_name, attribute = path.split(":", 1)
    module = importlib.import_module(module_name)
    processor = getattr(module, attribute, None)
    if not callable(processor):
        raise ValueError(f"'{path}' is not a callable")
    return processor


class Worker:
    """Consumes one queue with bounded parallelism.

    While running, the worker keeps up to ``concurrency`` jobs active at a
    time and refreshes their locks so long-running jobs are never requeued
    as stale. Closing stops claiming new jobs and waits for in-flight jobs
    to finish; they are never interrupted.
    """

    def __init__(
        self,
        queue: QueueBackend,
        processor: Processor,
        concurrency: int = 1,
        worker_id: Optional[str] = None,
        poll_interval_seconds: float = QUEUE_POLL_INTERVAL_SECONDS,
        maintenance_interval_seconds: float = QUEUE_MAINTENANCE_INTERVAL_SECONDS,
        lock_renew_interval_seconds: Optional[float] = None,
    ):
        """Initialize a worker. Call :meth:`run` to start it.

        Args:
            queue: The queue to consume.
            processor: Callable invoked with a JobContext; may raise.
            concurrency: Maximum simultaneously active jobs.
            worker_id: Identifier recorded on claimed jobs.
            poll_interval_seconds: Sleep between claims when the queue is idle.
            maintenance_interval_seconds: How often stale locks and retention
                are swept.
            lock_renew_interval_seconds: How often locks of in-flight jobs
                are refreshed; defaults to a quarter of the queue's stale
                job timeout.

        Raises:
            ValueError: If concurrency is below 1.
        """
        if concurrency < 1:
            raise ValueError(f"concurrency must be at least 1, got {concurrency}")

        self.queue = queue
        self.processor = processor
        self.concurrency = concurrency
        self.worker_id = worker_id or f"{queue.name}-{uuid.uuid4().hex[:8]}"
        self.poll_interval_seconds = poll_interval_seconds
        self.maintenance_interval_seconds = maintenance_interval_seconds
        if lock_renew_interval_seconds is None:
            lock_renew_interval_seconds = queue.config.stale_job_timeout_seconds / 4
        self.lock_renew_interval_seconds = lock_renew_interval_seconds

        self._listeners: Dict[str, List[Callable[..., Any]]] = defaultdict(list)
        self._slots = threading.Semaphore(concurrency)
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._in_flight: Set[str] = set()
        self._in_flight_lock = threading.Lock()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._thread: Optional[threading.Thread] = None
        self._last_maintenance = 0.0
        self._last_renewal = 0.0
        self._state: Optional[WorkerState] = None

    @property
    def state(self) -> Optional[WorkerState]:
        return self._state

    @property
    def running(self) -> bool:
        return self._state == WorkerState.RUNNING

    @property
    def in_flight(self) -> Set[str]:
        """Ids of the jobs currently being processed."""
        with self._in_flight_lock:
            return set(self._in_flight)

    # === Events ===

    def on(self, event: str, listener: Callable[..., Any]) -> None:
        """Register a listener.

        Events and listener arguments:
            completed(job, result), failed(job, error, will_retry),
            progress(job, progress), error(exception), closed().

        Raises:
            ValueError: If the event name is unknown.
        """
        if event not in WORKER_EVENTS:
            raise ValueError(f"Unknown worker event: {event}")
        self._listeners[event].append(listener)

    def _emit(self, event: str, *args: Any) -> None:
        for listener in list(self._listeners[event]):
            try:
                listener(*args)
            except Exception as e:
                logger.error(f"Worker {self.worker_id} '{event}' listener failed: {e}")

    # === Lifecycle ===

    def run(self) -> "Worker":
        """Start the claim loop on a background thread."""
        with self._lock:
            if self._state is not None:
                return self
            self._executor = ThreadPoolExecutor(
                max_workers=self.concurrency,
                thread_name_prefix=f"{self.worker_id}-job",
            )
            self._thread = threading.Thread(target=self._loop, name=self.worker_id, daemon=True)
            self._state = WorkerState.RUNNING
            self._thread.start()

        logger.info(f"Worker {self.worker_id} started on {self.queue.name} (concurrency={self.concurrency})")
        return self

    def close(self) -> None:
        """Stop claiming and wait for in-flight jobs. Idempotent."""
        with self._lock:
            if self._state != WorkerState.RUNNING:
                self._state = WorkerState.CLOSED
                return
            self._stop.set()
            thread, executor = self._thread, self._executor

        if thread is not None:
            thread.join()
        if executor is not None:
            executor.shutdown(wait=True)

        self._state = WorkerState.CLOSED
        logger.info(f"Worker {self.worker_id} closed")
        self._emit("closed")

    # === Claim loop ===

    def _loop(self) -> None:
        while not self._stop.is_set():
            self._renew_locks()
            if not self._slots.acquire(timeout=self.poll_interval_seconds):
                continue

            try:
                self._maintain()
                job = self.queue.claim(worker_id=self.worker_id)
            except Exception as e:
                self._slots.release()
                logger.error(f"Worker {self.worker_id} failed to claim from {self.queue.name}: {e}")
                self._emit("error", e)
                self._stop.wait(self.poll_interval_seconds)
                continue

            if job is None:
                self._slots.release()
                self._stop.wait(self.poll_interval_seconds)
                continue

            with self._in_flight_lock:
                self._in_flight.add(job.id)
            self._executor.submit(self._process, job)

        # Claiming has stopped; keep the remaining locks fresh until they finish
        while self.in_flight:
            self._renew_locks()
            time.sleep(self.poll_interval_seconds)

    def _maintain(self) -> None:
        now = time.monotonic()
        if now - self._last_maintenance < self.maintenance_interval_seconds:
            return
        self._last_maintenance = now
        self.queue.requeue_stale_jobs()
        self.queue.prune()

    def _renew_locks(self) -> None:
        now = time.monotonic()
        if now - self._last_renewal < self.lock_renew_interval_seconds:
            return
        self._last_renewal = now

        job_ids = self.in_flight
        if not job_ids:
            return
        try:
            extended = self.queue.extend_locks(job_ids, self.worker_id)
        except Exception as e:
            logger.error(f"Worker {self.worker_id} failed to extend locks in {self.queue.name}: {e}")
            self._emit("error", e)
            return
        logger.debug(f"Worker {self.worker_id} extended {extended}/{len(job_ids)} locks")

    # === Execution ===

    def _process(self, job: QueueJob) -> None:
        context = JobContext(job, self)
        start = time.time()
        logger.info(f"Processing job {job.id} ({job.job_type}) attempt {job.attempts_made + 1}")

        try:
            try:
                with track_job_execution(self.queue.name, job.id, job.job_type):
                    result = self.processor(context)
            except Exception as e:
                logger.error(f"Job {job.id} failed after {(time.time() - start) * 1000:.0f}ms: {e}")
                self._handle_failure(job, e)
                return

            try:
                self.queue.complete(job.id, result, worker_id=self.worker_id)
            except JobLockError as e:
                logger.warning(f"Discarding result of job {job.id}: {e}")
                return
            except Exception as e:
                logger.error(f"Failed to store result of job {job.id}: {e}")
                self._handle_failure(job, e)
                return

            logger.info(f"Job {job.id} completed in {(time.time() - start) * 1000:.0f}ms")
            self._emit("completed", job, result)
        finally:
            with self._in_flight_lock:
                self._in_flight.discard(job.id)
            self._slots.release()

    def _handle_failure(self, job: QueueJob, error: Exception) -> None:
        try:
            info = self.queue.fail(job.id, str(error), type(error).__name__, worker_id=self.worker_id)
        except JobLockError as e:
            logger.warning(f"Discarding failure of job {job.id}: {e}")
            return
        except Exception as store_error:
            logger.error(f"Failed to record failure of job {job.id}: {store_error}")
            self._emit("error", store_error)
            return

        will_retry = bool(info and info.will_retry)
        if will_retry:
            logger.info(f"Job {job.id} will retry in {info.delay_ms}ms (attempt {info.attempt}/{job.max_attempts})")
        self._emit("failed", job, error, will_retry)
