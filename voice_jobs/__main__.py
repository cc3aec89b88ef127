#!/usr/bin/env python3
"""Voice Jobs - CLI entrypoint that runs workers for the job queues."""

import argparse
import json
import logging
import signal
import sys
import threading
from typing import List, Optional

from .config import WORKER_CONCURRENCY
from .errors import ShutdownError
from .queue_manager import QueueManager
from .worker import load_processor

logger = logging.getLogger(__name__)


def main(argv: Optional[List[str]] = None):
    """Main entry point for the worker process."""
    parser = argparse.ArgumentParser(
        description="Voice Jobs - run workers for the calls, analytics and integrations queues",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
Default concurrency: {', '.join(f'{name}={count}' for name, count in WORKER_CONCURRENCY.items())}

Examples:
  # Process call jobs only
  python -m voice_jobs --call-processor myapp.processors:process_call

  # Process every queue against a local Redis
  REDIS_URL=redis://localhost:6379 python -m voice_jobs \\
      --call-processor myapp.processors:process_call \\
      --analytics-processor myapp.processors:process_analytics \\
      --integration-processor myapp.processors:process_integration
""",
    )
    parser.add_argument(
        "--call-processor",
        type=str,
        default=None,
        help="Processor for the calls queue, as 'module:function'",
    )
    parser.add_argument(
        "--analytics-processor",
        type=str,
        default=None,
        help="Processor for the analytics queue, as 'module:function'",
    )
    parser.add_argument(
        "--integration-processor",
        type=str,
        default=None,
        help="Processor for the integrations queue, as 'module:function'",
    )
    parser.add_argument(
        "--backend",
        type=str,
        default=None,
        choices=["redis", "memory"],
        help="Queue backend (default: redis if REDIS_URL is set, else memory)",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose output",
    )

    args = parser.parse_args(argv)

    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(level=log_level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    try:
        call_processor = load_processor(args.call_processor)
        analytics_processor = load_processor(args.analytics_processor)
        integration_processor = load_processor(args.integration_processor)
    except (ImportError, ValueError) as e:
        print(f"Error: {e}")
        sys.exit(2)

    if not (call_processor or analytics_processor or integration_processor):
        print("Error: at least one of --call-processor, --analytics-processor or --integration-processor is required")
        sys.exit(2)

    try:
        manager = QueueManager(backend_type=args.backend)
    except ValueError as e:
        print(f"Error: {e}")
        sys.exit(2)

    stop = threading.Event()

    def request_stop(signum, frame):
        logger.info(f"Received {signal.Signals(signum).name}, shutting down")
        stop.set()

    signal.signal(signal.SIGINT, request_stop)
    signal.signal(signal.SIGTERM, request_stop)

    manager.setup_workers(
        call_processor=call_processor,
        analytics_processor=analytics_processor,
        integration_processor=integration_processor,
    )

    print("=" * 60)
    print("VOICE JOBS - Workers running (Ctrl+C to stop)")
    print(f"  Backend: {manager.backend_type}")
    print(f"  Queues: {', '.join(name.value for name in manager.workers)}")
    print("=" * 60)

    while not stop.wait(timeout=1.0):
        pass

    try:
        manager.shutdown()
    except ShutdownError as e:
        print(f"Error: {e}")
        sys.exit(1)

    # Taken after the drain so jobs finished during shutdown are counted
    metrics = manager.metrics.snapshot()
    summary = {key: metrics[key] for key in ("totalJobsAdded", "totalJobsCompleted", "totalJobsFailed")}
    print(f"Final metrics: {json.dumps(summary)}")


if __name__ == "__main__":
    main()
