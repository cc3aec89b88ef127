#!/usr/bin/env python3
"""Voice Jobs API Server.

Serves job submission, metrics and health over HTTP. Workers for any queue
given a processor run inside the server process, so submissions, worker
events and the ``/api/v1/queues/metrics`` counters share one QueueManager.

Usage:
    python -m voice_jobs.server [--host HOST] [--port PORT] [--backend BACKEND]
        [--call-processor module:function] ...
"""

import argparse
import logging
import sys
from typing import List, Optional

import uvicorn

from .api.app import create_app
from .api.dependencies import set_queue_manager
from .queue_manager import QueueManager
from .worker import load_processor

logger = logging.getLogger(__name__)


def main(argv: Optional[List[str]] = None):
    """Main entry point for the API server."""
    parser = argparse.ArgumentParser(
        description="Voice Jobs API Server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Submission-only API (workers run elsewhere against the same Redis)
    REDIS_URL=redis://localhost:6379 python -m voice_jobs.server

    # Single process with in-memory queues and a call worker
    python -m voice_jobs.server --backend memory \\
        --call-processor myapp.processors:process_call
""",
    )
    parser.add_argument(
        "--host",
        type=str,
        default="127.0.0.1",
        help="Host to bind to (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=8000,
        help="Port to bind to (default: 8000)",
    )
    parser.add_argument(
        "--backend",
        type=str,
        default=None,
        choices=["redis", "memory"],
        help="Queue backend (default: redis if REDIS_URL is set, else memory)",
    )
    parser.add_argument(
        "--call-processor",
        type=str,
        default=None,
        help="Run a calls worker in the server with this 'module:function'",
    )
    parser.add_argument(
        "--analytics-processor",
        type=str,
        default=None,
        help="Run an analytics worker in the server with this 'module:function'",
    )
    parser.add_argument(
        "--integration-processor",
        type=str,
        default=None,
        help="Run an integrations worker in the server with this 'module:function'",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="info",
        choices=["debug", "info", "warning", "error", "critical"],
        help="Log level (default: info)",
    )

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        call_processor = load_processor(args.call_processor)
        analytics_processor = load_processor(args.analytics_processor)
        integration_processor = load_processor(args.integration_processor)
        manager = QueueManager(backend_type=args.backend)
    except (ImportError, ValueError) as e:
        print(f"Error: {e}")
        sys.exit(2)

    manager.setup_workers(
        call_processor=call_processor,
        analytics_processor=analytics_processor,
        integration_processor=integration_processor,
    )
    # The app lifespan shuts this manager down when the server stops
    set_queue_manager(manager)

    print("=" * 60)
    print("VOICE JOBS API SERVER")
    print("=" * 60)
    print(f"Host: {args.host}")
    print(f"Port: {args.port}")
    print(f"Backend: {manager.backend_type}")
    print(f"Workers: {', '.join(name.value for name in manager.workers) or 'none'}")
    print(f"Log Level: {args.log_level}")
    print()
    print(f"OpenAPI docs: http://{args.host}:{args.port}/docs")
    print(f"Prometheus metrics: http://{args.host}:{args.port}/metrics")
    print("=" * 60)

    uvicorn.run(
        create_app(),
        host=args.host,
        port=args.port,
        log_level=args.log_level,
    )


if __name__ == "__main__":
    main()
