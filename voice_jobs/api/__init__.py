"""HTTP surface for job submission and queue metrics.

This module provides the RESTful API endpoints used by the webhook layer
and the operations dashboard.
"""

from .app import create_app
from .dependencies import get_queue_manager
from .routes import router

__all__ = [
    "create_app",
    "router",
    "get_queue_manager",
]
