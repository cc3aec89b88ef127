"""Dependency injection for the API layer.

This module provides the queue manager shared by all routes.
"""

import logging
from typing import Generator, Optional

from ..queue_manager import QueueManager

logger = logging.getLogger(__name__)

# Global instance (can be replaced for testing)
_queue_manager: Optional[QueueManager] = None


def get_queue_manager() -> Generator[QueueManager, None, None]:
    """Get the queue manager instance.

    This is a FastAPI dependency that provides the queue manager,
    configured from the environment on first use.
    """
    global _queue_manager
    if _queue_manager is None:
        _queue_manager = QueueManager()
    yield _queue_manager


def set_queue_manager(manager: QueueManager) -> None:
    """Set the queue manager instance (for testing)."""
    global _queue_manager
    _queue_manager = manager


def reset_dependencies() -> None:
    """Shut down and forget the queue manager."""
    global _queue_manager
    if _queue_manager:
        try:
            _queue_manager.shutdown()
        except Exception as e:
            logger.error(f"Queue manager shutdown failed: {e}")
        _queue_manager = None
