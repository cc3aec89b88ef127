"""API routes for job submission and queue monitoring.

This module defines the RESTful endpoints for:
- Submitting call, analytics and integration jobs
- Reading queue metrics and failed jobs
- Health checks
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from ..queue_manager import QueueManager
from ..registry import QueueName
from ..responses import APIResponse
from .dependencies import get_queue_manager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["queues"])


class CallJobRequest(BaseModel):
    """Body of a call job submission."""

    model_config = ConfigDict(populate_by_name=True)

    call_sid: str = Field(alias="callSid", description="Telephony call SID")
    action: str = Field(description="transcribe, analyze or post_call_actions")
    data: Optional[Dict[str, Any]] = Field(default=None, description="Job payload")
    priority: Optional[int] = Field(default=None, description="Priority 0-10, defaults to 5")


class TypedJobRequest(BaseModel):
    """Body of an analytics or integration job submission."""

    type: str = Field(description="Job type for the queue")
    data: Optional[Dict[str, Any]] = Field(default=None, description="Job payload")
    priority: Optional[int] = Field(default=None, description="Priority 0-10, defaults per queue")


def _submission_response(result: APIResponse) -> JSONResponse:
    """Map a submission envelope to 202, 400 or 503."""
    if result.success:
        status_code = status.HTTP_202_ACCEPTED
    elif result.error_type == "JobValidationError":
        status_code = status.HTTP_400_BAD_REQUEST
    else:
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return JSONResponse(status_code=status_code, content=result.to_dict())


@router.post(
    "/queues/calls",
    status_code=status.HTTP_202_ACCEPTED,
    summary="Submit a call job",
    description="Queue post-processing work for a call. The body is echoed in the response envelope.",
)
async def submit_call_job(
    request: CallJobRequest,
    manager: QueueManager = Depends(get_queue_manager),
) -> JSONResponse:
    """Submit a call job."""
    result = manager.submit(QueueName.CALLS, request.action, request.data, request.priority, call_sid=request.call_sid)
    return _submission_response(result)


@router.post(
    "/queues/analytics",
    status_code=status.HTTP_202_ACCEPTED,
    summary="Submit an analytics job",
)
async def submit_analytics_job(
    request: TypedJobRequest,
    manager: QueueManager = Depends(get_queue_manager),
) -> JSONResponse:
    """Submit an analytics job."""
    result = manager.submit(QueueName.ANALYTICS, request.type, request.data, request.priority)
    return _submission_response(result)


@router.post(
    "/queues/integrations",
    status_code=status.HTTP_202_ACCEPTED,
    summary="Submit an integration job",
)
async def submit_integration_job(
    request: TypedJobRequest,
    manager: QueueManager = Depends(get_queue_manager),
) -> JSONResponse:
    """Submit an integration job."""
    result = manager.submit(QueueName.INTEGRATIONS, request.type, request.data, request.priority)
    return _submission_response(result)


@router.get(
    "/queues/metrics",
    summary="Queue metrics",
    description="Job counters plus live queue depths and the running worker count.",
)
async def queue_metrics(
    manager: QueueManager = Depends(get_queue_manager),
) -> JSONResponse:
    """Get queue metrics."""
    result = manager.get_metrics()
    status_code = status.HTTP_200_OK if result["success"] else status.HTTP_503_SERVICE_UNAVAILABLE
    return JSONResponse(status_code=status_code, content=result)


@router.get(
    "/queues/{queue_name}/failed",
    summary="Failed jobs",
    description="Jobs that exhausted their attempts and are kept for the failed retention window.",
)
async def failed_jobs(
    queue_name: str,
    limit: int = Query(default=100, ge=1, le=1000),
    manager: QueueManager = Depends(get_queue_manager),
) -> JSONResponse:
    """List failed jobs of a queue."""
    result = manager.get_failed_jobs(queue_name, limit=limit)
    if result.success:
        status_code = status.HTTP_200_OK
    elif result.error_type == "JobValidationError":
        status_code = status.HTTP_400_BAD_REQUEST
    else:
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return JSONResponse(status_code=status_code, content=result.to_dict())


@router.get(
    "/health",
    summary="Health check",
    description="Check that every queue and the store connection are healthy.",
)
async def health_check(
    manager: QueueManager = Depends(get_queue_manager),
) -> JSONResponse:
    """Health check endpoint."""
    try:
        checks = manager.health_check()
    except Exception as e:
        logger.error(f"Queue health check failed: {e}")
        checks = {}

    healthy = bool(checks) and all(checks.values())
    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "healthy" if healthy else "unhealthy",
            "state": manager.lifecycle_state.value,
            "checks": checks,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )
