"""Response envelope returned by every QueueManager operation."""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


def iso_timestamp() -> str:
    """Current UTC time as ISO-8601 with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def new_request_id() -> str:
    return str(uuid.uuid4())


class APIResponse(BaseModel):
    """Uniform ``{success, data, error, timestamp, requestId}`` envelope.

    Attributes:
        success: Whether the operation succeeded.
        data: Operation result, None on failure.
        error: Error message, None on success.
        timestamp: When the request was handled (ISO-8601).
        request_id: UUID v4 identifying the request.
        error_type: Exception class behind a failure; not serialized.
    """

    model_config = ConfigDict(populate_by_name=True)

    success: bool
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    timestamp: str = Field(default_factory=iso_timestamp)
    request_id: str = Field(default_factory=new_request_id, alias="requestId")
    error_type: Optional[str] = Field(default=None, exclude=True)

    @classmethod
    def ok(cls, data: Dict[str, Any], request_id: str, timestamp: str) -> "APIResponse":
        return cls(success=True, data=data, error=None, timestamp=timestamp, request_id=request_id)

    @classmethod
    def failure(
        cls, error: str, request_id: str, timestamp: str, error_type: Optional[str] = None
    ) -> "APIResponse":
        return cls(
            success=False, data=None, error=error, timestamp=timestamp, request_id=request_id, error_type=error_type
        )

    def to_dict(self) -> Dict[str, Any]:
        """The envelope with camelCase keys."""
        return self.model_dump(by_alias=True)
