"""Payload contracts for every job type.

Payloads travel as opaque dicts with camelCase keys; these models only
check that the fields a processor needs are present. Extra keys are kept.
"""

from datetime import date as calendar_date
from typing import Any, Dict, List, Literal, Optional, Type, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import JobValidationError


class JobPayload(BaseModel):
    """Base payload: camelCase aliases, extra keys allowed."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)


# --- calls ---


class TranscribePayload(JobPayload):
    audio_url: str = Field(alias="audioUrl", min_length=1)
    conversation_id: Optional[str] = Field(default=None, alias="conversationId")


class AnalyzePayload(JobPayload):
    conversation_id: str = Field(alias="conversationId", min_length=1)
    messages: List[Any]


class PostCallActionsPayload(JobPayload):
    conversation_id: str = Field(alias="conversationId", min_length=1)
    conversation_data: Dict[str, Any] = Field(alias="conversationData")


# --- analytics ---


class DailyAggregationPayload(JobPayload):
    date: str = Field(pattern=r"^\d{4}-\d{2}-\d{2}$")

    @field_validator("date")
    @classmethod
    def _calendar_date(cls, value: str) -> str:
        calendar_date.fromisoformat(value)
        return value


class SentimentAnalysisPayload(JobPayload):
    conversation_ids: List[str] = Field(alias="conversationIds", min_length=1)


class TrendCalculationPayload(JobPayload):
    start_date: str = Field(alias="startDate", min_length=1)
    end_date: str = Field(alias="endDate", min_length=1)
    metric: str = Field(min_length=1)


# --- integrations ---


class WebhookDeliveryPayload(JobPayload):
    url: str = Field(min_length=1)
    payload: Dict[str, Any]
    headers: Optional[Dict[str, str]] = None
    event_type: Optional[str] = Field(default=None, alias="eventType")


class EmailSendPayload(JobPayload):
    to: Union[str, List[str]]
    subject: str = Field(min_length=1)
    text: Optional[str] = None
    html: Optional[str] = None
    template_id: Optional[str] = Field(default=None, alias="templateId")

    @model_validator(mode="after")
    def _has_body(self) -> "EmailSendPayload":
        if not (self.text or self.html or self.template_id):
            raise ValueError("one of 'text', 'html' or 'templateId' is required")
        return self


class CustomerSyncPayload(JobPayload):
    customer_id: str = Field(alias="customerId", min_length=1)
    action: Literal["create", "update", "delete"]


PAYLOAD_MODELS: Dict[str, Type[JobPayload]] = {
    "transcribe": TranscribePayload,
    "analyze": AnalyzePayload,
    "post_call_actions": PostCallActionsPayload,
    "daily_aggregation": DailyAggregationPayload,
    "sentiment_analysis": SentimentAnalysisPayload,
    "trend_calculation": TrendCalculationPayload,
    "webhook_delivery": WebhookDeliveryPayload,
    "email_send": EmailSendPayload,
    "customer_sync": CustomerSyncPayload,
}


def _describe(error: Dict[str, Any]) -> str:
    location = ".".join(str(part) for part in error.get("loc", ()))
    message = error.get("msg", "invalid value")
    if location:
        return f"'{location}' {message.lower()}"
    return message.replace("Value error, ", "")


def validate_payload(job_type: str, data: Any) -> JobPayload:
    """Check a payload against its job type's contract.

    Args:
        job_type: A valid job type.
        data: The submitted payload.

    Returns:
        The parsed payload model.

    Raises:
        JobValidationError: If the payload is not an object or a required
            field is missing or malformed. The message names the field.
    """
    model = PAYLOAD_MODELS[job_type]
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise JobValidationError(f"Invalid payload for {job_type}: expected an object, got {type(data).__name__}")

    try:
        return model.model_validate(data)
    except ValidationError as e:
        details = "; ".join(_describe(error) for error in e.errors())
        raise JobValidationError(f"Invalid payload for {job_type}: {details}") from e
