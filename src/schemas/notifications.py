"""Pydantic models for notification events and queue introspection."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class Change(BaseModel):
    """One normalized field change extracted from an issue event."""

    model_config = ConfigDict(frozen=True)

    type: str
    old: Optional[str] = None
    new: Optional[str] = None
    value: Optional[str] = None
    is_subtask: bool = False
    subtask_key: Optional[str] = None
    title: Optional[str] = None


class NotifyRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    issue_id: int
    user_id: Optional[int] = None
    event_type: str
    event_payload: dict[str, Any] = Field(default_factory=dict)


class NotifyResponse(BaseModel):
    status: str
    notification_id: Optional[int] = None


class QueuedNotificationOut(BaseModel):
    id: int
    issue_id: int
    user_id: int
    event_type: str
    event_payload: Optional[dict[str, Any]] = None
    scheduled_at: datetime
    first_queued_at: datetime
    status: str
    attempt_count: int = 0
    error_message: Optional[str] = None
    sent_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    issue_key: Optional[str] = None
    issue_title: Optional[str] = None
    user_name: Optional[str] = None


class ProcessResponse(BaseModel):
    processed: int


class SendResult(BaseModel):
    """Outcome of a webhook delivery; failures are values, not exceptions."""

    success: bool
    error: Optional[str] = None
    attempts: int = 0
