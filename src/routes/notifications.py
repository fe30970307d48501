"""Notification queue routes."""

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from src.database import get_db
from src.handlers.notification_queue import list_notifications, queue_notification
from src.handlers.queue_processor import QueueProcessor
from src.models.notification_queue import STATUS_PENDING
from src.schemas.notifications import (
    NotifyRequest,
    NotifyResponse,
    ProcessResponse,
    QueuedNotificationOut,
)

router = APIRouter(tags=["notifications"])


def get_processor(request: Request) -> QueueProcessor:
    processor = getattr(request.app.state, "processor", None)
    if processor is None:
        processor = QueueProcessor()
        request.app.state.processor = processor
    return processor


@router.post("/notifications", response_model=NotifyResponse, status_code=status.HTTP_202_ACCEPTED)
async def enqueue_notification(
    body: NotifyRequest,
    db: AsyncSession = Depends(get_db),
) -> NotifyResponse:
    """Queue an issue event from the tracker.

    Events for the same issue and user within the debounce window are merged
    into one pending notification.
    """
    row = await queue_notification(db, body.issue_id, body.user_id, body.event_type, body.event_payload)
    if row is None:
        return NotifyResponse(status="ignored")
    return NotifyResponse(status="queued", notification_id=row.id)


@router.get("/notifications", response_model=list[QueuedNotificationOut])
async def get_notifications(
    status_filter: str = Query(STATUS_PENDING, alias="status", pattern="^(pending|processing|sent|failed)$"),
    db: AsyncSession = Depends(get_db),
) -> list[QueuedNotificationOut]:
    return await list_notifications(db, status_filter)


@router.get("/notifications/pending", response_model=list[QueuedNotificationOut])
async def get_pending_notifications(db: AsyncSession = Depends(get_db)) -> list[QueuedNotificationOut]:
    """Pending notifications with issue details, for monitoring queue state."""
    return await list_notifications(db, STATUS_PENDING)


@router.post("/notifications/process", response_model=ProcessResponse)
async def process_notifications(processor: QueueProcessor = Depends(get_processor)) -> ProcessResponse:
    """Run one processor cycle now instead of waiting for the next tick."""
    return ProcessResponse(processed=await processor.process_ready_notifications())
