"""Debounced notification batches, one pending row per (issue, user)."""

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Index, Integer, String, Text, text

from src.database import Base

STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_SENT = "sent"
STATUS_FAILED = "failed"


def as_naive_utc(value: datetime) -> datetime:
    """Naive UTC, matching how SQLite hands DateTime values back."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def utcnow() -> datetime:
    return as_naive_utc(datetime.now(timezone.utc))


class QueuedNotification(Base):
    __tablename__ = "notification_queue"
    __table_args__ = (
        Index(
            "uq_notification_queue_pending",
            "issue_id",
            "user_id",
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
        Index("ix_notification_queue_status_scheduled", "status", "scheduled_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    issue_id = Column(Integer, nullable=False)
    user_id = Column(Integer, nullable=False)
    event_type = Column(String, nullable=False)
    event_payload = Column(Text, nullable=False)
    scheduled_at = Column(DateTime, nullable=False)
    first_queued_at = Column(DateTime, nullable=False)
    status = Column(String, nullable=False, default=STATUS_PENDING)
    attempt_count = Column(Integer, nullable=False, default=0)
    processing_started_at = Column(DateTime, nullable=True)
    sent_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)
    revision = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow, nullable=False)
