"""Persistent debounce queue for issue notifications.

Each (issue, user) pair has at most one ``pending`` row.  New events are
merged into it and push ``scheduled_at`` out by the debounce window, capped
at ``first_queued_at + max_wait`` so a busy issue still notifies.

Enqueue never reads-then-writes blindly: inserts are conditional on the
partial unique index and merges are revision-guarded updates, retried when
another writer (or the processor) got there first.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, select, text, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.config import settings
from src.database import async_session
from src.handlers.change_extractor import extract_changes
from src.handlers.notification_filter import could_qualify
from src.models.issue import Issue, User
from src.models.notification_queue import (
    STATUS_PENDING,
    STATUS_PROCESSING,
    QueuedNotification,
    as_naive_utc,
    utcnow,
)
from src.schemas.notifications import QueuedNotificationOut

logger = logging.getLogger(__name__)

_MAX_MERGE_ATTEMPTS = 100
_PENDING_WHERE = text("status = 'pending'")
_META_FIELDS = ("issue_key", "issue_title")


class QueueContentionError(RuntimeError):
    """Raised when a merge keeps losing the revision race."""


def _is_subtask_event(event: dict) -> bool:
    return str(event.get("action_type", "")).startswith("subtask_") or bool(event.get("is_subtask"))


def split_event_payload(event_payload: dict) -> tuple[list[dict], dict]:
    """Normalize an incoming payload into storable events plus issue metadata.

    ``issue_updated`` wrappers are flattened so each field merges on its own
    key; grouped ``{"changes": [...]}`` payloads without an action type are
    taken as a list of events.
    """
    meta: dict = {}
    if not _is_subtask_event(event_payload):
        meta = {field: event_payload[field] for field in _META_FIELDS if event_payload.get(field)}

    action_type = event_payload.get("action_type")
    nested = event_payload.get("changes")
    if isinstance(nested, list) and action_type in (None, "issue_updated"):
        return [dict(event) for event in nested], meta
    return [dict(event_payload)], meta


def _merge_key(event: dict) -> str:
    action_type = str(event.get("action_type", ""))
    if _is_subtask_event(event):
        return f"{action_type}:{event.get('issue_key')}"
    return action_type


def _replace_event(previous: dict, incoming: dict) -> dict:
    if incoming.get("action_type") == "subtask_updated":
        inner: dict[str, dict] = {}
        _merge_events(inner, previous.get("changes") or [])
        _merge_events(inner, incoming.get("changes") or [])
        return {**incoming, "changes": list(inner.values())}

    merged = dict(incoming)
    if "first_old_value" in previous:
        merged["first_old_value"] = previous["first_old_value"]
    elif "old_value" in previous:
        merged["first_old_value"] = previous["old_value"]
    return merged


def _merge_events(entries: dict[str, dict], events: list[dict]) -> None:
    for event in events:
        key = _merge_key(event)
        if key in entries:
            entries[key] = _replace_event(entries[key], event)
        else:
            entries[key] = dict(event)


def merge_event_payload(existing: dict, events: list[dict], meta: dict | None = None) -> dict:
    """Merge new events into a stored ``{"changes": [...]}`` document.

    Events sharing a merge key replace the earlier one while keeping the
    earliest ``old_value`` as ``first_old_value``; new keys append in
    arrival order.
    """
    entries: dict[str, dict] = {}
    _merge_events(entries, existing.get("changes") or [])
    _merge_events(entries, events)

    merged: dict[str, Any] = {field: existing[field] for field in _META_FIELDS if existing.get(field)}
    merged.update(meta or {})
    merged["changes"] = list(entries.values())
    return merged


def _build_insert(db: AsyncSession, values: dict):
    if db.bind is not None and db.bind.dialect.name == "postgresql":
        stmt = pg_insert(QueuedNotification).values(**values)
    else:
        stmt = sqlite_insert(QueuedNotification).values(**values)
    return stmt.on_conflict_do_nothing(
        index_elements=["issue_id", "user_id"],
        index_where=_PENDING_WHERE,
    )


async def get_pending(db: AsyncSession, issue_id: int, user_id: int) -> QueuedNotification | None:
    result = await db.execute(
        select(QueuedNotification)
        .where(
            QueuedNotification.issue_id == issue_id,
            QueuedNotification.user_id == user_id,
            QueuedNotification.status == STATUS_PENDING,
        )
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


def _has_candidate(events: list[dict]) -> bool:
    return any(could_qualify(change) for event in events for change in extract_changes(event))


async def queue_notification(
    db: AsyncSession,
    issue_id: int,
    user_id: int | None,
    event_type: str,
    event_payload: dict,
    *,
    now: datetime | None = None,
) -> QueuedNotification | None:
    """Insert or merge a pending notification for ``(issue_id, user_id)``.

    Returns the pending row, or ``None`` when the event was dropped (no user,
    or nothing in it could ever qualify for a notification).
    """
    if user_id is None:
        logger.warning("Dropping %s notification for issue %s: no user id", event_type, issue_id)
        return None

    events, meta = split_event_payload(event_payload)
    if not _has_candidate(events):
        logger.debug("Ignoring %s event for issue %s: no notifiable changes", event_type, issue_id)
        return None

    now = as_naive_utc(now) if now else utcnow()
    window = timedelta(seconds=settings.debounce_window_seconds)
    max_wait = timedelta(seconds=settings.max_wait_seconds)

    for _ in range(_MAX_MERGE_ATTEMPTS):
        payload = {**meta, "changes": events}
        inserted = await db.execute(
            _build_insert(
                db,
                {
                    "issue_id": issue_id,
                    "user_id": user_id,
                    "event_type": event_type,
                    "event_payload": json.dumps(payload, default=str),
                    "scheduled_at": now + window,
                    "first_queued_at": now,
                    "status": STATUS_PENDING,
                    "attempt_count": 0,
                    "revision": 0,
                    "created_at": now,
                },
            )
        )
        if inserted.rowcount == 1:
            await db.commit()
            row = await get_pending(db, issue_id, user_id)
            logger.info("Queued %s notification for issue %s (user %s)", event_type, issue_id, user_id)
            return row

        row = await get_pending(db, issue_id, user_id)
        if row is None:
            # Claimed by the processor between our insert and read.
            await db.rollback()
            continue

        merged = merge_event_payload(json.loads(row.event_payload), events, meta)
        scheduled_at = min(now + window, row.first_queued_at + max_wait)
        result = await db.execute(
            update(QueuedNotification)
            .where(
                QueuedNotification.id == row.id,
                QueuedNotification.revision == row.revision,
                QueuedNotification.status == STATUS_PENDING,
            )
            .values(
                event_payload=json.dumps(merged, default=str),
                event_type=event_type,
                scheduled_at=scheduled_at,
                revision=row.revision + 1,
            )
        )
        if result.rowcount == 1:
            await db.commit()
            await db.refresh(row)
            logger.debug(
                "Merged %s event into notification %s, due %s", event_type, row.id, scheduled_at.isoformat()
            )
            return row
        await db.rollback()

    raise QueueContentionError(
        f"Could not merge notification for issue {issue_id} / user {user_id} "
        f"after {_MAX_MERGE_ATTEMPTS} attempts"
    )


async def _recover_orphan(db: AsyncSession, orphan_id: int, max_wait: timedelta) -> str:
    """Return one orphan to the queue, folding it into a newer pending row if any.

    The orphan's events are older than the pending row's, so they form the
    base and the pending row's events merge on top.
    """
    for _ in range(_MAX_MERGE_ATTEMPTS):
        orphan = await db.get(QueuedNotification, orphan_id, populate_existing=True)
        if orphan is None or orphan.status != STATUS_PROCESSING:
            await db.rollback()
            return "gone"

        pending = await get_pending(db, orphan.issue_id, orphan.user_id)
        if pending is None:
            try:
                result = await db.execute(
                    update(QueuedNotification)
                    .where(QueuedNotification.id == orphan.id, QueuedNotification.status == STATUS_PROCESSING)
                    .values(status=STATUS_PENDING, processing_started_at=None, revision=orphan.revision + 1)
                )
                await db.commit()
            except IntegrityError:
                # A new pending row appeared for the pair; merge into it instead.
                await db.rollback()
                continue
            return "reset" if result.rowcount == 1 else "gone"

        newer = json.loads(pending.event_payload)
        newer_meta = {field: newer[field] for field in _META_FIELDS if newer.get(field)}
        merged = merge_event_payload(json.loads(orphan.event_payload), newer.get("changes") or [], newer_meta)
        first_queued_at = min(orphan.first_queued_at, pending.first_queued_at)
        result = await db.execute(
            update(QueuedNotification)
            .where(
                QueuedNotification.id == pending.id,
                QueuedNotification.revision == pending.revision,
                QueuedNotification.status == STATUS_PENDING,
            )
            .values(
                event_payload=json.dumps(merged, default=str),
                first_queued_at=first_queued_at,
                scheduled_at=min(pending.scheduled_at, first_queued_at + max_wait),
                revision=pending.revision + 1,
            )
        )
        if result.rowcount != 1:
            await db.rollback()
            continue
        await db.execute(delete(QueuedNotification).where(QueuedNotification.id == orphan.id))
        await db.commit()
        logger.info("Merged orphaned notification %s into pending notification %s", orphan.id, pending.id)
        return "merged"

    raise QueueContentionError(f"Could not recover orphaned notification {orphan_id}")


async def reset_orphaned(db: AsyncSession) -> int:
    """Put rows left in ``processing`` by a crashed process back in the queue.

    Each orphan either becomes ``pending`` again or, when its pair already
    has a newer pending row, is merged into that row and removed.  Returns
    the number of orphans recovered either way.
    """
    result = await db.execute(
        select(QueuedNotification.id)
        .where(QueuedNotification.status == STATUS_PROCESSING)
        .order_by(QueuedNotification.id.asc())
    )
    orphan_ids = list(result.scalars())
    await db.rollback()

    max_wait = timedelta(seconds=settings.max_wait_seconds)
    recovered = 0
    for orphan_id in orphan_ids:
        outcome = await _recover_orphan(db, orphan_id, max_wait)
        if outcome != "gone":
            recovered += 1
    if recovered:
        logger.info("Recovered %d orphaned 'processing' notifications", recovered)
    return recovered


async def list_notifications(db: AsyncSession, status: str = STATUS_PENDING) -> list[QueuedNotificationOut]:
    """Queue rows in ``status`` with issue and user details, oldest due first."""
    result = await db.execute(
        select(QueuedNotification, Issue.key, Issue.title, User.name)
        .outerjoin(Issue, Issue.id == QueuedNotification.issue_id)
        .outerjoin(User, User.id == QueuedNotification.user_id)
        .where(QueuedNotification.status == status)
        .order_by(QueuedNotification.scheduled_at.asc())
    )
    items: list[QueuedNotificationOut] = []
    for row, issue_key, issue_title, user_name in result.all():
        payload = json.loads(row.event_payload) if row.event_payload else None
        items.append(
            QueuedNotificationOut(
                id=row.id,
                issue_id=row.issue_id,
                user_id=row.user_id,
                event_type=row.event_type,
                event_payload=payload,
                scheduled_at=row.scheduled_at,
                first_queued_at=row.first_queued_at,
                status=row.status,
                attempt_count=row.attempt_count or 0,
                error_message=row.error_message,
                sent_at=row.sent_at,
                created_at=row.created_at,
                issue_key=issue_key or (payload or {}).get("issue_key"),
                issue_title=issue_title or (payload or {}).get("issue_title"),
                user_name=user_name,
            )
        )
    return items


class Notifier:
    """Fire-and-forget entry point for the tracker's CRUD layer.

    ``notify`` returns immediately; the enqueue runs as a background task on
    its own session and failures are logged, never raised to the caller.
    """

    def __init__(self, session_factory: async_sessionmaker | None = None) -> None:
        self._session_factory = session_factory or async_session
        self._tasks: set[asyncio.Task] = set()

    def notify(
        self,
        issue_id: int,
        user_id: int | None,
        event_type: str,
        event_payload: dict,
    ) -> asyncio.Task:
        task = asyncio.create_task(self._enqueue(issue_id, user_id, event_type, event_payload))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _enqueue(self, issue_id: int, user_id: int | None, event_type: str, event_payload: dict) -> None:
        try:
            async with self._session_factory() as db:
                await queue_notification(db, issue_id, user_id, event_type, event_payload)
        except Exception:
            logger.exception("Failed to queue %s notification for issue %s", event_type, issue_id)

    async def drain(self, timeout: float) -> bool:
        """Wait for outstanding enqueues; False if some were still running."""
        if not self._tasks:
            return True
        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        return not pending
