"""Background processor that delivers due notification batches.

Every ``poll_interval`` seconds, up to ``batch_size`` pending rows whose
``scheduled_at`` has passed are claimed oldest-first, rendered from current
issue state, and sent.  Rows are handled independently: one failure marks
that row ``failed`` and the cycle moves on.

Delivery is at-least-once.  A process that dies mid-send leaves its row in
``processing``; ``start()`` puts such rows back to ``pending``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import suppress
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from src.clients.discord_client import DiscordClient
from src.config import settings
from src.database import async_session
from src.handlers.notification_queue import reset_orphaned
from src.handlers.payload_builder import prepare_notification_payload
from src.models.notification_queue import (
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_PROCESSING,
    STATUS_SENT,
    QueuedNotification,
    as_naive_utc,
    utcnow,
)

logger = logging.getLogger(__name__)


class QueueProcessor:
    def __init__(
        self,
        session_factory: async_sessionmaker | None = None,
        client: DiscordClient | None = None,
        webhook_url: str | None = None,
        poll_interval: float | None = None,
        batch_size: int | None = None,
    ) -> None:
        self._session_factory = session_factory or async_session
        self._client = client or DiscordClient()
        self._webhook_url = settings.discord_webhook_url if webhook_url is None else webhook_url
        self._poll_interval = settings.poll_interval_seconds if poll_interval is None else poll_interval
        self._batch_size = settings.batch_size if batch_size is None else batch_size
        self._task: asyncio.Task | None = None
        self._stopping = False
        self.is_processing = False

    @property
    def running(self) -> bool:
        return self._task is not None

    async def start(self) -> None:
        if self._task is not None:
            logger.warning("Queue processor already running, ignoring start request")
            return

        try:
            async with self._session_factory() as db:
                await reset_orphaned(db)
        except Exception:
            # A missing table should not keep the service from booting.
            logger.exception("Could not reset orphaned notifications on startup")

        logger.info("Queue processor starting (%ss interval)", self._poll_interval)
        self._stopping = False
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Stop scheduling cycles.

        A cycle already in flight is left to finish; pair with
        ``await_in_flight()`` to bound how long shutdown waits for it.
        """
        if self._task is None:
            logger.warning("Queue processor not running, ignoring stop request")
            return
        task, self._task = self._task, None
        self._stopping = True
        if not self.is_processing:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        logger.info("Queue processor stopped")

    async def _run(self) -> None:
        while not self._stopping:
            await asyncio.sleep(self._poll_interval)
            if self._stopping:
                break
            try:
                await self.process_ready_notifications()
            except Exception:
                logger.exception("Queue processor cycle failed")

    async def await_in_flight(self, timeout: float = 30.0) -> bool:
        """Wait for the current cycle to finish; False if ``timeout`` ran out first."""
        deadline = time.monotonic() + timeout
        while self.is_processing:
            if time.monotonic() >= deadline:
                return False
            await asyncio.sleep(0.1)
        return True

    async def process_ready_notifications(self, now: datetime | None = None) -> int:
        """Run one cycle; returns how many rows reached a terminal state."""
        if self.is_processing:
            return 0
        self.is_processing = True
        try:
            if not self._webhook_url:
                return 0

            now = as_naive_utc(now) if now else utcnow()
            async with self._session_factory() as db:
                result = await db.execute(
                    select(QueuedNotification.id)
                    .where(
                        QueuedNotification.status == STATUS_PENDING,
                        QueuedNotification.scheduled_at <= now,
                    )
                    .order_by(QueuedNotification.scheduled_at.asc())
                    .limit(self._batch_size)
                )
                due_ids = list(result.scalars())

            if not due_ids:
                return 0

            logger.info("Processing %d notifications", len(due_ids))
            processed = 0
            for notification_id in due_ids:
                if await self._process_one(notification_id):
                    processed += 1
            return processed
        finally:
            self.is_processing = False

    async def _process_one(self, notification_id: int) -> bool:
        async with self._session_factory() as db:
            try:
                claimed = await db.execute(
                    update(QueuedNotification)
                    .where(
                        QueuedNotification.id == notification_id,
                        QueuedNotification.status == STATUS_PENDING,
                    )
                    .values(status=STATUS_PROCESSING, processing_started_at=utcnow())
                )
                await db.commit()
                if claimed.rowcount != 1:
                    logger.debug("Notification %s was claimed elsewhere, skipping", notification_id)
                    return False

                row = await db.get(QueuedNotification, notification_id)
                payload = await prepare_notification_payload(db, row)
                if payload is None:
                    await self._mark_sent(db, notification_id)
                    return True

                result = await self._client.send_notification(self._webhook_url, payload)
                if result.success:
                    await self._mark_sent(db, notification_id)
                else:
                    logger.error("Notification %s failed: %s", notification_id, result.error)
                    await self._mark_failed(db, notification_id, result.error or "Unknown error")
                return True
            except Exception as exc:
                logger.error("Failed to process notification %s: %s", notification_id, exc)
                await db.rollback()
                try:
                    await self._mark_failed(db, notification_id, str(exc) or type(exc).__name__)
                except Exception:
                    logger.exception("Failed to record error status for notification %s", notification_id)
                return True

    async def _mark_sent(self, db, notification_id: int) -> None:
        await db.execute(
            update(QueuedNotification)
            .where(QueuedNotification.id == notification_id)
            .values(status=STATUS_SENT, sent_at=utcnow())
        )
        await db.commit()

    async def _mark_failed(self, db, notification_id: int, error: str) -> None:
        await db.execute(
            update(QueuedNotification)
            .where(QueuedNotification.id == notification_id)
            .values(
                status=STATUS_FAILED,
                error_message=error[:500],
                attempt_count=QueuedNotification.attempt_count + 1,
            )
        )
        await db.commit()

    async def close(self) -> None:
        await self._client.close()
