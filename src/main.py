"""FastAPI application for the issue notification service."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.config import settings
from src.database import init_db, close_db
from src.handlers.notification_queue import Notifier
from src.handlers.queue_processor import QueueProcessor
from src.routes.notifications import router as notifications_router

logging.basicConfig(level=logging.DEBUG if settings.debug else logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("notification-service starting up")
    await init_db()
    app.state.notifier = Notifier()
    app.state.processor = QueueProcessor()
    if settings.processor_enabled:
        await app.state.processor.start()
    yield
    logger.info("notification-service shutting down")
    processor: QueueProcessor = app.state.processor
    if processor.running:
        await processor.stop()
    if not await processor.await_in_flight(settings.shutdown_drain_seconds):
        logger.warning("Timed out waiting for in-flight notifications")
    if not await app.state.notifier.drain(settings.shutdown_drain_seconds):
        logger.warning("Timed out waiting for queued notification writes")
    await processor.close()
    await close_db()


app = FastAPI(
    title="Issue Notification Service",
    description="Debounced Discord notifications for Kanban issue changes",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(notifications_router, prefix=settings.api_prefix)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "notification-service"}
