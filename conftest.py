"""Shared test configuration; must be loaded before src modules."""

import os
import tempfile

# Override database URL before any src modules are imported.  A file-backed
# database lets concurrent sessions use separate connections.
_db_dir = tempfile.mkdtemp(prefix="notification-tests-")
os.environ["NOTIF_DATABASE_URL"] = f"sqlite+aiosqlite:///{_db_dir}/test.db"
os.environ["NOTIF_DISCORD_WEBHOOK_URL"] = ""

import pytest
from src.database import engine, Base
import src.models.issue  # noqa: F401
import src.models.notification_queue  # noqa: F401


@pytest.fixture(autouse=True)
async def _reset_db():
    """Create all tables before each test, drop after."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()
