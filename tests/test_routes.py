"""Tests for the notification HTTP endpoints."""

from unittest.mock import AsyncMock

from httpx import AsyncClient, ASGITransport

from src.main import app
from src.routes.notifications import get_processor

STATUS_EVENT = {
    "issue_id": 1,
    "user_id": 7,
    "event_type": "update",
    "event_payload": {
        "action_type": "issue_updated",
        "issue_key": "JPL-1",
        "issue_title": "Parent issue",
        "changes": [{"action_type": "status_changed", "old_value": "todo", "new_value": "done"}],
    },
}


async def test_enqueue_then_merge_returns_same_notification():
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        resp1 = await client.post("/api/v1/notifications", json=STATUS_EVENT)
        resp2 = await client.post("/api/v1/notifications", json={
            **STATUS_EVENT,
            "event_payload": {"action_type": "assignee_changed", "old_value": None, "new_value": "3"},
        })

    assert resp1.status_code == 202
    assert resp1.json()["status"] == "queued"
    assert resp2.json()["notification_id"] == resp1.json()["notification_id"]


async def test_missing_user_is_ignored():
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        resp = await client.post("/api/v1/notifications", json={**STATUS_EVENT, "user_id": None})

    assert resp.status_code == 202
    assert resp.json() == {"status": "ignored", "notification_id": None}


async def test_pending_listing_includes_payload_metadata():
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        await client.post("/api/v1/notifications", json=STATUS_EVENT)
        resp = await client.get("/api/v1/notifications/pending")
        failed = await client.get("/api/v1/notifications", params={"status": "failed"})

    assert resp.status_code == 200
    items = resp.json()
    assert len(items) == 1
    assert items[0]["issue_key"] == "JPL-1"
    assert items[0]["event_payload"]["changes"][0]["new_value"] == "done"
    assert failed.json() == []


async def test_unknown_status_filter_is_rejected():
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        resp = await client.get("/api/v1/notifications", params={"status": "bogus"})

    assert resp.status_code == 422


async def test_process_endpoint_runs_one_cycle():
    processor = AsyncMock()
    processor.process_ready_notifications.return_value = 3
    app.dependency_overrides[get_processor] = lambda: processor
    try:
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            resp = await client.post("/api/v1/notifications/process")
    finally:
        app.dependency_overrides.clear()

    assert resp.json() == {"processed": 3}
    processor.process_ready_notifications.assert_awaited_once()


async def test_health_endpoint():
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"
