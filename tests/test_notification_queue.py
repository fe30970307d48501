"""Tests for the debounce queue: merging, scheduling and uniqueness."""

import asyncio
import json
from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from src.database import async_session
from src.handlers.change_extractor import extract_changes
from src.handlers.notification_queue import (
    Notifier,
    list_notifications,
    merge_event_payload,
    queue_notification,
    reset_orphaned,
    split_event_payload,
)
from src.models.issue import Issue, User
from src.models.notification_queue import QueuedNotification
from src.schemas.notifications import Change

T0 = datetime(2026, 1, 24, 16, 0, 0)


def _status(old: str, new: str) -> dict:
    return {"action_type": "status_changed", "old_value": old, "new_value": new}


async def _pending_rows(issue_id: int = 1, user_id: int = 7) -> list[QueuedNotification]:
    async with async_session() as db:
        result = await db.execute(
            select(QueuedNotification).where(
                QueuedNotification.issue_id == issue_id,
                QueuedNotification.user_id == user_id,
                QueuedNotification.status == "pending",
            )
        )
        return list(result.scalars())


# -- pure merge -------------------------------------------------------------


def test_merge_appends_new_types():
    merged = merge_event_payload(
        {"changes": [_status("todo", "in_progress")]},
        [{"action_type": "assignee_changed", "old_value": None, "new_value": "3"}],
    )

    assert [e["action_type"] for e in merged["changes"]] == ["status_changed", "assignee_changed"]


def test_merge_replaces_same_type_and_keeps_first_old_value():
    merged = merge_event_payload({"changes": [_status("todo", "in_progress")]}, [_status("in_progress", "review")])
    merged = merge_event_payload(merged, [_status("review", "done")])

    assert len(merged["changes"]) == 1
    assert merged["changes"][0]["new_value"] == "done"
    assert merged["changes"][0]["first_old_value"] == "todo"


def test_merge_keys_subtask_events_by_issue_key():
    merged = merge_event_payload(
        {"changes": [{"action_type": "subtask_created", "issue_key": "JPL-2", "issue_title": "A"}]},
        [{"action_type": "subtask_created", "issue_key": "JPL-3", "issue_title": "B"}],
    )

    assert [e["issue_key"] for e in merged["changes"]] == ["JPL-2", "JPL-3"]


def test_merge_subtask_updates_merge_inner_fields():
    first = {
        "action_type": "subtask_updated",
        "issue_key": "JPL-2",
        "changes": [_status("todo", "in_progress")],
    }
    second = {
        "action_type": "subtask_updated",
        "issue_key": "JPL-2",
        "changes": [_status("in_progress", "done"), {"action_type": "priority_changed", "old_value": "low", "new_value": "high"}],
    }

    merged = merge_event_payload({"changes": [first]}, [second])

    assert len(merged["changes"]) == 1
    inner = merged["changes"][0]["changes"]
    assert inner[0]["first_old_value"] == "todo"
    assert inner[0]["new_value"] == "done"
    assert inner[1]["action_type"] == "priority_changed"


def test_split_flattens_issue_updated_wrapper_and_keeps_metadata():
    events, meta = split_event_payload({
        "action_type": "issue_updated",
        "issue_key": "JPL-1",
        "issue_title": "Parent",
        "changes": [_status("todo", "done")],
    })

    assert events == [_status("todo", "done")]
    assert meta == {"issue_key": "JPL-1", "issue_title": "Parent"}


def test_split_ignores_subtask_metadata():
    _, meta = split_event_payload({"action_type": "subtask_created", "issue_key": "JPL-2", "issue_title": "Child"})

    assert meta == {}


# -- storage-backed enqueue -------------------------------------------------


async def test_first_event_creates_pending_row():
    async with async_session() as db:
        row = await queue_notification(db, 1, 7, "update", _status("todo", "done"), now=T0)

    assert row.status == "pending"
    assert row.first_queued_at == T0
    assert row.scheduled_at == T0 + timedelta(seconds=60)
    assert json.loads(row.event_payload) == {"changes": [_status("todo", "done")]}


async def test_same_type_changes_merge_into_one_row():
    async with async_session() as db:
        await queue_notification(db, 1, 7, "update", _status("todo", "in_progress"), now=T0)
        await queue_notification(db, 1, 7, "update", _status("in_progress", "done"), now=T0 + timedelta(seconds=20))

    rows = await _pending_rows()
    assert len(rows) == 1
    changes = extract_changes(json.loads(rows[0].event_payload))
    assert changes == [Change(type="status", old="todo", new="done")]
    assert rows[0].scheduled_at == T0 + timedelta(seconds=80)


async def test_net_zero_status_is_absent_from_extracted_changes():
    async with async_session() as db:
        await queue_notification(db, 1, 7, "update", _status("todo", "in_progress"), now=T0)
        await queue_notification(db, 1, 7, "update", _status("in_progress", "todo"), now=T0 + timedelta(seconds=10))

    rows = await _pending_rows()
    assert len(rows) == 1
    assert extract_changes(json.loads(rows[0].event_payload)) == []


async def test_max_wait_caps_scheduled_at():
    first_queued = T0
    async with async_session() as db:
        for step in range(8):
            now = T0 + timedelta(seconds=50 * step)
            row = await queue_notification(db, 1, 7, "update", _status("todo", "review" if step % 2 else "done"), now=now)
            assert row.scheduled_at <= first_queued + timedelta(seconds=180)
            assert row.first_queued_at == first_queued

    assert row.scheduled_at == T0 + timedelta(seconds=180)


async def test_max_wait_row_becomes_due_mid_stream():
    async with async_session() as db:
        await queue_notification(db, 1, 7, "update", _status("todo", "done"), now=T0)
        await queue_notification(db, 1, 7, "update", _status("done", "review"), now=T0 + timedelta(seconds=150))
        row = await queue_notification(db, 1, 7, "update", _status("review", "done"), now=T0 + timedelta(seconds=175))

    # Without the cap this would be due at T0+235s.
    assert row.scheduled_at == T0 + timedelta(seconds=180)


async def test_missing_user_is_dropped():
    async with async_session() as db:
        row = await queue_notification(db, 1, None, "update", _status("todo", "done"), now=T0)

    assert row is None
    async with async_session() as db:
        result = await db.execute(select(QueuedNotification))
        assert result.scalars().all() == []


async def test_events_that_can_never_qualify_are_not_queued():
    async with async_session() as db:
        row = await queue_notification(
            db, 1, 7, "update", {"action_type": "priority_changed", "old_value": "low", "new_value": "high"}, now=T0
        )
        comment = await queue_notification(
            db, 1, 7, "comment", {"action_type": "comment_added", "comment_body": "hi"}, now=T0
        )

    assert row is None
    assert comment is None


async def test_event_type_tracks_latest_event():
    async with async_session() as db:
        await queue_notification(db, 1, 7, "update", _status("todo", "done"), now=T0)
        row = await queue_notification(
            db, 1, 7, "create", {"action_type": "subtask_created", "issue_key": "JPL-2", "issue_title": "Child"}, now=T0
        )

    assert row.event_type == "create"


async def test_processing_row_does_not_block_new_pending_row():
    async with async_session() as db:
        row = await queue_notification(db, 1, 7, "update", _status("todo", "done"), now=T0)
        row.status = "processing"
        await db.commit()
        fresh = await queue_notification(db, 1, 7, "update", _status("done", "review"), now=T0)

    assert fresh.id != row.id
    assert len(await _pending_rows()) == 1


@pytest.mark.parametrize("user_id", [7, 8])
async def test_rows_are_scoped_per_user(user_id):
    async with async_session() as db:
        await queue_notification(db, 1, 7, "update", _status("todo", "done"), now=T0)
        await queue_notification(db, 1, 8, "update", _status("todo", "done"), now=T0)

    assert len(await _pending_rows(user_id=user_id)) == 1


async def test_concurrent_enqueues_keep_a_single_pending_row():
    async def _enqueue(i: int) -> None:
        async with async_session() as db:
            await queue_notification(
                db,
                1,
                7,
                "create",
                {"action_type": "subtask_created", "issue_key": f"JPL-{100 + i}", "issue_title": f"Subtask {i}"},
                now=T0,
            )

    await asyncio.gather(*(_enqueue(i) for i in range(50)))

    rows = await _pending_rows()
    assert len(rows) == 1
    keys = {event["issue_key"] for event in json.loads(rows[0].event_payload)["changes"]}
    assert keys == {f"JPL-{100 + i}" for i in range(50)}


async def test_reset_orphaned_returns_processing_rows_to_pending():
    async with async_session() as db:
        db.add(QueuedNotification(
            issue_id=1, user_id=7, event_type="update", event_payload="{}",
            scheduled_at=T0, first_queued_at=T0, status="processing", processing_started_at=T0,
        ))
        await db.commit()
        assert await reset_orphaned(db) == 1

    rows = await _pending_rows()
    assert rows[0].processing_started_at is None


async def test_reset_orphaned_folds_orphan_into_newer_pending_row():
    async with async_session() as db:
        orphan = await queue_notification(db, 1, 7, "update", _status("todo", "in_progress"), now=T0)
        orphan.status = "processing"
        orphan.processing_started_at = T0
        await db.commit()
        newer = await queue_notification(
            db, 1, 7, "update", _status("in_progress", "review"), now=T0 + timedelta(seconds=30)
        )
        orphan_id, newer_id = orphan.id, newer.id

        assert await reset_orphaned(db) == 1

    rows = await _pending_rows()
    assert [r.id for r in rows] == [newer_id]
    assert json.loads(rows[0].event_payload)["changes"] == [
        {"action_type": "status_changed", "old_value": "in_progress", "new_value": "review", "first_old_value": "todo"}
    ]
    assert rows[0].first_queued_at == T0
    assert rows[0].scheduled_at == T0 + timedelta(seconds=90)
    async with async_session() as db:
        assert await db.get(QueuedNotification, orphan_id) is None


async def test_reset_orphaned_recovers_every_orphan():
    async with async_session() as db:
        db.add_all([
            QueuedNotification(
                issue_id=9, user_id=9, event_type="update", event_payload=json.dumps({"changes": []}),
                scheduled_at=T0, first_queued_at=T0, status="processing", processing_started_at=T0,
            ),
            QueuedNotification(
                issue_id=2, user_id=7, event_type="update", event_payload=json.dumps({"changes": []}),
                scheduled_at=T0, first_queued_at=T0, status="processing", processing_started_at=T0,
            ),
        ])
        await db.commit()
        row = await queue_notification(db, 1, 7, "update", _status("todo", "done"), now=T0)
        row.status = "processing"
        await db.commit()
        await queue_notification(db, 1, 7, "update", _status("done", "review"), now=T0)

        assert await reset_orphaned(db) == 3
        processing = await db.execute(select(QueuedNotification).where(QueuedNotification.status == "processing"))
        assert processing.scalars().all() == []

    assert len(await _pending_rows(issue_id=9, user_id=9)) == 1
    assert len(await _pending_rows(issue_id=2)) == 1
    assert len(await _pending_rows()) == 1


async def test_list_notifications_joins_issue_and_user():
    async with async_session() as db:
        db.add_all([User(id=7, name="Ann"), Issue(id=1, key="JPL-1", title="Parent", status="todo")])
        await db.commit()
        await queue_notification(db, 1, 7, "update", _status("todo", "done"), now=T0)
        items = await list_notifications(db)

    assert len(items) == 1
    assert items[0].issue_key == "JPL-1"
    assert items[0].user_name == "Ann"
    assert items[0].event_payload["changes"][0]["new_value"] == "done"


async def test_notifier_is_fire_and_forget():
    notifier = Notifier()
    task = notifier.notify(1, 7, "update", _status("todo", "done"))

    assert await notifier.drain(5) is True
    assert task.done()
    assert len(await _pending_rows()) == 1


async def test_notifier_logs_instead_of_raising(caplog):
    def _broken_factory():
        raise RuntimeError("db unavailable")

    notifier = Notifier(session_factory=_broken_factory)
    notifier.notify(1, 7, "update", _status("todo", "done"))

    assert await notifier.drain(5) is True
    assert "Failed to queue update notification for issue 1" in caplog.text
