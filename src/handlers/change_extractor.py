"""Turns raw issue activity events into normalized ``Change`` values.

Events arrive from the tracker's CRUD layer as plain dicts keyed by
``action_type``.  Merged queue rows hold ``{"changes": [event, ...]}``, so
extraction recurses through nested ``changes`` lists.
"""

from __future__ import annotations

from typing import Any

from src.schemas.notifications import Change

ACTION_TYPE_MAP = {
    "status_changed": "status",
    "assignee_changed": "assignee",
    "priority_changed": "priority",
    "description_changed": "description",
    "comment_added": "comment",
    "issue_created": "created",
    "subtask_created": "created",
    "issue_deleted": "deleted",
    "subtask_deleted": "deleted",
}

_MISSING = object()


def _as_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        return ",".join(str(item) for item in value) or None
    return str(value)


def _creation_assignees(event: dict) -> str | None:
    for field in ("assignee_ids", "assignees", "assignee_id"):
        value = _as_text(event.get(field))
        if value:
            return value
    return None


def _change_type(action_type: str) -> str:
    if action_type in ACTION_TYPE_MAP:
        return ACTION_TYPE_MAP[action_type]
    return action_type.removesuffix("_changed")


def _extract_created(event: dict) -> list[Change]:
    is_subtask = event.get("action_type") == "subtask_created" or bool(event.get("is_subtask"))
    changes = [
        Change(
            type="created",
            is_subtask=is_subtask,
            subtask_key=event.get("issue_key") if is_subtask else None,
            title=event.get("issue_title"),
        )
    ]
    assignees = _creation_assignees(event)
    if assignees:
        changes.append(
            Change(
                type="assignee",
                old=None,
                new=assignees,
                is_subtask=is_subtask,
                subtask_key=event.get("issue_key") if is_subtask else None,
            )
        )
    return changes


def _extract_deleted(event: dict) -> list[Change]:
    is_subtask = event.get("action_type") == "subtask_deleted" or bool(event.get("is_subtask"))
    return [
        Change(
            type="deleted",
            is_subtask=is_subtask,
            subtask_key=event.get("issue_key") if is_subtask else None,
            title=event.get("issue_title"),
        )
    ]


def _extract_field_change(event: dict) -> list[Change]:
    new_value = _as_text(event.get("new_value"))
    first_old = event.get("first_old_value", _MISSING)
    if first_old is not _MISSING:
        # Value came back to where the batch started: nothing to report.
        if _as_text(first_old) == new_value:
            return []
        old_value = _as_text(first_old)
    else:
        old_value = _as_text(event.get("old_value"))
    return [Change(type=_change_type(event["action_type"]), old=old_value, new=new_value)]


def _extract_subtask_update(event: dict) -> list[Change]:
    subtask_key = event.get("issue_key")
    extracted: list[Change] = []
    for inner in event.get("changes") or []:
        for change in extract_changes(inner):
            extracted.append(change.model_copy(update={"is_subtask": True, "subtask_key": subtask_key}))
    return extracted


def extract_changes(event: dict) -> list[Change]:
    """Return the changes described by one raw event, flattened in order.

    Field changes whose ``first_old_value`` equals ``new_value`` net to zero
    across the batching window and are dropped entirely.
    """
    action_type = event.get("action_type")

    if action_type == "comment_added":
        return [Change(type="comment", value=_as_text(event.get("comment_body")))]
    if action_type in ("issue_created", "subtask_created"):
        return _extract_created(event)
    if action_type in ("issue_deleted", "subtask_deleted"):
        return _extract_deleted(event)
    if action_type == "subtask_updated":
        return _extract_subtask_update(event)

    changes: list[Change] = []
    if action_type and "old_value" in event and "new_value" in event:
        changes.extend(_extract_field_change(event))

    nested = event.get("changes")
    if isinstance(nested, list):
        for inner in nested:
            changes.extend(extract_changes(inner))
    return changes
