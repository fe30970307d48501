"""Decides which changes are worth a Discord notification.

Only three kinds of change reach a channel: status moving forward into
review or done, assignee changes (including assignees set at creation), and
subtask creation.
"""

from __future__ import annotations

from src.schemas.notifications import Change

NOTIFY_STATUSES = frozenset({"review", "done"})
STATUS_RANK = {"todo": 0, "in_progress": 1, "review": 2, "done": 3}

# Types that may become qualifying once merged with later events.  Status
# passes in every direction because a later move can cancel it out.
_PRECHECK_TYPES = frozenset({"status", "assignee", "description"})


def _is_backward_from_target(old: str | None, new: str | None) -> bool:
    if old not in NOTIFY_STATUSES:
        return False
    return STATUS_RANK.get(new or "", -1) <= STATUS_RANK[old]


def qualifies(change: Change) -> bool:
    if change.type == "assignee":
        return True
    if change.type == "created":
        return change.is_subtask
    if change.type == "status":
        if change.new not in NOTIFY_STATUSES:
            return False
        return not _is_backward_from_target(change.old, change.new)
    return False


def filter_changes_for_notification(changes: list[Change]) -> list[Change]:
    """Keep only qualifying changes so embeds never show unrelated noise."""
    return [change for change in changes if qualifies(change)]


def could_qualify(change: Change) -> bool:
    """Cheap enqueue-time check: can this change ever matter for a batch?"""
    if change.type == "created":
        return change.is_subtask
    return change.type in _PRECHECK_TYPES
