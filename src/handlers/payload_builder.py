"""Builds the Discord webhook payload for one due queue row.

A row is keyed by the parent issue, but subtask events are queued under
their parent so they batch together.  When the batch has parent-level
events, subtask changes are folded into the parent's embed; otherwise each
touched subtask gets its own standalone embed.

Entity state is read at send time, so embeds reflect where issues ended up
rather than what they looked like when the first event was queued.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from src.config import settings
from src.handlers.change_extractor import extract_changes
from src.handlers.issue_lookup import (
    get_issue,
    get_issues_by_keys,
    get_subtask_summary,
    get_user_name,
    get_user_names,
)
from src.handlers.notification_filter import filter_changes_for_notification
from src.models.issue import Issue
from src.models.notification_queue import QueuedNotification
from src.schemas.notifications import Change
from src.templates.discord_templates import build_embed, build_webhook_payload, join_names, split_id_list

logger = logging.getLogger(__name__)


@dataclass
class EmbedDraft:
    issue: dict
    changes: list[Change]
    deleted: bool = False
    is_subtask: bool = False
    subtask_summary: str | None = None
    description: str | None = None


def _issue_dict(issue: Issue) -> dict:
    return {"id": issue.id, "key": issue.key, "title": issue.title, "status": issue.status}


def _description_option(events: list[dict]) -> str | None:
    description = None
    for event in events:
        action_type = event.get("action_type")
        if action_type == "issue_created" and event.get("description"):
            description = event["description"]
        elif action_type == "description_changed" and event.get("new_value"):
            description = event["new_value"]
    return description


async def resolve_assignee_names(db: AsyncSession, changes: list[Change]) -> list[Change]:
    """Replace assignee id lists with display names, e.g. ``"3,5"`` -> ``"Ann and Bo"``.

    Ids without a matching user are kept verbatim; values that are not id
    lists are left untouched.
    """
    ids: set[int] = set()
    for change in changes:
        if change.type != "assignee":
            continue
        for value in (change.old, change.new):
            ids.update(int(part) for part in split_id_list(value) or [])
    if not ids:
        return list(changes)

    names = await get_user_names(db, ids)

    def _resolve(value: str | None) -> str | None:
        parts = split_id_list(value)
        if parts is None:
            return value
        return join_names([names.get(part, part) for part in parts])

    return [
        change.model_copy(update={"old": _resolve(change.old), "new": _resolve(change.new)})
        if change.type == "assignee"
        else change
        for change in changes
    ]


async def _parent_draft(
    db: AsyncSession,
    row: QueuedNotification,
    payload: dict,
    parent_events: list[dict],
    subtask_entries: list[dict],
) -> EmbedDraft | None:
    changes: list[Change] = []
    for event in parent_events + subtask_entries:
        changes.extend(extract_changes(event))
    changes = filter_changes_for_notification(changes)
    if not changes:
        return None

    issue = await get_issue(db, row.issue_id)
    if issue is None:
        # Gone from storage: the payload is all we have left.
        return EmbedDraft(
            issue={
                "id": row.issue_id,
                "key": payload.get("issue_key") or str(row.issue_id),
                "title": payload.get("issue_title") or "Deleted issue",
                "status": "deleted",
            },
            changes=changes,
            deleted=True,
        )

    subtask_summary = None
    if issue.parent_id is None:
        subtask_summary = await get_subtask_summary(db, issue.id)
    return EmbedDraft(
        issue=_issue_dict(issue),
        changes=changes,
        subtask_summary=subtask_summary,
        description=_description_option(parent_events),
    )


def _subtask_draft(entry: dict, subtask: Issue | None) -> EmbedDraft | None:
    if subtask is None:
        logger.info("Subtask %s not found, skipping", entry.get("issue_key"))
        return None
    changes = filter_changes_for_notification(extract_changes(entry))
    if not changes:
        return None
    # The "(Subtask)" title already says which subtask this is.
    changes = [change.model_copy(update={"is_subtask": False, "subtask_key": None}) for change in changes]
    return EmbedDraft(
        issue=_issue_dict(subtask),
        changes=changes,
        is_subtask=True,
        description=_description_option(entry.get("changes") or []),
    )


async def build_drafts(db: AsyncSession, row: QueuedNotification) -> list[EmbedDraft]:
    payload = json.loads(row.event_payload)
    events = payload.get("changes") if isinstance(payload.get("changes"), list) else [payload]

    parent_events = [event for event in events if event.get("action_type") != "subtask_updated"]
    subtask_entries = [event for event in events if event.get("action_type") == "subtask_updated"]

    if parent_events:
        draft = await _parent_draft(db, row, payload, parent_events, subtask_entries)
        return [draft] if draft else []

    subtasks = await get_issues_by_keys(db, {entry.get("issue_key") for entry in subtask_entries})
    drafts = []
    for entry in subtask_entries:
        draft = _subtask_draft(entry, subtasks.get(entry.get("issue_key")))
        if draft:
            drafts.append(draft)
    return drafts


async def prepare_notification_payload(
    db: AsyncSession,
    row: QueuedNotification,
    max_embeds: int | None = None,
) -> dict | None:
    """Webhook body for ``row``, or None when nothing qualifies (skip)."""
    max_embeds = max_embeds or settings.max_embeds
    drafts = await build_drafts(db, row)
    if not drafts:
        logger.info("Notification %s has no qualifying changes, skipping", row.id)
        return None

    if len(drafts) > max_embeds:
        logger.warning(
            "Notification %s produced %d embeds, truncating to %d", row.id, len(drafts), max_embeds
        )
        drafts = drafts[:max_embeds]

    all_changes = [change for draft in drafts for change in draft.changes]
    resolved = iter(await resolve_assignee_names(db, all_changes))
    for draft in drafts:
        draft.changes = [next(resolved) for _ in draft.changes]

    user_name = await get_user_name(db, row.user_id)
    embeds = [
        build_embed(
            draft.issue,
            draft.changes,
            user_name,
            row.scheduled_at,
            deleted=draft.deleted,
            subtask_summary=draft.subtask_summary,
            description=draft.description,
            is_subtask=draft.is_subtask,
        )
        for draft in drafts
    ]
    return build_webhook_payload(embeds)
