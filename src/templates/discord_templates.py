"""Discord embed builders for issue change notifications."""

from __future__ import annotations

from datetime import datetime, timezone

from src.config import settings
from src.schemas.notifications import Change

STATUS_COLORS = {
    "done": "#57F287",
    "in_progress": "#FEE75C",
    "review": "#5865F2",
    "todo": "#99AAB5",
    "deleted": "#ED4245",
    "comment": "#5865F2",
}

STATUS_LABELS = {
    "todo": "To Do",
    "in_progress": "In Progress",
    "review": "Review",
    "done": "Done",
}

FIELD_ORDER = {
    "created": 0,
    "deleted": 0,
    "assignee": 1,
    "status": 2,
    "priority": 3,
}

COMMENT_LIMIT = 200
TITLE_LIMIT = 100
DESCRIPTION_LIMIT = 500


def get_status_color(status: str | None) -> int:
    hex_color = STATUS_COLORS.get(status or "", STATUS_COLORS["todo"])
    return int(hex_color.lstrip("#"), 16)


def truncate(text: str | None, max_length: int = COMMENT_LIMIT) -> str | None:
    if not text or len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."


def format_value(value: str | None, change_type: str | None = None) -> str | None:
    if not value:
        return value
    if change_type == "status":
        return STATUS_LABELS.get(value, value)
    if change_type == "priority":
        return value[:1].upper() + value[1:]
    return value


def join_names(names: list[str]) -> str:
    """``A``, ``A and B``, ``A, B, and C``."""
    if len(names) <= 1:
        return "".join(names)
    if len(names) == 2:
        return f"{names[0]} and {names[1]}"
    return f"{', '.join(names[:-1])}, and {names[-1]}"


def split_id_list(value: str | None) -> list[str] | None:
    """Parts of a comma-joined user id list such as ``"3, 5"``, else ``None``.

    Display names may contain commas themselves, so only values made up
    entirely of integer ids are treated as lists.
    """
    if not value:
        return None
    parts = [part.strip() for part in value.split(",")]
    if not all(part.isdigit() for part in parts):
        return None
    return parts


def format_assignees(value: str | None) -> str | None:
    """Join a raw assignee id list; resolved display text passes through."""
    parts = split_id_list(value)
    if parts is None:
        return value
    return join_names(parts)


def _display(value: str | None, change_type: str | None) -> str | None:
    if change_type == "assignee":
        return format_assignees(value)
    return format_value(value, change_type)


def format_change(old: str | None, new: str | None, change_type: str | None = None) -> str:
    old_empty = old is None or old == ""
    new_empty = new is None or new == ""
    if old_empty and not new_empty:
        return f"Set to: **{_display(new, change_type)}**"
    if not old_empty and new_empty:
        return f"Cleared (was: ~~{_display(old, change_type)}~~)"
    return f"~~{_display(old, change_type)}~~ → **{_display(new, change_type)}**"


def format_field_name(change_type: str) -> str:
    return " ".join(word[:1].upper() + word[1:] for word in change_type.split("_"))


def _subtask_prefix(change: Change) -> str:
    if change.is_subtask and change.subtask_key:
        return f"└─ [{change.subtask_key}] "
    return ""


def _format_field(change: Change) -> dict:
    if change.type == "comment":
        return {
            "name": "Comment Added",
            "value": truncate(change.value or change.new or "", COMMENT_LIMIT),
            "inline": False,
        }

    if change.type in ("created", "deleted"):
        item = "Subtask" if change.is_subtask else "Issue"
        verb = "Created" if change.type == "created" else "Deleted"
        fallback = "New item" if change.type == "created" else "Item removed"
        return {
            "name": f"{_subtask_prefix(change)}{item} {verb}",
            "value": f'"{truncate(change.title, TITLE_LIMIT)}"' if change.title else fallback,
            "inline": False,
        }

    return {
        "name": f"{_subtask_prefix(change)}{format_field_name(change.type)}",
        "value": format_change(change.old, change.new, change.type),
        "inline": False,
    }


def format_change_fields(changes: list[Change] | None) -> list[dict]:
    """Embed fields for ``changes``: created/deleted, assignee, status, priority, rest."""
    if not changes:
        return []
    # sorted() is stable, so ties keep their arrival order.
    ordered = sorted(changes, key=lambda change: FIELD_ORDER.get(change.type, 99))
    return [_format_field(change) for change in ordered]


def parse_timestamp(value: datetime | str) -> datetime:
    """Parse a storage timestamp, treating anything without an offset as UTC."""
    if isinstance(value, datetime):
        parsed = value
    else:
        raw = value.strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        parsed = datetime.fromisoformat(raw)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_relative_time(value: datetime | str) -> str:
    """Discord timestamp markup rendered client-side as e.g. "2 minutes ago"."""
    return f"<t:{int(parse_timestamp(value).timestamp())}:R>"


def build_embed(
    issue: dict,
    changes: list[Change],
    user_name: str,
    timestamp: datetime | str,
    *,
    deleted: bool = False,
    subtask_summary: str | None = None,
    description: str | None = None,
    is_subtask: bool = False,
) -> dict:
    """Build one embed for ``issue`` (a dict with id, key, title, status)."""
    if deleted:
        color = get_status_color("deleted")
    elif len(changes) == 1 and changes[0].type == "comment":
        color = get_status_color("comment")
    else:
        color = get_status_color(issue.get("status"))

    fields = format_change_fields(changes)

    if subtask_summary:
        fields.append({"name": "Subtasks", "value": subtask_summary, "inline": False})

    if description:
        fields.append({
            "name": "Description",
            "value": truncate(description, DESCRIPTION_LIMIT),
            "inline": False,
        })

    title = f"[{issue.get('key')}] {issue.get('title')}"
    if is_subtask:
        title += " (Subtask)"

    return {
        "title": title,
        "url": f"{settings.app_url}/issues/{issue.get('id')}",
        "description": format_relative_time(timestamp),
        "color": color,
        "fields": fields,
        "footer": {"text": f"Changed by {user_name}"},
    }


def build_webhook_payload(embeds: list[dict]) -> dict:
    return {"embeds": embeds}
