"""Read-only queries against the tracker's issues and users tables."""

from __future__ import annotations

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.issue import Issue, User


async def get_issue(db: AsyncSession, issue_id: int) -> Issue | None:
    return await db.get(Issue, issue_id, populate_existing=True)


async def get_issues_by_keys(db: AsyncSession, keys: set[str]) -> dict[str, Issue]:
    """Resolve several issue keys with a single IN-list query."""
    keys = {key for key in keys if key}
    if not keys:
        return {}
    result = await db.execute(select(Issue).where(Issue.key.in_(keys)))
    return {issue.key: issue for issue in result.scalars()}


async def get_subtask_summary(db: AsyncSession, parent_id: int) -> str | None:
    """``"X/Y subtasks done"`` for a parent issue, or None without subtasks."""
    result = await db.execute(
        select(
            func.count(Issue.id),
            func.sum(case((Issue.status == "done", 1), else_=0)),
        ).where(Issue.parent_id == parent_id)
    )
    total, done = result.one()
    if not total:
        return None
    return f"{done or 0}/{total} subtasks done"


async def get_user_name(db: AsyncSession, user_id: int) -> str:
    user = await db.get(User, user_id)
    if user is None:
        return f"User {user_id}"
    return user.name


async def get_user_names(db: AsyncSession, user_ids: set[int]) -> dict[str, str]:
    """Map user ids (as strings) to display names in one query."""
    if not user_ids:
        return {}
    result = await db.execute(select(User.id, User.name).where(User.id.in_(user_ids)))
    return {str(user_id): name for user_id, name in result.all()}
