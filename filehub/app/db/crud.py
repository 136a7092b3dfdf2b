"""Log CRUD operations."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Optional

from sqlalchemy import delete, func, insert, select
from sqlalchemy.ext.asyncio import AsyncSession

from filehub.app.db.models import Log


async def save_logs_bulk(
    session: AsyncSession,
    rows: Iterable[dict[str, Any]],
    auto_commit: bool = True,
) -> int:
    """Insert many log rows in one statement.

    Args:
        session: Database session
        rows: Column mappings for the logs table
        auto_commit: Whether to commit the transaction

    Returns:
        Number of rows written
    """
    rows = list(rows)
    if not rows:
        return 0
    await session.execute(insert(Log), rows)
    if auto_commit:
        await session.commit()
    return len(rows)


async def list_logs(
    session: AsyncSession,
    level: Optional[str] = None,
    source: Optional[str] = None,
    user_id: Optional[str] = None,
    search: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
) -> tuple[list[Log], int]:
    """Newest-first page of logs matching the filters, plus the total count."""
    conditions = []
    if level:
        conditions.append(Log.level == level)
    if source:
        conditions.append(Log.source == source)
    if user_id:
        conditions.append(Log.user_id == user_id)
    if search:
        conditions.append(Log.message.ilike(f"%{search}%"))

    total = await session.scalar(select(func.count(Log.id)).where(*conditions))
    result = await session.execute(
        select(Log)
        .where(*conditions)
        .order_by(Log.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all()), total or 0


async def count_logs_by_level(session: AsyncSession) -> dict[str, int]:
    """Number of stored log lines per level."""
    result = await session.execute(
        select(Log.level, func.count(Log.id)).group_by(Log.level)
    )
    return {level: count for level, count in result.all()}


async def delete_old_logs(
    session: AsyncSession,
    older_than_days: int,
    level: Optional[str] = None,
    source: Optional[str] = None,
    auto_commit: bool = True,
) -> int:
    """Delete logs created more than ``older_than_days`` ago. Returns rows deleted."""
    cutoff = datetime.now(timezone.utc) - timedelta(days=older_than_days)
    conditions = [Log.created_at < cutoff]
    if level:
        conditions.append(Log.level == level)
    if source:
        conditions.append(Log.source == source)

    result = await session.execute(delete(Log).where(*conditions))
    if auto_commit:
        await session.commit()
    return result.rowcount or 0
