from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from sqlalchemy import and_, delete, func, insert, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .tables import notifications, push_targets


async def insert_notification(session: AsyncSession, payload: Dict[str, Any]) -> None:
    if "id" not in payload:
        raise ValueError("payload missing required field 'id'")
    await session.execute(insert(notifications).values(**payload))


async def get_notification(session: AsyncSession, notification_id: str) -> Optional[Dict[str, Any]]:
    result = await session.execute(
        select(notifications).where(notifications.c.id == notification_id)
    )
    row = result.mappings().first()
    return dict(row) if row is not None else None


async def get_notification_by_message_id(
    session: AsyncSession,
    channel: str,
    message_id: str,
) -> Optional[Dict[str, Any]]:
    result = await session.execute(
        select(notifications).where(
            and_(
                notifications.c.channel == channel,
                notifications.c.provider_message_id == message_id,
            )
        )
    )
    row = result.mappings().first()
    return dict(row) if row is not None else None


async def update_notification_if_status(
    session: AsyncSession,
    notification_id: str,
    expected_status: str,
    values: Dict[str, Any],
) -> bool:
    """Compare-and-set update; returns False when the row moved on concurrently."""
    result = await session.execute(
        update(notifications)
        .where(
            and_(
                notifications.c.id == notification_id,
                notifications.c.status == expected_status,
            )
        )
        .values(**values)
    )
    return (result.rowcount or 0) > 0


def _owner_filters(
    owner_id: str,
    channel: Optional[str] = None,
    status: Optional[str] = None,
) -> List[Any]:
    filters = [notifications.c.owner_id == owner_id]
    if channel:
        filters.append(notifications.c.channel == channel)
    if status:
        filters.append(notifications.c.status == status)
    return filters


async def list_notifications_for_owner(
    session: AsyncSession,
    owner_id: str,
    *,
    channel: Optional[str] = None,
    status: Optional[str] = None,
    offset: int = 0,
    limit: int = 10,
) -> Tuple[List[Dict[str, Any]], int]:
    filters = _owner_filters(owner_id, channel, status)

    total = (
        await session.execute(select(func.count()).select_from(notifications).where(*filters))
    ).scalar_one()

    result = await session.execute(
        select(notifications)
        .where(*filters)
        .order_by(notifications.c.created_at.desc(), notifications.c.id.desc())
        .offset(offset)
        .limit(limit)
    )
    rows = [dict(row) for row in result.mappings()]
    return rows, int(total or 0)


async def count_by_status(session: AsyncSession, owner_id: str) -> Dict[str, int]:
    result = await session.execute(
        select(notifications.c.status, func.count())
        .where(notifications.c.owner_id == owner_id)
        .group_by(notifications.c.status)
    )
    return {str(status): int(count) for status, count in result.all()}


async def count_by_channel(session: AsyncSession, owner_id: str) -> Dict[str, int]:
    result = await session.execute(
        select(notifications.c.channel, func.count())
        .where(notifications.c.owner_id == owner_id)
        .group_by(notifications.c.channel)
    )
    return {str(channel): int(count) for channel, count in result.all()}


async def count_by_day(session: AsyncSession, owner_id: str, since: datetime) -> Dict[str, int]:
    day = func.date(notifications.c.created_at)
    result = await session.execute(
        select(day, func.count())
        .where(
            and_(
                notifications.c.owner_id == owner_id,
                notifications.c.created_at >= since,
            )
        )
        .group_by(day)
    )
    return {str(day_value)[:10]: int(count) for day_value, count in result.all()}


async def delete_notification(session: AsyncSession, notification_id: str, owner_id: str) -> int:
    result = await session.execute(
        delete(notifications).where(
            and_(
                notifications.c.id == notification_id,
                notifications.c.owner_id == owner_id,
            )
        )
    )
    return int(result.rowcount or 0)


async def delete_notifications_for_owner(session: AsyncSession, owner_id: str) -> int:
    result = await session.execute(
        delete(notifications).where(notifications.c.owner_id == owner_id)
    )
    return int(result.rowcount or 0)


async def mark_notifications_read(
    session: AsyncSession,
    owner_id: str,
    *,
    readable_statuses: Sequence[str],
    read_at: datetime,
    notification_ids: Optional[Iterable[str]] = None,
) -> int:
    filters = [
        notifications.c.owner_id == owner_id,
        notifications.c.status.in_(list(readable_statuses)),
    ]
    if notification_ids is not None:
        filters.append(notifications.c.id.in_(list(notification_ids)))
    result = await session.execute(
        update(notifications)
        .where(and_(*filters))
        .values(status="read", read_at=read_at, failure_reason=None)
    )
    return int(result.rowcount or 0)


async def insert_push_target(
    session: AsyncSession,
    user_id: str,
    token: str,
    created_at: datetime,
) -> bool:
    """Insert a (user, token) pair; returns False when it was already present."""
    values = {"user_id": user_id, "token": token, "created_at": created_at}
    dialect = session.get_bind().dialect.name

    if dialect == "sqlite":
        stmt = sqlite_insert(push_targets).values(**values).on_conflict_do_nothing(
            index_elements=["user_id", "token"]
        )
    elif dialect == "postgresql":
        stmt = pg_insert(push_targets).values(**values).on_conflict_do_nothing(
            index_elements=["user_id", "token"]
        )
    else:
        try:
            async with session.begin_nested():
                await session.execute(insert(push_targets).values(**values))
        except IntegrityError:
            return False
        return True

    result = await session.execute(stmt)
    return (result.rowcount or 0) > 0


async def delete_push_targets(session: AsyncSession, user_id: str, tokens: Iterable[str]) -> int:
    token_list = list(tokens)
    if not token_list:
        return 0
    result = await session.execute(
        delete(push_targets).where(
            and_(
                push_targets.c.user_id == user_id,
                push_targets.c.token.in_(token_list),
            )
        )
    )
    return int(result.rowcount or 0)


async def list_push_targets(session: AsyncSession, user_id: str) -> Set[str]:
    result = await session.execute(
        select(push_targets.c.token).where(push_targets.c.user_id == user_id)
    )
    return {str(token) for token in result.scalars()}
