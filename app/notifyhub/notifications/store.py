from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from notifyhub.data import crud
from notifyhub.data.db import get_session
from notifyhub.errors import InvalidTransition, NotFound, StoreUnavailable, ValidationError
from notifyhub.models import (
    MESSAGE_ID_KEY,
    Channel,
    NotificationRecord,
    NotificationStatus,
    OwnerStats,
    can_transition,
    predecessors_of,
)


logger = logging.getLogger("notifyhub.store")

STATS_WINDOW_DAYS = 7
_UPDATABLE_FIELDS = {"failure_reason", "provider_metadata", "delivered_at", "read_at"}
_CAS_ATTEMPTS = 3


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how the tables store datetimes."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_notification_id() -> str:
    return uuid.uuid4().hex


@asynccontextmanager
async def session_scope(
    session_factory: Callable[[], AsyncSession],
    *,
    write: bool = False,
) -> AsyncIterator[AsyncSession]:
    """Open a session, committing on success when ``write`` is set.

    Database errors surface as :class:`StoreUnavailable`.
    """
    session = session_factory()
    try:
        yield session
        if write:
            await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.error("Notification store operation failed: %s", exc)
        raise StoreUnavailable("Notification store is unavailable") from exc
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


def _row_to_record(row: Dict[str, Any]) -> NotificationRecord:
    metadata = row.get("provider_metadata") or {}
    if not isinstance(metadata, dict):
        metadata = {}
    return NotificationRecord(
        id=row["id"],
        owner_id=row.get("owner_id"),
        channel=Channel(row["channel"]),
        title=row.get("title") or "",
        body=row.get("body") or "",
        status=NotificationStatus(row["status"]),
        created_at=row["created_at"],
        delivered_at=row.get("delivered_at"),
        read_at=row.get("read_at"),
        failure_reason=row.get("failure_reason"),
        provider_metadata=dict(metadata),
    )


class NotificationStore:
    """Persistence and status transitions for notification records.

    Every mutation is keyed by record id. Status changes are compare-and-set
    updates guarded by the status that was read, so two writers racing on the
    same record can never both apply a transition.
    """

    def __init__(self, session_factory: Callable[[], AsyncSession] = get_session) -> None:
        self._session_factory = session_factory

    def _session_scope(self, *, write: bool = False):
        return session_scope(self._session_factory, write=write)

    async def create(self, record: NotificationRecord) -> str:
        if record.status is not NotificationStatus.PENDING:
            raise ValidationError("New notifications must start in 'pending'")
        payload = {
            "id": record.id or new_notification_id(),
            "owner_id": record.owner_id,
            "channel": record.channel.value,
            "title": record.title,
            "body": record.body,
            "status": NotificationStatus.PENDING.value,
            "created_at": record.created_at or utcnow(),
            "provider_message_id": record.provider_message_id,
            "provider_metadata": dict(record.provider_metadata),
        }
        async with self._session_scope(write=True) as session:
            await crud.insert_notification(session, payload)
        return payload["id"]

    async def get(self, notification_id: str) -> NotificationRecord:
        async with self._session_scope() as session:
            row = await crud.get_notification(session, notification_id)
        if row is None:
            raise NotFound(f"Notification '{notification_id}' not found")
        return _row_to_record(row)

    async def get_for_owner(self, notification_id: str, owner_id: str) -> NotificationRecord:
        record = await self.get(notification_id)
        if record.owner_id != owner_id:
            raise NotFound(f"Notification '{notification_id}' not found")
        return record

    async def find_by_provider_message_id(
        self,
        channel: Channel,
        message_id: str,
    ) -> Optional[NotificationRecord]:
        async with self._session_scope() as session:
            row = await crud.get_notification_by_message_id(session, Channel(channel).value, message_id)
        return _row_to_record(row) if row is not None else None

    async def update_status(
        self,
        notification_id: str,
        status: NotificationStatus,
        fields: Optional[Dict[str, Any]] = None,
    ) -> NotificationRecord:
        target = NotificationStatus(status)
        extra = dict(fields or {})
        unknown = set(extra) - _UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unsupported fields for status update: {sorted(unknown)}")

        for _ in range(_CAS_ATTEMPTS):
            async with self._session_scope(write=True) as session:
                row = await crud.get_notification(session, notification_id)
                if row is None:
                    raise NotFound(f"Notification '{notification_id}' not found")
                current = NotificationStatus(row["status"])
                if not can_transition(current, target):
                    raise InvalidTransition(current, target)

                values = self._transition_values(row, target, extra)
                if await crud.update_notification_if_status(session, notification_id, current.value, values):
                    row.update(values)
                    return _row_to_record(row)
            logger.debug(
                "Concurrent status change on %s, re-reading before retry",
                notification_id,
            )
        raise StoreUnavailable(f"Notification '{notification_id}' kept changing during update")

    def _transition_values(
        self,
        row: Dict[str, Any],
        target: NotificationStatus,
        extra: Dict[str, Any],
    ) -> Dict[str, Any]:
        now = utcnow()
        values: Dict[str, Any] = {"status": target.value}

        if target is NotificationStatus.DELIVERED:
            values["delivered_at"] = extra.get("delivered_at") or now
        if target is NotificationStatus.READ:
            values["read_at"] = extra.get("read_at") or now
        if target is NotificationStatus.FAILED:
            values["failure_reason"] = extra.get("failure_reason") or "Unknown failure"
        else:
            values["failure_reason"] = None

        incoming = extra.get("provider_metadata")
        if incoming:
            merged = dict(row.get("provider_metadata") or {})
            existing_id = merged.get(MESSAGE_ID_KEY)
            new_id = incoming.get(MESSAGE_ID_KEY)
            merged.update(incoming)
            if existing_id is not None and new_id is not None and str(new_id) != str(existing_id):
                logger.warning(
                    "Ignoring attempt to replace provider message id on %s (%s -> %s)",
                    row["id"],
                    existing_id,
                    new_id,
                )
                merged[MESSAGE_ID_KEY] = existing_id
            values["provider_metadata"] = merged
            if merged.get(MESSAGE_ID_KEY) is not None:
                values["provider_message_id"] = str(merged[MESSAGE_ID_KEY])
        return values

    async def list_for_owner(
        self,
        owner_id: str,
        *,
        channel: Optional[Channel] = None,
        status: Optional[NotificationStatus] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Tuple[List[NotificationRecord], int]:
        if page < 1:
            raise ValidationError("page must be >= 1")
        if limit < 1:
            raise ValidationError("limit must be >= 1")
        async with self._session_scope() as session:
            rows, total = await crud.list_notifications_for_owner(
                session,
                owner_id,
                channel=Channel(channel).value if channel else None,
                status=NotificationStatus(status).value if status else None,
                offset=(page - 1) * limit,
                limit=limit,
            )
        return [_row_to_record(row) for row in rows], total

    async def aggregate_stats(self, owner_id: str, *, now: Optional[datetime] = None) -> OwnerStats:
        now = now or utcnow()
        today = now.date()
        first_day = today - timedelta(days=STATS_WINDOW_DAYS - 1)
        since = datetime.combine(first_day, datetime.min.time())

        async with self._session_scope() as session:
            by_status = await crud.count_by_status(session, owner_id)
            by_type = await crud.count_by_channel(session, owner_id)
            by_day_raw = await crud.count_by_day(session, owner_id, since)

        by_day = {
            (first_day + timedelta(days=offset)).isoformat(): 0
            for offset in range(STATS_WINDOW_DAYS)
        }
        for day_key, count in by_day_raw.items():
            if day_key in by_day:
                by_day[day_key] = count

        return OwnerStats(
            by_status={status.value: by_status.get(status.value, 0) for status in NotificationStatus},
            by_type={channel.value: by_type.get(channel.value, 0) for channel in Channel},
            by_day=by_day,
        )

    async def mark_read(self, notification_id: str, owner_id: str) -> NotificationRecord:
        record = await self.get_for_owner(notification_id, owner_id)
        if record.status is NotificationStatus.READ:
            return record
        return await self.update_status(notification_id, NotificationStatus.READ)

    async def mark_all_read(self, owner_id: str, notification_ids: Optional[Iterable[str]] = None) -> int:
        async with self._session_scope(write=True) as session:
            return await crud.mark_notifications_read(
                session,
                owner_id,
                readable_statuses=[status.value for status in predecessors_of(NotificationStatus.READ)],
                read_at=utcnow(),
                notification_ids=notification_ids,
            )

    async def delete_one(self, notification_id: str, owner_id: str) -> None:
        async with self._session_scope(write=True) as session:
            deleted = await crud.delete_notification(session, notification_id, owner_id)
        if not deleted:
            raise NotFound(f"Notification '{notification_id}' not found")

    async def delete_all(self, owner_id: str) -> int:
        async with self._session_scope(write=True) as session:
            return await crud.delete_notifications_for_owner(session, owner_id)
