from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from notifyhub.errors import InvalidTransition, NotFound, ValidationError
from notifyhub.models import Channel, NotificationRecord, NotificationStatus
from notifyhub.notifications.store import new_notification_id


pytestmark = pytest.mark.asyncio

BASE_TIME = datetime(2026, 3, 10, 12, 0, 0)


def _record(owner: str = "user-1", channel: Channel = Channel.EMAIL, created_at=None, **metadata):
    return NotificationRecord(
        id=new_notification_id(),
        owner_id=owner,
        channel=channel,
        title="Hello",
        body="World",
        status=NotificationStatus.PENDING,
        created_at=created_at or BASE_TIME,
        provider_metadata=dict(metadata),
    )


async def test_create_and_get_round_trip(store):
    notification_id = await store.create(_record(recipient="a@example.org"))

    record = await store.get(notification_id)

    assert record.status is NotificationStatus.PENDING
    assert record.provider_metadata == {"recipient": "a@example.org"}
    assert record.delivered_at is None


async def test_create_rejects_non_pending_records(store):
    record = _record()
    record.status = NotificationStatus.SENT

    with pytest.raises(ValidationError):
        await store.create(record)


async def test_get_unknown_id_raises_not_found(store):
    with pytest.raises(NotFound):
        await store.get("does-not-exist")


async def test_update_status_sets_timestamps_and_message_id(store):
    notification_id = await store.create(_record(channel=Channel.SMS))

    sent = await store.update_status(
        notification_id,
        NotificationStatus.SENT,
        {"provider_metadata": {"messageId": "SID123", "providerStatus": "queued"}},
    )
    assert sent.provider_message_id == "SID123"
    assert sent.provider_metadata["providerStatus"] == "queued"

    delivered = await store.update_status(notification_id, NotificationStatus.DELIVERED)
    assert delivered.delivered_at is not None
    assert delivered.read_at is None

    found = await store.find_by_provider_message_id(Channel.SMS, "SID123")
    assert found is not None and found.id == notification_id
    assert await store.find_by_provider_message_id(Channel.EMAIL, "SID123") is None


async def test_message_id_is_never_replaced(store):
    notification_id = await store.create(_record(channel=Channel.SMS))
    await store.update_status(
        notification_id,
        NotificationStatus.SENT,
        {"provider_metadata": {"messageId": "SID1"}},
    )

    record = await store.update_status(
        notification_id,
        NotificationStatus.DELIVERED,
        {"provider_metadata": {"messageId": "SID2", "providerStatus": "delivered"}},
    )

    assert record.provider_message_id == "SID1"
    assert record.provider_metadata["providerStatus"] == "delivered"


async def test_failure_reason_only_kept_on_failed(store):
    notification_id = await store.create(_record())

    failed = await store.update_status(
        notification_id,
        NotificationStatus.FAILED,
        {"failure_reason": "mailbox unavailable"},
    )

    assert failed.failure_reason == "mailbox unavailable"
    with pytest.raises(InvalidTransition):
        await store.update_status(notification_id, NotificationStatus.SENT)
    assert (await store.get(notification_id)).status is NotificationStatus.FAILED


async def test_update_status_rejects_unknown_fields(store):
    notification_id = await store.create(_record())

    with pytest.raises(ValidationError):
        await store.update_status(notification_id, NotificationStatus.SENT, {"owner_id": "someone-else"})


async def test_pagination_returns_newest_first(store):
    for index in range(1, 26):
        await store.create(_record(title_index=index, created_at=BASE_TIME + timedelta(minutes=index)))

    records, total = await store.list_for_owner("user-1", page=2, limit=10)

    assert total == 25
    assert [record.provider_metadata["title_index"] for record in records] == list(range(15, 5, -1))


async def test_pagination_filters_by_channel_and_status(store):
    email_id = await store.create(_record(channel=Channel.EMAIL))
    await store.create(_record(channel=Channel.SMS))
    await store.create(_record(owner="user-2", channel=Channel.EMAIL))
    await store.update_status(email_id, NotificationStatus.SENT)

    records, total = await store.list_for_owner(
        "user-1",
        channel=Channel.EMAIL,
        status=NotificationStatus.SENT,
    )

    assert total == 1
    assert records[0].id == email_id


async def test_pagination_rejects_zero_page(store):
    with pytest.raises(ValidationError):
        await store.list_for_owner("user-1", page=0)


async def test_aggregate_stats_zero_fills_buckets(store):
    now = BASE_TIME
    first = await store.create(_record(channel=Channel.EMAIL, created_at=now))
    await store.create(_record(channel=Channel.PUSH, created_at=now - timedelta(days=2)))
    await store.create(_record(channel=Channel.PUSH, created_at=now - timedelta(days=30)))
    await store.update_status(first, NotificationStatus.SENT)

    stats = await store.aggregate_stats("user-1", now=now)

    assert stats.by_status == {"pending": 2, "sent": 1, "delivered": 0, "failed": 0, "read": 0}
    assert stats.by_type == {"email": 1, "sms": 0, "push": 2}
    assert len(stats.by_day) == 7
    assert stats.by_day[now.date().isoformat()] == 1
    assert stats.by_day[(now - timedelta(days=2)).date().isoformat()] == 1
    assert sum(stats.by_day.values()) == 2


async def test_mark_read_is_scoped_to_owner(store):
    notification_id = await store.create(_record())
    await store.update_status(notification_id, NotificationStatus.SENT)

    with pytest.raises(NotFound):
        await store.mark_read(notification_id, "intruder")

    record = await store.mark_read(notification_id, "user-1")
    assert record.status is NotificationStatus.READ
    assert record.read_at is not None

    again = await store.mark_read(notification_id, "user-1")
    assert again.read_at == record.read_at


async def test_mark_read_on_pending_is_rejected(store):
    notification_id = await store.create(_record())

    with pytest.raises(InvalidTransition):
        await store.mark_read(notification_id, "user-1")


async def test_mark_all_read_only_touches_readable_records(store):
    pending = await store.create(_record())
    sent = await store.create(_record())
    delivered = await store.create(_record())
    await store.update_status(sent, NotificationStatus.SENT)
    await store.update_status(delivered, NotificationStatus.SENT)
    await store.update_status(delivered, NotificationStatus.DELIVERED)

    updated = await store.mark_all_read("user-1")

    assert updated == 2
    assert (await store.get(pending)).status is NotificationStatus.PENDING
    assert (await store.get(sent)).status is NotificationStatus.READ


async def test_delete_one_and_delete_all(store):
    keep = await store.create(_record(owner="user-2"))
    first = await store.create(_record())
    await store.create(_record())

    with pytest.raises(NotFound):
        await store.delete_one(keep, "user-1")

    await store.delete_one(first, "user-1")
    assert await store.delete_all("user-1") == 1
    assert (await store.get(keep)).owner_id == "user-2"
