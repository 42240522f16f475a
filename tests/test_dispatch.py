from __future__ import annotations

import pytest

from notifyhub.channels import PushDestination
from notifyhub.config import TemplateConfig
from notifyhub.errors import ConfigurationError, NotFound, StoreUnavailable, ValidationError
from notifyhub.models import Channel, ErrorKind, NotificationStatus, SendResult
from notifyhub.notifications import (
    DefaultTemplateRenderer,
    DeliveryReconciler,
    DispatchEngine,
    ReconcileOutcome,
)

from conftest import StubAdapter


pytestmark = pytest.mark.asyncio


def _engine(store, targets, user_directory=None, **adapters):
    return DispatchEngine(
        store,
        {Channel(name): adapter for name, adapter in adapters.items()},
        targets,
        user_directory=user_directory,
        renderer=DefaultTemplateRenderer(TemplateConfig(frontend_url="https://app.example.org")),
    )


async def _all_records(store, owner):
    records, _ = await store.list_for_owner(owner, limit=100)
    return records


async def test_email_send_creates_one_sent_record(store, targets):
    email = StubAdapter(Channel.EMAIL, [SendResult(success=True, provider_message_id="mid-1")])
    engine = _engine(store, targets, email=email)

    result = await engine.send_email(to="ada@example.org", subject="Hi", body="Hello", owner_id="user-1")

    assert result.success is True
    assert result.provider_message_id == "mid-1"
    records = await _all_records(store, "user-1")
    assert len(records) == 1
    assert records[0].status is NotificationStatus.SENT
    assert records[0].provider_metadata["recipient"] == "ada@example.org"
    assert records[0].provider_message_id == "mid-1"


async def test_validation_error_creates_no_record(store, targets):
    email = StubAdapter(Channel.EMAIL)
    engine = _engine(store, targets, email=email)

    with pytest.raises(ValidationError):
        await engine.send_email(to="ada@example.org", subject="Hi", body="  ", owner_id="user-1")
    with pytest.raises(ValidationError):
        await engine.send_email(to="not-an-address", subject="Hi", body="Hello", owner_id="user-1")

    assert email.calls == []
    assert await _all_records(store, "user-1") == []


async def test_unconfigured_channel_raises_without_record(store, targets):
    engine = _engine(store, targets, email=StubAdapter(Channel.EMAIL))

    with pytest.raises(ConfigurationError):
        await engine.send_sms(to="+33612345678", message="hello", owner_id="user-1")

    assert await _all_records(store, "user-1") == []


async def test_provider_failure_is_captured_on_the_record(store, targets):
    email = StubAdapter(
        Channel.EMAIL,
        [SendResult.failure(ErrorKind.PERMANENT_INVALID_TARGET, "550 mailbox unavailable")],
    )
    engine = _engine(store, targets, email=email)

    result = await engine.send_email(to="gone@example.org", subject="Hi", body="Hello", owner_id="user-1")

    assert result.success is False
    assert result.error_kind is ErrorKind.PERMANENT_INVALID_TARGET
    record = await store.get(result.notification_id)
    assert record.status is NotificationStatus.FAILED
    assert record.failure_reason == "550 mailbox unavailable"
    assert record.provider_metadata["errorKind"] == "PermanentInvalidTarget"


async def test_unexpected_adapter_exception_becomes_unknown_failure(store, targets):
    email = StubAdapter(Channel.EMAIL, [RuntimeError("boom")])
    engine = _engine(store, targets, email=email)

    result = await engine.send_email(to="ada@example.org", subject="Hi", body="Hello", owner_id="user-1")

    assert result.success is False
    assert result.error_kind is ErrorKind.UNKNOWN
    assert (await store.get(result.notification_id)).status is NotificationStatus.FAILED


async def test_immediate_delivery_moves_record_to_delivered(store, targets):
    sms = StubAdapter(
        Channel.SMS,
        [SendResult(success=True, provider_message_id="SID9", provider_status="delivered", delivered=True)],
    )
    engine = _engine(store, targets, sms=sms)

    result = await engine.send_sms(to="0612345678", message="hello", owner_id="user-1")

    record = await store.get(result.notification_id)
    assert record.status is NotificationStatus.DELIVERED
    assert record.delivered_at is not None
    assert sms.calls[0]["destination"] == "+33612345678"


async def test_sms_queued_then_delivered_webhook(store, targets):
    sms = StubAdapter(
        Channel.SMS,
        [SendResult(success=True, provider_message_id="SID123", provider_status="queued")],
    )
    engine = _engine(store, targets, sms=sms)
    reconciler = DeliveryReconciler(store)

    result = await engine.send_sms(to="+33612345678", message="Your code is 1234", owner_id="user-1")

    record = await store.get(result.notification_id)
    assert record.status is NotificationStatus.SENT
    assert record.provider_metadata["messageId"] == "SID123"
    assert record.provider_metadata["providerStatus"] == "queued"

    outcome = await reconciler.reconcile("SID123", Channel.SMS, "delivered")

    assert outcome.outcome is ReconcileOutcome.APPLIED
    record = await store.get(result.notification_id)
    assert record.status is NotificationStatus.DELIVERED
    assert record.delivered_at is not None


async def test_push_prunes_invalid_tokens_even_on_success(store, targets, user_directory):
    for token in ("A", "B", "C"):
        await targets.add_target("user-1", token)
    push = StubAdapter(
        Channel.PUSH,
        [SendResult(success=True, provider_message_id="projects/p/messages/1", invalid_targets=["B"])],
    )
    engine = _engine(store, targets, user_directory, push=push)

    result = await engine.send_push(title="Hi", body="There", user_id="user-1")

    assert result.success is True
    assert push.calls[0]["destination"] == PushDestination(tokens=["A", "B", "C"])
    assert await targets.targets_for("user-1") == {"A", "C"}
    assert user_directory.updates == [("user-1", {"pushTokenValid": True})]


async def test_push_to_user_without_tokens_creates_no_record(store, targets):
    push = StubAdapter(Channel.PUSH)
    engine = _engine(store, targets, push=push)

    result = await engine.send_push(title="Hi", body="There", user_id="user-1")

    assert result.success is False
    assert result.error_kind is ErrorKind.NOT_FOUND
    assert result.notification_id is None
    assert push.calls == []
    assert await _all_records(store, "user-1") == []


async def test_push_requires_exactly_one_addressing_mode(store, targets):
    engine = _engine(store, targets, push=StubAdapter(Channel.PUSH))

    with pytest.raises(ValidationError):
        await engine.send_push(title="Hi", body="There")
    with pytest.raises(ValidationError):
        await engine.send_push(title="Hi", body="There", token="A", topic="news")
    with pytest.raises(ValidationError):
        await engine.send_push(title="", body="There", token="A")


async def test_push_to_topic_records_topic(store, targets):
    push = StubAdapter(Channel.PUSH)
    engine = _engine(store, targets, push=push)

    result = await engine.send_push(title="Hi", body="There", topic="news", owner_id="user-1")

    record = await store.get(result.notification_id)
    assert record.provider_metadata["topic"] == "news"
    assert push.calls[0]["destination"].topic == "news"


async def test_email_template_renders_for_directory_user(store, targets, user_directory):
    user_directory.users["user-7"] = {"email": "grace@example.org"}
    email = StubAdapter(Channel.EMAIL)
    engine = _engine(store, targets, user_directory, email=email)

    result = await engine.send_email(user_id="user-7", template="confirm", variables={"token": "abc"})

    assert result.success is True
    call = email.calls[0]
    assert call["destination"] == "grace@example.org"
    assert "https://app.example.org/confirm-account?token=abc" in call["body"]
    record = await store.get(result.notification_id)
    assert record.owner_id == "user-7"
    assert record.provider_metadata["template"] == "confirm"


async def test_unknown_directory_user_raises_not_found(store, targets, user_directory):
    engine = _engine(store, targets, user_directory, sms=StubAdapter(Channel.SMS))

    with pytest.raises(NotFound):
        await engine.send_sms(user_id="ghost", message="hello")


async def test_store_failure_surfaces_as_store_unavailable(store, targets, monkeypatch):
    email = StubAdapter(Channel.EMAIL)
    engine = _engine(store, targets, email=email)

    async def _broken_create(record):
        raise StoreUnavailable("Notification store is unavailable")

    monkeypatch.setattr(store, "create", _broken_create)

    with pytest.raises(StoreUnavailable):
        await engine.send_email(to="ada@example.org", subject="Hi", body="Hello")
    assert email.calls == []


async def test_close_closes_adapters(store, targets):
    email = StubAdapter(Channel.EMAIL)
    engine = _engine(store, targets, email=email)

    await engine.close()

    assert email.closed is True


async def test_push_by_user_id_prunes_that_users_tokens_not_the_callers(store, targets):
    for token in ("A", "B", "C"):
        await targets.add_target("user-1", token)
    await targets.add_target("caller", "B")
    push = StubAdapter(
        Channel.PUSH,
        [SendResult(success=True, provider_message_id="projects/p/messages/1", invalid_targets=["B"])],
    )
    engine = _engine(store, targets, push=push)

    result = await engine.send_push(title="Hi", body="There", user_id="user-1", owner_id="caller")

    assert result.success is True
    assert await targets.targets_for("user-1") == {"A", "C"}
    assert await targets.targets_for("caller") == {"B"}
    record = await store.get(result.notification_id)
    assert record.owner_id == "caller"


async def test_explicit_tokens_are_pruned_from_the_owner(store, targets):
    await targets.add_target("user-1", "stale")
    push = StubAdapter(
        Channel.PUSH,
        [SendResult.failure(ErrorKind.PERMANENT_INVALID_TARGET, "UNREGISTERED", invalid_targets=["stale"])],
    )
    engine = _engine(store, targets, push=push)

    await engine.send_push(title="Hi", body="There", token="stale", owner_id="user-1")

    assert await targets.targets_for("user-1") == set()


async def test_user_opted_out_of_channel_gets_nothing(store, targets, user_directory):
    user_directory.users["user-3"] = {
        "email": "ada@example.org",
        "phone": "0612345678",
        "notificationPreferences": {"email": True, "sms": False, "push": False},
    }
    sms = StubAdapter(Channel.SMS)
    push = StubAdapter(Channel.PUSH)
    email = StubAdapter(Channel.EMAIL)
    await targets.add_target("user-3", "A")
    engine = _engine(store, targets, user_directory, sms=sms, push=push, email=email)

    with pytest.raises(ValidationError):
        await engine.send_sms(user_id="user-3", message="hello")
    with pytest.raises(ValidationError):
        await engine.send_push(title="Hi", body="There", user_id="user-3")
    result = await engine.send_email(user_id="user-3", subject="Hi", body="Hello")

    assert result.success is True
    assert sms.calls == []
    assert push.calls == []
    records = await _all_records(store, "user-3")
    assert [record.channel for record in records] == [Channel.EMAIL]


async def test_missing_preferences_default_to_enabled(store, targets, user_directory):
    user_directory.users["user-4"] = {"phone": "0612345678", "notificationPreferences": {"email": False}}
    sms = StubAdapter(Channel.SMS)
    engine = _engine(store, targets, user_directory, sms=sms)

    result = await engine.send_sms(user_id="user-4", message="hello")

    assert result.success is True
    assert sms.calls[0]["destination"] == "+33612345678"


async def test_explicit_recipient_skips_preference_lookup(store, targets, user_directory):
    sms = StubAdapter(Channel.SMS)
    engine = _engine(store, targets, user_directory, sms=sms)

    result = await engine.send_sms(to="0612345678", message="hello", owner_id="user-5")

    assert result.success is True


async def test_reset_template_names_the_recipient(store, targets, user_directory):
    user_directory.users["user-8"] = {"email": "grace@example.org"}
    email = StubAdapter(Channel.EMAIL)
    engine = _engine(store, targets, user_directory, email=email)

    await engine.send_email(to="ada@example.org", template="reset", variables={"code": "123456"})
    await engine.send_email(user_id="user-8", template="reset", variables={"code": "654321"})

    assert "requested for ada@example.org" in email.calls[0]["body"]
    assert "requested for grace@example.org" in email.calls[1]["body"]
    assert "654321" in email.calls[1]["body"]
