from __future__ import annotations

import logging
import re
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional

import httpx

from notifyhub.channels import (
    ChannelAdapter,
    EmailAdapter,
    PushDestination,
    build_push_adapter,
    build_sms_adapter,
    normalize_phone_number,
    normalize_topic,
)
from notifyhub.clients.users import UserDirectoryClient, UserDirectoryError
from notifyhub.config import ChannelsConfig
from notifyhub.errors import (
    ConfigurationError,
    NotFound,
    ProviderError,
    StoreUnavailable,
    ValidationError,
)
from notifyhub.models import (
    MESSAGE_ID_KEY,
    Channel,
    DispatchResult,
    ErrorKind,
    NotificationRecord,
    NotificationStatus,
    SendResult,
)

from .store import NotificationStore, new_notification_id, utcnow
from .targets import TokenLifecycleManager
from .templates import TemplateRenderer


logger = logging.getLogger("notifyhub.dispatch")

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def build_adapters(
    config: ChannelsConfig,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    smtp_send: Optional[Callable[..., Awaitable[Any]]] = None,
) -> Dict[Channel, ChannelAdapter]:
    """Construct one adapter per configured channel.

    A channel whose configuration is incomplete is logged and left out; the
    remaining channels keep working.
    """
    builders = (
        (Channel.EMAIL, config.email, lambda conf: EmailAdapter.from_config(conf, smtp_send=smtp_send)),
        (Channel.SMS, config.sms, lambda conf: build_sms_adapter(conf, transport=transport)),
        (Channel.PUSH, config.push, lambda conf: build_push_adapter(conf, transport=transport)),
    )
    adapters: Dict[Channel, ChannelAdapter] = {}
    for channel, channel_config, build in builders:
        if channel_config is None:
            logger.info("Channel %s is disabled", channel.value)
            continue
        try:
            adapters[channel] = build(channel_config)
        except ConfigurationError as exc:
            logger.error("Channel %s disabled: %s", channel.value, exc.message)
    return adapters


def _require_text(value: Optional[str], name: str) -> str:
    cleaned = str(value).strip() if value is not None else ""
    if not cleaned:
        raise ValidationError(f"{name} is required", details={"field": name})
    return cleaned


def _check_preference(user: Mapping[str, Any], user_id: str, channel: Channel) -> None:
    # Channels default to enabled; only an explicit False opts out.
    preferences = user.get("notificationPreferences")
    if isinstance(preferences, Mapping) and preferences.get(channel.value) is False:
        raise ValidationError(
            f"User '{user_id}' has opted out of {channel.value} notifications",
            details={"field": "user_id", "channel": channel.value},
        )


class DispatchEngine:
    """
    Single entry point for every send path.

    A send validates its input, persists a pending record, calls the channel
    adapter once and moves the record to ``sent`` or ``failed``. Sends are never
    retried here; a caller that wants another attempt issues another send and
    gets another record.
    """

    def __init__(
        self,
        store: NotificationStore,
        adapters: Mapping[Channel, ChannelAdapter],
        targets: TokenLifecycleManager,
        *,
        user_directory: Optional[UserDirectoryClient] = None,
        renderer: Optional[TemplateRenderer] = None,
        default_country_code: str = "33",
    ) -> None:
        self._store = store
        self._adapters: Dict[Channel, ChannelAdapter] = dict(adapters)
        self._targets = targets
        self._user_directory = user_directory
        self._renderer = renderer
        self._country_code = default_country_code

    @property
    def channels(self) -> List[Channel]:
        return sorted(self._adapters, key=lambda channel: channel.value)

    async def close(self) -> None:
        for adapter in self._adapters.values():
            close_fn = getattr(adapter, "close", None)
            if callable(close_fn):
                await close_fn()

    def adapter_for(self, channel: Channel) -> ChannelAdapter:
        adapter = self._adapters.get(channel)
        if adapter is None:
            raise ConfigurationError(
                f"Channel '{channel.value}' is not configured",
                details={"channel": channel.value},
            )
        return adapter

    async def _lookup_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        if self._user_directory is None:
            raise ConfigurationError("User directory is not configured")
        try:
            return await self._user_directory.get_user(user_id)
        except UserDirectoryError as exc:
            raise ProviderError(
                f"User directory unavailable: {exc}",
                kind=ErrorKind.TRANSIENT_ERROR,
                retryable=exc.retryable,
            ) from exc

    async def _resolve_user(self, user_id: str, channel: Channel) -> Dict[str, Any]:
        user = await self._lookup_user(user_id)
        if user is None:
            raise NotFound(f"User '{user_id}' not found")
        _check_preference(user, user_id, channel)
        return user

    @staticmethod
    def _check_email(address: Any) -> str:
        address = str(address).strip()
        if not _EMAIL_PATTERN.match(address):
            raise ValidationError(f"Invalid email address: {address!r}", details={"field": "to"})
        return address

    async def send_email(
        self,
        *,
        to: Optional[str] = None,
        user_id: Optional[str] = None,
        subject: Optional[str] = None,
        body: Optional[str] = None,
        template: Optional[str] = None,
        variables: Optional[Mapping[str, Any]] = None,
        html: Optional[str] = None,
        owner_id: Optional[str] = None,
    ) -> DispatchResult:
        if not to and not user_id:
            raise ValidationError("Either 'to' or 'user_id' is required", details={"field": "to"})
        if to:
            to = self._check_email(to)
        template_variables = dict(variables or {})
        if template:
            if self._renderer is None:
                raise ConfigurationError("No template renderer is configured")
            if to:
                template_variables.setdefault("email", to)
            rendered = self._renderer.render(template, template_variables)
            subject, body = subject or rendered.subject, rendered.body
        subject = _require_text(subject, "subject")
        body = _require_text(body, "body")
        adapter = self.adapter_for(Channel.EMAIL)

        if not to:
            user = await self._resolve_user(user_id, Channel.EMAIL)
            if not user.get("email"):
                raise ValidationError(f"User '{user_id}' has no email address", details={"field": "to"})
            to = self._check_email(user["email"])
            if template and "email" not in template_variables:
                template_variables["email"] = to
                body = self._renderer.render(template, template_variables).body

        metadata: Dict[str, Any] = {"recipient": to}
        if template:
            metadata["template"] = template
        return await self._dispatch(
            adapter,
            Channel.EMAIL,
            to,
            subject,
            body,
            owner_id=owner_id or user_id,
            metadata=metadata,
            extra={"html": html} if html else {},
        )

    async def send_sms(
        self,
        *,
        to: Optional[str] = None,
        user_id: Optional[str] = None,
        message: Optional[str] = None,
        owner_id: Optional[str] = None,
    ) -> DispatchResult:
        if not to and not user_id:
            raise ValidationError("Either 'to' or 'user_id' is required", details={"field": "to"})
        message = _require_text(message, "message")
        if to:
            phone = normalize_phone_number(to, self._country_code)
        adapter = self.adapter_for(Channel.SMS)

        if not to:
            user = await self._resolve_user(user_id, Channel.SMS)
            raw_phone = user.get("phone")
            if not raw_phone:
                raise ValidationError(f"User '{user_id}' has no phone number", details={"field": "to"})
            phone = normalize_phone_number(raw_phone, self._country_code)

        return await self._dispatch(
            adapter,
            Channel.SMS,
            phone,
            "SMS",
            message,
            owner_id=owner_id or user_id,
            metadata={"recipient": phone},
            extra={},
        )

    async def send_push(
        self,
        *,
        title: Optional[str] = None,
        body: Optional[str] = None,
        token: Optional[str] = None,
        tokens: Optional[Iterable[str]] = None,
        user_id: Optional[str] = None,
        topic: Optional[str] = None,
        data: Optional[Mapping[str, Any]] = None,
        owner_id: Optional[str] = None,
    ) -> DispatchResult:
        title = _require_text(title, "title")
        body = _require_text(body, "body")
        explicit = [item.strip() for item in ([token] if token else []) + list(tokens or []) if item and item.strip()]
        addressing = [bool(explicit), bool(user_id), bool(topic)]
        if sum(addressing) != 1:
            raise ValidationError(
                "Exactly one of token(s), user_id or topic is required",
                details={"field": "token"},
            )
        adapter = self.adapter_for(Channel.PUSH)

        owner = owner_id or user_id
        # Invalid tokens are pruned from whichever token set they were taken from.
        target_owner = user_id or owner_id
        if user_id:
            if self._user_directory is not None:
                user = await self._lookup_user(user_id)
                if user is not None:
                    _check_preference(user, user_id, Channel.PUSH)
            targets = await self._targets.targets_for(user_id)
            if not targets:
                logger.info("No push targets registered for user %s", user_id)
                return DispatchResult(
                    success=False,
                    notification_id=None,
                    error_kind=ErrorKind.NOT_FOUND,
                    error_detail=f"No push targets registered for user '{user_id}'",
                )
            destination = PushDestination(tokens=sorted(targets))
        elif topic:
            destination = PushDestination(topic=normalize_topic(topic))
        else:
            destination = PushDestination(tokens=list(dict.fromkeys(explicit)))

        metadata: Dict[str, Any] = {}
        if destination.topic:
            metadata["topic"] = destination.topic
        else:
            metadata["tokens"] = list(destination.tokens)
        if data:
            metadata["data"] = dict(data)

        return await self._dispatch(
            adapter,
            Channel.PUSH,
            destination,
            title,
            body,
            owner_id=owner,
            metadata=metadata,
            extra={"data": dict(data)} if data else {},
            target_owner=target_owner,
        )

    async def _dispatch(
        self,
        adapter: ChannelAdapter,
        channel: Channel,
        destination: Any,
        title: str,
        body: str,
        *,
        owner_id: Optional[str],
        metadata: Dict[str, Any],
        extra: Dict[str, Any],
        target_owner: Optional[str] = None,
    ) -> DispatchResult:
        record = NotificationRecord(
            id=new_notification_id(),
            owner_id=owner_id,
            channel=channel,
            title=title,
            body=body,
            status=NotificationStatus.PENDING,
            created_at=utcnow(),
            provider_metadata=metadata,
        )
        notification_id = await self._store.create(record)

        try:
            result = await adapter.send(destination, title, body, extra)
        except Exception as exc:  # noqa: BLE001
            logger.exception(
                "Adapter for %s raised while sending notification %s",
                channel.value,
                notification_id,
            )
            result = SendResult.failure(ErrorKind.UNKNOWN, f"Unexpected adapter error: {exc}")

        await self._record_outcome(notification_id, result)

        if target_owner and result.invalid_targets:
            try:
                await self._targets.prune_invalid(target_owner, result.invalid_targets)
            except StoreUnavailable:
                logger.warning(
                    "Could not prune %s invalid push target(s) for user %s",
                    len(result.invalid_targets),
                    target_owner,
                )

        logger.info(
            "Dispatched %s notification %s: %s",
            channel.value,
            notification_id,
            "sent" if result.success else f"failed ({result.error_kind.value})",
            extra={"notification_id": notification_id, "channel": channel.value},
        )
        return DispatchResult(
            success=result.success,
            notification_id=notification_id,
            provider_message_id=result.provider_message_id,
            error_kind=None if result.success else result.error_kind,
            error_detail=None if result.success else result.error_detail,
        )

    async def _record_outcome(self, notification_id: str, result: SendResult) -> None:
        metadata: Dict[str, Any] = dict(result.metadata)
        if result.provider_message_id:
            metadata[MESSAGE_ID_KEY] = result.provider_message_id
        if result.provider_status:
            metadata["providerStatus"] = result.provider_status

        try:
            if result.success:
                await self._store.update_status(
                    notification_id,
                    NotificationStatus.SENT,
                    {"provider_metadata": metadata},
                )
                if result.delivered:
                    await self._store.update_status(notification_id, NotificationStatus.DELIVERED)
            else:
                if result.error_kind is None:
                    result.error_kind = ErrorKind.UNKNOWN
                metadata["errorKind"] = result.error_kind.value
                await self._store.update_status(
                    notification_id,
                    NotificationStatus.FAILED,
                    {
                        "failure_reason": result.error_detail or result.error_kind.value,
                        "provider_metadata": metadata,
                    },
                )
        except StoreUnavailable:
            logger.error(
                "Notification %s was handed to the provider but its status could not be saved",
                notification_id,
                extra={"notification_id": notification_id, "provider_message_id": result.provider_message_id},
            )
            raise
