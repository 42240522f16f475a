from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from notifyhub.errors import InvalidTransition, NotFound
from notifyhub.models import Channel, NotificationStatus, can_transition

from .store import NotificationStore


logger = logging.getLogger("notifyhub.reconciler")


PROVIDER_STATUS_MAP: Dict[str, NotificationStatus] = {
    "delivered": NotificationStatus.DELIVERED,
    "sent": NotificationStatus.SENT,
    "queued": NotificationStatus.SENT,
    "accepted": NotificationStatus.SENT,
    "sending": NotificationStatus.SENT,
    "scheduled": NotificationStatus.SENT,
    "failed": NotificationStatus.FAILED,
    "undelivered": NotificationStatus.FAILED,
    "bounced": NotificationStatus.FAILED,
    "canceled": NotificationStatus.FAILED,
    "rejected": NotificationStatus.FAILED,
    "read": NotificationStatus.READ,
}


class ReconcileOutcome(str, Enum):
    APPLIED = "applied"
    NOT_FOUND = "not_found"
    UNCHANGED = "unchanged"
    IGNORED = "ignored"


@dataclass(slots=True)
class ReconcileResult:
    outcome: ReconcileOutcome
    notification_id: Optional[str] = None
    status: Optional[NotificationStatus] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "notification_id": self.notification_id,
            "status": self.status.value if self.status else None,
        }


def map_provider_status(raw: Optional[str]) -> Optional[NotificationStatus]:
    if not raw:
        return None
    return PROVIDER_STATUS_MAP.get(str(raw).strip().lower())


class DeliveryReconciler:
    """Applies asynchronous provider delivery callbacks to stored records.

    Callbacks are matched on the provider message id only. Anything that would
    not move a record forward is acknowledged and logged, never applied, so a
    provider replaying the same callback has no effect.
    """

    def __init__(self, store: NotificationStore) -> None:
        self._store = store

    async def reconcile(
        self,
        provider_message_id: str,
        channel: Channel,
        provider_status: str,
        error_detail: Optional[str] = None,
    ) -> ReconcileResult:
        channel = Channel(channel)
        target = map_provider_status(provider_status)
        if target is None:
            logger.warning(
                "Ignoring unknown provider status %r for %s message %s",
                provider_status,
                channel.value,
                provider_message_id,
            )
            return ReconcileResult(ReconcileOutcome.IGNORED)

        record = await self._store.find_by_provider_message_id(channel, provider_message_id)
        if record is None:
            logger.warning(
                "No %s notification matches provider message %s",
                channel.value,
                provider_message_id,
            )
            return ReconcileResult(ReconcileOutcome.NOT_FOUND)

        if record.status is target or not can_transition(record.status, target):
            logger.warning(
                "Callback %r leaves notification %s unchanged (currently %s)",
                provider_status,
                record.id,
                record.status.value,
                extra={"notification_id": record.id, "provider_message_id": provider_message_id},
            )
            return ReconcileResult(ReconcileOutcome.UNCHANGED, record.id, record.status)

        fields: Dict[str, Any] = {"provider_metadata": {"providerStatus": str(provider_status).lower()}}
        if target is NotificationStatus.FAILED:
            fields["failure_reason"] = error_detail or f"Provider reported '{provider_status}'"

        try:
            updated = await self._store.update_status(record.id, target, fields)
        except InvalidTransition as exc:
            # Another writer moved the record between the read and the update.
            logger.warning("Callback for %s lost a race: %s", record.id, exc)
            return ReconcileResult(ReconcileOutcome.UNCHANGED, record.id)
        except NotFound:
            logger.warning("Notification %s was deleted before the callback applied", record.id)
            return ReconcileResult(ReconcileOutcome.NOT_FOUND)

        logger.info(
            "Applied %s callback to notification %s: %s -> %s",
            channel.value,
            record.id,
            record.status.value,
            updated.status.value,
        )
        return ReconcileResult(ReconcileOutcome.APPLIED, updated.id, updated.status)

    async def reconcile_twilio(self, form: Mapping[str, Any]) -> ReconcileResult:
        """Twilio posts ``MessageSid``/``MessageStatus`` as form fields."""
        sid = form.get("MessageSid") or form.get("SmsSid")
        status = form.get("MessageStatus") or form.get("SmsStatus")
        if not sid or not status:
            logger.warning("Twilio callback missing MessageSid or MessageStatus")
            return ReconcileResult(ReconcileOutcome.IGNORED)
        error_code = form.get("ErrorCode")
        error_detail = f"Twilio error {error_code}" if error_code else None
        return await self.reconcile(str(sid), Channel.SMS, str(status), error_detail)
