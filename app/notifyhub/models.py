from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional


MESSAGE_ID_KEY = "messageId"


class Channel(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"


class NotificationStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    READ = "read"


class ErrorKind(str, Enum):
    PERMANENT_INVALID_TARGET = "PermanentInvalidTarget"
    TRANSIENT_ERROR = "TransientError"
    CONFIGURATION_ERROR = "ConfigurationError"
    NOT_FOUND = "NotFound"
    UNKNOWN = "Unknown"


# Forward-only state machine; failed and read have no successors.
ALLOWED_TRANSITIONS: Dict[NotificationStatus, FrozenSet[NotificationStatus]] = {
    NotificationStatus.PENDING: frozenset({NotificationStatus.SENT, NotificationStatus.FAILED}),
    NotificationStatus.SENT: frozenset(
        {NotificationStatus.DELIVERED, NotificationStatus.FAILED, NotificationStatus.READ}
    ),
    NotificationStatus.DELIVERED: frozenset({NotificationStatus.READ}),
    NotificationStatus.FAILED: frozenset(),
    NotificationStatus.READ: frozenset(),
}

TERMINAL_STATUSES: FrozenSet[NotificationStatus] = frozenset(
    status for status, successors in ALLOWED_TRANSITIONS.items() if not successors
)


def can_transition(current: NotificationStatus, target: NotificationStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def predecessors_of(target: NotificationStatus) -> List[NotificationStatus]:
    """Statuses from which ``target`` may legally be reached."""
    return [status for status, successors in ALLOWED_TRANSITIONS.items() if target in successors]


@dataclass(slots=True)
class NotificationRecord:
    """A status-tracked notification as persisted by the record store."""

    id: str
    owner_id: Optional[str]
    channel: Channel
    title: str
    body: str
    status: NotificationStatus
    created_at: datetime
    delivered_at: Optional[datetime] = None
    read_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    provider_metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def provider_message_id(self) -> Optional[str]:
        value = self.provider_metadata.get(MESSAGE_ID_KEY)
        return str(value) if value is not None else None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "channel": self.channel.value,
            "title": self.title,
            "body": self.body,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "delivered_at": self.delivered_at.isoformat() if self.delivered_at else None,
            "read_at": self.read_at.isoformat() if self.read_at else None,
            "failure_reason": self.failure_reason,
            "provider_metadata": dict(self.provider_metadata),
        }


@dataclass(slots=True)
class SendResult:
    """Outcome reported by a channel adapter for one send call."""

    success: bool
    provider_message_id: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    error_detail: Optional[str] = None
    provider_status: Optional[str] = None
    delivered: bool = False
    invalid_targets: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def failure(
        cls,
        kind: ErrorKind,
        detail: str,
        **extra: Any,
    ) -> "SendResult":
        return cls(success=False, error_kind=kind, error_detail=detail, **extra)


@dataclass(slots=True)
class DispatchResult:
    """Uniform result returned to callers of the dispatch engine."""

    success: bool
    notification_id: Optional[str]
    provider_message_id: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    error_detail: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "notification_id": self.notification_id,
            "provider_message_id": self.provider_message_id,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "error_detail": self.error_detail,
        }


@dataclass(slots=True)
class OwnerStats:
    by_status: Dict[str, int]
    by_type: Dict[str, int]
    by_day: Dict[str, int]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "by_status": dict(self.by_status),
            "by_type": dict(self.by_type),
            "by_day": dict(self.by_day),
        }
