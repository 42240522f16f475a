"""Error taxonomy shared by the dispatch engine, the store and the HTTP layer."""

from __future__ import annotations

from typing import Any, Dict, Optional


__all__ = [
    "NotificationError",
    "ValidationError",
    "ProviderError",
    "NotFound",
    "InvalidTransition",
    "ConfigurationError",
    "StoreUnavailable",
]


class NotificationError(RuntimeError):
    """Base class for every error raised by notifyhub."""

    code = "notification_error"

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(NotificationError):
    """Missing or malformed input; raised before anything is persisted."""

    code = "validation_error"


class ProviderError(NotificationError):
    """Adapter-level send failure.

    Adapters never let this escape a send call; it is used internally to carry
    the mapped error kind from the provider-specific layer to the result.
    """

    code = "provider_error"

    def __init__(
        self,
        message: str,
        *,
        kind: Any = None,
        retryable: bool = False,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, details=details)
        self.kind = kind
        self.retryable = retryable


class NotFound(NotificationError):
    """A record or a push target is absent."""

    code = "not_found"


class InvalidTransition(NotificationError):
    """Illegal status change on a notification record."""

    code = "invalid_transition"

    def __init__(self, current: Any, target: Any) -> None:
        current_value = getattr(current, "value", current)
        target_value = getattr(target, "value", target)
        super().__init__(
            f"Cannot move notification from '{current_value}' to '{target_value}'",
            details={"current": current_value, "target": target_value},
        )
        self.current = current
        self.target = target


class ConfigurationError(NotificationError):
    """Adapter configuration is incomplete; the channel cannot accept traffic."""

    code = "configuration_error"


class StoreUnavailable(NotificationError):
    """The record store failed for this request. Transient."""

    code = "store_unavailable"
    retryable = True
