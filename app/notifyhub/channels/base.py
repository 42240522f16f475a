from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from notifyhub.models import Channel, SendResult


@dataclass(slots=True)
class PushDestination:
    """Device tokens for a best-effort broadcast, or a single topic."""

    tokens: List[str] = field(default_factory=list)
    topic: Optional[str] = None


class ChannelAdapter(Protocol):
    channel: Channel

    async def send(
        self,
        destination: Any,
        title: str,
        body: str,
        extra: Dict[str, Any],
    ) -> SendResult:
        """Deliver one message. Expected provider failures come back as a failed result."""
        ...

    async def close(self) -> None:
        ...
