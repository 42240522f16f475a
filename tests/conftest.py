from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio


PROJECT_ROOT = Path(__file__).resolve().parents[1]
APP_DIR = PROJECT_ROOT / "app"

for path in (PROJECT_ROOT, APP_DIR):
    path_str = str(path)
    if path_str not in sys.path:
        sys.path.insert(0, path_str)


from notifyhub.config import DatabaseConfig  # noqa: E402
from notifyhub.data.db import dispose_engine, initialize_database  # noqa: E402
from notifyhub.models import Channel, SendResult  # noqa: E402
from notifyhub.notifications import NotificationStore, TokenLifecycleManager  # noqa: E402


class StubAdapter:
    """Records every send and answers with queued results."""

    def __init__(self, channel: Channel, results: Optional[List[Any]] = None) -> None:
        self.channel = channel
        self.results = list(results or [])
        self.calls: List[Dict[str, Any]] = []
        self.closed = False

    async def send(self, destination, title, body, extra) -> SendResult:
        self.calls.append({"destination": destination, "title": title, "body": body, "extra": extra})
        if not self.results:
            return SendResult(success=True, provider_message_id=f"{self.channel.value}-{len(self.calls)}")
        outcome = self.results.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def validate_token(self, token: str) -> SendResult:
        return await self.send(token, "validation", "validation", {})

    async def subscribe_topic(self, topic: str, tokens: List[str]) -> SendResult:
        return await self.send(list(tokens), "subscribe", topic, {})

    async def unsubscribe_topic(self, topic: str, tokens: List[str]) -> SendResult:
        return await self.send(list(tokens), "unsubscribe", topic, {})

    async def close(self) -> None:
        self.closed = True


class StubUserDirectory:
    def __init__(self, users: Optional[Dict[str, Dict[str, Any]]] = None) -> None:
        self.users = dict(users or {})
        self.updates: List[tuple] = []

    async def get_user(self, user_id: str):
        return self.users.get(user_id)

    async def update_user(self, user_id: str, changes: Dict[str, Any]) -> None:
        self.updates.append((user_id, dict(changes)))

    async def close(self) -> None:
        return None


@pytest_asyncio.fixture
async def database(tmp_path):
    config = DatabaseConfig(engine="sqlite", name="notifyhub-test.db", path=tmp_path / "db")
    engine = await initialize_database(config)
    yield engine
    await dispose_engine()


@pytest.fixture
def store(database) -> NotificationStore:
    return NotificationStore()


@pytest.fixture
def user_directory() -> StubUserDirectory:
    return StubUserDirectory()


@pytest.fixture
def targets(database, user_directory) -> TokenLifecycleManager:
    return TokenLifecycleManager(user_directory=user_directory)
