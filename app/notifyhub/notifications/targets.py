from __future__ import annotations

import logging
from typing import Callable, Iterable, Optional, Set

from sqlalchemy.ext.asyncio import AsyncSession

from notifyhub.clients.users import UserDirectoryClient, UserDirectoryError
from notifyhub.data import crud
from notifyhub.data.db import get_session
from notifyhub.errors import ConfigurationError, NotFound, ValidationError
from notifyhub.models import ErrorKind, SendResult

from .store import session_scope, utcnow


logger = logging.getLogger("notifyhub.targets")


def _require(value: Optional[str], name: str) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise ValidationError(f"{name} is required")
    return cleaned


class TokenLifecycleManager:
    """
    Owns the set of push device tokens per user.

    Adding is idempotent, and pruning removes every reported-invalid token in a
    single statement so concurrent additions of other tokens are never lost.
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession] = get_session,
        *,
        user_directory: Optional[UserDirectoryClient] = None,
        push_adapter=None,
        validate_on_register: bool = False,
    ) -> None:
        self._session_factory = session_factory
        self._user_directory = user_directory
        self._push_adapter = push_adapter
        self._validate_on_register = validate_on_register

    async def add_target(self, user_id: str, token: str) -> bool:
        """Store ``token`` for ``user_id``; returns False when it was already known."""
        user_id = _require(user_id, "user_id")
        token = _require(token, "token")
        async with session_scope(self._session_factory, write=True) as session:
            added = await crud.insert_push_target(session, user_id, token, utcnow())
        if added:
            logger.info("Registered push target for user %s", user_id)
        return added

    async def register_target(self, user_id: str, token: str, *, validate: Optional[bool] = None) -> bool:
        """Add a token after an optional dry-run send against the push provider."""
        should_validate = self._validate_on_register if validate is None else validate
        if should_validate and self._push_adapter is not None:
            result = await self._push_adapter.validate_token(_require(token, "token"))
            if not result.success:
                if result.error_kind is ErrorKind.PERMANENT_INVALID_TARGET:
                    raise ValidationError(
                        "Push token was rejected by the provider",
                        details={"reason": result.error_detail},
                    )
                logger.warning(
                    "Could not validate push token for user %s (%s); storing it anyway",
                    user_id,
                    result.error_detail,
                )
        return await self.add_target(user_id, token)

    async def remove_target(self, user_id: str, token: str) -> bool:
        async with session_scope(self._session_factory, write=True) as session:
            removed = await crud.delete_push_targets(session, user_id, [token])
        return removed > 0

    async def targets_for(self, user_id: str) -> Set[str]:
        async with session_scope(self._session_factory) as session:
            return await crud.list_push_targets(session, user_id)

    async def prune_invalid(self, user_id: str, invalid_tokens: Iterable[str]) -> int:
        tokens = {token for token in invalid_tokens if token}
        if not tokens:
            return 0

        async with session_scope(self._session_factory, write=True) as session:
            removed = await crud.delete_push_targets(session, user_id, tokens)
            remaining = await crud.list_push_targets(session, user_id)

        logger.info(
            "Pruned %s invalid push target(s) for user %s, %s remaining",
            removed,
            user_id,
            len(remaining),
        )
        await self._sync_user_flag(user_id, bool(remaining))
        return removed

    async def subscribe_topic(self, user_id: str, topic: str, token: Optional[str] = None) -> SendResult:
        """Subscribe ``token``, or every token of ``user_id``, to ``topic``."""
        return await self._change_topic(user_id, topic, token, subscribe=True)

    async def unsubscribe_topic(self, user_id: str, topic: str, token: Optional[str] = None) -> SendResult:
        return await self._change_topic(user_id, topic, token, subscribe=False)

    async def _change_topic(
        self,
        user_id: str,
        topic: str,
        token: Optional[str],
        *,
        subscribe: bool,
    ) -> SendResult:
        user_id = _require(user_id, "user_id")
        if self._push_adapter is None:
            raise ConfigurationError("Channel 'push' is not configured", details={"channel": "push"})
        tokens = [_require(token, "token")] if token is not None else sorted(await self.targets_for(user_id))
        if not tokens:
            raise NotFound(f"No push targets registered for user '{user_id}'")

        if subscribe:
            result = await self._push_adapter.subscribe_topic(topic, tokens)
        else:
            result = await self._push_adapter.unsubscribe_topic(topic, tokens)
        if result.invalid_targets:
            await self.prune_invalid(user_id, result.invalid_targets)
        return result

    async def _sync_user_flag(self, user_id: str, has_targets: bool) -> None:
        if self._user_directory is None:
            return
        try:
            await self._user_directory.update_user(user_id, {"pushTokenValid": has_targets})
        except UserDirectoryError as exc:
            logger.warning("Failed to update push token flag for user %s: %s", user_id, exc)
