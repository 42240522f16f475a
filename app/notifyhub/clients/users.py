from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from notifyhub.config import UserDirectoryConfig
from notifyhub.utils.retry import with_retry


__all__ = [
    "UserDirectoryClient",
    "UserDirectoryError",
    "build_user_directory",
]


logger = logging.getLogger("notifyhub.clients.users")


class UserDirectoryError(RuntimeError):
    """Raised when the user directory cannot be reached or answers with an error."""

    def __init__(self, message: str, *, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


class UserDirectoryClient:
    """
    Thin client for the user data service: resolves a user's email, phone and
    push token, and records whether the user still has a usable push target.
    """

    def __init__(
        self,
        *,
        base_url: str,
        timeout: float = 10.0,
        api_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not base_url:
            raise ValueError("User directory base URL must be provided")
        headers = {"Accept": "application/json"}
        if api_key:
            headers["X-API-Key"] = api_key
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            headers=headers,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        async def _call() -> Optional[Dict[str, Any]]:
            try:
                response = await self._client.get(f"/api/users/{user_id}")
            except httpx.HTTPError as exc:
                raise UserDirectoryError(f"User directory request failed: {exc}", retryable=True) from exc
            if response.status_code == 404:
                return None
            try:
                response.raise_for_status()
            except httpx.HTTPStatusError as exc:
                raise UserDirectoryError(
                    f"User directory lookup failed: {exc.response.status_code}",
                    retryable=500 <= exc.response.status_code < 600,
                ) from exc
            try:
                payload = response.json()
            except ValueError as exc:
                raise UserDirectoryError(f"Failed to decode user payload: {exc}") from exc
            if not isinstance(payload, dict):
                raise UserDirectoryError("Unexpected user payload: expected object")
            return payload

        return await with_retry(
            _call,
            attempts=3,
            base_delay=0.5,
            exceptions=(UserDirectoryError,),
            logger=logger,
            description=f"user lookup {user_id}",
        )

    async def update_user(self, user_id: str, changes: Dict[str, Any]) -> None:
        try:
            response = await self._client.put(f"/api/users/{user_id}", json=changes)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise UserDirectoryError(
                f"User directory update failed: {exc.response.status_code}",
                retryable=500 <= exc.response.status_code < 600,
            ) from exc
        except httpx.HTTPError as exc:
            raise UserDirectoryError(f"User directory request failed: {exc}", retryable=True) from exc


def build_user_directory(
    config: UserDirectoryConfig,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Optional[UserDirectoryClient]:
    if not config.base_url:
        logger.info("User directory not configured; user-id recipients are disabled")
        return None
    return UserDirectoryClient(
        base_url=config.base_url,
        timeout=config.timeout,
        api_key=config.api_key,
        transport=transport,
    )
