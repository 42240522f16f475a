from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from notifyhub.config import PushChannelConfig
from notifyhub.errors import ConfigurationError, ValidationError
from notifyhub.models import Channel, ErrorKind, SendResult

from .base import PushDestination


__all__ = ["FcmPushAdapter", "build_push_adapter", "normalize_topic"]


logger = logging.getLogger("notifyhub.channels.push")

_FCM_ERROR_TYPE = "type.googleapis.com/google.firebase.fcm.v1.FcmError"
_UNREGISTERED_CODES = {"UNREGISTERED", "SENDER_ID_MISMATCH"}
_TRANSIENT_CODES = {"QUOTA_EXCEEDED", "UNAVAILABLE", "INTERNAL"}
_CONFIGURATION_CODES = {"THIRD_PARTY_AUTH_ERROR"}
_IID_INVALID_TOKEN_ERRORS = {"NOT_FOUND", "INVALID_ARGUMENT"}
_IID_BATCH_SIZE = 1000
_TOPIC_PATTERN = re.compile(r"^[a-zA-Z0-9\-_.~%]{1,900}$")


@dataclass(slots=True)
class _TokenOutcome:
    token: Optional[str]
    message_id: Optional[str] = None
    kind: Optional[ErrorKind] = None
    detail: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.kind is None


def _fcm_error_code(payload: Dict[str, Any]) -> Optional[str]:
    error = payload.get("error") if isinstance(payload, dict) else None
    if not isinstance(error, dict):
        return None
    for detail in error.get("details") or []:
        if isinstance(detail, dict) and detail.get("@type") == _FCM_ERROR_TYPE:
            return detail.get("errorCode")
    return error.get("status")


def _classify(status_code: int, payload: Dict[str, Any], *, addressed_to_token: bool) -> ErrorKind:
    code = _fcm_error_code(payload)
    if code in _UNREGISTERED_CODES:
        return ErrorKind.PERMANENT_INVALID_TARGET
    if code == "INVALID_ARGUMENT" and addressed_to_token:
        message = str((payload.get("error") or {}).get("message", "")).lower()
        if "token" in message:
            return ErrorKind.PERMANENT_INVALID_TARGET
    if status_code == 404 and addressed_to_token:
        return ErrorKind.PERMANENT_INVALID_TARGET
    if status_code in (401, 403) or code in _CONFIGURATION_CODES:
        return ErrorKind.CONFIGURATION_ERROR
    if status_code == 429 or status_code >= 500 or code in _TRANSIENT_CODES:
        return ErrorKind.TRANSIENT_ERROR
    return ErrorKind.UNKNOWN


def _string_data(data: Any) -> Dict[str, str]:
    # FCM only accepts string values in the data map.
    if not isinstance(data, dict):
        return {}
    return {str(key): str(value) for key, value in data.items() if value is not None}


def normalize_topic(topic: Optional[str]) -> str:
    cleaned = (topic or "").strip()
    if cleaned.startswith("/topics/"):
        cleaned = cleaned[len("/topics/"):]
    if not _TOPIC_PATTERN.match(cleaned):
        raise ValidationError(f"Invalid topic name: {topic!r}", details={"field": "topic"})
    return cleaned


class FcmPushAdapter:
    """Firebase Cloud Messaging HTTP v1 adapter.

    A send addressed to several tokens is a best-effort broadcast: each token is
    a separate request, the result is successful when at least one of them was
    accepted, and tokens FCM no longer recognises are reported back in
    ``invalid_targets`` so the caller can prune them.
    """

    channel = Channel.PUSH

    def __init__(
        self,
        *,
        project_id: Optional[str],
        access_token: Optional[str],
        base_url: str = "https://fcm.googleapis.com/v1",
        iid_url: str = "https://iid.googleapis.com/iid/v1",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        missing = [
            name
            for name, value in (("project_id", project_id), ("access_token", access_token))
            if not value
        ]
        if missing:
            raise ConfigurationError(f"Push channel missing configuration: {', '.join(missing)}")

        self._endpoint = f"/projects/{project_id}/messages:send"
        self._iid_url = iid_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Content-Type": "application/json",
            },
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    def _message(self, title: str, body: str, extra: Dict[str, Any]) -> Dict[str, Any]:
        message: Dict[str, Any] = {"notification": {"title": title, "body": body}}
        data = _string_data(extra.get("data"))
        if data:
            message["data"] = data
        return message

    async def _post(
        self,
        message: Dict[str, Any],
        *,
        token: Optional[str],
        validate_only: bool = False,
    ) -> _TokenOutcome:
        payload: Dict[str, Any] = {"message": message}
        if validate_only:
            payload["validate_only"] = True

        try:
            response = await self._client.post(self._endpoint, json=payload)
        except httpx.HTTPError as exc:
            return _TokenOutcome(token, kind=ErrorKind.TRANSIENT_ERROR, detail=f"FCM request failed: {exc}")

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        if response.status_code >= 400:
            kind = _classify(response.status_code, body, addressed_to_token=token is not None)
            error = body.get("error") if isinstance(body.get("error"), dict) else {}
            detail = error.get("message") or f"FCM responded with HTTP {response.status_code}"
            return _TokenOutcome(token, kind=kind, detail=str(detail))

        return _TokenOutcome(token, message_id=body.get("name"))

    async def send(
        self,
        destination: PushDestination,
        title: str,
        body: str,
        extra: Dict[str, Any],
    ) -> SendResult:
        message = self._message(title, body, extra)

        if destination.topic:
            outcome = await self._post({**message, "topic": destination.topic}, token=None)
            if not outcome.ok:
                logger.warning("FCM topic send to %s failed: %s", destination.topic, outcome.detail)
                return SendResult.failure(outcome.kind, outcome.detail or "Topic send failed")
            return SendResult(
                success=True,
                provider_message_id=outcome.message_id,
                provider_status="accepted",
                metadata={"successCount": 1, "failureCount": 0, "messageIds": [outcome.message_id]},
            )

        tokens = list(dict.fromkeys(destination.tokens))
        if not tokens:
            raise ValidationError("Push destination has neither tokens nor a topic")

        outcomes: List[_TokenOutcome] = await asyncio.gather(
            *(self._post({**message, "token": token}, token=token) for token in tokens)
        )
        return self._aggregate(outcomes)

    def _aggregate(self, outcomes: List[_TokenOutcome]) -> SendResult:
        succeeded = [outcome for outcome in outcomes if outcome.ok]
        failed = [outcome for outcome in outcomes if not outcome.ok]
        invalid = [
            outcome.token
            for outcome in failed
            if outcome.kind is ErrorKind.PERMANENT_INVALID_TARGET and outcome.token
        ]
        metadata = {
            "successCount": len(succeeded),
            "failureCount": len(failed),
            "messageIds": [outcome.message_id for outcome in succeeded],
        }
        for outcome in failed:
            logger.info("FCM send to token %s failed (%s): %s", outcome.token, outcome.kind.value, outcome.detail)

        if succeeded:
            return SendResult(
                success=True,
                provider_message_id=succeeded[0].message_id,
                provider_status="accepted",
                invalid_targets=invalid,
                metadata=metadata,
            )

        kinds = {outcome.kind for outcome in failed}
        if kinds == {ErrorKind.PERMANENT_INVALID_TARGET}:
            kind = ErrorKind.PERMANENT_INVALID_TARGET
        elif ErrorKind.CONFIGURATION_ERROR in kinds:
            kind = ErrorKind.CONFIGURATION_ERROR
        elif ErrorKind.TRANSIENT_ERROR in kinds:
            kind = ErrorKind.TRANSIENT_ERROR
        else:
            kind = ErrorKind.UNKNOWN
        details = "; ".join(sorted({outcome.detail or "unknown error" for outcome in failed}))
        return SendResult.failure(
            kind,
            f"All {len(failed)} push targets failed: {details}",
            invalid_targets=invalid,
            metadata=metadata,
        )

    async def validate_token(self, token: str) -> SendResult:
        """Dry-run a message to ``token`` without delivering anything."""
        message = {"token": token, "notification": {"title": "validation", "body": "validation"}}
        outcome = await self._post(message, token=token, validate_only=True)
        if outcome.ok:
            return SendResult(success=True, provider_status="validated")
        return SendResult.failure(
            outcome.kind,
            outcome.detail or "Token validation failed",
            invalid_targets=[token] if outcome.kind is ErrorKind.PERMANENT_INVALID_TARGET else [],
        )

    async def subscribe_topic(self, topic: str, tokens: List[str]) -> SendResult:
        """Add ``tokens`` to ``topic`` through the instance ID batch API."""
        return await self._change_topic_membership("batchAdd", topic, tokens)

    async def unsubscribe_topic(self, topic: str, tokens: List[str]) -> SendResult:
        return await self._change_topic_membership("batchRemove", topic, tokens)

    async def _change_topic_membership(self, action: str, topic: str, tokens: List[str]) -> SendResult:
        topic = normalize_topic(topic)
        tokens = [token for token in dict.fromkeys(tokens) if token]
        if not tokens:
            raise ValidationError("At least one push token is required", details={"field": "token"})

        errors: Dict[str, str] = {}
        for start in range(0, len(tokens), _IID_BATCH_SIZE):
            batch = tokens[start:start + _IID_BATCH_SIZE]
            try:
                response = await self._client.post(
                    f"{self._iid_url}:{action}",
                    json={"to": f"/topics/{topic}", "registration_tokens": batch},
                    headers={"access_token_auth": "true"},
                )
            except httpx.HTTPError as exc:
                return SendResult.failure(ErrorKind.TRANSIENT_ERROR, f"Topic {action} request failed: {exc}")

            try:
                body = response.json()
            except ValueError:
                body = {}
            if not isinstance(body, dict):
                body = {}
            if response.status_code >= 400:
                kind = _classify(response.status_code, body, addressed_to_token=False)
                return SendResult.failure(kind, f"Topic {action} responded with HTTP {response.status_code}")

            for token, item in zip(batch, body.get("results") or []):
                if isinstance(item, dict) and item.get("error"):
                    errors[token] = str(item["error"])

        invalid = [token for token, code in errors.items() if code in _IID_INVALID_TOKEN_ERRORS]
        metadata = {
            "topic": topic,
            "successCount": len(tokens) - len(errors),
            "failureCount": len(errors),
            "errors": errors,
        }
        logger.info(
            "Topic %s on %s: %s succeeded, %s failed",
            action,
            topic,
            metadata["successCount"],
            metadata["failureCount"],
        )
        if len(errors) == len(tokens):
            kind = ErrorKind.PERMANENT_INVALID_TARGET if len(invalid) == len(tokens) else ErrorKind.UNKNOWN
            return SendResult.failure(
                kind,
                f"Topic {action} failed for every token: {', '.join(sorted(set(errors.values())))}",
                invalid_targets=invalid,
                metadata=metadata,
            )
        return SendResult(success=True, provider_status=action, invalid_targets=invalid, metadata=metadata)


def build_push_adapter(
    config: PushChannelConfig,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FcmPushAdapter:
    return FcmPushAdapter(
        project_id=config.project_id,
        access_token=config.access_token,
        timeout=config.timeout,
        transport=transport,
    )
