from __future__ import annotations

import logging
import re
from typing import Any, Dict, Optional

import httpx

from notifyhub.config import SmsChannelConfig
from notifyhub.errors import ConfigurationError, ValidationError
from notifyhub.models import Channel, ErrorKind, SendResult


__all__ = [
    "FreeMobileSmsAdapter",
    "TwilioSmsAdapter",
    "build_sms_adapter",
    "normalize_phone_number",
]


logger = logging.getLogger("notifyhub.channels.sms")

_E164_PATTERN = re.compile(r"^\+[1-9]\d{6,14}$")
_SEPARATORS = re.compile(r"[\s().-]")

# Twilio error codes that mean the destination number itself is unusable.
_TWILIO_INVALID_TARGET_CODES = {21211, 21214, 21407, 21408, 21610, 21612, 21614}
_TWILIO_AUTH_CODES = {20003, 20404}
_TWILIO_FAILED_STATUSES = {"failed", "undelivered", "canceled"}


def normalize_phone_number(raw: str, country_code: str) -> str:
    """Return ``raw`` in international ``+<digits>`` form.

    A leading ``00`` is read as the international prefix, a single leading
    ``0`` as a national number for ``country_code``.
    """
    if raw is None:
        raise ValidationError("Phone number is required")
    number = _SEPARATORS.sub("", str(raw).strip())
    if not number:
        raise ValidationError("Phone number is required")

    if number.startswith("00"):
        number = "+" + number[2:]
    elif number.startswith("0"):
        number = f"+{country_code.lstrip('+')}{number[1:]}"
    elif not number.startswith("+"):
        number = "+" + number

    if not _E164_PATTERN.match(number):
        raise ValidationError(f"Invalid phone number: {raw!r}", details={"to": str(raw)})
    return number


def _twilio_error_kind(status_code: int, error_code: Optional[int]) -> ErrorKind:
    if error_code in _TWILIO_INVALID_TARGET_CODES:
        return ErrorKind.PERMANENT_INVALID_TARGET
    if status_code in (401, 403) or error_code in _TWILIO_AUTH_CODES:
        return ErrorKind.CONFIGURATION_ERROR
    if status_code == 429 or status_code >= 500:
        return ErrorKind.TRANSIENT_ERROR
    return ErrorKind.UNKNOWN


class TwilioSmsAdapter:
    """Twilio Programmable Messaging over its REST API."""

    channel = Channel.SMS

    def __init__(
        self,
        *,
        account_sid: Optional[str],
        auth_token: Optional[str],
        from_number: Optional[str],
        status_callback: Optional[str] = None,
        base_url: str = "https://api.twilio.com/2010-04-01",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        missing = [
            name
            for name, value in (
                ("account_sid", account_sid),
                ("auth_token", auth_token),
                ("from_number", from_number),
            )
            if not value
        ]
        if missing:
            raise ConfigurationError(f"SMS channel missing configuration: {', '.join(missing)}")

        self._account_sid = account_sid
        self._from_number = from_number
        self._status_callback = status_callback
        self._client = httpx.AsyncClient(
            base_url=base_url,
            auth=(account_sid, auth_token),
            timeout=timeout,
            headers={"Accept": "application/json"},
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def send(self, destination: str, title: str, body: str, extra: Dict[str, Any]) -> SendResult:
        form = {"To": destination, "From": self._from_number, "Body": body}
        callback = extra.get("status_callback") or self._status_callback
        if callback:
            form["StatusCallback"] = str(callback)

        try:
            response = await self._client.post(
                f"/Accounts/{self._account_sid}/Messages.json",
                data=form,
            )
        except httpx.HTTPError as exc:
            logger.warning("Twilio request failed for %s: %s", destination, exc)
            return SendResult.failure(ErrorKind.TRANSIENT_ERROR, f"Twilio request failed: {exc}")

        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}

        if response.status_code >= 400:
            error_code = payload.get("code")
            try:
                error_code = int(error_code) if error_code is not None else None
            except (TypeError, ValueError):
                error_code = None
            kind = _twilio_error_kind(response.status_code, error_code)
            detail = payload.get("message") or f"Twilio responded with HTTP {response.status_code}"
            logger.warning(
                "Twilio rejected message to %s (%s, code=%s): %s",
                destination,
                response.status_code,
                error_code,
                detail,
            )
            return SendResult.failure(
                kind,
                str(detail),
                metadata={"httpStatus": response.status_code, "errorCode": error_code},
            )

        sid = payload.get("sid")
        status = str(payload.get("status") or "queued").lower()
        metadata = {"providerStatus": status}
        if status in _TWILIO_FAILED_STATUSES:
            detail = payload.get("error_message") or f"Twilio reported status '{status}'"
            return SendResult.failure(
                ErrorKind.UNKNOWN,
                str(detail),
                provider_message_id=sid,
                provider_status=status,
                metadata=metadata,
            )

        logger.info("Twilio accepted message %s for %s (%s)", sid, destination, status)
        return SendResult(
            success=True,
            provider_message_id=sid,
            provider_status=status,
            delivered=status == "delivered",
            metadata=metadata,
        )


class FreeMobileSmsAdapter:
    """Free Mobile notification API. Messages always go to the account holder."""

    channel = Channel.SMS

    _STATUS_KINDS = {
        400: (ErrorKind.UNKNOWN, "Missing or malformed parameter"),
        402: (ErrorKind.TRANSIENT_ERROR, "Too many messages sent in a short time"),
        403: (ErrorKind.CONFIGURATION_ERROR, "Service not enabled or wrong credentials"),
        500: (ErrorKind.TRANSIENT_ERROR, "Provider server error"),
    }

    def __init__(
        self,
        *,
        username: Optional[str],
        api_key: Optional[str],
        base_url: str = "https://smsapi.free-mobile.fr",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not username or not api_key:
            raise ConfigurationError("SMS channel missing configuration: username, api_key")
        self._username = username
        self._api_key = api_key
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    async def close(self) -> None:
        await self._client.aclose()

    async def send(self, destination: str, title: str, body: str, extra: Dict[str, Any]) -> SendResult:
        logger.debug("Free Mobile ignores the destination %s; sending to account holder", destination)
        try:
            response = await self._client.get(
                "/sendmsg",
                params={"user": self._username, "pass": self._api_key, "msg": body},
            )
        except httpx.HTTPError as exc:
            logger.warning("Free Mobile request failed: %s", exc)
            return SendResult.failure(ErrorKind.TRANSIENT_ERROR, f"Free Mobile request failed: {exc}")

        if response.status_code == 200:
            return SendResult(success=True, provider_status="accepted")

        kind, detail = self._STATUS_KINDS.get(
            response.status_code,
            (ErrorKind.UNKNOWN, f"Unexpected HTTP {response.status_code}"),
        )
        logger.warning("Free Mobile rejected message (%s): %s", response.status_code, detail)
        return SendResult.failure(kind, detail, metadata={"httpStatus": response.status_code})


def build_sms_adapter(config: SmsChannelConfig, *, transport: Optional[httpx.AsyncBaseTransport] = None):
    if config.provider == "twilio":
        return TwilioSmsAdapter(
            account_sid=config.account_sid,
            auth_token=config.auth_token,
            from_number=config.from_number,
            status_callback=config.status_callback,
            timeout=config.timeout,
            transport=transport,
        )
    if config.provider in ("freemobile", "free_mobile"):
        return FreeMobileSmsAdapter(
            username=config.username,
            api_key=config.api_key,
            timeout=config.timeout,
            transport=transport,
        )
    raise ConfigurationError(f"Unknown SMS provider '{config.provider}'")
