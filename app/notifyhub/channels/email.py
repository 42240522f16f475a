from __future__ import annotations

import logging
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from typing import Any, Awaitable, Callable, Dict, Optional

import aiosmtplib

from notifyhub.config import EmailChannelConfig
from notifyhub.errors import ConfigurationError
from notifyhub.models import Channel, ErrorKind, SendResult


logger = logging.getLogger("notifyhub.channels.email")

SmtpSend = Callable[..., Awaitable[Any]]

# Reply codes that mean the mailbox itself is unusable.
_PERMANENT_MAILBOX_CODES = {550, 551, 553}


def _classify_smtp_error(exc: Exception) -> ErrorKind:
    if isinstance(exc, (aiosmtplib.SMTPRecipientsRefused, aiosmtplib.SMTPRecipientRefused)):
        return ErrorKind.PERMANENT_INVALID_TARGET
    if isinstance(exc, (aiosmtplib.SMTPAuthenticationError, aiosmtplib.SMTPSenderRefused)):
        return ErrorKind.CONFIGURATION_ERROR
    if isinstance(exc, aiosmtplib.SMTPResponseException):
        if exc.code in _PERMANENT_MAILBOX_CODES:
            return ErrorKind.PERMANENT_INVALID_TARGET
        if 400 <= exc.code < 500:
            return ErrorKind.TRANSIENT_ERROR
        return ErrorKind.UNKNOWN
    if isinstance(exc, (aiosmtplib.SMTPConnectError, aiosmtplib.SMTPTimeoutError, aiosmtplib.SMTPServerDisconnected)):
        return ErrorKind.TRANSIENT_ERROR
    if isinstance(exc, OSError):
        return ErrorKind.TRANSIENT_ERROR
    return ErrorKind.UNKNOWN


class EmailAdapter:
    """SMTP delivery. Acceptance by the relay counts as ``sent``, never ``delivered``."""

    channel = Channel.EMAIL

    def __init__(
        self,
        host: Optional[str],
        port: int,
        username: Optional[str],
        password: Optional[str],
        from_address: Optional[str],
        from_name: Optional[str] = None,
        use_tls: bool = True,
        timeout: float = 10.0,
        smtp_send: Optional[SmtpSend] = None,
    ) -> None:
        missing = [
            name
            for name, value in (("smtp_host", host), ("from_address", from_address))
            if not value
        ]
        if missing:
            raise ConfigurationError(f"Email channel missing configuration: {', '.join(missing)}")
        if username and not password:
            raise ConfigurationError("Email channel has a username but no password")

        self._host = host
        self._port = port
        self._username = username
        self._password = password
        self._from_address = from_address
        self._from_name = from_name
        self._use_tls = use_tls
        self._timeout = timeout
        self._smtp_send = smtp_send or aiosmtplib.send

    @classmethod
    def from_config(cls, config: EmailChannelConfig, **kwargs: Any) -> "EmailAdapter":
        return cls(
            host=config.smtp_host,
            port=config.smtp_port,
            username=config.username,
            password=config.password,
            from_address=config.from_address,
            from_name=config.from_name,
            use_tls=config.use_tls,
            timeout=config.timeout,
            **kwargs,
        )

    def _build_message(self, recipient: str, subject: str, body: str, extra: Dict[str, Any]) -> EmailMessage:
        message = EmailMessage()
        sender = formataddr((self._from_name, self._from_address)) if self._from_name else self._from_address
        message["From"] = sender
        message["To"] = recipient
        message["Subject"] = subject
        domain = self._from_address.rsplit("@", 1)[-1] if self._from_address else None
        message["Message-ID"] = make_msgid(domain=domain)
        message.set_content(body)
        html = extra.get("html")
        if html:
            message.add_alternative(str(html), subtype="html")
        return message

    async def send(self, destination: str, title: str, body: str, extra: Dict[str, Any]) -> SendResult:
        message = self._build_message(destination, title, body, extra)
        message_id = str(message["Message-ID"]).strip("<>")
        try:
            await self._smtp_send(
                message,
                hostname=self._host,
                port=self._port,
                username=self._username,
                password=self._password,
                start_tls=self._use_tls,
                timeout=self._timeout,
            )
        except (aiosmtplib.SMTPException, OSError) as exc:
            kind = _classify_smtp_error(exc)
            logger.warning(
                "SMTP delivery to %s failed (%s): %s",
                destination,
                kind.value,
                exc,
            )
            return SendResult.failure(kind, str(exc) or exc.__class__.__name__)

        logger.info("Email accepted for %s: %s", destination, message_id)
        return SendResult(success=True, provider_message_id=message_id, provider_status="accepted")

    async def close(self) -> None:
        return None
