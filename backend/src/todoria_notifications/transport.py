from __future__ import annotations

import logging
import smtplib
import socket
import ssl
from dataclasses import dataclass
from datetime import datetime, timezone
from email.message import EmailMessage as MimeMessage
from email.utils import formataddr, make_msgid
from threading import Lock
from typing import Protocol

from .config import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EmailMessage:
    to: str
    subject: str
    html: str
    text: str


@dataclass(frozen=True)
class SendResult:
    success: bool
    error: str | None = None
    message_id: str | None = None


class TransportConfigError(RuntimeError):
    """Raised when the configured email transport cannot be constructed."""


class EmailTransport(Protocol):
    def send(self, message: EmailMessage) -> SendResult: ...

    def verify(self) -> bool: ...


class StubEmailTransport:
    """Local/test transport. Recipients containing "fail" are rejected."""

    def __init__(self, *, enabled: bool = True, reachable: bool = True) -> None:
        self._enabled = enabled
        self._reachable = reachable
        self._lock = Lock()
        self._outbox: list[EmailMessage] = []

    @property
    def outbox(self) -> list[EmailMessage]:
        with self._lock:
            return list(self._outbox)

    def verify(self) -> bool:
        return self._reachable

    def send(self, message: EmailMessage) -> SendResult:
        if not self._enabled:
            return SendResult(success=False, error="Email delivery is disabled")
        if "fail" in message.to.lower():
            return SendResult(success=False, error="Stub transport forced failure for recipient")

        with self._lock:
            self._outbox.append(message)
            sequence = len(self._outbox)
        stamp = int(datetime.now(timezone.utc).timestamp())
        return SendResult(success=True, message_id=f"stub-{sequence}-{stamp}")


class _SmtpSendError(Exception):
    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class SmtpEmailTransport:
    """SMTP delivery with STARTTLS (or implicit TLS when ``secure``) and a bounded timeout."""

    def __init__(
        self,
        *,
        host: str,
        port: int,
        username: str,
        password: str,
        from_address: str,
        from_name: str = "",
        secure: bool = False,
        timeout_seconds: int = 20,
    ) -> None:
        if not host.strip():
            raise TransportConfigError("EMAIL_HOST must not be empty")
        if not from_address.strip():
            raise TransportConfigError("EMAIL_FROM or EMAIL_USER must be set")
        self._host = host.strip()
        self._port = port
        self._username = username
        self._password = password
        self._from_address = from_address.strip()
        self._from_name = from_name.strip()
        self._secure = secure
        self._timeout_seconds = timeout_seconds

    def _connect(self) -> smtplib.SMTP:
        if self._secure:
            return smtplib.SMTP_SSL(
                self._host,
                self._port,
                timeout=self._timeout_seconds,
                context=ssl.create_default_context(),
            )
        server = smtplib.SMTP(self._host, self._port, timeout=self._timeout_seconds)
        server.ehlo()
        server.starttls(context=ssl.create_default_context())
        server.ehlo()
        return server

    def _login(self, server: smtplib.SMTP) -> None:
        if self._username and self._password:
            server.login(self._username, self._password)

    def _build(self, message: EmailMessage) -> MimeMessage:
        mime = MimeMessage()
        mime["From"] = formataddr((self._from_name, self._from_address)) if self._from_name else self._from_address
        mime["To"] = message.to
        mime["Subject"] = message.subject
        mime["Message-ID"] = make_msgid(domain=self._from_address.split("@")[-1] or None)
        mime.set_content(message.text)
        mime.add_alternative(message.html, subtype="html")
        return mime

    def verify(self) -> bool:
        try:
            with self._connect() as server:
                self._login(server)
                server.noop()
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("smtp verification failed for %s:%s: %s", self._host, self._port, exc)
            return False
        return True

    def send(self, message: EmailMessage) -> SendResult:
        mime = self._build(message)
        try:
            self._deliver(mime)
        except _SmtpSendError as exc:
            return SendResult(
                success=False,
                error=f"{exc.message} (recipient: {mask_recipient(message.to)})",
            )
        return SendResult(success=True, message_id=str(mime["Message-ID"]))

    def _deliver(self, mime: MimeMessage) -> None:
        try:
            with self._connect() as server:
                self._login(server)
                server.send_message(mime)
        except smtplib.SMTPAuthenticationError as exc:
            raise _SmtpSendError("auth_failed", f"SMTP authentication failed: {exc.smtp_code}") from exc
        except smtplib.SMTPRecipientsRefused as exc:
            raise _SmtpSendError("recipient_refused", "SMTP server refused the recipient") from exc
        except (socket.timeout, TimeoutError) as exc:
            raise _SmtpSendError("timeout", f"SMTP request timed out: {exc}") from exc
        except smtplib.SMTPException as exc:
            raise _SmtpSendError("smtp_error", f"SMTP error: {exc}") from exc
        except OSError as exc:
            raise _SmtpSendError("connection_error", f"Connection error: {exc}") from exc


def mask_recipient(recipient: str) -> str:
    normalized = recipient.strip()
    if not normalized:
        return "***"
    if "@" in normalized:
        local, domain = normalized.split("@", 1)
        if len(local) <= 1:
            return f"*@{domain}"
        return f"{local[0]}***@{domain}"
    if len(normalized) <= 4:
        return "*" * len(normalized)
    return f"{normalized[:2]}***{normalized[-2:]}"


def create_email_transport(settings: Settings) -> EmailTransport:
    if settings.email_transport == "smtp":
        return SmtpEmailTransport(
            host=settings.email_host,
            port=settings.email_port,
            username=settings.email_user,
            password=settings.email_password,
            from_address=settings.email_from or settings.email_user,
            from_name=settings.email_from_name,
            secure=settings.email_secure,
            timeout_seconds=settings.email_timeout_seconds,
        )
    return StubEmailTransport(enabled=True)
