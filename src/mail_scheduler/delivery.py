# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Delivery collaborator contract and the SMTP implementation.

The dispatch engine only needs ``deliver(owner_id, payload)`` returning one
of three outcomes: success (with a transport reference), transient failure
(retry later) or terminal failure (never retry). :class:`SMTPDelivery`
implements it on top of aiosmtplib and classifies SMTP errors the same way
the mail proxy does: 4xx replies and network errors are transient, 5xx
replies and TLS/authentication problems are terminal.

Payload fields understood by :class:`SMTPDelivery`:

- ``from`` (required) and optional ``from_name``
- ``to`` (required, string or list) and optional ``recipient_name``
- ``subject`` (required), ``body`` (required), optional ``html_body``
- optional ``headers`` dict and ``message_id``
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from enum import Enum
from typing import Any, Protocol

import aiosmtplib

from .errors import TerminalDeliveryFailure, TransientDeliveryFailure
from .logger import get_logger
from .smtp_pool import SMTPPool

SEND_TIMEOUT_SECONDS = 30.0

_TEMPORARY_PATTERNS = (
    "421",  # Service not available
    "450",  # Mailbox unavailable
    "451",  # Local error in processing
    "452",  # Insufficient system storage
    "timeout",
    "connection refused",
    "connection reset",
    "temporarily unavailable",
    "try again",
    "throttl",
)

_PERMANENT_PATTERNS = (
    "wrong_version_number",
    "certificate verify failed",
    "ssl handshake",
    "certificate_unknown",
    "unknown_ca",
    "certificate has expired",
    "self signed certificate",
    "authentication failed",
    "535",
    "534",
    "530",
    "invalid recipient",
)


class DeliveryStatus(str, Enum):
    SUCCESS = "success"
    TRANSIENT = "transient"
    TERMINAL = "terminal"


@dataclass(frozen=True)
class DeliveryResult:
    """Outcome of one call to the delivery collaborator."""

    status: DeliveryStatus
    reference: str | None = None
    reason: str | None = None

    @classmethod
    def success(cls, reference: str | None = None) -> "DeliveryResult":
        return cls(DeliveryStatus.SUCCESS, reference=reference)

    @classmethod
    def transient(cls, reason: str) -> "DeliveryResult":
        return cls(DeliveryStatus.TRANSIENT, reason=reason)

    @classmethod
    def terminal(cls, reason: str) -> "DeliveryResult":
        return cls(DeliveryStatus.TERMINAL, reason=reason)


class Delivery(Protocol):
    """Black-box transport used by the worker.

    ``deliver`` either returns a :class:`DeliveryResult` or raises; raised
    errors are classified by :func:`classify_exception`.
    """

    async def deliver(self, owner_id: str, payload: dict[str, Any]) -> DeliveryResult: ...


def classify_exception(exc: BaseException) -> tuple[bool, int | None]:
    """Classify a transport error as temporary or permanent.

    Returns:
        tuple: (is_temporary, smtp_code)
    """
    if isinstance(exc, TransientDeliveryFailure):
        return True, None
    if isinstance(exc, TerminalDeliveryFailure):
        return False, None

    smtp_code = None
    if isinstance(exc, aiosmtplib.SMTPResponseException):
        smtp_code = exc.code
    elif isinstance(exc, aiosmtplib.SMTPException):
        smtp_code = getattr(exc, "smtp_code", None) or getattr(exc, "code", None)

    if isinstance(exc, aiosmtplib.SMTPRecipientsRefused):
        return False, smtp_code
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return True, smtp_code

    if isinstance(smtp_code, int):
        if 400 <= smtp_code < 500:
            return True, smtp_code
        if 500 <= smtp_code < 600:
            return False, smtp_code

    error_msg = str(exc).lower()
    if any(pattern in error_msg for pattern in _TEMPORARY_PATTERNS):
        return True, smtp_code
    if any(pattern in error_msg for pattern in _PERMANENT_PATTERNS):
        return False, smtp_code
    if isinstance(exc, OSError):
        return True, smtp_code
    # Unknown errors are retried; the attempt cap bounds the cost.
    return True, smtp_code


def result_from_exception(exc: BaseException) -> DeliveryResult:
    """Turn an unexpected transport exception into a DeliveryResult."""
    is_temporary, smtp_code = classify_exception(exc)
    reason = f"{exc} (SMTP {smtp_code})" if smtp_code else (str(exc) or exc.__class__.__name__)
    if is_temporary:
        return DeliveryResult.transient(reason)
    return DeliveryResult.terminal(reason)


def _addresses(value: Any) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return [str(item).strip() for item in value if item]


def build_message(payload: dict[str, Any]) -> EmailMessage:
    """Build an EmailMessage from a work item payload.

    Raises:
        KeyError: If a required field is missing.
        ValueError: If the recipient list is empty.
    """
    sender = payload["from"]
    recipients = _addresses(payload["to"])
    if not recipients:
        raise ValueError("invalid recipient: empty 'to'")
    msg = EmailMessage()
    from_name = payload.get("from_name")
    msg["From"] = formataddr((from_name, sender)) if from_name else sender
    recipient_name = payload.get("recipient_name")
    if recipient_name and len(recipients) == 1:
        msg["To"] = formataddr((recipient_name, recipients[0]))
    else:
        msg["To"] = ", ".join(recipients)
    msg["Subject"] = payload["subject"]
    msg["Message-ID"] = payload.get("message_id") or make_msgid()
    for name, value in (payload.get("headers") or {}).items():
        if value is not None and name not in msg:
            msg[name] = str(value)
    msg.set_content(payload["body"])
    html_body = payload.get("html_body")
    if html_body:
        msg.add_alternative(html_body, subtype="html")
    return msg


class SMTPDelivery:
    """Deliver payloads through one SMTP server using a connection pool.

    Attributes:
        host: SMTP server hostname.
        port: SMTP server port.
        user: Optional login user.
        password: Optional login password.
        use_tls: TLS mode (implicit on 465, STARTTLS otherwise); None picks
            TLS only for port 465.
        pool: Connection pool shared by all attempts.
    """

    def __init__(
        self,
        host: str,
        port: int = 587,
        user: str | None = None,
        password: str | None = None,
        use_tls: bool | None = None,
        *,
        pool: SMTPPool | None = None,
        logger=None,
    ):
        self.host = host
        self.port = int(port)
        self.user = user
        self.password = password
        self.use_tls = self.port == 465 if use_tls is None else bool(use_tls)
        self.pool = pool or SMTPPool()
        self.logger = logger or get_logger("SMTPDelivery")

    async def deliver(self, owner_id: str, payload: dict[str, Any]) -> DeliveryResult:
        try:
            msg = build_message(payload)
        except KeyError as exc:
            return DeliveryResult.terminal(f"missing {exc}")
        except ValueError as exc:
            return DeliveryResult.terminal(str(exc))

        try:
            async with self.pool.connection(
                self.host, self.port, self.user, self.password, use_tls=self.use_tls
            ) as smtp:
                await asyncio.wait_for(
                    smtp.send_message(msg, sender=payload["from"]), timeout=SEND_TIMEOUT_SECONDS
                )
        except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError) as exc:
            result = result_from_exception(exc)
            self.logger.warning(
                "Delivery for owner %s failed (%s): %s", owner_id, result.status.value, result.reason
            )
            return result
        return DeliveryResult.success(msg["Message-ID"])

    async def cleanup(self) -> int:
        """Drop pooled connections idle for longer than the pool TTL."""
        return await self.pool.cleanup()

    async def close(self) -> None:
        await self.pool.close()
