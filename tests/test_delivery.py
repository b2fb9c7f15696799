import asyncio
from contextlib import asynccontextmanager

import aiosmtplib
import pytest

from dispatch_fakes import payload, silent_logger
from mail_scheduler.delivery import (
    DeliveryStatus,
    SMTPDelivery,
    build_message,
    classify_exception,
    result_from_exception,
)
from mail_scheduler.errors import TerminalDeliveryFailure, TransientDeliveryFailure


class DummySMTP:
    def __init__(self, error=None):
        self.sent = []
        self.error = error

    async def send_message(self, message, sender=None, **_kwargs):
        if self.error:
            raise self.error
        self.sent.append((message, sender))


class DummyPool:
    def __init__(self, smtp=None, connect_error=None):
        self.smtp = smtp or DummySMTP()
        self.connect_error = connect_error
        self.requests = []
        self.closed = False

    @asynccontextmanager
    async def connection(self, host, port, user, password, *, use_tls):
        self.requests.append((host, port, user, password, use_tls))
        if self.connect_error:
            raise self.connect_error
        yield self.smtp

    async def cleanup(self):
        return 0

    async def close(self):
        self.closed = True


@pytest.mark.parametrize(
    "exc, temporary, code",
    [
        (aiosmtplib.SMTPResponseException(421, "Service not available"), True, 421),
        (aiosmtplib.SMTPResponseException(550, "Mailbox unavailable"), False, 550),
        (asyncio.TimeoutError(), True, None),
        (ConnectionRefusedError("connection refused"), True, None),
        (aiosmtplib.SMTPException("535 authentication failed"), False, None),
        (RuntimeError("something odd"), True, None),
        (TransientDeliveryFailure("provider throttled"), True, None),
        (TerminalDeliveryFailure("mailbox does not exist"), False, None),
    ],
)
def test_classify_exception(exc, temporary, code):
    assert classify_exception(exc) == (temporary, code)


def test_recipients_refused_is_permanent():
    exc = aiosmtplib.SMTPRecipientsRefused([aiosmtplib.SMTPRecipientRefused(550, "no such user", "x@example.com")])
    assert classify_exception(exc)[0] is False


def test_result_from_exception_keeps_smtp_code():
    result = result_from_exception(aiosmtplib.SMTPResponseException(452, "Insufficient storage"))
    assert result.status is DeliveryStatus.TRANSIENT
    assert "SMTP 452" in result.reason


def test_build_message_headers_and_alternative():
    msg = build_message(
        payload(
            from_name="Billing",
            to=["one@example.com", "two@example.com"],
            html_body="<p>See you</p>",
            headers={"X-Campaign": "spring", "Subject": "ignored"},
            message_id="<fixed@example.com>",
        )
    )
    assert msg["From"] == "Billing <sender@example.com>"
    assert msg["To"] == "one@example.com, two@example.com"
    assert msg["Subject"] == "Reminder"
    assert msg["Message-ID"] == "<fixed@example.com>"
    assert msg["X-Campaign"] == "spring"
    assert msg.is_multipart()


def test_build_message_single_recipient_name():
    msg = build_message(payload(recipient_name="Ada"))
    assert msg["To"] == "Ada <rcpt@example.com>"
    assert msg["Message-ID"]


def test_build_message_requires_recipient():
    with pytest.raises(ValueError):
        build_message(payload(to=""))
    data = payload()
    del data["subject"]
    with pytest.raises(KeyError):
        build_message(data)


@pytest.mark.asyncio
async def test_smtp_delivery_success_returns_message_id():
    pool = DummyPool()
    delivery = SMTPDelivery("smtp.local", 587, "user", "pw", pool=pool, logger=silent_logger())

    result = await delivery.deliver("sender-1", payload(message_id="<id-1@example.com>"))

    assert result.status is DeliveryStatus.SUCCESS
    assert result.reference == "<id-1@example.com>"
    assert pool.requests == [("smtp.local", 587, "user", "pw", False)]
    message, sender = pool.smtp.sent[0]
    assert sender == "sender@example.com"
    assert message["To"] == "rcpt@example.com"


@pytest.mark.asyncio
async def test_smtp_delivery_uses_implicit_tls_on_465():
    pool = DummyPool()
    delivery = SMTPDelivery("smtp.local", 465, pool=pool, logger=silent_logger())
    await delivery.deliver("sender-1", payload())
    assert pool.requests[0][-1] is True


@pytest.mark.asyncio
async def test_smtp_delivery_classifies_failures():
    temporary = SMTPDelivery(
        "smtp.local",
        pool=DummyPool(smtp=DummySMTP(aiosmtplib.SMTPResponseException(451, "Local error"))),
        logger=silent_logger(),
    )
    assert (await temporary.deliver("sender-1", payload())).status is DeliveryStatus.TRANSIENT

    refused = SMTPDelivery(
        "smtp.local",
        pool=DummyPool(connect_error=ConnectionRefusedError("connection refused")),
        logger=silent_logger(),
    )
    assert (await refused.deliver("sender-1", payload())).status is DeliveryStatus.TRANSIENT

    rejected = SMTPDelivery(
        "smtp.local",
        pool=DummyPool(smtp=DummySMTP(aiosmtplib.SMTPResponseException(550, "User unknown"))),
        logger=silent_logger(),
    )
    result = await rejected.deliver("sender-1", payload())
    assert result.status is DeliveryStatus.TERMINAL
    assert "550" in result.reason


@pytest.mark.asyncio
async def test_smtp_delivery_rejects_malformed_payload_without_connecting():
    pool = DummyPool()
    delivery = SMTPDelivery("smtp.local", pool=pool, logger=silent_logger())
    data = payload()
    del data["from"]

    result = await delivery.deliver("sender-1", data)

    assert result.status is DeliveryStatus.TERMINAL
    assert pool.requests == []


@pytest.mark.asyncio
async def test_smtp_delivery_cleanup_and_close_delegate_to_pool():
    pool = DummyPool()
    delivery = SMTPDelivery("smtp.local", pool=pool, logger=silent_logger())
    assert await delivery.cleanup() == 0
    await delivery.close()
    assert pool.closed is True
