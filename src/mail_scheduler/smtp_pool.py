# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Lightweight asyncio-friendly SMTP connection pool.

Delivery attempts run in short-lived asyncio tasks, so connections are kept
in a per-server idle list instead of being bound to a task. A connection is
borrowed for one send and handed back afterwards; connections that are too
old or fail a NOOP health check are discarded.

Example:
    Borrowing a connection::

        pool = SMTPPool(ttl=300)
        async with pool.connection("smtp.example.com", 587, "user", "pw", use_tls=True) as smtp:
            await smtp.send_message(message)

        await pool.close()
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import aiosmtplib

from .logger import get_logger

ConnectionParams = tuple[str, int, str | None, str | None, bool]


class SMTPPool:
    """Pool of idle SMTP connections keyed by server parameters.

    Attributes:
        ttl: Maximum age in seconds of an idle connection before it is closed.
        max_idle: Maximum idle connections kept per server.
        timeout: Connect/login timeout in seconds.
    """

    def __init__(self, ttl: int = 300, max_idle: int = 5, timeout: float = 15.0):
        self.ttl = ttl
        self.max_idle = max(0, int(max_idle))
        self.timeout = timeout
        self.logger = get_logger("SMTPPool")
        self._idle: dict[ConnectionParams, list[tuple[aiosmtplib.SMTP, float]]] = {}
        self._lock = asyncio.Lock()

    async def _connect(self, params: ConnectionParams) -> aiosmtplib.SMTP:
        """Open and authenticate a new connection.

        Port 465 with TLS uses implicit TLS, other ports with TLS use
        STARTTLS, otherwise the session stays plain.
        """
        host, port, user, password, use_tls = params
        implicit_tls = use_tls and port == 465
        smtp = aiosmtplib.SMTP(
            hostname=host,
            port=port,
            use_tls=implicit_tls,
            start_tls=use_tls and not implicit_tls,
            timeout=10.0,
        )

        async def _do_connect() -> None:
            await smtp.connect()
            if user and password:
                await smtp.login(user, password)

        await asyncio.wait_for(_do_connect(), timeout=self.timeout)
        return smtp

    async def _is_alive(self, smtp: aiosmtplib.SMTP) -> bool:
        try:
            code, _ = await asyncio.wait_for(smtp.noop(), timeout=5.0)
        except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError):
            return False
        return code == 250

    async def _discard(self, smtp: aiosmtplib.SMTP) -> None:
        try:
            await smtp.quit()
        except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError):
            smtp.close()

    async def acquire(self, params: ConnectionParams) -> aiosmtplib.SMTP:
        """Return a healthy idle connection for ``params`` or open a new one."""
        while True:
            async with self._lock:
                idle = self._idle.get(params) or []
                entry = idle.pop() if idle else None
            if entry is None:
                return await self._connect(params)
            smtp, released_at = entry
            if time.monotonic() - released_at < self.ttl and await self._is_alive(smtp):
                return smtp
            await self._discard(smtp)

    async def release(self, params: ConnectionParams, smtp: aiosmtplib.SMTP) -> None:
        """Hand a connection back; extra connections beyond ``max_idle`` are closed."""
        async with self._lock:
            idle = self._idle.setdefault(params, [])
            if len(idle) < self.max_idle:
                idle.append((smtp, time.monotonic()))
                return
        await self._discard(smtp)

    @asynccontextmanager
    async def connection(
        self, host: str, port: int, user: str | None, password: str | None, *, use_tls: bool
    ) -> AsyncIterator[aiosmtplib.SMTP]:
        """Borrow a connection for the duration of the ``async with`` block.

        A connection whose block raised is closed instead of being reused.
        """
        params: ConnectionParams = (host, int(port), user, password, bool(use_tls))
        smtp = await self.acquire(params)
        try:
            yield smtp
        except BaseException:
            await self._discard(smtp)
            raise
        await self.release(params, smtp)

    async def cleanup(self) -> int:
        """Close idle connections older than ``ttl``; returns how many were closed."""
        now = time.monotonic()
        expired: list[aiosmtplib.SMTP] = []
        async with self._lock:
            for params, idle in self._idle.items():
                keep = [(smtp, ts) for smtp, ts in idle if now - ts < self.ttl]
                expired.extend(smtp for smtp, ts in idle if now - ts >= self.ttl)
                self._idle[params] = keep
        for smtp in expired:
            await self._discard(smtp)
        return len(expired)

    async def close(self) -> None:
        """Close every idle connection."""
        async with self._lock:
            entries = [smtp for idle in self._idle.values() for smtp, _ in idle]
            self._idle.clear()
        for smtp in entries:
            await self._discard(smtp)
