# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Audit sink recording the delivery history of each work item.

Audit writes are fire-and-forget: a failing sink is logged and never aborts
a delivery attempt.
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from .errors import RecordStoreUnavailable
from .logger import get_logger
from .persistence import Persistence


class AuditSink(Protocol):
    async def record(self, item_id: str, status: str, message: str, timestamp: datetime) -> None: ...


class PersistenceAuditSink:
    """Write audit entries to the ``audit_log`` table."""

    def __init__(self, persistence: Persistence, logger=None):
        self.persistence = persistence
        self.logger = logger or get_logger("Audit")

    async def record(self, item_id: str, status: str, message: str, timestamp: datetime) -> None:
        try:
            await self.persistence.add_audit_entry(item_id, status, message, timestamp)
        except RecordStoreUnavailable as exc:
            self.logger.warning("Audit entry for %s (%s) dropped: %s", item_id, status, exc)


class NullAuditSink:
    """Sink that discards every entry."""

    async def record(self, item_id: str, status: str, message: str, timestamp: datetime) -> None:
        return None
