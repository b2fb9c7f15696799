# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Error taxonomy of the dispatch engine.

Every error carries a ``code`` attribute so the API layer can report a
stable identifier next to the human readable message. Delivery
implementations may raise :class:`TransientDeliveryFailure` or
:class:`TerminalDeliveryFailure` instead of returning a result; the worker
maps them to the matching delivery outcome.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import WorkItem


class MailSchedulerError(Exception):
    """Base class for every error raised by the mail scheduler."""

    code = "mail_scheduler_error"


class RateLimited(MailSchedulerError):
    """The owner exhausted its hourly quota; the attempt must be deferred."""

    code = "rate_limited"

    def __init__(self, owner_id: str, current: int, limit: int):
        super().__init__(f"rate limited: {current}/{limit} emails sent this hour by {owner_id}")
        self.owner_id = owner_id
        self.current = current
        self.limit = limit


class TransientDeliveryFailure(MailSchedulerError):
    """Delivery failed but may succeed later (timeouts, 4xx replies)."""

    code = "transient_delivery_failure"


class TerminalDeliveryFailure(MailSchedulerError):
    """Delivery failed and retrying cannot help (bad recipient, auth)."""

    code = "terminal_delivery_failure"


class RecordStoreUnavailable(MailSchedulerError):
    """The durable record store could not be reached or failed a write."""

    code = "record_store_unavailable"


class WorkItemNotFound(MailSchedulerError):
    """No work item exists with the requested id."""

    code = "not_found"

    def __init__(self, item_id: str):
        super().__init__(f"work item {item_id} not found")
        self.item_id = item_id


class InvalidTransition(MailSchedulerError):
    """A status change was rejected by the lifecycle rules or lost a race."""

    code = "invalid_transition"

    def __init__(self, item_id: str, current: str | None, target: str):
        super().__init__(f"work item {item_id} cannot move from {current} to {target}")
        self.item_id = item_id
        self.current = current
        self.target = target


class DuplicateSubmission(MailSchedulerError):
    """A work item with the same dedupe key already exists.

    Callers treat this as an idempotent success and use ``existing``.
    """

    code = "duplicate_submission"

    def __init__(self, existing: WorkItem):
        super().__init__(f"dedupe key {existing.dedupe_key!r} already used by {existing.id}")
        self.existing = existing
