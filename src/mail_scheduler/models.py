# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Pydantic models for scheduled work items.

This module defines the canonical in-memory representation of a work item
and the lifecycle rules that govern its status. Storage-format translation
(snake_case columns, JSON payloads, ISO timestamps) happens only inside
:mod:`mail_scheduler.persistence`.

Models:
    - WorkItemStatus: lifecycle states of a work item
    - WorkItemCreate: validated submission input
    - WorkItem: persisted work item as returned by the store
    - RateLimitStatus: result of a rate limiter admission check
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .timeutils import ensure_utc


class WorkItemStatus(str, Enum):
    """Lifecycle states of a work item.

    Attributes:
        PENDING: Created and waiting for its scheduled time.
        IN_PROGRESS: A worker is currently attempting delivery.
        DONE: Delivered (terminal).
        FAILED: Gave up (terminal).
        DEFERRED: Transient failure or rate limit, waiting for a retry.
        CANCELLED: Cancelled by the caller before execution (terminal).
    """

    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    DONE = "DONE"
    FAILED = "FAILED"
    DEFERRED = "DEFERRED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {WorkItemStatus.DONE, WorkItemStatus.FAILED, WorkItemStatus.CANCELLED}
)
# IN_PROGRESS is included: a crash mid-attempt leaves items there.
NON_TERMINAL_STATUSES = frozenset(
    {WorkItemStatus.PENDING, WorkItemStatus.DEFERRED, WorkItemStatus.IN_PROGRESS}
)
CLAIMABLE_STATUSES = (WorkItemStatus.PENDING, WorkItemStatus.DEFERRED)
CANCELLABLE_STATUSES = (WorkItemStatus.PENDING, WorkItemStatus.DEFERRED)

ALLOWED_TRANSITIONS: dict[WorkItemStatus, frozenset[WorkItemStatus]] = {
    WorkItemStatus.PENDING: frozenset({WorkItemStatus.IN_PROGRESS, WorkItemStatus.CANCELLED}),
    # DEFERRED -> PENDING -> IN_PROGRESS is collapsed into the atomic claim.
    WorkItemStatus.DEFERRED: frozenset(
        {WorkItemStatus.PENDING, WorkItemStatus.IN_PROGRESS, WorkItemStatus.CANCELLED}
    ),
    # IN_PROGRESS -> PENDING only happens through the recovery sweep.
    WorkItemStatus.IN_PROGRESS: frozenset(
        {
            WorkItemStatus.DONE,
            WorkItemStatus.FAILED,
            WorkItemStatus.DEFERRED,
            WorkItemStatus.PENDING,
        }
    ),
    WorkItemStatus.DONE: frozenset(),
    WorkItemStatus.FAILED: frozenset(),
    WorkItemStatus.CANCELLED: frozenset(),
}


def can_transition(current: WorkItemStatus, target: WorkItemStatus) -> bool:
    """Return True when ``current -> target`` is a legal lifecycle step."""
    return target in ALLOWED_TRANSITIONS[WorkItemStatus(current)]


class WorkItemCreate(BaseModel):
    """Submission input for a new work item.

    Attributes:
        owner_id: Sending identity whose hourly rate limit applies.
        payload: Opaque delivery content (recipient, subject, body...).
        scheduled_at: Requested execution time; naive values are UTC.
        dedupe_key: Optional idempotency token, unique across items.
    """

    model_config = ConfigDict(extra="forbid")

    owner_id: Annotated[str, Field(min_length=1, description="Sender identity")]
    payload: Annotated[dict[str, Any], Field(description="Opaque delivery content")]
    scheduled_at: Annotated[datetime, Field(description="Requested execution time")]
    dedupe_key: Annotated[
        str | None,
        Field(default=None, min_length=1, max_length=255, description="Idempotency token"),
    ]

    @field_validator("scheduled_at")
    @classmethod
    def normalise_scheduled_at(cls, v: datetime) -> datetime:
        return ensure_utc(v)


class WorkItem(BaseModel):
    """A persisted work item, the source of truth for one scheduled email."""

    model_config = ConfigDict(frozen=True)

    id: str
    owner_id: str
    payload: dict[str, Any]
    scheduled_at: datetime
    status: WorkItemStatus = WorkItemStatus.PENDING
    attempt_count: Annotated[int, Field(ge=0)] = 0
    last_error: str | None = None
    dedupe_key: str | None = None
    executed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def job_id(self) -> str:
        """Identity of the queue job for this item (dedupe key or id)."""
        return self.dedupe_key or self.id

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


@dataclass(frozen=True)
class RateLimitStatus:
    """Admission check result for one owner in the current hour window."""

    allowed: bool
    current: int
    limit: int
    reset_at: datetime
    window: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "current": self.current,
            "limit": self.limit,
            "reset_at": self.reset_at.isoformat(),
            "window": self.window,
        }
