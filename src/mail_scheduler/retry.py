# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Retry and backoff policy for delivery attempts.

The policy maps the outcome of one attempt to the next lifecycle status of
the work item and, when the item must run again, to the delay before the
next attempt:

============== ============ =============== ==================================
Outcome        Status       attempt_count   Delay
============== ============ =============== ==================================
SUCCESS        DONE         +1              none
RATE_LIMITED   DEFERRED     unchanged       until the next UTC hour boundary
TRANSIENT      DEFERRED     +1              ``min(base ** count, cap)``
TRANSIENT      FAILED       +1              none, once ``count >= max_attempts``
TERMINAL       FAILED       +1              none
============== ============ =============== ==================================
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from .models import WorkItemStatus
from .timeutils import ensure_utc, seconds_until_next_hour

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_BASE = 2.0
DEFAULT_BACKOFF_CAP = 60.0


class Outcome(str, Enum):
    """Classified result of one delivery attempt."""

    SUCCESS = "success"
    RATE_LIMITED = "rate_limited"
    TRANSIENT_FAILURE = "transient_failure"
    TERMINAL_FAILURE = "terminal_failure"


@dataclass(frozen=True)
class RetryDecision:
    """What to do with a work item after an attempt.

    Attributes:
        status: Status to persist (DONE, FAILED or DEFERRED).
        attempt_count: Attempt counter to persist.
        delay: Seconds until the next attempt, None when nothing is rescheduled.
        next_run_at: Absolute time of the next attempt, None when terminal.
    """

    status: WorkItemStatus
    attempt_count: int
    delay: float | None = None
    next_run_at: datetime | None = None

    @property
    def reschedule(self) -> bool:
        return self.delay is not None


class RetryPolicy:
    """Decide rescheduling per failure class.

    Attributes:
        max_attempts: Delivery attempts allowed before a transient failure
            becomes terminal.
        base: Exponential base in seconds.
        cap: Upper bound of a single backoff delay in seconds.
    """

    def __init__(
        self,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base: float = DEFAULT_BACKOFF_BASE,
        cap: float = DEFAULT_BACKOFF_CAP,
    ):
        self.max_attempts = max(1, int(max_attempts))
        self.base = max(1.0, float(base))
        self.cap = max(0.0, float(cap))

    def backoff_delay(self, attempt_count: int) -> float:
        """Delay after the ``attempt_count``-th failed attempt."""
        return min(self.base ** max(0, attempt_count), self.cap)

    def decide(self, outcome: Outcome, attempt_count: int, now: datetime) -> RetryDecision:
        """Map an attempt outcome to the next status and delay.

        Args:
            outcome: Classified result of the attempt.
            attempt_count: Attempts recorded on the item before this one.
            now: Current time, used for absolute rescheduling.
        """
        now = ensure_utc(now)
        outcome = Outcome(outcome)
        if outcome is Outcome.SUCCESS:
            return RetryDecision(WorkItemStatus.DONE, attempt_count + 1)
        if outcome is Outcome.TERMINAL_FAILURE:
            return RetryDecision(WorkItemStatus.FAILED, attempt_count + 1)
        if outcome is Outcome.RATE_LIMITED:
            delay = seconds_until_next_hour(now)
            return RetryDecision(
                WorkItemStatus.DEFERRED,
                attempt_count,
                delay=delay,
                next_run_at=now + timedelta(seconds=delay),
            )
        attempts = attempt_count + 1
        if attempts >= self.max_attempts:
            return RetryDecision(WorkItemStatus.FAILED, attempts)
        delay = self.backoff_delay(attempts)
        return RetryDecision(
            WorkItemStatus.DEFERRED,
            attempts,
            delay=delay,
            next_run_at=now + timedelta(seconds=delay),
        )
