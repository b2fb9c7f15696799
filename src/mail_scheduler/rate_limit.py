# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Fixed-window hourly rate limiter backed by persisted counters.

This module implements per-owner rate limiting with one counter per owner
and wall-clock hour (``rate_limit:<owner>:<YYYY-MM-DD-HH>``). The window is
fixed, not sliding: a burst straddling an hour boundary may briefly reach
twice the limit, in exchange for counters that need no cross-window
bookkeeping.

Counters live in the ``rate_counters`` table with a two hour expiry and are
only mutated through an atomic increment. When the counter store fails the
limiter fails open: delivery availability is preferred over strict
enforcement.

Example:
    Using the rate limiter::

        rate_limiter = RateLimiter(persistence, limit_per_hour=100)
        status = await rate_limiter.check(owner_id)
        if not status.allowed:
            # defer until status.reset_at
            ...
        else:
            await deliver(...)
            await rate_limiter.increment(owner_id)
"""

from __future__ import annotations

from collections.abc import Mapping

from .errors import RecordStoreUnavailable
from .logger import get_logger
from .models import RateLimitStatus
from .persistence import Persistence
from .timeutils import Clock, hour_window, next_hour, utc_now

DEFAULT_LIMIT_PER_HOUR = 100
COUNTER_TTL_SECONDS = 2 * 3600
KEY_PREFIX = "rate_limit"


class RateLimiter:
    """Per-owner hourly counter with fail-open admission checks.

    Attributes:
        persistence: Store providing ``get_counter``/``incr_counter``.
        limit_per_hour: Default hourly ceiling for every owner.
        owner_limits: Optional per-owner overrides of the ceiling.
    """

    def __init__(
        self,
        persistence: Persistence,
        *,
        limit_per_hour: int = DEFAULT_LIMIT_PER_HOUR,
        owner_limits: Mapping[str, int] | None = None,
        clock: Clock | None = None,
        logger=None,
    ):
        self.persistence = persistence
        self.limit_per_hour = max(1, int(limit_per_hour))
        self.owner_limits = {k: max(1, int(v)) for k, v in (owner_limits or {}).items()}
        self.clock = clock or utc_now
        self.logger = logger or get_logger("RateLimiter")

    def limit_for(self, owner_id: str) -> int:
        return self.owner_limits.get(owner_id, self.limit_per_hour)

    @staticmethod
    def counter_key(owner_id: str, window: str) -> str:
        return f"{KEY_PREFIX}:{owner_id}:{window}"

    async def check(self, owner_id: str) -> RateLimitStatus:
        """Read the owner's counter for the current window without mutating it.

        Returns:
            RateLimitStatus; ``allowed`` is True when fewer than ``limit``
            sends were recorded in this window, or when the store failed.
        """
        now = self.clock()
        window = hour_window(now)
        limit = self.limit_for(owner_id)
        reset_at = next_hour(now)
        try:
            current = await self.persistence.get_counter(self.counter_key(owner_id, window))
        except RecordStoreUnavailable as exc:
            self.logger.error("Rate limit check failed for %s, allowing send: %s", owner_id, exc)
            return RateLimitStatus(allowed=True, current=0, limit=limit, reset_at=reset_at, window=window)
        return RateLimitStatus(
            allowed=current < limit,
            current=current,
            limit=limit,
            reset_at=reset_at,
            window=window,
        )

    async def increment(self, owner_id: str) -> int:
        """Record one successful delivery for ``owner_id``.

        Must be called only after the delivery succeeded. Store failures are
        logged and reported as 0; the delivery outcome is already durable.

        Returns:
            The new counter value for the current window.
        """
        key = self.counter_key(owner_id, hour_window(self.clock()))
        try:
            count = await self.persistence.incr_counter(key, COUNTER_TTL_SECONDS)
        except RecordStoreUnavailable as exc:
            self.logger.error("Failed to increment rate limit for %s: %s", owner_id, exc)
            return 0
        self.logger.debug("Rate limit for %s: %d/%d", owner_id, count, self.limit_for(owner_id))
        return count

    async def reset(self, owner_id: str) -> bool:
        """Drop the owner's counter for the current window (admin operation)."""
        key = self.counter_key(owner_id, hour_window(self.clock()))
        removed = await self.persistence.delete_counter(key)
        self.logger.info("Rate limit reset for %s", owner_id)
        return removed
