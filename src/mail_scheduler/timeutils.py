# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""UTC time helpers shared by the store, the rate limiter and the policy.

All timestamps handled by the scheduler are timezone-aware UTC datetimes.
Storage uses ISO-8601 strings with a ``Z`` suffix so that lexical order
matches chronological order.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta, timezone

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Normalise a datetime to UTC; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_iso(value: datetime | None) -> str | None:
    """Serialise a datetime as a fixed-width ISO-8601 UTC string."""
    if value is None:
        return None
    return ensure_utc(value).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def parse_iso(value: str | None) -> datetime | None:
    """Parse a string produced by :func:`to_iso` (or any ISO-8601 string)."""
    if not value:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(value))


def hour_window(value: datetime) -> str:
    """Return the fixed rate-limit window label ``YYYY-MM-DD-HH``."""
    return ensure_utc(value).strftime("%Y-%m-%d-%H")


def next_hour(value: datetime) -> datetime:
    """Return the start of the hour following ``value``."""
    value = ensure_utc(value)
    return value.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)


def seconds_until_next_hour(value: datetime) -> float:
    """Seconds from ``value`` to the next hour boundary (always > 0)."""
    return (next_hour(value) - ensure_utc(value)).total_seconds()
