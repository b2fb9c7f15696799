# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Per-attempt delivery logic executed by the queue for each eligible job.

:class:`DeliveryWorker.handle` is registered as the execution queue handler.
For one job it:

1. loads the work item and skips cancelled or finished items;
2. atomically claims it (``PENDING|DEFERRED -> IN_PROGRESS``);
3. checks the owner's hourly rate limit and defers to the next hour when
   the quota is exhausted, without contacting the transport;
4. waits the minimum inter-attempt spacing;
5. invokes the delivery collaborator;
6. persists the outcome chosen by the retry policy, bumps the rate counter
   on success, writes an audit entry and tells the queue what to do next.

Record store errors before the claim only reschedule the job. The outcome
write is the only step whose failure propagates: after a few retries
:class:`RecordStoreUnavailable` escapes, the queue leaves the job active
and the maintenance loop later resets it, at which point the abandoned
attempt is reclaimed. A reclaimed item already overdue by more than
``missed_schedule_grace`` is failed rather than sent.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import Any

from .audit import AuditSink, NullAuditSink
from .delivery import Delivery, DeliveryResult, DeliveryStatus, result_from_exception
from .errors import RateLimited, RecordStoreUnavailable, WorkItemNotFound
from .logger import get_logger
from .models import CLAIMABLE_STATUSES, WorkItem, WorkItemStatus
from .persistence import Persistence
from .prometheus import DispatchMetrics
from .queue import Job, JobOutcome
from .rate_limit import RateLimiter
from .retry import Outcome, RetryDecision, RetryPolicy
from .timeutils import Clock, utc_now

DEFAULT_MIN_SPACING = 2.0
DEFAULT_STALE_AFTER = 300.0
OUTCOME_WRITE_RETRIES = 3
OUTCOME_WRITE_RETRY_DELAY = 0.5
STORE_UNAVAILABLE_RETRY_DELAY = 5.0

Sleeper = Callable[[float], Awaitable[Any]]


class DeliveryWorker:
    """Execute one delivery attempt per queue job.

    Attributes:
        persistence: Durable record store.
        rate_limiter: Per-owner hourly limiter.
        delivery: Transport collaborator.
        policy: Retry/backoff policy.
        audit: Best-effort audit sink.
        metrics: Prometheus metrics.
        min_spacing: Seconds to wait before each delivery call.
        stale_after: Age after which an IN_PROGRESS item is considered
            abandoned by a crashed attempt.
        missed_schedule_grace: Overdue seconds after which a reclaimed item
            is failed instead of sent; None disables the check.
    """

    def __init__(
        self,
        persistence: Persistence,
        rate_limiter: RateLimiter,
        delivery: Delivery,
        policy: RetryPolicy | None = None,
        *,
        audit: AuditSink | None = None,
        metrics: DispatchMetrics | None = None,
        min_spacing: float = DEFAULT_MIN_SPACING,
        stale_after: float = DEFAULT_STALE_AFTER,
        missed_schedule_grace: float | None = None,
        clock: Clock | None = None,
        sleeper: Sleeper | None = None,
        logger=None,
    ):
        self.persistence = persistence
        self.rate_limiter = rate_limiter
        self.delivery = delivery
        self.policy = policy or RetryPolicy()
        self.audit = audit or NullAuditSink()
        self.metrics = metrics or DispatchMetrics()
        self.min_spacing = max(0.0, float(min_spacing))
        self.stale_after = max(1.0, float(stale_after))
        self.missed_schedule_grace = (
            None if missed_schedule_grace is None or missed_schedule_grace <= 0 else float(missed_schedule_grace)
        )
        self.clock = clock or utc_now
        self.sleeper = sleeper or asyncio.sleep
        self.logger = logger or get_logger("Worker")

    # ------------------------------------------------------------------ entry
    async def handle(self, job: Job) -> JobOutcome:
        """Run one attempt for ``job`` and return the queue verdict."""
        self.logger.info("Processing job %s for item %s", job.job_id, job.item_id)
        try:
            claimed = await self._claim(job)
        except RecordStoreUnavailable as exc:
            self.logger.error("Record store unavailable before claiming item %s: %s", job.item_id, exc)
            return JobOutcome.retry(STORE_UNAVAILABLE_RETRY_DELAY, "record store unavailable")
        if isinstance(claimed, JobOutcome):
            return claimed

        try:
            await self._check_rate_limit(claimed)
        except RateLimited as exc:
            return await self._on_rate_limited(claimed, exc)

        if self.min_spacing:
            await self.sleeper(self.min_spacing)

        try:
            result = await self.delivery.deliver(claimed.owner_id, claimed.payload)
        except Exception as exc:
            result = result_from_exception(exc)

        if result.status is DeliveryStatus.SUCCESS:
            return await self._on_success(claimed, result)
        if result.status is DeliveryStatus.TERMINAL:
            return await self._on_terminal(claimed, result.reason or "terminal delivery failure")
        return await self._on_transient(claimed, result.reason or "transient delivery failure")

    async def _claim(self, job: Job) -> WorkItem | JobOutcome:
        """Claim the job's item, or return the verdict when it must not run now."""
        try:
            item = await self.persistence.get_item(job.item_id)
        except WorkItemNotFound:
            self.logger.warning("Job %s refers to missing item %s", job.job_id, job.item_id)
            return JobOutcome.fail("work item not found")

        skip = await self._check_runnable(item)
        if skip is not None:
            return skip
        reclaimed = False
        if item.status is WorkItemStatus.IN_PROGRESS:
            item = await self.persistence.reclaim_stale(item.id, self.clock() - timedelta(seconds=self.stale_after))
            if item is None:
                return JobOutcome.retry(min(self.stale_after, 60.0), "item in progress elsewhere")
            self.logger.warning("Reclaimed abandoned attempt on item %s", item.id)
            reclaimed = True

        remaining = (item.scheduled_at - self.clock()).total_seconds()
        if remaining > 0:
            self.logger.debug("Item %s not due for %.1fs, rescheduling job", item.id, remaining)
            return JobOutcome.retry(remaining, "not due yet")

        claimed = await self.persistence.transition(item.id, CLAIMABLE_STATUSES, WorkItemStatus.IN_PROGRESS)
        if claimed is None:
            latest = await self.persistence.get_item(item.id)
            skip = await self._check_runnable(latest)
            return skip or JobOutcome.retry(min(self.stale_after, 60.0), "claimed by another attempt")
        if reclaimed and self.missed_schedule_grace is not None:
            overdue = -remaining
            if overdue > self.missed_schedule_grace:
                return await self._on_missed(claimed, overdue)
        return claimed

    async def _check_runnable(self, item: WorkItem) -> JobOutcome | None:
        if item.status is WorkItemStatus.CANCELLED:
            self.logger.info("Item %s was cancelled, skipping", item.id)
            return JobOutcome.complete()
        if item.is_terminal:
            self.logger.info("Item %s already %s, skipping", item.id, item.status.value)
            return JobOutcome.complete()
        return None

    async def _check_rate_limit(self, item: WorkItem) -> None:
        status = await self.rate_limiter.check(item.owner_id)
        if not status.allowed:
            raise RateLimited(item.owner_id, status.current, status.limit)

    # --------------------------------------------------------------- outcomes
    async def _on_success(self, item: WorkItem, result: DeliveryResult) -> JobOutcome:
        now = self.clock()
        decision = self.policy.decide(Outcome.SUCCESS, item.attempt_count, now)
        await self._persist(item, decision, executed_at=now, last_error=None)
        await self.rate_limiter.increment(item.owner_id)
        self.metrics.inc_delivered(item.owner_id)
        await self._audit(item.id, decision.status, f"Email sent successfully. Message ID: {result.reference}")
        self.logger.info("Item %s delivered for owner %s", item.id, item.owner_id)
        return JobOutcome.complete()

    async def _on_terminal(self, item: WorkItem, reason: str) -> JobOutcome:
        now = self.clock()
        decision = self.policy.decide(Outcome.TERMINAL_FAILURE, item.attempt_count, now)
        await self._persist(item, decision, executed_at=now, last_error=reason)
        self.metrics.inc_failed(item.owner_id)
        await self._audit(item.id, decision.status, f"Send failed: {reason}")
        self.logger.error("Item %s failed with permanent error: %s", item.id, reason)
        return JobOutcome.fail(reason)

    async def _on_transient(self, item: WorkItem, reason: str) -> JobOutcome:
        now = self.clock()
        decision = self.policy.decide(Outcome.TRANSIENT_FAILURE, item.attempt_count, now)
        if not decision.reschedule:
            error = f"Max attempts ({self.policy.max_attempts}) exceeded: {reason}"
            await self._persist(item, decision, executed_at=now, last_error=error)
            self.metrics.inc_failed(item.owner_id)
            await self._audit(item.id, decision.status, f"Send failed: {error}")
            self.logger.error("Item %s failed permanently after %d attempts: %s", item.id, decision.attempt_count, reason)
            return JobOutcome.fail(error)

        await self._persist(item, decision, scheduled_at=decision.next_run_at, last_error=reason)
        self.metrics.inc_deferred(item.owner_id)
        await self._audit(
            item.id,
            decision.status,
            f"Temporary error (attempt {decision.attempt_count}/{self.policy.max_attempts}): {reason}",
        )
        self.logger.warning(
            "Temporary error for item %s (attempt %d/%d): %s - retrying in %.0fs",
            item.id,
            decision.attempt_count,
            self.policy.max_attempts,
            reason,
            decision.delay,
        )
        return JobOutcome.retry(decision.delay, reason)

    async def _on_missed(self, item: WorkItem, overdue: float) -> JobOutcome:
        now = self.clock()
        reason = f"Scheduled time missed by {int(overdue)}s before the abandoned attempt was reclaimed"
        decision = RetryDecision(WorkItemStatus.FAILED, item.attempt_count)
        await self._persist(item, decision, executed_at=now, last_error=reason)
        self.metrics.inc_failed(item.owner_id)
        await self._audit(item.id, decision.status, reason)
        self.logger.warning("Skipping past item %s scheduled for %s", item.id, item.scheduled_at.isoformat())
        return JobOutcome.fail(reason)

    async def _on_rate_limited(self, item: WorkItem, exc: RateLimited) -> JobOutcome:
        now = self.clock()
        decision = self.policy.decide(Outcome.RATE_LIMITED, item.attempt_count, now)
        await self._persist(item, decision, scheduled_at=decision.next_run_at, last_error="rate limited")
        self.metrics.inc_rate_limited(item.owner_id)
        await self._audit(item.id, decision.status, f"{exc}; next window at {decision.next_run_at.isoformat()}")
        self.logger.warning("Item %s %s, rescheduled in %.0fs", item.id, exc, decision.delay)
        return JobOutcome.retry(decision.delay, "rate limited")

    # ---------------------------------------------------------------- helpers
    async def _persist(self, item: WorkItem, decision: RetryDecision, **fields: Any) -> WorkItem | None:
        """Write the attempt outcome, retrying transient store errors.

        Raises:
            RecordStoreUnavailable: If every retry failed.
        """
        for attempt in range(1, OUTCOME_WRITE_RETRIES + 1):
            try:
                updated = await self.persistence.transition(
                    item.id,
                    WorkItemStatus.IN_PROGRESS,
                    decision.status,
                    attempt_count=decision.attempt_count,
                    **fields,
                )
            except RecordStoreUnavailable as exc:
                self.logger.error(
                    "Writing %s for item %s failed (try %d/%d): %s",
                    decision.status.value,
                    item.id,
                    attempt,
                    OUTCOME_WRITE_RETRIES,
                    exc,
                )
                if attempt == OUTCOME_WRITE_RETRIES:
                    raise
                await asyncio.sleep(OUTCOME_WRITE_RETRY_DELAY * attempt)
                continue
            if updated is None:
                self.logger.critical(
                    "Item %s left IN_PROGRESS before its %s outcome was written",
                    item.id,
                    decision.status.value,
                )
            return updated

    async def _audit(self, item_id: str, status: WorkItemStatus, message: str, when: datetime | None = None) -> None:
        try:
            await self.audit.record(item_id, status.value, message, when or self.clock())
        except Exception as exc:
            self.logger.warning("Audit sink failed for item %s: %s", item_id, exc)
