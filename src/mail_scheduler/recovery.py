# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Restart recovery: re-arm every persisted item that is not yet terminal.

The record store is the source of truth; the execution queue may have lost
jobs (or never received them) when the process died. On start the loader:

1. sweeps ``IN_PROGRESS`` items untouched for ``stale_after`` seconds back
   to ``PENDING`` (their attempt died with the previous process);
2. marks ``FAILED`` any item whose schedule was missed by more than
   ``missed_schedule_grace`` seconds, instead of sending a stale email;
3. enqueues every other ``PENDING``/``DEFERRED`` item with
   ``delay = max(0, scheduled_at - now)``.

Enqueue is idempotent on the job id, so a recovery interrupted halfway can
simply run again. Record store failures never crash the process: they are
logged and the scan is retried a bounded number of times.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from .audit import AuditSink, NullAuditSink
from .errors import RecordStoreUnavailable
from .logger import get_logger
from .models import CLAIMABLE_STATUSES, WorkItem, WorkItemStatus
from .persistence import Persistence
from .prometheus import DispatchMetrics
from .queue import ExecutionQueue
from .timeutils import Clock, utc_now
from .worker import OUTCOME_WRITE_RETRIES, OUTCOME_WRITE_RETRY_DELAY

DEFAULT_MISSED_SCHEDULE_GRACE = 3600.0
DEFAULT_STALE_IN_PROGRESS_AFTER = 300.0
DEFAULT_RECOVERY_RETRIES = 3
DEFAULT_RECOVERY_RETRY_DELAY = 2.0


@dataclass
class RecoveryReport:
    """Counters describing one recovery run."""

    requeued: int = 0
    already_queued: int = 0
    expired: int = 0
    swept: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "requeued": self.requeued,
            "already_queued": self.already_queued,
            "expired": self.expired,
            "swept": self.swept,
            "errors": list(self.errors),
        }


class RecoveryLoader:
    """Reconcile the execution queue with the record store after a restart.

    Attributes:
        missed_schedule_grace: Seconds an item may be overdue before it is
            failed instead of re-sent; None disables the policy.
        stale_after: Age of an IN_PROGRESS item considered abandoned.
        retries: Scan attempts when the record store is unavailable.
        retry_delay: Base delay between scan attempts.
    """

    def __init__(
        self,
        persistence: Persistence,
        queue: ExecutionQueue,
        *,
        audit: AuditSink | None = None,
        metrics: DispatchMetrics | None = None,
        missed_schedule_grace: float | None = DEFAULT_MISSED_SCHEDULE_GRACE,
        stale_after: float = DEFAULT_STALE_IN_PROGRESS_AFTER,
        retries: int = DEFAULT_RECOVERY_RETRIES,
        retry_delay: float = DEFAULT_RECOVERY_RETRY_DELAY,
        clock: Clock | None = None,
        logger=None,
    ):
        self.persistence = persistence
        self.queue = queue
        self.audit = audit or NullAuditSink()
        self.metrics = metrics
        self.missed_schedule_grace = (
            None if missed_schedule_grace is None or missed_schedule_grace <= 0 else float(missed_schedule_grace)
        )
        self.stale_after = max(0.0, float(stale_after))
        self.retries = max(1, int(retries))
        self.retry_delay = max(0.0, float(retry_delay))
        self.clock = clock or utc_now
        self.logger = logger or get_logger("Recovery")

    async def run(self) -> RecoveryReport:
        """Run recovery; never raises for record store failures."""
        self.logger.info("Checking for pending work items to requeue...")
        report = RecoveryReport()
        for attempt in range(1, self.retries + 1):
            try:
                await self._run_once(report)
                report.errors.clear()
                break
            except RecordStoreUnavailable as exc:
                message = f"attempt {attempt}/{self.retries}: {exc}"
                report.errors.append(message)
                self.logger.error("Recovery could not reach the record store (%s)", message)
                if attempt < self.retries:
                    await asyncio.sleep(self.retry_delay * attempt)
        if report.errors:
            self.logger.error("Recovery gave up; pending items will not run until the next recovery")
        else:
            self.logger.info(
                "Requeue complete: %d requeued, %d already queued, %d expired, %d swept",
                report.requeued,
                report.already_queued,
                report.expired,
                report.swept,
            )
        if self.metrics is not None:
            self.metrics.inc_recovered(report.requeued)
        return report

    async def _run_once(self, report: RecoveryReport) -> None:
        await self._sweep_stale(report)
        items = await self.persistence.list_non_terminal(statuses=CLAIMABLE_STATUSES)
        if not items:
            self.logger.info("No pending work items to requeue")
            return
        self.logger.info("Found %d pending work item(s) to requeue", len(items))
        for item in items:
            if await self._expire_if_missed(item, report):
                continue
            delay = max(0.0, (item.scheduled_at - self.clock()).total_seconds())
            if await self.queue.enqueue(item.job_id, item.id, delay):
                report.requeued += 1
            elif await self.queue.revive(item.job_id, delay):
                report.requeued += 1
            else:
                report.already_queued += 1

    async def _sweep_stale(self, report: RecoveryReport) -> None:
        cutoff = self.clock() - timedelta(seconds=self.stale_after)
        for item in await self.persistence.list_stale_in_progress(cutoff):
            reclaimed = await self.persistence.reclaim_stale(item.id, cutoff)
            if reclaimed is None:
                continue
            report.swept += 1
            self.logger.warning("Item %s was left IN_PROGRESS by a previous run, back to PENDING", item.id)
            await self._audit(item.id, WorkItemStatus.PENDING, "Attempt abandoned by a previous run; requeued")

    async def _expire_if_missed(self, item: WorkItem, report: RecoveryReport) -> bool:
        if self.missed_schedule_grace is None:
            return False
        now = self.clock()
        overdue = (now - item.scheduled_at).total_seconds()
        if overdue <= self.missed_schedule_grace:
            return False
        reason = f"Scheduled time missed by {int(overdue)}s during server restart"
        claimed = await self.persistence.transition(item.id, CLAIMABLE_STATUSES, WorkItemStatus.IN_PROGRESS)
        if claimed is None:
            return True
        try:
            await self._write_failed(claimed, reason, now)
        except RecordStoreUnavailable:
            await self._release(claimed, item.status)
            raise
        await self.queue.remove(item.job_id)
        report.expired += 1
        self.logger.warning("Skipping past item %s scheduled for %s", item.id, item.scheduled_at.isoformat())
        await self._audit(item.id, WorkItemStatus.FAILED, reason)
        return True

    async def _write_failed(self, item: WorkItem, reason: str, now: datetime) -> None:
        for attempt in range(1, OUTCOME_WRITE_RETRIES + 1):
            try:
                await self.persistence.transition(
                    item.id,
                    WorkItemStatus.IN_PROGRESS,
                    WorkItemStatus.FAILED,
                    last_error=reason,
                    executed_at=now,
                )
                return
            except RecordStoreUnavailable as exc:
                self.logger.error(
                    "Writing FAILED for item %s failed (try %d/%d): %s", item.id, attempt, OUTCOME_WRITE_RETRIES, exc
                )
                if attempt == OUTCOME_WRITE_RETRIES:
                    raise
                await asyncio.sleep(OUTCOME_WRITE_RETRY_DELAY * attempt)

    async def _release(self, item: WorkItem, status: WorkItemStatus) -> None:
        """Put an item whose expiry could not be written back to ``status``."""
        try:
            await self.persistence.transition(item.id, WorkItemStatus.IN_PROGRESS, status)
        except RecordStoreUnavailable as exc:
            # The worker fails it when it reclaims the stale attempt.
            self.logger.error("Item %s left IN_PROGRESS after a failed expiry: %s", item.id, exc)

    async def _audit(self, item_id: str, status: WorkItemStatus, message: str) -> None:
        try:
            await self.audit.record(item_id, status.value, message, self.clock())
        except Exception as exc:
            self.logger.warning("Audit sink failed for item %s: %s", item_id, exc)
