# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Service facade tying the dispatch engine together.

:class:`MailScheduler` owns the record store, the execution queue, the
delivery worker and the recovery loader, and exposes the verbs used by the
HTTP API and the CLI:

- ``submit`` persists a work item and arms its delayed job;
- ``cancel`` withdraws an item that has not started yet;
- ``get_status``, ``list_items``, ``audit_trail``, ``rate_status`` and
  ``queue_stats`` are read-only inspections;
- ``recover`` re-runs the restart recovery on demand.

Example:
    Running the scheduler::

        from mail_scheduler.config_loader import load_settings
        from mail_scheduler.core import MailScheduler

        scheduler = MailScheduler(load_settings())
        await scheduler.start()

        item, created = await scheduler.submit(
            WorkItemCreate(owner_id="sender-1", payload={...}, scheduled_at=when)
        )

        await scheduler.stop()
"""

from __future__ import annotations

import asyncio
from typing import Any

from pydantic import ValidationError

from .audit import AuditSink, PersistenceAuditSink
from .config_loader import DispatchSettings
from .delivery import Delivery, DeliveryResult, SMTPDelivery
from .errors import DuplicateSubmission, InvalidTransition, MailSchedulerError, RecordStoreUnavailable
from .logger import get_logger
from .models import CANCELLABLE_STATUSES, RateLimitStatus, WorkItem, WorkItemCreate, WorkItemStatus
from .persistence import Persistence
from .prometheus import DispatchMetrics
from .queue import ExecutionQueue
from .rate_limit import RateLimiter
from .recovery import RecoveryLoader, RecoveryReport
from .retry import RetryPolicy
from .smtp_pool import SMTPPool
from .timeutils import Clock, utc_now
from .worker import DeliveryWorker, Sleeper

MAINTENANCE_INTERVAL_SECONDS = 150.0


class UnconfiguredDelivery:
    """Delivery used when no SMTP server is configured.

    Every attempt fails transiently so items are retried once a transport
    is configured and the service restarted.
    """

    async def deliver(self, owner_id: str, payload: dict[str, Any]) -> DeliveryResult:
        return DeliveryResult.transient("no SMTP server configured")


class MailScheduler:
    """Central orchestrator of the scheduled mail dispatch service.

    Attributes:
        settings: Effective configuration.
        persistence: Durable record store.
        rate_limiter: Per-owner hourly limiter.
        policy: Retry/backoff policy.
        queue: Delayed execution queue.
        worker: Per-attempt delivery logic registered on the queue.
        recovery: Restart recovery loader.
        metrics: Prometheus metrics collector.
        audit: Audit sink.
    """

    def __init__(
        self,
        settings: DispatchSettings | None = None,
        *,
        persistence: Persistence | None = None,
        delivery: Delivery | None = None,
        audit: AuditSink | None = None,
        metrics: DispatchMetrics | None = None,
        clock: Clock | None = None,
        sleeper: Sleeper | None = None,
        logger=None,
    ):
        self.settings = settings or DispatchSettings()
        self.clock = clock or utc_now
        self.logger = logger or get_logger("MailScheduler")
        self.metrics = metrics or DispatchMetrics()
        self.persistence = persistence or Persistence(self.settings.db_path, clock=self.clock)
        self.audit = audit or PersistenceAuditSink(self.persistence)
        self.delivery = delivery or self._default_delivery()

        self.rate_limiter = RateLimiter(
            self.persistence,
            limit_per_hour=self.settings.limit_per_hour,
            owner_limits=self.settings.owner_limits,
            clock=self.clock,
        )
        self.policy = RetryPolicy(
            max_attempts=self.settings.max_attempts,
            cap=self.settings.backoff_cap_seconds,
        )
        self.queue = ExecutionQueue(
            self.persistence,
            concurrency=self.settings.concurrency,
            max_per_second=self.settings.max_per_second,
            poll_interval=self.settings.poll_interval,
            clock=self.clock,
        )
        self.worker = DeliveryWorker(
            self.persistence,
            self.rate_limiter,
            self.delivery,
            self.policy,
            audit=self.audit,
            metrics=self.metrics,
            min_spacing=self.settings.min_spacing,
            stale_after=self.settings.stale_in_progress_after,
            missed_schedule_grace=self.settings.missed_schedule_grace,
            clock=self.clock,
            sleeper=sleeper,
        )
        self.queue.register_handler(self.worker.handle)
        self.recovery = RecoveryLoader(
            self.persistence,
            self.queue,
            audit=self.audit,
            metrics=self.metrics,
            missed_schedule_grace=self.settings.missed_schedule_grace,
            stale_after=self.settings.stale_in_progress_after,
            clock=self.clock,
        )
        self._started = False
        self._stop = asyncio.Event()
        self._task_maintenance: asyncio.Task | None = None

    def _default_delivery(self) -> Delivery:
        if not self.settings.smtp_host:
            self.logger.warning("No SMTP host configured; deliveries will be retried until one is set")
            return UnconfiguredDelivery()
        return SMTPDelivery(
            self.settings.smtp_host,
            self.settings.smtp_port,
            self.settings.smtp_user,
            self.settings.smtp_password,
            self.settings.smtp_use_tls,
            pool=SMTPPool(),
        )

    # ----------------------------------------------------------------- lifecycle
    async def init(self) -> None:
        """Open the record store and reset jobs stalled by a previous run."""
        await self.persistence.open()
        await self.queue.open()

    async def start(self) -> RecoveryReport:
        """Open storage, run restart recovery and start the queue loop.

        Returns:
            The report of the startup recovery run.
        """
        self.logger.debug("Starting MailScheduler...")
        await self.init()
        report = await self.recovery.run()
        await self.queue.start()
        self._stop.clear()
        self._task_maintenance = asyncio.create_task(self._maintenance_loop(), name="maintenance-loop")
        self._started = True
        await self._refresh_pending_gauge()
        self.logger.info("Mail scheduler started")
        return report

    async def stop(self, grace: float | None = None) -> None:
        """Stop the queue, then release the transport and the record store."""
        grace = self.settings.shutdown_grace if grace is None else grace
        self._stop.set()
        if self._task_maintenance is not None:
            self._task_maintenance.cancel()
            await asyncio.gather(self._task_maintenance, return_exceptions=True)
            self._task_maintenance = None
        await self.queue.close(grace=grace)
        close = getattr(self.delivery, "close", None)
        if close is not None:
            await close()
        await self.persistence.close()
        self._started = False
        self.logger.info("Mail scheduler stopped")

    # ----------------------------------------------------------------- verbs
    async def submit(self, data: WorkItemCreate) -> tuple[WorkItem, bool]:
        """Persist a work item and arm its delayed job.

        A duplicate ``dedupe_key`` returns the existing item with
        ``created=False``. Its job is enqueued again when the item is still
        waiting, which is a no-op unless the job was lost.
        """
        try:
            item = await self.persistence.create_item(data)
        except DuplicateSubmission as exc:
            item, created = exc.existing, False
            self.logger.info("Duplicate submission for dedupe key %s, returning item %s", item.dedupe_key, item.id)
        else:
            created = True
            await self._audit(item, "Email scheduled")
            self.logger.info(
                "Scheduled item %s for owner %s at %s", item.id, item.owner_id, item.scheduled_at.isoformat()
            )
        if item.status in CANCELLABLE_STATUSES:
            delay = max(0.0, (item.scheduled_at - self.clock()).total_seconds())
            await self.queue.enqueue(item.job_id, item.id, delay)
        await self._refresh_pending_gauge()
        return item, created

    async def cancel(self, item_id: str) -> WorkItem:
        """Cancel an item that has not started.

        Raises:
            WorkItemNotFound: If the item does not exist.
            InvalidTransition: If the item is in progress or already terminal.
        """
        item = await self.persistence.get_item(item_id)
        updated = await self.persistence.transition(item.id, CANCELLABLE_STATUSES, WorkItemStatus.CANCELLED)
        if updated is None:
            latest = await self.persistence.get_item(item_id)
            raise InvalidTransition(item_id, latest.status.value, WorkItemStatus.CANCELLED.value)
        await self.queue.remove(updated.job_id)
        await self._audit(updated, "Cancelled by request")
        self.logger.info("Cancelled item %s", item_id)
        await self._refresh_pending_gauge()
        return updated

    async def get_status(self, item_id: str) -> WorkItem:
        return await self.persistence.get_item(item_id)

    async def list_items(
        self,
        *,
        status: WorkItemStatus | str | None = None,
        owner_id: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[WorkItem]:
        return await self.persistence.list_items(status=status, owner_id=owner_id, limit=limit, offset=offset)

    async def audit_trail(self, item_id: str) -> list[dict[str, Any]]:
        """Return the audit entries of an existing item, oldest first."""
        await self.persistence.get_item(item_id)
        return await self.persistence.list_audit_entries(item_id)

    async def rate_status(self, owner_id: str) -> RateLimitStatus:
        return await self.rate_limiter.check(owner_id)

    async def reset_rate_limit(self, owner_id: str) -> bool:
        return await self.rate_limiter.reset(owner_id)

    async def queue_stats(self) -> dict[str, Any]:
        """Return execution queue counts together with item counts per status."""
        jobs = await self.queue.counts()
        items = await self.persistence.count_by_status()
        return {"jobs": jobs, "items": items, "inflight": self.queue.inflight}

    async def recover(self) -> RecoveryReport:
        """Run the recovery loader on demand and wake the queue."""
        report = await self.recovery.run()
        self.queue.wake()
        await self._refresh_pending_gauge()
        return report

    async def run_now(self) -> int:
        """Process every eligible job immediately and wait for completion."""
        processed = await self.queue.process_ready()
        await self._refresh_pending_gauge()
        return processed

    async def maintenance(self) -> dict[str, int]:
        """Drop idle SMTP connections and expired rate-limit counters.

        Also resets queue jobs left active by an attempt that could not
        record its outcome, so the item is reclaimed without a restart.
        """
        closed = 0
        cleanup = getattr(self.delivery, "cleanup", None)
        if cleanup is not None:
            closed = await cleanup()
        try:
            purged = await self.persistence.purge_expired_counters()
        except RecordStoreUnavailable:
            self.logger.exception("Failed to purge expired rate-limit counters")
            purged = 0
        try:
            jobs_reset = await self.queue.reap_stalled(self.settings.stale_in_progress_after)
        except RecordStoreUnavailable:
            self.logger.exception("Failed to reset stalled queue jobs")
            jobs_reset = 0
        return {"connections_closed": closed, "counters_purged": purged, "jobs_reset": jobs_reset}

    async def health(self) -> dict[str, Any]:
        store_ok = await self.persistence.health_check()
        return {
            "status": "ok" if store_ok else "degraded",
            "record_store": store_ok,
            "queue_running": self._started,
        }

    # ----------------------------------------------------------------- commands
    async def handle_command(self, cmd: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        """Execute an external control command.

        Supported commands: ``submit``, ``cancel``, ``getStatus``,
        ``listItems``, ``auditTrail``, ``rateStatus``, ``resetRateLimit``,
        ``queueStats``, ``recover`` and ``run now``.

        Args:
            cmd: Command name to execute.
            payload: Command-specific parameters.

        Returns:
            dict: Command result with ``ok`` status and command-specific data.
            Failures carry ``error`` and the error ``code``.
        """
        payload = payload or {}
        try:
            match cmd:
                case "submit":
                    item, created = await self.submit(WorkItemCreate.model_validate(payload))
                    return {"ok": True, "created": created, "item": _item_dict(item)}
                case "cancel":
                    item = await self.cancel(payload["id"])
                    return {"ok": True, "item": _item_dict(item)}
                case "getStatus":
                    item = await self.get_status(payload["id"])
                    return {"ok": True, "item": _item_dict(item)}
                case "listItems":
                    items = await self.list_items(
                        status=payload.get("status"),
                        owner_id=payload.get("owner_id"),
                        limit=int(payload.get("limit", 100)),
                        offset=int(payload.get("offset", 0)),
                    )
                    return {"ok": True, "items": [_item_dict(item) for item in items]}
                case "auditTrail":
                    entries = await self.audit_trail(payload["id"])
                    return {"ok": True, "entries": entries}
                case "rateStatus":
                    status = await self.rate_status(payload["owner_id"])
                    return {"ok": True, "owner_id": payload["owner_id"], **status.to_dict()}
                case "resetRateLimit":
                    removed = await self.reset_rate_limit(payload["owner_id"])
                    return {"ok": True, "removed": removed}
                case "queueStats":
                    return {"ok": True, **await self.queue_stats()}
                case "recover":
                    return {"ok": True, "report": (await self.recover()).to_dict()}
                case "run now":
                    return {"ok": True, "processed": await self.run_now()}
                case _:
                    return {"ok": False, "error": f"unknown command: {cmd}", "code": "unknown_command"}
        except MailSchedulerError as exc:
            return {"ok": False, "error": str(exc), "code": exc.code}
        except KeyError as exc:
            return {"ok": False, "error": f"missing parameter {exc}", "code": "invalid_payload"}
        except (ValidationError, ValueError) as exc:
            return {"ok": False, "error": str(exc), "code": "invalid_payload"}

    # ----------------------------------------------------------------- helpers
    async def _maintenance_loop(self) -> None:
        while not self._stop.is_set():
            await asyncio.sleep(MAINTENANCE_INTERVAL_SECONDS)
            await self.maintenance()

    async def _audit(self, item: WorkItem, message: str) -> None:
        try:
            await self.audit.record(item.id, item.status.value, message, self.clock())
        except Exception as exc:
            self.logger.warning("Audit sink failed for item %s: %s", item.id, exc)

    async def _refresh_pending_gauge(self) -> None:
        """Update the Prometheus gauge of items not yet terminal."""
        try:
            counts = await self.persistence.count_by_status()
        except RecordStoreUnavailable:
            self.logger.exception("Failed to refresh pending gauge")
            return
        pending = sum(counts.get(status.value, 0) for status in WorkItemStatus if not status.is_terminal)
        self.metrics.set_pending(pending)


def _item_dict(item: WorkItem) -> dict[str, Any]:
    return item.model_dump(mode="json")
