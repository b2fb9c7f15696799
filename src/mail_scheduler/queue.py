# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Durable delayed execution queue.

The queue stores jobs in the ``queue_jobs`` table and runs a registered
handler for each job once its delay has elapsed. Key properties:

- ``enqueue`` is idempotent on the job id: re-submitting an existing job
  (waiting, active, or retained after completion) is a silent no-op, which
  makes restart recovery safe to re-run.
- Jobs never start before their ``run_at``; eligible jobs run concurrently
  with no FIFO guarantee.
- Concurrency is bounded by the number of in-flight tasks, and a global
  throughput ceiling caps attempts started per second.
- The handler returns a :class:`JobOutcome`; the queue then completes,
  fails, or reschedules the same job.
- Completed and failed jobs are retained for inspection and pruned by age
  and count.

Example:
    Wiring a handler::

        queue = ExecutionQueue(persistence, concurrency=5, max_per_second=10)
        queue.register_handler(worker.handle)
        await queue.open()
        await queue.start()
        await queue.enqueue("job-1", item.id, delay=30)
        ...
        await queue.close(grace=5.0)
"""

from __future__ import annotations

import asyncio
import collections
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from .errors import RecordStoreUnavailable
from .logger import get_logger
from .persistence import JOB_COMPLETED, JOB_FAILED, Persistence
from .timeutils import Clock, utc_now

DEFAULT_CONCURRENCY = 5
DEFAULT_MAX_PER_SECOND = 10
DEFAULT_POLL_INTERVAL = 1.0
COMPLETED_RETENTION_SECONDS = 24 * 3600
COMPLETED_RETENTION_COUNT = 1000
FAILED_RETENTION_SECONDS = 7 * 24 * 3600
PRUNE_INTERVAL_SECONDS = 60.0


@dataclass(frozen=True)
class Job:
    """A claimed queue job handed to the handler for one attempt."""

    job_id: str
    item_id: str
    run_at: float
    attempts_made: int = 0

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Job":
        return cls(
            job_id=row["job_id"],
            item_id=row["item_id"],
            run_at=float(row["run_at"]),
            attempts_made=int(row.get("attempts_made") or 0),
        )


@dataclass(frozen=True)
class JobOutcome:
    """Handler verdict for a job: complete, fail, or retry after ``delay``."""

    action: str
    delay: float = 0.0
    reason: str | None = None

    COMPLETE = "complete"
    FAIL = "fail"
    RETRY = "retry"

    @classmethod
    def complete(cls) -> "JobOutcome":
        return cls(cls.COMPLETE)

    @classmethod
    def fail(cls, reason: str) -> "JobOutcome":
        return cls(cls.FAIL, reason=reason)

    @classmethod
    def retry(cls, delay: float, reason: str | None = None) -> "JobOutcome":
        return cls(cls.RETRY, delay=max(0.0, float(delay)), reason=reason)


JobHandler = Callable[[Job], Awaitable[JobOutcome]]


class ThroughputLimiter:
    """Sliding one-second window capping how many attempts may start."""

    def __init__(self, max_per_second: int, *, monotonic: Callable[[], float] = time.monotonic):
        self.max_per_second = max(1, int(max_per_second))
        self.window = 1.0
        self._monotonic = monotonic
        self._starts: collections.deque[float] = collections.deque()
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        """Wait until one more start fits in the current window."""
        async with self._lock:
            while True:
                now = self._monotonic()
                while self._starts and now - self._starts[0] >= self.window:
                    self._starts.popleft()
                if len(self._starts) < self.max_per_second:
                    self._starts.append(now)
                    return
                await asyncio.sleep(self.window - (now - self._starts[0]))


class ExecutionQueue:
    """Time-ordered, at-least-once job queue over the persistence layer.

    Attributes:
        persistence: Store providing the ``queue_jobs`` operations.
        concurrency: Maximum number of handler invocations in flight.
        throughput: Limiter for attempts started per second.
        poll_interval: Upper bound of the idle wait between scans.
    """

    def __init__(
        self,
        persistence: Persistence,
        *,
        concurrency: int = DEFAULT_CONCURRENCY,
        max_per_second: int = DEFAULT_MAX_PER_SECOND,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        clock: Clock | None = None,
        logger=None,
    ):
        self.persistence = persistence
        self.concurrency = max(1, int(concurrency))
        self.throughput = ThroughputLimiter(max_per_second)
        self.poll_interval = max(0.05, float(poll_interval))
        self.clock = clock or utc_now
        self.logger = logger or get_logger("Queue")
        self._handler: JobHandler | None = None
        self._inflight: set[asyncio.Task] = set()
        self._running: set[str] = set()
        self._wake_event = asyncio.Event()
        self._stopping = False
        self._task_loop: asyncio.Task | None = None
        self._last_prune = 0.0

    def _now_ts(self) -> float:
        return self.clock().timestamp()

    # ----------------------------------------------------------------- producers
    async def enqueue(self, job_id: str, item_id: str, delay: float = 0.0) -> bool:
        """Add a delayed job; a no-op when ``job_id`` is already known.

        Args:
            job_id: Queue identity (dedupe key or work item id).
            item_id: Work item the job refers to.
            delay: Seconds from now before the job becomes eligible.

        Returns:
            True when a new job was stored, False for an existing job id.
        """
        run_at = self._now_ts() + max(0.0, float(delay))
        added = await self.persistence.insert_job(job_id, item_id, run_at)
        if added:
            self.logger.info("Job %s queued for item %s with delay %.1fs", job_id, item_id, max(0.0, delay))
            self._wake_event.set()
        else:
            self.logger.debug("Job %s already queued, skipping", job_id)
        return added

    async def revive(self, job_id: str, delay: float = 0.0) -> bool:
        """Re-arm a job retained after completion or failure.

        Only used by restart recovery for items that are still not terminal
        although their job already finished.
        """
        run_at = self._now_ts() + max(0.0, float(delay))
        revived = await self.persistence.revive_job(job_id, run_at)
        if revived:
            self.logger.warning("Job %s revived for a non-terminal item", job_id)
            self._wake_event.set()
        return revived

    async def remove(self, job_id: str) -> bool:
        """Remove a job that has not started yet."""
        removed = await self.persistence.delete_job(job_id, only_waiting=True)
        if removed:
            self.logger.info("Job %s removed from queue", job_id)
        return removed

    async def get_job(self, job_id: str) -> dict[str, Any] | None:
        return await self.persistence.get_job(job_id)

    async def counts(self) -> dict[str, int]:
        """Return waiting, delayed, active, completed and failed job counts."""
        counts = await self.persistence.count_jobs(self._now_ts())
        counts["total"] = counts["waiting"] + counts["delayed"] + counts["active"]
        return counts

    # ----------------------------------------------------------------- consumers
    def register_handler(self, handler: JobHandler) -> None:
        self._handler = handler

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    async def open(self) -> int:
        """Prepare the queue after a restart.

        Jobs left ``active`` by a process that died mid-attempt are moved
        back to ``waiting`` so they are picked up again.

        Returns:
            Number of stalled jobs that were reset.
        """
        reset = await self.persistence.reset_active_jobs()
        if reset:
            self.logger.warning("Reset %d stalled job(s) left active by a previous run", reset)
        return reset

    async def start(self) -> None:
        """Start the background dispatch loop."""
        if self._handler is None:
            raise RuntimeError("no job handler registered")
        if self._task_loop is not None and not self._task_loop.done():
            return
        self._stopping = False
        self._task_loop = asyncio.create_task(self._dispatch_loop(), name="queue-dispatch-loop")

    def wake(self) -> None:
        self._wake_event.set()

    async def _dispatch_loop(self) -> None:
        self.logger.debug("Queue dispatch loop started (concurrency=%d)", self.concurrency)
        while not self._stopping:
            try:
                started = await self._start_ready_jobs()
                await self._maybe_prune()
                timeout = 0.0 if started and self.inflight < self.concurrency else await self._idle_timeout()
            except RecordStoreUnavailable as exc:
                self.logger.error("Queue store unavailable, retrying: %s", exc)
                timeout = self.poll_interval
            except Exception as exc:  # pragma: no cover
                self.logger.exception("Unhandled error in queue dispatch loop: %s", exc)
                timeout = self.poll_interval
            if timeout > 0:
                await self._wait_for_wakeup(timeout)
        self.logger.debug("Queue dispatch loop stopped")

    async def _idle_timeout(self) -> float:
        if self.inflight >= self.concurrency:
            return self.poll_interval
        next_run = await self.persistence.next_job_run_at()
        if next_run is None:
            return self.poll_interval
        return min(self.poll_interval, max(0.0, next_run - self._now_ts()))

    async def _wait_for_wakeup(self, timeout: float) -> None:
        try:
            await asyncio.wait_for(self._wake_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass
        self._wake_event.clear()

    async def _claim(self) -> list[Job]:
        free = self.concurrency - self.inflight
        rows = await self.persistence.claim_ready_jobs(self._now_ts(), free)
        return [Job.from_row(row) for row in rows]

    async def _start_ready_jobs(self) -> int:
        jobs = await self._claim()
        for job in jobs:
            await self.throughput.acquire()
            self._spawn(job)
        return len(jobs)

    def _spawn(self, job: Job) -> asyncio.Task:
        self._running.add(job.job_id)
        task = asyncio.create_task(self._run_job(job), name=f"job-{job.job_id}")
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    async def process_ready(self) -> int:
        """Run every currently eligible job and wait for them to finish.

        Used by the ``run now`` command and by tests; bypasses the loop but
        honours the concurrency and throughput ceilings.

        Returns:
            Number of jobs processed.
        """
        processed = 0
        while True:
            jobs = await self._claim()
            if not jobs:
                break
            batch = []
            for job in jobs:
                await self.throughput.acquire()
                batch.append(self._spawn(job))
            await asyncio.gather(*batch)
            processed += len(jobs)
        return processed

    async def _run_job(self, job: Job) -> None:
        assert self._handler is not None
        try:
            try:
                outcome = await self._handler(job)
            except RecordStoreUnavailable as exc:
                # The job stays active until reap_stalled or the next open resets it.
                self.logger.critical(
                    "Job %s could not persist its outcome, leaving it active: %s", job.job_id, exc
                )
                return
            except Exception as exc:
                self.logger.exception("Handler failed for job %s: %s", job.job_id, exc)
                outcome = JobOutcome.fail(f"handler error: {exc}")
            await self._apply_outcome(job, outcome)
        except RecordStoreUnavailable as exc:
            self.logger.critical("Failed to record outcome of job %s: %s", job.job_id, exc)
        finally:
            self._running.discard(job.job_id)
            self._wake_event.set()

    async def reap_stalled(self, older_than: float) -> int:
        """Reset jobs stuck ``active`` for more than ``older_than`` seconds.

        A job stays active when its handler could not record an outcome.
        Jobs still running in this process are never touched.

        Returns:
            Number of jobs moved back to ``waiting``.
        """
        cutoff = self._now_ts() - max(0.0, float(older_than))
        reset = await self.persistence.reset_stalled_jobs(cutoff, exclude=sorted(self._running))
        if reset:
            self.logger.warning("Reset %d job(s) stalled active for more than %.0fs", reset, older_than)
            self._wake_event.set()
        return reset

    async def _apply_outcome(self, job: Job, outcome: JobOutcome) -> None:
        if outcome.action == JobOutcome.RETRY:
            run_at = self._now_ts() + outcome.delay
            await self.persistence.reschedule_job(job.job_id, run_at, outcome.reason)
            self.logger.info("Job %s rescheduled in %.1fs", job.job_id, outcome.delay)
        elif outcome.action == JobOutcome.FAIL:
            await self.persistence.finish_job(job.job_id, JOB_FAILED, outcome.reason)
            self.logger.info("Job %s failed: %s", job.job_id, outcome.reason)
        else:
            await self.persistence.finish_job(job.job_id, JOB_COMPLETED)
            self.logger.debug("Job %s completed", job.job_id)

    async def _maybe_prune(self) -> None:
        now = time.monotonic()
        if now - self._last_prune < PRUNE_INTERVAL_SECONDS:
            return
        self._last_prune = now
        await self.prune()

    async def prune(self) -> int:
        """Apply the retention policy to completed and failed jobs."""
        now_ts = self._now_ts()
        removed = await self.persistence.prune_jobs(
            completed_before=now_ts - COMPLETED_RETENTION_SECONDS,
            completed_keep=COMPLETED_RETENTION_COUNT,
            failed_before=now_ts - FAILED_RETENTION_SECONDS,
        )
        if removed:
            self.logger.debug("Pruned %d finished job(s)", removed)
        return removed

    async def close(self, grace: float = 5.0) -> None:
        """Stop claiming jobs and give in-flight attempts ``grace`` seconds.

        Attempts still running afterwards are cancelled; their jobs stay
        ``active`` and their items ``IN_PROGRESS`` until the next start.
        """
        self._stopping = True
        self._wake_event.set()
        if self._task_loop is not None:
            await asyncio.gather(self._task_loop, return_exceptions=True)
            self._task_loop = None
        pending = set(self._inflight)
        if not pending:
            return
        self.logger.info("Waiting up to %.1fs for %d in-flight attempt(s)", grace, len(pending))
        _done, still_running = await asyncio.wait(pending, timeout=max(0.0, grace))
        if still_running:
            self.logger.warning("Abandoning %d attempt(s) after shutdown grace period", len(still_running))
            for task in still_running:
                task.cancel()
            await asyncio.gather(*still_running, return_exceptions=True)
