import types
from datetime import datetime, timezone

import pytest

from dispatch_fakes import (
    DummyDelivery,
    DummyMetrics,
    FakeClock,
    RecordingSleeper,
    new_item,
    open_store,
    silent_logger,
)
from mail_scheduler.audit import PersistenceAuditSink
from mail_scheduler.delivery import DeliveryResult
from mail_scheduler.errors import RecordStoreUnavailable, TerminalDeliveryFailure, TransientDeliveryFailure
from mail_scheduler.models import WorkItemStatus
from mail_scheduler.persistence import JOB_ACTIVE, JOB_COMPLETED, JOB_FAILED, JOB_WAITING
from mail_scheduler.queue import ExecutionQueue
from mail_scheduler.rate_limit import RateLimiter
from mail_scheduler.retry import RetryPolicy
from mail_scheduler.worker import DeliveryWorker


async def make_harness(tmp_path, *results, limit_per_hour=100, max_attempts=3, audit=None, missed_schedule_grace=None):
    clock = FakeClock()
    store = await open_store(tmp_path, clock)
    delivery = DummyDelivery(*results)
    metrics = DummyMetrics()
    sleeper = RecordingSleeper()
    worker = DeliveryWorker(
        store,
        RateLimiter(store, limit_per_hour=limit_per_hour, clock=clock),
        delivery,
        RetryPolicy(max_attempts=max_attempts),
        audit=audit or PersistenceAuditSink(store),
        metrics=metrics,
        missed_schedule_grace=missed_schedule_grace,
        clock=clock,
        sleeper=sleeper,
        logger=silent_logger(),
    )
    queue = ExecutionQueue(store, clock=clock, logger=silent_logger())
    queue.register_handler(worker.handle)
    return types.SimpleNamespace(
        clock=clock,
        store=store,
        delivery=delivery,
        metrics=metrics,
        sleeper=sleeper,
        worker=worker,
        queue=queue,
    )


async def schedule(h, delay=0.0, **kwargs):
    item = await h.store.create_item(new_item(delay=delay, clock=h.clock, **kwargs))
    await h.queue.enqueue(item.job_id, item.id, delay)
    return item


async def messages(h, item_id):
    return [entry["message"] for entry in await h.store.list_audit_entries(item_id)]


@pytest.mark.asyncio
async def test_successful_delivery_marks_done(tmp_path):
    h = await make_harness(tmp_path)
    item = await schedule(h)

    assert await h.queue.process_ready() == 1

    done = await h.store.get_item(item.id)
    assert done.status is WorkItemStatus.DONE
    assert done.attempt_count == 1
    assert done.executed_at == h.clock()
    assert h.sleeper.delays == [2.0]
    assert h.delivery.calls == [("sender-1", item.payload)]
    assert h.metrics.delivered == ["sender-1"]
    assert (await h.worker.rate_limiter.check("sender-1")).current == 1
    assert await messages(h, item.id) == ["Email sent successfully. Message ID: <msg-1@test>"]
    assert (await h.queue.get_job(item.job_id))["state"] == JOB_COMPLETED
    await h.store.close()


@pytest.mark.asyncio
async def test_item_is_never_sent_before_its_time(tmp_path):
    h = await make_harness(tmp_path)
    item = await h.store.create_item(new_item(delay=120, clock=h.clock))
    # Job armed too early, as a lost-and-recovered job could be.
    await h.queue.enqueue(item.job_id, item.id, delay=0)

    await h.queue.process_ready()
    assert h.delivery.calls == []
    assert (await h.store.get_item(item.id)).status is WorkItemStatus.PENDING
    job = await h.queue.get_job(item.job_id)
    assert job["state"] == JOB_WAITING
    assert job["run_at"] == pytest.approx(h.clock().timestamp() + 120)

    h.clock.advance(120)
    await h.queue.process_ready()
    assert (await h.store.get_item(item.id)).status is WorkItemStatus.DONE
    await h.store.close()


@pytest.mark.asyncio
async def test_rate_limited_item_waits_for_next_hour(tmp_path):
    h = await make_harness(tmp_path, limit_per_hour=1)
    await h.worker.rate_limiter.increment("sender-1")
    item = await schedule(h)

    await h.queue.process_ready()

    deferred = await h.store.get_item(item.id)
    assert deferred.status is WorkItemStatus.DEFERRED
    assert deferred.attempt_count == 0
    assert deferred.scheduled_at == datetime(2026, 3, 2, 11, 0, tzinfo=timezone.utc)
    assert h.delivery.calls == []
    assert h.sleeper.delays == []
    assert h.metrics.rate_limited == ["sender-1"]
    job = await h.queue.get_job(item.job_id)
    assert job["state"] == JOB_WAITING
    assert job["run_at"] == pytest.approx(deferred.scheduled_at.timestamp())
    assert (await messages(h, item.id))[0].startswith("rate limited: 1/1")

    h.clock.set(datetime(2026, 3, 2, 11, 0, tzinfo=timezone.utc))
    await h.queue.process_ready()
    assert (await h.store.get_item(item.id)).status is WorkItemStatus.DONE
    await h.store.close()


@pytest.mark.asyncio
async def test_terminal_failure_is_not_retried(tmp_path):
    h = await make_harness(tmp_path, DeliveryResult.terminal("550 no such user"))
    item = await schedule(h)

    await h.queue.process_ready()

    failed = await h.store.get_item(item.id)
    assert failed.status is WorkItemStatus.FAILED
    assert failed.attempt_count == 1
    assert failed.last_error == "550 no such user"
    assert h.metrics.failed == ["sender-1"]
    assert (await h.queue.get_job(item.job_id))["state"] == JOB_FAILED
    assert await messages(h, item.id) == ["Send failed: 550 no such user"]
    await h.store.close()


@pytest.mark.asyncio
async def test_transient_failure_retries_with_backoff(tmp_path):
    h = await make_harness(tmp_path, DeliveryResult.transient("421 try later"))
    item = await schedule(h)

    await h.queue.process_ready()
    deferred = await h.store.get_item(item.id)
    assert deferred.status is WorkItemStatus.DEFERRED
    assert deferred.attempt_count == 1
    assert deferred.last_error == "421 try later"
    assert (deferred.scheduled_at - h.clock()).total_seconds() == pytest.approx(2.0)
    assert h.metrics.deferred == ["sender-1"]
    assert await messages(h, item.id) == ["Temporary error (attempt 1/3): 421 try later"]

    h.clock.advance(2)
    await h.queue.process_ready()
    done = await h.store.get_item(item.id)
    assert done.status is WorkItemStatus.DONE
    assert done.attempt_count == 2
    assert len(h.delivery.calls) == 2
    await h.store.close()


@pytest.mark.asyncio
async def test_transient_failures_exhaust_attempts(tmp_path):
    h = await make_harness(
        tmp_path,
        DeliveryResult.transient("timeout"),
        DeliveryResult.transient("timeout"),
        DeliveryResult.transient("timeout"),
    )
    item = await schedule(h)

    for delay in (0, 2, 4):
        h.clock.advance(delay)
        await h.queue.process_ready()

    failed = await h.store.get_item(item.id)
    assert failed.status is WorkItemStatus.FAILED
    assert failed.attempt_count == 3
    assert failed.last_error == "Max attempts (3) exceeded: timeout"
    assert len(h.delivery.calls) == 3
    assert (await h.queue.get_job(item.job_id))["state"] == JOB_FAILED
    await h.store.close()


@pytest.mark.asyncio
async def test_transport_exception_is_classified(tmp_path):
    h = await make_harness(tmp_path, ConnectionResetError("connection reset by peer"))
    item = await schedule(h)

    await h.queue.process_ready()

    deferred = await h.store.get_item(item.id)
    assert deferred.status is WorkItemStatus.DEFERRED
    assert "connection reset" in deferred.last_error
    await h.store.close()


@pytest.mark.asyncio
async def test_delivery_failure_errors_map_to_outcomes(tmp_path):
    h = await make_harness(
        tmp_path,
        TransientDeliveryFailure("provider throttled"),
        TerminalDeliveryFailure("mailbox does not exist"),
    )
    item = await schedule(h)

    await h.queue.process_ready()
    deferred = await h.store.get_item(item.id)
    assert deferred.status is WorkItemStatus.DEFERRED
    assert deferred.last_error == "provider throttled"

    h.clock.advance(2)
    await h.queue.process_ready()
    failed = await h.store.get_item(item.id)
    assert failed.status is WorkItemStatus.FAILED
    assert failed.attempt_count == 2
    assert failed.last_error == "mailbox does not exist"
    await h.store.close()


@pytest.mark.asyncio
async def test_cancelled_item_is_skipped(tmp_path):
    h = await make_harness(tmp_path)
    item = await schedule(h)
    await h.store.transition(item.id, WorkItemStatus.PENDING, WorkItemStatus.CANCELLED)

    await h.queue.process_ready()

    assert h.delivery.calls == []
    assert (await h.store.get_item(item.id)).status is WorkItemStatus.CANCELLED
    assert (await h.queue.get_job(item.job_id))["state"] == JOB_COMPLETED
    await h.store.close()


@pytest.mark.asyncio
async def test_abandoned_attempt_is_reclaimed_once_stale(tmp_path):
    h = await make_harness(tmp_path)
    item = await schedule(h)
    await h.store.transition(item.id, WorkItemStatus.PENDING, WorkItemStatus.IN_PROGRESS)

    # Still fresh: another attempt may be running.
    await h.queue.process_ready()
    assert h.delivery.calls == []
    job = await h.queue.get_job(item.job_id)
    assert job["state"] == JOB_WAITING
    assert job["last_error"] == "item in progress elsewhere"

    h.clock.advance(301)
    await h.queue.process_ready()
    assert (await h.store.get_item(item.id)).status is WorkItemStatus.DONE
    assert len(h.delivery.calls) == 1
    await h.store.close()


@pytest.mark.asyncio
async def test_unwritable_outcome_is_reclaimed_after_stall(tmp_path, monkeypatch):
    monkeypatch.setattr("mail_scheduler.worker.OUTCOME_WRITE_RETRY_DELAY", 0)
    h = await make_harness(tmp_path)
    item = await schedule(h)
    original = h.store.transition

    async def flaky_transition(item_id, expected, new_status, **fields):
        if new_status is not WorkItemStatus.IN_PROGRESS:
            raise RecordStoreUnavailable("disk I/O error")
        return await original(item_id, expected, new_status, **fields)

    monkeypatch.setattr(h.store, "transition", flaky_transition)

    await h.queue.process_ready()

    assert len(h.delivery.calls) == 1
    assert (await h.store.get_item(item.id)).status is WorkItemStatus.IN_PROGRESS
    assert (await h.queue.get_job(item.job_id))["state"] == JOB_ACTIVE

    # Once stalled, the job is reset and the abandoned attempt reclaimed.
    monkeypatch.setattr(h.store, "transition", original)
    h.clock.advance(301)
    assert await h.queue.reap_stalled(300) == 1
    await h.queue.process_ready()
    assert (await h.store.get_item(item.id)).status is WorkItemStatus.DONE
    assert len(h.delivery.calls) == 2
    await h.store.close()


@pytest.mark.asyncio
async def test_missing_item_fails_job(tmp_path):
    h = await make_harness(tmp_path)
    await h.queue.enqueue("orphan", "does-not-exist")

    await h.queue.process_ready()

    job = await h.queue.get_job("orphan")
    assert job["state"] == JOB_FAILED
    assert job["last_error"] == "work item not found"
    await h.store.close()


@pytest.mark.asyncio
async def test_audit_failures_do_not_abort_delivery(tmp_path):
    class ExplodingAudit:
        async def record(self, item_id, status, message, timestamp):
            raise RuntimeError("audit backend down")

    h = await make_harness(tmp_path, audit=ExplodingAudit())
    item = await schedule(h)

    await h.queue.process_ready()

    assert (await h.store.get_item(item.id)).status is WorkItemStatus.DONE
    await h.store.close()


@pytest.mark.asyncio
async def test_store_read_failure_before_claim_reschedules_job(tmp_path, monkeypatch):
    h = await make_harness(tmp_path)
    item = await schedule(h)
    original = h.store.get_item
    failures = [RecordStoreUnavailable("database is locked")]

    async def busy_get_item(item_id):
        if failures:
            raise failures.pop()
        return await original(item_id)

    monkeypatch.setattr(h.store, "get_item", busy_get_item)

    await h.queue.process_ready()

    assert h.delivery.calls == []
    assert (await h.store.get_item(item.id)).status is WorkItemStatus.PENDING
    job = await h.queue.get_job(item.job_id)
    assert job["state"] == JOB_WAITING
    assert job["last_error"] == "record store unavailable"

    h.clock.advance(5)
    await h.queue.process_ready()
    assert (await h.store.get_item(item.id)).status is WorkItemStatus.DONE
    assert len(h.delivery.calls) == 1
    await h.store.close()


@pytest.mark.asyncio
async def test_reclaimed_item_past_grace_is_failed_not_sent(tmp_path):
    h = await make_harness(tmp_path, missed_schedule_grace=3600)
    item = await schedule(h)
    await h.store.transition(item.id, WorkItemStatus.PENDING, WorkItemStatus.IN_PROGRESS)
    h.clock.advance(7200)

    await h.queue.process_ready()

    assert h.delivery.calls == []
    failed = await h.store.get_item(item.id)
    assert failed.status is WorkItemStatus.FAILED
    assert failed.last_error.startswith("Scheduled time missed by 7200s")
    assert (await h.queue.get_job(item.job_id))["state"] == JOB_FAILED
    assert h.metrics.failed == ["sender-1"]
    await h.store.close()
