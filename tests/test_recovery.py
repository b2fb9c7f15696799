import pytest

from dispatch_fakes import DummyMetrics, FakeClock, new_item, open_store, silent_logger
from mail_scheduler.audit import PersistenceAuditSink
from mail_scheduler.errors import RecordStoreUnavailable
from mail_scheduler.models import WorkItemStatus
from mail_scheduler.persistence import JOB_COMPLETED, JOB_WAITING
from mail_scheduler.queue import ExecutionQueue, JobOutcome
from mail_scheduler.recovery import RecoveryLoader


async def noop_handler(job):
    return JobOutcome.complete()


async def make_loader(tmp_path, **kwargs):
    clock = FakeClock()
    store = await open_store(tmp_path, clock)
    queue = ExecutionQueue(store, clock=clock, logger=silent_logger())
    queue.register_handler(noop_handler)
    metrics = DummyMetrics()
    loader = RecoveryLoader(
        store,
        queue,
        audit=PersistenceAuditSink(store),
        metrics=metrics,
        clock=clock,
        logger=silent_logger(),
        **kwargs,
    )
    return loader, store, queue, clock, metrics


@pytest.mark.asyncio
async def test_requeues_pending_items_with_remaining_delay(tmp_path):
    loader, store, queue, clock, metrics = await make_loader(tmp_path)
    item = await store.create_item(new_item(delay=50, clock=clock))

    report = await loader.run()

    assert report.ok
    assert report.requeued == 1
    assert metrics.recovered == 1
    job = await queue.get_job(item.job_id)
    assert job["state"] == JOB_WAITING
    assert job["run_at"] == pytest.approx(clock().timestamp() + 50)
    await store.close()


@pytest.mark.asyncio
async def test_second_run_enqueues_nothing(tmp_path):
    loader, store, queue, clock, metrics = await make_loader(tmp_path)
    await store.create_item(new_item(delay=50, clock=clock))
    await store.create_item(new_item(delay=0, clock=clock, dedupe_key="order-7"))

    first = await loader.run()
    second = await loader.run()

    assert first.requeued == 2
    assert second.requeued == 0
    assert second.already_queued == 2
    assert (await queue.counts())["total"] == 2
    await store.close()


@pytest.mark.asyncio
async def test_items_far_past_their_schedule_are_failed(tmp_path):
    loader, store, queue, clock, metrics = await make_loader(tmp_path)
    stale = await store.create_item(new_item(delay=-7200, clock=clock))
    late = await store.create_item(new_item(delay=-600, clock=clock))

    report = await loader.run()

    assert report.expired == 1
    assert report.requeued == 1
    failed = await store.get_item(stale.id)
    assert failed.status is WorkItemStatus.FAILED
    assert failed.last_error == "Scheduled time missed by 7200s during server restart"
    assert await queue.get_job(stale.job_id) is None
    # Within the grace window: sent as soon as possible.
    job = await queue.get_job(late.job_id)
    assert job["run_at"] == pytest.approx(clock().timestamp())
    entries = await store.list_audit_entries(stale.id)
    assert entries[-1]["status"] == "FAILED"
    await store.close()


@pytest.mark.asyncio
async def test_grace_can_be_disabled(tmp_path):
    loader, store, queue, clock, metrics = await make_loader(tmp_path, missed_schedule_grace=None)
    item = await store.create_item(new_item(delay=-7200, clock=clock))

    report = await loader.run()

    assert report.expired == 0
    assert report.requeued == 1
    assert (await store.get_item(item.id)).status is WorkItemStatus.PENDING
    await store.close()


@pytest.mark.asyncio
async def test_abandoned_in_progress_items_are_swept(tmp_path):
    loader, store, queue, clock, metrics = await make_loader(tmp_path, stale_after=300)
    item = await store.create_item(new_item(clock=clock))
    await store.transition(item.id, WorkItemStatus.PENDING, WorkItemStatus.IN_PROGRESS)

    fresh = await loader.run()
    assert fresh.swept == 0
    assert (await store.get_item(item.id)).status is WorkItemStatus.IN_PROGRESS

    clock.advance(301)
    report = await loader.run()
    assert report.swept == 1
    assert report.requeued == 1
    assert (await store.get_item(item.id)).status is WorkItemStatus.PENDING
    await store.close()


@pytest.mark.asyncio
async def test_finished_job_of_waiting_item_is_revived(tmp_path):
    loader, store, queue, clock, metrics = await make_loader(tmp_path)
    item = await store.create_item(new_item(clock=clock))
    await queue.enqueue(item.job_id, item.id)
    await queue.process_ready()
    assert (await queue.get_job(item.job_id))["state"] == JOB_COMPLETED

    report = await loader.run()

    assert report.requeued == 1
    assert (await queue.get_job(item.job_id))["state"] == JOB_WAITING
    await store.close()


@pytest.mark.asyncio
async def test_store_failure_is_reported_not_raised(tmp_path, monkeypatch):
    loader, store, queue, clock, metrics = await make_loader(tmp_path, retries=2, retry_delay=0)

    async def unavailable(*args, **kwargs):
        raise RecordStoreUnavailable("database is locked")

    monkeypatch.setattr(store, "list_stale_in_progress", unavailable)

    report = await loader.run()

    assert not report.ok
    assert len(report.errors) == 2
    assert "database is locked" in report.errors[0]
    assert report.to_dict()["ok"] is False
    await store.close()


def failing_expiry_writes(store, count):
    original = store.transition
    failures = {"left": count}

    async def transition(item_id, expected, new_status, **fields):
        if new_status is WorkItemStatus.FAILED and failures["left"]:
            failures["left"] -= 1
            raise RecordStoreUnavailable("disk I/O error")
        return await original(item_id, expected, new_status, **fields)

    return transition


@pytest.mark.asyncio
async def test_expiry_write_is_retried(tmp_path, monkeypatch):
    monkeypatch.setattr("mail_scheduler.recovery.OUTCOME_WRITE_RETRY_DELAY", 0)
    loader, store, queue, clock, metrics = await make_loader(tmp_path)
    item = await store.create_item(new_item(delay=-7200, clock=clock))
    await queue.enqueue(item.job_id, item.id)
    monkeypatch.setattr(store, "transition", failing_expiry_writes(store, 1))

    report = await loader.run()

    assert report.ok
    assert report.expired == 1
    assert (await store.get_item(item.id)).status is WorkItemStatus.FAILED
    assert await queue.get_job(item.job_id) is None
    await store.close()


@pytest.mark.asyncio
async def test_unwritable_expiry_restores_item_and_keeps_job(tmp_path, monkeypatch):
    monkeypatch.setattr("mail_scheduler.recovery.OUTCOME_WRITE_RETRY_DELAY", 0)
    loader, store, queue, clock, metrics = await make_loader(tmp_path, retries=1, retry_delay=0)
    item = await store.create_item(new_item(delay=-7200, clock=clock))
    await queue.enqueue(item.job_id, item.id)
    monkeypatch.setattr(store, "transition", failing_expiry_writes(store, 10))

    report = await loader.run()

    assert not report.ok
    assert report.expired == 0
    assert (await store.get_item(item.id)).status is WorkItemStatus.PENDING
    assert (await queue.get_job(item.job_id))["state"] == JOB_WAITING

    # A later run with a healthy store expires it.
    monkeypatch.undo()
    report = await loader.run()
    assert report.expired == 1
    assert (await store.get_item(item.id)).status is WorkItemStatus.FAILED
    await store.close()
