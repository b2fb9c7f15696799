"""Hand-written collaborators shared by the dispatch engine tests."""

import types
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

from mail_scheduler.delivery import DeliveryResult
from mail_scheduler.models import WorkItemCreate
from mail_scheduler.persistence import Persistence

START = datetime(2026, 3, 2, 10, 15, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now

    def set(self, when: datetime) -> None:
        self.now = when


class DummyDelivery:
    """Delivery returning queued results; success when the queue is empty."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls: List[tuple[str, Dict[str, Any]]] = []
        self.closed = False

    async def deliver(self, owner_id: str, payload: Dict[str, Any]) -> DeliveryResult:
        self.calls.append((owner_id, payload))
        if self.results:
            result = self.results.pop(0)
            if isinstance(result, BaseException):
                raise result
            return result
        return DeliveryResult.success(f"<msg-{len(self.calls)}@test>")

    async def close(self) -> None:
        self.closed = True


class DummyMetrics:
    def __init__(self):
        self.pending_value = None
        self.delivered: List[str] = []
        self.failed: List[str] = []
        self.deferred: List[str] = []
        self.rate_limited: List[str] = []
        self.recovered = 0

    def set_pending(self, value: int):
        self.pending_value = value

    def inc_delivered(self, owner_id: str):
        self.delivered.append(owner_id)

    def inc_failed(self, owner_id: str):
        self.failed.append(owner_id)

    def inc_deferred(self, owner_id: str):
        self.deferred.append(owner_id)

    def inc_rate_limited(self, owner_id: str):
        self.rate_limited.append(owner_id)

    def inc_recovered(self, count: int = 1):
        self.recovered += count

    def generate_latest(self) -> bytes:
        return b"metrics-data"


class RecordingSleeper:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def silent_logger():
    return types.SimpleNamespace(
        debug=lambda *args, **kwargs: None,
        info=lambda *args, **kwargs: None,
        warning=lambda *args, **kwargs: None,
        error=lambda *args, **kwargs: None,
        exception=lambda *args, **kwargs: None,
        critical=lambda *args, **kwargs: None,
    )


def payload(**overrides) -> Dict[str, Any]:
    data = {
        "from": "sender@example.com",
        "to": "rcpt@example.com",
        "subject": "Reminder",
        "body": "See you tomorrow",
    }
    data.update(overrides)
    return data


def new_item(owner_id: str = "sender-1", delay: float = 0.0, clock=None, dedupe_key=None, **payload_fields):
    now = (clock or FakeClock())()
    return WorkItemCreate(
        owner_id=owner_id,
        payload=payload(**payload_fields),
        scheduled_at=now + timedelta(seconds=delay),
        dedupe_key=dedupe_key,
    )


async def open_store(tmp_path, clock, name: str = "scheduler.db") -> Persistence:
    store = Persistence(str(tmp_path / name), clock=clock)
    await store.open()
    return store
