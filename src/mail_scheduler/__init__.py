"""Durable delayed email dispatch with rate limiting and crash recovery.

This package schedules emails for delivery at a caller-chosen time and
guarantees that each one is delivered at most once, even across retries and
process restarts. Features include:

- SQLite-backed work item store as the single source of truth
- Delayed execution queue with idempotent job identifiers
- Bounded worker concurrency and a global attempts-per-second ceiling
- Per-sender hourly rate limiting that fails open
- Exponential backoff for transient SMTP failures
- Restart recovery that re-arms every pending item
- FastAPI REST API, click CLI and Prometheus metrics

Example:
    Running the scheduler inside an application::

        from mail_scheduler.config_loader import load_settings
        from mail_scheduler.core import MailScheduler
        from mail_scheduler.models import WorkItemCreate

        scheduler = MailScheduler(load_settings())
        await scheduler.start()
        item, created = await scheduler.submit(WorkItemCreate(
            owner_id="sender-1",
            payload={"from": "a@example.com", "to": "b@example.com",
                     "subject": "Hi", "body": "Hello"},
            scheduled_at="2026-01-01T09:00:00Z",
        ))

Authors:
    Softwell S.r.l.
    Giovanni Porcari
"""

__version__ = "0.3.0"
