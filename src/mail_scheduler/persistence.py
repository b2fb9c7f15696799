"""SQLite-backed persistence layer for the mail scheduler.

This module provides the Persistence class that owns every durable table
used by the dispatch engine:

- ``work_items``: scheduled emails with their lifecycle status (source of truth)
- ``audit_log``: append-only history of status changes per work item
- ``rate_counters``: per-owner hourly counters with an expiry timestamp
- ``queue_jobs``: delayed jobs of the execution queue

The persistence layer uses aiosqlite over a single connection opened in
autocommit mode. Every status change is a single conditional ``UPDATE`` so
that two writers racing on the same work item can never both win; an
asyncio lock serialises the read-after-write sequences issued from this
process.

Example:
    Basic usage of the persistence layer::

        persistence = Persistence("/data/mail_scheduler.db")
        await persistence.open()

        item = await persistence.create_item(
            WorkItemCreate(owner_id="sender-1", payload={...}, scheduled_at=when)
        )
        claimed = await persistence.transition(
            item.id, CLAIMABLE_STATUSES, WorkItemStatus.IN_PROGRESS
        )

        await persistence.close()
"""

from __future__ import annotations

import asyncio
import json
import sqlite3
import uuid
from collections.abc import AsyncIterator, Iterable, Sequence
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import aiosqlite

from .errors import DuplicateSubmission, InvalidTransition, RecordStoreUnavailable, WorkItemNotFound
from .logger import get_logger
from .models import (
    NON_TERMINAL_STATUSES,
    WorkItem,
    WorkItemCreate,
    WorkItemStatus,
    can_transition,
)
from .timeutils import Clock, parse_iso, to_iso, utc_now

_UNSET: Any = object()

# Columns a status transition is allowed to touch besides status/updated_at.
_MUTABLE_FIELDS = ("scheduled_at", "attempt_count", "last_error", "executed_at")

JOB_WAITING = "waiting"
JOB_ACTIVE = "active"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"


class Persistence:
    """Async SQLite persistence layer for scheduler state.

    The instance is an injected dependency with an explicit lifecycle:
    :meth:`open` connects and creates the schema, :meth:`health_check`
    verifies the connection and :meth:`close` releases it. Any sqlite error
    is surfaced as :class:`RecordStoreUnavailable`.

    Attributes:
        db_path: Path to the SQLite database file, or ":memory:".
        clock: Callable returning the current aware UTC datetime.
    """

    def __init__(self, db_path: str = "/data/mail_scheduler.db", *, clock: Clock | None = None):
        """Initialize the persistence layer with a database path.

        Args:
            db_path: Path to the SQLite database file. Use ":memory:" for
                an in-memory database suitable for testing.
            clock: Optional time source, used for row timestamps.
        """
        self.db_path = db_path or ":memory:"
        self.clock = clock or utc_now
        self.logger = get_logger("Persistence")
        self._db: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    # ----------------------------------------------------------------- lifecycle
    @property
    def is_open(self) -> bool:
        return self._db is not None

    async def open(self) -> None:
        """Connect to the database and create the schema if needed.

        Calling ``open`` on an already open instance is a no-op.
        """
        if self._db is not None:
            return
        try:
            db = await aiosqlite.connect(self.db_path, isolation_level=None)
        except sqlite3.Error as exc:
            raise RecordStoreUnavailable(f"cannot open {self.db_path}: {exc}") from exc
        self._db = db
        try:
            await db.execute("PRAGMA busy_timeout = 5000")
            if self.db_path != ":memory:":
                await db.execute("PRAGMA journal_mode = WAL")
            await self._create_schema(db)
        except sqlite3.Error as exc:
            await self.close()
            raise RecordStoreUnavailable(f"cannot initialise schema: {exc}") from exc

    async def health_check(self) -> bool:
        """Return True when the database answers a trivial query."""
        if self._db is None:
            return False
        try:
            async with self._db.execute("SELECT 1") as cur:
                row = await cur.fetchone()
            return bool(row and row[0] == 1)
        except (sqlite3.Error, ValueError):
            return False

    async def close(self) -> None:
        """Close the connection; safe to call more than once."""
        db, self._db = self._db, None
        if db is not None:
            try:
                await db.close()
            except sqlite3.Error as exc:
                self.logger.warning("Error closing record store: %s", exc)

    async def _create_schema(self, db: aiosqlite.Connection) -> None:
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS work_items (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                payload TEXT NOT NULL,
                scheduled_at TEXT NOT NULL,
                status TEXT NOT NULL,
                attempt_count INTEGER NOT NULL DEFAULT 0,
                last_error TEXT,
                dedupe_key TEXT UNIQUE,
                executed_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        await db.execute(
            "CREATE INDEX IF NOT EXISTS idx_work_items_status_sched ON work_items(status, scheduled_at)"
        )
        await db.execute(
            "CREATE INDEX IF NOT EXISTS idx_work_items_owner ON work_items(owner_id)"
        )

        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS audit_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                item_id TEXT NOT NULL,
                status TEXT NOT NULL,
                message TEXT,
                created_at TEXT NOT NULL
            )
            """
        )
        await db.execute("CREATE INDEX IF NOT EXISTS idx_audit_item ON audit_log(item_id)")

        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS rate_counters (
                key TEXT PRIMARY KEY,
                count INTEGER NOT NULL,
                expires_at REAL NOT NULL
            )
            """
        )

        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS queue_jobs (
                job_id TEXT PRIMARY KEY,
                item_id TEXT NOT NULL,
                state TEXT NOT NULL,
                run_at REAL NOT NULL,
                attempts_made INTEGER NOT NULL DEFAULT 0,
                last_error TEXT,
                created_at REAL NOT NULL,
                claimed_at REAL,
                finished_at REAL
            )
            """
        )
        try:
            await db.execute("ALTER TABLE queue_jobs ADD COLUMN claimed_at REAL")
        except aiosqlite.OperationalError:
            pass
        await db.execute(
            "CREATE INDEX IF NOT EXISTS idx_queue_jobs_ready ON queue_jobs(state, run_at)"
        )

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[aiosqlite.Connection]:
        """Yield the open connection, translating sqlite errors."""
        if self._db is None:
            raise RecordStoreUnavailable("record store is not open")
        try:
            yield self._db
        except sqlite3.Error as exc:
            raise RecordStoreUnavailable(str(exc)) from exc
        except ValueError as exc:
            # aiosqlite raises ValueError once the connection thread is gone
            raise RecordStoreUnavailable(str(exc)) from exc

    def _now_iso(self) -> str:
        return to_iso(self.clock())

    # ---------------------------------------------------------------- work items
    @staticmethod
    def _row_to_item(row: Tuple[Any, ...], columns: Sequence[str]) -> WorkItem:
        data = dict(zip(columns, row))
        return WorkItem(
            id=data["id"],
            owner_id=data["owner_id"],
            payload=json.loads(data["payload"]),
            scheduled_at=parse_iso(data["scheduled_at"]),
            status=WorkItemStatus(data["status"]),
            attempt_count=int(data["attempt_count"] or 0),
            last_error=data["last_error"],
            dedupe_key=data["dedupe_key"],
            executed_at=parse_iso(data["executed_at"]),
            created_at=parse_iso(data["created_at"]),
            updated_at=parse_iso(data["updated_at"]),
        )

    async def _fetch_items(self, query: str, params: Sequence[Any] = ()) -> List[WorkItem]:
        async with self._connection() as db:
            async with db.execute(query, tuple(params)) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [self._row_to_item(row, cols) for row in rows]

    async def _fetch_item(self, query: str, params: Sequence[Any] = ()) -> Optional[WorkItem]:
        items = await self._fetch_items(query, params)
        return items[0] if items else None

    async def create_item(self, data: WorkItemCreate) -> WorkItem:
        """Persist a new work item with status PENDING.

        Raises:
            DuplicateSubmission: If ``data.dedupe_key`` is already used; the
                existing item is attached and nothing is written.
        """
        item_id = uuid.uuid4().hex
        now = self._now_iso()
        async with self._lock:
            async with self._connection() as db:
                cursor = await db.execute(
                    """
                    INSERT OR IGNORE INTO work_items
                    (id, owner_id, payload, scheduled_at, status, attempt_count,
                     dedupe_key, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, 0, ?, ?, ?)
                    """,
                    (
                        item_id,
                        data.owner_id,
                        json.dumps(data.payload),
                        to_iso(data.scheduled_at),
                        WorkItemStatus.PENDING.value,
                        data.dedupe_key,
                        now,
                        now,
                    ),
                )
                created = cursor.rowcount == 1
        if created:
            return await self.get_item(item_id)
        existing = await self.find_by_dedupe_key(data.dedupe_key) if data.dedupe_key else None
        if existing is None:
            raise RecordStoreUnavailable(f"insert of work item {item_id} was ignored")
        raise DuplicateSubmission(existing)

    async def get_item(self, item_id: str) -> WorkItem:
        """Fetch a work item by id.

        Raises:
            WorkItemNotFound: If no item has this id.
        """
        item = await self._fetch_item("SELECT * FROM work_items WHERE id=?", (item_id,))
        if item is None:
            raise WorkItemNotFound(item_id)
        return item

    async def find_by_dedupe_key(self, dedupe_key: str) -> Optional[WorkItem]:
        """Return the item registered under ``dedupe_key`` or None."""
        return await self._fetch_item("SELECT * FROM work_items WHERE dedupe_key=?", (dedupe_key,))

    async def list_non_terminal(
        self,
        before: datetime | None = None,
        statuses: Iterable[WorkItemStatus] | None = None,
    ) -> List[WorkItem]:
        """Return items not yet terminal, ordered by ``scheduled_at`` ascending.

        Args:
            before: Only items scheduled strictly before this instant.
            statuses: Restrict to a subset of the non-terminal statuses.
        """
        wanted = [WorkItemStatus(s).value for s in (statuses or NON_TERMINAL_STATUSES)]
        placeholders = ",".join("?" for _ in wanted)
        query = f"SELECT * FROM work_items WHERE status IN ({placeholders})"
        params: list[Any] = list(wanted)
        if before is not None:
            query += " AND scheduled_at < ?"
            params.append(to_iso(before))
        query += " ORDER BY scheduled_at ASC, id ASC"
        return await self._fetch_items(query, params)

    async def list_items(
        self,
        *,
        status: WorkItemStatus | str | None = None,
        owner_id: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[WorkItem]:
        """Return items filtered by status/owner, newest schedule first."""
        clauses = []
        params: list[Any] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(WorkItemStatus(status).value)
        if owner_id is not None:
            clauses.append("owner_id = ?")
            params.append(owner_id)
        query = "SELECT * FROM work_items"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY scheduled_at DESC, id ASC LIMIT ? OFFSET ?"
        params.extend([max(1, int(limit)), max(0, int(offset))])
        return await self._fetch_items(query, params)

    async def list_stale_in_progress(self, updated_before: datetime) -> List[WorkItem]:
        """Return IN_PROGRESS items whose last update is older than the cutoff."""
        return await self._fetch_items(
            """
            SELECT * FROM work_items
            WHERE status = ? AND updated_at < ?
            ORDER BY scheduled_at ASC, id ASC
            """,
            (WorkItemStatus.IN_PROGRESS.value, to_iso(updated_before)),
        )

    async def reclaim_stale(self, item_id: str, updated_before: datetime) -> Optional[WorkItem]:
        """Move an abandoned IN_PROGRESS item back to PENDING.

        The update only applies while the item is still IN_PROGRESS and has
        not been touched since ``updated_before``, so a live attempt that
        writes its outcome first always wins.

        Returns:
            The reclaimed item, or None when nothing was changed.
        """
        async with self._lock:
            async with self._connection() as db:
                cursor = await db.execute(
                    """
                    UPDATE work_items SET status = ?, updated_at = ?
                    WHERE id = ? AND status = ? AND updated_at < ?
                    """,
                    (
                        WorkItemStatus.PENDING.value,
                        self._now_iso(),
                        item_id,
                        WorkItemStatus.IN_PROGRESS.value,
                        to_iso(updated_before),
                    ),
                )
                if cursor.rowcount != 1:
                    return None
            return await self.get_item(item_id)

    async def transition(
        self,
        item_id: str,
        expected: WorkItemStatus | Iterable[WorkItemStatus],
        new_status: WorkItemStatus,
        **fields: Any,
    ) -> Optional[WorkItem]:
        """Atomically move an item to ``new_status`` if it is in ``expected``.

        The change is a single conditional ``UPDATE``; concurrent callers
        racing on the same item see at most one success.

        Args:
            item_id: Work item id.
            expected: Status (or statuses) the item must currently have.
            new_status: Target status.
            **fields: Optional ``scheduled_at``, ``attempt_count``,
                ``last_error`` and ``executed_at`` values to write together
                with the status. ``attempt_count`` never decreases.

        Returns:
            The updated item, or None when the predicate did not match.
        """
        if isinstance(expected, (WorkItemStatus, str)):
            expected = [expected]
        expected_values = [WorkItemStatus(s).value for s in expected]
        unknown = set(fields) - set(_MUTABLE_FIELDS)
        if unknown:
            raise TypeError(f"cannot update fields: {', '.join(sorted(unknown))}")

        set_parts = ["status = ?", "updated_at = ?"]
        values: list[Any] = [WorkItemStatus(new_status).value, self._now_iso()]
        for key in _MUTABLE_FIELDS:
            if key not in fields:
                continue
            value = fields[key]
            if key == "attempt_count":
                set_parts.append("attempt_count = MAX(attempt_count, ?)")
                values.append(int(value))
            elif key in ("scheduled_at", "executed_at"):
                set_parts.append(f"{key} = ?")
                values.append(to_iso(value))
            else:
                set_parts.append(f"{key} = ?")
                values.append(value)

        placeholders = ",".join("?" for _ in expected_values)
        values.append(item_id)
        values.extend(expected_values)
        async with self._lock:
            async with self._connection() as db:
                cursor = await db.execute(
                    f"UPDATE work_items SET {', '.join(set_parts)} "
                    f"WHERE id = ? AND status IN ({placeholders})",
                    tuple(values),
                )
                if cursor.rowcount != 1:
                    return None
            return await self.get_item(item_id)

    async def update_status(self, item_id: str, new_status: WorkItemStatus, **fields: Any) -> WorkItem:
        """Validate and apply a lifecycle transition from the current status.

        Raises:
            WorkItemNotFound: If the item does not exist.
            InvalidTransition: If the step is illegal or a concurrent writer
                changed the status first.
        """
        current = await self.get_item(item_id)
        if not can_transition(current.status, new_status):
            raise InvalidTransition(item_id, current.status.value, WorkItemStatus(new_status).value)
        updated = await self.transition(item_id, current.status, new_status, **fields)
        if updated is None:
            latest = await self.get_item(item_id)
            raise InvalidTransition(item_id, latest.status.value, WorkItemStatus(new_status).value)
        return updated

    async def count_by_status(self) -> Dict[str, int]:
        """Return the number of items per status (zero-filled)."""
        counts = {status.value: 0 for status in WorkItemStatus}
        async with self._connection() as db:
            async with db.execute("SELECT status, COUNT(*) FROM work_items GROUP BY status") as cur:
                for status, count in await cur.fetchall():
                    counts[status] = count
        return counts

    # ----------------------------------------------------------------- audit log
    async def add_audit_entry(
        self, item_id: str, status: str, message: str, timestamp: datetime | None = None
    ) -> None:
        """Append an audit entry for a work item."""
        async with self._connection() as db:
            await db.execute(
                "INSERT INTO audit_log (item_id, status, message, created_at) VALUES (?, ?, ?, ?)",
                (item_id, status, message, to_iso(timestamp or self.clock())),
            )

    async def list_audit_entries(self, item_id: str) -> List[Dict[str, Any]]:
        """Return the audit trail of an item, oldest first."""
        async with self._connection() as db:
            async with db.execute(
                "SELECT id, item_id, status, message, created_at FROM audit_log "
                "WHERE item_id = ? ORDER BY id ASC",
                (item_id,),
            ) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [dict(zip(cols, row)) for row in rows]

    # ------------------------------------------------------------- rate counters
    async def incr_counter(self, key: str, ttl_seconds: float) -> int:
        """Atomically increment a counter and refresh its expiry.

        An expired counter restarts from 1.

        Returns:
            The counter value after the increment.
        """
        now_ts = self.clock().timestamp()
        async with self._lock:
            async with self._connection() as db:
                await db.execute(
                    """
                    INSERT INTO rate_counters (key, count, expires_at) VALUES (?, 1, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        count = CASE WHEN rate_counters.expires_at <= ? THEN 1
                                     ELSE rate_counters.count + 1 END,
                        expires_at = excluded.expires_at
                    """,
                    (key, now_ts + ttl_seconds, now_ts),
                )
                async with db.execute("SELECT count FROM rate_counters WHERE key = ?", (key,)) as cur:
                    row = await cur.fetchone()
        return int(row[0]) if row else 0

    async def get_counter(self, key: str) -> int:
        """Return the counter value, 0 when missing or expired."""
        now_ts = self.clock().timestamp()
        async with self._connection() as db:
            async with db.execute(
                "SELECT count FROM rate_counters WHERE key = ? AND expires_at > ?",
                (key, now_ts),
            ) as cur:
                row = await cur.fetchone()
        return int(row[0]) if row else 0

    async def delete_counter(self, key: str) -> bool:
        async with self._connection() as db:
            cursor = await db.execute("DELETE FROM rate_counters WHERE key = ?", (key,))
            return cursor.rowcount > 0

    async def list_counters(self, prefix: str = "") -> Dict[str, int]:
        """Return live counters whose key starts with ``prefix``."""
        now_ts = self.clock().timestamp()
        async with self._connection() as db:
            async with db.execute(
                "SELECT key, count FROM rate_counters WHERE key LIKE ? AND expires_at > ? ORDER BY key",
                (f"{prefix}%", now_ts),
            ) as cur:
                rows = await cur.fetchall()
        return {key: int(count) for key, count in rows}

    async def purge_expired_counters(self) -> int:
        async with self._connection() as db:
            cursor = await db.execute(
                "DELETE FROM rate_counters WHERE expires_at <= ?", (self.clock().timestamp(),)
            )
            return cursor.rowcount

    # ---------------------------------------------------------------- queue jobs
    async def insert_job(self, job_id: str, item_id: str, run_at: float) -> bool:
        """Store a waiting job unless one with the same id already exists.

        Returns:
            True when a new job was stored.
        """
        async with self._connection() as db:
            cursor = await db.execute(
                """
                INSERT OR IGNORE INTO queue_jobs (job_id, item_id, state, run_at, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (job_id, item_id, JOB_WAITING, run_at, self.clock().timestamp()),
            )
            return cursor.rowcount == 1

    async def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        async with self._connection() as db:
            async with db.execute("SELECT * FROM queue_jobs WHERE job_id = ?", (job_id,)) as cur:
                row = await cur.fetchone()
                if not row:
                    return None
                cols = [c[0] for c in cur.description]
        return dict(zip(cols, row))

    async def claim_ready_jobs(self, now_ts: float, limit: int) -> List[Dict[str, Any]]:
        """Move up to ``limit`` eligible waiting jobs to ``active`` and return them."""
        if limit <= 0:
            return []
        claimed: List[Dict[str, Any]] = []
        async with self._lock:
            async with self._connection() as db:
                async with db.execute(
                    """
                    SELECT * FROM queue_jobs
                    WHERE state = ? AND run_at <= ?
                    ORDER BY run_at ASC, created_at ASC
                    LIMIT ?
                    """,
                    (JOB_WAITING, now_ts, limit),
                ) as cur:
                    rows = await cur.fetchall()
                    cols = [c[0] for c in cur.description]
                for row in rows:
                    job = dict(zip(cols, row))
                    cursor = await db.execute(
                        """
                        UPDATE queue_jobs SET state = ?, attempts_made = attempts_made + 1, claimed_at = ?
                        WHERE job_id = ? AND state = ?
                        """,
                        (JOB_ACTIVE, now_ts, job["job_id"], JOB_WAITING),
                    )
                    if cursor.rowcount == 1:
                        job["state"] = JOB_ACTIVE
                        job["claimed_at"] = now_ts
                        job["attempts_made"] += 1
                        claimed.append(job)
        return claimed

    async def finish_job(self, job_id: str, state: str, error: str | None = None) -> bool:
        """Mark an active job ``completed`` or ``failed``."""
        async with self._connection() as db:
            cursor = await db.execute(
                """
                UPDATE queue_jobs SET state = ?, last_error = ?, finished_at = ?
                WHERE job_id = ? AND state = ?
                """,
                (state, error, self.clock().timestamp(), job_id, JOB_ACTIVE),
            )
            return cursor.rowcount == 1

    async def reschedule_job(self, job_id: str, run_at: float, error: str | None = None) -> bool:
        """Move an active job back to ``waiting`` with a new ``run_at``."""
        async with self._connection() as db:
            cursor = await db.execute(
                """
                UPDATE queue_jobs SET state = ?, run_at = ?, last_error = ?
                WHERE job_id = ? AND state = ?
                """,
                (JOB_WAITING, run_at, error, job_id, JOB_ACTIVE),
            )
            return cursor.rowcount == 1

    async def revive_job(self, job_id: str, run_at: float) -> bool:
        """Move a retained ``completed``/``failed`` job back to ``waiting``."""
        async with self._connection() as db:
            cursor = await db.execute(
                """
                UPDATE queue_jobs SET state = ?, run_at = ?, finished_at = NULL
                WHERE job_id = ? AND state IN (?, ?)
                """,
                (JOB_WAITING, run_at, job_id, JOB_COMPLETED, JOB_FAILED),
            )
            return cursor.rowcount == 1

    async def delete_job(self, job_id: str, *, only_waiting: bool = False) -> bool:
        query = "DELETE FROM queue_jobs WHERE job_id = ?"
        params: tuple[Any, ...] = (job_id,)
        if only_waiting:
            query += " AND state = ?"
            params = (job_id, JOB_WAITING)
        async with self._connection() as db:
            cursor = await db.execute(query, params)
            return cursor.rowcount > 0

    async def reset_active_jobs(self) -> int:
        """Return jobs left ``active`` by a dead process to ``waiting``."""
        async with self._connection() as db:
            cursor = await db.execute(
                "UPDATE queue_jobs SET state = ? WHERE state = ?", (JOB_WAITING, JOB_ACTIVE)
            )
            return cursor.rowcount

    async def reset_stalled_jobs(self, claimed_before: float, exclude: Sequence[str] = ()) -> int:
        """Return jobs ``active`` since before ``claimed_before`` to ``waiting``.

        Jobs listed in ``exclude`` are still being handled and are left alone.
        """
        query = "UPDATE queue_jobs SET state = ? WHERE state = ? AND (claimed_at IS NULL OR claimed_at < ?)"
        params: list[Any] = [JOB_WAITING, JOB_ACTIVE, claimed_before]
        if exclude:
            query += f" AND job_id NOT IN ({', '.join('?' for _ in exclude)})"
            params.extend(exclude)
        async with self._connection() as db:
            cursor = await db.execute(query, params)
            return cursor.rowcount

    async def next_job_run_at(self) -> Optional[float]:
        """Return the earliest ``run_at`` among waiting jobs."""
        async with self._connection() as db:
            async with db.execute(
                "SELECT MIN(run_at) FROM queue_jobs WHERE state = ?", (JOB_WAITING,)
            ) as cur:
                row = await cur.fetchone()
        return float(row[0]) if row and row[0] is not None else None

    async def count_jobs(self, now_ts: float) -> Dict[str, int]:
        """Return job counts; waiting jobs not yet due are reported as delayed."""
        counts = {"waiting": 0, "delayed": 0, "active": 0, "completed": 0, "failed": 0}
        async with self._connection() as db:
            async with db.execute(
                """
                SELECT CASE WHEN state = ? AND run_at > ? THEN 'delayed' ELSE state END AS bucket,
                       COUNT(*)
                FROM queue_jobs GROUP BY bucket
                """,
                (JOB_WAITING, now_ts),
            ) as cur:
                for bucket, count in await cur.fetchall():
                    counts[bucket] = count
        return counts

    async def prune_jobs(
        self,
        *,
        completed_before: float,
        completed_keep: int,
        failed_before: float,
    ) -> int:
        """Drop finished jobs past their retention; returns rows removed."""
        async with self._lock:
            async with self._connection() as db:
                removed = 0
                cursor = await db.execute(
                    "DELETE FROM queue_jobs WHERE state = ? AND finished_at < ?",
                    (JOB_COMPLETED, completed_before),
                )
                removed += cursor.rowcount
                cursor = await db.execute(
                    """
                    DELETE FROM queue_jobs WHERE state = ? AND job_id NOT IN (
                        SELECT job_id FROM queue_jobs WHERE state = ?
                        ORDER BY finished_at DESC LIMIT ?
                    )
                    """,
                    (JOB_COMPLETED, JOB_COMPLETED, max(0, int(completed_keep))),
                )
                removed += cursor.rowcount
                cursor = await db.execute(
                    "DELETE FROM queue_jobs WHERE state = ? AND finished_at < ?",
                    (JOB_FAILED, failed_before),
                )
                removed += cursor.rowcount
        return removed
