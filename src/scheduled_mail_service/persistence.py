# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""SQLite-backed persistence layer for the email scheduler.

This module provides the Persistence class that handles all database
operations for the scheduled mail service, including:

- Scheduled email jobs (insert, atomic claim, conditional status updates)
- The "ready" selection feeding the drain loop
- The per-tenant suppression list
- The delivery event log used for deliverability statistics

All timestamps are stored as integer UTC epoch seconds. Every job mutation
that races with the drain loop is a conditional ``UPDATE ... WHERE status``
so that two drain cycles, or two service instances, can never process the
same job twice.

Example:
    Basic usage of the persistence layer::

        persistence = Persistence("/data/scheduler.db")
        await persistence.init_db()

        job_id = await persistence.insert_scheduled_email({
            "tenant_id": "practice-1",
            "template_type": "welcome",
            "recipient_email": "parent@example.com",
            "subject": "Welcome",
            "template_data": {"patient_name": "Ada"},
            "scheduled_at": 1735689600,
        })
        ready = await persistence.fetch_ready(limit=20, now_ts=1735689700)
"""

from __future__ import annotations

import json
import time
import uuid
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import aiosqlite

PRIORITY_RANKS = {"high": 1, "medium": 2, "low": 3}
DEFAULT_PAGE_SIZE = 50

# Columns that update_status() may touch besides status/updated_at.
MUTABLE_JOB_FIELDS = frozenset({
    "next_retry_at",
    "retry_count",
    "error_message",
    "sent_at",
    "failed_at",
    "provider_message_id",
    "last_attempted_at",
})

JOB_COLUMNS = (
    "id", "tenant_id", "template_type", "recipient_email", "subject", "template_data",
    "scheduled_at", "next_retry_at", "retry_count", "max_retries", "processing_attempts",
    "last_attempted_at", "status", "priority", "campaign_id", "is_recurring",
    "recurrence_rule", "recurrence_end_at", "parent_scheduled_email_id",
    "provider_message_id", "error_message", "created_at", "updated_at", "sent_at", "failed_at",
)
_SELECT_JOB = "SELECT " + ", ".join(JOB_COLUMNS) + " FROM scheduled_emails"

# A job is ready when never attempted and due, or retryable and its retry time has passed.
_READY_CONDITION = """
    ((status = 'pending' AND scheduled_at <= :now)
     OR (status = 'failed' AND next_retry_at IS NOT NULL AND next_retry_at <= :now))
"""

EVENT_BREAKDOWN_COLUMNS = frozenset({"bounce_type", "complaint_type"})


class Persistence:
    """Async SQLite persistence layer for scheduler state.

    Each operation opens and closes its own connection, so a single instance
    can be shared by the drain loop, the maintenance loop and API handlers.

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str = "/data/scheduler.db"):
        """Initialize the persistence layer with a database path.

        Args:
            db_path: Path to the SQLite database file. ``:memory:`` is not
                useful here since every call opens a fresh connection.
        """
        self.db_path = db_path or "/data/scheduler.db"

    @staticmethod
    def _now() -> int:
        return int(time.time())

    async def init_db(self) -> None:
        """Create tables and indexes. Safe to call repeatedly."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS scheduled_emails (
                    id TEXT PRIMARY KEY,
                    tenant_id TEXT NOT NULL,
                    template_type TEXT NOT NULL,
                    recipient_email TEXT NOT NULL,
                    subject TEXT NOT NULL,
                    template_data TEXT,
                    scheduled_at INTEGER NOT NULL,
                    next_retry_at INTEGER,
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    max_retries INTEGER NOT NULL DEFAULT 3,
                    processing_attempts INTEGER NOT NULL DEFAULT 0,
                    last_attempted_at INTEGER,
                    status TEXT NOT NULL DEFAULT 'pending',
                    priority TEXT NOT NULL DEFAULT 'medium',
                    priority_rank INTEGER NOT NULL DEFAULT 2,
                    campaign_id TEXT,
                    is_recurring INTEGER NOT NULL DEFAULT 0,
                    recurrence_rule TEXT,
                    recurrence_end_at INTEGER,
                    recurrence_closed INTEGER NOT NULL DEFAULT 0,
                    parent_scheduled_email_id TEXT,
                    provider_message_id TEXT,
                    error_message TEXT,
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL,
                    sent_at INTEGER,
                    failed_at INTEGER
                )
                """
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_scheduled_emails_ready "
                "ON scheduled_emails (status, priority_rank, scheduled_at)"
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_scheduled_emails_tenant "
                "ON scheduled_emails (tenant_id, status, scheduled_at)"
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_scheduled_emails_parent "
                "ON scheduled_emails (parent_scheduled_email_id)"
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_scheduled_emails_provider_id "
                "ON scheduled_emails (provider_message_id)"
            )

            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS suppression_list (
                    tenant_id TEXT NOT NULL,
                    email TEXT NOT NULL,
                    suppression_type TEXT NOT NULL,
                    reason TEXT,
                    bounce_type TEXT,
                    can_be_resubscribed INTEGER NOT NULL DEFAULT 1,
                    suppressed_at INTEGER NOT NULL,
                    expires_at INTEGER,
                    PRIMARY KEY (tenant_id, email)
                )
                """
            )

            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS email_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    tenant_id TEXT NOT NULL,
                    provider_message_id TEXT,
                    scheduled_email_id TEXT,
                    event_type TEXT NOT NULL,
                    recipient_email TEXT,
                    bounce_type TEXT,
                    bounce_reason TEXT,
                    complaint_type TEXT,
                    occurred_at INTEGER NOT NULL,
                    payload TEXT
                )
                """
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_email_events_tenant "
                "ON email_events (tenant_id, occurred_at)"
            )
            await db.commit()

    # Scheduled emails ---------------------------------------------------------
    @staticmethod
    def _rows_to_dicts(rows: Iterable[Tuple[Any, ...]], columns: Sequence[str]) -> List[Dict[str, Any]]:
        result = []
        for row in rows:
            data = dict(zip(columns, row))
            raw = data.get("template_data")
            if raw is not None:
                try:
                    data["template_data"] = json.loads(raw)
                except json.JSONDecodeError:
                    data["template_data"] = {"raw_template_data": raw}
            data["is_recurring"] = bool(data.get("is_recurring"))
            result.append(data)
        return result

    async def insert_scheduled_email(self, record: Dict[str, Any]) -> str:
        """Persist a new job and return its id.

        ``id`` is generated when absent. Status always starts as ``pending``
        and all retry counters start at zero.
        """
        job_id = record.get("id") or uuid.uuid4().hex
        now = self._now()
        priority = record.get("priority") or "medium"
        if priority not in PRIORITY_RANKS:
            raise ValueError(f"Unknown priority: {priority}")
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO scheduled_emails (
                    id, tenant_id, template_type, recipient_email, subject, template_data,
                    scheduled_at, max_retries, status, priority, priority_rank, campaign_id,
                    is_recurring, recurrence_rule, recurrence_end_at, parent_scheduled_email_id,
                    created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'pending', ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job_id,
                    record["tenant_id"],
                    record["template_type"],
                    record["recipient_email"],
                    record["subject"],
                    json.dumps(record.get("template_data") or {}),
                    int(record["scheduled_at"]),
                    int(record.get("max_retries", 3)),
                    priority,
                    PRIORITY_RANKS[priority],
                    record.get("campaign_id"),
                    1 if record.get("is_recurring") else 0,
                    record.get("recurrence_rule"),
                    record.get("recurrence_end_at"),
                    record.get("parent_scheduled_email_id"),
                    now,
                    now,
                ),
            )
            await db.commit()
        return job_id

    async def get_scheduled_email(self, job_id: str, tenant_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Return a job by id, optionally restricted to a tenant."""
        query = _SELECT_JOB + " WHERE id = ?"
        params: Tuple[Any, ...] = (job_id,)
        if tenant_id is not None:
            query += " AND tenant_id = ?"
            params += (tenant_id,)
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(query, params) as cur:
                row = await cur.fetchone()
                if not row:
                    return None
                cols = [c[0] for c in cur.description]
        return self._rows_to_dicts([row], cols)[0]

    async def find_by_provider_message_id(self, provider_message_id: str) -> Optional[Dict[str, Any]]:
        """Return the job that was delivered under a provider message id."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                _SELECT_JOB + " WHERE provider_message_id = ? LIMIT 1",
                (provider_message_id,),
            ) as cur:
                row = await cur.fetchone()
                if not row:
                    return None
                cols = [c[0] for c in cur.description]
        return self._rows_to_dicts([row], cols)[0]

    async def fetch_ready(self, *, limit: int = 20, now_ts: Optional[int] = None) -> List[Dict[str, Any]]:
        """Return at most ``limit`` jobs eligible for dispatch.

        Ordered by priority (high, medium, low), then ``scheduled_at``, then
        insertion order.
        """
        now_ts = self._now() if now_ts is None else now_ts
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                _SELECT_JOB
                + " WHERE "
                + _READY_CONDITION
                + " ORDER BY priority_rank ASC, scheduled_at ASC, rowid ASC LIMIT :limit",
                {"now": now_ts, "limit": max(0, int(limit))},
            ) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return self._rows_to_dicts(rows, cols)

    async def claim_scheduled_email(self, job_id: str, now_ts: Optional[int] = None) -> bool:
        """Atomically move a ready job to ``processing``.

        Increments ``processing_attempts`` and stamps ``last_attempted_at``.
        Returns False when the job is no longer ready (already claimed,
        cancelled, sent, or not yet due).
        """
        now_ts = self._now() if now_ts is None else now_ts
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE scheduled_emails
                SET status = 'processing',
                    processing_attempts = processing_attempts + 1,
                    last_attempted_at = :now,
                    updated_at = :now
                WHERE id = :id AND """
                + _READY_CONDITION,
                {"id": job_id, "now": now_ts},
            )
            await db.commit()
            return cursor.rowcount == 1

    async def update_status(
        self,
        job_id: str,
        status: str,
        fields: Optional[Dict[str, Any]] = None,
        *,
        expected_status: Optional[str] = None,
    ) -> bool:
        """Update a job's status and selected fields.

        Args:
            job_id: The job identifier.
            status: New status value.
            fields: Extra columns to set; only :data:`MUTABLE_JOB_FIELDS`.
            expected_status: When given, the update only applies if the job
                is still in this status.

        Returns:
            True if a row was updated.

        Raises:
            ValueError: If ``fields`` names a column that may not be changed.
        """
        fields = dict(fields or {})
        unknown = set(fields) - MUTABLE_JOB_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {', '.join(sorted(unknown))}")
        assignments = ["status = ?", "updated_at = ?"]
        params: List[Any] = [status, self._now()]
        for key, value in fields.items():
            assignments.append(f"{key} = ?")
            params.append(value)
        query = f"UPDATE scheduled_emails SET {', '.join(assignments)} WHERE id = ?"
        params.append(job_id)
        if expected_status is not None:
            query += " AND status = ?"
            params.append(expected_status)
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(query, params)
            await db.commit()
            return cursor.rowcount == 1

    async def list_scheduled_emails(
        self,
        tenant_id: str,
        *,
        status: Optional[str] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Return a tenant's jobs ordered by ``scheduled_at``."""
        query = _SELECT_JOB + " WHERE tenant_id = ?"
        params: List[Any] = [tenant_id]
        if status:
            query += " AND status = ?"
            params.append(status)
        query += " ORDER BY scheduled_at ASC, rowid ASC"
        if limit is not None or offset is not None:
            query += " LIMIT ? OFFSET ?"
            params.append(int(limit) if limit is not None else DEFAULT_PAGE_SIZE)
            params.append(int(offset or 0))
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(query, params) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return self._rows_to_dicts(rows, cols)

    async def cancel_scheduled_email(self, job_id: str, tenant_id: str) -> bool:
        """Cancel a pending job owned by ``tenant_id``.

        Returns False, without raising, for jobs in any other status or owned
        by a different tenant.
        """
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE scheduled_emails
                SET status = 'cancelled', next_retry_at = NULL, updated_at = ?
                WHERE id = ? AND tenant_id = ? AND status = 'pending'
                """,
                (self._now(), job_id, tenant_id),
            )
            await db.commit()
            return cursor.rowcount == 1

    async def count_by_status(self, tenant_id: Optional[str] = None) -> Dict[str, int]:
        """Return job counts per status, optionally for a single tenant.

        ``failed`` rows are split into ``retrying`` (next retry scheduled)
        and ``failed`` (terminal).
        """
        query = """
            SELECT CASE
                       WHEN status = 'failed' AND next_retry_at IS NOT NULL THEN 'retrying'
                       ELSE status
                   END AS bucket,
                   COUNT(*)
            FROM scheduled_emails
        """
        params: Tuple[Any, ...] = ()
        if tenant_id is not None:
            query += " WHERE tenant_id = ?"
            params = (tenant_id,)
        query += " GROUP BY bucket"
        counts = {s: 0 for s in ("pending", "processing", "retrying", "sent", "failed", "cancelled")}
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(query, params) as cur:
                for bucket, count in await cur.fetchall():
                    counts[bucket] = int(count)
        return counts

    async def list_recurring_without_successor(
        self, now_ts: Optional[int] = None, *, limit: int = 100
    ) -> List[Dict[str, Any]]:
        """Return sent recurring jobs that never spawned their next occurrence.

        These are the tail of a recurrence chain whose successor insert was
        lost, for instance because the process stopped right after the send.
        Chains marked closed, or whose end date is not after ``now_ts``, are
        skipped so they never crowd out real orphans.
        """
        now_ts = self._now() if now_ts is None else int(now_ts)
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                _SELECT_JOB
                + """
                AS p WHERE p.is_recurring = 1
                  AND p.status = 'sent'
                  AND p.recurrence_closed = 0
                  AND (p.recurrence_end_at IS NULL OR p.recurrence_end_at > ?)
                  AND NOT EXISTS (
                      SELECT 1 FROM scheduled_emails c WHERE c.parent_scheduled_email_id = p.id
                  )
                ORDER BY p.sent_at ASC LIMIT ?
                """,
                (now_ts, int(limit)),
            ) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return self._rows_to_dicts(rows, cols)

    async def close_recurrence(self, job_id: str) -> bool:
        """Mark a recurring job as the final link of its chain."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "UPDATE scheduled_emails SET recurrence_closed = 1, updated_at = ? WHERE id = ? AND is_recurring = 1",
                (self._now(), job_id),
            )
            await db.commit()
            return cursor.rowcount == 1

    async def has_successor(self, job_id: str) -> bool:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT 1 FROM scheduled_emails WHERE parent_scheduled_email_id = ? LIMIT 1",
                (job_id,),
            ) as cur:
                return await cur.fetchone() is not None

    async def release_stale_processing(self, older_than_ts: int) -> int:
        """Return jobs stuck in ``processing`` since before ``older_than_ts`` to pending.

        A job stays in ``processing`` forever if the process dies mid-send.
        """
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE scheduled_emails
                SET status = 'pending', updated_at = ?
                WHERE status = 'processing' AND last_attempted_at < ?
                """,
                (self._now(), older_than_ts),
            )
            await db.commit()
            return cursor.rowcount or 0

    # Suppression list ---------------------------------------------------------
    async def upsert_suppression(self, entry: Dict[str, Any]) -> None:
        """Insert or replace the suppression entry for (tenant, email)."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO suppression_list (
                    tenant_id, email, suppression_type, reason, bounce_type,
                    can_be_resubscribed, suppressed_at, expires_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(tenant_id, email) DO UPDATE SET
                    suppression_type = excluded.suppression_type,
                    reason = excluded.reason,
                    bounce_type = excluded.bounce_type,
                    can_be_resubscribed = excluded.can_be_resubscribed,
                    suppressed_at = excluded.suppressed_at,
                    expires_at = excluded.expires_at
                """,
                (
                    entry["tenant_id"],
                    entry["email"].strip().lower(),
                    entry.get("suppression_type", "manual"),
                    entry.get("reason"),
                    entry.get("bounce_type"),
                    1 if entry.get("can_be_resubscribed", True) else 0,
                    int(entry.get("suppressed_at") or self._now()),
                    entry.get("expires_at"),
                ),
            )
            await db.commit()

    async def get_suppression(self, tenant_id: str, email: str) -> Optional[Dict[str, Any]]:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT * FROM suppression_list WHERE tenant_id = ? AND email = ?",
                (tenant_id, email.strip().lower()),
            ) as cur:
                row = await cur.fetchone()
                if not row:
                    return None
                cols = [c[0] for c in cur.description]
        return dict(zip(cols, row))

    async def delete_suppression(self, tenant_id: str, email: str) -> bool:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "DELETE FROM suppression_list WHERE tenant_id = ? AND email = ?",
                (tenant_id, email.strip().lower()),
            )
            await db.commit()
            return cursor.rowcount == 1

    async def list_suppressions(
        self, tenant_id: str, suppression_type: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """Return a tenant's suppression entries, newest first."""
        query = "SELECT * FROM suppression_list WHERE tenant_id = ?"
        params: List[Any] = [tenant_id]
        if suppression_type:
            query += " AND suppression_type = ?"
            params.append(suppression_type)
        query += " ORDER BY suppressed_at DESC, email ASC"
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(query, params) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [dict(zip(cols, row)) for row in rows]

    async def delete_expired_suppressions(self, now_ts: Optional[int] = None) -> int:
        """Remove entries whose ``expires_at`` has passed; return the count."""
        now_ts = self._now() if now_ts is None else now_ts
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "DELETE FROM suppression_list WHERE expires_at IS NOT NULL AND expires_at <= ?",
                (now_ts,),
            )
            await db.commit()
            return cursor.rowcount or 0

    # Delivery events ----------------------------------------------------------
    async def insert_event(self, event: Dict[str, Any]) -> int:
        """Append a delivery event and return its row id."""
        payload = event.get("payload")
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                INSERT INTO email_events (
                    tenant_id, provider_message_id, scheduled_email_id, event_type,
                    recipient_email, bounce_type, bounce_reason, complaint_type,
                    occurred_at, payload
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event["tenant_id"],
                    event.get("provider_message_id"),
                    event.get("scheduled_email_id"),
                    event["event_type"],
                    (event.get("recipient_email") or "").lower() or None,
                    event.get("bounce_type"),
                    event.get("bounce_reason"),
                    event.get("complaint_type"),
                    int(event.get("occurred_at") or self._now()),
                    json.dumps(payload) if payload is not None else None,
                ),
            )
            await db.commit()
            return cursor.lastrowid

    async def count_events(self, tenant_id: str, since_ts: int) -> Dict[str, int]:
        """Return event counts per type for a tenant since ``since_ts``."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                """
                SELECT event_type, COUNT(*) FROM email_events
                WHERE tenant_id = ? AND occurred_at >= ?
                GROUP BY event_type
                """,
                (tenant_id, since_ts),
            ) as cur:
                rows = await cur.fetchall()
        return {event_type: int(count) for event_type, count in rows}

    async def count_events_by(
        self, tenant_id: str, since_ts: int, event_type: str, column: str
    ) -> Dict[str, int]:
        """Break down one event type by ``bounce_type`` or ``complaint_type``."""
        if column not in EVENT_BREAKDOWN_COLUMNS:
            raise ValueError(f"Cannot group events by {column}")
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                f"""
                SELECT COALESCE({column}, 'unknown'), COUNT(*) FROM email_events
                WHERE tenant_id = ? AND occurred_at >= ? AND event_type = ?
                GROUP BY 1
                """,
                (tenant_id, since_ts, event_type),
            ) as cur:
                rows = await cur.fetchall()
        return {key: int(count) for key, count in rows}
