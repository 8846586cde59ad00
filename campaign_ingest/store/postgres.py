from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator

import psycopg2
import psycopg2.errors
import psycopg2.extensions
from psycopg2 import pool as pg_pool
from psycopg2 import sql
from psycopg2.extras import Json, RealDictCursor

from campaign_ingest.domain.outcomes import EnqueueResult
from campaign_ingest.domain.records import (
    CampaignEnrollment,
    CampaignEvent,
    CampaignInstance,
    DeadLetterEvent,
    OrphanedEventRecord,
    SuperAdmin,
)
from campaign_ingest.domain.store_errors import StoreError, TransientStoreError, is_transient_error
from campaign_ingest.domain.transitions import COUNTER_COLUMNS, TERMINAL_ENROLLMENT_STATUSES
from campaign_ingest.store.base import DEAD_LETTER_MUTABLE_FIELDS, DROP_POLICIES


# pg_advisory_xact_lock key serializing orphan-queue capacity checks across processes.
ORPHAN_QUEUE_LOCK_KEY = 7_301_964_001

INSTANCE_COLUMNS = (
    "id::text AS id, template_id::text AS template_id, name, status, total_enrolled, total_sent, "
    "total_delivered, total_opened, total_clicked, total_replied, started_at, paused_at, completed_at, "
    "created_at, updated_at"
)
ENROLLMENT_COLUMNS = (
    "id::text AS id, instance_id::text AS instance_id, contact_id, status, current_step, enrolled_at, "
    "next_action_at, completed_at, updated_at"
)
EVENT_COLUMNS = (
    'id::text AS id, enrollment_id::text AS enrollment_id, event_type, channel, step_number, "timestamp", '
    "provider, provider_event_id, metadata, created_at"
)
ORPHAN_COLUMNS = (
    "id::text AS id, payload, event_type, channel, enrollment_id, provider_event_id, enqueued_at, "
    "retry_count, next_retry_at, last_error, claimed_until, outcome"
)
DEAD_LETTER_COLUMNS = (
    "id::text AS id, event_data, failure_reason, attempts, first_attempted_at, last_attempted_at, status, "
    "replay_count, replayed_at, event_type, channel, enrollment_id, created_at, updated_at"
)


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


@contextmanager
def _translate_errors() -> Iterator[None]:
    try:
        yield
    except pg_pool.PoolError as exc:
        raise TransientStoreError(f"connection pool exhausted: {exc}") from exc
    except psycopg2.Error as exc:
        message = (str(exc).strip() or type(exc).__name__)
        transient = isinstance(
            exc,
            (
                psycopg2.extensions.TransactionRollbackError,
                psycopg2.errors.LockNotAvailable,
                psycopg2.extensions.QueryCanceledError,
                psycopg2.OperationalError,
                psycopg2.InterfaceError,
            ),
        ) or is_transient_error(exc)
        if transient:
            raise TransientStoreError(message, sqlstate=exc.pgcode) from exc
        raise StoreError(message, sqlstate=exc.pgcode) from exc


class PostgresSession:
    def __init__(self, cursor: Any):
        self.cursor = cursor

    def get_enrollment(self, enrollment_id: str) -> CampaignEnrollment | None:
        if not _is_uuid(enrollment_id):
            return None
        self.cursor.execute(
            f"SELECT {ENROLLMENT_COLUMNS} FROM campaign_enrollments WHERE id = %s",
            (enrollment_id,),
        )
        row = self.cursor.fetchone()
        return CampaignEnrollment(**row) if row else None

    def lock_instance(self, instance_id: str) -> CampaignInstance | None:
        self.cursor.execute(
            f"SELECT {INSTANCE_COLUMNS} FROM campaign_instances WHERE id = %s FOR UPDATE",
            (instance_id,),
        )
        row = self.cursor.fetchone()
        return CampaignInstance(**row) if row else None

    def lock_enrollment(self, enrollment_id: str) -> CampaignEnrollment | None:
        if not _is_uuid(enrollment_id):
            return None
        self.cursor.execute(
            f"SELECT {ENROLLMENT_COLUMNS} FROM campaign_enrollments WHERE id = %s FOR UPDATE",
            (enrollment_id,),
        )
        row = self.cursor.fetchone()
        return CampaignEnrollment(**row) if row else None

    def insert_event_if_absent(self, event: CampaignEvent) -> tuple[CampaignEvent, bool]:
        self.cursor.execute(
            f"""
            INSERT INTO campaign_events
                (id, enrollment_id, event_type, channel, step_number, "timestamp", provider, provider_event_id, metadata)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT DO NOTHING
            RETURNING {EVENT_COLUMNS}
            """,
            (
                event.id,
                event.enrollment_id,
                event.event_type,
                event.channel,
                event.step_number,
                event.timestamp,
                event.provider,
                event.provider_event_id,
                Json(event.metadata or {}),
            ),
        )
        row = self.cursor.fetchone()
        if row:
            return CampaignEvent(**row), True

        if event.provider_event_id:
            self.cursor.execute(
                f"SELECT {EVENT_COLUMNS} FROM campaign_events WHERE provider_event_id = %s",
                (event.provider_event_id,),
            )
        else:
            self.cursor.execute(
                f"""
                SELECT {EVENT_COLUMNS} FROM campaign_events
                WHERE provider_event_id IS NULL AND enrollment_id = %s AND event_type = %s AND "timestamp" = %s
                """,
                (event.enrollment_id, event.event_type, event.timestamp),
            )
        existing = self.cursor.fetchone()
        if not existing:
            raise TransientStoreError("conflicting campaign event row is not visible yet")
        return CampaignEvent(**existing), False

    def increment_counter(self, instance_id: str, column: str) -> int:
        if column not in COUNTER_COLUMNS:
            raise StoreError(f"unknown counter column {column!r}")
        self.cursor.execute(
            sql.SQL(
                "UPDATE campaign_instances SET {col} = {col} + 1, updated_at = NOW() WHERE id = %s RETURNING {col} AS value"
            ).format(col=sql.Identifier(column)),
            (instance_id,),
        )
        row = self.cursor.fetchone()
        if not row:
            raise StoreError(f"campaign instance {instance_id} not found")
        return int(row["value"])

    def update_enrollment_status(self, enrollment_id: str, status: str, *, now: datetime) -> bool:
        self.cursor.execute(
            """
            UPDATE campaign_enrollments
            SET status = %s,
                updated_at = %s,
                completed_at = CASE WHEN %s THEN %s ELSE completed_at END
            WHERE id = %s AND status NOT IN %s
            """,
            (
                status,
                now,
                status in TERMINAL_ENROLLMENT_STATUSES,
                now,
                enrollment_id,
                tuple(sorted(TERMINAL_ENROLLMENT_STATUSES)),
            ),
        )
        return self.cursor.rowcount == 1


class PostgresEventStore:
    """Event store on PostgreSQL.

    Every unit of work borrows a pooled connection, sets transaction-local
    statement and lock timeouts, and commits or rolls back as a whole.
    """

    def __init__(self, connection_pool: Any, *, statement_timeout_ms: int = 5000, lock_timeout_ms: int = 3000):
        self._pool = connection_pool
        self._statement_timeout_ms = int(statement_timeout_ms)
        self._lock_timeout_ms = int(lock_timeout_ms)

    @classmethod
    def from_dsn(
        cls,
        dsn: str,
        *,
        min_size: int = 1,
        max_size: int = 10,
        statement_timeout_ms: int = 5000,
        lock_timeout_ms: int = 3000,
    ) -> "PostgresEventStore":
        connection_pool = pg_pool.ThreadedConnectionPool(min_size, max_size, dsn)
        return cls(connection_pool, statement_timeout_ms=statement_timeout_ms, lock_timeout_ms=lock_timeout_ms)

    @contextmanager
    def _cursor(self) -> Iterator[Any]:
        with _translate_errors():
            conn = self._pool.getconn()
            try:
                with conn:
                    with conn.cursor(cursor_factory=RealDictCursor) as cur:
                        cur.execute("SET LOCAL statement_timeout = %s", (self._statement_timeout_ms,))
                        cur.execute("SET LOCAL lock_timeout = %s", (self._lock_timeout_ms,))
                        yield cur
            finally:
                self._pool.putconn(conn, close=bool(conn.closed))

    @contextmanager
    def transaction(self) -> Iterator[PostgresSession]:
        with self._cursor() as cur:
            yield PostgresSession(cur)

    def get_instance(self, instance_id: str) -> CampaignInstance | None:
        if not _is_uuid(instance_id):
            return None
        with self._cursor() as cur:
            cur.execute(f"SELECT {INSTANCE_COLUMNS} FROM campaign_instances WHERE id = %s", (instance_id,))
            row = cur.fetchone()
        return CampaignInstance(**row) if row else None

    def get_enrollment(self, enrollment_id: str) -> CampaignEnrollment | None:
        with self._cursor() as cur:
            return PostgresSession(cur).get_enrollment(enrollment_id)

    def list_events(self, *, enrollment_id: str | None = None, instance_id: str | None = None) -> list[CampaignEvent]:
        clauses = []
        params: list[Any] = []
        if enrollment_id is not None:
            clauses.append("e.enrollment_id = %s")
            params.append(enrollment_id)
        if instance_id is not None:
            clauses.append("ce.instance_id = %s")
            params.append(instance_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        columns = ", ".join(f"e.{c.strip()}" for c in EVENT_COLUMNS.split(", "))
        with self._cursor() as cur:
            cur.execute(
                f"""
                SELECT {columns}
                FROM campaign_events e
                JOIN campaign_enrollments ce ON ce.id = e.enrollment_id
                {where}
                ORDER BY e."timestamp" ASC
                """,
                tuple(params),
            )
            rows = cur.fetchall()
        return [CampaignEvent(**row) for row in rows]

    # --- orphan queue ---

    def enqueue_orphan(self, record: OrphanedEventRecord, *, max_size: int, drop_policy: str) -> EnqueueResult:
        if drop_policy not in DROP_POLICIES:
            raise StoreError(f"unknown drop policy {drop_policy!r}")
        with self._cursor() as cur:
            cur.execute("SELECT pg_advisory_xact_lock(%s)", (ORPHAN_QUEUE_LOCK_KEY,))
            cur.execute("SELECT COUNT(*) AS size FROM orphaned_events")
            size = int(cur.fetchone()["size"])
            evicted_id = None
            if size >= max_size:
                if drop_policy == "drop_oldest":
                    cur.execute(
                        """
                        DELETE FROM orphaned_events
                        WHERE id = (
                            SELECT id FROM orphaned_events
                            WHERE claimed_until IS NULL OR claimed_until <= NOW()
                            ORDER BY enqueued_at ASC
                            LIMIT 1
                            FOR UPDATE SKIP LOCKED
                        )
                        RETURNING id::text AS id
                        """
                    )
                    evicted = cur.fetchone()
                    evicted_id = evicted["id"] if evicted else None
                if evicted_id is None:
                    return EnqueueResult(retained=False, outcome="dropped_capacity", queue_size=size)
                size -= 1
            cur.execute(
                """
                INSERT INTO orphaned_events
                    (id, payload, event_type, channel, enrollment_id, provider_event_id, enqueued_at,
                     retry_count, next_retry_at, outcome)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, 'pending')
                """,
                (
                    record.id,
                    Json(record.payload),
                    record.event_type,
                    record.channel,
                    record.enrollment_id,
                    record.provider_event_id,
                    record.enqueued_at,
                    record.retry_count,
                    record.next_retry_at,
                ),
            )
        return EnqueueResult(
            retained=True,
            outcome="pending",
            record_id=record.id,
            queue_size=size + 1,
            evicted_record_id=evicted_id,
        )

    def claim_due_orphans(self, *, now: datetime, limit: int, lease_until: datetime) -> list[OrphanedEventRecord]:
        with self._cursor() as cur:
            cur.execute(
                f"""
                UPDATE orphaned_events SET claimed_until = %(lease_until)s
                WHERE id IN (
                    SELECT id FROM orphaned_events
                    WHERE outcome = 'pending'
                      AND next_retry_at <= %(now)s
                      AND (claimed_until IS NULL OR claimed_until <= %(now)s)
                    ORDER BY next_retry_at ASC
                    LIMIT %(limit)s
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING {ORPHAN_COLUMNS}
                """,
                {"now": now, "limit": max(0, limit), "lease_until": lease_until},
            )
            rows = cur.fetchall()
        records = [OrphanedEventRecord(**row) for row in rows]
        return sorted(records, key=lambda r: r.next_retry_at)

    def reschedule_orphan(
        self,
        record_id: str,
        *,
        retry_count: int,
        next_retry_at: datetime,
        last_error: str | None,
    ) -> None:
        with self._cursor() as cur:
            cur.execute(
                """
                UPDATE orphaned_events
                SET retry_count = %s, next_retry_at = %s, last_error = %s, claimed_until = NULL
                WHERE id = %s
                """,
                (retry_count, next_retry_at, last_error, record_id),
            )

    def delete_orphan(self, record_id: str) -> bool:
        with self._cursor() as cur:
            cur.execute("DELETE FROM orphaned_events WHERE id = %s", (record_id,))
            return cur.rowcount > 0

    def move_orphan_to_dead_letter(self, record_id: str, entry: DeadLetterEvent) -> DeadLetterEvent:
        with self._cursor() as cur:
            stored = self._insert_dead_letter(cur, entry)
            cur.execute("DELETE FROM orphaned_events WHERE id = %s", (record_id,))
        return stored

    def count_orphans(self) -> int:
        with self._cursor() as cur:
            cur.execute("SELECT COUNT(*) AS size FROM orphaned_events")
            return int(cur.fetchone()["size"])

    def orphan_queue_stats(self, *, now: datetime, stale_before: datetime) -> dict[str, Any]:
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT COUNT(*) AS size,
                       COUNT(*) FILTER (WHERE next_retry_at <= %(now)s) AS ready_for_retry,
                       COUNT(*) FILTER (WHERE enqueued_at < %(stale_before)s) AS stale,
                       MIN(enqueued_at) AS oldest_enqueued_at
                FROM orphaned_events
                """,
                {"now": now, "stale_before": stale_before},
            )
            summary = dict(cur.fetchone())
            cur.execute(
                "SELECT retry_count, COUNT(*) AS count FROM orphaned_events GROUP BY retry_count ORDER BY retry_count"
            )
            by_attempts = {str(row["retry_count"]): int(row["count"]) for row in cur.fetchall()}
        return {
            "size": int(summary["size"]),
            "ready_for_retry": int(summary["ready_for_retry"]),
            "stale": int(summary["stale"]),
            "oldest_enqueued_at": summary["oldest_enqueued_at"],
            "by_attempts": by_attempts,
        }

    # --- dead letters ---

    @staticmethod
    def _insert_dead_letter(cur: Any, entry: DeadLetterEvent) -> DeadLetterEvent:
        cur.execute(
            f"""
            INSERT INTO dead_letter_events
                (id, event_data, failure_reason, attempts, first_attempted_at, last_attempted_at, status,
                 replay_count, event_type, channel, enrollment_id)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING {DEAD_LETTER_COLUMNS}
            """,
            (
                entry.id,
                Json(entry.event_data),
                entry.failure_reason,
                entry.attempts,
                entry.first_attempted_at,
                entry.last_attempted_at,
                entry.status,
                entry.replay_count,
                entry.event_type,
                entry.channel,
                entry.enrollment_id,
            ),
        )
        return DeadLetterEvent(**cur.fetchone())

    def insert_dead_letter(self, entry: DeadLetterEvent) -> DeadLetterEvent:
        with self._cursor() as cur:
            return self._insert_dead_letter(cur, entry)

    def get_dead_letter(self, entry_id: str) -> DeadLetterEvent | None:
        if not _is_uuid(entry_id):
            return None
        with self._cursor() as cur:
            cur.execute(f"SELECT {DEAD_LETTER_COLUMNS} FROM dead_letter_events WHERE id = %s", (entry_id,))
            row = cur.fetchone()
        return DeadLetterEvent(**row) if row else None

    def list_dead_letters(
        self,
        *,
        status: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> tuple[list[DeadLetterEvent], int]:
        where = "WHERE status = %s" if status else ""
        params: tuple[Any, ...] = (status,) if status else ()
        with self._cursor() as cur:
            cur.execute(
                f"""
                SELECT {DEAD_LETTER_COLUMNS} FROM dead_letter_events {where}
                ORDER BY created_at DESC
                LIMIT %s OFFSET %s
                """,
                params + (limit, offset),
            )
            rows = cur.fetchall()
            cur.execute(f"SELECT COUNT(*) AS total FROM dead_letter_events {where}", params)
            total = int(cur.fetchone()["total"])
        return [DeadLetterEvent(**row) for row in rows], total

    def update_dead_letter(
        self,
        entry_id: str,
        *,
        expected_status: str | None = None,
        **fields: Any,
    ) -> DeadLetterEvent | None:
        unknown = set(fields) - DEAD_LETTER_MUTABLE_FIELDS
        if unknown:
            raise StoreError(f"dead letter fields not updatable: {sorted(unknown)}")
        if not _is_uuid(entry_id):
            return None
        assignments = [sql.SQL("{} = %s").format(sql.Identifier(key)) for key in fields]
        assignments.append(sql.SQL("updated_at = NOW()"))
        condition = "WHERE id = %s"
        params = tuple(fields.values()) + (entry_id,)
        if expected_status is not None:
            condition += " AND status = %s"
            params += (expected_status,)
        query = sql.SQL("UPDATE dead_letter_events SET {} " + condition + " RETURNING " + DEAD_LETTER_COLUMNS).format(
            sql.SQL(", ").join(assignments)
        )
        with self._cursor() as cur:
            cur.execute(query, params)
            row = cur.fetchone()
        return DeadLetterEvent(**row) if row else None

    def dead_letter_stats(self) -> dict[str, Any]:
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT status, event_type, COUNT(*) AS count FROM dead_letter_events
                GROUP BY status, event_type ORDER BY status, event_type
                """
            )
            by_status_and_type = [
                {"status": row["status"], "event_type": row["event_type"], "count": int(row["count"])}
                for row in cur.fetchall()
            ]
            cur.execute("SELECT status, COUNT(*) AS count FROM dead_letter_events GROUP BY status ORDER BY status")
            by_status = [{"status": row["status"], "count": int(row["count"])} for row in cur.fetchall()]
        return {
            "by_status": by_status,
            "by_status_and_type": by_status_and_type,
            "total": sum(item["count"] for item in by_status),
        }

    # --- admin / observability ---

    def get_super_admin(self, super_admin_id: str) -> SuperAdmin | None:
        if not _is_uuid(super_admin_id):
            return None
        with self._cursor() as cur:
            cur.execute(
                "SELECT id::text AS id, email, password_hash, name FROM super_admins WHERE id = %s",
                (super_admin_id,),
            )
            row = cur.fetchone()
        return SuperAdmin(**row) if row else None

    def get_super_admin_by_email(self, email: str) -> SuperAdmin | None:
        with self._cursor() as cur:
            cur.execute(
                "SELECT id::text AS id, email, password_hash, name FROM super_admins WHERE email = %s",
                (email,),
            )
            row = cur.fetchone()
        return SuperAdmin(**row) if row else None

    def insert_metric_snapshot(
        self,
        *,
        source: str,
        request_id: str | None,
        counters: dict[str, Any],
        histograms: dict[str, Any],
    ) -> dict[str, Any]:
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO observability_metric_snapshots (source, request_id, counters, histograms)
                VALUES (%s, %s, %s, %s)
                RETURNING id::text AS id, source, request_id, counters, histograms, created_at
                """,
                (source, request_id, Json(counters), Json(histograms)),
            )
            return dict(cur.fetchone())

    def list_metric_snapshots(self, *, limit: int = 50, offset: int = 0) -> list[dict[str, Any]]:
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT id::text AS id, source, request_id, counters, histograms, created_at
                FROM observability_metric_snapshots
                ORDER BY created_at DESC
                LIMIT %s OFFSET %s
                """,
                (limit, offset),
            )
            return [dict(row) for row in cur.fetchall()]

    def close(self) -> None:
        self._pool.closeall()
