"""Embedded single-process event store.

Used for local development and the test suite. It has no row locks, so the
instance row lock is emulated with one mutex per instance id; everything else
is guarded by a single store-wide lock. Writes made inside a transaction are
journaled and undone if the transaction fails.
"""
from __future__ import annotations

import threading
from collections import Counter
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Iterator
from uuid import uuid4

from campaign_ingest.domain.outcomes import EnqueueResult
from campaign_ingest.domain.records import (
    CampaignEnrollment,
    CampaignEvent,
    CampaignInstance,
    DeadLetterEvent,
    OrphanedEventRecord,
    SuperAdmin,
)
from campaign_ingest.domain.store_errors import LockTimeoutError, StoreError
from campaign_ingest.domain.transitions import COUNTER_COLUMNS, TERMINAL_ENROLLMENT_STATUSES
from campaign_ingest.store.base import DEAD_LETTER_MUTABLE_FIELDS, DROP_POLICIES, event_idempotency_key


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class MemorySession:
    def __init__(self, store: "MemoryEventStore"):
        self._store = store
        self._undo: list[Callable[[], None]] = []
        self._held: dict[str, threading.Lock] = {}

    def get_enrollment(self, enrollment_id: str) -> CampaignEnrollment | None:
        with self._store._lock:
            enrollment = self._store.enrollments.get(enrollment_id)
            return replace(enrollment) if enrollment else None

    def lock_instance(self, instance_id: str) -> CampaignInstance | None:
        store = self._store
        with store._lock:
            if instance_id not in store.instances:
                return None
            lock = store._instance_locks.setdefault(instance_id, threading.Lock())
        if instance_id not in self._held:
            if not lock.acquire(timeout=store.lock_timeout_seconds):
                raise LockTimeoutError(f"lock timeout waiting for campaign instance {instance_id}", sqlstate="55P03")
            self._held[instance_id] = lock
        with store._lock:
            instance = store.instances.get(instance_id)
            return replace(instance) if instance else None

    def lock_enrollment(self, enrollment_id: str) -> CampaignEnrollment | None:
        """Re-read an enrollment while its instance mutex is held."""
        store = self._store
        with store._lock:
            enrollment = store.enrollments.get(enrollment_id)
            if enrollment is None:
                return None
            if enrollment.instance_id not in self._held:
                raise StoreError(f"enrollment {enrollment_id} read for update without holding its instance lock")
            return replace(enrollment)

    def insert_event_if_absent(self, event: CampaignEvent) -> tuple[CampaignEvent, bool]:
        store = self._store
        key = event_idempotency_key(event)
        with store._lock:
            existing_id = store._event_keys.get(key)
            if existing_id is not None:
                return replace(store.events[existing_id]), False
            stored = replace(event, created_at=event.created_at or store.now())
            store.events[stored.id] = stored
            store._event_keys[key] = stored.id

            def _undo(event_id: str = stored.id, event_key: tuple[Any, ...] = key) -> None:
                store.events.pop(event_id, None)
                store._event_keys.pop(event_key, None)

            self._undo.append(_undo)
            return replace(stored), True

    def increment_counter(self, instance_id: str, column: str) -> int:
        if column not in COUNTER_COLUMNS:
            raise StoreError(f"unknown counter column {column!r}")
        if instance_id not in self._held:
            raise StoreError(f"counter update on instance {instance_id} without holding its row lock")
        store = self._store
        with store._lock:
            instance = store.instances.get(instance_id)
            if instance is None:
                raise StoreError(f"campaign instance {instance_id} not found")
            previous_value = getattr(instance, column)
            previous_updated_at = instance.updated_at
            setattr(instance, column, previous_value + 1)
            instance.updated_at = store.now()

            def _undo(target: CampaignInstance = instance) -> None:
                setattr(target, column, getattr(target, column) - 1)
                target.updated_at = previous_updated_at

            self._undo.append(_undo)
            return previous_value + 1

    def update_enrollment_status(self, enrollment_id: str, status: str, *, now: datetime) -> bool:
        store = self._store
        with store._lock:
            enrollment = store.enrollments.get(enrollment_id)
            if enrollment is None:
                raise StoreError(f"campaign enrollment {enrollment_id} not found")
            if enrollment.status in TERMINAL_ENROLLMENT_STATUSES:
                return False
            previous = replace(enrollment)
            enrollment.status = status
            enrollment.updated_at = now
            if status in TERMINAL_ENROLLMENT_STATUSES:
                enrollment.completed_at = now

            def _undo(target_id: str = enrollment_id, snapshot: CampaignEnrollment = previous) -> None:
                store.enrollments[target_id] = snapshot

            self._undo.append(_undo)
            return True

    def _rollback(self) -> None:
        with self._store._lock:
            for undo in reversed(self._undo):
                undo()
        self._undo.clear()

    def _release(self) -> None:
        for lock in self._held.values():
            lock.release()
        self._held.clear()


class MemoryEventStore:
    def __init__(self, *, lock_timeout_seconds: float = 3.0, now: Callable[[], datetime] = _now_utc):
        self.lock_timeout_seconds = lock_timeout_seconds
        self.now = now
        self._lock = threading.RLock()
        self._instance_locks: dict[str, threading.Lock] = {}
        self.instances: dict[str, CampaignInstance] = {}
        self.enrollments: dict[str, CampaignEnrollment] = {}
        self.events: dict[str, CampaignEvent] = {}
        self._event_keys: dict[tuple[Any, ...], str] = {}
        self.orphans: dict[str, OrphanedEventRecord] = {}
        self.dead_letters: dict[str, DeadLetterEvent] = {}
        self.super_admins: dict[str, SuperAdmin] = {}
        self.metric_snapshots: list[dict[str, Any]] = []

    # --- seeding (stands in for the campaign-management collaborators) ---

    def add_instance(self, instance_id: str | None = None, *, status: str = "active", **fields: Any) -> CampaignInstance:
        now = self.now()
        instance = CampaignInstance(
            id=instance_id or str(uuid4()),
            status=status,
            created_at=now,
            updated_at=now,
            **fields,
        )
        with self._lock:
            self.instances[instance.id] = instance
        return replace(instance)

    def add_enrollment(
        self,
        enrollment_id: str | None = None,
        *,
        instance_id: str,
        contact_id: str | None = None,
        status: str = "active",
        **fields: Any,
    ) -> CampaignEnrollment:
        now = self.now()
        enrollment = CampaignEnrollment(
            id=enrollment_id or str(uuid4()),
            instance_id=instance_id,
            contact_id=contact_id or str(uuid4()),
            status=status,
            enrolled_at=now,
            updated_at=now,
            **fields,
        )
        with self._lock:
            for existing in self.enrollments.values():
                if existing.instance_id == instance_id and existing.contact_id == enrollment.contact_id:
                    raise StoreError("duplicate key value violates unique constraint campaign_enrollments_instance_contact")
            self.enrollments[enrollment.id] = enrollment
        return replace(enrollment)

    def add_super_admin(self, *, email: str, password_hash: str | None = None, super_admin_id: str | None = None) -> SuperAdmin:
        admin = SuperAdmin(id=super_admin_id or str(uuid4()), email=email, password_hash=password_hash, name="Super Admin")
        with self._lock:
            self.super_admins[admin.id] = admin
        return replace(admin)

    # --- ingestion ---

    @contextmanager
    def transaction(self) -> Iterator[MemorySession]:
        session = MemorySession(self)
        try:
            yield session
        except BaseException:
            session._rollback()
            raise
        finally:
            session._release()

    def get_instance(self, instance_id: str) -> CampaignInstance | None:
        with self._lock:
            instance = self.instances.get(instance_id)
            return replace(instance) if instance else None

    def get_enrollment(self, enrollment_id: str) -> CampaignEnrollment | None:
        with self._lock:
            enrollment = self.enrollments.get(enrollment_id)
            return replace(enrollment) if enrollment else None

    def list_events(self, *, enrollment_id: str | None = None, instance_id: str | None = None) -> list[CampaignEvent]:
        with self._lock:
            rows = []
            for event in self.events.values():
                if enrollment_id is not None and event.enrollment_id != enrollment_id:
                    continue
                if instance_id is not None:
                    enrollment = self.enrollments.get(event.enrollment_id)
                    if enrollment is None or enrollment.instance_id != instance_id:
                        continue
                rows.append(replace(event))
            return sorted(rows, key=lambda row: row.timestamp)

    # --- orphan queue ---

    def enqueue_orphan(self, record: OrphanedEventRecord, *, max_size: int, drop_policy: str) -> EnqueueResult:
        if drop_policy not in DROP_POLICIES:
            raise StoreError(f"unknown drop policy {drop_policy!r}")
        with self._lock:
            size = len(self.orphans)
            evicted_id = None
            if size >= max_size:
                unclaimed = [r for r in self.orphans.values() if r.claimed_until is None or r.claimed_until <= self.now()]
                if drop_policy == "drop_newest" or not unclaimed:
                    return EnqueueResult(retained=False, outcome="dropped_capacity", queue_size=size)
                oldest = min(unclaimed, key=lambda r: r.enqueued_at)
                del self.orphans[oldest.id]
                evicted_id = oldest.id
            self.orphans[record.id] = replace(record, outcome="pending")
            return EnqueueResult(
                retained=True,
                outcome="pending",
                record_id=record.id,
                queue_size=len(self.orphans),
                evicted_record_id=evicted_id,
            )

    def claim_due_orphans(self, *, now: datetime, limit: int, lease_until: datetime) -> list[OrphanedEventRecord]:
        with self._lock:
            due = [
                record
                for record in self.orphans.values()
                if record.next_retry_at <= now and (record.claimed_until is None or record.claimed_until <= now)
            ]
            due.sort(key=lambda r: r.next_retry_at)
            claimed = []
            for record in due[: max(0, limit)]:
                record.claimed_until = lease_until
                claimed.append(replace(record))
            return claimed

    def reschedule_orphan(
        self,
        record_id: str,
        *,
        retry_count: int,
        next_retry_at: datetime,
        last_error: str | None,
    ) -> None:
        with self._lock:
            record = self.orphans.get(record_id)
            if record is None:
                return
            record.retry_count = retry_count
            record.next_retry_at = next_retry_at
            record.last_error = last_error
            record.claimed_until = None

    def delete_orphan(self, record_id: str) -> bool:
        with self._lock:
            return self.orphans.pop(record_id, None) is not None

    def move_orphan_to_dead_letter(self, record_id: str, entry: DeadLetterEvent) -> DeadLetterEvent:
        with self._lock:
            self.orphans.pop(record_id, None)
            return self.insert_dead_letter(entry)

    def count_orphans(self) -> int:
        with self._lock:
            return len(self.orphans)

    def orphan_queue_stats(self, *, now: datetime, stale_before: datetime) -> dict[str, Any]:
        with self._lock:
            records = list(self.orphans.values())
        by_attempts = Counter(record.retry_count for record in records)
        return {
            "size": len(records),
            "ready_for_retry": sum(1 for r in records if r.next_retry_at <= now),
            "stale": sum(1 for r in records if r.enqueued_at < stale_before),
            "oldest_enqueued_at": min((r.enqueued_at for r in records), default=None),
            "by_attempts": {str(k): v for k, v in sorted(by_attempts.items())},
        }

    # --- dead letters ---

    def insert_dead_letter(self, entry: DeadLetterEvent) -> DeadLetterEvent:
        now = self.now()
        stored = replace(entry, created_at=entry.created_at or now, updated_at=now)
        with self._lock:
            self.dead_letters[stored.id] = stored
        return replace(stored)

    def get_dead_letter(self, entry_id: str) -> DeadLetterEvent | None:
        with self._lock:
            entry = self.dead_letters.get(entry_id)
            return replace(entry) if entry else None

    def list_dead_letters(
        self,
        *,
        status: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> tuple[list[DeadLetterEvent], int]:
        with self._lock:
            rows = [replace(e) for e in self.dead_letters.values() if status is None or e.status == status]
        rows.sort(key=lambda e: e.created_at, reverse=True)
        return rows[offset:offset + limit], len(rows)

    def update_dead_letter(
        self,
        entry_id: str,
        *,
        expected_status: str | None = None,
        **fields: Any,
    ) -> DeadLetterEvent | None:
        """Apply ``fields``; None when the entry is missing or not in ``expected_status``."""
        unknown = set(fields) - DEAD_LETTER_MUTABLE_FIELDS
        if unknown:
            raise StoreError(f"dead letter fields not updatable: {sorted(unknown)}")
        with self._lock:
            entry = self.dead_letters.get(entry_id)
            if entry is None or (expected_status is not None and entry.status != expected_status):
                return None
            for key, value in fields.items():
                setattr(entry, key, value)
            entry.updated_at = self.now()
            return replace(entry)

    def dead_letter_stats(self) -> dict[str, Any]:
        with self._lock:
            entries = list(self.dead_letters.values())
        by_status = Counter(e.status for e in entries)
        by_status_and_type = Counter((e.status, e.event_type) for e in entries)
        return {
            "by_status": [{"status": s, "count": n} for s, n in sorted(by_status.items())],
            "by_status_and_type": [
                {"status": s, "event_type": t, "count": n}
                for (s, t), n in sorted(by_status_and_type.items(), key=lambda item: (item[0][0], item[0][1] or ""))
            ],
            "total": len(entries),
        }

    # --- admin / observability ---

    def get_super_admin(self, super_admin_id: str) -> SuperAdmin | None:
        with self._lock:
            admin = self.super_admins.get(super_admin_id)
            return replace(admin) if admin else None

    def get_super_admin_by_email(self, email: str) -> SuperAdmin | None:
        with self._lock:
            for admin in self.super_admins.values():
                if admin.email == email:
                    return replace(admin)
        return None

    def insert_metric_snapshot(
        self,
        *,
        source: str,
        request_id: str | None,
        counters: dict[str, Any],
        histograms: dict[str, Any],
    ) -> dict[str, Any]:
        row = {
            "id": str(uuid4()),
            "source": source,
            "request_id": request_id,
            "counters": dict(counters),
            "histograms": dict(histograms),
            "created_at": self.now(),
        }
        with self._lock:
            self.metric_snapshots.append(row)
        return dict(row)

    def list_metric_snapshots(self, *, limit: int = 50, offset: int = 0) -> list[dict[str, Any]]:
        with self._lock:
            rows = sorted(self.metric_snapshots, key=lambda row: row["created_at"], reverse=True)
        return [dict(row) for row in rows[offset:offset + limit]]

    def close(self) -> None:
        return None
