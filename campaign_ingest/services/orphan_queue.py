from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable
from uuid import uuid4

from pydantic import ValidationError

from campaign_ingest.config import Settings
from campaign_ingest.domain.outcomes import EnqueueResult, Fatal, IngestionResult, is_reconciled
from campaign_ingest.domain.records import OrphanedEventRecord
from campaign_ingest.domain.store_errors import StoreError, TransientStoreError
from campaign_ingest.models.events import CampaignEventIn
from campaign_ingest.observability import MetricsRegistry, log_event
from campaign_ingest.services.dead_letters import DeadLetterService
from campaign_ingest.store.base import DROP_POLICIES, EventStore


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CycleResult:
    skipped: bool = False
    reason: str | None = None
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    moved_to_dlq: int = 0
    duration_ms: float = 0.0
    items: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "skipped": self.skipped,
            "reason": self.reason,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "moved_to_dlq": self.moved_to_dlq,
            "duration_ms": round(self.duration_ms, 2),
        }


class OrphanedEventQueue:
    """Bounded, persistent retry queue for events whose enrollment is not visible yet."""

    def __init__(
        self,
        store: EventStore,
        dead_letters: DeadLetterService,
        *,
        metrics: MetricsRegistry,
        max_size: int = 10000,
        drop_policy: str = "drop_newest",
        batch_size: int = 50,
        backlog_alert_size: int = 1000,
        enqueue_delay_seconds: float = 1.0,
        max_attempts: int = 6,
        base_delay_seconds: float = 5.0,
        max_delay_seconds: float = 3600.0,
        jitter_seconds: float = 1.0,
        claim_lease_seconds: float = 120.0,
        stale_after_seconds: float = 3600.0,
        now: Callable[[], datetime] = _now_utc,
        jitter: Callable[[float], float] | None = None,
    ):
        if drop_policy not in DROP_POLICIES:
            raise ValueError(f"Unsupported orphan queue drop policy: {drop_policy}")
        self._store = store
        self._dead_letters = dead_letters
        self._metrics = metrics
        self.max_size = max(1, max_size)
        self.drop_policy = drop_policy
        self.batch_size = max(1, batch_size)
        self.backlog_alert_size = max(1, backlog_alert_size)
        self.enqueue_delay_seconds = max(0.0, enqueue_delay_seconds)
        self.max_attempts = max(1, max_attempts)
        self.base_delay_seconds = max(0.0, base_delay_seconds)
        self.max_delay_seconds = max(self.base_delay_seconds, max_delay_seconds)
        self.jitter_seconds = max(0.0, jitter_seconds)
        self.claim_lease_seconds = max(1.0, claim_lease_seconds)
        self.stale_after_seconds = stale_after_seconds
        self._now = now
        self._jitter = jitter or (lambda upper: random.uniform(0.0, upper))
        self._cycle_lock = threading.Lock()

    @classmethod
    def from_settings(
        cls,
        config: Settings,
        store: EventStore,
        dead_letters: DeadLetterService,
        *,
        metrics: MetricsRegistry,
        now: Callable[[], datetime] = _now_utc,
        jitter: Callable[[float], float] | None = None,
    ) -> "OrphanedEventQueue":
        return cls(
            store,
            dead_letters,
            metrics=metrics,
            max_size=config.orphan_queue_max_size,
            drop_policy=config.orphan_queue_drop_policy,
            batch_size=config.orphan_queue_batch_size,
            backlog_alert_size=config.orphan_queue_backlog_alert_size,
            enqueue_delay_seconds=config.orphan_enqueue_delay_seconds,
            max_attempts=config.orphan_retry_max_attempts,
            base_delay_seconds=config.orphan_retry_base_delay_seconds,
            max_delay_seconds=config.orphan_retry_max_delay_seconds,
            jitter_seconds=config.orphan_retry_jitter_seconds,
            claim_lease_seconds=config.orphan_claim_lease_seconds,
            stale_after_seconds=config.orphan_stale_after_seconds,
            now=now,
            jitter=jitter,
        )

    @property
    def processing(self) -> bool:
        return self._cycle_lock.locked()

    def backoff_delay(self, retry_count: int) -> float:
        """Delay before retry number ``retry_count`` (1-based), without jitter."""
        exponent = max(0, retry_count - 1)
        if exponent >= 64:
            return self.max_delay_seconds
        return min(self.base_delay_seconds * (2 ** exponent), self.max_delay_seconds)

    def _jittered(self, seconds: float) -> timedelta:
        extra = self._jitter(self.jitter_seconds) if self.jitter_seconds > 0 else 0.0
        return timedelta(seconds=seconds + extra)

    def enqueue(self, payload: CampaignEventIn, *, reason: str, request_id: str | None = None) -> EnqueueResult:
        now = self._now()
        payload = payload.stamped(now)
        record = OrphanedEventRecord(
            id=str(uuid4()),
            payload=payload.to_payload(),
            enqueued_at=now,
            next_retry_at=now + self._jittered(self.enqueue_delay_seconds),
            event_type=payload.event_type,
            channel=payload.channel,
            enrollment_id=payload.enrollment_id,
            provider_event_id=payload.provider_event_id,
            last_error=reason,
        )
        result = self._store.enqueue_orphan(record, max_size=self.max_size, drop_policy=self.drop_policy)
        self._metrics.set_gauge("orphan_queue.size", result.queue_size)

        if not result.retained or result.evicted_record_id:
            self._metrics.incr("orphan_queue.dropped_at_capacity", policy=self.drop_policy)
            log_event(
                "orphan_queue_at_capacity",
                level=logging.WARNING,
                request_id=request_id,
                policy=self.drop_policy,
                max_size=self.max_size,
                queue_size=result.queue_size,
                dropped_record_id=result.evicted_record_id,
                event_type=payload.event_type,
                enrollment_id=payload.enrollment_id,
                retained=result.retained,
            )
        if result.retained:
            self._metrics.incr("orphan_queue.enqueued", reason=reason)
            log_event(
                "orphan_event_enqueued",
                request_id=request_id,
                orphan_id=result.record_id,
                reason=reason,
                event_type=payload.event_type,
                enrollment_id=payload.enrollment_id,
                queue_size=result.queue_size,
            )
            if result.queue_size >= self.backlog_alert_size:
                log_event(
                    "orphan_queue_backlog_high",
                    level=logging.WARNING,
                    queue_size=result.queue_size,
                    alert_size=self.backlog_alert_size,
                )
        return result

    def process_cycle(self, processor: Callable[[CampaignEventIn], IngestionResult]) -> CycleResult:
        """Run one retry pass over due records; skip if one is already running here."""
        if not self._cycle_lock.acquire(blocking=False):
            self._metrics.incr("orphan_queue.cycles_skipped")
            log_event("orphan_queue_cycle_skipped", reason="cycle_in_progress")
            return CycleResult(skipped=True, reason="cycle_in_progress")
        started = time.perf_counter()
        try:
            result = self._run_cycle(processor)
        finally:
            self._cycle_lock.release()
        result.duration_ms = (time.perf_counter() - started) * 1000.0
        self._metrics.observe("orphan_queue.processing_time_ms", result.duration_ms)
        self._metrics.set_gauge("orphan_queue.size", self._store.count_orphans())
        if result.processed:
            log_event("orphan_queue_cycle_completed", **result.to_dict())
        return result

    def _run_cycle(self, processor: Callable[[CampaignEventIn], IngestionResult]) -> CycleResult:
        now = self._now()
        records = self._store.claim_due_orphans(
            now=now,
            limit=self.batch_size,
            lease_until=now + timedelta(seconds=self.claim_lease_seconds),
        )
        result = CycleResult()
        for record in records:
            result.processed += 1
            item = self._process_record(record, processor)
            result.items.append(item)
            if item["outcome"] == "succeeded":
                result.succeeded += 1
            elif item["outcome"] == "moved_to_dlq":
                result.moved_to_dlq += 1
            else:
                result.failed += 1
        return result

    def _process_record(
        self,
        record: OrphanedEventRecord,
        processor: Callable[[CampaignEventIn], IngestionResult],
    ) -> dict[str, Any]:
        attempts = record.retry_count + 1
        try:
            payload = CampaignEventIn.model_validate(record.payload)
        except ValidationError as exc:
            return self._dead_letter(record, reason="invalid_payload", attempts=attempts, error=str(exc))

        try:
            outcome = processor(payload)
        except TransientStoreError as exc:
            return self._retry_or_dead_letter(record, error=f"transient: {exc}")
        except StoreError as exc:
            log_event(
                "orphan_retry_store_error",
                level=logging.ERROR,
                orphan_id=record.id,
                error=str(exc),
            )
            return self._retry_or_dead_letter(record, error=f"store_error: {exc}")
        except Exception as exc:
            log_event(
                "orphan_retry_unexpected_error",
                level=logging.ERROR,
                orphan_id=record.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return self._retry_or_dead_letter(record, error=f"unexpected: {type(exc).__name__}: {exc}")

        if is_reconciled(outcome):
            self._store.delete_orphan(record.id)
            self._metrics.incr("orphan_queue.succeeded", event_type=record.event_type)
            self._metrics.observe("orphan_queue.retry_attempts", attempts)
            log_event(
                "orphan_event_reconciled",
                orphan_id=record.id,
                enrollment_id=payload.enrollment_id,
                outcome=outcome.kind,
                attempts=attempts,
            )
            return {"id": record.id, "outcome": "succeeded", "attempts": attempts}

        if isinstance(outcome, Fatal):
            return self._dead_letter(record, reason="data_integrity", attempts=attempts, error=outcome.detail)

        return self._retry_or_dead_letter(record, error=getattr(outcome, "reason", outcome.kind))

    def _retry_or_dead_letter(self, record: OrphanedEventRecord, *, error: str) -> dict[str, Any]:
        retry_count = record.retry_count + 1
        if retry_count >= self.max_attempts:
            return self._dead_letter(record, reason="max_retries_exceeded", attempts=retry_count, error=error)

        delay = self.backoff_delay(retry_count)
        next_retry_at = self._now() + self._jittered(delay)
        self._store.reschedule_orphan(
            record.id,
            retry_count=retry_count,
            next_retry_at=next_retry_at,
            last_error=error,
        )
        self._metrics.incr("orphan_queue.failed")
        log_event(
            "orphan_event_retry_scheduled",
            orphan_id=record.id,
            enrollment_id=record.enrollment_id,
            retry_count=retry_count,
            delay_seconds=delay,
            error=error,
        )
        return {"id": record.id, "outcome": "rescheduled", "retry_count": retry_count}

    def _dead_letter(self, record: OrphanedEventRecord, *, reason: str, attempts: int, error: str | None) -> dict[str, Any]:
        failure_reason = f"{reason}: {error}" if error else reason
        entry = self._dead_letters.move_from_orphan(record, reason=failure_reason, attempts=attempts)
        self._metrics.incr("orphan_queue.moved_to_dlq", reason=reason)
        return {"id": record.id, "outcome": "moved_to_dlq", "dead_letter_id": entry.id, "reason": reason}

    def status(self) -> dict[str, Any]:
        now = self._now()
        stats = self._store.orphan_queue_stats(
            now=now,
            stale_before=now - timedelta(seconds=self.stale_after_seconds),
        )
        oldest = stats.get("oldest_enqueued_at")
        return {
            "size": stats["size"],
            "max_size": self.max_size,
            "drop_policy": self.drop_policy,
            "ready_for_retry": stats["ready_for_retry"],
            "stale": stats["stale"],
            "by_attempts": stats["by_attempts"],
            "oldest_enqueued_at": oldest.isoformat() if oldest else None,
            "processing": self.processing,
            "healthy": stats["stale"] == 0 and stats["size"] < self.backlog_alert_size,
        }

    def drain(
        self,
        processor: Callable[[CampaignEventIn], IngestionResult],
        *,
        timeout_seconds: float = 30.0,
        max_cycles: int = 5,
    ) -> int:
        """Run cycles until nothing is due, the queue empties, or time runs out.

        Returns the number of records processed.
        """
        deadline = time.monotonic() + max(0.0, timeout_seconds)
        processed = 0
        for _ in range(max(1, max_cycles)):
            if time.monotonic() >= deadline or self._store.count_orphans() == 0:
                break
            result = self.process_cycle(processor)
            if result.skipped or result.processed == 0:
                break
            processed += result.processed
        log_event(
            "orphan_queue_drained",
            processed=processed,
            remaining=self._store.count_orphans(),
        )
        return processed
