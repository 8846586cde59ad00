from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Callable

from campaign_ingest.domain.outcomes import (
    Deferred,
    Dropped,
    Duplicate,
    Fatal,
    IngestionResult,
    Recorded,
)
from campaign_ingest.domain.store_errors import StoreError, TransientStoreError
from campaign_ingest.domain.transitions import enrollment_status_for_event, is_terminal_enrollment
from campaign_ingest.models.events import CampaignEventIn
from campaign_ingest.observability import MetricsRegistry, log_event
from campaign_ingest.services.counters import apply_increment
from campaign_ingest.services.orphan_queue import OrphanedEventQueue
from campaign_ingest.services.recorder import record_or_find
from campaign_ingest.store.base import EventStore


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class IngestionService:
    """Turns one inbound campaign event into at most one durable effect.

    ``attempt`` is the transactional unit: enrollment lookup, instance row
    lock, idempotent insert, counter increment and enrollment status change,
    committed together. ``ingest`` is the caller around it: it defers events
    whose enrollment is not visible yet and retries transient store failures
    with backoff before deferring them as well.
    """

    def __init__(
        self,
        store: EventStore,
        orphan_queue: OrphanedEventQueue,
        *,
        metrics: MetricsRegistry,
        max_transient_retries: int = 3,
        transient_backoff_ms: int = 50,
        transient_max_backoff_ms: int = 1000,
        transient_backoff_multiplier: float = 2.0,
        now: Callable[[], datetime] = _now_utc,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._store = store
        self._orphan_queue = orphan_queue
        self._metrics = metrics
        self._max_transient_retries = max(0, max_transient_retries)
        self._backoff_seconds = max(0, transient_backoff_ms) / 1000.0
        self._max_backoff_seconds = max(self._backoff_seconds, transient_max_backoff_ms / 1000.0)
        self._backoff_multiplier = max(1.0, float(transient_backoff_multiplier))
        self._now = now
        self._sleep = sleep

    def ingest(self, payload: CampaignEventIn, *, request_id: str | None = None) -> IngestionResult:
        started = time.perf_counter()
        payload = payload.stamped(self._now())
        self._metrics.incr("ingest.events.received", event_type=payload.event_type, channel=payload.channel)

        if not payload.enrollment_id:
            log_event(
                "orphaned_event_detected",
                level=logging.WARNING,
                request_id=request_id,
                event_type=payload.event_type,
                channel=payload.channel,
                provider_event_id=payload.provider_event_id,
            )
            result = self._defer(payload, Deferred(reason="missing_enrollment_id"), request_id=request_id)
        else:
            result = self.attempt_with_retries(payload, request_id=request_id)
            if isinstance(result, Deferred) and result.queue is None:
                result = self._defer(payload, result, request_id=request_id)

        self._report(payload, result, request_id=request_id)
        self._metrics.observe(
            "ingest.processing_ms",
            (time.perf_counter() - started) * 1000.0,
            outcome=result.kind,
        )
        return result

    def attempt_with_retries(self, payload: CampaignEventIn, *, request_id: str | None = None) -> IngestionResult:
        delay = self._backoff_seconds
        failures = 0
        while True:
            try:
                return self.attempt(payload)
            except TransientStoreError as exc:
                failures += 1
                self._metrics.incr("ingest.transaction.transient_errors")
                if failures > self._max_transient_retries:
                    log_event(
                        "ingest_transaction_retries_exhausted",
                        level=logging.WARNING,
                        request_id=request_id,
                        enrollment_id=payload.enrollment_id,
                        event_type=payload.event_type,
                        attempts=failures,
                        sqlstate=exc.sqlstate,
                        error=str(exc),
                    )
                    return Deferred(reason="transient_exhausted", error=str(exc))
                self._metrics.incr("ingest.transaction.retries")
                log_event(
                    "ingest_transaction_retry",
                    level=logging.WARNING,
                    request_id=request_id,
                    enrollment_id=payload.enrollment_id,
                    event_type=payload.event_type,
                    attempt=failures,
                    delay_ms=round(delay * 1000.0, 1),
                    sqlstate=exc.sqlstate,
                    error=str(exc),
                )
                if delay > 0:
                    self._sleep(delay)
                delay = min(self._max_backoff_seconds, delay * self._backoff_multiplier)
            except StoreError as exc:
                self._metrics.incr("ingest.transaction.store_errors")
                log_event(
                    "ingest_transaction_store_error",
                    level=logging.ERROR,
                    request_id=request_id,
                    enrollment_id=payload.enrollment_id,
                    event_type=payload.event_type,
                    sqlstate=exc.sqlstate,
                    error=str(exc),
                )
                return Deferred(reason="store_error", error=str(exc))

    def attempt(self, payload: CampaignEventIn) -> IngestionResult:
        """Run the ingestion transaction once.

        Raises TransientStoreError on lock timeout, deadlock or serialization
        conflict; the transaction has been rolled back by then.
        """
        if not payload.enrollment_id:
            return Deferred(reason="missing_enrollment_id")
        payload = payload.stamped(self._now())

        with self._store.transaction() as session:
            enrollment = session.get_enrollment(payload.enrollment_id)
            if enrollment is None:
                return Deferred(reason="enrollment_not_found")

            instance = session.lock_instance(enrollment.instance_id)
            if instance is None:
                return Fatal(
                    reason="instance_missing",
                    detail=f"campaign instance {enrollment.instance_id} referenced by enrollment {enrollment.id} does not exist",
                    enrollment_id=enrollment.id,
                    instance_id=enrollment.instance_id,
                )

            # Status read before the instance lock may be stale; terminal checks use this one.
            enrollment = session.lock_enrollment(enrollment.id)
            if enrollment is None:
                return Deferred(reason="enrollment_not_found")

            event, created = record_or_find(session, payload)
            if not created:
                return Duplicate(event=event)

            # Counters follow event_type even after a terminal status.
            counter = apply_increment(session, instance.id, event.event_type)
            if counter and is_terminal_enrollment(enrollment.status):
                self._metrics.incr("ingest.events.after_terminal_status", event_type=event.event_type)
                log_event(
                    "event_counted_after_terminal_status",
                    enrollment_id=enrollment.id,
                    enrollment_status=enrollment.status,
                    event_type=event.event_type,
                    counter=counter,
                )

            new_status = enrollment_status_for_event(enrollment.status, event.event_type)
            if new_status and not session.update_enrollment_status(enrollment.id, new_status, now=self._now()):
                new_status = None

            return Recorded(
                event=event,
                instance_id=instance.id,
                counter=counter,
                enrollment_status=new_status,
            )

    def _defer(self, payload: CampaignEventIn, deferred: Deferred, *, request_id: str | None) -> IngestionResult:
        queued = self._orphan_queue.enqueue(payload, reason=deferred.reason, request_id=request_id)
        if not queued.retained:
            return Dropped(reason=deferred.reason, queue=queued)
        return Deferred(reason=deferred.reason, queue=queued, error=deferred.error)

    def _report(self, payload: CampaignEventIn, result: IngestionResult, *, request_id: str | None) -> None:
        common = {
            "request_id": request_id,
            "enrollment_id": payload.enrollment_id,
            "event_type": payload.event_type,
            "channel": payload.channel,
            "provider_event_id": payload.provider_event_id,
        }
        if isinstance(result, Recorded):
            self._metrics.incr("ingest.events.recorded", event_type=payload.event_type)
            log_event(
                "campaign_event_recorded",
                event_id=result.event.id,
                instance_id=result.instance_id,
                counter=result.counter,
                enrollment_status=result.enrollment_status,
                **common,
            )
        elif isinstance(result, Duplicate):
            self._metrics.incr("ingest.events.duplicate", event_type=payload.event_type)
            log_event("campaign_event_duplicate_ignored", event_id=result.event.id, **common)
        elif isinstance(result, Deferred):
            self._metrics.incr("ingest.events.deferred", reason=result.reason)
            log_event(
                "campaign_event_deferred",
                reason=result.reason,
                queue_id=result.queue.record_id if result.queue else None,
                error=result.error,
                **common,
            )
        elif isinstance(result, Dropped):
            self._metrics.incr("ingest.events.dropped", reason=result.reason)
            log_event(
                "campaign_event_dropped",
                level=logging.WARNING,
                reason=result.reason,
                queue_size=result.queue.queue_size,
                **common,
            )
        elif isinstance(result, Fatal):
            self._metrics.incr("ingest.events.fatal", reason=result.reason)
            log_event(
                "campaign_event_fatal",
                level=logging.ERROR,
                reason=result.reason,
                detail=result.detail,
                instance_id=result.instance_id,
                **common,
            )
