from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable
from uuid import uuid4

from pydantic import ValidationError

from campaign_ingest.domain.outcomes import Deferred, IngestionResult, is_reconciled
from campaign_ingest.domain.records import DeadLetterEvent, OrphanedEventRecord
from campaign_ingest.domain.store_errors import StoreError
from campaign_ingest.models.events import CampaignEventIn
from campaign_ingest.observability import MetricsRegistry, log_event
from campaign_ingest.store.base import EventStore


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class ReplayLimitExceeded(ValueError):
    pass


class DeadLetterService:
    """Terminal storage for events the retry queue gave up on.

    Entries are never deleted. Replay re-submits through the normal ingestion
    path, so idempotency holds for anything that was recorded meanwhile.
    """

    def __init__(
        self,
        store: EventStore,
        *,
        metrics: MetricsRegistry,
        replay_max_events: int = 500,
        now: Callable[[], datetime] = _now_utc,
    ):
        self._store = store
        self._metrics = metrics
        self._replay_max_events = max(1, replay_max_events)
        self._now = now

    def move_from_orphan(self, record: OrphanedEventRecord, *, reason: str, attempts: int) -> DeadLetterEvent:
        now = self._now()
        entry = DeadLetterEvent(
            id=str(uuid4()),
            event_data=dict(record.payload),
            failure_reason=reason,
            attempts=attempts,
            first_attempted_at=record.enqueued_at,
            last_attempted_at=now,
            event_type=record.event_type,
            channel=record.channel,
            enrollment_id=record.enrollment_id,
        )
        stored = self._store.move_orphan_to_dead_letter(record.id, entry)
        self._metrics.incr("dead_letter.moved", event_type=stored.event_type)
        log_event(
            "dead_letter_created",
            level=logging.WARNING,
            dead_letter_id=stored.id,
            orphan_id=record.id,
            event_type=stored.event_type,
            enrollment_id=stored.enrollment_id,
            attempts=attempts,
            failure_reason=reason,
        )
        return stored

    def list(self, *, status: str | None = None, limit: int = 100, offset: int = 0) -> tuple[list[DeadLetterEvent], int]:
        return self._store.list_dead_letters(status=status, limit=limit, offset=offset)

    def get(self, entry_id: str) -> DeadLetterEvent | None:
        return self._store.get_dead_letter(entry_id)

    def stats(self) -> dict[str, Any]:
        return self._store.dead_letter_stats()

    def ignore(self, entry_id: str, *, request_id: str | None = None) -> DeadLetterEvent | None:
        entry = self._store.get_dead_letter(entry_id)
        if entry is None or entry.status not in ("failed", "ignored"):
            return entry
        updated = self._store.update_dead_letter(entry_id, status="ignored")
        self._metrics.incr("dead_letter.ignored")
        log_event("dead_letter_ignored", request_id=request_id, dead_letter_id=entry_id)
        return updated

    def replay(
        self,
        entry_ids: list[str],
        ingest: Callable[..., IngestionResult],
        *,
        request_id: str | None = None,
    ) -> dict[str, Any]:
        ordered_ids = list(dict.fromkeys(entry_ids))
        if len(ordered_ids) > self._replay_max_events:
            raise ReplayLimitExceeded(
                f"replay accepts at most {self._replay_max_events} events per request, got {len(ordered_ids)}"
            )

        results: list[dict[str, Any]] = []
        for entry_id in ordered_ids:
            results.append(self._replay_one(entry_id, ingest, request_id=request_id))

        summary = {
            "requested": len(ordered_ids),
            "replayed": sum(1 for r in results if r["status"] == "replayed"),
            "failed": sum(1 for r in results if r["status"] == "failed"),
            "skipped": sum(1 for r in results if r["status"] in ("not_found", "skipped")),
        }
        log_event("dead_letter_replay_completed", request_id=request_id, **summary)
        return {"summary": summary, "results": results}

    def _replay_one(
        self,
        entry_id: str,
        ingest: Callable[..., IngestionResult],
        *,
        request_id: str | None,
    ) -> dict[str, Any]:
        entry = self._store.get_dead_letter(entry_id)
        if entry is None:
            return {"id": entry_id, "status": "not_found"}
        if entry.status != "failed":
            return {"id": entry_id, "status": "skipped", "detail": f"entry status is {entry.status}"}

        claimed = self._store.update_dead_letter(entry_id, expected_status="failed", status="replaying")
        if claimed is None:
            return {"id": entry_id, "status": "skipped", "detail": "entry claimed by a concurrent replay"}
        entry = claimed
        now = self._now()
        try:
            payload = CampaignEventIn.model_validate(entry.event_data)
        except ValidationError as exc:
            return self._replay_failed(entry, f"invalid_payload: {exc.error_count()} validation errors", now, request_id)

        try:
            result = ingest(payload, request_id=request_id)
        except StoreError as exc:
            return self._replay_failed(entry, f"store_error: {exc}", now, request_id)

        if is_reconciled(result) or (isinstance(result, Deferred) and result.queue is not None):
            self._store.update_dead_letter(
                entry_id,
                status="replayed",
                replay_count=entry.replay_count + 1,
                replayed_at=now,
                last_attempted_at=now,
            )
            self._metrics.incr("dead_letter.replayed", outcome=result.kind)
            log_event(
                "dead_letter_replayed",
                request_id=request_id,
                dead_letter_id=entry_id,
                outcome=result.kind,
            )
            return {"id": entry_id, "status": "replayed", "outcome": result.kind}

        reason = getattr(result, "reason", result.kind)
        return self._replay_failed(entry, f"replay_{result.kind}: {reason}", now, request_id)

    def _replay_failed(
        self,
        entry: DeadLetterEvent,
        reason: str,
        now: datetime,
        request_id: str | None,
    ) -> dict[str, Any]:
        self._store.update_dead_letter(
            entry.id,
            status="failed",
            failure_reason=reason,
            replay_count=entry.replay_count + 1,
            last_attempted_at=now,
        )
        self._metrics.incr("dead_letter.replay_failed")
        log_event(
            "dead_letter_replay_failed",
            level=logging.WARNING,
            request_id=request_id,
            dead_letter_id=entry.id,
            failure_reason=reason,
        )
        return {"id": entry.id, "status": "failed", "detail": reason}
