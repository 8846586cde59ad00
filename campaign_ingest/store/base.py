from __future__ import annotations

from datetime import datetime
from typing import Any, ContextManager, Protocol

from campaign_ingest.domain.outcomes import EnqueueResult
from campaign_ingest.domain.records import (
    CampaignEnrollment,
    CampaignEvent,
    CampaignInstance,
    DeadLetterEvent,
    OrphanedEventRecord,
    SuperAdmin,
)


DROP_POLICIES = frozenset({"drop_newest", "drop_oldest"})
DEAD_LETTER_MUTABLE_FIELDS = frozenset(
    {"status", "failure_reason", "replay_count", "replayed_at", "last_attempted_at", "attempts"}
)


def event_idempotency_key(event: CampaignEvent) -> tuple[Any, ...]:
    if event.provider_event_id:
        return ("provider_event_id", event.provider_event_id)
    return ("fallback", event.enrollment_id, event.event_type, event.timestamp)


class StoreSession(Protocol):
    """Operations available inside one ingestion transaction."""

    def get_enrollment(self, enrollment_id: str) -> CampaignEnrollment | None: ...

    def lock_instance(self, instance_id: str) -> CampaignInstance | None: ...

    def lock_enrollment(self, enrollment_id: str) -> CampaignEnrollment | None: ...

    def insert_event_if_absent(self, event: CampaignEvent) -> tuple[CampaignEvent, bool]: ...

    def increment_counter(self, instance_id: str, column: str) -> int: ...

    def update_enrollment_status(self, enrollment_id: str, status: str, *, now: datetime) -> bool: ...


class EventStore(Protocol):
    def transaction(self) -> ContextManager[StoreSession]: ...

    def get_instance(self, instance_id: str) -> CampaignInstance | None: ...

    def get_enrollment(self, enrollment_id: str) -> CampaignEnrollment | None: ...

    def list_events(self, *, enrollment_id: str | None = None, instance_id: str | None = None) -> list[CampaignEvent]: ...

    def enqueue_orphan(self, record: OrphanedEventRecord, *, max_size: int, drop_policy: str) -> EnqueueResult: ...

    def claim_due_orphans(self, *, now: datetime, limit: int, lease_until: datetime) -> list[OrphanedEventRecord]: ...

    def reschedule_orphan(
        self,
        record_id: str,
        *,
        retry_count: int,
        next_retry_at: datetime,
        last_error: str | None,
    ) -> None: ...

    def delete_orphan(self, record_id: str) -> bool: ...

    def move_orphan_to_dead_letter(self, record_id: str, entry: DeadLetterEvent) -> DeadLetterEvent: ...

    def count_orphans(self) -> int: ...

    def orphan_queue_stats(self, *, now: datetime, stale_before: datetime) -> dict[str, Any]: ...

    def insert_dead_letter(self, entry: DeadLetterEvent) -> DeadLetterEvent: ...

    def get_dead_letter(self, entry_id: str) -> DeadLetterEvent | None: ...

    def list_dead_letters(
        self,
        *,
        status: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> tuple[list[DeadLetterEvent], int]: ...

    def update_dead_letter(
        self,
        entry_id: str,
        *,
        expected_status: str | None = None,
        **fields: Any,
    ) -> DeadLetterEvent | None: ...

    def dead_letter_stats(self) -> dict[str, Any]: ...

    def get_super_admin(self, super_admin_id: str) -> SuperAdmin | None: ...

    def get_super_admin_by_email(self, email: str) -> SuperAdmin | None: ...

    def insert_metric_snapshot(
        self,
        *,
        source: str,
        request_id: str | None,
        counters: dict[str, Any],
        histograms: dict[str, Any],
    ) -> dict[str, Any]: ...

    def list_metric_snapshots(self, *, limit: int = 50, offset: int = 0) -> list[dict[str, Any]]: ...

    def close(self) -> None: ...
