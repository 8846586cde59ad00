from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from fastapi import Request

from campaign_ingest.config import Settings, settings
from campaign_ingest.db import create_event_store
from campaign_ingest.domain.outcomes import IngestionResult
from campaign_ingest.models.events import CampaignEventIn
from campaign_ingest.observability import MetricsRegistry, log_event
from campaign_ingest.services.dead_letters import DeadLetterService
from campaign_ingest.services.ingestion import IngestionService
from campaign_ingest.services.orphan_queue import CycleResult, OrphanedEventQueue
from campaign_ingest.services.scheduler import RetryScheduler
from campaign_ingest.store.base import EventStore


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class IngestionPipeline:
    """Wires the store, ingestion handler, retry queue and dead-letter path together."""

    config: Settings
    store: EventStore
    metrics: MetricsRegistry
    ingestion: IngestionService
    orphan_queue: OrphanedEventQueue
    dead_letters: DeadLetterService
    scheduler: RetryScheduler

    @classmethod
    def build(
        cls,
        config: Settings = settings,
        *,
        store: EventStore | None = None,
        metrics: MetricsRegistry | None = None,
        now: Callable[[], datetime] = _now_utc,
        sleep: Callable[[float], None] = time.sleep,
        jitter: Callable[[float], float] | None = None,
    ) -> "IngestionPipeline":
        store = store if store is not None else create_event_store(config)
        metrics = metrics or MetricsRegistry(max_label_values=config.metrics_max_label_values)
        dead_letters = DeadLetterService(
            store,
            metrics=metrics,
            replay_max_events=config.dead_letter_replay_max_events,
            now=now,
        )
        orphan_queue = OrphanedEventQueue.from_settings(
            config,
            store,
            dead_letters,
            metrics=metrics,
            now=now,
            jitter=jitter,
        )
        ingestion = IngestionService(
            store,
            orphan_queue,
            metrics=metrics,
            max_transient_retries=config.ingest_transient_max_retries,
            transient_backoff_ms=config.ingest_transient_backoff_ms,
            transient_max_backoff_ms=config.ingest_transient_max_backoff_ms,
            transient_backoff_multiplier=config.ingest_transient_backoff_multiplier,
            now=now,
            sleep=sleep,
        )
        scheduler = RetryScheduler(
            orphan_queue,
            ingestion.attempt,
            interval_seconds=config.orphan_processor_interval_seconds,
            drain_timeout_seconds=config.orphan_drain_timeout_seconds,
        )
        return cls(
            config=config,
            store=store,
            metrics=metrics,
            ingestion=ingestion,
            orphan_queue=orphan_queue,
            dead_letters=dead_letters,
            scheduler=scheduler,
        )

    def start(self) -> None:
        if self.config.orphan_processor_enabled:
            self.scheduler.start()
        log_event(
            "ingestion_pipeline_started",
            backend=self.config.event_store_backend,
            orphan_processor_enabled=self.config.orphan_processor_enabled,
        )

    def stop(self) -> None:
        self.scheduler.stop(drain=self.config.orphan_processor_enabled)
        self.store.close()
        log_event("ingestion_pipeline_stopped")

    def ingest(self, payload: CampaignEventIn, *, request_id: str | None = None) -> IngestionResult:
        return self.ingestion.ingest(payload, request_id=request_id)

    def run_retry_cycle(self) -> CycleResult:
        return self.orphan_queue.process_cycle(self.ingestion.attempt)

    def replay_dead_letters(self, entry_ids: list[str], *, request_id: str | None = None) -> dict[str, Any]:
        return self.dead_letters.replay(entry_ids, self.ingestion.ingest, request_id=request_id)


def get_pipeline(request: Request) -> IngestionPipeline:
    return request.app.state.pipeline
