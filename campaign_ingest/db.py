from __future__ import annotations

from campaign_ingest.config import Settings, settings
from campaign_ingest.store.base import EventStore
from campaign_ingest.store.memory import MemoryEventStore
from campaign_ingest.store.postgres import PostgresEventStore


def create_event_store(config: Settings = settings) -> EventStore:
    """Build the configured event store backend."""
    if config.event_store_backend == "memory":
        return MemoryEventStore(lock_timeout_seconds=config.lock_timeout_ms / 1000.0)
    if config.event_store_backend != "postgres":
        raise ValueError(f"Unsupported event_store_backend: {config.event_store_backend}")
    return PostgresEventStore.from_dsn(
        config.database_url,
        min_size=config.database_pool_min_size,
        max_size=config.database_pool_max_size,
        statement_timeout_ms=config.statement_timeout_ms,
        lock_timeout_ms=config.lock_timeout_ms,
    )
