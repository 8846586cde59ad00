from datetime import datetime, timedelta, timezone

import pytest

from campaign_ingest.config import Settings
from campaign_ingest.observability import MetricsRegistry
from campaign_ingest.pipeline import IngestionPipeline
from campaign_ingest.store.memory import MemoryEventStore


INSTANCE_ID = "inst-1"
ENROLLMENT_ID = "enr-1"


class FakeClock:
    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> datetime:
        self.current = self.current + timedelta(seconds=seconds)
        return self.current


def make_settings(**overrides) -> Settings:
    values = {
        "event_store_backend": "memory",
        "jwt_secret": "test-secret",
        "orphan_enqueue_delay_seconds": 0.0,
        "orphan_retry_jitter_seconds": 0.0,
        "orphan_retry_base_delay_seconds": 5.0,
        "orphan_retry_max_delay_seconds": 3600.0,
        "orphan_retry_max_attempts": 6,
        "orphan_processor_enabled": False,
        "ingest_transient_backoff_ms": 0,
    }
    values.update(overrides)
    return Settings(**values)


def build_pipeline(clock: FakeClock, store: MemoryEventStore | None = None, **overrides) -> IngestionPipeline:
    store = store if store is not None else MemoryEventStore(lock_timeout_seconds=1.0, now=clock)
    return IngestionPipeline.build(
        make_settings(**overrides),
        store=store,
        metrics=MetricsRegistry(),
        now=clock,
        sleep=lambda _seconds: None,
        jitter=lambda _upper: 0.0,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock) -> MemoryEventStore:
    return MemoryEventStore(lock_timeout_seconds=1.0, now=clock)


@pytest.fixture
def seeded_store(store) -> MemoryEventStore:
    store.add_instance(INSTANCE_ID, name="Spring outreach")
    store.add_enrollment(ENROLLMENT_ID, instance_id=INSTANCE_ID, contact_id="contact-1")
    return store


@pytest.fixture
def pipeline(clock, seeded_store) -> IngestionPipeline:
    return build_pipeline(clock, seeded_store)
