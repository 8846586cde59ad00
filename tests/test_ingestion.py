import threading
from datetime import datetime, timezone

from campaign_ingest.domain.outcomes import Deferred, Dropped, Duplicate, Fatal, Recorded
from campaign_ingest.domain.store_errors import LockTimeoutError, StoreError
from campaign_ingest.models.events import CampaignEventIn
from campaign_ingest.store.memory import MemorySession
from conftest import ENROLLMENT_ID, INSTANCE_ID, build_pipeline


TS = datetime(2024, 5, 1, 11, 59, tzinfo=timezone.utc)


def _event(**overrides) -> CampaignEventIn:
    body = {
        "enrollment_id": ENROLLMENT_ID,
        "event_type": "opened",
        "channel": "email",
        "timestamp": TS.isoformat(),
        "provider": "smartlead",
        "provider_event_id": "sl-evt-1",
    }
    body.update(overrides)
    return CampaignEventIn.model_validate(body)


def test_new_event_records_row_and_increments_one_counter(pipeline, seeded_store):
    result = pipeline.ingest(_event())

    assert isinstance(result, Recorded)
    assert result.counter == "total_opened"
    instance = seeded_store.get_instance(INSTANCE_ID)
    assert instance.total_opened == 1
    assert instance.total_sent == 0
    assert len(seeded_store.list_events(enrollment_id=ENROLLMENT_ID)) == 1
    assert pipeline.metrics.counter_value("ingest.events.recorded") == 1


def test_same_provider_event_id_is_recorded_once(pipeline, seeded_store):
    first = pipeline.ingest(_event())
    second = pipeline.ingest(_event(metadata={"retry": True}))

    assert isinstance(first, Recorded)
    assert isinstance(second, Duplicate)
    assert second.event.id == first.event.id
    assert seeded_store.get_instance(INSTANCE_ID).total_opened == 1
    assert len(seeded_store.events) == 1
    assert pipeline.metrics.counter_value("ingest.events.duplicate") == 1


def test_fallback_key_dedupes_without_provider_event_id(pipeline, seeded_store):
    first = pipeline.ingest(_event(provider_event_id=None))
    second = pipeline.ingest(_event(provider_event_id=None))
    later = pipeline.ingest(_event(provider_event_id=None, timestamp="2024-05-01T12:30:00+00:00"))

    assert isinstance(first, Recorded)
    assert isinstance(second, Duplicate)
    assert isinstance(later, Recorded)
    assert seeded_store.get_instance(INSTANCE_ID).total_opened == 2


def test_event_types_without_counter_are_recorded_without_increment(pipeline, seeded_store):
    result = pipeline.ingest(_event(event_type="connection_accepted", channel="linkedin"))

    assert isinstance(result, Recorded)
    assert result.counter is None
    instance = seeded_store.get_instance(INSTANCE_ID)
    assert instance.total_opened == 0
    assert instance.total_sent == 0


def test_bounce_sets_terminal_status_and_late_open_still_counts(pipeline, seeded_store):
    bounced = pipeline.ingest(_event(event_type="bounced", provider_event_id="sl-bounce"))
    late_open = pipeline.ingest(_event(event_type="opened", provider_event_id="sl-open-late"))

    assert isinstance(bounced, Recorded)
    assert bounced.enrollment_status == "bounced"
    assert isinstance(late_open, Recorded)
    assert late_open.enrollment_status is None
    assert seeded_store.get_enrollment(ENROLLMENT_ID).status == "bounced"
    assert seeded_store.get_instance(INSTANCE_ID).total_opened == 1
    assert pipeline.metrics.counter_value("ingest.events.after_terminal_status") == 1


def test_terminal_status_is_never_left(pipeline, seeded_store):
    pipeline.ingest(_event(event_type="unsubscribed", provider_event_id="u-1"))
    pipeline.ingest(_event(event_type="replied", provider_event_id="r-1"))
    pipeline.ingest(_event(event_type="bounced", provider_event_id="b-1"))

    assert seeded_store.get_enrollment(ENROLLMENT_ID).status == "unsubscribed"
    assert seeded_store.get_instance(INSTANCE_ID).total_replied == 1


def test_reply_completes_enrollment(pipeline, seeded_store):
    result = pipeline.ingest(_event(event_type="replied", provider_event_id="r-1"))

    assert isinstance(result, Recorded)
    assert result.counter == "total_replied"
    enrollment = seeded_store.get_enrollment(ENROLLMENT_ID)
    assert enrollment.status == "completed"
    assert enrollment.completed_at is not None


def test_missing_enrollment_id_is_deferred_without_touching_events(pipeline, seeded_store):
    result = pipeline.ingest(_event(enrollment_id=None))

    assert isinstance(result, Deferred)
    assert result.reason == "missing_enrollment_id"
    assert result.queue.retained is True
    assert seeded_store.events == {}
    assert seeded_store.count_orphans() == 1


def test_unknown_enrollment_is_deferred(pipeline, seeded_store):
    result = pipeline.ingest(_event(enrollment_id="enr-not-yet"))

    assert isinstance(result, Deferred)
    assert result.reason == "enrollment_not_found"
    assert seeded_store.count_orphans() == 1
    assert seeded_store.get_instance(INSTANCE_ID).total_opened == 0


def test_missing_instance_is_fatal_and_not_queued(pipeline, seeded_store):
    seeded_store.add_enrollment("enr-dangling", instance_id="inst-gone", contact_id="contact-9")

    result = pipeline.ingest(_event(enrollment_id="enr-dangling"))

    assert isinstance(result, Fatal)
    assert result.reason == "instance_missing"
    assert result.instance_id == "inst-gone"
    assert seeded_store.count_orphans() == 0
    assert seeded_store.events == {}
    assert pipeline.metrics.counter_value("ingest.events.fatal") == 1


def test_transient_errors_are_retried_then_recorded(pipeline, seeded_store, monkeypatch):
    real_attempt = pipeline.ingestion.attempt
    calls = {"count": 0}

    def flaky_attempt(payload):
        calls["count"] += 1
        if calls["count"] < 3:
            raise LockTimeoutError("lock timeout", sqlstate="55P03")
        return real_attempt(payload)

    monkeypatch.setattr(pipeline.ingestion, "attempt", flaky_attempt)

    result = pipeline.ingest(_event())

    assert isinstance(result, Recorded)
    assert calls["count"] == 3
    assert pipeline.metrics.counter_value("ingest.transaction.retries") == 2
    assert seeded_store.get_instance(INSTANCE_ID).total_opened == 1


def test_exhausted_transient_retries_defer_to_queue(clock, seeded_store, monkeypatch):
    pipeline = build_pipeline(clock, seeded_store, ingest_transient_max_retries=2)
    sleeps = []
    pipeline.ingestion._sleep = sleeps.append
    pipeline.ingestion._backoff_seconds = 0.05

    def always_locked(_payload):
        raise LockTimeoutError("lock timeout", sqlstate="55P03")

    monkeypatch.setattr(pipeline.ingestion, "attempt", always_locked)

    result = pipeline.ingest(_event())

    assert isinstance(result, Deferred)
    assert result.reason == "transient_exhausted"
    assert result.queue.retained is True
    assert len(sleeps) == 2
    assert sleeps[1] > sleeps[0]
    assert seeded_store.count_orphans() == 1


def test_permanent_store_error_is_deferred_and_retained(pipeline, seeded_store, monkeypatch):
    def broken(_payload):
        raise StoreError("relation campaign_events does not exist", sqlstate="42P01")

    monkeypatch.setattr(pipeline.ingestion, "attempt", broken)

    result = pipeline.ingest(_event())

    assert isinstance(result, Deferred)
    assert result.reason == "store_error"
    assert result.queue.retained is True
    assert "does not exist" in result.error
    assert seeded_store.count_orphans() == 1
    assert pipeline.metrics.counter_value("ingest.events.fatal") == 0


def test_failed_transaction_rolls_back_event_row(pipeline, seeded_store, monkeypatch):
    def explode(*_args, **_kwargs):
        raise StoreError("counter update failed")

    monkeypatch.setattr("campaign_ingest.services.ingestion.apply_increment", explode)

    result = pipeline.ingest(_event())

    assert isinstance(result, Deferred)
    assert result.reason == "store_error"
    assert seeded_store.events == {}
    assert seeded_store.get_instance(INSTANCE_ID).total_opened == 0


def test_concurrent_events_increment_counter_exactly_n_times(pipeline, seeded_store):
    workers = 16
    barrier = threading.Barrier(workers)
    results = []
    lock = threading.Lock()

    def send(index: int):
        barrier.wait()
        outcome = pipeline.ingest(_event(event_type="sent", provider_event_id=f"sent-{index}"))
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=send, args=(i,)) for i in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert all(isinstance(r, Recorded) for r in results)
    assert seeded_store.get_instance(INSTANCE_ID).total_sent == workers
    assert len(seeded_store.events) == workers


def test_concurrent_duplicates_record_once(pipeline, seeded_store):
    workers = 8
    barrier = threading.Barrier(workers)
    results = []
    lock = threading.Lock()

    def send():
        barrier.wait()
        outcome = pipeline.ingest(_event(provider_event_id="same-evt"))
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=send) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sum(1 for r in results if isinstance(r, Recorded)) == 1
    assert sum(1 for r in results if isinstance(r, Duplicate)) == workers - 1
    assert seeded_store.get_instance(INSTANCE_ID).total_opened == 1


def test_worked_example_late_enrollment(clock, store):
    pipeline = build_pipeline(clock, store)
    store.add_instance(INSTANCE_ID, total_opened=3)

    deferred = pipeline.ingest(_event(provider_event_id="evt-42"))
    assert isinstance(deferred, Deferred)

    store.add_enrollment(ENROLLMENT_ID, instance_id=INSTANCE_ID, contact_id="contact-1")
    recorded = pipeline.ingest(_event(provider_event_id="evt-42"))
    assert isinstance(recorded, Recorded)
    assert store.get_instance(INSTANCE_ID).total_opened == 4

    repeat = pipeline.ingest(_event(provider_event_id="evt-42"))
    assert isinstance(repeat, Duplicate)
    assert store.get_instance(INSTANCE_ID).total_opened == 4
    assert len(store.list_events(enrollment_id=ENROLLMENT_ID)) == 1


def test_capacity_drop_returns_dropped(clock, seeded_store):
    pipeline = build_pipeline(clock, seeded_store, orphan_queue_max_size=1)

    first = pipeline.ingest(_event(enrollment_id=None, provider_event_id="a"))
    second = pipeline.ingest(_event(enrollment_id=None, provider_event_id="b"))

    assert isinstance(first, Deferred)
    assert isinstance(second, Dropped)
    assert second.queue.retained is False
    assert pipeline.metrics.counter_value("ingest.events.dropped") == 1


def test_concurrent_terminal_events_keep_first_committed_status(pipeline, seeded_store, monkeypatch):
    # Both transactions read the enrollment as active before either takes the instance lock.
    barrier = threading.Barrier(2, timeout=5)
    original_get = MemorySession.get_enrollment
    original_update = MemorySession.update_enrollment_status
    writes = []

    def racing_get(self, enrollment_id):
        enrollment = original_get(self, enrollment_id)
        barrier.wait()
        return enrollment

    def recording_update(self, enrollment_id, status, *, now):
        applied = original_update(self, enrollment_id, status, now=now)
        writes.append((status, applied))
        return applied

    monkeypatch.setattr(MemorySession, "get_enrollment", racing_get)
    monkeypatch.setattr(MemorySession, "update_enrollment_status", recording_update)
    results = {}

    def send(event_type: str):
        results[event_type] = pipeline.ingest(_event(event_type=event_type, provider_event_id=f"race-{event_type}"))

    threads = [threading.Thread(target=send, args=(event_type,)) for event_type in ("bounced", "replied")]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert all(isinstance(r, Recorded) for r in results.values())
    assert len(writes) == 1
    first_status, applied = writes[0]
    assert applied is True
    assert seeded_store.get_enrollment(ENROLLMENT_ID).status == first_status
    assert sorted(r.enrollment_status or "" for r in results.values()) == ["", first_status]
    assert seeded_store.get_instance(INSTANCE_ID).total_replied == 1


def test_status_write_is_refused_once_enrollment_is_terminal(seeded_store, clock):
    with seeded_store.transaction() as session:
        session.lock_instance(INSTANCE_ID)
        assert session.update_enrollment_status(ENROLLMENT_ID, "bounced", now=clock()) is True
        assert session.update_enrollment_status(ENROLLMENT_ID, "completed", now=clock()) is False

    assert seeded_store.get_enrollment(ENROLLMENT_ID).status == "bounced"
