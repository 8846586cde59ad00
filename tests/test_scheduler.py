import threading
import time

from campaign_ingest.models.events import CampaignEventIn
from campaign_ingest.services.scheduler import RetryScheduler
from conftest import INSTANCE_ID


def _orphan_payload() -> CampaignEventIn:
    return CampaignEventIn.model_validate(
        {
            "enrollment_id": "enr-late",
            "event_type": "sent",
            "channel": "email",
            "timestamp": "2024-05-01T11:00:00+00:00",
            "provider_event_id": "evt-sched-1",
        }
    )


def _wait_for(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def test_scheduler_runs_cycles_in_background(pipeline, seeded_store):
    seeded_store.add_enrollment("enr-late", instance_id=INSTANCE_ID, contact_id="contact-late")
    pipeline.orphan_queue.enqueue(_orphan_payload(), reason="enrollment_not_found")
    scheduler = RetryScheduler(pipeline.orphan_queue, pipeline.ingestion.attempt, interval_seconds=0.02)

    scheduler.start()
    try:
        assert _wait_for(lambda: seeded_store.count_orphans() == 0)
    finally:
        scheduler.stop(drain=False)

    assert scheduler.running is False
    assert seeded_store.get_instance(INSTANCE_ID).total_sent == 1


def test_stop_waits_for_running_cycle_then_drains(pipeline, seeded_store):
    pipeline.orphan_queue.enqueue(_orphan_payload(), reason="enrollment_not_found")
    entered = threading.Event()
    release = threading.Event()
    calls = []

    def slow_attempt(payload):
        calls.append(payload.provider_event_id)
        if len(calls) == 1:
            entered.set()
            release.wait(timeout=5)
            seeded_store.add_enrollment("enr-late", instance_id=INSTANCE_ID, contact_id="contact-late")
            return pipeline.ingestion.attempt(payload)
        return pipeline.ingestion.attempt(payload)

    scheduler = RetryScheduler(pipeline.orphan_queue, slow_attempt, interval_seconds=0.01, drain_timeout_seconds=5)
    scheduler.start()
    assert entered.wait(timeout=5)

    stopper = threading.Thread(target=scheduler.stop)
    stopper.start()
    time.sleep(0.05)
    assert stopper.is_alive()
    release.set()
    stopper.join(timeout=5)

    assert not stopper.is_alive()
    assert scheduler.running is False
    assert pipeline.orphan_queue.processing is False


def test_cycle_errors_are_logged_and_loop_continues(pipeline, seeded_store, caplog):
    calls = []

    class BrokenQueue:
        def process_cycle(self, _processor):
            calls.append(1)
            raise RuntimeError("store went away")

        def drain(self, _processor, timeout_seconds):
            return 0

    scheduler = RetryScheduler(BrokenQueue(), pipeline.ingestion.attempt, interval_seconds=0.01)
    with caplog.at_level("ERROR", logger="campaign_ingest"):
        scheduler.start()
        assert _wait_for(lambda: len(calls) >= 2)
        scheduler.stop()

    assert any("orphan_retry_cycle_failed" in record.getMessage() for record in caplog.records)


def test_pipeline_start_respects_processor_flag(pipeline):
    pipeline.start()
    assert pipeline.scheduler.running is False
    pipeline.stop()
