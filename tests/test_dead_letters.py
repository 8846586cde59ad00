from dataclasses import replace
from datetime import datetime, timezone

import pytest

from campaign_ingest.models.events import CampaignEventIn
from campaign_ingest.services.dead_letters import ReplayLimitExceeded
from conftest import INSTANCE_ID, build_pipeline


TS = datetime(2024, 5, 1, 11, 59, tzinfo=timezone.utc)


def _event(**overrides) -> CampaignEventIn:
    body = {
        "enrollment_id": "enr-late",
        "event_type": "clicked",
        "channel": "email",
        "timestamp": TS.isoformat(),
        "provider_event_id": "evt-dlq-1",
    }
    body.update(overrides)
    return CampaignEventIn.model_validate(body)


def _dead_letter(pipeline, clock, **overrides) -> str:
    pipeline.ingest(_event(**overrides))
    for _ in range(pipeline.orphan_queue.max_attempts):
        clock.advance(7200)
        pipeline.run_retry_cycle()
    rows, _total = pipeline.dead_letters.list(status="failed")
    assert rows, "expected the event to reach the dead-letter store"
    return rows[0].id


def test_replay_records_event_once_enrollment_exists(pipeline, clock, seeded_store):
    entry_id = _dead_letter(pipeline, clock)
    seeded_store.add_enrollment("enr-late", instance_id=INSTANCE_ID, contact_id="contact-late")

    report = pipeline.replay_dead_letters([entry_id])

    assert report["summary"] == {"requested": 1, "replayed": 1, "failed": 0, "skipped": 0}
    assert report["results"][0]["outcome"] == "recorded"
    entry = pipeline.dead_letters.get(entry_id)
    assert entry.status == "replayed"
    assert entry.replay_count == 1
    assert entry.replayed_at is not None
    assert seeded_store.get_instance(INSTANCE_ID).total_clicked == 1


def test_replay_does_not_duplicate_already_recorded_event(pipeline, clock, seeded_store):
    entry_id = _dead_letter(pipeline, clock)
    seeded_store.add_enrollment("enr-late", instance_id=INSTANCE_ID, contact_id="contact-late")
    pipeline.ingest(_event())

    report = pipeline.replay_dead_letters([entry_id, entry_id])

    assert report["summary"]["requested"] == 1
    assert report["results"][0]["outcome"] == "duplicate"
    assert seeded_store.get_instance(INSTANCE_ID).total_clicked == 1
    assert len(seeded_store.list_events(enrollment_id="enr-late")) == 1


def test_replayed_entries_are_skipped_and_never_deleted(pipeline, clock, seeded_store):
    entry_id = _dead_letter(pipeline, clock)
    seeded_store.add_enrollment("enr-late", instance_id=INSTANCE_ID, contact_id="contact-late")
    pipeline.replay_dead_letters([entry_id])

    again = pipeline.replay_dead_letters([entry_id, "missing-id"])

    statuses = {item["id"]: item["status"] for item in again["results"]}
    assert statuses == {entry_id: "skipped", "missing-id": "not_found"}
    assert entry_id in seeded_store.dead_letters


def test_replay_skips_entry_claimed_after_it_was_read(pipeline, clock, seeded_store, monkeypatch):
    entry_id = _dead_letter(pipeline, clock)
    seeded_store.add_enrollment("enr-late", instance_id=INSTANCE_ID, contact_id="contact-late")
    stale = seeded_store.get_dead_letter(entry_id)
    seeded_store.update_dead_letter(entry_id, status="replaying")
    monkeypatch.setattr(seeded_store, "get_dead_letter", lambda _entry_id: replace(stale))
    ingested = []

    report = pipeline.dead_letters.replay([entry_id], lambda payload, **_kw: ingested.append(payload))

    assert report["summary"] == {"requested": 1, "replayed": 0, "failed": 0, "skipped": 1}
    assert report["results"][0]["detail"] == "entry claimed by a concurrent replay"
    assert ingested == []
    assert seeded_store.dead_letters[entry_id].status == "replaying"
    assert seeded_store.dead_letters[entry_id].replay_count == 0


def test_conditional_update_only_applies_to_expected_status(pipeline, clock, seeded_store):
    entry_id = _dead_letter(pipeline, clock)

    first = seeded_store.update_dead_letter(entry_id, expected_status="failed", status="replaying")
    second = seeded_store.update_dead_letter(entry_id, expected_status="failed", status="replaying")

    assert first.status == "replaying"
    assert second is None


def test_replay_without_enrollment_requeues_and_counts_as_replayed(pipeline, clock, seeded_store):
    entry_id = _dead_letter(pipeline, clock)

    report = pipeline.replay_dead_letters([entry_id])

    assert report["results"][0]["status"] == "replayed"
    assert report["results"][0]["outcome"] == "deferred"
    assert seeded_store.count_orphans() == 1


def test_replay_dropped_at_capacity_goes_back_to_failed(clock, seeded_store):
    pipeline = build_pipeline(clock, seeded_store, orphan_queue_max_size=1)
    entry_id = _dead_letter(pipeline, clock)
    pipeline.orphan_queue.enqueue(_event(provider_event_id="filler"), reason="enrollment_not_found")

    report = pipeline.replay_dead_letters([entry_id])

    assert report["summary"]["failed"] == 1
    entry = pipeline.dead_letters.get(entry_id)
    assert entry.status == "failed"
    assert entry.failure_reason.startswith("replay_dropped")
    assert entry.replay_count == 1


def test_replay_request_is_bounded(clock, seeded_store):
    pipeline = build_pipeline(clock, seeded_store, dead_letter_replay_max_events=2)

    with pytest.raises(ReplayLimitExceeded):
        pipeline.replay_dead_letters(["a", "b", "c"])


def test_ignore_marks_entry_and_stats_group_by_status(pipeline, clock, seeded_store):
    first = _dead_letter(pipeline, clock, provider_event_id="evt-a")
    _dead_letter(pipeline, clock, provider_event_id="evt-b", event_type="opened")

    ignored = pipeline.dead_letters.ignore(first)
    stats = pipeline.dead_letters.stats()

    assert ignored.status == "ignored"
    assert stats["total"] == 2
    assert {"status": "ignored", "count": 1} in stats["by_status"]
    assert {"status": "failed", "event_type": "opened", "count": 1} in stats["by_status_and_type"]
    assert pipeline.replay_dead_letters([first])["results"][0]["status"] == "skipped"
