from datetime import datetime, timezone

import psycopg2.errors
import pytest

from campaign_ingest.domain.records import CampaignEvent, DeadLetterEvent, OrphanedEventRecord
from campaign_ingest.domain.store_errors import StoreError, TransientStoreError
from campaign_ingest.store.postgres import ORPHAN_QUEUE_LOCK_KEY, PostgresEventStore


NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
INSTANCE_UUID = "0b6f1a52-6f0e-4c1c-9f6e-3d2a8e1c4b10"
ENROLLMENT_UUID = "5c9d2e7a-1b3f-4a8e-b6c2-9e0f4d1a7b22"


class FakeCursor:
    def __init__(self, conn: "FakeConnection"):
        self.conn = conn
        self.rowcount = 0
        self._pending: list = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, query, params=None):
        text = query if isinstance(query, str) else repr(query)
        self.conn.executed.append((" ".join(text.split()), params))
        if self.conn.fail_on and self.conn.fail_on in text:
            raise self.conn.error
        if self.conn.results:
            self._pending = list(self.conn.results.pop(0))
        else:
            self._pending = []
        self.rowcount = len(self._pending)

    def fetchone(self):
        return self._pending.pop(0) if self._pending else None

    def fetchall(self):
        rows, self._pending = self._pending, []
        return rows


class FakeConnection:
    def __init__(self, results=None, fail_on=None, error=None):
        self.results = list(results or [])
        self.fail_on = fail_on
        self.error = error
        self.executed: list = []
        self.commits = 0
        self.rollbacks = 0
        self.closed = 0

    def cursor(self, cursor_factory=None):
        return FakeCursor(self)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is None:
            self.commits += 1
        else:
            self.rollbacks += 1
        return False


class FakePool:
    def __init__(self, conn: FakeConnection):
        self.conn = conn
        self.returned = []
        self.closed_all = False

    def getconn(self):
        return self.conn

    def putconn(self, conn, close=False):
        self.returned.append((conn, close))

    def closeall(self):
        self.closed_all = True


def _store(results=None, **kwargs):
    conn = FakeConnection(results=[[], []] + list(results or []), **kwargs)
    pool = FakePool(conn)
    return PostgresEventStore(pool, statement_timeout_ms=4000, lock_timeout_ms=1500), conn, pool


def _statements(conn):
    return [sql for sql, _ in conn.executed]


def test_every_unit_of_work_sets_local_timeouts_and_returns_connection():
    store, conn, pool = _store(results=[[{"size": 3}]])

    assert store.count_orphans() == 3
    assert conn.executed[0] == ("SET LOCAL statement_timeout = %s", (4000,))
    assert conn.executed[1] == ("SET LOCAL lock_timeout = %s", (1500,))
    assert conn.commits == 1
    assert pool.returned == [(conn, False)]


def test_transaction_locks_instance_row_for_update():
    instance_row = {
        "id": INSTANCE_UUID,
        "template_id": None,
        "name": "Spring",
        "status": "active",
        "total_enrolled": 1,
        "total_sent": 0,
        "total_delivered": 0,
        "total_opened": 3,
        "total_clicked": 0,
        "total_replied": 0,
        "started_at": None,
        "paused_at": None,
        "completed_at": None,
        "created_at": NOW,
        "updated_at": NOW,
    }
    store, conn, _pool = _store(results=[[instance_row], [{"value": 4}]])

    with store.transaction() as session:
        instance = session.lock_instance(INSTANCE_UUID)
        value = session.increment_counter(INSTANCE_UUID, "total_opened")

    assert instance.total_opened == 3
    assert value == 4
    statements = _statements(conn)
    assert statements[2].endswith("FOR UPDATE")
    assert "total_opened" in statements[3]
    assert conn.commits == 1


def test_enrollment_is_reread_for_update_and_status_write_skips_terminal_rows():
    enrollment_row = {
        "id": ENROLLMENT_UUID,
        "instance_id": INSTANCE_UUID,
        "contact_id": "c-1",
        "status": "bounced",
        "current_step": 0,
        "enrolled_at": NOW,
        "completed_at": NOW,
        "updated_at": NOW,
    }
    store, conn, _pool = _store(results=[[enrollment_row], []])

    with store.transaction() as session:
        enrollment = session.lock_enrollment(ENROLLMENT_UUID)
        applied = session.update_enrollment_status(ENROLLMENT_UUID, "completed", now=NOW)

    assert enrollment.status == "bounced"
    assert applied is False
    statements = _statements(conn)
    assert statements[2].startswith("SELECT") and statements[2].endswith("FOR UPDATE")
    assert "campaign_enrollments" in statements[2]
    assert "AND status NOT IN %s" in statements[3]
    assert conn.executed[3][1][-1] == ("bounced", "completed", "unsubscribed")


def test_increment_rejects_unknown_column():
    store, _conn, _pool = _store()

    with pytest.raises(StoreError):
        with store.transaction() as session:
            session.increment_counter(INSTANCE_UUID, "total_enrolled; DROP TABLE campaign_events")


def test_insert_event_uses_conflict_aware_insert_and_finds_existing_row():
    existing = {
        "id": "9a1d0c3e-7b2f-4e6a-8c5d-1f0e2b3a4c55",
        "enrollment_id": ENROLLMENT_UUID,
        "event_type": "opened",
        "channel": "email",
        "step_number": None,
        "timestamp": NOW,
        "provider": "smartlead",
        "provider_event_id": "sl-1",
        "metadata": {},
        "created_at": NOW,
    }
    store, conn, _pool = _store(results=[[], [existing]])
    event = CampaignEvent(
        id="11111111-2222-4333-8444-555555555555",
        enrollment_id=ENROLLMENT_UUID,
        event_type="opened",
        channel="email",
        timestamp=NOW,
        provider="smartlead",
        provider_event_id="sl-1",
    )

    with store.transaction() as session:
        stored, created = session.insert_event_if_absent(event)

    assert created is False
    assert stored.id == existing["id"]
    statements = _statements(conn)
    assert "ON CONFLICT DO NOTHING" in statements[2]
    assert "WHERE provider_event_id = %s" in statements[3]


def test_deadlock_is_translated_to_transient_error_and_rolled_back():
    store, conn, pool = _store(fail_on="FOR UPDATE", error=psycopg2.errors.DeadlockDetected("deadlock detected"))

    with pytest.raises(TransientStoreError):
        with store.transaction() as session:
            session.lock_instance(INSTANCE_UUID)

    assert conn.rollbacks == 1
    assert conn.commits == 0
    assert len(pool.returned) == 1


def test_lock_timeout_is_transient():
    store, _conn, _pool = _store(fail_on="FOR UPDATE", error=psycopg2.errors.LockNotAvailable("lock timeout"))

    with pytest.raises(TransientStoreError):
        with store.transaction() as session:
            session.lock_instance(INSTANCE_UUID)


def test_constraint_violation_is_permanent():
    store, _conn, _pool = _store(fail_on="INSERT INTO dead_letter_events", error=psycopg2.errors.CheckViolation("bad status"))

    with pytest.raises(StoreError) as excinfo:
        store.move_orphan_to_dead_letter(
            "rec-1",
            entry=_dead_letter_entry(),
        )

    assert not isinstance(excinfo.value, TransientStoreError)


def _dead_letter_entry():
    return DeadLetterEvent(
        id="22222222-3333-4444-8555-666666666666",
        event_data={"event_type": "opened"},
        failure_reason="max_retries_exceeded",
        attempts=6,
        first_attempted_at=NOW,
        last_attempted_at=NOW,
    )


def test_enqueue_takes_advisory_lock_and_rejects_at_capacity():
    store, conn, _pool = _store(results=[[], [{"size": 5}]])
    record = OrphanedEventRecord(id="33333333-4444-4555-8666-777777777777", payload={}, enqueued_at=NOW, next_retry_at=NOW)

    result = store.enqueue_orphan(record, max_size=5, drop_policy="drop_newest")

    assert result.retained is False
    assert result.outcome == "dropped_capacity"
    assert conn.executed[2] == ("SELECT pg_advisory_xact_lock(%s)", (ORPHAN_QUEUE_LOCK_KEY,))
    assert not any("INSERT INTO orphaned_events" in sql for sql in _statements(conn))


def test_enqueue_inserts_below_capacity():
    store, conn, _pool = _store(results=[[], [{"size": 1}], []])
    record = OrphanedEventRecord(id="33333333-4444-4555-8666-777777777777", payload={"a": 1}, enqueued_at=NOW, next_retry_at=NOW)

    result = store.enqueue_orphan(record, max_size=5, drop_policy="drop_newest")

    assert result.retained is True
    assert result.queue_size == 2
    assert any("INSERT INTO orphaned_events" in sql for sql in _statements(conn))


def test_claim_uses_skip_locked_lease():
    store, conn, _pool = _store(results=[[]])

    assert store.claim_due_orphans(now=NOW, limit=50, lease_until=NOW) == []
    assert "FOR UPDATE SKIP LOCKED" in _statements(conn)[2]


def test_dead_letter_update_with_expected_status_is_conditional():
    entry_id = "22222222-3333-4444-8555-666666666666"
    store, conn, _pool = _store(results=[[]])

    claimed = store.update_dead_letter(entry_id, expected_status="failed", status="replaying")

    assert claimed is None
    query, params = conn.executed[2]
    assert "AND status = %s" in query
    assert params == ("replaying", entry_id, "failed")


def test_non_uuid_ids_short_circuit():
    store, conn, _pool = _store()

    assert store.get_dead_letter("not-a-uuid") is None
    assert store.get_super_admin("not-a-uuid") is None
    assert conn.executed == []


def test_close_closes_pool():
    store, _conn, pool = _store()
    store.close()
    assert pool.closed_all is True
