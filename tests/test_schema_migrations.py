from campaign_ingest.store.schema import MIGRATIONS, Migration, apply_migrations


class FakeCursor:
    def __init__(self, conn):
        self.conn = conn

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, query, params=None):
        self.conn.executed.append((query, params))
        if query.startswith("INSERT INTO schema_migrations"):
            self.conn.applied.add(params[0])

    def fetchall(self):
        return [(version,) for version in sorted(self.conn.applied)]


class FakeConnection:
    def __init__(self, applied=()):
        self.applied = set(applied)
        self.executed = []
        self.transactions = 0

    def cursor(self):
        return FakeCursor(self)

    def __enter__(self):
        self.transactions += 1
        return self

    def __exit__(self, exc_type, exc, tb):
        return False


def test_fresh_database_applies_every_migration_in_order():
    conn = FakeConnection()

    applied = apply_migrations(conn)

    assert applied == [m.version for m in MIGRATIONS]
    assert conn.transactions == len(MIGRATIONS) + 1


def test_applied_versions_are_skipped():
    conn = FakeConnection(applied={1, 2, 3})

    applied = apply_migrations(conn)

    assert applied == [4, 5]
    ddl = [query for query, _ in conn.executed]
    assert not any("CREATE TABLE IF NOT EXISTS campaign_instances" in q for q in ddl)


def test_dedup_indexes_cover_both_idempotency_keys():
    dedup = next(m for m in MIGRATIONS if m.name == "add_event_dedup_indexes")

    assert "ON campaign_events (provider_event_id)" in dedup.sql
    assert "WHERE provider_event_id IS NOT NULL" in dedup.sql
    assert 'ON campaign_events (enrollment_id, event_type, "timestamp")' in dedup.sql
    assert "WHERE provider_event_id IS NULL" in dedup.sql


def test_custom_migrations_run_sorted():
    conn = FakeConnection()
    migrations = (Migration(2, "second", "SELECT 2"), Migration(1, "first", "SELECT 1"))

    assert apply_migrations(conn, migrations) == [1, 2]
