"""Versioned DDL for the event store.

Each migration runs in its own transaction and is recorded in
``schema_migrations``; already-applied versions are skipped.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class Migration:
    version: int
    name: str
    sql: str


CAMPAIGN_TABLES = """
CREATE EXTENSION IF NOT EXISTS pgcrypto;

-- 1. campaign_instances
CREATE TABLE IF NOT EXISTS campaign_instances (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    template_id UUID,
    name VARCHAR(255) NOT NULL DEFAULT '',
    status VARCHAR(20) NOT NULL DEFAULT 'draft'
        CHECK (status IN ('draft', 'active', 'paused', 'completed', 'failed')),
    total_enrolled INTEGER NOT NULL DEFAULT 0 CHECK (total_enrolled >= 0),
    total_sent INTEGER NOT NULL DEFAULT 0 CHECK (total_sent >= 0),
    total_opened INTEGER NOT NULL DEFAULT 0 CHECK (total_opened >= 0),
    total_clicked INTEGER NOT NULL DEFAULT 0 CHECK (total_clicked >= 0),
    total_replied INTEGER NOT NULL DEFAULT 0 CHECK (total_replied >= 0),
    started_at TIMESTAMPTZ,
    paused_at TIMESTAMPTZ,
    completed_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_campaign_instances_status ON campaign_instances(status);
CREATE INDEX IF NOT EXISTS idx_campaign_instances_template_id ON campaign_instances(template_id);

-- 2. campaign_enrollments
CREATE TABLE IF NOT EXISTS campaign_enrollments (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    instance_id UUID NOT NULL REFERENCES campaign_instances(id) ON DELETE CASCADE,
    contact_id VARCHAR(255) NOT NULL,
    status VARCHAR(20) NOT NULL DEFAULT 'enrolled'
        CHECK (status IN ('enrolled', 'active', 'paused', 'completed', 'unsubscribed', 'bounced')),
    current_step INTEGER NOT NULL DEFAULT 0,
    enrolled_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    next_action_at TIMESTAMPTZ,
    completed_at TIMESTAMPTZ,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    CONSTRAINT campaign_enrollments_instance_contact UNIQUE (instance_id, contact_id)
);
CREATE INDEX IF NOT EXISTS idx_campaign_enrollments_instance_id ON campaign_enrollments(instance_id);
CREATE INDEX IF NOT EXISTS idx_campaign_enrollments_next_action
    ON campaign_enrollments(next_action_at) WHERE status IN ('enrolled', 'active');

-- 3. campaign_events
CREATE TABLE IF NOT EXISTS campaign_events (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    enrollment_id UUID NOT NULL REFERENCES campaign_enrollments(id) ON DELETE CASCADE,
    event_type VARCHAR(50) NOT NULL
        CHECK (event_type IN ('sent', 'delivered', 'opened', 'clicked', 'replied', 'bounced',
                              'unsubscribed', 'connection_accepted', 'connection_rejected')),
    channel VARCHAR(20) NOT NULL CHECK (channel IN ('email', 'linkedin')),
    step_number INTEGER,
    "timestamp" TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    provider VARCHAR(50),
    provider_event_id VARCHAR(255),
    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_campaign_events_enrollment_id ON campaign_events(enrollment_id);
CREATE INDEX IF NOT EXISTS idx_campaign_events_type_timestamp ON campaign_events(event_type, "timestamp");
"""

TOTAL_DELIVERED_COLUMN = """
ALTER TABLE campaign_instances
    ADD COLUMN IF NOT EXISTS total_delivered INTEGER NOT NULL DEFAULT 0 CHECK (total_delivered >= 0);
"""

EVENT_DEDUP_INDEXES = """
CREATE UNIQUE INDEX IF NOT EXISTS idx_campaign_events_dedup
    ON campaign_events (provider_event_id)
    WHERE provider_event_id IS NOT NULL;
CREATE UNIQUE INDEX IF NOT EXISTS idx_campaign_events_fallback_dedup
    ON campaign_events (enrollment_id, event_type, "timestamp")
    WHERE provider_event_id IS NULL;
"""

ORPHAN_AND_DEAD_LETTER_TABLES = """
CREATE TABLE IF NOT EXISTS orphaned_events (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    payload JSONB NOT NULL,
    event_type VARCHAR(50),
    channel VARCHAR(20),
    enrollment_id VARCHAR(255),
    provider_event_id VARCHAR(255),
    enqueued_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    retry_count INTEGER NOT NULL DEFAULT 0,
    next_retry_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    last_error TEXT,
    claimed_until TIMESTAMPTZ,
    outcome VARCHAR(20) NOT NULL DEFAULT 'pending'
        CHECK (outcome IN ('pending', 'succeeded', 'dropped_capacity', 'moved_to_dlq'))
);
CREATE INDEX IF NOT EXISTS idx_orphaned_events_due ON orphaned_events(next_retry_at) WHERE outcome = 'pending';
CREATE INDEX IF NOT EXISTS idx_orphaned_events_enqueued_at ON orphaned_events(enqueued_at);

CREATE TABLE IF NOT EXISTS dead_letter_events (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    event_data JSONB NOT NULL,
    failure_reason TEXT NOT NULL,
    attempts INTEGER NOT NULL,
    first_attempted_at TIMESTAMPTZ NOT NULL,
    last_attempted_at TIMESTAMPTZ NOT NULL,
    status VARCHAR(20) NOT NULL DEFAULT 'failed'
        CHECK (status IN ('failed', 'replaying', 'replayed', 'ignored')),
    replay_count INTEGER NOT NULL DEFAULT 0,
    replayed_at TIMESTAMPTZ,
    event_type VARCHAR(50),
    channel VARCHAR(50),
    enrollment_id VARCHAR(255),
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_dead_letter_events_status ON dead_letter_events(status);
CREATE INDEX IF NOT EXISTS idx_dead_letter_events_created_at ON dead_letter_events(created_at);
CREATE INDEX IF NOT EXISTS idx_dead_letter_events_event_type ON dead_letter_events(event_type);
"""

ADMIN_AND_OBSERVABILITY_TABLES = """
CREATE TABLE IF NOT EXISTS super_admins (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    email VARCHAR(255) UNIQUE NOT NULL,
    password_hash VARCHAR(255) NOT NULL,
    name VARCHAR(255),
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS observability_metric_snapshots (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    source VARCHAR(100) NOT NULL,
    request_id VARCHAR(255),
    counters JSONB NOT NULL DEFAULT '{}'::jsonb,
    histograms JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_metric_snapshots_created_at ON observability_metric_snapshots(created_at);
"""

MIGRATIONS: tuple[Migration, ...] = (
    Migration(1, "create_campaign_tables", CAMPAIGN_TABLES),
    Migration(2, "add_total_delivered_column", TOTAL_DELIVERED_COLUMN),
    Migration(3, "add_event_dedup_indexes", EVENT_DEDUP_INDEXES),
    Migration(4, "create_orphan_and_dead_letter_tables", ORPHAN_AND_DEAD_LETTER_TABLES),
    Migration(5, "create_admin_and_observability_tables", ADMIN_AND_OBSERVABILITY_TABLES),
)

MIGRATIONS_TABLE = """
CREATE TABLE IF NOT EXISTS schema_migrations (
    version INTEGER PRIMARY KEY,
    name VARCHAR(255) NOT NULL,
    applied_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""


def apply_migrations(conn: Any, migrations: tuple[Migration, ...] = MIGRATIONS) -> list[int]:
    """Apply pending migrations in version order; returns the versions applied."""
    with conn:
        with conn.cursor() as cur:
            cur.execute(MIGRATIONS_TABLE)
            cur.execute("SELECT version FROM schema_migrations")
            applied = {row[0] for row in cur.fetchall()}

    newly_applied: list[int] = []
    for migration in sorted(migrations, key=lambda m: m.version):
        if migration.version in applied:
            continue
        with conn:
            with conn.cursor() as cur:
                cur.execute(migration.sql)
                cur.execute(
                    "INSERT INTO schema_migrations (version, name) VALUES (%s, %s)",
                    (migration.version, migration.name),
                )
        newly_applied.append(migration.version)
    return newly_applied
