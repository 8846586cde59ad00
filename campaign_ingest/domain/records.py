from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal


OrphanOutcome = Literal["pending", "succeeded", "dropped_capacity", "moved_to_dlq"]
DeadLetterStatus = Literal["failed", "replaying", "replayed", "ignored"]


@dataclass
class CampaignInstance:
    id: str
    status: str
    name: str | None = None
    template_id: str | None = None
    total_enrolled: int = 0
    total_sent: int = 0
    total_delivered: int = 0
    total_opened: int = 0
    total_clicked: int = 0
    total_replied: int = 0
    started_at: datetime | None = None
    paused_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class CampaignEnrollment:
    id: str
    instance_id: str
    contact_id: str
    status: str = "enrolled"
    current_step: int = 0
    enrolled_at: datetime | None = None
    next_action_at: datetime | None = None
    completed_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class CampaignEvent:
    id: str
    enrollment_id: str
    event_type: str
    channel: str
    timestamp: datetime
    step_number: int | None = None
    provider: str | None = None
    provider_event_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None


@dataclass
class OrphanedEventRecord:
    id: str
    payload: dict[str, Any]
    enqueued_at: datetime
    next_retry_at: datetime
    retry_count: int = 0
    event_type: str | None = None
    channel: str | None = None
    enrollment_id: str | None = None
    provider_event_id: str | None = None
    last_error: str | None = None
    claimed_until: datetime | None = None
    outcome: OrphanOutcome = "pending"


@dataclass
class DeadLetterEvent:
    id: str
    event_data: dict[str, Any]
    failure_reason: str
    attempts: int
    first_attempted_at: datetime
    last_attempted_at: datetime
    status: DeadLetterStatus = "failed"
    replay_count: int = 0
    replayed_at: datetime | None = None
    event_type: str | None = None
    channel: str | None = None
    enrollment_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class SuperAdmin:
    id: str
    email: str
    password_hash: str | None = None
    name: str | None = None
