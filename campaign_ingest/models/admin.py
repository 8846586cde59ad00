from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, EmailStr, Field


DeadLetterStatusFilter = Literal["failed", "replaying", "replayed", "ignored"]


class DeadLetterResponse(BaseModel):
    id: str
    event_data: dict[str, Any]
    failure_reason: str
    attempts: int
    first_attempted_at: datetime
    last_attempted_at: datetime
    status: str
    replay_count: int = 0
    replayed_at: datetime | None = None
    event_type: str | None = None
    channel: str | None = None
    enrollment_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class DeadLetterListResponse(BaseModel):
    items: list[DeadLetterResponse]
    total: int
    limit: int
    offset: int


class DeadLetterStatusCount(BaseModel):
    status: str
    count: int


class DeadLetterStatusTypeCount(BaseModel):
    status: str
    event_type: str | None = None
    count: int


class DeadLetterStatsResponse(BaseModel):
    by_status: list[DeadLetterStatusCount]
    by_status_and_type: list[DeadLetterStatusTypeCount]
    total: int


class DeadLetterReplayRequest(BaseModel):
    ids: list[str] = Field(min_length=1)


class DeadLetterReplayItem(BaseModel):
    id: str
    status: Literal["replayed", "failed", "not_found", "skipped"]
    outcome: str | None = None
    detail: str | None = None


class DeadLetterReplaySummary(BaseModel):
    requested: int
    replayed: int
    failed: int
    skipped: int


class DeadLetterReplayResponse(BaseModel):
    summary: DeadLetterReplaySummary
    results: list[DeadLetterReplayItem]


class OrphanQueueStatusResponse(BaseModel):
    size: int
    max_size: int
    drop_policy: str
    ready_for_retry: int
    stale: int
    by_attempts: dict[str, int]
    oldest_enqueued_at: str | None = None
    processing: bool
    healthy: bool


class SuperAdminLoginRequest(BaseModel):
    email: EmailStr
    password: str


class SuperAdminLoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"


class SuperAdminMeResponse(BaseModel):
    super_admin_id: str
    email: str


class MetricsSnapshotRecord(BaseModel):
    id: str
    source: str
    request_id: str | None = None
    counters: dict
    histograms: dict = Field(default_factory=dict)
    created_at: datetime


class MetricsSnapshotFlushRequest(BaseModel):
    source: str = "super_admin_flush"
    reset_after_persist: bool = False


class MetricsSnapshotFlushResponse(BaseModel):
    persisted: bool
    source: str
    counter_count: int
