from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from campaign_ingest.domain.normalization import Channel, EventType, normalize_channel, normalize_event_type


class CampaignEventIn(BaseModel):
    """Inbound webhook event, already authenticated upstream."""

    model_config = ConfigDict(extra="ignore")

    enrollment_id: str | None = None
    event_type: EventType
    channel: Channel
    step_number: int | None = Field(default=None, ge=0)
    timestamp: datetime | None = None
    provider: str | None = Field(default=None, max_length=50)
    provider_event_id: str | None = Field(default=None, max_length=255)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("enrollment_id", "provider_event_id", "provider", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    @field_validator("event_type", mode="before")
    @classmethod
    def _normalize_event_type(cls, value: Any) -> Any:
        return normalize_event_type(value) or value

    @field_validator("channel", mode="before")
    @classmethod
    def _normalize_channel(cls, value: Any) -> Any:
        return normalize_channel(value) or value

    @field_validator("timestamp")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @field_validator("metadata", mode="before")
    @classmethod
    def _metadata_default(cls, value: Any) -> Any:
        return {} if value is None else value

    def stamped(self, received_at: datetime) -> "CampaignEventIn":
        """Pin a missing timestamp so retries keep the same fallback idempotency key."""
        if self.timestamp is not None:
            return self
        return self.model_copy(update={"timestamp": received_at})

    def idempotency_key(self) -> tuple[Any, ...]:
        if self.provider_event_id:
            return ("provider_event_id", self.provider_event_id)
        return ("fallback", self.enrollment_id, self.event_type, self.timestamp)

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class CampaignEventResponse(BaseModel):
    id: str
    enrollment_id: str
    event_type: EventType
    channel: Channel
    step_number: int | None = None
    timestamp: datetime
    provider: str | None = None
    provider_event_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None


class EventRecordedResponse(BaseModel):
    status: Literal["recorded"] = "recorded"
    event: CampaignEventResponse
    counter: str | None = None
    enrollment_status: str | None = None


class EventDuplicateResponse(BaseModel):
    status: Literal["duplicate"] = "duplicate"
    event_id: str
    message: str = "Duplicate event ignored"


class EventDeferredResponse(BaseModel):
    status: Literal["deferred"] = "deferred"
    reason: str
    retryable: bool = True
    retained: bool = True
    queue_id: str | None = None
    message: str = "Enrollment not yet available, will retry automatically"


class EventDroppedResponse(BaseModel):
    status: Literal["dropped"] = "dropped"
    reason: str
    retained: bool = False
    queue_size: int
    message: str = "Orphaned event queue is at capacity; event was not retained"
