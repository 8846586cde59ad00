"""Tagged results of one ingestion call.

Every path through the ingestion handler ends in exactly one of these; callers
branch on the type (or on ``kind``) instead of catching exceptions.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Union

from campaign_ingest.domain.records import CampaignEvent, OrphanOutcome


DeferReason = Literal["missing_enrollment_id", "enrollment_not_found", "transient_exhausted", "store_error"]
FatalReason = Literal["instance_missing"]


@dataclass(frozen=True)
class EnqueueResult:
    retained: bool
    outcome: OrphanOutcome
    record_id: str | None = None
    queue_size: int = 0
    evicted_record_id: str | None = None


@dataclass(frozen=True)
class Recorded:
    event: CampaignEvent
    instance_id: str
    counter: str | None = None
    enrollment_status: str | None = None
    kind: Literal["recorded"] = "recorded"


@dataclass(frozen=True)
class Duplicate:
    event: CampaignEvent
    kind: Literal["duplicate"] = "duplicate"


@dataclass(frozen=True)
class Deferred:
    reason: DeferReason
    queue: EnqueueResult | None = None
    error: str | None = None
    kind: Literal["deferred"] = "deferred"


@dataclass(frozen=True)
class Dropped:
    reason: DeferReason
    queue: EnqueueResult
    kind: Literal["dropped"] = "dropped"


@dataclass(frozen=True)
class Fatal:
    reason: FatalReason
    detail: str
    enrollment_id: str | None = None
    instance_id: str | None = None
    kind: Literal["fatal"] = "fatal"


IngestionResult = Union[Recorded, Duplicate, Deferred, Dropped, Fatal]


def is_reconciled(result: IngestionResult) -> bool:
    """True once the event is durably attached to an enrollment."""
    return isinstance(result, (Recorded, Duplicate))
