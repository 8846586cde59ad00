from __future__ import annotations

from uuid import uuid4

from campaign_ingest.domain.records import CampaignEvent
from campaign_ingest.models.events import CampaignEventIn
from campaign_ingest.store.base import StoreSession


def build_event(payload: CampaignEventIn) -> CampaignEvent:
    if not payload.enrollment_id:
        raise ValueError("a recorded campaign event requires an enrollment_id")
    if payload.timestamp is None:
        raise ValueError("campaign event timestamp must be stamped before recording")
    return CampaignEvent(
        id=str(uuid4()),
        enrollment_id=payload.enrollment_id,
        event_type=payload.event_type,
        channel=payload.channel,
        timestamp=payload.timestamp,
        step_number=payload.step_number,
        provider=payload.provider,
        provider_event_id=payload.provider_event_id,
        metadata=dict(payload.metadata),
    )


def record_or_find(session: StoreSession, payload: CampaignEventIn) -> tuple[CampaignEvent, bool]:
    """Insert the event unless its idempotency key is already taken.

    Returns the stored row and whether this call created it. The key is
    provider_event_id when present, otherwise (enrollment_id, event_type,
    timestamp).
    """
    return session.insert_event_if_absent(build_event(payload))
