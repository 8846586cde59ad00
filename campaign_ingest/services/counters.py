from __future__ import annotations

from campaign_ingest.domain.transitions import COUNTER_BY_EVENT_TYPE
from campaign_ingest.store.base import StoreSession


def counter_for_event_type(event_type: str) -> str | None:
    return COUNTER_BY_EVENT_TYPE.get(event_type)


def apply_increment(session: StoreSession, instance_id: str, event_type: str) -> str | None:
    """Bump the instance counter for ``event_type``; returns the column touched.

    The caller must already hold the instance row lock in ``session``; the
    lock is released when the session's transaction ends.
    """
    column = counter_for_event_type(event_type)
    if column is None:
        return None
    session.increment_counter(instance_id, column)
    return column
