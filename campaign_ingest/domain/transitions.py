from __future__ import annotations

from typing import Literal


EnrollmentStatus = Literal["enrolled", "active", "paused", "completed", "unsubscribed", "bounced"]
InstanceStatus = Literal["draft", "active", "paused", "completed", "failed"]

ENROLLMENT_TRANSITIONS: dict[str, frozenset[str]] = {
    "enrolled": frozenset({"active"}),
    "active": frozenset({"paused", "completed", "bounced", "unsubscribed"}),
    "paused": frozenset({"active", "completed"}),
    "completed": frozenset(),
    "bounced": frozenset(),
    "unsubscribed": frozenset(),
}
TERMINAL_ENROLLMENT_STATUSES = frozenset({"completed", "bounced", "unsubscribed"})

INSTANCE_TRANSITIONS: dict[str, frozenset[str]] = {
    "draft": frozenset({"active"}),
    "active": frozenset({"paused", "completed"}),
    "paused": frozenset({"active", "completed"}),
    "completed": frozenset(),
    "failed": frozenset(),
}

COUNTER_BY_EVENT_TYPE: dict[str, str] = {
    "sent": "total_sent",
    "delivered": "total_delivered",
    "opened": "total_opened",
    "clicked": "total_clicked",
    "replied": "total_replied",
}
COUNTER_COLUMNS: tuple[str, ...] = (
    "total_enrolled",
    "total_sent",
    "total_delivered",
    "total_opened",
    "total_clicked",
    "total_replied",
)

# replied closes the sequence for the contact; it is not its own status.
STATUS_BY_EVENT_TYPE: dict[str, str] = {
    "bounced": "bounced",
    "unsubscribed": "unsubscribed",
    "replied": "completed",
}


def can_transition_enrollment(current: str, target: str) -> bool:
    return target in ENROLLMENT_TRANSITIONS.get(current, frozenset())


def can_transition_instance(current: str, target: str) -> bool:
    return target in INSTANCE_TRANSITIONS.get(current, frozenset())


def is_terminal_enrollment(status: str | None) -> bool:
    return status in TERMINAL_ENROLLMENT_STATUSES


def enrollment_status_for_event(current: str, event_type: str) -> str | None:
    """Status an event moves the enrollment to, or None when it stays put.

    Terminal statuses are never left, whatever arrives afterwards.
    """
    target = STATUS_BY_EVENT_TYPE.get(event_type)
    if target is None or is_terminal_enrollment(current) or current == target:
        return None
    return target
