from __future__ import annotations

from typing import Literal


EventType = Literal[
    "sent",
    "delivered",
    "opened",
    "clicked",
    "replied",
    "bounced",
    "unsubscribed",
    "connection_accepted",
    "connection_rejected",
]
Channel = Literal["email", "linkedin"]

EVENT_TYPES: tuple[str, ...] = (
    "sent",
    "delivered",
    "opened",
    "clicked",
    "replied",
    "bounced",
    "unsubscribed",
    "connection_accepted",
    "connection_rejected",
)
CHANNELS: tuple[str, ...] = ("email", "linkedin")


def normalize_event_type(value: str | None) -> str | None:
    """Map provider spellings onto the canonical event types; None when unknown."""
    if not value:
        return None
    key = str(value).strip().lower().replace("-", "_").replace(" ", "_")
    if "." in key:
        key = key.split(".")[-1]
    for prefix in ("email_", "linkedin_"):
        if key.startswith(prefix):
            key = key[len(prefix):]
    mapping = {
        "sent": "sent",
        "send": "sent",
        "delivered": "delivered",
        "delivery": "delivered",
        "opened": "opened",
        "open": "opened",
        "clicked": "clicked",
        "click": "clicked",
        "link_clicked": "clicked",
        "replied": "replied",
        "reply": "replied",
        "bounced": "bounced",
        "bounce": "bounced",
        "hard_bounce": "bounced",
        "unsubscribed": "unsubscribed",
        "unsubscribe": "unsubscribed",
        "connection_accepted": "connection_accepted",
        "connection_request_accepted": "connection_accepted",
        "connection_rejected": "connection_rejected",
        "connection_request_rejected": "connection_rejected",
    }
    return mapping.get(key)


def normalize_channel(value: str | None) -> str | None:
    if not value:
        return None
    key = str(value).strip().lower()
    if key in {"email", "e-mail", "mail"}:
        return "email"
    if key in {"linkedin", "linked_in", "li"}:
        return "linkedin"
    return None
