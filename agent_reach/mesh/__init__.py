"""
Agent mesh for Agent Reach.

Provides:
- Nostr events and filters
- Service card / heartbeat / DM codec
- Publisher (own card, heartbeat timer, outgoing DMs)
- Agent directory (merged view of every agent on the relays)
- DM gateway (allow-listed inbound messages)

Only the leaf modules are re-exported here; import the rest from
their modules (``agent_reach.mesh.directory`` etc.).
"""

from .events import Event, EventParseError, Filter, sign_event
from .codec import (
    KIND_DIRECT_MESSAGE,
    KIND_HEARTBEAT,
    KIND_METADATA,
    KIND_SERVICE_CARD,
    LABEL_NAMESPACE,
    Capability,
    Heartbeat,
    Protocol,
    ServiceCard,
    Status,
    card_id_for,
)

__all__ = [
    # Events
    "Event",
    "EventParseError",
    "Filter",
    "sign_event",
    # Codec
    "KIND_DIRECT_MESSAGE",
    "KIND_HEARTBEAT",
    "KIND_METADATA",
    "KIND_SERVICE_CARD",
    "LABEL_NAMESPACE",
    "Capability",
    "Heartbeat",
    "Protocol",
    "ServiceCard",
    "Status",
    "card_id_for",
]
