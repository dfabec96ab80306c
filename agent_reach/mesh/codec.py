"""
Event codec for Agent Reach.

Builds and parses the three event kinds the protocol uses:

- Service card (kind 31990): who an agent is and what it can do
- Heartbeat (kind 31991): a liveness signal bound to a card
- Direct message (kind 4): NIP-04 encrypted text addressed with a p tag

Parsing is tolerant. Unknown tags are ignored and missing optional
tags fall back to defaults; only a wrong kind or an unusable event
raises EventParseError.
"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, List, Optional, TypeVar

from ..auth.identity import Identity, normalize_peer_id
from ..auth.nip04 import encrypt
from .events import Event, EventParseError, sign_event

logger = logging.getLogger(__name__)

# Event kinds
KIND_METADATA = 0
KIND_DIRECT_MESSAGE = 4
KIND_SERVICE_CARD = 31990
KIND_HEARTBEAT = 31991

# NIP-32 labels
LABEL_NAMESPACE = "agent-reach"
LABEL_SERVICE_CARD = "service-card"
LABEL_HEARTBEAT = "heartbeat"

CARD_VERSION = "v1"
DEFAULT_AGENT_NAME = "Unknown Agent"
DEFAULT_CARD_ID = "default"

T = TypeVar("T")


class Status(str, Enum):
    """Heartbeat status values."""
    AVAILABLE = "available"
    BUSY = "busy"
    MAINTENANCE = "maintenance"

    @classmethod
    def parse(cls, value: Optional[str]) -> "Status":
        """Parse a status string; "offline" is the legacy name for maintenance."""
        if value == "offline":
            return cls.MAINTENANCE
        try:
            return cls(value)
        except ValueError:
            return cls.AVAILABLE


@dataclass
class Capability:
    """A capability an agent advertises."""
    id: str
    description: str = ""

    def to_dict(self) -> dict:
        return {"id": self.id, "description": self.description}

    @classmethod
    def from_dict(cls, data: dict) -> "Capability":
        return cls(id=data["id"], description=data.get("description", ""))


@dataclass
class Protocol:
    """A way to reach an agent (dm, dvm, a2a, mcp, http, ...)."""
    type: str
    endpoint: str = ""
    kinds: List[int] = field(default_factory=list)  # dvm job kinds

    def to_dict(self) -> dict:
        data = {"type": self.type, "endpoint": self.endpoint}
        if self.kinds:
            data["kinds"] = list(self.kinds)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Protocol":
        return cls(
            type=data["type"],
            endpoint=data.get("endpoint", ""),
            kinds=list(data.get("kinds", [])),
        )


@dataclass
class ServiceCard:
    """An agent's directory entry."""
    card_id: str
    pubkey: str
    name: str = DEFAULT_AGENT_NAME
    about: str = ""
    capabilities: List[Capability] = field(default_factory=list)
    protocols: List[Protocol] = field(default_factory=list)
    color: Optional[str] = None
    avatar: Optional[str] = None
    banner: Optional[str] = None
    created_at: int = 0
    event_id: Optional[str] = None

    def has_capability(self, capability_id: str) -> bool:
        return any(c.id == capability_id for c in self.capabilities)

    def to_dict(self) -> dict:
        return {
            "card_id": self.card_id,
            "pubkey": self.pubkey,
            "name": self.name,
            "about": self.about,
            "capabilities": [c.to_dict() for c in self.capabilities],
            "protocols": [p.to_dict() for p in self.protocols],
            "color": self.color,
            "avatar": self.avatar,
            "banner": self.banner,
            "created_at": self.created_at,
            "event_id": self.event_id,
        }


@dataclass
class Heartbeat:
    """A point-in-time liveness signal."""
    pubkey: str
    card_id: str
    status: Status = Status.AVAILABLE
    created_at: int = 0
    event_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "pubkey": self.pubkey,
            "card_id": self.card_id,
            "status": self.status.value,
            "created_at": self.created_at,
            "event_id": self.event_id,
        }


def card_id_for(pubkey: str) -> str:
    """Stable card id: first 8 hex chars of the public key plus the version."""
    return f"{pubkey[:8]}-{CARD_VERSION}"


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------

def service_card_tags(card: ServiceCard) -> List[List[str]]:
    """Tag layout for a service card."""
    tags = [
        ["d", card.card_id],
        ["name", card.name],
        ["about", card.about],
        ["L", LABEL_NAMESPACE],
        ["l", LABEL_SERVICE_CARD, LABEL_NAMESPACE],
    ]
    for cap in card.capabilities:
        tags.append(["c", cap.id, cap.description])
    for proto in card.protocols:
        tags.append(["r", proto.type, proto.endpoint])
        if proto.type == "dvm":
            for kind in proto.kinds:
                tags.append(["k", str(kind)])
    for name in ("color", "avatar", "banner"):
        value = getattr(card, name)
        if value:
            tags.append([name, value])
    return tags


def build_service_card_event(
    identity: Identity,
    card: ServiceCard,
    created_at: Optional[int] = None,
) -> Event:
    """Sign a service card as the given identity."""
    content = json.dumps({
        "name": card.name,
        "about": card.about,
        "capabilities": [c.to_dict() for c in card.capabilities],
        "protocols": [{"type": p.type, "endpoint": p.endpoint} for p in card.protocols],
    })
    return sign_event(
        identity,
        KIND_SERVICE_CARD,
        content=content,
        tags=service_card_tags(card),
        created_at=created_at,
    )


def build_heartbeat_event(
    identity: Identity,
    card_id: str,
    status: Status = Status.AVAILABLE,
    created_at: Optional[int] = None,
) -> Event:
    """Sign a heartbeat for the given card."""
    return sign_event(
        identity,
        KIND_HEARTBEAT,
        content=json.dumps({"status": status.value}),
        tags=[
            ["d", card_id],
            ["s", status.value],
            ["L", LABEL_NAMESPACE],
            ["l", LABEL_HEARTBEAT, LABEL_NAMESPACE],
        ],
        created_at=created_at,
    )


def build_direct_message_event(
    identity: Identity,
    recipient: str,
    plaintext: str,
    created_at: Optional[int] = None,
) -> Event:
    """
    Encrypt and sign a direct message.

    Raises:
        InvalidPeerIdError: If the recipient is not a valid public key
        EncryptionError: If the message cannot be encrypted
    """
    recipient_hex = normalize_peer_id(recipient)
    ciphertext = encrypt(identity.secret_key, recipient_hex, plaintext)
    return sign_event(
        identity,
        KIND_DIRECT_MESSAGE,
        content=ciphertext,
        tags=[["p", recipient_hex]],
        created_at=created_at,
    )


# ---------------------------------------------------------------------------
# Parsers
# ---------------------------------------------------------------------------

def _content_json(event: Event) -> dict:
    if not event.content:
        return {}
    try:
        data = json.loads(event.content)
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def parse_service_card(event: Event) -> ServiceCard:
    """Parse a service card event into a ServiceCard."""
    if event.kind != KIND_SERVICE_CARD:
        raise EventParseError(f"Expected kind {KIND_SERVICE_CARD}, got {event.kind}")

    content = _content_json(event)
    card = ServiceCard(
        card_id=event.tag_value("d") or DEFAULT_CARD_ID,
        pubkey=event.pubkey,
        created_at=event.created_at,
        event_id=event.id,
    )

    name = event.tag_value("name")
    if not name:
        name = content.get("name") if isinstance(content.get("name"), str) else None
    card.name = name or DEFAULT_AGENT_NAME

    about = event.tag_value("about")
    if about is None:
        about = content.get("about") if isinstance(content.get("about"), str) else ""
    card.about = about

    dvm_kinds = []
    for tag in event.tags:
        if len(tag) < 2:
            continue
        tag_name, value = tag[0], tag[1]
        if tag_name == "c" and value:
            card.capabilities.append(
                Capability(id=value, description=tag[2] if len(tag) > 2 else "")
            )
        elif tag_name == "r" and value:
            card.protocols.append(
                Protocol(type=value, endpoint=tag[2] if len(tag) > 2 else "")
            )
        elif tag_name == "k":
            try:
                dvm_kinds.append(int(value))
            except ValueError:
                logger.debug(f"Ignoring non-numeric k tag on {event.id[:8]}")
        elif tag_name in ("color", "avatar", "banner") and value:
            setattr(card, tag_name, value)

    if dvm_kinds:
        for proto in card.protocols:
            if proto.type == "dvm":
                proto.kinds = list(dvm_kinds)

    return card


def parse_heartbeat(event: Event) -> Heartbeat:
    """Parse a heartbeat event into a Heartbeat."""
    if event.kind != KIND_HEARTBEAT:
        raise EventParseError(f"Expected kind {KIND_HEARTBEAT}, got {event.kind}")

    status = event.tag_value("s")
    if status is None:
        status = _content_json(event).get("status")

    return Heartbeat(
        pubkey=event.pubkey,
        card_id=event.tag_value("d") or card_id_for(event.pubkey),
        status=Status.parse(status if isinstance(status, str) else None),
        created_at=event.created_at,
        event_id=event.id,
    )


def parse_profile_picture(event: Event) -> Optional[str]:
    """Return the picture URL from a kind 0 metadata event, if any."""
    if event.kind != KIND_METADATA:
        raise EventParseError(f"Expected kind {KIND_METADATA}, got {event.kind}")
    picture = _content_json(event).get("picture")
    return picture if isinstance(picture, str) and picture else None


def direct_message_recipients(event: Event) -> List[str]:
    """Public keys named in the p tags of an event."""
    return [tag[1].lower() for tag in event.tags_named("p") if len(tag) >= 2]


def parse_batch(events: Iterable[Event], parser: Callable[[Event], T]) -> List[T]:
    """Parse many events, skipping and logging the malformed ones."""
    parsed = []
    for event in events:
        try:
            parsed.append(parser(event))
        except EventParseError as e:
            logger.warning(f"Skipping malformed event {event.id[:8]}: {e}")
    return parsed