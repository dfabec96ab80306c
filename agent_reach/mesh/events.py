"""
Nostr event model (NIP-01).

Events are signed, timestamped records addressed by author, kind and
tags. The event id is the sha256 of the canonical serialization and is
what relays and our own dedup logic key on.
"""

import hashlib
import json
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..auth.identity import Identity, verify_signature

HEX64_RE = re.compile(r"^[0-9a-f]{64}$")
HEX128_RE = re.compile(r"^[0-9a-f]{128}$")


class EventParseError(ValueError):
    """Raised when an event is malformed or of an unexpected kind."""


def serialize_for_id(
    pubkey: str,
    created_at: int,
    kind: int,
    tags: List[List[str]],
    content: str,
) -> bytes:
    """Canonical NIP-01 serialization used for the event id."""
    return json.dumps(
        [0, pubkey, created_at, kind, tags, content],
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


@dataclass
class Event:
    """A signed Nostr event."""
    id: str
    pubkey: str
    created_at: int
    kind: int
    tags: List[List[str]] = field(default_factory=list)
    content: str = ""
    sig: str = ""

    def compute_id(self) -> str:
        """Recompute the id from the event fields."""
        payload = serialize_for_id(
            self.pubkey, self.created_at, self.kind, self.tags, self.content
        )
        return hashlib.sha256(payload).hexdigest()

    def verify(self) -> bool:
        """Check that the id matches the content and the signature is valid."""
        if self.compute_id() != self.id:
            return False
        return verify_signature(self.pubkey, bytes.fromhex(self.id), self.sig)

    def tag_value(self, name: str) -> Optional[str]:
        """Return the first value of the first tag with this name."""
        for tag in self.tags:
            if len(tag) >= 2 and tag[0] == name:
                return tag[1]
        return None

    def tags_named(self, name: str) -> List[List[str]]:
        """Return every tag with this name."""
        return [tag for tag in self.tags if tag and tag[0] == name]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "pubkey": self.pubkey,
            "created_at": self.created_at,
            "kind": self.kind,
            "tags": self.tags,
            "content": self.content,
            "sig": self.sig,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "Event":
        """
        Build an event from its JSON form, validating the shape.

        Raises:
            EventParseError: If a field is missing or of the wrong type
        """
        if not isinstance(data, dict):
            raise EventParseError("Event must be an object")

        try:
            event_id = data["id"]
            pubkey = data["pubkey"]
            created_at = data["created_at"]
            kind = data["kind"]
            tags = data.get("tags", [])
            content = data.get("content", "")
            sig = data.get("sig", "")
        except KeyError as e:
            raise EventParseError(f"Event missing field {e}") from e

        if not isinstance(event_id, str) or not HEX64_RE.match(event_id):
            raise EventParseError("Invalid event id")
        if not isinstance(pubkey, str) or not HEX64_RE.match(pubkey):
            raise EventParseError("Invalid event pubkey")
        for name, value in (("created_at", created_at), ("kind", kind)):
            if isinstance(value, bool) or not isinstance(value, int):
                raise EventParseError(f"Invalid event {name}")
        if not isinstance(tags, list) or not all(
            isinstance(tag, list) and all(isinstance(v, str) for v in tag)
            for tag in tags
        ):
            raise EventParseError("Event tags must be lists of strings")
        if not isinstance(content, str):
            raise EventParseError("Event content must be a string")
        if not isinstance(sig, str):
            raise EventParseError("Event sig must be a string")

        return cls(
            id=event_id,
            pubkey=pubkey,
            created_at=created_at,
            kind=kind,
            tags=tags,
            content=content,
            sig=sig,
        )


def sign_event(
    identity: Identity,
    kind: int,
    content: str = "",
    tags: Optional[List[List[str]]] = None,
    created_at: Optional[int] = None,
) -> Event:
    """Build, hash and sign an event as the given identity."""
    event = Event(
        id="",
        pubkey=identity.public_key_hex,
        created_at=int(time.time()) if created_at is None else created_at,
        kind=kind,
        tags=[list(tag) for tag in (tags or [])],
        content=content,
    )
    event.id = event.compute_id()
    event.sig = identity.sign(bytes.fromhex(event.id))
    return event


@dataclass
class Filter:
    """
    A NIP-01 subscription filter.

    ``tags`` maps a single-letter tag name (without the ``#``) to the
    accepted values, e.g. ``{"L": ["agent-reach"]}``.
    """
    ids: Optional[List[str]] = None
    authors: Optional[List[str]] = None
    kinds: Optional[List[int]] = None
    tags: Dict[str, List[str]] = field(default_factory=dict)
    since: Optional[int] = None
    until: Optional[int] = None
    limit: Optional[int] = None

    def to_dict(self) -> dict:
        data: Dict[str, Any] = {}
        if self.ids is not None:
            data["ids"] = list(self.ids)
        if self.authors is not None:
            data["authors"] = list(self.authors)
        if self.kinds is not None:
            data["kinds"] = list(self.kinds)
        for name, values in self.tags.items():
            data[f"#{name}"] = list(values)
        if self.since is not None:
            data["since"] = self.since
        if self.until is not None:
            data["until"] = self.until
        if self.limit is not None:
            data["limit"] = self.limit
        return data

    def matches(self, event: Event) -> bool:
        """Client-side check of an event against this filter (limit ignored)."""
        if self.ids is not None and event.id not in self.ids:
            return False
        if self.authors is not None and event.pubkey not in self.authors:
            return False
        if self.kinds is not None and event.kind not in self.kinds:
            return False
        if self.since is not None and event.created_at < self.since:
            return False
        if self.until is not None and event.created_at > self.until:
            return False
        for name, values in self.tags.items():
            wanted = set(values)
            if not any(
                len(tag) >= 2 and tag[0] == name and tag[1] in wanted
                for tag in event.tags
            ):
                return False
        return True
