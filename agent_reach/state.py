"""
Local state persistence.

Two small JSON documents live under the state directory:

- service-card.json: the operator's own card state (capabilities,
  display fields, online toggle, heartbeat interval)
- dm-listener-state.json: the DM cursor and recently seen event ids

Both are safe to delete; loading falls back to defaults. Saves write a
temp file and rename it into place so a crash never leaves a partial
document behind.
"""

import json
import logging
import os
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from .mesh.codec import Capability, Protocol

logger = logging.getLogger(__name__)

CARD_STATE_FILE = "service-card.json"
DM_STATE_FILE = "dm-listener-state.json"

DEFAULT_HEARTBEAT_INTERVAL = 600  # seconds
SEEN_IDS_MAX = 500
DM_FIRST_RUN_LOOKBACK = 120  # seconds


@dataclass
class LocalCardState:
    """The operator's own mutable card state."""
    capabilities: List[Capability] = field(default_factory=list)
    protocols: List[Protocol] = field(default_factory=list)
    heartbeat_interval: int = DEFAULT_HEARTBEAT_INTERVAL
    name: Optional[str] = None
    about: Optional[str] = None
    online: bool = True
    color: Optional[str] = None
    avatar: Optional[str] = None
    banner: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "capabilities": [c.to_dict() for c in self.capabilities],
            "protocols": [p.to_dict() for p in self.protocols],
            "heartbeat_interval": self.heartbeat_interval,
            "name": self.name,
            "about": self.about,
            "online": self.online,
            "color": self.color,
            "avatar": self.avatar,
            "banner": self.banner,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LocalCardState":
        interval = data.get("heartbeat_interval", DEFAULT_HEARTBEAT_INTERVAL)
        if not isinstance(interval, int) or interval <= 0:
            interval = DEFAULT_HEARTBEAT_INTERVAL
        return cls(
            capabilities=[Capability.from_dict(c) for c in data.get("capabilities", [])],
            protocols=[Protocol.from_dict(p) for p in data.get("protocols", [])],
            heartbeat_interval=interval,
            name=data.get("name"),
            about=data.get("about"),
            online=data.get("online", True) is not False,
            color=data.get("color"),
            avatar=data.get("avatar"),
            banner=data.get("banner"),
        )


@dataclass
class DmListenerState:
    """Cursor and dedup ids for the DM gateway."""
    last_seen_at: int = field(default_factory=lambda: int(time.time()) - DM_FIRST_RUN_LOOKBACK)
    seen_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "last_seen_at": self.last_seen_at,
            "seen_ids": self.seen_ids[-SEEN_IDS_MAX:],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DmListenerState":
        state = cls()
        last_seen = data.get("last_seen_at")
        if isinstance(last_seen, int) and not isinstance(last_seen, bool):
            state.last_seen_at = last_seen
        seen = data.get("seen_ids", [])
        if isinstance(seen, list):
            state.seen_ids = [s for s in seen if isinstance(s, str)][-SEEN_IDS_MAX:]
        return state


class JsonStore:
    """A single JSON document with atomic, serialized writes."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._write_lock = threading.Lock()

    def read(self) -> Optional[dict]:
        """Read the document; None if it is missing or unreadable."""
        if not self.path.exists():
            return None
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Could not load state file {self.path}: {e}")
            return None
        if not isinstance(data, dict):
            logger.warning(f"Ignoring state file {self.path}: not a JSON object")
            return None
        return data

    def write(self, data: dict) -> None:
        """
        Write the document atomically.

        Raises:
            OSError: If the directory or file cannot be written
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        with self._write_lock:
            with open(tmp, "w") as f:
                json.dump(data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)


class CardStateStore(JsonStore):
    """Persistence for LocalCardState."""

    def __init__(self, state_dir: Path):
        super().__init__(Path(state_dir) / CARD_STATE_FILE)

    def load(self) -> LocalCardState:
        data = self.read()
        if data is None:
            return LocalCardState()
        try:
            return LocalCardState.from_dict(data)
        except (KeyError, TypeError, AttributeError) as e:
            logger.warning(f"Card state in {self.path} is invalid, using defaults: {e}")
            return LocalCardState()

    def save(self, state: LocalCardState) -> None:
        self.write(state.to_dict())
        logger.debug(f"Card state saved to {self.path}")


class DmStateStore(JsonStore):
    """Persistence for DmListenerState."""

    def __init__(self, state_dir: Path):
        super().__init__(Path(state_dir) / DM_STATE_FILE)

    def load(self) -> DmListenerState:
        data = self.read()
        if data is None:
            return DmListenerState()
        return DmListenerState.from_dict(data)

    def save(self, state: DmListenerState) -> None:
        self.write(state.to_dict())
