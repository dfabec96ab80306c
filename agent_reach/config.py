"""
Configuration management for Agent Reach.

Handles:
- Identity key and relay set
- Profile defaults and DM allow-list
- Local API server settings

The configuration file is versioned. Files written by the older
plugin layout (``channels.nostr``) are not read implicitly; convert
them once with ``migrate_legacy_config`` (``agent-reach config migrate``).
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .network.relay import DEFAULT_RELAYS

logger = logging.getLogger(__name__)

CONFIG_VERSION = 1

# Default paths
DEFAULT_DATA_DIR = Path.home() / ".agent-reach"

DEFAULT_API_PORT = 11460

DEFAULT_SESSION_KEY = "agent:main:main"


class ConfigError(Exception):
    """Raised when a configuration file cannot be used."""


@dataclass
class ServerConfig:
    """Configuration for the local API server."""
    host: str = "127.0.0.1"
    port: int = DEFAULT_API_PORT
    cors_origins: List[str] = field(default_factory=lambda: ["*"])

    def to_dict(self) -> dict:
        return {
            "host": self.host,
            "port": self.port,
            "cors_origins": self.cors_origins,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ServerConfig":
        known_fields = {"host", "port", "cors_origins"}
        return cls(**{k: v for k, v in data.items() if k in known_fields})


@dataclass
class Config:
    """
    Main Agent Reach configuration.

    Stored at ~/.agent-reach/config.json
    """
    version: int = CONFIG_VERSION

    # Identity (hex or nsec)
    private_key: Optional[str] = None

    # Paths
    data_dir: Path = field(default_factory=lambda: DEFAULT_DATA_DIR)

    # Network
    relays: List[str] = field(default_factory=lambda: list(DEFAULT_RELAYS))
    publish_timeout: float = 10.0
    query_timeout: float = 10.0
    verify_signatures: bool = True

    # Profile defaults for the service card
    profile_name: Optional[str] = None
    profile_about: Optional[str] = None

    # Features
    discovery_enabled: bool = True
    dm_enabled: bool = True
    allow_from: List[str] = field(default_factory=list)
    session_key: str = DEFAULT_SESSION_KEY

    server: ServerConfig = field(default_factory=ServerConfig)

    @property
    def config_path(self) -> Path:
        return self.data_dir / "config.json"

    @property
    def state_dir(self) -> Path:
        return self.data_dir / "state"

    def ensure_data_dir(self) -> None:
        """Create data directory if it doesn't exist."""
        self.state_dir.mkdir(parents=True, exist_ok=True)

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "private_key": self.private_key,
            "relays": self.relays,
            "publish_timeout": self.publish_timeout,
            "query_timeout": self.query_timeout,
            "verify_signatures": self.verify_signatures,
            "profile": {
                "name": self.profile_name,
                "about": self.profile_about,
            },
            "discovery_enabled": self.discovery_enabled,
            "dm_enabled": self.dm_enabled,
            "allow_from": self.allow_from,
            "session_key": self.session_key,
            "server": self.server.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], data_dir: Optional[Path] = None) -> "Config":
        """
        Build a config from the versioned file format.

        Raises:
            ConfigError: If the version is missing or unsupported
        """
        if "version" not in data:
            if "channels" in data:
                raise ConfigError(
                    "Legacy plugin configuration found; run `agent-reach config migrate` first"
                )
            raise ConfigError("Configuration has no version field")
        if data["version"] != CONFIG_VERSION:
            raise ConfigError(f"Unsupported configuration version: {data['version']}")

        profile = data.get("profile") or {}
        config = cls(
            data_dir=data_dir or DEFAULT_DATA_DIR,
            private_key=data.get("private_key"),
            relays=list(data.get("relays") or DEFAULT_RELAYS),
            publish_timeout=float(data.get("publish_timeout", 10.0)),
            query_timeout=float(data.get("query_timeout", 10.0)),
            verify_signatures=data.get("verify_signatures", True),
            profile_name=profile.get("name"),
            profile_about=profile.get("about"),
            discovery_enabled=data.get("discovery_enabled", True),
            dm_enabled=data.get("dm_enabled", True),
            allow_from=list(data.get("allow_from", [])),
            session_key=data.get("session_key", DEFAULT_SESSION_KEY),
        )
        if "server" in data:
            config.server = ServerConfig.from_dict(data["server"])
        return config

    def save(self) -> None:
        """Save configuration to disk (owner-readable only, it holds the key)."""
        self.ensure_data_dir()

        with open(self.config_path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)
        os.chmod(self.config_path, 0o600)

        logger.debug(f"Configuration saved to {self.config_path}")

    @classmethod
    def load(cls, data_dir: Optional[Path] = None) -> "Config":
        """Load configuration from disk; defaults if no file exists."""
        data_dir = data_dir or DEFAULT_DATA_DIR
        config_path = data_dir / "config.json"

        if not config_path.exists():
            return cls(data_dir=data_dir)

        try:
            with open(config_path, 'r') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Cannot parse {config_path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigError(f"{config_path} must contain a JSON object")
        return cls.from_dict(data, data_dir=data_dir)

    @classmethod
    def exists(cls, data_dir: Optional[Path] = None) -> bool:
        """Check if configuration exists."""
        data_dir = data_dir or DEFAULT_DATA_DIR
        return (data_dir / "config.json").exists()


def migrate_legacy_config(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Convert the legacy plugin configuration to the versioned format.

    The legacy layout nests everything under ``channels.nostr`` with
    camelCase keys::

        {"channels": {"nostr": {"privateKey": "...", "relays": [...],
                                "profile": {"name": "...", "about": "..."},
                                "allowFrom": ["npub1..."]}}}

    Raises:
        ConfigError: If the input has no ``channels.nostr`` section
    """
    nostr = (data.get("channels") or {}).get("nostr")
    if not isinstance(nostr, dict):
        raise ConfigError("No channels.nostr section to migrate")

    profile = nostr.get("profile") or {}
    migrated = Config(
        private_key=nostr.get("privateKey"),
        relays=list(nostr.get("relays") or DEFAULT_RELAYS),
        profile_name=profile.get("name"),
        profile_about=profile.get("about"),
        allow_from=list(nostr.get("allowFrom") or []),
        dm_enabled=nostr.get("enabled", True) is not False,
    )
    return migrated.to_dict()
