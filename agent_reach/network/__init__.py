"""
Relay networking for Agent Reach.

Provides:
- NIP-01 relay connections over WebSockets
- A relay pool with settle-all publish, merged queries and
  self-healing subscriptions
"""

from .relay import (
    DEFAULT_RELAYS,
    PoolSubscription,
    PublishReport,
    PublishResult,
    RelayConnection,
    RelayError,
    RelayPool,
)

__all__ = [
    "DEFAULT_RELAYS",
    "PoolSubscription",
    "PublishReport",
    "PublishResult",
    "RelayConnection",
    "RelayError",
    "RelayPool",
]
