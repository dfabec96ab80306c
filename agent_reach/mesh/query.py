"""Snapshot queries over the agent directory."""

from typing import List, Optional

from ..auth.identity import normalize_peer_id
from .directory import Agent, AgentDirectory

DEFAULT_DISCOVER_LIMIT = 20


def discover_agents(
    directory: AgentDirectory,
    capability: Optional[str] = None,
    limit: int = DEFAULT_DISCOVER_LIMIT,
    online_only: bool = False,
) -> List[Agent]:
    """
    Agents from the current snapshot, optionally filtered by capability id.

    Order is stable for a given snapshot but otherwise unspecified;
    use ``sort_for_display`` for presentation.
    """
    agents = directory.snapshot()
    if capability:
        agents = [a for a in agents if a.card.has_capability(capability)]
    if online_only:
        agents = [a for a in agents if a.is_online]
    if limit is not None and limit >= 0:
        agents = agents[:limit]
    return agents


def get_agent(directory: AgentDirectory, pubkey: str) -> Optional[Agent]:
    """Look up one agent by hex public key or npub.

    Raises:
        InvalidPeerIdError: If ``pubkey`` is not a valid public key
    """
    return directory.get(normalize_peer_id(pubkey))


def sort_for_display(agents: List[Agent], limit: Optional[int] = None) -> List[Agent]:
    """Online agents first, then by name. ``limit`` applies after sorting."""
    ordered = sorted(agents, key=lambda a: (not a.is_online, a.name.lower()))
    return ordered if limit is None else ordered[:limit]
