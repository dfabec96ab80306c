"""
Agent Reach - presence and discovery for autonomous agents over Nostr

Agents publish signed service cards describing what they can do, emit
periodic heartbeats to prove they are alive, and exchange encrypted
direct messages with an allow-listed set of peers.

Example:
    >>> from agent_reach import AgentReachService, Config
    >>> service = AgentReachService(Config.load())
    >>> await service.start()
    >>> agents = service.discover_agents(capability="research")
"""

__version__ = "0.1.0"

from .config import Config, ConfigError
from .service import AgentReachService, ServiceResult, ServiceState

__all__ = [
    "__version__",
    "Config",
    "ConfigError",
    "AgentReachService",
    "ServiceResult",
    "ServiceState",
]
