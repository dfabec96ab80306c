"""
Agent Reach tools exposed to the host agent.

- discover_agents: search the directory by capability
- update_service_card: change what we advertise, go on/offline
- contact_agent: send an encrypted DM to another agent
"""

import logging
from typing import Any, Dict, List, Optional

from ..host import HostRuntime
from .base import ParamSpec, Tool, ToolError, ToolSpec

logger = logging.getLogger(__name__)

DEFAULT_TOOL_LIMIT = 10


def _unwrap(result) -> Any:
    """Turn a failed ServiceResult into a ToolError."""
    if not result.success:
        raise ToolError(result.message, code="SERVICE_ERROR")
    return result


class ServiceTool(Tool):
    """A tool bound to a running AgentReachService."""

    def __init__(self, service):
        self.service = service


class DiscoverAgentsTool(ServiceTool):
    """
    Search for other agents by capability.

    The returned agents carry their npub, which can be passed to
    contact_agent.
    """

    spec = ToolSpec(
        name="discover_agents",
        description=(
            "Search for other AI agents by capability on the agent-reach network. "
            "Use this when you need help with a task you can't do or want to "
            "delegate work to a specialist."
        ),
        parameters=[
            ParamSpec("capability", "string",
                      "Capability to search for (e.g. 'coding', 'research'). Omit to list all agents.",
                      required=False),
            ParamSpec("limit", "integer", "Maximum number of agents to return",
                      required=False, default=DEFAULT_TOOL_LIMIT, min_value=1, max_value=100),
            ParamSpec("online_only", "boolean", "Only return agents that are online",
                      required=False, default=False),
        ],
        category="discovery",
    )

    async def execute(
        self,
        capability: Optional[str] = None,
        limit: int = DEFAULT_TOOL_LIMIT,
        online_only: bool = False,
        **kwargs
    ) -> Dict[str, Any]:
        result = _unwrap(self.service.discover_agents(capability, limit, online_only=online_only))
        agents = [agent.to_dict() for agent in result.data]
        return {
            "agents": agents,
            "count": len(agents),
            "query": capability or "all",
        }


class UpdateServiceCardTool(ServiceTool):
    """Update and republish our service card."""

    spec = ToolSpec(
        name="update_service_card",
        description=(
            "Update your agent service card on the discovery network. Changes are "
            "published immediately. Set online=false to pause heartbeats when you "
            "don't need to be discoverable."
        ),
        parameters=[
            ParamSpec("capabilities", "array",
                      "Capabilities, as 'id' or 'id:description'. Replaces existing capabilities.",
                      required=False, items="string"),
            ParamSpec("name", "string", "Display name for your agent", required=False),
            ParamSpec("about", "string", "Description of your agent", required=False),
            ParamSpec("heartbeat_interval", "integer", "Heartbeat interval in seconds",
                      required=False, min_value=1),
            ParamSpec("online", "boolean", "false pauses heartbeats, true resumes them",
                      required=False),
        ],
        category="discovery",
    )

    async def execute(
        self,
        capabilities: Optional[List[str]] = None,
        name: Optional[str] = None,
        about: Optional[str] = None,
        heartbeat_interval: Optional[int] = None,
        online: Optional[bool] = None,
        **kwargs
    ) -> Dict[str, Any]:
        result = _unwrap(await self.service.update_service_card(
            capabilities=capabilities,
            name=name,
            about=about,
            heartbeat_interval=heartbeat_interval,
            online=online,
        ))
        return {"success": True, "message": result.message, **result.data}


class ContactAgentTool(ServiceTool):
    """Send an encrypted direct message to an agent."""

    spec = ToolSpec(
        name="contact_agent",
        description="Send an end-to-end encrypted direct message to another agent by npub or hex key.",
        parameters=[
            ParamSpec("recipient", "string", "The agent's npub or hex public key"),
            ParamSpec("message", "string", "Message text"),
        ],
        category="communication",
    )

    async def execute(self, recipient: str, message: str, **kwargs) -> Dict[str, Any]:
        result = _unwrap(await self.service.contact_agent(recipient, message))
        return {"success": True, "message": result.message, **result.data}


TOOL_CLASSES = [DiscoverAgentsTool, UpdateServiceCardTool, ContactAgentTool]


def create_tools(service) -> List[Tool]:
    """Instantiate every tool bound to a service."""
    return [cls(service) for cls in TOOL_CLASSES]


def register_tools(host: HostRuntime, service) -> List[Tool]:
    """Register every tool with the host runtime."""
    tools = create_tools(service)
    for tool in tools:
        host.register_tool(tool)
    logger.debug(f"Registered {len(tools)} tools with host")
    return tools
