"""
Agent Reach tools for host agent runtimes.

Usage:
    from agent_reach.tools import register_tools

    register_tools(host, service)
"""

from .base import (
    ParamSpec,
    Tool,
    ToolError,
    ToolResult,
    ToolSpec,
    ValidationError,
)
from .reach import (
    ContactAgentTool,
    DiscoverAgentsTool,
    UpdateServiceCardTool,
    create_tools,
    register_tools,
)

__all__ = [
    # Base
    "ParamSpec",
    "Tool",
    "ToolError",
    "ToolResult",
    "ToolSpec",
    "ValidationError",
    # Tools
    "ContactAgentTool",
    "DiscoverAgentsTool",
    "UpdateServiceCardTool",
    "create_tools",
    "register_tools",
]
