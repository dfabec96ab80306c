"""
Host runtime boundary.

Agent Reach runs inside a host agent runtime that owns the agent's
sessions. The host gives us three fire-and-forget calls:

- register_tool: expose one of our tools to the agent
- enqueue_system_event: drop text into an agent session
- request_wake: ask the host to look at new input now

When no host is available the service degrades to LoggingHost, which
keeps registered tools in memory and logs injected messages.
"""

import logging
from abc import ABC, abstractmethod
from collections import deque
from typing import Deque, Dict, Tuple

logger = logging.getLogger(__name__)

RECENT_EVENTS_MAX = 100


class HostRuntime(ABC):
    """Interface the host runtime provides to Agent Reach."""

    @abstractmethod
    def register_tool(self, tool) -> None:
        """Make a tool invocable by the agent."""

    @abstractmethod
    def enqueue_system_event(self, text: str, session_key: str) -> None:
        """Inject text into an agent session."""

    @abstractmethod
    def request_wake(self, reason: str) -> None:
        """Ask the host to re-evaluate the session promptly."""


class LoggingHost(HostRuntime):
    """Stand-alone host: keeps tools, logs injected messages."""

    def __init__(self):
        self.tools: Dict[str, object] = {}
        self.events: Deque[Tuple[str, str]] = deque(maxlen=RECENT_EVENTS_MAX)
        self.wakes = 0

    def register_tool(self, tool) -> None:
        self.tools[tool.name] = tool
        logger.debug(f"Registered tool: {tool.name}")

    def enqueue_system_event(self, text: str, session_key: str) -> None:
        self.events.append((session_key, text))
        logger.info(f"[{session_key}] {text}")

    def request_wake(self, reason: str) -> None:
        self.wakes += 1
        logger.debug(f"Wake requested: {reason}")
