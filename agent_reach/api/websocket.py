"""
WebSocket support for live directory updates.
"""

import asyncio
import logging
from typing import List, Set

from fastapi import WebSocket

from ..mesh.directory import Agent
from ..mesh.query import sort_for_display

logger = logging.getLogger(__name__)


def agents_message(agents: List[Agent]) -> dict:
    """The message pushed to clients whenever the directory changes."""
    return {
        "type": "agents",
        "data": [agent.to_dict() for agent in sort_for_display(agents)],
    }


class DirectoryFeed:
    """
    Fans directory snapshots out to WebSocket clients.

    Registered as a directory listener; each change schedules one push
    to every joined client. Clients whose send fails are dropped.
    """

    def __init__(self):
        self.clients: Set[WebSocket] = set()
        self._pushes: Set[asyncio.Task] = set()

    async def join(self, websocket: WebSocket, agents: List[Agent]) -> None:
        """Accept the socket and send it the current agent list."""
        await websocket.accept()
        await websocket.send_json(agents_message(agents))
        self.clients.add(websocket)
        logger.debug(f"Feed client joined ({len(self.clients)} connected)")

    def leave(self, websocket: WebSocket) -> None:
        self.clients.discard(websocket)

    async def push(self, agents: List[Agent]) -> int:
        """Send a snapshot to every client. Returns how many were reached."""
        clients = list(self.clients)
        if not clients:
            return 0

        message = agents_message(agents)
        results = await asyncio.gather(
            *(client.send_json(message) for client in clients),
            return_exceptions=True,
        )

        reached = 0
        for client, result in zip(clients, results):
            if isinstance(result, BaseException):
                logger.debug(f"Dropping feed client: {result!r}")
                self.clients.discard(client)
            else:
                reached += 1
        return reached

    def on_directory_update(self, agents: List[Agent]) -> None:
        if not self.clients:
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return
        task = asyncio.create_task(self.push(agents))
        self._pushes.add(task)
        task.add_done_callback(self._pushes.discard)
