"""
API routes for Agent Reach.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field

from ..mesh.query import DEFAULT_DISCOVER_LIMIT, sort_for_display
from .websocket import agents_message

logger = logging.getLogger(__name__)

router = APIRouter()


# ============ Request Models ============

class CardUpdateRequest(BaseModel):
    """Changes to our own service card."""
    capabilities: Optional[List[str]] = Field(
        None, description="Capabilities as 'id' or 'id:description'; replaces the current list"
    )
    name: Optional[str] = Field(None, description="Display name")
    about: Optional[str] = Field(None, description="Description")
    heartbeat_interval: Optional[int] = Field(None, gt=0, description="Heartbeat interval in seconds")
    online: Optional[bool] = Field(None, description="false pauses heartbeats, true resumes")


class DirectMessageRequest(BaseModel):
    """An encrypted DM to another agent."""
    recipient: str = Field(..., description="npub or hex public key")
    message: str = Field(..., min_length=1, description="Message text")


def _service(request: Request):
    return request.app.state.service


# ============ Routes ============

@router.get("/status")
async def get_status(request: Request):
    """Service status."""
    return _service(request).status()


@router.get("/agents")
async def list_agents(
    request: Request,
    capability: Optional[str] = Query(None, description="Capability id to filter by"),
    limit: int = Query(DEFAULT_DISCOVER_LIMIT, ge=1, le=500),
    online: bool = Query(False, description="Only online agents"),
):
    """Agents in the directory, online first."""
    result = _service(request).discover_agents(capability, None, online_only=online)
    if not result.success:
        raise HTTPException(status_code=503, detail=result.message)
    agents = sort_for_display(result.data, limit)
    return {
        "agents": [agent.to_dict() for agent in agents],
        "count": len(agents),
        "query": capability or "all",
    }


@router.get("/agents/{pubkey}")
async def get_agent(request: Request, pubkey: str):
    """One agent by npub or hex public key."""
    result = _service(request).get_agent(pubkey)
    if not result.success:
        status = 404 if result.message == "Agent not found" else 400
        raise HTTPException(status_code=status, detail=result.message)
    return result.data.to_dict()


@router.get("/relays")
async def list_relays(request: Request):
    """Connection state of each relay."""
    return {"relays": _service(request).pool.status()}


@router.get("/tools")
async def list_tools(request: Request):
    """Tools this service exposes to the host agent."""
    return {"tools": [tool.spec.to_dict() for tool in request.app.state.tools]}


@router.post("/card")
async def update_card(request: Request, body: CardUpdateRequest):
    """Update and republish our service card."""
    result = await _service(request).update_service_card(
        capabilities=body.capabilities,
        name=body.name,
        about=body.about,
        heartbeat_interval=body.heartbeat_interval,
        online=body.online,
    )
    if not result.success:
        raise HTTPException(status_code=409, detail=result.message)
    return result.to_dict()


@router.post("/dm")
async def send_dm(request: Request, body: DirectMessageRequest):
    """Send an encrypted direct message."""
    result = await _service(request).contact_agent(body.recipient, body.message)
    if not result.success:
        raise HTTPException(status_code=400, detail=result.message)
    return result.to_dict()


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """
    Live directory feed.

    Sends the full agent list on connect and again whenever the
    directory changes. Client messages are answered with a fresh
    snapshot.
    """
    feed = websocket.app.state.feed
    service = websocket.app.state.service

    try:
        await feed.join(websocket, service.directory.snapshot())
        while True:
            await websocket.receive_text()
            await websocket.send_json(agents_message(service.directory.snapshot()))
    except WebSocketDisconnect:
        pass
    finally:
        feed.leave(websocket)
