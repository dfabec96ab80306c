"""
FastAPI server for Agent Reach.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .. import __version__
from ..host import LoggingHost
from ..tools import create_tools, register_tools
from .websocket import DirectoryFeed

logger = logging.getLogger(__name__)


def create_app(service, manage_service: bool = True) -> FastAPI:
    """
    Create the FastAPI application around a service.

    Args:
        service: The AgentReachService to expose
        manage_service: Start the service on startup and stop it on shutdown.
            Pass False when the caller runs the service itself.
    """
    from .routes import router

    feed = DirectoryFeed()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager."""
        if manage_service:
            try:
                await service.start()
            except Exception as e:
                logger.error(f"Failed to start service: {e}")
                raise
        service.directory.add_listener(feed.on_directory_update)

        yield

        service.directory.remove_listener(feed.on_directory_update)
        if manage_service:
            await service.stop()

    app = FastAPI(
        title="Agent Reach",
        description="Presence and discovery for autonomous agents over Nostr",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=service.config.server.cors_origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.service = service
    app.state.feed = feed
    if service.host is not None:
        app.state.tools = register_tools(service.host, service)
    else:
        app.state.tools = create_tools(service)

    app.include_router(router, prefix="/api")

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": service.state.value}

    return app


def run_server(service, host: Optional[str] = None, port: Optional[int] = None) -> None:
    """Run the service behind the HTTP API with uvicorn."""
    if service.host is None:
        service.host = LoggingHost()
    app = create_app(service)
    uvicorn.run(
        app,
        host=host or service.config.server.host,
        port=port or service.config.server.port,
        log_level="info",
    )
