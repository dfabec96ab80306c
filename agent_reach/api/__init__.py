"""HTTP and WebSocket surface."""

from .server import create_app, run_server
from .websocket import DirectoryFeed

__all__ = ["create_app", "run_server", "DirectoryFeed"]
