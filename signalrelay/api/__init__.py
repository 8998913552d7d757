"""
HTTP/WebSocket surface of the relay.
"""

from __future__ import annotations

from .server import RelaySession, create_app

__all__ = ["RelaySession", "create_app"]
