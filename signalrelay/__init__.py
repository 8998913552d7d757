"""
Signal Relay package.

This package hosts a two-party WebRTC signaling relay and the negotiation
agent that talks to it.  The relay pairs one ``controller`` connection with
one ``responder`` connection and forwards offer/answer/candidate envelopes
between them without interpreting their contents.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

__all__ = [
    "DEFAULT_ICE_SERVERS",
    "RelayConfig",
]

DEFAULT_ICE_SERVERS = ("stun:stun.l.google.com:19302",)


@dataclass
class RelayConfig:
    """Top level process configuration shared by the relay and the agent CLI."""

    host: str = "0.0.0.0"
    port: int = 3000
    static_dir: Optional[str] = None
    send_queue_size: int = 256
    ice_servers: List[str] = field(default_factory=lambda: list(DEFAULT_ICE_SERVERS))
    log_level: str = "INFO"
