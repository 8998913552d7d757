"""
Relay-side signaling core: envelope contract, role registry and routing.
"""

from __future__ import annotations

from .envelope import Envelope, EnvelopeError, MessageType, parse_envelope
from .registry import Role, RoleRegistry
from .relay import Connection, SignalingRelay

__all__ = [
    "Connection",
    "Envelope",
    "EnvelopeError",
    "MessageType",
    "Role",
    "RoleRegistry",
    "SignalingRelay",
    "parse_envelope",
]
