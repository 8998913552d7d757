"""
Client-side negotiation agent.

The aiortc-backed pieces live in :mod:`signalrelay.agent.aiortc_peer` and
are only imported by the CLI, so the state machine can be used with any
capability implementation.
"""

from __future__ import annotations

from .negotiation import AgentState, NegotiationAgent
from .peer import CandidateRejected, PeerCallbacks, PeerConnectionError

__all__ = [
    "AgentState",
    "CandidateRejected",
    "NegotiationAgent",
    "PeerCallbacks",
    "PeerConnectionError",
]
