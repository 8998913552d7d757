"""
Peer-connection capability seen from the negotiation agent.

The agent never touches a WebRTC stack directly.  It drives an object
satisfying :class:`PeerConnectionCapability`, created through a factory
that receives the ICE server list and the three callbacks the agent wants
to hear about.  Descriptors and candidates cross this boundary as plain
wire-shaped dicts.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Sequence

Descriptor = Dict[str, Any]
CandidateInfo = Dict[str, Any]

LocalCandidateCallback = Callable[[CandidateInfo], Awaitable[None]]
RemoteStreamCallback = Callable[[Any], Awaitable[None]]
ConnectionStateCallback = Callable[[str], Awaitable[None]]

CONNECTED_STATES = frozenset({"connected", "completed"})
LOST_STATES = frozenset({"failed", "disconnected", "closed"})


class PeerConnectionError(RuntimeError):
    """Raised when the capability rejects a descriptor or candidate."""


class CandidateRejected(PeerConnectionError):
    """Raised when a remote candidate cannot be applied in the current state."""


@dataclass
class PeerCallbacks:
    on_local_candidate: LocalCandidateCallback
    on_remote_stream: RemoteStreamCallback
    on_connection_state_change: ConnectionStateCallback


class PeerConnectionCapability(Protocol):
    @property
    def has_remote_description(self) -> bool:
        ...

    async def set_remote_description(self, description: Descriptor) -> None:
        ...

    async def create_offer(self) -> Descriptor:
        ...

    async def create_answer(self) -> Descriptor:
        ...

    async def set_local_description(self, description: Descriptor) -> None:
        ...

    async def add_remote_candidate(self, candidate: CandidateInfo) -> None:
        ...

    async def close(self) -> None:
        ...


CapabilityFactory = Callable[[Sequence[str], PeerCallbacks], PeerConnectionCapability]


class MediaOutput(Protocol):
    """Where remote media ends up (a video element in a browser, a sink here)."""

    async def attach(self, stream: Any) -> None:
        ...

    async def detach(self) -> None:
        ...


class NullMediaOutput:
    """Keeps a reference to the attached stream and nothing else."""

    def __init__(self) -> None:
        self.stream: Optional[Any] = None

    async def attach(self, stream: Any) -> None:
        self.stream = stream

    async def detach(self) -> None:
        self.stream = None


def candidates_from_description(sdp: str) -> list[CandidateInfo]:
    """
    Pull every ``a=candidate`` line out of a session description.

    Each entry carries the media section's ``mid`` and index, the same shape
    a browser reports for a trickled candidate.
    """

    found: list[CandidateInfo] = []
    mline_index = -1
    mid: Optional[str] = None
    for raw_line in sdp.splitlines():
        line = raw_line.strip()
        if line.startswith("m="):
            mline_index += 1
            mid = None
        elif line.startswith("a=mid:"):
            mid = line[len("a=mid:"):]
        elif line.startswith("a=candidate:") and mline_index >= 0:
            found.append(
                {
                    "candidate": line[2:],
                    "sdpMLineIndex": mline_index,
                    "sdpMid": mid if mid is not None else str(mline_index),
                }
            )
    return found


__all__ = [
    "CONNECTED_STATES",
    "CandidateInfo",
    "CandidateRejected",
    "CapabilityFactory",
    "Descriptor",
    "LOST_STATES",
    "MediaOutput",
    "NullMediaOutput",
    "PeerCallbacks",
    "PeerConnectionCapability",
    "PeerConnectionError",
    "candidates_from_description",
]
