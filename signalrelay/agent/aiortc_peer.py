"""
aiortc-backed peer-connection capability and media outputs.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Iterable, Optional, Sequence

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.contrib.media import MediaBlackhole, MediaPlayer, MediaRecorder
from aiortc.exceptions import InvalidAccessError, InvalidStateError
from aiortc.sdp import candidate_from_sdp

from .peer import (
    CandidateInfo,
    CandidateRejected,
    CapabilityFactory,
    Descriptor,
    PeerCallbacks,
    PeerConnectionError,
    candidates_from_description,
)

LOG = logging.getLogger(__name__)

# aiortc reports signaling-state mismatches with its own exception types.
DESCRIPTION_ERRORS = (InvalidAccessError, InvalidStateError, KeyError, TypeError, ValueError)


def build_configuration(ice_servers: Sequence[str]) -> RTCConfiguration:
    return RTCConfiguration(iceServers=[RTCIceServer(urls=[url]) for url in ice_servers])


class AiortcPeerConnection:
    """
    :class:`~signalrelay.agent.peer.PeerConnectionCapability` over aiortc.

    aiortc gathers candidates while committing the local description and
    writes them into the SDP instead of raising trickle events, so the
    candidates are re-emitted one by one from the committed description.
    """

    def __init__(
        self,
        ice_servers: Sequence[str],
        callbacks: PeerCallbacks,
        *,
        local_tracks: Iterable[MediaStreamTrack] = (),
        receive_kinds: Sequence[str] = ("video",),
    ) -> None:
        self._callbacks = callbacks
        self._receive_kinds = tuple(receive_kinds)
        self._pc = RTCPeerConnection(configuration=build_configuration(ice_servers))
        self._has_local_tracks = False
        for track in local_tracks:
            self._pc.addTrack(track)
            self._has_local_tracks = True

        @self._pc.on("track")
        async def on_track(track: MediaStreamTrack) -> None:
            LOG.info("Remote %s track received", track.kind)
            await self._callbacks.on_remote_stream(track)

        @self._pc.on("connectionstatechange")
        async def on_connection_state_change() -> None:
            await self._callbacks.on_connection_state_change(self._pc.connectionState)

    @property
    def has_remote_description(self) -> bool:
        return self._pc.remoteDescription is not None

    async def set_remote_description(self, description: Descriptor) -> None:
        try:
            await self._pc.setRemoteDescription(
                RTCSessionDescription(sdp=description["sdp"], type=description["type"])
            )
        except DESCRIPTION_ERRORS as exc:
            raise PeerConnectionError(f"remote description rejected: {exc}") from exc

    async def create_offer(self) -> Descriptor:
        if not self._has_local_tracks and not self._pc.getTransceivers():
            for kind in self._receive_kinds:
                self._pc.addTransceiver(kind, direction="recvonly")
        try:
            offer = await self._pc.createOffer()
        except (InvalidStateError, RuntimeError, ValueError) as exc:
            raise PeerConnectionError(f"could not create offer: {exc}") from exc
        return {"type": offer.type, "sdp": offer.sdp}

    async def create_answer(self) -> Descriptor:
        try:
            answer = await self._pc.createAnswer()
        except (InvalidStateError, RuntimeError, ValueError) as exc:
            raise PeerConnectionError(f"could not create answer: {exc}") from exc
        return {"type": answer.type, "sdp": answer.sdp}

    async def set_local_description(self, description: Descriptor) -> None:
        try:
            await self._pc.setLocalDescription(
                RTCSessionDescription(sdp=description["sdp"], type=description["type"])
            )
        except DESCRIPTION_ERRORS as exc:
            raise PeerConnectionError(f"local description rejected: {exc}") from exc

        local = self._pc.localDescription
        if local is None:
            return
        for candidate in candidates_from_description(local.sdp):
            await self._callbacks.on_local_candidate(candidate)

    async def add_remote_candidate(self, candidate: CandidateInfo) -> None:
        if self._pc.remoteDescription is None:
            raise CandidateRejected("no remote description set")

        text = str(candidate.get("candidate") or "")
        if not text:
            LOG.debug("End-of-candidates marker received")
            return
        if text.startswith("candidate:"):
            text = text[len("candidate:"):]

        try:
            ice_candidate = candidate_from_sdp(text)
        except (IndexError, ValueError) as exc:
            raise CandidateRejected(f"unparseable candidate {text!r}: {exc}") from exc
        ice_candidate.sdpMid = candidate.get("sdpMid")
        ice_candidate.sdpMLineIndex = candidate.get("sdpMLineIndex")

        try:
            await self._pc.addIceCandidate(ice_candidate)
        except (InvalidAccessError, InvalidStateError, RuntimeError, ValueError) as exc:
            raise CandidateRejected(str(exc)) from exc

    async def close(self) -> None:
        await self._pc.close()


def aiortc_factory(
    *,
    local_tracks: Callable[[], Iterable[MediaStreamTrack]] = tuple,
    receive_kinds: Sequence[str] = ("video",),
) -> CapabilityFactory:
    """Build a factory producing a fresh :class:`AiortcPeerConnection` per session."""

    def factory(ice_servers: Sequence[str], callbacks: PeerCallbacks) -> AiortcPeerConnection:
        return AiortcPeerConnection(
            ice_servers,
            callbacks,
            local_tracks=local_tracks(),
            receive_kinds=receive_kinds,
        )

    return factory


def player_tracks(player: MediaPlayer) -> Callable[[], Iterable[MediaStreamTrack]]:
    def tracks() -> Iterable[MediaStreamTrack]:
        return [track for track in (player.audio, player.video) if track is not None]

    return tracks


class SinkMediaOutput:
    """
    Feed remote tracks into an aiortc sink (``MediaBlackhole`` or ``MediaRecorder``).

    A new sink is built for every session because a stopped recorder cannot
    be restarted.
    """

    def __init__(self, sink_factory: Callable[[], Any]) -> None:
        self._sink_factory = sink_factory
        self._sink: Optional[Any] = None

    @classmethod
    def blackhole(cls) -> "SinkMediaOutput":
        return cls(MediaBlackhole)

    @classmethod
    def recorder(cls, path: str) -> "SinkMediaOutput":
        return cls(lambda: MediaRecorder(path))

    async def attach(self, stream: Any) -> None:
        if self._sink is None:
            self._sink = self._sink_factory()
        self._sink.addTrack(stream)
        await self._sink.start()

    async def detach(self) -> None:
        sink, self._sink = self._sink, None
        if sink is None:
            return
        try:
            await sink.stop()
        except asyncio.CancelledError:
            raise
        except Exception:
            LOG.exception("Failed to stop media sink")


__all__ = [
    "AiortcPeerConnection",
    "SinkMediaOutput",
    "aiortc_factory",
    "build_configuration",
    "player_tracks",
]
