"""
Negotiation agent state machine.

One agent lives on each side of the relay.  It turns relay envelopes into
calls on a peer-connection capability and turns the capability's output
(descriptors, local candidates) back into envelopes.

States::

    IDLE -> READY -> NEGOTIATING -> CONNECTED
      any state -> CLOSED   (peer disconnected, transport lost, local teardown)

A failed descriptor operation releases the capability and parks the agent
in IDLE with an ``Error: ...`` status; nothing is retried automatically.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

from pydantic import ValidationError

from .. import DEFAULT_ICE_SERVERS
from ..api.schemas import IceCandidateModel, SessionDescriptionModel
from ..signaling import envelope as env
from ..signaling.envelope import EnvelopeError, MessageType
from ..signaling.registry import Role
from .peer import (
    CONNECTED_STATES,
    LOST_STATES,
    CandidateInfo,
    CapabilityFactory,
    MediaOutput,
    NullMediaOutput,
    PeerCallbacks,
    PeerConnectionCapability,
    PeerConnectionError,
)

LOG = logging.getLogger(__name__)

SendCallable = Callable[[Dict[str, Any]], Awaitable[None]]
StatusCallback = Callable[[str], None]
Frame = Union[str, bytes, Dict[str, Any]]


class AgentState(str, Enum):
    IDLE = "idle"
    READY = "ready"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    CLOSED = "closed"


class NegotiationAgent:
    def __init__(
        self,
        role: Role,
        send: SendCallable,
        capability_factory: CapabilityFactory,
        *,
        ice_servers: Sequence[str] = DEFAULT_ICE_SERVERS,
        media_output: Optional[MediaOutput] = None,
        on_status: Optional[StatusCallback] = None,
        auto_offer: bool = False,
        expects_remote_media: bool = True,
    ) -> None:
        self.role = role
        self._send = send
        self._capability_factory = capability_factory
        self.ice_servers = list(ice_servers)
        self.media_output: MediaOutput = media_output or NullMediaOutput()
        self._on_status = on_status
        self.auto_offer = auto_offer
        self.expects_remote_media = expects_remote_media

        self.state = AgentState.IDLE
        self.status = ""
        self._capability: Optional[PeerConnectionCapability] = None
        self._generation = 0
        self.remote_stream: Optional[Any] = None
        self.connection_state = "new"
        self.awaiting_answer = False
        self.remote_candidates: List[CandidateInfo] = []
        # Local candidates produced while a description is being committed
        # wait here until that description has gone out.
        self._held_candidates: Optional[List[CandidateInfo]] = None

    @property
    def has_session(self) -> bool:
        return self._capability is not None

    # ------------------------------------------------------------------ helpers

    def set_status(self, text: str) -> None:
        self.status = text
        LOG.info("Status: %s", text)
        if self._on_status is not None:
            try:
                self._on_status(text)
            except Exception:  # pragma: no cover - UI hooks must not break negotiation
                LOG.exception("Status callback failed")

    def _transition(self, state: AgentState) -> None:
        if state is self.state:
            return
        LOG.info("%s agent %s -> %s", self.role.value, self.state.value, state.value)
        self.state = state

    async def _emit(self, payload: Dict[str, Any]) -> None:
        await self._send(payload)

    def _make_callbacks(self, generation: int) -> PeerCallbacks:
        # Events from a capability that has since been replaced are ignored.
        def current() -> bool:
            return generation == self._generation and self._capability is not None

        async def on_local_candidate(candidate: CandidateInfo) -> None:
            if current():
                await self._handle_local_candidate(candidate)

        async def on_remote_stream(stream: Any) -> None:
            if current():
                await self._handle_remote_stream(stream)

        async def on_connection_state_change(state: str) -> None:
            if current():
                await self._handle_connection_state(state)

        return PeerCallbacks(
            on_local_candidate=on_local_candidate,
            on_remote_stream=on_remote_stream,
            on_connection_state_change=on_connection_state_change,
        )

    def _ensure_session(self) -> PeerConnectionCapability:
        if self._capability is not None:
            return self._capability

        self._generation += 1
        try:
            capability = self._capability_factory(self.ice_servers, self._make_callbacks(self._generation))
        except Exception as exc:
            raise PeerConnectionError(f"could not create peer connection: {exc}") from exc

        self._capability = capability
        self.remote_stream = None
        self.connection_state = "new"
        self.awaiting_answer = False
        self.remote_candidates = []
        self._held_candidates = None
        self._transition(AgentState.READY)
        return capability

    async def _release(self) -> None:
        capability, self._capability = self._capability, None
        self._generation += 1
        self._held_candidates = None
        self.awaiting_answer = False
        if capability is not None:
            try:
                await capability.close()
            except asyncio.CancelledError:
                raise
            except Exception:
                LOG.exception("Failed to close peer connection")
        self.remote_stream = None
        try:
            await self.media_output.detach()
        except asyncio.CancelledError:
            raise
        except Exception:
            LOG.exception("Failed to detach media output")
        self.remote_candidates = []
        self.connection_state = "closed"

    async def _fail(self, exc: BaseException) -> None:
        LOG.error("Negotiation failed: %s", exc)
        await self._release()
        self._transition(AgentState.IDLE)
        self.set_status(f"Error: {exc}")

    async def _commit_and_send(
        self, capability: PeerConnectionCapability, kind: MessageType, description: Dict[str, Any]
    ) -> None:
        """Commit a local description, send it, then flush candidates gathered meanwhile."""

        self._held_candidates = []
        try:
            await capability.set_local_description(description)
            await self._emit(env.description(kind, {"type": description["type"], "sdp": description["sdp"]}))
        finally:
            held, self._held_candidates = self._held_candidates or [], None
        for candidate in held:
            await self._emit(env.candidate(candidate))

    # ------------------------------------------------------------------ public API

    async def announce(self) -> None:
        """Tell the relay which role this side plays; call once the transport is open."""

        self.set_status("Connected to signaling server. Waiting for peer...")
        await self._emit(env.role_ready(self.role is Role.CONTROLLER))

    async def handle(self, frame: Frame) -> None:
        """Process one inbound envelope; callers feed envelopes strictly in order."""

        try:
            envelope = env.parse_envelope(frame)
        except EnvelopeError as exc:
            LOG.warning("Error parsing message: %s", exc)
            return

        kind = envelope.type
        if kind is MessageType.AVAILABILITY_NOTICE:
            await self._handle_availability()
        elif kind is MessageType.OFFER:
            await self._handle_offer(envelope.sdp)
        elif kind is MessageType.ANSWER:
            await self._handle_answer(envelope.sdp)
        elif kind is MessageType.CANDIDATE:
            await self._handle_remote_candidate(envelope.candidate)
        elif kind is MessageType.PEER_DISCONNECTED:
            await self.teardown("Peer disconnected.")
        elif kind is None:
            LOG.info("Unknown message type: %r", envelope.raw_type)
        else:
            LOG.info("Ignoring %s addressed to the relay", kind.value)

    async def start(self) -> None:
        """Local initiation: create an offer and send it through the relay."""

        if self.state in (AgentState.NEGOTIATING, AgentState.CONNECTED):
            LOG.info("Negotiation already in progress (%s)", self.state.value)
            return

        self.set_status("Attempting to connect to peer...")
        try:
            capability = self._ensure_session()
            self._transition(AgentState.NEGOTIATING)
            offer = await capability.create_offer()
            self.awaiting_answer = True
            await self._commit_and_send(capability, MessageType.OFFER, offer)
        except PeerConnectionError as exc:
            await self._fail(exc)
            return
        self.set_status("Offer sent. Waiting for answer...")

    async def teardown(self, status: Optional[str] = None) -> None:
        """Release the capability and all session state; reachable from any state."""

        await self._release()
        self._transition(AgentState.CLOSED)
        if status:
            self.set_status(status)

    async def on_transport_closed(self) -> None:
        await self.teardown("Disconnected from signaling server.")

    # ------------------------------------------------------------------ inbound

    async def _handle_availability(self) -> None:
        self.set_status("Peer available. Ready to connect.")
        try:
            self._ensure_session()
        except PeerConnectionError as exc:
            await self._fail(exc)
            return
        if self.auto_offer:
            await self.start()

    async def _handle_offer(self, sdp: Any) -> None:
        self.set_status("Offer received. Creating answer...")
        try:
            if not isinstance(sdp, dict):
                raise PeerConnectionError("offer carries no session description")
            offer = SessionDescriptionModel(type="offer", sdp=sdp.get("sdp") or "")
            capability = self._ensure_session()
            self._transition(AgentState.NEGOTIATING)
            await capability.set_remote_description(offer.to_wire())
            answer = await capability.create_answer()
            await self._commit_and_send(capability, MessageType.ANSWER, answer)
        except (PeerConnectionError, ValidationError) as exc:
            await self._fail(exc)
            return
        self.set_status("Answer sent. Waiting for connection...")
        # A renegotiation over a live connection gets no new state event.
        self._maybe_connected()

    async def _handle_answer(self, sdp: Any) -> None:
        capability = self._capability
        if capability is None:
            LOG.error("No peer connection to handle answer")
            return
        if not self.awaiting_answer:
            LOG.warning("Ignoring answer: no local offer is pending")
            return
        try:
            if not isinstance(sdp, dict):
                raise PeerConnectionError("answer carries no session description")
            answer = SessionDescriptionModel(type="answer", sdp=sdp.get("sdp") or "")
            await capability.set_remote_description(answer.to_wire())
        except (PeerConnectionError, ValidationError) as exc:
            await self._fail(exc)
            return
        self.awaiting_answer = False
        self.set_status("Answer received. Waiting for connection...")

    async def _handle_remote_candidate(self, payload: Any) -> None:
        capability = self._capability
        if capability is None:
            LOG.error("No peer connection to handle ICE candidate")
            return
        try:
            candidate = IceCandidateModel.model_validate(payload).to_wire()
        except ValidationError as exc:
            LOG.warning("Ignoring malformed ICE candidate %r: %s", payload, exc)
            return
        try:
            await capability.add_remote_candidate(candidate)
        except PeerConnectionError as exc:
            LOG.warning("Error adding received ICE candidate: %s", exc)
            return
        self.remote_candidates.append(candidate)

    # ------------------------------------------------------------------ capability events

    async def _handle_local_candidate(self, candidate: CandidateInfo) -> None:
        if self._held_candidates is not None:
            self._held_candidates.append(candidate)
            return
        await self._emit(env.candidate(candidate))

    async def _handle_remote_stream(self, stream: Any) -> None:
        self.remote_stream = stream
        try:
            await self.media_output.attach(stream)
        except asyncio.CancelledError:
            raise
        except Exception:
            LOG.exception("Failed to attach remote stream")
        self._maybe_connected()

    async def _handle_connection_state(self, state: str) -> None:
        LOG.info("Connection state: %s", state)
        self.connection_state = state
        if state in CONNECTED_STATES:
            self._maybe_connected()
        elif state in LOST_STATES and self.state in (AgentState.NEGOTIATING, AgentState.CONNECTED):
            self.set_status(f"Peer connection {state}.")

    def _maybe_connected(self) -> None:
        if self.state is not AgentState.NEGOTIATING:
            return
        if self.connection_state not in CONNECTED_STATES:
            return
        if self.expects_remote_media and self.remote_stream is None:
            return
        self._transition(AgentState.CONNECTED)
        self.set_status("Connected! Video streaming." if self.remote_stream is not None else "Connected!")


__all__ = ["AgentState", "NegotiationAgent"]
