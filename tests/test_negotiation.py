"""Tests covering the negotiation agent state machine with a fake capability."""

from __future__ import annotations

import asyncio
import json
import logging

from signalrelay.agent.negotiation import AgentState, NegotiationAgent
from signalrelay.agent.peer import CandidateRejected, NullMediaOutput, PeerConnectionError
from signalrelay.signaling.registry import Role

AGENT_LOGGER = "signalrelay.agent.negotiation"

LOCAL_CANDIDATES = [
    {"candidate": "candidate:1 1 udp 2130706431 192.168.1.20 50000 typ host", "sdpMLineIndex": 0, "sdpMid": "0"},
    {"candidate": "candidate:2 1 udp 1694498815 203.0.113.9 50000 typ srflx", "sdpMLineIndex": 0, "sdpMid": "0"},
]
REMOTE_CANDIDATE = {"candidate": "candidate:3 1 udp 2130706431 192.168.1.30 40000 typ host", "sdpMLineIndex": 0, "sdpMid": "0"}


class FakeCapability:
    def __init__(self, ice_servers, callbacks, *, fail_on=(), gathered=()) -> None:
        self.ice_servers = list(ice_servers)
        self.callbacks = callbacks
        self.fail_on = set(fail_on)
        self.gathered = list(gathered)
        self.remote = None
        self.local = None
        self.candidates: list[dict] = []
        self.closed = False

    @property
    def has_remote_description(self) -> bool:
        return self.remote is not None

    async def set_remote_description(self, description) -> None:
        if "remote" in self.fail_on:
            raise PeerConnectionError("remote description rejected")
        self.remote = description

    async def create_offer(self):
        return {"type": "offer", "sdp": "v=0 local-offer"}

    async def create_answer(self):
        if self.remote is None:
            raise PeerConnectionError("no remote offer")
        return {"type": "answer", "sdp": "v=0 local-answer"}

    async def set_local_description(self, description) -> None:
        self.local = description
        for candidate in self.gathered:
            await self.callbacks.on_local_candidate(candidate)

    async def add_remote_candidate(self, candidate) -> None:
        if self.remote is None:
            raise CandidateRejected("no remote description set")
        self.candidates.append(candidate)

    async def close(self) -> None:
        self.closed = True


class FakeFactory:
    def __init__(self, **options) -> None:
        self.options = options
        self.created: list[FakeCapability] = []

    def __call__(self, ice_servers, callbacks) -> FakeCapability:
        capability = FakeCapability(ice_servers, callbacks, **self.options)
        self.created.append(capability)
        return capability

    @property
    def last(self) -> FakeCapability:
        return self.created[-1]


class Harness:
    def __init__(self, role: Role = Role.CONTROLLER, **options) -> None:
        self.outbox: list[dict] = []
        self.statuses: list[str] = []
        self.factory = FakeFactory(**options.pop("capability", {}))
        self.media = NullMediaOutput()
        self.agent = NegotiationAgent(
            role,
            self.send,
            self.factory,
            ice_servers=["stun:stun.example.org:3478"],
            media_output=self.media,
            on_status=self.statuses.append,
            **options,
        )

    async def send(self, payload: dict) -> None:
        self.outbox.append(payload)

    def types(self) -> list[str]:
        return [message["type"] for message in self.outbox]


def test_announce_sends_role_ready() -> None:
    controller = Harness(Role.CONTROLLER)
    responder = Harness(Role.RESPONDER)

    asyncio.run(controller.agent.announce())
    asyncio.run(responder.agent.announce())

    assert controller.outbox == [{"type": "role-ready-controller"}]
    assert responder.outbox == [{"type": "role-ready-responder"}]


def test_availability_notice_creates_capability() -> None:
    harness = Harness()

    asyncio.run(harness.agent.handle(json.dumps({"type": "availability-notice"})))

    assert harness.agent.state is AgentState.READY
    assert len(harness.factory.created) == 1
    assert harness.factory.last.ice_servers == ["stun:stun.example.org:3478"]
    assert harness.statuses[-1] == "Peer available. Ready to connect."
    assert harness.outbox == []


def test_inbound_offer_produces_answer_before_candidates() -> None:
    harness = Harness(capability={"gathered": LOCAL_CANDIDATES})
    offer = {"type": "offer", "sdp": {"type": "offer", "sdp": "v=0 remote-offer"}}

    asyncio.run(harness.agent.handle(offer))

    capability = harness.factory.last
    assert capability.remote == {"type": "offer", "sdp": "v=0 remote-offer"}
    assert capability.local == {"type": "answer", "sdp": "v=0 local-answer"}
    assert harness.outbox[0] == {"type": "answer", "sdp": {"type": "answer", "sdp": "v=0 local-answer"}}
    assert harness.outbox[1:] == [{"type": "candidate", "candidate": c} for c in LOCAL_CANDIDATES]
    assert harness.agent.state is AgentState.NEGOTIATING
    assert harness.agent.status == "Answer sent. Waiting for connection..."


def test_offerer_path_sends_offer_then_applies_answer() -> None:
    harness = Harness(auto_offer=True)

    async def scenario() -> None:
        await harness.agent.handle({"type": "availability-notice"})
        assert harness.agent.awaiting_answer
        await harness.agent.handle({"type": "answer", "sdp": {"type": "answer", "sdp": "v=0 remote-answer"}})

    asyncio.run(scenario())

    assert harness.outbox == [{"type": "offer", "sdp": {"type": "offer", "sdp": "v=0 local-offer"}}]
    assert harness.factory.last.remote == {"type": "answer", "sdp": "v=0 remote-answer"}
    assert not harness.agent.awaiting_answer
    assert harness.agent.state is AgentState.NEGOTIATING


def test_start_while_negotiating_is_a_no_op() -> None:
    harness = Harness()

    async def scenario() -> None:
        await harness.agent.start()
        await harness.agent.start()

    asyncio.run(scenario())

    assert harness.types() == ["offer"]
    assert len(harness.factory.created) == 1


def test_candidate_before_remote_description_is_logged_not_fatal(caplog) -> None:
    harness = Harness()

    async def scenario() -> None:
        await harness.agent.handle({"type": "availability-notice"})
        await harness.agent.handle({"type": "candidate", "candidate": REMOTE_CANDIDATE})

    with caplog.at_level(logging.WARNING, logger=AGENT_LOGGER):
        asyncio.run(scenario())

    assert harness.agent.state is AgentState.READY
    assert harness.factory.last.candidates == []
    assert harness.agent.remote_candidates == []
    assert any("Error adding received ICE candidate" in record.getMessage() for record in caplog.records)


def test_candidate_without_capability_is_ignored(caplog) -> None:
    harness = Harness()

    with caplog.at_level(logging.ERROR, logger=AGENT_LOGGER):
        asyncio.run(harness.agent.handle({"type": "candidate", "candidate": REMOTE_CANDIDATE}))

    assert harness.agent.state is AgentState.IDLE
    assert harness.factory.created == []
    assert any("No peer connection" in record.getMessage() for record in caplog.records)


def test_remote_candidates_are_applied_after_offer() -> None:
    harness = Harness(Role.RESPONDER)
    legacy = {"type": "candidate", "label": 0, "id": "0", "candidate": REMOTE_CANDIDATE["candidate"]}

    async def scenario() -> None:
        await harness.agent.handle({"type": "offer", "sdp": {"type": "offer", "sdp": "v=0"}})
        await harness.agent.handle({"type": "candidate", "candidate": REMOTE_CANDIDATE})
        await harness.agent.handle({"type": "candidate", "candidate": legacy})

    asyncio.run(scenario())

    assert harness.factory.last.candidates == [REMOTE_CANDIDATE, REMOTE_CANDIDATE]
    assert harness.agent.remote_candidates == [REMOTE_CANDIDATE, REMOTE_CANDIDATE]


def test_connected_requires_state_and_remote_stream() -> None:
    harness = Harness()
    stream = object()

    async def scenario() -> None:
        await harness.agent.handle({"type": "offer", "sdp": {"type": "offer", "sdp": "v=0"}})
        callbacks = harness.factory.last.callbacks
        await callbacks.on_connection_state_change("connected")
        assert harness.agent.state is AgentState.NEGOTIATING
        await callbacks.on_remote_stream(stream)

    asyncio.run(scenario())

    assert harness.agent.state is AgentState.CONNECTED
    assert harness.agent.status == "Connected! Video streaming."
    assert harness.media.stream is stream


def test_local_candidate_after_answer_is_forwarded_immediately() -> None:
    harness = Harness(Role.RESPONDER, expects_remote_media=False)

    async def scenario() -> None:
        await harness.agent.handle({"type": "offer", "sdp": {"type": "offer", "sdp": "v=0"}})
        callbacks = harness.factory.last.callbacks
        await callbacks.on_local_candidate(LOCAL_CANDIDATES[0])
        await callbacks.on_connection_state_change("connected")

    asyncio.run(scenario())

    assert harness.outbox[-1] == {"type": "candidate", "candidate": LOCAL_CANDIDATES[0]}
    assert harness.agent.state is AgentState.CONNECTED


def test_peer_disconnected_tears_everything_down() -> None:
    harness = Harness()
    stream = object()

    async def scenario() -> None:
        await harness.agent.handle({"type": "offer", "sdp": {"type": "offer", "sdp": "v=0"}})
        await harness.factory.last.callbacks.on_remote_stream(stream)
        await harness.agent.handle({"type": "peer-disconnected"})

    asyncio.run(scenario())

    assert harness.agent.state is AgentState.CLOSED
    assert harness.factory.last.closed
    assert harness.agent.remote_stream is None
    assert harness.media.stream is None
    assert not harness.agent.has_session
    assert harness.agent.status == "Peer disconnected."


def test_stale_callbacks_are_ignored_after_teardown() -> None:
    harness = Harness()

    async def scenario() -> None:
        await harness.agent.handle({"type": "availability-notice"})
        callbacks = harness.factory.last.callbacks
        await harness.agent.teardown()
        await callbacks.on_local_candidate(LOCAL_CANDIDATES[0])
        await callbacks.on_connection_state_change("connected")

    asyncio.run(scenario())

    assert harness.outbox == []
    assert harness.agent.state is AgentState.CLOSED


def test_descriptor_failure_is_reported_and_not_retried() -> None:
    harness = Harness(capability={"fail_on": {"remote"}})

    asyncio.run(harness.agent.handle({"type": "offer", "sdp": {"type": "offer", "sdp": "v=0"}}))

    assert harness.agent.state is AgentState.IDLE
    assert harness.agent.status == "Error: remote description rejected"
    assert harness.factory.last.closed
    assert harness.outbox == []
    assert len(harness.factory.created) == 1


def test_new_session_after_close() -> None:
    harness = Harness()

    async def scenario() -> None:
        await harness.agent.handle({"type": "availability-notice"})
        await harness.agent.handle({"type": "client-disconnected"})
        await harness.agent.handle({"type": "android-available"})

    asyncio.run(scenario())

    assert len(harness.factory.created) == 2
    assert harness.factory.created[0].closed
    assert harness.agent.state is AgentState.READY


def test_answer_without_session_and_garbage_are_ignored() -> None:
    harness = Harness()

    async def scenario() -> None:
        await harness.agent.handle({"type": "answer", "sdp": {"type": "answer", "sdp": "v=0"}})
        await harness.agent.handle("not json at all")
        await harness.agent.handle({"type": "something-new"})
        await harness.agent.handle({"type": "offer"})

    asyncio.run(scenario())

    assert harness.agent.state is AgentState.IDLE
    assert harness.agent.status.startswith("Error:")
    assert harness.outbox == []


def test_transport_close_tears_down() -> None:
    harness = Harness()

    async def scenario() -> None:
        await harness.agent.handle({"type": "availability-notice"})
        await harness.agent.on_transport_closed()

    asyncio.run(scenario())

    assert harness.factory.last.closed
    assert harness.agent.state is AgentState.CLOSED
    assert harness.agent.status == "Disconnected from signaling server."


def test_unsolicited_answer_is_dropped(caplog) -> None:
    harness = Harness(Role.RESPONDER)
    answer = {"type": "answer", "sdp": {"type": "answer", "sdp": "v=0 stray-answer"}}

    async def scenario() -> None:
        await harness.agent.handle({"type": "offer", "sdp": {"type": "offer", "sdp": "v=0"}})
        await harness.agent.handle(answer)

    with caplog.at_level(logging.WARNING, logger=AGENT_LOGGER):
        asyncio.run(scenario())

    assert harness.factory.last.remote == {"type": "offer", "sdp": "v=0"}
    assert harness.agent.state is AgentState.NEGOTIATING
    assert harness.agent.status == "Answer sent. Waiting for connection..."
    assert any("no local offer is pending" in record.getMessage() for record in caplog.records)


def test_repeated_answer_is_applied_once() -> None:
    harness = Harness()
    answer = {"type": "answer", "sdp": {"type": "answer", "sdp": "v=0 remote-answer"}}

    async def scenario() -> None:
        await harness.agent.start()
        await harness.agent.handle(answer)
        harness.factory.last.remote = None
        await harness.agent.handle(answer)

    asyncio.run(scenario())

    assert harness.factory.last.remote is None
    assert harness.agent.state is AgentState.NEGOTIATING
    assert harness.agent.status == "Answer received. Waiting for connection..."


def test_rejected_answer_releases_capability() -> None:
    harness = Harness(capability={"fail_on": {"remote"}})

    async def scenario() -> None:
        await harness.agent.start()
        await harness.agent.handle({"type": "answer", "sdp": {"type": "answer", "sdp": "v=0"}})

    asyncio.run(scenario())

    assert harness.agent.state is AgentState.IDLE
    assert harness.agent.status == "Error: remote description rejected"
    assert harness.factory.last.closed
    assert not harness.agent.has_session


def test_renegotiation_over_live_connection_returns_to_connected() -> None:
    harness = Harness(Role.RESPONDER)
    stream = object()
    offer = {"type": "offer", "sdp": {"type": "offer", "sdp": "v=0"}}

    async def scenario() -> None:
        await harness.agent.handle(offer)
        callbacks = harness.factory.last.callbacks
        await callbacks.on_connection_state_change("connected")
        await callbacks.on_remote_stream(stream)
        assert harness.agent.state is AgentState.CONNECTED
        await harness.agent.handle(offer)

    asyncio.run(scenario())

    assert harness.types() == ["answer", "answer"]
    assert len(harness.factory.created) == 1
    assert harness.agent.state is AgentState.CONNECTED
    assert harness.agent.status == "Connected! Video streaming."
