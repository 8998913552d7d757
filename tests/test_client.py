"""Tests covering the agent transport's ordered dispatch."""

from __future__ import annotations

import asyncio
import json

from signalrelay.agent.client import SignalingClient


class FakeSocket:
    def __init__(self, frames) -> None:
        self._frames = list(frames)
        self.sent: list[str] = []
        self.closed = False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for frame in self._frames:
            await asyncio.sleep(0)
            yield frame

    async def send(self, data: str) -> None:
        self.sent.append(data)

    async def close(self) -> None:
        self.closed = True


def test_frames_are_dispatched_in_order_one_at_a_time() -> None:
    frames = [json.dumps({"type": "offer", "n": index}) for index in range(5)]
    handled: list[int] = []
    in_flight = 0
    overlap = False
    closed: list[bool] = []

    async def on_message(frame) -> None:
        nonlocal in_flight, overlap
        in_flight += 1
        overlap = overlap or in_flight > 1
        await asyncio.sleep(0.01)
        handled.append(json.loads(frame)["n"])
        in_flight -= 1

    async def on_close() -> None:
        closed.append(True)

    async def scenario() -> None:
        client = SignalingClient("ws://relay.invalid/ws")
        client._ws = FakeSocket(frames)  # type: ignore[attr-defined]
        client.on_message = on_message
        client.on_close = on_close
        await client.run()
        assert not client.is_open

    asyncio.run(scenario())

    assert handled == [0, 1, 2, 3, 4]
    assert not overlap
    assert closed == [True]


def test_handler_errors_do_not_stop_the_pump() -> None:
    handled: list[str] = []

    async def on_message(frame) -> None:
        if frame == "boom":
            raise ValueError("bad frame")
        handled.append(frame)

    async def scenario() -> None:
        client = SignalingClient("ws://relay.invalid/ws")
        client._ws = FakeSocket(["a", "boom", "b"])  # type: ignore[attr-defined]
        client.on_message = on_message
        await client.run()

    asyncio.run(scenario())

    assert handled == ["a", "b"]


def test_send_encodes_json_and_refuses_when_closed() -> None:
    socket = FakeSocket([])

    async def scenario() -> SignalingClient:
        client = SignalingClient("ws://relay.invalid/ws")
        await client.send({"type": "role-ready-responder"})
        client._ws = socket  # type: ignore[attr-defined]
        await client.send({"type": "role-ready-responder"})
        await client.close()
        return client

    client = asyncio.run(scenario())

    assert [json.loads(data) for data in socket.sent] == [{"type": "role-ready-responder"}]
    assert socket.closed
    assert not client.is_open


class BrokenSocket(FakeSocket):
    async def _iterate(self):
        for frame in self._frames:
            await asyncio.sleep(0)
            yield frame
        raise ConnectionResetError("connection reset by peer")


def test_socket_error_fires_error_then_close_hooks() -> None:
    handled: list[str] = []
    events: list[object] = []

    async def on_message(frame) -> None:
        handled.append(frame)

    async def on_error(error: BaseException) -> None:
        events.append(error)

    async def on_close() -> None:
        events.append("closed")

    async def scenario() -> SignalingClient:
        client = SignalingClient("ws://relay.invalid/ws")
        client._ws = BrokenSocket(["a"])  # type: ignore[attr-defined]
        client.on_message = on_message
        client.on_error = on_error
        client.on_close = on_close
        await client.run()
        return client

    client = asyncio.run(scenario())

    assert handled == ["a"]
    assert isinstance(events[0], ConnectionResetError)
    assert events[1:] == ["closed"]
    assert not client.is_open
