"""
Websocket transport used by the agent to reach the relay.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Union

import websockets
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK

from ..signaling.envelope import encode_envelope

LOG = logging.getLogger(__name__)

Frame = Union[str, bytes]
MessageHandler = Callable[[Frame], Awaitable[None]]
CloseHandler = Callable[[], Awaitable[None]]
ErrorHandler = Callable[[BaseException], Awaitable[None]]

_CLOSED = object()


class SignalingClient:
    """
    Persistent connection to the relay.

    Frames are read by one task into an inbox and handed to ``on_message``
    by another, one at a time, so a handler awaiting a slow descriptor
    operation never sees the next envelope early and never stalls the reader.
    """

    def __init__(self, url: str, *, open_timeout: float = 7.0) -> None:
        self.url = url
        self.open_timeout = max(0.1, float(open_timeout))
        self.on_message: Optional[MessageHandler] = None
        self.on_close: Optional[CloseHandler] = None
        self.on_error: Optional[ErrorHandler] = None
        self._ws: Any = None
        self._inbox: asyncio.Queue[Any] = asyncio.Queue()

    @property
    def is_open(self) -> bool:
        return self._ws is not None

    async def connect(self) -> None:
        LOG.info("Connecting to signaling server %s", self.url)
        self._ws = await asyncio.wait_for(websockets.connect(self.url), timeout=self.open_timeout)
        LOG.info("WebSocket connected")

    async def send(self, payload: Dict[str, Any]) -> None:
        ws = self._ws
        if ws is None:
            LOG.error("Socket not ready, can't send %s", payload.get("type"))
            return
        try:
            await ws.send(encode_envelope(payload))
        except ConnectionClosed:
            LOG.warning("Socket closed while sending %s", payload.get("type"))

    async def close(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()

    async def run(self) -> None:
        """Pump frames until the connection ends, then fire ``on_close``."""

        if self._ws is None:
            raise RuntimeError("connect() must be awaited before run()")

        error: Optional[BaseException] = None
        reader = asyncio.create_task(self._read_loop())
        try:
            await self._dispatch_loop()
        finally:
            if not reader.done():
                reader.cancel()
            try:
                error = await reader
            except asyncio.CancelledError:
                pass
            self._ws = None

        if error is not None and self.on_error is not None:
            await self.on_error(error)
        LOG.info("WebSocket disconnected")
        if self.on_close is not None:
            await self.on_close()

    async def _read_loop(self) -> Optional[BaseException]:
        ws = self._ws
        error: Optional[BaseException] = None
        try:
            async for frame in ws:
                await self._inbox.put(frame)
        except ConnectionClosedOK:
            pass
        except (ConnectionClosed, OSError) as exc:
            LOG.error("WebSocket error: %s", exc)
            error = exc
        finally:
            await self._inbox.put(_CLOSED)
        return error

    async def _dispatch_loop(self) -> None:
        while True:
            frame = await self._inbox.get()
            if frame is _CLOSED:
                return
            if self.on_message is None:
                continue
            try:
                await self.on_message(frame)
            except asyncio.CancelledError:
                raise
            except Exception:
                LOG.exception("Unhandled error while processing message")


__all__ = ["SignalingClient"]
