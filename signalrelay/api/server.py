"""
FastAPI surface for the signaling relay.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from .. import RelayConfig
from ..signaling.envelope import encode_envelope
from ..signaling.relay import SignalingRelay
from . import schemas

LOG = logging.getLogger(__name__)


class RelaySession:
    """
    One accepted websocket connection.

    Inbound frames are handed to the relay one at a time, in arrival order.
    Outbound envelopes go through a bounded queue drained by a separate
    task, so forwarding to a slow peer never blocks routing for anybody else.
    """

    def __init__(self, relay: SignalingRelay, websocket: WebSocket, *, queue_size: int) -> None:
        self.relay = relay
        self.websocket = websocket
        self.session_id = uuid.uuid4().hex
        self.label = f"ws.{self.session_id[:8]}"
        self.send_queue: asyncio.Queue[Dict[str, Any]] = asyncio.Queue(maxsize=max(1, int(queue_size)))
        self._stop_event = asyncio.Event()
        self._closing = False
        self._error: Optional[BaseException] = None
        self.logger = LOG.getChild(self.label)

    @property
    def is_stopped(self) -> bool:
        return self._stop_event.is_set()

    async def run(self) -> None:
        try:
            await self.websocket.accept()
        except Exception:  # pragma: no cover - defensive
            self.logger.exception("Failed to accept WebSocket connection")
            return

        await self.relay.on_connect(self)
        try:
            async with asyncio.TaskGroup() as task_group:
                task_group.create_task(self._recv_loop())
                task_group.create_task(self._send_loop())
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # pragma: no cover - loops trap their own errors
            self.logger.exception("Relay session crashed")
            self._error = self._error or exc
        finally:
            if self._error is not None:
                await self.relay.on_error(self, self._error)
            else:
                await self.relay.on_disconnect(self)
            await self.close(code=1000)

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        if self._closing:
            return
        self._closing = True
        self._stop_event.set()
        with contextlib.suppress(RuntimeError, WebSocketDisconnect):
            await self.websocket.close(code=code, reason=reason)

    async def send(self, payload: Dict[str, Any]) -> None:
        if self.is_stopped:
            self.logger.debug("Dropping %s for closed session", payload.get("type"))
            return
        try:
            self.send_queue.put_nowait(dict(payload))
        except asyncio.QueueFull:
            self.logger.warning(
                "Dropping %s message due to backpressure",
                payload.get("type"),
            )

    async def _recv_loop(self) -> None:
        try:
            while not self.is_stopped:
                try:
                    message = await self.websocket.receive()
                except asyncio.CancelledError:
                    raise
                except WebSocketDisconnect:
                    break
                except Exception as exc:
                    self.logger.exception("Failed to receive message")
                    self._error = exc
                    break

                if message.get("type") == "websocket.disconnect":
                    break

                frame = message.get("text")
                if frame is None:
                    frame = message.get("bytes")
                if frame is None:
                    continue

                try:
                    await self.relay.on_message(self, frame)
                except asyncio.CancelledError:
                    raise
                except Exception:  # pragma: no cover - guard rails
                    self.logger.exception("Unhandled error while processing message")
        finally:
            self._stop_event.set()

    async def _send_loop(self) -> None:
        try:
            while not self.is_stopped:
                try:
                    payload = await asyncio.wait_for(self.send_queue.get(), timeout=0.5)
                except asyncio.TimeoutError:
                    continue

                try:
                    await self.websocket.send_text(encode_envelope(payload))
                except asyncio.CancelledError:
                    raise
                except WebSocketDisconnect:
                    break
                except RuntimeError as exc:
                    message = str(exc)
                    if "close message has been sent" in message:
                        self.logger.debug("Send after close ignored: %s", message)
                    else:
                        self.logger.exception("Failed to send message", exc_info=exc)
                        self._error = exc
                    break
                except Exception as exc:  # pragma: no cover - defensive
                    self.logger.exception("Failed to send message")
                    self._error = exc
                    break
                finally:
                    self.send_queue.task_done()
        finally:
            self._stop_event.set()


def create_app(
    *,
    relay: Optional[SignalingRelay] = None,
    config: Optional[RelayConfig] = None,
    lifespan: Optional[Callable[..., object]] = None,
) -> FastAPI:
    relay_config = config or RelayConfig()
    signaling = relay or SignalingRelay()

    app = FastAPI(title="Signal Relay", lifespan=lifespan)
    app.state.relay = signaling
    app.state.config = relay_config
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    async def _serve(websocket: WebSocket) -> None:
        session = RelaySession(signaling, websocket, queue_size=relay_config.send_queue_size)
        await session.run()

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket) -> None:
        await _serve(websocket)

    # Browser clients open the socket on the page origin itself.
    @app.websocket("/")
    async def websocket_root(websocket: WebSocket) -> None:
        await _serve(websocket)

    @app.get("/healthz")
    async def healthz() -> dict:
        return {"status": "ok"}

    @app.get("/status")
    async def status() -> schemas.RelayStatusModel:
        return schemas.RelayStatusModel(**signaling.describe())

    if relay_config.static_dir:
        static_dir = Path(relay_config.static_dir).expanduser()
        if static_dir.is_dir():
            app.mount("/", StaticFiles(directory=str(static_dir), html=True), name="static")
        else:
            LOG.warning("Static directory %s does not exist; not serving assets", static_dir)

    return app


__all__ = ["RelaySession", "create_app"]
