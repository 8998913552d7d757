"""
Signaling relay state machine.

The relay owns a :class:`RoleRegistry` and routes envelopes between the
controller and responder connections.  It knows nothing about websockets:
anything with an awaitable ``send(payload)`` and a ``label`` can be
registered, which keeps the routing rules testable without a server.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Protocol, Set, Union

from . import envelope as env
from .envelope import DESCRIPTION_TYPES, Envelope, EnvelopeError, MessageType
from .registry import Role, RoleRegistry

LOG = logging.getLogger(__name__)

Frame = Union[str, bytes, Dict[str, Any]]

ROLE_READY_TYPES: Dict[MessageType, Role] = {
    MessageType.ROLE_READY_CONTROLLER: Role.CONTROLLER,
    MessageType.ROLE_READY_RESPONDER: Role.RESPONDER,
}


class Connection(Protocol):
    label: str

    async def send(self, payload: Dict[str, Any]) -> None:
        ...


def _label(conn: Optional[Connection]) -> str:
    if conn is None:
        return "-"
    return str(getattr(conn, "label", None) or f"conn-{id(conn):x}")


class SignalingRelay:
    """Pair one controller with one responder and forward negotiation envelopes."""

    def __init__(self, registry: Optional[RoleRegistry[Connection]] = None) -> None:
        self.registry: RoleRegistry[Connection] = registry if registry is not None else RoleRegistry()
        self._connections: Set[Connection] = set()

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def describe(self) -> Dict[str, Any]:
        bindings = self.registry.snapshot()
        controller = bindings[Role.CONTROLLER] is not None
        responder = bindings[Role.RESPONDER] is not None
        return {
            "controller": controller,
            "responder": responder,
            "paired": controller and responder,
            "connections": self.connection_count,
        }

    # ------------------------------------------------------------------ lifecycle

    async def on_connect(self, conn: Connection) -> None:
        self._connections.add(conn)
        LOG.info("Connection %s opened (%d live)", _label(conn), len(self._connections))

    async def on_disconnect(self, conn: Connection) -> None:
        """
        Clear any role held by ``conn`` and tell the surviving peer.

        Safe to call more than once for the same connection: the second call
        finds nothing bound and sends nothing.
        """

        self._connections.discard(conn)
        releases = await self.registry.release(conn)
        if not releases:
            LOG.info("Connection %s closed (no role bound)", _label(conn))
            return

        notified: Set[int] = set()
        for release in releases:
            LOG.info("%s %s disconnected", release.role.value.capitalize(), _label(conn))
            survivor = release.survivor
            if survivor is None or survivor is conn or id(survivor) in notified:
                continue
            notified.add(id(survivor))
            await self._deliver(survivor, env.peer_disconnected())

    async def on_error(self, conn: Connection, error: Optional[BaseException] = None) -> None:
        if error is not None:
            LOG.error("Connection %s error: %s", _label(conn), error)
        else:
            LOG.error("Connection %s error", _label(conn))
        await self.on_disconnect(conn)

    # ------------------------------------------------------------------ messages

    async def on_message(self, conn: Connection, frame: Frame) -> None:
        try:
            envelope = env.parse_envelope(frame)
        except EnvelopeError as exc:
            LOG.warning("Dropping malformed envelope from %s: %s", _label(conn), exc)
            return

        kind = envelope.type
        if kind is None:
            LOG.info("Unknown message type %r from %s", envelope.raw_type, _label(conn))
            return

        LOG.debug("Received %s from %s", kind.value, _label(conn))

        role = ROLE_READY_TYPES.get(kind)
        if role is not None:
            await self._handle_role_ready(conn, role)
            return

        if kind in DESCRIPTION_TYPES or kind is MessageType.CANDIDATE:
            await self._forward(conn, kind, envelope)
            return

        LOG.info("Ignoring relay-originated type %s sent by %s", kind.value, _label(conn))

    async def _handle_role_ready(self, conn: Connection, role: Role) -> None:
        result = await self.registry.bind(role, conn)
        LOG.info("%s identified: %s", role.value.capitalize(), _label(conn))
        if result.superseded is not None:
            LOG.info(
                "%s binding moved from %s to %s",
                role.value.capitalize(),
                _label(result.superseded),
                _label(conn),
            )
        if result.paired and result.controller is not None:
            LOG.info("Pairing complete; notifying controller %s", _label(result.controller))
            await self._deliver(result.controller, env.availability_notice())

    async def _forward(self, conn: Connection, kind: MessageType, envelope: Envelope) -> None:
        if kind is MessageType.CANDIDATE:
            payload = envelope.candidate
            if not isinstance(payload, dict):
                LOG.error(
                    "Candidate message from %s is missing 'candidate' object: %r",
                    _label(conn),
                    envelope.body,
                )
                return
            outbound = env.candidate(payload)
        else:
            payload = envelope.sdp
            if not isinstance(payload, dict):
                LOG.error(
                    "%s message from %s is missing 'sdp' object",
                    kind.value.capitalize(),
                    _label(conn),
                )
                return
            outbound = env.description(kind, payload)

        role, target = await self.registry.route(conn)
        if role is None:
            LOG.warning("Dropping %s from %s: sender has no role", kind.value, _label(conn))
            return
        if target is None or target is conn:
            LOG.warning(
                "Dropping %s from %s: %s not ready",
                kind.value,
                role.value,
                role.counterpart.value,
            )
            return

        LOG.debug("Forwarding %s from %s to %s", kind.value, role.value, role.counterpart.value)
        await self._deliver(target, outbound)

    async def _deliver(self, conn: Connection, payload: Dict[str, Any]) -> None:
        try:
            await conn.send(payload)
        except asyncio.CancelledError:
            raise
        except Exception:
            LOG.exception("Failed to deliver %s to %s", payload.get("type"), _label(conn))


__all__ = ["Connection", "ROLE_READY_TYPES", "SignalingRelay"]
