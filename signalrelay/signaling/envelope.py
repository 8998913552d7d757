"""
Wire envelope contract shared by the relay and the negotiation agent.

Envelopes are JSON objects with a ``type`` discriminator.  Negotiation
payloads (``sdp`` for offers/answers, ``candidate`` for ICE fragments) are
treated as opaque objects: this module checks their shape, never their
contents, so whatever a peer sent is what its counterpart receives.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union


class EnvelopeError(ValueError):
    """Raised when an inbound frame cannot be interpreted as an envelope."""


class MessageType(str, Enum):
    ROLE_READY_CONTROLLER = "role-ready-controller"
    ROLE_READY_RESPONDER = "role-ready-responder"
    AVAILABILITY_NOTICE = "availability-notice"
    OFFER = "offer"
    ANSWER = "answer"
    CANDIDATE = "candidate"
    PEER_DISCONNECTED = "peer-disconnected"


# Names used by earlier iterations of the browser/Android clients.
LEGACY_TYPE_ALIASES: Dict[str, MessageType] = {
    "pc-ready": MessageType.ROLE_READY_CONTROLLER,
    "android-ready": MessageType.ROLE_READY_RESPONDER,
    "android-available": MessageType.AVAILABILITY_NOTICE,
    "client-disconnected": MessageType.PEER_DISCONNECTED,
}

DESCRIPTION_TYPES = frozenset({MessageType.OFFER, MessageType.ANSWER})


@dataclass(frozen=True)
class Envelope:
    """
    A parsed inbound envelope.

    ``type`` is ``None`` when the frame was well formed JSON but carried a
    type this protocol does not know; ``raw_type`` keeps the original value
    for diagnostics.
    """

    type: Optional[MessageType]
    raw_type: Any
    body: Dict[str, Any]

    @property
    def sdp(self) -> Any:
        return self.body.get("sdp")

    @property
    def candidate(self) -> Any:
        return self.body.get("candidate")


def resolve_type(value: Any) -> Optional[MessageType]:
    if not isinstance(value, str):
        return None
    try:
        return MessageType(value)
    except ValueError:
        return LEGACY_TYPE_ALIASES.get(value)


def parse_envelope(frame: Union[str, bytes, Dict[str, Any]]) -> Envelope:
    """
    Decode a text/binary frame (or an already decoded mapping).

    Raises :class:`EnvelopeError` for unparseable JSON or non-object frames.
    Unknown ``type`` values are not an error here; callers decide how to
    report them.
    """

    if isinstance(frame, dict):
        body = frame
    else:
        if isinstance(frame, (bytes, bytearray)):
            try:
                frame = bytes(frame).decode("utf-8")
            except UnicodeDecodeError as exc:
                raise EnvelopeError(f"frame is not valid UTF-8: {exc}") from exc
        try:
            body = json.loads(frame)
        except (TypeError, ValueError) as exc:
            raise EnvelopeError(f"invalid JSON message: {exc}") from exc
        if not isinstance(body, dict):
            raise EnvelopeError(f"envelope must be a JSON object, got {type(body).__name__}")

    raw_type = body.get("type")
    return Envelope(type=resolve_type(raw_type), raw_type=raw_type, body=body)


def encode_envelope(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, separators=(",", ":"))


# ---------------------------------------------------------------------- builders


def role_ready(controller: bool) -> Dict[str, Any]:
    kind = MessageType.ROLE_READY_CONTROLLER if controller else MessageType.ROLE_READY_RESPONDER
    return {"type": kind.value}


def availability_notice() -> Dict[str, Any]:
    return {"type": MessageType.AVAILABILITY_NOTICE.value}


def peer_disconnected() -> Dict[str, Any]:
    return {"type": MessageType.PEER_DISCONNECTED.value}


def description(kind: MessageType, sdp: Any) -> Dict[str, Any]:
    if kind not in DESCRIPTION_TYPES:
        raise EnvelopeError(f"{kind.value} does not carry a session description")
    return {"type": kind.value, "sdp": sdp}


def candidate(candidate_info: Any) -> Dict[str, Any]:
    return {"type": MessageType.CANDIDATE.value, "candidate": candidate_info}


__all__ = [
    "DESCRIPTION_TYPES",
    "Envelope",
    "EnvelopeError",
    "LEGACY_TYPE_ALIASES",
    "MessageType",
    "availability_notice",
    "candidate",
    "description",
    "encode_envelope",
    "parse_envelope",
    "peer_disconnected",
    "resolve_type",
    "role_ready",
]
