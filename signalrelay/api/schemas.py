"""
Pydantic schemas mirroring the wire and REST contract.

The relay forwards payloads untouched and only uses these models for its
status endpoint; the agent uses them to read descriptors and candidates
coming off the wire.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, validator

DESCRIPTION_KINDS = {"offer", "answer", "pranswer", "rollback"}


class SessionDescriptionModel(BaseModel):
    type: str
    sdp: str = ""

    @validator("type", pre=True)
    def _normalise_type(cls, value: object) -> str:
        result = str(value or "").strip().lower()
        if result not in DESCRIPTION_KINDS:
            raise ValueError(f"unsupported description type {value!r}")
        return result

    def to_wire(self) -> Dict[str, Any]:
        return {"type": self.type, "sdp": self.sdp}


class IceCandidateModel(BaseModel):
    candidate: str
    sdp_mline_index: Optional[int] = Field(
        default=None,
        validation_alias=AliasChoices("sdpMLineIndex", "sdp_mline_index", "label"),
        serialization_alias="sdpMLineIndex",
    )
    sdp_mid: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("sdpMid", "sdp_mid", "id"),
        serialization_alias="sdpMid",
    )

    model_config = ConfigDict(populate_by_name=True)

    @validator("sdp_mid", pre=True)
    def _coerce_mid(cls, value: object) -> Optional[str]:
        return None if value is None else str(value)

    def to_wire(self) -> Dict[str, Any]:
        return {
            "candidate": self.candidate,
            "sdpMLineIndex": self.sdp_mline_index,
            "sdpMid": self.sdp_mid,
        }


class RelayStatusModel(BaseModel):
    controller: bool = False
    responder: bool = False
    paired: bool = False
    connections: int = 0
