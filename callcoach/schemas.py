"""
CallCoach wire payloads (inbound). Every message is an envelope
{"type": ..., "payload": {...}}; payload fields are camelCase on the wire.
"""

import base64
import binascii
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class Envelope(WireModel):
    type: str
    payload: Dict[str, Any] = Field(default_factory=dict)


# ============ SELLER ============

class CallStartPayload(WireModel):
    script_id: str = Field(alias="scriptId")
    platform: str = "OTHER"
    lead_name: Optional[str] = Field(default=None, alias="leadName")
    external_id: Optional[str] = Field(default=None, alias="externalId")


class AudioSegmentPayload(WireModel):
    audio: str
    role: str = "seller"

    def decode(self) -> bytes:
        # Data URLs from the extension carry a "data:audio/webm;base64," prefix
        data = self.audio.split(",", 1)[1] if self.audio.startswith("data:") else self.audio
        try:
            return base64.b64decode(data, validate=False)
        except (binascii.Error, ValueError):
            return b""


class ParticipantsPayload(WireModel):
    lead_name: Optional[str] = Field(default=None, alias="leadName")


class MediaStreamPayload(WireModel):
    chunk: str
    size: Optional[int] = None
    timestamp: Optional[int] = None
    is_header: bool = Field(default=False, alias="isHeader")

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True)


# ============ MANAGER ============

class ManagerJoinPayload(WireModel):
    call_id: str = Field(alias="callId")


class ManagerWhisperPayload(WireModel):
    content: str = Field(min_length=1, max_length=500)
    urgency: Literal["low", "medium", "high"] = "medium"
