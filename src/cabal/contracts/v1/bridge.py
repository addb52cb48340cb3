from __future__ import annotations

from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


NotificationLevel = Literal["normal", "notification", "critical"]

INBOUND_TYPES = (
    "agent:spawn",
    "agent:kill",
    "agent:message",
    "agent:list",
    "stats",
    "human:response",
)


class BridgeMessage(BaseModel):
    """Envelope exchanged with the UI, one JSON object per line."""

    type: str
    payload: Any = Field(default_factory=dict)
    id: Optional[str] = None

    model_config = ConfigDict(extra="ignore")

    def to_wire(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"type": self.type, "payload": self.payload}
        if self.id:
            out["id"] = self.id
        return out


class ErrorInfo(BaseModel):
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")
