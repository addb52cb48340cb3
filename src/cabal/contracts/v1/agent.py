from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from ...util.time import now_ts


MessageKind = Literal["request", "response", "stream", "error"]
StreamKind = Literal["response", "event", "log"]

MESSAGE_KINDS = ("request", "response", "stream", "error")
STREAM_MARKERS = ("stream:start", "stream:chunk", "stream:end")


class AgentMessage(BaseModel):
    """One typed message to or from an agent subprocess."""

    agent_id: str
    kind: MessageKind = "response"
    payload: Any = None
    timestamp: float = Field(default_factory=now_ts)
    correlation_id: Optional[str] = None

    model_config = ConfigDict(extra="forbid", frozen=True)

    @classmethod
    def from_output(cls, agent_id: str, parsed: Any) -> "AgentMessage":
        """Build a message from one parsed line of agent stdout.

        `type` picks the kind (stream lifecycle markers count as `stream`,
        anything unknown as `response`); the whole object is the payload.
        """
        kind: MessageKind = "response"
        correlation_id: Optional[str] = None
        if isinstance(parsed, dict):
            t = str(parsed.get("type") or "").strip()
            if t in MESSAGE_KINDS:
                kind = t  # type: ignore[assignment]
            elif t in STREAM_MARKERS:
                kind = "stream"
            cid = parsed.get("correlationId")
            if cid is not None and str(cid).strip():
                correlation_id = str(cid).strip()
        return cls(agent_id=agent_id, kind=kind, payload=parsed, correlation_id=correlation_id)


class StreamMetadata(BaseModel):
    """Bookkeeping for one logical stream; `chunk_count` only grows."""

    stream_id: str
    agent_id: str
    kind: StreamKind = "response"
    started_at: float = Field(default_factory=now_ts)
    chunk_count: int = 0
    closed: bool = False

    model_config = ConfigDict(extra="forbid")
