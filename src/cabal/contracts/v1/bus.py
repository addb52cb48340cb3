from __future__ import annotations

import uuid
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ...util.time import now_ts
from .agent import AgentMessage
from .human import HumanNotification, HumanRequest
from .registry import AgentProfile


BROADCAST_TARGET = "all"


class BusEvent(BaseModel):
    v: int = 1
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    ts: float = Field(default_factory=now_ts)
    topic: str
    origin: str = ""
    data: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")


class AgentSpawnData(BaseModel):
    agent_id: str
    pid: int = 0
    args: List[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid")


class AgentExitData(BaseModel):
    agent_id: str
    code: Optional[int] = None

    model_config = ConfigDict(extra="forbid")


class AgentErrorData(BaseModel):
    agent_id: str
    error: str

    model_config = ConfigDict(extra="forbid")


class AgentOutputData(BaseModel):
    agent_id: str
    data: str

    model_config = ConfigDict(extra="forbid")


class PeerAnnounceData(BaseModel):
    node_id: str
    agent_id: str = ""
    capabilities: List[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid")


class PeerLeaveData(BaseModel):
    node_id: str

    model_config = ConfigDict(extra="forbid")


class PeerMessageData(BaseModel):
    from_: str = Field(alias="from")
    to: str
    content: Any = None

    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class PeerRequestData(BaseModel):
    from_: str = Field(alias="from")
    to: str
    content: Any = None
    request_id: str

    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class PeerResponseData(BaseModel):
    node_id: str
    agent_id: str = ""
    request_id: str
    data: Any = None

    model_config = ConfigDict(extra="forbid")


class RouteAddedData(BaseModel):
    node_id: str
    topic: str
    pattern: str

    model_config = ConfigDict(extra="forbid")


class RouteRequestData(BaseModel):
    topic: str
    payload: Any = None
    request_id: str
    from_: str = Field(alias="from")
    reply_to: str

    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class RouteResultData(BaseModel):
    original_msg: Any = None
    result: Any = None
    handled_by: str
    topic: str

    model_config = ConfigDict(extra="forbid")


class RouteErrorData(BaseModel):
    topic: str
    pattern: str
    error: str
    msg: Any = None

    model_config = ConfigDict(extra="forbid")


class RegistryAgentRef(BaseModel):
    agent_id: str

    model_config = ConfigDict(extra="forbid")


class RegistryUpdateData(BaseModel):
    agent_id: str
    updates: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")


_TOPIC_TO_MODEL = {
    "agent:spawn": AgentSpawnData,
    "agent:exit": AgentExitData,
    "agent:error": AgentErrorData,
    "agent:output": AgentOutputData,
    "message:send": AgentMessage,
    "message:receive": AgentMessage,
    "peer:announce": PeerAnnounceData,
    "peer:discovered": PeerAnnounceData,
    "peer:leave": PeerLeaveData,
    "peer:message": PeerMessageData,
    "peer:request": PeerRequestData,
    "peer:response": PeerResponseData,
    "route:added": RouteAddedData,
    "route:request": RouteRequestData,
    "route:result": RouteResultData,
    "route:error": RouteErrorData,
    "registry:announce": AgentProfile,
    "registry:heartbeat": RegistryAgentRef,
    "registry:leave": RegistryAgentRef,
    "registry:update": RegistryUpdateData,
    "human:request": HumanRequest,
    "human:attention": HumanNotification,
}


def normalize_topic_data(topic: str, data: Any) -> Dict[str, Any]:
    """Validate `data` against the payload model of a known topic family.

    Unknown topics (reply addresses, app-level topics) keep their dict as is.
    """
    if isinstance(data, BaseModel):
        data = data.model_dump(by_alias=True)
    if not isinstance(data, dict):
        data = {} if data is None else {"value": data}
    model = _TOPIC_TO_MODEL.get(str(topic))
    if model is None:
        return dict(data)
    return model.model_validate(data).model_dump(by_alias=True)
