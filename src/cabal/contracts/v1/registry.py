from __future__ import annotations

from typing import List, Literal

from pydantic import BaseModel, ConfigDict, Field

from ...util.time import now_ts


ProfileStatus = Literal["online", "offline", "busy", "error"]


class Performance(BaseModel):
    tasks_completed: int = 0
    avg_response_time: float = 0.0
    success_rate: float = 1.0
    last_seen: float = Field(default_factory=now_ts)

    model_config = ConfigDict(extra="ignore")


class ProfileMeta(BaseModel):
    node_id: str = ""
    version: str = ""
    start_time: float = Field(default_factory=now_ts)
    autonomy_level: str = "supervised"

    model_config = ConfigDict(extra="ignore")


class AgentProfile(BaseModel):
    id: str
    name: str = ""
    type: str = "generic"
    status: ProfileStatus = "online"
    capabilities: List[str] = Field(default_factory=list)
    performance: Performance = Field(default_factory=Performance)
    metadata: ProfileMeta = Field(default_factory=ProfileMeta)

    model_config = ConfigDict(extra="ignore")
