"""Human-in-the-loop contracts.

A HumanRequest is what the operator sees in the UI; an AgentPolicy decides
which decisions of an agent need one.

Request types:
- approval: blocks the action until approved/rejected (or timeout -> rejected)
- review: posted for later attention, the action goes ahead
- input: the agent asks for guidance and waits
- decision: the operator picks one of `options`
"""
from __future__ import annotations

import uuid
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from ...util.time import now_ts


HumanRequestType = Literal["approval", "decision", "input", "review"]
Priority = Literal["high", "medium", "low"]
AutonomyLevel = Literal["full", "supervised", "manual"]
NotificationType = Literal["request", "alert", "summary", "milestone"]

PRIORITY_RANK: Dict[str, int] = {"high": 3, "medium": 2, "low": 1}


class HumanRequest(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    type: HumanRequestType
    priority: Priority = "medium"
    from_: str = Field(default="", alias="from")
    context: Dict[str, Any] = Field(default_factory=dict)
    options: List[str] = Field(default_factory=list)
    created_at: float = Field(default_factory=now_ts)
    deadline: Optional[float] = None

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    def sort_key(self) -> tuple[int, float]:
        return (-PRIORITY_RANK.get(self.priority, 0), float(self.created_at))


class AgentPolicy(BaseModel):
    agent_id: str
    autonomy_level: AutonomyLevel = "supervised"
    requires_approval_for: List[str] = Field(default_factory=list)
    notify_for: List[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid")


class Decision(BaseModel):
    """A decision proposed by an agent, as seen by the approval gate.

    `confidence` comes from whatever produced the decision; None means
    "not reported" and never triggers a review on its own.
    """

    agent_id: str
    decision_type: str = ""
    decision: Any = None
    confidence: Optional[float] = None

    model_config = ConfigDict(extra="allow")


class HumanNotification(BaseModel):
    type: NotificationType
    priority: Priority = "medium"
    content: Dict[str, Any] = Field(default_factory=dict)
    requires_response: bool = False

    model_config = ConfigDict(extra="forbid")
