from __future__ import annotations

from .agent import AgentMessage, MessageKind, StreamKind, StreamMetadata
from .bridge import BridgeMessage, ErrorInfo, NotificationLevel
from .bus import BROADCAST_TARGET, BusEvent, normalize_topic_data
from .human import AgentPolicy, AutonomyLevel, Decision, HumanNotification, HumanRequest, Priority
from .registry import AgentProfile, Performance, ProfileMeta

__all__ = [
    "AgentMessage",
    "AgentPolicy",
    "AgentProfile",
    "AutonomyLevel",
    "BROADCAST_TARGET",
    "BridgeMessage",
    "BusEvent",
    "Decision",
    "ErrorInfo",
    "HumanNotification",
    "HumanRequest",
    "MessageKind",
    "NotificationLevel",
    "Performance",
    "Priority",
    "ProfileMeta",
    "StreamKind",
    "StreamMetadata",
    "normalize_topic_data",
]
