from __future__ import annotations

from . import multiplexer
from .multiplexer import AgentHandle, ProcessMultiplexer

__all__ = ["multiplexer", "AgentHandle", "ProcessMultiplexer"]
