"""Error taxonomy for the multiplexing and routing layer.

Every error carries a stable `code` so it can be reported on the UI bridge and
the web port as an `ErrorInfo` envelope without string matching.
"""
from __future__ import annotations

from typing import Any, Dict, Optional

from .contracts.v1.bridge import ErrorInfo


class CabalError(Exception):
    code = "cabal_error"

    def __init__(self, message: str = "", *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details: Dict[str, Any] = dict(details or {})

    def to_error(self) -> ErrorInfo:
        return ErrorInfo(code=self.code, message=self.message, details=self.details)


class CapacityExceeded(CabalError):
    """Admission control rejected a spawn; raise the limit or kill an agent."""

    code = "capacity_exceeded"

    def __init__(self, limit: int) -> None:
        super().__init__(f"maximum concurrent agents ({limit}) reached", details={"limit": limit})
        self.limit = limit


class AgentNotFound(CabalError):
    code = "agent_not_found"

    def __init__(self, agent_id: str) -> None:
        super().__init__(f"agent {agent_id} not found", details={"agent_id": agent_id})
        self.agent_id = agent_id


class SpawnFailed(CabalError):
    """The agent command could not be started (missing binary, permissions)."""

    code = "spawn_failed"

    def __init__(self, agent_id: str, command: str, reason: str) -> None:
        super().__init__(
            f"cannot start agent {agent_id}: {reason}",
            details={"agent_id": agent_id, "command": command},
        )
        self.agent_id = agent_id


class ResponseTimeout(CabalError, TimeoutError):
    code = "response_timeout"

    def __init__(self, correlation_id: str, timeout: float) -> None:
        super().__init__(
            f"no response for {correlation_id} within {timeout:g}s",
            details={"correlation_id": correlation_id, "timeout": timeout},
        )
        self.correlation_id = correlation_id


class RequestTimeout(CabalError, TimeoutError):
    code = "request_timeout"

    def __init__(self, topic: str, request_id: str, timeout: float) -> None:
        super().__init__(
            f"request {request_id} on {topic!r} timed out after {timeout:g}s",
            details={"topic": topic, "request_id": request_id, "timeout": timeout},
        )
        self.topic = topic
        self.request_id = request_id


class RouteRequestFailed(CabalError):
    """The remote `on_request` handler raised; its message is carried along."""

    code = "request_failed"

    def __init__(self, topic: str, error: str) -> None:
        super().__init__(error or "request handler failed", details={"topic": topic})
        self.topic = topic


class ParseFailure(CabalError, ValueError):
    """Malformed subprocess output. Recovered locally, never propagated."""

    code = "parse_failure"

    def __init__(self, line: str, reason: str = "", *, incomplete: bool = False) -> None:
        super().__init__(reason or "invalid json line", details={"line": line[:200], "incomplete": incomplete})
        self.line = line
        # True when the text ended before the document did (more lines may complete it)
        self.incomplete = incomplete


class HandlerFailure(CabalError):
    code = "handler_failure"

    def __init__(self, topic: str, pattern: str, cause: BaseException) -> None:
        super().__init__(str(cause) or type(cause).__name__, details={"topic": topic, "pattern": pattern})
        self.topic = topic
        self.pattern = pattern
        self.cause = cause
