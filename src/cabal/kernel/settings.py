"""Settings for the cabal daemon.

Settings live in $CABAL_HOME/settings.yaml (or a file passed with --config):

    max_agents: 5
    agent_command: [claude, code, --print, --format, json-stream]
    confidence_threshold: 0.8
    approval_timeout: 30
    bridge: {host: 127.0.0.1, port: 8080}
    roles:
      executor:
        autonomy_level: manual
        requires_approval_for: [delete, deploy]

Missing keys fall back to defaults; role entries are merged over the default
role table.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml  # type: ignore
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..paths import ensure_home
from ..util.fs import atomic_write_text


DEFAULT_AGENT_COMMAND = ["claude", "code", "--print", "--format", "json-stream"]


@dataclass
class RolePolicy:
    """Default gating policy for one role type."""
    role: str
    autonomy_level: str = "supervised"
    requires_approval_for: List[str] = field(default_factory=list)
    background_tasks: List[str] = field(default_factory=list)
    instructions: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "autonomy_level": self.autonomy_level,
            "requires_approval_for": list(self.requires_approval_for),
            "background_tasks": list(self.background_tasks),
            "instructions": self.instructions,
        }

    @classmethod
    def from_dict(cls, role: str, d: Dict[str, Any]) -> "RolePolicy":
        level = str(d.get("autonomy_level") or "supervised").strip()
        if level not in ("full", "supervised", "manual"):
            raise ValueError(f"role {role}: invalid autonomy_level {level!r}")
        return cls(
            role=role,
            autonomy_level=level,
            requires_approval_for=[str(x) for x in (d.get("requires_approval_for") or [])],
            background_tasks=[str(x) for x in (d.get("background_tasks") or [])],
            instructions=str(d.get("instructions") or ""),
        )


DEFAULT_ROLES: Dict[str, RolePolicy] = {
    "researcher": RolePolicy(
        role="researcher",
        autonomy_level="full",
        requires_approval_for=["external-api-call", "data-export"],
        instructions="Focus on gathering and analyzing information. Work autonomously on research tasks.",
    ),
    "analyst": RolePolicy(
        role="analyst",
        requires_approval_for=["publish-report", "share-sensitive"],
        instructions="Analyze data and patterns. Collaborate with researchers. Flag anomalies for human review.",
    ),
    "executor": RolePolicy(
        role="executor",
        autonomy_level="manual",
        requires_approval_for=["delete", "modify-critical", "deploy"],
        instructions="Execute approved tasks. Always verify with human before critical operations.",
    ),
    "reviewer": RolePolicy(
        role="reviewer",
        requires_approval_for=["approve-changes", "reject-work"],
        instructions="Review other agents work. Provide quality assurance. Escalate concerns to human.",
    ),
    "coordinator": RolePolicy(
        role="coordinator",
        requires_approval_for=["restructure", "terminate-agent"],
        instructions="Coordinate multi-agent tasks. Monitor progress. Report milestones to human.",
    ),
}

FALLBACK_INSTRUCTIONS = "Perform assigned tasks within your autonomy level."


class Endpoint(BaseModel):
    host: str = "127.0.0.1"
    port: int = Field(default=8080, ge=0, le=65535)

    model_config = ConfigDict(extra="ignore")


class CabalSettings(BaseModel):
    max_agents: int = Field(default=5, ge=1)
    agent_command: List[str] = Field(default_factory=lambda: list(DEFAULT_AGENT_COMMAND))
    confidence_threshold: float = Field(default=0.8, ge=0.0, le=1.0)

    response_timeout: float = Field(default=30.0, gt=0)
    request_timeout: float = Field(default=5.0, gt=0)
    peer_request_timeout: float = Field(default=30.0, gt=0)
    approval_timeout: float = Field(default=30.0, gt=0)
    input_timeout: Optional[float] = Field(default=None, gt=0)
    query_timeout: float = Field(default=10.0, gt=0)
    kill_grace_seconds: float = Field(default=2.0, ge=0)

    heartbeat_interval: float = Field(default=10.0, gt=0)
    heartbeat_timeout: float = Field(default=30.0, gt=0)

    bridge: Endpoint = Field(default_factory=Endpoint)
    web: Optional[Endpoint] = None

    roles: Dict[str, Dict[str, Any]] = Field(default_factory=dict)

    model_config = ConfigDict(extra="ignore")

    @field_validator("agent_command")
    @classmethod
    def _non_empty_command(cls, v: List[str]) -> List[str]:
        cmd = [str(x) for x in v if str(x).strip()]
        if not cmd:
            raise ValueError("agent_command must not be empty")
        return cmd

    def role_policy(self, role: str) -> RolePolicy:
        """Effective policy for `role`: file entry merged over the default table."""
        key = str(role or "").strip()
        base = DEFAULT_ROLES.get(key)
        raw = self.roles.get(key)
        if raw is None:
            return base if base is not None else RolePolicy(role=key, instructions=FALLBACK_INSTRUCTIONS)
        merged = base.to_dict() if base is not None else {}
        merged.update(raw)
        return RolePolicy.from_dict(key, merged)

    def role_types(self) -> List[str]:
        return sorted(set(DEFAULT_ROLES) | set(self.roles))


def settings_path() -> Path:
    return ensure_home() / "settings.yaml"


def load_settings_doc(path: Optional[Path] = None) -> Dict[str, Any]:
    """Raw YAML document; a missing file is an empty document."""
    p = path or settings_path()
    if not p.exists():
        return {}
    doc = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    if not isinstance(doc, dict):
        raise ValueError(f"{p}: settings must be a mapping")
    return doc


def load_settings(path: Optional[Path] = None, **overrides: Any) -> CabalSettings:
    """Load settings from YAML, then apply non-None `overrides` (CLI flags)."""
    doc = load_settings_doc(path)
    doc.update({k: v for k, v in overrides.items() if v is not None})
    try:
        settings = CabalSettings.model_validate(doc)
    except ValidationError as e:
        raise ValueError(f"invalid settings: {e}") from e
    for role in settings.roles:
        settings.role_policy(role)
    return settings


def save_settings(settings: CabalSettings, path: Optional[Path] = None) -> Path:
    p = path or settings_path()
    doc = settings.model_dump(exclude_none=True)
    atomic_write_text(p, yaml.safe_dump(doc, allow_unicode=True, sort_keys=False))
    return p
