"""Agent registry: who is on the bus, what they can do, how they perform.

Bookkeeping only; nothing in the routing path depends on it. Agents announce
themselves with `registry:announce`, keep alive with `registry:heartbeat` and
leave with `registry:leave`. `sweep()` marks silent agents offline after
`heartbeat_timeout` and forgets offline agents after twice that.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence

from ..contracts.v1.registry import AgentProfile
from ..util.time import now_ts
from .bus import BusEvent, BusNode, EventBus

logger = logging.getLogger("cabal.registry")


class AgentRegistry:
    def __init__(
        self,
        bus: Optional[EventBus] = None,
        *,
        heartbeat_interval: float = 10.0,
        heartbeat_timeout: float = 30.0,
        node_id: str = "agent-registry",
    ) -> None:
        self.bus = bus or EventBus()
        self.node: BusNode = self.bus.create_node(node_id)
        self.heartbeat_interval = float(heartbeat_interval)
        self.heartbeat_timeout = float(heartbeat_timeout)
        self._agents: Dict[str, AgentProfile] = {}
        self._sweeper: Optional["asyncio.Task[None]"] = None

        self.node.on("registry:announce", lambda ev: self.register_agent(AgentProfile.model_validate(ev.data)))
        self.node.on("registry:heartbeat", self._on_heartbeat)
        self.node.on("registry:update", self._on_update)
        self.node.on("registry:leave", lambda ev: self.unregister_agent(str(ev.data.get("agent_id") or "")))

    # ---- membership ----

    def register_agent(self, profile: AgentProfile) -> AgentProfile:
        known = profile.id in self._agents
        p = profile.model_copy(deep=True)
        p.status = "online"
        p.performance.last_seen = now_ts()
        self._agents[p.id] = p
        if known:
            self.node.emit("registry:agent-updated", {"agent_id": p.id, "profile": p.model_dump()})
        else:
            logger.info("agent joined type=%s", p.type, extra={"agent_id": p.id})
            self.node.emit("registry:agent-joined", p.model_dump())
        return p

    def unregister_agent(self, agent_id: str) -> bool:
        if self._agents.pop(agent_id, None) is None:
            return False
        logger.info("agent left", extra={"agent_id": agent_id})
        self.node.emit("registry:agent-left", {"agent_id": agent_id})
        return True

    def update_agent(self, agent_id: str, updates: Dict[str, Any]) -> Optional[AgentProfile]:
        agent = self._agents.get(agent_id)
        if agent is None:
            return None
        merged = agent.model_dump()
        for k, v in updates.items():
            if k == "id":
                continue
            if isinstance(v, dict) and isinstance(merged.get(k), dict):
                merged[k] = {**merged[k], **v}
            else:
                merged[k] = v
        p = AgentProfile.model_validate(merged)
        p.performance.last_seen = now_ts()
        self._agents[agent_id] = p
        self.node.emit("registry:agent-updated", {"agent_id": agent_id, "profile": p.model_dump()})
        return p

    def heartbeat(self, agent_id: str) -> bool:
        agent = self._agents.get(agent_id)
        if agent is None:
            return False
        agent.performance.last_seen = now_ts()
        if agent.status == "offline":
            agent.status = "online"
        return True

    def _on_heartbeat(self, event: BusEvent) -> None:
        self.heartbeat(str(event.data.get("agent_id") or ""))

    def _on_update(self, event: BusEvent) -> None:
        self.update_agent(str(event.data.get("agent_id") or ""), dict(event.data.get("updates") or {}))

    # ---- expiry ----

    def sweep(self, *, now: Optional[float] = None) -> Dict[str, List[str]]:
        ref = now_ts() if now is None else float(now)
        went_offline: List[str] = []
        removed: List[str] = []
        for agent_id, agent in list(self._agents.items()):
            silent = ref - agent.performance.last_seen
            if agent.status == "offline" and silent > 2 * self.heartbeat_timeout:
                self.unregister_agent(agent_id)
                removed.append(agent_id)
            elif agent.status != "offline" and silent > self.heartbeat_timeout:
                agent.status = "offline"
                went_offline.append(agent_id)
                self.node.emit("registry:agent-updated", {"agent_id": agent_id, "profile": agent.model_dump()})
        return {"offline": went_offline, "removed": removed}

    def start(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = self.node.spawn(self._sweep_loop(), label="registry:sweep")

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            self.sweep()

    async def stop(self) -> None:
        t = self._sweeper
        self._sweeper = None
        if t is not None and not t.done():
            t.cancel()
            await asyncio.gather(t, return_exceptions=True)

    # ---- queries ----

    def get_agent(self, agent_id: str) -> Optional[AgentProfile]:
        return self._agents.get(agent_id)

    def get_all_agents(self) -> List[AgentProfile]:
        return list(self._agents.values())

    def get_online_agents(self) -> List[AgentProfile]:
        return [a for a in self._agents.values() if a.status == "online"]

    def get_agents_by_type(self, agent_type: str) -> List[AgentProfile]:
        return [a for a in self._agents.values() if a.type == agent_type]

    def get_agents_by_capability(self, capability: str) -> List[AgentProfile]:
        return [a for a in self._agents.values() if capability in a.capabilities]

    def find_best_agent(
        self,
        *,
        agent_type: Optional[str] = None,
        capabilities: Sequence[str] = (),
        prefer_online: bool = True,
    ) -> Optional[AgentProfile]:
        candidates = self.get_all_agents()
        if agent_type:
            candidates = [a for a in candidates if a.type == agent_type]
        if capabilities:
            candidates = [a for a in candidates if all(c in a.capabilities for c in capabilities)]
        if prefer_online:
            online = [a for a in candidates if a.status == "online"]
            if online:
                candidates = online
        if not candidates:
            return None

        def score(a: AgentProfile) -> float:
            return a.performance.success_rate / (a.performance.avg_response_time or 1.0)

        return max(candidates, key=score)

    def get_stats(self) -> Dict[str, Any]:
        agents = self.get_all_agents()
        online = [a for a in agents if a.status == "online"]
        by_type: Dict[str, int] = {}
        for a in agents:
            by_type[a.type] = by_type.get(a.type, 0) + 1
        n = len(agents)
        return {
            "total": n,
            "online": len(online),
            "offline": n - len(online),
            "by_type": by_type,
            "avg_response_time": (sum(a.performance.avg_response_time for a in agents) / n) if n else 0.0,
            "avg_success_rate": (sum(a.performance.success_rate for a in agents) / n) if n else 0.0,
        }
