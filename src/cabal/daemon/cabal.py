"""The cabal: one bus, one multiplexer, many peers.

Wires the multiplexer, splitter, router, human gate and registry onto a
shared `EventBus` and manages the set of peer nodes. Agent output flows:

    multiplexer `message:receive`
        -> splitter (correlated responses, logical streams)
        -> human gate router (payload types decision:/human:/attention:/help:)

Everything a human should see is published as `human:attention`
(`HumanNotification`), which the UI bridge and the web port forward.
"""
from __future__ import annotations

import asyncio
import itertools
import logging
import re
import uuid
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Sequence

from ..agents.autonomous import AutonomousAgent
from ..agents.peer import PeerAgent
from ..contracts.v1.agent import AgentMessage
from ..contracts.v1.human import HumanNotification, HumanRequest
from ..errors import AgentNotFound
from ..kernel.bus import BusEvent, EventBus
from ..kernel.registry import AgentRegistry
from ..kernel.router import AsyncRouter
from ..kernel.settings import CabalSettings
from ..kernel.splitter import StreamSplitter
from ..runners.multiplexer import ProcessMultiplexer
from .human_loop import HumanGateCoordinator

logger = logging.getLogger("cabal.daemon")

SUMMARY_EVERY = 10
MAX_ACTIVITY = 1000
_GATED_PREFIXES = ("decision:", "human:", "attention:", "help:")
_ACTIVITY_TOPICS = ("agent:background", "agent:autonomous", "agent:background-task")


class Cabal:
    def __init__(
        self,
        settings: Optional[CabalSettings] = None,
        *,
        bus: Optional[EventBus] = None,
        register_agents: bool = True,
    ) -> None:
        self.settings = settings or CabalSettings()
        s = self.settings
        self.bus = bus or EventBus(name="cabal")
        self.node = self.bus.create_node("cabal")
        self.multiplexer = ProcessMultiplexer.from_settings(s, self.bus)
        self.splitter = StreamSplitter(self.bus, response_timeout=s.response_timeout)
        self.router = AsyncRouter(self.bus, node_id="cabal-main", request_timeout=s.request_timeout)
        self.coordinator = HumanGateCoordinator(
            self.bus,
            confidence_threshold=s.confidence_threshold,
            approval_timeout=s.approval_timeout,
            input_timeout=s.input_timeout,
        )
        self.registry = AgentRegistry(
            self.bus, heartbeat_interval=s.heartbeat_interval, heartbeat_timeout=s.heartbeat_timeout
        )
        self.register_agents = bool(register_agents)

        self.agents: Dict[str, PeerAgent] = {}
        self._activity: Deque[Dict[str, Any]] = deque(maxlen=MAX_ACTIVITY)
        self._activity_total = 0
        self._names = itertools.count()
        self._closing = False

        self.node.on("message:receive", self._on_agent_message)
        self.node.on("agent:exit", self._on_agent_exit)
        self.node.on("human:request", self._on_human_request)
        for topic in _ACTIVITY_TOPICS:
            self.node.on(topic, self._on_activity)
        self._setup_routes()

    # ---- wiring ----

    def _setup_routes(self) -> None:
        self.router.add_route("collaborate", re.compile(r"collaborate"), self._collaborate_route)
        self.router.add_route("knowledge", "share-knowledge", self._knowledge_route)

    def node_for_agent(self, agent_id: str) -> Optional[PeerAgent]:
        for agent in self.agents.values():
            if agent.agent_id == agent_id:
                return agent
        return None

    def _on_agent_message(self, event: BusEvent) -> None:
        msg = AgentMessage.model_validate(event.data)
        self.splitter.handle_response(msg)
        payload = msg.payload
        if not isinstance(payload, dict):
            return
        parsed = dict(payload)
        parsed.setdefault("agentId", msg.agent_id)
        self.splitter.route_message(parsed)

        kind = str(payload.get("type") or "")
        if kind.startswith(_GATED_PREFIXES):
            peer = self.node_for_agent(msg.agent_id)
            gated = dict(payload)
            gated.setdefault("topic", kind)
            gated["agent_id"] = peer.node_id if peer is not None else msg.agent_id
            self.coordinator.router.enqueue(gated)

    def _on_agent_exit(self, event: BusEvent) -> Optional[Any]:
        agent_id = str(event.data.get("agent_id") or "")
        self.splitter.drop_agent(agent_id)
        peer = self.node_for_agent(agent_id)
        if peer is None or not peer.is_active or self._closing:
            return None
        # the process died under a live peer
        self.agents.pop(peer.node_id, None)
        self.notify(
            "alert",
            "high",
            {"event": "agent-exited", "node_id": peer.node_id, "agent_id": agent_id, "code": event.data.get("code")},
        )
        return peer.shutdown()

    def _on_human_request(self, event: BusEvent) -> None:
        req = HumanRequest.model_validate(event.data)
        self.notify("request", req.priority, req.model_dump(by_alias=True), requires_response=True)

    def _on_activity(self, event: BusEvent) -> None:
        entry = dict(event.data)
        entry.setdefault("kind", event.topic)
        self._activity.append(entry)
        self._activity_total += 1
        if self._activity_total % SUMMARY_EVERY == 0:
            self.notify(
                "summary",
                "low",
                {"activity_count": self._activity_total, "recent_activity": list(self._activity)[-5:]},
            )

    def notify(self, kind: str, priority: str, content: Dict[str, Any], *, requires_response: bool = False) -> None:
        note = HumanNotification(type=kind, priority=priority, content=content, requires_response=requires_response)  # type: ignore[arg-type]
        self.node.emit("human:attention", note)

    # ---- agents ----

    def _next_name(self, prefix: str) -> str:
        while True:
            name = f"{prefix}-{next(self._names)}"
            if name not in self.agents:
                return name

    async def spawn_agent(self, name: Optional[str] = None, *, role: Optional[str] = None, **kwargs: Any) -> PeerAgent:
        if role:
            return await self.spawn_specialized_agent(role, name=name, **kwargs)
        node_id = str(name or "").strip() or self._next_name("agent")
        if node_id in self.agents:
            raise ValueError(f"agent already exists: {node_id}")
        agent = PeerAgent(
            self.multiplexer,
            node_id,
            request_timeout=self.settings.peer_request_timeout,
            register=self.register_agents,
            heartbeat_interval=self.settings.heartbeat_interval,
            **kwargs,
        )
        return await self._start(agent)

    async def spawn_specialized_agent(
        self,
        role: str,
        *,
        name: Optional[str] = None,
        autonomy_level: Optional[str] = None,
        specialization: Optional[str] = None,
        background_tasks: Optional[Sequence[str]] = None,
        **kwargs: Any,
    ) -> AutonomousAgent:
        policy = self.settings.role_policy(role)
        node_id = f"{role}-{name}" if name else self._next_name(role)
        if node_id in self.agents:
            raise ValueError(f"agent already exists: {node_id}")
        level = autonomy_level or policy.autonomy_level
        agent = AutonomousAgent(
            self.multiplexer,
            node_id,
            self.coordinator,
            autonomy_level=level,
            requires_approval_for=policy.requires_approval_for,
            background_tasks=list(background_tasks if background_tasks is not None else policy.background_tasks),
            request_timeout=self.settings.peer_request_timeout,
            agent_type=role,
            register=self.register_agents,
            heartbeat_interval=self.settings.heartbeat_interval,
            **kwargs,
        )
        await self._start(agent, role=role, autonomy_level=level)
        await self.multiplexer.send(
            agent.agent_id,
            {
                "type": "role-assignment",
                "role": role,
                "specialization": specialization,
                "instructions": policy.instructions,
            },
        )
        return agent

    async def _start(self, agent: PeerAgent, *, role: Optional[str] = None, autonomy_level: Optional[str] = None) -> Any:
        self.agents[agent.node_id] = agent
        try:
            await agent.initialize()
        except Exception:
            self.agents.pop(agent.node_id, None)
            agent.node.close()
            raise
        logger.info("agent %s spawned and connected", agent.node_id, extra={"node_id": agent.node_id, "agent_id": agent.agent_id})
        self.node.emit(
            "agent:spawned",
            {"node_id": agent.node_id, "agent_id": agent.agent_id, "role": role, "autonomy_level": autonomy_level},
        )
        return agent

    async def create_swarm(self, count: int) -> List[PeerAgent]:
        out: List[PeerAgent] = []
        for _ in range(int(count)):
            out.append(await self.spawn_agent())
        logger.info("swarm of %d agents created", len(out))
        return out

    async def kill_agent(self, node_id: str) -> bool:
        agent = self.agents.pop(str(node_id), None)
        if agent is None:
            return False
        await agent.shutdown()
        return True

    def get_agent(self, node_id: str) -> PeerAgent:
        agent = self.agents.get(str(node_id))
        if agent is None:
            raise AgentNotFound(str(node_id))
        return agent

    async def send_to_agent(self, node_id: str, message: Any, correlation_id: Optional[str] = None) -> None:
        agent = self.get_agent(node_id)
        await self.multiplexer.send(agent.agent_id, message, correlation_id=correlation_id)

    # ---- messaging modes ----

    async def multicast(self, message: Any) -> int:
        """Fire and forget to every agent."""
        return await self.multiplexer.broadcast(message)

    async def query(self, question: Any, timeout: Optional[float] = None) -> List[Any]:
        """Ask every agent and collect whatever answers arrive within `timeout`.

        Each agent gets its own correlation id and waiter; a silent agent only
        costs its own waiter, never the whole collection.
        """
        bound = self.settings.query_timeout if timeout is None else float(timeout)
        waiters = []
        for agent in list(self.agents.values()):
            if not agent.is_active:
                continue
            cid = uuid.uuid4().hex
            waiters.append((agent, cid, self.splitter.demux_response(cid, timeout=bound)))

        for agent, cid, waiter in waiters:
            try:
                await self.multiplexer.send(agent.agent_id, question, correlation_id=cid)
            except AgentNotFound:
                logger.warning("query skipped dead agent", extra={"node_id": agent.node_id})
                waiter.cancel()

        results = await asyncio.gather(*(w for _, _, w in waiters), return_exceptions=True)
        return [r for r in results if not isinstance(r, BaseException)]

    async def collaborate(self, tasks: Sequence[Any]) -> Dict[str, Any]:
        return await self._collaborate_route({"topic": "collaborate", "tasks": list(tasks)})

    async def _collaborate_route(self, msg: Any) -> Dict[str, Any]:
        agents = [a for a in self.agents.values() if a.is_active]
        tasks = list(msg.get("tasks") or []) if isinstance(msg, dict) else []
        if not agents or not tasks:
            return {"results": [], "processed_by": len(agents)}
        results = await asyncio.gather(*(agents[i % len(agents)].ask(task) for i, task in enumerate(tasks)))
        return {"results": list(results), "processed_by": len(agents)}

    async def share_knowledge(self, knowledge: Any) -> None:
        await self._knowledge_route({"topic": "share-knowledge", "knowledge": knowledge})

    async def _knowledge_route(self, msg: Any) -> None:
        knowledge = msg.get("knowledge") if isinstance(msg, dict) else msg
        for agent in list(self.agents.values()):
            if agent.is_active:
                await agent.broadcast({"type": "share", "data": knowledge})

    # ---- human interface ----

    def respond_to_request(self, request_id: str, response: Any) -> bool:
        return self.coordinator.respond_to_request(request_id, response)

    def get_human_requests(self) -> List[HumanRequest]:
        return self.coordinator.get_pending_requests()

    def get_background_activity(self, limit: int = 10) -> List[Dict[str, Any]]:
        if limit <= 0:
            return []
        return list(self._activity)[-int(limit):]

    # ---- status ----

    def get_stats(self) -> Dict[str, Any]:
        return {
            "agents": len(self.agents),
            "multiplexer": self.multiplexer.get_stats(),
            "router": self.router.get_stats(),
            "splitter": self.splitter.get_stats(),
            "registry": self.registry.get_stats(),
            "bus": self.bus.stats(),
        }

    def get_system_status(self) -> Dict[str, Any]:
        return {
            "agents": [a.get_status() for a in self.agents.values()],
            "coordinator": self.coordinator.get_stats(),
            "background_activity": self._activity_total,
            "human_requests": len(self.get_human_requests()),
        }

    # ---- lifecycle ----

    def start(self) -> None:
        self.registry.start()

    async def shutdown(self) -> None:
        if self._closing:
            return
        self._closing = True
        self.notify("alert", "high", {"event": "system-shutdown"})
        for agent in list(self.agents.values()):
            try:
                await agent.shutdown()
            except Exception:
                logger.exception("agent shutdown failed", extra={"node_id": agent.node_id})
        self.agents.clear()
        await self.multiplexer.kill_all()
        await self.registry.stop()
        await self.router.close()
        await self.coordinator.close()
        logger.info("cabal shut down")

