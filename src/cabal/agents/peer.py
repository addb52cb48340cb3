"""Peer layer: one bus node per agent subprocess.

A PeerAgent owns exactly one agent in the multiplexer. It announces itself on
`peer:announce`, learns about other nodes from their announcements, and talks
to them with `peer:message` (fire and forget) or `peer:request` /
`peer:response` (correlated, bounded wait, silence -> None).

Peer membership is best effort: there is no expiry here. When a node hears a
new peer it announces itself once more so the newcomer learns about it too.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Dict, List, Optional, Sequence

from ..contracts.v1.agent import AgentMessage
from ..contracts.v1.bus import BROADCAST_TARGET
from ..kernel.bus import BusEvent, BusNode, Subscription
from ..runners.multiplexer import ProcessMultiplexer
from ..util.time import now_ts

logger = logging.getLogger("cabal.peer")

DEFAULT_CAPABILITIES = ("chat", "code", "analysis")


class PeerAgent:
    def __init__(
        self,
        multiplexer: ProcessMultiplexer,
        node_id: str,
        *,
        capabilities: Sequence[str] = DEFAULT_CAPABILITIES,
        args: Sequence[str] = (),
        env: Optional[Dict[str, str]] = None,
        request_timeout: float = 30.0,
        agent_type: str = "generic",
        register: bool = False,
        heartbeat_interval: float = 10.0,
    ) -> None:
        self.multiplexer = multiplexer
        self.bus = multiplexer.bus
        self.node_id = str(node_id)
        self.node: BusNode = self.bus.create_node(self.node_id)
        self.agent_id = ""
        self.capabilities: List[str] = list(capabilities)
        self.args = [str(a) for a in args]
        self.env = dict(env or {})
        self.request_timeout = float(request_timeout)
        self.agent_type = agent_type
        self.register = bool(register)
        self.heartbeat_interval = float(heartbeat_interval)

        self.peers: Dict[str, str] = {}
        self.shared: Dict[str, Any] = {}
        self.started_at = now_ts()
        self._pending: Dict[str, "asyncio.Future[Any]"] = {}
        self._output_sub: Optional[Subscription] = None
        self._heartbeat: Optional["asyncio.Task[None]"] = None
        self._initialized = False
        self._shut_down = False

        self.node.on("peer:announce", self._on_announce)
        self.node.on("peer:leave", self._on_leave)
        self.node.on("peer:message", self._on_peer_message)
        self.node.on("peer:request", self._on_peer_request)
        self.node.on("peer:response", self._on_peer_response)

    @property
    def is_active(self) -> bool:
        return self._initialized and not self._shut_down

    async def initialize(self, agent_id: Optional[str] = None) -> str:
        """Spawn the agent (or attach to a running one) and announce this node."""
        if self._initialized:
            return self.agent_id
        if agent_id and self.multiplexer.is_running(agent_id):
            self.agent_id = agent_id
        else:
            self.agent_id = await self.multiplexer.spawn(id=agent_id, args=self.args, env=self.env)
        self._initialized = True
        self._output_sub = self.node.on("message:receive", self._on_agent_output)
        self._announce()
        if self.register:
            self.node.emit("registry:announce", self.profile())
            self._heartbeat = self.node.spawn(self._heartbeat_loop(), label=f"heartbeat:{self.node_id}")
        logger.info("peer initialized", extra={"node_id": self.node_id, "agent_id": self.agent_id})
        return self.agent_id

    def _announce(self) -> None:
        self.node.emit(
            "peer:announce",
            {"node_id": self.node_id, "agent_id": self.agent_id, "capabilities": list(self.capabilities)},
        )

    def profile(self) -> Dict[str, Any]:
        return {
            "id": self.agent_id,
            "name": self.node_id,
            "type": self.agent_type,
            "status": "online",
            "capabilities": list(self.capabilities),
            "metadata": {"node_id": self.node_id, "version": "1", "start_time": self.started_at},
        }

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            self.node.emit("registry:heartbeat", {"agent_id": self.agent_id})

    # ---- discovery ----

    def _on_announce(self, event: BusEvent) -> None:
        nid = str(event.data.get("node_id") or "")
        if not nid or nid == self.node_id:
            return
        is_new = nid not in self.peers
        self.peers[nid] = str(event.data.get("agent_id") or "")
        if not is_new:
            return
        self.node.emit("peer:discovered", dict(event.data))
        if self.is_active:
            self._announce()

    def _on_leave(self, event: BusEvent) -> None:
        self.peers.pop(str(event.data.get("node_id") or ""), None)

    def get_peers(self) -> List[str]:
        return list(self.peers.keys())

    # ---- inbound ----

    def _addressed_to_me(self, data: Dict[str, Any]) -> bool:
        if str(data.get("from") or "") == self.node_id:
            return False
        return data.get("to") in (self.node_id, BROADCAST_TARGET)

    async def _on_peer_message(self, event: BusEvent) -> None:
        data = event.data
        if not self.is_active or not self._addressed_to_me(data):
            return
        content = data.get("content")
        if not isinstance(content, dict):
            return
        kind = content.get("type")
        if kind == "query":
            await self.multiplexer.send(self.agent_id, content.get("data"))
        elif kind == "share":
            self.shared[str(data.get("from"))] = content.get("data")

    async def _on_peer_request(self, event: BusEvent) -> None:
        data = event.data
        if not self.is_active or not self._addressed_to_me(data):
            return
        await self.multiplexer.send(self.agent_id, data.get("content"), correlation_id=str(data.get("request_id")))

    def _on_agent_output(self, event: BusEvent) -> None:
        if str(event.data.get("agent_id") or "") != self.agent_id:
            return
        msg = AgentMessage.model_validate(event.data)
        self.handle_agent_response(msg)

    def handle_agent_response(self, msg: AgentMessage) -> None:
        if msg.correlation_id:
            waiter = self._pending.pop(msg.correlation_id, None)
            if waiter is not None and not waiter.done():
                waiter.set_result(msg.payload)
            self.node.emit(
                "peer:response",
                {"node_id": self.node_id, "agent_id": self.agent_id, "request_id": msg.correlation_id, "data": msg.payload},
            )
        if self._should_share(msg):
            self.node.emit(
                "peer:discovery",
                {"from": self.node_id, "agent_id": self.agent_id, "discovery": msg.payload, "timestamp": msg.timestamp},
            )

    @staticmethod
    def _should_share(msg: AgentMessage) -> bool:
        p = msg.payload
        if not isinstance(p, dict):
            return False
        if p.get("type") == "discovery":
            return True
        confidence = p.get("confidence")
        return isinstance(confidence, (int, float)) and not isinstance(confidence, bool) and confidence > 0.8

    def _on_peer_response(self, event: BusEvent) -> None:
        if str(event.data.get("node_id") or "") == self.node_id:
            return
        waiter = self._pending.pop(str(event.data.get("request_id") or ""), None)
        if waiter is not None and not waiter.done():
            waiter.set_result(event.data.get("data"))

    # ---- outbound ----

    async def send_to_peer(self, target: str, content: Any) -> None:
        self.node.emit("peer:message", {"from": self.node_id, "to": target, "content": content})

    async def broadcast(self, content: Any) -> None:
        await self.send_to_peer(BROADCAST_TARGET, content)

    async def request_from_peer(self, target: str, query: Any, timeout: Optional[float] = None) -> Any:
        """Ask `target`'s agent and wait for its correlated answer; None on silence."""
        request_id = uuid.uuid4().hex
        fut = self._expect(request_id)
        self.node.emit("peer:request", {"from": self.node_id, "to": target, "content": query, "request_id": request_id})
        return await self._wait(request_id, fut, timeout)

    async def ask(self, content: Any, timeout: Optional[float] = None) -> Any:
        """Send to this node's own agent and wait for its correlated answer; None on silence."""
        cid = uuid.uuid4().hex
        fut = self._expect(cid)
        try:
            await self.multiplexer.send(self.agent_id, content, correlation_id=cid)
        except Exception:
            self._pending.pop(cid, None)
            raise
        return await self._wait(cid, fut, timeout)

    def _expect(self, request_id: str) -> "asyncio.Future[Any]":
        fut: "asyncio.Future[Any]" = asyncio.get_running_loop().create_future()
        self._pending[request_id] = fut
        return fut

    async def _wait(self, request_id: str, fut: "asyncio.Future[Any]", timeout: Optional[float]) -> Any:
        bound = self.request_timeout if timeout is None else float(timeout)
        try:
            return await asyncio.wait_for(fut, bound)
        except asyncio.TimeoutError:
            logger.info("no answer within %gs", bound, extra={"node_id": self.node_id, "request_id": request_id})
            return None
        finally:
            self._pending.pop(request_id, None)

    # ---- lifecycle ----

    async def shutdown(self) -> bool:
        """Kill the agent and announce departure; later calls do nothing."""
        if self._shut_down:
            return False
        self._shut_down = True
        hb = self._heartbeat
        self._heartbeat = None
        if hb is not None and not hb.done():
            hb.cancel()
            await asyncio.gather(hb, return_exceptions=True)
        if self._output_sub is not None:
            self.node.off(self._output_sub)
            self._output_sub = None
        for fut in self._pending.values():
            if not fut.done():
                fut.set_result(None)
        self._pending.clear()
        if self.agent_id:
            await self.multiplexer.kill(self.agent_id)
        if self.register and self.agent_id:
            self.node.emit("registry:leave", {"agent_id": self.agent_id})
        self.node.emit("peer:leave", {"node_id": self.node_id})
        self.node.close()
        logger.info("peer shut down", extra={"node_id": self.node_id, "agent_id": self.agent_id})
        return True

    def get_status(self) -> Dict[str, Any]:
        return {
            "node_id": self.node_id,
            "agent_id": self.agent_id,
            "active": self.is_active,
            "peers": self.get_peers(),
            "capabilities": list(self.capabilities),
        }
