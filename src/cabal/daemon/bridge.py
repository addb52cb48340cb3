"""UI bridge: newline-delimited JSON envelopes over TCP.

Every line is one `BridgeMessage` `{type, payload, id?}`. Inbound types:
agent:spawn, agent:kill, agent:message, agent:list, stats, human:response.
Replies echo the request `id`. Broadcasts (no id) carry lifecycle events,
agent output and `agent:notification` badges for the UI.

Payload keys on this wire are camelCase (`agentId`, `requestId`).
"""
from __future__ import annotations

import asyncio
import itertools
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from ..agents.autonomous import AutonomousAgent
from ..contracts.v1.bridge import INBOUND_TYPES, BridgeMessage, ErrorInfo
from ..errors import CabalError
from ..kernel.bus import BusEvent
from .cabal import Cabal

logger = logging.getLogger("cabal.bridge")

ACTIVITY_BATCH = 5
MAX_CLIENT_BUFFER = 4 * 1024 * 1024


def notification_level(priority: str) -> str:
    if priority == "high":
        return "critical"
    if priority == "low":
        return "normal"
    return "notification"


def format_notification(note: Dict[str, Any]) -> str:
    content = note.get("content") or {}
    kind = note.get("type")
    if kind == "request":
        ctx = content.get("context") or {}
        rtype = content.get("type")
        if rtype == "approval":
            return f"Approval needed: {ctx.get('task') or ctx.get('action') or 'Unknown task'}"
        if rtype == "input":
            return f"Input requested: {ctx.get('reason') or 'Guidance needed'}"
        if rtype == "review":
            return "Review requested: Low confidence decision"
        return "Request pending"
    if kind == "milestone":
        return f"Milestone: {content.get('event')}"
    if kind == "alert":
        return f"Alert: {content.get('event') or content.get('message')}"
    if kind == "summary":
        return f"Background activity: {content.get('activity_count')} operations"
    return "Notification"


def summarize_activity(activities: List[Dict[str, Any]]) -> str:
    kinds = list(dict.fromkeys(str(a.get("type") or a.get("kind") or "activity") for a in activities))
    return f"Completed: {', '.join(kinds)} ({len(activities)} total)"


@dataclass
class BridgeClient:
    client_id: str
    writer: asyncio.StreamWriter

    def send(self, msg: BridgeMessage) -> bool:
        if self.writer.is_closing():
            return False
        if self.writer.transport.get_write_buffer_size() > MAX_CLIENT_BUFFER:
            logger.warning("client too slow, dropping", extra={"client": self.client_id})
            self.writer.close()
            return False
        data = (json.dumps(msg.to_wire(), ensure_ascii=False, default=str) + "\n").encode("utf-8")
        self.writer.write(data)
        return True


class UIBridge:
    def __init__(self, cabal: Cabal, *, host: str = "127.0.0.1", port: int = 8080) -> None:
        self.cabal = cabal
        self.host = host
        self.port = int(port)
        self.node = cabal.bus.create_node("ui-bridge")
        self._server: Optional[asyncio.AbstractServer] = None
        self._clients: Dict[str, BridgeClient] = {}
        self._client_seq = itertools.count(1)
        self._pending_by_agent: Dict[str, int] = {}
        self._node_ids: Dict[str, str] = {}
        self._activity: List[Dict[str, Any]] = []

        self.node.on("human:attention", self._on_attention)
        self.node.on("human:resolved", self._on_resolved)
        self.node.on("human:timeout", self._on_resolved)
        self.node.on("agent:spawned", self._on_spawned)
        self.node.on("agent:exit", self._on_exit)
        self.node.on("message:receive", self._on_output)
        self.node.on("agent:background", self._on_background)

    # ---- server ----

    async def start(self) -> int:
        self._server = await asyncio.start_server(self._handle_client, self.host, self.port)
        sockets = self._server.sockets or []
        if sockets:
            self.port = int(sockets[0].getsockname()[1])
        logger.info("ui bridge listening on %s:%s", self.host, self.port)
        return self.port

    async def stop(self) -> None:
        server = self._server
        self._server = None
        for client in list(self._clients.values()):
            client.writer.close()
        self._clients.clear()
        if server is not None:
            server.close()
            await server.wait_closed()
        self.node.close()

    def client_count(self) -> int:
        return len(self._clients)

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        client = BridgeClient(client_id=f"c{next(self._client_seq)}", writer=writer)
        self._clients[client.client_id] = client
        logger.info("ui client connected", extra={"client": client.client_id})
        try:
            client.send(BridgeMessage(type="stats", payload=self.cabal.get_system_status()))
            while True:
                line = await reader.readline()
                if not line:
                    break
                if not line.strip():
                    continue
                reply = await self._process_line(line)
                if reply is not None:
                    client.send(reply)
                    await writer.drain()
        except (ConnectionResetError, BrokenPipeError):
            pass
        finally:
            self._clients.pop(client.client_id, None)
            writer.close()
            logger.info("ui client disconnected", extra={"client": client.client_id})

    async def _process_line(self, line: bytes) -> Optional[BridgeMessage]:
        msg_id: Optional[str] = None
        try:
            raw = json.loads(line.decode("utf-8", errors="replace"))
            if not isinstance(raw, dict):
                raise ValueError("envelope must be a json object")
            msg = BridgeMessage.model_validate(raw)
            msg_id = msg.id
            return await self.handle_message(msg)
        except CabalError as e:
            return self._error(e.to_error(), msg_id)
        except (ValidationError, ValueError) as e:
            return self._error(ErrorInfo(code="invalid_request", message=str(e)), msg_id)
        except Exception as e:
            logger.exception("bridge request failed", extra={"request_id": msg_id})
            return self._error(ErrorInfo(code="internal_error", message=str(e) or type(e).__name__), msg_id)

    @staticmethod
    def _error(err: ErrorInfo, msg_id: Optional[str]) -> BridgeMessage:
        return BridgeMessage(type="error", payload={"error": err.message, **err.model_dump()}, id=msg_id)

    # ---- inbound ----

    async def handle_message(self, msg: BridgeMessage) -> Optional[BridgeMessage]:
        t = msg.type
        p = msg.payload if isinstance(msg.payload, dict) else {}
        if t not in INBOUND_TYPES:
            raise ValueError(f"unknown message type: {t}")

        if t == "agent:spawn":
            role = p.get("role")
            if isinstance(role, dict):
                agent = await self.cabal.spawn_specialized_agent(
                    str(role.get("type") or "analyst"),
                    name=role.get("name") or p.get("name"),
                    autonomy_level=role.get("autonomyLevel"),
                    specialization=role.get("specialization"),
                )
            elif role:
                agent = await self.cabal.spawn_specialized_agent(str(role), name=p.get("name"))
            else:
                agent = await self.cabal.spawn_agent(p.get("name"))
            return BridgeMessage(type="agent:spawn", payload={"agentId": agent.node_id, "pid": self._pid(agent.agent_id)}, id=msg.id)

        if t == "agent:kill":
            node_id = str(p.get("agentId") or "")
            killed = await self.cabal.kill_agent(node_id)
            return BridgeMessage(type="agent:kill", payload={"agentId": node_id, "killed": killed}, id=msg.id)

        if t == "agent:message":
            node_id = str(p.get("agentId") or "")
            agent = self.cabal.get_agent(node_id)
            content = p.get("content")
            if isinstance(agent, AutonomousAgent):
                # runs through the human gate; the reply shows up as agent output
                self.node.spawn(agent.execute_task("user-message", {"message": content}), label=f"task:{node_id}")
            else:
                await self.cabal.send_to_agent(node_id, content)
            return BridgeMessage(type="agent:message", payload={"agentId": node_id, "sent": True}, id=msg.id)

        if t == "agent:list":
            return BridgeMessage(type="agent:list", payload={"agents": [a.get_status() for a in self.cabal.agents.values()]}, id=msg.id)

        if t == "stats":
            payload = self.cabal.get_system_status()
            payload["stats"] = self.cabal.get_stats()
            return BridgeMessage(type="stats", payload=payload, id=msg.id)

        # human:response
        request_id = str(p.get("requestId") or "")
        if not request_id:
            raise ValueError("missing requestId")
        delivered = self.cabal.respond_to_request(request_id, p.get("response"))
        return BridgeMessage(type="human:response", payload={"requestId": request_id, "delivered": delivered}, id=msg.id)

    def _pid(self, agent_id: str) -> int:
        handle = self.cabal.multiplexer.get_handle(agent_id)
        return handle.pid if handle is not None else 0

    # ---- outbound ----

    def broadcast(self, msg: BridgeMessage) -> int:
        sent = 0
        for client in list(self._clients.values()):
            if client.send(msg):
                sent += 1
        return sent

    def _badge(self, agent_id: str, level: str, message: Optional[str] = None) -> None:
        payload: Dict[str, Any] = {
            "agentId": agent_id,
            "notificationLevel": level,
            "pendingRequests": self._pending_by_agent.get(agent_id, 0),
        }
        if message:
            payload["message"] = message
        self.broadcast(BridgeMessage(type="agent:notification", payload=payload))

    def _on_attention(self, event: BusEvent) -> None:
        note = event.data
        content = note.get("content") or {}
        if note.get("type") == "request":
            agent_id = str(content.get("from") or "")
            if not agent_id:
                return
            self._pending_by_agent[agent_id] = self._pending_by_agent.get(agent_id, 0) + 1
            self._badge(agent_id, notification_level(str(note.get("priority"))), format_notification(note))
            return
        agent_id = str(content.get("node_id") or "system")
        self._badge(agent_id, notification_level(str(note.get("priority"))), format_notification(note))

    def _on_resolved(self, event: BusEvent) -> None:
        agent_id = str(event.data.get("from") or event.data.get("agent_id") or "")
        count = self._pending_by_agent.get(agent_id)
        if not count:
            return
        count = max(0, count - 1)
        self._pending_by_agent[agent_id] = count
        self._badge(agent_id, "notification" if count > 0 else "normal")

    def _node_id(self, agent_id: str) -> str:
        node_id = self._node_ids.get(agent_id)
        if node_id:
            return node_id
        peer = self.cabal.node_for_agent(agent_id)
        return peer.node_id if peer is not None else agent_id

    def _on_spawned(self, event: BusEvent) -> None:
        d = event.data
        self._node_ids[str(d.get("agent_id") or "")] = str(d.get("node_id") or "")
        self.broadcast(
            BridgeMessage(
                type="agent:spawn",
                payload={
                    "agentId": d.get("node_id"),
                    "processId": d.get("agent_id"),
                    "role": d.get("role"),
                    "autonomyLevel": d.get("autonomy_level"),
                    "notificationLevel": "normal",
                    "pendingRequests": 0,
                },
            )
        )

    def _on_exit(self, event: BusEvent) -> None:
        agent_id = str(event.data.get("agent_id") or "")
        node_id = self._node_id(agent_id)
        self._node_ids.pop(agent_id, None)
        self._pending_by_agent.pop(node_id, None)
        self.broadcast(BridgeMessage(type="agent:kill", payload={"agentId": node_id, "code": event.data.get("code")}))

    def _on_output(self, event: BusEvent) -> None:
        d = event.data
        self.broadcast(
            BridgeMessage(
                type="agent:message",
                payload={
                    "agentId": self._node_id(str(d.get("agent_id") or "")),
                    "kind": d.get("kind"),
                    "content": d.get("payload"),
                    "correlationId": d.get("correlation_id"),
                },
            )
        )

    def _on_background(self, event: BusEvent) -> None:
        self._activity.append(dict(event.data))
        if len(self._activity) < ACTIVITY_BATCH:
            return
        batch, self._activity = self._activity, []
        agent_id = str(batch[-1].get("from") or "system")
        self._badge(agent_id, "normal", summarize_activity(batch))
