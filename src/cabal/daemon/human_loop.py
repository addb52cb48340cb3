"""Human-in-the-loop gate.

Per decision:

    Proposed -> AutoApproved
             -> PendingApproval -> Approved | Rejected | TimedOut (= rejected, reason "timeout")
             -> PendingReview   (non-blocking; the action goes ahead)

Gating order: an action listed in the agent policy's `requires_approval_for`
always blocks for approval; otherwise a reported confidence below the
threshold posts a review; everything else is approved on the spot and only
logged as background activity.

The pending table belongs to this coordinator. Humans answer through
`respond_to_request`; at most one answer is ever delivered per request id.
"""
from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Dict, List, Optional, Sequence

from ..contracts.v1.human import AgentPolicy, Decision, HumanRequest
from ..kernel.bus import BusNode, EventBus
from ..kernel.router import AsyncRouter
from ..util.conv import coerce_bool, coerce_float
from ..util.time import age_seconds, now_ts

logger = logging.getLogger("cabal.human_loop")

_APPROVE_WORDS = {"approve", "approved", "accept", "ok"}
_REJECT_WORDS = {"reject", "rejected", "deny", "denied"}


def approval_from_response(response: Any) -> Dict[str, Any]:
    """Normalize whatever the human sent into `{approved: bool, ...}`."""
    if isinstance(response, dict):
        out = dict(response)
        out["approved"] = coerce_bool(response.get("approved"), default=False)
        return out
    if isinstance(response, str):
        word = response.strip().lower()
        if word in _APPROVE_WORDS:
            return {"approved": True}
        if word in _REJECT_WORDS:
            return {"approved": False, "reason": "rejected"}
    return {"approved": coerce_bool(response, default=False)}


def _decision_from(msg: Any) -> Decision:
    if isinstance(msg, Decision):
        return msg
    data = dict(msg or {}) if isinstance(msg, dict) else {"decision": msg}
    if "agent_id" not in data:
        data["agent_id"] = str(data.get("agentId") or data.get("from") or "")
    if "decision_type" not in data and "decisionType" in data:
        data["decision_type"] = data.get("decisionType")
    if "decision_type" not in data:
        # {"type": "decision:deploy"} -> deploy
        marker = str(data.get("type") or data.get("topic") or "")
        if marker.startswith("decision:"):
            data["decision_type"] = marker[len("decision:"):]
    data["confidence"] = coerce_float(data.get("confidence"))
    return Decision.model_validate(data)


class HumanGateCoordinator:
    def __init__(
        self,
        bus: Optional[EventBus] = None,
        *,
        confidence_threshold: float = 0.8,
        approval_timeout: float = 30.0,
        input_timeout: Optional[float] = None,
        node_id: str = "human-loop",
    ) -> None:
        self.bus = bus or EventBus()
        self.node: BusNode = self.bus.create_node(node_id)
        self.router = AsyncRouter(self.bus, node_id=f"{node_id}-router")
        self.confidence_threshold = float(confidence_threshold)
        self.approval_timeout = float(approval_timeout)
        self.input_timeout = input_timeout
        self._pending: Dict[str, HumanRequest] = {}
        self._waiters: Dict[str, "asyncio.Future[Any]"] = {}
        self._policies: Dict[str, AgentPolicy] = {}
        self._resolved = 0
        self._timed_out = 0
        self._setup_routes()

    def _setup_routes(self) -> None:
        self.router.add_route("decision", re.compile(r"decision:"), self.handle_decision, priority=10)
        self.router.add_route("agent-comm", re.compile(r'"(?:topic|type)":\s*"agent:'), self._log_agent_comm)
        self.router.add_route("human-needed", re.compile(r"human:|attention:|help:"), self._attention_route, priority=100)

    # ---- policies ----

    def set_agent_policy(self, agent_id: str, **patch: Any) -> AgentPolicy:
        """Merge `patch` into the agent's policy; the last write wins."""
        existing = self._policies.get(agent_id)
        base = existing.model_dump() if existing is not None else {"agent_id": agent_id}
        base.update({k: v for k, v in patch.items() if v is not None})
        base["agent_id"] = agent_id
        policy = AgentPolicy.model_validate(base)
        self._policies[agent_id] = policy
        return policy

    def get_agent_policy(self, agent_id: str) -> Optional[AgentPolicy]:
        return self._policies.get(agent_id)

    # ---- gate ----

    async def handle_decision(self, msg: Any) -> Dict[str, Any]:
        d = _decision_from(msg)
        policy = self._policies.get(d.agent_id)
        if policy is not None and d.decision_type and d.decision_type in policy.requires_approval_for:
            return await self.request_approval(d.agent_id, d.decision_type, context=d.model_dump())

        if d.confidence is not None and d.confidence < self.confidence_threshold:
            return self.request_review(d.agent_id, context=d.model_dump())

        self.node.emit(
            "agent:autonomous",
            {"agent_id": d.agent_id, "decision": d.decision, "decision_type": d.decision_type, "confidence": d.confidence},
        )
        return {"approved": True, "autonomous": True}

    async def request_approval(
        self,
        agent_id: str,
        action: str,
        *,
        context: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Block until a human approves or rejects `action`; silence counts as rejection."""
        bound = self.approval_timeout if timeout is None else float(timeout)
        ctx = {"action": action}
        ctx.update(context or {})
        req = HumanRequest(type="approval", priority="high", from_=agent_id, context=ctx, deadline=now_ts() + bound)
        fut = self._open(req, wait=True)
        try:
            response = await asyncio.wait_for(fut, bound)
        except asyncio.TimeoutError:
            self._timed_out += 1
            logger.info("approval timed out", extra={"request_id": req.id, "agent_id": agent_id})
            self.node.emit("human:timeout", {"request_id": req.id, "agent_id": agent_id, "action": action})
            return {"approved": False, "reason": "timeout", "request_id": req.id}
        finally:
            self._discard(req.id)
        out = approval_from_response(response)
        out.setdefault("request_id", req.id)
        return out

    def request_review(self, agent_id: str, *, context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        req = HumanRequest(type="review", priority="medium", from_=agent_id, context=dict(context or {}))
        self._open(req, wait=False)
        return {"approved": True, "flagged_for_review": True, "request_id": req.id}

    async def request_human_input(
        self,
        agent_id: str,
        context: Optional[Dict[str, Any]] = None,
        *,
        priority: str = "medium",
        request_type: str = "input",
        options: Sequence[str] = (),
        timeout: Optional[float] = None,
    ) -> Any:
        """Wait for a human answer; None when `timeout` (or `input_timeout`) elapses first."""
        bound = self.input_timeout if timeout is None else timeout
        req = HumanRequest(
            type=request_type,  # type: ignore[arg-type]
            priority=priority,  # type: ignore[arg-type]
            from_=agent_id,
            context=dict(context or {}),
            options=list(options),
            deadline=(now_ts() + float(bound)) if bound is not None else None,
        )
        fut = self._open(req, wait=True)
        try:
            if bound is None:
                return await fut
            return await asyncio.wait_for(fut, float(bound))
        except asyncio.TimeoutError:
            self._timed_out += 1
            return None
        finally:
            self._discard(req.id)

    async def request_human_attention(self, msg: Any) -> Any:
        data = dict(msg) if isinstance(msg, dict) else {"content": msg}
        agent_id = str(data.get("agent_id") or data.get("agentId") or data.get("from") or "")
        urgent = coerce_bool(data.get("urgent"), default=False)
        return await self.request_human_input(agent_id, data, priority="high" if urgent else "medium")

    def _attention_route(self, msg: Any) -> Dict[str, Any]:
        # The router must not stall on a human, so routed requests are only posted.
        data = dict(msg) if isinstance(msg, dict) else {"content": msg}
        agent_id = str(data.get("agent_id") or data.get("agentId") or data.get("from") or "")
        urgent = coerce_bool(data.get("urgent"), default=False)
        req = HumanRequest(type="input", priority="high" if urgent else "medium", from_=agent_id, context=data)
        return {"pending": True, "request_id": self.post_request(req)}

    def post_request(self, request: HumanRequest) -> str:
        """Publish a request nobody waits on; it stays pending until answered."""
        self._open(request, wait=False)
        return request.id

    def _open(self, req: HumanRequest, *, wait: bool) -> "asyncio.Future[Any]":
        fut: "asyncio.Future[Any]" = asyncio.get_running_loop().create_future() if wait else None  # type: ignore[assignment]
        self._pending[req.id] = req
        if wait:
            self._waiters[req.id] = fut
        logger.info("human request %s/%s", req.type, req.priority, extra={"request_id": req.id, "agent_id": req.from_})
        self.node.emit("human:request", req)
        return fut

    def _discard(self, request_id: str) -> None:
        self._pending.pop(request_id, None)
        self._waiters.pop(request_id, None)

    def respond_to_request(self, request_id: str, response: Any) -> bool:
        """Deliver a human answer; unknown or already answered ids are ignored."""
        req = self._pending.pop(str(request_id), None)
        if req is None:
            return False
        self._resolved += 1
        waiter = self._waiters.pop(req.id, None)
        if waiter is not None and not waiter.done():
            waiter.set_result(response)
        self.node.emit("human:resolved", {"request_id": req.id, "type": req.type, "from": req.from_, "response": response})
        return True

    def get_pending_requests(self) -> List[HumanRequest]:
        return sorted(self._pending.values(), key=lambda r: r.sort_key())

    # ---- monitoring ----

    async def _log_agent_comm(self, msg: Any) -> Dict[str, Any]:
        data = msg if isinstance(msg, dict) else {}
        self.node.emit(
            "agent:background",
            {"from": data.get("from"), "to": data.get("to"), "type": "communication", "content": data.get("content")},
        )
        return {"handled": True}

    def monitor_agent_communication(self, from_: str, to: str, message: Dict[str, Any]) -> bool:
        """Audit-log a peer message; returns True when it matched a notify keyword."""
        policy = self._policies.get(from_)
        text = str(message.get("content") if isinstance(message, dict) else message)
        matched = bool(policy and any(p and p in text for p in policy.notify_for))
        if matched:
            self.node.emit(
                "human:notify",
                {"type": "agent-communication", "from": from_, "to": to, "message": message, "reason": "keyword-match"},
            )
        self.node.emit("communication:log", {"from": from_, "to": to, "message": message, "timestamp": now_ts()})
        return matched

    def get_stats(self) -> Dict[str, Any]:
        return {
            "pending_requests": len(self._pending),
            "policies": len(self._policies),
            "resolved": self._resolved,
            "timed_out": self._timed_out,
            "requests": [
                {"id": r.id, "type": r.type, "priority": r.priority, "from": r.from_, "age": round(age_seconds(r.created_at), 3)}
                for r in self.get_pending_requests()
            ],
        }

    async def close(self) -> None:
        for fut in self._waiters.values():
            if not fut.done():
                fut.cancel()
        self._waiters.clear()
        await self.router.close()
