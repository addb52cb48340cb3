from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Sequence

from ..daemon.human_loop import HumanGateCoordinator
from ..runners.multiplexer import ProcessMultiplexer
from ..util.time import now_ts
from .peer import PeerAgent

logger = logging.getLogger("cabal.autonomous")


def _task_prompt(prefix: str, task: str, context: Dict[str, Any]) -> str:
    return f"{prefix}: {task}\nContext: {json.dumps(context, ensure_ascii=False, default=str)}"


class AutonomousAgent(PeerAgent):
    """A peer whose tasks pass through the human gate before reaching the agent.

    - background tasks run without any gating
    - tasks in `requires_approval_for` block on a human approval
    - a reported confidence below the threshold asks the human for guidance
    """

    def __init__(
        self,
        multiplexer: ProcessMultiplexer,
        node_id: str,
        coordinator: HumanGateCoordinator,
        *,
        autonomy_level: str = "supervised",
        confidence_threshold: Optional[float] = None,
        requires_approval_for: Sequence[str] = (),
        background_tasks: Sequence[str] = (),
        notify_for: Sequence[str] = (),
        **kwargs: Any,
    ) -> None:
        super().__init__(multiplexer, node_id, **kwargs)
        self.coordinator = coordinator
        self.autonomy_level = autonomy_level
        self.confidence_threshold = (
            coordinator.confidence_threshold if confidence_threshold is None else float(confidence_threshold)
        )
        self.requires_approval_for: List[str] = list(requires_approval_for)
        self.background_tasks: List[str] = list(background_tasks)
        self.current_task: Optional[str] = None
        self.tasks_completed = 0
        self.tasks_succeeded = 0
        self._total_response_time = 0.0

        coordinator.set_agent_policy(
            self.node_id,
            autonomy_level=autonomy_level,
            requires_approval_for=self.requires_approval_for,
            notify_for=list(notify_for),
        )

    def profile(self) -> Dict[str, Any]:
        p = super().profile()
        p["metadata"]["autonomy_level"] = self.autonomy_level
        return p

    async def execute_task(
        self,
        task: str,
        context: Optional[Dict[str, Any]] = None,
        *,
        confidence: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        ctx = dict(context or {})
        started = now_ts()
        self.current_task = task
        self._set_registry_status("busy")
        try:
            result = await self._execute(task, ctx, confidence, timeout)
        except Exception:
            self._set_registry_status("error")
            raise
        finally:
            self.current_task = None
        self._record(result, now_ts() - started)
        self._set_registry_status("online")
        return result

    async def _execute(
        self,
        task: str,
        ctx: Dict[str, Any],
        confidence: Optional[float],
        timeout: Optional[float],
    ) -> Dict[str, Any]:
        if task in self.background_tasks:
            self.node.emit(
                "agent:background-task",
                {"agent_id": self.node_id, "task": task, "context": ctx, "timestamp": now_ts()},
            )
            await self.multiplexer.send(self.agent_id, _task_prompt("Execute background task", task, ctx))
            return {"success": True, "background": True}

        if task in self.requires_approval_for:
            approval = await self.coordinator.request_approval(self.node_id, task, context={"task": task, **ctx})
            if not approval.get("approved"):
                return {"success": False, "reason": "human-rejected", "details": approval.get("reason")}

        if confidence is not None and confidence < self.confidence_threshold:
            answer = await self.coordinator.request_human_input(
                self.node_id,
                {"task": task, "context": ctx, "confidence": confidence, "reason": "low-confidence"},
            )
            if isinstance(answer, dict):
                if answer.get("abort"):
                    return {"success": False, "reason": "human-aborted"}
                if answer.get("guidance") is not None:
                    ctx["human_guidance"] = answer.get("guidance")
            elif isinstance(answer, str) and answer.strip():
                ctx["human_guidance"] = answer.strip()

        response = await self.ask(_task_prompt("Execute", task, ctx), timeout=timeout)
        return {"success": True, "result": response, "confidence": confidence}

    def _record(self, result: Dict[str, Any], elapsed: float) -> None:
        self.tasks_completed += 1
        self._total_response_time += elapsed
        if result.get("success"):
            self.tasks_succeeded += 1
        if not self.register:
            return
        self.node.emit(
            "registry:update",
            {
                "agent_id": self.agent_id,
                "updates": {
                    "performance": {
                        "tasks_completed": self.tasks_completed,
                        "avg_response_time": self._total_response_time / self.tasks_completed,
                        "success_rate": self.tasks_succeeded / self.tasks_completed,
                    }
                },
            },
        )

    def _set_registry_status(self, status: str) -> None:
        if self.register and self.agent_id:
            self.node.emit("registry:update", {"agent_id": self.agent_id, "updates": {"status": status}})

    async def send_to_peer(self, target: str, content: Any) -> None:
        self.coordinator.monitor_agent_communication(self.node_id, target, {"content": content, "timestamp": now_ts()})
        await super().send_to_peer(target, content)

    def get_status(self) -> Dict[str, Any]:
        status = super().get_status()
        status.update(
            {
                "current_task": self.current_task,
                "autonomy_level": self.autonomy_level,
                "is_autonomous": self.autonomy_level == "full",
                "tasks_completed": self.tasks_completed,
            }
        )
        return status
