"""In-process event bus.

Components never talk to each other through shared state; they get a node from
one `EventBus` and exchange `BusEvent`s over string topics:

    bus = EventBus()
    node = bus.create_node("router-1")
    node.on("route:request", handler)
    node.emit("route:added", {...})

Delivery is best effort and in-process only: an event with no subscriber is
dropped. Plain handlers run inline during `emit`; coroutine handlers are
spawned as supervised tasks so the emitter never blocks on a subscriber.
"""
from __future__ import annotations

import inspect
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from ..contracts.v1.bus import BusEvent, normalize_topic_data
from ..util.aio import BackgroundTasks

logger = logging.getLogger("cabal.bus")

Handler = Callable[[BusEvent], Any]

TASK_ERROR_TOPIC = "task:error"


@dataclass
class Subscription:
    sub_id: int
    node_id: str
    topic: str
    handler: Handler
    once: bool = False
    active: bool = field(default=True, repr=False)


class EventBus:
    def __init__(self, *, name: str = "bus") -> None:
        self.name = name
        self._subs: Dict[str, List[Subscription]] = {}
        self._nodes: Dict[str, "BusNode"] = {}
        self._seq = itertools.count(1)
        self._emitted = 0
        self.tasks = BackgroundTasks(name=f"{name}.tasks", on_error=self._report_task_error)

    def create_node(self, node_id: str) -> "BusNode":
        nid = str(node_id or "").strip()
        if not nid:
            raise ValueError("missing node_id")
        if nid in self._nodes:
            raise ValueError(f"node already exists: {nid}")
        node = BusNode(self, nid)
        self._nodes[nid] = node
        return node

    def node_ids(self) -> List[str]:
        return list(self._nodes.keys())

    def listener_count(self, topic: Optional[str] = None) -> int:
        if topic is not None:
            return len(self._subs.get(topic, []))
        return sum(len(v) for v in self._subs.values())

    def stats(self) -> Dict[str, Any]:
        return {
            "nodes": len(self._nodes),
            "listeners": self.listener_count(),
            "emitted": self._emitted,
            "pending_tasks": self.tasks.pending(),
            "task_failures": self.tasks.failures,
        }

    async def drain(self, *, timeout: Optional[float] = None) -> None:
        await self.tasks.drain(timeout=timeout)

    async def close(self) -> None:
        await self.tasks.cancel_all()
        self._subs.clear()
        self._nodes.clear()

    def _subscribe(self, node_id: str, topic: str, handler: Handler, *, once: bool) -> Subscription:
        t = str(topic or "").strip()
        if not t:
            raise ValueError("missing topic")
        sub = Subscription(sub_id=next(self._seq), node_id=node_id, topic=t, handler=handler, once=once)
        self._subs.setdefault(t, []).append(sub)
        return sub

    def _unsubscribe(self, sub: Subscription) -> None:
        sub.active = False
        subs = self._subs.get(sub.topic)
        if not subs:
            return
        kept = [s for s in subs if s.sub_id != sub.sub_id]
        if kept:
            self._subs[sub.topic] = kept
        else:
            self._subs.pop(sub.topic, None)

    def _drop_node(self, node_id: str) -> None:
        for topic in list(self._subs.keys()):
            for sub in list(self._subs.get(topic, [])):
                if sub.node_id == node_id:
                    self._unsubscribe(sub)
        self._nodes.pop(node_id, None)

    def _publish(self, origin: str, topic: str, data: Any) -> int:
        event = BusEvent(topic=topic, origin=origin, data=normalize_topic_data(topic, data))
        self._emitted += 1
        targets = list(self._subs.get(topic, []))
        delivered = 0
        for sub in targets:
            if not sub.active:
                continue
            if sub.once:
                self._unsubscribe(sub)
            delivered += 1
            self._deliver(sub, event)
        logger.debug("emit %s from %s -> %d", topic, origin, delivered, extra={"topic": topic, "node_id": origin})
        return delivered

    def _deliver(self, sub: Subscription, event: BusEvent) -> None:
        label = f"{event.topic}@{sub.node_id}"
        try:
            result = sub.handler(event)
        except Exception as e:
            logger.exception("handler failed: %s", label, extra={"topic": event.topic, "node_id": sub.node_id})
            self._report_task_error(label, e)
            return
        if inspect.isawaitable(result):
            self.tasks.spawn(result, label=label)

    def _report_task_error(self, label: str, exc: BaseException) -> None:
        if label.startswith(TASK_ERROR_TOPIC):
            return
        self._publish(self.name, TASK_ERROR_TOPIC, {"label": label, "error": str(exc) or type(exc).__name__})


class BusNode:
    """One participant on the bus; subscriptions are tracked per node."""

    def __init__(self, bus: EventBus, node_id: str) -> None:
        self.bus = bus
        self.node_id = node_id

    def on(self, topic: str, handler: Handler) -> Subscription:
        return self.bus._subscribe(self.node_id, topic, handler, once=False)

    def once(self, topic: str, handler: Handler) -> Subscription:
        """Subscribe for the next event only; the subscription is gone before the handler runs."""
        return self.bus._subscribe(self.node_id, topic, handler, once=True)

    def off(self, topic_or_sub: Any, handler: Optional[Handler] = None) -> None:
        if isinstance(topic_or_sub, Subscription):
            self.bus._unsubscribe(topic_or_sub)
            return
        topic = str(topic_or_sub or "").strip()
        for sub in list(self.bus._subs.get(topic, [])):
            if sub.node_id != self.node_id:
                continue
            if handler is not None and sub.handler != handler:
                continue
            self.bus._unsubscribe(sub)

    def emit(self, topic: str, data: Any = None) -> int:
        """Publish to every current subscriber; returns how many were reached."""
        return self.bus._publish(self.node_id, str(topic), data)

    def spawn(self, coro: Any, *, label: str = "") -> Any:
        return self.bus.tasks.spawn(coro, label=label or self.node_id)

    def close(self) -> None:
        self.bus._drop_node(self.node_id)
