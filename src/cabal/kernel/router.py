"""Pattern-matched async router.

Routes are grouped by topic and kept sorted by priority (higher first, ties in
insertion order). A route pattern is either a plain string, matched against the
message's `topic` or `type` field, or a compiled regex, searched in the
JSON-serialized message.

Inbound messages (bus `route:message`, direct messages, `dispatch()`) go through
one FIFO queue drained by a single consumer: every matching handler of a
message runs concurrently and the consumer waits for all of them before taking
the next message. A slow handler therefore holds up the whole router.

`request()` / `on_request()` give request/await-one-reply over the bus.
"""
from __future__ import annotations

import asyncio
import inspect
import itertools
import json
import logging
import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Pattern, Tuple, Union

from ..errors import HandlerFailure, RequestTimeout, RouteRequestFailed
from .bus import BusEvent, BusNode, EventBus

logger = logging.getLogger("cabal.router")

RouteHandler = Callable[[Any], Union[Any, Awaitable[Any]]]
RoutePattern = Union[str, Pattern[str]]

_seq = itertools.count(1)


@dataclass
class Route:
    topic: str
    pattern: RoutePattern
    handler: RouteHandler
    priority: int = 0
    seq: int = field(default_factory=lambda: next(_seq))

    @property
    def pattern_text(self) -> str:
        if isinstance(self.pattern, str):
            return self.pattern
        return self.pattern.pattern

    def matches(self, msg: Any) -> bool:
        if isinstance(self.pattern, str):
            if not isinstance(msg, dict):
                return False
            return msg.get("topic") == self.pattern or msg.get("type") == self.pattern
        try:
            text = json.dumps(msg, ensure_ascii=False, default=str)
        except (TypeError, ValueError):
            text = str(msg)
        return self.pattern.search(text) is not None


async def _call(handler: Callable[..., Any], *args: Any) -> Any:
    result = handler(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


class AsyncRouter:
    def __init__(
        self,
        bus: Optional[EventBus] = None,
        *,
        node_id: Optional[str] = None,
        request_timeout: float = 5.0,
    ) -> None:
        self.bus = bus or EventBus()
        self.node_id = str(node_id or f"router-{uuid.uuid4().hex[:8]}")
        self.node: BusNode = self.bus.create_node(self.node_id)
        self.request_timeout = float(request_timeout)

        self._routes: Dict[str, List[Route]] = {}
        self._request_handlers: Dict[str, RouteHandler] = {}
        self._queue: Optional["asyncio.Queue[Tuple[Any, asyncio.Future[Any]]]"] = None
        self._consumer: Optional["asyncio.Task[None]"] = None
        self._processing = False
        self._processed = 0
        self._errors = 0
        self._pending_requests: Dict[str, "asyncio.Future[Any]"] = {}
        self._closed = False

        self.node.on("route:message", self._on_bus_message)
        self.node.on(f"direct:{self.node_id}", self._on_bus_message)
        self.node.on("route:request", self._on_request_event)
        self.node.on("route:discover", self._on_discover)

    # ---- routes ----

    def add_route(self, topic: str, pattern: RoutePattern, handler: RouteHandler, *, priority: int = 0) -> Route:
        t = str(topic or "").strip()
        if not t:
            raise ValueError("missing topic")
        route = Route(topic=t, pattern=pattern, handler=handler, priority=int(priority))
        routes = self._routes.setdefault(t, [])
        routes.append(route)
        # sort() is stable: equal priorities keep insertion order
        routes.sort(key=lambda r: -r.priority)
        self.node.emit("route:added", {"node_id": self.node_id, "topic": t, "pattern": route.pattern_text})
        return route

    def remove_route(self, topic: str, route: Optional[Route] = None) -> int:
        routes = self._routes.get(topic)
        if not routes:
            return 0
        if route is None:
            self._routes.pop(topic, None)
            return len(routes)
        kept = [r for r in routes if r is not route]
        if kept:
            self._routes[topic] = kept
        else:
            self._routes.pop(topic, None)
        return len(routes) - len(kept)

    def routes(self, topic: Optional[str] = None) -> List[Route]:
        if topic is not None:
            return list(self._routes.get(topic, []))
        return [r for rs in self._routes.values() for r in rs]

    def matching_routes(self, msg: Any) -> List[Route]:
        return [r for rs in self._routes.values() for r in rs if r.matches(msg)]

    # ---- dispatch ----

    def enqueue(self, msg: Any) -> "asyncio.Future[List[Any]]":
        """Queue a message; the returned future resolves with the handler outcomes."""
        if self._closed:
            raise RuntimeError(f"router {self.node_id} is closed")
        if self._queue is None:
            self._queue = asyncio.Queue()
        done: "asyncio.Future[List[Any]]" = asyncio.get_running_loop().create_future()
        self._queue.put_nowait((msg, done))
        if self._consumer is None or self._consumer.done():
            self._consumer = self.node.spawn(self._drain(), label=f"router:{self.node_id}")
        return done

    async def dispatch(self, msg: Any) -> List[Any]:
        return await self.enqueue(msg)

    def _on_bus_message(self, event: BusEvent) -> None:
        if self._closed:
            return
        self.enqueue(event.data)

    async def _drain(self) -> None:
        assert self._queue is not None
        while True:
            msg, done = await self._queue.get()
            self._processing = True
            try:
                outcomes = await self._process(msg)
            except Exception as e:
                logger.exception("dispatch failed", extra={"node_id": self.node_id})
                if not done.done():
                    done.set_exception(e)
            else:
                if not done.done():
                    done.set_result(outcomes)
            finally:
                self._processing = False
                self._processed += 1
                self._queue.task_done()

    async def _process(self, msg: Any) -> List[Any]:
        routes = self.matching_routes(msg)
        if not routes:
            return []
        return list(await asyncio.gather(*(self._run(r, msg) for r in routes)))

    async def _run(self, route: Route, msg: Any) -> Any:
        try:
            result = await _call(route.handler, msg)
        except Exception as e:
            self._errors += 1
            failure = HandlerFailure(route.topic, route.pattern_text, e)
            logger.warning(
                "route handler failed: %s",
                failure.message,
                extra={"node_id": self.node_id, "topic": route.topic},
            )
            self.node.emit(
                "route:error",
                {"topic": route.topic, "pattern": route.pattern_text, "error": failure.message, "msg": msg},
            )
            return failure
        if result is not None:
            self.node.emit(
                "route:result",
                {"original_msg": msg, "result": result, "handled_by": self.node_id, "topic": route.topic},
            )
        return result

    # ---- messaging ----

    def broadcast(self, topic: str, message: Optional[Dict[str, Any]] = None) -> int:
        data = dict(message or {})
        data["topic"] = topic
        return self.node.emit("route:message", data)

    def send_direct(self, node_id: str, message: Dict[str, Any]) -> int:
        data = dict(message)
        data.setdefault("from", self.node_id)
        return self.node.emit(f"direct:{node_id}", data)

    def _on_discover(self, event: BusEvent) -> None:
        if event.origin == self.node_id:
            return
        self.node.emit(
            "route:announce",
            {
                "node_id": self.node_id,
                "routes": [{"topic": r.topic, "pattern": r.pattern_text, "priority": r.priority} for r in self.routes()],
            },
        )

    # ---- request / reply ----

    async def request(self, topic: str, payload: Any = None, timeout: Optional[float] = None) -> Any:
        bound = self.request_timeout if timeout is None else float(timeout)
        request_id = uuid.uuid4().hex
        reply_to = f"route:reply:{self.node_id}:{request_id}"
        fut: "asyncio.Future[Any]" = asyncio.get_running_loop().create_future()

        def _settle(event: BusEvent) -> None:
            if not fut.done():
                fut.set_result(event.data)

        sub = self.node.once(reply_to, _settle)
        self._pending_requests[request_id] = fut
        try:
            self.node.emit(
                "route:request",
                {"topic": topic, "payload": payload, "request_id": request_id, "from": self.node_id, "reply_to": reply_to},
            )
            reply = await asyncio.wait_for(fut, bound)
        except asyncio.TimeoutError:
            raise RequestTimeout(topic, request_id, bound) from None
        finally:
            self.node.off(sub)
            self._pending_requests.pop(request_id, None)

        if not reply.get("success", False):
            raise RouteRequestFailed(topic, str(reply.get("error") or ""))
        return reply.get("result")

    def on_request(self, topic: str, handler: RouteHandler) -> None:
        self._request_handlers[str(topic)] = handler

    def _on_request_event(self, event: BusEvent) -> Optional[Awaitable[None]]:
        data = event.data
        handler = self._request_handlers.get(str(data.get("topic") or ""))
        if handler is None or self._closed:
            return None
        return self._answer(handler, data)

    async def _answer(self, handler: RouteHandler, data: Dict[str, Any]) -> None:
        request_id = data.get("request_id")
        try:
            result = await _call(handler, data.get("payload"))
        except Exception as e:
            logger.warning("request handler failed: %s", e, extra={"request_id": request_id, "topic": data.get("topic")})
            reply = {"error": str(e) or type(e).__name__, "request_id": request_id, "success": False}
        else:
            reply = {"result": result, "request_id": request_id, "success": True}
        self.node.emit(str(data.get("reply_to")), reply)

    # ---- lifecycle ----

    def get_stats(self) -> Dict[str, Any]:
        return {
            "node_id": self.node_id,
            "routes": sum(len(rs) for rs in self._routes.values()),
            "topics": list(self._routes.keys()),
            "queue_length": self._queue.qsize() if self._queue is not None else 0,
            "processing": self._processing,
            "processed": self._processed,
            "errors": self._errors,
            "pending_requests": len(self._pending_requests),
        }

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        consumer = self._consumer
        if consumer is not None and not consumer.done():
            consumer.cancel()
            await asyncio.gather(consumer, return_exceptions=True)
        if self._queue is not None:
            while not self._queue.empty():
                _, done = self._queue.get_nowait()
                if not done.done():
                    done.cancel()
        self.node.close()
