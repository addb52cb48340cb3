from __future__ import annotations

import asyncio
import json
import os
from typing import Any, AsyncIterator, Dict, Optional, Set

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from ... import __version__
from ...agents.autonomous import AutonomousAgent
from ...daemon.cabal import Cabal
from ...errors import AgentNotFound, CabalError, CapacityExceeded, SpawnFailed
from ...kernel.bus import BusEvent


class SpawnRequest(BaseModel):
    name: Optional[str] = None
    role: Optional[str] = None
    autonomy_level: Optional[str] = None
    specialization: Optional[str] = None


class MessageRequest(BaseModel):
    content: Any
    task: bool = Field(default=False)


class RespondRequest(BaseModel):
    response: Any = None


def _require_token_if_configured(request: Request) -> Optional[JSONResponse]:
    token = str(os.environ.get("CABAL_WEB_TOKEN") or "").strip()
    if not token:
        return None
    auth = str(request.headers.get("authorization") or "").strip()
    if auth != f"Bearer {token}":
        return JSONResponse(
            status_code=401,
            content={"ok": False, "error": {"code": "unauthorized", "message": "missing/invalid token", "details": {}}},
        )
    return None


def _status_for(err: CabalError) -> int:
    if isinstance(err, AgentNotFound):
        return 404
    if isinstance(err, CapacityExceeded):
        return 409
    if isinstance(err, TimeoutError):
        return 504
    if isinstance(err, SpawnFailed):
        return 500
    return 400


class EventFanout:
    """Copies `human:attention` events into one queue per SSE client."""

    def __init__(self, cabal: Cabal, *, node_id: str = "web-port", max_queue: int = 256) -> None:
        self.node = cabal.bus.create_node(node_id)
        self.max_queue = int(max_queue)
        self._queues: Set["asyncio.Queue[Dict[str, Any]]"] = set()
        self.node.on("human:attention", self._on_event)
        self.node.on("human:resolved", self._on_event)

    def _on_event(self, event: BusEvent) -> None:
        item = {"topic": event.topic, "ts": event.ts, "data": event.data}
        for q in list(self._queues):
            if q.full():
                # slow client: keep the newest
                q.get_nowait()
            q.put_nowait(item)

    def subscribe(self) -> "asyncio.Queue[Dict[str, Any]]":
        q: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue(maxsize=self.max_queue)
        self._queues.add(q)
        return q

    def unsubscribe(self, q: "asyncio.Queue[Dict[str, Any]]") -> None:
        self._queues.discard(q)

    def close(self) -> None:
        self._queues.clear()
        self.node.close()


async def sse_events(fanout: EventFanout, *, heartbeat_s: float = 30.0) -> AsyncIterator[bytes]:
    q = fanout.subscribe()
    try:
        yield b": connected\n\n"
        while True:
            try:
                item = await asyncio.wait_for(q.get(), heartbeat_s)
            except asyncio.TimeoutError:
                yield b": heartbeat\n\n"
                continue
            yield f"event: {item['topic']}\n".encode("utf-8")
            yield b"data: " + json.dumps(item, ensure_ascii=False, default=str).encode("utf-8") + b"\n\n"
    finally:
        fanout.unsubscribe(q)


def create_app(cabal: Cabal) -> FastAPI:
    app = FastAPI(title="cabal web", version=__version__)
    fanout = EventFanout(cabal)
    app.state.cabal = cabal
    app.state.fanout = fanout

    @app.middleware("http")
    async def _auth(request: Request, call_next):  # type: ignore[no-untyped-def]
        blocked = _require_token_if_configured(request)
        if blocked is not None:
            return blocked
        return await call_next(request)

    @app.exception_handler(CabalError)
    async def _cabal_error(request: Request, exc: CabalError) -> JSONResponse:
        return JSONResponse(
            status_code=_status_for(exc),
            content={"ok": False, "error": exc.to_error().model_dump()},
        )

    @app.exception_handler(HTTPException)
    async def _http_error(request: Request, exc: HTTPException) -> JSONResponse:
        detail = exc.detail if isinstance(exc.detail, dict) else {"code": "http_error", "message": str(exc.detail)}
        detail.setdefault("details", {})
        return JSONResponse(status_code=exc.status_code, content={"ok": False, "error": detail})

    @app.get("/api/v1/ping")
    async def ping() -> Dict[str, Any]:
        return {"ok": True, "result": {"version": __version__, "agents": len(cabal.agents)}}

    @app.get("/api/v1/stats")
    async def stats() -> Dict[str, Any]:
        return {"ok": True, "result": {"status": cabal.get_system_status(), "stats": cabal.get_stats()}}

    @app.get("/api/v1/agents")
    async def list_agents() -> Dict[str, Any]:
        return {"ok": True, "result": {"agents": [a.get_status() for a in cabal.agents.values()]}}

    @app.post("/api/v1/agents")
    async def spawn_agent(req: SpawnRequest) -> Dict[str, Any]:
        try:
            if req.role:
                agent = await cabal.spawn_specialized_agent(
                    req.role,
                    name=req.name,
                    autonomy_level=req.autonomy_level,
                    specialization=req.specialization,
                )
            else:
                agent = await cabal.spawn_agent(req.name)
        except ValueError as e:
            raise HTTPException(status_code=400, detail={"code": "invalid_request", "message": str(e)})
        return {"ok": True, "result": agent.get_status()}

    @app.delete("/api/v1/agents/{node_id}")
    async def kill_agent(node_id: str) -> Dict[str, Any]:
        if not await cabal.kill_agent(node_id):
            raise AgentNotFound(node_id)
        return {"ok": True, "result": {"node_id": node_id, "killed": True}}

    @app.post("/api/v1/agents/{node_id}/message")
    async def message_agent(node_id: str, req: MessageRequest) -> Dict[str, Any]:
        agent = cabal.get_agent(node_id)
        if req.task and isinstance(agent, AutonomousAgent):
            result = await agent.execute_task("user-message", {"message": req.content})
            return {"ok": True, "result": result}
        await cabal.send_to_agent(node_id, req.content)
        return {"ok": True, "result": {"node_id": node_id, "sent": True}}

    @app.get("/api/v1/human/requests")
    async def human_requests() -> Dict[str, Any]:
        reqs = [r.model_dump(by_alias=True) for r in cabal.get_human_requests()]
        return {"ok": True, "result": {"requests": reqs}}

    @app.post("/api/v1/human/requests/{request_id}/respond")
    async def human_respond(request_id: str, req: RespondRequest) -> Dict[str, Any]:
        if not cabal.respond_to_request(request_id, req.response):
            raise HTTPException(
                status_code=404,
                detail={"code": "request_not_found", "message": f"no pending request: {request_id}"},
            )
        return {"ok": True, "result": {"request_id": request_id, "delivered": True}}

    @app.get("/api/v1/events/stream")
    async def events_stream() -> StreamingResponse:
        return StreamingResponse(sse_events(fanout), media_type="text/event-stream")

    return app
