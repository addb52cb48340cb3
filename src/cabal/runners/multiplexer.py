"""Process multiplexer for agent subprocesses.

Owns every live agent subprocess: starts it, writes JSON lines to its stdin,
turns its stdout lines into `AgentMessage`s and reports the lifecycle on the
bus (`agent:spawn`, `agent:exit`, `agent:error`, `agent:output`,
`message:send`, `message:receive`).

Admission control is a hard gate: `spawn` fails fast with CapacityExceeded once
`max_agents` handles are live (or being started).
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

from ..contracts.v1.agent import AgentMessage
from ..errors import AgentNotFound, CapacityExceeded, SpawnFailed
from ..kernel.bus import BusNode, EventBus
from ..kernel.settings import DEFAULT_AGENT_COMMAND, CabalSettings
from ..util.time import age_seconds, now_ts

logger = logging.getLogger("cabal.multiplexer")

StreamHandler = Callable[[AgentMessage], Union[None, Awaitable[None]]]

_READ_CHUNK = 64 * 1024


@dataclass
class AgentHandle:
    agent_id: str
    process: asyncio.subprocess.Process
    args: List[str] = field(default_factory=list)
    spawned_at: float = field(default_factory=now_ts)
    readers: List["asyncio.Task[Any]"] = field(default_factory=list, repr=False)
    stopping: bool = False
    exited: bool = False

    @property
    def pid(self) -> int:
        return int(self.process.pid or 0)


class ProcessMultiplexer:
    def __init__(
        self,
        bus: Optional[EventBus] = None,
        *,
        max_agents: int = 5,
        command: Optional[Sequence[str]] = None,
        kill_grace_seconds: float = 2.0,
        node_id: str = "multiplexer",
        cwd: Optional[str] = None,
    ) -> None:
        if int(max_agents) < 1:
            raise ValueError("max_agents must be >= 1")
        self.bus = bus or EventBus()
        self.node: BusNode = self.bus.create_node(node_id)
        self.max_agents = int(max_agents)
        self.command: List[str] = list(command or DEFAULT_AGENT_COMMAND)
        self.kill_grace_seconds = float(kill_grace_seconds)
        self.cwd = cwd
        self._agents: Dict[str, AgentHandle] = {}
        self._starting: set[str] = set()
        self._stream_handlers: Dict[str, StreamHandler] = {}

    @classmethod
    def from_settings(cls, settings: CabalSettings, bus: Optional[EventBus] = None) -> "ProcessMultiplexer":
        return cls(
            bus,
            max_agents=settings.max_agents,
            command=settings.agent_command,
            kill_grace_seconds=settings.kill_grace_seconds,
        )

    # ---- admission / lifecycle ----

    def live_count(self) -> int:
        return len(self._agents) + len(self._starting)

    async def spawn(
        self,
        id: Optional[str] = None,
        args: Sequence[str] = (),
        env: Optional[Dict[str, str]] = None,
    ) -> str:
        if self.live_count() >= self.max_agents:
            raise CapacityExceeded(self.max_agents)
        agent_id = str(id or "").strip() or f"agent-{uuid.uuid4().hex[:8]}"
        if agent_id in self._agents or agent_id in self._starting:
            raise ValueError(f"agent already running: {agent_id}")

        argv = [*self.command, *[str(a) for a in args]]
        full_env = dict(os.environ)
        if env:
            full_env.update({str(k): str(v) for k, v in env.items()})

        self._starting.add(agent_id)
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=full_env,
                cwd=self.cwd,
            )
        except OSError as e:
            logger.error("agent spawn failed: %s", e, extra={"agent_id": agent_id})
            raise SpawnFailed(agent_id, argv[0], e.strerror or str(e)) from e
        finally:
            self._starting.discard(agent_id)

        handle = AgentHandle(agent_id=agent_id, process=proc, args=[str(a) for a in args])
        self._agents[agent_id] = handle
        handle.readers = [
            self.node.spawn(self._read_stdout(handle), label=f"stdout:{agent_id}"),
            self.node.spawn(self._read_stderr(handle), label=f"stderr:{agent_id}"),
        ]
        self.node.spawn(self._watch_exit(handle), label=f"exit:{agent_id}")

        logger.info("agent spawned pid=%s", handle.pid, extra={"agent_id": agent_id})
        self.node.emit("agent:spawn", {"agent_id": agent_id, "pid": handle.pid, "args": handle.args})
        return agent_id

    async def kill(self, agent_id: str) -> bool:
        """Terminate one agent; unknown, exited or already-stopping ids are a no-op."""
        handle = self._agents.get(str(agent_id or ""))
        if handle is None or handle.stopping or handle.exited:
            return False
        handle.stopping = True
        proc = handle.process
        if proc.returncode is None:
            try:
                proc.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(proc.wait(), timeout=self.kill_grace_seconds)
            except asyncio.TimeoutError:
                logger.warning("agent ignored SIGTERM, killing", extra={"agent_id": handle.agent_id})
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
                await proc.wait()
        self._finalize(handle, proc.returncode)
        return True

    async def kill_all(self) -> int:
        ids = list(self._agents.keys())
        if not ids:
            return 0
        results = await asyncio.gather(*(self.kill(aid) for aid in ids), return_exceptions=True)
        killed = 0
        for aid, r in zip(ids, results):
            if isinstance(r, BaseException):
                logger.error("kill failed: %s", r, extra={"agent_id": aid})
            elif r:
                killed += 1
        return killed

    async def close(self) -> None:
        await self.kill_all()

    def _finalize(self, handle: AgentHandle, code: Optional[int]) -> None:
        if handle.exited:
            return
        handle.exited = True
        if self._agents.get(handle.agent_id) is handle:
            del self._agents[handle.agent_id]
        self._stream_handlers.pop(handle.agent_id, None)
        logger.info("agent exited code=%s", code, extra={"agent_id": handle.agent_id})
        self.node.emit("agent:exit", {"agent_id": handle.agent_id, "code": code})

    async def _watch_exit(self, handle: AgentHandle) -> None:
        code = await handle.process.wait()
        if handle.readers:
            # Give the readers a moment to flush what the pipe still holds.
            await asyncio.wait(handle.readers, timeout=0.5)
        self._finalize(handle, code)

    # ---- input ----

    async def send(self, agent_id: str, message: Any, correlation_id: Optional[str] = None) -> None:
        handle = self._agents.get(str(agent_id or ""))
        if handle is None or handle.exited or handle.process.stdin is None:
            raise AgentNotFound(str(agent_id))

        self.node.emit(
            "message:send",
            AgentMessage(agent_id=handle.agent_id, kind="request", payload=message, correlation_id=correlation_id),
        )
        line: Dict[str, Any] = {"content": message}
        if correlation_id:
            line["correlationId"] = correlation_id
        data = (json.dumps(line, ensure_ascii=False) + "\n").encode("utf-8")
        try:
            handle.process.stdin.write(data)
            await handle.process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.warning("stdin closed: %s", e, extra={"agent_id": handle.agent_id})
            raise AgentNotFound(handle.agent_id) from e

    async def broadcast(self, message: Any) -> int:
        """Send to every live agent concurrently; failures are logged, never raised."""
        ids = list(self._agents.keys())
        if not ids:
            return 0
        results = await asyncio.gather(*(self.send(aid, message) for aid in ids), return_exceptions=True)
        sent = 0
        for aid, r in zip(ids, results):
            if isinstance(r, BaseException):
                logger.warning("broadcast send failed: %s", r, extra={"agent_id": aid})
            else:
                sent += 1
        return sent

    # ---- output ----

    def set_stream_handler(self, agent_id: str, handler: StreamHandler) -> None:
        self._stream_handlers[str(agent_id)] = handler

    def remove_stream_handler(self, agent_id: str) -> None:
        self._stream_handlers.pop(str(agent_id), None)

    async def _read_stdout(self, handle: AgentHandle) -> None:
        stream = handle.process.stdout
        if stream is None:
            return
        buf = b""
        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                break
            buf += chunk
            *lines, buf = buf.split(b"\n")
            for raw in lines:
                self._handle_line(handle, raw)
        if buf.strip():
            self._handle_line(handle, buf)

    async def _read_stderr(self, handle: AgentHandle) -> None:
        stream = handle.process.stderr
        if stream is None:
            return
        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                break
            self.node.emit("agent:error", {"agent_id": handle.agent_id, "error": chunk.decode("utf-8", errors="replace")})

    def _handle_line(self, handle: AgentHandle, raw: bytes) -> None:
        line = raw.decode("utf-8", errors="replace").strip()
        if not line:
            return
        try:
            parsed = json.loads(line)
        except ValueError:
            self.node.emit("agent:output", {"agent_id": handle.agent_id, "data": line})
            return

        msg = AgentMessage.from_output(handle.agent_id, parsed)
        handler = self._stream_handlers.get(handle.agent_id)
        if handler is not None:
            try:
                result = handler(msg)
            except Exception:
                logger.exception("stream handler failed", extra={"agent_id": handle.agent_id})
            else:
                if asyncio.iscoroutine(result):
                    self.node.spawn(result, label=f"stream:{handle.agent_id}")
        self.node.emit("message:receive", msg)

    # ---- queries ----

    def agent_ids(self) -> List[str]:
        return list(self._agents.keys())

    def is_running(self, agent_id: str) -> bool:
        handle = self._agents.get(str(agent_id or ""))
        return handle is not None and not handle.exited

    def get_handle(self, agent_id: str) -> Optional[AgentHandle]:
        return self._agents.get(str(agent_id or ""))

    def get_stats(self) -> Dict[str, Any]:
        return {
            "active_agents": len(self._agents),
            "max_agents": self.max_agents,
            "agents": [
                {
                    "id": h.agent_id,
                    "pid": h.pid,
                    "uptime": round(age_seconds(h.spawned_at), 3),
                    "args": list(h.args),
                }
                for h in self._agents.values()
            ],
        }
