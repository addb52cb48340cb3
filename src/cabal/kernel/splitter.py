"""Stream splitter: agent output -> logical streams.

`feed()` reassembles JSON objects from raw chunks. There is one reassembly
buffer per splitter, so a splitter must only be fed from one source whose
output is never interleaved below the line level (true for a single OS pipe);
use one splitter per source otherwise.

`route_message()` files each object under its logical stream:

    stream id = streamId, else agentId, else "default"

    stream:start  -> event only
    stream:chunk  -> buffered + delivered to readers
    stream:end    -> final metadata, entry removed
    anything else -> one-shot message on that stream

`demux_response()` / `handle_response()` correlate a request with the first
response carrying the same correlation id.
"""
from __future__ import annotations

import asyncio
import codecs
import json
import logging
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple, Union

from ..contracts.v1.agent import AgentMessage, StreamMetadata
from ..errors import ParseFailure, ResponseTimeout
from .bus import BusNode, EventBus

logger = logging.getLogger("cabal.splitter")

DEFAULT_STREAM_ID = "default"
STREAM_KINDS = ("response", "event", "log")
MAX_BUFFER_CHARS = 4 * 1024 * 1024


class StreamReader:
    """Consumer side of one or more logical streams.

    Items are `(stream_id, data)` tuples. The reader closes once every source
    stream has ended (or on `close()`); iteration then stops.
    """

    def __init__(self, stream_ids: Sequence[str]) -> None:
        self.stream_ids = list(stream_ids)
        self._open: Set[str] = set(self.stream_ids)
        self._queue: "asyncio.Queue[Optional[Tuple[str, Any]]]" = asyncio.Queue()
        self.closed = False
        self.received = 0

    def push(self, stream_id: str, data: Any) -> None:
        if self.closed:
            return
        self.received += 1
        self._queue.put_nowait((stream_id, data))

    def end(self, stream_id: str) -> None:
        self._open.discard(stream_id)
        if not self._open:
            self.close()

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._queue.put_nowait(None)

    def pending(self) -> List[Tuple[str, Any]]:
        """Everything buffered right now, without waiting."""
        out: List[Tuple[str, Any]] = []
        while True:
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return out
            if item is None:
                # keep the close marker for iterators
                self._queue.put_nowait(None)
                return out
            out.append(item)

    async def get(self, timeout: Optional[float] = None) -> Optional[Tuple[str, Any]]:
        item = await asyncio.wait_for(self._queue.get(), timeout)
        if item is None:
            self._queue.put_nowait(None)
        return item

    def __aiter__(self) -> "StreamReader":
        return self

    async def __anext__(self) -> Tuple[str, Any]:
        item = await self.get()
        if item is None:
            raise StopAsyncIteration
        return item


class StreamSplitter:
    def __init__(
        self,
        bus: Optional[EventBus] = None,
        *,
        response_timeout: float = 30.0,
        node_id: str = "splitter",
    ) -> None:
        self.bus = bus or EventBus()
        self.node: BusNode = self.bus.create_node(node_id)
        self.response_timeout = float(response_timeout)
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        # complete lines of a multi-line document, then the unterminated tail
        self._held = ""
        self._line = ""
        self._streams: Dict[str, StreamMetadata] = {}
        self._chunks: Dict[str, List[Any]] = {}
        self._readers: Dict[str, List[StreamReader]] = {}
        self._waiters: Dict[str, "asyncio.Future[Any]"] = {}
        self._invalid = 0
        self._dispatched = 0

    # ---- reassembly ----

    def feed(self, chunk: Union[bytes, str]) -> int:
        """Consume a raw chunk; returns the number of messages dispatched.

        Bytes may be cut anywhere, even inside a UTF-8 sequence: the incomplete
        tail stays in the decoder until the next chunk.
        """
        if isinstance(chunk, (bytes, bytearray)):
            text = self._decoder.decode(bytes(chunk))
        else:
            text = str(chunk)
        parts = text.split("\n")
        dispatched = 0
        for i, part in enumerate(parts):
            line = self._line + part
            self._line = ""
            if self._offer(line, terminated=i < len(parts) - 1):
                dispatched += 1
        return dispatched

    def _offer(self, line: str, *, terminated: bool) -> bool:
        candidate = self._held + line
        if not candidate.strip():
            return False
        try:
            parsed = self._parse(candidate)
        except ParseFailure as e:
            return self._retain(line, terminated, e)
        self._held = ""
        self.route_message(parsed)
        return True

    @staticmethod
    def _parse(text: str) -> Dict[str, Any]:
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as e:
            raise ParseFailure(text, e.msg, incomplete=e.pos >= len(text.rstrip())) from e
        if not isinstance(parsed, dict):
            raise ParseFailure(text, "not a json object")
        return parsed

    def _retain(self, line: str, terminated: bool, err: ParseFailure) -> bool:
        """Keep what may still complete; returns True if `line` got dispatched on its own."""
        if len(self._held) + len(line) > MAX_BUFFER_CHARS:
            self._reject(self._held + line, "reassembly buffer overflow")
            self._held = ""
            return False
        if not terminated:
            self._line = line
            return False
        if self._held:
            # A truncated line followed by a fresh object: the object wins.
            try:
                fresh = self._parse(line)
            except ParseFailure:
                pass
            else:
                self._reject(self._held, "truncated output")
                self._held = ""
                self.route_message(fresh)
                return True
        # A complete line that ends mid-document is a multi-line object; anything else is garbage.
        if err.incomplete:
            self._held = self._held + line + "\n"
        else:
            self._reject(self._held + line, err.message)
            self._held = ""
        return False

    def _reject(self, text: str, reason: str) -> None:
        self._invalid += 1
        logger.warning("dropping unparseable output: %s", reason)
        self.node.emit("stream:invalid", {"line": text[:200], "reason": reason})

    # ---- routing ----

    def route_message(self, parsed: Dict[str, Any]) -> StreamMetadata:
        stream_id = str(parsed.get("streamId") or parsed.get("agentId") or DEFAULT_STREAM_ID)
        stream = self._streams.get(stream_id)
        if stream is None:
            kind = parsed.get("streamKind")
            stream = StreamMetadata(
                stream_id=stream_id,
                agent_id=str(parsed.get("agentId") or "unknown"),
                kind=kind if kind in STREAM_KINDS else "response",
            )
            self._streams[stream_id] = stream
            self._chunks[stream_id] = []
            self.node.emit("stream:created", self._meta(stream))
        stream.chunk_count += 1
        self._dispatched += 1

        t = str(parsed.get("type") or "")
        if t == "stream:start":
            self.node.emit("stream:start", {"stream_id": stream_id, "metadata": self._meta(stream)})
        elif t == "stream:chunk":
            data = parsed.get("data")
            self._chunks[stream_id].append(data)
            self._push(stream_id, data)
            self.node.emit("stream:chunk", {"stream_id": stream_id, "data": data, "chunk_count": stream.chunk_count})
        elif t == "stream:end":
            stream.closed = True
            chunks = self._chunks.pop(stream_id, [])
            self._streams.pop(stream_id, None)
            for reader in self._readers.pop(stream_id, []):
                reader.end(stream_id)
            self.node.emit("stream:end", {"stream_id": stream_id, "metadata": self._meta(stream), "chunks": chunks})
        else:
            self._push(stream_id, parsed)
            self.node.emit("stream:message", {"stream_id": stream_id, "message": parsed})
        return stream

    def _push(self, stream_id: str, data: Any) -> None:
        for reader in list(self._readers.get(stream_id, [])):
            reader.push(stream_id, data)

    @staticmethod
    def _meta(stream: StreamMetadata) -> Dict[str, Any]:
        return stream.model_dump()

    def open_stream(self, stream_id: str) -> StreamReader:
        return self.merge_streams([stream_id])

    def merge_streams(self, stream_ids: Sequence[str]) -> StreamReader:
        """One reader over the future chunks of several streams.

        Readers are additional subscribers: every other reader of the same
        streams keeps receiving too.
        """
        ids = [str(s) for s in stream_ids if str(s or "").strip()]
        if not ids:
            raise ValueError("merge_streams needs at least one stream id")
        reader = StreamReader(ids)
        for sid in dict.fromkeys(ids):
            self._readers.setdefault(sid, []).append(reader)
        return reader

    def close_reader(self, reader: StreamReader) -> None:
        for sid in reader.stream_ids:
            readers = self._readers.get(sid)
            if readers and reader in readers:
                readers.remove(reader)
                if not readers:
                    self._readers.pop(sid, None)
        reader.close()

    # ---- correlation ----

    def demux_response(self, correlation_id: str, timeout: Optional[float] = None) -> "asyncio.Future[Any]":
        """Register a one-shot waiter for `correlation_id` and return it.

        The waiter is registered before this returns, so a caller can start
        waiting and only then send the request. Awaiting it raises
        ResponseTimeout when no response arrives in time; the waiter is
        removed either way.
        """
        cid = str(correlation_id or "").strip()
        if not cid:
            raise ValueError("missing correlation_id")
        if cid in self._waiters:
            raise ValueError(f"already waiting for {cid}")
        loop = asyncio.get_running_loop()
        fut: "asyncio.Future[Any]" = loop.create_future()
        self._waiters[cid] = fut
        bound = self.response_timeout if timeout is None else float(timeout)
        return asyncio.ensure_future(self._await_response(cid, fut, bound))

    async def _await_response(self, cid: str, fut: "asyncio.Future[Any]", timeout: float) -> Any:
        try:
            return await asyncio.wait_for(fut, timeout)
        except asyncio.TimeoutError:
            raise ResponseTimeout(cid, timeout) from None
        finally:
            if self._waiters.get(cid) is fut:
                del self._waiters[cid]

    def handle_response(self, msg: Union[AgentMessage, Dict[str, Any]]) -> bool:
        if isinstance(msg, AgentMessage):
            cid, payload = msg.correlation_id, msg.payload
        else:
            cid, payload = msg.get("correlationId"), msg
        if not cid:
            return False
        fut = self._waiters.pop(str(cid), None)
        if fut is None or fut.done():
            return False
        fut.set_result(payload)
        return True

    # ---- housekeeping ----

    def drop_agent(self, agent_id: str) -> int:
        """Forget every open stream owned by `agent_id`."""
        dropped = [sid for sid, s in self._streams.items() if s.agent_id == agent_id]
        for sid in dropped:
            self._streams.pop(sid, None)
            self._chunks.pop(sid, None)
            for reader in self._readers.pop(sid, []):
                reader.end(sid)
        return len(dropped)

    def get_stream(self, stream_id: str) -> Optional[StreamMetadata]:
        s = self._streams.get(stream_id)
        return s.model_copy() if s is not None else None

    def get_chunks(self, stream_id: str) -> List[Any]:
        return list(self._chunks.get(stream_id, []))

    def get_active_streams(self) -> List[StreamMetadata]:
        return [s.model_copy() for s in self._streams.values()]

    def pending_responses(self) -> List[str]:
        return list(self._waiters.keys())

    def get_stats(self) -> Dict[str, Any]:
        return {
            "active_streams": len(self._streams),
            "total_chunks": sum(s.chunk_count for s in self._streams.values()),
            "buffered_chars": len(self._held) + len(self._line),
            "pending_responses": len(self._waiters),
            "dispatched": self._dispatched,
            "invalid": self._invalid,
        }
