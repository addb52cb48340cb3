"""Scriptable stand-in for an agent CLI.

Reads one JSON object per line on stdin and answers on stdout:

    {"content": "hello", "correlationId": "c1"}
    -> {"type": "response", "content": "echo: hello", "correlationId": "c1"}

String content starting with a directive changes the behavior:

    stream:<n>    emit a stream:start, n stream:chunk and a stream:end
    text:<s>      print <s> as a plain (non-JSON) line
    delay:<secs>  answer after sleeping
    silence       never answer
    stderr:<s>    write <s> to stderr
    decision:<t>  emit {"type": "decision:<t>", ...} instead of a response
    exit:<code>   exit immediately

`--mute` makes the agent swallow everything.

Used by `cabald run --mock` and by the test suite.
"""
from __future__ import annotations

import argparse
import json
import sys
import time
from typing import Any, Dict, Optional


def _emit(obj: Dict[str, Any]) -> None:
    sys.stdout.write(json.dumps(obj, ensure_ascii=False) + "\n")
    sys.stdout.flush()


def _reply(content: Any, cid: Optional[str], **extra: Any) -> None:
    out: Dict[str, Any] = {"type": "response", "content": content}
    if cid:
        out["correlationId"] = cid
    out.update(extra)
    _emit(out)


def handle(msg: Dict[str, Any]) -> Optional[int]:
    """Answer one inbound message; returns an exit code to stop."""
    content = msg.get("content")
    cid = msg.get("correlationId")
    if not isinstance(content, str):
        if isinstance(content, dict) and content.get("type") == "role-assignment":
            _reply({"ack": "role-assignment", "role": content.get("role")}, cid)
            return None
        _reply({"echo": content}, cid)
        return None

    if content.startswith("stream:"):
        n = int(content.split(":", 1)[1] or 0)
        sid = f"s-{cid or int(time.time() * 1000)}"
        _emit({"type": "stream:start", "streamId": sid})
        for i in range(n):
            _emit({"type": "stream:chunk", "streamId": sid, "data": f"chunk-{i}"})
        _emit({"type": "stream:end", "streamId": sid})
        return None
    if content.startswith("text:"):
        sys.stdout.write(content.split(":", 1)[1] + "\n")
        sys.stdout.flush()
        return None
    if content.startswith("delay:"):
        time.sleep(float(content.split(":", 1)[1] or 0))
        _reply("delayed", cid)
        return None
    if content == "silence":
        return None
    if content.startswith("stderr:"):
        sys.stderr.write(content.split(":", 1)[1] + "\n")
        sys.stderr.flush()
        return None
    if content.startswith("decision:"):
        _emit({"type": content, "confidence": 0.5, "correlationId": cid})
        return None
    if content.startswith("exit:"):
        return int(content.split(":", 1)[1] or 0)

    _reply(f"echo: {content}", cid)
    return None


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="cabal.mock_agent", description="mock agent for tests and --mock runs")
    parser.add_argument("--mute", action="store_true", help="Read input but never answer (a hung agent)")
    args = parser.parse_args(argv)

    for line in sys.stdin:
        if args.mute:
            continue
        line = line.strip()
        if not line:
            continue
        try:
            msg = json.loads(line)
        except json.JSONDecodeError:
            _reply(f"echo: {line}", None)
            continue
        if not isinstance(msg, dict):
            continue
        code = handle(msg)
        if code is not None:
            return code
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
