from __future__ import annotations

import time
from datetime import datetime, timezone


def now_ts() -> float:
    return time.time()


def ts_to_iso(ts: float) -> str:
    try:
        return datetime.fromtimestamp(float(ts), tz=timezone.utc).isoformat().replace("+00:00", "Z")
    except Exception:
        return ""


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def age_seconds(ts: float, *, now: float | None = None) -> float:
    """Seconds elapsed since `ts` (never negative)."""
    ref = now_ts() if now is None else float(now)
    return max(0.0, ref - float(ts or 0.0))
