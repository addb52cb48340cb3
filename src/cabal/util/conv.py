from __future__ import annotations

import math
from typing import Any, Optional

_TRUE = {"1", "true", "yes", "y", "on"}
_FALSE = {"0", "false", "no", "n", "off"}


def coerce_bool(value: Any, *, default: bool = False) -> bool:
    """Coerce a loosely-typed value into a boolean.

    Agent output and UI envelopes are untyped JSON, so flags such as `urgent`
    may arrive as "false"/"0". Unknown strings fall back to `default`, which
    avoids the bool("false") == True pitfall.
    """
    if value is None:
        return bool(default)
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        if isinstance(value, float) and math.isnan(value):
            return bool(default)
        return value != 0
    if isinstance(value, str):
        s = value.strip().lower()
        if s in _TRUE:
            return True
        if s in _FALSE:
            return False
        return bool(default)
    return bool(value)


def coerce_float(value: Any, *, default: Optional[float] = None) -> Optional[float]:
    """Parse a confidence-like number; NaN, inf and garbage become `default`."""
    if value is None or isinstance(value, bool):
        return default
    try:
        f = float(str(value).strip()) if isinstance(value, str) else float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(f) or math.isinf(f):
        return default
    return f
