from __future__ import annotations

import os
from pathlib import Path


def cabal_home() -> Path:
    env = os.environ.get("CABAL_HOME", "").strip()
    if env:
        return Path(env).expanduser().resolve()
    return (Path.home() / ".cabal").resolve()


def ensure_home() -> Path:
    home = cabal_home()
    home.mkdir(parents=True, exist_ok=True)
    return home
