from __future__ import annotations

import os
from pathlib import Path


def mterm_home() -> Path:
    env = os.environ.get("MTERM_HOME", "").strip()
    if env:
        return Path(env).expanduser().resolve()
    return (Path.home() / ".mterm").resolve()


def ensure_home() -> Path:
    home = mterm_home()
    home.mkdir(parents=True, exist_ok=True)
    return home


def last_project_path() -> Path:
    return ensure_home() / "last_project.json"
