"""Server settings.

Stored in ~/.mterm/settings.yaml (or $MTERM_HOME/settings.yaml). Every key is
optional; missing keys fall back to the defaults below. A few keys can also be
overridden from the environment (MTERM_PROJECTS_DIR, SHELL).
"""
from __future__ import annotations

import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict

import yaml  # type: ignore

from ..paths import ensure_home
from ..util.fs import atomic_write_text


def _default_shell() -> str:
    env = str(os.environ.get("SHELL") or "").strip()
    if env:
        return env
    return "/bin/bash" if Path("/bin/bash").exists() else "/bin/sh"


def _default_projects_dir() -> str:
    env = str(os.environ.get("MTERM_PROJECTS_DIR") or "").strip()
    if env:
        return str(Path(env).expanduser())
    return str(Path.home() / "Desktop" / "claude_projects")


@dataclass
class ServerSettings:
    projects_dir: str = ""
    shell: str = ""
    cols: int = 80
    rows: int = 30
    assistant_command: str = "claude"
    resume_flag: str = "--continue"
    # Gap between typed text and the Enter key; some TUIs drop input confirmed in the same tick.
    submit_delay: float = 0.05
    terminate_grace: float = 2.0
    expert_launch_delay: float = 1.0
    expert_prompt_delay: float = 3.0
    task_timeout: float = 0.0

    def __post_init__(self) -> None:
        if not self.projects_dir:
            self.projects_dir = _default_projects_dir()
        if not self.shell:
            self.shell = _default_shell()

    @property
    def projects_path(self) -> Path:
        return Path(self.projects_dir).expanduser()

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ServerSettings":
        known = {f.name: f for f in fields(cls)}
        kwargs: Dict[str, Any] = {}
        for key, value in d.items():
            f = known.get(str(key))
            if f is None or value is None:
                continue
            default = getattr(cls, f.name, None)
            try:
                if isinstance(default, bool):
                    kwargs[f.name] = bool(value)
                elif isinstance(default, int):
                    kwargs[f.name] = int(value)
                elif isinstance(default, float):
                    kwargs[f.name] = float(value)
                else:
                    kwargs[f.name] = str(value)
            except (TypeError, ValueError):
                continue
        return cls(**kwargs)


def _settings_path() -> Path:
    return ensure_home() / "settings.yaml"


def load_settings() -> Dict[str, Any]:
    p = _settings_path()
    if not p.exists():
        return {}
    try:
        doc = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
        return doc if isinstance(doc, dict) else {}
    except Exception:
        return {}


def save_settings(settings: Dict[str, Any]) -> None:
    atomic_write_text(_settings_path(), yaml.safe_dump(settings, allow_unicode=True, sort_keys=False))


def get_server_settings() -> ServerSettings:
    doc = load_settings()
    server = doc.get("server") if isinstance(doc.get("server"), dict) else doc
    settings = ServerSettings.from_dict(server if isinstance(server, dict) else {})
    # Environment wins over the file for the projects root.
    env_projects = str(os.environ.get("MTERM_PROJECTS_DIR") or "").strip()
    if env_projects:
        settings.projects_dir = str(Path(env_projects).expanduser())
    return settings
