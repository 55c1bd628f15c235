"""Project directories under the projects root.

A project is a plain directory directly under the root whose name matches
`[A-Za-z0-9_-]+`. Sessions only reference projects; creation happens here.
"""
from __future__ import annotations

import json
import logging
import re
import subprocess
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from ..contracts.v1 import PROJECT_NAME_PATTERN, Project
from ..util.fs import atomic_write_text
from ..util.time import compact_stamp, iso_from_epoch, utc_now_iso


logger = logging.getLogger("mterm.projects")

DEFAULT_PROJECT_NAME = "default-project"

ASSISTANT_STATE_DIR = ".claude"
LEGACY_SESSION_FILES = (
    ".claude_history",
    ".claude_chat_history",
    ".claude_session",
    ".claude_conversation",
    ".claude.json",
    ".claude_context.json",
)

_NAME_RE = re.compile(PROJECT_NAME_PATTERN)
_SAFE_ID_RE = re.compile(r"[^A-Za-z0-9_-]+")


def is_valid_project_name(name: str) -> bool:
    return bool(_NAME_RE.match(name or ""))


def project_from_dir(path: Path) -> Optional[Project]:
    if not is_valid_project_name(path.name):
        return None
    try:
        st = path.stat()
    except OSError:
        return None
    created = getattr(st, "st_birthtime", None) or st.st_ctime
    return Project(
        name=path.name,
        path=str(path),
        created=iso_from_epoch(created),
        modified=iso_from_epoch(st.st_mtime),
    )


def _project_dirs(root: Path) -> List[Tuple[float, Path]]:
    out: List[Tuple[float, Path]] = []
    try:
        entries = list(root.iterdir())
    except OSError:
        return out
    for entry in entries:
        try:
            if not entry.is_dir() or not is_valid_project_name(entry.name):
                continue
            out.append((entry.stat().st_mtime, entry))
        except OSError:
            continue
    out.sort(key=lambda x: x[0], reverse=True)
    return out


def list_projects(root: Path) -> List[Project]:
    """Projects under `root`, most recently modified first."""
    out: List[Project] = []
    for _, p in _project_dirs(root):
        proj = project_from_dir(p)
        if proj is not None:
            out.append(proj)
    return out


def most_recent_project(root: Path) -> Optional[Project]:
    for _, p in _project_dirs(root):
        proj = project_from_dir(p)
        if proj is not None:
            return proj
    return None


def find_project(root: Path, name: str) -> Optional[Project]:
    if not is_valid_project_name(name):
        return None
    p = root / name
    if not p.is_dir():
        return None
    return project_from_dir(p)


def _git_init(path: Path) -> None:
    try:
        subprocess.run(
            ["git", "init"],
            cwd=str(path),
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=False,
        )
    except OSError:
        logger.info("git not available, skipping git init", extra={"project": path.name})


def create_project(root: Path, name: str, *, git_init: bool = True) -> Project:
    if not is_valid_project_name(name):
        raise ValueError(f"invalid project name: {name!r}")
    path = root / name
    if path.exists():
        raise FileExistsError(f"project already exists: {name}")
    root.mkdir(parents=True, exist_ok=True)
    path.mkdir()
    if git_init:
        _git_init(path)
    proj = project_from_dir(path)
    if proj is None:
        raise OSError(f"project directory vanished after creation: {path}")
    logger.info("project created", extra={"project": name})
    return proj


_README = """# {name}

This is your default project directory.

You can:
- Create new files and folders here
- Run commands in this directory
- Start the assistant here to help with development

To create additional projects, use the project list in the client.
"""


def ensure_projects_dir(root: Path, *, git_init: bool = True) -> Optional[Project]:
    """Create the projects root; seed a default project when it holds none.

    Returns the created default project, or None if projects already existed.
    """
    root.mkdir(parents=True, exist_ok=True)
    if _project_dirs(root):
        return None
    proj = create_project(root, DEFAULT_PROJECT_NAME, git_init=git_init)
    atomic_write_text(Path(proj.path) / "README.md", _README.format(name=proj.name))
    logger.info("created default project", extra={"project": proj.name})
    return proj


def assistant_session_info(path: Path) -> Tuple[bool, Optional[Dict[str, Any]]]:
    """Whether the assistant left conversation state in `path`.

    A non-empty `.claude/` directory counts, as does any non-empty legacy
    session file from older assistant versions.
    """
    state_dir = path / ASSISTANT_STATE_DIR
    if state_dir.is_dir():
        try:
            files = sorted(x.name for x in state_dir.iterdir())
            if files:
                return True, {
                    "type": "directory",
                    "directory": ASSISTANT_STATE_DIR,
                    "files": files,
                    "modified": iso_from_epoch(state_dir.stat().st_mtime),
                }
        except OSError:
            pass

    for name in LEGACY_SESSION_FILES:
        f = path / name
        try:
            if f.is_file() and f.stat().st_size > 0:
                st = f.stat()
                return True, {"type": "file", "file": name, "size": int(st.st_size), "modified": iso_from_epoch(st.st_mtime)}
        except OSError:
            continue
    return False, None


def has_assistant_session(path: Path) -> bool:
    return assistant_session_info(path)[0]


def create_expert_workspace(root: Path, task: str, *, session_id: str = "") -> Project:
    """Provision `expert-<id>` under the root and record the task in task.json."""
    sid = _SAFE_ID_RE.sub("-", (session_id or "").strip()).strip("-")
    name = f"expert-{sid or compact_stamp()}"
    path = root / name
    path.mkdir(parents=True, exist_ok=True)
    atomic_write_text(path / "task.json", json.dumps({"task": task, "created": utc_now_iso()}, ensure_ascii=False, indent=2) + "\n")
    proj = project_from_dir(path)
    if proj is None:
        raise OSError(f"expert workspace vanished after creation: {path}")
    logger.info("expert workspace created", extra={"project": name})
    return proj


PERSONA_TASK_FILE = "persona-task.txt"


def persona_task_text(task: str) -> str:
    return (
        "Create a CLAUDE.md file that defines an expert persona best suited for this task: "
        f"{task}. The persona should include: expertise areas, communication style, analysis approach, "
        "and specific methodologies relevant to the task. Make the persona highly specialized and knowledgeable."
    )


def write_persona_task(workspace: Path, task: str) -> Path:
    p = workspace / PERSONA_TASK_FILE
    atomic_write_text(p, persona_task_text(task))
    return p
