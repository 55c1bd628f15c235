from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from ..contracts.v1 import Project
from ..paths import last_project_path
from ..util.fs import atomic_write_json, read_json
from ..util.time import utc_now_iso
from .projects import is_valid_project_name, most_recent_project


logger = logging.getLogger("mterm.active")


@dataclass(frozen=True)
class LastProject:
    name: str
    path: str
    last_accessed: str

    def to_project(self) -> Project:
        return Project(name=self.name, path=self.path)


def load_last_project(*, require_exists: bool = True) -> Optional[LastProject]:
    """The persisted pointer, or None if missing, malformed or (by default) stale."""
    doc = read_json(last_project_path())
    name = str(doc.get("name") or "").strip()
    path = str(doc.get("path") or "").strip()
    if not name or not path or not is_valid_project_name(name):
        return None
    if require_exists and not Path(path).is_dir():
        return None
    return LastProject(name=name, path=path, last_accessed=str(doc.get("lastAccessed") or ""))


def set_last_project(project: Project) -> Dict[str, Any]:
    doc = {"name": project.name, "path": project.path, "lastAccessed": utc_now_iso()}
    atomic_write_json(last_project_path(), doc)
    return doc


def get_initial_directory(projects_root: Path) -> Tuple[Path, Optional[Project]]:
    """Pick the directory a new shell starts in, and the project it belongs to.

    Order: the last-project pointer (if its path still exists), then the most
    recently modified project under `projects_root` (saved as the new pointer),
    then the home directory.
    """
    last = load_last_project()
    if last is not None:
        return Path(last.path), last.to_project()

    recent = most_recent_project(projects_root)
    if recent is not None:
        logger.info("no last project, using most recent", extra={"project": recent.name})
        set_last_project(recent)
        return Path(recent.path), recent

    logger.info("no projects found, falling back to home directory")
    return Path.home(), None
