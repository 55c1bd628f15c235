from __future__ import annotations

import asyncio
import logging
import shlex
from pathlib import Path
from typing import Optional, Protocol

from ..contracts.v1 import Project
from .active import set_last_project
from .settings import ServerSettings


logger = logging.getLogger("mterm.project")


class InputSink(Protocol):
    def write_input(self, data: bytes) -> bool: ...


class ProjectContext:
    """The active project of one terminal session.

    Switching projects redirects the session's existing shell; it never
    spawns a new process.
    """

    def __init__(
        self,
        sink: InputSink,
        *,
        settings: ServerSettings,
        cwd: Path,
        project: Optional[Project] = None,
        terminal_id: str = "",
    ) -> None:
        self._sink = sink
        self._settings = settings
        self._terminal_id = terminal_id
        self.cwd = cwd
        self.project = project

    async def set_project(self, project: Project, *, persist: bool = True) -> bool:
        """Make `project` active: persist the pointer, then `cd` and `clear`.

        The directory change and the screen clear are separate writes; some
        shells only honour the clear once the `cd` has been consumed.
        Returns False if either write failed.
        """
        self.project = project
        self.cwd = Path(project.path)
        if persist:
            try:
                set_last_project(project)
            except OSError:
                logger.exception(
                    "failed to persist last project",
                    extra={"terminal_id": self._terminal_id, "project": project.name},
                )
        ok = await asyncio.to_thread(self._sink.write_input, f"cd {shlex.quote(project.path)}\n".encode("utf-8"))
        ok = await asyncio.to_thread(self._sink.write_input, b"clear\n") and ok
        logger.info("project set", extra={"terminal_id": self._terminal_id, "project": project.name})
        return ok

    def assistant_command(self, resume: bool) -> str:
        cmd = self._settings.assistant_command
        if resume and self._settings.resume_flag:
            return f"{cmd} {self._settings.resume_flag}"
        return cmd
