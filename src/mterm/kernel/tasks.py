"""Per-session queue of deferred shell commands.

Tasks run one at a time, on request, as one-shot subprocesses (never through
the interactive PTY). A task leaves the queue the moment it starts.
"""
from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Deque, Dict, List, Literal, Optional

from ..util.time import utc_now_iso


logger = logging.getLogger("mterm.tasks")

TaskStatus = Literal["pending", "running", "completed", "failed"]


class TaskExecutionError(RuntimeError):
    def __init__(self, message: str, *, returncode: Optional[int] = None, stdout: str = "", stderr: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


@dataclass
class Task:
    command: str
    cwd: Optional[str] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    status: TaskStatus = "pending"
    created_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"id": self.id, "command": self.command, "status": self.status, "createdAt": self.created_at}
        if self.cwd:
            d["cwd"] = self.cwd
        return d


@dataclass
class TaskResult:
    task: Task
    ok: bool
    stdout: str = ""
    stderr: str = ""
    error: str = ""
    queue: List[Dict[str, Any]] = field(default_factory=list)


async def run_shell_command(command: str, *, cwd: Path, timeout: Optional[float] = None) -> tuple[str, str]:
    """Run `command` through the shell and return (stdout, stderr).

    Raises TaskExecutionError on spawn failure or nonzero exit.
    """
    try:
        proc = await asyncio.create_subprocess_shell(
            command,
            cwd=str(cwd),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise TaskExecutionError(f"failed to start: {e}") from e

    try:
        out_b, err_b = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise TaskExecutionError(f"command timed out after {timeout}s: {command}")

    stdout = out_b.decode("utf-8", errors="replace")
    stderr = err_b.decode("utf-8", errors="replace")
    if proc.returncode != 0:
        detail = stderr.strip() or stdout.strip()
        msg = f"Command failed (exit {proc.returncode}): {command}"
        if detail:
            msg += f"\n{detail}"
        raise TaskExecutionError(msg, returncode=proc.returncode, stdout=stdout, stderr=stderr)
    return stdout, stderr


class TaskQueue:
    def __init__(self, *, default_cwd: Optional[Path] = None, timeout: Optional[float] = None) -> None:
        self._lock = threading.Lock()
        self._pending: Deque[Task] = deque()
        self._running: Optional[Task] = None
        self._exec_lock: Optional[asyncio.Lock] = None
        self._default_cwd = default_cwd
        self._timeout = timeout

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)

    @property
    def running(self) -> Optional[Task]:
        with self._lock:
            return self._running

    def snapshot(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [t.to_dict() for t in self._pending]

    def enqueue(self, task: Task) -> List[Dict[str, Any]]:
        with self._lock:
            task.status = "pending"
            self._pending.append(task)
            return [t.to_dict() for t in self._pending]

    def take_next(self) -> Optional[Task]:
        with self._lock:
            if not self._pending:
                return None
            task = self._pending.popleft()
            task.status = "running"
            self._running = task
            return task

    def _finish(self, task: Task, status: TaskStatus) -> None:
        with self._lock:
            task.status = status
            if self._running is task:
                self._running = None

    def _cwd_for(self, task: Task) -> Path:
        if task.cwd:
            return Path(task.cwd).expanduser()
        return self._default_cwd or Path.home()

    async def execute_next(self) -> Optional[TaskResult]:
        """Run the head task; None when the queue is empty."""
        if self._exec_lock is None:
            self._exec_lock = asyncio.Lock()
        async with self._exec_lock:
            task = self.take_next()
            if task is None:
                return None
            logger.info("task started: %s", task.command, extra={"task_id": task.id})
            try:
                stdout, stderr = await run_shell_command(task.command, cwd=self._cwd_for(task), timeout=self._timeout)
            except TaskExecutionError as e:
                self._finish(task, "failed")
                logger.warning("task failed: %s", e, extra={"task_id": task.id})
                return TaskResult(task=task, ok=False, error=str(e), stdout=e.stdout, stderr=e.stderr, queue=self.snapshot())
            self._finish(task, "completed")
            logger.info("task completed", extra={"task_id": task.id})
            return TaskResult(task=task, ok=True, stdout=stdout, stderr=stderr, queue=self.snapshot())
