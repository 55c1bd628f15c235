"""Per-connection terminal sessions.

Each websocket owns exactly one `TerminalSession`: a shell on a PTY, a task
queue, the active project and the timers of that connection. Nothing is
shared between sessions; the manager only maps terminal ids to sessions.
"""
from __future__ import annotations

import asyncio
import codecs
import logging
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Tuple, Type

from fastapi import WebSocket, WebSocketDisconnect

from ...contracts.v1 import (
    CheckFileModified,
    ClaudeCommand,
    ClaudeTask,
    Connected,
    Error,
    ExecuteTask,
    ExpertSessionCreated,
    ExpertSessionInfo,
    ExpertSessionRequest,
    FileContent,
    FileStructure,
    FileStructureRequest,
    Ping,
    Pong,
    ProjectSet,
    ReadFile,
    Resize,
    SetProject,
    SwitchToTerminal,
    TaskComplete,
    TaskError,
    TaskQueued,
    TerminalInput,
    TerminalOutput,
    TransportError,
    WireModel,
    encode,
    parse_client_message,
)
from ...kernel.active import get_initial_directory
from ...kernel.project_context import ProjectContext
from ...kernel.projects import PERSONA_TASK_FILE, create_expert_workspace, write_persona_task
from ...kernel.settings import ServerSettings
from ...kernel.tasks import Task, TaskQueue
from ...runners.pty import PtySession, SpawnError, build_shell_env, submit_text
from ...util.fs import list_directory, mtime_ms
from ...util.time import utc_now_iso
from ...util.timers import TimerScope


logger = logging.getLogger("mterm.web")

HostFactory = Callable[..., Any]

ASSISTANT_EXIT_MARKERS = ("Goodbye!", "Session ended")


class OutputPump:
    """Moves PTY chunks from the reader thread to the websocket, in order.

    Every chunk already queued when the pump wakes up goes out as a single
    `terminal` message; nothing waits for more data to arrive.
    """

    def __init__(self, send: Callable[[str], Awaitable[None]], *, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._send = send
        self._loop = loop
        self._queue: "asyncio.Queue[bytes]" = asyncio.Queue()
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def feed(self, chunk: bytes) -> None:
        self._queue.put_nowait(chunk)

    def feed_threadsafe(self, chunk: bytes) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self._queue.put_nowait, chunk)
        except RuntimeError:
            # Loop already shut down; the session is being torn down.
            pass

    def drain(self, first: bytes) -> str:
        chunks = [first]
        while True:
            try:
                chunks.append(self._queue.get_nowait())
            except asyncio.QueueEmpty:
                break
        return self._decoder.decode(b"".join(chunks))

    async def run(self) -> None:
        while True:
            first = await self._queue.get()
            text = self.drain(first)
            if text:
                await self._send(text)


@dataclass
class TerminalSession:
    terminal_id: str
    websocket: Any
    host: Any
    queue: TaskQueue
    context: ProjectContext
    timers: TimerScope
    pump: OutputPump
    created_at: str = field(default_factory=utc_now_iso)
    defunct: bool = False
    closed: bool = False
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def project_name(self) -> str:
        return self.context.project.name if self.context.project is not None else ""

    def log_extra(self, **kw: Any) -> Dict[str, Any]:
        d: Dict[str, Any] = {"terminal_id": self.terminal_id}
        if self.project_name:
            d["project"] = self.project_name
        d.update(kw)
        return d


Handler = Callable[[TerminalSession, Any], Awaitable[None]]


class ConnectionManager:
    def __init__(self, settings: ServerSettings, *, host_factory: Optional[HostFactory] = None) -> None:
        self.settings = settings
        self._host_factory: HostFactory = host_factory or PtySession
        self._sessions: Dict[str, TerminalSession] = {}
        self._background: Set["asyncio.Task[Any]"] = set()
        self._handlers: Dict[Type[WireModel], Handler] = {
            Ping: self._on_ping,
            TerminalInput: self._on_terminal,
            Resize: self._on_resize,
            FileStructureRequest: self._on_file_structure,
            SetProject: self._on_set_project,
            ClaudeCommand: self._on_claude_command,
            ExpertSessionRequest: self._on_expert_session,
            ReadFile: self._on_read_file,
            CheckFileModified: self._on_check_file_modified,
            ClaudeTask: self._on_claude_task,
            ExecuteTask: self._on_execute_task,
        }

    @property
    def handled_types(self) -> Tuple[Type[WireModel], ...]:
        return tuple(self._handlers)

    def get(self, terminal_id: str) -> Optional[TerminalSession]:
        return self._sessions.get(terminal_id)

    def __len__(self) -> int:
        return len(self._sessions)

    # ------------------------------------------------------------------ lifecycle

    async def serve(self, websocket: WebSocket) -> None:
        session = await self.open(websocket)
        if session is None:
            return
        try:
            while True:
                raw = await websocket.receive_text()
                await self.dispatch(session, raw)
        except WebSocketDisconnect:
            logger.info("client disconnected", extra=session.log_extra())
        except Exception:
            logger.exception("connection failed", extra=session.log_extra())
        finally:
            await self.close(session.terminal_id)

    async def open(self, websocket: Any) -> Optional[TerminalSession]:
        loop = asyncio.get_running_loop()
        terminal_id = uuid.uuid4().hex
        cwd, project = get_initial_directory(self.settings.projects_path)
        logger.info("starting terminal in %s", cwd, extra={"terminal_id": terminal_id})

        holder: Dict[str, TerminalSession] = {}

        async def _send_output(text: str) -> None:
            s = holder.get("session")
            if s is not None:
                self._watch_output(s, text)
                await self.send(s, TerminalOutput(data=text))

        pump = OutputPump(_send_output, loop=loop)

        def _on_exit(_host: Any, code: Optional[int]) -> None:
            try:
                loop.call_soon_threadsafe(self._on_host_exit, terminal_id, code)
            except RuntimeError:
                pass

        try:
            host = self._host_factory(
                cwd=cwd,
                command=[self.settings.shell],
                env=build_shell_env(),
                on_data=pump.feed_threadsafe,
                on_exit=_on_exit,
                cols=self.settings.cols,
                rows=self.settings.rows,
                name=terminal_id,
                grace=self.settings.terminate_grace,
            )
        except SpawnError as e:
            logger.error("session init failed: %s", e, extra={"terminal_id": terminal_id})
            try:
                await websocket.send_text(encode(Error(message=f"session init failed: {e}")))
                await websocket.close(code=1011)
            except Exception:
                pass
            return None

        session = TerminalSession(
            terminal_id=terminal_id,
            websocket=websocket,
            host=host,
            queue=TaskQueue(timeout=self.settings.task_timeout or None),
            context=ProjectContext(host, settings=self.settings, cwd=cwd, project=project, terminal_id=terminal_id),
            timers=TimerScope(name=f"session:{terminal_id}", loop=loop),
            pump=pump,
        )
        holder["session"] = session
        self._sessions[terminal_id] = session

        await self.send(session, Connected(terminal_id=terminal_id, initial_project=project))
        if project is not None:
            logger.info("connected to project", extra=session.log_extra())
        session.timers.spawn(pump.run())
        return session

    async def close(self, terminal_id: str) -> None:
        """Tear down a session: timers, pump, shell, registry entry. Idempotent."""
        session = self._sessions.pop(terminal_id, None)
        if session is None:
            return
        session.closed = True
        session.timers.close()
        try:
            state = await asyncio.to_thread(session.host.terminate, self.settings.terminate_grace)
            logger.info("session closed (shell %s)", state, extra=session.log_extra())
        except Exception:
            logger.exception("failed to terminate shell", extra=session.log_extra())

    async def close_all(self) -> None:
        """Close every session, then let in-flight task executions finish."""
        for terminal_id in list(self._sessions):
            await self.close(terminal_id)
        await self.wait_background()

    def _on_host_exit(self, terminal_id: str, code: Optional[int]) -> None:
        session = self._sessions.get(terminal_id)
        if session is None or session.closed:
            return
        session.defunct = True
        logger.warning("shell exited while connected (code %s)", code, extra=session.log_extra())

    def _watch_output(self, session: TerminalSession, text: str) -> None:
        if any(m in text for m in ASSISTANT_EXIT_MARKERS):
            logger.info("assistant session ended", extra=session.log_extra())

    # ------------------------------------------------------------------ io

    async def send(self, session: TerminalSession, event: WireModel) -> bool:
        if session.closed:
            return False
        payload = encode(event)
        async with session.send_lock:
            try:
                await session.websocket.send_text(payload)
            except Exception as e:
                logger.debug("send failed: %s", e, extra=session.log_extra())
                return False
        return True

    async def _write(self, session: TerminalSession, data: bytes) -> bool:
        ok = bool(await asyncio.to_thread(session.host.write_input, data))
        if not ok:
            self._mark_write_failed(session)
        return ok

    def _mark_write_failed(self, session: TerminalSession) -> None:
        if not session.defunct:
            logger.warning("pty write failed; marking session defunct", extra=session.log_extra())
        session.defunct = True

    async def dispatch(self, session: TerminalSession, raw: Any) -> None:
        try:
            msg = parse_client_message(raw)
        except TransportError as e:
            logger.warning("dropping message: %s", e, extra=session.log_extra())
            return
        if msg is None:
            logger.debug("ignoring unknown message type", extra=session.log_extra())
            return
        handler = self._handlers[type(msg)]
        try:
            await handler(session, msg)
        except Exception as e:
            logger.exception("handler failed", extra=session.log_extra(op=msg.type))
            await self.send(session, Error(message=f"{msg.type} failed: {e}"))

    # ------------------------------------------------------------------ handlers

    async def _on_ping(self, session: TerminalSession, msg: Ping) -> None:
        await self.send(session, Pong())

    async def _on_terminal(self, session: TerminalSession, msg: TerminalInput) -> None:
        await self._write(session, msg.data.encode("utf-8", errors="replace"))

    async def _on_resize(self, session: TerminalSession, msg: Resize) -> None:
        session.host.resize(cols=msg.cols, rows=msg.rows)

    async def _on_file_structure(self, session: TerminalSession, msg: FileStructureRequest) -> None:
        try:
            target = Path(msg.path).expanduser() if msg.path else Path.home()
            data = await asyncio.to_thread(list_directory, target)
        except (OSError, ValueError, RuntimeError) as e:
            await self.send(session, Error(message=f"Failed to list directory: {e}"))
            return
        await self.send(session, FileStructure(data=data))

    async def _on_set_project(self, session: TerminalSession, msg: SetProject) -> None:
        if not await session.context.set_project(msg.project):
            self._mark_write_failed(session)
        await self.send(session, ProjectSet(project=msg.project))

    async def _on_claude_command(self, session: TerminalSession, msg: ClaudeCommand) -> None:
        if session.context.project is None:
            logger.info("assistant command ignored: no active project", extra=session.log_extra())
            return
        command = session.context.assistant_command(msg.resume)
        logger.info("starting assistant: %s", command, extra=session.log_extra(op="claudeCommand"))
        if not await submit_text(session.host, command, delay=self.settings.submit_delay):
            self._mark_write_failed(session)
        await self.send(session, SwitchToTerminal())

    async def _on_expert_session(self, session: TerminalSession, msg: ExpertSessionRequest) -> None:
        try:
            project = await asyncio.to_thread(
                create_expert_workspace, self.settings.projects_path, msg.task, session_id=msg.session_id or ""
            )
        except OSError as e:
            await self.send(session, Error(message=f"Failed to create expert session: {e}"))
            return

        if not await session.context.set_project(project, persist=False):
            self._mark_write_failed(session)
        await self.send(
            session,
            ExpertSessionCreated(session=ExpertSessionInfo(name=project.name, path=project.path, task=msg.task)),
        )

        async def _prompt_persona() -> None:
            await submit_text(session.host, f"cat {PERSONA_TASK_FILE}", delay=self.settings.submit_delay)

        async def _launch() -> None:
            await asyncio.to_thread(write_persona_task, Path(project.path), msg.task)
            await submit_text(session.host, session.context.assistant_command(False), delay=self.settings.submit_delay)
            session.timers.call_later(self.settings.expert_prompt_delay, _prompt_persona)

        session.timers.call_later(self.settings.expert_launch_delay, _launch)

    async def _on_read_file(self, session: TerminalSession, msg: ReadFile) -> None:
        try:
            content, modified = await asyncio.to_thread(_read_text_with_mtime, msg.path)
        except (OSError, ValueError, RuntimeError) as e:
            await self.send(session, Error(message=str(e)))
            return
        await self.send(session, FileContent(path=msg.path, content=content, last_modified=modified))

    async def _on_check_file_modified(self, session: TerminalSession, msg: CheckFileModified) -> None:
        try:
            content, modified = await asyncio.to_thread(_read_text_with_mtime, msg.path)
        except (OSError, ValueError, RuntimeError) as e:
            logger.debug("file check failed for %s: %s", msg.path, e, extra=session.log_extra())
            return
        timestamp_changed = modified > (msg.last_known_modified or 0)
        content_changed = content != msg.last_known_content
        if timestamp_changed or content_changed:
            await self.send(session, FileContent(path=msg.path, content=content, last_modified=modified))

    async def _on_claude_task(self, session: TerminalSession, msg: ClaudeTask) -> None:
        queue = session.queue.enqueue(Task(command=msg.task.command, cwd=msg.task.cwd))
        await self.send(session, TaskQueued(queue=queue))

    async def _on_execute_task(self, session: TerminalSession, msg: ExecuteTask) -> None:
        # Runs beside the receive loop so terminal input keeps flowing; a
        # running task is never cancelled, its result is dropped if the
        # session is gone by then.
        task = asyncio.ensure_future(self._execute_next(session))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _execute_next(self, session: TerminalSession) -> None:
        result = await session.queue.execute_next()
        if result is None:
            return
        if session.closed:
            logger.info("task finished after session closed", extra=session.log_extra(task_id=result.task.id))
            return
        if result.ok:
            await self.send(
                session,
                TaskComplete(task=result.task.to_dict(), result=result.stdout, error=result.stderr, queue=result.queue),
            )
        else:
            await self.send(session, TaskError(task=result.task.to_dict(), error=result.error, queue=result.queue))

    async def wait_background(self) -> None:
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)


def _read_text_with_mtime(raw_path: str) -> Tuple[str, int]:
    # expanduser raises RuntimeError for unknown users; NUL bytes raise ValueError.
    path = Path(raw_path).expanduser()
    content = path.read_text(encoding="utf-8")
    return content, mtime_ms(path)
