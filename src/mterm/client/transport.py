"""Reconnecting websocket client for a terminal session."""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable, Dict, Optional
from urllib.parse import quote, urlencode, urlsplit, urlunsplit

import requests
import websockets

from ..contracts.v1 import (
    CheckFileModified,
    ClaudeCommand,
    ClaudeTask,
    ExecuteTask,
    ExpertSessionRequest,
    FileStructureRequest,
    Ping,
    Project,
    ReadFile,
    Resize,
    SetProject,
    TaskSpec,
    TerminalInput,
    WireModel,
)
from ..runners.pty import MIN_SUBMIT_DELAY
from ..kernel.prompt import PromptEvent
from ..util.timers import Scheduler, TimerHandle, TimerScope
from .monitor import SessionMonitor


logger = logging.getLogger("mterm.client")

NORMAL_CLOSURE = 1000
ABNORMAL_CLOSURE = 1006
RECONNECT_DELAY_SECONDS = 3.0
KEEPALIVE_INTERVAL_SECONDS = 30.0
AUTO_RESUME_DELAY_SECONDS = 0.5
SESSION_CHECK_TIMEOUT_SECONDS = 5.0

MessageListener = Callable[[Dict[str, Any]], None]


class ReconnectPolicy:
    """Decides whether a closed connection is retried.

    A normal closure (1000) ends the session. Any other close code schedules
    exactly one reconnect after `delay`; further closes while a retry is
    pending are ignored, and a successful open cancels the pending retry.
    """

    def __init__(self, scheduler: Scheduler, *, delay: float = RECONNECT_DELAY_SECONDS) -> None:
        self._scheduler = scheduler
        self.delay = float(delay)
        self._pending: Optional[TimerHandle] = None

    @property
    def pending(self) -> bool:
        return self._pending is not None

    def on_close(self, code: Optional[int], reconnect: Callable[[], Any]) -> bool:
        """Returns True if a reconnect was scheduled by this call."""
        if code == NORMAL_CLOSURE:
            return False
        if self._pending is not None:
            return False

        def _fire() -> Any:
            self._pending = None
            return reconnect()

        self._pending = self._scheduler.call_later(self.delay, _fire)
        return self._pending is not None

    def on_open(self) -> None:
        self.cancel()

    def cancel(self) -> None:
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None


def with_token(url: str, token: str) -> str:
    if not token:
        return url
    parts = urlsplit(url)
    query = f"{parts.query}&" if parts.query else ""
    return urlunsplit(parts._replace(query=query + urlencode({"token": token})))


def http_base_url(url: str) -> str:
    """`ws://host:port/ws` -> `http://host:port`."""
    parts = urlsplit(url)
    scheme = "https" if parts.scheme == "wss" else "http"
    return urlunsplit((scheme, parts.netloc, "", "", ""))


class TerminalClient:
    """Keeps one terminal session connected and watched.

    Every `terminal` chunk is fed to a `SessionMonitor`; all decoded server
    messages are also handed to `on_message` listeners. `run()` returns once
    `close()` has been called or the server closed normally.

    With `auto_resume`, whenever a project is active and the assistant is not
    running (after connecting, switching project or the assistant exiting),
    the client asks the server whether the project has an assistant session
    and sends `claudeCommand` with `resume` set accordingly.
    """

    def __init__(
        self,
        url: str,
        *,
        token: str = "",
        reconnect_delay: float = RECONNECT_DELAY_SECONDS,
        keepalive_interval: float = KEEPALIVE_INTERVAL_SECONDS,
        submit_delay: float = MIN_SUBMIT_DELAY,
        on_message: Optional[MessageListener] = None,
        monitor: Optional[SessionMonitor] = None,
        auto_resume: bool = False,
        auto_resume_delay: float = AUTO_RESUME_DELAY_SECONDS,
    ) -> None:
        self.url = with_token(url, token)
        self.http_base = http_base_url(url)
        self._token = token
        self._auto_resume = bool(auto_resume)
        self._auto_resume_delay = float(auto_resume_delay)
        self._resume_timer: Optional[TimerHandle] = None
        self.project: Optional[Project] = None
        self._reconnect_delay = float(reconnect_delay)
        self._keepalive_interval = float(keepalive_interval)
        self._submit_delay = float(submit_delay)
        self._listeners = [on_message] if on_message is not None else []
        self._monitor: Optional[SessionMonitor] = None
        if monitor is not None:
            self._attach_monitor(monitor)
        self._scope: Optional[TimerScope] = None
        self._policy: Optional[ReconnectPolicy] = None
        self._ws: Any = None
        self._keepalive: Optional["asyncio.Task[Any]"] = None
        self._stopped: Optional[asyncio.Event] = None
        self._closing = False
        self.terminal_id = ""

    @property
    def monitor(self) -> SessionMonitor:
        monitor = self._monitor
        if monitor is None:
            monitor = SessionMonitor(self._get_scope())
            self._attach_monitor(monitor)
        return monitor

    @property
    def connected(self) -> bool:
        return self._ws is not None

    @property
    def reconnect_pending(self) -> bool:
        return self._policy is not None and self._policy.pending

    @property
    def pending_timers(self) -> int:
        return self._scope.pending() if self._scope is not None else 0

    def add_listener(self, cb: MessageListener) -> None:
        self._listeners.append(cb)

    def _attach_monitor(self, monitor: SessionMonitor) -> None:
        self._monitor = monitor
        if self._auto_resume:
            monitor.add_listener(self._on_monitor_event)

    def _get_scope(self) -> TimerScope:
        if self._scope is None:
            self._scope = TimerScope(name="client")
        return self._scope

    def _get_policy(self) -> ReconnectPolicy:
        if self._policy is None:
            self._policy = ReconnectPolicy(self._get_scope(), delay=self._reconnect_delay)
        return self._policy

    # ------------------------------------------------------------------ lifecycle

    async def run(self) -> None:
        self._stopped = asyncio.Event()
        await self.connect()
        await self._stopped.wait()

    async def connect(self) -> bool:
        if self._closing:
            return False
        try:
            ws = await websockets.connect(self.url)
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
            logger.warning("connect failed: %s", e, extra={"url": self.url})
            self._on_closed(ABNORMAL_CLOSURE)
            return False

        self._ws = ws
        self._get_policy().on_open()
        logger.info("connected", extra={"url": self.url})
        scope = self._get_scope()
        self._keepalive = scope.spawn(self._keepalive_loop(ws))
        scope.spawn(self._read_loop(ws))
        return True

    async def close(self) -> None:
        """Clean shutdown: no reconnect, close code 1000."""
        self._closing = True
        if self._policy is not None:
            self._policy.cancel()
        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close(code=NORMAL_CLOSURE)
            except websockets.exceptions.WebSocketException as e:
                logger.debug("close failed: %s", e)
        if self._scope is not None:
            self._scope.close()
        if self._monitor is not None:
            self._monitor.close()
        if self._stopped is not None:
            self._stopped.set()

    def _on_closed(self, code: int) -> None:
        if self._closing:
            return
        scheduled = self._get_policy().on_close(code, self.connect)
        if scheduled:
            logger.info("connection closed (%s), reconnecting in %.0fs", code, self._reconnect_delay)
        elif code == NORMAL_CLOSURE:
            logger.info("connection closed normally")
            if self._stopped is not None:
                self._stopped.set()

    async def _read_loop(self, ws: Any) -> None:
        code = ABNORMAL_CLOSURE
        try:
            async for raw in ws:
                self._route(raw)
            code = getattr(ws, "close_code", None) or ABNORMAL_CLOSURE
        except websockets.exceptions.ConnectionClosed as e:
            rcvd = getattr(e, "rcvd", None)
            code = rcvd.code if rcvd is not None else ABNORMAL_CLOSURE
        finally:
            if self._keepalive is not None:
                self._keepalive.cancel()
                self._keepalive = None
            if self._ws is ws:
                self._ws = None
        self._on_closed(code)

    async def _keepalive_loop(self, ws: Any) -> None:
        while True:
            await asyncio.sleep(self._keepalive_interval)
            try:
                await ws.send(Ping().model_dump_json(by_alias=True))
            except websockets.exceptions.ConnectionClosed:
                return

    def _route(self, raw: Any) -> None:
        try:
            msg = json.loads(raw)
        except (TypeError, ValueError):
            logger.debug("ignoring non-json frame")
            return
        if not isinstance(msg, dict):
            return
        kind = msg.get("type")
        if kind == "connected":
            self.terminal_id = str(msg.get("terminalId") or "")
            self._set_project(msg.get("initialProject"))
        elif kind == "projectSet":
            self._set_project(msg.get("project"))
        elif kind == "terminal":
            self.monitor.feed(str(msg.get("data") or ""))
        elif kind == "error":
            logger.warning("server error: %s", msg.get("message"))
        for cb in list(self._listeners):
            cb(msg)

    def _set_project(self, doc: Any) -> None:
        if not isinstance(doc, dict):
            return
        try:
            self.project = Project.model_validate(doc)
        except ValueError as e:
            logger.debug("ignoring malformed project: %s", e)
            return
        self._schedule_auto_resume()

    # ------------------------------------------------------------------ auto-resume

    def _on_monitor_event(self, ev: PromptEvent) -> None:
        if ev.kind == "assistant_stopped":
            self._schedule_auto_resume()

    def _schedule_auto_resume(self) -> None:
        if not self._auto_resume:
            return
        # Debounced: a burst of state changes yields a single check.
        if self._resume_timer is not None:
            self._resume_timer.cancel()
        self._resume_timer = self._get_scope().call_later(self._auto_resume_delay, self._auto_resume_check)

    async def _auto_resume_check(self) -> None:
        self._resume_timer = None
        project = self.project
        if project is None or self._ws is None or self.monitor.assistant_running:
            return
        try:
            has_session = await asyncio.to_thread(self.fetch_session_status, project.name)
        except (requests.RequestException, ValueError) as e:
            logger.warning("assistant session check failed: %s", e, extra={"project": project.name})
            return
        logger.info(
            "auto-%s assistant", "resuming" if has_session else "starting", extra={"project": project.name}
        )
        await self.start_assistant(resume=has_session)

    def fetch_session_status(self, name: str) -> bool:
        """GET `/api/projects/<name>/claude-session`; True if a session exists."""
        headers = {"Authorization": f"Bearer {self._token}"} if self._token else {}
        r = requests.get(
            f"{self.http_base}/api/projects/{quote(name)}/claude-session",
            headers=headers,
            timeout=SESSION_CHECK_TIMEOUT_SECONDS,
        )
        r.raise_for_status()
        doc = r.json()
        result = doc.get("result") if isinstance(doc, dict) else None
        return bool(isinstance(result, dict) and result.get("hasSession"))

    # ------------------------------------------------------------------ senders

    async def send(self, message: WireModel) -> bool:
        ws = self._ws
        if ws is None:
            logger.debug("not connected, dropping %s", getattr(message, "type", "?"))
            return False
        try:
            await ws.send(message.model_dump_json(by_alias=True, exclude_none=True))
        except websockets.exceptions.ConnectionClosed:
            return False
        return True

    async def ping(self) -> bool:
        return await self.send(Ping())

    async def send_input(self, data: str) -> bool:
        return await self.send(TerminalInput(data=data))

    async def submit_command(self, text: str) -> bool:
        """Type `text`, then press Enter as a second write."""
        if not await self.send_input(text):
            return False
        await asyncio.sleep(max(MIN_SUBMIT_DELAY, self._submit_delay))
        return await self.send_input("\r")

    async def resize(self, cols: int, rows: int) -> bool:
        return await self.send(Resize(cols=cols, rows=rows))

    async def request_file_structure(self, path: Optional[str] = None) -> bool:
        return await self.send(FileStructureRequest(path=path))

    async def set_project(self, name: str, path: str) -> bool:
        return await self.send(SetProject(project=Project(name=name, path=path)))

    async def start_assistant(self, resume: bool = False) -> bool:
        return await self.send(ClaudeCommand(resume=resume))

    async def start_expert_session(self, task: str, session_id: Optional[str] = None) -> bool:
        return await self.send(ExpertSessionRequest(task=task, session_id=session_id))

    async def read_file(self, path: str) -> bool:
        return await self.send(ReadFile(path=path))

    async def check_file_modified(self, path: str, last_known_modified: float = 0, last_known_content: Optional[str] = None) -> bool:
        return await self.send(
            CheckFileModified(path=path, last_known_modified=last_known_modified, last_known_content=last_known_content)
        )

    async def queue_task(self, command: str, cwd: Optional[str] = None) -> bool:
        return await self.send(ClaudeTask(task=TaskSpec(command=command, cwd=cwd)))

    async def execute_task(self) -> bool:
        return await self.send(ExecuteTask())
