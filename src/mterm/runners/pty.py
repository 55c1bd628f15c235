from __future__ import annotations

import asyncio
import fcntl
import logging
import os
import pty
import selectors
import signal
import struct
import subprocess
import threading
import time
from pathlib import Path
from typing import Callable, Dict, Iterable, Literal, Optional, Protocol

import termios


logger = logging.getLogger("mterm.pty")

ProcessState = Literal["running", "terminating", "exited", "killed"]

TERMINATE_GRACE_SECONDS = 2.0
MIN_SUBMIT_DELAY = 0.05


class SpawnError(RuntimeError):
    """The shell could not be started (missing binary, bad cwd, no PTY)."""


def _set_winsize(fd: int, *, cols: int, rows: int) -> None:
    try:
        winsize = struct.pack("HHHH", int(rows), int(cols), 0, 0)
        fcntl.ioctl(fd, termios.TIOCSWINSZ, winsize)
    except Exception:
        pass


def _best_effort_killpg(pid: int, sig: signal.Signals) -> None:
    if pid <= 0:
        return
    try:
        os.killpg(pid, sig)
    except Exception:
        try:
            os.kill(pid, sig)
        except Exception:
            pass


def build_shell_env(extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """Environment for an interactive shell: fixed TERM, no inherited tmux session."""
    env = os.environ.copy()
    env.update({k: v for k, v in (extra or {}).items() if isinstance(k, str) and isinstance(v, str)})
    env["TERM"] = "xterm-256color"
    env.pop("TMUX", None)
    env.pop("TMUX_PANE", None)
    return env


class _Proc(Protocol):
    pid: int

    def poll(self) -> Optional[int]: ...

    def wait(self, timeout: Optional[float] = None) -> int: ...


class ProcessTerminator:
    """Two-phase shutdown: running -> terminating -> exited | killed.

    SIGTERM goes to the process group first; if the process is still alive
    after the grace window it gets SIGKILL.
    """

    def __init__(
        self,
        proc: _Proc,
        *,
        send_signal: Callable[[int, signal.Signals], None] = _best_effort_killpg,
        grace: float = TERMINATE_GRACE_SECONDS,
    ) -> None:
        self._proc = proc
        self._send_signal = send_signal
        self._grace = float(grace)
        self._lock = threading.Lock()
        self.state: ProcessState = "running"

    def poll(self) -> ProcessState:
        with self._lock:
            if self.state in ("running", "terminating") and self._proc.poll() is not None:
                if self.state == "running":
                    self.state = "exited"
            return self.state

    def terminate(self, grace: Optional[float] = None) -> ProcessState:
        with self._lock:
            if self.state != "running":
                return self.state
            if self._proc.poll() is not None:
                self.state = "exited"
                return self.state
            self.state = "terminating"
        window = self._grace if grace is None else float(grace)
        pid = int(self._proc.pid or 0)
        self._send_signal(pid, signal.SIGTERM)
        try:
            self._proc.wait(timeout=window)
            final: ProcessState = "exited"
        except subprocess.TimeoutExpired:
            logger.warning("process ignored SIGTERM, killing", extra={"pid": pid})
            self._send_signal(pid, signal.SIGKILL)
            try:
                self._proc.wait(timeout=1.0)
            except subprocess.TimeoutExpired:
                logger.error("process survived SIGKILL", extra={"pid": pid})
            final = "killed"
        with self._lock:
            self.state = final
        return final


class PtySession:
    """One interactive shell on its own pseudo-terminal.

    Output chunks are handed to `on_data` from a reader thread, verbatim and in
    the order the process produced them. `on_exit(session, returncode)` runs
    once when the process is gone, whatever the reason.
    """

    def __init__(
        self,
        *,
        cwd: Path,
        command: Iterable[str],
        env: Optional[Dict[str, str]] = None,
        on_data: Optional[Callable[[bytes], None]] = None,
        on_exit: Optional[Callable[["PtySession", Optional[int]], None]] = None,
        cols: int = 80,
        rows: int = 30,
        name: str = "",
        grace: float = TERMINATE_GRACE_SECONDS,
    ) -> None:
        self.name = name
        self._on_data = on_data
        self._on_exit = on_exit
        self._lock = threading.Lock()
        self._fd_open = False
        self._closing = False

        cmd = [str(x) for x in command if isinstance(x, str) and str(x).strip()]
        if not cmd:
            cmd = ["bash"] if Path("/bin/bash").exists() else ["sh"]
        if not Path(cwd).is_dir():
            raise SpawnError(f"working directory does not exist: {cwd}")

        try:
            master_fd, slave_fd = pty.openpty()
        except OSError as e:
            raise SpawnError(f"failed to open pty: {e}") from e
        _set_winsize(master_fd, cols=cols, rows=rows)
        os.set_blocking(master_fd, False)

        def _preexec() -> None:
            try:
                os.setsid()
            except Exception:
                pass
            try:
                fcntl.ioctl(0, termios.TIOCSCTTY, 0)
            except Exception:
                pass

        try:
            self._proc = subprocess.Popen(
                cmd,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=str(cwd),
                env=env if env is not None else build_shell_env(),
                close_fds=True,
                preexec_fn=_preexec,
            )
        except OSError as e:
            for fd in (master_fd, slave_fd):
                try:
                    os.close(fd)
                except OSError:
                    pass
            raise SpawnError(f"failed to start {cmd[0]}: {e}") from e
        try:
            os.close(slave_fd)
        except OSError:
            pass

        self._master_fd = master_fd
        self._fd_open = True
        self._running = True
        self._terminator = ProcessTerminator(self._proc, grace=grace)

        self._selector = selectors.DefaultSelector()
        self._selector.register(master_fd, selectors.EVENT_READ)

        logger.info("shell started: %s", " ".join(cmd), extra={"terminal_id": name, "pid": self.pid})
        self._thread = threading.Thread(target=self._loop, name=f"mterm-pty:{name}", daemon=True)
        self._thread.start()

    @property
    def pid(self) -> int:
        return int(getattr(self._proc, "pid", 0) or 0)

    @property
    def state(self) -> ProcessState:
        return self._terminator.poll()

    @property
    def returncode(self) -> Optional[int]:
        return self._proc.poll()

    def is_running(self) -> bool:
        return bool(self._running) and self._proc.poll() is None

    def resize(self, *, cols: int, rows: int) -> None:
        if cols <= 0 or rows <= 0:
            return
        with self._lock:
            if not self._fd_open:
                return
            _set_winsize(self._master_fd, cols=int(cols), rows=int(rows))
        _best_effort_killpg(self.pid, signal.SIGWINCH)

    def write_input(self, data: bytes) -> bool:
        """Write input data to the PTY master fd.

        Retries on a full buffer and handles partial writes; gives up after
        about five seconds without progress. Blocking: async callers run it
        in a worker thread.
        """
        if not data:
            return True

        remaining = data
        max_attempts = 50
        attempt = 0

        while remaining and attempt < max_attempts:
            with self._lock:
                if not self._fd_open:
                    return False
                try:
                    written = os.write(self._master_fd, remaining)
                except BlockingIOError:
                    written = -1
                except OSError:
                    return False
            if written < 0:
                attempt += 1
                time.sleep(0.1)
                continue
            if written == 0:
                return False
            remaining = remaining[written:]
            attempt = 0

        return len(remaining) == 0

    def terminate(self, grace: Optional[float] = None) -> ProcessState:
        """Stop the shell (blocking for up to the grace window plus one second)."""
        self._closing = True
        final = self._terminator.terminate(grace)
        self._running = False
        self._thread.join(timeout=1.0)
        return final

    def _close_fd(self) -> None:
        try:
            self._selector.unregister(self._master_fd)
        except Exception:
            pass
        try:
            self._selector.close()
        except Exception:
            pass
        with self._lock:
            if self._fd_open:
                self._fd_open = False
                try:
                    os.close(self._master_fd)
                except OSError:
                    pass

    def _on_pty_readable(self) -> None:
        while True:
            try:
                chunk = os.read(self._master_fd, 65536)
            except BlockingIOError:
                return
            except OSError:
                # EIO once the slave side is gone.
                self._running = False
                return
            if not chunk:
                self._running = False
                return
            if self._on_data is not None:
                try:
                    self._on_data(chunk)
                except Exception:
                    logger.exception("on_data callback failed", extra={"terminal_id": self.name})

    def _loop(self) -> None:
        try:
            while self._running:
                for _key, mask in self._selector.select(timeout=0.1):
                    if mask & selectors.EVENT_READ:
                        self._on_pty_readable()
                if self._proc.poll() is not None:
                    self._on_pty_readable()
                    break
        finally:
            self._running = False
            self._close_fd()
            code = self._proc.poll()
            if code is None:
                try:
                    code = self._proc.wait(timeout=1.0)
                except subprocess.TimeoutExpired:
                    code = None
            self._log_exit(code)
            if self._on_exit is not None:
                try:
                    self._on_exit(self, code)
                except Exception:
                    logger.exception("on_exit callback failed", extra={"terminal_id": self.name})

    def _log_exit(self, code: Optional[int]) -> None:
        reason = "closed by client" if self._closing else "exited on its own"
        if code is not None and code < 0:
            try:
                sig_name = signal.Signals(-code).name
            except ValueError:
                sig_name = str(-code)
            logger.info("shell %s (signal %s)", reason, sig_name, extra={"terminal_id": self.name, "pid": self.pid})
        else:
            logger.info("shell %s (exit code %s)", reason, code, extra={"terminal_id": self.name, "pid": self.pid})


class InputSink(Protocol):
    def write_input(self, data: bytes) -> bool: ...


async def submit_text(sink: InputSink, text: str, *, delay: float = MIN_SUBMIT_DELAY, submit: bytes = b"\r") -> bool:
    """Type `text`, wait, then press Enter: two writes, never one.

    Interactive programs may discard input that is typed and confirmed within
    the same scheduling tick, so the gap has a floor of MIN_SUBMIT_DELAY.
    """
    payload = (text or "").rstrip("\r\n")
    if payload and not await asyncio.to_thread(sink.write_input, payload.encode("utf-8", errors="replace")):
        return False
    await asyncio.sleep(max(MIN_SUBMIT_DELAY, float(delay)))
    return await asyncio.to_thread(sink.write_input, submit)
