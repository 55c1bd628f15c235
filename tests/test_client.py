import asyncio
import json
import time
import unittest
from typing import Any, Callable, Dict, List
from unittest import mock

from fakes import PROMPT


async def _until(pred: Callable[[], bool], timeout: float = 3.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if pred():
            return True
        await asyncio.sleep(0.01)
    return pred()


class _StubServer:
    """Scripted websocket peer: `script(ws, index)` runs once per connection."""

    def __init__(self, script: Callable[[Any, int], Any]) -> None:
        self.script = script
        self.received: List[Dict[str, Any]] = []
        self.close_codes: List[Any] = []
        self.connections = 0
        self.port = 0
        self._server: Any = None

    async def _handler(self, ws: Any) -> None:
        import websockets

        index = self.connections
        self.connections += 1
        try:
            await self.script(ws, index)
            async for raw in ws:
                self.received.append(json.loads(raw))
        except websockets.exceptions.ConnectionClosed:
            pass
        self.close_codes.append(ws.close_code)

    async def __aenter__(self) -> "_StubServer":
        import websockets

        self._server = await websockets.serve(self._handler, "127.0.0.1", 0)
        self.port = self._server.sockets[0].getsockname()[1]
        return self

    async def __aexit__(self, *exc: Any) -> None:
        self._server.close()
        await self._server.wait_closed()

    @property
    def url(self) -> str:
        return f"ws://127.0.0.1:{self.port}/ws"

    def count(self, kind: str) -> int:
        return sum(1 for m in self.received if m.get("type") == kind)


def _hello(project: Any = None) -> str:
    doc: Dict[str, Any] = {"type": "connected", "terminalId": "t1"}
    if project is not None:
        doc["initialProject"] = project
    return json.dumps(doc)


class TestTerminalClient(unittest.TestCase):
    def test_keepalive_pings_and_clean_close_cancels_everything(self) -> None:
        from mterm.client.transport import TerminalClient

        async def script(ws: Any, index: int) -> None:
            await ws.send(_hello())
            await ws.send(json.dumps({"type": "terminal", "data": PROMPT}))

        async def scenario() -> None:
            async with _StubServer(script) as server:
                client = TerminalClient(server.url, keepalive_interval=0.05, reconnect_delay=0.05)
                runner = asyncio.ensure_future(client.run())
                self.assertTrue(await _until(lambda: server.count("ping") >= 2))
                self.assertEqual(client.terminal_id, "t1")
                self.assertTrue(client.monitor.prompt_active)
                self.assertTrue(client.monitor.detector.timer_armed)

                await client.close()
                await asyncio.wait_for(runner, 2.0)
                self.assertTrue(await _until(lambda: bool(server.close_codes)))
                self.assertEqual(server.close_codes, [1000])
                self.assertFalse(client.connected)
                self.assertFalse(client.reconnect_pending)
                self.assertFalse(client.monitor.detector.timer_armed)
                self.assertEqual(client.pending_timers, 0)

                pings = server.count("ping")
                await asyncio.sleep(0.2)
                self.assertEqual(server.count("ping"), pings)
                self.assertEqual(server.connections, 1)

        asyncio.run(scenario())

    def test_abnormal_close_reconnects_and_normal_close_stops(self) -> None:
        from mterm.client.transport import TerminalClient

        async def script(ws: Any, index: int) -> None:
            await ws.send(_hello())
            await ws.close(code=1011 if index == 0 else 1000)

        async def scenario() -> None:
            async with _StubServer(script) as server:
                client = TerminalClient(server.url, keepalive_interval=10.0, reconnect_delay=0.05)
                await asyncio.wait_for(client.run(), 3.0)
                self.assertEqual(server.connections, 2)
                self.assertFalse(client.reconnect_pending)
                self.assertFalse(client.connected)
                await client.close()

        asyncio.run(scenario())

    def test_handshake_timeout_schedules_a_retry(self) -> None:
        from mterm.client import transport

        async def scenario() -> None:
            client = transport.TerminalClient("ws://127.0.0.1:9/ws", reconnect_delay=30.0)
            with mock.patch.object(transport.websockets, "connect", side_effect=asyncio.TimeoutError()):
                self.assertFalse(await client.connect())
            self.assertTrue(client.reconnect_pending)
            await client.close()
            self.assertFalse(client.reconnect_pending)

        asyncio.run(scenario())

    def test_http_base_url(self) -> None:
        from mterm.client.transport import http_base_url

        self.assertEqual(http_base_url("ws://h:3001/ws"), "http://h:3001")
        self.assertEqual(http_base_url("wss://h/ws?token=x"), "https://h")


class TestAutoResume(unittest.TestCase):
    def test_starts_assistant_only_while_it_is_not_running(self) -> None:
        from mterm.client import transport

        stop = asyncio.Event()
        project = {"name": "demo", "path": "/tmp/demo"}

        async def script(ws: Any, index: int) -> None:
            await ws.send(_hello(project))
            await ws.send(json.dumps({"type": "terminal", "data": "\x1b[1m✻ Welcome to Claude Code!\x1b[0m\r\n"}))
            await stop.wait()
            await ws.send(json.dumps({"type": "terminal", "data": "Goodbye!\r\nmax@laptop demo % "}))

        response = mock.Mock()
        response.json.return_value = {"ok": True, "result": {"hasSession": True, "sessionInfo": None}}

        async def scenario() -> int:
            async with _StubServer(script) as server:
                client = transport.TerminalClient(
                    server.url, token="s3cret", auto_resume=True, auto_resume_delay=0.05, keepalive_interval=10.0
                )
                runner = asyncio.ensure_future(client.run())
                self.assertTrue(await _until(lambda: client.monitor.assistant_running))
                await asyncio.sleep(0.2)
                self.assertEqual(server.count("claudeCommand"), 0)

                stop.set()
                self.assertTrue(await _until(lambda: server.count("claudeCommand") == 1))
                self.assertIn({"type": "claudeCommand", "resume": True}, server.received)

                await client.close()
                await asyncio.wait_for(runner, 2.0)
                return server.port

        with mock.patch.object(transport.requests, "get", return_value=response) as get:
            port = asyncio.run(scenario())
        get.assert_called_once()
        self.assertEqual(get.call_args.args[0], f"http://127.0.0.1:{port}/api/projects/demo/claude-session")
        self.assertEqual(get.call_args.kwargs["headers"], {"Authorization": "Bearer s3cret"})

    def test_failed_session_check_sends_nothing(self) -> None:
        import requests

        from mterm.client import transport

        async def script(ws: Any, index: int) -> None:
            await ws.send(_hello({"name": "demo", "path": "/tmp/demo"}))

        async def scenario() -> int:
            async with _StubServer(script) as server:
                client = transport.TerminalClient(server.url, auto_resume=True, auto_resume_delay=0.01)
                runner = asyncio.ensure_future(client.run())
                await asyncio.sleep(0.3)
                await client.close()
                await asyncio.wait_for(runner, 2.0)
                return server.count("claudeCommand")

        boom = requests.ConnectionError("refused")
        with mock.patch.object(transport.requests, "get", side_effect=boom) as get:
            sent = asyncio.run(scenario())
        self.assertEqual(sent, 0)
        get.assert_called_once()


if __name__ == "__main__":
    unittest.main()
