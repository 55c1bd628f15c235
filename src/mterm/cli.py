from __future__ import annotations

import argparse
import asyncio
import json
import os
from typing import Any, Dict

from .contracts.v1 import Project
from .kernel.active import load_last_project, set_last_project
from .kernel.projects import create_project, find_project, list_projects
from .kernel.settings import get_server_settings
from .util.obslog import setup_root_json_logging

__all__ = ["main"]


def _print_json(obj: Any) -> None:
    print(json.dumps(obj, ensure_ascii=False, indent=2))


def _project_doc(p: Project) -> Dict[str, Any]:
    return p.model_dump(by_alias=True, exclude_none=True)


def cmd_web(args: argparse.Namespace) -> int:
    from .ports.web.main import main as web_main

    argv = ["--host", str(args.host), "--port", str(args.port)]
    if args.log_level:
        argv += ["--log-level", str(args.log_level)]
    if args.reload:
        argv.append("--reload")
    return int(web_main(argv))


def cmd_projects(args: argparse.Namespace) -> int:
    root = get_server_settings().projects_path
    name = str(getattr(args, "create", "") or "").strip()
    if name:
        try:
            proj = create_project(root, name)
        except (ValueError, FileExistsError) as e:
            _print_json({"ok": False, "error": {"code": "create_failed", "message": str(e)}})
            return 2
        _print_json({"ok": True, "result": {"project": _project_doc(proj)}})
        return 0
    _print_json({"ok": True, "result": {"projects": [_project_doc(p) for p in list_projects(root)]}})
    return 0


def cmd_last_project(args: argparse.Namespace) -> int:
    name = str(getattr(args, "set", "") or "").strip()
    if name:
        proj = find_project(get_server_settings().projects_path, name)
        if proj is None:
            _print_json({"ok": False, "error": {"code": "project_not_found", "message": f"project not found: {name}"}})
            return 2
        _print_json({"ok": True, "result": set_last_project(proj)})
        return 0
    last = load_last_project(require_exists=False)
    if last is None:
        _print_json({"ok": True, "result": None})
        return 0
    _print_json({"ok": True, "result": {"name": last.name, "path": last.path, "lastAccessed": last.last_accessed}})
    return 0


def cmd_watch(args: argparse.Namespace) -> int:
    from .client.monitor import SessionMonitor
    from .client.transport import TerminalClient
    from .kernel.prompt import PromptEvent
    from .util.timers import TimerScope

    setup_root_json_logging(component="watch", level=str(args.log_level or ""))

    def _on_event(ev: PromptEvent) -> None:
        line = {"event": ev.kind, "text": ev.text} if ev.text else {"event": ev.kind}
        print(json.dumps(line, ensure_ascii=False), flush=True)

    async def _run() -> None:
        scope = TimerScope(name="watch")
        monitor = SessionMonitor(scope, on_event=_on_event)
        client = TerminalClient(
            str(args.url),
            token=str(args.token or os.environ.get("MTERM_WEB_TOKEN") or ""),
            monitor=monitor,
            auto_resume=bool(args.auto_resume),
        )

        def _on_message(msg: Dict[str, Any]) -> None:
            if msg.get("type") == "terminal" and args.window:
                print(json.dumps({"window": monitor.window.to_list()}, ensure_ascii=False), flush=True)
            elif msg.get("type") == "connected":
                print(json.dumps({"event": "connected", "terminalId": msg.get("terminalId")}), flush=True)

        client.add_listener(_on_message)
        try:
            await client.run()
        finally:
            await client.close()
            scope.close()

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        pass
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="mterm", description="Remote terminal sessions with prompt detection")
    sub = p.add_subparsers(dest="cmd", required=True)

    p_web = sub.add_parser("web", help="Run the terminal server")
    p_web.add_argument("--host", default="127.0.0.1", help="Bind host (default: 127.0.0.1)")
    p_web.add_argument("--port", type=int, default=3001, help="Bind port (default: 3001)")
    p_web.add_argument("--log-level", default="", help="Log level (default: $MTERM_LOG_LEVEL or info)")
    p_web.add_argument("--reload", action="store_true", help="Enable autoreload (dev)")
    p_web.set_defaults(func=cmd_web)

    p_watch = sub.add_parser("watch", help="Connect to a server and print prompt/assistant events")
    p_watch.add_argument("url", help="Websocket URL, e.g. ws://127.0.0.1:3001/ws")
    p_watch.add_argument("--token", default="", help="Access token (default: $MTERM_WEB_TOKEN)")
    p_watch.add_argument("--window", action="store_true", help="Also print the output window on every chunk")
    p_watch.add_argument("--auto-resume", action="store_true", help="Start or resume the assistant whenever it is not running")
    p_watch.add_argument("--log-level", default="", help="Log level (default: $MTERM_LOG_LEVEL or info)")
    p_watch.set_defaults(func=cmd_watch)

    p_projects = sub.add_parser("projects", help="List projects (or create one)")
    p_projects.add_argument("--create", default="", help="Create a project with this name")
    p_projects.set_defaults(func=cmd_projects)

    p_last = sub.add_parser("last-project", help="Show (or set) the last-project pointer")
    p_last.add_argument("--set", default="", help="Point at this existing project")
    p_last.set_defaults(func=cmd_last_project)

    return p


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
