from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import FastAPI, HTTPException, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import BaseModel, Field

from ... import __version__
from ...kernel.projects import (
    assistant_session_info,
    create_project,
    ensure_projects_dir,
    find_project,
    list_projects,
)
from ...kernel.settings import ServerSettings, get_server_settings
from ...paths import ensure_home
from .connection import ConnectionManager, HostFactory


logger = logging.getLogger("mterm.web")


class CreateProjectRequest(BaseModel):
    name: str = Field(default="")


def _web_token() -> str:
    return str(os.environ.get("MTERM_WEB_TOKEN") or "").strip()


def _require_token_if_configured(request: Request) -> Optional[JSONResponse]:
    token = _web_token()
    if not token:
        return None
    auth = str(request.headers.get("authorization") or "").strip()
    if auth != f"Bearer {token}":
        return JSONResponse(
            status_code=401,
            content={"ok": False, "error": {"code": "unauthorized", "message": "missing/invalid token", "details": {}}},
        )
    return None


def create_app(settings: Optional[ServerSettings] = None, host_factory: Optional[HostFactory] = None) -> FastAPI:
    settings = settings or get_server_settings()
    manager = ConnectionManager(settings, host_factory=host_factory)

    @asynccontextmanager
    async def _lifespan(_app: FastAPI) -> AsyncIterator[None]:
        yield
        await manager.close_all()

    app = FastAPI(title="mterm web", version=__version__, lifespan=_lifespan)
    app.state.settings = settings
    app.state.manager = manager

    try:
        ensure_projects_dir(settings.projects_path)
    except OSError:
        logger.exception("failed to initialise projects root %s", settings.projects_path)

    cors = str(os.environ.get("MTERM_WEB_CORS_ORIGINS") or "").strip()
    if cors:
        allow_origins = [o.strip() for o in cors.split(",") if o.strip()]
        if allow_origins:
            app.add_middleware(
                CORSMiddleware,
                allow_origins=allow_origins,
                allow_methods=["*"],
                allow_headers=["*"],
            )

    @app.middleware("http")
    async def _auth(request: Request, call_next):  # type: ignore[no-untyped-def]
        blocked = _require_token_if_configured(request)
        if blocked is not None:
            return blocked
        return await call_next(request)

    @app.get("/", response_class=HTMLResponse)
    async def index() -> str:
        return (
            "<h3>mterm web</h3>"
            "<p>Terminal sessions are served over a websocket on <code>/</code> and <code>/ws</code>.</p>"
            "<p>Try <code>/api/ping</code> and <code>/api/projects</code>.</p>"
        )

    @app.get("/api/ping")
    async def ping() -> Dict[str, Any]:
        home = ensure_home()
        return {
            "ok": True,
            "result": {
                "home": str(home),
                "projects_dir": str(settings.projects_path),
                "sessions": len(manager),
                "version": __version__,
            },
        }

    @app.get("/api/projects")
    async def projects() -> Dict[str, Any]:
        items = list_projects(settings.projects_path)
        return {"ok": True, "result": {"projects": [p.model_dump(by_alias=True, exclude_none=True) for p in items]}}

    @app.post("/api/projects")
    async def project_create(req: CreateProjectRequest) -> Dict[str, Any]:
        try:
            proj = create_project(settings.projects_path, req.name)
        except ValueError as e:
            raise HTTPException(status_code=400, detail={"code": "invalid_name", "message": str(e)})
        except FileExistsError as e:
            raise HTTPException(status_code=400, detail={"code": "project_exists", "message": str(e)})
        except OSError as e:
            raise HTTPException(status_code=500, detail={"code": "create_failed", "message": str(e)})
        return {"ok": True, "result": {"project": proj.model_dump(by_alias=True, exclude_none=True)}}

    @app.get("/api/projects/{name}/claude-session")
    async def project_session(name: str) -> Dict[str, Any]:
        proj = find_project(settings.projects_path, name)
        if proj is None:
            raise HTTPException(status_code=404, detail={"code": "project_not_found", "message": f"project not found: {name}"})
        has_session, info = assistant_session_info(Path(proj.path))
        return {"ok": True, "result": {"hasSession": has_session, "sessionInfo": info}}

    async def _terminal(websocket: WebSocket) -> None:
        token = _web_token()
        if token:
            provided = str(websocket.query_params.get("token") or "").strip()
            if provided != token:
                await websocket.close(code=4401)
                return

        await websocket.accept()
        await manager.serve(websocket)

    @app.websocket("/")
    async def terminal_root(websocket: WebSocket) -> None:
        await _terminal(websocket)

    @app.websocket("/ws")
    async def terminal_ws(websocket: WebSocket) -> None:
        await _terminal(websocket)

    return app
