"""Server -> client messages."""
from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from .project import Project, WireModel


class Connected(WireModel):
    type: Literal["connected"] = "connected"
    terminal_id: str
    initial_project: Optional[Project] = None


class Pong(WireModel):
    type: Literal["pong"] = "pong"


class ProjectSet(WireModel):
    type: Literal["projectSet"] = "projectSet"
    project: Project


class TerminalOutput(WireModel):
    type: Literal["terminal"] = "terminal"
    data: str


class TaskQueued(WireModel):
    type: Literal["taskQueued"] = "taskQueued"
    queue: List[Dict[str, Any]]


class TaskComplete(WireModel):
    type: Literal["taskComplete"] = "taskComplete"
    task: Dict[str, Any]
    result: str = ""
    error: str = ""
    queue: List[Dict[str, Any]]


class TaskError(WireModel):
    type: Literal["taskError"] = "taskError"
    task: Dict[str, Any]
    error: str
    queue: List[Dict[str, Any]]


class SwitchToTerminal(WireModel):
    type: Literal["switchToTerminal"] = "switchToTerminal"


class FileStructure(WireModel):
    type: Literal["fileStructure"] = "fileStructure"
    data: List[Dict[str, Any]]


class FileContent(WireModel):
    type: Literal["fileContent"] = "fileContent"
    path: str
    content: str
    last_modified: int


class ExpertSessionInfo(WireModel):
    name: str
    path: str
    task: str


class ExpertSessionCreated(WireModel):
    type: Literal["expertSessionCreated"] = "expertSessionCreated"
    session: ExpertSessionInfo


class Error(WireModel):
    type: Literal["error"] = "error"
    message: str


def encode(event: WireModel) -> str:
    return event.model_dump_json(by_alias=True)
