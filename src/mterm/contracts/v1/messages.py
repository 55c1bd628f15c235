"""Client -> server messages.

Every frame is one JSON object whose `type` selects the schema. The set is
closed: `ClientMessage` is a discriminated union and handlers are looked up
per concrete class. Frames with an unknown `type` are ignored so newer clients
can talk to older servers.
"""
from __future__ import annotations

import json
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import Field, TypeAdapter, ValidationError

from .project import Project, TaskSpec, WireModel


class TransportError(ValueError):
    """A frame that could not be decoded into a known message."""


class Ping(WireModel):
    type: Literal["ping"] = "ping"


class TerminalInput(WireModel):
    type: Literal["terminal"] = "terminal"
    data: str


class Resize(WireModel):
    type: Literal["resize"] = "resize"
    cols: int = Field(gt=0)
    rows: int = Field(gt=0)


class FileStructureRequest(WireModel):
    type: Literal["fileStructure"] = "fileStructure"
    path: Optional[str] = None


class SetProject(WireModel):
    type: Literal["setProject"] = "setProject"
    project: Project


class ClaudeCommand(WireModel):
    type: Literal["claudeCommand"] = "claudeCommand"
    resume: bool = False


class ExpertSessionRequest(WireModel):
    type: Literal["expertSession"] = "expertSession"
    task: str = Field(min_length=1)
    session_id: Optional[str] = None


class ReadFile(WireModel):
    type: Literal["readFile"] = "readFile"
    path: str


class CheckFileModified(WireModel):
    type: Literal["checkFileModified"] = "checkFileModified"
    path: str
    last_known_modified: float = 0
    last_known_content: Optional[str] = None


class ClaudeTask(WireModel):
    type: Literal["claudeTask"] = "claudeTask"
    task: TaskSpec


class ExecuteTask(WireModel):
    type: Literal["executeTask"] = "executeTask"


ClientMessage = Annotated[
    Union[
        Ping,
        TerminalInput,
        Resize,
        FileStructureRequest,
        SetProject,
        ClaudeCommand,
        ExpertSessionRequest,
        ReadFile,
        CheckFileModified,
        ClaudeTask,
        ExecuteTask,
    ],
    Field(discriminator="type"),
]

_ADAPTER: TypeAdapter[Any] = TypeAdapter(ClientMessage)

CLIENT_MESSAGE_TYPES = frozenset(
    {
        "ping",
        "terminal",
        "resize",
        "fileStructure",
        "setProject",
        "claudeCommand",
        "expertSession",
        "readFile",
        "checkFileModified",
        "claudeTask",
        "executeTask",
    }
)


def parse_client_message(raw: Union[str, bytes]) -> Optional[Any]:
    """Decode one frame.

    Returns None for a well-formed frame of an unknown type; raises
    TransportError for anything malformed.
    """
    try:
        obj = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise TransportError(f"invalid json: {e}") from e
    if not isinstance(obj, dict):
        raise TransportError("message must be a JSON object")
    kind = obj.get("type")
    if not isinstance(kind, str):
        raise TransportError("missing message type")
    if kind not in CLIENT_MESSAGE_TYPES:
        return None
    try:
        return _ADAPTER.validate_python(obj)
    except ValidationError as e:
        raise TransportError(f"invalid {kind} message: {e.error_count()} error(s)") from e
