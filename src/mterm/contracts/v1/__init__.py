from __future__ import annotations

from .events import (
    Connected,
    Error,
    ExpertSessionCreated,
    ExpertSessionInfo,
    FileContent,
    FileStructure,
    Pong,
    ProjectSet,
    SwitchToTerminal,
    TaskComplete,
    TaskError,
    TaskQueued,
    TerminalOutput,
    encode,
)
from .messages import (
    CLIENT_MESSAGE_TYPES,
    CheckFileModified,
    ClaudeCommand,
    ClaudeTask,
    ClientMessage,
    ExecuteTask,
    ExpertSessionRequest,
    FileStructureRequest,
    Ping,
    ReadFile,
    Resize,
    SetProject,
    TerminalInput,
    TransportError,
    parse_client_message,
)
from .project import PROJECT_NAME_PATTERN, Project, TaskSpec, WireModel

__all__ = [
    "CLIENT_MESSAGE_TYPES",
    "CheckFileModified",
    "ClaudeCommand",
    "ClaudeTask",
    "ClientMessage",
    "Connected",
    "Error",
    "ExecuteTask",
    "ExpertSessionCreated",
    "ExpertSessionInfo",
    "ExpertSessionRequest",
    "FileContent",
    "FileStructure",
    "FileStructureRequest",
    "PROJECT_NAME_PATTERN",
    "Ping",
    "Pong",
    "Project",
    "ProjectSet",
    "ReadFile",
    "Resize",
    "SetProject",
    "SwitchToTerminal",
    "TaskComplete",
    "TaskError",
    "TaskQueued",
    "TaskSpec",
    "TerminalInput",
    "TerminalOutput",
    "TransportError",
    "WireModel",
    "encode",
    "parse_client_message",
]
