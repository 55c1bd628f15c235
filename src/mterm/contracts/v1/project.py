from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


PROJECT_NAME_PATTERN = r"^[A-Za-z0-9_-]+$"


class WireModel(BaseModel):
    """Base for everything that crosses the websocket (camelCase on the wire)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class Project(WireModel):
    name: str = Field(pattern=PROJECT_NAME_PATTERN)
    path: str
    created: Optional[str] = None
    modified: Optional[str] = None


class TaskSpec(WireModel):
    command: str = Field(min_length=1)
    cwd: Optional[str] = None
