"""
Data models for the agent engine.

Defines the configuration boundary (Message), the immutable agent model built
from it (AgentDefinition and friends) and the parsed exec grammar (ExecCall).
Do not duplicate these definitions elsewhere.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field


class Message(BaseModel):
    """A single configuration record: (id, type, payload)."""

    model_config = ConfigDict(frozen=True)

    id: str
    type: str  # "system" | "run_loop" | ...
    payload: Dict[str, Any] = Field(default_factory=dict)


class MemoryPolicy(BaseModel):
    """Policy for conversation memory: keep the last N exchanges."""

    mode: str = "last_n"
    max_messages: int = Field(default=10, ge=0)


class Visibility(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"


class Presence(str, Enum):
    MANDATORY = "mandatory"
    OPTIONAL = "optional"


@dataclass(frozen=True)
class Const:
    value: Any


@dataclass(frozen=True)
class VarRef:
    """Bare token; resolved against the execution context, else used verbatim."""

    name: str


Argument = Union[Const, VarRef]


@dataclass(frozen=True)
class ExecCall:
    """
    A parsed exec expression.

    `target` is the dotted path split into identifiers. Assignments such as
    `system.response = {...}` are represented with `assign=True` and the
    assigned value as the single positional argument.
    """

    target: Tuple[str, ...]
    args: Tuple[Argument, ...] = ()
    kwargs: Tuple[Tuple[str, Argument], ...] = ()
    assign: bool = False
    raw: str = ""

    @property
    def path(self) -> str:
        return ".".join(self.target)


@dataclass(frozen=True)
class SkillParam:
    name: str
    type: Optional[str] = None


@dataclass(frozen=True)
class SkillSignature:
    name: str
    params: Tuple[SkillParam, ...]
    visibility: Visibility
    # Advisory step list; never interpreted.
    body: Tuple[str, ...] = ()


@dataclass(frozen=True)
class RequestFormat:
    template: str
    schema: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class Section:
    name: str
    meta: str = ""
    exec: Tuple[ExecCall, ...] = ()
    constraint: Optional[str] = None
    presence: Presence = Presence.MANDATORY


@dataclass(frozen=True)
class ResponseTemplate:
    key: str
    status: int
    sections: Tuple[Section, ...] = ()


@dataclass(frozen=True)
class AgentDefinition:
    name: str
    directive: str
    core_rules: Tuple[str, ...]
    skills: Mapping[str, SkillSignature] = field(default_factory=dict)
    requests: Mapping[str, RequestFormat] = field(default_factory=dict)
    responses: Mapping[str, ResponseTemplate] = field(default_factory=dict)

    def public_skills(self) -> Tuple[SkillSignature, ...]:
        return tuple(s for s in self.skills.values() if s.visibility is Visibility.PUBLIC)

    def private_skills(self) -> Tuple[SkillSignature, ...]:
        return tuple(s for s in self.skills.values() if s.visibility is Visibility.PRIVATE)

    def default_request(self) -> Optional[RequestFormat]:
        if "default" in self.requests:
            return self.requests["default"]
        for fmt in self.requests.values():
            return fmt
        return None
