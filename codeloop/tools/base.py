from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Union

from codeloop.tools.schema import Param, parameters_schema


@dataclass(frozen=True)
class ToolContext:
    """What a tool may know about the call it serves."""

    session_id: str
    tool_call_id: str
    workspace_root: Path


@dataclass(frozen=True)
class Done:
    output: str


@dataclass(frozen=True)
class Deferred:
    """The request was forwarded; the result arrives later, matched by call id."""


ToolOutcome = Union[Done, Deferred]


class Tool(ABC):
    @property
    @abstractmethod
    def name(self) -> str: ...

    @property
    @abstractmethod
    def description(self) -> str: ...

    @property
    @abstractmethod
    def parameters(self) -> dict[str, Param]: ...

    @abstractmethod
    async def invoke(self, arguments: dict, ctx: ToolContext) -> ToolOutcome: ...

    def to_openai_schema(self) -> dict:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": parameters_schema(self.parameters),
            },
        }
