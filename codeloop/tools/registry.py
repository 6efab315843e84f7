from __future__ import annotations

import inspect
import logging
from importlib.metadata import entry_points
from typing import Iterable

from codeloop.errors import ToolDisabled, ToolNotFound
from codeloop.tools.base import Tool

logger = logging.getLogger(__name__)


class ToolRegistry:
    def __init__(self):
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool, *, overwrite: bool = False) -> None:
        if tool.name in self._tools and not overwrite:
            raise ValueError(f"Tool already registered: {tool.name}")
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def require(self, name: str) -> Tool:
        t = self.get(name)
        if not t:
            raise KeyError(name)
        return t

    def lookup(self, name: str, disabled: Iterable[str] = ()) -> Tool:
        """
        Resolve *name* for a session with the given *disabled* tool names.

        Raises ``ToolNotFound`` or ``ToolDisabled``.
        """
        tool = self.get(name)
        if tool is None:
            raise ToolNotFound(name)
        if name in set(disabled):
            raise ToolDisabled(name)
        return tool

    def list(self) -> list[Tool]:
        return sorted(self._tools.values(), key=lambda t: t.name)

    def enabled(self, disabled: Iterable[str] = ()) -> list[Tool]:
        off = set(disabled)
        return [t for t in self.list() if t.name not in off]

    def to_openai_schema(self, disabled: Iterable[str] = ()) -> list[dict] | None:
        """Schemas of the enabled tools, or ``None`` when none are enabled."""
        schemas = [t.to_openai_schema() for t in self.enabled(disabled)]
        return schemas or None

    def load_plugins(
        self,
        *,
        enabled: bool,
        group: str = "codeloop.tools",
        allow_distributions: set[str] | None = None,
        allow_tools: set[str] | None = None,
        processor: object | None = None,
    ) -> int:
        """Load tools from entry points, optionally injecting dependencies.

        If a tool class's __init__ accepts a ``processor`` parameter and one
        is provided here, the shared code-query processor is injected.  Tools
        that don't declare the parameter are constructed with no arguments.
        """
        if not enabled:
            return 0
        loaded = 0
        for ep in entry_points(group=group):
            dist = getattr(ep, "dist", None)
            dist_name = getattr(dist, "name", None)
            if allow_distributions and dist_name and dist_name not in allow_distributions:
                continue
            if allow_tools and ep.name not in allow_tools:
                continue
            tool_cls = ep.load()
            kwargs: dict = {}
            if processor is not None:
                sig = inspect.signature(tool_cls)
                if "processor" in sig.parameters:
                    kwargs["processor"] = processor
            self.register(tool_cls(**kwargs))
            logger.info("Loaded plugin tool %s from %s", ep.name, dist_name or "?")
            loaded += 1
        return loaded


def validate_session_tools(registry: ToolRegistry, disabled: Iterable[str]) -> None:
    """Reject a disabled-tools list naming tools that do not exist."""
    unknown = sorted(name for name in set(disabled) if registry.get(name) is None)
    if unknown:
        raise ValueError(
            f"Disabled tools are not registered: {', '.join(unknown)}"
        )
