"""Mock tool implementations for testing."""

import asyncio

from codeloop.tools import schema
from codeloop.tools.base import Deferred, Done, Tool, ToolContext


class EchoTool(Tool):
    def __init__(self):
        self.calls: list[dict] = []

    @property
    def name(self) -> str:
        return "echo"

    @property
    def description(self) -> str:
        return "Echoes the input message back."

    @property
    def parameters(self) -> dict:
        return {"message": schema.string("Message to echo")}

    async def invoke(self, arguments: dict, ctx: ToolContext):
        self.calls.append(arguments)
        return Done(arguments["message"])


class DeferredTool(Tool):
    """Forwards the request elsewhere; the test resolves it out of band."""

    def __init__(self):
        self.contexts: list[ToolContext] = []

    @property
    def name(self) -> str:
        return "lookup"

    @property
    def description(self) -> str:
        return "Looks something up in another subsystem."

    @property
    def parameters(self) -> dict:
        return {"query": schema.string("What to look up")}

    async def invoke(self, arguments: dict, ctx: ToolContext):
        self.contexts.append(ctx)
        return Deferred()


class FailingTool(Tool):
    @property
    def name(self) -> str:
        return "explode"

    @property
    def description(self) -> str:
        return "Always raises."

    @property
    def parameters(self) -> dict:
        return {}

    async def invoke(self, arguments: dict, ctx: ToolContext):
        raise RuntimeError("boom")


class SlowTool(Tool):
    @property
    def name(self) -> str:
        return "sleepy"

    @property
    def description(self) -> str:
        return "Sleeps before answering."

    @property
    def parameters(self) -> dict:
        return {"seconds": schema.number("How long to sleep")}

    async def invoke(self, arguments: dict, ctx: ToolContext):
        await asyncio.sleep(arguments["seconds"])
        return Done("awake")


class SilentTool(Tool):
    """Finishes with empty output."""

    @property
    def name(self) -> str:
        return "silent"

    @property
    def description(self) -> str:
        return "Returns nothing."

    @property
    def parameters(self) -> dict:
        return {}

    async def invoke(self, arguments: dict, ctx: ToolContext):
        return Done("")


class TypedTool(Tool):
    """One parameter of every type tag, for validation tests."""

    @property
    def name(self) -> str:
        return "typed"

    @property
    def description(self) -> str:
        return "Takes one argument of each kind."

    @property
    def parameters(self) -> dict:
        return {
            "flag": schema.boolean("A flag"),
            "count": schema.integer("A bounded count", minimum=1, maximum=10),
            "ratio": schema.number("Any number", required=False),
            "regex": schema.pattern("A regular expression", required=False),
            "nothing": schema.null("Must be null", required=False),
            "target": schema.path("A workspace path", required=False),
            "tags": schema.array(
                schema.string(), "Between one and three tags",
                min_items=1, max_items=3, required=False,
            ),
            "files": schema.array(schema.path(), "Workspace files", required=False),
        }

    async def invoke(self, arguments: dict, ctx: ToolContext):
        return Done("ok")
