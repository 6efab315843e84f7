"""
Code-intelligence query processor.

The processor is shared by every session in the process.  Tools hand it a
query (``SymbolQuery`` or ``DefinitionQuery``) and return immediately; a worker task answers queries one at
a time and posts the answer to the event bus of the session that asked,
tagged with the originating tool-call id.  Sessions subscribe their bus on
start and unsubscribe on shutdown; answers for unsubscribed sessions are
dropped.
"""

from __future__ import annotations

import ast
import asyncio
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, Union

from codeloop.session.events import EventBus, tool_result_available_event
from codeloop.types import ErrorCode

logger = logging.getLogger(__name__)

KIND_CLASS = "class"
KIND_FUNCTION = "function"
KIND_METHOD = "method"
SYMBOL_KINDS = (KIND_CLASS, KIND_FUNCTION, KIND_METHOD)

_SKIP_DIRS = {".git", ".hg", ".venv", "venv", "node_modules", "__pycache__", ".tox"}
_MAX_RESULTS = 200
_MAX_DEFINITIONS = 5
_MAX_DEFINITION_LINES = 40


@dataclass(frozen=True)
class SymbolQuery:
    session_id: str
    tool_call_id: str
    workspace_root: Path
    name_regex: str
    file_path_regex: str | None = None
    kind: str | None = None

    def run(self) -> str:
        symbols = find_symbols(self)
        if not symbols:
            return f"No symbols found matching: {self.name_regex}"
        return "\n".join(str(s) for s in symbols)


@dataclass(frozen=True)
class DefinitionQuery:
    """Where is *symbol* defined?  Accepts ``name`` or ``Outer.name``."""

    session_id: str
    tool_call_id: str
    workspace_root: Path
    symbol: str
    file_path_regex: str | None = None

    def run(self) -> str:
        found = find_definitions(self)
        if not found:
            return f"No definition found for: {self.symbol}"
        return "\n\n".join(found)


Query = Union[SymbolQuery, DefinitionQuery]


@dataclass(frozen=True)
class Symbol:
    path: str
    line: int
    kind: str
    name: str
    end_line: int = field(default=0, compare=False)

    def __str__(self) -> str:
        return f"{self.path}:{self.line}: {self.kind} {self.name}"


class _SymbolCollector(ast.NodeVisitor):
    def __init__(self, rel_path: str) -> None:
        self.rel_path = rel_path
        self.symbols: list[Symbol] = []
        self._scope: list[tuple[str, str]] = []

    def _record(self, node: ast.AST, kind: str, name: str) -> None:
        qualified = ".".join([n for n, _ in self._scope] + [name])
        end = node.end_lineno or node.lineno
        self.symbols.append(Symbol(self.rel_path, node.lineno, kind, qualified, end))

    def visit_ClassDef(self, node: ast.ClassDef) -> None:
        self._record(node, KIND_CLASS, node.name)
        self._scope.append((node.name, KIND_CLASS))
        self.generic_visit(node)
        self._scope.pop()

    def _visit_function(self, node: ast.FunctionDef | ast.AsyncFunctionDef) -> None:
        in_class = bool(self._scope) and self._scope[-1][1] == KIND_CLASS
        self._record(node, KIND_METHOD if in_class else KIND_FUNCTION, node.name)
        self._scope.append((node.name, KIND_FUNCTION))
        self.generic_visit(node)
        self._scope.pop()

    visit_FunctionDef = _visit_function
    visit_AsyncFunctionDef = _visit_function


def _scan(
    workspace_root: Path, file_path_regex: str | None
) -> Iterator[tuple[str, list[str], list[Symbol]]]:
    """Yield ``(relative path, source lines, symbols)`` for each parsable Python file."""
    root = workspace_root.resolve()
    if not root.is_dir():
        raise FileNotFoundError(f"Workspace root does not exist: {root}")
    path_re = re.compile(file_path_regex) if file_path_regex else None

    for file in sorted(root.rglob("*.py")):
        rel = file.relative_to(root)
        if any(part in _SKIP_DIRS for part in rel.parts):
            continue
        rel_str = rel.as_posix()
        if path_re is not None and not path_re.search(rel_str):
            continue
        try:
            source = file.read_text(encoding="utf-8")
            tree = ast.parse(source, filename=rel_str)
        except (SyntaxError, UnicodeDecodeError, OSError) as exc:
            logger.debug("Skipping %s: %s", rel_str, exc)
            continue
        collector = _SymbolCollector(rel_str)
        collector.visit(tree)
        yield rel_str, source.splitlines(), collector.symbols


def find_symbols(query: SymbolQuery) -> list[Symbol]:
    """Scan the Python files under the query's root for matching definitions."""
    name_re = re.compile(query.name_regex)

    found: list[Symbol] = []
    for _, _, symbols in _scan(query.workspace_root, query.file_path_regex):
        for sym in symbols:
            if query.kind and sym.kind != query.kind:
                continue
            if name_re.search(sym.name.rsplit(".", 1)[-1]) or name_re.search(sym.name):
                found.append(sym)
                if len(found) >= _MAX_RESULTS:
                    return found
    return found


def find_definitions(query: DefinitionQuery) -> list[str]:
    """
    Locate the definitions of ``query.symbol`` and render each with its source.

    ``spin`` matches every definition named ``spin``; ``Widget.spin`` only
    the one nested in ``Widget``.  At most five definitions are returned,
    each cut to forty lines.
    """
    wanted = query.symbol.strip()
    suffix = "." + wanted

    rendered: list[str] = []
    for rel_str, lines, symbols in _scan(query.workspace_root, query.file_path_regex):
        for sym in symbols:
            if sym.name != wanted and not sym.name.endswith(suffix):
                continue
            end = max(sym.end_line, sym.line)
            shown_end = min(end, sym.line + _MAX_DEFINITION_LINES - 1)
            body = [
                f"{n:>6}  {lines[n - 1]}" for n in range(sym.line, shown_end + 1)
            ]
            if shown_end < end:
                body.append(f"[{end - shown_end} more lines]")
            rendered.append(
                f"{rel_str}:{sym.line}-{end}: {sym.kind} {sym.name}\n" + "\n".join(body)
            )
            if len(rendered) >= _MAX_DEFINITIONS:
                return rendered
    return rendered


class QueryProcessor:
    """Answers ``SymbolQuery`` and ``DefinitionQuery`` requests on its own worker task."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Query | None] = asyncio.Queue()
        self._routes: dict[str, EventBus] = {}
        self._task: asyncio.Task | None = None
        self._stopped = False

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    def subscribe(self, session_id: str, bus: EventBus) -> None:
        self._routes[session_id] = bus

    def unsubscribe(self, session_id: str) -> None:
        self._routes.pop(session_id, None)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._task is None:
            self._stopped = False
            self._task = asyncio.create_task(self._worker())

    async def stop(self) -> None:
        """Set the shutdown flag; queries still queued are never answered."""
        self._stopped = True
        if self._task is not None:
            self._queue.put_nowait(None)
            await self._task
            self._task = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._stopped

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def submit(self, query: Query) -> None:
        if self._stopped:
            raise RuntimeError("Query processor has been stopped")
        self.start()
        self._queue.put_nowait(query)

    async def _worker(self) -> None:
        while not self._stopped:
            query = await self._queue.get()
            if query is None or self._stopped:
                break
            try:
                output = await asyncio.to_thread(query.run)
            except (re.error, OSError) as exc:
                self._deliver(query, error=str(exc))
                continue
            except Exception as exc:
                logger.exception("Code query %s failed", query.tool_call_id)
                self._deliver(query, error=f"Code query failed: {exc}")
                continue

            self._deliver(query, output=output)

    def _deliver(
        self,
        query: Query,
        output: str | None = None,
        error: str | None = None,
    ) -> None:
        if self._stopped:
            return
        bus = self._routes.get(query.session_id)
        if bus is None:
            logger.debug(
                "No subscriber for session %s, dropping result of %s",
                query.session_id,
                query.tool_call_id,
            )
            return
        bus.post(
            tool_result_available_event(
                query.session_id,
                query.tool_call_id,
                output=output,
                error=error,
                error_code=ErrorCode.DEFERRED_ERROR if error else None,
            )
        )
