"""
Workspace file tools.  All of them answer synchronously with ``Done``.

The write tools never overwrite a file wholesale: ``create_file`` refuses an
existing path and ``replace_lines`` edits a line range in place.
"""

from __future__ import annotations

import asyncio
import re
from pathlib import Path

from codeloop.tools import schema
from codeloop.tools.base import Done, Tool, ToolContext, ToolOutcome
from codeloop.tools.schema import Param, resolve_workspace_path

_MAX_GREP_MATCHES = 200
_MAX_READ_BYTES = 256 * 1024


class ReadFileTool(Tool):
    @property
    def name(self) -> str:
        return "read_file"

    @property
    def description(self) -> str:
        return "Read a text file from the workspace, optionally a line range, with line numbers."

    @property
    def parameters(self) -> dict[str, Param]:
        return {
            "path": schema.path("File to read, relative to the workspace root"),
            "start_line": schema.integer("First line (1-based)", minimum=1, required=False),
            "end_line": schema.integer("Last line, inclusive", minimum=1, required=False),
        }

    async def invoke(self, arguments: dict, ctx: ToolContext) -> ToolOutcome:
        target = resolve_workspace_path(ctx.workspace_root, arguments["path"])
        if not target.is_file():
            return Done(f"Not a file: {arguments['path']}")
        data = await asyncio.to_thread(target.read_bytes)
        truncated = len(data) > _MAX_READ_BYTES
        text = data[:_MAX_READ_BYTES].decode("utf-8", errors="replace")

        lines = text.splitlines()
        start = arguments.get("start_line", 1)
        end = arguments.get("end_line", len(lines))
        if start > end:
            return Done(f"start_line {start} is after end_line {end}")
        numbered = [
            f"{n:>6}  {line}"
            for n, line in enumerate(lines[start - 1 : end], start=start)
        ]
        if truncated:
            numbered.append(f"[truncated at {_MAX_READ_BYTES} bytes]")
        return Done("\n".join(numbered) if numbered else "(empty)")


class ListDirectoryTool(Tool):
    @property
    def name(self) -> str:
        return "list_directory"

    @property
    def description(self) -> str:
        return "List the entries of a workspace directory. Directories end with '/'."

    @property
    def parameters(self) -> dict[str, Param]:
        return {"path": schema.path("Directory, relative to the workspace root")}

    async def invoke(self, arguments: dict, ctx: ToolContext) -> ToolOutcome:
        target = resolve_workspace_path(ctx.workspace_root, arguments["path"])
        if not target.is_dir():
            return Done(f"Not a directory: {arguments['path']}")
        entries = sorted(
            f"{p.name}/" if p.is_dir() else p.name for p in target.iterdir()
        )
        return Done("\n".join(entries) if entries else "(empty directory)")


class GrepTool(Tool):
    @property
    def name(self) -> str:
        return "grep"

    @property
    def description(self) -> str:
        return (
            "Search files for a regular expression. Directories are searched "
            "recursively. Returns 'file:line: text' for each match."
        )

    @property
    def parameters(self) -> dict[str, Param]:
        return {
            "pattern": schema.pattern("Regular expression to search for"),
            "paths": schema.array(
                schema.path(),
                "Files or directories to search",
                min_items=1,
                max_items=20,
            ),
            "ignore_case": schema.boolean("Case-insensitive match", required=False),
        }

    async def invoke(self, arguments: dict, ctx: ToolContext) -> ToolOutcome:
        flags = re.IGNORECASE if arguments.get("ignore_case") else 0
        regex = re.compile(arguments["pattern"], flags)
        roots = [resolve_workspace_path(ctx.workspace_root, p) for p in arguments["paths"]]
        matches = await asyncio.to_thread(
            _grep, regex, roots, ctx.workspace_root.resolve()
        )
        if not matches:
            return Done(f"No matches found for pattern: {arguments['pattern']}")
        if len(matches) >= _MAX_GREP_MATCHES:
            matches.append(f"[stopped after {_MAX_GREP_MATCHES} matches]")
        return Done("\n".join(matches))


def _iter_files(root: Path):
    if root.is_file():
        yield root
        return
    for path in sorted(root.rglob("*")):
        hidden = any(part.startswith(".") for part in path.relative_to(root).parts)
        if path.is_file() and not hidden:
            yield path


def _grep(regex: re.Pattern, roots: list[Path], workspace: Path) -> list[str]:
    matches: list[str] = []
    for root in roots:
        for file in _iter_files(root):
            try:
                text = file.read_text(encoding="utf-8")
            except (UnicodeDecodeError, OSError):
                continue
            try:
                shown = file.relative_to(workspace).as_posix()
            except ValueError:
                shown = str(file)
            for lineno, line in enumerate(text.splitlines(), start=1):
                if regex.search(line):
                    matches.append(f"{shown}:{lineno}: {line.strip()}")
                    if len(matches) >= _MAX_GREP_MATCHES:
                        return matches
    return matches


class CreateFileTool(Tool):
    @property
    def name(self) -> str:
        return "create_file"

    @property
    def description(self) -> str:
        return (
            "Create a new text file in the workspace, including missing parent "
            "directories. Existing files are never overwritten."
        )

    @property
    def parameters(self) -> dict[str, Param]:
        return {
            "path": schema.new_path("File to create, relative to the workspace root"),
            "content": schema.string("Full text of the new file"),
        }

    async def invoke(self, arguments: dict, ctx: ToolContext) -> ToolOutcome:
        target = resolve_workspace_path(ctx.workspace_root, arguments["path"])
        if target.exists():
            return Done(
                f"File already exists: {arguments['path']}. "
                "Use replace_lines to edit it or pick another name."
            )
        content = arguments["content"]
        await asyncio.to_thread(_write_new, target, content)
        return Done(f"Created {arguments['path']} ({len(content.splitlines())} lines)")


class ReplaceLinesTool(Tool):
    @property
    def name(self) -> str:
        return "replace_lines"

    @property
    def description(self) -> str:
        return (
            "Replace lines start_line..end_line (inclusive) of a workspace file with "
            "text. Without end_line, text is inserted before start_line; use "
            "start_line = last line + 1 to append. Empty text deletes the range."
        )

    @property
    def parameters(self) -> dict[str, Param]:
        return {
            "path": schema.path("File to edit, relative to the workspace root"),
            "start_line": schema.integer("First line (1-based)", minimum=1),
            "end_line": schema.integer("Last line to replace, inclusive", minimum=1, required=False),
            "text": schema.string("Replacement text", required=False),
        }

    async def invoke(self, arguments: dict, ctx: ToolContext) -> ToolOutcome:
        target = resolve_workspace_path(ctx.workspace_root, arguments["path"])
        if not target.is_file():
            return Done(f"Not a file: {arguments['path']}")

        original = await asyncio.to_thread(target.read_text, encoding="utf-8")
        lines = original.splitlines()
        start = arguments["start_line"]
        end = arguments.get("end_line")
        new_lines = arguments.get("text", "").splitlines()

        if start > len(lines) + 1:
            return Done(f"start_line {start} is past the end of the file ({len(lines)} lines)")
        if end is None:
            removed = 0
            end = start - 1
        elif end < start:
            return Done(f"start_line {start} is after end_line {end}")
        elif end > len(lines):
            return Done(f"end_line {end} is past the end of the file ({len(lines)} lines)")
        else:
            removed = end - start + 1

        updated = lines[: start - 1] + new_lines + lines[end:]
        text = "\n".join(updated)
        if updated and (original.endswith("\n") or not original):
            text += "\n"
        await asyncio.to_thread(target.write_text, text, encoding="utf-8")
        return Done(
            f"Updated {arguments['path']}: {removed} lines removed, "
            f"{len(new_lines)} lines added at line {start}"
        )


def _write_new(target: Path, content: str) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    with target.open("x", encoding="utf-8") as fh:
        fh.write(content)
