"""System prompt builder."""

from __future__ import annotations

from pathlib import Path

from codeloop.tools.base import Tool


def build_system_prompt(
    tools: list[Tool] | None = None,
    workspace_root: Path | None = None,
    extra_sections: list[str] | None = None,
) -> str:
    """
    Build the content of the session's system turn.

    Assembles the role statement, tool discipline, output conventions and
    the list of enabled tools into a single prompt string.
    """
    sections: list[str] = []

    sections.append(
        "You are a coding assistant working inside a software project. "
        "Your tools let you inspect and edit the workspace and look up where "
        "symbols are defined. Use them to ground every answer in the actual "
        "code instead of guessing."
    )

    sections.append(TOOL_DISCIPLINE_SECTION)
    sections.append(CONVENTIONS_SECTION)

    if tools:
        tool_lines = [f"- **{t.name}**: {t.description}" for t in tools]
        sections.append("## Available Tools\n\n" + "\n".join(tool_lines))

    if workspace_root is not None:
        sections.append(
            f"## Workspace\n\nThe workspace root is `{workspace_root}`. "
            "Path arguments are relative to it and may not leave it."
        )

    if extra_sections:
        sections.extend(extra_sections)

    return "\n\n".join(sections)


TOOL_DISCIPLINE_SECTION = """## Tool Discipline

- Look before you answer: read the relevant files or search for the symbol first.
- Only pass arguments that match the tool's parameter schema.
- Several independent tool calls may be issued in one turn; each gets its own result.
- Some tools answer later than others. Wait for every result before concluding.
- If a tool returns an error, read it, correct the call, and do not repeat it unchanged.
- Read the lines you are about to change with read_file right before calling replace_lines; line numbers shift after every edit."""

CONVENTIONS_SECTION = """## Output Conventions

- Refer to code as `path:line`.
- Quote only the lines that matter, in fenced code blocks.
- Lead with the answer, then the evidence.
- Say so when the code you found does not settle the question."""
