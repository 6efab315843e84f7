"""
Main CLI application for codeloop-core.

Usage:
    codeloop [--log-level LEVEL] chat [--profile NAME] [--session ID]
    codeloop sessions list|show|delete
    codeloop tools list|info
    codeloop config show|validate
    codeloop version
"""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from codeloop.config import CodeloopConfig, load_config

app = typer.Typer(name="codeloop", help="codeloop - tool-using coding assistant")
sessions_app = typer.Typer(help="Session management")
tools_app = typer.Typer(help="Tool management")
config_app = typer.Typer(help="Configuration management")

app.add_typer(sessions_app, name="sessions")
app.add_typer(tools_app, name="tools")
app.add_typer(config_app, name="config")

console = Console()

VERSION = "0.1.0"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _get_config_path() -> Path | None:
    """Find config file in standard locations."""
    candidates = [
        Path.cwd() / "codeloop.yaml",
        Path.cwd() / "codeloop.yml",
        Path.home() / ".config" / "codeloop" / "config.yaml",
    ]
    for p in candidates:
        if p.is_file():
            return p
    return None


def _build_registry(cfg: CodeloopConfig, processor=None):
    """Register the built-in tools plus any allowed plugins."""
    from codeloop.tools.code_query import FindSymbolsTool, GotoDefinitionTool
    from codeloop.tools.files import (
        CreateFileTool,
        GrepTool,
        ListDirectoryTool,
        ReadFileTool,
        ReplaceLinesTool,
    )
    from codeloop.tools.registry import ToolRegistry

    registry = ToolRegistry()
    registry.register(ReadFileTool())
    registry.register(ListDirectoryTool())
    registry.register(GrepTool())
    registry.register(CreateFileTool())
    registry.register(ReplaceLinesTool())
    if processor is not None:
        registry.register(FindSymbolsTool(processor))
        registry.register(GotoDefinitionTool(processor))

    registry.load_plugins(
        enabled=cfg.plugins.enabled,
        allow_distributions=set(cfg.plugins.allow_distributions) or None,
        allow_tools=set(cfg.plugins.allow_tools) or None,
        processor=processor,
    )
    return registry


def _build_embedder(cfg: CodeloopConfig):
    from codeloop.session.embeddings import HashingEmbedder, OpenAICompatEmbedder

    if not cfg.embeddings.enabled:
        return None
    if cfg.embeddings.provider == "openai":
        return OpenAICompatEmbedder(
            url=cfg.embeddings.api_base or "https://api.openai.com/v1",
            model=cfg.embeddings.model,
            api_key=os.environ.get(cfg.embeddings.api_key_env, ""),
        )
    if cfg.embeddings.provider != "local":
        raise ValueError(f"Unknown embeddings provider: {cfg.embeddings.provider}")
    return HashingEmbedder(cfg.embeddings.dimensions)


async def _setup_stack(
    profile: str | None = None,
    session_id: str | None = None,
):
    """Wire up the full stack for chat."""
    from codeloop.cli.chat import ChatHandler
    from codeloop.llm.providers.openai_compat import OpenAICompatClient
    from codeloop.llm.retry import RetryPolicy
    from codeloop.llm.token_counter import TokenCounter
    from codeloop.orchestrator.core import SessionEngine
    from codeloop.prompts.system import build_system_prompt
    from codeloop.session.store import SessionStore
    from codeloop.tools.registry import validate_session_tools
    from codeloop.workspace.query import QueryProcessor

    cfg = load_config(_get_config_path(), profile=profile)

    # Session store
    store = SessionStore(cfg.session.history_db)
    await store.init()
    if session_id:
        if await store.get_session(session_id) is None:
            await store.close()
            raise ValueError(f"Unknown session: {session_id}")
    else:
        session_id = await store.create_session({"profile": profile or "default"})

    # Tools
    processor = QueryProcessor()
    registry = _build_registry(cfg, processor)
    validate_session_tools(registry, cfg.tools.disabled)

    # Completion client
    client = OpenAICompatClient(
        url=cfg.llm.api_base or "http://localhost:8080/v1",
        api_key=os.environ.get(cfg.llm.api_key_env, ""),
        timeout=float(cfg.llm.timeout_seconds),
        retry=RetryPolicy(
            initial_delay=cfg.llm.retry_initial_delay,
            max_elapsed=cfg.llm.retry_max_elapsed_seconds,
        ),
    )

    system_prompt = build_system_prompt(
        tools=registry.enabled(cfg.tools.disabled),
        workspace_root=cfg.session.workspace_path,
    )

    engine = SessionEngine(
        session_id,
        cfg,
        client,
        registry,
        store=store,
        embedder=_build_embedder(cfg),
        processor=processor,
        system_prompt=system_prompt,
        counter=TokenCounter(cfg.llm.model),
    )
    chat_handler = ChatHandler(engine, console=console)

    resumed = await engine.resume()
    if resumed:
        console.print(f"[dim]Resumed session {session_id} ({resumed} turns)[/dim]")
    else:
        console.print(f"[dim]Session {session_id}[/dim]")

    async def teardown() -> None:
        await engine.shutdown()
        await processor.stop()
        await client.aclose()
        await store.close()

    return chat_handler, teardown


def _open_store(cfg: CodeloopConfig):
    from codeloop.session.store import SessionStore

    return SessionStore(cfg.session.history_db)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@app.callback()
def main_options(
    log_level: str = typer.Option("WARNING", "--log-level", help="Logging level"),
):
    """codeloop - tool-using coding assistant."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.command()
def chat(
    profile: Optional[str] = typer.Option(None, help="Config profile name"),
    session: Optional[str] = typer.Option(None, "--session", help="Resume session ID"),
):
    """Start an interactive chat session."""

    async def _run():
        handler, teardown = await _setup_stack(profile, session)
        handler.engine.start()
        try:
            await handler.run_loop()
        finally:
            await teardown()

    try:
        asyncio.run(_run())
    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)


@sessions_app.command("list")
def sessions_list():
    """List all sessions."""

    async def _run():
        from codeloop.cli.output import OutputFormatter

        store = _open_store(load_config(_get_config_path()))
        await store.init()
        try:
            sessions = await store.list_sessions()
        finally:
            await store.close()
        OutputFormatter(console).format_session_list(sessions)

    asyncio.run(_run())


@sessions_app.command("show")
def sessions_show(session_id: str = typer.Argument(..., help="Session ID")):
    """Show the turns of a session."""

    async def _run():
        from codeloop.cli.output import OutputFormatter

        store = _open_store(load_config(_get_config_path()))
        await store.init()
        try:
            if await store.get_session(session_id) is None:
                console.print(f"[red]Session not found:[/red] {session_id}")
                return False
            turns = await store.get_turns(session_id)
        finally:
            await store.close()
        OutputFormatter(console).format_turns(turns)
        return True

    if not asyncio.run(_run()):
        raise typer.Exit(1)


@sessions_app.command("delete")
def sessions_delete(session_id: str = typer.Argument(..., help="Session ID")):
    """Delete a session."""

    async def _run():
        store = _open_store(load_config(_get_config_path()))
        await store.init()
        try:
            await store.delete_session(session_id)
        finally:
            await store.close()
        console.print(f"Deleted session: {session_id}")

    asyncio.run(_run())


@tools_app.command("list")
def tools_list():
    """List registered tools."""
    from codeloop.cli.output import OutputFormatter
    from codeloop.workspace.query import QueryProcessor

    cfg = load_config(_get_config_path())
    registry = _build_registry(cfg, QueryProcessor())
    OutputFormatter(console).format_tool_list(registry.list(), set(cfg.tools.disabled))


@tools_app.command("info")
def tools_info(tool_name: str = typer.Argument(..., help="Tool name")):
    """Show tool details and schema."""
    from codeloop.cli.output import OutputFormatter
    from codeloop.workspace.query import QueryProcessor

    cfg = load_config(_get_config_path())
    registry = _build_registry(cfg, QueryProcessor())
    tool = registry.get(tool_name)
    if not tool:
        console.print(f"[red]Tool not found:[/red] {tool_name}")
        raise typer.Exit(1)

    OutputFormatter(console).format_tool_info(tool)


@config_app.command("show")
def config_show():
    """Show effective config."""
    from codeloop.cli.output import OutputFormatter

    cfg = load_config(_get_config_path())
    OutputFormatter(console).format_config(cfg.to_dict())


@config_app.command("validate")
def config_validate():
    """Validate config and the disabled-tools list."""
    from codeloop.tools.registry import validate_session_tools
    from codeloop.workspace.query import QueryProcessor

    config_path = _get_config_path()
    try:
        cfg = load_config(config_path)
        validate_session_tools(_build_registry(cfg, QueryProcessor()), cfg.tools.disabled)
        _build_embedder(cfg)
    except Exception as e:
        console.print(f"[red]Config validation failed:[/red] {e}")
        raise typer.Exit(1)

    console.print("[green]Config is valid.[/green]")
    if config_path:
        console.print(f"  Loaded from: {config_path}")
    else:
        console.print("  [dim]No config file found, using defaults.[/dim]")
    console.print(f"  LLM: {cfg.llm.name} ({cfg.llm.model})")
    count = cfg.session.retrieval_count
    retrieval = "off" if not cfg.session.retrieval_augmentation else (
        "full history" if count is None else f"nearest {count}"
    )
    console.print(f"  Retrieval: {retrieval}")
    console.print(f"  Disabled tools: {', '.join(cfg.tools.disabled) or 'none'}")
    console.print(f"  Plugins enabled: {cfg.plugins.enabled}")


@app.command()
def version():
    """Show version."""
    console.print(f"codeloop-core v{VERSION}")


def main():
    app()


if __name__ == "__main__":
    main()
