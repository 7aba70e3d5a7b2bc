"""CLI commands for obsmem."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, TypeVar

import typer

from obsmem import __version__
from obsmem.agent.command_handler import OMCommandHandler
from obsmem.agent.engine import ObservationalMemoryEngine
from obsmem.agent.host import Message, NotifyLevel, TurnEndEvent
from obsmem.logging import setup_logging
from obsmem.memory.retrieval import MEMORY_CONTEXT_TYPE
from obsmem.session.manager import LocalHostContext, LocalUI, SessionLog

T = TypeVar("T")

DEFAULT_SESSION_PATH = Path(".obsmem") / "session.jsonl"

app = typer.Typer(
    name="obsmem",
    help="Observational memory for long coding-agent sessions.",
    no_args_is_help=True,
)


@dataclass
class CliState:
    session_path: Path = DEFAULT_SESSION_PATH


def _echo(message: str, level: NotifyLevel) -> None:
    if level == "info":
        typer.echo(message)
    else:
        typer.echo(f"[{level}] {message}", err=True)


def _edit(initial: str) -> str | None:
    return typer.edit(initial, extension=".json")


def _run(state: CliState, work: Callable[[ObservationalMemoryEngine, LocalHostContext], Awaitable[T]]) -> T:
    """Load the session log, start the engine on it, run *work*, and wait for background runs."""

    async def _main() -> T:
        log = SessionLog(state.session_path)
        host = LocalHostContext(log, ui=LocalUI(echo=_echo, edit=_edit))
        engine = ObservationalMemoryEngine()
        host.before_compact = engine.on_before_compact
        engine.load_state(host)
        try:
            return await work(engine, host)
        finally:
            await engine.coordinator.drain()
            await host.drain()

    return asyncio.run(_main())


def version_callback(value: bool) -> None:
    if value:
        typer.echo(f"obsmem v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    session: Path = typer.Option(DEFAULT_SESSION_PATH, "--session", "-s", help="Session JSONL file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging to stderr"),
    version: bool = typer.Option(
        False, "--version", callback=version_callback, is_eager=True, help="Show version and exit"
    ),
) -> None:
    setup_logging("DEBUG" if verbose else "WARNING")
    ctx.obj = CliState(session_path=session)


@app.command()
def status(ctx: typer.Context) -> None:
    """Show memory status for the session."""

    async def _work(engine: ObservationalMemoryEngine, host: LocalHostContext) -> None:
        typer.echo(await engine.status_text())

    _run(ctx.obj, _work)


@app.command()
def show(ctx: typer.Context) -> None:
    """Print observations, current task and suggested response."""

    async def _work(engine: ObservationalMemoryEngine, host: LocalHostContext) -> None:
        typer.echo(engine.observations_text())

    _run(ctx.obj, _work)


@app.command()
def observe(
    ctx: typer.Context,
    no_compact: bool = typer.Option(False, "--no-compact", help="Do not compact the session afterwards"),
) -> None:
    """Observe all pending turns now."""

    async def _work(engine: ObservationalMemoryEngine, host: LocalHostContext) -> bool:
        return await engine.observe_now(host, compact=not no_compact)

    if not _run(ctx.obj, _work):
        raise typer.Exit(1)


@app.command()
def reflect(
    ctx: typer.Context,
    aggressive: bool = typer.Option(False, "--aggressive", help="Target a 40-60% reduction"),
) -> None:
    """Condense the observation log now."""

    async def _work(engine: ObservationalMemoryEngine, host: LocalHostContext) -> bool:
        result = await engine.reflect_now(host, aggressive=aggressive)
        return result.ok

    if not _run(ctx.obj, _work):
        raise typer.Exit(1)


@app.command()
def clear(
    ctx: typer.Context,
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
) -> None:
    """Reset memory for the session scope."""
    if not yes:
        typer.confirm("Clear observational memory for this scope?", abort=True)

    async def _work(engine: ObservationalMemoryEngine, host: LocalHostContext) -> None:
        await engine.clear(host)

    _run(ctx.obj, _work)


@app.command()
def config(
    ctx: typer.Context,
    action: str = typer.Argument("", help="'reload' or 'edit'"),
) -> None:
    """Show, reload or edit the configuration."""
    if action and action not in ("reload", "edit"):
        typer.echo(f"Unknown action: {action}", err=True)
        raise typer.Exit(2)

    async def _work(engine: ObservationalMemoryEngine, host: LocalHostContext) -> None:
        await OMCommandHandler(engine).handle(f"/om-config {action}", host)

    _run(ctx.obj, _work)


@app.command("add-turn")
def add_turn(
    ctx: typer.Context,
    role: str = typer.Option("user", "--role", "-r", help="Message role"),
    text: str = typer.Option(..., "--text", "-t", help="Message text"),
) -> None:
    """Append a message to the session and buffer it for observation."""

    async def _work(engine: ObservationalMemoryEngine, host: LocalHostContext) -> None:
        entry = host.log.append_message(role, text)
        turn_index = len(host.log.message_entries())
        event = TurnEndEvent(type="turn_end", turn_index=turn_index, message=entry["message"])
        await engine.on_turn_end(event, host)
        typer.echo(engine.status_line())

    _run(ctx.obj, _work)


@app.command()
def render(
    ctx: typer.Context,
    query: str = typer.Option("", "--query", "-q", help="Extra user text to rank relevant observations"),
) -> None:
    """Print the memory payload that would be injected into the next prompt."""

    async def _work(engine: ObservationalMemoryEngine, host: LocalHostContext) -> None:
        messages = host.log.messages()
        if query:
            messages.append(Message(role="user", content=query))
        out = await engine.on_context({"type": "context", "messages": messages}, host)
        payload = next((m["content"] for m in out if m.get("custom_type") == MEMORY_CONTEXT_TYPE), None)
        typer.echo(payload if payload is not None else "(no observations)")

    _run(ctx.obj, _work)


@app.command()
def command(
    ctx: typer.Context,
    text: str = typer.Argument(..., help="An /om-* command line, e.g. '/om-reflect --aggressive'"),
) -> None:
    """Run an /om-* command as a host would."""

    async def _work(engine: ObservationalMemoryEngine, host: LocalHostContext) -> bool:
        return await OMCommandHandler(engine).handle(text, host)

    if not _run(ctx.obj, _work):
        typer.echo(f"Not an observational memory command: {text}", err=True)
        raise typer.Exit(2)
