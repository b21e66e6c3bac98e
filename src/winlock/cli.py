"""Command line entry point for Winlock."""

from __future__ import annotations

import asyncio
import json
import signal
from contextlib import suppress
from pathlib import Path
from typing import Annotated, Any, NoReturn

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from winlock.capability import build_workspace_server
from winlock.config import Settings, load_settings
from winlock.errors import ConfigError
from winlock.logging_utils import configure_logging
from winlock.runtime import SessionRuntime
from winlock.session import Session, new_session_id
from winlock.transcript import (
    BackendTurn,
    FileTranscriptStore,
    PromptTurn,
    SessionRecord,
    TerminalTurn,
    ToolError,
    ToolResultTurn,
    Turn,
)
from winlock.types import SessionState

PREVIEW_CHARS = 400
EXIT_CODES = {SessionState.COMPLETED: 0, SessionState.FAILED: 1, SessionState.CANCELLED: 130}

app = typer.Typer(name="winlock", help="Agentic coding assistant", add_completion=False, rich_markup_mode="rich")
sessions_app = typer.Typer(help="Manage stored sessions")
app.add_typer(sessions_app, name="sessions")

console = Console()

WorkspaceOption = Annotated[
    Path | None, typer.Option("--workspace", "-w", help="Workspace directory (defaults to the current directory)")
]


def _settings() -> Settings:
    try:
        settings = load_settings()
    except ConfigError as exc:
        _fail(str(exc))
    configure_logging(level=settings.log_level)
    return settings


def _workspace(workspace: Path | None) -> Path:
    return (workspace or Path.cwd()).resolve()


def _fail(message: str) -> NoReturn:
    console.print(f"[bold red]Error:[/bold red] {escape(message)}")
    raise typer.Exit(2)


@app.command()
def run(
    prompt: Annotated[str, typer.Argument(help="Task for the assistant")],
    workspace: WorkspaceOption = None,
    model: Annotated[str | None, typer.Option("--model", "-m", help="provider:model override")] = None,
    backend: Annotated[str | None, typer.Option("--backend", "-b", help="Backend name (republic, echo)")] = None,
    session_id: Annotated[str | None, typer.Option("--session-id", help="Id for the new session")] = None,
) -> None:
    """Start a new session and drive it to completion."""
    settings = _settings()
    workspace_path = _workspace(workspace)
    store = FileTranscriptStore(settings.resolve_home(), workspace_path)
    try:
        config = settings.session_config(workspace_path, model=model, backend=backend)
        runtime = SessionRuntime(config)
        new_id = session_id or new_session_id()
        session = Session.new(config, prompt, transcript=store.create(new_id), session_id=new_id)
    except ConfigError as exc:
        _fail(str(exc))
    except FileExistsError:
        _fail(f"session {new_id} already exists")

    console.print(f"[dim]session {session.id} · {config.backend} · {workspace_path}[/dim]")
    _render_turn(session.transcript.snapshot()[0])
    state = asyncio.run(_drive(runtime, session))
    raise typer.Exit(EXIT_CODES[state])


@app.command()
def resume(
    session_id: Annotated[str, typer.Argument(help="Session to continue")],
    workspace: WorkspaceOption = None,
    model: Annotated[str | None, typer.Option("--model", "-m", help="provider:model override")] = None,
    backend: Annotated[str | None, typer.Option("--backend", "-b", help="Backend name (republic, echo)")] = None,
) -> None:
    """Continue an unfinished session from its stored transcript."""
    settings = _settings()
    workspace_path = _workspace(workspace)
    store = FileTranscriptStore(settings.resolve_home(), workspace_path)
    try:
        transcript = store.load(session_id)
    except ConfigError as exc:
        _fail(str(exc))
    if transcript is None:
        _fail(f"session {session_id} not found in {workspace_path}")
    terminal = transcript.terminal_state()
    if terminal is not None:
        _fail(f"session {session_id} already ended as {terminal.value}")
    try:
        config = settings.session_config(workspace_path, model=model, backend=backend)
        runtime = SessionRuntime(config)
    except ConfigError as exc:
        _fail(str(exc))

    session = Session(config=config, transcript=transcript, id=session_id)
    console.print(f"[dim]resuming {session_id} at turn {len(transcript)}[/dim]")
    state = asyncio.run(_drive(runtime, session))
    raise typer.Exit(EXIT_CODES[state])


@app.command()
def tools(workspace: WorkspaceOption = None) -> None:
    """List the merged tool catalog of the configured servers."""
    settings = _settings()
    try:
        config = settings.session_config(_workspace(workspace), backend="echo")
        runtime = SessionRuntime(config)
    except ConfigError as exc:
        _fail(str(exc))
    rows = asyncio.run(_catalog(runtime))

    table = Table("tool", "server", "description")
    for name, server, description in rows:
        table.add_row(name, server, description)
    console.print(table)


@app.command("serve-tools")
def serve_tools(workspace: WorkspaceOption = None) -> None:
    """Serve the builtin workspace tools over stdin/stdout."""
    _settings()
    server = build_workspace_server(_workspace(workspace))
    with suppress(KeyboardInterrupt):
        asyncio.run(server.serve_stdio())


@sessions_app.command("list")
def sessions_list(workspace: WorkspaceOption = None) -> None:
    """List sessions recorded for the workspace."""
    settings = _settings()
    store = FileTranscriptStore(settings.resolve_home(), _workspace(workspace))
    _print_sessions(store.list_sessions(), with_workspace=False)


@sessions_app.command("list-all")
def sessions_list_all() -> None:
    """List sessions of every workspace."""
    settings = _settings()
    store = FileTranscriptStore(settings.resolve_home(), Path.cwd())
    _print_sessions(store.list_all_sessions(), with_workspace=True)


@sessions_app.command("remove")
def sessions_remove(
    session_id: Annotated[str, typer.Argument(help="Session to delete")],
    workspace: WorkspaceOption = None,
) -> None:
    """Delete a stored session of the workspace."""
    settings = _settings()
    store = FileTranscriptStore(settings.resolve_home(), _workspace(workspace))
    if not store.remove(session_id):
        _fail(f"session {session_id} not found")
    console.print(f"removed {session_id}")


async def _drive(runtime: SessionRuntime, session: Session) -> SessionState:
    loop = asyncio.get_running_loop()
    with suppress(NotImplementedError, RuntimeError):
        loop.add_signal_handler(signal.SIGINT, runtime.cancel, session)
    try:
        async with runtime:
            async for turn in runtime.run(session):
                _render_turn(turn)
    finally:
        with suppress(NotImplementedError, RuntimeError):
            loop.remove_signal_handler(signal.SIGINT)
    return session.state


async def _catalog(runtime: SessionRuntime) -> list[tuple[str, str, str]]:
    async with runtime:
        rows = []
        for spec in runtime.dispatcher.catalog():
            owner = runtime.dispatcher.route(spec.name)
            rows.append((spec.name, owner.name if owner else "-", spec.description))
        return rows


def _render_turn(turn: Turn) -> None:
    if isinstance(turn, PromptTurn):
        console.print(f"[bold cyan]prompt:[/bold cyan] {escape(turn.text)}")
    elif isinstance(turn, BackendTurn):
        if turn.content:
            console.print(f"[bold yellow]assistant:[/bold yellow] {escape(turn.content)}")
        for call in turn.tool_calls:
            arguments = json.dumps(call.arguments, ensure_ascii=False, sort_keys=True)
            console.print(f"[magenta]→ {call.name}[/magenta] [dim]{call.id}[/dim] {escape(_preview(arguments))}")
    elif isinstance(turn, ToolResultTurn):
        for outcome in turn.outcomes:
            if isinstance(outcome, ToolError):
                console.print(f"[red]✗ {outcome.call_id} {outcome.kind.value}:[/red] {escape(_preview(outcome.message))}")
            else:
                console.print(f"[green]✓ {outcome.call_id}[/green] {escape(_preview(_text(outcome.content)))}")
    elif isinstance(turn, TerminalTurn):
        style = {SessionState.COMPLETED: "green", SessionState.CANCELLED: "yellow"}.get(turn.state, "red")
        detail = escape(f" ({turn.error_kind}: {turn.message})") if turn.error_kind else ""
        console.print(f"[bold {style}]{turn.state.value}[/bold {style}]{detail}")


def _print_sessions(records: list[SessionRecord], *, with_workspace: bool) -> None:
    if not records:
        console.print("no sessions")
        return
    columns = ["session", "created", "turns", "state"]
    if with_workspace:
        columns.insert(1, "workspace")
    table = Table(*columns)
    for record in records:
        row = [record.session_id, record.created_at, str(record.turns), record.state.value if record.state else "open"]
        if with_workspace:
            row.insert(1, str(record.workspace))
        table.add_row(*row)
    console.print(table)


def _text(content: Any) -> str:
    return content if isinstance(content, str) else json.dumps(content, ensure_ascii=False, sort_keys=True)


def _preview(text: str) -> str:
    text = text.replace("\n", " | ")
    return text if len(text) <= PREVIEW_CHARS else text[: PREVIEW_CHARS - 3] + "..."


def main() -> None:
    app(prog_name="winlock")


if __name__ == "__main__":
    main()
