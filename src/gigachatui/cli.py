"""CLI interface for gigachatui with streaming output."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import sys
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Awaitable

import click
import yaml
from prompt_toolkit import PromptSession
from prompt_toolkit.history import FileHistory
from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape
from rich.table import Table

from gigachatui import __version__
from gigachatui.auth.credentials import CredentialSupply
from gigachatui.chat import ChatService
from gigachatui.config import ChatConfig, load_config
from gigachatui.errors import CredentialError, GigaChatError
from gigachatui.llm.engine import CompletionEngine
from gigachatui.storage.store import Session, SessionStore
from gigachatui.types import Role

console = Console()


@dataclass
class ReplState:
    chat: ChatService
    session: Session


def echo_fragment(delta: str) -> None:
    console.print(delta, end="", markup=False, highlight=False, soft_wrap=True)


async def watch_rotation_errors(credentials: CredentialSupply) -> None:
    """Report background token rotation failures without stopping the REPL."""
    while True:
        error = await credentials.errors.get()
        console.print(f"[yellow]Token rotation failed, using current token: {escape(str(error))}[/yellow]")


def handle_command(user_input: str, state: ReplState) -> bool | str:
    """Handle a slash command.  Returns "quit", True if handled, else False."""
    parts = user_input.split(maxsplit=1)
    command = parts[0].lower()
    arg = parts[1].strip() if len(parts) > 1 else ""

    if command in ("/quit", "/exit"):
        return "quit"

    elif command == "/sessions":
        sessions = state.chat.store.read_sessions()
        if not sessions:
            console.print("[dim]No sessions yet.[/dim]")
            return True
        table = Table(title="Sessions")
        table.add_column("ID", style="dim")
        table.add_column("Name")
        table.add_column("Created")
        for s in sessions:
            marker = " *" if s.id == state.session.id else ""
            created = datetime.fromtimestamp(s.created_at).strftime("%Y-%m-%d %H:%M")
            table.add_row(s.id, f"{s.name}{marker}", created)
        console.print(table)
        return True

    elif command == "/history":
        messages = state.chat.history(state.session.id)
        if not messages:
            console.print("[dim]No messages in this session.[/dim]")
        for m in messages:
            if m.role == Role.USER:
                console.print(f"[bold green]you:[/bold green] {escape(m.content)}")
            else:
                console.print(f"[bold cyan]{m.role.value}:[/bold cyan]")
                console.print(Markdown(m.content))
        return True

    elif command == "/new":
        if not arg:
            console.print("[yellow]Usage: /new <name>[/yellow]")
            return True
        state.session = state.chat.new_session(arg)
        console.print(f"[green]Started session {state.session.name} ({state.session.id})[/green]")
        return True

    elif command == "/help":
        console.print("""
[bold]Commands:[/bold]
  /sessions        - List stored sessions
  /history         - Show messages of the current session
  /new <name>      - Start a new session
  /quit            - Exit
        """)
        return True

    return False


async def open_session(
    chat: ChatService,
    prompt: PromptSession,
    session_id: str | None,
    name: str | None,
) -> Session:
    if session_id:
        session = chat.store.get_session(session_id)
        if session is None:
            raise click.ClickException(f"Unknown session: {session_id}")
        console.print(f"[dim]Resumed session {session.name} ({session.id})[/dim]")
        return session

    while not name:
        name = (await prompt.prompt_async("Enter a chat name: ")).strip()
    return chat.new_session(name)


async def run_repl(
    config: ChatConfig,
    session_id: str | None,
    name: str | None,
    verbose: bool,
) -> None:
    store = SessionStore(config.storage.db_path)
    try:
        try:
            credentials = await CredentialSupply.create(config.auth)
        except CredentialError as e:
            raise click.ClickException(str(e)) from e
        credentials.start()
        watcher = asyncio.create_task(watch_rotation_errors(credentials))
        engine = CompletionEngine(credentials, config.api)
        chat = ChatService(engine, store)

        history_path = Path("~/.gigachatui/history").expanduser()
        history_path.parent.mkdir(parents=True, exist_ok=True)
        prompt = PromptSession(history=FileHistory(str(history_path)))

        try:
            state = ReplState(
                chat=chat, session=await open_session(chat, prompt, session_id, name),
            )
            console.print("[dim]Type /help for commands[/dim]\n")
            await _loop(state, prompt, verbose)
        finally:
            watcher.cancel()
            await credentials.stop("cli exit")
            await engine.aclose()
    finally:
        store.close()


async def run_turn(turn: Awaitable[object]) -> bool:
    """Await one chat turn with Ctrl-C bound to cancelling just that turn.

    Returns False if the turn was interrupted.
    """
    loop = asyncio.get_running_loop()
    task = asyncio.ensure_future(turn)
    interrupted = False

    def interrupt() -> None:
        nonlocal interrupted
        interrupted = True
        task.cancel()

    try:
        loop.add_signal_handler(signal.SIGINT, interrupt)
    except NotImplementedError:
        pass  # no loop signal handlers on Windows, Ctrl-C exits as before
    try:
        await task
    except asyncio.CancelledError:
        if not interrupted:
            raise
        return False
    finally:
        with contextlib.suppress(NotImplementedError):
            loop.remove_signal_handler(signal.SIGINT)
    return True


async def _loop(state: ReplState, prompt: PromptSession, verbose: bool) -> None:
    while True:
        try:
            user_input = (await prompt.prompt_async("❯ ")).strip()
        except (EOFError, KeyboardInterrupt):
            console.print("\n[dim]Goodbye![/dim]")
            return

        if not user_input:
            continue

        if user_input.startswith("/"):
            result = handle_command(user_input, state)
            if result == "quit":
                console.print("[dim]Goodbye![/dim]")
                return
            if result:
                continue

        start = time.monotonic()
        try:
            completed = await run_turn(
                state.chat.ask(state.session.id, user_input, on_fragment=echo_fragment),
            )
            if completed:
                console.print(f"\n[dim]({time.monotonic() - start:.1f}s)[/dim]\n")
            else:
                console.print("\n[yellow]Interrupted, nothing saved.[/yellow]\n")
        except GigaChatError as e:
            console.print(f"\n[red]Error: {escape(str(e))}[/red]")
            if verbose:
                console.print_exception()


@click.command()
@click.option("--config", "-c", "config_path", default=None,
              help="Path to gigachatui.yaml (auto-detected from CWD or ~/.config/gigachatui/)")
@click.option("--session", "-s", "session_id", default=None, help="Resume a stored session by id")
@click.option("--name", "-n", default=None, help="Name for a new session")
@click.option("--model", "-m", default=None, help="Model name (GigaChat, GigaChat-Pro)")
@click.option("--verbose", "-v", is_flag=True, help="Verbose logging")
@click.version_option(__version__)
def main(config_path: str | None, session_id: str | None, name: str | None,
         model: str | None, verbose: bool):
    """gigachatui - chat with GigaChat from the terminal."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)

    try:
        config = load_config(config_path)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        raise click.ClickException(f"Config error: {e}") from e
    if model:
        config.api.model = model
    if not config.auth.has_credentials:
        raise click.ClickException(
            "GIGACHAT_CLIENT_ID and GIGACHAT_CLIENT_SECRET must be set "
            "(environment or auth section of the config)"
        )

    console.print(f"[bold bright_blue]gigachatui[/bold bright_blue] [dim]v{__version__}[/dim]")
    console.print(f"[dim]Model: {config.api.model} @ {config.api.base_url}[/dim]")

    try:
        asyncio.run(run_repl(config, session_id, name, verbose))
    except KeyboardInterrupt:
        console.print("\n[dim]Goodbye![/dim]")
        sys.exit(130)


if __name__ == "__main__":
    main()
