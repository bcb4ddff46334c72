"""deepchat CLI: Typer + Rich terminal interface.

Commands: setup, models, chat, threads, prefs, serve.
All output is Rich-powered with color-coded panels and tables.
"""

from __future__ import annotations

import asyncio
import getpass
import logging
import os
from collections.abc import Awaitable, Callable
from typing import TypeVar

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from deepchat import __version__
from deepchat.errors import DeepchatError, NotFoundError
from deepchat.keys import API_KEY_ENV, load_keys_env
from deepchat.persistence.store import ChatStore, open_chat_store
from deepchat.providers.registry import load_chat_config, load_models
from deepchat.schemas.config import ChatConfig
from deepchat.schemas.preferences import Language, ThemeMode

# Load API keys from ~/.deepchat/keys.env and .env on startup
load_keys_env()

console = Console()

T = TypeVar("T")

# ── App and sub-apps ─────────────────────────────────────────────

app = typer.Typer(
    name="deepchat",
    help="Streaming terminal chat for DeepSeek models.",
    no_args_is_help=False,
    rich_markup_mode="rich",
)

threads_app = typer.Typer(
    name="threads",
    help="List, rename and delete chat threads.",
    no_args_is_help=True,
)
app.add_typer(threads_app, name="threads")

prefs_app = typer.Typer(
    name="prefs",
    help="Show and change your preferences.",
    no_args_is_help=True,
)
app.add_typer(prefs_app, name="prefs")


# ── Version callback ───────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"deepchat {__version__}")
        raise typer.Exit()


def _setup_logging(verbose: bool) -> None:
    """Send deepchat debug logs to stderr through Rich when --verbose is set."""
    if not verbose:
        return
    package_logger = logging.getLogger("deepchat")
    if not any(isinstance(h, RichHandler) for h in package_logger.handlers):
        package_logger.addHandler(
            RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_path=False)
        )
    package_logger.setLevel(logging.DEBUG)


# ── App Callback ────────────────────────────────────────────────


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    version: bool = typer.Option(
        False, "--version", "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    user: str = typer.Option(
        None, "--user", "-u",
        envvar="DEEPCHAT_USER",
        help="User id that owns threads and preferences (defaults to your login name).",
    ),
    db: str = typer.Option(
        None, "--db",
        envvar="DEEPCHAT_DB",
        help="SQLite database path (overrides defaults.toml).",
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v",
        help="Show debug logging.",
    ),
) -> None:
    """deepchat: stream chats with DeepSeek models and keep them in threads."""
    _setup_logging(verbose)
    ctx.obj = {"user": user or _default_user(), "db": db}
    if ctx.invoked_subcommand is None:
        ctx.invoke(chat, ctx=ctx, thread_id=None)


# ── Helpers ──────────────────────────────────────────────────────


def _default_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "local"


def _load_registry():
    """Load the model registry, exit on error."""
    try:
        return load_models()
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Error loading models:[/red] {e}")
        raise typer.Exit(1) from None


def _load_config() -> ChatConfig:
    """Load chat defaults, exit on error."""
    try:
        return load_chat_config()
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Error loading config:[/red] {e}")
        raise typer.Exit(1) from None


def _context(ctx: typer.Context) -> dict:
    obj = ctx.obj or {}
    return {"user": obj.get("user") or _default_user(), "db": obj.get("db")}


def _with_store(ctx: typer.Context, action: Callable[[ChatStore], Awaitable[T]]) -> T:
    """Open the user's store, run ``action`` and close it again.

    Storage failures exit with status 1.
    """
    settings = _context(ctx)
    config = _load_config()

    async def _run() -> T:
        store = await open_chat_store(
            settings["db"] or config.db_path,
            settings["user"],
            max_page_count=config.max_page_count,
        )
        try:
            return await action(store)
        finally:
            await store.close()

    try:
        return asyncio.run(_run())
    except DeepchatError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from None


async def _resolve_thread_id(store: ChatStore, prefix: str) -> str:
    """Expand an id prefix to the full id of one of the user's threads."""
    matches = [t.id for t in await store.threads.list_threads() if t.id.startswith(prefix)]
    if len(matches) == 1:
        return matches[0]
    if not matches:
        raise NotFoundError(f"Thread not found: {prefix}")
    raise NotFoundError(f"Thread id '{prefix}' is ambiguous ({len(matches)} matches)")


# ── deepchat setup ───────────────────────────────────────────────


@app.command()
def setup(
    check: bool = typer.Option(
        False, "--check",
        help="Validate the existing key without prompting",
    ),
    reset: bool = typer.Option(
        False, "--reset",
        help="Clear the saved key and re-run setup",
    ),
) -> None:
    """Configure your DeepSeek API key.

    Prompts for the key, validates it, and saves it to ~/.deepchat/keys.env.
    """
    from rich.prompt import Prompt

    from deepchat.keys import KEYS_FILE, SIGNUP_URL, clear_keys, save_keys, validate_key

    if check:
        _setup_check()
        return

    if reset:
        if clear_keys():
            console.print(f"[dim]Cleared {KEYS_FILE}[/dim]\n")
        else:
            console.print("[dim]No saved key to clear.[/dim]\n")
        os.environ.pop(API_KEY_ENV, None)

    console.print()
    banner = Text()
    banner.append("  deepchat ", style="bold #00ff88")
    banner.append(f"v{__version__}", style="#6a8a6a")
    banner.append("   First-time setup\n", style="#6a8a6a")
    console.print(banner)
    console.print(f"  Get a key: [link={SIGNUP_URL}]{SIGNUP_URL}[/link]\n")

    existing = os.environ.get(API_KEY_ENV, "")
    if existing:
        console.print(f"  {API_KEY_ENV}: [green]already set in environment[/green]")
        key = existing
    else:
        key = Prompt.ask(f"  {API_KEY_ENV}", default="", show_default=False, console=console).strip()

    if not key:
        console.print("  [red]No API key provided.[/red]")
        console.print("  Run [bold]deepchat setup[/bold] again when you have a key.\n")
        raise typer.Exit(1) from None

    with console.status("[bold blue]Validating key...", spinner="dots"):
        ok, detail = asyncio.run(validate_key(key))

    if ok:
        console.print(f"  [green]✓ {detail}[/green]")
    else:
        console.print(f"  [red]✗ {detail}[/red]")
        console.print(
            "  [yellow]Warning:[/yellow] the key is saved but may not work."
        )

    saved_path = save_keys({API_KEY_ENV: key})
    os.environ[API_KEY_ENV] = key
    console.print(f"\n  Key saved to: [bold]{saved_path}[/bold]")
    console.print("  Run [bold]deepchat chat[/bold] to start.\n")


def _setup_check() -> None:
    """Validate the existing key without prompting (--check flag)."""
    from deepchat.keys import get_api_key, validate_key

    key = get_api_key()
    if not key:
        console.print(
            "[dim]No API key configured.[/dim] "
            "Run [bold]deepchat setup[/bold] to get started."
        )
        raise typer.Exit(1) from None

    with console.status("[bold blue]Validating key...", spinner="dots"):
        ok, detail = asyncio.run(validate_key(key))

    if ok:
        console.print(f"DeepSeek [green]✓ {detail}[/green]")
    else:
        console.print(f"DeepSeek [red]✗ {detail}[/red]")
        raise typer.Exit(1) from None


# ── deepchat models ──────────────────────────────────────────────


@app.command()
def models() -> None:
    """Show all registered models as a table."""
    registry = _load_registry()
    config = _load_config()

    table = Table(title="Registered Models", show_lines=True)
    table.add_column("Key", style="bold cyan")
    table.add_column("Display Name")
    table.add_column("LiteLLM Model", style="dim")
    table.add_column("Context", justify="right")
    table.add_column("Reasoning", justify="center")

    for key, cfg in sorted(registry.items()):
        name = f"{cfg.display_name} [green](default)[/green]" if key == config.default_model else cfg.display_name
        table.add_row(
            key,
            name,
            cfg.model,
            f"{cfg.context_window:,}",
            "✓" if cfg.supports_thinking else "",
        )

    console.print(table)
    console.print(f"\n[dim]{len(registry)} models registered[/dim]")


# ── deepchat chat ────────────────────────────────────────────────


@app.command()
def chat(
    ctx: typer.Context,
    thread_id: str = typer.Argument(None, help="Thread id or prefix to continue (new thread when omitted)"),
) -> None:
    """Start an interactive chat, or continue an existing thread."""
    from deepchat.chat.window import litellm_factory
    from deepchat.keys import get_api_key
    from deepchat.local_store import LocalStore
    from deepchat.repl import ChatREPL

    config = _load_config()
    registry = _load_registry()
    api_key = get_api_key()
    if not api_key:
        console.print(
            "[yellow]No API key configured.[/yellow] "
            "Run [bold]deepchat setup[/bold], or set "
            f"[bold]{API_KEY_ENV}[/bold]."
        )

    async def _chat(store: ChatStore) -> None:
        resolved = await _resolve_thread_id(store, thread_id) if thread_id else None
        theme = await store.preferences.fetch_theme()
        repl = ChatREPL(
            store,
            config=config,
            registry=registry,
            provider_factory=litellm_factory(registry, timeout=config.timeout),
            api_key=api_key,
            local_store=LocalStore(config.local_store_path),
            thread_id=resolved,
            theme=theme,
            console=console,
        )
        await repl.run()

    _with_store(ctx, _chat)


# ── deepchat threads ─────────────────────────────────────────────


@threads_app.command("list")
def threads_list(
    ctx: typer.Context,
    limit: int = typer.Option(20, "--limit", "-n", help="Max threads to show"),
) -> None:
    """Show your threads, newest first."""
    from deepchat.cli_display import render_threads_table

    async def _list(store: ChatStore):
        return await store.threads.list_threads()

    threads = _with_store(ctx, _list)[:limit]
    if not threads:
        console.print("[dim]No threads found.[/dim]")
        return
    console.print(render_threads_table(threads))


@threads_app.command("rename")
def threads_rename(
    ctx: typer.Context,
    thread_id: str = typer.Argument(..., help="Thread id or prefix"),
    title: str = typer.Argument(..., help="New title"),
) -> None:
    """Change a thread's title."""

    async def _rename(store: ChatStore) -> str:
        resolved = await _resolve_thread_id(store, thread_id)
        await store.threads.update_title(resolved, title)
        return resolved

    resolved = _with_store(ctx, _rename)
    console.print(f"[green]Renamed:[/green] {resolved[:8]} → {title}")


@threads_app.command("delete")
def threads_delete(
    ctx: typer.Context,
    thread_id: str = typer.Argument(..., help="Thread id or prefix"),
    yes: bool = typer.Option(
        False, "--yes", "-y",
        help="Skip confirmation prompt",
    ),
) -> None:
    """Delete a thread and its messages."""
    if not yes:
        confirm = typer.confirm(
            f"Delete thread {thread_id}? This cannot be undone."
        )
        if not confirm:
            console.print("[dim]Cancelled.[/dim]")
            return

    async def _delete(store: ChatStore) -> bool:
        resolved = await _resolve_thread_id(store, thread_id)
        return await store.threads.delete_thread(resolved)

    if _with_store(ctx, _delete):
        console.print(f"[green]Thread deleted:[/green] {thread_id}")
    else:
        console.print(f"[red]Thread not found:[/red] {thread_id}")
        raise typer.Exit(1) from None


# ── deepchat prefs ───────────────────────────────────────────────


@prefs_app.command("show")
def prefs_show(ctx: typer.Context) -> None:
    """Show your theme and language."""

    async def _fetch(store: ChatStore):
        return await store.preferences.fetch()

    prefs = _with_store(ctx, _fetch)
    console.print(Panel(
        f"[bold]User:[/bold] {prefs.user_id}\n"
        f"[bold]Theme:[/bold] {prefs.theme}\n"
        f"[bold]Language:[/bold] {prefs.language}",
        title="[bold blue]Preferences[/bold blue]",
        border_style="blue",
    ))


@prefs_app.command("theme")
def prefs_theme(
    ctx: typer.Context,
    theme: ThemeMode = typer.Argument(..., help="light or dark"),
) -> None:
    """Set your theme."""

    async def _persist(store: ChatStore) -> None:
        await store.preferences.persist_theme(theme)

    _with_store(ctx, _persist)
    console.print(f"[green]Theme set:[/green] {theme.value}")


@prefs_app.command("language")
def prefs_language(
    ctx: typer.Context,
    language: Language = typer.Argument(..., help="en or ja"),
) -> None:
    """Set your language."""

    async def _persist(store: ChatStore) -> None:
        await store.preferences.persist_language(language)

    _with_store(ctx, _persist)
    console.print(f"[green]Language set:[/green] {language.value}")


# ── deepchat serve ───────────────────────────────────────────────


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host", help="Interface to bind"),
    port: int = typer.Option(8420, "--port", "-p", help="Port to serve on"),
) -> None:
    """Run the streaming and tokenizer HTTP API.

    Requires: pip install deepchat[server]
    """
    try:
        import uvicorn

        from deepchat.server import create_app
        app_instance = create_app()
    except ImportError:
        console.print(
            "[red]The server requires extra dependencies.[/red]\n"
            "Install with: [bold]pip install deepchat\\[server][/bold]"
        )
        raise typer.Exit(1) from None

    console.print(Panel(
        f"[bold]URL:[/bold] http://{host}:{port}\n"
        "[bold]Endpoints:[/bold] POST /api/stream, POST /api/call, POST /api/tokenizer, GET /health",
        title="[bold blue]deepchat API[/bold blue]",
        border_style="blue",
    ))
    uvicorn.run(app_instance, host=host, port=port, log_level="warning")


# ── Entry point ──────────────────────────────────────────────────

if __name__ == "__main__":
    app()
