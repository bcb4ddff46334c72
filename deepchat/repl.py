"""Interactive chat REPL.

Reads user input, dispatches slash commands, and runs chat turns
through a ChatWindow. A conversation without a thread id starts a new
thread on the first message. Launch with ``deepchat chat``.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from collections.abc import Iterator

from rich.console import Console
from rich.table import Table
from rich.text import Text

from deepchat.chat.starter import NewConversation, start_conversation
from deepchat.chat.tokens import count_tokens
from deepchat.chat.window import ChatWindow, ProviderFactory, TurnState
from deepchat.cli_display import TurnDisplay, palette, render_header, render_history
from deepchat.errors import DeepchatError
from deepchat.local_store import LocalStore
from deepchat.persistence.store import ChatStore
from deepchat.providers.registry import resolve_model
from deepchat.schemas.config import ChatConfig, ModelConfig
from deepchat.schemas.messages import Role
from deepchat.schemas.preferences import DEFAULT_THEME, ThemeMode

logger = logging.getLogger(__name__)

_HELP = [
    ("/model [KEY]", "Show or switch the model for this thread"),
    ("/system [TEXT]", "Show or replace the system prompt"),
    ("/tokens [TEXT]", "Count tokens in TEXT, or in the conversation"),
    ("/retry", "Retry saving replies that failed to save"),
    ("/stop", "Stop the reply being streamed (or press Ctrl+C)"),
    ("/help", "Show this help"),
    ("/exit", "Leave the chat"),
]

# Seconds to wait for a background title before leaving
_TITLE_WAIT = 5.0


class ChatREPL:
    """Interactive loop for one chat thread.

    When ``thread_id`` is None the first message creates the thread,
    then the thread's window is mounted and sends it.
    """

    def __init__(
        self,
        store: ChatStore,
        *,
        config: ChatConfig,
        registry: dict[str, ModelConfig],
        provider_factory: ProviderFactory,
        api_key: str,
        local_store: LocalStore,
        thread_id: str | None = None,
        theme: ThemeMode = DEFAULT_THEME,
        console: Console | None = None,
    ) -> None:
        self._store = store
        self._config = config
        self._registry = registry
        self._provider_factory = provider_factory
        self._api_key = api_key
        self._local_store = local_store
        self._thread_id = thread_id
        self._theme = theme
        self._console = console or Console()
        self._window: ChatWindow | None = None
        self._pending_model = config.default_model
        self._pending_system_prompt = config.system_prompt
        self._title_tasks: list[asyncio.Task] = []

    @property
    def window(self) -> ChatWindow | None:
        return self._window

    async def run(self) -> None:
        """Main REPL loop."""
        if self._thread_id is not None:
            self._window = self._build_window(self._thread_id)
            await self._window.mount()
            render_header(self._console, self._window.state, self._theme)
            render_history(self._console, self._window.state.messages, self._theme)
        else:
            self._console.print(
                Text("New conversation. Type a message, or /help.", style=palette(self._theme)["dim"])
            )

        try:
            while True:
                user_input = await self._read_input()
                if user_input is None:
                    break
                if not user_input:
                    continue
                if not await self._dispatch(user_input):
                    break
        finally:
            await self.close()

    async def close(self) -> None:
        """Unmount the window and let title generation finish briefly."""
        if self._window is not None:
            self._window.unmount()
        pending = [t for t in self._title_tasks if not t.done()]
        if pending:
            _, still_running = await asyncio.wait(pending, timeout=_TITLE_WAIT)
            for task in still_running:
                task.cancel()
        self._console.print(Text("Goodbye.", style=palette(self._theme)["dim"]))

    async def _read_input(self) -> str | None:
        prompt = Text()
        prompt.append("\ndeepchat", style=palette(self._theme)["assistant"])
        prompt.append(" ▸ ", style=palette(self._theme)["dim"])
        try:
            text = await asyncio.to_thread(self._console.input, prompt)
        except (KeyboardInterrupt, EOFError):
            return None
        return text.strip()

    # ── Dispatch ──────────────────────────────────────────────

    async def _dispatch(self, text: str) -> bool:
        """Handle one line of input. Returns False to leave the loop."""
        if not text.startswith("/"):
            await self._send(text)
            return True

        command, _, arg = text.partition(" ")
        arg = arg.strip()
        command = command.lower()

        if command in ("/exit", "/quit"):
            return False
        if command == "/help":
            self._print_help()
        elif command == "/stop":
            self._stop()
        elif command == "/model":
            await self._model(arg)
        elif command == "/system":
            await self._system(arg)
        elif command == "/tokens":
            self._tokens(arg)
        elif command == "/retry":
            await self._retry()
        else:
            self._console.print(f"[red]Unknown command:[/red] {command}. Type /help.")
        return True

    async def _send(self, text: str) -> None:
        if self._window is None:
            await self._start(text)
            return
        if self._window.turn_state is not TurnState.IDLE:
            self._console.print("[yellow]A reply is still in progress.[/yellow]")
            return
        self._window.state.set_input(text)
        with TurnDisplay(self._console, self._window.state, self._theme), self._abort_on_interrupt():
            await self._window.handle_send()

    async def _start(self, text: str) -> None:
        """Create the thread for the first message and send it."""
        title_provider = None
        if self._api_key:
            try:
                title_provider = self._provider_factory(self._config.title_model, self._api_key)
            except ValueError as e:
                logger.warning("No title model: %s", e)

        try:
            conversation: NewConversation = await start_conversation(
                self._store.threads,
                self._local_store,
                text=text,
                model=self._pending_model,
                system_prompt=self._pending_system_prompt,
                parameters=self._config.parameters,
                title_provider=title_provider,
                title_prompt=self._config.title_prompt,
            )
        except DeepchatError as e:
            self._console.print(f"[red]Could not start the conversation:[/red] {e}")
            return

        if conversation.title_task is not None:
            self._title_tasks.append(conversation.title_task)
        self._thread_id = conversation.thread_id
        self._window = self._build_window(conversation.thread_id)
        self._console.print(f"[dim]Thread {conversation.thread_id[:8]}[/dim]")
        with TurnDisplay(self._console, self._window.state, self._theme), self._abort_on_interrupt():
            await self._window.mount()

    def _build_window(self, thread_id: str) -> ChatWindow:
        return ChatWindow(
            thread_id,
            messages=self._store.messages,
            threads=self._store.threads,
            provider_factory=self._provider_factory,
            api_key=self._api_key,
            system_prompt=self._config.system_prompt,
            model=self._config.default_model,
            parameters=self._config.parameters,
            local_store=self._local_store,
            emitter=self._store.emitter,
        )

    @contextlib.contextmanager
    def _abort_on_interrupt(self) -> Iterator[None]:
        """Route Ctrl+C to stopping the turn while a reply streams."""
        loop = asyncio.get_running_loop()
        installed = True
        try:
            loop.add_signal_handler(signal.SIGINT, self._stop)
        except (NotImplementedError, RuntimeError, ValueError):
            # No signal handlers on this platform or thread
            installed = False
        try:
            yield
        finally:
            if installed:
                loop.remove_signal_handler(signal.SIGINT)

    # ── Commands ──────────────────────────────────────────────

    def _stop(self) -> None:
        if self._window is not None and self._window.turn_state in (
            TurnState.AWAITING_STREAM_OPEN, TurnState.STREAMING,
        ):
            self._window.stop()
        else:
            self._console.print("[dim]Nothing to stop.[/dim]")

    async def _model(self, key: str) -> None:
        current = self._window.state.model if self._window else self._pending_model
        if not key:
            for name in sorted(self._registry):
                marker = "▸" if name == current else " "
                self._console.print(f" {marker} {name}  [dim]{self._registry[name].display_name}[/dim]")
            return
        try:
            resolve_model(self._registry, key)
        except ValueError as e:
            self._console.print(f"[red]{e}[/red]")
            return
        if self._window is None:
            self._pending_model = key
        else:
            await self._window.handle_model_change(key)
        self._console.print(f"Model: [bold]{key}[/bold]")

    async def _system(self, prompt: str) -> None:
        if not prompt:
            current = (
                self._window.state.system_prompt if self._window else self._pending_system_prompt
            )
            self._console.print(f"[dim]System prompt:[/dim] {current}")
            return
        if self._window is None:
            self._pending_system_prompt = prompt
        else:
            self._window.state.set_system_prompt(prompt)
            await self._window.handle_system_prompt_update()
        self._console.print("[green]System prompt updated.[/green]")

    def _tokens(self, text: str) -> None:
        model_key = self._window.state.model if self._window else self._pending_model
        try:
            model = resolve_model(self._registry, model_key).model
        except ValueError:
            model = model_key
        if not text and self._window is not None:
            text = "\n".join(
                m.content for m in self._window.state.messages if m.role != Role.SYSTEM
            )
        length = count_tokens(text, model)
        if length is None:
            self._console.print("[red]Token counting failed.[/red]")
        else:
            self._console.print(f"[bold]{length:,}[/bold] tokens")

    async def _retry(self) -> None:
        if self._window is None or not self._window.state.drafts:
            self._console.print("[dim]Nothing to retry.[/dim]")
            return
        saved = await self._window.retry_unsaved()
        remaining = len(self._window.state.drafts)
        if remaining:
            self._console.print(f"[red]{remaining} reply(s) still unsaved.[/red]")
        else:
            self._console.print(f"[green]Saved {saved} reply(s).[/green]")

    def _print_help(self) -> None:
        table = Table(show_header=False, box=None, padding=(0, 2))
        table.add_column(style="bold cyan")
        table.add_column()
        for command, description in _HELP:
            table.add_row(command, description)
        self._console.print(table)
