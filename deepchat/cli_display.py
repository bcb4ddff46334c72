"""Rich rendering for the chat REPL.

Renders durable messages as panels and shows the in-flight reply in a
Live region that redraws whenever the session state changes.
"""

from __future__ import annotations

from rich.console import Console, Group, RenderableType
from rich.live import Live
from rich.markdown import Markdown
from rich.panel import Panel
from rich.spinner import Spinner
from rich.table import Table
from rich.text import Text

from deepchat.chat.session import SessionState
from deepchat.schemas.messages import Message, Role, Thread
from deepchat.schemas.preferences import DEFAULT_THEME, ThemeMode

# ── Palettes ──────────────────────────────────────────────────────

PALETTES: dict[ThemeMode, dict[str, str]] = {
    ThemeMode.DARK: {
        "user": "#4d9fff",
        "assistant": "#00ff88",
        "thinking": "#6a8a6a",
        "system": "#D4A843",
        "error": "#ff4444",
        "dim": "#6a8a6a",
        "code_theme": "monokai",
    },
    ThemeMode.LIGHT: {
        "user": "#0055cc",
        "assistant": "#007a3d",
        "thinking": "#777777",
        "system": "#9a6b00",
        "error": "#cc0000",
        "dim": "#777777",
        "code_theme": "friendly",
    },
}

_ROLE_LABELS = {
    Role.USER: "You",
    Role.ASSISTANT: "Assistant",
    Role.SYSTEM: "System",
}


def palette(theme: ThemeMode | str = DEFAULT_THEME) -> dict[str, str]:
    return PALETTES.get(ThemeMode(theme), PALETTES[DEFAULT_THEME])


def render_message(message: Message, theme: ThemeMode = DEFAULT_THEME) -> Panel:
    """Render one message as a titled panel."""
    colors = palette(theme)
    style = colors[message.role.value]

    parts: list[RenderableType] = []
    if message.thinking_content:
        parts.append(Text(message.thinking_content, style=f"italic {colors['thinking']}"))
    if message.content:
        parts.append(Markdown(message.content, code_theme=colors["code_theme"]))
    elif not parts:
        parts.append(Text("(empty)", style=colors["dim"]))

    title = f"[bold {style}]{_ROLE_LABELS[message.role]}[/bold {style}]"
    if message.draft:
        title += f" [{colors['dim']}](unsaved)[/{colors['dim']}]"
    subtitle = None
    if message.finish_reason and message.finish_reason != "stop":
        subtitle = f"[{colors['dim']}]{message.finish_reason}[/{colors['dim']}]"

    return Panel(
        Group(*parts),
        title=title,
        title_align="left",
        subtitle=subtitle,
        border_style=style,
    )


def render_history(
    console: Console,
    messages: list[Message],
    theme: ThemeMode = DEFAULT_THEME,
) -> None:
    """Print every user and assistant message in order."""
    for message in messages:
        if message.role == Role.SYSTEM:
            continue
        console.print(render_message(message, theme))


def render_header(console: Console, state: SessionState, theme: ThemeMode = DEFAULT_THEME) -> None:
    colors = palette(theme)
    text = Text()
    text.append(state.title, style=f"bold {colors['assistant']}")
    text.append(f"  ·  {state.model}", style=colors["dim"])
    console.print(text)
    prompt = state.system_prompt.replace("\n", " ")
    if len(prompt) > 80:
        prompt = prompt[:77] + "..."
    console.print(Text(f"system: {prompt}", style=colors["system"]))


def render_threads_table(threads: list[Thread]) -> Table:
    table = Table(title=f"Threads ({len(threads)})")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Title", max_width=40)
    table.add_column("Model", style="dim")
    table.add_column("Updated", justify="right")
    for thread in threads:
        table.add_row(
            thread.id[:8],
            thread.title,
            thread.model,
            thread.updated_at.strftime("%Y-%m-%d %H:%M"),
        )
    return table


class TurnDisplay:
    """Live view of one streaming turn.

    Attach with ``with TurnDisplay(console, state):``. While open, every
    SessionState change redraws the draft reply; on exit the final
    message is printed once as a normal panel.
    """

    def __init__(
        self,
        console: Console,
        state: SessionState,
        theme: ThemeMode = DEFAULT_THEME,
    ) -> None:
        self._console = console
        self._state = state
        self._theme = theme
        self._live: Live | None = None
        self._draft_id: str | None = None

    def __enter__(self) -> TurnDisplay:
        self._live = Live(
            self._build(),
            console=self._console,
            refresh_per_second=12,
            transient=True,
        )
        self._live.__enter__()
        self._state.add_listener(self._on_change)
        return self

    def __exit__(self, *args: object) -> None:
        self._state.remove_listener(self._on_change)
        if self._live:
            self._live.__exit__(*args)
            self._live = None
        message = self._state.get(self._draft_id) if self._draft_id else None
        if message is not None:
            self._console.print(render_message(message, self._theme))
        if self._state.error_message:
            colors = palette(self._theme)
            self._console.print(f"[{colors['error']}]{self._state.error_message}[/{colors['error']}]")

    def _on_change(self, state: SessionState) -> None:
        drafts = state.drafts
        if drafts:
            self._draft_id = drafts[-1].id
        if self._live:
            self._live.update(self._build())

    def _build(self) -> RenderableType:
        colors = palette(self._theme)
        if self._state.waiting_for_first_chunk or self._draft_id is None:
            return Spinner("dots", text=Text("Thinking...", style=colors["dim"]))
        message = self._state.get(self._draft_id)
        if message is None:
            return Text("")
        return render_message(message, self._theme)
