"""In-memory state of the active chat thread.

SessionState holds what the rendering layer shows: the ordered messages
(durable ones plus the local draft of a streaming reply), the system
prompt, the selected model, and the request lifecycle flags. Every
mutation notifies listeners synchronously.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from deepchat.schemas.messages import (
    DEFAULT_THREAD_TITLE,
    ChatMessageParam,
    Message,
    Role,
    Thread,
    sort_messages,
)

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."

StateListener = Callable[["SessionState"], None]


class SessionState:
    """Messages and flags for one thread.

    Attributes:
        assistant_thinking: True from send until the turn is back to idle.
        waiting_for_first_chunk: True until the first non-empty fragment.
    """

    def __init__(
        self,
        *,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        model: str = "deepseek-chat",
    ) -> None:
        self.messages: list[Message] = []
        self.default_system_prompt = system_prompt
        self.system_prompt = system_prompt
        self.system_message_id: str | None = None
        self.model = model
        self.title = DEFAULT_THREAD_TITLE
        self.input = ""
        self.assistant_thinking = False
        self.waiting_for_first_chunk = False
        self.error_message: str | None = None
        # Last durable copy of each message, by id
        self._remote: dict[str, Message] = {}
        self._listeners: list[StateListener] = []

    # ── Listeners ─────────────────────────────────────────────

    def add_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: StateListener) -> None:
        self._listeners = [ln for ln in self._listeners if ln != listener]

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                logger.exception("Session state listener failed")

    # ── Simple setters ────────────────────────────────────────

    def set_input(self, text: str) -> None:
        self.input = text
        self._notify()

    def set_model(self, model: str) -> None:
        self.model = model
        self._notify()

    def set_system_prompt(self, prompt: str) -> None:
        self.system_prompt = prompt
        self._notify()

    def set_error(self, message: str | None) -> None:
        self.error_message = message
        self._notify()

    def set_thinking(self, thinking: bool, waiting_for_first_chunk: bool) -> None:
        self.assistant_thinking = thinking
        self.waiting_for_first_chunk = waiting_for_first_chunk
        self._notify()

    # ── Draft operations ──────────────────────────────────────

    @property
    def drafts(self) -> list[Message]:
        """Local messages not yet confirmed by the store."""
        return [m for m in self.messages if m.draft]

    def get(self, message_id: str) -> Message | None:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None

    def append_draft(self, message: Message) -> None:
        """Add a local draft, replacing any copy with the same id."""
        draft = message.model_copy(update={"draft": True})
        others = [m for m in self.messages if m.id != draft.id]
        self.messages = sort_messages([*others, draft])
        self._notify()

    def set_draft_content(
        self,
        message_id: str,
        content: str,
        thinking_content: str | None = None,
    ) -> None:
        """Replace the draft's text with the full accumulated text."""
        self._replace(
            message_id,
            content=content,
            thinking_content=thinking_content,
        )

    def clear_draft_flag(self, message_id: str) -> None:
        self._replace(message_id, draft=False)

    def discard_draft(self, message_id: str) -> None:
        """Drop a draft, falling back to the last durable copy if one exists."""
        durable = self._remote.get(message_id)
        kept = [m for m in self.messages if m.id != message_id]
        if durable is not None:
            kept.append(durable)
        self.messages = sort_messages(kept)
        self._notify()

    def _replace(self, message_id: str, **changes: object) -> None:
        for index, message in enumerate(self.messages):
            if message.id == message_id:
                self.messages[index] = message.model_copy(update=changes)
                self._notify()
                return
        logger.debug("No local message %s to update", message_id)

    # ── Remote reconciliation ─────────────────────────────────

    def apply_snapshot(self, remote: list[Message]) -> None:
        """Replace local state with a remote snapshot.

        A message whose local copy is still flagged draft keeps its local
        text; it takes the durable timestamp so ordering follows the store.
        Drafts missing from the snapshot are kept.
        """
        ordered = sort_messages(remote)
        self._remote = {m.id: m for m in ordered}
        local_drafts = {m.id: m for m in self.messages if m.draft}

        merged: list[Message] = []
        for message in ordered:
            local = local_drafts.pop(message.id, None)
            if local is not None:
                merged.append(local.model_copy(update={
                    "created_at": message.created_at,
                    "sequence": message.sequence,
                }))
            else:
                merged.append(message)
        merged.extend(local_drafts.values())
        self.messages = sort_messages(merged)

        system = next((m for m in ordered if m.role == Role.SYSTEM), None)
        if system is not None:
            self.system_message_id = system.id
            self.system_prompt = system.content
        else:
            self.system_message_id = None
            self.system_prompt = self.default_system_prompt
        self._notify()

    def apply_thread(self, thread: Thread | None) -> None:
        """Take the model and title from the thread document."""
        if thread is None:
            return
        self.model = thread.model
        self.title = thread.title
        self._notify()

    # ── Request building ──────────────────────────────────────

    def conversation(self, user_text: str) -> list[ChatMessageParam]:
        """Build the provider request for a new user message.

        System prompt first, then prior user and assistant messages, then
        the new user text. Assistant placeholders that never received
        content are skipped.
        """
        history = [
            ChatMessageParam(role=m.role, content=m.content)
            for m in self.messages
            if m.role != Role.SYSTEM and not (m.role == Role.ASSISTANT and not m.content)
        ]
        return [
            ChatMessageParam(role=Role.SYSTEM, content=self.system_prompt),
            *history,
            ChatMessageParam(role=Role.USER, content=user_text),
        ]
