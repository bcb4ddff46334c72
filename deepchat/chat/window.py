"""Chat window controller: the streaming turn state machine.

A turn moves idle → awaiting_stream_open → streaming → finalizing → idle,
with streaming → aborted → finalizing when the user stops it. A stop while
the request is still opening cancels it, or ends the turn empty if the
stream opens anyway. Fragments only touch local SessionState; the store is
written once when the turn finalizes. Any failure before finalizing returns
the turn to idle and discards the draft.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from enum import StrEnum

from deepchat.analytics.events import AnalyticsEmitter, EventType
from deepchat.chat.session import DEFAULT_SYSTEM_PROMPT, SessionState
from deepchat.errors import (
    CredentialError,
    StorageError,
    StorageQuotaExceededError,
    StreamOpenError,
)
from deepchat.local_store import LocalStore
from deepchat.persistence.feed import Unsubscribe
from deepchat.persistence.messages import MessageStore
from deepchat.persistence.threads import ThreadStore
from deepchat.providers.base import FragmentStream, ModelProvider
from deepchat.providers.litellm_provider import LiteLLMProvider
from deepchat.providers.registry import resolve_model
from deepchat.schemas.config import GenerationParameters, ModelConfig
from deepchat.schemas.messages import Message, Role, Thread

logger = logging.getLogger(__name__)

MISSING_KEY_MESSAGE = "Please enter your API key. Run `deepchat setup` to save one."
QUOTA_MESSAGE = "Storage quota exceeded: the reply is shown but was not saved."
SAVE_FAILED_MESSAGE = "The reply could not be saved. Use /retry to try again."

# (model key, api key) -> provider
ProviderFactory = Callable[[str, str], ModelProvider]


def litellm_factory(registry: dict[str, ModelConfig], timeout: int = 600) -> ProviderFactory:
    """Return a ProviderFactory that builds LiteLLMProviders from the registry."""

    def _build(model: str, api_key: str) -> ModelProvider:
        return LiteLLMProvider(resolve_model(registry, model), api_key, timeout=timeout)

    return _build


class TurnState(StrEnum):
    """Lifecycle of one send/stream/persist cycle."""

    IDLE = "idle"
    AWAITING_STREAM_OPEN = "awaiting_stream_open"
    STREAMING = "streaming"
    ABORTED = "aborted"
    FINALIZING = "finalizing"


class ChatWindow:
    """Binds one thread's SessionState to the store and the model provider.

    Dependencies are passed in explicitly: stores scoped to the signed-in
    user, a provider factory, and the API key.
    """

    def __init__(
        self,
        thread_id: str,
        *,
        messages: MessageStore,
        threads: ThreadStore,
        provider_factory: ProviderFactory,
        api_key: str,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        model: str = "deepseek-chat",
        parameters: GenerationParameters | None = None,
        local_store: LocalStore | None = None,
        emitter: AnalyticsEmitter | None = None,
    ) -> None:
        self.thread_id = thread_id
        self.state = SessionState(system_prompt=system_prompt, model=model)
        self.parameters = parameters or GenerationParameters()
        self._messages = messages
        self._threads = threads
        self._provider_factory = provider_factory
        self._api_key = api_key
        self._local_store = local_store
        self._emitter = emitter
        self._turn_state = TurnState.IDLE
        self._stream: FragmentStream | None = None
        self._stop_requested = asyncio.Event()
        self._unsubscribers: list[Unsubscribe] = []

    @property
    def turn_state(self) -> TurnState:
        return self._turn_state

    @property
    def is_busy(self) -> bool:
        return self._turn_state is not TurnState.IDLE

    def set_api_key(self, api_key: str) -> None:
        self._api_key = api_key

    # ── Lifecycle ─────────────────────────────────────────────

    async def mount(self) -> None:
        """Subscribe to the thread and send its pending first message, if any."""
        self._unsubscribers.append(
            await self._messages.listen_messages(self.thread_id, self.state.apply_snapshot)
        )
        self._unsubscribers.append(
            await self._threads.listen_thread(self.thread_id, self._on_thread)
        )

        pending = self._local_store.consume_pending(self.thread_id) if self._local_store else None
        if pending is None:
            return

        logger.info("Sending pending first message for thread %s", self.thread_id)
        self.state.set_model(pending.model)
        self.parameters = pending.parameters
        if pending.system_prompt != self.state.system_prompt:
            self.state.set_system_prompt(pending.system_prompt)
            await self.handle_system_prompt_update()
        self.state.set_input(pending.input)
        await self.handle_send()

    def unmount(self) -> None:
        """Stop any running turn and drop store subscriptions."""
        self.stop()
        if self._stream is not None:
            self._stream.abort()
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

    def _on_thread(self, thread: Thread | None) -> None:
        if thread is None:
            return
        self.parameters = thread.parameters
        self.state.apply_thread(thread)

    # ── Sending ───────────────────────────────────────────────

    async def handle_send(self) -> None:
        """Send the current input, or stop the turn in flight.

        While a turn is opening or streaming this acts as stop. While a
        turn is finalizing it does nothing.
        """
        if self._turn_state in (
            TurnState.AWAITING_STREAM_OPEN, TurnState.STREAMING, TurnState.ABORTED,
        ):
            self.stop()
            return
        if self._turn_state is not TurnState.IDLE:
            logger.debug("Ignoring send while turn is %s", self._turn_state)
            return

        text = self.state.input.strip()
        if not text:
            return
        if not self._api_key:
            self.state.set_error(MISSING_KEY_MESSAGE)
            return

        self._turn_state = TurnState.AWAITING_STREAM_OPEN
        self._stop_requested.clear()
        self.state.error_message = None
        self.state.set_input("")
        self.state.set_thinking(True, waiting_for_first_chunk=True)
        try:
            await self._run_turn(text)
        finally:
            self._stream = None
            self._stop_requested.clear()
            self._turn_state = TurnState.IDLE
            self.state.set_thinking(False, waiting_for_first_chunk=False)

    def stop(self) -> None:
        """Stop the turn in flight. Partial output is kept and saved.

        A stop while the request is still opening cancels the open, or,
        if the stream opens anyway, ends the turn with empty content.
        """
        if self._turn_state is TurnState.AWAITING_STREAM_OPEN:
            self._stop_requested.set()
        elif self._turn_state is TurnState.STREAMING and self._stream is not None:
            self._turn_state = TurnState.ABORTED
            self._stream.abort()

    async def _open_stream(self, provider: ModelProvider, conversation) -> FragmentStream | None:
        """Open the stream, or return None if a stop arrives first."""
        opening = asyncio.ensure_future(provider.open_stream(conversation, self.parameters))
        stop_wait = asyncio.ensure_future(self._stop_requested.wait())
        try:
            await asyncio.wait({opening, stop_wait}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop_wait.cancel()
            if not opening.done():
                opening.cancel()
                await asyncio.gather(opening, return_exceptions=True)
        if opening.cancelled():
            return None
        return opening.result()

    async def _run_turn(self, text: str) -> None:
        conversation = self.state.conversation(text)

        try:
            provider = self._provider_factory(self.state.model, self._api_key)
            stream = await self._open_stream(provider, conversation)
        except CredentialError as e:
            logger.warning("Credential rejected for thread %s: %s", self.thread_id, e)
            self.state.input = text
            self.state.set_error(str(e))
            return
        except (StreamOpenError, ValueError) as e:
            logger.error("Failed to open stream for thread %s: %s", self.thread_id, e)
            self.state.input = text
            self.state.set_error(f"Request failed: {e}")
            await self._emit(EventType.TURN_FAILED, stage="open", reason=str(e))
            return

        if stream is None:
            logger.info("Turn stopped before the stream opened for thread %s", self.thread_id)
            self.state.set_input(text)
            await self._emit(EventType.TURN_ABORTED, stage="open")
            return

        try:
            await self._messages.create_message(self.thread_id, Role.USER, text)
            assistant_id = await self._messages.create_message(
                self.thread_id, Role.ASSISTANT, "",
            )
        except StorageError as e:
            logger.error("Could not store messages for thread %s: %s", self.thread_id, e)
            await _close_stream(stream)
            self.state.set_error(f"Could not save your message: {e}")
            return

        self._stream = stream
        placeholder = self.state.get(assistant_id) or Message(
            id=assistant_id, thread_id=self.thread_id, role=Role.ASSISTANT,
        )
        self.state.append_draft(placeholder)
        self._turn_state = TurnState.STREAMING
        if self._stop_requested.is_set():
            self.stop()

        content = ""
        reasoning = ""
        finish_reason: str | None = None
        try:
            async for fragment in stream:
                if fragment.finish_reason:
                    finish_reason = fragment.finish_reason
                if fragment.is_empty:
                    continue
                content += fragment.content
                reasoning += fragment.reasoning
                if self.state.waiting_for_first_chunk:
                    self.state.set_thinking(True, waiting_for_first_chunk=False)
                self.state.set_draft_content(assistant_id, content, reasoning or None)
        except Exception as e:
            logger.exception("Stream failed for thread %s", self.thread_id)
            self.state.discard_draft(assistant_id)
            self.state.set_error(f"Streaming failed: {e}")
            await self._emit(EventType.TURN_FAILED, stage="stream", reason=str(e))
            return

        if self._turn_state is TurnState.ABORTED:
            logger.info("Turn aborted for thread %s after %d chars", self.thread_id, len(content))
            await self._emit(EventType.TURN_ABORTED, message_id=assistant_id, length=len(content))

        self._turn_state = TurnState.FINALIZING
        await self._finalize(assistant_id, content, reasoning or None, finish_reason)

    async def _finalize(
        self,
        message_id: str,
        content: str,
        thinking_content: str | None,
        finish_reason: str | None,
    ) -> bool:
        """Write the assistant message once; keep the draft flagged if that fails."""
        try:
            await self._messages.update_message(
                self.thread_id, message_id, content,
                thinking_content=thinking_content,
                finish_reason=finish_reason,
            )
        except StorageQuotaExceededError:
            logger.error(
                "Storage quota exceeded while finalizing message %s in thread %s; "
                "draft kept unsaved", message_id, self.thread_id,
            )
            self.state.set_error(QUOTA_MESSAGE)
            return False
        except StorageError as e:
            logger.error("Failed to finalize message %s: %s", message_id, e)
            self.state.set_error(SAVE_FAILED_MESSAGE)
            return False

        self.state.clear_draft_flag(message_id)
        return True

    async def retry_unsaved(self) -> int:
        """Retry the final write for drafts whose save failed.

        Returns the number of drafts saved.
        """
        if self.is_busy:
            return 0
        saved = 0
        for draft in self.state.drafts:
            if not await self._finalize(
                draft.id, draft.content, draft.thinking_content, draft.finish_reason,
            ):
                break
            saved += 1
        if saved and not self.state.drafts:
            self.state.set_error(None)
        return saved

    # ── Thread settings ───────────────────────────────────────

    async def handle_system_prompt_update(self) -> None:
        """Store the current system prompt as the thread's system message."""
        try:
            self.state.system_message_id = await self._messages.upsert_system_message(
                self.thread_id, self.state.system_prompt,
            )
        except StorageError as e:
            logger.error("Failed to update system prompt for %s: %s", self.thread_id, e)
            self.state.set_error(f"Could not save the system prompt: {e}")

    async def handle_model_change(self, model: str) -> None:
        """Select a model and store it on the thread."""
        self.state.set_model(model)
        try:
            await self._threads.update_model(self.thread_id, model)
        except StorageError as e:
            logger.error("Failed to update model for %s: %s", self.thread_id, e)
            self.state.set_error(f"Could not save the model: {e}")

    async def _emit(self, event_type: EventType, **data: object) -> None:
        if self._emitter is not None:
            await self._emitter.emit(event_type, thread_id=self.thread_id, **data)


async def _close_stream(stream: FragmentStream) -> None:
    stream.abort()
    await stream.aclose()
