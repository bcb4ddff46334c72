"""Tests for deepchat.chat.window: the streaming turn state machine.

Covers the happy path, cancellation, stream-open failures, mid-stream
failures, finalize failures (including storage quota), the re-entrancy
guard, ordering, and mounting with a pending first message.
"""

from __future__ import annotations

import asyncio
import logging
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from chat_fakes import ScriptedProvider, chunk, factory_for, model_config

from deepchat.analytics.events import EventType
from deepchat.chat.window import (
    MISSING_KEY_MESSAGE,
    QUOTA_MESSAGE,
    ChatWindow,
    TurnState,
    litellm_factory,
)
from deepchat.errors import (
    CredentialError,
    StorageError,
    StorageQuotaExceededError,
    StreamOpenError,
)
from deepchat.local_store import LocalStore, PendingTurn
from deepchat.persistence.store import open_chat_store
from deepchat.providers.litellm_provider import LiteLLMProvider
from deepchat.schemas.config import GenerationParameters
from deepchat.schemas.messages import Role


# ── Helpers ───────────────────────────────────────────────────


async def _setup(tmp_path, provider, **overrides):
    """Open a store with one thread and a mounted window for it."""
    store = await open_chat_store(str(tmp_path / "chat.db"), "alice")
    thread_id = await store.threads.create_thread()
    kwargs = {
        "messages": store.messages,
        "threads": store.threads,
        "provider_factory": factory_for(provider),
        "api_key": "sk-test",
        "emitter": store.emitter,
    }
    kwargs.update(overrides)
    window = ChatWindow(thread_id, **kwargs)
    await window.mount()
    return store, window


def _events(store):
    """Record analytics events emitted through the store's emitter."""
    seen: list = []
    store.emitter.add_listener(seen.append)
    return seen


async def _send(window, text):
    window.state.set_input(text)
    await window.handle_send()


# ── Happy path ────────────────────────────────────────────────


class TestHappyPath:
    @pytest.mark.asyncio
    async def test_fragments_accumulate_and_persist_once(self, tmp_path):
        provider = ScriptedProvider([chunk("Hi"), chunk(" there"), chunk(finish_reason="stop")])
        store, window = await _setup(tmp_path, provider)
        try:
            with patch.object(
                store.messages, "update_message", wraps=store.messages.update_message,
            ) as update:
                await _send(window, "Hello")

            update.assert_awaited_once()
            args, kwargs = update.call_args
            assert args[2] == "Hi there"
            assert kwargs["finish_reason"] == "stop"

            stored = await store.messages.list_messages(window.thread_id)
            assert [(m.role, m.content) for m in stored] == [
                (Role.USER, "Hello"),
                (Role.ASSISTANT, "Hi there"),
            ]
            assert stored[1].finish_reason == "stop"
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_state_after_turn(self, tmp_path):
        provider = ScriptedProvider([chunk("Hi"), chunk(" there")])
        store, window = await _setup(tmp_path, provider)
        try:
            await _send(window, "Hello")

            state = window.state
            assert window.turn_state is TurnState.IDLE
            assert state.assistant_thinking is False
            assert state.waiting_for_first_chunk is False
            assert state.drafts == []
            assert state.input == ""
            assert state.error_message is None
            assert [m.content for m in state.messages] == ["Hello", "Hi there"]
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_placeholders_exist_before_first_fragment(self, tmp_path):
        seen: dict = {}
        provider = ScriptedProvider()
        store, window = await _setup(tmp_path, provider)

        async def _snapshot():
            seen["stored"] = await store.messages.list_messages(window.thread_id)
            seen["turn_state"] = window.turn_state
            seen["drafts"] = [m.id for m in window.state.drafts]

        provider.script = [_snapshot, chunk("Hi")]
        try:
            await _send(window, "Hello")

            stored = seen["stored"]
            assert [(m.role, m.content) for m in stored] == [
                (Role.USER, "Hello"),
                (Role.ASSISTANT, ""),
            ]
            assert seen["turn_state"] is TurnState.STREAMING
            # The draft shares its id with the durable placeholder
            assert seen["drafts"] == [stored[1].id]
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_fragments_update_local_state_only(self, tmp_path):
        seen: list = []
        provider = ScriptedProvider()
        store, window = await _setup(tmp_path, provider)

        async def _check():
            stored = await store.messages.list_messages(window.thread_id)
            seen.append((stored[-1].content, window.state.drafts[0].content))

        provider.script = [chunk("Hi"), _check, chunk(" there"), _check]
        try:
            await _send(window, "Hello")
            assert seen == [("", "Hi"), ("", "Hi there")]
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_reasoning_is_kept_separately(self, tmp_path):
        provider = ScriptedProvider([
            chunk(reasoning="Let me think."),
            chunk("Answer"),
        ])
        store, window = await _setup(tmp_path, provider)
        try:
            await _send(window, "Question")
            stored = await store.messages.list_messages(window.thread_id)
            assert stored[1].content == "Answer"
            assert stored[1].thinking_content == "Let me think."
        finally:
            await store.close()


# ── First chunk flag ──────────────────────────────────────────


class TestWaitingForFirstChunk:
    @pytest.mark.asyncio
    async def test_empty_fragment_keeps_waiting(self, tmp_path):
        flags: list[bool] = []
        provider = ScriptedProvider()
        store, window = await _setup(tmp_path, provider)

        def _record():
            flags.append(window.state.waiting_for_first_chunk)

        provider.script = [_record, chunk(""), _record, chunk("Hi"), _record]
        try:
            await _send(window, "Hello")
            assert flags == [True, True, False]
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_thinking_stays_set_while_streaming(self, tmp_path):
        flags: list[bool] = []
        provider = ScriptedProvider()
        store, window = await _setup(tmp_path, provider)
        provider.script = [
            chunk("Hi"),
            lambda: flags.append(window.state.assistant_thinking),
        ]
        try:
            await _send(window, "Hello")
            assert flags == [True]
            assert window.state.assistant_thinking is False
        finally:
            await store.close()


# ── Cancellation ──────────────────────────────────────────────


class TestCancellation:
    @pytest.mark.asyncio
    async def test_immediate_cancel_persists_empty_content(self, tmp_path):
        provider = ScriptedProvider()
        store, window = await _setup(tmp_path, provider)
        provider.script = [window.stop, asyncio.Event().wait, chunk("never")]
        try:
            with patch.object(
                store.messages, "update_message", wraps=store.messages.update_message,
            ) as update:
                await _send(window, "Hello")

            update.assert_awaited_once()
            assert update.call_args.args[2] == ""
            stored = await store.messages.list_messages(window.thread_id)
            assert stored[1].content == ""
            assert window.turn_state is TurnState.IDLE
            assert window.state.drafts == []
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_stop_while_opening_persists_empty_content(self, tmp_path):
        provider = ScriptedProvider([chunk("Hi"), chunk(" there")])
        store, window = await _setup(tmp_path, provider)
        events = _events(store)
        provider.on_open = window.stop
        try:
            with patch.object(
                store.messages, "update_message", wraps=store.messages.update_message,
            ) as update:
                await _send(window, "Hello")

            update.assert_awaited_once()
            assert update.call_args.args[2] == ""
            stored = await store.messages.list_messages(window.thread_id)
            assert [m.content for m in stored] == ["Hello", ""]
            assert provider.streams[0].aborted
            assert EventType.TURN_ABORTED in [e.type for e in events]
            assert window.turn_state is TurnState.IDLE
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_stop_before_open_returns_cancels_request(self, tmp_path):
        provider = ScriptedProvider([chunk("Hi")])
        store, window = await _setup(tmp_path, provider)
        events = _events(store)
        provider.on_open = asyncio.Event().wait
        try:
            turn = asyncio.create_task(_send(window, "Hello"))
            while not provider.calls:
                await asyncio.sleep(0)
            assert window.turn_state is TurnState.AWAITING_STREAM_OPEN

            window.stop()
            await asyncio.wait_for(turn, timeout=1)

            assert provider.streams == []
            assert await store.messages.list_messages(window.thread_id) == []
            assert window.state.input == "Hello"
            assert window.state.assistant_thinking is False
            assert window.turn_state is TurnState.IDLE
            assert EventType.TURN_ABORTED in [e.type for e in events]
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_abort_keeps_partial_output(self, tmp_path):
        provider = ScriptedProvider()
        store, window = await _setup(tmp_path, provider)
        events = _events(store)
        provider.script = [chunk("Partial"), window.stop, asyncio.Event().wait, chunk(" more")]
        try:
            await _send(window, "Hello")

            stored = await store.messages.list_messages(window.thread_id)
            assert stored[1].content == "Partial"
            assert provider.streams[0].aborted
            assert EventType.TURN_ABORTED in [e.type for e in events]
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_send_while_streaming_acts_as_stop(self, tmp_path):
        provider = ScriptedProvider()
        store, window = await _setup(tmp_path, provider)

        async def _press_send_again():
            window.state.set_input("ignored")
            await window.handle_send()

        provider.script = [chunk("Hi"), _press_send_again, asyncio.Event().wait]
        try:
            await _send(window, "Hello")

            assert len(provider.calls) == 1
            stored = await store.messages.list_messages(window.thread_id)
            assert [m.content for m in stored] == ["Hello", "Hi"]
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_stop_when_idle_is_noop(self, tmp_path):
        provider = ScriptedProvider()
        store, window = await _setup(tmp_path, provider)
        try:
            window.stop()
            assert window.turn_state is TurnState.IDLE
        finally:
            await store.close()


# ── Failures before finalizing ────────────────────────────────


class TestStreamOpenFailure:
    @pytest.mark.asyncio
    async def test_invalid_credential_creates_no_messages(self, tmp_path):
        provider = ScriptedProvider(error=CredentialError("Authentication failed for deepseek-chat."))
        store, window = await _setup(tmp_path, provider)
        try:
            await _send(window, "Hello")

            assert await store.messages.list_messages(window.thread_id) == []
            assert window.state.error_message == "Authentication failed for deepseek-chat."
            assert window.turn_state is TurnState.IDLE
            assert window.state.assistant_thinking is False
            # Input is handed back so the user can retry
            assert window.state.input == "Hello"
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_missing_key_makes_no_request(self, tmp_path):
        factory = MagicMock()
        store, window = await _setup(tmp_path, ScriptedProvider(), provider_factory=factory, api_key="")
        try:
            await _send(window, "Hello")

            factory.assert_not_called()
            assert window.state.error_message == MISSING_KEY_MESSAGE
            assert await store.messages.list_messages(window.thread_id) == []
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_upstream_error_is_reported(self, tmp_path):
        provider = ScriptedProvider(error=StreamOpenError("Streaming call failed after 3 retries", 503))
        store, window = await _setup(tmp_path, provider)
        events = _events(store)
        try:
            await _send(window, "Hello")

            assert "failed after 3 retries" in window.state.error_message
            assert await store.messages.list_messages(window.thread_id) == []
            failed = [e for e in events if e.type == EventType.TURN_FAILED]
            assert failed and failed[0].data["stage"] == "open"
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_unknown_model_is_reported(self, tmp_path):
        store, window = await _setup(
            tmp_path, ScriptedProvider(),
            provider_factory=litellm_factory({"deepseek-chat": model_config()}),
        )
        try:
            window.state.set_model("gpt-unknown")
            await _send(window, "Hello")
            assert "Unknown model" in window.state.error_message
            assert window.turn_state is TurnState.IDLE
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_placeholder_write_failure_closes_stream(self, tmp_path):
        provider = ScriptedProvider([chunk("Hi")])
        store, window = await _setup(tmp_path, provider)
        try:
            with patch.object(
                store.messages, "create_message",
                AsyncMock(side_effect=StorageError("create_message failed")),
            ):
                await _send(window, "Hello")

            assert provider.streams[0].aborted
            assert "Could not save your message" in window.state.error_message
            assert window.turn_state is TurnState.IDLE
        finally:
            await store.close()


class TestMidStreamFailure:
    @pytest.mark.asyncio
    async def test_draft_discarded_without_update(self, tmp_path):
        def _boom():
            raise RuntimeError("connection reset")

        provider = ScriptedProvider([chunk("Hi"), _boom])
        store, window = await _setup(tmp_path, provider)
        try:
            with patch.object(
                store.messages, "update_message", wraps=store.messages.update_message,
            ) as update:
                await _send(window, "Hello")

            update.assert_not_awaited()
            assert window.state.drafts == []
            assert "connection reset" in window.state.error_message
            assert window.turn_state is TurnState.IDLE
            # The durable placeholder stays empty
            assistant = window.state.messages[-1]
            assert assistant.role == Role.ASSISTANT
            assert assistant.content == ""
        finally:
            await store.close()


# ── Finalize failures ─────────────────────────────────────────


class TestFinalizeFailure:
    @pytest.mark.asyncio
    async def test_quota_exceeded_is_logged_and_surfaced(self, tmp_path, caplog):
        provider = ScriptedProvider([chunk("Hi"), chunk(" there")])
        store, window = await _setup(tmp_path, provider)
        try:
            with patch.object(
                store.messages, "update_message",
                AsyncMock(side_effect=StorageQuotaExceededError(
                    "Storage quota exceeded during update_message",
                )),
            ), caplog.at_level(logging.ERROR, logger="deepchat"):
                await _send(window, "Hello")

            assert any("Storage quota exceeded" in r.getMessage() for r in caplog.records)
            assert window.state.error_message == QUOTA_MESSAGE
            assert window.turn_state is TurnState.IDLE
            drafts = window.state.drafts
            assert len(drafts) == 1
            assert drafts[0].content == "Hi there"
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_real_quota_exhaustion(self, tmp_path, caplog):
        big = "x" * 400_000
        provider = ScriptedProvider([chunk(big)])
        store, window = await _setup(tmp_path, provider)
        try:
            # Freeze the database at its current size
            await store.db.execute("PRAGMA max_page_count=1")
            with caplog.at_level(logging.ERROR, logger="deepchat"):
                await _send(window, "Hello")

            assert any("Storage quota exceeded" in r.getMessage() for r in caplog.records)
            assert window.state.error_message == QUOTA_MESSAGE
            assert window.state.drafts[0].content == big
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_retry_unsaved_writes_draft(self, tmp_path):
        provider = ScriptedProvider([chunk("Hi there")])
        store, window = await _setup(tmp_path, provider)
        try:
            with patch.object(
                store.messages, "update_message",
                AsyncMock(side_effect=StorageError("update_message failed: disk I/O error")),
            ):
                await _send(window, "Hello")
            assert len(window.state.drafts) == 1

            saved = await window.retry_unsaved()

            assert saved == 1
            assert window.state.drafts == []
            assert window.state.error_message is None
            stored = await store.messages.list_messages(window.thread_id)
            assert stored[1].content == "Hi there"
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_unsaved_draft_survives_snapshots(self, tmp_path):
        provider = ScriptedProvider([chunk("Hi there")])
        store, window = await _setup(tmp_path, provider)
        try:
            with patch.object(
                store.messages, "update_message",
                AsyncMock(side_effect=StorageQuotaExceededError("quota")),
            ):
                await _send(window, "Hello")

            # Another write triggers a fresh snapshot with the empty placeholder
            await window.handle_system_prompt_update()

            assert window.state.drafts[0].content == "Hi there"
        finally:
            await store.close()


# ── Re-entrancy ───────────────────────────────────────────────


class TestReentrancy:
    @pytest.mark.asyncio
    async def test_send_while_opening_acts_as_stop(self, tmp_path):
        async def _press_send_again():
            window.state.set_input("second")
            await window.handle_send()

        provider = ScriptedProvider([chunk("Hi")])
        store, window = await _setup(tmp_path, provider)
        provider.on_open = _press_send_again
        try:
            await _send(window, "first")

            assert len(provider.calls) == 1
            assert provider.streams[0].aborted
            stored = await store.messages.list_messages(window.thread_id)
            assert [m.content for m in stored] == ["first", ""]
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_send_ignored_while_finalizing(self, tmp_path):
        provider = ScriptedProvider([chunk("Hi")])
        store, window = await _setup(tmp_path, provider)
        original = store.messages.update_message
        states: list[TurnState] = []

        async def _update(*args, **kwargs):
            states.append(window.turn_state)
            window.state.set_input("second")
            await window.handle_send()
            await original(*args, **kwargs)

        try:
            with patch.object(store.messages, "update_message", _update):
                await _send(window, "first")

            assert states == [TurnState.FINALIZING]
            assert len(provider.calls) == 1
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_empty_input_is_ignored(self, tmp_path):
        provider = ScriptedProvider([chunk("Hi")])
        store, window = await _setup(tmp_path, provider)
        try:
            await _send(window, "   ")
            assert provider.calls == []
        finally:
            await store.close()


# ── Ordering and history ──────────────────────────────────────


class TestOrdering:
    @pytest.mark.asyncio
    async def test_second_turn_sends_history(self, tmp_path):
        provider = ScriptedProvider([chunk("Hi there")])
        store, window = await _setup(tmp_path, provider)
        try:
            await _send(window, "Hello")
            provider.script = [chunk("Again!")]
            await _send(window, "Again")

            sent = provider.calls[1]
            assert [(m.role, m.content) for m in sent] == [
                (Role.SYSTEM, window.state.system_prompt),
                (Role.USER, "Hello"),
                (Role.ASSISTANT, "Hi there"),
                (Role.USER, "Again"),
            ]
            assert [m.content for m in window.state.messages] == [
                "Hello", "Hi there", "Again", "Again!",
            ]
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_thread_parameters_are_forwarded(self, tmp_path):
        provider = ScriptedProvider([chunk("Hi")])
        store, window = await _setup(tmp_path, provider)
        try:
            await store.threads.update_parameters(
                window.thread_id, GenerationParameters(temperature=0.2),
            )
            await _send(window, "Hello")
            assert provider.parameters[0].temperature == 0.2
        finally:
            await store.close()


# ── Thread settings ───────────────────────────────────────────


class TestThreadSettings:
    @pytest.mark.asyncio
    async def test_system_prompt_upserted_once(self, tmp_path):
        provider = ScriptedProvider([chunk("Ahoy")])
        store, window = await _setup(tmp_path, provider)
        try:
            window.state.set_system_prompt("Talk like a pirate.")
            await window.handle_system_prompt_update()
            window.state.set_system_prompt("Talk like a sailor.")
            await window.handle_system_prompt_update()

            stored = await store.messages.list_messages(window.thread_id)
            system = [m for m in stored if m.role == Role.SYSTEM]
            assert len(system) == 1
            assert system[0].content == "Talk like a sailor."

            await _send(window, "Hello")
            assert provider.calls[0][0].content == "Talk like a sailor."
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_model_change_persists(self, tmp_path):
        store, window = await _setup(tmp_path, ScriptedProvider())
        try:
            await window.handle_model_change("deepseek-reasoner")
            thread = await store.threads.get_thread(window.thread_id)
            assert thread.model == "deepseek-reasoner"
            assert window.state.model == "deepseek-reasoner"
        finally:
            await store.close()


# ── Mounting ──────────────────────────────────────────────────


class TestMount:
    @pytest.mark.asyncio
    async def test_pending_first_message_is_sent(self, tmp_path):
        provider = ScriptedProvider([chunk("Bonjour")])
        store = await open_chat_store(str(tmp_path / "chat.db"), "alice")
        local = LocalStore(tmp_path / "local.json")
        try:
            thread_id = await store.threads.create_thread(model="deepseek-reasoner")
            local.stash_pending(thread_id, PendingTurn(
                model="deepseek-reasoner",
                system_prompt="Answer in French.",
                input="Hello",
                parameters=GenerationParameters(max_tokens=256),
            ))
            window = ChatWindow(
                thread_id,
                messages=store.messages,
                threads=store.threads,
                provider_factory=factory_for(provider),
                api_key="sk-test",
                local_store=local,
            )
            await window.mount()

            stored = await store.messages.list_messages(thread_id)
            assert [(m.role, m.content) for m in stored] == [
                (Role.SYSTEM, "Answer in French."),
                (Role.USER, "Hello"),
                (Role.ASSISTANT, "Bonjour"),
            ]
            assert window.state.model == "deepseek-reasoner"
            assert provider.parameters[0].max_tokens == 256
            # Read once, then cleared
            assert local.consume_pending(thread_id) is None
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_mount_without_pending_does_not_send(self, tmp_path):
        provider = ScriptedProvider([chunk("Hi")])
        store, window = await _setup(tmp_path, provider, local_store=LocalStore(tmp_path / "l.json"))
        try:
            assert provider.calls == []
            assert window.turn_state is TurnState.IDLE
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_unmount_stops_snapshots(self, tmp_path):
        provider = ScriptedProvider([chunk("Hi")])
        store, window = await _setup(tmp_path, provider)
        try:
            window.unmount()
            await store.messages.create_message(window.thread_id, Role.USER, "elsewhere")
            assert window.state.messages == []
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_thread_title_flows_into_state(self, tmp_path):
        store, window = await _setup(tmp_path, ScriptedProvider())
        try:
            await store.threads.update_title(window.thread_id, "Greeting")
            assert window.state.title == "Greeting"
        finally:
            await store.close()


def test_litellm_factory_builds_provider():
    factory = litellm_factory({"deepseek-chat": model_config()}, timeout=30)
    provider = factory("deepseek-chat", "sk-test")
    assert isinstance(provider, LiteLLMProvider)
    assert provider.model_id == "deepseek/deepseek-chat"
