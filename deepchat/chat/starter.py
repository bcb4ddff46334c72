"""Starting a new conversation.

The first message of a new conversation does not go straight to the
model. A thread is created, the message is stashed in the local store
for the chat window to pick up on mount, and a short title is generated
in the background.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from deepchat.local_store import LocalStore, PendingTurn
from deepchat.persistence.threads import ThreadStore
from deepchat.providers.base import ModelProvider
from deepchat.schemas.config import GenerationParameters
from deepchat.schemas.messages import ChatMessageParam, Role

logger = logging.getLogger(__name__)

DEFAULT_TITLE_PROMPT = (
    "Create a short thread title (under 10 characters, no quotes) "
    "based on this message: {message}"
)
MAX_TITLE_LENGTH = 40


@dataclass
class NewConversation:
    """Handle returned by start_conversation."""

    thread_id: str
    title_task: asyncio.Task[str | None] | None = None


def clean_title(raw: str) -> str:
    """First non-blank line of a model reply, without wrapping quotes."""
    line = next((ln.strip() for ln in raw.splitlines() if ln.strip()), "")
    line = line.strip("\"'`“”「」 ")
    if len(line) > MAX_TITLE_LENGTH:
        line = line[:MAX_TITLE_LENGTH].rstrip()
    return line


async def generate_title(
    provider: ModelProvider,
    text: str,
    template: str = DEFAULT_TITLE_PROMPT,
) -> str:
    """Ask the model for a short title describing ``text``."""
    prompt = template.format(message=text)
    raw = await provider.complete([ChatMessageParam(role=Role.USER, content=prompt)])
    return clean_title(raw)


async def start_conversation(
    threads: ThreadStore,
    local_store: LocalStore,
    *,
    text: str,
    model: str,
    system_prompt: str,
    parameters: GenerationParameters | None = None,
    title_provider: ModelProvider | None = None,
    title_prompt: str = DEFAULT_TITLE_PROMPT,
) -> NewConversation:
    """Create a thread for ``text`` and queue it as the thread's first message.

    Returns once the thread exists and the pending message is stashed.
    Title generation keeps running on the returned task; its failures are
    logged and never reach the caller.

    Raises:
        ValueError: If ``text`` is blank.
        StorageError: If the thread could not be created.
    """
    if not text.strip():
        raise ValueError("Cannot start a conversation with an empty message")

    params = parameters or GenerationParameters()
    thread_id = await threads.create_thread(model=model, parameters=params)
    local_store.stash_pending(thread_id, PendingTurn(
        model=model,
        system_prompt=system_prompt,
        input=text,
        parameters=params,
    ))

    task = None
    if title_provider is not None:
        task = asyncio.create_task(_title_worker(
            threads, thread_id, title_provider, text, title_prompt,
        ))
    return NewConversation(thread_id=thread_id, title_task=task)


async def _title_worker(
    threads: ThreadStore,
    thread_id: str,
    provider: ModelProvider,
    text: str,
    template: str,
) -> str | None:
    """Generate and store a title. Only the title column is written."""
    try:
        title = await generate_title(provider, text, template)
        if not title:
            logger.warning("Empty title generated for thread %s", thread_id)
            return None
        await threads.update_title(thread_id, title)
    except Exception:
        logger.exception("Title generation failed for thread %s", thread_id)
        return None
    logger.info("Titled thread %s: %s", thread_id, title)
    return title
