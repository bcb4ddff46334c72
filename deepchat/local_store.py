"""Local key-value persistence.

A small JSON file that survives between runs. Used to carry the first
message of a new conversation across to the chat window that will send
it; that entry is read once and cleared immediately.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from deepchat.schemas.config import GenerationParameters

logger = logging.getLogger(__name__)


class PendingTurn(BaseModel):
    """The first message of a new thread, waiting to be sent."""

    model: str = Field(description="Model key chosen for the thread")
    system_prompt: str = Field(description="System prompt for the thread")
    input: str = Field(description="The user's first message")
    parameters: GenerationParameters = Field(default_factory=GenerationParameters)


def _pending_key(thread_id: str) -> str:
    return f"thread-{thread_id}-pending"


class LocalStore:
    """JSON-file backed key-value store."""

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path).expanduser()

    @property
    def path(self) -> Path:
        return self._path

    def get(self, key: str, default: Any = None) -> Any:
        return self._read().get(key, default)

    def set(self, key: str, value: Any) -> None:
        data = self._read()
        data[key] = value
        self._write(data)

    def remove(self, key: str) -> None:
        data = self._read()
        if data.pop(key, None) is not None:
            self._write(data)

    def stash_pending(self, thread_id: str, pending: PendingTurn) -> None:
        """Remember the first message for a thread until it is consumed."""
        self.set(_pending_key(thread_id), pending.model_dump(mode="json"))

    def consume_pending(self, thread_id: str) -> PendingTurn | None:
        """Return and clear the pending first message for a thread."""
        key = _pending_key(thread_id)
        raw = self.get(key)
        if raw is None:
            return None
        self.remove(key)
        try:
            return PendingTurn.model_validate(raw)
        except ValidationError:
            logger.warning("Discarding malformed pending message for thread %s", thread_id)
            return None

    def _read(self) -> dict[str, Any]:
        if not self._path.is_file():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            logger.warning("Could not read local store %s, starting empty", self._path)
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: dict[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(data, indent=2), encoding="utf-8")
