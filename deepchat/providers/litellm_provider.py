"""LiteLLM adapter implementing the ModelProvider interface.

Routes completion requests to DeepSeek (or any other OpenAI-compatible
provider) through LiteLLM's unified API. Handles retry with exponential
backoff while opening a request, and wraps streaming responses in an
abortable ChatStream.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import os
from collections.abc import AsyncIterator
from typing import Any

import litellm

# Suppress LiteLLM's "Give Feedback / Get Help" and "Provider List" banners
litellm.suppress_debug_info = True

from deepchat.errors import CredentialError, StreamOpenError
from deepchat.providers.base import ModelProvider
from deepchat.schemas.config import GenerationParameters, ModelConfig
from deepchat.schemas.messages import ChatMessageParam
from deepchat.schemas.streaming import StreamFragment

logger = logging.getLogger(__name__)

# Max attempts for transient failures while opening a request
_MAX_RETRIES = 3
_BASE_BACKOFF = 1.0  # seconds

_TRANSIENT_ERRORS = (
    litellm.RateLimitError,
    litellm.ServiceUnavailableError,
    litellm.InternalServerError,
    litellm.APIConnectionError,
)


def _short_error_reason(error: Exception) -> str:
    """Extract a short, user-friendly reason from a LiteLLM error."""
    error_str = str(error).lower()
    if "rate" in error_str or "429" in error_str:
        return "rate limit"
    if "timeout" in error_str or isinstance(error, TimeoutError):
        return "timeout"
    if "503" in error_str or "unavailable" in error_str:
        return "service unavailable"
    if "500" in error_str or "internal" in error_str:
        return "server error"
    if "connection" in error_str:
        return "connection error"
    return str(error)[:80]


def _status_code(error: Exception, default: int = 500) -> int:
    value = getattr(error, "status_code", None)
    return value if isinstance(value, int) else default


def parse_chunk(chunk: Any) -> StreamFragment:
    """Convert one upstream streaming chunk into a StreamFragment.

    Missing or non-string ``content`` and ``reasoning_content`` fields
    become empty strings, so malformed chunks turn into empty fragments.
    """
    choices = getattr(chunk, "choices", None) or []
    if not choices:
        return StreamFragment()

    choice = choices[0]
    delta = getattr(choice, "delta", None)
    content = getattr(delta, "content", None) if delta is not None else None
    reasoning = getattr(delta, "reasoning_content", None) if delta is not None else None
    finish_reason = getattr(choice, "finish_reason", None)

    return StreamFragment(
        content=content if isinstance(content, str) else "",
        reasoning=reasoning if isinstance(reasoning, str) else "",
        finish_reason=finish_reason if isinstance(finish_reason, str) else None,
    )


class ChatStream:
    """Abortable handle over one streaming completion.

    Iterate with ``async for`` to receive StreamFragments. ``abort()``
    closes the upstream response; an iteration in progress observes the
    abort at its next suspension point and ends without raising.
    """

    def __init__(self, response: Any, model: str = "") -> None:
        self._response = response
        self._model = model
        self._aborted = asyncio.Event()
        self._closed = False

    @property
    def aborted(self) -> bool:
        return self._aborted.is_set()

    def abort(self) -> None:
        """Stop the stream. Safe to call more than once."""
        if not self._aborted.is_set():
            logger.info("Aborting stream for %s", self._model or "model")
            self._aborted.set()

    async def __aiter__(self) -> AsyncIterator[StreamFragment]:
        iterator = self._response.__aiter__()
        abort_wait = asyncio.ensure_future(self._aborted.wait())
        try:
            while not self._aborted.is_set():
                next_chunk = asyncio.ensure_future(iterator.__anext__())
                done, _ = await asyncio.wait(
                    {next_chunk, abort_wait},
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if next_chunk not in done:
                    next_chunk.cancel()
                    await asyncio.gather(next_chunk, return_exceptions=True)
                    break
                try:
                    chunk = next_chunk.result()
                except StopAsyncIteration:
                    break
                yield parse_chunk(chunk)
        finally:
            abort_wait.cancel()
            await self.aclose()

    async def aclose(self) -> None:
        """Release the upstream response."""
        if self._closed:
            return
        self._closed = True
        close = getattr(self._response, "aclose", None)
        if close is None:
            return
        try:
            result = close()
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.debug("Error closing stream for %s", self._model, exc_info=True)


class LiteLLMProvider(ModelProvider):
    """LLM adapter powered by LiteLLM.

    Routes calls through litellm.acompletion(). The API key comes from the
    caller when given, otherwise from the environment variable named in the
    model config.
    """

    def __init__(
        self,
        config: ModelConfig,
        api_key: str | None = None,
        *,
        timeout: int = 600,
    ) -> None:
        super().__init__(config)
        self._api_key = api_key if api_key is not None else os.environ.get(config.api_key_env, "")
        self._timeout = timeout

    async def open_stream(
        self,
        messages: list[ChatMessageParam],
        parameters: GenerationParameters | None = None,
    ) -> ChatStream:
        """Open a streaming completion via LiteLLM.

        Returns as soon as the upstream accepted the request. Transient
        failures are retried; auth and bad-request failures are not.

        Raises:
            CredentialError: If the API key is missing or rejected.
            StreamOpenError: If the request failed after all retries.
        """
        kwargs = self._build_completion_kwargs(messages, parameters)
        kwargs["stream"] = True

        response = await self._call_with_retry(kwargs, label="Streaming call")
        return ChatStream(response, model=self._config.model)

    async def complete(
        self,
        messages: list[ChatMessageParam],
        parameters: GenerationParameters | None = None,
    ) -> str:
        """Send a non-streaming completion and return its text content."""
        kwargs = self._build_completion_kwargs(messages, parameters)
        response = await self._call_with_retry(kwargs, label="Model call")
        return self._extract_content(response)

    def _build_completion_kwargs(
        self,
        messages: list[ChatMessageParam],
        parameters: GenerationParameters | None,
    ) -> dict:
        """Build the kwargs dict for litellm.acompletion."""
        if not self._api_key:
            raise CredentialError(
                f"No API key for {self._config.display_name}. "
                f"Run `deepchat setup` or set {self._config.api_key_env}."
            )

        kwargs: dict = {
            "model": self._config.model,
            "messages": [m.to_openai() for m in messages],
            "timeout": float(self._timeout),
            "api_key": self._api_key,
        }

        if self._config.api_base:
            kwargs["api_base"] = self._config.api_base

        if parameters is not None:
            kwargs.update(parameters.to_request_kwargs())

        return kwargs

    async def _call_with_retry(self, kwargs: dict, *, label: str) -> Any:
        """Call litellm.acompletion with exponential backoff retry.

        Retries on transient errors (rate limits, server errors, timeouts).
        Non-retryable errors (auth, invalid request) are raised immediately.
        """
        last_error: Exception | None = None

        for attempt in range(_MAX_RETRIES):
            try:
                return await litellm.acompletion(**kwargs)
            except (TimeoutError, litellm.Timeout):
                last_error = TimeoutError(
                    f"{label} timed out after {kwargs.get('timeout')}s "
                    f"(attempt {attempt + 1}/{_MAX_RETRIES})"
                )
            except litellm.AuthenticationError:
                raise CredentialError(
                    f"Authentication failed for {self._config.model}. "
                    f"Check that your API key is correct."
                ) from None
            except litellm.BadRequestError as e:
                raise StreamOpenError(
                    f"Bad request to {self._config.model}: {e}", status_code=400,
                ) from e
            except _TRANSIENT_ERRORS as e:
                last_error = e

            if attempt < _MAX_RETRIES - 1:
                backoff = _BASE_BACKOFF * (2**attempt)
                logger.warning(
                    "%s retry %d/%d for %s (%s, backoff: %.1fs)",
                    label, attempt + 1, _MAX_RETRIES, self._config.display_name,
                    _short_error_reason(last_error), backoff,
                )
                await asyncio.sleep(backoff)

        if isinstance(last_error, TimeoutError):
            raise StreamOpenError(str(last_error), status_code=504) from last_error
        raise StreamOpenError(
            f"{label} to {self._config.model} failed after "
            f"{_MAX_RETRIES} retries: {last_error}",
            status_code=_status_code(last_error, 503),
        ) from last_error

    def _extract_content(self, response: Any) -> str:
        """Extract text content from a LiteLLM response."""
        if not response.choices:
            return ""
        message = response.choices[0].message
        return message.content or "" if message else ""
