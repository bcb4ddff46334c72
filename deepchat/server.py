"""FastAPI app exposing the model proxy and tokenizer endpoints.

POST /api/stream streams NDJSON fragments from the model, POST /api/call
returns a full completion, and POST /api/tokenizer counts tokens. The
caller supplies the API key in the request body.

Requires the 'server' optional dependency group:
    pip install deepchat[server]
"""

import json
import logging
from collections.abc import AsyncIterator
from typing import Any

from pydantic import BaseModel, Field

from deepchat.chat.tokens import count_tokens
from deepchat.chat.window import ProviderFactory, litellm_factory
from deepchat.errors import CredentialError, StreamOpenError
from deepchat.providers.base import FragmentStream
from deepchat.providers.registry import load_models
from deepchat.schemas.config import GenerationParameters
from deepchat.schemas.messages import ChatMessageParam

logger = logging.getLogger(__name__)

NDJSON_MEDIA_TYPE = "application/x-ndjson"


class CompletionRequest(BaseModel):
    """Body of /api/stream and /api/call. Field names follow the web client."""

    apiKey: str | None = Field(default=None, description="Caller's model API key")  # noqa: N815
    messages: list[ChatMessageParam] | None = Field(default=None, description="Conversation so far")
    model: str = Field(default="deepseek-chat", description="Registry key or LiteLLM id")
    parameters: GenerationParameters | None = Field(default=None, description="Sampling parameters")


class TokenizerRequest(BaseModel):
    text: str | None = None


def _error_status(error: Exception) -> int:
    if isinstance(error, CredentialError):
        return 401
    if isinstance(error, StreamOpenError):
        return error.status_code
    if isinstance(error, ValueError):
        return 400
    return 500


def create_app(provider_factory: ProviderFactory | None = None) -> Any:
    """Create and configure the FastAPI application.

    Returns the app instance. FastAPI is imported inside this function
    so the module can be imported without server deps installed.
    """
    try:
        from fastapi import FastAPI, Request
        from fastapi.middleware.cors import CORSMiddleware
        from fastapi.responses import JSONResponse, StreamingResponse
    except ImportError as exc:
        raise ImportError(
            "The server requires extra dependencies. "
            "Install with: pip install deepchat[server]"
        ) from exc

    factory = provider_factory or litellm_factory(load_models())

    app = FastAPI(
        title="deepchat API",
        description="Streaming model proxy and tokenizer",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["POST", "GET"],
        allow_headers=["*"],
    )

    def _error(status: int, message: str) -> JSONResponse:
        return JSONResponse({"error": message}, status_code=status)

    def _validate(body: CompletionRequest) -> JSONResponse | None:
        if not body.apiKey:
            return _error(400, "Missing apiKey")
        if body.messages is None:
            return _error(400, "Missing messages")
        return None

    # ── Model proxy ──────────────────────────────────────────────

    @app.post("/api/stream")
    async def stream(body: CompletionRequest, request: Request):
        """Stream model output as one JSON fragment per line."""
        invalid = _validate(body)
        if invalid is not None:
            return invalid

        try:
            provider = factory(body.model, body.apiKey)
            upstream = await provider.open_stream(body.messages, body.parameters)
        except (CredentialError, StreamOpenError, ValueError) as e:
            logger.error("Failed to open stream for %s: %s", body.model, e)
            return _error(_error_status(e), str(e) or "Failed to stream")

        return StreamingResponse(
            _ndjson(upstream, request),
            media_type=NDJSON_MEDIA_TYPE,
            headers={"Cache-Control": "no-cache, no-transform", "X-Accel-Buffering": "no"},
        )

    @app.post("/api/call")
    async def call(body: CompletionRequest):
        """Return a full, non-streaming completion."""
        invalid = _validate(body)
        if invalid is not None:
            return invalid

        try:
            provider = factory(body.model, body.apiKey)
            content = await provider.complete(body.messages, body.parameters)
        except (CredentialError, StreamOpenError, ValueError) as e:
            logger.error("Completion failed for %s: %s", body.model, e)
            return _error(_error_status(e), str(e) or "Failed to call model")
        return {"content": content}

    # ── Tokenizer ────────────────────────────────────────────────

    @app.post("/api/tokenizer")
    async def tokenizer(body: TokenizerRequest):
        """Count the tokens in a piece of text."""
        if body.text is None:
            return _error(400, "Missing text")
        length = count_tokens(body.text)
        if length is None:
            return _error(502, "Tokenizer failed")
        return {"length": length}

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    return app


async def _ndjson(upstream: FragmentStream, request: Any) -> AsyncIterator[str]:
    """Serialize fragments as NDJSON, aborting upstream if the client leaves."""
    try:
        async for fragment in upstream:
            if await request.is_disconnected():
                logger.info("Client disconnected, aborting upstream stream")
                upstream.abort()
                break
            yield json.dumps(fragment.model_dump()) + "\n"
    except Exception:
        # Headers are already sent; end the body
        logger.exception("Upstream stream failed")
    finally:
        await upstream.aclose()
