"""Token counting for the /tokens command and the tokenizer endpoint."""

from __future__ import annotations

import logging

import litellm

logger = logging.getLogger(__name__)


def count_tokens(text: str, model: str = "deepseek/deepseek-chat") -> int | None:
    """Count the tokens ``text`` uses for ``model``.

    Returns 0 for empty text and None when the tokenizer fails.
    """
    if not text:
        return 0
    try:
        return litellm.token_counter(model=model, text=text)
    except Exception:
        logger.exception("Token counting failed for model %s", model)
        return None
