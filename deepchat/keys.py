"""API key management for deepchat.

Handles loading, saving, and validating the model provider API key.
Keys are stored in ~/.deepchat/keys.env and loaded with this priority:
  1. Environment variables (highest, already set in shell)
  2. ~/.deepchat/keys.env (user's saved keys from `deepchat setup`)
  3. .env in current directory (project-level)
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)

# Directory for user-level deepchat configuration
DEEPCHAT_HOME = Path.home() / ".deepchat"
KEYS_FILE = DEEPCHAT_HOME / "keys.env"

API_KEY_ENV = "DEEPSEEK_API_KEY"
SIGNUP_URL = "https://platform.deepseek.com/api_keys"

# Lightweight model used to check that a key works
_VALIDATION_MODEL = "deepseek/deepseek-chat"
_VALIDATION_API_BASE = "https://api.deepseek.com"


def load_keys_env() -> None:
    """Load API keys from ~/.deepchat/keys.env and .env into os.environ.

    Existing env vars are NOT overwritten.
    """
    files = [KEYS_FILE, Path.cwd() / ".env"]
    for env_file in files:
        if env_file.is_file():
            _load_env_file(env_file)


def _load_env_file(path: Path) -> None:
    """Parse a simple KEY=VALUE .env file and set vars that aren't already set."""
    try:
        for line in path.read_text(encoding="utf-8").splitlines():
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            if "=" not in line:
                continue
            key, _, value = line.partition("=")
            key = key.strip()
            value = value.strip().strip("'\"")
            if key and not os.environ.get(key):
                os.environ[key] = value
                logger.debug("Loaded %s from %s", key, path)
    except OSError:
        logger.debug("Could not read %s", path)


def save_keys(keys: dict[str, str]) -> Path:
    """Save API keys to ~/.deepchat/keys.env.

    Args:
        keys: Mapping of env var name to key value (only non-empty saved).

    Returns:
        Path to the saved file.
    """
    DEEPCHAT_HOME.mkdir(parents=True, exist_ok=True)

    lines = ["# deepchat API keys", "# Saved by `deepchat setup`", ""]
    for env_var, value in keys.items():
        if value:
            lines.append(f"{env_var}={value}")

    KEYS_FILE.write_text("\n".join(lines) + "\n", encoding="utf-8")

    # Restrict permissions on Unix (best-effort)
    try:
        KEYS_FILE.chmod(0o600)
    except OSError:
        pass

    return KEYS_FILE


def clear_keys() -> bool:
    """Remove ~/.deepchat/keys.env if it exists.

    Returns:
        True if the file was removed, False if it didn't exist.
    """
    if KEYS_FILE.is_file():
        KEYS_FILE.unlink()
        return True
    return False


def get_api_key(env_var: str = API_KEY_ENV) -> str:
    """Return the configured API key, or an empty string."""
    load_keys_env()
    return os.environ.get(env_var, "")


async def validate_key(api_key: str) -> tuple[bool, str]:
    """Validate an API key by making a tiny LiteLLM call.

    Returns:
        Tuple of (success, detail_message).
    """
    import litellm

    try:
        await litellm.acompletion(
            model=_VALIDATION_MODEL,
            messages=[{"role": "user", "content": "Say hi"}],
            max_tokens=5,
            timeout=15.0,
            api_key=api_key,
            api_base=_VALIDATION_API_BASE,
        )
        return True, "Connected (DeepSeek Chat)"
    except litellm.AuthenticationError:
        return False, "Invalid key (401 Unauthorized)"
    except litellm.BadRequestError as e:
        return False, f"Bad request: {e}"
    except (litellm.RateLimitError, litellm.ServiceUnavailableError):
        # Key is valid but the provider is rate-limiting
        raise
    except Exception as e:
        return False, f"Error: {str(e)[:80]}"
