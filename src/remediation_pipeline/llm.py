from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from langchain_openai import ChatOpenAI

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT: int = 300
_DEFAULT_MAX_RETRIES: int = 3


def load_env_file(repo_root: Path | None = None) -> None:
    """Load ``.env`` from ``repo_root`` (or cwd) without overriding set variables."""
    env_path = (repo_root if repo_root is not None else Path.cwd()) / ".env"
    if env_path.is_file():
        load_dotenv(env_path, override=False)


def require_secret(name: str, *, purpose: str, repo_root: Path | None = None) -> str:
    """Return a secret from the environment or ``.env``.

    Raises:
        RuntimeError: If the variable is unset or blank after loading ``.env``.
    """
    load_env_file(repo_root)
    value = os.getenv(name, "").strip()
    if not value:
        raise RuntimeError(f"{name} is required for {purpose}")
    return value


def ensure_openai_api_key(repo_root: Path | None = None) -> str:
    return require_secret("OPENAI_API_KEY", purpose="agent runtime execution", repo_root=repo_root)


def get_chat_model(
    *,
    model_name: str,
    temperature: float = 0.0,
    timeout: int = _DEFAULT_TIMEOUT,
    max_retries: int = _DEFAULT_MAX_RETRIES,
    repo_root: Path | None = None,
) -> ChatOpenAI:
    """Construct the chat model that drives the remediation agent.

    Args:
        model_name: OpenAI model identifier (e.g. 'gpt-4o').
        temperature: Sampling temperature.
        timeout: Request timeout in seconds.
        max_retries: Retry attempts on transient API failures.
        repo_root: Optional repo root for .env file resolution.

    Raises:
        ValueError: If ``model_name`` is blank.
        RuntimeError: If OPENAI_API_KEY is not available.
    """
    if not model_name or not model_name.strip():
        raise ValueError("model_name must be a non-empty string")
    ensure_openai_api_key(repo_root=repo_root)
    kwargs: dict[str, Any] = {
        "model": model_name,
        "temperature": temperature,
        "timeout": timeout,
        "max_retries": max_retries,
    }
    logger.debug("Building chat model %s (timeout=%ss)", model_name, timeout)
    return ChatOpenAI(**kwargs)
