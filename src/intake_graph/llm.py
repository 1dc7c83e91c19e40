from __future__ import annotations

import json
import logging
import os
import re
import threading
from pathlib import Path
from typing import Any, Protocol

from dotenv import load_dotenv
from langchain_core.messages import BaseMessage
from langchain_openai import ChatOpenAI

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT: int = 50
_DEFAULT_MAX_RETRIES: int = 0

_LEADING_FENCE = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_TRAILING_FENCE = re.compile(r"\s*```\s*$")


class StageResponseError(RuntimeError):
    """Raised when a generation response cannot be decoded into the stage's output."""


class TextGenerator(Protocol):
    """Anything that turns a prompt into response text for a given model and budget."""

    def generate(self, prompt: str, *, model: str, max_tokens: int) -> str:
        ...


def ensure_openai_api_key(repo_root: Path | None = None) -> str:
    """Load OPENAI_API_KEY from environment or .env and return it.

    Searches the environment first, then falls back to a ``.env`` file at the
    given ``repo_root`` (or cwd if not specified).

    Raises:
        RuntimeError: If OPENAI_API_KEY is unavailable after all sources are checked.
    """
    repo = repo_root if repo_root is not None else Path.cwd()
    env_path = repo / ".env"
    if env_path.is_file():
        load_dotenv(env_path)

    key = os.getenv("OPENAI_API_KEY", "").strip()
    if not key:
        raise RuntimeError("OPENAI_API_KEY is required for generation-backed stages")
    return key


def get_chat_model(
    *,
    model_name: str,
    temperature: float = 0.0,
    timeout: int = _DEFAULT_TIMEOUT,
    max_retries: int = _DEFAULT_MAX_RETRIES,
    max_completion_tokens: int | None = None,
    repo_root: Path | None = None,
) -> ChatOpenAI:
    """Construct a ChatOpenAI instance with validated API key and request limits.

    Args:
        model_name: OpenAI model identifier (e.g. 'gpt-4o', 'gpt-4o-mini').
        temperature: Sampling temperature.
        timeout: Request timeout in seconds. Keep it below the caller's deadline.
        max_retries: Retry attempts on transient failures.
        max_completion_tokens: Maximum tokens for the completion response.
            When None, the model default is used.
        repo_root: Optional repo root for .env file resolution.

    Raises:
        ValueError: If model_name is blank.
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
    if max_completion_tokens is not None:
        kwargs["max_completion_tokens"] = max_completion_tokens
    return ChatOpenAI(**kwargs)


class ChatModelGenerator:
    """``TextGenerator`` backed by ``ChatOpenAI``.

    One chat model is built per (model, max_tokens) pair and reused across
    calls, so the API key check and client construction happen once.
    """

    def __init__(
        self,
        *,
        timeout: int = _DEFAULT_TIMEOUT,
        max_retries: int = _DEFAULT_MAX_RETRIES,
        temperature: float = 0.0,
        repo_root: Path | None = None,
    ) -> None:
        self.timeout = timeout
        self.max_retries = max_retries
        self.temperature = temperature
        self.repo_root = repo_root
        self._models: dict[tuple[str, int], ChatOpenAI] = {}
        self._lock = threading.Lock()

    def _model(self, model: str, max_tokens: int) -> ChatOpenAI:
        key = (model, max_tokens)
        with self._lock:
            chat_model = self._models.get(key)
            if chat_model is None:
                chat_model = get_chat_model(
                    model_name=model,
                    temperature=self.temperature,
                    timeout=self.timeout,
                    max_retries=self.max_retries,
                    max_completion_tokens=max_tokens,
                    repo_root=self.repo_root,
                )
                self._models[key] = chat_model
            return chat_model

    def generate(self, prompt: str, *, model: str, max_tokens: int) -> str:
        response = self._model(model, max_tokens).invoke(prompt)
        text = message_text(response)
        logger.debug("Generation model=%s max_tokens=%d returned %d chars", model, max_tokens, len(text))
        return text


def message_text(response: Any) -> str:
    """Extract plain text from a chat response, joining text blocks when content is a list."""
    content = response.content if isinstance(response, BaseMessage) else response
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type") == "text":
                parts.append(str(block.get("text", "")))
        return "".join(parts)
    raise StageResponseError(f"Unsupported response content type {type(content).__name__}")


def strip_code_fences(text: str) -> str:
    """Remove a leading ```/```json fence and a trailing ``` fence, if present."""
    cleaned = _LEADING_FENCE.sub("", text.strip())
    return _TRAILING_FENCE.sub("", cleaned).strip()


def parse_json_object(text: str, *, label: str) -> dict[str, Any]:
    """Decode a generation response into a JSON object.

    Raises:
        StageResponseError: If the text is not valid JSON or not an object.
    """
    cleaned = strip_code_fences(text)
    try:
        payload = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise StageResponseError(f"{label} response is not valid JSON: {exc.msg}") from exc
    if not isinstance(payload, dict):
        raise StageResponseError(f"{label} response must be a JSON object, got {type(payload).__name__}")
    return payload
