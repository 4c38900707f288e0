"""Prompt-in/completion-out client for OpenAI-compatible endpoints."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any, Protocol

from ..settings import Settings
from .providers import ProviderRegistry

try:  # pragma: no cover - openai optional
    from openai import OpenAI
except Exception:  # pragma: no cover - openai optional
    OpenAI = None  # type: ignore

logger = logging.getLogger(__name__)


class CompletionError(RuntimeError):
    """Raised when the completion service fails or returns nothing usable."""


class CompletionClient(Protocol):
    def complete(
        self,
        *,
        model: str,
        messages: list[dict[str, str]],
        temperature: float,
        max_tokens: int,
    ) -> str: ...


def _message_text(content: Any) -> str:
    if isinstance(content, str):
        return content.strip()
    if isinstance(content, Sequence):
        return "".join(
            part.get("text", "") for part in content if isinstance(part, dict)
        ).strip()
    return ""


class OpenAICompletionClient:
    """Chat-completions call with a bounded timeout and no retries."""

    def __init__(
        self,
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float = 30.0,
        client: Any | None = None,
    ) -> None:
        if client is None:
            if OpenAI is None:
                raise CompletionError("The 'openai' package is required for completions")
            client = OpenAI(api_key=api_key, base_url=base_url, timeout=timeout, max_retries=0)
        self._client = client

    @classmethod
    def from_settings(
        cls, settings: Settings, registry: ProviderRegistry | None = None
    ) -> "OpenAICompletionClient | None":
        """Build a client from the first configured vendor, or ``None``."""

        credentials = (registry or ProviderRegistry()).resolve()
        if credentials is None or OpenAI is None:
            logger.info("No completion provider configured; automated replies disabled")
            return None
        return cls(
            api_key=credentials.api_key,
            base_url=settings.completion_base_url or credentials.base_url,
            timeout=settings.completion_timeout_seconds,
        )

    def complete(
        self,
        *,
        model: str,
        messages: list[dict[str, str]],
        temperature: float,
        max_tokens: int,
    ) -> str:
        try:
            completion = self._client.chat.completions.create(
                model=model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
            )
        except Exception as exc:
            raise CompletionError(f"Completion request failed: {exc}") from exc
        choices = getattr(completion, "choices", None) or []
        text = _message_text(choices[0].message.content) if choices else ""
        if not text:
            raise CompletionError("Completion service returned an empty response")
        return text
