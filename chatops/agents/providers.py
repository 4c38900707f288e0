"""Credential lookup for OpenAI-compatible completion vendors."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass


@dataclass(frozen=True)
class ProviderCredentials:
    """Container for credentials resolved for a provider."""

    provider: str
    api_key: str | None
    base_url: str | None = None

    @property
    def configured(self) -> bool:
        return bool(self.api_key)


class ProviderRegistry:
    """Resolve completion credentials from environment or explicit overrides.

    Vendors are tried in ``preference`` order; the first one with a key wins.
    """

    _DEFAULT_ENV_MAP: Mapping[str, str] = {
        "groq": "GROQ_API_KEY",
        "openai": "OPENAI_API_KEY",
    }
    _DEFAULT_BASE_URLS: Mapping[str, str | None] = {
        "groq": "https://api.groq.com/openai/v1",
        "openai": None,
    }

    def __init__(
        self,
        overrides: Mapping[str, Mapping[str, str]] | None = None,
        preference: tuple[str, ...] = ("groq", "openai"),
    ):
        self._overrides = {k.lower(): dict(v) for k, v in (overrides or {}).items()}
        self._preference = preference

    def get_credentials(self, provider: str) -> ProviderCredentials:
        key = provider.lower()
        if key in self._overrides:
            override = self._overrides[key]
            return ProviderCredentials(
                provider=key,
                api_key=override.get("api_key"),
                base_url=override.get("base_url") or self._DEFAULT_BASE_URLS.get(key),
            )
        env_var = self._DEFAULT_ENV_MAP.get(key)
        return ProviderCredentials(
            provider=key,
            api_key=os.getenv(env_var) if env_var else None,
            base_url=self._DEFAULT_BASE_URLS.get(key),
        )

    def resolve(self) -> ProviderCredentials | None:
        """Return the first configured provider, or ``None``."""

        for name in self._preference:
            credentials = self.get_credentials(name)
            if credentials.configured:
                return credentials
        return None
