from types import SimpleNamespace

import pytest

from chatops.agents import completion as completion_module
from chatops.agents.completion import CompletionError, OpenAICompletionClient
from chatops.agents.providers import ProviderRegistry
from chatops.settings import Settings


class _FakeCompletions:
    def __init__(self, content=None, error=None):
        self.content = content
        self.error = error
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def _client(completions):
    return OpenAICompletionClient(client=SimpleNamespace(chat=SimpleNamespace(completions=completions)))


def _complete(client):
    return client.complete(
        model="llama-3.3-70b-versatile",
        messages=[{"role": "user", "content": "oi"}],
        temperature=0.7,
        max_tokens=500,
    )


def test_complete_returns_stripped_text():
    completions = _FakeCompletions(content="  Olá!  ")

    assert _complete(_client(completions)) == "Olá!"
    assert completions.calls[0]["max_tokens"] == 500


def test_complete_joins_content_parts():
    completions = _FakeCompletions(content=[{"type": "text", "text": "Olá"}, {"type": "text", "text": "!"}])

    assert _complete(_client(completions)) == "Olá!"


def test_complete_wraps_transport_errors():
    with pytest.raises(CompletionError, match="Completion request failed"):
        _complete(_client(_FakeCompletions(error=TimeoutError("slow"))))


def test_complete_rejects_empty_reply():
    with pytest.raises(CompletionError, match="empty"):
        _complete(_client(_FakeCompletions(content="   ")))


def test_registry_prefers_groq(monkeypatch):
    monkeypatch.setenv("GROQ_API_KEY", "gsk")
    monkeypatch.setenv("OPENAI_API_KEY", "sk")

    credentials = ProviderRegistry().resolve()

    assert credentials.provider == "groq"
    assert credentials.base_url == "https://api.groq.com/openai/v1"


def test_registry_falls_back_to_openai(monkeypatch):
    monkeypatch.delenv("GROQ_API_KEY", raising=False)
    monkeypatch.setenv("OPENAI_API_KEY", "sk")

    credentials = ProviderRegistry().resolve()

    assert credentials.provider == "openai"
    assert credentials.base_url is None


def test_registry_overrides_take_precedence(monkeypatch):
    monkeypatch.delenv("GROQ_API_KEY", raising=False)
    registry = ProviderRegistry({"groq": {"api_key": "override", "base_url": "http://local/v1"}})

    credentials = registry.resolve()

    assert credentials.api_key == "override"
    assert credentials.base_url == "http://local/v1"


def test_from_settings_without_keys_disables_completion(monkeypatch):
    monkeypatch.delenv("GROQ_API_KEY", raising=False)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    assert OpenAICompletionClient.from_settings(Settings()) is None


def test_from_settings_uses_base_url_override(monkeypatch):
    captured = {}

    def fake_openai(**kwargs):
        captured.update(kwargs)
        return SimpleNamespace(chat=SimpleNamespace(completions=_FakeCompletions(content="ok")))

    monkeypatch.setattr(completion_module, "OpenAI", fake_openai)
    registry = ProviderRegistry({"openai": {"api_key": "sk"}}, preference=("openai",))

    client = OpenAICompletionClient.from_settings(
        Settings(completion_base_url="http://llm:8000/v1", completion_timeout_seconds=12),
        registry,
    )

    assert client is not None
    assert captured == {
        "api_key": "sk",
        "base_url": "http://llm:8000/v1",
        "timeout": 12,
        "max_retries": 0,
    }
