"""Gateway adapter registry."""

from __future__ import annotations

from .base import ChannelAdapter
from .evolution import EvolutionAdapter, meaningful_push_name

_REGISTRY: dict[str, type[ChannelAdapter]] = {}


def register_adapter(adapter: type[ChannelAdapter]) -> None:
    """Register a gateway adapter class in the global registry."""
    _REGISTRY[adapter.channel_name] = adapter


def get_adapter(name: str) -> type[ChannelAdapter]:
    """Retrieve an adapter class for ``name`` or raise ``KeyError``."""
    normalized = name.lower()
    if normalized not in _REGISTRY:
        raise KeyError(f"Gateway '{name}' is not configured")
    return _REGISTRY[normalized]


# Pre-register built-in adapters
register_adapter(EvolutionAdapter)

__all__ = [
    "ChannelAdapter",
    "EvolutionAdapter",
    "get_adapter",
    "meaningful_push_name",
    "register_adapter",
]
