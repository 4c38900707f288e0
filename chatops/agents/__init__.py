"""Automated agent: reply policy, prompts, completion client and sweep."""

from .arbiter import ArbiterOutcome, ResponseArbiter, within_working_hours
from .completion import CompletionClient, CompletionError, OpenAICompletionClient
from .sweep import HybridSweeper, sweep_hybrid_conversations

__all__ = [
    "ArbiterOutcome",
    "CompletionClient",
    "CompletionError",
    "HybridSweeper",
    "OpenAICompletionClient",
    "ResponseArbiter",
    "sweep_hybrid_conversations",
    "within_working_hours",
]
