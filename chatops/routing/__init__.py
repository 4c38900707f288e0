"""Conversation routing helpers."""

from .assignment import AssignmentEngine

__all__ = ["AssignmentEngine"]
