"""Conversation ingestion: identity, normalization, media and status."""

from . import schemas
from .models import (
    ConversationMode,
    EventKind,
    GatewayEvent,
    MessageStatus,
    NormalizedMessage,
    SenderIdentifiers,
    TicketStatus,
)

__all__ = [
    "ConversationMode",
    "EventKind",
    "GatewayEvent",
    "MessageStatus",
    "NormalizedMessage",
    "SenderIdentifiers",
    "TicketStatus",
    "schemas",
]
