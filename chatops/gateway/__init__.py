"""Outbound gateway access."""

from .client import GatewayClient, GatewayError, SendResult, resolve_destination
from .messenger import SENDER_AI, SENDER_SYSTEM, OutboundMessenger

__all__ = [
    "GatewayClient",
    "GatewayError",
    "OutboundMessenger",
    "SENDER_AI",
    "SENDER_SYSTEM",
    "SendResult",
    "resolve_destination",
]
