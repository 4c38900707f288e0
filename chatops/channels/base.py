"""Base abstractions for messaging gateway adapters."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any

from ..conversations.models import GatewayEvent, SenderIdentifiers


class ChannelAdapter(ABC):
    """Abstract base class encapsulating gateway-specific payload parsing."""

    #: Lowercase gateway identifier used in routes and configuration.
    channel_name: str

    @abstractmethod
    def parse_events(self, payload: Mapping[str, Any]) -> list[GatewayEvent]:
        """Convert a webhook payload into typed gateway events.

        Unknown event kinds are dropped; an empty list means "acknowledge and
        ignore".
        """

    @abstractmethod
    def extract_identifiers(self, event: GatewayEvent) -> SenderIdentifiers:
        """Pull every sender identifier the payload carries."""

    def verify_signature(
        self,
        body: bytes,
        headers: Mapping[str, str],
        config: Mapping[str, Any],
    ) -> bool:
        """Validate authenticity of the webhook payload.

        Adapters can override this to implement signature checks. The default
        implementation returns ``True``.
        """

        return True
