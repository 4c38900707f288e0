"""Realtime and webhook notification ports.

Both collaborators are fire-and-forget: the ingestion pipeline calls them
only after persistence succeeded and never lets their failures propagate.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Protocol

import requests

logger = logging.getLogger(__name__)

# Realtime event names
MESSAGE_CREATED = "message:created"
MESSAGE_UPDATED = "message:updated"
MESSAGE_STATUS = "message:status"
CONVERSATION_UPDATED = "conversation:updated"
INSTANCES_UPDATED = "instances:updated"

# Webhook event names
NEW_CONVERSATION = "new_conversation"
NEW_MESSAGE = "new_message"
MESSAGE_DELIVERED = "message_delivered"
MESSAGE_READ = "message_read"
TICKET_CREATED = "ticket_created"
AI_ESCALATION = "ai_escalation"
INSTANCE_CONNECTED = "instance_connected"
INSTANCE_DISCONNECTED = "instance_disconnected"


class RealtimeNotifier(Protocol):
    def publish(self, event: str, payload: dict[str, Any]) -> None: ...


class WebhookNotifier(Protocol):
    def dispatch(self, event: str, data: dict[str, Any]) -> None: ...


def publish_quietly(realtime: RealtimeNotifier, event: str, payload: dict[str, Any]) -> bool:
    """Publish one realtime event; a failure is logged and reported as ``False``."""

    try:
        realtime.publish(event, payload)
    except Exception:
        logger.exception("Realtime publish %s failed", event)
        return False
    return True


def dispatch_quietly(webhooks: WebhookNotifier, event: str, data: dict[str, Any]) -> bool:
    """Hand one event to the webhook dispatcher; a failure is logged and reported as ``False``."""

    try:
        webhooks.dispatch(event, data)
    except Exception:
        logger.exception("Webhook dispatch %s failed", event)
        return False
    return True


def build_webhook_envelope(
    event: str, data: dict[str, Any], *, now: datetime | None = None
) -> dict[str, Any]:
    """Return the ``{event, timestamp, data}`` payload handed to the dispatcher."""

    timestamp = (now or datetime.now(timezone.utc)).isoformat()
    return {"event": event, "timestamp": timestamp, "data": data}


class LoggingRealtimeNotifier:
    """Default realtime port that only records the event in the app log."""

    def publish(self, event: str, payload: dict[str, Any]) -> None:
        logger.debug("realtime %s: %s", event, payload)


class HttpWebhookNotifier:
    """Forward webhook envelopes to the signed-retry dispatcher service."""

    def __init__(
        self,
        dispatcher_url: str | None,
        *,
        session: requests.Session | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._url = dispatcher_url
        self._session = session or requests.Session()
        self._timeout = timeout

    def dispatch(self, event: str, data: dict[str, Any]) -> None:
        envelope = build_webhook_envelope(event, data)
        if not self._url:
            logger.debug("webhook %s not dispatched (no dispatcher configured)", event)
            return
        response = self._session.post(self._url, json=envelope, timeout=self._timeout)
        response.raise_for_status()


class RecordingNotifier:
    """Collects realtime and webhook events in memory."""

    def __init__(self) -> None:
        self.realtime: list[tuple[str, dict[str, Any]]] = []
        self.webhooks: list[dict[str, Any]] = []

    def publish(self, event: str, payload: dict[str, Any]) -> None:
        self.realtime.append((event, payload))

    def dispatch(self, event: str, data: dict[str, Any]) -> None:
        self.webhooks.append(build_webhook_envelope(event, data))

    def realtime_events(self) -> list[str]:
        return [name for name, _ in self.realtime]

    def webhook_events(self) -> list[str]:
        return [item["event"] for item in self.webhooks]
