"""Evolution gateway adapter."""

from __future__ import annotations

import hmac
from collections.abc import Mapping
from typing import Any

from ..conversations.models import (
    EventKind,
    GatewayEvent,
    SenderIdentifiers,
    digits_only,
    is_transient_jid,
    strip_suffix,
)
from .base import ChannelAdapter

# Device-owner labels and placeholders that say nothing about the sender.
_MEANINGLESS_PUSH_NAMES = frozenset({"unknown", "você", "voce", "you", "me", "eu"})


def meaningful_push_name(value: str | None) -> str | None:
    if not value:
        return None
    cleaned = value.strip()
    if not cleaned or cleaned.lower() in _MEANINGLESS_PUSH_NAMES:
        return None
    return cleaned


class EvolutionAdapter(ChannelAdapter):
    channel_name = "evolution"

    def verify_signature(
        self,
        body: bytes,
        headers: Mapping[str, str],
        config: Mapping[str, Any],
    ) -> bool:
        token = (config or {}).get("webhook_token")
        if not token:
            return True
        received = headers.get("apikey") or headers.get("x-webhook-token")
        if not received:
            return False
        return hmac.compare_digest(received, token)

    def parse_events(self, payload: Mapping[str, Any]) -> list[GatewayEvent]:
        raw_event = str(payload.get("event") or "")
        kind = EventKind.from_raw(raw_event)
        if kind is None:
            return []
        instance = payload.get("instance") or payload.get("instanceName") or ""
        if isinstance(instance, Mapping):
            instance = instance.get("instanceName") or instance.get("name") or ""
        data = payload.get("data")
        items = data if isinstance(data, list) else [data or {}]
        events: list[GatewayEvent] = []
        for item in items:
            if not isinstance(item, Mapping):
                continue
            event = GatewayEvent(
                kind=kind, instance=str(instance), data=dict(item), raw_event=raw_event
            )
            # Echoes of our own sends are already persisted; only reactions matter.
            if kind == EventKind.SEND_MESSAGE and "reactionMessage" not in event.message:
                continue
            events.append(event)
        return events

    def extract_identifiers(self, event: GatewayEvent) -> SenderIdentifiers:
        key = event.key
        data = event.data
        message = event.message
        remote_jid = key.get("remoteJid") or key.get("remote_jid") or ""
        alt_lid = key.get("remote_lid") or data.get("remote_lid") or message.get("remote_lid")
        explicit = key.get("phone_number") or data.get("phone_number") or message.get("phone_number")
        sender_raw = key.get("senderPn") or key.get("sender_pn")

        if alt_lid:
            lid_id: str | None = strip_suffix(str(alt_lid))
        elif is_transient_jid(remote_jid):
            lid_id = strip_suffix(remote_jid)
        else:
            lid_id = None

        raw_push_name = data.get("pushName") or None
        return SenderIdentifiers(
            remote_jid=remote_jid,
            sender_pn=strip_suffix(sender_raw) or None if sender_raw else None,
            explicit_phone=digits_only(str(explicit)) or None if explicit else None,
            lid_id=lid_id or None,
            remote_jid_phone=(
                strip_suffix(remote_jid) or None
                if remote_jid and not is_transient_jid(remote_jid)
                else None
            ),
            participant=key.get("participant") or data.get("participant") or None,
            push_name=meaningful_push_name(raw_push_name),
            raw_push_name=raw_push_name,
            from_me=event.from_me,
        )
