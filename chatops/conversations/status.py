"""Apply delivery receipts, reactions and deletions to stored messages.

Receipts only ever move a message forward in the status order, so replays
and out-of-order deliveries are harmless. Deletions are soft and one-way.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import datetime, timezone
from typing import Any

from .. import notifications
from . import schemas
from .models import (
    GatewayEvent,
    MessageStatus,
    SenderIdentifiers,
    is_group_jid,
    strip_suffix,
)
from .normalizer import reaction_parts
from .repository import ChatRepository

logger = logging.getLogger(__name__)

SELF_ACTOR = "me"
DELETION_PREVIEW_LENGTH = 150

# Outcomes
UPDATED = "updated"
STALE = "stale"
NOT_FOUND = "not_found"
IGNORED = "ignored"
DUPLICATE = "duplicate"
REMOVED = "removed"

_WEBHOOK_FOR_STATUS = {
    MessageStatus.DELIVERED: notifications.MESSAGE_DELIVERED,
    MessageStatus.READ: notifications.MESSAGE_READ,
}


def deletion_note(content: str, *, from_me: bool) -> str:
    who = "O atendente" if from_me else "O usuário"
    preview = content[:DELETION_PREVIEW_LENGTH]
    if len(content) > DELETION_PREVIEW_LENGTH:
        preview += "..."
    return f'🗑️ {who} apagou uma mensagem via WhatsApp\n\nConteúdo original: "{preview}"'


def _first(values: Iterable[Any]) -> str | None:
    for value in values:
        if value:
            return str(value)
    return None


class StatusReconciler:
    def __init__(
        self,
        repository: ChatRepository,
        realtime: notifications.RealtimeNotifier,
        webhooks: notifications.WebhookNotifier,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._repository = repository
        self._realtime = realtime
        self._webhooks = webhooks
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # ------------------------------------------------------------------
    # Lookup

    def _find_message(self, candidates: list[str]) -> schemas.Message | None:
        for candidate in candidates:
            message = self._repository.get_message_by_gateway_id(candidate)
            if message:
                return message
        # Some gateways reassign ids; the original id survives in metadata.
        for candidate in candidates:
            message = self._repository.find_message_by_metadata(candidate)
            if message:
                logger.info("Matched message %s through metadata id %s", message.id, candidate)
                return message
        return None

    # ------------------------------------------------------------------
    # Receipts

    def apply_receipt(self, event: GatewayEvent) -> str:
        data = event.data
        update = data.get("update") if isinstance(data.get("update"), dict) else {}
        raw_id = data.get("id")
        nested_id = raw_id.get("id") if isinstance(raw_id, dict) else None
        candidates = [
            c
            for c in (
                _first([data.get("keyId"), update.get("keyId"), event.key.get("id"), nested_id]),
                _first([data.get("messageId"), update.get("messageId")]),
            )
            if c
        ]
        status = MessageStatus.from_gateway(
            data.get("status") if data.get("status") is not None else update.get("status")
        )
        if status is None or not candidates:
            logger.debug("Ignoring receipt without status or id: %s", data)
            return IGNORED

        message = self._find_message(candidates)
        if message is None:
            logger.warning(
                "Receipt %s for unknown message ids %s dropped", status.value, candidates
            )
            return NOT_FOUND

        participant = data.get("participant") or event.key.get("participant")
        remote_jid = data.get("remoteJid") or event.key.get("remoteJid") or message.remote_jid
        if status is MessageStatus.READ and participant and is_group_jid(remote_jid):
            if self._repository.add_read_participant(message.id, participant, self._clock()):
                self._publish(
                    notifications.MESSAGE_UPDATED,
                    {
                        "conversation_id": message.conversation_id,
                        "message_id": message.message_id,
                        "read_participant": participant,
                    },
                )

        if not self._repository.update_message_status(message.id, status):
            return STALE

        self._publish(
            notifications.MESSAGE_STATUS,
            {
                "conversation_id": message.conversation_id,
                "message_id": message.message_id,
                "status": status.value,
            },
        )
        webhook_event = _WEBHOOK_FOR_STATUS.get(status)
        if webhook_event and message.is_from_me:
            payload: dict[str, Any] = {
                "message_id": message.message_id,
                "conversation_id": message.conversation_id,
                "status": status.value,
            }
            if status is MessageStatus.READ:
                payload.update({"direction": "outgoing_read", "read_by": "recipient"})
            self._dispatch(webhook_event, payload)
        return UPDATED

    # ------------------------------------------------------------------
    # Deletions

    def apply_deletion(self, event: GatewayEvent, target_id: str | None = None) -> str:
        data = event.data
        raw_id = data.get("id")
        candidate = target_id or _first(
            [
                raw_id if isinstance(raw_id, str) else None,
                event.key.get("id"),
                data.get("messageId"),
                data.get("keyId"),
            ]
        )
        if not candidate:
            return IGNORED
        message = self._find_message([candidate])
        if message is None:
            logger.warning("Deletion for unknown message %s dropped", candidate)
            return NOT_FOUND

        from_me = event.from_me or data.get("fromMe") is True
        participant = event.key.get("participant") or data.get("participant")
        deleted = self._repository.mark_message_deleted(
            message.id,
            deleted_by=self._actor_id(
                message.conversation_id,
                from_me=from_me,
                participant=participant,
                fallback=strip_suffix(event.key.get("remoteJid")) or None,
            ),
            metadata={"deleted_via_whatsapp": True, "deleted_from_me": from_me},
        )
        if deleted is None:
            return DUPLICATE

        note = self._repository.insert_message(
            schemas.NewMessage(
                conversation_id=message.conversation_id,
                message_id=f"internal_wa_delete_{message.message_id}",
                remote_jid=message.remote_jid,
                content=deletion_note(message.content, from_me=from_me),
                message_type="text",
                is_from_me=from_me,
                is_internal=True,
                status=MessageStatus.SENT,
                metadata={"sender": "system", "deleted_message_id": message.message_id},
                timestamp=self._clock(),
            )
        )
        self._publish(
            notifications.MESSAGE_UPDATED,
            {
                "conversation_id": message.conversation_id,
                "message_id": message.message_id,
                "deleted": True,
            },
        )
        if note is not None:
            self._publish(
                notifications.MESSAGE_CREATED,
                {"conversation_id": note.conversation_id, "message": note.model_dump(mode="json")},
            )
        return UPDATED

    # ------------------------------------------------------------------
    # Reactions

    def apply_reaction(self, event: GatewayEvent, ids: SenderIdentifiers) -> str:
        emoji, target_id = reaction_parts(event.message)
        if not target_id:
            return IGNORED
        message = self._repository.get_message_by_gateway_id(target_id)
        if message is None:
            logger.warning("Reaction for unknown message %s dropped", target_id)
            return NOT_FOUND

        reactor = self._actor_id(
            message.conversation_id,
            from_me=ids.from_me,
            participant=ids.participant if ids.is_group else None,
            fallback=reactor_id(ids),
        )
        reaction = self._repository.replace_reaction(
            message.id, message.conversation_id, reactor, emoji, is_from_me=ids.from_me
        )
        self._publish(
            notifications.MESSAGE_UPDATED,
            {
                "conversation_id": message.conversation_id,
                "message_id": message.message_id,
                "reaction": {
                    "emoji": emoji,
                    "reactor_jid": reactor,
                    "is_from_me": ids.from_me,
                },
            },
        )
        return UPDATED if reaction is not None else REMOVED

    def _actor_id(
        self,
        conversation_id: int,
        *,
        from_me: bool,
        participant: str | None,
        fallback: str | None,
    ) -> str | None:
        """Stable id of whoever reacted or deleted.

        In a one-to-one chat the other party is the conversation's contact, so
        its canonical phone is used whether the event carried a lid or a phone.
        """

        if from_me:
            return SELF_ACTOR
        if participant:
            return strip_suffix(participant)
        conversation = self._repository.get_conversation(conversation_id)
        contact = self._repository.get_contact(conversation.contact_id) if conversation else None
        if contact is not None and not contact.is_group:
            return contact.phone_number
        return fallback

    # ------------------------------------------------------------------
    # Fan-out

    def _publish(self, event: str, payload: dict[str, Any]) -> None:
        notifications.publish_quietly(self._realtime, event, payload)

    def _dispatch(self, event: str, payload: dict[str, Any]) -> None:
        notifications.dispatch_quietly(self._webhooks, event, payload)


def reactor_id(ids: SenderIdentifiers) -> str:
    """Identify who reacted: group participant, sender phone, or the chat id."""

    if ids.is_group and ids.participant:
        return strip_suffix(ids.participant)
    if ids.from_me:
        return SELF_ACTOR
    return ids.sender_pn or strip_suffix(ids.remote_jid)
