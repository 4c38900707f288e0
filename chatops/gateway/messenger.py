"""Outbound send plus persistence of the sent message."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone
from uuid import uuid4

from .. import notifications
from ..conversations import schemas
from ..conversations.models import MessageStatus
from ..conversations.repository import ChatRepository
from .client import GatewayClient, SendResult, media_kind, resolve_destination

logger = logging.getLogger(__name__)

SENDER_AI = "ai"
SENDER_SYSTEM = "system"


class OutboundMessenger:
    """Sends through the gateway and records the message on the conversation."""

    def __init__(
        self,
        repository: ChatRepository,
        gateway: GatewayClient,
        realtime: notifications.RealtimeNotifier,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._repository = repository
        self._gateway = gateway
        self._realtime = realtime
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def send_text(
        self,
        conversation: schemas.Conversation,
        text: str,
        *,
        sender: str,
        quoted_message_id: str | None = None,
    ) -> schemas.Message | None:
        """Send ``text`` and persist it; returns ``None`` for an echoed duplicate."""

        instance, destination = self._route(conversation)
        result = self._gateway.send_text(
            instance, destination, text, quoted_message_id=quoted_message_id
        )
        return self._record(
            conversation,
            result,
            destination,
            sender=sender,
            content=text,
            preview=text,
            message_type="text",
            quoted_message_id=quoted_message_id,
        )

    def send_media(
        self,
        conversation: schemas.Conversation,
        media_url: str,
        mimetype: str | None,
        *,
        sender: str,
        caption: str | None = None,
        quoted_message_id: str | None = None,
    ) -> schemas.Message | None:
        """Send a media link with an optional caption and persist it."""

        instance, destination = self._route(conversation)
        result = self._gateway.send_media(
            instance,
            destination,
            media_url,
            mimetype,
            caption=caption,
            quoted_message_id=quoted_message_id,
        )
        kind = media_kind(mimetype)
        return self._record(
            conversation,
            result,
            destination,
            sender=sender,
            content=caption or "",
            preview=caption or f"[{kind}]",
            message_type=kind,
            media_url=media_url,
            media_mimetype=mimetype,
            quoted_message_id=quoted_message_id,
        )

    def _route(self, conversation: schemas.Conversation) -> tuple[schemas.Instance, str]:
        instance = self._repository.get_instance(conversation.instance_id)
        contact = self._repository.get_contact(conversation.contact_id)
        if instance is None or contact is None:
            raise LookupError(f"Conversation {conversation.id} lacks instance or contact")
        return instance, resolve_destination(contact)

    def _record(
        self,
        conversation: schemas.Conversation,
        result: SendResult,
        destination: str,
        *,
        sender: str,
        content: str,
        preview: str,
        message_type: str,
        media_url: str | None = None,
        media_mimetype: str | None = None,
        quoted_message_id: str | None = None,
    ) -> schemas.Message | None:
        sent_at = self._clock()
        metadata = {"sender": sender}
        if result.via_fallback:
            metadata["via_fallback"] = True
        message = self._repository.insert_message(
            schemas.NewMessage(
                conversation_id=conversation.id,
                message_id=result.message_id or f"{sender}_{uuid4().hex}",
                remote_jid=result.remote_jid or destination,
                content=content,
                message_type=message_type,
                media_url=media_url,
                media_mimetype=media_mimetype,
                is_from_me=True,
                status=MessageStatus.SENT,
                quoted_message_id=quoted_message_id,
                metadata=metadata,
                timestamp=sent_at,
            )
        )
        if message is None:
            logger.info("Outbound message for conversation %s already recorded", conversation.id)
            return None
        updated = self._repository.touch_conversation(
            conversation.id,
            last_message_at=sent_at,
            preview=preview[:100],
            increment_unread=False,
        )
        self._publish(message, updated)
        return message

    def _publish(self, message: schemas.Message, conversation: schemas.Conversation) -> None:
        notifications.publish_quietly(
            self._realtime,
            notifications.MESSAGE_CREATED,
            {"conversation_id": conversation.id, "message": message.model_dump(mode="json")},
        )
        notifications.publish_quietly(
            self._realtime,
            notifications.CONVERSATION_UPDATED,
            {
                "conversation_id": conversation.id,
                "last_message_preview": conversation.last_message_preview,
                "unread_count": conversation.unread_count,
            },
        )
