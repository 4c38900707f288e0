"""Gateway event ingestion: identity, normalization, persistence, fan-out."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import Any

from .. import notifications
from ..agents.arbiter import ResponseArbiter
from ..channels.base import ChannelAdapter
from ..routing.assignment import AssignmentEngine
from ..tickets.service import TicketManager
from . import normalizer, schemas
from .identity import IdentityResolver
from .media import ORIGINAL, SKIPPED, MediaRehoster, RehostResult
from .models import (
    ConversationMode,
    EventKind,
    GatewayEvent,
    IngestOutcome,
    MessageStatus,
    NormalizedMessage,
)
from .repository import ChatRepository
from .status import StatusReconciler

logger = logging.getLogger(__name__)

PREVIEW_LENGTH = 100

# Outcome statuses
OK = "ok"
IGNORED = "ignored"


class UnknownInstanceError(LookupError):
    """Raised when an event names an instance that is not registered."""


class IngestionPipeline:
    """Turns gateway events into persisted messages and follow-up actions.

    Persistence is committed before any notification goes out; the
    assignment, ticket and reply steps then run in that order, each in its
    own savepoint so one failing step never undoes the message or blocks
    the next step.
    """

    def __init__(
        self,
        repository: ChatRepository,
        *,
        adapter: ChannelAdapter,
        resolver: IdentityResolver,
        rehoster: MediaRehoster,
        reconciler: StatusReconciler,
        realtime: notifications.RealtimeNotifier,
        webhooks: notifications.WebhookNotifier,
        assignment: AssignmentEngine | None = None,
        tickets: TicketManager | None = None,
        arbiter: ResponseArbiter | None = None,
        default_mode: ConversationMode = ConversationMode.AI,
    ) -> None:
        self._repository = repository
        self._adapter = adapter
        self._resolver = resolver
        self._rehoster = rehoster
        self._reconciler = reconciler
        self._realtime = realtime
        self._webhooks = webhooks
        self._assignment = assignment
        self._tickets = tickets
        self._arbiter = arbiter
        self._default_mode = default_mode

    # ------------------------------------------------------------------
    # Entry points

    def process(self, payload: Mapping[str, Any]) -> list[IngestOutcome]:
        """Handle every event carried by one webhook payload."""

        events = self._adapter.parse_events(payload)
        if not events:
            logger.debug("Ignoring gateway payload %s", payload.get("event"))
            return []
        instance = self._repository.get_instance_by_name(events[0].instance)
        if instance is None:
            raise UnknownInstanceError(f"Instance '{events[0].instance}' is not registered")
        return [self.handle(instance, event) for event in events]

    def handle(self, instance: schemas.Instance, event: GatewayEvent) -> IngestOutcome:
        if event.kind == EventKind.CONNECTION_UPDATE:
            return self._handle_connection(instance, event)
        if event.kind == EventKind.MESSAGE_UPDATE:
            status = self._reconciler.apply_receipt(event)
            self._repository.commit()
            return IngestOutcome(status=status, message_id=event.message_id)
        if event.kind == EventKind.MESSAGE_DELETE:
            status = self._reconciler.apply_deletion(event)
            self._repository.commit()
            return IngestOutcome(status=status, message_id=event.message_id)
        return self._handle_message(instance, event)

    # ------------------------------------------------------------------
    # Connection state

    def _handle_connection(self, instance: schemas.Instance, event: GatewayEvent) -> IngestOutcome:
        state = event.data.get("state")
        status = "connected" if state == "open" else "disconnected"
        self._repository.update_instance_status(instance.id, status)
        self._repository.commit()
        logger.info("Instance %s is now %s (state=%s)", instance.instance_name, status, state)
        self._publish(
            notifications.INSTANCES_UPDATED,
            {"instance_id": instance.id, "instance_name": instance.instance_name, "status": status},
        )
        self._dispatch(
            notifications.INSTANCE_CONNECTED
            if status == "connected"
            else notifications.INSTANCE_DISCONNECTED,
            {"instance_id": instance.id, "instance_name": instance.instance_name, "state": state},
        )
        return IngestOutcome(status=OK, detail=status)

    # ------------------------------------------------------------------
    # Messages

    def _handle_message(self, instance: schemas.Instance, event: GatewayEvent) -> IngestOutcome:
        ids = self._adapter.extract_identifiers(event)
        variant = normalizer.classify(event.message)

        if variant is normalizer.PayloadVariant.REACTION:
            status = self._reconciler.apply_reaction(event, ids)
            self._repository.commit()
            return IngestOutcome(status=status, message_id=event.message_id, detail="reaction")
        if variant is normalizer.PayloadVariant.PROTOCOL:
            kind = normalizer.protocol_kind(event.message)
            if kind != normalizer.PROTOCOL_REVOKE:
                logger.debug("Skipping protocol message %s (%s)", event.message_id, kind)
                return IngestOutcome(status=IGNORED, message_id=event.message_id, detail=f"protocol:{kind}")
            status = self._reconciler.apply_deletion(
                event, normalizer.protocol_target_id(event.message)
            )
            self._repository.commit()
            return IngestOutcome(status=status, message_id=event.message_id, detail="revoke")

        message_id = event.message_id
        if not message_id or not ids.remote_jid:
            logger.warning("Message event without id or routable id dropped: %s", event.key)
            return IngestOutcome(status=IGNORED, detail="missing identifiers")

        resolved = self._resolver.resolve(instance, ids)
        contact = resolved.contact
        normalized = normalizer.normalize(event.message, event.data)
        sent_at = event.sent_at
        preview = normalized.content[:PREVIEW_LENGTH]

        sector = self._repository.get_default_sector(instance.id)
        conversation, created = self._repository.get_or_create_conversation(
            instance.id,
            contact.id,
            sector_id=sector.id if sector else None,
            mode=self._default_mode,
            unread_count=0 if ids.from_me else 1,
            last_message_at=sent_at,
            preview=preview,
        )
        if created:
            logger.info(
                "Created conversation %s for contact %s on %s",
                conversation.id,
                contact.id,
                instance.instance_name,
            )

        if not created:
            existing = self._repository.get_message_by_gateway_id(message_id)
            if existing is not None and existing.conversation_id == conversation.id:
                return self._duplicate(message_id, conversation.id)

        rehosted = self._rehost(instance, event, normalized, message_id)
        message = self._repository.insert_message(
            schemas.NewMessage(
                conversation_id=conversation.id,
                message_id=message_id,
                remote_jid=ids.remote_jid,
                content=normalized.content,
                message_type=normalized.message_type,
                media_url=rehosted.reference,
                media_mimetype=normalized.media_mimetype,
                is_from_me=ids.from_me,
                status=self._initial_status(event, ids.from_me),
                quoted_message_id=normalized.quoted_message_id,
                metadata=self._message_metadata(event, ids, normalized, rehosted, resolved.matched_by),
                timestamp=sent_at,
            )
        )
        if message is None:
            return self._duplicate(message_id, conversation.id)

        if not created:
            conversation = self._repository.touch_conversation(
                conversation.id,
                last_message_at=sent_at,
                preview=preview,
                increment_unread=not ids.from_me,
            )
        self._repository.commit()

        self._fan_out(instance, conversation, contact, message, created)
        if not ids.from_me:
            self._post_steps(conversation, contact, message)
        return IngestOutcome(
            status=OK,
            message_id=message_id,
            conversation_id=conversation.id,
            created_conversation=created,
        )

    def _duplicate(self, message_id: str, conversation_id: int) -> IngestOutcome:
        self._repository.commit()
        logger.info("Duplicate delivery of message %s ignored", message_id)
        return IngestOutcome(
            status=OK, message_id=message_id, conversation_id=conversation_id, duplicate=True
        )

    def _rehost(
        self,
        instance: schemas.Instance,
        event: GatewayEvent,
        normalized: NormalizedMessage,
        message_id: str,
    ) -> RehostResult:
        if not normalized.media_url:
            return RehostResult(None, SKIPPED)
        try:
            return self._rehoster.rehost(instance, event.key, normalized, message_id)
        except Exception:  # pragma: no cover - defensive
            logger.exception("Media rehost crashed for %s; keeping original URL", message_id)
            return RehostResult(normalized.media_url, ORIGINAL)

    @staticmethod
    def _initial_status(event: GatewayEvent, from_me: bool) -> MessageStatus:
        if not from_me:
            return MessageStatus.DELIVERED
        return MessageStatus.from_gateway(event.data.get("status")) or MessageStatus.SENT

    @staticmethod
    def _message_metadata(event, ids, normalized, rehosted, matched_by) -> dict[str, Any]:
        metadata: dict[str, Any] = {"matched_by": matched_by}
        if ids.raw_push_name:
            metadata["push_name"] = ids.raw_push_name
        if ids.is_group and ids.participant:
            metadata["participant"] = ids.participant
        if ids.lid_id:
            metadata["lid_id"] = ids.lid_id
        if normalized.file_name:
            metadata["file_name"] = normalized.file_name
        if rehosted.reference != normalized.media_url:
            metadata["original_media_url"] = normalized.media_url
            metadata["media_storage"] = rehosted.outcome
        if event.data.get("keyId"):
            metadata["gateway_key_id"] = event.data["keyId"]
        return metadata

    # ------------------------------------------------------------------
    # Fan-out and follow-up steps

    def _fan_out(
        self,
        instance: schemas.Instance,
        conversation: schemas.Conversation,
        contact: schemas.Contact,
        message: schemas.Message,
        created: bool,
    ) -> None:
        self._publish(
            notifications.MESSAGE_CREATED,
            {"conversation_id": conversation.id, "message": message.model_dump(mode="json")},
        )
        self._publish(
            notifications.CONVERSATION_UPDATED,
            {
                "conversation_id": conversation.id,
                "last_message_preview": conversation.last_message_preview,
                "last_message_at": conversation.last_message_at.isoformat()
                if conversation.last_message_at
                else None,
                "unread_count": conversation.unread_count,
                "created": created,
            },
        )
        if message.is_from_me:
            return
        contact_data = {
            "id": contact.id,
            "phone_number": contact.phone_number,
            "name": contact.name,
            "is_group": contact.is_group,
        }
        if created:
            self._dispatch(
                notifications.NEW_CONVERSATION,
                {
                    "conversation_id": conversation.id,
                    "instance_id": instance.id,
                    "contact": contact_data,
                },
            )
        self._dispatch(
            notifications.NEW_MESSAGE,
            {
                "conversation_id": conversation.id,
                "message_id": message.message_id,
                "content": message.content,
                "message_type": message.message_type,
                "media_url": message.media_url,
                "timestamp": message.timestamp.isoformat(),
                "contact": contact_data,
            },
        )

    def _post_steps(
        self,
        conversation: schemas.Conversation,
        contact: schemas.Contact,
        message: schemas.Message,
    ) -> None:
        if self._assignment is not None:
            self._run_step("assignment", conversation.id, lambda: self._assignment.assign(conversation))
        if self._tickets is not None:
            self._run_step(
                "auto-ticket", conversation.id, lambda: self._tickets.on_inbound(conversation, contact)
            )
        if self._arbiter is not None:
            self._run_step(
                "response arbiter", conversation.id, lambda: self._arbiter.on_inbound(conversation, message)
            )

    def _run_step(self, name: str, conversation_id: int, step: Callable[[], Any]) -> None:
        try:
            with self._repository.savepoint():
                step()
            self._repository.commit()
        except Exception:
            logger.exception("%s step failed for conversation %s", name.capitalize(), conversation_id)

    def _publish(self, event: str, payload: dict[str, Any]) -> None:
        notifications.publish_quietly(self._realtime, event, payload)

    def _dispatch(self, event: str, payload: dict[str, Any]) -> None:
        notifications.dispatch_quietly(self._webhooks, event, payload)
