"""Ticket lifecycle driven by sector policy."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone
from uuid import uuid4

from .. import notifications
from ..conversations import schemas
from ..conversations.models import MessageStatus, TicketStatus
from ..conversations.repository import ChatRepository
from ..gateway.messenger import SENDER_SYSTEM, OutboundMessenger
from .templates import render_template, template_variables

logger = logging.getLogger(__name__)

MARKER_OPENED = "ticket_opened"
MARKER_CLOSED = "ticket_closed"
MARKER_REOPENED = "conversation_reopened"

DEFAULT_CLOSING_AGENT = "Atendente"


class TicketNotFoundError(RuntimeError):
    """Raised when a ticket id does not exist."""


class TicketTransitionError(RuntimeError):
    """Raised when a status change is not allowed from the current state."""


class TicketManager:
    """Opens tickets for inbound messages and handles close/reopen.

    Template sends happen after the status change and their failures are
    only logged; the transition itself always stands.
    """

    def __init__(
        self,
        repository: ChatRepository,
        messenger: OutboundMessenger,
        realtime: notifications.RealtimeNotifier,
        webhooks: notifications.WebhookNotifier,
        *,
        tz_name: str = "America/Sao_Paulo",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._repository = repository
        self._messenger = messenger
        self._realtime = realtime
        self._webhooks = webhooks
        self._tz_name = tz_name
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # ------------------------------------------------------------------
    # Automatic opening

    def on_inbound(
        self, conversation: schemas.Conversation, contact: schemas.Contact
    ) -> schemas.Ticket | None:
        """Open a ticket when the sector asks for one and none is active."""

        if conversation.sector_id is None:
            return None
        sector = self._repository.get_sector(conversation.sector_id)
        if sector is None or not sector.is_active:
            return None
        enabled = sector.ticket_group if contact.is_group else sector.ticket_individual
        if not enabled:
            logger.debug(
                "Auto-ticket disabled for %s chats in sector %s",
                "group" if contact.is_group else "individual",
                sector.name,
            )
            return None
        if self._repository.get_active_ticket(conversation.id) is not None:
            return None

        ticket = self._repository.create_ticket(conversation.id, sector.id)
        if ticket is None:
            # Lost the race against a concurrent insert of the active ticket.
            logger.info("Active ticket for conversation %s created concurrently", conversation.id)
            return None
        logger.info(
            "Opened ticket %s (#%s) for conversation %s in sector %s",
            ticket.id,
            ticket.numero,
            conversation.id,
            sector.name,
        )
        self._insert_marker(conversation, ticket, MARKER_OPENED)

        if sector.welcome_message:
            self._send_template(
                conversation, contact, sector, ticket, sector.welcome_message, agent_name=None
            )

        notifications.publish_quietly(
            self._realtime,
            notifications.CONVERSATION_UPDATED,
            {
                "conversation_id": conversation.id,
                "ticket_created": True,
                "ticket_id": ticket.id,
                "ticket_numero": ticket.numero,
            },
        )
        notifications.dispatch_quietly(
            self._webhooks,
            notifications.TICKET_CREATED,
            {
                "ticket_id": ticket.id,
                "numero": ticket.numero,
                "conversation_id": conversation.id,
                "sector_id": sector.id,
            },
        )
        return ticket

    # ------------------------------------------------------------------
    # Operator transitions

    def close(
        self, ticket_id: int, *, agent_name: str | None = None
    ) -> schemas.TicketTransitionResponse:
        ticket = self._require(ticket_id)
        if ticket.status == TicketStatus.CLOSED:
            raise TicketTransitionError(f"Ticket {ticket_id} is already closed")
        updated = self._repository.update_ticket_status(ticket.id, TicketStatus.CLOSED)
        logger.info("Closed ticket %s (#%s)", updated.id, updated.numero)
        return self._after_transition(
            updated, MARKER_CLOSED, agent_name or DEFAULT_CLOSING_AGENT, reopen=False
        )

    def reopen(
        self, ticket_id: int, *, agent_name: str | None = None
    ) -> schemas.TicketTransitionResponse:
        ticket = self._require(ticket_id)
        if ticket.status != TicketStatus.CLOSED:
            raise TicketTransitionError(f"Ticket {ticket_id} is not closed")
        active = self._repository.get_active_ticket(ticket.conversation_id)
        if active is not None:
            raise TicketTransitionError(
                f"Conversation {ticket.conversation_id} already has active ticket {active.id}"
            )
        updated = self._repository.update_ticket_status(ticket.id, TicketStatus.REOPENED)
        logger.info("Reopened ticket %s (#%s)", updated.id, updated.numero)
        return self._after_transition(
            updated, MARKER_REOPENED, agent_name or DEFAULT_CLOSING_AGENT, reopen=True
        )

    def _require(self, ticket_id: int) -> schemas.Ticket:
        ticket = self._repository.get_ticket(ticket_id)
        if ticket is None:
            raise TicketNotFoundError(f"Ticket {ticket_id} not found")
        return ticket

    def _after_transition(
        self, ticket: schemas.Ticket, marker: str, agent_name: str, *, reopen: bool
    ) -> schemas.TicketTransitionResponse:
        conversation = self._repository.get_conversation(ticket.conversation_id)
        if conversation is None:
            return schemas.TicketTransitionResponse(ticket=ticket)
        self._insert_marker(conversation, ticket, marker)

        sector = self._repository.get_sector(ticket.sector_id) if ticket.sector_id else None
        if sector is None:
            return schemas.TicketTransitionResponse(ticket=ticket)
        if reopen:
            template = sector.reopen_message or sector.welcome_message
        else:
            template = sector.closing_message
        if not template:
            return schemas.TicketTransitionResponse(ticket=ticket)

        contact = self._repository.get_contact(conversation.contact_id)
        sent = self._send_template(
            conversation, contact, sector, ticket, template, agent_name=agent_name
        )
        return schemas.TicketTransitionResponse(ticket=ticket, template_sent=sent)

    # ------------------------------------------------------------------
    # Helpers

    def _insert_marker(
        self, conversation: schemas.Conversation, ticket: schemas.Ticket, kind: str
    ) -> None:
        prefix = "CONVERSATION_REOPENED" if kind == MARKER_REOPENED else "TICKET_EVENT"
        self._repository.insert_message(
            schemas.NewMessage(
                conversation_id=conversation.id,
                message_id=f"{kind}-{ticket.id}-{uuid4().hex[:8]}",
                remote_jid="system",
                content=f"{prefix}:{ticket.numero}",
                message_type=kind,
                is_from_me=True,
                is_internal=True,
                status=MessageStatus.SENT,
                metadata={"sender": SENDER_SYSTEM, "ticket_id": ticket.id},
                timestamp=self._clock(),
            )
        )

    def _send_template(
        self,
        conversation: schemas.Conversation,
        contact: schemas.Contact | None,
        sector: schemas.Sector,
        ticket: schemas.Ticket,
        template: str,
        *,
        agent_name: str | None,
    ) -> bool:
        variables = template_variables(
            customer_name=contact.name if contact else None,
            customer_phone=contact.phone_number if contact else None,
            agent_name=agent_name,
            ticket_number=ticket.numero,
            sector_name=sector.name,
            now=self._clock(),
            tz_name=self._tz_name,
        )
        try:
            self._messenger.send_text(
                conversation, render_template(template, variables), sender=SENDER_SYSTEM
            )
        except Exception:
            logger.exception(
                "Template send failed for ticket %s on conversation %s", ticket.id, conversation.id
            )
            return False
        return True
