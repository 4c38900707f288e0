"""Pydantic schemas for persisted chat operations records."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from .models import (
    AssignmentStrategy,
    ConversationMode,
    ConversationStatus,
    MessageStatus,
    TicketStatus,
)


class Instance(BaseModel):
    id: int
    name: str
    instance_name: str
    status: str = "disconnected"
    provider_type: str = "evolution"
    instance_id_external: str | None = None
    api_url: str | None = None
    api_key: str | None = None

    @property
    def gateway_identifier(self) -> str:
        """Name used in gateway URLs for this instance."""

        if self.provider_type == "cloud" and self.instance_id_external:
            return self.instance_id_external
        return self.instance_name


class Sector(BaseModel):
    id: int
    instance_id: int
    name: str
    is_default: bool = False
    is_active: bool = True
    ticket_individual: bool = False
    ticket_group: bool = False
    welcome_message: str | None = None
    closing_message: str | None = None
    reopen_message: str | None = None


class Contact(BaseModel):
    id: int
    instance_id: int
    phone_number: str
    remote_jid: str | None = None
    name: str | None = None
    is_group: bool = False
    profile_picture_url: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime

    @property
    def alternate_ids(self) -> list[str]:
        return list(self.metadata.get("alternate_ids") or [])


class Conversation(BaseModel):
    id: int
    instance_id: int
    contact_id: int
    status: ConversationStatus = ConversationStatus.ACTIVE
    assigned_to: str | None = None
    conversation_mode: ConversationMode = ConversationMode.AI
    sector_id: int | None = None
    unread_count: int = 0
    last_message_at: datetime | None = None
    last_message_preview: str | None = None
    created_at: datetime
    updated_at: datetime


class Message(BaseModel):
    id: int
    conversation_id: int
    message_id: str
    remote_jid: str | None = None
    content: str
    message_type: str = "text"
    media_url: str | None = None
    media_mimetype: str | None = None
    is_from_me: bool = False
    is_internal: bool = False
    status: MessageStatus = MessageStatus.SENT
    quoted_message_id: str | None = None
    deleted: bool = False
    deleted_at: datetime | None = None
    deleted_by: str | None = None
    read_participants: list[dict[str, Any]] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime
    created_at: datetime

    @property
    def sender(self) -> str | None:
        return self.metadata.get("sender")


class NewMessage(BaseModel):
    """Values for a message insert; duplicates by ``message_id`` are ignored."""

    conversation_id: int
    message_id: str
    remote_jid: str | None = None
    content: str
    message_type: str = "text"
    media_url: str | None = None
    media_mimetype: str | None = None
    is_from_me: bool = False
    is_internal: bool = False
    status: MessageStatus = MessageStatus.SENT
    quoted_message_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime


class Reaction(BaseModel):
    id: int
    message_id: int
    conversation_id: int
    reactor_id: str
    emoji: str
    is_from_me: bool = False
    created_at: datetime


class Ticket(BaseModel):
    id: int
    numero: int
    conversation_id: int
    sector_id: int | None = None
    status: TicketStatus = TicketStatus.OPEN
    created_at: datetime
    closed_at: datetime | None = None
    updated_at: datetime


class AssignmentRule(BaseModel):
    id: int
    instance_id: int
    sector_id: int | None = None
    name: str = ""
    rule_type: AssignmentStrategy = AssignmentStrategy.FIXED
    fixed_agent_id: str | None = None
    round_robin_agents: list[str] = Field(default_factory=list)
    round_robin_last_index: int = 0
    is_active: bool = True


class AIAgentConfig(BaseModel):
    id: int
    sector_id: int
    agent_name: str = "Assistente Virtual"
    persona_description: str | None = None
    tone_of_voice: str = "professional"
    business_context: str | None = None
    faq_context: str | None = None
    system_prompt: str | None = None
    default_model: str = "llama-3.3-70b-versatile"
    temperature: float = 0.7
    max_tokens: int = 500
    response_delay_seconds: float = 2
    is_enabled: bool = True
    auto_reply_enabled: bool = True
    escalation_keywords: list[str] = Field(default_factory=list)
    working_hours_start: str = "08:00"
    working_hours_end: str = "18:00"
    working_timezone: str = "America/Sao_Paulo"
    working_days: list[int] = Field(default_factory=list)
    out_of_hours_message: str | None = None
    hybrid_timeout_minutes: int = 5


class AIAgentLog(BaseModel):
    id: int
    config_id: int
    conversation_id: int
    message_content: str | None = None
    response_content: str
    model_used: str
    prompt_context: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class IngestResponse(BaseModel):
    status: str
    event: str | None = None
    message_id: str | None = None
    conversation_id: int | None = None
    duplicate: bool = False
    detail: str | None = None


class TicketTransitionResponse(BaseModel):
    ticket: Ticket
    template_sent: bool = False


class WebhookAck(BaseModel):
    status: str = "ok"
    event: str | None = None
    processed: int = 0
    results: list[IngestResponse] = Field(default_factory=list)
