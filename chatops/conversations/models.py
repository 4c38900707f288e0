"""Domain models used by the ingestion pipeline."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class ConversationMode(str, Enum):
    """Who owns the next reply on a conversation."""

    AI = "ai"
    HUMAN = "human"
    HYBRID = "hybrid"

    @classmethod
    def parse(cls, value: str | None, default: "ConversationMode | None" = None) -> "ConversationMode":
        try:
            return cls(str(value).lower())
        except ValueError:
            return default or cls.AI


class ConversationStatus(str, Enum):
    ACTIVE = "active"
    RESOLVED = "resolved"


class MessageStatus(str, Enum):
    """Delivery status of a message, totally ordered by :attr:`priority`."""

    ERROR = "error"
    PENDING = "pending"
    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"

    @property
    def priority(self) -> int:
        return _STATUS_PRIORITY[self]

    def outranks(self, other: "MessageStatus | str | None") -> bool:
        """Return ``True`` when this status may replace ``other``."""

        return self.priority > status_priority(other)

    @classmethod
    def from_gateway(cls, value: Any) -> "MessageStatus | None":
        """Map the gateway's numeric or string vocabulary to a status."""

        if value is None or isinstance(value, bool):
            return None
        if isinstance(value, int):
            return _NUMERIC_STATUS.get(value)
        text = str(value).strip()
        if text.isdigit():
            return _NUMERIC_STATUS.get(int(text))
        upper = text.upper()
        if upper in _GATEWAY_STATUS:
            return _GATEWAY_STATUS[upper]
        try:
            return cls(text.lower())
        except ValueError:
            return None


_STATUS_PRIORITY: dict[MessageStatus, int] = {
    MessageStatus.ERROR: 0,
    MessageStatus.PENDING: 1,
    MessageStatus.SENDING: 2,
    MessageStatus.SENT: 3,
    MessageStatus.DELIVERED: 4,
    MessageStatus.READ: 5,
}

_NUMERIC_STATUS: dict[int, MessageStatus] = {
    0: MessageStatus.ERROR,
    1: MessageStatus.PENDING,
    2: MessageStatus.SENT,
    3: MessageStatus.DELIVERED,
    4: MessageStatus.READ,
    5: MessageStatus.READ,
}

_GATEWAY_STATUS: dict[str, MessageStatus] = {
    "ERROR": MessageStatus.ERROR,
    "PENDING": MessageStatus.SENDING,
    "SERVER_ACK": MessageStatus.SENT,
    "DELIVERY_ACK": MessageStatus.DELIVERED,
    "READ": MessageStatus.READ,
    "PLAYED": MessageStatus.READ,
}

# Stored rows may carry legacy strings; they rank like ``sent``.
_UNKNOWN_STATUS_PRIORITY = 3


def status_priority(value: "MessageStatus | str | None") -> int:
    """Return the rank of a stored status value."""

    if value is None:
        return -1
    if isinstance(value, MessageStatus):
        return value.priority
    try:
        return MessageStatus(str(value).lower()).priority
    except ValueError:
        return _UNKNOWN_STATUS_PRIORITY


class TicketStatus(str, Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    REOPENED = "reopened"
    CLOSED = "closed"

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_TICKET_STATUSES


ACTIVE_TICKET_STATUSES = frozenset(
    {TicketStatus.OPEN, TicketStatus.IN_PROGRESS, TicketStatus.REOPENED}
)


class AssignmentStrategy(str, Enum):
    FIXED = "fixed"
    ROUND_ROBIN = "round_robin"


class EventKind(str, Enum):
    """Gateway event kinds consumed by the pipeline."""

    MESSAGE_UPSERT = "messages.upsert"
    MESSAGE_UPDATE = "messages.update"
    MESSAGE_DELETE = "messages.delete"
    CONNECTION_UPDATE = "connection.update"
    SEND_MESSAGE = "send.message"

    @classmethod
    def from_raw(cls, value: str | None) -> "EventKind | None":
        normalized = (value or "").strip().lower().replace("_", ".")
        try:
            return cls(normalized)
        except ValueError:
            return None


# ---------------------------------------------------------------------------
# Identifier helpers
# ---------------------------------------------------------------------------

GROUP_SUFFIX = "@g.us"
TRANSIENT_SUFFIX = "@lid"
PHONE_SUFFIX = "@s.whatsapp.net"

_SUFFIX_RE = re.compile(r"@.*$")
_NON_DIGITS_RE = re.compile(r"\D")


def strip_suffix(value: str | None) -> str:
    return _SUFFIX_RE.sub("", value or "")


def digits_only(value: str | None) -> str:
    return _NON_DIGITS_RE.sub("", value or "")


def is_group_jid(value: str | None) -> bool:
    return bool(value) and GROUP_SUFFIX in str(value)


def is_transient_jid(value: str | None) -> bool:
    return bool(value) and TRANSIENT_SUFFIX in str(value)


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


@dataclass
class SenderIdentifiers:
    """Identifiers extracted from a gateway event key."""

    remote_jid: str = ""
    sender_pn: str | None = None
    explicit_phone: str | None = None
    lid_id: str | None = None
    remote_jid_phone: str | None = None
    participant: str | None = None
    push_name: str | None = None
    raw_push_name: str | None = None
    from_me: bool = False

    @property
    def is_group(self) -> bool:
        return is_group_jid(self.remote_jid)

    @property
    def phone_number(self) -> str:
        """Best phone-like identifier: explicit > sender-id > routable id."""

        return self.explicit_phone or self.sender_pn or self.remote_jid_phone or ""

    @property
    def only_transient(self) -> bool:
        return bool(self.lid_id) and not (self.sender_pn or self.explicit_phone)

    def alternate_ids(self) -> list[str]:
        return merge_ids([], [self.sender_pn, self.remote_jid_phone, self.lid_id])


def merge_ids(existing: list[str] | None, extra: list[str | None]) -> list[str]:
    """Union preserving first-seen order; never drops an existing id."""

    merged: list[str] = []
    for value in list(existing or []) + list(extra):
        if value and value not in merged:
            merged.append(value)
    return merged


@dataclass
class GatewayEvent:
    """A parsed gateway webhook event."""

    kind: EventKind
    instance: str
    data: dict[str, Any]
    raw_event: str = ""
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def key(self) -> dict[str, Any]:
        return self.data.get("key") or {}

    @property
    def message(self) -> dict[str, Any]:
        return self.data.get("message") or {}

    @property
    def message_id(self) -> str | None:
        return self.key.get("id") or self.data.get("id")

    @property
    def from_me(self) -> bool:
        value = self.key.get("fromMe")
        return value is True or str(value).lower() == "true"

    @property
    def sent_at(self) -> datetime:
        raw = self.data.get("messageTimestamp")
        try:
            return datetime.fromtimestamp(int(raw), tz=timezone.utc)
        except (TypeError, ValueError, OverflowError):
            return self.received_at


@dataclass
class NormalizedMessage:
    """Uniform representation of an inbound message payload."""

    content: str
    message_type: str
    media_url: str | None = None
    media_mimetype: str | None = None
    quoted_message_id: str | None = None
    file_name: str | None = None


@dataclass
class IngestOutcome:
    """Result of processing one gateway event."""

    status: str
    message_id: str | None = None
    conversation_id: int | None = None
    duplicate: bool = False
    detail: str | None = None
    created_conversation: bool = False
