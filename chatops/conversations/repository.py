"""Database repository for contacts, conversations, messages and tickets."""
from __future__ import annotations

import contextlib
import json
import threading
from datetime import datetime, timezone
from typing import Any, ContextManager, Dict, List, Optional, Protocol

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from . import schemas
from .models import (
    ACTIVE_TICKET_STATUSES,
    ConversationMode,
    ConversationStatus,
    MessageStatus,
    TicketStatus,
    status_priority,
)


class ChatRepository(Protocol):
    """Abstraction for persisting chat operations state."""

    # Transaction control
    def commit(self) -> None: ...

    def savepoint(self) -> ContextManager[Any]: ...

    # Instances
    def get_instance_by_name(self, instance_name: str) -> Optional[schemas.Instance]: ...

    def get_instance(self, instance_id: int) -> Optional[schemas.Instance]: ...

    def update_instance_status(self, instance_id: int, status: str) -> None: ...

    # Contacts
    def get_contact(self, contact_id: int) -> Optional[schemas.Contact]: ...

    def find_contact_by_sender(self, instance_id: int, phone: str) -> Optional[schemas.Contact]: ...

    def find_contact_by_phone(self, instance_id: int, phone: str) -> Optional[schemas.Contact]: ...

    def find_contact_by_remote_jid(self, instance_id: int, remote_jid: str) -> Optional[schemas.Contact]: ...

    def find_contact_by_transient_id(self, instance_id: int, lid_id: str) -> Optional[schemas.Contact]: ...

    def find_group_contact(
        self, instance_id: int, remote_jid: str, phone: str
    ) -> Optional[schemas.Contact]: ...

    def find_recent_outbound_contacts(
        self, instance_id: int, *, exclude_phone: str, since: datetime, limit: int
    ) -> List[schemas.Contact]: ...

    def create_contact(
        self,
        instance_id: int,
        phone_number: str,
        *,
        remote_jid: Optional[str] = None,
        name: Optional[str] = None,
        is_group: bool = False,
        profile_picture_url: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> schemas.Contact: ...

    def update_contact(
        self,
        contact_id: int,
        *,
        phone_number: Optional[str] = None,
        remote_jid: Optional[str] = None,
        name: Optional[str] = None,
        profile_picture_url: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> schemas.Contact: ...

    # Sectors
    def get_default_sector(self, instance_id: int) -> Optional[schemas.Sector]: ...

    def get_sector(self, sector_id: int) -> Optional[schemas.Sector]: ...

    # Conversations
    def get_conversation(self, conversation_id: int) -> Optional[schemas.Conversation]: ...

    def get_or_create_conversation(
        self,
        instance_id: int,
        contact_id: int,
        *,
        sector_id: Optional[int],
        mode: ConversationMode,
        unread_count: int,
        last_message_at: datetime,
        preview: str,
    ) -> tuple[schemas.Conversation, bool]: ...

    def touch_conversation(
        self,
        conversation_id: int,
        *,
        last_message_at: datetime,
        preview: str,
        increment_unread: bool,
    ) -> schemas.Conversation: ...

    def assign_conversation(self, conversation_id: int, agent_id: str) -> bool: ...

    def set_conversation_mode(self, conversation_id: int, mode: ConversationMode) -> None: ...

    def list_open_conversations_by_mode(self, mode: ConversationMode) -> List[schemas.Conversation]: ...

    # Messages
    def insert_message(self, message: schemas.NewMessage) -> Optional[schemas.Message]: ...

    def get_message_by_gateway_id(self, message_id: str) -> Optional[schemas.Message]: ...

    def find_message_by_metadata(self, needle: str) -> Optional[schemas.Message]: ...

    def update_message_status(self, message_pk: int, status: MessageStatus) -> bool: ...

    def add_read_participant(self, message_pk: int, jid: str, read_at: datetime) -> bool: ...

    def mark_message_deleted(
        self, message_pk: int, *, deleted_by: Optional[str], metadata: Dict[str, Any]
    ) -> Optional[schemas.Message]: ...

    def list_recent_messages(
        self, conversation_id: int, limit: int = 20, *, include_internal: bool = False
    ) -> List[schemas.Message]: ...

    def latest_customer_message(self, conversation_id: int) -> Optional[schemas.Message]: ...

    def has_outbound_after(
        self, conversation_id: int, after: datetime, *, automated: bool
    ) -> bool: ...

    # Reactions
    def replace_reaction(
        self,
        message_pk: int,
        conversation_id: int,
        reactor_id: str,
        emoji: str,
        *,
        is_from_me: bool,
    ) -> Optional[schemas.Reaction]: ...

    def list_reactions(self, message_pk: int) -> List[schemas.Reaction]: ...

    # Tickets
    def get_ticket(self, ticket_id: int) -> Optional[schemas.Ticket]: ...

    def get_active_ticket(self, conversation_id: int) -> Optional[schemas.Ticket]: ...

    def create_ticket(self, conversation_id: int, sector_id: Optional[int]) -> Optional[schemas.Ticket]: ...

    def update_ticket_status(self, ticket_id: int, status: TicketStatus) -> schemas.Ticket: ...

    # Assignment rules
    def find_assignment_rule(
        self, instance_id: int, sector_id: Optional[int]
    ) -> Optional[schemas.AssignmentRule]: ...

    def advance_round_robin(self, rule_id: int) -> Optional[str]: ...

    # Automated agent
    def get_ai_config(self, sector_id: int) -> Optional[schemas.AIAgentConfig]: ...

    def record_ai_log(
        self,
        *,
        config_id: int,
        conversation_id: int,
        message_content: Optional[str],
        response_content: str,
        model_used: str,
        prompt_context: Dict[str, Any],
    ) -> schemas.AIAgentLog: ...


_STATUS_RANK_SQL = (
    "CASE status WHEN 'error' THEN 0 WHEN 'pending' THEN 1 WHEN 'sending' THEN 2 "
    "WHEN 'sent' THEN 3 WHEN 'delivered' THEN 4 WHEN 'read' THEN 5 ELSE 3 END"
)

_ACTIVE_TICKET_VALUES = tuple(sorted(status.value for status in ACTIVE_TICKET_STATUSES))


class PostgresChatRepository:
    """PostgreSQL implementation of :class:`ChatRepository`."""

    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    # Utility -----------------------------------------------------------------
    def _cursor(self):
        return self._conn.cursor(row_factory=dict_row)

    def _fetch_one(self, query: str, params: tuple) -> Optional[Dict[str, Any]]:
        with self._cursor() as cur:
            cur.execute(query, params)
            return cur.fetchone()

    def _fetch_all(self, query: str, params: tuple) -> List[Dict[str, Any]]:
        with self._cursor() as cur:
            cur.execute(query, params)
            return cur.fetchall()

    def commit(self) -> None:
        self._conn.commit()

    def savepoint(self):
        return self._conn.transaction()

    # Instances ----------------------------------------------------------------
    def get_instance_by_name(self, instance_name: str) -> Optional[schemas.Instance]:
        row = self._fetch_one(
            "SELECT * FROM instances WHERE instance_name = %s OR name = %s LIMIT 1",
            (instance_name, instance_name),
        )
        return schemas.Instance(**row) if row else None

    def get_instance(self, instance_id: int) -> Optional[schemas.Instance]:
        row = self._fetch_one("SELECT * FROM instances WHERE id = %s", (instance_id,))
        return schemas.Instance(**row) if row else None

    def update_instance_status(self, instance_id: int, status: str) -> None:
        with self._cursor() as cur:
            cur.execute(
                "UPDATE instances SET status = %s, updated_at = now() WHERE id = %s",
                (status, instance_id),
            )

    # Contacts -----------------------------------------------------------------
    def get_contact(self, contact_id: int) -> Optional[schemas.Contact]:
        row = self._fetch_one("SELECT * FROM contacts WHERE id = %s", (contact_id,))
        return schemas.Contact(**row) if row else None

    def find_contact_by_sender(self, instance_id: int, phone: str) -> Optional[schemas.Contact]:
        row = self._fetch_one(
            """
            SELECT * FROM contacts
            WHERE instance_id = %s
              AND (phone_number = %s
                   OR metadata->>'sender_pn' = %s
                   OR coalesce(metadata->'alternate_ids', '[]'::jsonb) ? %s)
            ORDER BY (phone_number = %s) DESC, id ASC
            LIMIT 1
            """,
            (instance_id, phone, phone, phone, phone),
        )
        return schemas.Contact(**row) if row else None

    def find_contact_by_phone(self, instance_id: int, phone: str) -> Optional[schemas.Contact]:
        row = self._fetch_one(
            "SELECT * FROM contacts WHERE instance_id = %s AND phone_number = %s LIMIT 1",
            (instance_id, phone),
        )
        return schemas.Contact(**row) if row else None

    def find_contact_by_remote_jid(self, instance_id: int, remote_jid: str) -> Optional[schemas.Contact]:
        row = self._fetch_one(
            "SELECT * FROM contacts WHERE instance_id = %s AND remote_jid = %s LIMIT 1",
            (instance_id, remote_jid),
        )
        return schemas.Contact(**row) if row else None

    def find_contact_by_transient_id(self, instance_id: int, lid_id: str) -> Optional[schemas.Contact]:
        row = self._fetch_one(
            """
            SELECT * FROM contacts
            WHERE instance_id = %s
              AND (phone_number = %s
                   OR metadata->>'lid_id' = %s
                   OR coalesce(metadata->'alternate_ids', '[]'::jsonb) ? %s)
            LIMIT 1
            """,
            (instance_id, lid_id, lid_id, lid_id),
        )
        return schemas.Contact(**row) if row else None

    def find_group_contact(
        self, instance_id: int, remote_jid: str, phone: str
    ) -> Optional[schemas.Contact]:
        row = self._fetch_one(
            """
            SELECT * FROM contacts
            WHERE instance_id = %s AND (remote_jid = %s OR phone_number = %s)
            LIMIT 1
            """,
            (instance_id, remote_jid, phone),
        )
        return schemas.Contact(**row) if row else None

    def find_recent_outbound_contacts(
        self, instance_id: int, *, exclude_phone: str, since: datetime, limit: int
    ) -> List[schemas.Contact]:
        rows = self._fetch_all(
            """
            SELECT ct.*, max(m.timestamp) AS last_outbound_at
            FROM contacts ct
            JOIN conversations conv ON conv.contact_id = ct.id
            JOIN messages m ON m.conversation_id = conv.id
            WHERE conv.instance_id = %s
              AND conv.status <> 'resolved'
              AND m.is_from_me = true
              AND m.is_internal = false
              AND m.timestamp > %s
              AND ct.phone_number <> %s
              AND ct.remote_jid IS NULL
              AND ct.is_group = false
            GROUP BY ct.id
            ORDER BY last_outbound_at DESC
            LIMIT %s
            """,
            (instance_id, since, exclude_phone, limit),
        )
        return [schemas.Contact(**row) for row in rows]

    def create_contact(
        self,
        instance_id: int,
        phone_number: str,
        *,
        remote_jid: Optional[str] = None,
        name: Optional[str] = None,
        is_group: bool = False,
        profile_picture_url: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> schemas.Contact:
        row = self._fetch_one(
            """
            INSERT INTO contacts
                (instance_id, phone_number, remote_jid, name, is_group, profile_picture_url, metadata)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (instance_id, phone_number) DO UPDATE SET
                remote_jid = COALESCE(EXCLUDED.remote_jid, contacts.remote_jid),
                name = COALESCE(EXCLUDED.name, contacts.name),
                updated_at = now()
            RETURNING *
            """,
            (
                instance_id,
                phone_number,
                remote_jid,
                name,
                is_group,
                profile_picture_url,
                Jsonb(metadata or {}),
            ),
        )
        return schemas.Contact(**row)

    def update_contact(
        self,
        contact_id: int,
        *,
        phone_number: Optional[str] = None,
        remote_jid: Optional[str] = None,
        name: Optional[str] = None,
        profile_picture_url: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> schemas.Contact:
        fields: List[str] = []
        values: List[Any] = []
        for column, value in (
            ("phone_number", phone_number),
            ("remote_jid", remote_jid),
            ("name", name),
            ("profile_picture_url", profile_picture_url),
        ):
            if value is not None:
                fields.append(f"{column} = %s")
                values.append(value)
        if metadata is not None:
            fields.append("metadata = %s")
            values.append(Jsonb(metadata))
        values.append(contact_id)
        query = (
            "UPDATE contacts SET "
            f"{', '.join(fields + ['updated_at = now()'])} "
            "WHERE id = %s RETURNING *"
        )
        row = self._fetch_one(query, tuple(values))
        if row is None:
            raise LookupError(f"Contact {contact_id} not found")
        return schemas.Contact(**row)

    # Sectors ------------------------------------------------------------------
    def get_default_sector(self, instance_id: int) -> Optional[schemas.Sector]:
        row = self._fetch_one(
            """
            SELECT * FROM sectors
            WHERE instance_id = %s AND is_default = true AND is_active = true
            ORDER BY id ASC
            LIMIT 1
            """,
            (instance_id,),
        )
        return schemas.Sector(**row) if row else None

    def get_sector(self, sector_id: int) -> Optional[schemas.Sector]:
        row = self._fetch_one("SELECT * FROM sectors WHERE id = %s", (sector_id,))
        return schemas.Sector(**row) if row else None

    # Conversations --------------------------------------------------------------
    def get_conversation(self, conversation_id: int) -> Optional[schemas.Conversation]:
        row = self._fetch_one("SELECT * FROM conversations WHERE id = %s", (conversation_id,))
        return schemas.Conversation(**row) if row else None

    def get_or_create_conversation(
        self,
        instance_id: int,
        contact_id: int,
        *,
        sector_id: Optional[int],
        mode: ConversationMode,
        unread_count: int,
        last_message_at: datetime,
        preview: str,
    ) -> tuple[schemas.Conversation, bool]:
        row = self._fetch_one(
            """
            INSERT INTO conversations
                (instance_id, contact_id, status, conversation_mode, sector_id, unread_count,
                 last_message_at, last_message_preview)
            VALUES (%s, %s, 'active', %s, %s, %s, %s, %s)
            ON CONFLICT (instance_id, contact_id) DO NOTHING
            RETURNING *
            """,
            (
                instance_id,
                contact_id,
                mode.value,
                sector_id,
                unread_count,
                last_message_at,
                preview,
            ),
        )
        if row:
            return schemas.Conversation(**row), True
        row = self._fetch_one(
            "SELECT * FROM conversations WHERE instance_id = %s AND contact_id = %s",
            (instance_id, contact_id),
        )
        if row is None:  # pragma: no cover - defensive
            raise LookupError("Conversation vanished after conflicting insert")
        return schemas.Conversation(**row), False

    def touch_conversation(
        self,
        conversation_id: int,
        *,
        last_message_at: datetime,
        preview: str,
        increment_unread: bool,
    ) -> schemas.Conversation:
        row = self._fetch_one(
            """
            UPDATE conversations SET
                status = 'active',
                last_message_at = GREATEST(coalesce(last_message_at, %s), %s),
                last_message_preview = %s,
                unread_count = unread_count + %s,
                updated_at = now()
            WHERE id = %s
            RETURNING *
            """,
            (
                last_message_at,
                last_message_at,
                preview,
                1 if increment_unread else 0,
                conversation_id,
            ),
        )
        if row is None:
            raise LookupError(f"Conversation {conversation_id} not found")
        return schemas.Conversation(**row)

    def assign_conversation(self, conversation_id: int, agent_id: str) -> bool:
        with self._cursor() as cur:
            cur.execute(
                """
                UPDATE conversations SET assigned_to = %s, updated_at = now()
                WHERE id = %s AND assigned_to IS NULL
                """,
                (agent_id, conversation_id),
            )
            return cur.rowcount == 1

    def set_conversation_mode(self, conversation_id: int, mode: ConversationMode) -> None:
        with self._cursor() as cur:
            cur.execute(
                "UPDATE conversations SET conversation_mode = %s, updated_at = now() WHERE id = %s",
                (mode.value, conversation_id),
            )

    def list_open_conversations_by_mode(self, mode: ConversationMode) -> List[schemas.Conversation]:
        rows = self._fetch_all(
            """
            SELECT * FROM conversations
            WHERE conversation_mode = %s AND status <> 'resolved'
            ORDER BY last_message_at ASC NULLS LAST
            """,
            (mode.value,),
        )
        return [schemas.Conversation(**row) for row in rows]

    # Messages -------------------------------------------------------------------
    def insert_message(self, message: schemas.NewMessage) -> Optional[schemas.Message]:
        row = self._fetch_one(
            """
            INSERT INTO messages
                (conversation_id, message_id, remote_jid, content, message_type, media_url,
                 media_mimetype, is_from_me, is_internal, status, quoted_message_id, metadata,
                 timestamp)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (conversation_id, message_id) DO NOTHING
            RETURNING *
            """,
            (
                message.conversation_id,
                message.message_id,
                message.remote_jid,
                message.content,
                message.message_type,
                message.media_url,
                message.media_mimetype,
                message.is_from_me,
                message.is_internal,
                message.status.value,
                message.quoted_message_id,
                Jsonb(message.metadata),
                message.timestamp,
            ),
        )
        return schemas.Message(**row) if row else None

    def get_message_by_gateway_id(self, message_id: str) -> Optional[schemas.Message]:
        row = self._fetch_one(
            "SELECT * FROM messages WHERE message_id = %s ORDER BY created_at DESC LIMIT 1",
            (message_id,),
        )
        return schemas.Message(**row) if row else None

    def find_message_by_metadata(self, needle: str) -> Optional[schemas.Message]:
        row = self._fetch_one(
            """
            SELECT * FROM messages
            WHERE metadata->>'gateway_key_id' = %s OR metadata::text LIKE %s
            ORDER BY created_at DESC
            LIMIT 1
            """,
            (needle, f"%{needle}%"),
        )
        return schemas.Message(**row) if row else None

    def update_message_status(self, message_pk: int, status: MessageStatus) -> bool:
        with self._cursor() as cur:
            cur.execute(
                f"""
                UPDATE messages SET status = %s
                WHERE id = %s AND ({_STATUS_RANK_SQL}) < %s
                """,
                (status.value, message_pk, status.priority),
            )
            return cur.rowcount == 1

    def add_read_participant(self, message_pk: int, jid: str, read_at: datetime) -> bool:
        entry = {"jid": jid, "timestamp": read_at.isoformat()}
        with self._cursor() as cur:
            cur.execute(
                """
                UPDATE messages
                SET read_participants = coalesce(read_participants, '[]'::jsonb) || %s
                WHERE id = %s
                  AND NOT coalesce(read_participants, '[]'::jsonb) @> %s
                """,
                (Jsonb([entry]), message_pk, Jsonb([{"jid": jid}])),
            )
            return cur.rowcount == 1

    def mark_message_deleted(
        self, message_pk: int, *, deleted_by: Optional[str], metadata: Dict[str, Any]
    ) -> Optional[schemas.Message]:
        row = self._fetch_one(
            """
            UPDATE messages SET
                deleted = true,
                deleted_at = now(),
                deleted_by = %s,
                metadata = coalesce(metadata, '{}'::jsonb) || %s
            WHERE id = %s AND deleted = false
            RETURNING *
            """,
            (deleted_by, Jsonb(metadata), message_pk),
        )
        return schemas.Message(**row) if row else None

    def list_recent_messages(
        self, conversation_id: int, limit: int = 20, *, include_internal: bool = False
    ) -> List[schemas.Message]:
        rows = self._fetch_all(
            """
            SELECT * FROM (
                SELECT * FROM messages
                WHERE conversation_id = %s AND (%s OR is_internal = false)
                ORDER BY timestamp DESC, id DESC
                LIMIT %s
            ) recent
            ORDER BY timestamp ASC, id ASC
            """,
            (conversation_id, include_internal, limit),
        )
        return [schemas.Message(**row) for row in rows]

    def latest_customer_message(self, conversation_id: int) -> Optional[schemas.Message]:
        row = self._fetch_one(
            """
            SELECT * FROM messages
            WHERE conversation_id = %s AND is_from_me = false AND is_internal = false
              AND deleted = false
            ORDER BY timestamp DESC, id DESC
            LIMIT 1
            """,
            (conversation_id,),
        )
        return schemas.Message(**row) if row else None

    def has_outbound_after(
        self, conversation_id: int, after: datetime, *, automated: bool
    ) -> bool:
        sender_clause = (
            "coalesce(metadata->>'sender', '') = 'ai'"
            if automated
            else "coalesce(metadata->>'sender', 'human') NOT IN ('ai', 'system')"
        )
        row = self._fetch_one(
            f"""
            SELECT 1 AS found FROM messages
            WHERE conversation_id = %s AND is_from_me = true AND is_internal = false
              AND timestamp >= %s AND {sender_clause}
            LIMIT 1
            """,
            (conversation_id, after),
        )
        return row is not None

    # Reactions --------------------------------------------------------------------
    def replace_reaction(
        self,
        message_pk: int,
        conversation_id: int,
        reactor_id: str,
        emoji: str,
        *,
        is_from_me: bool,
    ) -> Optional[schemas.Reaction]:
        with self._cursor() as cur:
            cur.execute(
                "DELETE FROM message_reactions WHERE message_id = %s AND reactor_id = %s",
                (message_pk, reactor_id),
            )
            if not emoji:
                return None
            cur.execute(
                """
                INSERT INTO message_reactions (message_id, conversation_id, reactor_id, emoji, is_from_me)
                VALUES (%s, %s, %s, %s, %s)
                RETURNING *
                """,
                (message_pk, conversation_id, reactor_id, emoji, is_from_me),
            )
            row = cur.fetchone()
        return schemas.Reaction(**row)

    def list_reactions(self, message_pk: int) -> List[schemas.Reaction]:
        rows = self._fetch_all(
            "SELECT * FROM message_reactions WHERE message_id = %s ORDER BY created_at ASC",
            (message_pk,),
        )
        return [schemas.Reaction(**row) for row in rows]

    # Tickets ----------------------------------------------------------------------
    def get_ticket(self, ticket_id: int) -> Optional[schemas.Ticket]:
        row = self._fetch_one("SELECT * FROM tickets WHERE id = %s", (ticket_id,))
        return schemas.Ticket(**row) if row else None

    def get_active_ticket(self, conversation_id: int) -> Optional[schemas.Ticket]:
        row = self._fetch_one(
            """
            SELECT * FROM tickets
            WHERE conversation_id = %s AND status = ANY(%s)
            ORDER BY created_at DESC
            LIMIT 1
            """,
            (conversation_id, list(_ACTIVE_TICKET_VALUES)),
        )
        return schemas.Ticket(**row) if row else None

    def create_ticket(self, conversation_id: int, sector_id: Optional[int]) -> Optional[schemas.Ticket]:
        row = self._fetch_one(
            """
            INSERT INTO tickets (conversation_id, sector_id, status)
            VALUES (%s, %s, 'open')
            ON CONFLICT DO NOTHING
            RETURNING *
            """,
            (conversation_id, sector_id),
        )
        return schemas.Ticket(**row) if row else None

    def update_ticket_status(self, ticket_id: int, status: TicketStatus) -> schemas.Ticket:
        row = self._fetch_one(
            """
            UPDATE tickets SET
                status = %s,
                closed_at = CASE WHEN %s THEN now() ELSE NULL END,
                updated_at = now()
            WHERE id = %s
            RETURNING *
            """,
            (status.value, status == TicketStatus.CLOSED, ticket_id),
        )
        if row is None:
            raise LookupError(f"Ticket {ticket_id} not found")
        return schemas.Ticket(**row)

    # Assignment rules -------------------------------------------------------------
    def find_assignment_rule(
        self, instance_id: int, sector_id: Optional[int]
    ) -> Optional[schemas.AssignmentRule]:
        row = self._fetch_one(
            """
            SELECT * FROM assignment_rules
            WHERE instance_id = %s AND is_active = true
              AND (sector_id = %s OR sector_id IS NULL)
            ORDER BY (sector_id IS NULL) ASC, id ASC
            LIMIT 1
            """,
            (instance_id, sector_id),
        )
        return schemas.AssignmentRule(**row) if row else None

    def advance_round_robin(self, rule_id: int) -> Optional[str]:
        # A single UPDATE holds the row lock for the read-increment-write.
        row = self._fetch_one(
            """
            UPDATE assignment_rules
            SET round_robin_last_index =
                (round_robin_last_index + 1) %% jsonb_array_length(round_robin_agents)
            WHERE id = %s AND jsonb_array_length(round_robin_agents) > 0
            RETURNING round_robin_last_index, round_robin_agents
            """,
            (rule_id,),
        )
        if not row:
            return None
        agents = row["round_robin_agents"]
        if isinstance(agents, str):
            agents = json.loads(agents)
        return str(agents[row["round_robin_last_index"]])

    # Automated agent --------------------------------------------------------------
    def get_ai_config(self, sector_id: int) -> Optional[schemas.AIAgentConfig]:
        row = self._fetch_one(
            "SELECT * FROM ai_agent_configs WHERE sector_id = %s LIMIT 1", (sector_id,)
        )
        if not row:
            return None
        for column in ("working_hours_start", "working_hours_end"):
            value = row.get(column)
            if value is not None and not isinstance(value, str):
                row[column] = value.strftime("%H:%M")
        return schemas.AIAgentConfig(**row)

    def record_ai_log(
        self,
        *,
        config_id: int,
        conversation_id: int,
        message_content: Optional[str],
        response_content: str,
        model_used: str,
        prompt_context: Dict[str, Any],
    ) -> schemas.AIAgentLog:
        row = self._fetch_one(
            """
            INSERT INTO ai_agent_logs
                (config_id, conversation_id, message_content, response_content, model_used, prompt_context)
            VALUES (%s, %s, %s, %s, %s, %s)
            RETURNING *
            """,
            (
                config_id,
                conversation_id,
                message_content,
                response_content,
                model_used,
                Jsonb(prompt_context),
            ),
        )
        return schemas.AIAgentLog(**row)


class InMemoryChatRepository:
    """Process-local implementation of :class:`ChatRepository` used in tests."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self.instances: Dict[int, schemas.Instance] = {}
        self.sectors: Dict[int, schemas.Sector] = {}
        self.contacts: Dict[int, schemas.Contact] = {}
        self.conversations: Dict[int, schemas.Conversation] = {}
        self.messages: Dict[int, schemas.Message] = {}
        self.reactions: Dict[int, schemas.Reaction] = {}
        self.tickets: Dict[int, schemas.Ticket] = {}
        self.assignment_rules: Dict[int, schemas.AssignmentRule] = {}
        self.ai_configs: Dict[int, schemas.AIAgentConfig] = {}
        self.ai_logs: List[schemas.AIAgentLog] = []
        self._id_seq: Dict[str, int] = {}
        self.commits = 0

    # Utility -----------------------------------------------------------------
    def _next_id(self, table: str) -> int:
        value = self._id_seq.get(table, 0) + 1
        self._id_seq[table] = value
        return value

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    def commit(self) -> None:
        self.commits += 1

    def savepoint(self):
        return contextlib.nullcontext()

    # Seeding helpers used by tests -------------------------------------------
    def add_instance(self, instance_name: str, **fields: Any) -> schemas.Instance:
        instance_id = self._next_id("instances")
        instance = schemas.Instance(
            id=instance_id,
            name=fields.pop("name", instance_name),
            instance_name=instance_name,
            **fields,
        )
        self.instances[instance_id] = instance
        return instance.model_copy()

    def add_sector(self, instance_id: int, name: str, **fields: Any) -> schemas.Sector:
        sector = schemas.Sector(
            id=self._next_id("sectors"), instance_id=instance_id, name=name, **fields
        )
        self.sectors[sector.id] = sector
        return sector.model_copy()

    def add_assignment_rule(self, instance_id: int, **fields: Any) -> schemas.AssignmentRule:
        rule = schemas.AssignmentRule(
            id=self._next_id("assignment_rules"), instance_id=instance_id, **fields
        )
        self.assignment_rules[rule.id] = rule
        return rule.model_copy()

    def add_ai_config(self, sector_id: int, **fields: Any) -> schemas.AIAgentConfig:
        config = schemas.AIAgentConfig(
            id=self._next_id("ai_agent_configs"), sector_id=sector_id, **fields
        )
        self.ai_configs[config.id] = config
        return config.model_copy()

    def messages_for(self, conversation_id: int) -> List[schemas.Message]:
        return sorted(
            (m.model_copy(deep=True) for m in self.messages.values() if m.conversation_id == conversation_id),
            key=lambda m: (m.timestamp, m.id),
        )

    # Instances ----------------------------------------------------------------
    def get_instance_by_name(self, instance_name: str) -> Optional[schemas.Instance]:
        for instance in self.instances.values():
            if instance_name in (instance.instance_name, instance.name):
                return instance.model_copy()
        return None

    def get_instance(self, instance_id: int) -> Optional[schemas.Instance]:
        instance = self.instances.get(instance_id)
        return instance.model_copy() if instance else None

    def update_instance_status(self, instance_id: int, status: str) -> None:
        if instance_id in self.instances:
            self.instances[instance_id].status = status

    # Contacts -----------------------------------------------------------------
    def _contacts_of(self, instance_id: int) -> List[schemas.Contact]:
        return [c for c in self.contacts.values() if c.instance_id == instance_id]

    def get_contact(self, contact_id: int) -> Optional[schemas.Contact]:
        contact = self.contacts.get(contact_id)
        return contact.model_copy(deep=True) if contact else None

    def find_contact_by_sender(self, instance_id: int, phone: str) -> Optional[schemas.Contact]:
        matches = [
            c
            for c in self._contacts_of(instance_id)
            if c.phone_number == phone
            or c.metadata.get("sender_pn") == phone
            or phone in c.alternate_ids
        ]
        matches.sort(key=lambda c: (c.phone_number != phone, c.id))
        return matches[0].model_copy(deep=True) if matches else None

    def find_contact_by_phone(self, instance_id: int, phone: str) -> Optional[schemas.Contact]:
        for contact in self._contacts_of(instance_id):
            if contact.phone_number == phone:
                return contact.model_copy(deep=True)
        return None

    def find_contact_by_remote_jid(self, instance_id: int, remote_jid: str) -> Optional[schemas.Contact]:
        for contact in self._contacts_of(instance_id):
            if contact.remote_jid == remote_jid:
                return contact.model_copy(deep=True)
        return None

    def find_contact_by_transient_id(self, instance_id: int, lid_id: str) -> Optional[schemas.Contact]:
        for contact in self._contacts_of(instance_id):
            if (
                contact.phone_number == lid_id
                or contact.metadata.get("lid_id") == lid_id
                or lid_id in contact.alternate_ids
            ):
                return contact.model_copy(deep=True)
        return None

    def find_group_contact(
        self, instance_id: int, remote_jid: str, phone: str
    ) -> Optional[schemas.Contact]:
        for contact in self._contacts_of(instance_id):
            if contact.remote_jid == remote_jid or contact.phone_number == phone:
                return contact.model_copy(deep=True)
        return None

    def find_recent_outbound_contacts(
        self, instance_id: int, *, exclude_phone: str, since: datetime, limit: int
    ) -> List[schemas.Contact]:
        latest: Dict[int, datetime] = {}
        for conversation in self.conversations.values():
            if conversation.instance_id != instance_id:
                continue
            if conversation.status == ConversationStatus.RESOLVED:
                continue
            contact = self.contacts.get(conversation.contact_id)
            if (
                contact is None
                or contact.is_group
                or contact.remote_jid is not None
                or contact.phone_number == exclude_phone
            ):
                continue
            for message in self.messages.values():
                if (
                    message.conversation_id == conversation.id
                    and message.is_from_me
                    and not message.is_internal
                    and message.timestamp > since
                ):
                    current = latest.get(contact.id)
                    if current is None or message.timestamp > current:
                        latest[contact.id] = message.timestamp
        ordered = sorted(latest.items(), key=lambda item: item[1], reverse=True)
        return [self.contacts[cid].model_copy(deep=True) for cid, _ in ordered[:limit]]

    def create_contact(
        self,
        instance_id: int,
        phone_number: str,
        *,
        remote_jid: Optional[str] = None,
        name: Optional[str] = None,
        is_group: bool = False,
        profile_picture_url: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> schemas.Contact:
        with self._lock:
            existing = self.find_contact_by_phone(instance_id, phone_number)
            if existing:
                stored = self.contacts[existing.id]
                stored.remote_jid = remote_jid or stored.remote_jid
                stored.name = name or stored.name
                stored.updated_at = self._now()
                return stored.model_copy(deep=True)
            now = self._now()
            contact = schemas.Contact(
                id=self._next_id("contacts"),
                instance_id=instance_id,
                phone_number=phone_number,
                remote_jid=remote_jid,
                name=name,
                is_group=is_group,
                profile_picture_url=profile_picture_url,
                metadata=dict(metadata or {}),
                created_at=now,
                updated_at=now,
            )
            self.contacts[contact.id] = contact
            return contact.model_copy(deep=True)

    def update_contact(
        self,
        contact_id: int,
        *,
        phone_number: Optional[str] = None,
        remote_jid: Optional[str] = None,
        name: Optional[str] = None,
        profile_picture_url: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> schemas.Contact:
        contact = self.contacts.get(contact_id)
        if contact is None:
            raise LookupError(f"Contact {contact_id} not found")
        if phone_number is not None:
            contact.phone_number = phone_number
        if remote_jid is not None:
            contact.remote_jid = remote_jid
        if name is not None:
            contact.name = name
        if profile_picture_url is not None:
            contact.profile_picture_url = profile_picture_url
        if metadata is not None:
            contact.metadata = dict(metadata)
        contact.updated_at = self._now()
        return contact.model_copy(deep=True)

    # Sectors ------------------------------------------------------------------
    def get_default_sector(self, instance_id: int) -> Optional[schemas.Sector]:
        for sector in sorted(self.sectors.values(), key=lambda s: s.id):
            if sector.instance_id == instance_id and sector.is_default and sector.is_active:
                return sector.model_copy()
        return None

    def get_sector(self, sector_id: int) -> Optional[schemas.Sector]:
        sector = self.sectors.get(sector_id)
        return sector.model_copy() if sector else None

    # Conversations --------------------------------------------------------------
    def get_conversation(self, conversation_id: int) -> Optional[schemas.Conversation]:
        conversation = self.conversations.get(conversation_id)
        return conversation.model_copy() if conversation else None

    def get_or_create_conversation(
        self,
        instance_id: int,
        contact_id: int,
        *,
        sector_id: Optional[int],
        mode: ConversationMode,
        unread_count: int,
        last_message_at: datetime,
        preview: str,
    ) -> tuple[schemas.Conversation, bool]:
        with self._lock:
            for conversation in self.conversations.values():
                if conversation.instance_id == instance_id and conversation.contact_id == contact_id:
                    return conversation.model_copy(), False
            now = self._now()
            conversation = schemas.Conversation(
                id=self._next_id("conversations"),
                instance_id=instance_id,
                contact_id=contact_id,
                status=ConversationStatus.ACTIVE,
                conversation_mode=mode,
                sector_id=sector_id,
                unread_count=unread_count,
                last_message_at=last_message_at,
                last_message_preview=preview,
                created_at=now,
                updated_at=now,
            )
            self.conversations[conversation.id] = conversation
            return conversation.model_copy(), True

    def touch_conversation(
        self,
        conversation_id: int,
        *,
        last_message_at: datetime,
        preview: str,
        increment_unread: bool,
    ) -> schemas.Conversation:
        with self._lock:
            conversation = self.conversations.get(conversation_id)
            if conversation is None:
                raise LookupError(f"Conversation {conversation_id} not found")
            conversation.status = ConversationStatus.ACTIVE
            if conversation.last_message_at is None or last_message_at > conversation.last_message_at:
                conversation.last_message_at = last_message_at
            conversation.last_message_preview = preview
            if increment_unread:
                conversation.unread_count += 1
            conversation.updated_at = self._now()
            return conversation.model_copy()

    def assign_conversation(self, conversation_id: int, agent_id: str) -> bool:
        with self._lock:
            conversation = self.conversations.get(conversation_id)
            if conversation is None or conversation.assigned_to is not None:
                return False
            conversation.assigned_to = agent_id
            conversation.updated_at = self._now()
            return True

    def set_conversation_mode(self, conversation_id: int, mode: ConversationMode) -> None:
        conversation = self.conversations.get(conversation_id)
        if conversation is not None:
            conversation.conversation_mode = mode
            conversation.updated_at = self._now()

    def list_open_conversations_by_mode(self, mode: ConversationMode) -> List[schemas.Conversation]:
        return [
            c.model_copy()
            for c in self.conversations.values()
            if c.conversation_mode == mode and c.status != ConversationStatus.RESOLVED
        ]

    # Messages -------------------------------------------------------------------
    def insert_message(self, message: schemas.NewMessage) -> Optional[schemas.Message]:
        with self._lock:
            for existing in self.messages.values():
                if (
                    existing.conversation_id == message.conversation_id
                    and existing.message_id == message.message_id
                ):
                    return None
            stored = schemas.Message(
                id=self._next_id("messages"),
                created_at=self._now(),
                **message.model_dump(),
            )
            self.messages[stored.id] = stored
            return stored.model_copy(deep=True)

    def get_message_by_gateway_id(self, message_id: str) -> Optional[schemas.Message]:
        matches = [m for m in self.messages.values() if m.message_id == message_id]
        if not matches:
            return None
        return max(matches, key=lambda m: (m.created_at, m.id)).model_copy(deep=True)

    def find_message_by_metadata(self, needle: str) -> Optional[schemas.Message]:
        for message in sorted(self.messages.values(), key=lambda m: m.id, reverse=True):
            if message.metadata.get("gateway_key_id") == needle:
                return message.model_copy(deep=True)
            if needle in json.dumps(message.metadata, default=str):
                return message.model_copy(deep=True)
        return None

    def update_message_status(self, message_pk: int, status: MessageStatus) -> bool:
        with self._lock:
            message = self.messages.get(message_pk)
            if message is None or status.priority <= status_priority(message.status):
                return False
            message.status = status
            return True

    def add_read_participant(self, message_pk: int, jid: str, read_at: datetime) -> bool:
        with self._lock:
            message = self.messages.get(message_pk)
            if message is None:
                return False
            if any(entry.get("jid") == jid for entry in message.read_participants):
                return False
            message.read_participants.append({"jid": jid, "timestamp": read_at.isoformat()})
            return True

    def mark_message_deleted(
        self, message_pk: int, *, deleted_by: Optional[str], metadata: Dict[str, Any]
    ) -> Optional[schemas.Message]:
        with self._lock:
            message = self.messages.get(message_pk)
            if message is None or message.deleted:
                return None
            message.deleted = True
            message.deleted_at = self._now()
            message.deleted_by = deleted_by
            message.metadata = {**message.metadata, **metadata}
            return message.model_copy(deep=True)

    def list_recent_messages(
        self, conversation_id: int, limit: int = 20, *, include_internal: bool = False
    ) -> List[schemas.Message]:
        rows = [
            m
            for m in self.messages_for(conversation_id)
            if include_internal or not m.is_internal
        ]
        return rows[-limit:]

    def latest_customer_message(self, conversation_id: int) -> Optional[schemas.Message]:
        candidates = [
            m
            for m in self.messages_for(conversation_id)
            if not m.is_from_me and not m.is_internal and not m.deleted
        ]
        return candidates[-1] if candidates else None

    def has_outbound_after(
        self, conversation_id: int, after: datetime, *, automated: bool
    ) -> bool:
        for message in self.messages.values():
            if message.conversation_id != conversation_id:
                continue
            if not message.is_from_me or message.is_internal or message.timestamp < after:
                continue
            sender = message.metadata.get("sender")
            if automated and sender == "ai":
                return True
            if not automated and sender not in ("ai", "system"):
                return True
        return False

    # Reactions --------------------------------------------------------------------
    def replace_reaction(
        self,
        message_pk: int,
        conversation_id: int,
        reactor_id: str,
        emoji: str,
        *,
        is_from_me: bool,
    ) -> Optional[schemas.Reaction]:
        with self._lock:
            for reaction_id, reaction in list(self.reactions.items()):
                if reaction.message_id == message_pk and reaction.reactor_id == reactor_id:
                    del self.reactions[reaction_id]
            if not emoji:
                return None
            reaction = schemas.Reaction(
                id=self._next_id("message_reactions"),
                message_id=message_pk,
                conversation_id=conversation_id,
                reactor_id=reactor_id,
                emoji=emoji,
                is_from_me=is_from_me,
                created_at=self._now(),
            )
            self.reactions[reaction.id] = reaction
            return reaction.model_copy()

    def list_reactions(self, message_pk: int) -> List[schemas.Reaction]:
        return [r.model_copy() for r in self.reactions.values() if r.message_id == message_pk]

    # Tickets ----------------------------------------------------------------------
    def get_ticket(self, ticket_id: int) -> Optional[schemas.Ticket]:
        ticket = self.tickets.get(ticket_id)
        return ticket.model_copy() if ticket else None

    def get_active_ticket(self, conversation_id: int) -> Optional[schemas.Ticket]:
        for ticket in sorted(self.tickets.values(), key=lambda t: t.id, reverse=True):
            if ticket.conversation_id == conversation_id and ticket.status.is_active:
                return ticket.model_copy()
        return None

    def create_ticket(self, conversation_id: int, sector_id: Optional[int]) -> Optional[schemas.Ticket]:
        with self._lock:
            if self.get_active_ticket(conversation_id) is not None:
                return None
            now = self._now()
            ticket_id = self._next_id("tickets")
            ticket = schemas.Ticket(
                id=ticket_id,
                numero=self._next_id("ticket_numero"),
                conversation_id=conversation_id,
                sector_id=sector_id,
                status=TicketStatus.OPEN,
                created_at=now,
                updated_at=now,
            )
            self.tickets[ticket_id] = ticket
            return ticket.model_copy()

    def update_ticket_status(self, ticket_id: int, status: TicketStatus) -> schemas.Ticket:
        ticket = self.tickets.get(ticket_id)
        if ticket is None:
            raise LookupError(f"Ticket {ticket_id} not found")
        ticket.status = status
        ticket.closed_at = self._now() if status == TicketStatus.CLOSED else None
        ticket.updated_at = self._now()
        return ticket.model_copy()

    # Assignment rules -------------------------------------------------------------
    def find_assignment_rule(
        self, instance_id: int, sector_id: Optional[int]
    ) -> Optional[schemas.AssignmentRule]:
        active = [
            r
            for r in sorted(self.assignment_rules.values(), key=lambda r: r.id)
            if r.instance_id == instance_id and r.is_active
        ]
        if sector_id is not None:
            for rule in active:
                if rule.sector_id == sector_id:
                    return rule.model_copy(deep=True)
        for rule in active:
            if rule.sector_id is None:
                return rule.model_copy(deep=True)
        return None

    def advance_round_robin(self, rule_id: int) -> Optional[str]:
        with self._lock:
            rule = self.assignment_rules.get(rule_id)
            if rule is None or not rule.round_robin_agents:
                return None
            rule.round_robin_last_index = (rule.round_robin_last_index + 1) % len(
                rule.round_robin_agents
            )
            return rule.round_robin_agents[rule.round_robin_last_index]

    # Automated agent --------------------------------------------------------------
    def get_ai_config(self, sector_id: int) -> Optional[schemas.AIAgentConfig]:
        for config in self.ai_configs.values():
            if config.sector_id == sector_id:
                return config.model_copy(deep=True)
        return None

    def record_ai_log(
        self,
        *,
        config_id: int,
        conversation_id: int,
        message_content: Optional[str],
        response_content: str,
        model_used: str,
        prompt_context: Dict[str, Any],
    ) -> schemas.AIAgentLog:
        log = schemas.AIAgentLog(
            id=self._next_id("ai_agent_logs"),
            config_id=config_id,
            conversation_id=conversation_id,
            message_content=message_content,
            response_content=response_content,
            model_used=model_used,
            prompt_context=dict(prompt_context),
            created_at=self._now(),
        )
        self.ai_logs.append(log)
        return log
