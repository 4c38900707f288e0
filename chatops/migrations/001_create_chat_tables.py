"""Create instances, contacts, conversations, messages, tickets and agent tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "001_create_chat_tables"
down_revision = None
branch_labels = None
depends_on = None


_JSONB = postgresql.JSONB(astext_type=sa.Text())


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
    ]


def _json_default(name: str, default: str) -> sa.Column:
    return sa.Column(
        name, _JSONB, nullable=False, server_default=sa.text(f"'{default}'::jsonb")
    )


def upgrade() -> None:
    """Create the chat tables with their uniqueness guarantees."""

    op.create_table(
        "instances",
        sa.Column("id", sa.BigInteger(), sa.Identity(), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("instance_name", sa.String(length=255), nullable=False),
        sa.Column(
            "status",
            sa.String(length=32),
            nullable=False,
            server_default=sa.text("'disconnected'"),
        ),
        sa.Column(
            "provider_type",
            sa.String(length=32),
            nullable=False,
            server_default=sa.text("'evolution'"),
        ),
        sa.Column("instance_id_external", sa.String(length=255), nullable=True),
        sa.Column("api_url", sa.Text(), nullable=True),
        sa.Column("api_key", sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index(
        "ix_instances_instance_name_unique", "instances", ["instance_name"], unique=True
    )

    op.create_table(
        "sectors",
        sa.Column("id", sa.BigInteger(), sa.Identity(), primary_key=True),
        sa.Column(
            "instance_id",
            sa.BigInteger(),
            sa.ForeignKey("instances.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column(
            "ticket_individual", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("ticket_group", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("welcome_message", sa.Text(), nullable=True),
        sa.Column("closing_message", sa.Text(), nullable=True),
        sa.Column("reopen_message", sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_sectors_instance_id", "sectors", ["instance_id"])

    op.create_table(
        "contacts",
        sa.Column("id", sa.BigInteger(), sa.Identity(), primary_key=True),
        sa.Column(
            "instance_id",
            sa.BigInteger(),
            sa.ForeignKey("instances.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("phone_number", sa.String(length=64), nullable=False),
        sa.Column("remote_jid", sa.String(length=255), nullable=True),
        sa.Column("name", sa.String(length=255), nullable=True),
        sa.Column("is_group", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("profile_picture_url", sa.Text(), nullable=True),
        _json_default("metadata", "{}"),
        *_timestamps(),
        sa.UniqueConstraint(
            "instance_id", "phone_number", name="uq_contacts_instance_phone"
        ),
    )
    op.create_index(
        "ix_contacts_instance_remote_jid", "contacts", ["instance_id", "remote_jid"]
    )

    op.create_table(
        "conversations",
        sa.Column("id", sa.BigInteger(), sa.Identity(), primary_key=True),
        sa.Column(
            "instance_id",
            sa.BigInteger(),
            sa.ForeignKey("instances.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "contact_id",
            sa.BigInteger(),
            sa.ForeignKey("contacts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "status",
            sa.String(length=32),
            nullable=False,
            server_default=sa.text("'active'"),
        ),
        sa.Column("assigned_to", sa.String(length=255), nullable=True),
        sa.Column(
            "conversation_mode",
            sa.String(length=16),
            nullable=False,
            server_default=sa.text("'ai'"),
        ),
        sa.Column(
            "sector_id",
            sa.BigInteger(),
            sa.ForeignKey("sectors.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("unread_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_message_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_message_preview", sa.Text(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "instance_id", "contact_id", name="uq_conversations_instance_contact"
        ),
        sa.CheckConstraint(
            "conversation_mode IN ('ai', 'human', 'hybrid')",
            name="ck_conversations_mode",
        ),
    )
    op.create_index(
        "ix_conversations_mode_status", "conversations", ["conversation_mode", "status"]
    )

    op.create_table(
        "messages",
        sa.Column("id", sa.BigInteger(), sa.Identity(), primary_key=True),
        sa.Column(
            "conversation_id",
            sa.BigInteger(),
            sa.ForeignKey("conversations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("message_id", sa.String(length=255), nullable=False),
        sa.Column("remote_jid", sa.String(length=255), nullable=True),
        sa.Column("content", sa.Text(), nullable=False, server_default=sa.text("''")),
        sa.Column(
            "message_type",
            sa.String(length=32),
            nullable=False,
            server_default=sa.text("'text'"),
        ),
        sa.Column("media_url", sa.Text(), nullable=True),
        sa.Column("media_mimetype", sa.String(length=255), nullable=True),
        sa.Column("is_from_me", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_internal", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "status",
            sa.String(length=16),
            nullable=False,
            server_default=sa.text("'sent'"),
        ),
        sa.Column("quoted_message_id", sa.String(length=255), nullable=True),
        sa.Column("deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deleted_by", sa.String(length=255), nullable=True),
        _json_default("read_participants", "[]"),
        _json_default("metadata", "{}"),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.UniqueConstraint(
            "conversation_id", "message_id", name="uq_messages_conversation_message"
        ),
    )
    op.create_index("ix_messages_message_id", "messages", ["message_id"])
    op.create_index(
        "ix_messages_conversation_timestamp", "messages", ["conversation_id", "timestamp"]
    )

    op.create_table(
        "message_reactions",
        sa.Column("id", sa.BigInteger(), sa.Identity(), primary_key=True),
        sa.Column(
            "message_id",
            sa.BigInteger(),
            sa.ForeignKey("messages.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "conversation_id",
            sa.BigInteger(),
            sa.ForeignKey("conversations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("reactor_id", sa.String(length=255), nullable=False),
        sa.Column("emoji", sa.String(length=32), nullable=False),
        sa.Column("is_from_me", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.UniqueConstraint(
            "message_id", "reactor_id", name="uq_message_reactions_message_reactor"
        ),
    )

    op.execute("CREATE SEQUENCE IF NOT EXISTS tickets_numero_seq")
    op.create_table(
        "tickets",
        sa.Column("id", sa.BigInteger(), sa.Identity(), primary_key=True),
        sa.Column(
            "numero",
            sa.BigInteger(),
            nullable=False,
            server_default=sa.text("nextval('tickets_numero_seq')"),
        ),
        sa.Column(
            "conversation_id",
            sa.BigInteger(),
            sa.ForeignKey("conversations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "sector_id",
            sa.BigInteger(),
            sa.ForeignKey("sectors.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "status",
            sa.String(length=16),
            nullable=False,
            server_default=sa.text("'open'"),
        ),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("numero", name="uq_tickets_numero"),
    )
    # At most one active ticket per conversation.
    op.create_index(
        "ux_tickets_conversation_active",
        "tickets",
        ["conversation_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('open', 'in_progress', 'reopened')"),
    )

    op.create_table(
        "assignment_rules",
        sa.Column("id", sa.BigInteger(), sa.Identity(), primary_key=True),
        sa.Column(
            "instance_id",
            sa.BigInteger(),
            sa.ForeignKey("instances.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "sector_id",
            sa.BigInteger(),
            sa.ForeignKey("sectors.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column("name", sa.String(length=255), nullable=False, server_default=sa.text("''")),
        sa.Column(
            "rule_type",
            sa.String(length=32),
            nullable=False,
            server_default=sa.text("'fixed'"),
        ),
        sa.Column("fixed_agent_id", sa.String(length=255), nullable=True),
        _json_default("round_robin_agents", "[]"),
        sa.Column(
            "round_robin_last_index", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )

    op.create_table(
        "ai_agent_configs",
        sa.Column("id", sa.BigInteger(), sa.Identity(), primary_key=True),
        sa.Column(
            "sector_id",
            sa.BigInteger(),
            sa.ForeignKey("sectors.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "agent_name",
            sa.String(length=255),
            nullable=False,
            server_default=sa.text("'Assistente Virtual'"),
        ),
        sa.Column("persona_description", sa.Text(), nullable=True),
        sa.Column(
            "tone_of_voice",
            sa.String(length=32),
            nullable=False,
            server_default=sa.text("'professional'"),
        ),
        sa.Column("business_context", sa.Text(), nullable=True),
        sa.Column("faq_context", sa.Text(), nullable=True),
        sa.Column("system_prompt", sa.Text(), nullable=True),
        sa.Column(
            "default_model",
            sa.String(length=128),
            nullable=False,
            server_default=sa.text("'llama-3.3-70b-versatile'"),
        ),
        sa.Column("temperature", sa.Float(), nullable=False, server_default="0.7"),
        sa.Column("max_tokens", sa.Integer(), nullable=False, server_default="500"),
        sa.Column(
            "response_delay_seconds", sa.Float(), nullable=False, server_default="2"
        ),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column(
            "auto_reply_enabled", sa.Boolean(), nullable=False, server_default=sa.true()
        ),
        _json_default("escalation_keywords", "[]"),
        sa.Column(
            "working_hours_start",
            sa.String(length=5),
            nullable=False,
            server_default=sa.text("'08:00'"),
        ),
        sa.Column(
            "working_hours_end",
            sa.String(length=5),
            nullable=False,
            server_default=sa.text("'18:00'"),
        ),
        sa.Column(
            "working_timezone",
            sa.String(length=64),
            nullable=False,
            server_default=sa.text("'America/Sao_Paulo'"),
        ),
        _json_default("working_days", "[]"),
        sa.Column("out_of_hours_message", sa.Text(), nullable=True),
        sa.Column(
            "hybrid_timeout_minutes", sa.Integer(), nullable=False, server_default="5"
        ),
        *_timestamps(),
        sa.UniqueConstraint("sector_id", name="uq_ai_agent_configs_sector"),
    )

    op.create_table(
        "ai_agent_logs",
        sa.Column("id", sa.BigInteger(), sa.Identity(), primary_key=True),
        sa.Column(
            "config_id",
            sa.BigInteger(),
            sa.ForeignKey("ai_agent_configs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "conversation_id",
            sa.BigInteger(),
            sa.ForeignKey("conversations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("message_content", sa.Text(), nullable=True),
        sa.Column("response_content", sa.Text(), nullable=False),
        sa.Column("model_used", sa.String(length=128), nullable=False),
        _json_default("prompt_context", "{}"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
    )
    op.create_index(
        "ix_ai_agent_logs_conversation", "ai_agent_logs", ["conversation_id"]
    )


def downgrade() -> None:
    """Drop the chat tables in dependency order."""

    op.drop_index("ix_ai_agent_logs_conversation", table_name="ai_agent_logs")
    op.drop_table("ai_agent_logs")
    op.drop_table("ai_agent_configs")
    op.drop_table("assignment_rules")
    op.drop_index("ux_tickets_conversation_active", table_name="tickets")
    op.drop_table("tickets")
    op.execute("DROP SEQUENCE IF EXISTS tickets_numero_seq")
    op.drop_table("message_reactions")
    op.drop_index("ix_messages_conversation_timestamp", table_name="messages")
    op.drop_index("ix_messages_message_id", table_name="messages")
    op.drop_table("messages")
    op.drop_index("ix_conversations_mode_status", table_name="conversations")
    op.drop_table("conversations")
    op.drop_index("ix_contacts_instance_remote_jid", table_name="contacts")
    op.drop_table("contacts")
    op.drop_index("ix_sectors_instance_id", table_name="sectors")
    op.drop_table("sectors")
    op.drop_index("ix_instances_instance_name_unique", table_name="instances")
    op.drop_table("instances")
