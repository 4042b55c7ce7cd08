"""Initial schema: instructions, conversations, people, unknown people.

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-17
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    bind = op.get_bind()
    is_postgres = bind.dialect.name == "postgresql"
    json_type = postgresql.JSONB if is_postgres else sa.JSON

    op.create_table(
        "conversations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("owner_id", sa.String(length=100), nullable=False),
        sa.Column("title", sa.String(length=500), nullable=False),
        sa.Column("summary", sa.Text(), nullable=False),
        sa.Column("topics", json_type),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("started_at", sa.DateTime(), nullable=False),
        sa.Column("ended_at", sa.DateTime()),
        sa.Column("total_messages", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("user_messages", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("mi_messages", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("ra_messages", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("assistant_messages", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("system_messages", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("debate_messages", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("consensus_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_conversations_owner_started", "conversations", ["owner_id", "started_at"])
    op.create_index("ix_conversations_owner_active", "conversations", ["owner_id", "is_active"])

    op.create_table(
        "conversation_messages",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "conversation_id",
            sa.Integer(),
            sa.ForeignKey("conversations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("role", sa.String(length=50), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("timestamp", sa.DateTime(), nullable=False),
        sa.Column("audio_url", sa.String(length=1000)),
        sa.Column("emotion", sa.String(length=50)),
        sa.Column("is_debate", sa.Boolean(), nullable=False),
        sa.Column("is_consensus", sa.Boolean(), nullable=False),
        sa.Column("reply_to", sa.String(length=20)),
        sa.Column("visual_context", json_type),
        sa.UniqueConstraint("conversation_id", "position", name="uq_conversation_messages_position"),
    )
    op.create_index(
        "ix_conversation_messages_conversation_timestamp",
        "conversation_messages",
        ["conversation_id", "timestamp"],
    )

    op.create_table(
        "instructions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("owner_id", sa.String(length=100), nullable=False),
        sa.Column("category", sa.String(length=50), nullable=False),
        sa.Column("instruction", sa.Text(), nullable=False),
        sa.Column("original_context", sa.Text()),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("source", sa.String(length=50), nullable=False),
        sa.Column("confidence", sa.Float(), nullable=False),
        sa.Column("tags", json_type),
        sa.Column("applied_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_applied", sa.DateTime()),
        sa.Column(
            "conversation_id",
            sa.Integer(),
            sa.ForeignKey("conversations.id", ondelete="SET NULL"),
        ),
        sa.Column("superseded_by_id", sa.Integer(), sa.ForeignKey("instructions.id")),
        sa.Column("embedding", json_type),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("priority >= 1 AND priority <= 10", name="ck_instructions_priority_range"),
        sa.CheckConstraint("confidence >= 0 AND confidence <= 1", name="ck_instructions_confidence_range"),
    )
    op.create_index(
        "ix_instructions_owner_active_priority",
        "instructions",
        ["owner_id", "is_active", "priority"],
    )
    op.create_index(
        "ix_instructions_owner_active_category",
        "instructions",
        ["owner_id", "is_active", "category"],
    )
    op.create_index("ix_instructions_owner_created", "instructions", ["owner_id", "created_at"])

    op.create_table(
        "people",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("owner_id", sa.String(length=100), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("aliases", json_type),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("relationship", sa.String(length=100)),
        sa.Column("tags", json_type),
        sa.Column("voice_embedding_id", sa.String(length=100)),
        sa.Column("face_descriptor", json_type),
        sa.Column("mention_count", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("last_mentioned_at", sa.DateTime()),
        sa.Column("is_fully_accounted", sa.Boolean(), nullable=False),
        sa.Column("source", sa.String(length=50), nullable=False),
        sa.Column("source_unknown_person_id", sa.Integer()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("length(name) > 0", name="ck_people_name_not_empty"),
        sa.UniqueConstraint(
            "owner_id",
            "source_unknown_person_id",
            name="uq_people_owner_source_unknown_person",
        ),
    )
    op.create_index("ix_people_owner_name", "people", ["owner_id", "name"])
    op.create_index("ix_people_owner_mentions", "people", ["owner_id", "mention_count"])

    op.create_table(
        "unknown_people",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("owner_id", sa.String(length=100), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("normalized_name", sa.String(length=255), nullable=False),
        sa.Column("mention_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("first_mentioned_at", sa.DateTime(), nullable=False),
        sa.Column("last_mentioned_at", sa.DateTime(), nullable=False),
        sa.Column("asked_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_asked_at", sa.DateTime()),
        sa.Column("status", sa.String(length=50), nullable=False),
        sa.Column(
            "linked_person_id",
            sa.Integer(),
            sa.ForeignKey("people.id", ondelete="SET NULL"),
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("owner_id", "normalized_name", name="uq_unknown_people_owner_name"),
    )
    op.create_index(
        "ix_unknown_people_owner_status_asked",
        "unknown_people",
        ["owner_id", "status", "last_asked_at"],
    )
    op.create_index(
        "ix_unknown_people_owner_mentions",
        "unknown_people",
        ["owner_id", "mention_count"],
    )

    op.create_table(
        "unknown_person_contexts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "unknown_person_id",
            sa.Integer(),
            sa.ForeignKey("unknown_people.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("snippet", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_unknown_person_contexts_person",
        "unknown_person_contexts",
        ["unknown_person_id", "id"],
    )

    op.create_table(
        "unknown_person_relationships",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "unknown_person_id",
            sa.Integer(),
            sa.ForeignKey("unknown_people.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("relationship", sa.String(length=100), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "unknown_person_id",
            "relationship",
            name="uq_unknown_person_relationships_value",
        ),
    )


def downgrade() -> None:
    op.drop_table("unknown_person_relationships")
    op.drop_index("ix_unknown_person_contexts_person", table_name="unknown_person_contexts")
    op.drop_table("unknown_person_contexts")
    op.drop_index("ix_unknown_people_owner_mentions", table_name="unknown_people")
    op.drop_index("ix_unknown_people_owner_status_asked", table_name="unknown_people")
    op.drop_table("unknown_people")
    op.drop_index("ix_people_owner_mentions", table_name="people")
    op.drop_index("ix_people_owner_name", table_name="people")
    op.drop_table("people")
    op.drop_index("ix_instructions_owner_created", table_name="instructions")
    op.drop_index("ix_instructions_owner_active_category", table_name="instructions")
    op.drop_index("ix_instructions_owner_active_priority", table_name="instructions")
    op.drop_table("instructions")
    op.drop_index(
        "ix_conversation_messages_conversation_timestamp",
        table_name="conversation_messages",
    )
    op.drop_table("conversation_messages")
    op.drop_index("ix_conversations_owner_active", table_name="conversations")
    op.drop_index("ix_conversations_owner_started", table_name="conversations")
    op.drop_table("conversations")
