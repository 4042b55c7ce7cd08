"""
ContextGate Database Models
PostgreSQL (or SQLite) schema for instructions, conversations and people
"""

from datetime import datetime, timezone
from enum import Enum as PyEnum
from sqlalchemy import (
    Column, Integer, String, Text, Float, Boolean,
    DateTime, ForeignKey, CheckConstraint, Index, UniqueConstraint, Enum, JSON
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship, declarative_base, deferred

import core.config as config

DB_BACKEND_EFFECTIVE = config.DB_BACKEND_EFFECTIVE

JSON_TYPE = JSONB if DB_BACKEND_EFFECTIVE == "postgres" else JSON


def utcnow() -> datetime:
    """Naive UTC timestamp, the representation stored in every table."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _enum_column(enum_cls, name: str):
    return Enum(enum_cls, name=name, native_enum=False, length=50)


Base = declarative_base()

# =============================================================================
# Enums
# =============================================================================

class InstructionCategory(str, PyEnum):
    # Declaration order is the editorial render order.
    explicit_instruction = "explicit_instruction"
    address_preference = "address_preference"
    response_style = "response_style"
    behavior_rule = "behavior_rule"
    communication_style = "communication_style"
    correction = "correction"
    topic_preference = "topic_preference"
    personal_info = "personal_info"
    work_context = "work_context"
    schedule_preference = "schedule_preference"
    speaking_pattern = "speaking_pattern"
    learning = "learning"
    other = "other"


CATEGORY_LABELS = {
    InstructionCategory.explicit_instruction: "DIRECT INSTRUCTIONS",
    InstructionCategory.address_preference: "HOW TO ADDRESS USER",
    InstructionCategory.response_style: "RESPONSE STYLE",
    InstructionCategory.behavior_rule: "BEHAVIOR RULES",
    InstructionCategory.communication_style: "COMMUNICATION PREFERENCES",
    InstructionCategory.correction: "CORRECTIONS",
    InstructionCategory.topic_preference: "TOPIC PREFERENCES",
    InstructionCategory.personal_info: "PERSONAL INFO",
    InstructionCategory.work_context: "WORK CONTEXT",
    InstructionCategory.schedule_preference: "SCHEDULE PREFERENCES",
    InstructionCategory.speaking_pattern: "USER'S SPEAKING PATTERNS",
    InstructionCategory.learning: "LEARNED FROM CONVERSATIONS",
    InstructionCategory.other: "OTHER",
}


class InstructionSource(str, PyEnum):
    explicit = "explicit"
    inferred = "inferred"
    correction = "correction"
    preference = "preference"
    pattern = "pattern"


class MessageRole(str, PyEnum):
    user = "user"
    mi = "mi"
    ra = "ra"
    assistant = "assistant"
    system = "system"


class PersonSource(str, PyEnum):
    manual = "manual"
    detected = "detected"
    migrated = "migrated"


class UnknownPersonStatus(str, PyEnum):
    unknown = "unknown"
    pending = "pending"
    identified = "identified"

    def can_transition_to(self, target: "UnknownPersonStatus") -> bool:
        return target in _STATUS_TRANSITIONS[self]

    @property
    def is_terminal(self) -> bool:
        return not _STATUS_TRANSITIONS[self]


_STATUS_TRANSITIONS = {
    UnknownPersonStatus.unknown: {UnknownPersonStatus.pending, UnknownPersonStatus.identified},
    UnknownPersonStatus.pending: {UnknownPersonStatus.pending, UnknownPersonStatus.identified},
    UnknownPersonStatus.identified: set(),
}

ASKABLE_STATUSES = (UnknownPersonStatus.unknown, UnknownPersonStatus.pending)


# =============================================================================
# Instructions
# =============================================================================

class Instruction(Base):
    __tablename__ = "instructions"

    id = Column(Integer, primary_key=True)
    owner_id = Column(String(100), nullable=False)
    category = Column(_enum_column(InstructionCategory, "instruction_category"), nullable=False)
    instruction = Column(Text, nullable=False)
    original_context = Column(Text)
    priority = Column(Integer, nullable=False, default=5)
    is_active = Column(Boolean, nullable=False, default=True)
    source = Column(
        _enum_column(InstructionSource, "instruction_source"),
        nullable=False,
        default=InstructionSource.explicit,
    )
    confidence = Column(Float, nullable=False, default=1.0)
    tags = Column(JSON_TYPE, default=list)
    applied_count = Column(Integer, nullable=False, default=0)
    last_applied = Column(DateTime)
    conversation_id = Column(Integer, ForeignKey("conversations.id", ondelete="SET NULL"))
    superseded_by_id = Column(Integer, ForeignKey("instructions.id"))
    embedding = deferred(Column(JSON_TYPE))  # excluded from default reads
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("priority >= 1 AND priority <= 10", name="ck_instructions_priority_range"),
        CheckConstraint("confidence >= 0 AND confidence <= 1", name="ck_instructions_confidence_range"),
        Index("ix_instructions_owner_active_priority", "owner_id", "is_active", "priority"),
        Index("ix_instructions_owner_active_category", "owner_id", "is_active", "category"),
        Index("ix_instructions_owner_created", "owner_id", "created_at"),
    )


# =============================================================================
# Conversations
# =============================================================================

class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(Integer, primary_key=True)
    owner_id = Column(String(100), nullable=False)
    title = Column(String(500), nullable=False, default="New Conversation")
    summary = Column(Text, nullable=False, default="")
    topics = Column(JSON_TYPE, default=list)
    is_active = Column(Boolean, nullable=False, default=True)
    started_at = Column(DateTime, nullable=False, default=utcnow)
    ended_at = Column(DateTime)

    # Counters are only ever changed with SQL-side increments.
    total_messages = Column(Integer, nullable=False, default=0)
    user_messages = Column(Integer, nullable=False, default=0)
    mi_messages = Column(Integer, nullable=False, default=0)
    ra_messages = Column(Integer, nullable=False, default=0)
    assistant_messages = Column(Integer, nullable=False, default=0)
    system_messages = Column(Integer, nullable=False, default=0)
    debate_messages = Column(Integer, nullable=False, default=0)
    consensus_count = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    messages = relationship(
        "ConversationMessage",
        back_populates="conversation",
        order_by="ConversationMessage.position",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("ix_conversations_owner_started", "owner_id", "started_at"),
        Index("ix_conversations_owner_active", "owner_id", "is_active"),
    )


ROLE_COUNTER_COLUMNS = {
    MessageRole.user: "user_messages",
    MessageRole.mi: "mi_messages",
    MessageRole.ra: "ra_messages",
    MessageRole.assistant: "assistant_messages",
    MessageRole.system: "system_messages",
}


class ConversationMessage(Base):
    __tablename__ = "conversation_messages"

    id = Column(Integer, primary_key=True)
    conversation_id = Column(
        Integer,
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
    )
    position = Column(Integer, nullable=False)
    role = Column(_enum_column(MessageRole, "message_role"), nullable=False)
    content = Column(Text, nullable=False)
    timestamp = Column(DateTime, nullable=False, default=utcnow)
    audio_url = Column(String(1000))
    emotion = Column(String(50))
    is_debate = Column(Boolean, nullable=False, default=False)
    is_consensus = Column(Boolean, nullable=False, default=False)
    reply_to = Column(String(20))
    visual_context = Column(JSON_TYPE)

    conversation = relationship("Conversation", back_populates="messages")

    __table_args__ = (
        UniqueConstraint("conversation_id", "position", name="uq_conversation_messages_position"),
        Index("ix_conversation_messages_conversation_timestamp", "conversation_id", "timestamp"),
    )


# =============================================================================
# People
# =============================================================================

class Person(Base):
    __tablename__ = "people"

    id = Column(Integer, primary_key=True)
    owner_id = Column(String(100), nullable=False)
    name = Column(String(255), nullable=False)
    aliases = Column(JSON_TYPE, default=list)
    description = Column(Text, nullable=False)
    relationship = Column(String(100))
    tags = Column(JSON_TYPE, default=list)
    voice_embedding_id = Column(String(100))
    face_descriptor = deferred(Column(JSON_TYPE))  # excluded from default reads
    mention_count = Column(Integer, nullable=False, default=1)
    last_mentioned_at = Column(DateTime)
    is_fully_accounted = Column(Boolean, nullable=False, default=True)
    source = Column(
        _enum_column(PersonSource, "person_source"),
        nullable=False,
        default=PersonSource.manual,
    )
    # Correlation with the unknown-person record this person was promoted from.
    source_unknown_person_id = Column(Integer)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("length(name) > 0", name="ck_people_name_not_empty"),
        UniqueConstraint(
            "owner_id",
            "source_unknown_person_id",
            name="uq_people_owner_source_unknown_person",
        ),
        Index("ix_people_owner_name", "owner_id", "name"),
        Index("ix_people_owner_mentions", "owner_id", "mention_count"),
    )


class UnknownPerson(Base):
    __tablename__ = "unknown_people"

    id = Column(Integer, primary_key=True)
    owner_id = Column(String(100), nullable=False)
    name = Column(String(255), nullable=False)
    normalized_name = Column(String(255), nullable=False)
    mention_count = Column(Integer, nullable=False, default=0)
    first_mentioned_at = Column(DateTime, nullable=False, default=utcnow)
    last_mentioned_at = Column(DateTime, nullable=False, default=utcnow)
    asked_count = Column(Integer, nullable=False, default=0)
    last_asked_at = Column(DateTime)
    status = Column(
        _enum_column(UnknownPersonStatus, "unknown_person_status"),
        nullable=False,
        default=UnknownPersonStatus.unknown,
    )
    linked_person_id = Column(Integer, ForeignKey("people.id", ondelete="SET NULL"))
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    contexts = relationship(
        "UnknownPersonContext",
        order_by="UnknownPersonContext.id",
        cascade="all, delete-orphan",
    )
    relationships = relationship(
        "UnknownPersonRelationship",
        order_by="UnknownPersonRelationship.id",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        UniqueConstraint("owner_id", "normalized_name", name="uq_unknown_people_owner_name"),
        Index("ix_unknown_people_owner_status_asked", "owner_id", "status", "last_asked_at"),
        Index("ix_unknown_people_owner_mentions", "owner_id", "mention_count"),
    )


class UnknownPersonContext(Base):
    __tablename__ = "unknown_person_contexts"

    id = Column(Integer, primary_key=True)
    unknown_person_id = Column(
        Integer,
        ForeignKey("unknown_people.id", ondelete="CASCADE"),
        nullable=False,
    )
    snippet = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_unknown_person_contexts_person", "unknown_person_id", "id"),
    )


class UnknownPersonRelationship(Base):
    __tablename__ = "unknown_person_relationships"

    id = Column(Integer, primary_key=True)
    unknown_person_id = Column(
        Integer,
        ForeignKey("unknown_people.id", ondelete="CASCADE"),
        nullable=False,
    )
    relationship = Column(String(100), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint(
            "unknown_person_id",
            "relationship",
            name="uq_unknown_person_relationships_value",
        ),
    )
