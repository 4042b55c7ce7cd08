"""
Conversation aggregator services.

Conversations are the ordered message logs of user/assistant exchanges. The
windowed context is the chronological tail of recent messages that gets fed
back into the assistant prompt.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional, List

from sqlalchemy.exc import IntegrityError

import core.config as config
from core.context import Deadline, deadline_expired, require_owner_id
from core.db import apply_statement_timeout
from core.errors import ConflictError, NotFoundError, ValidationIssue
from core.models import (
    ROLE_COUNTER_COLUMNS,
    Conversation,
    ConversationMessage,
    MessageRole,
    utcnow,
)
from core.services.shared import (
    enum_value,
    iso,
    logger,
    open_session,
    store_operation,
)
from core.validators import (
    parse_enum,
    validate_limit,
    validate_metadata,
    validate_non_negative,
    validate_optional_text,
    validate_string_list,
)

DEFAULT_TITLE = "New Conversation"
VOICE_TITLE = "Voice Conversation"


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if not isinstance(value, datetime):
        raise ValidationIssue("timestamp must be a datetime", field="timestamp", error_type="invalid_type")
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _serialize_message(message: ConversationMessage) -> dict:
    return {
        "id": message.id,
        "position": message.position,
        "role": enum_value(message.role),
        "content": message.content,
        "timestamp": iso(message.timestamp),
        "audio_url": message.audio_url,
        "emotion": message.emotion,
        "is_debate": message.is_debate,
        "is_consensus": message.is_consensus,
        "reply_to": message.reply_to,
        "visual_context": message.visual_context,
    }


def _serialize_conversation(conv: Conversation, messages: Optional[List[ConversationMessage]] = None) -> dict:
    data = {
        "id": conv.id,
        "title": conv.title,
        "summary": conv.summary,
        "topics": list(conv.topics or []),
        "is_active": conv.is_active,
        "started_at": iso(conv.started_at),
        "ended_at": iso(conv.ended_at),
        "message_count": conv.total_messages,
        "metadata": {
            "total_messages": conv.total_messages,
            "user_messages": conv.user_messages,
            "mi_messages": conv.mi_messages,
            "ra_messages": conv.ra_messages,
            "assistant_messages": conv.assistant_messages,
            "system_messages": conv.system_messages,
            "debate_messages": conv.debate_messages,
            "consensus_count": conv.consensus_count,
        },
    }
    if messages is not None:
        data["messages"] = [_serialize_message(message) for message in messages]
    return data


def _owned_conversation(db, owner_id: str, conversation_id: int) -> Conversation:
    conv = (
        db.query(Conversation)
        .filter(Conversation.id == conversation_id, Conversation.owner_id == owner_id)
        .first()
    )
    if conv is None:
        raise NotFoundError("conversation", conversation_id)
    return conv


def _validate_content(content: str) -> None:
    if not isinstance(content, str):
        raise ValidationIssue("content must be a string", field="content", error_type="invalid_type")
    if len(content) > config.MAX_TEXT_LENGTH:
        raise ValidationIssue(
            f"content exceeds max length {config.MAX_TEXT_LENGTH}",
            field="content",
            error_type="max_length",
        )


def _title_from_content(content: str) -> str:
    text = (content or "").strip()
    if not text:
        return VOICE_TITLE
    prefix = config.CONVERSATION_TITLE_PREFIX
    return text[:prefix] + ("..." if len(text) > prefix else "")


# =============================================================================
# Reads
# =============================================================================

@store_operation
def get_conversation(owner_id: str, conversation_id: int) -> dict:
    """Full conversation with every message in position order."""
    owner_id = require_owner_id(owner_id)
    db = open_session()
    try:
        conv = _owned_conversation(db, owner_id, conversation_id)
        return _serialize_conversation(conv, list(conv.messages))
    finally:
        db.close()


@store_operation
def list_recent_conversations(
    owner_id: str,
    limit: int = config.CONVERSATION_LIST_LIMIT_DEFAULT,
    skip: int = 0,
    include_full_messages: bool = False,
) -> dict:
    """
    Page through conversations newest-first.

    Without include_full_messages each entry previews only its first few
    messages; message_count always reports the stored total.
    """
    owner_id = require_owner_id(owner_id)
    validate_limit(limit, "limit", config.MAX_RESULT_LIMIT)
    validate_non_negative(skip, "skip")

    db = open_session()
    try:
        base = db.query(Conversation).filter(Conversation.owner_id == owner_id)
        total = base.count()
        conversations = (
            base.order_by(Conversation.started_at.desc(), Conversation.id.desc())
            .offset(skip)
            .limit(limit)
            .all()
        )

        by_conversation: dict[int, list[ConversationMessage]] = {conv.id: [] for conv in conversations}
        if conversations:
            message_query = db.query(ConversationMessage).filter(
                ConversationMessage.conversation_id.in_(list(by_conversation))
            )
            if not include_full_messages:
                # Positions are contiguous from zero, so this is the head of each log.
                message_query = message_query.filter(
                    ConversationMessage.position < config.CONVERSATION_PREVIEW_MESSAGES
                )
            for message in message_query.order_by(
                ConversationMessage.conversation_id, ConversationMessage.position
            ):
                by_conversation[message.conversation_id].append(message)

        return {
            "conversations": [
                _serialize_conversation(conv, by_conversation[conv.id]) for conv in conversations
            ],
            "total": total,
            "limit": limit,
            "skip": skip,
            "has_more": skip + len(conversations) < total,
        }
    finally:
        db.close()


@store_operation
def windowed_context(
    owner_id: str,
    day_window: int = config.CONTEXT_DAY_WINDOW,
    max_conversations: int = config.CONTEXT_MAX_CONVERSATIONS,
    max_messages: int = config.CONTEXT_MAX_MESSAGES,
    deadline: Optional[Deadline] = None,
) -> list[dict]:
    """
    Most recent messages across the owner's recent conversations.

    Picks at most max_conversations conversations started within day_window
    days (newest first), takes the max_messages newest messages across them
    and returns those in chronological order. Once the deadline passes, the
    partial result gathered so far is returned.
    """
    owner_id = require_owner_id(owner_id)
    validate_non_negative(day_window, "day_window")
    validate_limit(max_conversations, "max_conversations", config.MAX_RESULT_LIMIT)
    validate_limit(max_messages, "max_messages", config.MAX_RESULT_LIMIT)
    if deadline_expired(deadline):
        return []

    cutoff = utcnow() - timedelta(days=day_window)
    db = open_session()
    try:
        apply_statement_timeout(db, deadline)
        recent = (
            db.query(Conversation.id, Conversation.started_at)
            .filter(Conversation.owner_id == owner_id, Conversation.started_at >= cutoff)
            .order_by(Conversation.started_at.desc(), Conversation.id.desc())
            .limit(max_conversations)
            .all()
        )
        if not recent or deadline_expired(deadline):
            return []

        started_at = {row.id: row.started_at for row in recent}
        newest = (
            db.query(ConversationMessage)
            .filter(ConversationMessage.conversation_id.in_(list(started_at)))
            .order_by(
                ConversationMessage.timestamp.desc(),
                ConversationMessage.position.desc(),
                ConversationMessage.id.desc(),
            )
            .limit(max_messages)
            .all()
        )
        return [
            {
                "role": enum_value(message.role),
                "content": message.content,
                "timestamp": iso(message.timestamp),
                "conversation_date": iso(started_at[message.conversation_id]),
            }
            for message in reversed(newest)
        ]
    finally:
        db.close()


# =============================================================================
# Writes
# =============================================================================

def _create_conversation(db, owner_id: str, title: str, started_at: Optional[datetime]) -> Conversation:
    now = utcnow()
    conv = Conversation(
        owner_id=owner_id,
        title=title,
        summary="",
        topics=[],
        is_active=True,
        started_at=started_at or now,
        created_at=now,
        updated_at=now,
    )
    db.add(conv)
    db.flush()
    return conv


@store_operation
def start_conversation(
    owner_id: str,
    title: Optional[str] = None,
    started_at: Optional[datetime] = None,
) -> dict:
    owner_id = require_owner_id(owner_id)
    validate_optional_text(title, "title", config.MAX_TITLE_LENGTH)
    started_at = _naive_utc(started_at)

    db = open_session()
    try:
        conv = _create_conversation(db, owner_id, (title or "").strip() or DEFAULT_TITLE, started_at)
        db.commit()
        db.refresh(conv)
        logger.info("conversation_started", extra={"owner_id": owner_id, "conversation_id": conv.id})
        return _serialize_conversation(conv, [])
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def _insert_message(
    db,
    conversation_id: int,
    role: MessageRole,
    content: str,
    timestamp: datetime,
    audio_url: Optional[str],
    emotion: Optional[str],
    is_debate: bool,
    is_consensus: bool,
    reply_to: Optional[str],
    visual_context: Optional[dict],
) -> ConversationMessage:
    role_counter = getattr(Conversation, ROLE_COUNTER_COLUMNS[role])
    increments = {
        Conversation.total_messages: Conversation.total_messages + 1,
        role_counter: role_counter + 1,
        Conversation.updated_at: utcnow(),
    }
    if is_debate:
        increments[Conversation.debate_messages] = Conversation.debate_messages + 1
    if is_consensus:
        increments[Conversation.consensus_count] = Conversation.consensus_count + 1

    db.query(Conversation).filter(Conversation.id == conversation_id).update(
        increments, synchronize_session=False
    )
    total = (
        db.query(Conversation.total_messages)
        .filter(Conversation.id == conversation_id)
        .scalar()
    )
    message = ConversationMessage(
        conversation_id=conversation_id,
        position=total - 1,
        role=role,
        content=content,
        timestamp=timestamp,
        audio_url=audio_url,
        emotion=emotion,
        is_debate=bool(is_debate),
        is_consensus=bool(is_consensus),
        reply_to=reply_to,
        visual_context=visual_context,
    )
    db.add(message)
    db.flush()
    return message


@store_operation
def append_message(
    owner_id: str,
    conversation_id: int,
    role: str,
    content: str,
    timestamp: Optional[datetime] = None,
    audio_url: Optional[str] = None,
    emotion: Optional[str] = None,
    is_debate: bool = False,
    is_consensus: bool = False,
    reply_to: Optional[str] = None,
    visual_context: Optional[dict] = None,
) -> dict:
    """
    Append one message and bump the conversation counters in one transaction.

    Counters are incremented in SQL and the message position is taken from
    the incremented total, so counters always match the stored messages. A
    position collision rolls the whole transaction back and retries.
    """
    owner_id = require_owner_id(owner_id)
    role_value = parse_enum(MessageRole, role, "role")
    _validate_content(content)
    validate_optional_text(audio_url, "audio_url", 1000)
    validate_optional_text(emotion, "emotion", 50)
    validate_optional_text(reply_to, "reply_to", 20)
    validate_metadata(visual_context, "visual_context")
    timestamp = _naive_utc(timestamp) or utcnow()

    attempts = max(1, config.APPEND_RETRY_MAX)
    for attempt in range(attempts):
        db = open_session()
        try:
            _owned_conversation(db, owner_id, conversation_id)
            message = _insert_message(
                db,
                conversation_id,
                role_value,
                content,
                timestamp,
                audio_url,
                emotion,
                is_debate,
                is_consensus,
                reply_to,
                visual_context,
            )
            db.commit()
            return _serialize_message(message)
        except IntegrityError as exc:
            db.rollback()
            logger.info(
                "message_position_collision",
                extra={"conversation_id": conversation_id, "attempt": attempt + 1, "error": str(exc.orig)},
            )
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
    raise ConflictError(
        f"could not append message to conversation {conversation_id}",
        entity="conversation",
    )


def _todays_active_conversation_id(db, owner_id: str) -> Optional[int]:
    midnight = utcnow().replace(hour=0, minute=0, second=0, microsecond=0)
    row = (
        db.query(Conversation.id)
        .filter(
            Conversation.owner_id == owner_id,
            Conversation.is_active.is_(True),
            Conversation.started_at >= midnight,
        )
        .order_by(Conversation.started_at.desc(), Conversation.id.desc())
        .first()
    )
    return row.id if row else None


@store_operation
def sync_message(
    owner_id: str,
    role: str,
    content: str,
    conversation_id: Optional[int] = None,
    timestamp: Optional[datetime] = None,
    emotion: Optional[str] = None,
    audio_url: Optional[str] = None,
    is_debate: bool = False,
    is_consensus: bool = False,
    reply_to: Optional[str] = None,
    visual_context: Optional[dict] = None,
) -> dict:
    """
    Persist a live message without the client tracking conversation ids.

    The target is the given conversation when it exists for the owner, else
    the owner's active conversation started today (UTC), else a new one
    titled from the message.
    """
    owner_id = require_owner_id(owner_id)
    parse_enum(MessageRole, role, "role")
    _validate_content(content)
    timestamp = _naive_utc(timestamp)

    created = False
    db = open_session()
    try:
        target_id = None
        if conversation_id is not None:
            row = (
                db.query(Conversation.id)
                .filter(Conversation.id == conversation_id, Conversation.owner_id == owner_id)
                .first()
            )
            target_id = row.id if row else None
        if target_id is None:
            target_id = _todays_active_conversation_id(db, owner_id)
        if target_id is None:
            conv = _create_conversation(db, owner_id, _title_from_content(content), timestamp)
            db.commit()
            target_id = conv.id
            created = True
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()

    message = append_message(
        owner_id,
        target_id,
        role,
        content,
        timestamp=timestamp,
        audio_url=audio_url,
        emotion=emotion,
        is_debate=is_debate,
        is_consensus=is_consensus,
        reply_to=reply_to,
        visual_context=visual_context,
    )
    return {
        "status": "synced",
        "conversation_id": target_id,
        "created_conversation": created,
        "message": message,
    }


@store_operation
def end_conversation(owner_id: str, conversation_id: int) -> dict:
    """Close a conversation; closing twice keeps the first ended_at."""
    owner_id = require_owner_id(owner_id)
    db = open_session()
    try:
        conv = _owned_conversation(db, owner_id, conversation_id)
        if conv.is_active or conv.ended_at is None:
            conv.is_active = False
            conv.ended_at = conv.ended_at or utcnow()
            db.commit()
            db.refresh(conv)
        return _serialize_conversation(conv)
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@store_operation
def update_summary(
    owner_id: str,
    conversation_id: int,
    summary: Optional[str] = None,
    topics: Optional[List[str]] = None,
) -> dict:
    owner_id = require_owner_id(owner_id)
    validate_optional_text(summary, "summary", config.MAX_TEXT_LENGTH)
    validate_string_list(topics, "topics", config.MAX_LIST_ITEMS, config.MAX_LIST_ITEM_LENGTH)

    db = open_session()
    try:
        conv = _owned_conversation(db, owner_id, conversation_id)
        if summary is not None:
            conv.summary = summary
        if topics is not None:
            conv.topics = list(topics)
        db.commit()
        db.refresh(conv)
        return _serialize_conversation(conv)
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
