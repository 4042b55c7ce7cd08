"""
Instruction repository services.

Instructions are durable personalization rules (how to address the user,
response style, corrections, ...). Active instructions are rendered into a
single prompt block on every assistant turn.
"""

from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Iterable, Optional, List, Sequence

from sqlalchemy import case, func

import core.config as config
from core.context import Deadline, deadline_expired, require_owner_id
from core.db import apply_statement_timeout
from core.errors import ConflictError, NotFoundError
from core.models import (
    CATEGORY_LABELS,
    Conversation,
    Instruction,
    InstructionCategory,
    InstructionSource,
    utcnow,
)
from core.services.shared import (
    embed_or_none,
    enum_value,
    iso,
    logger,
    open_session,
    store_operation,
)
from core.validators import (
    parse_category,
    parse_enum,
    validate_confidence,
    validate_limit,
    validate_optional_text,
    validate_priority,
    validate_required_text,
    validate_string_list,
)

BLOCK_HEADER = "=== USER CUSTOMIZATIONS & INSTRUCTIONS (FOLLOW STRICTLY) ==="
BLOCK_FOOTER = "=== END USER CUSTOMIZATIONS ==="
HIGH_PRIORITY_MARKER = "[HIGH PRIORITY]"

_applied_executor: Optional[ThreadPoolExecutor] = None
_executor_lock = threading.Lock()


def _serialize_instruction(inst: Instruction) -> dict:
    return {
        "id": inst.id,
        "category": enum_value(inst.category),
        "instruction": inst.instruction,
        "original_context": inst.original_context,
        "priority": inst.priority,
        "is_active": inst.is_active,
        "source": enum_value(inst.source),
        "confidence": inst.confidence,
        "tags": list(inst.tags or []),
        "applied_count": inst.applied_count,
        "last_applied": iso(inst.last_applied),
        "conversation_id": inst.conversation_id,
        "superseded_by_id": inst.superseded_by_id,
        "created_at": iso(inst.created_at),
        "updated_at": iso(inst.updated_at),
    }


def _owned_instruction(db, owner_id: str, instruction_id: int) -> Instruction:
    inst = (
        db.query(Instruction)
        .filter(Instruction.id == instruction_id, Instruction.owner_id == owner_id)
        .first()
    )
    if inst is None:
        raise NotFoundError("instruction", instruction_id)
    return inst


def _require_owned_conversation(db, owner_id: str, conversation_id: Optional[int]) -> None:
    if conversation_id is None:
        return
    exists = (
        db.query(Conversation.id)
        .filter(Conversation.id == conversation_id, Conversation.owner_id == owner_id)
        .first()
    )
    if exists is None:
        raise NotFoundError("conversation", conversation_id)


def _validate_instruction_fields(
    instruction: str,
    original_context: Optional[str],
    priority: int,
    confidence: float,
    tags: Optional[List[str]],
) -> None:
    validate_required_text(instruction, "instruction", config.MAX_TEXT_LENGTH)
    validate_optional_text(original_context, "original_context", config.MAX_TEXT_LENGTH)
    validate_priority(priority)
    validate_confidence(confidence, "confidence")
    validate_string_list(tags, "tags", config.MAX_LIST_ITEMS, config.MAX_LIST_ITEM_LENGTH)


# =============================================================================
# Reads
# =============================================================================

@store_operation
def get_active_instructions(
    owner_id: str,
    category: Optional[str] = None,
    min_priority: Optional[int] = None,
    limit: int = config.INSTRUCTION_LIMIT_DEFAULT,
    deadline: Optional[Deadline] = None,
) -> list[dict]:
    """Active instructions ordered by priority (desc), then newest first."""
    owner_id = require_owner_id(owner_id)
    category_value = parse_category(category) if category is not None else None
    if min_priority is not None:
        validate_priority(min_priority)
    validate_limit(limit, "limit", config.MAX_RESULT_LIMIT)
    if deadline_expired(deadline):
        return []

    db = open_session()
    try:
        apply_statement_timeout(db, deadline)
        query = db.query(Instruction).filter(
            Instruction.owner_id == owner_id,
            Instruction.is_active.is_(True),
        )
        if category_value is not None:
            query = query.filter(Instruction.category == category_value)
        if min_priority is not None:
            query = query.filter(Instruction.priority >= min_priority)
        rows = (
            query.order_by(
                Instruction.priority.desc(),
                Instruction.created_at.desc(),
                Instruction.id.desc(),
            )
            .limit(limit)
            .all()
        )
        return [_serialize_instruction(row) for row in rows]
    finally:
        db.close()


@store_operation
def get_instruction(owner_id: str, instruction_id: int) -> dict:
    owner_id = require_owner_id(owner_id)
    db = open_session()
    try:
        return _serialize_instruction(_owned_instruction(db, owner_id, instruction_id))
    finally:
        db.close()


def list_instructions_grouped(
    owner_id: str,
    category: Optional[str] = None,
    limit: int = config.INSTRUCTION_LIMIT_DEFAULT,
) -> dict:
    """Active instructions plus the same list grouped by category in render order."""
    instructions = get_active_instructions(owner_id, category=category, limit=limit)
    grouped: dict[str, list[dict]] = {}
    for category_value in InstructionCategory:
        members = [item for item in instructions if item["category"] == category_value.value]
        if members:
            grouped[category_value.value] = members
    return {
        "instructions": instructions,
        "grouped": grouped,
        "total": len(instructions),
    }


def format_instruction_block(instructions: Sequence[Instruction]) -> str:
    """
    Render active instructions into the prompt block injected on each turn.

    Groups follow the fixed editorial category order; inside a group the
    highest priority comes first, ties broken newest-first. No instructions
    renders as the empty string so callers never inject an empty wrapper.
    """
    if not instructions:
        return ""

    grouped: dict[InstructionCategory, list[Instruction]] = {}
    for inst in instructions:
        grouped.setdefault(parse_category(inst.category), []).append(inst)

    lines = [BLOCK_HEADER]
    for category in InstructionCategory:
        members = grouped.get(category)
        if not members:
            continue
        members = sorted(
            members,
            key=lambda item: (item.priority, item.created_at, item.id),
            reverse=True,
        )
        lines.append("")
        lines.append(f"{CATEGORY_LABELS[category]}:")
        for inst in members:
            marker = f"{HIGH_PRIORITY_MARKER} " if inst.priority >= config.INSTRUCTION_HIGH_PRIORITY else ""
            lines.append(f"{marker}- {inst.instruction}")
    lines.append("")
    lines.append(BLOCK_FOOTER)
    return "\n".join(lines) + "\n"


@store_operation
def render_context(owner_id: str, deadline: Optional[Deadline] = None) -> tuple[str, list[int]]:
    """Render the instruction block and report which instruction ids it includes."""
    owner_id = require_owner_id(owner_id)
    if deadline_expired(deadline):
        return "", []

    db = open_session()
    try:
        apply_statement_timeout(db, deadline)
        rows = (
            db.query(Instruction)
            .filter(
                Instruction.owner_id == owner_id,
                Instruction.is_active.is_(True),
            )
            .order_by(Instruction.priority.desc(), Instruction.category.asc())
            .all()
        )
        return format_instruction_block(rows), [row.id for row in rows]
    finally:
        db.close()


def render_context_block(owner_id: str, deadline: Optional[Deadline] = None) -> str:
    text, _ = render_context(owner_id, deadline=deadline)
    return text


# =============================================================================
# Applied tracking
# =============================================================================

@store_operation
def record_applied(instruction_id: int) -> bool:
    """Bump applied_count and last_applied for one instruction."""
    return record_applied_many([instruction_id]) == 1


@store_operation
def record_applied_many(instruction_ids: Iterable[int]) -> int:
    ids = sorted(set(instruction_ids))
    if not ids:
        return 0
    db = open_session()
    try:
        updated = (
            db.query(Instruction)
            .filter(Instruction.id.in_(ids))
            .update(
                {
                    Instruction.applied_count: Instruction.applied_count + 1,
                    Instruction.last_applied: utcnow(),
                },
                synchronize_session=False,
            )
        )
        db.commit()
        return updated
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def _get_applied_executor() -> ThreadPoolExecutor:
    global _applied_executor
    with _executor_lock:
        if _applied_executor is None:
            _applied_executor = ThreadPoolExecutor(
                max_workers=max(1, config.APPLIED_TRACKING_WORKERS),
                thread_name_prefix="applied-tracking",
            )
        return _applied_executor


def _record_applied_quietly(instruction_ids: list[int]) -> int:
    try:
        return record_applied_many(instruction_ids)
    except Exception as exc:
        logger.warning(
            "instruction_applied_tracking_failed",
            extra={"instruction_ids": instruction_ids, "error": str(exc)},
            exc_info=True,
        )
        return 0


def schedule_applied_tracking(instruction_ids: Iterable[int]) -> Optional[Future]:
    """Record applied instructions in the background; never blocks the caller."""
    ids = list(instruction_ids)
    if not ids:
        return None
    try:
        return _get_applied_executor().submit(_record_applied_quietly, ids)
    except RuntimeError as exc:
        logger.warning(
            "instruction_applied_tracking_not_scheduled",
            extra={"instruction_ids": ids, "error": str(exc)},
        )
        return None


def shutdown_applied_tracking(wait: bool = True) -> None:
    global _applied_executor
    with _executor_lock:
        executor = _applied_executor
        _applied_executor = None
    if executor is not None:
        executor.shutdown(wait=wait)


# =============================================================================
# Writes
# =============================================================================

@store_operation
def create_instruction(
    owner_id: str,
    category: str,
    instruction: str,
    original_context: Optional[str] = None,
    priority: int = 5,
    source: str = "explicit",
    confidence: float = 1.0,
    tags: Optional[List[str]] = None,
    conversation_id: Optional[int] = None,
) -> dict:
    """
    Store a new instruction, merging with a near-duplicate when one exists.

    A near-duplicate is an active instruction in the same category whose text
    contains the first characters of the new one (case-insensitive). It only
    has its priority raised, with confidence taken as the larger of the two,
    when the new priority is higher.

    Returns:
        {"status": "created" | "updated", "instruction": {...}}
    """
    owner_id = require_owner_id(owner_id)
    category_value = parse_category(category)
    source_value = parse_enum(InstructionSource, source, "source")
    _validate_instruction_fields(instruction, original_context, priority, confidence, tags)

    text = instruction.strip()
    prefix = text[: config.INSTRUCTION_DEDUP_PREFIX].lower()

    db = open_session()
    try:
        _require_owned_conversation(db, owner_id, conversation_id)
        existing = (
            db.query(Instruction)
            .filter(
                Instruction.owner_id == owner_id,
                Instruction.category == category_value,
                Instruction.is_active.is_(True),
                func.lower(Instruction.instruction).contains(prefix, autoescape=True),
            )
            .order_by(Instruction.priority.desc(), Instruction.id.asc())
            .first()
        )
        if existing is not None:
            if priority > existing.priority:
                (
                    db.query(Instruction)
                    .filter(Instruction.id == existing.id, Instruction.priority < priority)
                    .update(
                        {
                            Instruction.priority: priority,
                            Instruction.confidence: case(
                                (Instruction.confidence < float(confidence), float(confidence)),
                                else_=Instruction.confidence,
                            ),
                        },
                        synchronize_session=False,
                    )
                )
                db.commit()
                db.refresh(existing)
            return {"status": "updated", "instruction": _serialize_instruction(existing)}

        inst = Instruction(
            owner_id=owner_id,
            category=category_value,
            instruction=text,
            original_context=original_context,
            priority=priority,
            source=source_value,
            confidence=float(confidence),
            tags=list(tags or []),
            conversation_id=conversation_id,
            embedding=embed_or_none(text),
        )
        db.add(inst)
        db.commit()
        db.refresh(inst)
        logger.info(
            "instruction_created",
            extra={"owner_id": owner_id, "instruction_id": inst.id, "category": category_value.value},
        )
        return {"status": "created", "instruction": _serialize_instruction(inst)}
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@store_operation
def supersede_instruction(
    owner_id: str,
    old_instruction_id: int,
    instruction: str,
    category: Optional[str] = None,
    priority: Optional[int] = None,
    original_context: Optional[str] = None,
    confidence: float = 1.0,
    tags: Optional[List[str]] = None,
    conversation_id: Optional[int] = None,
) -> dict:
    """
    Replace an instruction the user explicitly contradicted.

    The old record is deactivated (never deleted) and linked to a new record
    with source=correction. Category and priority default to the old record's.
    """
    owner_id = require_owner_id(owner_id)
    category_value = parse_category(category) if category is not None else None

    db = open_session()
    try:
        old = _owned_instruction(db, owner_id, old_instruction_id)
        if not old.is_active:
            raise ConflictError(
                f"instruction {old_instruction_id} is no longer active",
                entity="instruction",
            )
        new_priority = priority if priority is not None else old.priority
        _validate_instruction_fields(instruction, original_context, new_priority, confidence, tags)
        _require_owned_conversation(db, owner_id, conversation_id)

        text = instruction.strip()
        replacement = Instruction(
            owner_id=owner_id,
            category=category_value or old.category,
            instruction=text,
            original_context=original_context,
            priority=new_priority,
            source=InstructionSource.correction,
            confidence=float(confidence),
            tags=list(tags or []),
            conversation_id=conversation_id,
            embedding=embed_or_none(text),
        )
        db.add(replacement)
        db.flush()

        deactivated = (
            db.query(Instruction)
            .filter(Instruction.id == old.id, Instruction.is_active.is_(True))
            .update(
                {Instruction.is_active: False, Instruction.superseded_by_id: replacement.id},
                synchronize_session=False,
            )
        )
        if deactivated != 1:
            db.rollback()
            raise ConflictError(
                f"instruction {old_instruction_id} was superseded concurrently",
                entity="instruction",
            )
        db.commit()
        db.refresh(replacement)
        logger.info(
            "instruction_superseded",
            extra={"owner_id": owner_id, "old_id": old_instruction_id, "new_id": replacement.id},
        )
        return {
            "status": "superseded",
            "superseded_id": old_instruction_id,
            "instruction": _serialize_instruction(replacement),
        }
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@store_operation
def update_instruction_priority(owner_id: str, instruction_id: int, priority: int) -> dict:
    owner_id = require_owner_id(owner_id)
    validate_priority(priority)
    db = open_session()
    try:
        inst = _owned_instruction(db, owner_id, instruction_id)
        inst.priority = priority
        db.commit()
        db.refresh(inst)
        return _serialize_instruction(inst)
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@store_operation
def deactivate_instruction(owner_id: str, instruction_id: int) -> dict:
    """Soft delete: the record stays for history but is never rendered again."""
    owner_id = require_owner_id(owner_id)
    db = open_session()
    try:
        inst = _owned_instruction(db, owner_id, instruction_id)
        inst.is_active = False
        db.commit()
        return {"status": "deactivated", "id": instruction_id}
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
