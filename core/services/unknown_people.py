"""
Unknown-person lifecycle services.

Names the user mentions that do not match a known person are tracked as
unknown people. The assistant periodically asks about the most-mentioned
ones (respecting a per-person cooldown) and, once the user answers,
promotes them into the person registry.

Lifecycle: unknown -> pending (asked) -> identified (promoted). Dismissal
hard-deletes the record from any state.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Callable, Iterable, Optional, List

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload

import core.config as config
from core.context import Deadline, deadline_expired, require_owner_id
from core.db import apply_statement_timeout, insert_if_absent
from core.errors import ConflictError, NotFoundError, ValidationIssue
from core.models import (
    ASKABLE_STATUSES,
    Person,
    PersonSource,
    UnknownPerson,
    UnknownPersonContext,
    UnknownPersonRelationship,
    UnknownPersonStatus,
    utcnow,
)
from core.services.people import bump_person_mention, match_person
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
    validate_optional_text,
    validate_required_text,
)

QuestionBuilder = Callable[[str, List[str], List[str]], str]

# Words that name-detection tends to return but that are not people.
NON_NAME_WORDS = frozenset({
    "mira", "mirror", "hey", "hi", "hello", "okay", "ok", "yes", "no", "yeah", "nope",
    "thanks", "thank", "please", "sorry", "sure", "maybe", "probably", "definitely",
    "today", "tomorrow", "yesterday",
    "monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday",
    "january", "february", "march", "april", "may", "june", "july", "august",
    "september", "october", "november", "december",
    "morning", "afternoon", "evening", "night", "noon",
    "google", "amazon", "apple", "microsoft", "facebook", "meta", "twitter", "instagram",
    "whatsapp", "uber", "lyft", "netflix", "spotify", "youtube", "tiktok",
    "india", "usa", "america", "china", "japan", "germany", "france", "uk", "england",
    "delhi", "mumbai", "bangalore", "chennai", "kolkata", "hyderabad", "pune", "ahmedabad",
    "new york", "los angeles", "chicago", "houston", "phoenix", "san francisco",
    "seattle", "boston",
})

UNKNOWN_RELATIONSHIP = "unknown"
MIN_NAME_LENGTH = 2


def normalize_label(label: str) -> str:
    return " ".join(label.split()).lower()


def _serialize_unknown_person(record: UnknownPerson) -> dict:
    return {
        "id": record.id,
        "name": record.name,
        "normalized_name": record.normalized_name,
        "mention_count": record.mention_count,
        "first_mentioned_at": iso(record.first_mentioned_at),
        "last_mentioned_at": iso(record.last_mentioned_at),
        "asked_count": record.asked_count,
        "last_asked_at": iso(record.last_asked_at),
        "status": enum_value(record.status),
        "linked_person_id": record.linked_person_id,
        "contexts": [ctx.snippet for ctx in record.contexts],
        "relationships": [rel.relationship for rel in record.relationships],
    }


def _with_children(query):
    return query.options(
        selectinload(UnknownPerson.contexts),
        selectinload(UnknownPerson.relationships),
    )


def _owned_unknown_person(db, owner_id: str, unknown_person_id: int) -> UnknownPerson:
    record = _with_children(
        db.query(UnknownPerson).filter(
            UnknownPerson.id == unknown_person_id,
            UnknownPerson.owner_id == owner_id,
        )
    ).first()
    if record is None:
        raise NotFoundError("unknown_person", unknown_person_id)
    return record


QUESTION_SNIPPET_LENGTH = 80


def _snippet_clause(snippets: List[str]) -> str:
    latest = snippets[-1].strip() if snippets else ""
    if not latest:
        return ""
    if len(latest) > QUESTION_SNIPPET_LENGTH:
        latest = latest[: QUESTION_SNIPPET_LENGTH - 3] + "..."
    return f' (You said: "{latest}")'


def default_question(name: str, relationships: List[str], snippets: List[str], mention_count: int = 1) -> str:
    """Template question; quotes the most recent snippet when there is one."""
    if relationships:
        question = f"I noticed you mentioned {name} recently. Are they a {relationships[0]}?"
    elif mention_count > 1:
        question = f"I've heard you mention {name} {mention_count} times. Who is {name}?"
    else:
        question = f"By the way, who is {name}? You've mentioned them before."
    return question + _snippet_clause(snippets)


# =============================================================================
# Mentions
# =============================================================================

def _trim_contexts(db, unknown_person_id: int) -> None:
    stale = [
        row.id
        for row in db.query(UnknownPersonContext.id)
        .filter(UnknownPersonContext.unknown_person_id == unknown_person_id)
        .order_by(UnknownPersonContext.id.desc())
        .offset(config.UNKNOWN_PERSON_MAX_CONTEXTS)
    ]
    if stale:
        db.query(UnknownPersonContext).filter(UnknownPersonContext.id.in_(stale)).delete(
            synchronize_session=False
        )


@store_operation
def record_mention(
    owner_id: str,
    label: str,
    context_snippet: Optional[str] = None,
    hypothesized_relationship: Optional[str] = None,
) -> dict:
    """
    Record one mention of an unrecognised name.

    Labels are matched case- and whitespace-insensitively per owner. The
    record is created with an insert-if-absent so concurrent first mentions
    converge on a single row; the mention counter is then bumped in SQL.
    """
    owner_id = require_owner_id(owner_id)
    validate_required_text(label, "label", config.MAX_SHORT_TEXT_LENGTH)
    validate_optional_text(context_snippet, "context_snippet", config.MAX_TEXT_LENGTH)
    validate_optional_text(hypothesized_relationship, "hypothesized_relationship", 100)

    name = " ".join(label.split())
    normalized = normalize_label(label)
    now = utcnow()

    db = open_session()
    try:
        created = insert_if_absent(
            db,
            UnknownPerson,
            {
                "owner_id": owner_id,
                "name": name,
                "normalized_name": normalized,
                "mention_count": 0,
                "first_mentioned_at": now,
                "last_mentioned_at": now,
                "asked_count": 0,
                "status": UnknownPersonStatus.unknown,
                "created_at": now,
                "updated_at": now,
            },
            ["owner_id", "normalized_name"],
        )
        (
            db.query(UnknownPerson)
            .filter(UnknownPerson.owner_id == owner_id, UnknownPerson.normalized_name == normalized)
            .update(
                {
                    UnknownPerson.mention_count: UnknownPerson.mention_count + 1,
                    UnknownPerson.last_mentioned_at: now,
                    UnknownPerson.updated_at: now,
                },
                synchronize_session=False,
            )
        )
        record_id = (
            db.query(UnknownPerson.id)
            .filter(UnknownPerson.owner_id == owner_id, UnknownPerson.normalized_name == normalized)
            .scalar()
        )

        snippet = (context_snippet or "").strip()
        if snippet:
            db.add(UnknownPersonContext(
                unknown_person_id=record_id,
                snippet=snippet[: config.UNKNOWN_PERSON_SNIPPET_LENGTH],
                created_at=now,
            ))
            db.flush()
            _trim_contexts(db, record_id)

        relationship = (hypothesized_relationship or "").strip()
        if relationship and relationship.lower() != UNKNOWN_RELATIONSHIP:
            insert_if_absent(
                db,
                UnknownPersonRelationship,
                {"unknown_person_id": record_id, "relationship": relationship, "created_at": now},
                ["unknown_person_id", "relationship"],
            )

        db.commit()
        record = _owned_unknown_person(db, owner_id, record_id)
        payload = _serialize_unknown_person(record)
        payload["created"] = created
        if created:
            logger.info("unknown_person_created", extra={"owner_id": owner_id, "unknown_person_id": record_id})
        return payload
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def _clean_detection(detection: dict) -> Optional[dict]:
    if not isinstance(detection, dict):
        raise ValidationIssue("detections must be objects", field="detections", error_type="invalid_type")
    name = detection.get("name")
    if not isinstance(name, str):
        return None
    name = " ".join(name.split())
    if len(name) < MIN_NAME_LENGTH or name.lower() in NON_NAME_WORDS:
        return None
    return {
        "name": name,
        "context": detection.get("context") or "",
        "possible_relationship": detection.get("possible_relationship"),
    }


@store_operation
def process_detected_names(owner_id: str, detections: Iterable[dict]) -> dict:
    """
    Route names detected in a message.

    Known people (by name or alias) get a mention bump; everything else is
    recorded as an unknown-person mention. Stop-list words and very short
    names are ignored.
    """
    owner_id = require_owner_id(owner_id)
    if isinstance(detections, (str, bytes)) or detections is None:
        raise ValidationIssue("detections must be a list", field="detections", error_type="invalid_type")
    cleaned = [item for item in (_clean_detection(d) for d in detections) if item]
    if len(cleaned) > config.MAX_LIST_ITEMS:
        raise ValidationIssue(
            f"detections exceeds max items {config.MAX_LIST_ITEMS}",
            field="detections",
            error_type="max_items",
        )

    result = {"known_people": [], "new_unknown_people": [], "updated_unknown_people": []}
    for detection in cleaned:
        db = open_session()
        try:
            person = match_person(db, owner_id, detection["name"])
            if person is not None:
                bump_person_mention(db, owner_id, person.id)
                db.commit()
                result["known_people"].append(person.name)
                continue
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        recorded = record_mention(
            owner_id,
            detection["name"],
            detection["context"],
            detection["possible_relationship"],
        )
        bucket = "new_unknown_people" if recorded["created"] else "updated_unknown_people"
        result[bucket].append(recorded["name"])
    return result


# =============================================================================
# Asking
# =============================================================================

@store_operation
def candidates_to_ask(
    owner_id: str,
    max_candidates: int = config.ASK_MAX_CANDIDATES,
    cooldown_hours: Optional[float] = None,
    question_builder: Optional[QuestionBuilder] = None,
    deadline: Optional[Deadline] = None,
) -> list[dict]:
    """
    Unknown people worth asking about now, each paired with a question.

    Eligible records are not yet identified, have enough mentions and were
    never asked or last asked before the cooldown window. Most-mentioned
    first, then most recently mentioned.
    """
    owner_id = require_owner_id(owner_id)
    validate_limit(max_candidates, "max_candidates", config.MAX_RESULT_LIMIT)
    if cooldown_hours is None:
        cooldown_hours = config.ASK_COOLDOWN_HOURS
    if isinstance(cooldown_hours, bool) or not isinstance(cooldown_hours, (int, float)) or cooldown_hours < 0:
        raise ValidationIssue(
            "cooldown_hours must be a non-negative number",
            field="cooldown_hours",
            error_type="out_of_range",
        )
    if deadline_expired(deadline):
        return []

    cutoff = utcnow() - timedelta(hours=cooldown_hours)
    db = open_session()
    try:
        apply_statement_timeout(db, deadline)
        records = _with_children(
            db.query(UnknownPerson).filter(
                UnknownPerson.owner_id == owner_id,
                UnknownPerson.status.in_(ASKABLE_STATUSES),
                UnknownPerson.mention_count >= config.ASK_MIN_MENTIONS,
                or_(UnknownPerson.last_asked_at.is_(None), UnknownPerson.last_asked_at <= cutoff),
            )
        ).order_by(
            UnknownPerson.mention_count.desc(),
            UnknownPerson.last_mentioned_at.desc(),
            UnknownPerson.id.asc(),
        ).limit(max_candidates).all()

        candidates = []
        for record in records:
            person = _serialize_unknown_person(record)
            if question_builder is not None:
                question = question_builder(person["name"], person["relationships"], person["contexts"])
            else:
                question = default_question(
                    person["name"], person["relationships"], person["contexts"], person["mention_count"]
                )
            candidates.append({"person": person, "question": question})
        return candidates
    finally:
        db.close()


@store_operation
def mark_asked(owner_id: str, unknown_person_id: int) -> dict:
    """Record that the user was asked. Identified records are left untouched."""
    owner_id = require_owner_id(owner_id)
    db = open_session()
    try:
        record = _owned_unknown_person(db, owner_id, unknown_person_id)
        status = parse_enum(UnknownPersonStatus, record.status, "status")
        if status.can_transition_to(UnknownPersonStatus.pending):
            now = utcnow()
            (
                db.query(UnknownPerson)
                .filter(
                    UnknownPerson.id == unknown_person_id,
                    UnknownPerson.status.in_(ASKABLE_STATUSES),
                )
                .update(
                    {
                        UnknownPerson.status: UnknownPersonStatus.pending,
                        UnknownPerson.last_asked_at: now,
                        UnknownPerson.asked_count: UnknownPerson.asked_count + 1,
                        UnknownPerson.updated_at: now,
                    },
                    synchronize_session=False,
                )
            )
            db.commit()
            record = _owned_unknown_person(db, owner_id, unknown_person_id)
        return _serialize_unknown_person(record)
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


# =============================================================================
# Resolution
# =============================================================================

def _merge_into_person(
    db,
    person: Person,
    record: UnknownPerson,
    description: str,
    relationship: Optional[str],
    hypotheses: List[str],
) -> None:
    """Fold an identified record into a person the owner already knows."""
    values = {
        Person.mention_count: Person.mention_count + record.mention_count,
        Person.updated_at: utcnow(),
    }
    current = person.description or ""
    if description.lower() not in current.lower():
        values[Person.description] = f"{current}\n{description}" if current else description
    if not person.relationship and relationship:
        values[Person.relationship] = relationship
    tags = list(person.tags or [])
    merged_tags = tags + [tag for tag in hypotheses if tag not in tags]
    if merged_tags != tags:
        values[Person.tags] = merged_tags
    if person.last_mentioned_at is None or record.last_mentioned_at > person.last_mentioned_at:
        values[Person.last_mentioned_at] = record.last_mentioned_at
    if person.source_unknown_person_id is None:
        values[Person.source_unknown_person_id] = record.id

    db.query(Person).filter(Person.id == person.id).update(values, synchronize_session=False)

@store_operation
def identify(
    owner_id: str,
    unknown_person_id: int,
    description: str,
    relationship: Optional[str] = None,
) -> int:
    """
    Promote an unknown person into the person registry.

    Creating the person and marking the record identified happen in one
    transaction. The person carries source_unknown_person_id, which is unique
    per owner, so a retried or concurrent identify converges on one person.
    When the owner already knows someone by that name or alias, the record is
    merged into that person instead of creating another one.

    Returns:
        The id of the promoted person.
    """
    owner_id = require_owner_id(owner_id)
    validate_required_text(description, "description", config.MAX_TEXT_LENGTH)
    validate_optional_text(relationship, "relationship", 100)

    attempts = max(1, config.IDENTIFY_RETRY_MAX)
    for attempt in range(attempts):
        db = open_session()
        try:
            record = _owned_unknown_person(db, owner_id, unknown_person_id)
            status = parse_enum(UnknownPersonStatus, record.status, "status")
            if not status.can_transition_to(UnknownPersonStatus.identified):
                raise NotFoundError("unknown_person", unknown_person_id)

            person = (
                db.query(Person)
                .filter(Person.owner_id == owner_id, Person.source_unknown_person_id == record.id)
                .first()
            )
            hypotheses = [rel.relationship for rel in record.relationships]
            chosen = (relationship or "").strip() or (hypotheses[0] if hypotheses else None)
            if person is None:
                person = match_person(db, owner_id, record.name)
                if person is not None:
                    _merge_into_person(db, person, record, description.strip(), chosen, hypotheses)
            if person is None:
                person = Person(
                    owner_id=owner_id,
                    name=record.name,
                    aliases=[],
                    description=description.strip(),
                    relationship=chosen,
                    tags=hypotheses,
                    mention_count=record.mention_count,
                    last_mentioned_at=record.last_mentioned_at,
                    is_fully_accounted=True,
                    source=PersonSource.detected,
                    source_unknown_person_id=record.id,
                )
                db.add(person)
                db.flush()
            person_id = person.id

            promoted = (
                db.query(UnknownPerson)
                .filter(
                    UnknownPerson.id == record.id,
                    UnknownPerson.status != UnknownPersonStatus.identified,
                )
                .update(
                    {
                        UnknownPerson.status: UnknownPersonStatus.identified,
                        UnknownPerson.linked_person_id: person_id,
                        UnknownPerson.updated_at: utcnow(),
                    },
                    synchronize_session=False,
                )
            )
            if not promoted:
                raise NotFoundError("unknown_person", unknown_person_id)
            db.commit()
            logger.info(
                "unknown_person_identified",
                extra={"owner_id": owner_id, "unknown_person_id": unknown_person_id, "person_id": person_id},
            )
            return person_id
        except IntegrityError as exc:
            db.rollback()
            logger.info(
                "identify_conflict_retry",
                extra={"unknown_person_id": unknown_person_id, "attempt": attempt + 1, "error": str(exc.orig)},
            )
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
    raise ConflictError(
        f"could not identify unknown person {unknown_person_id}",
        entity="unknown_person",
    )


@store_operation
def dismiss(owner_id: str, unknown_person_id: int) -> dict:
    """Hard delete the record with its snippets and relationship hypotheses."""
    owner_id = require_owner_id(owner_id)
    db = open_session()
    try:
        record = _owned_unknown_person(db, owner_id, unknown_person_id)
        db.delete(record)
        db.commit()
        logger.info("unknown_person_dismissed", extra={"owner_id": owner_id, "unknown_person_id": unknown_person_id})
        return {"status": "dismissed", "id": unknown_person_id}
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


# =============================================================================
# Reads
# =============================================================================

@store_operation
def list_unknown_people(
    owner_id: str,
    status: Optional[str] = UnknownPersonStatus.unknown.value,
    limit: int = config.UNKNOWN_PERSON_LIST_LIMIT,
) -> list[dict]:
    owner_id = require_owner_id(owner_id)
    status_value = parse_enum(UnknownPersonStatus, status, "status") if status is not None else None
    validate_limit(limit, "limit", config.MAX_RESULT_LIMIT)

    db = open_session()
    try:
        query = db.query(UnknownPerson).filter(UnknownPerson.owner_id == owner_id)
        if status_value is not None:
            query = query.filter(UnknownPerson.status == status_value)
        records = _with_children(query).order_by(
            UnknownPerson.mention_count.desc(),
            UnknownPerson.last_mentioned_at.desc(),
            UnknownPerson.id.asc(),
        ).limit(limit).all()
        return [_serialize_unknown_person(record) for record in records]
    finally:
        db.close()


@store_operation
def get_unknown_person(owner_id: str, unknown_person_id: int) -> dict:
    owner_id = require_owner_id(owner_id)
    db = open_session()
    try:
        return _serialize_unknown_person(_owned_unknown_person(db, owner_id, unknown_person_id))
    finally:
        db.close()
