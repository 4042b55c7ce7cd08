"""
Person registry services.
"""

from __future__ import annotations

from typing import Optional, List

from sqlalchemy import func, or_

import core.config as config
from core.context import require_owner_id
from core.errors import ConflictError, NotFoundError, ValidationIssue
from core.models import Person, PersonSource, utcnow
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
    validate_string_list,
)


def serialize_person(person: Person) -> dict:
    return {
        "id": person.id,
        "name": person.name,
        "aliases": list(person.aliases or []),
        "description": person.description,
        "relationship": person.relationship,
        "tags": list(person.tags or []),
        "voice_embedding_id": person.voice_embedding_id,
        "mention_count": person.mention_count,
        "last_mentioned_at": iso(person.last_mentioned_at),
        "is_fully_accounted": person.is_fully_accounted,
        "source": enum_value(person.source),
        "source_unknown_person_id": person.source_unknown_person_id,
        "created_at": iso(person.created_at),
        "updated_at": iso(person.updated_at),
    }


def _owned_person(db, owner_id: str, person_id: int) -> Person:
    person = (
        db.query(Person)
        .filter(Person.id == person_id, Person.owner_id == owner_id)
        .first()
    )
    if person is None:
        raise NotFoundError("person", person_id)
    return person


def match_person(db, owner_id: str, name: str) -> Optional[Person]:
    """Case-insensitive match on a person's name, then on any alias."""
    lowered = name.strip().lower()
    if not lowered:
        return None
    person = (
        db.query(Person)
        .filter(Person.owner_id == owner_id, func.lower(Person.name) == lowered)
        .order_by(Person.id.asc())
        .first()
    )
    if person is not None:
        return person
    # Aliases live in a JSON list; scan the owner's people that carry any.
    for candidate in db.query(Person).filter(Person.owner_id == owner_id).order_by(Person.id.asc()):
        if any(alias.strip().lower() == lowered for alias in (candidate.aliases or [])):
            return candidate
    return None


@store_operation
def create_person(
    owner_id: str,
    name: str,
    description: str,
    relationship: Optional[str] = None,
    aliases: Optional[List[str]] = None,
    tags: Optional[List[str]] = None,
    source: str = "manual",
) -> dict:
    owner_id = require_owner_id(owner_id)
    validate_required_text(name, "name", config.MAX_SHORT_TEXT_LENGTH)
    validate_required_text(description, "description", config.MAX_TEXT_LENGTH)
    validate_optional_text(relationship, "relationship", 100)
    validate_string_list(aliases, "aliases", config.MAX_LIST_ITEMS, config.MAX_LIST_ITEM_LENGTH)
    validate_string_list(tags, "tags", config.MAX_LIST_ITEMS, config.MAX_LIST_ITEM_LENGTH)
    source_value = parse_enum(PersonSource, source, "source")

    db = open_session()
    try:
        clean_name = name.strip()
        duplicate = (
            db.query(Person.id)
            .filter(Person.owner_id == owner_id, func.lower(Person.name) == clean_name.lower())
            .first()
        )
        if duplicate is not None:
            raise ConflictError(f"person already exists: {clean_name}", entity="person")

        person = Person(
            owner_id=owner_id,
            name=clean_name,
            aliases=[alias.strip() for alias in (aliases or []) if alias.strip()],
            description=description.strip(),
            relationship=relationship.strip() if relationship else None,
            tags=list(tags or []),
            mention_count=1,
            last_mentioned_at=utcnow(),
            is_fully_accounted=True,
            source=source_value,
        )
        db.add(person)
        db.commit()
        db.refresh(person)
        logger.info("person_created", extra={"owner_id": owner_id, "person_id": person.id})
        return serialize_person(person)
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@store_operation
def get_person(owner_id: str, person_id: int) -> dict:
    owner_id = require_owner_id(owner_id)
    db = open_session()
    try:
        return serialize_person(_owned_person(db, owner_id, person_id))
    finally:
        db.close()


@store_operation
def find_person_by_name(owner_id: str, name: str) -> Optional[dict]:
    owner_id = require_owner_id(owner_id)
    validate_required_text(name, "name", config.MAX_SHORT_TEXT_LENGTH)
    db = open_session()
    try:
        person = match_person(db, owner_id, name)
        return serialize_person(person) if person else None
    finally:
        db.close()


@store_operation
def list_people(
    owner_id: str,
    search: Optional[str] = None,
    limit: int = 50,
) -> list[dict]:
    owner_id = require_owner_id(owner_id)
    validate_optional_text(search, "search", config.MAX_SHORT_TEXT_LENGTH)
    validate_limit(limit, "limit", config.MAX_RESULT_LIMIT)

    db = open_session()
    try:
        query = db.query(Person).filter(Person.owner_id == owner_id)
        if search and search.strip():
            pattern = search.strip()
            query = query.filter(
                or_(
                    Person.name.icontains(pattern, autoescape=True),
                    Person.description.icontains(pattern, autoescape=True),
                    Person.relationship.icontains(pattern, autoescape=True),
                )
            )
        people = (
            query.order_by(Person.mention_count.desc(), Person.name.asc())
            .limit(limit)
            .all()
        )
        return [serialize_person(person) for person in people]
    finally:
        db.close()


@store_operation
def update_person(
    owner_id: str,
    person_id: int,
    description: Optional[str] = None,
    relationship: Optional[str] = None,
    aliases: Optional[List[str]] = None,
    tags: Optional[List[str]] = None,
) -> dict:
    """Correct what is known about a person. Fields left as None are kept."""
    owner_id = require_owner_id(owner_id)
    if description is None and relationship is None and aliases is None and tags is None:
        raise ValidationIssue("nothing to update", field="body", error_type="required")
    if description is not None:
        validate_required_text(description, "description", config.MAX_TEXT_LENGTH)
    validate_optional_text(relationship, "relationship", 100)
    validate_string_list(aliases, "aliases", config.MAX_LIST_ITEMS, config.MAX_LIST_ITEM_LENGTH)
    validate_string_list(tags, "tags", config.MAX_LIST_ITEMS, config.MAX_LIST_ITEM_LENGTH)

    db = open_session()
    try:
        person = _owned_person(db, owner_id, person_id)
        if description is not None:
            person.description = description.strip()
        if relationship is not None:
            person.relationship = relationship.strip() or None
        if aliases is not None:
            person.aliases = [alias.strip() for alias in aliases if alias.strip()]
        if tags is not None:
            person.tags = list(tags)
        person.updated_at = utcnow()
        db.commit()
        db.refresh(person)
        logger.info("person_updated", extra={"owner_id": owner_id, "person_id": person_id})
        return serialize_person(person)
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@store_operation
def delete_person(owner_id: str, person_id: int) -> dict:
    owner_id = require_owner_id(owner_id)
    db = open_session()
    try:
        deleted = (
            db.query(Person)
            .filter(Person.id == person_id, Person.owner_id == owner_id)
            .delete(synchronize_session=False)
        )
        if not deleted:
            raise NotFoundError("person", person_id)
        db.commit()
        return {"status": "deleted", "id": person_id}
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def bump_person_mention(db, owner_id: str, person_id: int) -> int:
    """Atomic mention_count + 1 inside the caller's transaction."""
    return (
        db.query(Person)
        .filter(Person.id == person_id, Person.owner_id == owner_id)
        .update(
            {
                Person.mention_count: Person.mention_count + 1,
                Person.last_mentioned_at: utcnow(),
            },
            synchronize_session=False,
        )
    )


@store_operation
def record_person_mention(owner_id: str, person_id: int) -> dict:
    owner_id = require_owner_id(owner_id)
    db = open_session()
    try:
        if not bump_person_mention(db, owner_id, person_id):
            raise NotFoundError("person", person_id)
        db.commit()
        return serialize_person(_owned_person(db, owner_id, person_id))
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
