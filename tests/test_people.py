import os

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("EMBEDDING_PROVIDER", "none")

import pytest

from core.errors import ConflictError, NotFoundError, ValidationIssue
from core.services import people as people_service

OWNER = "owner-people"
OTHER_OWNER = "owner-neighbour"


def test_create_and_get_person(server_db, clock):
    created = people_service.create_person(
        OWNER,
        "  Anika  ",
        "Runs the bakery downstairs",
        relationship="neighbor",
        aliases=["Ani", "  "],
        tags=["food"],
    )
    assert created["name"] == "Anika"
    assert created["aliases"] == ["Ani"]
    assert created["source"] == "manual"
    assert created["mention_count"] == 1

    fetched = people_service.get_person(OWNER, created["id"])
    assert fetched == created

    with pytest.raises(NotFoundError):
        people_service.get_person(OTHER_OWNER, created["id"])


def test_duplicate_names_conflict_case_insensitively(server_db, clock):
    people_service.create_person(OWNER, "Sven", "Brother-in-law")
    with pytest.raises(ConflictError):
        people_service.create_person(OWNER, "sven", "Someone else")
    other = people_service.create_person(OTHER_OWNER, "Sven", "Different owner")
    assert other["name"] == "Sven"


def test_create_person_validates_input(server_db, clock):
    with pytest.raises(ValidationIssue):
        people_service.create_person(OWNER, "", "No name")
    with pytest.raises(ValidationIssue):
        people_service.create_person(OWNER, "Gail", "Coach", source="imagined")
    with pytest.raises(ValidationIssue):
        people_service.create_person("  ", "Gail", "Coach")


def test_find_person_by_name_matches_aliases(server_db, clock):
    created = people_service.create_person(OWNER, "Robert", "Uncle", aliases=["Bobby"])
    assert people_service.find_person_by_name(OWNER, "ROBERT")["id"] == created["id"]
    assert people_service.find_person_by_name(OWNER, "bobby")["id"] == created["id"]
    assert people_service.find_person_by_name(OWNER, "Roberta") is None
    assert people_service.find_person_by_name(OTHER_OWNER, "Robert") is None


def test_list_people_search_and_order(server_db, clock):
    quiet = people_service.create_person(OWNER, "Beatriz", "Piano tutor", relationship="tutor")
    busy = people_service.create_person(OWNER, "Abel", "Climbing partner", relationship="friend")
    people_service.record_person_mention(OWNER, busy["id"])
    people_service.create_person(OTHER_OWNER, "Celine", "Piano tuner")

    everyone = people_service.list_people(OWNER)
    assert [person["id"] for person in everyone] == [busy["id"], quiet["id"]]

    piano = people_service.list_people(OWNER, search="piano")
    assert [person["id"] for person in piano] == [quiet["id"]]

    friends = people_service.list_people(OWNER, search="FRIEND")
    assert [person["id"] for person in friends] == [busy["id"]]


def test_record_mention_bumps_counter(server_db, clock):
    person = people_service.create_person(OWNER, "Ola", "Landlord")
    clock.advance(hours=3)
    bumped = people_service.record_person_mention(OWNER, person["id"])
    assert bumped["mention_count"] == 2
    assert bumped["last_mentioned_at"] > person["last_mentioned_at"]

    with pytest.raises(NotFoundError):
        people_service.record_person_mention(OTHER_OWNER, person["id"])


def test_delete_person(server_db, clock):
    person = people_service.create_person(OWNER, "Rui", "Old colleague")
    with pytest.raises(NotFoundError):
        people_service.delete_person(OTHER_OWNER, person["id"])

    assert people_service.delete_person(OWNER, person["id"]) == {"status": "deleted", "id": person["id"]}
    with pytest.raises(NotFoundError):
        people_service.delete_person(OWNER, person["id"])


def test_update_person_corrects_fields(server_db, clock):
    person = people_service.create_person(OWNER, "Hugo", "Plumber", relationship="contractor", tags=["home"])
    clock.advance(minutes=10)

    updated = people_service.update_person(
        OWNER,
        person["id"],
        description="Electrician, not a plumber",
        aliases=["Hughie", " "],
    )
    assert updated["description"] == "Electrician, not a plumber"
    assert updated["aliases"] == ["Hughie"]
    assert updated["relationship"] == "contractor"
    assert updated["tags"] == ["home"]
    assert updated["updated_at"] == clock.now.isoformat()
    assert people_service.find_person_by_name(OWNER, "hughie")["id"] == person["id"]

    cleared = people_service.update_person(OWNER, person["id"], relationship="", tags=[])
    assert cleared["relationship"] is None
    assert cleared["tags"] == []


def test_update_person_validates_and_scopes(server_db, clock):
    person = people_service.create_person(OWNER, "Ivo", "Barber")
    with pytest.raises(ValidationIssue):
        people_service.update_person(OWNER, person["id"])
    with pytest.raises(ValidationIssue):
        people_service.update_person(OWNER, person["id"], description="   ")
    with pytest.raises(NotFoundError):
        people_service.update_person(OTHER_OWNER, person["id"], description="Not yours")
    assert people_service.get_person(OWNER, person["id"])["description"] == "Barber"
