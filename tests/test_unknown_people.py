import os

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("EMBEDDING_PROVIDER", "none")

import pytest

import core.config as config
from core.errors import NotFoundError, ValidationIssue
from core.models import Person, PersonSource, UnknownPerson, UnknownPersonContext, UnknownPersonStatus
from core.services import people as people_service
from core.services import unknown_people as unknown_service

OWNER = "owner-unknown"
OTHER_OWNER = "owner-elsewhere"


def _mention(label: str, times: int = 1, snippet: str = "talked about them", relationship=None) -> dict:
    record = None
    for _ in range(times):
        record = unknown_service.record_mention(OWNER, label, snippet, relationship)
    return record


def test_repeated_mentions_converge_on_one_record(server_db, clock, db_session):
    labels = ["Priya", "priya", "PRIYA", "  Priya ", "pRiYa"]
    for label in labels:
        unknown_service.record_mention(OWNER, label, f"mentioned as {label.strip()}")

    rows = db_session.query(UnknownPerson).filter_by(owner_id=OWNER).all()
    assert len(rows) == 1
    assert rows[0].mention_count == len(labels)
    assert rows[0].name == "Priya"
    assert rows[0].status == UnknownPersonStatus.unknown


def test_first_mention_reports_created(server_db, clock):
    first = unknown_service.record_mention(OWNER, "Kofi", "Kofi is coming over")
    second = unknown_service.record_mention(OWNER, "kofi", "Kofi brought cake")
    assert first["created"] is True
    assert second["created"] is False
    assert second["mention_count"] == 2
    assert second["contexts"] == ["Kofi is coming over", "Kofi brought cake"]


def test_mentions_are_scoped_per_owner(server_db, clock):
    unknown_service.record_mention(OWNER, "Lena", "Lena called")
    other = unknown_service.record_mention(OTHER_OWNER, "Lena", "Lena emailed")
    assert other["created"] is True
    assert other["mention_count"] == 1


def test_snippets_are_truncated_and_capped(server_db, clock, db_session):
    long_snippet = "x" * 500
    record = None
    for index in range(config.UNKNOWN_PERSON_MAX_CONTEXTS + 3):
        record = unknown_service.record_mention(OWNER, "Mateo", f"{index}-{long_snippet}")

    assert len(record["contexts"]) == config.UNKNOWN_PERSON_MAX_CONTEXTS
    assert all(len(snippet) == config.UNKNOWN_PERSON_SNIPPET_LENGTH for snippet in record["contexts"])
    assert record["contexts"][-1].startswith(f"{config.UNKNOWN_PERSON_MAX_CONTEXTS + 2}-")
    assert db_session.query(UnknownPersonContext).count() == config.UNKNOWN_PERSON_MAX_CONTEXTS


def test_relationship_hypotheses_skip_unknown_and_duplicates(server_db, clock):
    unknown_service.record_mention(OWNER, "Aunt May", "visiting", "family")
    unknown_service.record_mention(OWNER, "Aunt May", "visiting again", "family")
    unknown_service.record_mention(OWNER, "Aunt May", "called", "unknown")
    record = unknown_service.record_mention(OWNER, "Aunt May", "called again", "neighbor")
    assert record["relationships"] == ["family", "neighbor"]


def test_candidates_ordered_by_mentions_then_recency(server_db, clock):
    _mention("Ravi", times=2)
    clock.advance(minutes=5)
    _mention("Zoe", times=4)
    clock.advance(minutes=5)
    _mention("Omar", times=2)

    candidates = unknown_service.candidates_to_ask(OWNER, max_candidates=2)

    assert [c["person"]["name"] for c in candidates] == ["Zoe", "Omar"]
    assert candidates[0]["question"] == 'I\'ve heard you mention Zoe 4 times. Who is Zoe? (You said: "talked about them")'


def test_scenario_recently_asked_is_excluded_until_cooldown_passes(server_db, clock):
    record = _mention("Hana", times=5)
    unknown_service.mark_asked(OWNER, record["id"])

    clock.advance(hours=2)
    assert unknown_service.candidates_to_ask(OWNER, cooldown_hours=24) == []

    clock.advance(hours=23)
    eligible = unknown_service.candidates_to_ask(OWNER, cooldown_hours=24)
    assert [c["person"]["id"] for c in eligible] == [record["id"]]
    assert eligible[0]["person"]["status"] == "pending"


def test_mark_asked_removes_candidate_immediately(server_db, clock):
    record = _mention("Ines", times=1)
    assert len(unknown_service.candidates_to_ask(OWNER)) == 1

    asked = unknown_service.mark_asked(OWNER, record["id"])
    assert asked["status"] == "pending"
    assert asked["asked_count"] == 1
    assert unknown_service.candidates_to_ask(OWNER) == []

    again = unknown_service.mark_asked(OWNER, record["id"])
    assert again["status"] == "pending"
    assert again["asked_count"] == 2


def test_mark_asked_not_found_and_identified_untouched(server_db, clock):
    with pytest.raises(NotFoundError):
        unknown_service.mark_asked(OWNER, 31337)

    record = _mention("Jonas", times=1)
    with pytest.raises(NotFoundError):
        unknown_service.mark_asked(OTHER_OWNER, record["id"])

    unknown_service.identify(OWNER, record["id"], "Old school friend")
    unchanged = unknown_service.mark_asked(OWNER, record["id"])
    assert unchanged["status"] == "identified"
    assert unchanged["last_asked_at"] is None


def test_question_builder_is_used_when_supplied(server_db, clock):
    _mention("Noor", times=1, snippet="Noor fixed the sink", relationship="neighbor")

    def builder(name, relationships, snippets):
        return f"{name}|{','.join(relationships)}|{len(snippets)}"

    candidates = unknown_service.candidates_to_ask(OWNER, question_builder=builder)
    assert candidates[0]["question"] == "Noor|neighbor|1"

    default = unknown_service.candidates_to_ask(OWNER)
    assert default[0]["question"] == 'I noticed you mentioned Noor recently. Are they a neighbor? (You said: "Noor fixed the sink")'


def test_identify_creates_one_person_and_second_call_is_not_found(server_db, clock, db_session):
    record = _mention("Tomasz", times=3, relationship="colleague")

    person_id = unknown_service.identify(OWNER, record["id"], "Works with me on the data team")

    person = people_service.get_person(OWNER, person_id)
    assert person["name"] == "Tomasz"
    assert person["relationship"] == "colleague"
    assert person["tags"] == ["colleague"]
    assert person["mention_count"] == 3
    assert person["source"] == "detected"
    assert person["is_fully_accounted"] is True

    with pytest.raises(NotFoundError):
        unknown_service.identify(OWNER, record["id"], "Someone else entirely")

    assert db_session.query(Person).filter_by(owner_id=OWNER).count() == 1
    retained = unknown_service.get_unknown_person(OWNER, record["id"])
    assert retained["status"] == "identified"
    assert retained["linked_person_id"] == person_id
    assert unknown_service.candidates_to_ask(OWNER) == []


def test_identify_reuses_person_left_by_interrupted_attempt(server_db, clock, db_session):
    record = _mention("Yusuf", times=1)
    orphan = Person(
        owner_id=OWNER,
        name="Yusuf",
        description="half-finished promotion",
        source=PersonSource.detected,
        source_unknown_person_id=record["id"],
    )
    db_session.add(orphan)
    db_session.commit()

    person_id = unknown_service.identify(OWNER, record["id"], "Gym buddy", relationship="friend")

    assert person_id == orphan.id
    assert db_session.query(Person).filter_by(owner_id=OWNER).count() == 1


def test_identify_validates_and_scopes(server_db, clock):
    record = _mention("Elif", times=1)
    with pytest.raises(ValidationIssue):
        unknown_service.identify(OWNER, record["id"], "")
    with pytest.raises(NotFoundError):
        unknown_service.identify(OTHER_OWNER, record["id"], "Not mine")


def test_dismiss_deletes_and_missing_is_not_found(server_db, clock, db_session):
    record = _mention("Bruno", times=2, relationship="friend")
    result = unknown_service.dismiss(OWNER, record["id"])
    assert result["status"] == "dismissed"

    assert db_session.query(UnknownPerson).count() == 0
    assert db_session.query(UnknownPersonContext).count() == 0

    with pytest.raises(NotFoundError):
        unknown_service.dismiss(OWNER, record["id"])


def test_list_unknown_people_filters_status(server_db, clock):
    asked = _mention("Carmen", times=1)
    _mention("Diego", times=3)
    unknown_service.mark_asked(OWNER, asked["id"])

    unknown = unknown_service.list_unknown_people(OWNER)
    assert [item["name"] for item in unknown] == ["Diego"]

    pending = unknown_service.list_unknown_people(OWNER, status="pending")
    assert [item["name"] for item in pending] == ["Carmen"]

    everyone = unknown_service.list_unknown_people(OWNER, status=None)
    assert [item["name"] for item in everyone] == ["Diego", "Carmen"]

    with pytest.raises(ValidationIssue):
        unknown_service.list_unknown_people(OWNER, status="forgotten")


def test_process_detected_names_routes_known_unknown_and_noise(server_db, clock):
    people_service.create_person(OWNER, "Maria", "Sister", relationship="family", aliases=["Mari"])
    unknown_service.record_mention(OWNER, "Felix", "Felix again")

    result = unknown_service.process_detected_names(
        OWNER,
        [
            {"name": "mari", "context": "Mari called"},
            {"name": "Felix", "context": "Felix texted"},
            {"name": "Gustavo", "context": "Met Gustavo", "possible_relationship": "friend"},
            {"name": "Monday", "context": "See you Monday"},
            {"name": "J", "context": "J said hi"},
        ],
    )

    assert result == {
        "known_people": ["Maria"],
        "new_unknown_people": ["Gustavo"],
        "updated_unknown_people": ["Felix"],
    }
    maria = people_service.find_person_by_name(OWNER, "Maria")
    assert maria["mention_count"] == 2
    assert unknown_service.list_unknown_people(OWNER, status=None)[0]["name"] in {"Felix", "Gustavo"}


def test_status_transitions_only_move_forward():
    assert UnknownPersonStatus.unknown.can_transition_to(UnknownPersonStatus.pending)
    assert UnknownPersonStatus.pending.can_transition_to(UnknownPersonStatus.identified)
    assert not UnknownPersonStatus.identified.can_transition_to(UnknownPersonStatus.unknown)
    assert not UnknownPersonStatus.pending.can_transition_to(UnknownPersonStatus.unknown)
    assert UnknownPersonStatus.identified.is_terminal


def test_identify_merges_into_known_person_with_same_name(server_db, clock, db_session):
    known = people_service.create_person(OWNER, "Alice", "Lives next door")
    record = _mention("alice", times=2, relationship="neighbor")

    person_id = unknown_service.identify(OWNER, record["id"], "Waters my plants")

    assert person_id == known["id"]
    assert db_session.query(Person).filter_by(owner_id=OWNER).count() == 1
    merged = people_service.get_person(OWNER, person_id)
    assert merged["name"] == "Alice"
    assert merged["source"] == "manual"
    assert merged["description"] == "Lives next door\nWaters my plants"
    assert merged["relationship"] == "neighbor"
    assert merged["tags"] == ["neighbor"]
    assert merged["mention_count"] == 1 + 2
    assert merged["source_unknown_person_id"] == record["id"]
    assert unknown_service.get_unknown_person(OWNER, record["id"])["linked_person_id"] == known["id"]


def test_identify_merges_by_alias_and_keeps_existing_relationship(server_db, clock, db_session):
    known = people_service.create_person(
        OWNER, "Katherine", "Cousin from Leeds", relationship="family", aliases=["Kate"]
    )
    record = _mention("Kate", times=1, relationship="friend")

    person_id = unknown_service.identify(OWNER, record["id"], "Cousin from Leeds")

    assert person_id == known["id"]
    merged = people_service.get_person(OWNER, person_id)
    assert merged["relationship"] == "family"
    assert merged["description"] == "Cousin from Leeds"
    assert merged["tags"] == ["friend"]
    assert db_session.query(Person).filter_by(owner_id=OWNER).count() == 1


def test_default_question_quotes_latest_snippet():
    assert (
        unknown_service.default_question("Rosa", [], [])
        == "By the way, who is Rosa? You've mentioned them before."
    )
    assert unknown_service.default_question("Rosa", [], ["old note", "  Rosa sent flowers  "]) == (
        'By the way, who is Rosa? You\'ve mentioned them before. (You said: "Rosa sent flowers")'
    )

    long_question = unknown_service.default_question("Rosa", ["aunt"], ["y" * 150])
    quoted = long_question.split('(You said: "')[1].rstrip('")')
    assert long_question.startswith("I noticed you mentioned Rosa recently. Are they a aunt?")
    assert len(quoted) == unknown_service.QUESTION_SNIPPET_LENGTH
    assert quoted.endswith("...")
