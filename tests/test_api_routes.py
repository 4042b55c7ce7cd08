import os

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("EMBEDDING_PROVIDER", "none")

import pytest
from starlette.testclient import TestClient

import app.routes.health as health_routes
from app.main import app

OWNER_HEADERS = {"X-Owner-Id": "owner-http"}
OTHER_HEADERS = {"X-Owner-Id": "owner-http-other"}


@pytest.fixture
def client(server_db, clock):
    return TestClient(app)


def test_missing_owner_header_is_rejected(client):
    response = client.get("/instructions")
    assert response.status_code == 400
    body = response.json()
    assert body["error"] == "required"
    assert body["field"] == "owner_id"


def test_instruction_endpoints(client):
    created = client.post(
        "/instructions",
        json={"category": "explicit_instruction", "instruction": "Call me Captain", "priority": 9},
        headers=OWNER_HEADERS,
    )
    assert created.status_code == 201
    instruction_id = created.json()["instruction"]["id"]

    merged = client.post(
        "/instructions",
        json={"category": "explicit_instruction", "instruction": "call me captain", "priority": 10},
        headers=OWNER_HEADERS,
    )
    assert merged.status_code == 200
    assert merged.json()["status"] == "updated"

    rendered = client.get("/instructions/rendered", headers=OWNER_HEADERS).json()
    assert rendered["has_instructions"] is True
    assert rendered["instruction_ids"] == [instruction_id]
    assert "[HIGH PRIORITY] - Call me Captain" in rendered["context"]

    listing = client.get("/instructions", headers=OWNER_HEADERS).json()
    assert listing["total"] == 1
    assert list(listing["grouped"]) == ["explicit_instruction"]

    bad = client.post(
        "/instructions",
        json={"category": "vibes", "instruction": "Be chill"},
        headers=OWNER_HEADERS,
    )
    assert bad.status_code == 400
    assert bad.json()["error"] == "invalid_category"

    foreign = client.get(f"/instructions/{instruction_id}", headers=OTHER_HEADERS)
    assert foreign.status_code == 404
    assert foreign.json()["error"] == "not_found"


def test_instruction_update_supersede_and_delete(client):
    created = client.post(
        "/instructions",
        json={"category": "address_preference", "instruction": "Call me Bob", "priority": 4},
        headers=OWNER_HEADERS,
    ).json()["instruction"]

    patched = client.patch(f"/instructions/{created['id']}", json={"priority": 6}, headers=OWNER_HEADERS)
    assert patched.status_code == 200
    assert patched.json()["priority"] == 6

    reactivate = client.patch(f"/instructions/{created['id']}", json={"is_active": True}, headers=OWNER_HEADERS)
    assert reactivate.status_code == 400

    empty = client.patch(f"/instructions/{created['id']}", json={}, headers=OWNER_HEADERS)
    assert empty.status_code == 400

    superseded = client.post(
        f"/instructions/{created['id']}/supersede",
        json={"instruction": "Call me Robert"},
        headers=OWNER_HEADERS,
    )
    assert superseded.status_code == 201
    replacement_id = superseded.json()["instruction"]["id"]

    again = client.post(
        f"/instructions/{created['id']}/supersede",
        json={"instruction": "Call me Rob"},
        headers=OWNER_HEADERS,
    )
    assert again.status_code == 409

    deleted = client.delete(f"/instructions/{replacement_id}", headers=OWNER_HEADERS)
    assert deleted.json() == {"status": "deactivated", "id": replacement_id}
    assert client.get("/instructions/rendered", headers=OWNER_HEADERS).json()["context"] == ""


def test_conversation_endpoints(client):
    conv = client.post("/conversations", json={"title": "Planning"}, headers=OWNER_HEADERS)
    assert conv.status_code == 201
    conv_id = conv.json()["id"]

    message = client.post(
        f"/conversations/{conv_id}/messages",
        json={"role": "user", "content": "Book the train"},
        headers=OWNER_HEADERS,
    )
    assert message.status_code == 201
    assert message.json()["position"] == 0

    bad_role = client.post(
        f"/conversations/{conv_id}/messages",
        json={"role": "robot", "content": "beep"},
        headers=OWNER_HEADERS,
    )
    assert bad_role.status_code == 400

    synced = client.post("/conversations/sync", json={"role": "assistant", "content": "Booked."}, headers=OWNER_HEADERS)
    assert synced.status_code == 200

    context = client.get("/conversations/context", headers=OWNER_HEADERS).json()
    assert context["count"] == 2
    assert [m["content"] for m in context["messages"]] == ["Book the train", "Booked."]

    listing = client.get("/conversations", headers=OWNER_HEADERS).json()
    assert listing["total"] == 1

    ended = client.post(f"/conversations/{conv_id}/end", headers=OWNER_HEADERS)
    assert ended.json()["is_active"] is False

    summary = client.patch(f"/conversations/{conv_id}", json={"summary": "Travel plans"}, headers=OWNER_HEADERS)
    assert summary.json()["summary"] == "Travel plans"

    assert client.get(f"/conversations/{conv_id}", headers=OTHER_HEADERS).status_code == 404


def test_people_and_unknown_people_endpoints(client):
    person = client.post(
        "/people",
        json={"name": "Maya", "description": "Sister", "relationship": "family"},
        headers=OWNER_HEADERS,
    )
    assert person.status_code == 201
    duplicate = client.post("/people", json={"name": "maya", "description": "Again"}, headers=OWNER_HEADERS)
    assert duplicate.status_code == 409

    detections = client.post(
        "/unknown-people/detections",
        json={"detections": [{"name": "Maya"}, {"name": "Tariq", "context": "Lunch with Tariq"}, {"name": "Monday"}]},
        headers=OWNER_HEADERS,
    ).json()
    assert detections == {
        "known_people": ["Maya"],
        "new_unknown_people": ["Tariq"],
        "updated_unknown_people": [],
    }

    mention = client.post(
        "/unknown-people/mentions",
        json={"label": "tariq", "context_snippet": "Tariq again", "hypothesized_relationship": "coworker"},
        headers=OWNER_HEADERS,
    ).json()
    assert mention["mention_count"] == 2
    unknown_id = mention["id"]

    ask = client.get("/unknown-people/ask", headers=OWNER_HEADERS).json()
    assert ask["count"] == 1
    assert ask["candidates"][0]["question"] == 'I noticed you mentioned Tariq recently. Are they a coworker? (You said: "Tariq again")'

    asked = client.post(f"/unknown-people/{unknown_id}/asked", headers=OWNER_HEADERS).json()
    assert asked["status"] == "pending"
    assert client.get("/unknown-people/ask", headers=OWNER_HEADERS).json()["count"] == 0

    identified = client.post(
        f"/unknown-people/{unknown_id}/identify",
        json={"description": "Works with me"},
        headers=OWNER_HEADERS,
    )
    assert identified.status_code == 200
    person_id = identified.json()["person_id"]
    assert client.get(f"/people/{person_id}", headers=OWNER_HEADERS).json()["relationship"] == "coworker"

    repeat = client.post(
        f"/unknown-people/{unknown_id}/identify",
        json={"description": "Works with me"},
        headers=OWNER_HEADERS,
    )
    assert repeat.status_code == 404

    people = client.get("/people", headers=OWNER_HEADERS).json()
    assert people["count"] == 2

    corrected = client.patch(
        f"/people/{person_id}", json={"description": "Works with me on billing"}, headers=OWNER_HEADERS
    )
    assert corrected.status_code == 200
    assert corrected.json()["description"] == "Works with me on billing"
    assert client.patch(f"/people/{person_id}", json={}, headers=OWNER_HEADERS).status_code == 400
    assert client.patch(
        f"/people/{person_id}", json={"description": "x"}, headers=OTHER_HEADERS
    ).status_code == 404

    other = client.post("/unknown-people/mentions", json={"label": "Zara"}, headers=OWNER_HEADERS).json()
    assert client.delete(f"/unknown-people/{other['id']}", headers=OTHER_HEADERS).status_code == 404
    assert client.delete(f"/unknown-people/{other['id']}", headers=OWNER_HEADERS).json()["status"] == "dismissed"
    assert client.get(f"/unknown-people/{other['id']}", headers=OWNER_HEADERS).status_code == 404


def test_turn_context_endpoint(client):
    client.post(
        "/instructions",
        json={"category": "response_style", "instruction": "Be concise"},
        headers=OWNER_HEADERS,
    )
    client.post("/conversations/sync", json={"content": "Hi there"}, headers=OWNER_HEADERS)
    client.post("/unknown-people/mentions", json={"label": "Odette"}, headers=OWNER_HEADERS)

    response = client.post("/turn-context", headers=OWNER_HEADERS)
    assert response.status_code == 200
    payload = response.json()
    assert "- Be concise" in payload["instructions_block"]
    assert [m["content"] for m in payload["recent_messages"]] == ["Hi there"]
    assert payload["people_to_ask"][0]["person"]["name"] == "Odette"

    bounded = client.post(
        "/turn-context",
        json={"max_candidates": 0, "track_applied": False},
        headers=OWNER_HEADERS,
    )
    assert bounded.json()["people_to_ask"] == []

    assert client.post("/turn-context").status_code == 400


def test_health_reports_database(client, monkeypatch):
    monkeypatch.setattr(health_routes, "_get_schema_revisions", lambda engine: ("0001_initial_schema", "0001_initial_schema"))
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["database"]["ok"] is True
    assert body["embedding_provider"]["status"] == "disabled"

    monkeypatch.setattr(health_routes, "_get_schema_revisions", lambda engine: ("0000_old", "0001_initial_schema"))
    assert client.get("/health").status_code == 503
