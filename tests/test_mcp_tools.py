import os

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("EMBEDDING_PROVIDER", "none")

import pytest
from starlette.applications import Starlette
from starlette.responses import JSONResponse
from starlette.routing import Route
from starlette.testclient import TestClient

from core.context import RequestContext
from core.mcp import server as mcp_server
from core.mcp import owner_middleware
from core.mcp.owner_middleware import MCPOwnerMiddleware, get_current_context

OWNER = "owner-mcp"


@pytest.fixture
def as_owner():
    token = owner_middleware._request_context.set(RequestContext(owner_id=OWNER, source="mcp"))
    try:
        yield OWNER
    finally:
        owner_middleware._request_context.reset(token)


def test_tools_without_owner_return_error_payload(server_db):
    result = mcp_server.instructions_list()
    assert result["status"] == "error"
    assert result["error_type"] == "validation_error"
    assert result["field"] == "owner_id"
    assert result["tool"] == "instructions_list"


def test_instruction_tools(server_db, clock, as_owner):
    created = mcp_server.instructions_create(category="explicit_instruction", instruction="Say good night")
    assert created["status"] == "created"

    invalid = mcp_server.instructions_create(category="nonsense", instruction="Anything")
    assert invalid["status"] == "error"
    assert invalid["field"] == "category"

    replaced = mcp_server.instructions_supersede(created["instruction"]["id"], "Say sweet dreams")
    assert replaced["status"] == "superseded"

    conflict = mcp_server.instructions_supersede(created["instruction"]["id"], "Say bye")
    assert conflict["error_type"] == "conflict"

    listing = mcp_server.instructions_list()
    assert listing["status"] == "ok"
    assert listing["total"] == 1


def test_unknown_people_tool_flow(server_db, clock, as_owner):
    recorded = mcp_server.unknown_people_record_mention("Ximena", context_snippet="Ximena's party")
    unknown_id = recorded["unknown_person"]["id"]

    ask = mcp_server.unknown_people_ask()
    assert ask["count"] == 1
    assert ask["candidates"][0]["person"]["id"] == unknown_id

    asked = mcp_server.unknown_people_mark_asked(unknown_id)
    assert asked["unknown_person"]["status"] == "pending"

    identified = mcp_server.unknown_people_identify(unknown_id, "College roommate", relationship="friend")
    assert identified["status"] == "identified"

    missing = mcp_server.unknown_people_identify(unknown_id, "College roommate")
    assert missing["error_type"] == "not_found"

    dismissed = mcp_server.unknown_people_dismiss(unknown_id)
    assert dismissed == {"status": "dismissed", "id": unknown_id}


def test_turn_context_and_recent_context_tools(server_db, clock, as_owner, monkeypatch):
    from core.services import conversations, instructions

    monkeypatch.setattr(instructions, "schedule_applied_tracking", lambda ids: None)
    conversations.sync_message(OWNER, "user", "Water the plants")
    mcp_server.instructions_create(category="behavior_rule", instruction="Confirm reminders")

    recent = mcp_server.conversations_recent_context()
    assert recent["count"] == 1

    payload = mcp_server.turn_context_build()
    assert payload["status"] == "ok"
    assert "- Confirm reminders" in payload["instructions_block"]
    assert payload["recent_messages"][0]["content"] == "Water the plants"


def _whoami(request):
    ctx = get_current_context()
    return JSONResponse({"owner_id": ctx.owner_id, "request_id": ctx.request_id})


def _middleware_client(require_owner: bool) -> TestClient:
    wrapped = MCPOwnerMiddleware(Starlette(routes=[Route("/whoami", _whoami)]))
    wrapped.require_owner = require_owner
    return TestClient(wrapped)


def test_owner_middleware_binds_header():
    client = _middleware_client(require_owner=True)
    response = client.get("/whoami", headers={"X-Owner-Id": " owner-a ", "X-Request-Id": "req-1"})
    assert response.json() == {"owner_id": "owner-a", "request_id": "req-1"}
    assert get_current_context().owner_id is None


def test_owner_middleware_rejects_missing_owner():
    response = _middleware_client(require_owner=True).get("/whoami")
    assert response.status_code == 400
    assert response.json() == {"error": "X-Owner-Id header required"}

    relaxed = _middleware_client(require_owner=False).get("/whoami")
    assert relaxed.status_code == 200
    assert relaxed.json()["owner_id"] is None
