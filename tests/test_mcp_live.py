"""ContextGate MCP protocol against a running server."""
import os

import httpx
import pytest

BASE_URL = os.getenv("CONTEXTGATE_MCP_BASE_URL")

if not BASE_URL:
    pytest.skip(
        "Set CONTEXTGATE_MCP_BASE_URL to run MCP integration tests",
        allow_module_level=True,
    )

HEADERS = {
    "X-Owner-Id": os.getenv("CONTEXTGATE_MCP_OWNER", "mcp-live-test"),
    "Accept": "application/json, text/event-stream",
}


def mcp_call(method, params=None):
    """Call MCP tool via JSON-RPC."""
    payload = {
        "jsonrpc": "2.0",
        "id": 1,
        "method": "tools/call",
        "params": {"name": method, "arguments": params or {}},
    }

    resp = httpx.post(f"{BASE_URL}/mcp", json=payload, headers=HEADERS, timeout=10)
    resp.raise_for_status()
    return resp.json()


def test_mcp_protocol():
    result = mcp_call(
        "unknown_people_record_mention",
        {"label": "Live Test Person", "context_snippet": "mentioned during MCP test"},
    )
    assert result["jsonrpc"] == "2.0"

    result = mcp_call("unknown_people_ask", {"max_candidates": 3})
    assert result["jsonrpc"] == "2.0"

    result = mcp_call("turn_context_build", {"track_applied": False})
    assert result["jsonrpc"] == "2.0"
