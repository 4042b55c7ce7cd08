"""
MCP owner middleware for per-user isolation.

Identity is established upstream; this middleware only reads the owner id
forwarded in the X-Owner-Id header and sets it as request context for the
duration of the request using contextvars (async-safe).
"""

from __future__ import annotations

import json
from contextvars import ContextVar
from typing import Optional

import core.config as config
from core.context import RequestContext

OWNER_HEADER = "x-owner-id"
REQUEST_ID_HEADER = "x-request-id"

# Context var for storing per-request owner context
_request_context: ContextVar[Optional[RequestContext]] = ContextVar(
    "mcp_request_context", default=None
)


def get_current_context() -> RequestContext:
    """Get current request context, or an owner-less one if not set."""
    ctx = _request_context.get()
    if ctx is not None:
        return ctx
    return RequestContext(source="mcp")


class MCPOwnerMiddleware:
    """
    ASGI middleware that binds the forwarded owner id to the MCP request.

    Requests without an owner header are rejected with 400 unless
    REQUIRE_MCP_OWNER is disabled, in which case tools report the missing
    owner themselves.
    """

    def __init__(self, app):
        self.app = app
        self.require_owner = config.REQUIRE_MCP_OWNER

    def __getattr__(self, name):
        return getattr(self.app, name)

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        # ASGI headers are bytes tuples
        headers = {}
        for header_name, header_value in scope.get("headers", []):
            headers[header_name.decode("latin1").lower()] = header_value.decode("latin1")

        owner_id = (headers.get(OWNER_HEADER) or "").strip()
        if not owner_id and self.require_owner:
            await self._send_error(send, 400, "X-Owner-Id header required")
            return

        req_ctx = RequestContext(
            owner_id=owner_id or None,
            request_id=headers.get(REQUEST_ID_HEADER),
            source="mcp",
        )
        token = _request_context.set(req_ctx)
        try:
            await self.app(scope, receive, send)
        finally:
            _request_context.reset(token)

    async def _send_error(self, send, status_code: int, detail: str):
        """Send JSON error response."""
        body = json.dumps({"error": detail}).encode("utf-8")

        await send({
            "type": "http.response.start",
            "status": status_code,
            "headers": [
                [b"content-type", b"application/json"],
                [b"content-length", str(len(body)).encode("latin1")],
            ],
        })

        await send({
            "type": "http.response.body",
            "body": body,
        })
