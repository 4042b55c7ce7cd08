"""
MCP server wiring and tool registration.
"""

from typing import Optional, List

from fastmcp import FastMCP

from core.context import resolve_owner_id
from core.mcp.owner_middleware import get_current_context, MCPOwnerMiddleware
from core.services import conversations, instructions, turn_context, unknown_people
from core.services.shared import service_tool

READ_ONLY_TOOL_ANNOTATIONS = {"readOnlyHint": True}
DESTRUCTIVE_TOOL_ANNOTATIONS = {"destructiveHint": True}

mcp = FastMCP("ContextGate")


def mcp_tool(*args, **kwargs):
    """Register a tool with FastMCP and hand back the plain function."""
    def decorator(fn):
        mcp.tool(*args, **kwargs)(fn)
        return fn
    return decorator


def _owner() -> str:
    return resolve_owner_id(get_current_context())


@mcp_tool(annotations=READ_ONLY_TOOL_ANNOTATIONS)
@service_tool
def turn_context_build(
    day_window: int = 7,
    max_messages: int = 50,
    max_candidates: int = 3,
    track_applied: bool = True,
) -> dict:
    """Assemble the personalization context for the next assistant turn."""
    options = turn_context.TurnContextOptions(
        day_window=day_window,
        max_messages=max_messages,
        max_candidates=max_candidates,
        track_applied=track_applied,
    )
    payload = turn_context.build_turn_context(_owner(), options)
    return {"status": "ok", **payload.to_dict()}


@mcp_tool(annotations=READ_ONLY_TOOL_ANNOTATIONS)
@service_tool
def instructions_list(
    category: Optional[str] = None,
    limit: int = 100,
) -> dict:
    return {"status": "ok", **instructions.list_instructions_grouped(_owner(), category=category, limit=limit)}


@mcp_tool()
@service_tool
def instructions_create(
    category: str,
    instruction: str,
    original_context: Optional[str] = None,
    priority: int = 5,
    source: str = "explicit",
    confidence: float = 1.0,
    tags: Optional[List[str]] = None,
) -> dict:
    return instructions.create_instruction(
        _owner(),
        category=category,
        instruction=instruction,
        original_context=original_context,
        priority=priority,
        source=source,
        confidence=confidence,
        tags=tags,
    )


@mcp_tool()
@service_tool
def instructions_supersede(
    old_instruction_id: int,
    instruction: str,
    category: Optional[str] = None,
    priority: Optional[int] = None,
    original_context: Optional[str] = None,
) -> dict:
    """Replace an instruction the user corrected; the old one is deactivated."""
    return instructions.supersede_instruction(
        _owner(),
        old_instruction_id,
        instruction,
        category=category,
        priority=priority,
        original_context=original_context,
    )


@mcp_tool(annotations=READ_ONLY_TOOL_ANNOTATIONS)
@service_tool
def conversations_recent_context(
    day_window: int = 7,
    max_conversations: int = 10,
    max_messages: int = 50,
) -> dict:
    messages = conversations.windowed_context(
        _owner(),
        day_window=day_window,
        max_conversations=max_conversations,
        max_messages=max_messages,
    )
    return {"status": "ok", "messages": messages, "count": len(messages)}


@mcp_tool()
@service_tool
def unknown_people_record_mention(
    label: str,
    context_snippet: Optional[str] = None,
    hypothesized_relationship: Optional[str] = None,
) -> dict:
    person = unknown_people.record_mention(
        _owner(),
        label,
        context_snippet=context_snippet,
        hypothesized_relationship=hypothesized_relationship,
    )
    return {"status": "recorded", "unknown_person": person}


@mcp_tool(annotations=READ_ONLY_TOOL_ANNOTATIONS)
@service_tool
def unknown_people_ask(
    max_candidates: int = 3,
    cooldown_hours: Optional[float] = None,
) -> dict:
    candidates = unknown_people.candidates_to_ask(
        _owner(),
        max_candidates=max_candidates,
        cooldown_hours=cooldown_hours,
    )
    return {"status": "ok", "candidates": candidates, "count": len(candidates)}


@mcp_tool()
@service_tool
def unknown_people_mark_asked(unknown_person_id: int) -> dict:
    return {"status": "asked", "unknown_person": unknown_people.mark_asked(_owner(), unknown_person_id)}


@mcp_tool()
@service_tool
def unknown_people_identify(
    unknown_person_id: int,
    description: str,
    relationship: Optional[str] = None,
) -> dict:
    """Promote an unknown person to a known person using the user's answer."""
    person_id = unknown_people.identify(
        _owner(),
        unknown_person_id,
        description,
        relationship=relationship,
    )
    return {"status": "identified", "person_id": person_id, "unknown_person_id": unknown_person_id}


@mcp_tool(annotations=DESTRUCTIVE_TOOL_ANNOTATIONS)
@service_tool
def unknown_people_dismiss(unknown_person_id: int) -> dict:
    return unknown_people.dismiss(_owner(), unknown_person_id)


mcp_stream_app = MCPOwnerMiddleware(mcp.http_app(
    path="/",
    transport="streamable-http",
    stateless_http=True,
    json_response=True,
))


class MCPRouteNormalizerASGI:
    """Pure ASGI middleware - no response buffering, SSE-safe."""
    def __init__(self, wrapped_app):
        self.wrapped_app = wrapped_app

    async def __call__(self, scope, receive, send):
        if scope["type"] == "http" and scope.get("path") == "/mcp":
            scope = dict(scope)
            scope["path"] = "/mcp/"
        await self.wrapped_app(scope, receive, send)
