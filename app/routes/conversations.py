"""
Conversation endpoints.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from core.context import RequestContext
from core.services import conversations as conversation_service
from app.deps import get_request_context
from app.schemas import (
    ConversationCreateRequest,
    MessageRequest,
    SummaryUpdateRequest,
    SyncMessageRequest,
)

router = APIRouter(prefix="/conversations", tags=["conversations"])


@router.get("")
def list_conversations(
    limit: int = 20,
    skip: int = 0,
    include_full_messages: bool = False,
    ctx: RequestContext = Depends(get_request_context),
):
    return conversation_service.list_recent_conversations(
        ctx.owner_id,
        limit=limit,
        skip=skip,
        include_full_messages=include_full_messages,
    )


@router.get("/context")
def recent_context(
    day_window: int = 7,
    max_conversations: int = 10,
    max_messages: int = 50,
    ctx: RequestContext = Depends(get_request_context),
):
    messages = conversation_service.windowed_context(
        ctx.owner_id,
        day_window=day_window,
        max_conversations=max_conversations,
        max_messages=max_messages,
        deadline=ctx.deadline,
    )
    return {"messages": messages, "count": len(messages)}


@router.get("/{conversation_id}")
def get_conversation(conversation_id: int, ctx: RequestContext = Depends(get_request_context)):
    return conversation_service.get_conversation(ctx.owner_id, conversation_id)


@router.post("", status_code=201)
def start_conversation(body: ConversationCreateRequest, ctx: RequestContext = Depends(get_request_context)):
    return conversation_service.start_conversation(ctx.owner_id, title=body.title, started_at=body.started_at)


@router.post("/sync")
def sync_message(body: SyncMessageRequest, ctx: RequestContext = Depends(get_request_context)):
    return conversation_service.sync_message(ctx.owner_id, **body.model_dump())


@router.post("/{conversation_id}/messages", status_code=201)
def append_message(
    conversation_id: int,
    body: MessageRequest,
    ctx: RequestContext = Depends(get_request_context),
):
    return conversation_service.append_message(ctx.owner_id, conversation_id, **body.model_dump())


@router.post("/{conversation_id}/end")
def end_conversation(conversation_id: int, ctx: RequestContext = Depends(get_request_context)):
    return conversation_service.end_conversation(ctx.owner_id, conversation_id)


@router.patch("/{conversation_id}")
def update_summary(
    conversation_id: int,
    body: SummaryUpdateRequest,
    ctx: RequestContext = Depends(get_request_context),
):
    return conversation_service.update_summary(
        ctx.owner_id,
        conversation_id,
        summary=body.summary,
        topics=body.topics,
    )
