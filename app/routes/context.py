"""
Per-turn context endpoint.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends

import core.config as config
from core.context import RequestContext
from core.services.turn_context import TurnContextOptions, build_turn_context
from app.deps import get_request_context
from app.schemas import TurnContextRequest

router = APIRouter(tags=["context"])


@router.post("/turn-context")
def turn_context(
    body: Optional[TurnContextRequest] = None,
    ctx: RequestContext = Depends(get_request_context),
):
    body = body or TurnContextRequest()
    options = TurnContextOptions(
        day_window=body.day_window,
        max_conversations=body.max_conversations,
        max_messages=body.max_messages,
        max_candidates=body.max_candidates,
        cooldown_hours=body.cooldown_hours,
        timeout_seconds=config.TURN_CONTEXT_TIMEOUT_SECONDS,
        track_applied=body.track_applied,
    )
    return build_turn_context(ctx.owner_id, options).to_dict()
