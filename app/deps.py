"""
Dependency helpers for the standalone FastAPI app.
"""

from __future__ import annotations

from typing import Optional

from fastapi import Header

import core.config as config
from core.context import Deadline, RequestContext, require_owner_id


async def get_request_context(
    x_owner_id: Optional[str] = Header(default=None),
    x_request_id: Optional[str] = Header(default=None),
) -> RequestContext:
    """Owner identity is established upstream and forwarded as X-Owner-Id."""
    return RequestContext(
        owner_id=require_owner_id(x_owner_id),
        request_id=x_request_id,
        source="http",
        deadline=Deadline.after(config.TURN_CONTEXT_TIMEOUT_SECONDS),
    )
