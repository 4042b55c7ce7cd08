"""
Standalone FastAPI app wiring for ContextGate.
"""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from core.db import DB, init_db
from core.mcp import mcp_stream_app, MCPRouteNormalizerASGI
from core.services import instructions as instruction_service
from core.services.shared import cleanup_http_client, init_http_client
from app.errors import register_exception_handlers
from app.middleware import configure_middleware
from app.routes.context import router as context_router
from app.routes.conversations import router as conversations_router
from app.routes.health import router as health_router
from app.routes.instructions import router as instructions_router
from app.routes.people import router as people_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize on startup, cleanup on shutdown."""
    init_db()
    init_http_client()
    try:
        async with mcp_stream_app.lifespan(mcp_stream_app):
            yield
    finally:
        instruction_service.shutdown_applied_tracking(wait=True)
        cleanup_http_client()
        if DB.engine:
            DB.engine.dispose()


app = FastAPI(title="ContextGate", redirect_slashes=False, lifespan=lifespan)
configure_middleware(app)
register_exception_handlers(app)

app.include_router(health_router)
app.include_router(instructions_router)
app.include_router(conversations_router)
app.include_router(people_router)
app.include_router(context_router)

app.mount("/mcp/", mcp_stream_app)


# =============================================================================
# ASGI Application (module-level for production deployment)
# =============================================================================

asgi_app = MCPRouteNormalizerASGI(app)
