"""
Health and dependency endpoints.
"""

from __future__ import annotations

from fastapi import APIRouter, HTTPException
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

import core.config as config
from core.db import DB, _get_schema_revisions
from core.services.shared import embedding_circuit_breaker


router = APIRouter()


def _check_db_health() -> dict:
    if DB.engine is None:
        return {"ok": False, "error": "db_not_initialized"}

    try:
        with DB.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        current_rev, head_rev = _get_schema_revisions(DB.engine)
    except SQLAlchemyError as exc:
        return {"ok": False, "error": str(exc)}

    schema_ok = head_rev is None or current_rev == head_rev
    return {
        "ok": schema_ok,
        "backend": config.DB_BACKEND_EFFECTIVE,
        "schema_revision": current_rev,
        "schema_expected": head_rev,
        "schema_up_to_date": schema_ok,
    }


def _embedding_status() -> dict:
    breaker_status = embedding_circuit_breaker.status()
    if config.EMBEDDING_PROVIDER == "none":
        status = "disabled"
    elif breaker_status.get("open"):
        status = "cooldown"
    else:
        status = "ready"
    return {
        "status": status,
        "provider": config.EMBEDDING_PROVIDER,
        "circuit_breaker": breaker_status,
    }


@router.get("/health")
async def health():
    """Health check endpoint."""
    db_health = _check_db_health()
    embedding_status = _embedding_status()
    if not db_health.get("ok"):
        raise HTTPException(
            status_code=503,
            detail={"database": db_health, "embedding_provider": embedding_status},
        )

    return {
        "status": "healthy",
        "service": "ContextGate",
        "version": config.SERVICE_VERSION,
        "instance_id": config.INSTANCE_ID,
        "database": db_health,
        "embedding_provider": embedding_status,
    }
