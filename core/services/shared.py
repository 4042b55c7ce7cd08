"""
Shared helpers for ContextGate services.
"""

from __future__ import annotations

import random
import threading
import time
from datetime import datetime
from functools import wraps
from typing import Optional, List, Callable

import httpx
from sqlalchemy.exc import OperationalError

import core.config as config
from core.db import DB
from core.errors import (
    ConflictError,
    EmbeddingProviderError,
    NotFoundError,
    StoreUnavailable,
    ValidationIssue,
)
from core.validators import validate_embedding_text

logger = config.logger

http_client = None  # Reusable HTTP client for the embedding provider


def init_http_client():
    """Initialize HTTP client for embedding API calls."""
    global http_client
    headers = {"Content-Type": "application/json"}
    if config.OPENAI_API_KEY:
        headers["Authorization"] = f"Bearer {config.OPENAI_API_KEY}"
    http_client = httpx.Client(
        timeout=httpx.Timeout(config.EMBEDDING_TIMEOUT_SECONDS),
        limits=httpx.Limits(max_keepalive_connections=5, max_connections=20),
        headers=headers,
    )
    logger.info("HTTP client initialized")


def cleanup_http_client():
    """Clean up HTTP client on shutdown."""
    global http_client
    if http_client:
        http_client.close()
        http_client = None
        logger.info("HTTP client closed")


# =============================================================================
# Store access
# =============================================================================

def open_session():
    if DB.SessionLocal is None:
        raise StoreUnavailable("Database not initialized")
    return DB.SessionLocal()


def store_operation(fn: Callable) -> Callable:
    """Translate driver-level connectivity failures into StoreUnavailable."""
    @wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except OperationalError as exc:
            logger.warning(
                "store_unavailable",
                extra={"operation": fn.__name__, "error": str(exc.orig)},
            )
            raise StoreUnavailable(f"store unavailable during {fn.__name__}") from exc
    return wrapper


def iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def enum_value(value) -> Optional[str]:
    if value is None:
        return None
    return getattr(value, "value", value)


# =============================================================================
# Embeddings
# =============================================================================

class EmbeddingCircuitBreaker:
    def __init__(self, failure_threshold: int, cooldown_seconds: int):
        self._failure_threshold = max(1, failure_threshold)
        self._cooldown_seconds = max(1, cooldown_seconds)
        self._lock = threading.Lock()
        self._consecutive_failures = 0
        self._cooldown_until = 0.0
        self._last_error: Optional[str] = None

    def is_open(self) -> bool:
        with self._lock:
            return time.time() < self._cooldown_until

    def record_success(self) -> None:
        with self._lock:
            self._consecutive_failures = 0
            self._cooldown_until = 0.0

    def record_failure(self, error: str) -> None:
        with self._lock:
            self._consecutive_failures += 1
            self._last_error = error
            if self._consecutive_failures >= self._failure_threshold:
                self._cooldown_until = time.time() + self._cooldown_seconds

    def status(self) -> dict:
        with self._lock:
            return {
                "open": time.time() < self._cooldown_until,
                "consecutive_failures": self._consecutive_failures,
                "last_error": self._last_error,
            }


embedding_circuit_breaker = EmbeddingCircuitBreaker(
    failure_threshold=config.EMBEDDING_FAILURE_THRESHOLD,
    cooldown_seconds=config.EMBEDDING_COOLDOWN_SECONDS,
)


def _raise_embedding_unavailable(detail: str) -> None:
    logger.warning("Embedding provider unavailable", extra={"detail": detail})
    raise EmbeddingProviderError("embedding provider unavailable")


def _sleep_backoff(attempt: int) -> None:
    base = config.EMBEDDING_RETRY_BACKOFF_SECONDS * (2 ** attempt)
    jitter = random.uniform(0, config.EMBEDDING_RETRY_JITTER_SECONDS)
    time.sleep(base + jitter)


def embed_text_sync(text: str) -> List[float]:
    """Embed text with the configured provider using the pooled HTTP client."""
    validate_embedding_text(text)
    if config.EMBEDDING_PROVIDER == "none":
        _raise_embedding_unavailable("embedding provider disabled")
    if embedding_circuit_breaker.is_open():
        _raise_embedding_unavailable("circuit breaker open")
    if http_client is None:
        init_http_client()

    for attempt in range(config.EMBEDDING_RETRY_MAX + 1):
        try:
            response = http_client.post(
                config.EMBEDDING_URL,
                json={
                    "model": config.EMBEDDING_MODEL,
                    "input": text,
                },
            )
        except httpx.RequestError:
            if attempt >= config.EMBEDDING_RETRY_MAX:
                embedding_circuit_breaker.record_failure("request error")
                _raise_embedding_unavailable("request error")
            _sleep_backoff(attempt)
            continue

        if response.status_code in {429, 500, 502, 503, 504}:
            if attempt >= config.EMBEDDING_RETRY_MAX:
                embedding_circuit_breaker.record_failure(f"status {response.status_code}")
                _raise_embedding_unavailable(f"status {response.status_code}")
            _sleep_backoff(attempt)
            continue
        if response.status_code >= 400:
            embedding_circuit_breaker.record_failure(f"status {response.status_code}")
            _raise_embedding_unavailable(f"status {response.status_code}")

        data = response.json()
        embedding_circuit_breaker.record_success()
        return data["data"][0]["embedding"]
    _raise_embedding_unavailable("retries exhausted")


def embed_or_none(text: str) -> Optional[List[float]]:
    """Best-effort embedding; a provider failure never fails the write."""
    if config.EMBEDDING_PROVIDER == "none":
        return None
    try:
        return embed_text_sync(text)
    except EmbeddingProviderError:
        logger.warning("Embedding unavailable; storing without embedding")
        return None


# =============================================================================
# Tool error handling
# =============================================================================

def _error_type_for(exc: Exception) -> str:
    if isinstance(exc, ValidationIssue):
        return "validation_error"
    if isinstance(exc, NotFoundError):
        return "not_found"
    if isinstance(exc, ConflictError):
        return "conflict"
    return "unavailable"


def _tool_error_payload(tool_name: str, exc: Exception) -> dict:
    return {
        "status": "error",
        "error_type": _error_type_for(exc),
        "tool": tool_name,
        "field": getattr(exc, "field", None),
        "message": str(exc),
    }


def _log_tool_error(tool_name: str, exc: Exception, warn: bool = False) -> None:
    payload = {
        "tool": tool_name,
        "field": getattr(exc, "field", None),
        "error_type": _error_type_for(exc),
        "detail": str(exc),
    }
    if warn:
        logger.warning("tool_error", extra=payload)
    else:
        logger.info("tool_error", extra=payload)


def service_tool(fn: Callable[..., dict]) -> Callable[..., dict]:
    """Convert typed service errors into error payloads for agent-facing tools."""
    @wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except (ValidationIssue, NotFoundError, ConflictError) as exc:
            _log_tool_error(fn.__name__, exc, warn=False)
            return _tool_error_payload(fn.__name__, exc)
        except StoreUnavailable as exc:
            _log_tool_error(fn.__name__, exc, warn=True)
            return _tool_error_payload(fn.__name__, exc)
    return wrapper
