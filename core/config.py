"""
Shared configuration for ContextGate core.
"""

from __future__ import annotations

import logging
import os

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("contextgate")


def _get_bool(env_name: str, default: bool) -> bool:
    value = os.environ.get(env_name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_int(env_name: str, default: int) -> int:
    value = os.environ.get(env_name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _get_float(env_name: str, default: float) -> float:
    value = os.environ.get(env_name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _derive_effective_backend(db_backend: str) -> str:
    return db_backend if db_backend in {"postgres", "sqlite"} else "postgres"


# Database settings
DB_BACKEND = os.environ.get("DB_BACKEND", "postgres").strip().lower()
SQLITE_PATH = os.environ.get("SQLITE_PATH", "/data/contextgate.db")
DATABASE_URL = os.environ.get("DATABASE_URL")
DB_BACKEND_EFFECTIVE = _derive_effective_backend(DB_BACKEND)

# Database initialization controls
AUTO_MIGRATE_ON_STARTUP = _get_bool("AUTO_MIGRATE_ON_STARTUP", True)

# Embedding settings (instruction embeddings are best-effort)
OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY")
EMBEDDING_PROVIDER = os.environ.get("EMBEDDING_PROVIDER", "none").strip().lower()
EMBEDDING_MODEL = os.environ.get("EMBEDDING_MODEL", "text-embedding-3-small")
EMBEDDING_URL = os.environ.get("EMBEDDING_URL", "https://api.openai.com/v1/embeddings")
EMBEDDING_TIMEOUT_SECONDS = _get_float("EMBEDDING_TIMEOUT_SECONDS", 10.0)
EMBEDDING_RETRY_MAX = _get_int("EMBEDDING_RETRY_MAX", 2)
EMBEDDING_RETRY_BACKOFF_SECONDS = _get_float("EMBEDDING_RETRY_BACKOFF_SECONDS", 0.5)
EMBEDDING_RETRY_JITTER_SECONDS = _get_float("EMBEDDING_RETRY_JITTER_SECONDS", 0.25)
EMBEDDING_FAILURE_THRESHOLD = _get_int("EMBEDDING_FAILURE_THRESHOLD", 5)
EMBEDDING_COOLDOWN_SECONDS = _get_int("EMBEDDING_COOLDOWN_SECONDS", 60)
MAX_EMBEDDING_TEXT_LENGTH = _get_int("CONTEXTGATE_MAX_EMBEDDING_TEXT_LENGTH", 8000)

# Request/input limits
MAX_RESULT_LIMIT = _get_int("CONTEXTGATE_MAX_RESULT_LIMIT", 100)
MAX_TEXT_LENGTH = _get_int("CONTEXTGATE_MAX_TEXT_LENGTH", 8000)
MAX_SHORT_TEXT_LENGTH = _get_int("CONTEXTGATE_MAX_SHORT_TEXT_LENGTH", 255)
MAX_OWNER_ID_LENGTH = _get_int("CONTEXTGATE_MAX_OWNER_ID_LENGTH", 100)
MAX_TITLE_LENGTH = _get_int("CONTEXTGATE_MAX_TITLE_LENGTH", 500)
MAX_LIST_ITEMS = _get_int("CONTEXTGATE_MAX_LIST_ITEMS", 50)
MAX_LIST_ITEM_LENGTH = _get_int("CONTEXTGATE_MAX_LIST_ITEM_LENGTH", 255)
MAX_METADATA_BYTES = _get_int("CONTEXTGATE_MAX_METADATA_BYTES", 20000)

# Instruction repository
INSTRUCTION_LIMIT_DEFAULT = _get_int("INSTRUCTION_LIMIT_DEFAULT", 100)
INSTRUCTION_HIGH_PRIORITY = _get_int("INSTRUCTION_HIGH_PRIORITY", 8)
INSTRUCTION_DEDUP_PREFIX = _get_int("INSTRUCTION_DEDUP_PREFIX", 50)
APPLIED_TRACKING_WORKERS = _get_int("APPLIED_TRACKING_WORKERS", 2)

# Conversation aggregator
CONTEXT_DAY_WINDOW = _get_int("CONTEXT_DAY_WINDOW", 7)
CONTEXT_MAX_CONVERSATIONS = _get_int("CONTEXT_MAX_CONVERSATIONS", 10)
CONTEXT_MAX_MESSAGES = _get_int("CONTEXT_MAX_MESSAGES", 50)
CONVERSATION_PREVIEW_MESSAGES = _get_int("CONVERSATION_PREVIEW_MESSAGES", 3)
CONVERSATION_LIST_LIMIT_DEFAULT = _get_int("CONVERSATION_LIST_LIMIT_DEFAULT", 20)
CONVERSATION_TITLE_PREFIX = _get_int("CONVERSATION_TITLE_PREFIX", 50)
APPEND_RETRY_MAX = _get_int("APPEND_RETRY_MAX", 3)

# Unknown-person lifecycle
ASK_COOLDOWN_HOURS = _get_float("ASK_COOLDOWN_HOURS", 24.0)
ASK_MAX_CANDIDATES = _get_int("ASK_MAX_CANDIDATES", 3)
ASK_MIN_MENTIONS = _get_int("ASK_MIN_MENTIONS", 1)
UNKNOWN_PERSON_MAX_CONTEXTS = _get_int("UNKNOWN_PERSON_MAX_CONTEXTS", 10)
UNKNOWN_PERSON_SNIPPET_LENGTH = _get_int("UNKNOWN_PERSON_SNIPPET_LENGTH", 200)
UNKNOWN_PERSON_LIST_LIMIT = _get_int("UNKNOWN_PERSON_LIST_LIMIT", 50)
IDENTIFY_RETRY_MAX = _get_int("IDENTIFY_RETRY_MAX", 3)

# Turn context assembly
TURN_CONTEXT_TIMEOUT_SECONDS = _get_float("TURN_CONTEXT_TIMEOUT_SECONDS", 5.0)

# Server surfaces
REQUIRE_MCP_OWNER = _get_bool("REQUIRE_MCP_OWNER", True)
INSTANCE_ID = os.environ.get("CONTEXTGATE_INSTANCE_ID", "contextgate-1")
SERVICE_VERSION = "0.1.0"


def validate_and_prepare_config() -> None:
    """Validate configuration and apply derived settings at startup."""
    global DATABASE_URL, DB_BACKEND_EFFECTIVE

    errors = []
    if DB_BACKEND not in {"postgres", "sqlite"}:
        errors.append("DB_BACKEND must be 'postgres' or 'sqlite'")

    if EMBEDDING_PROVIDER not in {"openai", "none"}:
        errors.append("EMBEDDING_PROVIDER must be 'openai' or 'none'")
    if EMBEDDING_PROVIDER == "openai" and not OPENAI_API_KEY:
        errors.append("OPENAI_API_KEY is required when EMBEDDING_PROVIDER=openai")

    if ASK_COOLDOWN_HOURS < 0:
        errors.append("ASK_COOLDOWN_HOURS must not be negative")
    if UNKNOWN_PERSON_MAX_CONTEXTS <= 0:
        errors.append("UNKNOWN_PERSON_MAX_CONTEXTS must be positive")

    if not DATABASE_URL:
        if DB_BACKEND == "sqlite":
            if not SQLITE_PATH:
                errors.append("SQLITE_PATH environment variable is required for sqlite")
            else:
                DATABASE_URL = f"sqlite:///{SQLITE_PATH}"
        else:
            errors.append("DATABASE_URL environment variable is required")
    else:
        url_lower = DATABASE_URL.lower()
        is_sqlite_url = url_lower.startswith("sqlite")
        if DB_BACKEND == "sqlite" and not is_sqlite_url:
            errors.append("DATABASE_URL must be a sqlite URL when DB_BACKEND=sqlite")
        if DB_BACKEND == "postgres" and is_sqlite_url:
            errors.append("DATABASE_URL must be a postgres URL when DB_BACKEND=postgres")

    DB_BACKEND_EFFECTIVE = _derive_effective_backend(DB_BACKEND)

    if errors:
        raise RuntimeError("Configuration invalid: " + "; ".join(errors))
