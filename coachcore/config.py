"""
Shared configuration for the coaching core.
"""

from __future__ import annotations

import logging
import os

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("coachcore")


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


def _get_list(env_name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    value = os.environ.get(env_name)
    if value is None:
        return default
    items = [item.strip().lower() for item in value.split(",")]
    return tuple(item for item in items if item)


def _derive_effective_vector_backend(db_backend: str, vector_backend: str) -> str:
    if vector_backend != "pgvector" or db_backend != "postgres":
        return "none"
    return "pgvector"


# Database settings
DB_BACKEND = os.environ.get("DB_BACKEND", "postgres").strip().lower()
VECTOR_BACKEND = os.environ.get("VECTOR_BACKEND", "pgvector").strip().lower()
SQLITE_PATH = os.environ.get("SQLITE_PATH", "/data/coachcore.db")
DATABASE_URL = os.environ.get("DATABASE_URL")
VECTOR_BACKEND_EFFECTIVE = _derive_effective_vector_backend(DB_BACKEND, VECTOR_BACKEND)
AUTO_CREATE_EXTENSIONS = _get_bool("AUTO_CREATE_EXTENSIONS", True)

# Provider settings
OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY")
OPENAI_BASE_URL = os.environ.get("OPENAI_BASE_URL", "https://api.openai.com/v1").rstrip("/")
EMBEDDING_PROVIDER = os.environ.get("EMBEDDING_PROVIDER", "openai").strip().lower()
EMBEDDING_MODEL = os.environ.get("EMBEDDING_MODEL", "text-embedding-3-small")
EMBEDDING_DIM = _get_int("EMBEDDING_DIM", 1536)
LOCAL_EMBEDDING_MODEL = os.environ.get("LOCAL_EMBEDDING_MODEL", "all-MiniLM-L6-v2")
COMPLETION_MODEL = os.environ.get("COMPLETION_MODEL", "gpt-4o-mini")
COMPLETION_LIGHT_MODEL = os.environ.get("COMPLETION_LIGHT_MODEL", COMPLETION_MODEL)

# Provider retry/backoff
EMBEDDING_TIMEOUT_SECONDS = _get_float("EMBEDDING_TIMEOUT_SECONDS", 30.0)
COMPLETION_TIMEOUT_SECONDS = _get_float("COMPLETION_TIMEOUT_SECONDS", 30.0)
PROVIDER_RETRY_MAX = _get_int("PROVIDER_RETRY_MAX", 2)
PROVIDER_RETRY_BACKOFF_SECONDS = _get_float("PROVIDER_RETRY_BACKOFF_SECONDS", 0.5)
PROVIDER_RETRY_JITTER_SECONDS = _get_float("PROVIDER_RETRY_JITTER_SECONDS", 0.25)
PROVIDER_FAILURE_THRESHOLD = _get_int("PROVIDER_FAILURE_THRESHOLD", 5)
PROVIDER_COOLDOWN_SECONDS = _get_int("PROVIDER_COOLDOWN_SECONDS", 60)

# Memory policy
MEMORY_MERGE_THRESHOLD = _get_float("MEMORY_MERGE_THRESHOLD", 0.85)
MEMORY_MERGE_MAX_LENGTH = _get_int("MEMORY_MERGE_MAX_LENGTH", 2000)
MEMORY_SEARCH_MIN_SIMILARITY = _get_float("MEMORY_SEARCH_MIN_SIMILARITY", 0.7)
MEMORY_LIST_LIMIT = _get_int("MEMORY_LIST_LIMIT", 50)
MEMORY_RECALL_LIMIT = _get_int("MEMORY_RECALL_LIMIT", 20)
MEMORY_EXTRACTION_MAX_FACTS = _get_int("MEMORY_EXTRACTION_MAX_FACTS", 20)

# Knowledge retrieval
KNOWLEDGE_MIN_SIMILARITY = _get_float("KNOWLEDGE_MIN_SIMILARITY", 0.7)
KNOWLEDGE_DEFAULT_LANGUAGE = os.environ.get("KNOWLEDGE_DEFAULT_LANGUAGE", "en").strip().lower()

# Stage transitions
STAGE_SWITCH_MIN_CONFIDENCE = _get_int("STAGE_SWITCH_MIN_CONFIDENCE", 70)
STAGE_HISTORY_WINDOW = _get_int("STAGE_HISTORY_WINDOW", 4)
STAGE_EXPLICIT_SWITCH_CUES = _get_list(
    "STAGE_EXPLICIT_SWITCH_CUES",
    (
        "stop",
        "end session",
        "switch to",
        "go to",
        "different topic",
        "self-reflection",
        "other perspective",
        "action planning",
        "conflict resolution",
        "beenden",
        "abbrechen",
        "aufhören",
        "wechseln zu",
        "anderes thema",
    ),
)

# Tool orchestration
MAX_TOOL_CALLS = _get_int("MAX_TOOL_CALLS", 5)
TOOL_TIMEOUT_SECONDS = _get_float("TOOL_TIMEOUT_SECONDS", 5.0)
TOOL_PHASE_TIMEOUT_SECONDS = _get_float("TOOL_PHASE_TIMEOUT_SECONDS", 15.0)
TOOL_HISTORY_WINDOW = _get_int("TOOL_HISTORY_WINDOW", 4)

# Result caching
RESULT_CACHE_ENABLED = _get_bool("RESULT_CACHE_ENABLED", True)
KNOWLEDGE_CACHE_TTL_SECONDS = _get_int("KNOWLEDGE_CACHE_TTL_SECONDS", 300)
MEMORY_CACHE_TTL_SECONDS = _get_int("MEMORY_CACHE_TTL_SECONDS", 30)

# Background maintenance
MEMORY_PURGE_INTERVAL_SECONDS = _get_int("MEMORY_PURGE_INTERVAL_SECONDS", 3600)
CACHE_SWEEP_INTERVAL_SECONDS = _get_int("CACHE_SWEEP_INTERVAL_SECONDS", 300)

# Request/input limits
MAX_RESULT_LIMIT = _get_int("COACHCORE_MAX_RESULT_LIMIT", 100)
MAX_QUERY_LENGTH = _get_int("COACHCORE_MAX_QUERY_LENGTH", 4000)
MAX_TEXT_LENGTH = _get_int("COACHCORE_MAX_TEXT_LENGTH", 8000)
MAX_SHORT_TEXT_LENGTH = _get_int("COACHCORE_MAX_SHORT_TEXT_LENGTH", 255)
MAX_TITLE_LENGTH = _get_int("COACHCORE_MAX_TITLE_LENGTH", 500)
MAX_TAG_ITEMS = _get_int("COACHCORE_MAX_TAG_ITEMS", 50)
MAX_LIST_ITEM_LENGTH = _get_int("COACHCORE_MAX_LIST_ITEM_LENGTH", 1000)
MAX_EMBEDDING_TEXT_LENGTH = _get_int("COACHCORE_MAX_EMBEDDING_TEXT_LENGTH", 8000)


def validate_and_prepare_config() -> None:
    """Validate configuration and apply derived settings at startup."""
    global DATABASE_URL, VECTOR_BACKEND_EFFECTIVE

    errors = []
    if DB_BACKEND not in {"postgres", "sqlite"}:
        errors.append("DB_BACKEND must be 'postgres' or 'sqlite'")

    if VECTOR_BACKEND not in {"pgvector", "none"}:
        errors.append("VECTOR_BACKEND must be 'pgvector' or 'none'")

    if DB_BACKEND == "sqlite" and VECTOR_BACKEND == "pgvector":
        logger.warning(
            "VECTOR_BACKEND=pgvector requires postgres; using in-process similarity."
        )

    if EMBEDDING_PROVIDER not in {"openai", "local", "none"}:
        errors.append("EMBEDDING_PROVIDER must be 'openai', 'local', or 'none'")

    if EMBEDDING_PROVIDER == "openai" and not OPENAI_API_KEY:
        errors.append("OPENAI_API_KEY is required when EMBEDDING_PROVIDER=openai")

    if not DATABASE_URL:
        if DB_BACKEND == "sqlite":
            if not SQLITE_PATH:
                errors.append("SQLITE_PATH environment variable is required for sqlite")
            else:
                DATABASE_URL = f"sqlite:///{SQLITE_PATH}"
        else:
            errors.append("DATABASE_URL environment variable is required")
    else:
        is_sqlite_url = DATABASE_URL.lower().startswith("sqlite")
        if DB_BACKEND == "sqlite" and not is_sqlite_url:
            errors.append("DATABASE_URL must be a sqlite URL when DB_BACKEND=sqlite")
        if DB_BACKEND == "postgres" and is_sqlite_url:
            errors.append("DATABASE_URL must be a postgres URL when DB_BACKEND=postgres")

    if not 0.0 < MEMORY_MERGE_THRESHOLD <= 1.0:
        errors.append("MEMORY_MERGE_THRESHOLD must be in (0, 1]")
    if MAX_TOOL_CALLS <= 0:
        errors.append("MAX_TOOL_CALLS must be positive")
    if TOOL_PHASE_TIMEOUT_SECONDS < TOOL_TIMEOUT_SECONDS:
        errors.append("TOOL_PHASE_TIMEOUT_SECONDS must be >= TOOL_TIMEOUT_SECONDS")

    VECTOR_BACKEND_EFFECTIVE = _derive_effective_vector_backend(DB_BACKEND, VECTOR_BACKEND)

    if VECTOR_BACKEND_EFFECTIVE == "pgvector":
        from coachcore.models import PGVECTOR_AVAILABLE

        if not PGVECTOR_AVAILABLE:
            errors.append("pgvector package is required when VECTOR_BACKEND=pgvector")

    if errors:
        raise RuntimeError("Configuration invalid: " + "; ".join(errors))
