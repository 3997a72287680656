"""
Shared configuration for the Pond memory store.
"""

from __future__ import annotations

import logging
import os

LOG_LEVEL = os.environ.get("POND_LOG_LEVEL", "INFO").strip().upper()

logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger("pond")


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


def _get_optional(env_name: str) -> str | None:
    value = os.environ.get(env_name)
    if value is None or not value.strip():
        return None
    return value.strip()


# Runtime environment ("production" switches the default connection mode to pool)
POND_ENV = os.environ.get("POND_ENV", "development").strip().lower()

# Database settings
DATABASE_URL = _get_optional("DATABASE_URL")
DB_HOST = os.environ.get("DB_HOST", "localhost")
DB_PORT = _get_int("DB_PORT", 5432)
DB_USER = os.environ.get("DB_USER", "postgres")
DB_PASSWORD = os.environ.get("DB_PASSWORD", "postgres")
DB_NAME = os.environ.get("DB_NAME", "pond")
DB_SSL = _get_bool("DB_SSL", False)
DB_SSL_CERT = _get_optional("DB_SSL_CERT")
DB_POOL_SIZE = _get_int("DB_POOL_SIZE", 10)
DB_CONNECTION_MODE = _get_optional("DB_CONNECTION_MODE")

CONNECTION_MODES = {"pool", "single"}

# HTTP server
POND_HOST = os.environ.get("POND_HOST", "0.0.0.0")
POND_PORT = _get_int("PORT", 8080)

# Migrations
POND_MIGRATIONS_DIR = os.environ.get(
    "POND_MIGRATIONS_DIR",
    os.path.join(os.path.dirname(os.path.abspath(__file__)), "migrations", "sql"),
)
AUTO_MIGRATE_ON_STARTUP = _get_bool("AUTO_MIGRATE_ON_STARTUP", False)

# Embedding provider (Ollama)
OLLAMA_BASE_URL = os.environ.get("OLLAMA_BASE_URL", "http://localhost:11434").rstrip("/")
OLLAMA_EMBEDDING_MODEL = os.environ.get("OLLAMA_EMBEDDING_MODEL", "nomic-embed-text").strip()
OLLAMA_NLP_MODEL = os.environ.get("OLLAMA_NLP_MODEL", "qwen3:4b-q4_K_M").strip()
OLLAMA_TIMEOUT_SECONDS = _get_float("OLLAMA_TIMEOUT_SECONDS", 30.0)
OLLAMA_MAX_RETRIES = _get_int("OLLAMA_MAX_RETRIES", 3)
OLLAMA_RETRY_BACKOFF_SECONDS = _get_float("OLLAMA_RETRY_BACKOFF_SECONDS", 0.5)
OLLAMA_RETRY_JITTER_SECONDS = _get_float("OLLAMA_RETRY_JITTER_SECONDS", 0.25)

# Request/input limits
MAX_RESULT_LIMIT = _get_int("POND_MAX_RESULT_LIMIT", 1000)
MAX_CONTENT_LENGTH = 7500
MAX_SOURCE_CONTEXT_LENGTH = 1000
MAX_LABEL_LENGTH = _get_int("POND_MAX_LABEL_LENGTH", 255)
MAX_QUERY_LENGTH = _get_int("POND_MAX_QUERY_LENGTH", 4000)


def validate_and_prepare_config() -> None:
    """Validate configuration at startup."""
    errors = []
    if DB_CONNECTION_MODE is not None and DB_CONNECTION_MODE not in CONNECTION_MODES:
        errors.append("DB_CONNECTION_MODE must be 'pool' or 'single'")
    if DB_POOL_SIZE <= 0:
        errors.append("DB_POOL_SIZE must be a positive integer")
    if DATABASE_URL and not DATABASE_URL.lower().startswith("postgres"):
        errors.append("DATABASE_URL must be a postgres URL")
    if DB_SSL_CERT and not os.path.isfile(DB_SSL_CERT):
        errors.append(f"DB_SSL_CERT does not point to a file: {DB_SSL_CERT}")
    if not os.path.isdir(POND_MIGRATIONS_DIR):
        errors.append(f"POND_MIGRATIONS_DIR is not a directory: {POND_MIGRATIONS_DIR}")
    if OLLAMA_MAX_RETRIES < 0:
        errors.append("OLLAMA_MAX_RETRIES must not be negative")

    if DB_SSL and DATABASE_URL:
        logger.warning(
            "DB_SSL is ignored when DATABASE_URL is set; put sslmode in the URL instead."
        )

    if errors:
        raise RuntimeError("Configuration invalid: " + "; ".join(errors))
