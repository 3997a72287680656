"""
Health and dependency endpoints.
"""

from __future__ import annotations

from fastapi import APIRouter, HTTPException

import pond.config as config
from pond.db import DB
from pond.errors import MigrationConfigurationError
from pond.migrations import MigrationRunner, discover_migrations
from pond.services.embeddings import OllamaEmbeddingService


router = APIRouter()


def _expected_schema_version() -> int | None:
    try:
        migrations = discover_migrations(config.POND_MIGRATIONS_DIR)
    except MigrationConfigurationError as exc:
        config.logger.warning(f"Cannot read migrations for health check: {exc}")
        return None
    return migrations[-1].version if migrations else 0


def _check_db_health() -> dict:
    if DB.connection is None:
        return {"ok": False, "error": "db_not_initialized"}
    if not DB.connection.health_check():
        return {"ok": False, "error": "db_unreachable"}

    try:
        with DB.connection.connection() as conn:
            current = MigrationRunner(conn).read_current_version()
    except Exception as exc:
        return {"ok": False, "error": str(exc)}

    expected = _expected_schema_version()
    return {
        "ok": True,
        "mode": DB.connection.mode,
        "schema_version": current,
        "schema_expected": expected,
        "schema_up_to_date": expected is None or current == expected,
    }


def _check_embedding_health() -> dict:
    service = OllamaEmbeddingService()
    try:
        healthy = service.is_healthy()
    finally:
        service.close()
    return {
        "status": "ok" if healthy else "error",
        "provider": "ollama",
        "model": service.default_model,
        "endpoint": service.base_url,
    }


@router.get("/health")
async def health():
    """Health check endpoint."""
    db_health = _check_db_health()
    if not db_health.get("ok"):
        raise HTTPException(status_code=503, detail={"database": db_health})

    return {
        "status": "healthy",
        "service": "Pond",
        "version": "0.1.0",
        "environment": config.POND_ENV,
        "database": db_health,
    }


@router.get("/health/deps")
async def health_deps():
    """Dependency health checks, including the embedding provider."""
    db_health = _check_db_health()
    if not db_health.get("ok"):
        raise HTTPException(status_code=503, detail={"database": db_health})

    return {
        "status": "healthy",
        "service": "Pond",
        "database": db_health,
        "embedding_provider": _check_embedding_health(),
    }
