"""
FastAPI app wiring for Pond.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI

import pond.config as config
from pond.db import DB, close_db, init_db
from pond.migrations import MigrationRunner
from app.routes.health import router as health_router
from app.routes.root import router as root_router


def _apply_migrations() -> list[int]:
    with DB.connection.connection() as conn:
        return MigrationRunner(conn).run_migrations_from_directory(config.POND_MIGRATIONS_DIR)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize on startup, cleanup on shutdown."""
    init_db()
    if config.AUTO_MIGRATE_ON_STARTUP:
        applied = await asyncio.to_thread(_apply_migrations)
        config.logger.info(f"Startup migrations applied: {applied}")
    try:
        yield
    finally:
        close_db()


app = FastAPI(title="Pond", redirect_slashes=False, lifespan=lifespan)
app.include_router(root_router)
app.include_router(health_router)
