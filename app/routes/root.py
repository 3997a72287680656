"""
Root endpoint with service metadata.
"""

from __future__ import annotations

from fastapi import APIRouter

import pond.config as config


router = APIRouter()


@router.get("/")
async def root():
    """Root endpoint with service info."""
    return {
        "service": "Pond",
        "version": "0.1.0",
        "description": "Multi-tenant memory store on PostgreSQL + pgvector",
        "environment": config.POND_ENV,
        "embedding_model": config.OLLAMA_EMBEDDING_MODEL,
        "endpoints": {
            "health": "/health",
            "health_deps": "/health/deps",
        },
    }
