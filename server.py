"""
Pond - multi-tenant memory store on PostgreSQL + pgvector
HTTP entry point (health surface only)
"""

import uvicorn

import pond.config as config
from app.main import app


if __name__ == "__main__":
    config.logger.info("Pond starting...")
    uvicorn.run(app, host=config.POND_HOST, port=config.POND_PORT)
