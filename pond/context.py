"""
Tenant context binding for row-level security.

The tenant id is bound server side with ``pond_set_tenant_context`` and is
local to the current transaction, so it can never leak to the next user of a
pooled connection.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import text
from sqlalchemy.engine import Connection

import pond.config as config
from pond.validators import is_uuid, validate_tenant_id

TENANT_SETTING = "pond.current_tenant_id"

logger = config.logger.getChild("tenant")

_SET_TENANT_SQL = text("SELECT pond_set_tenant_context(CAST(:tenant_id AS uuid))")
_CLEAR_TENANT_SQL = text("SELECT set_config(:setting, '', true)")
_GET_TENANT_SQL = text("SELECT NULLIF(current_setting(:setting, true), '') AS tenant_id")


class TenantContext:
    """Bind, read and clear the tenant id on one connection."""

    def __init__(self, conn: Connection):
        self.conn = conn

    @staticmethod
    def validate_tenant_id(tenant_id: Optional[str]) -> bool:
        return is_uuid(tenant_id)

    def set_tenant(self, tenant_id: str) -> None:
        tenant_value = validate_tenant_id(tenant_id)
        logger.debug(f"Binding tenant context {tenant_value}")
        self.conn.execute(_SET_TENANT_SQL, {"tenant_id": tenant_value})

    def clear_tenant(self) -> None:
        self.conn.execute(_CLEAR_TENANT_SQL, {"setting": TENANT_SETTING})

    def get_current_tenant(self) -> Optional[str]:
        value = self.conn.execute(_GET_TENANT_SQL, {"setting": TENANT_SETTING}).scalar()
        return str(value) if value else None

    @contextmanager
    def bound(self, tenant_id: str) -> Iterator[str]:
        """Bind ``tenant_id`` for the block and restore the previous binding afterwards."""
        previous = self.get_current_tenant()
        self.set_tenant(tenant_id)
        try:
            yield validate_tenant_id(tenant_id)
        finally:
            if previous:
                self.set_tenant(previous)
            else:
                self.clear_tenant()


def bind_tenant(conn: Connection, tenant_id: str) -> None:
    TenantContext(conn).set_tenant(tenant_id)


__all__ = [
    "TENANT_SETTING",
    "TenantContext",
    "bind_tenant",
]
