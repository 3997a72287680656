"""
Versioned SQL schema migrations.

Migrations are plain ``.sql`` files named ``{version}_{name}[.up|.down].sql``.
A file without a direction suffix may carry both directions, separated by
``-- up`` and ``-- down`` marker comments. Applied versions are recorded in the
``schema_migrations`` ledger and every run is serialised across processes with
a PostgreSQL session advisory lock.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional, Sequence

from sqlalchemy import inspect, text
from sqlalchemy.engine import Connection

import pond.config as config
from pond.errors import MigrationConfigurationError

MIGRATION_LOCK_ID = 1000001
BUNDLED_MIGRATIONS_DIR = Path(__file__).resolve().parent / "sql"

logger = config.logger.getChild("migrations")

_FILENAME_PATTERN = re.compile(r"^(\d+)_(.+?)(?:\.(up|down))?\.sql$")
_MARKER_PATTERN = re.compile(r"^--\s*(up|down)\b", re.IGNORECASE)

_CREATE_LEDGER_SQL = text(
    """
    CREATE TABLE IF NOT EXISTS schema_migrations (
        version INTEGER PRIMARY KEY,
        name TEXT NOT NULL,
        executed_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """
)
_APPLIED_VERSIONS_SQL = text("SELECT version FROM schema_migrations ORDER BY version")
_ROLLBACK_VERSIONS_SQL = text(
    "SELECT version FROM schema_migrations WHERE version > :target ORDER BY version DESC"
)
_CURRENT_VERSION_SQL = text("SELECT COALESCE(MAX(version), 0) FROM schema_migrations")
_RECORD_SQL = text("INSERT INTO schema_migrations (version, name) VALUES (:version, :name)")
_FORGET_SQL = text("DELETE FROM schema_migrations WHERE version = :version")
_LOCK_SQL = text("SELECT pg_advisory_lock(:lock_id)")
_UNLOCK_SQL = text("SELECT pg_advisory_unlock(:lock_id)")


@dataclass(frozen=True)
class Migration:
    version: int
    name: str
    sql: str
    down_sql: Optional[str] = None


def parse_single_migration_file(content: str) -> tuple[str, Optional[str]]:
    """Split a file into (up, down) SQL on ``-- up`` / ``-- down`` markers.

    Lines before any marker belong to the up section. Returns ``None`` for the
    down section when it is absent or empty.
    """
    sections: dict[str, list[str]] = {"up": [], "down": []}
    current = "up"
    for line in content.splitlines():
        marker = _MARKER_PATTERN.match(line.strip())
        if marker:
            current = marker.group(1).lower()
            continue
        sections[current].append(line)

    up_sql = "\n".join(sections["up"]).strip()
    down_sql = "\n".join(sections["down"]).strip()
    return up_sql, down_sql or None


def discover_migrations(directory: str | Path) -> list[Migration]:
    """Load every migration below ``directory``, sorted by version."""
    root = Path(directory)
    if not root.is_dir():
        raise MigrationConfigurationError(f"Migrations directory not found: {root}", error_type="not_found")

    found: dict[int, dict] = {}
    for path in sorted(root.rglob("*.sql")):
        match = _FILENAME_PATTERN.match(path.name)
        if not match:
            logger.warning(f"Skipping migration file with unexpected name: {path.name}")
            continue

        version = int(match.group(1))
        name = match.group(2).replace("_", " ")
        direction = match.group(3)
        content = path.read_text(encoding="utf-8")
        entry = found.setdefault(version, {"name": name, "up": None, "down": None})

        if direction:
            sections = {direction: content.strip() or None}
        else:
            up_sql, down_sql = parse_single_migration_file(content)
            sections = {"up": up_sql or None, "down": down_sql}

        for key, value in sections.items():
            if value is None:
                continue
            if entry[key] is not None:
                raise MigrationConfigurationError(
                    f"Migration {version} defines its {key} SQL more than once",
                    version=version,
                    error_type="duplicate",
                )
            entry[key] = value
        if direction != "down":
            entry["name"] = name

    migrations = []
    for version in sorted(found):
        entry = found[version]
        if not entry["up"]:
            raise MigrationConfigurationError(
                f"Migration {version} has no up SQL",
                version=version,
                error_type="missing_up",
            )
        migrations.append(Migration(version=version, name=entry["name"], sql=entry["up"], down_sql=entry["down"]))

    logger.debug(f"Discovered {len(migrations)} migrations in {root}")
    return migrations


class MigrationRunner:
    """Apply and roll back migrations over one SQLAlchemy connection.

    The advisory lock is session scoped, so the same connection has to be used
    for the whole run.
    """

    def __init__(self, conn: Connection):
        self.conn = conn

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        with self._begin():
            self.conn.execute(_CREATE_LEDGER_SQL)

    def get_applied_versions(self) -> list[int]:
        self.initialize()
        versions = [int(row) for row in self.conn.execute(_APPLIED_VERSIONS_SQL).scalars().all()]
        self._end_read()
        return versions

    def get_current_version(self) -> int:
        self.initialize()
        version = self.conn.execute(_CURRENT_VERSION_SQL).scalar()
        self._end_read()
        return int(version or 0)

    def read_current_version(self) -> int:
        """Current version without creating the ledger; 0 when it does not exist yet."""
        has_ledger = inspect(self.conn).has_table("schema_migrations")
        version = self.conn.execute(_CURRENT_VERSION_SQL).scalar() if has_ledger else 0
        self._end_read()
        return int(version or 0)

    def pending(self, migrations: Iterable[Migration]) -> list[Migration]:
        applied = set(self.get_applied_versions())
        return [m for m in sorted(migrations, key=lambda m: m.version) if m.version not in applied]

    # ------------------------------------------------------------------
    # Apply / roll back
    # ------------------------------------------------------------------

    def run_migrations(self, migrations: Sequence[Migration]) -> list[int]:
        """Apply every unrecorded migration in ascending version order."""
        ordered = sorted(migrations, key=lambda m: m.version)
        applied: list[int] = []
        self._acquire_lock()
        try:
            # Re-read inside the lock; another runner may have finished first
            done = set(self.get_applied_versions())
            for migration in ordered:
                if migration.version in done:
                    continue
                logger.info(f"Applying migration {migration.version}: {migration.name}")
                try:
                    with self._begin():
                        self._execute_script(migration.sql)
                        self.conn.execute(_RECORD_SQL, {"version": migration.version, "name": migration.name})
                except Exception:
                    logger.exception(f"Migration {migration.version} failed")
                    raise
                applied.append(migration.version)
        finally:
            self._release_lock()

        if applied:
            logger.info(f"Applied migrations: {applied}")
        else:
            logger.info("Schema is up to date")
        return applied

    def rollback(self, target_version: int, migrations: Sequence[Migration]) -> list[int]:
        """Undo every applied version above ``target_version``, newest first."""
        if isinstance(target_version, bool) or not isinstance(target_version, int) or target_version < 0:
            raise MigrationConfigurationError("target_version must be a non-negative integer", error_type="invalid_value")

        by_version = {m.version: m for m in migrations}
        rolled_back: list[int] = []
        self._acquire_lock()
        try:
            self.initialize()
            versions = [
                int(row)
                for row in self.conn.execute(_ROLLBACK_VERSIONS_SQL, {"target": target_version}).scalars().all()
            ]
            self._end_read()

            for version in versions:
                migration = by_version.get(version)
                if migration is None:
                    raise MigrationConfigurationError(
                        f"Applied migration {version} is unknown; cannot roll back",
                        version=version,
                        error_type="unknown_version",
                    )
                if not migration.down_sql:
                    raise MigrationConfigurationError(
                        f"Migration {version} has no down SQL",
                        version=version,
                        error_type="missing_down",
                    )

            for version in versions:
                migration = by_version[version]
                logger.info(f"Rolling back migration {version}: {migration.name}")
                try:
                    with self._begin():
                        self._execute_script(migration.down_sql)
                        self.conn.execute(_FORGET_SQL, {"version": version})
                except Exception:
                    logger.exception(f"Rollback of migration {version} failed")
                    raise
                rolled_back.append(version)
        finally:
            self._release_lock()

        logger.info(f"Rolled back to version {target_version}: {rolled_back}")
        return rolled_back

    def run_migrations_from_directory(self, directory: str | Path = None) -> list[int]:
        return self.run_migrations(discover_migrations(directory or config.POND_MIGRATIONS_DIR))

    def rollback_from_directory(self, target_version: int, directory: str | Path = None) -> list[int]:
        return self.rollback(target_version, discover_migrations(directory or config.POND_MIGRATIONS_DIR))

    discover_migrations = staticmethod(discover_migrations)
    parse_single_migration_file = staticmethod(parse_single_migration_file)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _begin(self):
        # SQLAlchemy autobegins on execute; close that before an explicit block
        if self.conn.in_transaction():
            self.conn.commit()
        return self.conn.begin()

    def _end_read(self) -> None:
        if self.conn.in_transaction():
            self.conn.commit()

    def _execute_script(self, sql: str) -> None:
        # no_parameters keeps the DBAPI from treating '%' in the script as a placeholder
        self.conn.exec_driver_sql(sql, execution_options={"no_parameters": True})

    def _acquire_lock(self) -> None:
        logger.debug(f"Waiting for migration lock {MIGRATION_LOCK_ID}")
        self.conn.execute(_LOCK_SQL, {"lock_id": MIGRATION_LOCK_ID})
        self._end_read()

    def _release_lock(self) -> None:
        if self.conn.in_transaction():
            self.conn.rollback()
        try:
            self.conn.execute(_UNLOCK_SQL, {"lock_id": MIGRATION_LOCK_ID})
            self._end_read()
        except Exception:
            # The session lock still ends when the connection closes
            logger.exception(f"Failed to release migration lock {MIGRATION_LOCK_ID}")
            return
        logger.debug(f"Released migration lock {MIGRATION_LOCK_ID}")
