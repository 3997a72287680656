from pond.migrations.runner import (
    BUNDLED_MIGRATIONS_DIR,
    MIGRATION_LOCK_ID,
    Migration,
    MigrationRunner,
    discover_migrations,
    parse_single_migration_file,
)

__all__ = [
    "BUNDLED_MIGRATIONS_DIR",
    "MIGRATION_LOCK_ID",
    "Migration",
    "MigrationRunner",
    "discover_migrations",
    "parse_single_migration_file",
]
