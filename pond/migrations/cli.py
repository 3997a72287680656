"""
Command line entry point for schema migrations.

    python -m pond.migrations.cli up
    python -m pond.migrations.cli down --target 3
    python -m pond.migrations.cli status
"""

from __future__ import annotations

import argparse
import sys
from typing import Optional, Sequence

import pond.config as config
from pond.db import close_db, init_db
from pond.errors import MigrationConfigurationError
from pond.migrations.runner import MigrationRunner, discover_migrations

logger = config.logger.getChild("migrations.cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pond-migrate", description="Manage the Pond database schema.")
    parser.add_argument(
        "--dir",
        dest="directory",
        default=config.POND_MIGRATIONS_DIR,
        help="Directory containing migration .sql files",
    )
    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("up", help="Apply all pending migrations")
    down = commands.add_parser("down", help="Roll back to a target version")
    down.add_argument("--target", type=int, required=True, help="Version to roll back to (0 = empty schema)")
    commands.add_parser("status", help="Show applied and pending migrations")
    return parser


def _status(runner: MigrationRunner, directory: str) -> None:
    migrations = discover_migrations(directory)
    applied = set(runner.get_applied_versions())
    print(f"Current version: {runner.get_current_version()}")
    for migration in migrations:
        marker = "applied" if migration.version in applied else "pending"
        print(f"  {migration.version:04d} {migration.name} [{marker}]")


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    db = init_db()
    try:
        with db.connection() as conn:
            runner = MigrationRunner(conn)
            if args.command == "up":
                applied = runner.run_migrations_from_directory(args.directory)
                print(f"Applied {len(applied)} migration(s): {applied}")
            elif args.command == "down":
                rolled_back = runner.rollback_from_directory(args.target, args.directory)
                print(f"Rolled back {len(rolled_back)} migration(s): {rolled_back}")
            else:
                _status(runner, args.directory)
    except MigrationConfigurationError as exc:
        logger.error(f"Migration configuration error: {exc}")
        return 2
    finally:
        close_db()
    return 0


if __name__ == "__main__":
    sys.exit(main())
