"""
Unit of work over the connection manager.
"""

from __future__ import annotations

from typing import Callable, TypeVar

from sqlalchemy.engine import Connection

from pond.db import DatabaseConnection

T = TypeVar("T")


class UnitOfWork:
    """Run several repository calls as one atomic write.

    Repository methods given the ``conn`` passed to ``fn`` join its
    transaction instead of opening their own.
    """

    def __init__(self, db: DatabaseConnection):
        self.db = db

    def execute(self, fn: Callable[[Connection], T]) -> T:
        return self.db.with_transaction(fn)

    def execute_read_only(self, fn: Callable[[Connection], T]) -> T:
        return self.db.with_connection(fn)
