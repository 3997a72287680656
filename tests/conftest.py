import threading

import pytest
from sqlalchemy import create_engine, event


@pytest.fixture
def engine(tmp_path):
    """SQLite engine with stand-ins for PostgreSQL advisory locks."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'migrations.sqlite'}",
        connect_args={"check_same_thread": False},
    )
    locks: dict[int, threading.Lock] = {}
    guard = threading.Lock()

    def _lock_for(lock_id):
        with guard:
            return locks.setdefault(lock_id, threading.Lock())

    def advisory_lock(lock_id):
        _lock_for(lock_id).acquire()
        return None

    def advisory_unlock(lock_id):
        _lock_for(lock_id).release()
        return True

    @event.listens_for(engine, "connect")
    def _register(dbapi_conn, connection_record):
        dbapi_conn.create_function("pg_advisory_lock", 1, advisory_lock)
        dbapi_conn.create_function("pg_advisory_unlock", 1, advisory_unlock)

    yield engine
    engine.dispose()
