"""
Database connection management.

``DatabaseConnection`` owns either a connection pool or one persistent
connection and hands out SQLAlchemy ``Connection`` objects through scoped
acquisition, so a connection is released on every exit path.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterator, Optional, TypeVar

from sqlalchemy import create_engine, text
from sqlalchemy.engine import URL, Connection, Engine, make_url
from sqlalchemy.pool import NullPool

import pond.config as config

T = TypeVar("T")

logger = config.logger.getChild("db")


@dataclass(frozen=True)
class DatabaseConfig:
    host: str = "localhost"
    port: int = 5432
    user: str = "postgres"
    password: str = "postgres"
    database: str = "pond"
    ssl: bool = False
    pool_size: int = 10
    database_url: Optional[str] = None
    ca_certificate: Optional[str] = None
    mode: Optional[str] = None

    @staticmethod
    def from_env() -> "DatabaseConfig":
        return DatabaseConfig(
            host=config.DB_HOST,
            port=config.DB_PORT,
            user=config.DB_USER,
            password=config.DB_PASSWORD,
            database=config.DB_NAME,
            ssl=config.DB_SSL,
            pool_size=config.DB_POOL_SIZE,
            database_url=config.DATABASE_URL,
            ca_certificate=config.DB_SSL_CERT,
            mode=config.DB_CONNECTION_MODE,
        )


class DatabaseConnection:
    """Pooled or single-connection access to PostgreSQL."""

    def __init__(self, db_config: DatabaseConfig):
        self.config = db_config
        self._engine: Optional[Engine] = None
        self._client: Optional[Connection] = None
        self._init_lock = threading.Lock()
        self._client_lock = threading.RLock()
        # Nesting depth of connection() on the single client; guarded by _client_lock
        self._client_depth = 0

    @classmethod
    def from_env(cls) -> "DatabaseConnection":
        return cls(DatabaseConfig.from_env())

    # ------------------------------------------------------------------
    # Configuration helpers
    # ------------------------------------------------------------------

    @property
    def mode(self) -> str:
        if self.config.mode:
            return self.config.mode
        return "pool" if config.POND_ENV == "production" else "single"

    def _url(self) -> URL:
        if self.config.database_url:
            url = make_url(self.config.database_url)
            # Hosted providers hand out postgres://, which SQLAlchemy has no dialect for
            if url.drivername in ("postgres", "postgresql"):
                url = url.set(drivername="postgresql+psycopg2")
            elif url.drivername.startswith("postgres+"):
                url = url.set(drivername="postgresql" + url.drivername[len("postgres"):])
            return url
        return URL.create(
            "postgresql+psycopg2",
            username=self.config.user,
            password=self.config.password,
            host=self.config.host,
            port=self.config.port,
            database=self.config.database,
        )

    def _connect_args(self) -> dict:
        # TLS settings for a URL come from the URL itself (sslmode=...)
        if self.config.database_url or not self.config.ssl:
            return {}
        if self.config.ca_certificate:
            return {"sslmode": "verify-full", "sslrootcert": self.config.ca_certificate}
        return {"sslmode": "require"}

    def _create_engine(self) -> Engine:
        if self.mode == "pool":
            logger.info(f"Creating connection pool (size={self.config.pool_size})")
            return create_engine(
                self._url(),
                pool_size=self.config.pool_size,
                max_overflow=0,
                pool_pre_ping=True,
                connect_args=self._connect_args(),
            )
        logger.info("Creating single-connection engine")
        return create_engine(
            self._url(),
            poolclass=NullPool,
            connect_args=self._connect_args(),
        )

    def get_engine(self) -> Engine:
        if self._engine is None:
            with self._init_lock:
                if self._engine is None:
                    self._engine = self._create_engine()
        return self._engine

    def _get_client(self) -> Connection:
        if self._client is None or self._client.closed or self._client.invalidated:
            self._client = self.get_engine().connect()
        return self._client

    # ------------------------------------------------------------------
    # Scoped acquisition
    # ------------------------------------------------------------------

    @contextmanager
    def connection(self) -> Iterator[Connection]:
        """Acquire a connection; any implicit transaction is committed on success.

        In single mode a nested acquisition on the same thread gets the same
        connection and leaves committing to the outermost scope, so a unit of
        work stays atomic in both modes.
        """
        if self.mode == "single":
            with self._client_lock:
                if self._client_depth:
                    self._client_depth += 1
                    try:
                        yield self._client
                    finally:
                        self._client_depth -= 1
                    return
                conn = self._get_client()
                self._client_depth = 1
                try:
                    yield from _finish_implicit_transaction(conn)
                finally:
                    self._client_depth = 0
        else:
            with self.get_engine().connect() as conn:
                yield from _finish_implicit_transaction(conn)

    def _is_nested(self) -> bool:
        return self.mode == "single" and self._client_depth > 1

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        """Acquire a connection inside an explicit transaction.

        A nested call in single mode joins the transaction already open on the
        shared connection.
        """
        with self.connection() as conn:
            if self._is_nested():
                yield conn
                return
            trans = conn.begin()
            try:
                yield conn
            except Exception:
                if trans.is_active:
                    trans.rollback()
                raise
            try:
                trans.commit()
            except Exception:
                if trans.is_active:
                    trans.rollback()
                raise

    def with_connection(self, fn: Callable[[Connection], T]) -> T:
        with self.connection() as conn:
            return fn(conn)

    def with_transaction(self, fn: Callable[[Connection], T]) -> T:
        with self.transaction() as conn:
            return fn(conn)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def health_check(self) -> bool:
        try:
            if self.mode == "single":
                with self._client_lock:
                    client = self._client
                    if client is not None and not client.closed and not client.invalidated:
                        with self.connection() as conn:
                            conn.execute(text("SELECT 1"))
                        return True
            if self.mode == "pool" and self._engine is not None:
                with self._engine.connect() as conn:
                    conn.execute(text("SELECT 1"))
                return True

            # Probe without creating the persistent pool/client
            probe = create_engine(self._url(), poolclass=NullPool, connect_args=self._connect_args())
            try:
                with probe.connect() as conn:
                    conn.execute(text("SELECT 1"))
            finally:
                probe.dispose()
            return True
        except Exception as exc:
            logger.error(f"Database health check failed: {exc}")
            return False

    def close(self) -> None:
        with self._client_lock:
            if self._client is not None:
                self._client.close()
                self._client = None
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
        logger.info("Database connections closed")


def _finish_implicit_transaction(conn: Connection) -> Iterator[Connection]:
    try:
        yield conn
    except Exception:
        if conn.in_transaction():
            conn.rollback()
        raise
    if conn.in_transaction():
        conn.commit()


class DB:
    """Process-wide connection holder (avoids global scoping issues)."""

    connection: Optional[DatabaseConnection] = None


def init_db(db_config: Optional[DatabaseConfig] = None) -> DatabaseConnection:
    """Create the process-wide ``DatabaseConnection``."""
    config.validate_and_prepare_config()
    DB.connection = DatabaseConnection(db_config or DatabaseConfig.from_env())
    logger.info(f"Database configured (mode={DB.connection.mode})")
    return DB.connection


def close_db() -> None:
    if DB.connection is not None:
        DB.connection.close()
        DB.connection = None
