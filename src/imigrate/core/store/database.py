# src/imigrate/core/store/database.py
"""Database connection management for the migration store.

A single embedded SQLite database holds environments, jobs, rows and
attempts. Other SQLAlchemy URLs work but are not tuned for.
"""

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Self

from sqlalchemy import Connection, create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import make_url
from sqlalchemy.pool import StaticPool

from imigrate.core.store.schema import metadata


class MigrationDB:
    """Migration store connection manager.

    Transactions are serialized behind a process-wide lock. SQLite allows a
    single writer anyway; serializing in-process avoids SQLITE_BUSY churn
    when dozens of insert workers record attempts at once.
    """

    def __init__(self, connection_string: str) -> None:
        """Initialize database connection and create missing tables.

        Args:
            connection_string: SQLAlchemy connection string
                e.g., "sqlite:///./state/imigrate.db"
        """
        self.connection_string = connection_string
        self._lock = threading.RLock()
        self._engine: Engine | None = None
        self._setup_engine()
        metadata.create_all(self.engine)

    def _setup_engine(self) -> None:
        url = make_url(self.connection_string)
        if url.drivername.startswith("sqlite") and url.database not in (None, "", ":memory:"):
            # SQLite won't create missing parent directories
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)
        self._engine = create_engine(self.connection_string, echo=False)
        if self.connection_string.startswith("sqlite"):
            MigrationDB._configure_sqlite(self._engine)

    @staticmethod
    def _configure_sqlite(engine: Engine) -> None:
        """Configure SQLite engine for reliability.

        Registers a connection event hook that sets:
        - PRAGMA journal_mode=WAL (readers don't block the writer)
        - PRAGMA foreign_keys=ON (referential integrity)
        - PRAGMA busy_timeout=5000 (contention tolerance)
        """

        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection: object, connection_record: object) -> None:
            cursor = dbapi_connection.cursor()  # type: ignore[attr-defined]  # DBAPI connection typed as object
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute("PRAGMA busy_timeout=5000")
            cursor.close()

    @property
    def engine(self) -> Engine:
        """Get the SQLAlchemy engine."""
        if self._engine is None:
            raise RuntimeError("Database not initialized")
        return self._engine

    def close(self) -> None:
        """Close database connection."""
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        self.close()

    @classmethod
    def in_memory(cls) -> Self:
        """Create an in-memory SQLite database for testing.

        One connection is shared by every thread (StaticPool); without it
        each worker thread would see its own empty database.
        """
        engine = create_engine(
            "sqlite:///:memory:",
            echo=False,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        cls._configure_sqlite(engine)
        metadata.create_all(engine)
        instance = cls.__new__(cls)
        instance.connection_string = "sqlite:///:memory:"
        instance._lock = threading.RLock()
        instance._engine = engine
        return instance

    @classmethod
    def from_url(cls, url: str) -> Self:
        """Create database from connection URL, creating tables if needed."""
        return cls(url)

    @contextmanager
    def connection(self) -> Iterator[Connection]:
        """Get a database connection with automatic transaction handling.

        Uses engine.begin(): commits on successful block exit, rolls back
        on exception.

        Usage:
            with db.connection() as conn:
                conn.execute(jobs_table.insert().values(...))
        """
        with self._lock, self.engine.begin() as conn:
            yield conn
