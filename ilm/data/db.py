"""
DuckDB connection management for ILM.

One DatabaseManager exists per database file. Every engine component obtains
it through get_db() so that all reads and writes for a file go through the
same connection and lock.
"""

from __future__ import annotations

import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator

import duckdb
import pandas as pd
from loguru import logger

DEFAULT_DB_PATH = Path.home() / "ilm-data" / "ilm.duckdb"


def resolve_db_path(db_path: str | None = None) -> str:
    """
    Resolve the database path to use.

    Args:
        db_path: Explicit path (takes precedence)

    Returns:
        Explicit path, else ILM_DB_PATH, else the default location
    """
    if db_path:
        return str(db_path)
    return os.getenv("ILM_DB_PATH") or str(DEFAULT_DB_PATH)


class DatabaseManager:
    """
    Thread-safe wrapper around a single DuckDB connection.

    Usage:
        db = get_db()
        with db.connection() as conn:
            conn.execute("SELECT 1")

        with db.transaction() as conn:
            conn.execute("UPDATE ...")  # committed on exit, rolled back on error
    """

    _instances: dict[str, "DatabaseManager"] = {}
    _instances_lock = threading.Lock()

    def __init__(self, db_path: str):
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = duckdb.connect(db_path)
        self._lock = threading.RLock()
        self._tx_depth = 0
        self.schema_ready = False
        logger.debug(f"Opened DuckDB database at {db_path}")

    @classmethod
    def get_instance(cls, db_path: str | None = None) -> "DatabaseManager":
        """Return the shared manager for a database path, creating it on first use."""
        path = resolve_db_path(db_path)
        with cls._instances_lock:
            instance = cls._instances.get(path)
            if instance is None:
                instance = cls(path)
                cls._instances[path] = instance
            return instance

    @classmethod
    def reset(cls) -> None:
        """Close every open manager. Used by tests and on shutdown."""
        with cls._instances_lock:
            for instance in cls._instances.values():
                instance.close()
            cls._instances.clear()

    def close(self) -> None:
        """Close the underlying connection."""
        with self._lock:
            try:
                self._conn.close()
            except duckdb.Error as e:
                logger.warning(f"Error closing database {self.db_path}: {e}")

    @contextmanager
    def connection(self) -> Generator[duckdb.DuckDBPyConnection, None, None]:
        """Yield the connection while holding the manager lock."""
        with self._lock:
            yield self._conn

    @contextmanager
    def transaction(self) -> Generator[duckdb.DuckDBPyConnection, None, None]:
        """
        Yield the connection inside a transaction.

        Nested calls join the outermost transaction.
        """
        with self._lock:
            if self._tx_depth > 0:
                self._tx_depth += 1
                try:
                    yield self._conn
                finally:
                    self._tx_depth -= 1
                return

            self._conn.execute("BEGIN TRANSACTION")
            self._tx_depth = 1
            try:
                yield self._conn
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            else:
                self._conn.execute("COMMIT")
            finally:
                self._tx_depth = 0

    def execute(self, query: str, params: list | tuple | None = None) -> None:
        """Execute a statement without returning rows."""
        with self.connection() as conn:
            if params:
                conn.execute(query, params)
            else:
                conn.execute(query)

    def fetchdf(self, query: str, params: list | tuple | None = None) -> pd.DataFrame:
        """Execute a query and return the result as a DataFrame."""
        with self.connection() as conn:
            if params:
                return conn.execute(query, params).fetchdf()
            return conn.execute(query).fetchdf()

    def fetchone(self, query: str, params: list | tuple | None = None) -> tuple[Any, ...] | None:
        """Execute a query and return the first row."""
        with self.connection() as conn:
            if params:
                return conn.execute(query, params).fetchone()
            return conn.execute(query).fetchone()

    def fetchall(self, query: str, params: list | tuple | None = None) -> list[tuple[Any, ...]]:
        """Execute a query and return all rows."""
        with self.connection() as conn:
            if params:
                return conn.execute(query, params).fetchall()
            return conn.execute(query).fetchall()


def get_db(db_path: str | None = None) -> DatabaseManager:
    """
    Get the database manager for a path.

    Args:
        db_path: Optional database path (defaults to ILM_DB_PATH or ~/ilm-data/ilm.duckdb)

    Returns:
        Shared DatabaseManager instance
    """
    return DatabaseManager.get_instance(db_path)
