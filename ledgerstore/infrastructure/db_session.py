"""Owned, swappable SQLite connection shared by every storage component."""
from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator, Optional, TypeVar

from ledgerstore.exceptions import DatabaseConnectionError

T = TypeVar("T")

CONNECT_TIMEOUT_SECONDS = 10.0

# Applied on every open; durability over throughput.
CONNECTION_PRAGMAS = (
    ("journal_mode", "WAL"),
    ("foreign_keys", "ON"),
    ("synchronous", "FULL"),
    ("busy_timeout", "10000"),
    ("wal_autocheckpoint", "500"),
    ("page_size", "4096"),
    ("cache_size", "-64000"),
)


def open_readonly(path, *, timeout: float = 5.0) -> sqlite3.Connection:
    """Open ``path`` read-only through a URI so the file is never created or modified."""
    uri = Path(path).resolve().as_uri() + "?mode=ro"
    conn = sqlite3.connect(uri, uri=True, timeout=timeout)
    conn.row_factory = sqlite3.Row
    return conn


class ConnectionManager:
    """Hold the single live connection and hand it out under a lock.

    Callers never cache the handle: restore and repair replace the file
    underneath, so every access goes through :meth:`connection`.
    """

    def __init__(
        self,
        db_path,
        *,
        logger: Optional[logging.Logger] = None,
        timeout: float = CONNECT_TIMEOUT_SECONDS,
    ) -> None:
        self.db_path = str(db_path)
        self._logger = logger or logging.getLogger(__name__)
        self._timeout = timeout
        self._lock = threading.RLock()
        self._conn: Optional[sqlite3.Connection] = None

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def open(self) -> sqlite3.Connection:
        """Open the store (creating its directory) and apply connection PRAGMAs."""
        with self._lock:
            if self._conn is not None:
                return self._conn
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            try:
                conn = sqlite3.connect(
                    self.db_path,
                    timeout=self._timeout,
                    check_same_thread=False,
                    isolation_level=None,
                )
            except sqlite3.Error as exc:
                raise DatabaseConnectionError(f"Cannot open database {self.db_path}: {exc}") from exc
            conn.row_factory = sqlite3.Row
            self._apply_pragmas(conn)
            self._conn = conn
            self._logger.info("Opened database %s", self.db_path)
            return conn

    def _apply_pragmas(self, conn: sqlite3.Connection) -> None:
        for name, value in CONNECTION_PRAGMAS:
            try:
                conn.execute(f"PRAGMA {name}={value}")
            except sqlite3.Error as exc:
                # Non-fatal; continue with engine defaults
                self._logger.warning("PRAGMA %s=%s failed: %s", name, value, exc)
        if self._logger.isEnabledFor(logging.DEBUG):
            for name in ("journal_mode", "synchronous", "foreign_keys"):
                try:
                    row = conn.execute(f"PRAGMA {name}").fetchone()
                    self._logger.debug("PRAGMA %s = %s", name, row[0] if row else None)
                except sqlite3.Error:
                    pass

    def close(self) -> None:
        with self._lock:
            conn, self._conn = self._conn, None
            if conn is None:
                return
            try:
                conn.close()
                self._logger.debug("Database connection closed")
            except sqlite3.Error as exc:
                self._logger.error("Error closing SQLite connection: %s", exc, exc_info=True)

    def reopen(self) -> sqlite3.Connection:
        with self._lock:
            self.close()
            return self.open()

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Yield the current live connection while holding the session lock."""
        with self._lock:
            conn = self._conn
            if conn is None:
                raise DatabaseConnectionError("Database connection is not open")
            yield conn

    def with_connection(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        with self.connection() as conn:
            return fn(conn)

    @contextmanager
    def transaction(self, mode: str = "DEFERRED") -> Iterator[sqlite3.Connection]:
        """BEGIN/COMMIT around the block; joins an already-open transaction."""
        with self.connection() as conn:
            if conn.in_transaction:
                yield conn
                return
            conn.execute(f"BEGIN {mode}")
            try:
                yield conn
            except BaseException:
                try:
                    conn.execute("ROLLBACK")
                except sqlite3.Error as exc:
                    self._logger.error("Rollback failed: %s", exc, exc_info=True)
                raise
            else:
                conn.execute("COMMIT")

    def swap_file(self, fn: Callable[[], Any]) -> Any:
        """Close, run ``fn`` against the closed file, and reopen, atomically for other threads."""
        with self._lock:
            self.close()
            try:
                return fn()
            finally:
                self.open()
