"""WAL checkpoint control for the live store."""
from __future__ import annotations

import logging
import os
import sqlite3
from typing import Optional

from ledgerstore.exceptions import DatabaseConnectionError
from ledgerstore.infrastructure.db_session import ConnectionManager

WAL_WARN_BYTES = 5 * 1024 * 1024


class CheckpointController:
    """Merge the write-ahead log into the main file at safe points.

    Failures are logged and reported as ``False``; callers carry on with
    best-effort durability.
    """

    def __init__(self, session: ConnectionManager, *, logger: Optional[logging.Logger] = None) -> None:
        self._session = session
        self._logger = logger or logging.getLogger(__name__)

    def checkpoint(self, mode: str = "TRUNCATE") -> bool:
        try:
            with self._session.connection() as conn:
                if conn.in_transaction:
                    self._logger.debug("Checkpoint deferred: transaction in progress")
                    return False
                conn.execute("PRAGMA synchronous=FULL")
                row = conn.execute(f"PRAGMA wal_checkpoint({mode})").fetchone()
        except (sqlite3.Error, DatabaseConnectionError) as exc:
            self._logger.error("Error performing WAL checkpoint: %s", exc, exc_info=True)
            return False

        busy = bool(row and row[0])
        if busy:
            self._logger.warning("WAL checkpoint(%s) could not complete: readers still active", mode)
        self._warn_if_wal_large()
        return not busy

    def _warn_if_wal_large(self) -> None:
        wal_path = self._session.db_path + "-wal"
        try:
            size = os.path.getsize(wal_path)
        except OSError:
            return
        if size > WAL_WARN_BYTES:
            self._logger.warning(
                "WAL file is still large after checkpoint: %.2f MB", size / (1024 * 1024)
            )
