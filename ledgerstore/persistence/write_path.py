"""Generic CRUD access to business tables with transactional write discipline."""
from __future__ import annotations

import json
import logging
import re
import sqlite3
from contextlib import contextmanager
from datetime import date, datetime
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence

from ledgerstore.domain.storage_models import WriteResult
from ledgerstore.exceptions import DatabaseConnectionError, SchemaDriftError
from ledgerstore.infrastructure.db_session import ConnectionManager
from ledgerstore.infrastructure.logger import sanitize_for_logging
from ledgerstore.persistence import file_ops, schema
from ledgerstore.persistence.side_effects import SideEffectQueue
from ledgerstore.security import passwords

FollowUp = Callable[[sqlite3.Connection], None]

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_WHERE_COLUMN = re.compile(r"\b(\w+)\s*[=<>!]")
_MISSING_COLUMN = re.compile(r"no such column: (?:\w+\.)?(\w+)", re.IGNORECASE)
_ROW_RETURNING = ("SELECT", "PRAGMA", "WITH", "EXPLAIN")
_DRIFT_MARKERS = ("no such column", "has no column named", "no such table")


def _identifier(name: str) -> str:
    if not isinstance(name, str) or not _IDENTIFIER.match(name):
        raise ValueError(f"Invalid table or column name: {name!r}")
    return name


def _encode_value(value: Any) -> Any:
    """Serialize structured values; scalars pass through unchanged."""
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, ensure_ascii=False)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


class RecordStore:
    """Insert/update/delete/query against any business table.

    Every public method returns a value (``WriteResult``, rows, or ``None``);
    storage exceptions are logged and converted, never raised to the caller.
    """

    def __init__(
        self,
        session: ConnectionManager,
        *,
        side_effects: Optional[SideEffectQueue] = None,
        on_corruption: Optional[Callable[[BaseException], None]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._session = session
        self._side_effects = side_effects
        self._on_corruption = on_corruption
        self.logger = logger or logging.getLogger(__name__)

    def _check_corruption(self, exc: BaseException) -> None:
        if self._on_corruption is not None and file_ops.is_corruption_error(exc):
            self.logger.critical("Corruption reported by SQLite: %s", exc)
            self._on_corruption(exc)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Expose the write transaction boundary for multi-statement callers."""
        with self._session.transaction("IMMEDIATE") as conn:
            yield conn

    def _prepare(self, table: str, record: Mapping[str, Any]) -> Dict[str, Any]:
        _identifier(table)
        data = {_identifier(key): _encode_value(value) for key, value in record.items()}
        if table == "users" and data.get("password"):
            data["password"] = passwords.ensure_hashed(data["password"])
        return data

    def _request_side_effects(self, table: str, *, inserted: bool) -> None:
        if self._side_effects is None:
            return
        if inserted and table in schema.IMPORTANT_INSERT_TABLES:
            self._side_effects.enqueue("emergency_backup")
            self._side_effects.enqueue("checkpoint")
        elif not inserted and table in schema.IMPORTANT_UPDATE_TABLES:
            self._side_effects.enqueue("checkpoint")

    def _execute_write(self, table: str, sql: str, values: Sequence[Any],
                       follow_up: Optional[FollowUp] = None) -> sqlite3.Cursor:
        try:
            if table in schema.CRITICAL_TABLES or follow_up is not None:
                with self.transaction() as conn:
                    cursor = conn.execute(sql, values)
                    if follow_up is not None:
                        follow_up(conn)
                    return cursor
            with self._session.connection() as conn:
                return conn.execute(sql, values)
        except sqlite3.OperationalError as exc:
            if any(marker in str(exc).lower() for marker in _DRIFT_MARKERS):
                raise SchemaDriftError(f"Schema drift on {table}: {exc}") from exc
            raise

    def insert(self, table: str, record: Mapping[str, Any], *,
               follow_up: Optional[FollowUp] = None) -> WriteResult:
        """Insert ``record``; ``follow_up`` runs in the same transaction."""
        try:
            data = self._prepare(table, record)
            if not data:
                return WriteResult.failed(f"No values supplied for insert into {table}")
            columns = list(data)
            sql = (
                f"INSERT INTO {table} ({', '.join(columns)}) "
                f"VALUES ({', '.join('?' for _ in columns)})"
            )
            cursor = self._execute_write(table, sql, [data[c] for c in columns], follow_up)
            changes = cursor.rowcount
            if changes == 0:
                self.logger.warning("Insert returned 0 changes for table %s", table)
            self._request_side_effects(table, inserted=True)
            return WriteResult.ok(changes, last_insert_rowid=cursor.lastrowid, row_id=data.get("id"))
        except (sqlite3.Error, ValueError, DatabaseConnectionError, SchemaDriftError) as exc:
            self._check_corruption(exc)
            self.logger.error(
                "Error inserting into %s: %s | data=%s", table, exc, sanitize_for_logging(dict(record))
            )
            return WriteResult.failed(str(exc))
        except Exception as exc:
            # follow-up callables may raise anything; the transaction is already rolled back
            self.logger.error("Insert into %s aborted: %s", table, exc, exc_info=True)
            return WriteResult.failed(str(exc))

    def update(self, table: str, row_id: Any, changes: Mapping[str, Any], *,
               follow_up: Optional[FollowUp] = None) -> WriteResult:
        try:
            data = self._prepare(table, changes)
            data.pop("updatedAt", None)
            data.pop("id", None)
            assignments = [f"{column} = ?" for column in data]
            if table not in schema.ITEM_TABLES:
                assignments.append("updatedAt = datetime('now')")
            if not assignments:
                return WriteResult.failed(f"No values supplied for update of {table}")
            sql = f"UPDATE {table} SET {', '.join(assignments)} WHERE id = ?"
            cursor = self._execute_write(table, sql, [*data.values(), row_id], follow_up)
            affected = cursor.rowcount
            if affected == 0:
                self.logger.warning("Update returned 0 changes for %s id %s", table, row_id)
            self._request_side_effects(table, inserted=False)
            return WriteResult.ok(affected, row_id=str(row_id))
        except (sqlite3.Error, ValueError, DatabaseConnectionError, SchemaDriftError) as exc:
            self._check_corruption(exc)
            self.logger.error(
                "Error updating %s id %s: %s | data=%s", table, row_id, exc, sanitize_for_logging(dict(changes))
            )
            return WriteResult.failed(str(exc))
        except Exception as exc:
            self.logger.error("Update of %s id %s aborted: %s", table, row_id, exc, exc_info=True)
            return WriteResult.failed(str(exc))

    def delete(self, table: str, row_id: Any) -> WriteResult:
        try:
            _identifier(table)
            cursor = self._execute_write(table, f"DELETE FROM {table} WHERE id = ?", [row_id])
            if cursor.rowcount == 0:
                self.logger.warning("Delete returned 0 changes for %s id %s", table, row_id)
            return WriteResult.ok(cursor.rowcount, row_id=str(row_id))
        except (sqlite3.Error, ValueError, DatabaseConnectionError, SchemaDriftError) as exc:
            self._check_corruption(exc)
            self.logger.error("Error deleting %s id %s: %s", table, row_id, exc)
            return WriteResult.failed(str(exc))

    def get_by_id(self, table: str, row_id: Any) -> Optional[Dict[str, Any]]:
        try:
            _identifier(table)
            with self._session.connection() as conn:
                row = conn.execute(f"SELECT * FROM {table} WHERE id = ?", (row_id,)).fetchone()
            return dict(row) if row else None
        except (sqlite3.Error, ValueError, DatabaseConnectionError) as exc:
            self._check_corruption(exc)
            self.logger.error("Error reading %s id %s: %s", table, row_id, exc)
            return None

    def get_all(self, table: str, where: str = "", params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        """Return rows of ``table``, optionally filtered.

        A filter naming a column the live table lacks is dropped and the
        unfiltered rows are returned instead of an error.
        """
        try:
            _identifier(table)
        except ValueError as exc:
            self.logger.error("get_all rejected: %s", exc)
            return []
        sql = f"SELECT * FROM {table}"
        if where and where.strip():
            sql += f" WHERE {where}"
        try:
            with self._session.connection() as conn:
                return [dict(row) for row in conn.execute(sql, tuple(params or ())).fetchall()]
        except sqlite3.OperationalError as exc:
            if "no such column" not in str(exc).lower():
                self.logger.error("Error in get_all for %s: %s", table, exc)
                return []
            return self._get_all_degraded(table, where, params, str(exc))
        except (sqlite3.Error, DatabaseConnectionError) as exc:
            self._check_corruption(exc)
            self.logger.error("Error in get_all for %s: %s", table, exc)
            return []

    def _get_all_degraded(self, table: str, where: str, params: Sequence[Any],
                          error: str = "") -> List[Dict[str, Any]]:
        try:
            with self._session.connection() as conn:
                existing = schema.table_columns(conn, table)
                if not existing:
                    return []
                clause = where
                if where and where.strip():
                    referenced = _WHERE_COLUMN.findall(where) + _MISSING_COLUMN.findall(error)
                    missing = sorted({col for col in referenced if col not in existing})
                    if missing:
                        self.logger.warning(
                            "WHERE clause for %s references missing columns %s; ignoring filter",
                            table, ", ".join(missing),
                        )
                        clause = ""
                sql = f"SELECT {', '.join(existing)} FROM {table}"
                args: Sequence[Any] = ()
                if clause and clause.strip():
                    sql += f" WHERE {clause}"
                    args = tuple(params or ())
                return [dict(row) for row in conn.execute(sql, args).fetchall()]
        except (sqlite3.Error, DatabaseConnectionError) as exc:
            self._check_corruption(exc)
            self.logger.error("Error in get_all for %s (retry with column list): %s", table, exc)
            return []

    def raw_query(self, sql: str, params: Sequence[Any] = ()):
        """Run arbitrary SQL: rows for queries, a ``WriteResult`` for statements."""
        try:
            with self._session.connection() as conn:
                cursor = conn.execute(sql, tuple(params or ()))
                if sql.lstrip().upper().startswith(_ROW_RETURNING):
                    return [dict(row) for row in cursor.fetchall()]
                return WriteResult.ok(cursor.rowcount, last_insert_rowid=cursor.lastrowid)
        except (sqlite3.Error, DatabaseConnectionError) as exc:
            self._check_corruption(exc)
            self.logger.error("Raw query failed: %s", exc)
            return WriteResult.failed(str(exc))
