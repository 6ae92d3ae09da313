"""Replace the live store with a backup, keeping the prior store recoverable."""
from __future__ import annotations

import json
import logging
import os
import shutil
import sqlite3
import tempfile
from contextlib import nullcontext
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from ledgerstore.domain.storage_models import RestoreResult
from ledgerstore.exceptions import (
    ChecksumMismatchError,
    DatabaseConnectionError,
    LedgerStoreError,
    RestoreError,
)
from ledgerstore.infrastructure.db_session import ConnectionManager, open_readonly
from ledgerstore.persistence import file_ops, schema
from ledgerstore.persistence.backup_engine import BackupEngine
from ledgerstore.persistence.checkpoint import CheckpointController
from ledgerstore.persistence.migrations import ensure_schema
from ledgerstore.security import encryption

SQLITE_HEADER = b"SQLite format 3\x00"

PassphraseProvider = Callable[[], Optional[str]]


def detect_format(path) -> str:
    """``"sqlite"``, ``"encrypted"`` or ``"json"`` judged by file content."""
    with open(path, "rb") as handle:
        head = handle.read(len(SQLITE_HEADER))
    if head == SQLITE_HEADER:
        return "sqlite"
    if head.startswith(encryption.ARCHIVE_MAGIC):
        return "encrypted"
    return "json"


class RestoreEngine:
    def __init__(
        self,
        session: ConnectionManager,
        checkpointer: CheckpointController,
        backups: BackupEngine,
        *,
        passphrase_provider: Optional[PassphraseProvider] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._session = session
        self._checkpointer = checkpointer
        self._backups = backups
        self._passphrase_provider = passphrase_provider
        self.db_path = Path(session.db_path)
        self.logger = logger or logging.getLogger(__name__)

    def restore_backup(self, backup_path) -> RestoreResult:
        """Restore from ``backup_path``; ``None`` means the user cancelled the picker.

        The live store is copied to ``<db>.backup.<ms>`` before it is replaced
        and is put back if the restored store fails verification.
        """
        if backup_path is None:
            return RestoreResult.cancelled_result()
        backup_path = Path(backup_path)
        self.logger.info("Restoring database from %s", backup_path)

        sidecar: Optional[Path] = None
        try:
            self._validate_source(backup_path)
            self._verify_checksum(backup_path)
            with tempfile.TemporaryDirectory(dir=str(self.db_path.parent)) as tmp_dir:
                source = self._plaintext_source(backup_path, Path(tmp_dir))
                kind = detect_format(source)
                if kind == "sqlite":
                    if not file_ops.file_passes_integrity(source):
                        raise RestoreError("Backup file failed the integrity check")
                    file_ops.ensure_writable_dir(self.db_path.parent, create=False)
                    self._checkpointer.checkpoint("TRUNCATE")
                    sidecar = self._snapshot_live()
                    return self._restore_database_file(source, backup_path, sidecar)
                tables = self._load_json(source)
                sidecar = self._snapshot_live()
                self._restore_json(tables)
        except ChecksumMismatchError as exc:
            self.logger.error("Restore aborted: %s", exc)
            return RestoreResult.failed(str(exc), str(backup_path))
        except (LedgerStoreError, sqlite3.Error, OSError, ValueError) as exc:
            self.logger.error("Restore from %s failed: %s", backup_path, exc, exc_info=True)
            rolled_back = self._roll_back(sidecar)
            message = str(exc)
            if rolled_back:
                message += ". Original database restored"
            return RestoreResult.failed(message, str(backup_path), rolled_back=rolled_back)

        self.logger.info("Restore from %s completed", backup_path)
        return RestoreResult.ok(str(backup_path))

    # --- Steps -------------------------------------------------------------

    def _validate_source(self, path: Path) -> None:
        if not path.exists():
            raise RestoreError(f"Backup file does not exist: {path}")
        if not path.is_file():
            raise RestoreError(f"Backup path is not a file: {path}")
        if path.stat().st_size == 0:
            raise RestoreError(f"Backup file is empty: {path}")
        if not os.access(path, os.R_OK):
            raise RestoreError(f"Backup file is not readable: {path}. Check file permissions.")

    def _verify_checksum(self, path: Path) -> None:
        record = self._backups.find_history_record(path)
        if record is None or not record.checksum:
            self.logger.debug("No recorded checksum for %s; skipping verification", path)
            return
        actual = file_ops.calculate_file_checksum(path)
        if actual != record.checksum:
            raise ChecksumMismatchError(
                f"Backup checksum mismatch for {path.name}: the file changed since it was recorded"
            )

    def _plaintext_source(self, path: Path, tmp_dir: Path) -> Path:
        if detect_format(path) != "encrypted":
            return path
        passphrase = self._passphrase_provider() if self._passphrase_provider else None
        if not passphrase:
            raise RestoreError("Backup archive is encrypted and no passphrase is configured")
        target = tmp_dir / "decrypted.db"
        encryption.decrypt_file(path, target, passphrase, logger=self.logger)
        return target

    def _snapshot_live(self) -> Optional[Path]:
        if not self.db_path.exists():
            return None
        sidecar = Path(f"{self.db_path}.backup.{file_ops.now_ms()}")
        with self._session.connection() if self._session.is_open else nullcontext():
            shutil.copy2(self.db_path, sidecar)
        self.logger.info("Current database saved to %s", sidecar)
        return sidecar

    def _restore_database_file(self, source: Path, original: Path, sidecar: Optional[Path]) -> RestoreResult:
        def _replace() -> None:
            shutil.copy2(source, self.db_path)
            file_ops.remove_sidecars(self.db_path)

        self._session.swap_file(_replace)
        missing = self._missing_tables()
        if missing:
            self.logger.error("Restored database is missing tables: %s", ", ".join(missing))
            if self._roll_back(sidecar):
                return RestoreResult.failed(
                    f"Restored database is missing required tables ({', '.join(missing)}). "
                    "Original database restored",
                    str(original),
                    rolled_back=True,
                )
            return RestoreResult.failed(
                f"Restored database is missing required tables ({', '.join(missing)})", str(original)
            )

        self._session.with_connection(lambda conn: ensure_schema(conn, logger=self.logger))
        self.logger.info("Database file restored from %s", original)
        return RestoreResult.ok(str(original))

    def _missing_tables(self):
        try:
            with self._session.connection() as conn:
                return [t for t in schema.REQUIRED_TABLES if not schema.table_exists(conn, t)]
        except (sqlite3.Error, DatabaseConnectionError) as exc:
            self.logger.error("Cannot inspect restored database: %s", exc)
            return list(schema.REQUIRED_TABLES)

    def _load_json(self, source: Path) -> Dict[str, List[Dict[str, Any]]]:
        with open(source, "r", encoding="utf-8") as handle:
            try:
                payload = json.load(handle)
            except json.JSONDecodeError as exc:
                raise RestoreError(f"Backup is neither a database nor a JSON export: {exc}") from exc
        tables: Dict[str, Any] = payload.get("tables") if isinstance(payload, dict) else None
        if not isinstance(tables, dict):
            raise RestoreError("JSON backup has no 'tables' section")
        for table, rows in tables.items():
            if rows is None:
                continue
            if not isinstance(rows, list):
                raise RestoreError(f"JSON backup table {table!r} must be a list of rows")
            bad = next((i for i, row in enumerate(rows) if not isinstance(row, dict)), None)
            if bad is not None:
                raise RestoreError(f"JSON backup table {table!r} has a malformed row at index {bad}")
        return tables

    def _restore_json(self, tables: Dict[str, List[Dict[str, Any]]]) -> None:
        with self._session.transaction("IMMEDIATE") as conn:
            conn.execute("PRAGMA defer_foreign_keys=ON")
            for table, rows in tables.items():
                if not schema.table_exists(conn, table):
                    self.logger.warning("Skipping unknown table %s in JSON backup", table)
                    continue
                columns = set(schema.table_columns(conn, table))
                conn.execute(f'DELETE FROM "{table}"')
                for row in rows or ():
                    data = {k: v for k, v in row.items() if k in columns}
                    if not data:
                        continue
                    names = ", ".join(f'"{k}"' for k in data)
                    marks = ", ".join("?" for _ in data)
                    conn.execute(f'INSERT INTO "{table}" ({names}) VALUES ({marks})', list(data.values()))
        self.logger.info("Restored %d tables from JSON backup", len(tables))

    def _roll_back(self, sidecar: Optional[Path]) -> bool:
        if sidecar is None or not sidecar.exists():
            return False

        def _put_back() -> None:
            shutil.copy2(sidecar, self.db_path)
            file_ops.remove_sidecars(self.db_path)

        try:
            self._session.swap_file(_put_back)
        except (OSError, LedgerStoreError) as exc:
            self.logger.critical("Could not reinstate %s from %s: %s", self.db_path, sidecar, exc, exc_info=True)
            return False
        self.logger.warning("Original database reinstated from %s", sidecar)
        return True

