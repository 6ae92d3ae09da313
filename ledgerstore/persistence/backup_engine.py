"""Verified, checksummed point-in-time copies of the live store."""
from __future__ import annotations

import hashlib
import logging
import shutil
import sqlite3
import tempfile
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable, List, Optional

from ledgerstore.domain.storage_models import BackupRecord, BackupResult
from ledgerstore.exceptions import BackupError, DatabaseConnectionError, LedgerStoreError
from ledgerstore.infrastructure.app_constants import BACKUP_DIRNAME
from ledgerstore.infrastructure.db_session import ConnectionManager, open_readonly
from ledgerstore.persistence import file_ops
from ledgerstore.persistence.checkpoint import CheckpointController
from ledgerstore.security import encryption

BACKUP_SUFFIXES = (".db", ".sqlite", ".sqlite3")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 history timestamp; naive values are taken as UTC."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _is_backup_file(path: Path) -> bool:
    return path.is_file() and path.suffix.lower() in BACKUP_SUFFIXES


class BackupEngine:
    """Produce backups of the live store and maintain the backup history."""

    def __init__(
        self,
        session: ConnectionManager,
        checkpointer: CheckpointController,
        *,
        data_dir=None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._session = session
        self._checkpointer = checkpointer
        self.db_path = Path(session.db_path)
        self.data_dir = Path(data_dir) if data_dir else self.db_path.parent
        self.backup_dir = self.data_dir / BACKUP_DIRNAME
        self.logger = logger or logging.getLogger(__name__)

    # --- Public operations -------------------------------------------------

    def create_backup(self, backup_path) -> BackupResult:
        """Manual backup to ``backup_path``; ``None`` means the dialog was dismissed."""
        if backup_path is None:
            return BackupResult.cancelled_result()
        try:
            return self._perform_backup(Path(backup_path), "manual")
        except (LedgerStoreError, sqlite3.Error, OSError) as exc:
            self.logger.error("Backup to %s failed: %s", backup_path, exc, exc_info=True)
            return BackupResult.failed(str(exc), str(backup_path))

    def create_auto_backup(self, backup_path, *, renamed_max_age_days: int = 7) -> BackupResult:
        if backup_path is None:
            return BackupResult.cancelled_result()
        try:
            result = self._perform_backup(Path(backup_path), "auto")
        except (LedgerStoreError, sqlite3.Error, OSError) as exc:
            self.logger.error("Auto backup to %s failed: %s", backup_path, exc, exc_info=True)
            return BackupResult.failed(str(exc), str(backup_path))
        file_ops.cleanup_old_renamed_files(Path(backup_path).parent, renamed_max_age_days)
        return result

    def export_encrypted_backup(self, archive_path, passphrase: str) -> BackupResult:
        """Write an AES-GCM archive of a verified backup to ``archive_path``."""
        if archive_path is None:
            return BackupResult.cancelled_result()
        archive_path = Path(archive_path)
        try:
            file_ops.ensure_writable_dir(archive_path.parent)
            with tempfile.TemporaryDirectory(dir=str(self.data_dir)) as tmp_dir:
                plain = Path(tmp_dir) / "archive-source.db"
                self._export_verified_copy(plain)
                file_ops.safe_delete(archive_path)
                size = encryption.encrypt_file(plain, archive_path, passphrase, logger=self.logger)
            checksum = file_ops.calculate_file_checksum(archive_path)
            self._record_history(archive_path, "manual", size, checksum, encrypted=True)
            return BackupResult.ok(str(archive_path), size, checksum, encrypted=True)
        except (LedgerStoreError, sqlite3.Error, OSError, ValueError) as exc:
            self.logger.error("Encrypted export to %s failed: %s", archive_path, exc, exc_info=True)
            return BackupResult.failed(str(exc), str(archive_path))

    # --- Backup pipeline ---------------------------------------------------

    def _perform_backup(self, dest: Path, backup_type: str) -> BackupResult:
        file_ops.ensure_writable_dir(dest.parent)
        file_size, checksum = self._export_verified_copy(dest)
        self._record_history(dest, backup_type, file_size, checksum)
        self.logger.info("%s backup created at %s (%d bytes)", backup_type.capitalize(), dest, file_size)
        return BackupResult.ok(str(dest), file_size, checksum)

    def _export_verified_copy(self, dest: Path) -> tuple:
        self._checkpointer.checkpoint("FULL")
        file_ops.safe_delete(dest)
        self._export(dest)

        if not dest.exists():
            raise BackupError(f"Backup file was not created: {dest}")
        file_size = dest.stat().st_size
        if file_size == 0:
            raise BackupError(f"Backup file is empty: {dest}")
        if not file_ops.file_passes_integrity(dest):
            try:
                dest.unlink()
            except OSError:
                pass
            raise BackupError("Backup integrity verification failed; the copy was discarded")
        return file_size, file_ops.calculate_file_checksum(dest)

    def _export(self, dest: Path) -> None:
        """Compact copy via ``VACUUM INTO``; raw file copy when that is unavailable."""
        escaped = str(dest).replace("'", "''")
        try:
            with self._session.connection() as conn:
                conn.execute(f"VACUUM INTO '{escaped}'")
            return
        except sqlite3.Error as exc:
            self.logger.warning("VACUUM INTO unavailable (%s); falling back to file copy", exc)
        if dest.exists():
            file_ops.safe_delete(dest)
        self._checkpointer.checkpoint("TRUNCATE")
        with self._session.connection():
            shutil.copy2(self.db_path, dest)

    # --- History -----------------------------------------------------------

    def _record_history(self, path: Path, backup_type: str, file_size: int, checksum: Optional[str],
                        *, encrypted: bool = False) -> None:
        record_id = f"backup_{file_ops.now_ms()}"
        with self._session.connection() as conn:
            conn.execute(
                "INSERT INTO backup_history (id, backupPath, backupType, fileSize, checksum, encrypted, createdAt) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (record_id, str(path), backup_type, file_size, checksum, int(encrypted), _utc_now().isoformat()),
            )

    def find_history_record(self, backup_path) -> Optional[BackupRecord]:
        try:
            with self._session.connection() as conn:
                row = conn.execute(
                    "SELECT * FROM backup_history WHERE backupPath = ? ORDER BY createdAt DESC LIMIT 1",
                    (str(backup_path),),
                ).fetchone()
        except (sqlite3.Error, DatabaseConnectionError) as exc:
            self.logger.warning("Backup history unavailable: %s", exc)
            return None
        return BackupRecord.from_row(row) if row else None

    def _history_records(self, limit: int) -> List[BackupRecord]:
        try:
            with self._session.connection() as conn:
                rows = conn.execute(
                    "SELECT * FROM backup_history ORDER BY createdAt DESC LIMIT ?", (limit,)
                ).fetchall()
        except (sqlite3.Error, DatabaseConnectionError) as exc:
            self.logger.warning("Could not read backup history: %s", exc)
            return []
        return [BackupRecord.from_row(row) for row in rows]

    def scan_backup_files_on_disk(self) -> List[BackupRecord]:
        """Find openable backup files that may be missing from the history table."""
        candidates: List[Path] = []
        if self.backup_dir.is_dir():
            candidates.extend(p for p in self.backup_dir.glob("*.db") if p.is_file())
        if self.data_dir.is_dir():
            candidates.extend(p for p in self.data_dir.glob("backup-*.db") if p.is_file())

        found = []
        for path in candidates:
            if not self._opens_as_database(path):
                continue
            stats = path.stat()
            found.append(
                BackupRecord(
                    id=f"discovered_{hashlib.sha1(str(path).encode('utf-8')).hexdigest()[:12]}",
                    backup_path=str(path),
                    backup_type="auto" if path.name.startswith("backup-") else "manual",
                    file_size=stats.st_size,
                    checksum=None,
                    created_at=datetime.fromtimestamp(stats.st_mtime, timezone.utc).isoformat(),
                    discovered=True,
                )
            )
        return found

    @staticmethod
    def _opens_as_database(path: Path) -> bool:
        if path.stat().st_size == 0:
            return False
        try:
            conn = open_readonly(path)
        except sqlite3.Error:
            return False
        try:
            conn.execute("SELECT name FROM sqlite_master LIMIT 1").fetchall()
            return True
        except sqlite3.Error:
            return False
        finally:
            conn.close()

    def get_backup_history(self, limit: int = 10) -> List[BackupRecord]:
        """History rows merged with on-disk discoveries, newest first, unique by path."""
        merged = {}
        for record in self._history_records(max(limit, 50)):
            merged.setdefault(record.backup_path, record)
        for record in self.scan_backup_files_on_disk():
            merged.setdefault(record.backup_path, record)
        ordered = sorted(
            merged.values(),
            key=lambda r: parse_timestamp(r.created_at) or datetime.min.replace(tzinfo=timezone.utc),
            reverse=True,
        )
        return ordered[:limit]

    def get_last_backup_date(self) -> Optional[datetime]:
        try:
            with self._session.connection() as conn:
                row = conn.execute("SELECT MAX(createdAt) FROM backup_history").fetchone()
        except (sqlite3.Error, DatabaseConnectionError) as exc:
            self.logger.warning("Could not read last backup date: %s", exc)
            return None
        return parse_timestamp(row[0] if row else None)

    def _forget(self, paths: Iterable[str]) -> None:
        paths = [str(p) for p in paths]
        if not paths:
            return
        with self._session.connection() as conn:
            conn.executemany("DELETE FROM backup_history WHERE backupPath = ?", [(p,) for p in paths])

    # --- Retention ---------------------------------------------------------

    def _delete_files(self, files: Iterable[Path]) -> List[str]:
        deleted = []
        for path in files:
            try:
                path.unlink()
                deleted.append(str(path))
            except FileNotFoundError:
                deleted.append(str(path))
            except OSError as exc:
                self.logger.warning("Could not delete backup %s: %s", path, exc)
        self._forget(deleted)
        return deleted

    def _backup_files_oldest_first(self, backup_dir) -> List[Path]:
        directory = Path(backup_dir) if backup_dir else self.backup_dir
        if not directory.is_dir():
            return []
        return sorted((p for p in directory.iterdir() if _is_backup_file(p)), key=lambda p: p.stat().st_mtime)

    def delete_old_backups(self, days_to_keep: int) -> int:
        """Delete history-tracked backups created more than ``days_to_keep`` days ago."""
        cutoff = _utc_now() - timedelta(days=days_to_keep)
        stale = [
            Path(record.backup_path)
            for record in self._history_records(10_000)
            if (parse_timestamp(record.created_at) or cutoff) < cutoff
        ]
        return len(self._delete_files(stale))

    def delete_old_backups_by_count(self, max_files: int, backup_dir=None) -> int:
        """Keep only the newest ``max_files`` backups in ``backup_dir``."""
        files = self._backup_files_oldest_first(backup_dir)
        excess = len(files) - max_files
        if excess <= 0:
            return 0
        return len(self._delete_files(files[:excess]))

    def delete_old_backups_when_exceeds(self, threshold: int = 15, delete_count: int = 10, backup_dir=None) -> int:
        """Once more than ``threshold`` backups exist, drop the ``delete_count`` oldest."""
        files = self._backup_files_oldest_first(backup_dir)
        if len(files) <= threshold:
            return 0
        deleted = self._delete_files(files[:min(delete_count, len(files))])
        self.logger.info("Backup retention removed %d of %d files", len(deleted), len(files))
        return len(deleted)

    # --- Emergency copies --------------------------------------------------

    def create_emergency_backup(self) -> Optional[str]:
        """Checkpoint and copy the store to ``<db>.emergency.<ms>``."""
        if not self.db_path.exists():
            return None
        dest = Path(f"{self.db_path}.emergency.{file_ops.now_ms()}")
        try:
            self._checkpointer.checkpoint("FULL")
            with self._session.connection():
                shutil.copy2(self.db_path, dest)
        except (OSError, DatabaseConnectionError) as exc:
            self.logger.error("Failed to create emergency backup: %s", exc)
            return None
        file_ops.cleanup_old_corrupted_backups(self.db_path)
        self.logger.info("Emergency backup written to %s", dest)
        return str(dest)

    def create_emergency_backup_if_due(self, max_age_seconds: int = 3600) -> Optional[str]:
        """Emergency copy only when neither a backup nor an emergency copy is recent."""
        now = _utc_now()
        last = self.get_last_backup_date()
        if last is not None and (now - last).total_seconds() < max_age_seconds:
            return None
        newest = self._latest_emergency_mtime()
        if newest is not None and time.time() - newest < max_age_seconds:
            return None
        return self.create_emergency_backup()

    # --- Recovery support --------------------------------------------------

    def find_latest_valid_backup(self) -> Optional[str]:
        """First integrity-clean candidate from history, then backups/, then the data dir root."""
        seen = set()
        ordered: List[Path] = []

        def _add(paths: Iterable[Path]) -> None:
            for path in paths:
                key = str(path)
                if key not in seen:
                    seen.add(key)
                    ordered.append(path)

        _add(Path(r.backup_path) for r in self._history_records(50) if not r.encrypted)
        if self.backup_dir.is_dir():
            _add(sorted(
                (p for p in self.backup_dir.glob("*.db") if p.is_file()),
                key=lambda p: p.stat().st_mtime, reverse=True,
            )[:50])
        if self.data_dir.is_dir():
            _add(sorted(
                (p for p in self.data_dir.glob("*.db") if p.is_file() and p.resolve() != self.db_path.resolve()),
                key=lambda p: p.stat().st_mtime, reverse=True,
            )[:20])

        for path in ordered:
            if path.resolve() == self.db_path.resolve():
                continue
            if file_ops.file_passes_integrity(path):
                self.logger.info("Latest valid backup: %s", path)
                return str(path)
        self.logger.error("No valid backup found. Check %s", self.backup_dir)
        return None

    def _latest_emergency_mtime(self) -> Optional[float]:
        copies = list(self.db_path.parent.glob(f"{self.db_path.name}.emergency.*"))
        if not copies:
            return None
        return max(p.stat().st_mtime for p in copies)
