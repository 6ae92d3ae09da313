"""Corruption recovery: in-place rebuild first, then the newest valid backup."""
from __future__ import annotations

import logging
import shutil
import sqlite3
from contextlib import nullcontext
from pathlib import Path
from typing import Callable, List, Optional

from ledgerstore.domain.storage_models import RepairOutcome, RepairState
from ledgerstore.exceptions import DatabaseLockedError, LedgerStoreError, RepairError
from ledgerstore.infrastructure.db_session import ConnectionManager
from ledgerstore.persistence import file_ops
from ledgerstore.persistence.backup_engine import BackupEngine
from ledgerstore.persistence.restore_engine import RestoreEngine


def vacuum_in_place(db_path) -> None:
    """Rebuild the file through a private rollback-journal connection."""
    conn = sqlite3.connect(str(db_path), timeout=5, isolation_level=None)
    try:
        conn.execute("PRAGMA journal_mode=DELETE")
        conn.execute("VACUUM")
    finally:
        conn.close()


class RepairEngine:
    """Drive a detected corruption to one of three terminal states.

    ``REPAIRED`` and ``RESTORED_FROM_BACKUP`` leave a working store;
    ``PRESERVE_CORRUPTED`` keeps a copy of the damaged file and reopens it
    so the application keeps running.
    """

    def __init__(
        self,
        session: ConnectionManager,
        backups: BackupEngine,
        restorer: RestoreEngine,
        *,
        lock_wait_s: float = 10.0,
        vacuum: Optional[Callable[[str], None]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._session = session
        self._backups = backups
        self._restorer = restorer
        self._lock_wait_s = lock_wait_s
        self._vacuum = vacuum or vacuum_in_place
        self.db_path = Path(session.db_path)
        self.logger = logger or logging.getLogger(__name__)

    def repair(self) -> RepairOutcome:
        history: List[RepairState] = [RepairState.DETECTED]
        self.logger.warning("Database corruption detected in %s; starting repair", self.db_path)

        try:
            file_ops.wait_for_unlock(self.db_path, self._lock_wait_s)
        except DatabaseLockedError as exc:
            self.logger.error("Repair aborted: %s", exc)
            return RepairOutcome(
                RepairState.DETECTED,
                message="Database is in use. Please close other instances of the application and try again.",
                history=history,
                aborted=True,
                error=str(exc),
            )

        history.append(RepairState.BACKUP_CORRUPT_COPY)
        corrupt_copy = self._copy_aside("corrupted")

        history.append(RepairState.ATTEMPT_IN_PLACE_REPAIR)
        if self._repair_in_place():
            history.append(RepairState.VERIFY)
            if file_ops.file_passes_integrity(self.db_path):
                history.append(RepairState.REPAIRED)
                self.logger.info("Database repaired in place")
                return RepairOutcome(
                    RepairState.REPAIRED,
                    message="Database repaired successfully",
                    corrupt_copy=corrupt_copy,
                    history=history,
                )
            self.logger.error("Database still fails the integrity check after rebuild")

        history.append(RepairState.ATTEMPT_RESTORE_FROM_BACKUP)
        candidate = self._backups.find_latest_valid_backup()
        if candidate:
            result = self._restorer.restore_backup(candidate)
            if result.success and file_ops.file_passes_integrity(self.db_path):
                history.append(RepairState.RESTORED_FROM_BACKUP)
                self.logger.info("Database restored from backup %s", candidate)
                return RepairOutcome(
                    RepairState.RESTORED_FROM_BACKUP,
                    message=f"Database restored from backup {Path(candidate).name}",
                    corrupt_copy=corrupt_copy,
                    restored_from=candidate,
                    history=history,
                )
            self.logger.error("Restore from %s did not produce a healthy database: %s", candidate, result.error)

        history.append(RepairState.PRESERVE_CORRUPTED)
        preserved = self._copy_aside("corrupted_last_resort")
        if not self._session.is_open:
            try:
                self._session.open()
            except LedgerStoreError as exc:
                self.logger.critical("Could not reopen damaged database: %s", exc)
        self.logger.critical(
            "Database could not be repaired. Damaged copy kept at %s; check %s for backups",
            preserved, self._backups.backup_dir,
        )
        return RepairOutcome(
            RepairState.PRESERVE_CORRUPTED,
            message="Database could not be repaired automatically. A copy of the damaged file was preserved.",
            corrupt_copy=corrupt_copy,
            preserved_path=preserved,
            history=history,
            error="No repair or backup succeeded",
        )

    def _copy_aside(self, marker: str) -> Optional[str]:
        if not self.db_path.exists():
            return None
        target = Path(f"{self.db_path}.{marker}.{file_ops.now_ms()}")
        wal = Path(f"{self.db_path}-wal")
        try:
            with self._session.connection() if self._session.is_open else nullcontext():
                shutil.copy2(self.db_path, target)
                if wal.exists():
                    shutil.copy2(wal, Path(f"{target}-wal"))
        except OSError as exc:
            self.logger.error("Could not copy damaged database to %s: %s", target, exc)
            return None
        self.logger.info("Damaged database copied to %s", target)
        return str(target)

    def _repair_in_place(self) -> bool:
        def _rebuild() -> bool:
            file_ops.wait_for_unlock(self.db_path, self._lock_wait_s)
            file_ops.remove_sidecars(self.db_path)
            try:
                self._vacuum(str(self.db_path))
            except sqlite3.Error as exc:
                raise RepairError(f"In-place rebuild failed: {exc}") from exc
            return True

        try:
            return self._session.swap_file(_rebuild)
        except (LedgerStoreError, OSError) as exc:
            self.logger.error("In-place repair could not run: %s", exc)
            return False
