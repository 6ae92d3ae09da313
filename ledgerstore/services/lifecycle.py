"""Process-level lifecycle around the store: single instance, quit backups, signals."""
from __future__ import annotations

import logging
import signal
from dataclasses import dataclass
from datetime import datetime
from enum import Enum, auto
from pathlib import Path
from typing import Optional

from ledgerstore.domain.storage_models import BackupResult
from ledgerstore.exceptions import DatabaseConnectionError
from ledgerstore.infrastructure import paths
from ledgerstore.infrastructure.app_constants import APP_NAME, APP_VERSION
from ledgerstore.infrastructure.instance_lock import InstanceLock
from ledgerstore.infrastructure.logger import reconfigure_logging
from ledgerstore.infrastructure.settings import StorageSettings, load_storage_settings
from ledgerstore.persistence.database_manager import DatabaseManager


def scheduled_backup_name(interval: str, now: Optional[datetime] = None) -> str:
    """File name shared by every auto backup taken in the same period."""
    now = now or datetime.now()
    if interval == "weekly":
        year, week, _ = now.isocalendar()
        return f"backup-{year}-W{week:02d}.db"
    if interval == "monthly":
        return f"backup-{now:%Y-%m}.db"
    return f"backup-{now:%Y-%m-%d}.db"


def auto_backup_target(manager: DatabaseManager, settings: StorageSettings,
                       now: Optional[datetime] = None) -> Path:
    directory = Path(settings.auto_backup_dir) if settings.auto_backup_dir else manager.backups.backup_dir
    return directory / scheduled_backup_name(settings.auto_backup_interval, now)


INTERVAL_DAYS = {"daily": 1, "weekly": 7, "monthly": 30}


def should_run_auto_backup(settings: StorageSettings, target: Path,
                           last_backup: Optional[datetime] = None,
                           now: Optional[datetime] = None) -> bool:
    """Enabled, and either this period's file is missing or the last recorded backup is too old.

    A period file without a matching history row does not count as a backup.
    """
    if not settings.auto_backup_enabled:
        return False
    if not (target.exists() and target.stat().st_size > 0):
        return True
    if last_backup is None:
        return True
    today = (now or datetime.now()).date()
    if last_backup.tzinfo is not None:
        last_backup = last_backup.astimezone()
    days = (today - last_backup.date()).days
    return days >= INTERVAL_DAYS.get(settings.auto_backup_interval, 1)


def run_auto_backup_at_quit(manager: DatabaseManager, settings: Optional[StorageSettings] = None, *,
                            now: Optional[datetime] = None,
                            logger: Optional[logging.Logger] = None) -> Optional[BackupResult]:
    """Take the periodic backup on quit, then apply retention to its directory."""
    logger = logger or logging.getLogger(__name__)
    settings = settings or manager.settings
    target = auto_backup_target(manager, settings, now)
    if not should_run_auto_backup(settings, target, manager.get_last_backup_date(), now):
        logger.debug("Auto backup not due (%s)", target.name)
        return None

    result = manager.create_auto_backup(target)
    if not result.success:
        logger.error("Auto backup at quit failed: %s", result.error)
        return result
    manager.delete_old_backups_when_exceeds(
        settings.retention_threshold, settings.retention_delete_count, target.parent
    )
    return result


def install_signal_handlers(manager: DatabaseManager, *, logger: Optional[logging.Logger] = None) -> None:
    """Checkpoint and close the store when the process is interrupted or terminated."""
    logger = logger or logging.getLogger(__name__)

    def _handle(signum, _frame):
        logger.warning("Received signal %s; closing database", signum)
        manager.close()
        raise SystemExit(128 + signum)

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            signal.signal(sig, _handle)
        except (ValueError, OSError) as exc:
            # Only the main thread may install handlers
            logger.debug("Could not install handler for %s: %s", sig, exc)


class StartupStatus(Enum):
    """Possible outcomes when opening the store for this process."""

    OK = auto()
    ALREADY_RUNNING = auto()
    FAILED = auto()


@dataclass
class StartupResult:
    status: StartupStatus
    db: Optional[DatabaseManager] = None
    error: Optional[str] = None


class StoreLifecycle:
    """Own the instance lock and the manager between startup and quit."""

    def __init__(self, data_dir=None, *, settings: Optional[StorageSettings] = None,
                 logger: Optional[logging.Logger] = None) -> None:
        self._logger = logger or logging.getLogger(__name__)
        self.data_dir = Path(data_dir) if data_dir else paths.user_data_dir()
        self._settings = settings
        self._lock = InstanceLock(paths.lock_file_path(self.data_dir), logger=self._logger)
        self.db: Optional[DatabaseManager] = None

    def startup(self, *, install_signals: bool = False, configure_logging: bool = False) -> StartupResult:
        if configure_logging:
            reconfigure_logging()
        self._logger.info("Starting %s %s with data directory %s", APP_NAME, APP_VERSION, self.data_dir)
        if not self._lock.try_acquire():
            self._logger.warning("Another instance already owns %s", self.data_dir)
            return StartupResult(StartupStatus.ALREADY_RUNNING)

        settings = self._settings or load_storage_settings(logger=self._logger)
        try:
            self.db = DatabaseManager(paths.database_path(self.data_dir), storage_settings=settings)
        except DatabaseConnectionError as exc:
            self._logger.critical("Failed to open database: %s", exc, exc_info=True)
            self._lock.release()
            return StartupResult(StartupStatus.FAILED, error=str(exc))

        if install_signals:
            install_signal_handlers(self.db, logger=self._logger)
        self._logger.info("Database connection established")
        return StartupResult(StartupStatus.OK, db=self.db)

    def shutdown(self, *, now: Optional[datetime] = None) -> None:
        if self.db is not None:
            run_auto_backup_at_quit(self.db, now=now, logger=self._logger)
            self.db.close()
            self.db = None
        self._lock.release()
