#!/usr/bin/env python
import logging
import sqlite3
import time
from pathlib import Path

from ledgerstore.domain.storage_models import RepairState
from ledgerstore.exceptions import CredentialStoreError, DatabaseConnectionError
from ledgerstore.infrastructure import paths
from ledgerstore.infrastructure.db_session import ConnectionManager
from ledgerstore.infrastructure.settings import get_app_settings, load_storage_settings
from ledgerstore.persistence import file_ops
from ledgerstore.persistence import migrations as persistence_migrations
from ledgerstore.persistence.backup_engine import BackupEngine
from ledgerstore.persistence.checkpoint import CheckpointController
from ledgerstore.persistence.currency_migration import CurrencyMigration
from ledgerstore.persistence.repair import RepairEngine
from ledgerstore.persistence.restore_engine import RestoreEngine
from ledgerstore.persistence.side_effects import SideEffectQueue
from ledgerstore.persistence.write_path import RecordStore
from ledgerstore.security import credential_store

LOW_DISK_WARNING_BYTES = 100 * 1024 * 1024
CLOSE_ATTEMPTS = 3


class DatabaseManager:
    """
    Owns the live store: connection, write path, backups, restore and repair.

    Every engine shares one ``ConnectionManager`` so a restore or repair that
    swaps the file underneath is picked up by the next call.
    """

    def __init__(self, db_path=None, *, storage_settings=None, run_setup=True):
        self.logger = logging.getLogger(__name__)
        self.db_path = Path(db_path) if db_path else paths.database_path()
        self.data_dir = self.db_path.parent
        self.settings = storage_settings or load_storage_settings(logger=self.logger)
        self.logger.info(f"Initializing DatabaseManager for {self.db_path}")

        self.data_dir.mkdir(parents=True, exist_ok=True)
        file_ops.cleanup_stale_wal_files(self.db_path)
        file_ops.cleanup_old_corrupted_backups(self.db_path)

        self.session = ConnectionManager(self.db_path, logger=self.logger)
        self.checkpointer = CheckpointController(self.session, logger=self.logger)
        self._side_effects = SideEffectQueue(
            tasks={
                "checkpoint": self.checkpoint,
                "emergency_backup": self._emergency_backup_if_due,
                "repair": self.repair_database,
            },
            logger=self.logger,
            on_done_getter=lambda: getattr(self, "on_side_effects_done", None),
        )
        # Optional UI callback (set by UI layer)
        self.on_side_effects_done = None

        self._records = None
        self._backups = None
        self._restorer = None
        self._repairer = None

        self.session.open()
        if run_setup:
            self.setup_database()

    # --- Lazily built engines ---------------------------------------------

    @property
    def records(self):
        """Lazy-load the RecordStore instance."""
        if self._records is None:
            self._records = RecordStore(
                self.session,
                side_effects=self._side_effects,
                on_corruption=lambda exc: self._side_effects.enqueue("repair"),
                logger=self.logger,
            )
        return self._records

    @property
    def backups(self):
        if self._backups is None:
            self._backups = BackupEngine(self.session, self.checkpointer, data_dir=self.data_dir, logger=self.logger)
        return self._backups

    @property
    def restorer(self):
        if self._restorer is None:
            self._restorer = RestoreEngine(
                self.session,
                self.checkpointer,
                self.backups,
                passphrase_provider=self._archive_passphrase,
                logger=self.logger,
            )
        return self._restorer

    @property
    def repairer(self):
        if self._repairer is None:
            self._repairer = RepairEngine(
                self.session,
                self.backups,
                self.restorer,
                lock_wait_s=self.settings.lock_wait_s,
                logger=self.logger,
            )
        return self._repairer

    def _archive_passphrase(self):
        try:
            return credential_store.get_secret("archive", settings=get_app_settings(), logger=self.logger)
        except CredentialStoreError as exc:
            self.logger.error(f"Archive passphrase unavailable: {exc}")
            return None

    # --- Schema -----------------------------------------------------------

    def setup_database(self):
        """Create tables, apply migrations and ensure indexes; never aborts startup."""
        try:
            return persistence_migrations.run_schema_setup(self)
        except sqlite3.Error as exc:
            self.logger.error(f"Database setup failed: {exc}", exc_info=True)
            return None

    # --- Write path -------------------------------------------------------

    def insert(self, table, record, *, follow_up=None):
        return self.records.insert(table, record, follow_up=follow_up)

    def update(self, table, row_id, changes, *, follow_up=None):
        return self.records.update(table, row_id, changes, follow_up=follow_up)

    def delete(self, table, row_id):
        return self.records.delete(table, row_id)

    def get_by_id(self, table, row_id):
        return self.records.get_by_id(table, row_id)

    def get_all(self, table, where="", params=()):
        return self.records.get_all(table, where, params)

    def raw_query(self, sql, params=()):
        return self.records.raw_query(sql, params)

    def transaction(self):
        return self.records.transaction()

    # --- Durability -------------------------------------------------------

    def checkpoint(self, mode="TRUNCATE"):
        return self.checkpointer.checkpoint(mode)

    def drain_side_effects(self, timeout=5.0):
        return self._side_effects.drain(timeout)

    def side_effect_failures(self):
        return self._side_effects.failures()

    def _emergency_backup_if_due(self):
        return self.backups.create_emergency_backup_if_due(self.settings.emergency_backup_age_s)

    # --- Backup / restore / repair ------------------------------------------

    def create_backup(self, backup_path):
        return self.backups.create_backup(backup_path)

    def create_auto_backup(self, backup_path):
        return self.backups.create_auto_backup(
            backup_path, renamed_max_age_days=self.settings.renamed_file_max_age_days
        )

    def export_encrypted_backup(self, archive_path, passphrase):
        return self.backups.export_encrypted_backup(archive_path, passphrase)

    def restore_backup(self, backup_path):
        return self.restorer.restore_backup(backup_path)

    def get_backup_history(self, limit=10):
        return self.backups.get_backup_history(limit)

    def get_last_backup_date(self):
        return self.backups.get_last_backup_date()

    def delete_old_backups(self, days_to_keep):
        return self.backups.delete_old_backups(days_to_keep)

    def delete_old_backups_by_count(self, max_files, backup_dir=None):
        return self.backups.delete_old_backups_by_count(max_files, backup_dir)

    def delete_old_backups_when_exceeds(self, threshold=None, delete_count=None, backup_dir=None):
        return self.backups.delete_old_backups_when_exceeds(
            threshold or self.settings.retention_threshold,
            delete_count or self.settings.retention_delete_count,
            backup_dir,
        )

    def repair_database(self):
        outcome = self.repairer.repair()
        if outcome.success and outcome.state is RepairState.REPAIRED:
            self.setup_database()
        return outcome

    def currency_migration(self):
        """Migration runner bound to this store; the WAL is merged first."""
        self.checkpoint("TRUNCATE")
        return CurrencyMigration(self.db_path, logger=self.logger)

    # --- Health -----------------------------------------------------------

    def health_check(self):
        """Quick structural check plus a free-space warning."""
        report = {"ok": False, "details": [], "free_bytes": file_ops.free_disk_space(self.data_dir)}
        try:
            with self.session.connection() as conn:
                ok, details = file_ops.check_integrity(conn, "quick_check")
            report["ok"], report["details"] = ok, details
        except (sqlite3.Error, DatabaseConnectionError) as exc:
            report["details"] = [str(exc)]
        free = report["free_bytes"]
        if free is not None and free < LOW_DISK_WARNING_BYTES:
            self.logger.warning(f"Low disk space: {free / (1024 * 1024):.1f} MB free in {self.data_dir}")
            report["low_disk"] = True
        if not report["ok"]:
            self.logger.error(f"Quick check failed: {report['details'][:5]}")
        return report

    def full_health_check(self):
        """Full integrity check. Returns None when healthy, else the repair outcome."""
        try:
            with self.session.connection() as conn:
                ok, details = file_ops.check_integrity(conn, "integrity_check")
        except (sqlite3.Error, DatabaseConnectionError) as exc:
            ok, details = False, [str(exc)]
        if ok:
            self.logger.info("Database integrity check passed")
            return None
        self.logger.error(f"Integrity check failed: {details[:5]}")
        return self.repair_database()

    # --- Shutdown ---------------------------------------------------------

    def close(self):
        """Stop background work, merge the WAL and close the connection."""
        self._side_effects.shutdown()

        if not self.session.is_open:
            self.logger.debug("No active database connection to close")
            return True

        for attempt in range(1, CLOSE_ATTEMPTS + 1):
            if self.checkpoint("FULL") or self.checkpoint("TRUNCATE"):
                break
            self.logger.warning(f"Checkpoint before close failed (attempt {attempt}/{CLOSE_ATTEMPTS})")
            time.sleep(0.1 * attempt)
        else:
            self.logger.error("Closing with an unmerged WAL; it will be replayed on next open")
        self.session.close()
        self.logger.info("Database closed")
        return True
