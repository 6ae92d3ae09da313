"""One-shot conversion of monetary columns from REAL to integer minor units.

Phases run in order and each is invoked separately against the store file:

``backup``    snapshot every affected table into ``<table>_backup``
``migrate``   rebuild tables with INTEGER money columns (value x 100, half away from zero)
``test``      compare the live values with the scaled snapshots
``rollback``  rebuild every table from its snapshot and original DDL
``cleanup``   drop the snapshots; irreversible, needs ``confirm=True``

Usage::

    python -m ledgerstore.persistence.currency_migration migrate --db ledger.db
"""
from __future__ import annotations

import argparse
import json
import logging
import re
import sqlite3
import sys
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from ledgerstore.domain.storage_models import ColumnCheck, MigrationReport
from ledgerstore.exceptions import DatabaseMigrationError
from ledgerstore.infrastructure.logger import LOG_FORMAT, DatabaseOperation
from ledgerstore.persistence import schema

logger = logging.getLogger(__name__)

SCALE = 100
TOLERANCE_MINOR_UNITS = 1
STATE_TABLE = "currency_migration_state"
BACKUP_SUFFIX = "_backup"
PHASES = ("backup", "migrate", "test", "rollback", "cleanup")

BACKUP_TABLES = tuple(schema.MONETARY_COLUMNS) + (
    "delivery_notes",
    "delivery_note_items",
    "delivery_settlements",
    "settlement_items",
)


def to_minor_units(value):
    """Scale a currency amount by 100, rounding half away from zero.

    ``Decimal(str(value))`` keeps the decimal digits the user typed, so
    ``100.495`` becomes ``10050`` rather than falling victim to binary
    representation.
    """
    if value is None:
        return None
    try:
        scaled = Decimal(str(value)) * SCALE
    except InvalidOperation as exc:
        raise ValueError(f"Not a currency amount: {value!r}") from exc
    return int(scaled.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def _integer_ddl(table: str, ddl: str, columns: Sequence[str]) -> str:
    """Rewrite ``ddl`` to create ``<table>_new`` with INTEGER money columns."""
    scaled_rates = sorted(set(columns) & schema.NON_MONETARY_NUMERIC)
    if scaled_rates:
        raise DatabaseMigrationError(f"Refusing to scale rate columns of {table}: {', '.join(scaled_rates)}")
    header = re.compile(
        rf'^\s*CREATE\s+TABLE\s+(?:IF\s+NOT\s+EXISTS\s+)?["`\[]?{re.escape(table)}["`\]]?\s*\(',
        re.IGNORECASE,
    )
    new_ddl, count = header.subn(f"CREATE TABLE {table}_new (", ddl, count=1)
    if not count:
        raise DatabaseMigrationError(f"Unrecognised table definition for {table}")
    for column in columns:
        new_ddl = re.sub(rf'(\b{re.escape(column)}\s+)REAL\b', r"\1INTEGER", new_ddl, flags=re.IGNORECASE)
    return new_ddl


class CurrencyMigration:
    """Run migration phases against the store at ``db_path``."""

    def __init__(self, db_path, *, logger: Optional[logging.Logger] = None) -> None:
        self.db_path = Path(db_path)
        self.logger = logger or logging.getLogger(__name__)

    def _connect(self) -> sqlite3.Connection:
        if not self.db_path.exists():
            raise DatabaseMigrationError(f"Database not found: {self.db_path}")
        conn = sqlite3.connect(str(self.db_path), timeout=10, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout=10000")
        conn.create_function("to_minor_units", 1, to_minor_units, deterministic=True)
        return conn

    # --- State -------------------------------------------------------------

    @staticmethod
    def _ensure_state_table(conn: sqlite3.Connection) -> None:
        conn.execute(
            f"CREATE TABLE IF NOT EXISTS {STATE_TABLE} (key TEXT PRIMARY KEY, value TEXT, updatedAt TEXT)"
        )

    @staticmethod
    def _get_state(conn: sqlite3.Connection, key: str) -> Optional[str]:
        if not schema.table_exists(conn, STATE_TABLE):
            return None
        row = conn.execute(f"SELECT value FROM {STATE_TABLE} WHERE key = ?", (key,)).fetchone()
        return row[0] if row else None

    @staticmethod
    def _set_state(conn: sqlite3.Connection, key: str, value: str, *, replace: bool = True) -> None:
        verb = "INSERT OR REPLACE" if replace else "INSERT OR IGNORE"
        conn.execute(
            f"{verb} INTO {STATE_TABLE} (key, value, updatedAt) VALUES (?, ?, datetime('now'))",
            (key, value),
        )

    def current_phase(self) -> Optional[str]:
        conn = self._connect()
        try:
            return self._get_state(conn, "phase")
        finally:
            conn.close()

    @staticmethod
    def _backed_up_tables(conn: sqlite3.Connection) -> List[str]:
        return [t for t in BACKUP_TABLES if schema.table_exists(conn, t + BACKUP_SUFFIX)]

    @staticmethod
    def _legacy_columns(conn: sqlite3.Connection) -> Dict[str, List[str]]:
        found = {}
        for table, columns in schema.MONETARY_COLUMNS.items():
            if not schema.table_exists(conn, table):
                continue
            types = schema.column_types(conn, table)
            legacy = [c for c in columns if types.get(c, "").upper() == schema.LEGACY_MONEY_TYPE]
            if legacy:
                found[table] = legacy
        return found

    @staticmethod
    def _foreign_key_violations(conn: sqlite3.Connection) -> int:
        return len(conn.execute("PRAGMA foreign_key_check").fetchall())

    def run(self, phase: str, *, confirm: bool = False) -> MigrationReport:
        if phase not in PHASES:
            return MigrationReport(phase, False, f"Unknown phase: {phase}")
        handler = getattr(self, phase)
        try:
            with DatabaseOperation(f"currency migration {phase}", self.logger):
                return handler(confirm=confirm) if phase == "cleanup" else handler()
        except (sqlite3.Error, DatabaseMigrationError, ValueError) as exc:
            self.logger.error("Currency migration phase %s failed: %s", phase, exc, exc_info=True)
            return MigrationReport(phase, False, str(exc))

    # --- Phases ------------------------------------------------------------

    def backup(self) -> MigrationReport:
        """Snapshot every affected table; tables already snapshotted are left alone."""
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                self._ensure_state_table(conn)
                counts = {}
                for table in BACKUP_TABLES:
                    if not schema.table_exists(conn, table):
                        continue
                    ddl = conn.execute(
                        "SELECT sql FROM sqlite_master WHERE type='table' AND name = ?", (table,)
                    ).fetchone()[0]
                    indexes = [sql for _, sql in schema.index_definitions(conn, [table])]
                    self._set_state(conn, f"ddl:{table}", ddl, replace=False)
                    self._set_state(conn, f"indexes:{table}", json.dumps(indexes), replace=False)
                    conn.execute(f"CREATE TABLE IF NOT EXISTS {table}{BACKUP_SUFFIX} AS SELECT * FROM {table}")
                    backup_rows = conn.execute(f"SELECT COUNT(*) FROM {table}{BACKUP_SUFFIX}").fetchone()[0]
                    counts[table] = (backup_rows, conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0])
                if self._get_state(conn, "phase") is None:
                    self._set_state(conn, "phase", "backup")
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()
        self.logger.info("Currency backup phase complete for %d tables", len(counts))
        return MigrationReport("backup", True, f"Backed up {len(counts)} tables", row_counts=counts)

    def migrate(self) -> MigrationReport:
        """Rebuild each table holding REAL money columns; never retried automatically."""
        conn = self._connect()
        try:
            phase = self._get_state(conn, "phase")
            if phase == "migrate":
                return MigrationReport("migrate", False, "Migration already applied; run rollback first")
            if phase == "cleanup":
                return MigrationReport("migrate", False, "Backups were cleaned up; migration is closed")
            if not self._backed_up_tables(conn):
                return MigrationReport("migrate", False, "Run the backup phase first")
            legacy = self._legacy_columns(conn)
            if not legacy:
                return MigrationReport("migrate", False, "No REAL monetary columns found")

            conn.execute("PRAGMA foreign_keys=OFF")
            conn.execute("BEGIN IMMEDIATE")
            try:
                indexes = schema.index_definitions(conn, legacy)
                for name, _ in indexes:
                    conn.execute(f'DROP INDEX IF EXISTS "{name}"')
                counts = {}
                for table, money_columns in legacy.items():
                    ddl = conn.execute(
                        "SELECT sql FROM sqlite_master WHERE type='table' AND name = ?", (table,)
                    ).fetchone()[0]
                    column_map = {
                        col: (f"to_minor_units({col})" if col in money_columns else col)
                        for col in schema.table_columns(conn, table)
                    }
                    before = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
                    copied = schema.rebuild_table(
                        conn, table, _integer_ddl(table, ddl, money_columns), column_map=column_map
                    )
                    counts[table] = (before, copied)
                    self.logger.info("Migrated %s: %d rows, columns %s", table, copied, ", ".join(money_columns))
                for _, sql in indexes:
                    conn.execute(sql)
                violations = self._foreign_key_violations(conn)
                if violations:
                    raise DatabaseMigrationError(f"Foreign key check found {violations} violations")
                self._set_state(conn, "phase", "migrate")
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            try:
                conn.execute("PRAGMA foreign_keys=ON")
            except sqlite3.Error:
                pass
            conn.close()
        return MigrationReport("migrate", True, f"Migrated {len(counts)} tables", row_counts=counts)

    def test(self) -> MigrationReport:
        """Verify migrated values against the snapshots within one minor unit."""
        conn = self._connect()
        try:
            if self._get_state(conn, "phase") != "migrate":
                return MigrationReport("test", False, "Migrate phase has not completed")
            checks: List[ColumnCheck] = []
            counts = {}
            for table in self._backed_up_tables(conn):
                backup = table + BACKUP_SUFFIX
                counts[table] = (
                    conn.execute(f"SELECT COUNT(*) FROM {backup}").fetchone()[0],
                    conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0],
                )
                live_columns = set(schema.table_columns(conn, table))
                backup_columns = set(schema.table_columns(conn, backup))
                for column in schema.MONETARY_COLUMNS.get(table, ()):
                    if column not in live_columns or column not in backup_columns:
                        continue
                    row = conn.execute(
                        f"""
                        SELECT COUNT(*),
                               COALESCE(SUM(CASE
                                   WHEN b.{column} IS NULL AND l.{column} IS NULL THEN 0
                                   WHEN b.{column} IS NULL OR l.{column} IS NULL THEN 1
                                   WHEN ABS(b.{column} * {SCALE} - l.{column}) > {TOLERANCE_MINOR_UNITS} THEN 1
                                   ELSE 0 END), 0)
                        FROM {backup} b JOIN {table} l ON l.id = b.id
                        """
                    ).fetchone()
                    checks.append(ColumnCheck(table, column, int(row[0]), int(row[1])))
            violations = self._foreign_key_violations(conn)
        finally:
            conn.close()

        report = MigrationReport("test", True, columns=checks, row_counts=counts,
                                 foreign_key_violations=violations)
        problems = []
        if report.failed_columns:
            problems.append(
                "mismatched columns: " + ", ".join(f"{c.table}.{c.column}" for c in report.failed_columns)
            )
        uneven = [t for t, (b, l) in counts.items() if b != l]
        if uneven:
            problems.append("row count differences in " + ", ".join(uneven))
        if violations:
            problems.append(f"{violations} foreign key violations")
        report.success = not problems
        report.message = "PASS" if report.success else "FAIL: " + "; ".join(problems)
        self.logger.info("Currency migration test: %s", report.message)
        return report

    def rollback(self) -> MigrationReport:
        """Recreate every snapshotted table from its original DDL and snapshot rows."""
        conn = self._connect()
        try:
            tables = self._backed_up_tables(conn)
            if not tables:
                return MigrationReport("rollback", False, "No backup tables found")
            conn.execute("PRAGMA foreign_keys=OFF")
            conn.execute("BEGIN IMMEDIATE")
            try:
                counts = {}
                for table in tables:
                    ddl = self._get_state(conn, f"ddl:{table}")
                    if not ddl:
                        raise DatabaseMigrationError(f"Original definition of {table} was not recorded")
                    index_sql = json.loads(self._get_state(conn, f"indexes:{table}") or "[]")
                    conn.execute(f"DROP TABLE IF EXISTS {table}")
                    conn.execute(ddl)
                    backup_columns = set(schema.table_columns(conn, table + BACKUP_SUFFIX))
                    columns = [c for c in schema.table_columns(conn, table) if c in backup_columns]
                    names = ", ".join(columns)
                    cursor = conn.execute(
                        f"INSERT INTO {table} ({names}) SELECT {names} FROM {table}{BACKUP_SUFFIX}"
                    )
                    counts[table] = (cursor.rowcount, cursor.rowcount)
                    for sql in index_sql:
                        conn.execute(sql)
                violations = self._foreign_key_violations(conn)
                if violations:
                    raise DatabaseMigrationError(f"Foreign key check found {violations} violations")
                self._set_state(conn, "phase", "rollback")
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            try:
                conn.execute("PRAGMA foreign_keys=ON")
            except sqlite3.Error:
                pass
            conn.close()
        self.logger.warning("Currency migration rolled back for %d tables", len(counts))
        return MigrationReport("rollback", True, f"Rolled back {len(counts)} tables", row_counts=counts)

    def cleanup(self, *, confirm: bool = False) -> MigrationReport:
        """Drop the snapshots. Only after the migrated store has run correctly for a while."""
        if not confirm:
            return MigrationReport(
                "cleanup", False, "Cleanup drops the backup tables permanently; rerun with confirmation"
            )
        conn = self._connect()
        try:
            tables = self._backed_up_tables(conn)
            conn.execute("BEGIN IMMEDIATE")
            try:
                for table in tables:
                    conn.execute(f"DROP TABLE IF EXISTS {table}{BACKUP_SUFFIX}")
                self._ensure_state_table(conn)
                conn.execute(f"DELETE FROM {STATE_TABLE} WHERE key LIKE 'ddl:%' OR key LIKE 'indexes:%'")
                self._set_state(conn, "phase", "cleanup")
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()
        self.logger.warning("Currency migration backup tables dropped: %d", len(tables))
        return MigrationReport("cleanup", True, f"Dropped {len(tables)} backup tables")


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="python -m ledgerstore.persistence.currency_migration",
        description="Convert monetary columns to integer minor units.",
    )
    parser.add_argument("phase", choices=PHASES)
    parser.add_argument("--db", required=True, help="Path to the store file")
    parser.add_argument("--confirm", action="store_true", help="Required for the cleanup phase")
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format=LOG_FORMAT)
    report = CurrencyMigration(args.db).run(args.phase, confirm=args.confirm)
    print(f"{report.phase}: {'OK' if report.success else 'FAILED'} - {report.message}")
    for check in report.columns:
        status = "pass" if check.passed else f"FAIL ({check.mismatches} mismatches)"
        print(f"  {check.table}.{check.column}: {check.rows_checked} rows, {status}")
    return 0 if report.success else 1


if __name__ == "__main__":
    sys.exit(main())
