"""Database schema setup and versioned migration helpers."""
from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable, Iterable, List, Optional, Set

from ledgerstore.exceptions import DatabaseMigrationError
from ledgerstore.persistence import schema

if TYPE_CHECKING:  # pragma: no cover
    from ledgerstore.persistence.database_manager import DatabaseManager

Transform = Callable[[sqlite3.Connection], None]


@dataclass(frozen=True)
class Migration:
    """A numbered schema change with an optional inverse."""

    version: int
    name: str
    forward: Transform
    backward: Optional[Transform] = None


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _money_type(conn: sqlite3.Connection, table: str, probe: str) -> str:
    # Legacy stores keep REAL amounts until the currency migration runs
    declared = schema.column_types(conn, table).get(probe, "")
    return schema.LEGACY_MONEY_TYPE if declared == "REAL" else schema.CURRENT_MONEY_TYPE


def _drop_columns(table: str, columns: Iterable[str]) -> Transform:
    def _drop(conn: sqlite3.Connection) -> None:
        existing = set(schema.table_columns(conn, table))
        for column in columns:
            if column in existing:
                conn.execute(f"ALTER TABLE {table} DROP COLUMN {column}")
    return _drop


def _v1_baseline(conn: sqlite3.Connection) -> None:
    # Tables already exist after create_core_tables; the ledger row marks the baseline.
    schema.create_core_tables(conn)


def _v2_returns_inventory(conn: sqlite3.Connection) -> None:
    schema.ensure_columns(conn, "inventory_adjustments", {
        "userId": "TEXT",
        "oldStock": "REAL",
        "newStock": "REAL",
    })
    schema.ensure_columns(conn, "returns", {
        "restoreBalance": "TEXT NOT NULL DEFAULT 'false'",
        "userId": "TEXT",
    })


def _v3_user_profile(conn: sqlite3.Connection) -> None:
    schema.ensure_columns(conn, "users", {"fullName": "TEXT", "phone": "TEXT"})
    conn.execute("UPDATE users SET fullName = username WHERE fullName IS NULL OR fullName = ''")
    conn.execute("UPDATE users SET type = 'sales' WHERE type IS NULL")
    conn.execute("UPDATE users SET status = 'active' WHERE status IS NULL")
    conn.execute("UPDATE users SET permissions = '[]' WHERE permissions IS NULL")


CREATED_BY_TABLES = (
    "products", "categories", "customers", "suppliers", "sales_invoices",
    "delivery_notes", "delivery_settlements", "purchase_invoices",
    "receipts", "payments", "inventory_adjustments", "returns",
    "fixed_assets", "operating_expenses",
)


def _v4_created_by(conn: sqlite3.Connection) -> None:
    for table in CREATED_BY_TABLES:
        schema.ensure_columns(conn, table, {"createdBy": "TEXT"})


def _v5_invoice_balances(conn: sqlite3.Connection) -> None:
    for table in ("sales_invoices", "purchase_invoices"):
        money = _money_type(conn, table, "total")
        schema.ensure_columns(conn, table, {
            "oldBalance": money,
            "oldBalancePlusTotal": money,
            "newBalance": money,
            "remainingWithOldBalance": money,
        })
    schema.ensure_columns(conn, "sales_invoices", {
        "deliveryNoteId": "TEXT",
        "deliveryNoteNumber": "TEXT",
    })


COMPANY_CONTACT_COLUMNS = (
    "warehouseKeeperName", "warehouseKeeperPhone",
    "salesRepName", "salesRepPhone",
    "accountantName", "accountantPhone",
    "managerName", "managerMobile",
)


def _v6_company_contacts(conn: sqlite3.Connection) -> None:
    schema.ensure_columns(
        conn, "company_info", {column: "TEXT DEFAULT ''" for column in COMPANY_CONTACT_COLUMNS}
    )


def _v7_returns_entity_fk(conn: sqlite3.Connection) -> None:
    # entityId can point at a customer or a supplier, so it cannot be a real FK
    foreign_keys = conn.execute("PRAGMA foreign_key_list(returns)").fetchall()
    if not any(row[3] == "entityId" for row in foreign_keys):
        return
    money = _money_type(conn, "returns", "unitPrice")
    new_ddl = schema.table_ddl("returns", money).replace(
        "CREATE TABLE IF NOT EXISTS returns (", "CREATE TABLE returns_new (", 1
    )
    schema.rebuild_table(conn, "returns", new_ddl)


STATUS_COLUMNS = {
    "customers": {"notes": "TEXT"},
    "suppliers": {"notes": "TEXT"},
    "delivery_note_items": {"productCategory": "TEXT DEFAULT ''"},
    "purchase_invoice_items": {"category": "TEXT"},
    "operating_expenses": {"expenseNumber": "TEXT", "recipientName": "TEXT"},
    "backup_history": {"checksum": "TEXT", "encrypted": "INTEGER DEFAULT 0"},
}


def _v8_status_columns(conn: sqlite3.Connection) -> None:
    for table, columns in STATUS_COLUMNS.items():
        schema.ensure_columns(conn, table, columns)


def _v8_backward(conn: sqlite3.Connection) -> None:
    # backup_history columns stay: restore depends on them
    for table, columns in STATUS_COLUMNS.items():
        if table != "backup_history":
            _drop_columns(table, columns)(conn)


MIGRATIONS = (
    Migration(1, "baseline", _v1_baseline),
    Migration(2, "returns_inventory_columns", _v2_returns_inventory),
    Migration(3, "user_profile_columns", _v3_user_profile),
    Migration(4, "created_by_columns", _v4_created_by),
    Migration(5, "invoice_balance_columns", _v5_invoice_balances),
    Migration(6, "company_contact_columns", _v6_company_contacts,
              _drop_columns("company_info", COMPANY_CONTACT_COLUMNS)),
    Migration(7, "returns_drop_entity_fk", _v7_returns_entity_fk),
    Migration(8, "status_and_notes_columns", _v8_status_columns, _v8_backward),
)

LATEST_VERSION = MIGRATIONS[-1].version


def ensure_version_table(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_version (
            id INTEGER PRIMARY KEY,
            version INTEGER NOT NULL,
            name TEXT,
            applied_date TEXT NOT NULL
        )
        """
    )
    schema.ensure_columns(conn, "schema_version", {"name": "TEXT"})
    conn.execute("CREATE UNIQUE INDEX IF NOT EXISTS idx_schema_version_version ON schema_version(version)")


def applied_versions(conn: sqlite3.Connection) -> Set[int]:
    if not schema.table_exists(conn, "schema_version"):
        return set()
    return {int(row[0]) for row in conn.execute("SELECT version FROM schema_version").fetchall()}


def current_version(conn: sqlite3.Connection) -> int:
    versions = applied_versions(conn)
    return max(versions) if versions else 0


def apply_migrations(
    conn: sqlite3.Connection,
    migrations: Iterable[Migration] = MIGRATIONS,
    *,
    logger: Optional[logging.Logger] = None,
) -> List[int]:
    """Apply pending migrations in version order, one transaction each.

    A failing migration is rolled back and logged; later migrations are not
    attempted. Returns the versions applied by this call.
    """
    logger = logger or logging.getLogger(__name__)
    ensure_version_table(conn)
    done = applied_versions(conn)
    applied: List[int] = []
    for migration in sorted(migrations, key=lambda m: m.version):
        if migration.version in done:
            continue
        logger.info("Applying schema migration %s (%s)...", migration.version, migration.name)
        conn.execute("BEGIN IMMEDIATE")
        try:
            migration.forward(conn)
            conn.execute(
                "INSERT INTO schema_version (version, name, applied_date) VALUES (?, ?, ?)",
                (migration.version, migration.name, _utc_now()),
            )
        except sqlite3.Error as exc:
            conn.execute("ROLLBACK")
            logger.error(
                "Schema migration %s (%s) failed: %s; later migrations skipped",
                migration.version, migration.name, exc, exc_info=True,
            )
            break
        conn.execute("COMMIT")
        applied.append(migration.version)
    return applied


def rollback_to(
    conn: sqlite3.Connection,
    target_version: int,
    migrations: Iterable[Migration] = MIGRATIONS,
    *,
    logger: Optional[logging.Logger] = None,
) -> List[int]:
    """Run backward transforms for applied migrations above ``target_version``."""
    logger = logger or logging.getLogger(__name__)
    done = applied_versions(conn)
    pending = sorted(
        (m for m in migrations if m.version > target_version and m.version in done),
        key=lambda m: m.version,
        reverse=True,
    )
    irreversible = [m.version for m in pending if m.backward is None]
    if irreversible:
        raise DatabaseMigrationError(
            f"Cannot roll back to version {target_version}: migrations {irreversible} are irreversible"
        )
    reverted: List[int] = []
    for migration in pending:
        conn.execute("BEGIN IMMEDIATE")
        try:
            migration.backward(conn)
            conn.execute("DELETE FROM schema_version WHERE version = ?", (migration.version,))
        except sqlite3.Error as exc:
            conn.execute("ROLLBACK")
            raise DatabaseMigrationError(
                f"Rolling back migration {migration.version} failed: {exc}"
            ) from exc
        conn.execute("COMMIT")
        logger.info("Rolled back schema migration %s (%s)", migration.version, migration.name)
        reverted.append(migration.version)
    return reverted


def ensure_default_rows(conn: sqlite3.Connection, *, logger: Optional[logging.Logger] = None) -> None:
    """Make sure the cash customer and the company row exist."""
    logger = logger or logging.getLogger(__name__)
    now = _utc_now()
    row = conn.execute("SELECT id FROM customers WHERE code = 'CASH'").fetchone()
    if row is None:
        conn.execute(
            "INSERT INTO customers (id, code, name, balance, status, createdAt, updatedAt) "
            "VALUES ('customer_cash', 'CASH', 'Cash Customer', 0, 'active', ?, ?)",
            (now, now),
        )
        logger.info("Created default cash customer")
    conn.execute(
        "INSERT OR IGNORE INTO company_info (id, createdAt, updatedAt) VALUES ('company_001', ?, ?)",
        (now, now),
    )


def ensure_schema(
    conn: sqlite3.Connection,
    *,
    logger: Optional[logging.Logger] = None,
    money_type: str = schema.CURRENT_MONEY_TYPE,
) -> int:
    """Create missing tables, apply pending migrations and ensure indexes.

    Failures are logged and never abort startup. Returns the schema version
    reached.
    """
    logger = logger or logging.getLogger(__name__)
    logger.info("Starting database setup check...")
    try:
        conn.execute("BEGIN IMMEDIATE")
        try:
            schema.create_core_tables(conn, money_type)
        except sqlite3.Error:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")
    except sqlite3.Error as exc:
        logger.error("Creating core tables failed: %s", exc, exc_info=True)

    try:
        apply_migrations(conn, logger=logger)
    except sqlite3.Error as exc:
        logger.error("Schema migrations could not run: %s", exc, exc_info=True)

    try:
        ensure_default_rows(conn, logger=logger)
    except sqlite3.Error as exc:
        logger.warning("Default rows not ensured: %s", exc)

    schema.ensure_indexes(conn, logger=logger)
    version = current_version(conn)
    logger.info("Database schema setup/update complete at version %s.", version)
    return version


def run_schema_setup(db: "DatabaseManager") -> int:
    """Ensure the live store's schema through the manager's session."""
    return db.session.with_connection(lambda conn: ensure_schema(conn, logger=db.logger))
