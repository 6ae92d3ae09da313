import sqlite3

import pytest

from tests.factories import customer, product, sales_invoice
from ledgerstore.persistence import schema
from ledgerstore.persistence.currency_migration import CurrencyMigration, main


def _insert(conn, table, record):
    columns = list(record)
    conn.execute(
        f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})",
        [record[c] for c in columns],
    )


@pytest.fixture()
def populated_legacy_store(legacy_store):
    conn = sqlite3.connect(str(legacy_store), isolation_level=None)
    try:
        conn.execute("PRAGMA foreign_keys=ON")
        _insert(conn, "products", product(smallestPrice=100.50, largestPrice=1206.0))
        _insert(conn, "customers", customer(balance=100.495, openingBalance=0.0))
        _insert(conn, "sales_invoices", sales_invoice(
            subtotal=100.0, taxRate=15.5, taxAmount=15.5, total=115.5, paid=50.0, remaining=65.5,
        ))
    finally:
        conn.close()
    return legacy_store


def _row(path, table, row_id):
    conn = sqlite3.connect(str(path))
    conn.row_factory = sqlite3.Row
    try:
        return dict(conn.execute(f"SELECT * FROM {table} WHERE id = ?", (row_id,)).fetchone())
    finally:
        conn.close()


def _column_type(path, table, column):
    conn = sqlite3.connect(str(path))
    try:
        return schema.column_types(conn, table)[column]
    finally:
        conn.close()


def test_full_migration_cycle(populated_legacy_store):
    migration = CurrencyMigration(populated_legacy_store)

    assert migration.run("backup").success
    again = migration.run("backup")
    assert again.success
    assert again.row_counts["products"] == (1, 1)

    migrated = migration.run("migrate")
    assert migrated.success, migrated.message
    assert _column_type(populated_legacy_store, "products", "smallestPrice") == "INTEGER"
    assert _column_type(populated_legacy_store, "sales_invoices", "taxRate") == "REAL"

    item = _row(populated_legacy_store, "products", "prod_1")
    assert item["smallestPrice"] == 10050
    assert item["largestPrice"] == 120600
    assert _row(populated_legacy_store, "customers", "cust_1")["balance"] == 10050
    invoice = _row(populated_legacy_store, "sales_invoices", "inv_1")
    assert invoice["total"] == 11550
    assert invoice["taxRate"] == 15.5

    verdict = migration.run("test")
    assert verdict.success
    assert verdict.message == "PASS"
    assert verdict.foreign_key_violations == 0

    second = migration.run("migrate")
    assert not second.success
    assert "already applied" in second.message

    assert migration.run("rollback").success
    assert migration.current_phase() == "rollback"
    assert _column_type(populated_legacy_store, "products", "smallestPrice") == "REAL"
    assert _row(populated_legacy_store, "products", "prod_1")["smallestPrice"] == 100.50
    assert _row(populated_legacy_store, "customers", "cust_1")["balance"] == 100.495


def test_indexes_survive_the_rebuild(populated_legacy_store):
    migration = CurrencyMigration(populated_legacy_store)
    migration.run("backup")
    migration.run("migrate")

    conn = sqlite3.connect(str(populated_legacy_store))
    try:
        names = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='index'")}
    finally:
        conn.close()

    assert {"idx_products_category", "idx_sales_invoices_customer"} <= names


def test_test_phase_reports_tampered_values(populated_legacy_store):
    migration = CurrencyMigration(populated_legacy_store)
    migration.run("backup")
    migration.run("migrate")
    conn = sqlite3.connect(str(populated_legacy_store), isolation_level=None)
    try:
        conn.execute("UPDATE products SET smallestPrice = 99 WHERE id = 'prod_1'")
    finally:
        conn.close()

    verdict = migration.run("test")

    assert not verdict.success
    assert verdict.message.startswith("FAIL")
    assert "products.smallestPrice" in verdict.message


def test_migrate_requires_backup_first(populated_legacy_store):
    report = CurrencyMigration(populated_legacy_store).run("migrate")

    assert not report.success
    assert "Run the backup phase first" in report.message


def test_migrate_refuses_store_without_real_columns(data_dir, settings_stub, manager):
    manager.close()
    migration = CurrencyMigration(manager.db_path)
    assert migration.run("backup").success

    report = migration.run("migrate")

    assert not report.success
    assert "No REAL monetary columns" in report.message


def test_test_phase_needs_migrate(populated_legacy_store):
    report = CurrencyMigration(populated_legacy_store).run("test")
    assert not report.success


def test_cleanup_requires_confirmation(populated_legacy_store):
    migration = CurrencyMigration(populated_legacy_store)
    migration.run("backup")
    migration.run("migrate")

    refused = migration.run("cleanup")
    assert not refused.success
    conn = sqlite3.connect(str(populated_legacy_store))
    try:
        assert schema.table_exists(conn, "products_backup")
    finally:
        conn.close()

    assert migration.run("cleanup", confirm=True).success
    assert migration.current_phase() == "cleanup"
    rollback = migration.run("rollback")
    assert not rollback.success
    assert rollback.message == "No backup tables found"


def test_missing_store_is_reported(tmp_path):
    report = CurrencyMigration(tmp_path / "absent.db").run("backup")

    assert not report.success
    assert "not found" in report.message


def test_command_line_exit_codes(populated_legacy_store, capsys):
    db = str(populated_legacy_store)

    assert main(["migrate", "--db", db]) == 1
    assert main(["backup", "--db", db]) == 0
    assert main(["migrate", "--db", db, "--verbose"]) == 0
    assert main(["test", "--db", db]) == 0
    assert main(["cleanup", "--db", db]) == 1
    assert main(["cleanup", "--db", db, "--confirm"]) == 0

    output = capsys.readouterr().out
    assert "test: OK - PASS" in output
    assert "products.smallestPrice" in output
