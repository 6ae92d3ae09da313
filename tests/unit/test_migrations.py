import logging
import sqlite3

import pytest

from ledgerstore.exceptions import DatabaseMigrationError
from ledgerstore.persistence import migrations, schema
from ledgerstore.persistence.migrations import Migration


@pytest.fixture()
def conn(tmp_path):
    connection = sqlite3.connect(str(tmp_path / "schema.db"), isolation_level=None)
    connection.row_factory = sqlite3.Row
    connection.execute("PRAGMA foreign_keys=ON")
    try:
        yield connection
    finally:
        connection.close()


def test_ensure_schema_builds_current_store(conn):
    version = migrations.ensure_schema(conn)

    assert version == migrations.LATEST_VERSION
    for table in schema.REQUIRED_TABLES:
        assert schema.table_exists(conn, table)
    assert schema.column_types(conn, "products")["smallestPrice"] == "INTEGER"
    assert schema.column_types(conn, "sales_invoices")["taxRate"] == "REAL"
    cash = conn.execute("SELECT * FROM customers WHERE code = 'CASH'").fetchone()
    assert cash["balance"] == 0
    assert conn.execute("SELECT COUNT(*) FROM company_info WHERE id = 'company_001'").fetchone()[0] == 1


def test_ensure_schema_is_idempotent(conn):
    migrations.ensure_schema(conn)
    migrations.ensure_schema(conn)

    rows = conn.execute("SELECT version FROM schema_version ORDER BY version").fetchall()
    assert [row[0] for row in rows] == [m.version for m in migrations.MIGRATIONS]
    assert conn.execute("SELECT COUNT(*) FROM customers WHERE code = 'CASH'").fetchone()[0] == 1


def test_legacy_store_keeps_real_money_columns(conn):
    migrations.ensure_schema(conn, money_type=schema.LEGACY_MONEY_TYPE)

    types = schema.column_types(conn, "sales_invoices")
    assert types["total"] == "REAL"
    assert types["oldBalance"] == "REAL"


def test_failed_migration_stops_later_ones(conn, caplog):
    migrations.ensure_version_table(conn)
    ran = []

    def ok(c):
        c.execute("CREATE TABLE first_table (id INTEGER)")
        ran.append(1)

    def broken(c):
        c.execute("CREATE TABLE half_done (id INTEGER)")
        c.execute("SELECT * FROM table_that_does_not_exist")

    def never(c):
        ran.append(3)

    plan = (Migration(1, "ok", ok), Migration(2, "broken", broken), Migration(3, "never", never))
    with caplog.at_level(logging.ERROR):
        applied = migrations.apply_migrations(conn, plan)

    assert applied == [1]
    assert ran == [1]
    assert migrations.applied_versions(conn) == {1}
    assert not schema.table_exists(conn, "half_done")
    assert "later migrations skipped" in caplog.text


def test_rollback_to_runs_backward_transforms(conn):
    migrations.ensure_schema(conn)
    assert "notes" in schema.table_columns(conn, "customers")

    reverted = migrations.rollback_to(conn, 7)

    assert reverted == [8]
    assert "notes" not in schema.table_columns(conn, "customers")
    assert "checksum" in schema.table_columns(conn, "backup_history")
    assert migrations.current_version(conn) == 7


def test_rollback_refuses_irreversible_steps(conn):
    migrations.ensure_schema(conn)

    with pytest.raises(DatabaseMigrationError, match="irreversible"):
        migrations.rollback_to(conn, 5)
    assert migrations.current_version(conn) == migrations.LATEST_VERSION


def test_ensure_columns_tolerates_existing_columns(conn):
    migrations.ensure_schema(conn)

    added = schema.ensure_columns(conn, "customers", {"notes": "TEXT", "email": "TEXT"})

    assert added == ["email"]
    assert "email" in schema.table_columns(conn, "customers")


def test_rebuild_table_preserves_rows(conn):
    conn.execute("CREATE TABLE widgets (id TEXT PRIMARY KEY, price REAL, legacy TEXT)")
    conn.execute("INSERT INTO widgets VALUES ('w1', 1.5, 'x'), ('w2', 2.25, 'y')")

    copied = schema.rebuild_table(
        conn, "widgets", "CREATE TABLE widgets_new (id TEXT PRIMARY KEY, price REAL)"
    )

    assert copied == 2
    assert schema.table_columns(conn, "widgets") == ["id", "price"]
    assert not schema.table_exists(conn, "widgets_new")
