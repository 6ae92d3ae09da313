import json
import logging

import pytest

from tests.factories import customer, invoice_item, product, sales_invoice
from ledgerstore.infrastructure.db_session import ConnectionManager
from ledgerstore.persistence.migrations import ensure_schema
from ledgerstore.persistence.write_path import RecordStore
from ledgerstore.security import passwords


class _RecordingQueue:
    def __init__(self):
        self.requested = []

    def enqueue(self, name):
        self.requested.append(name)
        return True


@pytest.fixture()
def session(tmp_path):
    manager = ConnectionManager(tmp_path / "ledger.db")
    manager.open()
    manager.with_connection(ensure_schema)
    try:
        yield manager
    finally:
        manager.close()


@pytest.fixture()
def queue():
    return _RecordingQueue()


@pytest.fixture()
def store(session, queue):
    return RecordStore(session, side_effects=queue)


def test_connection_pragmas_are_applied(session):
    with session.connection() as conn:
        assert conn.execute("PRAGMA journal_mode").fetchone()[0] == "wal"
        assert conn.execute("PRAGMA foreign_keys").fetchone()[0] == 1
        assert conn.execute("PRAGMA synchronous").fetchone()[0] == 2


def test_insert_and_read_back(store):
    result = store.insert("products", product())

    assert result.success
    assert result.changes == 1
    assert result.row_id == "prod_1"
    row = store.get_by_id("products", "prod_1")
    assert row["smallestPrice"] == 1050
    assert store.get_by_id("products", "missing") is None


def test_insert_serializes_structured_values(store, session):
    record = {
        "id": "user_1",
        "username": "admin",
        "password": "s3cret",
        "type": "admin",
        "permissions": ["sales", "reports"],
        "createdAt": "2024-01-01",
        "updatedAt": "2024-01-01",
    }
    assert store.insert("users", record).success

    row = store.get_by_id("users", "user_1")
    assert json.loads(row["permissions"]) == ["sales", "reports"]
    assert row["password"] != "s3cret"
    assert passwords.verify_password(row["password"], "s3cret")


def test_important_inserts_request_side_effects(store, queue):
    store.insert("customers", customer())
    assert queue.requested == []

    store.insert("sales_invoices", sales_invoice())
    assert queue.requested == ["emergency_backup", "checkpoint"]

    queue.requested.clear()
    store.update("customers", "cust_1", {"balance": 6500})
    assert queue.requested == ["checkpoint"]


def test_update_stamps_updated_at_except_item_tables(store):
    store.insert("products", product())
    store.insert("customers", customer())
    store.insert("sales_invoices", sales_invoice())
    store.insert("sales_invoice_items", invoice_item())

    assert store.update("products", "prod_1", {"name": "Gadget", "updatedAt": "ignored"}).success
    assert store.get_by_id("products", "prod_1")["updatedAt"] != "2024-01-01T00:00:00"

    result = store.update("sales_invoice_items", "item_1", {"quantity": 3})
    assert result.success
    assert result.changes == 1


def test_zero_change_update_is_logged(store, caplog):
    with caplog.at_level(logging.WARNING):
        result = store.update("customers", "nobody", {"name": "Ghost"})

    assert result.success
    assert result.changes == 0
    assert "0 changes" in caplog.text


def test_failed_follow_up_rolls_back_the_insert(store):
    store.insert("customers", customer())

    def post_balance(conn):
        conn.execute("UPDATE customers SET balance = balance + 6500 WHERE id = 'cust_1'")
        raise RuntimeError("posting failed")

    result = store.insert("sales_invoices", sales_invoice(), follow_up=post_balance)

    assert not result.success
    assert "posting failed" in result.error
    assert store.get_by_id("sales_invoices", "inv_1") is None
    assert store.get_by_id("customers", "cust_1")["balance"] == 0


def test_follow_up_commits_with_the_insert(store):
    store.insert("customers", customer())

    def post_balance(conn):
        conn.execute("UPDATE customers SET balance = balance + 6500 WHERE id = 'cust_1'")

    assert store.insert("sales_invoices", sales_invoice(), follow_up=post_balance).success
    assert store.get_by_id("customers", "cust_1")["balance"] == 6500


def test_constraint_violation_returns_failure(store):
    assert store.insert("products", product()).success

    duplicate = store.insert("products", product(id="prod_2"))

    assert not duplicate.success
    assert "UNIQUE" in duplicate.error


def test_invalid_identifiers_are_rejected(store):
    result = store.insert("products; DROP TABLE users", product())
    assert not result.success
    assert store.get_all("users WHERE 1=1") == []


def test_get_all_filters_and_degrades_on_missing_columns(store, caplog):
    store.insert("products", product())
    store.insert("products", product(id="prod_2", code="P-002", status="inactive"))

    active = store.get_all("products", "status = ?", ("active",))
    assert [row["id"] for row in active] == ["prod_1"]

    with caplog.at_level(logging.WARNING):
        rows = store.get_all("products", "archivedFlag = ?", (1,))
    assert sorted(row["id"] for row in rows) == ["prod_1", "prod_2"]
    assert "archivedFlag" in caplog.text


@pytest.mark.parametrize(
    "where, params",
    [
        ("archivedFlag LIKE ?", ("x%",)),
        ("archivedFlag IS NULL", ()),
        ("archivedFlag IN (1, 2)", ()),
        ("archivedFlag BETWEEN ? AND ?", (0, 5)),
    ],
)
def test_get_all_drops_filters_on_missing_columns_for_any_operator(store, caplog, where, params):
    store.insert("products", product())

    with caplog.at_level(logging.WARNING):
        rows = store.get_all("products", where, params)

    assert [row["id"] for row in rows] == ["prod_1"]
    assert "ignoring filter" in caplog.text


def test_write_against_missing_column_reports_schema_drift(store):
    result = store.insert("products", product(archivedFlag=1))

    assert not result.success
    assert "Schema drift on products" in result.error
    assert store.get_by_id("products", "prod_1") is None


def test_zero_change_insert_is_a_warning(store, session, caplog):
    session.with_connection(lambda conn: conn.execute(
        "CREATE TRIGGER skip_categories BEFORE INSERT ON categories BEGIN SELECT RAISE(IGNORE); END"
    ))

    with caplog.at_level(logging.WARNING):
        result = store.insert("categories", {"id": "cat_1", "name": "General", "createdAt": "2024-01-01"})

    assert result.success
    assert result.changes == 0
    warnings = [r for r in caplog.records if "0 changes" in r.getMessage()]
    assert warnings and all(r.levelno == logging.WARNING for r in warnings)


def test_raw_query_returns_rows_or_result(store):
    store.insert("products", product())

    rows = store.raw_query("SELECT code FROM products WHERE id = ?", ("prod_1",))
    assert rows == [{"code": "P-001"}]

    result = store.raw_query("UPDATE products SET stock = 5 WHERE id = ?", ("prod_1",))
    assert result.success
    assert result.changes == 1

    failed = store.raw_query("SELECT * FROM nowhere")
    assert not failed.success


def test_delete_removes_row(store):
    store.insert("products", product())

    result = store.delete("products", "prod_1")

    assert result.success
    assert result.changes == 1
    assert store.get_all("products") == []


def test_explicit_transaction_groups_writes(store):
    store.insert("customers", customer())
    with pytest.raises(RuntimeError):
        with store.transaction():
            store.update("customers", "cust_1", {"balance": 100})
            raise RuntimeError("abort")
    assert store.get_by_id("customers", "cust_1")["balance"] == 0
