"""Table definitions, index set and table classifications for the ledger store.

Money columns are written as ``{money}`` so the same DDL can describe both
current stores (INTEGER minor units) and legacy stores (REAL amounts) that
still await the currency migration.
"""
from __future__ import annotations

import logging
import sqlite3
from typing import Dict, Iterable, List, Mapping, Optional

CURRENT_MONEY_TYPE = "INTEGER"
LEGACY_MONEY_TYPE = "REAL"

TABLE_DDL: Dict[str, str] = {
    "products": """
        CREATE TABLE IF NOT EXISTS products (
            id TEXT PRIMARY KEY,
            code TEXT UNIQUE NOT NULL,
            name TEXT NOT NULL,
            category TEXT NOT NULL,
            smallestUnit TEXT NOT NULL,
            largestUnit TEXT NOT NULL,
            conversionFactor REAL NOT NULL DEFAULT 1,
            smallestPrice {money} NOT NULL DEFAULT 0 CHECK (smallestPrice >= 0),
            largestPrice {money} NOT NULL DEFAULT 0 CHECK (largestPrice >= 0),
            stock REAL NOT NULL DEFAULT 0,
            openingStock REAL NOT NULL DEFAULT 0,
            notes TEXT,
            status TEXT NOT NULL DEFAULT 'active',
            lastSaleDate TEXT,
            createdAt TEXT NOT NULL,
            updatedAt TEXT NOT NULL
        )
    """,
    "categories": """
        CREATE TABLE IF NOT EXISTS categories (
            id TEXT PRIMARY KEY,
            name TEXT UNIQUE NOT NULL,
            createdAt TEXT NOT NULL
        )
    """,
    "customers": """
        CREATE TABLE IF NOT EXISTS customers (
            id TEXT PRIMARY KEY,
            code TEXT UNIQUE NOT NULL,
            name TEXT NOT NULL,
            phone TEXT,
            address TEXT,
            firstTransactionDate TEXT,
            openingBalance {money} DEFAULT 0,
            balance {money} NOT NULL DEFAULT 0,
            status TEXT NOT NULL DEFAULT 'active',
            lastTransactionDate TEXT,
            createdAt TEXT NOT NULL,
            updatedAt TEXT NOT NULL
        )
    """,
    "suppliers": """
        CREATE TABLE IF NOT EXISTS suppliers (
            id TEXT PRIMARY KEY,
            code TEXT UNIQUE NOT NULL,
            name TEXT NOT NULL,
            phone TEXT,
            address TEXT,
            firstTransactionDate TEXT,
            openingBalance {money} NOT NULL DEFAULT 0,
            balance {money} NOT NULL DEFAULT 0,
            status TEXT NOT NULL DEFAULT 'active',
            lastTransactionDate TEXT,
            createdAt TEXT NOT NULL,
            updatedAt TEXT NOT NULL
        )
    """,
    "sales_invoices": """
        CREATE TABLE IF NOT EXISTS sales_invoices (
            id TEXT PRIMARY KEY,
            invoiceNumber TEXT UNIQUE NOT NULL,
            customerId TEXT NOT NULL,
            date TEXT NOT NULL,
            dueDate TEXT,
            invoiceType TEXT NOT NULL DEFAULT 'normal',
            subtotal {money} NOT NULL DEFAULT 0,
            taxRate REAL NOT NULL DEFAULT 0,
            taxAmount {money} NOT NULL DEFAULT 0,
            shipping {money} NOT NULL DEFAULT 0,
            discount {money} NOT NULL DEFAULT 0,
            total {money} NOT NULL DEFAULT 0,
            paid {money} NOT NULL DEFAULT 0,
            remaining {money} NOT NULL DEFAULT 0,
            paymentMethod TEXT,
            notes TEXT,
            createdAt TEXT NOT NULL,
            updatedAt TEXT NOT NULL,
            FOREIGN KEY (customerId) REFERENCES customers(id)
        )
    """,
    "sales_invoice_items": """
        CREATE TABLE IF NOT EXISTS sales_invoice_items (
            id TEXT PRIMARY KEY,
            invoiceId TEXT NOT NULL,
            productId TEXT NOT NULL,
            productName TEXT NOT NULL,
            unit TEXT NOT NULL,
            quantity REAL NOT NULL,
            price {money} NOT NULL,
            total {money} NOT NULL,
            FOREIGN KEY (invoiceId) REFERENCES sales_invoices(id) ON DELETE CASCADE,
            FOREIGN KEY (productId) REFERENCES products(id)
        )
    """,
    "delivery_notes": """
        CREATE TABLE IF NOT EXISTS delivery_notes (
            id TEXT PRIMARY KEY,
            deliveryNoteNumber TEXT UNIQUE NOT NULL,
            date TEXT NOT NULL,
            salesRepId TEXT,
            salesRepName TEXT,
            warehouseKeeperName TEXT,
            status TEXT NOT NULL DEFAULT 'issued',
            totalProducts INTEGER NOT NULL DEFAULT 0,
            notes TEXT,
            createdAt TEXT NOT NULL,
            updatedAt TEXT NOT NULL
        )
    """,
    "delivery_note_items": """
        CREATE TABLE IF NOT EXISTS delivery_note_items (
            id TEXT PRIMARY KEY,
            deliveryNoteId TEXT NOT NULL,
            productId TEXT NOT NULL,
            productName TEXT NOT NULL,
            productCode TEXT,
            quantity REAL NOT NULL,
            unit TEXT NOT NULL,
            unitName TEXT,
            reservedQuantity REAL NOT NULL DEFAULT 0,
            availableQuantity REAL NOT NULL DEFAULT 0,
            FOREIGN KEY (deliveryNoteId) REFERENCES delivery_notes(id) ON DELETE CASCADE,
            FOREIGN KEY (productId) REFERENCES products(id)
        )
    """,
    "delivery_settlements": """
        CREATE TABLE IF NOT EXISTS delivery_settlements (
            id TEXT PRIMARY KEY,
            settlementNumber TEXT UNIQUE NOT NULL,
            deliveryNoteId TEXT NOT NULL,
            date TEXT NOT NULL,
            salesRepId TEXT,
            salesRepName TEXT,
            warehouseKeeperId TEXT,
            warehouseKeeperName TEXT,
            status TEXT NOT NULL DEFAULT 'pending',
            notes TEXT,
            createdAt TEXT NOT NULL,
            updatedAt TEXT NOT NULL,
            FOREIGN KEY (deliveryNoteId) REFERENCES delivery_notes(id)
        )
    """,
    "settlement_items": """
        CREATE TABLE IF NOT EXISTS settlement_items (
            id TEXT PRIMARY KEY,
            settlementId TEXT NOT NULL,
            productId TEXT NOT NULL,
            productName TEXT NOT NULL,
            productCode TEXT,
            issuedQuantity REAL NOT NULL,
            soldQuantity REAL NOT NULL,
            returnedQuantity REAL NOT NULL DEFAULT 0,
            rejectedQuantity REAL NOT NULL DEFAULT 0,
            difference REAL NOT NULL DEFAULT 0,
            unit TEXT NOT NULL,
            notes TEXT,
            FOREIGN KEY (settlementId) REFERENCES delivery_settlements(id) ON DELETE CASCADE,
            FOREIGN KEY (productId) REFERENCES products(id)
        )
    """,
    "purchase_invoices": """
        CREATE TABLE IF NOT EXISTS purchase_invoices (
            id TEXT PRIMARY KEY,
            invoiceNumber TEXT UNIQUE NOT NULL,
            supplierId TEXT NOT NULL,
            date TEXT NOT NULL,
            dueDate TEXT,
            invoiceType TEXT NOT NULL DEFAULT 'normal',
            subtotal {money} NOT NULL DEFAULT 0,
            taxRate REAL NOT NULL DEFAULT 0,
            taxAmount {money} NOT NULL DEFAULT 0,
            shipping {money} NOT NULL DEFAULT 0,
            discount {money} NOT NULL DEFAULT 0,
            total {money} NOT NULL DEFAULT 0,
            paid {money} NOT NULL DEFAULT 0,
            remaining {money} NOT NULL DEFAULT 0,
            paymentMethod TEXT,
            notes TEXT,
            createdAt TEXT NOT NULL,
            updatedAt TEXT NOT NULL,
            FOREIGN KEY (supplierId) REFERENCES suppliers(id)
        )
    """,
    "purchase_invoice_items": """
        CREATE TABLE IF NOT EXISTS purchase_invoice_items (
            id TEXT PRIMARY KEY,
            invoiceId TEXT NOT NULL,
            productId TEXT NOT NULL,
            productName TEXT NOT NULL,
            unit TEXT NOT NULL,
            quantity REAL NOT NULL,
            price {money} NOT NULL,
            total {money} NOT NULL,
            FOREIGN KEY (invoiceId) REFERENCES purchase_invoices(id) ON DELETE CASCADE,
            FOREIGN KEY (productId) REFERENCES products(id)
        )
    """,
    "receipts": """
        CREATE TABLE IF NOT EXISTS receipts (
            id TEXT PRIMARY KEY,
            receiptNumber TEXT UNIQUE NOT NULL,
            customerId TEXT NOT NULL,
            date TEXT NOT NULL,
            amount {money} NOT NULL,
            oldBalance {money},
            newBalance {money},
            paymentMethod TEXT NOT NULL,
            notes TEXT,
            createdAt TEXT NOT NULL,
            updatedAt TEXT NOT NULL,
            FOREIGN KEY (customerId) REFERENCES customers(id)
        )
    """,
    "payments": """
        CREATE TABLE IF NOT EXISTS payments (
            id TEXT PRIMARY KEY,
            paymentNumber TEXT UNIQUE NOT NULL,
            supplierId TEXT,
            toName TEXT,
            date TEXT NOT NULL,
            amount {money} NOT NULL,
            oldBalance {money},
            newBalance {money},
            paymentMethod TEXT NOT NULL,
            notes TEXT,
            createdAt TEXT NOT NULL,
            updatedAt TEXT NOT NULL,
            FOREIGN KEY (supplierId) REFERENCES suppliers(id)
        )
    """,
    "inventory_adjustments": """
        CREATE TABLE IF NOT EXISTS inventory_adjustments (
            id TEXT PRIMARY KEY,
            adjustmentNumber TEXT UNIQUE NOT NULL,
            productId TEXT NOT NULL,
            date TEXT NOT NULL,
            type TEXT NOT NULL,
            quantity REAL NOT NULL,
            reason TEXT,
            notes TEXT,
            createdAt TEXT NOT NULL,
            FOREIGN KEY (productId) REFERENCES products(id)
        )
    """,
    "returns": """
        CREATE TABLE IF NOT EXISTS returns (
            id TEXT PRIMARY KEY,
            returnNumber TEXT UNIQUE NOT NULL,
            productId TEXT NOT NULL,
            date TEXT NOT NULL,
            operationType TEXT NOT NULL,
            returnType TEXT NOT NULL,
            entityId TEXT,
            entityType TEXT,
            invoiceId TEXT,
            invoiceType TEXT,
            invoiceNumber TEXT,
            quantity REAL NOT NULL,
            unitPrice {money} NOT NULL,
            totalAmount {money} NOT NULL,
            returnReason TEXT NOT NULL,
            isDamaged TEXT NOT NULL DEFAULT 'false',
            restoredToStock TEXT NOT NULL DEFAULT 'false',
            restoreBalance TEXT NOT NULL DEFAULT 'false',
            notes TEXT,
            createdAt TEXT NOT NULL,
            updatedAt TEXT NOT NULL,
            userId TEXT,
            FOREIGN KEY (productId) REFERENCES products(id)
        )
    """,
    "users": """
        CREATE TABLE IF NOT EXISTS users (
            id TEXT PRIMARY KEY,
            username TEXT UNIQUE NOT NULL,
            password TEXT NOT NULL,
            email TEXT,
            type TEXT NOT NULL DEFAULT 'sales',
            status TEXT NOT NULL DEFAULT 'active',
            permissions TEXT NOT NULL DEFAULT '[]',
            createdAt TEXT NOT NULL,
            updatedAt TEXT NOT NULL,
            lastLogin TEXT
        )
    """,
    "backup_history": """
        CREATE TABLE IF NOT EXISTS backup_history (
            id TEXT PRIMARY KEY,
            backupPath TEXT NOT NULL,
            backupType TEXT NOT NULL,
            fileSize INTEGER NOT NULL,
            checksum TEXT,
            encrypted INTEGER DEFAULT 0,
            createdAt TEXT NOT NULL
        )
    """,
    "fixed_assets": """
        CREATE TABLE IF NOT EXISTS fixed_assets (
            id TEXT PRIMARY KEY,
            code TEXT UNIQUE NOT NULL,
            name TEXT NOT NULL,
            category TEXT NOT NULL,
            purchaseDate TEXT NOT NULL,
            purchasePrice {money} NOT NULL DEFAULT 0,
            currentValue {money} NOT NULL DEFAULT 0,
            depreciationRate REAL NOT NULL DEFAULT 0,
            location TEXT,
            department TEXT,
            status TEXT NOT NULL DEFAULT 'active',
            description TEXT,
            supplierId TEXT,
            warrantyExpiryDate TEXT,
            notes TEXT,
            createdAt TEXT NOT NULL,
            updatedAt TEXT NOT NULL,
            FOREIGN KEY (supplierId) REFERENCES suppliers(id)
        )
    """,
    "operating_expenses": """
        CREATE TABLE IF NOT EXISTS operating_expenses (
            id TEXT PRIMARY KEY,
            date TEXT NOT NULL,
            category TEXT NOT NULL,
            amount {money} NOT NULL DEFAULT 0,
            description TEXT,
            createdAt TEXT NOT NULL,
            updatedAt TEXT NOT NULL
        )
    """,
    "company_info": """
        CREATE TABLE IF NOT EXISTS company_info (
            id TEXT PRIMARY KEY DEFAULT 'company_001',
            name TEXT NOT NULL DEFAULT 'Company',
            address TEXT,
            taxId TEXT,
            commercialRegister TEXT,
            phone TEXT,
            mobile TEXT,
            email TEXT,
            taxRate REAL DEFAULT 0,
            commitmentText TEXT,
            createdAt TEXT NOT NULL,
            updatedAt TEXT NOT NULL
        )
    """,
}

# The restore engine refuses a swapped-in store missing any of these.
REQUIRED_TABLES = (
    "users",
    "products",
    "customers",
    "suppliers",
    "sales_invoices",
    "purchase_invoices",
)

CRITICAL_TABLES = frozenset({
    "sales_invoices", "sales_invoice_items",
    "delivery_notes", "delivery_note_items",
    "delivery_settlements", "settlement_items",
    "receipts", "payments",
    "purchase_invoices", "purchase_invoice_items",
    "operating_expenses", "inventory_adjustments", "returns",
    "customers", "suppliers", "products",
})

IMPORTANT_INSERT_TABLES = frozenset({
    "sales_invoices", "delivery_notes", "delivery_settlements",
    "receipts", "payments", "purchase_invoices",
    "operating_expenses", "inventory_adjustments", "returns",
})

IMPORTANT_UPDATE_TABLES = IMPORTANT_INSERT_TABLES | {"customers", "suppliers", "products"}

# Line-item tables carry no updatedAt column.
ITEM_TABLES = frozenset({
    "sales_invoice_items", "purchase_invoice_items",
    "delivery_note_items", "settlement_items",
})

_INVOICE_MONEY = (
    "subtotal", "taxAmount", "shipping", "discount", "total", "paid", "remaining",
    "oldBalance", "oldBalancePlusTotal", "newBalance", "remainingWithOldBalance",
)

# Monetary columns per table; percentage and quantity columns are not listed.
MONETARY_COLUMNS: Dict[str, tuple] = {
    "products": ("smallestPrice", "largestPrice"),
    "customers": ("openingBalance", "balance"),
    "suppliers": ("openingBalance", "balance"),
    "sales_invoices": _INVOICE_MONEY,
    "sales_invoice_items": ("price", "total"),
    "purchase_invoices": _INVOICE_MONEY,
    "purchase_invoice_items": ("price", "total"),
    "receipts": ("amount", "oldBalance", "newBalance"),
    "payments": ("amount", "oldBalance", "newBalance"),
    "returns": ("unitPrice", "totalAmount"),
    "fixed_assets": ("purchasePrice", "currentValue"),
    "operating_expenses": ("amount",),
}

NON_MONETARY_NUMERIC = frozenset({"taxRate", "depreciationRate"})

INDEXES = (
    ("idx_products_category", "products", "category"),
    ("idx_products_status", "products", "status"),
    ("idx_sales_invoices_customer", "sales_invoices", "customerId"),
    ("idx_sales_invoices_date", "sales_invoices", "date"),
    ("idx_sales_invoices_delivery_note", "sales_invoices", "deliveryNoteId"),
    ("idx_sales_invoices_date_customer", "sales_invoices", "date DESC, customerId"),
    ("idx_sales_invoice_items_invoice", "sales_invoice_items", "invoiceId"),
    ("idx_sales_invoice_items_invoice_product", "sales_invoice_items", "invoiceId, productId"),
    ("idx_sales_invoice_items_product", "sales_invoice_items", "productId"),
    ("idx_purchase_invoices_supplier", "purchase_invoices", "supplierId"),
    ("idx_purchase_invoices_date", "purchase_invoices", "date"),
    ("idx_purchase_invoice_items_invoice", "purchase_invoice_items", "invoiceId"),
    ("idx_purchase_invoice_items_product", "purchase_invoice_items", "productId"),
    ("idx_purchase_invoice_items_invoice_product", "purchase_invoice_items", "invoiceId, productId"),
    ("idx_receipts_customer", "receipts", "customerId"),
    ("idx_receipts_date", "receipts", "date"),
    ("idx_payments_supplier", "payments", "supplierId"),
    ("idx_payments_date", "payments", "date"),
    ("idx_fixed_assets_category", "fixed_assets", "category"),
    ("idx_fixed_assets_status", "fixed_assets", "status"),
    ("idx_operating_expenses_date", "operating_expenses", "date"),
    ("idx_operating_expenses_category", "operating_expenses", "category"),
    ("idx_delivery_notes_status", "delivery_notes", "status"),
    ("idx_delivery_notes_date", "delivery_notes", "date"),
    ("idx_delivery_note_items_delivery_note", "delivery_note_items", "deliveryNoteId"),
    ("idx_delivery_settlements_delivery_note", "delivery_settlements", "deliveryNoteId"),
    ("idx_delivery_settlements_status", "delivery_settlements", "status"),
    ("idx_settlement_items_settlement", "settlement_items", "settlementId"),
)

_DUPLICATE_MARKERS = ("duplicate column", "already exists")


def table_ddl(table: str, money_type: str = CURRENT_MONEY_TYPE) -> str:
    return TABLE_DDL[table].format(money=money_type)


def create_core_tables(conn: sqlite3.Connection, money_type: str = CURRENT_MONEY_TYPE) -> None:
    """Issue CREATE TABLE IF NOT EXISTS for every core table."""
    for table in TABLE_DDL:
        conn.execute(table_ddl(table, money_type))


def table_exists(conn: sqlite3.Connection, table: str) -> bool:
    row = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name=?", (table,)
    ).fetchone()
    return row is not None


def table_columns(conn: sqlite3.Connection, table: str) -> List[str]:
    return [row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()]


def column_types(conn: sqlite3.Connection, table: str) -> Dict[str, str]:
    return {row[1]: (row[2] or "").upper() for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}


def ensure_columns(
    conn: sqlite3.Connection,
    table: str,
    columns: Mapping[str, str],
    *,
    logger: Optional[logging.Logger] = None,
) -> List[str]:
    """Add any of ``columns`` missing from ``table``; return the names added.

    "duplicate column" and "already exists" errors are treated as success.
    """
    logger = logger or logging.getLogger(__name__)
    if not table_exists(conn, table):
        return []
    existing = set(table_columns(conn, table))
    added = []
    for column, definition in columns.items():
        if column in existing:
            continue
        try:
            conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")
            added.append(column)
        except sqlite3.OperationalError as exc:
            if any(marker in str(exc).lower() for marker in _DUPLICATE_MARKERS):
                continue
            raise
    if added:
        logger.info("Added columns to %s: %s", table, ", ".join(added))
    return added


def rebuild_table(
    conn: sqlite3.Connection,
    table: str,
    new_ddl: str,
    *,
    column_map: Optional[Mapping[str, str]] = None,
) -> int:
    """Copy-rename ``table`` into the shape described by ``new_ddl``.

    ``new_ddl`` must create ``<table>_new``. ``column_map`` maps target column to
    a source expression; by default every column shared by both shapes is copied.
    Runs inside the caller's transaction. Returns the number of copied rows.
    """
    shadow = f"{table}_new"
    conn.execute(f"DROP TABLE IF EXISTS {shadow}")
    conn.execute(new_ddl)
    if column_map is None:
        source_cols = set(table_columns(conn, table))
        targets = [col for col in table_columns(conn, shadow) if col in source_cols]
        column_map = {col: col for col in targets}
    targets = list(column_map)
    projection = ", ".join(column_map[col] for col in targets)
    cursor = conn.execute(
        f"INSERT INTO {shadow} ({', '.join(targets)}) SELECT {projection} FROM {table}"
    )
    copied = cursor.rowcount
    conn.execute(f"DROP TABLE {table}")
    conn.execute(f"ALTER TABLE {shadow} RENAME TO {table}")
    return copied


def ensure_indexes(conn: sqlite3.Connection, *, logger: Optional[logging.Logger] = None) -> int:
    """Create the standard index set; a failing index is only a warning."""
    logger = logger or logging.getLogger(__name__)
    created = 0
    for name, table, columns in INDEXES:
        try:
            conn.execute(f"CREATE INDEX IF NOT EXISTS {name} ON {table}({columns})")
            created += 1
        except sqlite3.Error as exc:
            logger.warning("Failed creating index %s: %s", name, exc)
    return created


def index_definitions(conn: sqlite3.Connection, tables: Iterable[str]) -> List[tuple]:
    """Return ``(name, sql)`` for user-created indexes on ``tables``."""
    tables = list(tables)
    if not tables:
        return []
    placeholders = ", ".join("?" for _ in tables)
    rows = conn.execute(
        f"SELECT name, sql FROM sqlite_master WHERE type='index' AND sql IS NOT NULL "
        f"AND tbl_name IN ({placeholders})",
        tables,
    ).fetchall()
    return [(row[0], row[1]) for row in rows]
