from decimal import ROUND_HALF_UP, Decimal

import pytest
from hypothesis import given

from tests.factories import currency_amounts
from ledgerstore.persistence.currency_migration import _integer_ddl, to_minor_units


@pytest.mark.parametrize(
    ("amount", "expected"),
    [
        (100.50, 10050),
        (100.495, 10050),
        (0.005, 1),
        (-0.005, -1),
        (-100.495, -10050),
        (12, 1200),
        ("19.99", 1999),
        (None, None),
    ],
)
def test_to_minor_units_rounds_half_away_from_zero(amount, expected):
    assert to_minor_units(amount) == expected


def test_to_minor_units_rejects_text():
    with pytest.raises(ValueError):
        to_minor_units("twelve")


@given(currency_amounts())
def test_minor_units_stay_within_one_unit_of_exact_value(amount):
    converted = to_minor_units(amount)
    exact = amount * 100
    assert isinstance(converted, int)
    assert abs(Decimal(converted) - exact) <= Decimal("0.5")
    assert converted == int(exact.quantize(Decimal(1), rounding=ROUND_HALF_UP))


@given(currency_amounts())
def test_minor_units_match_float_input(amount):
    # A float carries the typed digits through its shortest repr
    assert to_minor_units(float(amount)) == to_minor_units(amount)


def test_integer_ddl_rewrites_only_money_columns():
    ddl = (
        "CREATE TABLE sales_invoices (id TEXT PRIMARY KEY, subtotal REAL NOT NULL DEFAULT 0, "
        "taxRate REAL NOT NULL DEFAULT 0, total REAL NOT NULL DEFAULT 0, "
        "CHECK (total >= 0))"
    )

    rewritten = _integer_ddl("sales_invoices", ddl, ["subtotal", "total"])

    assert rewritten.startswith("CREATE TABLE sales_invoices_new (")
    assert "subtotal INTEGER NOT NULL" in rewritten
    assert "total INTEGER NOT NULL" in rewritten
    assert "taxRate REAL NOT NULL" in rewritten


def test_integer_ddl_refuses_rate_columns():
    from ledgerstore.exceptions import DatabaseMigrationError

    ddl = "CREATE TABLE fixed_assets (id TEXT PRIMARY KEY, depreciationRate REAL, currentValue REAL)"

    with pytest.raises(DatabaseMigrationError, match="depreciationRate"):
        _integer_ddl("fixed_assets", ddl, ["currentValue", "depreciationRate"])
