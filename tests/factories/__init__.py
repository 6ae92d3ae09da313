from .ledger_records import (
    currency_amounts,
    customer,
    invoice_item,
    product,
    sales_invoice,
)

__all__ = [
    "product",
    "customer",
    "sales_invoice",
    "invoice_item",
    "currency_amounts",
]
