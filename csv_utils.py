import csv
import re
from decimal import Decimal
from io import StringIO
from typing import Any, Sequence

from models import Transaction
from reports import ColumnType, ReportTable


def sanitize_csv_value(value: str) -> str:
    """
    Sanitize CSV values to prevent formula injection by prefixing dangerous patterns with tab.
    """
    if not value or value.strip() == "":
        return ""

    value = value.strip()

    formula_triggers = ("=", "+", "-", "@", "\t", "\r")

    if value.startswith(formula_triggers):
        return "\t" + value

    dangerous_patterns = [
        r"^cmd\s*",
        r"^powershell\s*",
        r"^bash\s*",
        r"^sh\s*",
        r"^\.",
        r"^http[s]?://",
    ]

    for pattern in dangerous_patterns:
        if re.match(pattern, value, re.IGNORECASE):
            return "\t" + value

    return value


def format_cents(cents: int) -> str:
    """Render integer cents as a plain decimal string, e.g. ``-1234`` -> ``-12.34``."""
    amount = Decimal(int(cents)).scaleb(-2)
    return f"{amount:.2f}"


def _cell(value: Any, column_type: ColumnType) -> str:
    if value is None:
        return ""
    if column_type == ColumnType.currency:
        return format_cents(value)
    if column_type == ColumnType.number:
        return str(value)
    return sanitize_csv_value(str(value))


def export_report(table: ReportTable) -> str:
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow([sanitize_csv_value(column.header) for column in table.columns])
    for row in table.rows:
        writer.writerow(
            [_cell(row.get(column.key), column.type) for column in table.columns]
        )
    return output.getvalue()


def export_transactions(transactions: Sequence[Transaction]) -> str:
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(
        ["Date", "Property", "Type", "Category", "Amount", "Payee", "Memo", "Source"]
    )
    for txn in transactions:
        writer.writerow(
            [
                txn.date.isoformat(),
                sanitize_csv_value(txn.property.label if txn.property else ""),
                txn.category.type.value if txn.category else "",
                sanitize_csv_value(txn.category.name if txn.category else ""),
                format_cents(txn.amount_cents),
                sanitize_csv_value(txn.payee or ""),
                sanitize_csv_value(txn.memo or ""),
                txn.source.value,
            ]
        )
    return output.getvalue()
