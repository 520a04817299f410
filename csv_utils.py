import csv
import re
from io import StringIO
from typing import Mapping, Sequence
from uuid import UUID

from schemas import Transaction

CSV_HEADER = ["Date", "Type", "Category", "Amount", "Account", "Notes"]


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
        r"^http[s]?://",
    ]

    for pattern in dangerous_patterns:
        if re.match(pattern, value, re.IGNORECASE):
            return "\t" + value

    return value


def format_notes(notes: str | None) -> str:
    return sanitize_csv_value((notes or "").replace(",", ";"))


def export_transactions(
    transactions: Sequence[Transaction],
    category_names: Mapping[UUID, str],
    account_names: Mapping[UUID, str],
) -> str:
    output = StringIO()
    writer = csv.writer(output, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for txn in sorted(transactions, key=lambda t: t.date, reverse=True):
        writer.writerow(
            [
                txn.date.date().isoformat(),
                txn.type.value,
                sanitize_csv_value(category_names.get(txn.category_id, "")),
                str(txn.amount),
                sanitize_csv_value(account_names.get(txn.account_id, "")),
                format_notes(txn.notes),
            ]
        )
    return output.getvalue()
