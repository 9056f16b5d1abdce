import csv
import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from io import StringIO
from typing import Sequence, Union

from models import Transaction


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


def to_cents(amount: Union[Decimal, int, float, str]) -> int:
    """Convert a major-unit amount to integer cents, rounding half up."""
    try:
        value = Decimal(str(amount))
    except InvalidOperation as exc:
        raise ValueError("Invalid amount") from exc
    if not value.is_finite():
        raise ValueError("Invalid amount")
    return int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def cents_to_amount(cents: int) -> float:
    return round(cents / 100, 2)


def export_transactions(transactions: Sequence[Transaction]) -> str:
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(
        ["Date", "Type", "Amount", "Category", "Account", "From", "To", "Description"]
    )
    for txn in transactions:
        writer.writerow(
            [
                txn.date.isoformat(sep=" ", timespec="seconds"),
                txn.type.value,
                f"{txn.amount_cents / 100:.2f}",
                sanitize_csv_value(txn.category.name if txn.category else ""),
                sanitize_csv_value(txn.account.name if txn.account else ""),
                sanitize_csv_value(
                    txn.source_account.name if txn.source_account else ""
                ),
                sanitize_csv_value(
                    txn.destination_account.name if txn.destination_account else ""
                ),
                sanitize_csv_value(txn.description or ""),
            ]
        )
    return output.getvalue()
