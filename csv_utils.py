import csv
import re
from datetime import datetime
from io import StringIO
from typing import Iterable, Optional, Sequence

from models import ExpenseEntry, IncomeEntry, SavingsCategory, SavingsEntry

INCOME_HEADERS = ["Month", "Source", "Amount", "Notes", "Created At"]
EXPENSE_HEADERS = ["Month", "Vertical", "Amount", "Notes", "Created At"]
SAVINGS_HEADERS = ["Month", "Category", "Instrument", "Amount", "Notes", "Created At"]


def sanitize_csv_value(value: Optional[str]) -> str:
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
        r"^http[s]?://",
    ]

    for pattern in dangerous_patterns:
        if re.match(pattern, value, re.IGNORECASE):
            return "\t" + value

    return value


def format_amount(cents: int) -> str:
    if cents % 100 == 0:
        return str(cents // 100)
    return f"{cents / 100:.2f}"


def format_timestamp(value: datetime) -> str:
    return value.replace(microsecond=0).isoformat() + "Z"


def _write(headers: Sequence[str], rows: Iterable[Sequence[str]]) -> str:
    buffer = StringIO()
    # QUOTE_MINIMAL quotes fields holding a comma, quote or newline and doubles inner quotes
    writer = csv.writer(buffer, lineterminator="\n")
    if headers:
        writer.writerow(headers)
    writer.writerows(rows)
    return buffer.getvalue()


def export_income_entries(entries: Sequence[IncomeEntry]) -> str:
    return _write(
        INCOME_HEADERS,
        (
            [
                entry.month,
                sanitize_csv_value(entry.source.name),
                format_amount(entry.amount_cents),
                sanitize_csv_value(entry.notes),
                format_timestamp(entry.created_at),
            ]
            for entry in entries
        ),
    )


def export_expense_entries(entries: Sequence[ExpenseEntry]) -> str:
    return _write(
        EXPENSE_HEADERS,
        (
            [
                entry.month,
                sanitize_csv_value(entry.vertical.name),
                format_amount(entry.amount_cents),
                sanitize_csv_value(entry.notes),
                format_timestamp(entry.created_at),
            ]
            for entry in entries
        ),
    )


def export_savings_entries(entries: Sequence[SavingsEntry]) -> str:
    return _write(
        SAVINGS_HEADERS,
        (
            [
                entry.month,
                SavingsCategory(entry.instrument.category).label,
                sanitize_csv_value(entry.instrument.name),
                format_amount(entry.amount_cents),
                sanitize_csv_value(entry.notes),
                format_timestamp(entry.created_at),
            ]
            for entry in entries
        ),
    )


def export_summary(month: str, data: dict) -> str:
    """Metric/Value rows for one month followed by the three breakdown sections."""
    summary = data["summary"]
    breakdowns = data["breakdowns"]
    rows: list[list[str]] = [
        ["Month", month],
        ["Total Income", str(summary["totalIncome"])],
        ["Total Expenses", str(summary["totalExpenses"])],
        ["Total Savings", str(summary["totalSavings"])],
        ["Net Cash Flow", str(summary["netCashFlow"])],
        ["Savings Rate (%)", f"{summary['savingsRate']:.2f}"],
        ["Expense Ratio (%)", f"{summary['expenseRatio']:.2f}"],
        [],
        ["Income Breakdown", ""],
    ]
    rows.extend(
        [f"  {sanitize_csv_value(item['name'])}", str(item["amount"])]
        for item in breakdowns["incomeBySource"]
    )
    rows.append([])
    rows.append(["Expense Breakdown", ""])
    rows.extend(
        [f"  {sanitize_csv_value(item['name'])}", str(item["amount"])]
        for item in breakdowns["expensesByVertical"]
    )
    rows.append([])
    rows.append(["Savings Breakdown", ""])
    rows.extend(
        [f"  {item['label']}", str(item["amount"])]
        for item in breakdowns["savingsByCategory"]
    )
    return _write(["Metric", "Value"], rows)
