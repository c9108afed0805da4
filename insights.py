from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from http.client import HTTPException
from typing import Optional, Union
from urllib.request import Request, urlopen

from config import Settings, get_settings

logger = logging.getLogger(__name__)

Number = Union[int, float]

TRENDS = ("improving", "stable", "needs_attention")
FALLBACK_SUMMARY = "Unable to generate AI insights at this time. Please try again later."
SYSTEM_PROMPT = (
    "You are a personal finance assistant. Analyse the monthly figures you are "
    "given and respond with a single JSON object only."
)


class UpstreamError(RuntimeError):
    pass


@dataclass(frozen=True)
class MonthSnapshot:
    month: str
    total_income: Number
    total_expenses: Number
    total_savings: Number
    net_cash_flow: Number
    savings_rate: float
    expense_ratio: float
    income_by_source: list[dict] = field(default_factory=list)
    expenses_by_vertical: list[dict] = field(default_factory=list)
    savings_by_category: list[dict] = field(default_factory=list)
    previous_income: Number = 0
    previous_expenses: Number = 0
    previous_savings: Number = 0

    @classmethod
    def from_summaries(cls, month: str, current: dict, previous: dict) -> "MonthSnapshot":
        summary = current["summary"]
        breakdowns = current["breakdowns"]
        prev = previous["summary"]
        return cls(
            month=month,
            total_income=summary["totalIncome"],
            total_expenses=summary["totalExpenses"],
            total_savings=summary["totalSavings"],
            net_cash_flow=summary["netCashFlow"],
            savings_rate=summary["savingsRate"],
            expense_ratio=summary["expenseRatio"],
            income_by_source=breakdowns["incomeBySource"],
            expenses_by_vertical=breakdowns["expensesByVertical"],
            savings_by_category=breakdowns["savingsByCategory"],
            previous_income=prev["totalIncome"],
            previous_expenses=prev["totalExpenses"],
            previous_savings=prev["totalSavings"],
        )

    @property
    def is_empty(self) -> bool:
        return not (self.total_income or self.total_expenses or self.total_savings)

    @property
    def top_expense_category(self) -> Optional[str]:
        if not self.expenses_by_vertical:
            return None
        return self.expenses_by_vertical[0]["name"]

    def as_dict(self) -> dict[str, object]:
        return {
            "month": self.month,
            "totalIncome": self.total_income,
            "totalExpenses": self.total_expenses,
            "totalSavings": self.total_savings,
            "netCashFlow": self.net_cash_flow,
            "savingsRate": self.savings_rate,
            "expenseRatio": self.expense_ratio,
            "incomeBySource": self.income_by_source,
            "expensesByVertical": self.expenses_by_vertical,
            "savingsByCategory": self.savings_by_category,
            "previousMonth": {
                "totalIncome": self.previous_income,
                "totalExpenses": self.previous_expenses,
                "totalSavings": self.previous_savings,
            },
        }


def _change_pct(current: Number, previous: Number) -> Optional[float]:
    if not previous:
        return None
    return (current - previous) / previous * 100


def spending_alerts(snapshot: MonthSnapshot) -> list[dict[str, str]]:
    alerts: list[dict[str, str]] = []

    def add(kind: str, title: str, message: str) -> None:
        alerts.append({"type": kind, "title": title, "message": message})

    income = snapshot.total_income
    expenses = snapshot.total_expenses

    if expenses > income:
        add(
            "warning",
            "Spending exceeds income",
            f"You spent {expenses - income:g} more than you earned this month.",
        )
    if income > 0:
        if snapshot.savings_rate < 10:
            add(
                "warning",
                "Low savings rate",
                f"You saved {snapshot.savings_rate:.1f}% of your income. "
                "Aim for at least 20%.",
            )
        elif snapshot.savings_rate >= 30:
            add(
                "success",
                "Great savings rate",
                f"You saved {snapshot.savings_rate:.1f}% of your income this month.",
            )
        if snapshot.expense_ratio > 80:
            add(
                "warning",
                "High expense ratio",
                f"Expenses took {snapshot.expense_ratio:.1f}% of your income.",
            )

    expense_change = _change_pct(expenses, snapshot.previous_expenses)
    if expense_change is not None:
        if expense_change > 20:
            add(
                "warning",
                "Spending increased",
                f"Expenses rose {expense_change:.1f}% compared to last month.",
            )
        elif expense_change < -10:
            add(
                "success",
                "Spending decreased",
                f"Expenses fell {abs(expense_change):.1f}% compared to last month.",
            )

    income_change = _change_pct(income, snapshot.previous_income)
    if income_change is not None and income_change > 10:
        add(
            "success",
            "Income grew",
            f"Income grew {income_change:.1f}% compared to last month.",
        )

    if expenses > 0 and snapshot.expenses_by_vertical:
        top = snapshot.expenses_by_vertical[0]
        share = top["amount"] / expenses * 100
        if share > 40:
            add(
                "info",
                "Concentrated spending",
                f"{top['name']} accounts for {share:.1f}% of your expenses.",
            )

    if income > 0 and not snapshot.total_savings:
        add(
            "warning",
            "No savings recorded",
            "You have not recorded any savings or investments this month.",
        )
    return alerts


def computed_trend(snapshot: MonthSnapshot) -> str:
    if snapshot.total_expenses > snapshot.total_income:
        return "needs_attention"
    if snapshot.savings_rate >= 20 and snapshot.net_cash_flow >= 0:
        return "improving"
    return "stable"


def empty_state_insights() -> dict[str, object]:
    return {
        "summary": (
            "No financial data recorded for this month yet. Add income, expense "
            "or savings entries to get insights."
        ),
        "highlights": [],
        "recommendations": [
            "Record your income for the month",
            "Log your major expenses by category",
            "Track your savings and investments",
        ],
        "savingsRate": 0,
        "topExpenseCategory": None,
        "trend": "stable",
    }


def fallback_insights(snapshot: Optional[MonthSnapshot] = None) -> dict[str, object]:
    return {
        "summary": FALLBACK_SUMMARY,
        "highlights": [],
        "recommendations": [],
        "savingsRate": snapshot.savings_rate if snapshot else 0,
        "topExpenseCategory": snapshot.top_expense_category if snapshot else None,
        "trend": computed_trend(snapshot) if snapshot else "stable",
    }


def build_prompt(snapshot: MonthSnapshot) -> str:
    lines = [
        f"Month: {snapshot.month}",
        f"Total income: {snapshot.total_income}",
        f"Total expenses: {snapshot.total_expenses}",
        f"Total savings: {snapshot.total_savings}",
        f"Net cash flow: {snapshot.net_cash_flow}",
        f"Savings rate: {snapshot.savings_rate}%",
        f"Expense ratio: {snapshot.expense_ratio}%",
        "Income by source:",
    ]
    lines.extend(f"- {row['name']}: {row['amount']}" for row in snapshot.income_by_source)
    lines.append("Expenses by category:")
    lines.extend(
        f"- {row['name']}: {row['amount']}" for row in snapshot.expenses_by_vertical
    )
    lines.append("Savings by category:")
    lines.extend(
        f"- {row['label']}: {row['amount']}" for row in snapshot.savings_by_category
    )
    lines.append(
        "Previous month: "
        f"income {snapshot.previous_income}, expenses {snapshot.previous_expenses}, "
        f"savings {snapshot.previous_savings}"
    )
    lines.append(
        'Respond with JSON: {"summary": string, "highlights": [string], '
        '"recommendations": [string], "savingsRate": number, '
        '"topExpenseCategory": string, "trend": "improving" | "stable" | '
        '"needs_attention"}'
    )
    return "\n".join(lines)


def _string_list(value: object) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if str(item).strip()]


def parse_insights(content: str, snapshot: MonthSnapshot) -> dict[str, object]:
    """Normalise the model's reply; anything unparseable becomes computed values."""
    match = re.search(r"\{.*\}", content or "", re.DOTALL)
    data: dict = {}
    if match:
        try:
            parsed = json.loads(match.group(0))
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, dict):
            data = parsed
    if not data:
        logger.warning(f"insights_unparseable: month={snapshot.month}")

    savings_rate = data.get("savingsRate")
    if not isinstance(savings_rate, (int, float)) or isinstance(savings_rate, bool):
        savings_rate = snapshot.savings_rate
    trend = data.get("trend")
    if trend not in TRENDS:
        trend = computed_trend(snapshot)
    summary = data.get("summary")
    if not isinstance(summary, str) or not summary.strip():
        summary = (
            f"In {snapshot.month} you earned {snapshot.total_income}, spent "
            f"{snapshot.total_expenses} and saved {snapshot.total_savings}."
        )
    return {
        "summary": summary,
        "highlights": _string_list(data.get("highlights")),
        "recommendations": _string_list(data.get("recommendations")),
        "savingsRate": savings_rate,
        "topExpenseCategory": data.get("topExpenseCategory")
        or snapshot.top_expense_category,
        "trend": trend,
    }


class InsightsClient:
    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()

    def generate(self, snapshot: MonthSnapshot) -> dict[str, object]:
        if not self.settings.insights_api_key:
            raise UpstreamError("Insights provider is not configured")
        body = {
            "model": self.settings.insights_model,
            "temperature": 0.4,
            "response_format": {"type": "json_object"},
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": build_prompt(snapshot)},
            ],
        }
        payload = _post_chat_completion(
            self.settings.insights_base_url,
            self.settings.insights_api_key,
            body,
            timeout=self.settings.insights_timeout_secs,
        )
        try:
            content = payload["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise UpstreamError("Unexpected insights provider response") from exc
        return parse_insights(content, snapshot)


def _post_chat_completion(
    base_url: str, api_key: str, body: dict, *, timeout: float
) -> dict:
    url = f"{base_url.rstrip('/')}/chat/completions"
    req = Request(
        url,
        data=json.dumps(body).encode("utf-8"),
        headers={
            "Accept": "application/json",
            "Content-Type": "application/json",
            "Authorization": f"Bearer {api_key}",
        },
        method="POST",
    )
    try:
        with urlopen(req, timeout=timeout) as resp:
            return json.loads(resp.read().decode("utf-8"))
    except (OSError, HTTPException, ValueError) as exc:
        raise UpstreamError("Failed to reach insights provider") from exc
