from __future__ import annotations

import logging
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Union

from sqlalchemy import func, select
from sqlalchemy.orm import Session, joinedload

from csv_utils import (
    export_expense_entries,
    export_income_entries,
    export_savings_entries,
    export_summary,
)
from insights import (
    InsightsClient,
    MonthSnapshot,
    UpstreamError,
    empty_state_insights,
    fallback_insights,
    spending_alerts,
)
from models import (
    ExpenseEntry,
    ExpenseVertical,
    IncomeEntry,
    IncomeSource,
    SavingsCategory,
    SavingsEntry,
    SavingsInstrument,
)
from months import MonthRange, current_month, is_month_token, previous_month
from schemas import (
    CategoryNameIn,
    ExpenseEntryIn,
    ExpenseEntryUpdate,
    IncomeEntryIn,
    IncomeEntryUpdate,
    OnboardingIn,
    SavingsEntryIn,
    SavingsEntryUpdate,
    SavingsInstrumentIn,
    to_cents,
)

logger = logging.getLogger(__name__)


class NotFoundError(ValueError):
    pass


class InvalidReferenceError(ValueError):
    pass


class ConflictError(ValueError):
    pass


DEFAULT_INCOME_SOURCES = [
    "Monthly Salary",
    "Freelance Projects",
    "Business Income",
    "Bank Interest",
    "Stock Dividends",
    "Rental Income",
    "Other Income",
]

DEFAULT_EXPENSE_VERTICALS = [
    "Rent & Housing",
    "Groceries & Essentials",
    "Dining & Food Delivery",
    "Transportation",
    "Utilities & Bills",
    "Subscriptions & OTT",
    "Shopping & Lifestyle",
    "Healthcare & Medicines",
    "Insurance Premiums",
    "Family & Gifts",
    "EMI & Loan Payments",
    "Miscellaneous",
]

DEFAULT_SAVINGS_INSTRUMENTS = [
    ("Bank Fixed Deposit", SavingsCategory.fd_rd),
    ("Post Office Time Deposit", SavingsCategory.fd_rd),
    ("Recurring Deposit", SavingsCategory.fd_rd),
    ("National Pension Scheme (NPS)", SavingsCategory.nps_ppf),
    ("Public Provident Fund (PPF)", SavingsCategory.nps_ppf),
    ("Employee Provident Fund (EPF)", SavingsCategory.nps_ppf),
    ("Direct Equity (Stocks)", SavingsCategory.stocks_etfs),
    ("Index ETFs (Nifty/Sensex)", SavingsCategory.stocks_etfs),
    ("Gold ETF", SavingsCategory.stocks_etfs),
    ("Equity Mutual Funds (SIP)", SavingsCategory.mf),
    ("Debt/Liquid Funds", SavingsCategory.mf),
    ("ELSS Tax Saver Funds", SavingsCategory.mf),
]


def cents_to_amount(cents: int) -> Union[int, float]:
    if cents % 100 == 0:
        return cents // 100
    return cents / 100


def percentage(value_cents: int, total_cents: int) -> float:
    if total_cents <= 0:
        return 0.0
    ratio = Decimal(value_cents) * 100 / Decimal(total_cents)
    return float(ratio.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def _clean_notes(notes: Optional[str]) -> Optional[str]:
    if notes is None:
        return None
    clean = notes.strip()
    return clean or None


def _usage_label(count: int) -> str:
    return "1 entry is" if count == 1 else f"{count} entries are"


class _OwnedCategoryService:
    model: type = IncomeSource
    entry_model: type = IncomeEntry
    entry_fk = "source_id"
    label = "Income source"
    noun = "source"

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list:
        stmt = (
            select(self.model)
            .where(self.model.user_id == self.user_id)
            .order_by(self.model.name)
        )
        return self.session.scalars(stmt).all()

    def _entry_column(self):
        return getattr(self.entry_model, self.entry_fk)

    def usage_counts(self) -> dict[int, int]:
        column = self._entry_column()
        stmt = (
            select(column, func.count().label("usage"))
            .where(self.entry_model.user_id == self.user_id)
            .group_by(column)
        )
        return {row[0]: row.usage for row in self.session.execute(stmt)}

    def get(self, category_id: int):
        category = self.session.scalar(
            select(self.model).where(
                self.model.id == category_id, self.model.user_id == self.user_id
            )
        )
        if not category:
            raise NotFoundError(f"{self.noun.capitalize()} not found")
        return category

    def _find_by_name(self, name: str, exclude_id: Optional[int] = None):
        stmt = select(self.model).where(
            self.model.user_id == self.user_id,
            func.lower(self.model.name) == name.lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(self.model.id != exclude_id)
        return self.session.scalar(stmt)

    def create(self, data: CategoryNameIn, *, is_default: bool = False):
        if self._find_by_name(data.name):
            raise ConflictError(f"{self.label} with this name already exists")
        category = self.model(
            user_id=self.user_id, name=data.name, is_default=is_default
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def update(self, category_id: int, data: CategoryNameIn):
        category = self.get(category_id)
        if self._find_by_name(data.name, exclude_id=category.id):
            raise ConflictError(f"{self.label} with this name already exists")
        category.name = data.name
        self.session.commit()
        self.session.refresh(category)
        return category

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        in_use = self.session.execute(
            select(func.count())
            .select_from(self.entry_model)
            .where(self._entry_column() == category.id)
        ).scalar_one()
        if in_use:
            raise ConflictError(
                f"Cannot delete: {_usage_label(in_use)} using this {self.noun}. "
                "Reassign them first."
            )
        self.session.delete(category)
        self.session.commit()

    def ensure_defaults(self, names: list[str]) -> int:
        existing = {c.name.lower() for c in self.list_all()}
        created = 0
        for raw in names:
            name = raw.strip()[:100]
            if not name or name.lower() in existing:
                continue
            self.session.add(
                self.model(user_id=self.user_id, name=name, is_default=True)
            )
            existing.add(name.lower())
            created += 1
        self.session.commit()
        return created

    def count(self) -> int:
        return self.session.execute(
            select(func.count())
            .select_from(self.model)
            .where(self.model.user_id == self.user_id)
        ).scalar_one()


class IncomeSourceService(_OwnedCategoryService):
    model = IncomeSource
    entry_model = IncomeEntry
    entry_fk = "source_id"
    label = "Income source"
    noun = "source"


class ExpenseVerticalService(_OwnedCategoryService):
    model = ExpenseVertical
    entry_model = ExpenseEntry
    entry_fk = "vertical_id"
    label = "Expense vertical"
    noun = "vertical"


class SavingsInstrumentService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[SavingsInstrument]:
        stmt = select(SavingsInstrument).order_by(
            SavingsInstrument.category, SavingsInstrument.name
        )
        return self.session.scalars(stmt).all()

    def usage_counts(self) -> dict[int, int]:
        stmt = select(
            SavingsEntry.instrument_id, func.count().label("usage")
        ).group_by(SavingsEntry.instrument_id)
        return {row.instrument_id: row.usage for row in self.session.execute(stmt)}

    def get(self, instrument_id: int) -> SavingsInstrument:
        instrument = self.session.get(SavingsInstrument, instrument_id)
        if not instrument:
            raise NotFoundError("Instrument not found")
        return instrument

    def _duplicate(
        self, data: SavingsInstrumentIn, exclude_id: Optional[int] = None
    ) -> bool:
        stmt = select(SavingsInstrument.id).where(
            func.lower(SavingsInstrument.name) == data.name.lower(),
            SavingsInstrument.category == data.category,
        )
        if exclude_id is not None:
            stmt = stmt.where(SavingsInstrument.id != exclude_id)
        return self.session.scalar(stmt) is not None

    def create(self, data: SavingsInstrumentIn) -> SavingsInstrument:
        if self._duplicate(data):
            raise ConflictError(
                "Savings instrument with this name already exists in this category"
            )
        instrument = SavingsInstrument(
            name=data.name, category=data.category, is_default=False
        )
        self.session.add(instrument)
        self.session.commit()
        self.session.refresh(instrument)
        return instrument

    def update(self, instrument_id: int, data: SavingsInstrumentIn) -> SavingsInstrument:
        instrument = self.get(instrument_id)
        if self._duplicate(data, exclude_id=instrument.id):
            raise ConflictError(
                "Savings instrument with this name already exists in this category"
            )
        instrument.name = data.name
        instrument.category = data.category
        self.session.commit()
        self.session.refresh(instrument)
        return instrument

    def delete(self, instrument_id: int) -> None:
        instrument = self.get(instrument_id)
        in_use = self.session.execute(
            select(func.count())
            .select_from(SavingsEntry)
            .where(SavingsEntry.instrument_id == instrument.id)
        ).scalar_one()
        if in_use:
            raise ConflictError(
                f"Cannot delete: {_usage_label(in_use)} using this instrument. "
                "Reassign them first."
            )
        self.session.delete(instrument)
        self.session.commit()

    def ensure_defaults(self) -> int:
        existing = {
            (row.name, row.category)
            for row in self.session.execute(
                select(SavingsInstrument.name, SavingsInstrument.category)
            )
        }
        created = 0
        for name, category in DEFAULT_SAVINGS_INSTRUMENTS:
            if (name, category) in existing:
                continue
            self.session.add(
                SavingsInstrument(name=name, category=category, is_default=True)
            )
            created += 1
        self.session.commit()
        return created


class _LedgerService:
    entry_model: type = IncomeEntry
    category_field = "source_id"
    category_relation = "source"
    invalid_reference = "Invalid income source"

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _owned(self):
        return (
            select(self.entry_model)
            .options(joinedload(getattr(self.entry_model, self.category_relation)))
            .where(self.entry_model.user_id == self.user_id)
        )

    def _resolve_category(self, category_id: int):
        raise NotImplementedError

    def list(self, month: Optional[str] = None) -> list:
        stmt = self._owned()
        if month is not None:
            if not is_month_token(month):
                raise ValueError("Invalid month format. Use YYYY-MM")
            stmt = stmt.where(self.entry_model.month == month)
        stmt = stmt.order_by(
            self.entry_model.month.desc(),
            self.entry_model.created_at.desc(),
            self.entry_model.id.desc(),
        )
        return self.session.scalars(stmt).all()

    def for_months(self, months: list[str]) -> list:
        if not months:
            return []
        stmt = (
            self._owned()
            .where(self.entry_model.month.in_(months))
            .order_by(self.entry_model.month, self.entry_model.id)
        )
        return self.session.scalars(stmt).all()

    def get(self, entry_id: int):
        entry = self.session.scalar(self._owned().where(self.entry_model.id == entry_id))
        if not entry:
            raise NotFoundError("Entry not found")
        return entry

    def create(self, data):
        category = self._resolve_category(getattr(data, self.category_field))
        entry = self.entry_model(
            user_id=self.user_id,
            month=data.month,
            amount_cents=to_cents(data.amount),
            notes=_clean_notes(data.notes),
            **{self.category_field: category.id},
        )
        self.session.add(entry)
        self.session.commit()
        return self.get(entry.id)

    def update(self, entry_id: int, data):
        entry = self.get(entry_id)
        category_id = getattr(data, self.category_field)
        if category_id is not None:
            category = self._resolve_category(category_id)
            setattr(entry, self.category_field, category.id)
        if data.month is not None:
            entry.month = data.month
        if data.amount is not None:
            entry.amount_cents = to_cents(data.amount)
        if "notes" in data.model_fields_set:
            entry.notes = _clean_notes(data.notes)
        self.session.commit()
        self.session.expire(entry)
        return self.get(entry.id)

    def delete(self, entry_id: int) -> None:
        entry = self.get(entry_id)
        self.session.delete(entry)
        self.session.commit()


class IncomeEntryService(_LedgerService):
    entry_model = IncomeEntry
    category_field = "source_id"
    category_relation = "source"
    invalid_reference = "Invalid income source"

    def _resolve_category(self, category_id: int) -> IncomeSource:
        source = self.session.scalar(
            select(IncomeSource).where(
                IncomeSource.id == category_id, IncomeSource.user_id == self.user_id
            )
        )
        if not source:
            raise InvalidReferenceError(self.invalid_reference)
        return source

    def create(self, data: IncomeEntryIn) -> IncomeEntry:
        return super().create(data)

    def update(self, entry_id: int, data: IncomeEntryUpdate) -> IncomeEntry:
        return super().update(entry_id, data)


class ExpenseEntryService(_LedgerService):
    entry_model = ExpenseEntry
    category_field = "vertical_id"
    category_relation = "vertical"
    invalid_reference = "Invalid expense vertical"

    def _resolve_category(self, category_id: int) -> ExpenseVertical:
        vertical = self.session.scalar(
            select(ExpenseVertical).where(
                ExpenseVertical.id == category_id,
                ExpenseVertical.user_id == self.user_id,
            )
        )
        if not vertical:
            raise InvalidReferenceError(self.invalid_reference)
        return vertical

    def create(self, data: ExpenseEntryIn) -> ExpenseEntry:
        return super().create(data)

    def update(self, entry_id: int, data: ExpenseEntryUpdate) -> ExpenseEntry:
        return super().update(entry_id, data)


class SavingsEntryService(_LedgerService):
    entry_model = SavingsEntry
    category_field = "instrument_id"
    category_relation = "instrument"
    invalid_reference = "Invalid savings instrument"

    def _resolve_category(self, category_id: int) -> SavingsInstrument:
        # instruments are shared, existence is the only requirement
        instrument = self.session.get(SavingsInstrument, category_id)
        if not instrument:
            raise InvalidReferenceError(self.invalid_reference)
        return instrument

    def create(self, data: SavingsEntryIn) -> SavingsEntry:
        return super().create(data)

    def update(self, entry_id: int, data: SavingsEntryUpdate) -> SavingsEntry:
        return super().update(entry_id, data)


def _sorted_breakdown(totals: dict, key_names: tuple[str, ...]) -> list[dict]:
    rows = []
    for key, cents in totals.items():
        parts = key if isinstance(key, tuple) else (key,)
        row = dict(zip(key_names, parts))
        row["amount"] = cents
        rows.append(row)
    rows.sort(key=lambda r: (-r["amount"], str(r[key_names[0]])))
    for row in rows:
        row["amount"] = cents_to_amount(row["amount"])
    return rows


class DashboardService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def summary(self, month_range: MonthRange) -> dict[str, object]:
        months = month_range.months
        income_entries = IncomeEntryService(self.session, self.user_id).for_months(
            months
        )
        expense_entries = ExpenseEntryService(
            self.session, self.user_id
        ).for_months(months)
        savings_entries = SavingsEntryService(
            self.session, self.user_id
        ).for_months(months)

        monthly = {m: {"income": 0, "expenses": 0, "savings": 0} for m in months}
        income_by_source: dict[str, int] = {}
        expenses_by_vertical: dict[str, int] = {}
        savings_by_category: dict[tuple[str, str], int] = {}
        savings_by_instrument: dict[tuple[str, str], int] = {}

        for entry in income_entries:
            monthly[entry.month]["income"] += entry.amount_cents
            name = entry.source.name
            income_by_source[name] = income_by_source.get(name, 0) + entry.amount_cents

        for entry in expense_entries:
            monthly[entry.month]["expenses"] += entry.amount_cents
            name = entry.vertical.name
            expenses_by_vertical[name] = (
                expenses_by_vertical.get(name, 0) + entry.amount_cents
            )

        for entry in savings_entries:
            monthly[entry.month]["savings"] += entry.amount_cents
            category = entry.instrument.category
            cat_key = (category.value, category.label)
            savings_by_category[cat_key] = (
                savings_by_category.get(cat_key, 0) + entry.amount_cents
            )
            inst_key = (entry.instrument.name, category.value)
            savings_by_instrument[inst_key] = (
                savings_by_instrument.get(inst_key, 0) + entry.amount_cents
            )

        total_income = sum(row["income"] for row in monthly.values())
        total_expenses = sum(row["expenses"] for row in monthly.values())
        total_savings = sum(row["savings"] for row in monthly.values())

        monthly_data = [
            {
                "month": month,
                "income": cents_to_amount(row["income"]),
                "expenses": cents_to_amount(row["expenses"]),
                "savings": cents_to_amount(row["savings"]),
                "netCashFlow": cents_to_amount(
                    row["income"] - row["expenses"] - row["savings"]
                ),
            }
            for month, row in monthly.items()
        ]

        return {
            "range": {"from": month_range.start, "to": month_range.end},
            "summary": {
                "totalIncome": cents_to_amount(total_income),
                "totalExpenses": cents_to_amount(total_expenses),
                "totalSavings": cents_to_amount(total_savings),
                "netCashFlow": cents_to_amount(
                    total_income - total_expenses - total_savings
                ),
                "savingsRate": percentage(total_savings, total_income),
                "expenseRatio": percentage(total_expenses, total_income),
            },
            "monthlyData": monthly_data,
            "breakdowns": {
                "incomeBySource": _sorted_breakdown(income_by_source, ("name",)),
                "expensesByVertical": _sorted_breakdown(
                    expenses_by_vertical, ("name",)
                ),
                "savingsByCategory": _sorted_breakdown(
                    savings_by_category, ("category", "label")
                ),
                "savingsByInstrument": _sorted_breakdown(
                    savings_by_instrument, ("name", "category")
                ),
            },
        }

    def month_summary(self, month: str) -> dict[str, object]:
        return self.summary(MonthRange(month, month))


class ExportService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def export(self, month: str, kind: str) -> tuple[str, str]:
        if kind == "income":
            entries = IncomeEntryService(self.session, self.user_id).list(month)
            body = export_income_entries(entries)
        elif kind == "expenses":
            entries = ExpenseEntryService(self.session, self.user_id).list(month)
            body = export_expense_entries(entries)
        elif kind == "savings":
            entries = SavingsEntryService(self.session, self.user_id).list(month)
            body = export_savings_entries(entries)
        elif kind == "summary":
            data = DashboardService(self.session, self.user_id).month_summary(month)
            body = export_summary(month, data)
        else:
            raise ValueError(f"Unsupported export type: {kind}")
        logger.info(f"export_built: user={self.user_id} month={month} type={kind}")
        return f"{kind}_{month}.csv", body


class OnboardingService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def is_completed(self) -> bool:
        sources = IncomeSourceService(self.session, self.user_id).count()
        verticals = ExpenseVerticalService(self.session, self.user_id).count()
        return sources > 0 or verticals > 0

    def complete(self, data: OnboardingIn) -> dict[str, int]:
        source_names = (
            data.income_sources
            if data.income_sources is not None
            else DEFAULT_INCOME_SOURCES
        )
        vertical_names = (
            data.expense_verticals
            if data.expense_verticals is not None
            else DEFAULT_EXPENSE_VERTICALS
        )
        created_sources = IncomeSourceService(
            self.session, self.user_id
        ).ensure_defaults(source_names)
        created_verticals = ExpenseVerticalService(
            self.session, self.user_id
        ).ensure_defaults(vertical_names)
        logger.info(
            f"onboarding_completed: user={self.user_id} "
            f"sources={created_sources} verticals={created_verticals}"
        )
        return {"incomeSources": created_sources, "expenseVerticals": created_verticals}


class InsightsService:
    def __init__(
        self,
        session: Session,
        user_id: int,
        client: Optional[InsightsClient] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.dashboard = DashboardService(session, user_id)
        self.client = client or InsightsClient()

    def snapshot(self, month: str) -> MonthSnapshot:
        current = self.dashboard.month_summary(month)
        previous = self.dashboard.month_summary(previous_month(month))
        return MonthSnapshot.from_summaries(month, current, previous)

    def monthly_insights(
        self, month: Optional[str] = None, *, today: Optional[date] = None
    ) -> dict[str, object]:
        month = month or current_month(today)
        snapshot = self.snapshot(month)
        payload: dict[str, object] = {
            "data": snapshot.as_dict(),
            "alerts": spending_alerts(snapshot),
        }
        if snapshot.is_empty:
            payload["insights"] = empty_state_insights()
            return payload
        try:
            payload["insights"] = self.client.generate(snapshot)
        except UpstreamError as exc:
            logger.warning(f"insights_fallback: user={self.user_id} reason={exc}")
            payload["insights"] = fallback_insights(snapshot)
            payload["error"] = str(exc)
        return payload
