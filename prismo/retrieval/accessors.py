"""
Financial Data Accessors

Read-only views over the user's financial tables, one accessor per data
source. Each turns rows into RetrievedDocuments: short, self-contained
text the model can read, plus structured fields the grader can match.

RESPONSIBILITIES:
- Filter every query on user_id (never another user's rows)
- Apply the user's privacy options before any document is built:
  excluded categories vanish from items AND aggregates,
  vendor names become "Vendor #n" when anonymization is on
- Compute the aggregates the model should NOT do itself
  (totals, utilization, progress, monthly equivalents)

BOUNDARIES:
- Accessors never write
- A data-layer failure never fails the turn: fetch() raises
  RetrievalError and the retriever drops that source
"""

import calendar
from abc import ABC, abstractmethod
from collections import defaultdict
from contextlib import aclosing
from datetime import date, timedelta
from decimal import Decimal
from typing import AsyncIterator, Callable, Iterable, Optional

from pydantic import BaseModel, Field, PrivateAttr
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from prismo.models.retrieval import RetrievalWindow, RetrievedDocument
from prismo.models.settings import AISettings, DataSource
from prismo.services.storage.sql import Database
from prismo.services.storage.tables import (
    BudgetRow,
    CreditCardRow,
    GoalRow,
    SubscriptionRow,
    TaxDeductionRow,
    TransactionRow,
)


INCOME_TREND_MONTHS = 6
FORECAST_HISTORY_MONTHS = 3
UPCOMING_DUE_DAYS = 30

# Multiplier from a billing frequency to a monthly amount
MONTHLY_FACTOR = {
    "weekly": Decimal(52) / Decimal(12),
    "monthly": Decimal(1),
    "quarterly": Decimal(1) / Decimal(3),
    "yearly": Decimal(1) / Decimal(12),
    "annually": Decimal(1) / Decimal(12),
}


class RetrievalError(Exception):
    """A single data source could not be read."""

    def __init__(self, source: DataSource, message: str):
        self.source = source
        super().__init__(f"{source.value}: {message}")


# ============================================================================
# PRIVACY OPTIONS
# ============================================================================

class AccessOptions(BaseModel):
    """
    Per-turn privacy options taken from the user's AI settings.

    One instance is shared by every accessor of a turn, so a vendor gets
    the same "Vendor #n" label in all documents of that turn.
    """

    anonymize_vendors: bool = False
    excluded_categories: list[str] = Field(default_factory=list)

    _vendor_aliases: dict[str, str] = PrivateAttr(default_factory=dict)

    @classmethod
    def from_settings(cls, settings: AISettings) -> "AccessOptions":
        return cls(
            anonymize_vendors=settings.anonymize_vendors,
            excluded_categories=list(settings.exclude_sensitive_categories),
        )

    def excludes(self, category: Optional[str]) -> bool:
        if not category:
            return False
        wanted = category.strip().lower()
        return any(wanted == c.strip().lower() for c in self.excluded_categories)

    def vendor_label(self, vendor: Optional[str]) -> Optional[str]:
        if not vendor or not self.anonymize_vendors:
            return vendor
        key = vendor.strip().lower()
        if key not in self._vendor_aliases:
            self._vendor_aliases[key] = f"Vendor #{len(self._vendor_aliases) + 1}"
        return self._vendor_aliases[key]

    def scrub(self, text: str, vendor: Optional[str]) -> str:
        """Remove a vendor name from free text when anonymizing."""
        if not vendor or not self.anonymize_vendors:
            return text
        label = self.vendor_label(vendor)
        lowered = text.lower()
        needle = vendor.lower()
        start = lowered.find(needle)
        while start != -1:
            text = text[:start] + label + text[start + len(vendor):]
            lowered = text.lower()
            start = lowered.find(needle, start + len(label))
        return text


# ============================================================================
# FORMATTING HELPERS
# ============================================================================

def money(value) -> str:
    return f"RM {Decimal(value or 0):,.2f}"


def percent(part, whole) -> float:
    if not whole:
        return 0.0
    return round(float(Decimal(part) / Decimal(whole) * 100), 1)


def month_bounds(year: int, month: int) -> tuple[date, date]:
    return date(year, month, 1), date(year, month, calendar.monthrange(year, month)[1])


def shift_month(year: int, month: int, delta: int) -> tuple[int, int]:
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


# ============================================================================
# BASE ACCESSOR
# ============================================================================

class FinancialDataAccessor(ABC):
    """
    Abstract accessor for one data source.

    Subclasses implement documents() as an async generator. It loads its
    rows inside one short session and then yields documents lazily.
    """

    source: DataSource

    def __init__(self, database: Database, clock: Callable[[], date] = date.today):
        self._database = database
        self._clock = clock

    @abstractmethod
    def documents(
        self,
        user_id: str,
        window: RetrievalWindow,
        limit: int,
        options: AccessOptions,
    ) -> AsyncIterator[RetrievedDocument]:
        """Yield at most `limit` documents for this user and window."""

    async def fetch(
        self,
        user_id: str,
        window: RetrievalWindow,
        limit: int,
        options: AccessOptions,
    ) -> list[RetrievedDocument]:
        """
        Drain documents() up to limit.

        Raises:
            RetrievalError: The data layer failed
        """
        results: list[RetrievedDocument] = []
        if limit <= 0:
            return results
        try:
            async with aclosing(self.documents(user_id, window, limit, options)) as stream:
                async for document in stream:
                    results.append(document)
                    if len(results) >= limit:
                        break
        except SQLAlchemyError as e:
            raise RetrievalError(self.source, str(e)) from e
        return results

    async def _rows(self, statement) -> list:
        async with self._database.session() as session:
            result = await session.execute(statement)
            return list(result.scalars().all())

    def _document(self, title: str, lines: Iterable[str], **fields) -> RetrievedDocument:
        return RetrievedDocument(
            source=self.source,
            title=title,
            content="\n".join(lines),
            fields=fields,
        )


# ============================================================================
# ACCESSORS
# ============================================================================

class TransactionsAccessor(FinancialDataAccessor):
    """Period summary (income vs expense, totals by category), then recent transactions."""

    source = DataSource.TRANSACTIONS

    async def documents(self, user_id, window, limit, options):
        rows = await self._rows(
            select(TransactionRow)
            .where(
                TransactionRow.user_id == user_id,
                TransactionRow.transaction_date >= window.start,
                TransactionRow.transaction_date <= window.end,
            )
            .order_by(TransactionRow.transaction_date.desc(), TransactionRow.id)
        )
        rows = [r for r in rows if not options.excludes(r.category)]
        if not rows:
            return

        expenses = [r for r in rows if r.type == "expense"]
        total_expense = sum((r.amount for r in expenses), Decimal("0"))
        total_income = sum((r.amount for r in rows if r.type == "income"), Decimal("0"))

        by_category: dict[str, list[Decimal]] = defaultdict(list)
        for r in expenses:
            by_category[r.category or "Uncategorized"].append(r.amount)
        ranked = sorted(by_category.items(), key=lambda item: (-sum(item[1]), item[0]))

        lines = [
            f"Spending summary for {window.label} ({window.start} to {window.end})",
            f"Total expenses: {money(total_expense)} across {len(expenses)} transactions",
            f"Total income: {money(total_income)}",
            f"Net: {money(total_income - total_expense)}",
        ]
        if ranked:
            lines.append("Expenses by category:")
            lines.extend(
                f"- {category}: {money(sum(amounts))} ({len(amounts)} transactions)"
                for category, amounts in ranked
            )
        yield self._document(
            f"Spending summary ({window.label})",
            lines,
            period=window.label,
            total_expenses=float(total_expense),
            total_income=float(total_income),
            transaction_count=len(rows),
            categories=[category for category, _ in ranked],
        )

        for r in rows[: max(limit - 1, 0)]:
            vendor = options.vendor_label(r.vendor)
            description = options.scrub(r.description, r.vendor)
            parts = [r.transaction_date.isoformat(), description, r.category or "Uncategorized"]
            if vendor:
                parts.append(vendor)
            parts.append(f"{r.type} {money(r.amount)}")
            yield self._document(
                f"Transaction: {description}",
                [" | ".join(parts)],
                date=r.transaction_date.isoformat(),
                category=r.category,
                vendor=vendor,
                type=r.type,
                amount=float(r.amount),
            )


class BudgetsAccessor(FinancialDataAccessor):
    """Budgets with amount used in the window and utilization."""

    source = DataSource.BUDGETS

    async def documents(self, user_id, window, limit, options):
        budgets = await self._rows(
            select(BudgetRow)
            .where(BudgetRow.user_id == user_id)
            .order_by(BudgetRow.category)
        )
        budgets = [b for b in budgets if not options.excludes(b.category)]
        if not budgets:
            return

        expenses = await self._rows(
            select(TransactionRow).where(
                TransactionRow.user_id == user_id,
                TransactionRow.type == "expense",
                TransactionRow.transaction_date >= window.start,
                TransactionRow.transaction_date <= window.end,
            )
        )
        used: dict[str, Decimal] = defaultdict(Decimal)
        for r in expenses:
            if r.category:
                used[r.category.lower()] += r.amount

        for b in budgets[:limit]:
            amount_used = used.get(b.category.lower(), Decimal("0"))
            utilization = percent(amount_used, b.amount)
            if utilization > 100:
                status = "over budget"
            elif utilization >= 80:
                status = "near limit"
            else:
                status = "on track"
            yield self._document(
                f"Budget: {b.category}",
                [
                    f"{b.category} budget ({b.period}, {window.label}): {money(b.amount)}",
                    f"Used: {money(amount_used)} ({utilization}%), "
                    f"remaining {money(b.amount - amount_used)}, status: {status}",
                ],
                category=b.category,
                budget=float(b.amount),
                used=float(amount_used),
                utilization_pct=utilization,
                status=status,
            )


class GoalsAccessor(FinancialDataAccessor):
    """Goal progress and the monthly amount needed to reach the target date."""

    source = DataSource.GOALS

    async def documents(self, user_id, window, limit, options):
        goals = await self._rows(
            select(GoalRow)
            .where(GoalRow.user_id == user_id)
            .order_by(GoalRow.target_date, GoalRow.name)
        )
        today = self._clock()
        for g in goals[:limit]:
            remaining = max(g.target_amount - g.current_amount, Decimal("0"))
            progress = percent(g.current_amount, g.target_amount)
            lines = [
                f"Goal '{g.name}' ({g.status}): {money(g.current_amount)} of "
                f"{money(g.target_amount)} saved ({progress}%), {money(remaining)} remaining",
            ]
            monthly_needed = None
            if g.target_date and remaining > 0:
                months_left = max(
                    (g.target_date.year - today.year) * 12 + g.target_date.month - today.month,
                    1,
                )
                monthly_needed = remaining / months_left
                lines.append(
                    f"Target date {g.target_date.isoformat()}: save {money(monthly_needed)} "
                    f"per month for {months_left} months"
                )
            yield self._document(
                f"Goal: {g.name}",
                lines,
                name=g.name,
                status=g.status,
                target_amount=float(g.target_amount),
                current_amount=float(g.current_amount),
                progress_pct=progress,
                monthly_needed=float(monthly_needed) if monthly_needed is not None else None,
            )


class SubscriptionsAccessor(FinancialDataAccessor):
    """Active subscriptions, monthly-equivalent total and upcoming dues."""

    source = DataSource.SUBSCRIPTIONS

    async def documents(self, user_id, window, limit, options):
        subscriptions = await self._rows(
            select(SubscriptionRow)
            .where(SubscriptionRow.user_id == user_id, SubscriptionRow.is_active.is_(True))
            .order_by(SubscriptionRow.name)
        )
        subscriptions = [s for s in subscriptions if not options.excludes(s.category)]
        if not subscriptions:
            return

        today = self._clock()
        horizon = today + timedelta(days=UPCOMING_DUE_DAYS)

        def monthly(s: SubscriptionRow) -> Decimal:
            return s.amount * MONTHLY_FACTOR.get(s.frequency, Decimal(1))

        total = sum((monthly(s) for s in subscriptions), Decimal("0"))
        upcoming = [
            s for s in subscriptions
            if s.next_billing_date and today <= s.next_billing_date <= horizon
        ]
        lines = [
            f"Active subscriptions: {len(subscriptions)}, "
            f"about {money(total)} per month ({money(total * 12)} per year)",
        ]
        if upcoming:
            lines.append(f"Due in the next {UPCOMING_DUE_DAYS} days:")
            lines.extend(
                f"- {options.vendor_label(s.name)}: {money(s.amount)} on {s.next_billing_date.isoformat()}"
                for s in sorted(upcoming, key=lambda s: s.next_billing_date)
            )
        yield self._document(
            "Subscriptions overview",
            lines,
            active_count=len(subscriptions),
            monthly_total=float(total),
            upcoming=[options.vendor_label(s.name) for s in upcoming],
        )

        for s in subscriptions[: max(limit - 1, 0)]:
            name = options.vendor_label(s.name)
            yield self._document(
                f"Subscription: {name}",
                [
                    f"{name} ({s.category or 'Uncategorized'}): {money(s.amount)} {s.frequency}, "
                    f"{money(monthly(s))} per month equivalent"
                    + (f", next billing {s.next_billing_date.isoformat()}" if s.next_billing_date else ""),
                ],
                name=name,
                category=s.category,
                frequency=s.frequency,
                amount=float(s.amount),
                monthly_amount=float(monthly(s)),
            )


def next_due_date(today: date, due_day: int) -> date:
    """Next occurrence of a day-of-month, clamped to short months."""
    year, month = today.year, today.month
    day = min(due_day, calendar.monthrange(year, month)[1])
    if day < today.day:
        year, month = shift_month(year, month, 1)
        day = min(due_day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


class CreditCardsAccessor(FinancialDataAccessor):
    """Balance, limit, utilization and next payment due date per card."""

    source = DataSource.CREDIT_CARDS

    async def documents(self, user_id, window, limit, options):
        cards = await self._rows(
            select(CreditCardRow)
            .where(CreditCardRow.user_id == user_id)
            .order_by(CreditCardRow.card_name)
        )
        today = self._clock()
        for c in cards[:limit]:
            utilization = percent(c.current_balance, c.credit_limit)
            due = next_due_date(today, c.payment_due_day) if c.payment_due_day else None
            bank = f" ({c.bank})" if c.bank else ""
            lines = [
                f"Credit card {c.card_name}{bank}: balance {money(c.current_balance)} "
                f"of {money(c.credit_limit)} limit ({utilization}% utilization)",
            ]
            if due:
                lines.append(f"Next payment due {due.isoformat()}")
            yield self._document(
                f"Credit card: {c.card_name}",
                lines,
                name=c.card_name,
                bank=c.bank,
                balance=float(c.current_balance),
                credit_limit=float(c.credit_limit),
                utilization_pct=utilization,
                next_due=due.isoformat() if due else None,
            )


class TaxAccessor(FinancialDataAccessor):
    """Reliefs claimed per category for the assessment year, plus tax-deductible spending."""

    source = DataSource.TAX

    async def documents(self, user_id, window, limit, options):
        year = window.end.year
        deductions = await self._rows(
            select(TaxDeductionRow)
            .where(TaxDeductionRow.user_id == user_id, TaxDeductionRow.year == year)
            .order_by(TaxDeductionRow.relief_category)
        )
        deductions = [d for d in deductions if not options.excludes(d.relief_category)]

        deductible = await self._rows(
            select(TransactionRow).where(
                TransactionRow.user_id == user_id,
                TransactionRow.is_tax_deductible.is_(True),
                TransactionRow.transaction_date >= date(year, 1, 1),
                TransactionRow.transaction_date <= date(year, 12, 31),
            )
        )
        deductible = [r for r in deductible if not options.excludes(r.category)]

        groups: dict[str, list[TaxDeductionRow]] = defaultdict(list)
        for d in deductions:
            groups[d.relief_category].append(d)

        emitted = 0
        for category, items in groups.items():
            if emitted >= limit:
                return
            claimed = sum((d.amount for d in items), Decimal("0"))
            limits = [d.relief_limit for d in items if d.relief_limit is not None]
            relief_limit = max(limits) if limits else None
            line = f"Tax relief {category} (YA {year}): claimed {money(claimed)}"
            if relief_limit is not None:
                unused = max(relief_limit - claimed, Decimal("0"))
                line += f" of {money(relief_limit)} limit, {money(unused)} unused"
            yield self._document(
                f"Tax relief: {category}",
                [line],
                relief_category=category,
                year=year,
                claimed=float(claimed),
                relief_limit=float(relief_limit) if relief_limit is not None else None,
            )
            emitted += 1

        if deductible and emitted < limit:
            by_category: dict[str, Decimal] = defaultdict(Decimal)
            for r in deductible:
                by_category[r.tax_category or r.category or "Uncategorized"] += r.amount
            lines = [f"Tax-deductible transactions in {year}: {len(deductible)}"]
            lines.extend(f"- {k}: {money(v)}" for k, v in sorted(by_category.items()))
            yield self._document(
                f"Tax-deductible spending ({year})",
                lines,
                year=year,
                categories=sorted(by_category),
                total=float(sum(by_category.values(), Decimal("0"))),
            )


class IncomeAccessor(FinancialDataAccessor):
    """Monthly income over the last six months and the average."""

    source = DataSource.INCOME

    async def documents(self, user_id, window, limit, options):
        end_year, end_month = window.end.year, window.end.month
        start_year, start_month = shift_month(end_year, end_month, -(INCOME_TREND_MONTHS - 1))
        start, _ = month_bounds(start_year, start_month)
        _, end = month_bounds(end_year, end_month)

        rows = await self._rows(
            select(TransactionRow).where(
                TransactionRow.user_id == user_id,
                TransactionRow.type == "income",
                TransactionRow.transaction_date >= start,
                TransactionRow.transaction_date <= end,
            )
        )
        rows = [r for r in rows if not options.excludes(r.category)]
        if not rows:
            return

        monthly: dict[str, Decimal] = {}
        for offset in range(INCOME_TREND_MONTHS):
            y, m = shift_month(start_year, start_month, offset)
            monthly[f"{y:04d}-{m:02d}"] = Decimal("0")
        by_source: dict[str, Decimal] = defaultdict(Decimal)
        for r in rows:
            monthly[r.transaction_date.strftime("%Y-%m")] += r.amount
            by_source[r.category or "Other"] += r.amount

        average = sum(monthly.values(), Decimal("0")) / INCOME_TREND_MONTHS
        lines = [f"Income trend, last {INCOME_TREND_MONTHS} months (average {money(average)} per month):"]
        lines.extend(f"- {month}: {money(amount)}" for month, amount in monthly.items())
        lines.append(
            "Income sources: "
            + ", ".join(f"{k} {money(v)}" for k, v in sorted(by_source.items()))
        )
        yield self._document(
            "Income trend",
            lines,
            average_monthly=float(average),
            months={k: float(v) for k, v in monthly.items()},
            sources=sorted(by_source),
        )


class ForecastsAccessor(FinancialDataAccessor):
    """Next-month projection per category from the last three full months."""

    source = DataSource.FORECASTS

    async def documents(self, user_id, window, limit, options):
        today = self._clock()
        first_year, first_month = shift_month(today.year, today.month, -FORECAST_HISTORY_MONTHS)
        last_year, last_month = shift_month(today.year, today.month, -1)
        start, _ = month_bounds(first_year, first_month)
        _, end = month_bounds(last_year, last_month)

        rows = await self._rows(
            select(TransactionRow).where(
                TransactionRow.user_id == user_id,
                TransactionRow.type == "expense",
                TransactionRow.transaction_date >= start,
                TransactionRow.transaction_date <= end,
            )
        )
        rows = [r for r in rows if not options.excludes(r.category)]
        if not rows:
            return

        totals: dict[str, Decimal] = defaultdict(Decimal)
        for r in rows:
            totals[r.category or "Uncategorized"] += r.amount
        projected = {
            category: amount / FORECAST_HISTORY_MONTHS
            for category, amount in sorted(totals.items(), key=lambda item: (-item[1], item[0]))
        }
        total = sum(projected.values(), Decimal("0"))
        next_year, next_month = shift_month(today.year, today.month, 1)
        label = f"{calendar.month_name[next_month]} {next_year}"

        yield self._document(
            f"Forecast for {label}",
            [
                f"Projected expenses for {label}: {money(total)} "
                f"(average of the last {FORECAST_HISTORY_MONTHS} months)",
            ]
            + [f"- {category}: {money(amount)}" for category, amount in projected.items()],
            period=label,
            projected_total=float(total),
            categories=list(projected),
        )


ACCESSOR_CLASSES: dict[DataSource, type[FinancialDataAccessor]] = {
    DataSource.TRANSACTIONS: TransactionsAccessor,
    DataSource.BUDGETS: BudgetsAccessor,
    DataSource.GOALS: GoalsAccessor,
    DataSource.SUBSCRIPTIONS: SubscriptionsAccessor,
    DataSource.CREDIT_CARDS: CreditCardsAccessor,
    DataSource.TAX: TaxAccessor,
    DataSource.INCOME: IncomeAccessor,
    DataSource.FORECASTS: ForecastsAccessor,
}


def create_accessors(
    database: Database,
    clock: Callable[[], date] = date.today,
) -> dict[DataSource, FinancialDataAccessor]:
    """One accessor per data source, sharing the database."""
    return {source: cls(database, clock) for source, cls in ACCESSOR_CLASSES.items()}
