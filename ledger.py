"""Monthly projection of finance records.

A stored record is never copied per month. Instead every read asks
:func:`classify` whether the record contributes to a given month, and with
which amount and display date. The list projection, the balance totals and
the per-record schedule are all built on that one function, so what a user
sees in a month always adds up to the balance reported for it.

Precedence, first match wins:

1. multi-month plan: explicit ``payment_months > 1`` (amount divided), or a
   due-date range spanning more than one month (full amount each month);
2. recurring: every queried month, full amount (with
   ``retroactive_recurring`` off, only from the transaction month on);
3. plain: only the transaction month, original date.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Iterable, Mapping, Optional

from models import FinanceType
from months import MonthRef, display_day, month_index, months_between, project_date

SYNTHETIC_ID_FACTOR = 1000
MAX_RANGE_MONTHS = 36
# Plan indexes must stay below the synthetic id factor.
MAX_PLAN_MONTHS = SYNTHETIC_ID_FACTOR - 1


class OccurrenceKind(str, Enum):
    plan = "plan"
    recurring = "recurring"
    single = "single"


@dataclass(frozen=True)
class FinanceEntry:
    id: int
    home_id: int
    type: FinanceType
    category: str
    amount_cents: int
    transaction_date: date
    created_by: int
    description: Optional[str] = None
    is_recurring: bool = False
    due_date: Optional[date] = None
    payment_months: Optional[int] = None
    visible_to_user_ids: frozenset[int] = field(default_factory=frozenset)

    def is_visible_to(self, user_id: int) -> bool:
        return self.created_by == user_id or user_id in self.visible_to_user_ids


@dataclass(frozen=True)
class Occurrence:
    kind: OccurrenceKind
    amount_cents: int
    display_date: date
    plan_index: Optional[int] = None
    plan_months: Optional[int] = None


def monthly_amount_cents(total_cents: int, months: int) -> int:
    if not months or months <= 0:
        return total_cents
    return int(
        (Decimal(total_cents) / Decimal(months)).quantize(
            Decimal("1"), rounding=ROUND_HALF_UP
        )
    )


def plan_span(
    payment_months: Optional[int],
    transaction_date: date,
    due_date: Optional[date],
) -> tuple[int, bool]:
    """Return ``(months, divided)`` for a payment plan.

    ``months`` is 1 when no plan applies. ``divided`` is only true for an
    explicit ``payment_months``; a due-date span repeats the full amount.
    """
    if payment_months and payment_months > 1:
        return payment_months, True
    if due_date is not None:
        span = months_between(transaction_date, due_date) + 1
        if span > 1:
            return span, False
    return 1, False


def plan_months_for(entry: FinanceEntry) -> tuple[int, bool]:
    return plan_span(entry.payment_months, entry.transaction_date, entry.due_date)


def classify(
    entry: FinanceEntry,
    year: int,
    month: int,
    *,
    retroactive_recurring: bool = True,
) -> Optional[Occurrence]:
    start = entry.transaction_date
    months_diff = month_index(year, month) - month_index(start.year, start.month)
    day = display_day(entry.due_date, entry.transaction_date)

    plan_months, divided = plan_months_for(entry)
    if plan_months > 1:
        if not 0 <= months_diff < plan_months:
            return None
        amount = entry.amount_cents
        if divided:
            amount = monthly_amount_cents(entry.amount_cents, plan_months)
        return Occurrence(
            kind=OccurrenceKind.plan,
            amount_cents=amount,
            display_date=project_date(year, month, day),
            plan_index=months_diff + 1,
            plan_months=plan_months,
        )

    if entry.is_recurring:
        if months_diff < 0 and not retroactive_recurring:
            return None
        return Occurrence(
            kind=OccurrenceKind.recurring,
            amount_cents=entry.amount_cents,
            display_date=project_date(year, month, day),
        )

    if months_diff == 0:
        return Occurrence(
            kind=OccurrenceKind.single,
            amount_cents=entry.amount_cents,
            display_date=entry.transaction_date,
        )
    return None


@dataclass(frozen=True)
class ProjectedFinance:
    id: int
    entry: FinanceEntry
    occurrence: Occurrence
    original_finance_id: Optional[int] = None

    @property
    def amount_cents(self) -> int:
        return self.occurrence.amount_cents

    @property
    def display_date(self) -> date:
        return self.occurrence.display_date

    @property
    def payment_months(self) -> Optional[int]:
        if self.occurrence.plan_months is not None:
            return self.occurrence.plan_months
        return self.entry.payment_months

    @property
    def payment_month_index(self) -> Optional[int]:
        return self.occurrence.plan_index

    @property
    def is_projected(self) -> bool:
        return self.occurrence.kind != OccurrenceKind.single


def synthetic_id(original_id: int, plan_index: int) -> int:
    return original_id * SYNTHETIC_ID_FACTOR + plan_index


def resolve_original_id(
    finance_id: int, plan_months: Mapping[int, int]
) -> Optional[int]:
    """Map a listed id back to a stored record id.

    ``plan_months`` maps each known record id to its plan length (1 when the
    record has no plan). A synthetic id only resolves when its index falls
    inside the plan of the record it points at.
    """
    if finance_id in plan_months:
        return finance_id
    original, plan_index = divmod(finance_id, SYNTHETIC_ID_FACTOR)
    months = plan_months.get(original, 1)
    if months > 1 and 1 <= plan_index <= months:
        return original
    return None


def project_entry(
    entry: FinanceEntry,
    year: int,
    month: int,
    *,
    retroactive_recurring: bool = True,
) -> Optional[ProjectedFinance]:
    occurrence = classify(
        entry, year, month, retroactive_recurring=retroactive_recurring
    )
    if occurrence is None:
        return None
    if occurrence.kind == OccurrenceKind.plan:
        return ProjectedFinance(
            id=synthetic_id(entry.id, occurrence.plan_index),
            entry=entry,
            occurrence=occurrence,
            original_finance_id=entry.id,
        )
    return ProjectedFinance(id=entry.id, entry=entry, occurrence=occurrence)


def project_month(
    entries: Iterable[FinanceEntry],
    year: int,
    month: int,
    *,
    retroactive_recurring: bool = True,
) -> list[ProjectedFinance]:
    rows = []
    for entry in entries:
        row = project_entry(
            entry, year, month, retroactive_recurring=retroactive_recurring
        )
        if row is not None:
            rows.append(row)
    rows.sort(key=lambda row: (row.display_date, row.id), reverse=True)
    return rows


def schedule(
    entry: FinanceEntry,
    start: MonthRef,
    months: int,
    *,
    retroactive_recurring: bool = True,
) -> list[tuple[MonthRef, Occurrence]]:
    result = []
    for offset in range(months):
        ref = start.shift(offset)
        occurrence = classify(
            entry, ref.year, ref.month, retroactive_recurring=retroactive_recurring
        )
        if occurrence is not None:
            result.append((ref, occurrence))
    return result


@dataclass(frozen=True)
class BalanceSummary:
    year: int
    month: int
    total_income_cents: int
    total_expenses_cents: int

    @property
    def balance_cents(self) -> int:
        return self.total_income_cents - self.total_expenses_cents


def visible_entries(
    entries: Iterable[FinanceEntry], user_id: int
) -> list[FinanceEntry]:
    return [entry for entry in entries if entry.is_visible_to(user_id)]


def summarize_month(
    entries: Iterable[FinanceEntry],
    user_id: int,
    year: int,
    month: int,
    *,
    retroactive_recurring: bool = True,
) -> BalanceSummary:
    income = 0
    expenses = 0
    for entry in visible_entries(entries, user_id):
        occurrence = classify(
            entry, year, month, retroactive_recurring=retroactive_recurring
        )
        if occurrence is None:
            continue
        if entry.type == FinanceType.income:
            income += occurrence.amount_cents
        else:
            expenses += occurrence.amount_cents
    return BalanceSummary(
        year=year,
        month=month,
        total_income_cents=income,
        total_expenses_cents=expenses,
    )


def summarize_range(
    entries: Iterable[FinanceEntry],
    user_id: int,
    start: MonthRef,
    end: MonthRef,
    *,
    retroactive_recurring: bool = True,
) -> list[BalanceSummary]:
    span = end.index - start.index + 1
    if span < 1:
        raise ValueError("Start month must not be after end month")
    if span > MAX_RANGE_MONTHS:
        raise ValueError(f"Range cannot exceed {MAX_RANGE_MONTHS} months")
    visible = visible_entries(entries, user_id)
    return [
        summarize_month(
            visible,
            user_id,
            ref.year,
            ref.month,
            retroactive_recurring=retroactive_recurring,
        )
        for ref in (start.shift(offset) for offset in range(span))
    ]
