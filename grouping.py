"""Report rows for the savings ledger.

A ``LedgerDay`` is one stored saving with the incomes and expenses that should
be shown for it (already filtered by the caller). Day rows are built from
those, and month/year rows are folded from day rows in the order given.
"""

from dataclasses import dataclass, field
from datetime import date
from typing import Iterable, Optional

from periods import Period, period_key
from schemas import OperationOut, SavingRow


@dataclass
class LedgerDay:
    id: int
    date: date
    balance_cents: int
    incomes: list[OperationOut] = field(default_factory=list)
    expenses: list[OperationOut] = field(default_factory=list)


def _by_category(
    operations: Iterable[OperationOut],
) -> dict[str, list[OperationOut]]:
    grouped: dict[str, list[OperationOut]] = {}
    for op in operations:
        grouped.setdefault(op.category.name, []).append(op)
    return grouped


def to_day_row(day: LedgerDay, reference_date: Optional[date] = None) -> SavingRow:
    incomes = [op.with_overdue(reference_date) for op in day.incomes]
    expenses = [op.with_overdue(reference_date) for op in day.expenses]
    return SavingRow(
        id=day.id,
        period=Period.day,
        date=day.date,
        balance_cents=day.balance_cents,
        incomes_sum_cents=sum(op.amount_cents for op in incomes),
        expenses_sum_cents=sum(op.amount_cents for op in expenses),
        is_overdue=any(op.is_overdue for op in incomes + expenses),
        incomes_by_category=_by_category(incomes),
        expenses_by_category=_by_category(expenses),
    )


def _merge_lists(
    target: dict[str, list[OperationOut]], source: dict[str, list[OperationOut]]
) -> None:
    for name, ops in source.items():
        target.setdefault(name, []).extend(ops)


def group_rows(rows: list[SavingRow], period: Period) -> list[SavingRow]:
    if period == Period.day:
        return rows

    merged: dict[str, SavingRow] = {}
    for row in rows:
        key = period_key(row.date, period)
        group = merged.get(key)
        if group is None:
            merged[key] = SavingRow(
                id=row.id,
                period=period,
                date=row.date,
                balance_cents=row.balance_cents,
                incomes_sum_cents=row.incomes_sum_cents,
                expenses_sum_cents=row.expenses_sum_cents,
                is_overdue=row.is_overdue,
                incomes_by_category={
                    k: list(v) for k, v in row.incomes_by_category.items()
                },
                expenses_by_category={
                    k: list(v) for k, v in row.expenses_by_category.items()
                },
            )
            continue

        if row.date >= group.date:
            group.id = row.id
            group.date = row.date
            group.balance_cents = row.balance_cents
        group.incomes_sum_cents += row.incomes_sum_cents
        group.expenses_sum_cents += row.expenses_sum_cents
        # A period is overdue when any of its days is.
        group.is_overdue = group.is_overdue or row.is_overdue
        _merge_lists(group.incomes_by_category, row.incomes_by_category)
        _merge_lists(group.expenses_by_category, row.expenses_by_category)

    return list(merged.values())


def assemble(
    days: list[LedgerDay], period: Period, reference_date: Optional[date] = None
) -> list[SavingRow]:
    return group_rows([to_day_row(day, reference_date) for day in days], period)
