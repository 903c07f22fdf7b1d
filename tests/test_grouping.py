from datetime import date

from grouping import LedgerDay, assemble, group_rows, to_day_row
from models import TransactionType
from periods import Period, period_key
from schemas import CategoryOut, OperationOut, SavingRow


def op(
    op_id: int,
    on: date,
    amount: int,
    category: str = "Salary",
    txn_type: TransactionType = TransactionType.income,
    planned: bool = False,
) -> OperationOut:
    return OperationOut(
        id=op_id,
        type=txn_type,
        category=CategoryOut(id=1, name=category),
        date=on,
        amount_cents=amount,
        is_planned=planned,
    )


def test_period_keys() -> None:
    day = date(2024, 3, 7)
    assert period_key(day, Period.day) == "2024-03-07"
    assert period_key(day, Period.month) == "2024-03"
    assert period_key(day, Period.year) == "2024"


def test_day_row_sums_and_groups_by_category() -> None:
    on = date(2024, 1, 1)
    row = to_day_row(
        LedgerDay(
            id=1,
            date=on,
            balance_cents=900,
            incomes=[op(1, on, 500), op(2, on, 300), op(3, on, 200, "Gift")],
            expenses=[op(4, on, 100, "Food", TransactionType.expense)],
        )
    )

    assert row.incomes_sum_cents == 1_000
    assert row.expenses_sum_cents == 100
    assert [o.id for o in row.incomes_by_category["Salary"]] == [1, 2]
    assert [o.id for o in row.incomes_by_category["Gift"]] == [3]
    assert not row.is_overdue


def test_planned_operation_in_past_is_overdue() -> None:
    on = date(2024, 1, 1)
    row = to_day_row(
        LedgerDay(id=1, date=on, balance_cents=0, incomes=[op(1, on, 10, planned=True)]),
        reference_date=date(2024, 1, 2),
    )
    assert row.is_overdue
    assert row.incomes_by_category["Salary"][0].is_overdue

    future = to_day_row(
        LedgerDay(id=1, date=on, balance_cents=0, incomes=[op(1, on, 10, planned=True)]),
        reference_date=date(2023, 12, 31),
    )
    assert not future.is_overdue


def test_overdue_flag_never_resets() -> None:
    overdue = op(1, date(2024, 1, 1), 10, planned=True).with_overdue(date(2024, 2, 1))
    assert overdue.is_overdue
    assert overdue.with_overdue(date(2023, 1, 1)).is_overdue


def test_month_grouping_takes_balance_of_latest_day() -> None:
    rows = [
        SavingRow(id=2, date=date(2024, 1, 20), balance_cents=300, incomes_sum_cents=200),
        SavingRow(id=1, date=date(2024, 1, 5), balance_cents=100, incomes_sum_cents=100),
        SavingRow(id=3, date=date(2024, 2, 1), balance_cents=50, expenses_sum_cents=250),
    ]

    grouped = group_rows(rows, Period.month)

    assert [(r.id, r.date, r.balance_cents) for r in grouped] == [
        (2, date(2024, 1, 20), 300),
        (3, date(2024, 2, 1), 50),
    ]
    assert grouped[0].incomes_sum_cents == 300
    assert grouped[0].period == Period.month
    assert grouped[1].expenses_sum_cents == 250


def test_grouping_concatenates_category_lists_without_touching_input() -> None:
    first = date(2024, 5, 1)
    second = date(2024, 5, 2)
    days = [
        LedgerDay(id=1, date=first, balance_cents=100, incomes=[op(1, first, 100)]),
        LedgerDay(id=2, date=second, balance_cents=150, incomes=[op(2, second, 50)]),
    ]
    day_rows = [to_day_row(d) for d in days]

    grouped = group_rows(day_rows, Period.year)

    assert len(grouped) == 1
    assert [o.id for o in grouped[0].incomes_by_category["Salary"]] == [1, 2]
    assert [o.id for o in day_rows[0].incomes_by_category["Salary"]] == [1]


def test_day_period_keeps_rows_as_is() -> None:
    on = date(2024, 1, 1)
    rows = assemble(
        [
            LedgerDay(id=1, date=on, balance_cents=10),
            LedgerDay(id=2, date=date(2024, 1, 2), balance_cents=20),
        ],
        Period.day,
    )
    assert [r.id for r in rows] == [1, 2]
    assert all(r.period == Period.day for r in rows)


def test_grouped_row_is_overdue_when_any_of_its_days_is() -> None:
    """Month and year rows carry the overdue flag of their days instead of dropping it."""
    early = date(2024, 6, 1)
    late = date(2024, 6, 20)
    days = [
        LedgerDay(
            id=1, date=early, balance_cents=10, incomes=[op(1, early, 10, planned=True)]
        ),
        LedgerDay(id=2, date=late, balance_cents=20, incomes=[op(2, late, 10)]),
    ]

    grouped = assemble(days, Period.month, reference_date=date(2024, 6, 10))

    assert len(grouped) == 1
    assert grouped[0].is_overdue
    only_late = assemble(days[1:], Period.month, reference_date=date(2024, 6, 10))
    assert not only_late[0].is_overdue
