from datetime import date

import pytest
from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from database import Base, build_engine
from models import (
    Category,
    HistoryAction,
    HistoryActionType,
    Saving,
    Transaction,
    TransactionType,
)
from schemas import AccountIn, CategoryIn, OperationIn
from services import (
    INCOME,
    AccountService,
    CategoryService,
    HistoryService,
    NotFoundError,
    OperationService,
    ValidationError,
)


def make_session():
    engine = build_engine("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def test_default_categories_and_empty_check() -> None:
    session = make_session()
    accounts = AccountService(session)
    account = accounts.create(AccountIn(name=" Family ", currency="usd"))

    assert account.name == "Family"
    assert account.currency == "USD"
    assert accounts.is_empty(account.id)

    accounts.create_default_categories(account.id)

    income_names = [
        c.name
        for c in CategoryService(session, account.id, TransactionType.income).list_all()
    ]
    expense_names = [
        c.name
        for c in CategoryService(session, account.id, TransactionType.expense).list_all()
    ]
    assert income_names == ["Other", "Salary"]
    assert expense_names == ["Common", "Debts", "Loans", "Mortgage", "Other"]
    assert not accounts.is_empty(account.id)


def test_category_names_are_unique_ignoring_case() -> None:
    session = make_session()
    account = AccountService(session).create(AccountIn(name="Main"))
    categories = CategoryService(session, account.id, TransactionType.expense)
    food = categories.create(CategoryIn(name="Food"))

    with pytest.raises(ValidationError):
        categories.create(CategoryIn(name="food"))

    renamed = categories.update(food.id, CategoryIn(name="FOOD"))
    assert renamed.name == "FOOD"

    # Same name is fine for the other kind.
    CategoryService(session, account.id, TransactionType.income).create(
        CategoryIn(name="Food")
    )

    rent = categories.create(CategoryIn(name="Rent"))
    with pytest.raises(ValidationError):
        categories.update(rent.id, CategoryIn(name="food"))

    categories.create(CategoryIn(name="Еда"))
    with pytest.raises(ValidationError):
        categories.create(CategoryIn(name="ЕДА"))
    with pytest.raises(ValidationError):
        categories.update(rent.id, CategoryIn(name="еда"))


def test_category_in_use_cannot_be_deleted() -> None:
    session = make_session()
    account = AccountService(session).create(AccountIn(name="Main"))
    categories = CategoryService(session, account.id, TransactionType.income)
    salary = categories.create(CategoryIn(name="Salary"))
    spare = categories.create(CategoryIn(name="Spare"))
    OperationService(session, account.id, INCOME).create(
        OperationIn(date=date(2024, 1, 1), amount_cents=100, category_id=salary.id)
    )

    with pytest.raises(ValidationError):
        categories.delete(salary.id)
    categories.delete(spare.id)

    with pytest.raises(NotFoundError):
        categories.get(spare.id)
    with pytest.raises(NotFoundError):
        CategoryService(session, account.id, TransactionType.expense).get(salary.id)


def test_history_records_each_change() -> None:
    session = make_session()
    account = AccountService(session).create(AccountIn(name="Main"))
    salary = CategoryService(session, account.id, TransactionType.income).create(
        CategoryIn(name="Salary")
    )
    incomes = OperationService(session, account.id, INCOME)

    txn = incomes.create(
        OperationIn(date=date(2024, 1, 1), amount_cents=100, category_id=salary.id)
    )
    incomes.update(
        txn.id,
        OperationIn(date=date(2024, 1, 1), amount_cents=250, category_id=salary.id),
    )
    incomes.delete(txn.id)

    entries = HistoryService(session, account.id).list_all()

    assert [e.action_type for e in entries] == [
        HistoryActionType.delete,
        HistoryActionType.update,
        HistoryActionType.create,
    ]
    deleted, updated, created = entries
    assert created.old_operation is None
    assert created.new_operation.amount_cents == 100
    assert updated.old_operation.amount_cents == 100
    assert updated.new_operation.amount_cents == 250
    assert deleted.old_operation.amount_cents == 250
    assert deleted.new_operation is None
    assert all(e.operation_type == TransactionType.income for e in entries)


def test_deleting_account_removes_everything_it_owns() -> None:
    session = make_session()
    accounts = AccountService(session)
    account = accounts.create(AccountIn(name="Main"))
    other = accounts.create(AccountIn(name="Other"))
    accounts.create_default_categories(account.id)
    salary = CategoryService(session, account.id, TransactionType.income).list_all()[1]
    OperationService(session, account.id, INCOME).create(
        OperationIn(date=date(2024, 1, 1), amount_cents=100, category_id=salary.id)
    )

    accounts.delete(account.id)

    with pytest.raises(NotFoundError):
        accounts.get(account.id)
    for model in (Category, Saving, Transaction, HistoryAction):
        assert session.scalars(select(model)).all() == []
    assert [a.id for a in accounts.list_all()] == [other.id]
