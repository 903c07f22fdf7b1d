from datetime import date

from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from database import Base
from models import Account, Category, Transaction, TransactionType
from schemas import CategoryIn, ImportBatch, ImportDraft, OperationIn
from services import (
    INCOME,
    CategoryService,
    ImportService,
    OperationService,
    SavingService,
)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def make_account(session) -> Account:
    account = Account(name="Main")
    session.add(account)
    session.commit()
    return account


def balances(session, account_id):
    return {s.date: s.balance_cents for s in SavingService(session, account_id).list_all()}


def test_import_into_empty_account_seeds_from_previous_balance() -> None:
    session = make_session()
    account = make_account(session)

    batch = ImportBatch(
        incomes=[
            ImportDraft(date=date(2024, 1, 10), category="Salary", amount_cents=1_000),
            ImportDraft(date=date(2024, 1, 3), category="Other", amount_cents=200),
        ],
        expenses=[
            ImportDraft(date=date(2024, 1, 5), category="Food", amount_cents=300),
        ],
        previous_balance_cents=500,
        previous_balance_date=date(2024, 1, 1),
    )

    result = ImportService(session, account.id).import_batch(batch)

    assert result.imported_incomes == 2
    assert result.imported_expenses == 1
    assert result.savings_written == 4
    assert sorted(result.created_categories) == ["Food", "Other", "Salary"]
    assert balances(session, account.id) == {
        date(2024, 1, 1): 500,
        date(2024, 1, 3): 700,
        date(2024, 1, 5): 400,
        date(2024, 1, 10): 1_400,
    }
    assert SavingService(session, account.id).find_inconsistencies() == []


def test_import_into_existing_account_shifts_stored_entries() -> None:
    session = make_session()
    account = make_account(session)
    salary = CategoryService(session, account.id, TransactionType.income).create(
        CategoryIn(name="Salary")
    )
    OperationService(session, account.id, INCOME).create(
        OperationIn(date=date(2024, 2, 1), amount_cents=1_000, category_id=salary.id)
    )

    batch = ImportBatch(
        incomes=[
            ImportDraft(date=date(2024, 1, 15), category="Salary", amount_cents=500),
        ],
        expenses=[
            ImportDraft(date=date(2024, 2, 10), category="Rent", amount_cents=100),
        ],
        # Ignored: the account already has data.
        previous_balance_cents=99_999,
        previous_balance_date=date(2023, 12, 31),
    )
    result = ImportService(session, account.id).import_batch(batch)

    assert result.created_categories == ["Rent"]
    assert balances(session, account.id) == {
        date(2024, 1, 15): 500,
        date(2024, 2, 1): 1_500,
        date(2024, 2, 10): 1_400,
    }
    imported = session.scalars(
        select(Transaction).where(Transaction.date == date(2024, 1, 15))
    ).one()
    assert imported.category_id == salary.id
    assert SavingService(session, account.id).find_inconsistencies() == []


def test_reimporting_same_batch_changes_nothing() -> None:
    session = make_session()
    account = make_account(session)
    batch = ImportBatch(
        incomes=[
            ImportDraft(date=date(2024, 1, 1), category="Salary", amount_cents=1_000),
            ImportDraft(date=date(2024, 1, 1), category="Salary", amount_cents=1_000),
        ],
        expenses=[
            ImportDraft(
                date=date(2024, 1, 2),
                category="Food",
                amount_cents=250,
                description="Lunch",
            ),
        ],
    )
    ImportService(session, account.id).import_batch(batch)
    before = balances(session, account.id)

    again = ImportService(session, account.id).import_batch(batch)

    assert again.imported_incomes == 0
    assert again.imported_expenses == 0
    assert again.skipped_incomes == 2
    assert again.skipped_expenses == 1
    assert again.created_categories == []
    assert balances(session, account.id) == before
    assert len(session.scalars(select(Transaction)).all()) == 3


def test_import_matches_categories_by_exact_name() -> None:
    session = make_session()
    account = make_account(session)
    CategoryService(session, account.id, TransactionType.income).create(
        CategoryIn(name="salary")
    )

    batch = ImportBatch(
        incomes=[
            ImportDraft(date=date(2024, 1, 1), category="Salary", amount_cents=1_000),
        ],
    )
    result = ImportService(session, account.id).import_batch(batch)

    assert result.created_categories == ["Salary"]
    names = sorted(
        c.name
        for c in session.scalars(
            select(Category).where(Category.type == TransactionType.income)
        )
    )
    assert names == ["Salary", "salary"]


def test_import_batch_collects_category_names_from_drafts() -> None:
    batch = ImportBatch(
        incomes=[
            ImportDraft(date=date(2024, 1, 1), category="Salary", amount_cents=1),
            ImportDraft(date=date(2024, 1, 2), category="Salary", amount_cents=1),
        ],
        expenses=[ImportDraft(date=date(2024, 1, 1), category="Food", amount_cents=1)],
    )

    assert batch.income_categories == ["Salary"]
    assert batch.expense_categories == ["Food"]
    assert not batch.has_seed()
