from datetime import date

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base
from models import Account, Category, TransactionType
from schemas import OperationIn
from scheduler import check_ledgers
from services import INCOME, OperationService, SavingService


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def test_check_ledgers_counts_drift_across_accounts(caplog) -> None:
    session = make_session()
    for name in ("First", "Second"):
        account = Account(name=name)
        session.add(account)
        session.flush()
        salary = Category(
            account_id=account.id, name="Salary", type=TransactionType.income
        )
        session.add(salary)
        session.commit()
        OperationService(session, account.id, INCOME).create(
            OperationIn(date=date(2024, 1, 1), amount_cents=100, category_id=salary.id)
        )

    assert check_ledgers(session) == 0

    saving = SavingService(session, account.id).find_by_date(date(2024, 1, 1))
    saving.balance_cents = 1
    session.commit()

    assert check_ledgers(session) == 1
    assert "ledger_drift" in caplog.text
