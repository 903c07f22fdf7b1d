from __future__ import annotations

import logging
import re
from collections import Counter
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional

from sqlalchemy import delete, exists, func, or_, select, update
from sqlalchemy.orm import Session, contains_eager, joinedload, selectinload

from grouping import LedgerDay, assemble
from models import (
    Account,
    Category,
    HistoryAction,
    HistoryActionType,
    Saving,
    Transaction,
    TransactionType,
)
from periods import local_today
from schemas import (
    AccountIn,
    CategoryIn,
    CategoryOut,
    HistoryActionOut,
    ImportBatch,
    ImportDraft,
    ImportResult,
    OperationIn,
    OperationOut,
    SavingCriteria,
    SavingSearchResult,
    SavingSortField,
    SortDirection,
)


logger = logging.getLogger(__name__)


class NotFoundError(ValueError):
    pass


class ValidationError(ValueError):
    pass


@dataclass(frozen=True)
class OperationKind:
    type: TransactionType
    sign: int


INCOME = OperationKind(TransactionType.income, 1)
EXPENSE = OperationKind(TransactionType.expense, -1)
KINDS = {INCOME.type: INCOME, EXPENSE.type: EXPENSE}

DEFAULT_CATEGORIES: dict[TransactionType, list[str]] = {
    TransactionType.income: ["Salary", "Other"],
    TransactionType.expense: ["Common", "Loans", "Debts", "Mortgage", "Other"],
}


def operation_snapshot(txn: Transaction) -> OperationOut:
    return OperationOut(
        id=txn.id,
        type=txn.type,
        category=CategoryOut(id=txn.category.id, name=txn.category.name),
        date=txn.date,
        amount_cents=txn.amount_cents,
        description=txn.description,
        is_planned=txn.is_planned,
    )


def prepare_search_pattern(text: str) -> str:
    return "%" + re.sub(r"[\s,]+", "%", text.strip().lower()) + "%"


class AccountService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[Account]:
        return self.session.scalars(select(Account).order_by(Account.id)).all()

    def get(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if not account:
            raise NotFoundError(f"Could not find account with id = '{account_id}'")
        return account

    def create(self, data: AccountIn) -> Account:
        account = Account(name=data.name.strip(), currency=data.currency.upper())
        self.session.add(account)
        self.session.commit()
        self.session.refresh(account)
        return account

    def update(self, account_id: int, data: AccountIn) -> Account:
        account = self.get(account_id)
        name = data.name.strip()
        currency = data.currency.upper()
        if account.name != name or account.currency != currency:
            account.name = name
            account.currency = currency
            self.session.commit()
        return account

    def delete(self, account_id: int) -> None:
        account = self.get(account_id)
        self.session.execute(
            delete(Transaction).where(Transaction.account_id == account_id)
        )
        self.session.execute(delete(Category).where(Category.account_id == account_id))
        SavingService(self.session, account_id).delete_all()
        self.session.execute(
            delete(HistoryAction).where(HistoryAction.account_id == account_id)
        )
        self.session.delete(account)
        self.session.commit()
        logger.info(f"account_deleted: account_id={account_id}")

    def create_default_categories(self, account_id: int) -> list[Category]:
        self.get(account_id)
        created: list[Category] = []
        for txn_type, names in DEFAULT_CATEGORIES.items():
            service = CategoryService(self.session, account_id, txn_type)
            for name in names:
                created.append(service.create(CategoryIn(name=name)))
        return created

    def is_empty(self, account_id: int) -> bool:
        has_savings = self.session.scalar(
            select(exists().where(Saving.account_id == account_id))
        )
        has_categories = self.session.scalar(
            select(exists().where(Category.account_id == account_id))
        )
        return not has_savings and not has_categories


class CategoryService:
    def __init__(
        self, session: Session, account_id: int, txn_type: TransactionType
    ) -> None:
        self.session = session
        self.account_id = account_id
        self.type = txn_type

    def list_all(self) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.account_id == self.account_id, Category.type == self.type)
            .order_by(func.lower(Category.name), Category.id)
        )
        return self.session.scalars(stmt).all()

    def list_checked(self, selected_ids: list[int]) -> list[CategoryOut]:
        selected = set(selected_ids or [])
        return [
            CategoryOut(id=c.id, name=c.name, checked=c.id in selected)
            for c in self.list_all()
        ]

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if (
            not category
            or category.account_id != self.account_id
            or category.type != self.type
        ):
            raise NotFoundError(
                f"Could not find {self.type.value} category with id = '{category_id}'"
            )
        return category

    def _name_taken(self, name: str, exclude_id: Optional[int] = None) -> bool:
        stmt = select(Category.id).where(
            Category.account_id == self.account_id,
            Category.type == self.type,
            func.lower(Category.name) == name.lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(Category.id != exclude_id)
        return self.session.scalar(stmt) is not None

    def create(self, data: CategoryIn) -> Category:
        name = data.name.strip()
        if self._name_taken(name):
            raise ValidationError(
                "Could not create category because such name already exists"
            )
        category = Category(account_id=self.account_id, name=name, type=self.type)
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def update(self, category_id: int, data: CategoryIn) -> Category:
        name = data.name.strip()
        category = self.get(category_id)
        if self._name_taken(name, exclude_id=category.id):
            raise ValidationError(
                "Could not update category because such name already exists"
            )
        category.name = name
        self.session.commit()
        return category

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        referenced = self.session.scalar(
            select(exists().where(Transaction.category_id == category.id))
        )
        if referenced:
            raise ValidationError(
                "Could not delete a category while it is referenced by transactions"
            )
        self.session.delete(category)
        self.session.commit()


@dataclass(frozen=True)
class LedgerDiscrepancy:
    date: date
    expected_cents: int
    actual_cents: int


class SavingService:
    """Running balance per account and date.

    Every change is applied in two steps: the entry for the date is created or
    adjusted, then all later entries of the account are shifted with one bulk
    UPDATE. Nothing here commits; callers own the transaction.
    """

    def __init__(self, session: Session, account_id: int) -> None:
        self.session = session
        self.account_id = account_id

    def get_by_date(self, on: date) -> Optional[Saving]:
        return self.session.scalar(
            select(Saving).where(Saving.account_id == self.account_id, Saving.date == on)
        )

    def find_by_date(self, on: date) -> Saving:
        saving = self.get_by_date(on)
        if not saving:
            raise NotFoundError(f"Could not find saving by date = '{on.isoformat()}'")
        return saving

    def nearest_before(self, on: date) -> Optional[Saving]:
        return self.session.scalar(
            select(Saving)
            .where(Saving.account_id == self.account_id, Saving.date < on)
            .order_by(Saving.date.desc())
            .limit(1)
        )

    def list_all(self) -> list[Saving]:
        return self.session.scalars(
            select(Saving)
            .where(Saving.account_id == self.account_id)
            .order_by(Saving.date)
        ).all()

    def increase(self, amount_cents: int, on: date) -> Saving:
        return self.apply(amount_cents, on)

    def decrease(self, amount_cents: int, on: date) -> Saving:
        return self.apply(-amount_cents, on)

    def apply(self, delta_cents: int, on: date) -> Saving:
        saving = self.get_by_date(on)
        if saving is None:
            previous = self.nearest_before(on)
            base = previous.balance_cents if previous else 0
            saving = Saving(
                account_id=self.account_id, date=on, balance_cents=base + delta_cents
            )
            self.session.add(saving)
        else:
            saving.balance_cents = saving.balance_cents + delta_cents
        self.session.flush()

        self.session.execute(
            update(Saving)
            .where(Saving.account_id == self.account_id, Saving.date > on)
            .values(balance_cents=Saving.balance_cents + delta_cents)
        )
        return saving

    def update_after_deletion(self, on: date) -> None:
        saving = self.get_by_date(on)
        if saving is None:
            return
        in_use = self.session.scalar(
            select(exists().where(Transaction.saving_id == saving.id))
        )
        if not in_use:
            self.session.execute(delete(Saving).where(Saving.id == saving.id))

    def delete_all(self) -> None:
        self.session.execute(delete(Saving).where(Saving.account_id == self.account_id))

    def find_inconsistencies(self) -> list[LedgerDiscrepancy]:
        sums: dict[int, int] = {}
        rows = self.session.execute(
            select(
                Transaction.saving_id,
                Transaction.type,
                func.sum(Transaction.amount_cents),
            )
            .where(Transaction.account_id == self.account_id)
            .group_by(Transaction.saving_id, Transaction.type)
        ).all()
        for saving_id, txn_type, total in rows:
            sign = KINDS[txn_type].sign
            sums[saving_id] = sums.get(saving_id, 0) + sign * int(total or 0)

        problems: list[LedgerDiscrepancy] = []
        previous = 0
        for saving in self.list_all():
            if saving.id not in sums:
                # An entry without transactions only survives as an import
                # opening balance; the chain restarts from it.
                previous = saving.balance_cents
                continue
            expected = previous + sums[saving.id]
            if expected != saving.balance_cents:
                problems.append(
                    LedgerDiscrepancy(saving.date, expected, saving.balance_cents)
                )
            previous = saving.balance_cents
        return problems


class HistoryService:
    def __init__(self, session: Session, account_id: int) -> None:
        self.session = session
        self.account_id = account_id

    def _dump(self, snapshot: Optional[OperationOut], today: date) -> Optional[str]:
        if snapshot is None:
            return None
        return snapshot.with_overdue(today).model_dump_json()

    def _record(
        self,
        action_type: HistoryActionType,
        operation_type: TransactionType,
        old: Optional[OperationOut],
        new: Optional[OperationOut],
    ) -> HistoryAction:
        today = local_today()
        entry = HistoryAction(
            account_id=self.account_id,
            action_type=action_type,
            operation_type=operation_type,
            old_operation_json=self._dump(old, today),
            new_operation_json=self._dump(new, today),
            modified_at=datetime.utcnow(),
        )
        self.session.add(entry)
        self.session.flush()
        return entry

    def log_create(
        self, operation_type: TransactionType, new: OperationOut
    ) -> HistoryAction:
        return self._record(HistoryActionType.create, operation_type, None, new)

    def log_update(
        self, operation_type: TransactionType, old: OperationOut, new: OperationOut
    ) -> HistoryAction:
        return self._record(HistoryActionType.update, operation_type, old, new)

    def log_delete(
        self, operation_type: TransactionType, old: OperationOut
    ) -> HistoryAction:
        return self._record(HistoryActionType.delete, operation_type, old, None)

    def list_all(self, limit: int = 200) -> list[HistoryActionOut]:
        stmt = (
            select(HistoryAction)
            .where(HistoryAction.account_id == self.account_id)
            .order_by(HistoryAction.modified_at.desc(), HistoryAction.id.desc())
            .limit(limit)
        )
        result: list[HistoryActionOut] = []
        for entry in self.session.scalars(stmt):
            result.append(
                HistoryActionOut(
                    id=entry.id,
                    action_type=entry.action_type,
                    operation_type=entry.operation_type,
                    old_operation=OperationOut.model_validate_json(
                        entry.old_operation_json
                    )
                    if entry.old_operation_json
                    else None,
                    new_operation=OperationOut.model_validate_json(
                        entry.new_operation_json
                    )
                    if entry.new_operation_json
                    else None,
                    modified_at=entry.modified_at,
                )
            )
        return result


class OperationService:
    """Create, update and delete incomes or expenses while keeping savings right.

    The same code serves both kinds; ``kind.sign`` says whether the amount adds
    to (+1, income) or subtracts from (-1, expense) the running balance.
    """

    def __init__(self, session: Session, account_id: int, kind: OperationKind) -> None:
        self.session = session
        self.account_id = account_id
        self.kind = kind
        self.savings = SavingService(session, account_id)
        self.categories = CategoryService(session, account_id, kind.type)
        self.history = HistoryService(session, account_id)

    def _category(self, category_id: int) -> Category:
        return self.categories.get(category_id)

    def get(self, transaction_id: int) -> Transaction:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(
                Transaction.id == transaction_id,
                Transaction.account_id == self.account_id,
                Transaction.type == self.kind.type,
            )
        )
        txn = self.session.scalar(stmt)
        if not txn:
            raise NotFoundError(
                f"Could not find {self.kind.type.value} with id = '{transaction_id}'"
            )
        return txn

    def create(self, data: OperationIn) -> Transaction:
        category = self._category(data.category_id)
        saving = self.savings.apply(self.kind.sign * data.amount_cents, data.date)
        txn = Transaction(
            account_id=self.account_id,
            type=self.kind.type,
            date=data.date,
            amount_cents=data.amount_cents,
            description=data.description,
            is_planned=data.is_planned,
            category=category,
            saving_id=saving.id,
        )
        self.session.add(txn)
        self.session.flush()

        self.history.log_create(self.kind.type, operation_snapshot(txn))
        self.session.commit()
        logger.info(
            f"operation_created: account_id={self.account_id} "
            f"type={self.kind.type.value} id={txn.id} date={txn.date}"
        )
        return txn

    def update(self, transaction_id: int, data: OperationIn) -> Transaction:
        txn = self.get(transaction_id)
        before = operation_snapshot(txn)
        category = self._category(data.category_id)

        if before.date != data.date:
            self.savings.apply(-self.kind.sign * before.amount_cents, before.date)
            saving = self.savings.apply(self.kind.sign * data.amount_cents, data.date)
            txn.saving_id = saving.id
        elif before.amount_cents != data.amount_cents:
            delta = data.amount_cents - before.amount_cents
            self.savings.apply(self.kind.sign * delta, data.date)

        txn.date = data.date
        txn.amount_cents = data.amount_cents
        txn.description = data.description
        txn.is_planned = data.is_planned
        txn.category = category
        self.session.flush()

        if before.date != data.date:
            self.savings.update_after_deletion(before.date)

        self.history.log_update(self.kind.type, before, operation_snapshot(txn))
        self.session.commit()
        logger.info(
            f"operation_updated: account_id={self.account_id} "
            f"type={self.kind.type.value} id={txn.id}"
        )
        return txn

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        removed = operation_snapshot(txn)

        self.savings.apply(-self.kind.sign * removed.amount_cents, removed.date)
        self.session.delete(txn)
        self.session.flush()
        self.savings.update_after_deletion(removed.date)

        self.history.log_delete(self.kind.type, removed)
        self.session.commit()
        logger.info(
            f"operation_deleted: account_id={self.account_id} "
            f"type={self.kind.type.value} id={transaction_id}"
        )


class ImportService:
    def __init__(self, session: Session, account_id: int) -> None:
        self.session = session
        self.account_id = account_id

    def import_batch(self, batch: ImportBatch) -> ImportResult:
        accounts = AccountService(self.session)
        accounts.get(self.account_id)
        result = ImportResult()

        ledger: dict[date, Saving] = {}
        touched: set[date] = set()
        incomes = list(batch.incomes)
        expenses = list(batch.expenses)
        if accounts.is_empty(self.account_id):
            if batch.has_seed():
                ledger[batch.previous_balance_date] = Saving(
                    account_id=self.account_id,
                    date=batch.previous_balance_date,
                    balance_cents=batch.previous_balance_cents,
                )
                touched.add(batch.previous_balance_date)
        else:
            for saving in SavingService(self.session, self.account_id).list_all():
                ledger[saving.date] = saving
            incomes, result.skipped_incomes = self._drop_known(
                TransactionType.income, incomes
            )
            expenses, result.skipped_expenses = self._drop_known(
                TransactionType.expense, expenses
            )

        incomes = self._fold(ledger, incomes, INCOME.sign, touched)
        expenses = self._fold(ledger, expenses, EXPENSE.sign, touched)

        for saving in ledger.values():
            if saving.id is None:
                self.session.add(saving)
        self.session.flush()
        result.savings_written = len(touched)

        income_categories = self._reconcile_categories(
            TransactionType.income, batch.income_categories, result
        )
        expense_categories = self._reconcile_categories(
            TransactionType.expense, batch.expense_categories, result
        )

        transactions = [
            self._build(TransactionType.income, draft, ledger, income_categories)
            for draft in incomes
        ] + [
            self._build(TransactionType.expense, draft, ledger, expense_categories)
            for draft in expenses
        ]
        self.session.add_all(transactions)
        self.session.flush()
        self.session.commit()

        result.imported_incomes = len(incomes)
        result.imported_expenses = len(expenses)
        logger.info(
            f"import_done: account_id={self.account_id} "
            f"incomes={result.imported_incomes} expenses={result.imported_expenses} "
            f"skipped={result.skipped_incomes + result.skipped_expenses} "
            f"savings={result.savings_written}"
        )
        return result

    def _fold(
        self,
        ledger: dict[date, Saving],
        drafts: list[ImportDraft],
        sign: int,
        touched: set[date],
    ) -> list[ImportDraft]:
        """Apply drafts to the in-memory ledger one by one in date order.

        For each draft the entry for its date is looked up; when missing it is
        seeded with the balance of the closest earlier entry in the map (0 when
        there is none). The signed amount is added to that entry and then to
        every later entry in the map. Each step therefore sees all entries
        created or shifted by the steps before it, including ones from this
        batch.
        """
        ordered = sorted(drafts, key=lambda d: d.date)
        for draft in ordered:
            delta = sign * draft.amount_cents

            saving = ledger.get(draft.date)
            if saving is None:
                earlier = [day for day in ledger if day < draft.date]
                base = ledger[max(earlier)].balance_cents if earlier else 0
                saving = Saving(
                    account_id=self.account_id, date=draft.date, balance_cents=base
                )
                ledger[draft.date] = saving
            saving.balance_cents = saving.balance_cents + delta
            touched.add(draft.date)

            for day, later in ledger.items():
                if day > draft.date:
                    later.balance_cents = later.balance_cents + delta
                    touched.add(day)
        return ordered

    def _drop_known(
        self, txn_type: TransactionType, drafts: list[ImportDraft]
    ) -> tuple[list[ImportDraft], int]:
        rows = self.session.execute(
            select(
                Transaction.date,
                Category.name,
                Transaction.amount_cents,
                Transaction.description,
                Transaction.is_planned,
            )
            .join(Category, Transaction.category_id == Category.id)
            .where(
                Transaction.account_id == self.account_id,
                Transaction.type == txn_type,
            )
        ).all()
        known = Counter(tuple(row) for row in rows)

        fresh: list[ImportDraft] = []
        skipped = 0
        for draft in drafts:
            key = (
                draft.date,
                draft.category,
                draft.amount_cents,
                draft.description,
                draft.is_planned,
            )
            if known[key] > 0:
                known[key] -= 1
                skipped += 1
            else:
                fresh.append(draft)
        return fresh, skipped

    def _reconcile_categories(
        self, txn_type: TransactionType, names: list[str], result: ImportResult
    ) -> dict[str, Category]:
        # Exact name match: an existing category wins over an imported one.
        by_name = {
            c.name: c
            for c in self.session.scalars(
                select(Category).where(
                    Category.account_id == self.account_id, Category.type == txn_type
                )
            )
        }
        for name in names:
            if name in by_name:
                continue
            category = Category(account_id=self.account_id, name=name, type=txn_type)
            self.session.add(category)
            by_name[name] = category
            result.created_categories.append(name)
        self.session.flush()
        return by_name

    def _build(
        self,
        txn_type: TransactionType,
        draft: ImportDraft,
        ledger: dict[date, Saving],
        categories: dict[str, Category],
    ) -> Transaction:
        return Transaction(
            account_id=self.account_id,
            type=txn_type,
            date=draft.date,
            amount_cents=draft.amount_cents,
            description=draft.description,
            is_planned=draft.is_planned,
            category_id=categories[draft.category].id,
            saving_id=ledger[draft.date].id,
        )


class SavingSearchService:
    def __init__(self, session: Session, account_id: int) -> None:
        self.session = session
        self.account_id = account_id

    def search(
        self, criteria: SavingCriteria, *, today: Optional[date] = None
    ) -> SavingSearchResult:
        income_categories = CategoryService(
            self.session, self.account_id, TransactionType.income
        ).list_checked(criteria.income_category_ids)
        expense_categories = CategoryService(
            self.session, self.account_id, TransactionType.expense
        ).list_checked(criteria.expense_category_ids)

        stmt = select(Saving).where(Saving.account_id == self.account_id)
        if criteria.from_date:
            stmt = stmt.where(Saving.date >= criteria.from_date)
        if criteria.to_date:
            stmt = stmt.where(Saving.date <= criteria.to_date)

        total = int(
            self.session.scalar(select(func.count()).select_from(stmt.subquery())) or 0
        )

        column = (
            Saving.date if criteria.sort_by == SavingSortField.date else Saving.balance_cents
        )
        ordering = (
            column.asc() if criteria.sort_direction == SortDirection.asc else column.desc()
        )
        stmt = (
            stmt.options(
                selectinload(Saving.transactions).joinedload(Transaction.category)
            )
            .order_by(ordering, Saving.date)
            .offset(criteria.page_num * criteria.page_size)
            .limit(criteria.page_size)
            .execution_options(populate_existing=True)
        )
        savings = self.session.scalars(stmt).all()

        days = self._ledger_days(savings, criteria)
        rows = assemble(days, criteria.group_by, local_today(today))
        return SavingSearchResult(
            result=rows,
            total_elements=total,
            income_categories=income_categories,
            expense_categories=expense_categories,
        )

    def _ledger_days(
        self, savings: list[Saving], criteria: SavingCriteria
    ) -> list[LedgerDay]:
        if not criteria.has_filters():
            return [
                LedgerDay(
                    id=s.id,
                    date=s.date,
                    balance_cents=s.balance_cents,
                    incomes=[
                        operation_snapshot(t)
                        for t in s.transactions
                        if t.type == TransactionType.income
                    ],
                    expenses=[
                        operation_snapshot(t)
                        for t in s.transactions
                        if t.type == TransactionType.expense
                    ],
                )
                for s in savings
            ]

        saving_ids = [s.id for s in savings]
        incomes = self._filtered(
            TransactionType.income,
            saving_ids,
            criteria.income_category_ids,
            criteria.search_text,
        )
        expenses = self._filtered(
            TransactionType.expense,
            saving_ids,
            criteria.expense_category_ids,
            criteria.search_text,
        )
        return [
            LedgerDay(
                id=s.id,
                date=s.date,
                balance_cents=s.balance_cents,
                incomes=incomes.get(s.id, []),
                expenses=expenses.get(s.id, []),
            )
            for s in savings
        ]

    def _filtered(
        self,
        txn_type: TransactionType,
        saving_ids: list[int],
        category_ids: list[int],
        search_text: Optional[str],
    ) -> dict[int, list[OperationOut]]:
        if not saving_ids:
            return {}
        stmt = (
            select(Transaction)
            .join(Transaction.category)
            .options(contains_eager(Transaction.category))
            .where(
                Transaction.account_id == self.account_id,
                Transaction.type == txn_type,
                Transaction.saving_id.in_(saving_ids),
            )
            .order_by(Transaction.id)
        )
        if search_text and search_text.strip():
            pattern = prepare_search_pattern(search_text)
            stmt = stmt.where(
                or_(
                    func.lower(Category.name).like(pattern),
                    func.lower(func.coalesce(Transaction.description, "")).like(pattern),
                )
            )
        if category_ids:
            stmt = stmt.where(Transaction.category_id.in_(category_ids))

        grouped: dict[int, list[OperationOut]] = {}
        for txn in self.session.scalars(stmt):
            grouped.setdefault(txn.saving_id, []).append(operation_snapshot(txn))
        return grouped
