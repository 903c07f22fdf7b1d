import datetime as dt
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from models import HistoryActionType, TransactionType
from periods import Period


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    currency: str = Field(default="RUB", min_length=3, max_length=3)


class AccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    currency: str


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


class CategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: int
    name: str
    checked: bool = False


class OperationIn(BaseModel):
    date: dt.date
    amount_cents: int = Field(..., gt=0)
    category_id: int
    description: Optional[str] = Field(default=None, max_length=500)
    is_planned: bool = False


class OperationOut(BaseModel):
    """Point-in-time copy of a transaction; never tracks later ORM changes."""

    model_config = ConfigDict(frozen=True)

    id: int
    type: TransactionType
    category: CategoryOut
    date: dt.date
    amount_cents: int
    description: Optional[str] = None
    is_planned: bool = False
    is_overdue: bool = False

    def with_overdue(self, reference_date: Optional[dt.date]) -> "OperationOut":
        # Once overdue, always overdue.
        if reference_date is None or self.is_overdue:
            return self
        if self.is_planned and self.date <= reference_date:
            return self.model_copy(update={"is_overdue": True})
        return self


class SavingSortField(str, Enum):
    date = "date"
    value = "value"


class SortDirection(str, Enum):
    asc = "asc"
    desc = "desc"


class SavingCriteria(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_date: Optional[dt.date] = Field(default=None, alias="from")
    to_date: Optional[dt.date] = Field(default=None, alias="to")
    sort_by: SavingSortField = SavingSortField.date
    sort_direction: SortDirection = SortDirection.asc
    page_num: int = Field(default=0, ge=0)
    page_size: int = Field(default=1000, gt=0)
    group_by: Period = Period.day
    income_category_ids: list[int] = Field(default_factory=list)
    expense_category_ids: list[int] = Field(default_factory=list)
    search_text: Optional[str] = None

    @model_validator(mode="after")
    def _check_range(self) -> "SavingCriteria":
        if self.from_date and self.to_date and self.from_date > self.to_date:
            raise ValueError("Date 'from' cannot be after 'to'")
        return self

    def has_filters(self) -> bool:
        return bool(
            self.income_category_ids
            or self.expense_category_ids
            or (self.search_text and self.search_text.strip())
        )


class SavingRow(BaseModel):
    id: int
    period: Period = Period.day
    date: dt.date
    balance_cents: int
    incomes_sum_cents: int = 0
    expenses_sum_cents: int = 0
    is_overdue: bool = False
    incomes_by_category: dict[str, list[OperationOut]] = Field(default_factory=dict)
    expenses_by_category: dict[str, list[OperationOut]] = Field(default_factory=dict)


class SavingSearchResult(BaseModel):
    result: list[SavingRow]
    total_elements: int
    income_categories: list[CategoryOut]
    expense_categories: list[CategoryOut]


class ImportDraft(BaseModel):
    model_config = ConfigDict(extra="forbid")

    date: dt.date
    category: str = Field(..., min_length=1, max_length=100)
    amount_cents: int = Field(..., gt=0)
    is_planned: bool = False
    description: Optional[str] = Field(default=None, max_length=500)


class ImportBatch(BaseModel):
    incomes: list[ImportDraft] = Field(default_factory=list)
    expenses: list[ImportDraft] = Field(default_factory=list)
    income_categories: list[str] = Field(default_factory=list)
    expense_categories: list[str] = Field(default_factory=list)
    previous_balance_cents: Optional[int] = None
    previous_balance_date: Optional[dt.date] = None

    @model_validator(mode="after")
    def _collect_categories(self) -> "ImportBatch":
        for drafts, names in (
            (self.incomes, self.income_categories),
            (self.expenses, self.expense_categories),
        ):
            for draft in drafts:
                if draft.category not in names:
                    names.append(draft.category)
        return self

    def has_seed(self) -> bool:
        return (
            self.previous_balance_cents is not None
            and self.previous_balance_date is not None
        )


class ImportResult(BaseModel):
    imported_incomes: int = 0
    imported_expenses: int = 0
    skipped_incomes: int = 0
    skipped_expenses: int = 0
    created_categories: list[str] = Field(default_factory=list)
    savings_written: int = 0


class HistoryActionOut(BaseModel):
    id: int
    action_type: HistoryActionType
    operation_type: TransactionType
    old_operation: Optional[OperationOut] = None
    new_operation: Optional[OperationOut] = None
    modified_at: datetime
