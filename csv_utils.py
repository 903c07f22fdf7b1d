import csv
import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from io import StringIO
from typing import Optional, Sequence

from schemas import ImportBatch, ImportDraft, OperationOut, SavingRow

IMPORT_COLUMNS = ["Date", "Type", "Category", "Amount", "Planned", "Description"]
BALANCE_ROW_TYPE = "balance"
TRUTHY = {"1", "true", "yes", "y", "on", "+", "да"}
DATE_FORMATS = ("%Y-%m-%d", "%d.%m.%Y")
AMOUNT_NOISE = re.compile(r"[^\d,.\-]")


def sanitize_csv_value(value: str) -> str:
    """
    Sanitize CSV values to prevent formula injection by prefixing dangerous patterns with tab.
    """
    if not value or value.strip() == "":
        return ""

    value = value.strip()

    formula_triggers = ("=", "+", "-", "@", "\t", "\r")

    if value.startswith(formula_triggers):
        return "\t" + value

    dangerous_patterns = [
        r"^cmd\s*",
        r"^powershell\s*",
        r"^bash\s*",
        r"^sh\s*",
        r"^\.",
        r"^http[s]?://",
    ]

    for pattern in dangerous_patterns:
        if re.match(pattern, value, re.IGNORECASE):
            return "\t" + value

    return value


def parse_date(value: str) -> date:
    text = value.strip()
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    raise ValueError(f"Unrecognized date '{text}'")


def parse_amount(value: str, *, allow_negative: bool = False) -> int:
    """Amount in cents. Currency marks, spaces and thousands separators are dropped;
    the last ``.`` or ``,`` is the decimal separator."""
    digits = AMOUNT_NOISE.sub("", value).replace(",", ".").strip(".")
    whole, dot, fraction = digits.rpartition(".")
    if dot:
        digits = f"{whole.replace('.', '')}.{fraction}"
    try:
        amount = Decimal(digits)
    except InvalidOperation as exc:
        raise ValueError(f"Invalid amount '{value.strip()}'") from exc
    cents = int((amount * 100).quantize(Decimal("1")))
    if cents < 0 and not allow_negative:
        raise ValueError("Amount must be positive")
    return cents


def parse_import_csv(content: str) -> tuple[Optional[ImportBatch], list[str]]:
    """Read an export-style CSV into import drafts.

    One row per transaction; a row of type ``balance`` carries the balance the
    account had before the first imported transaction.
    """
    reader = csv.DictReader(StringIO(content))
    header = reader.fieldnames or []
    missing = [c for c in ("Date", "Type", "Amount") if c not in header]
    if missing:
        return None, [f"Missing column(s): {', '.join(missing)}"]

    incomes: list[ImportDraft] = []
    expenses: list[ImportDraft] = []
    previous_balance: Optional[int] = None
    previous_date = None
    errors: list[str] = []
    for idx, raw in enumerate(reader, start=1):
        try:
            date_value = parse_date(raw.get("Date") or "")
            type_raw = (raw.get("Type") or "").strip().lower()
            if type_raw == BALANCE_ROW_TYPE:
                previous_balance = parse_amount(
                    raw.get("Amount") or "0", allow_negative=True
                )
                previous_date = date_value
                continue
            if type_raw not in ("income", "expense"):
                raise ValueError(f"Unknown type '{type_raw}'")
            description = (raw.get("Description") or "").strip() or None
            draft = ImportDraft(
                date=date_value,
                category=(raw.get("Category") or "").strip(),
                amount_cents=parse_amount(raw.get("Amount") or "0"),
                is_planned=(raw.get("Planned") or "").strip().lower() in TRUTHY,
                description=description,
            )
        except Exception as exc:
            errors.append(f"Row {idx}: {exc}")
            continue
        if type_raw == "income":
            incomes.append(draft)
        else:
            expenses.append(draft)

    batch = ImportBatch(
        incomes=incomes,
        expenses=expenses,
        previous_balance_cents=previous_balance,
        previous_balance_date=previous_date,
    )
    return batch, errors


def _format_cents(cents: int) -> str:
    return f"{cents / 100:.2f}"


def _category_totals(groups: dict[str, list[OperationOut]]) -> str:
    parts = []
    for name, ops in groups.items():
        total = sum(op.amount_cents for op in ops)
        parts.append(f"{name} {_format_cents(total)}")
    return "; ".join(parts)


def export_savings(rows: Sequence[SavingRow]) -> str:
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(
        [
            "Date",
            "Balance",
            "Incomes",
            "Expenses",
            "Income categories",
            "Expense categories",
            "Overdue",
        ]
    )
    for row in rows:
        writer.writerow(
            [
                row.date.strftime(row.period.pattern),
                _format_cents(row.balance_cents),
                _format_cents(row.incomes_sum_cents),
                _format_cents(row.expenses_sum_cents),
                sanitize_csv_value(_category_totals(row.incomes_by_category)),
                sanitize_csv_value(_category_totals(row.expenses_by_category)),
                "1" if row.is_overdue else "0",
            ]
        )
    return output.getvalue()


def import_template() -> str:
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(IMPORT_COLUMNS)
    return output.getvalue()
