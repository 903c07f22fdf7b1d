import logging
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, File, HTTPException, Query, UploadFile
from fastapi.responses import Response, StreamingResponse
from sqlalchemy.orm import Session

from config import get_settings
from csv_utils import export_savings, import_template, parse_import_csv
from database import SessionLocal
from periods import Period, local_today
from scheduler import SchedulerManager
from schemas import (
    AccountIn,
    AccountOut,
    CategoryIn,
    CategoryOut,
    HistoryActionOut,
    ImportResult,
    OperationIn,
    OperationOut,
    SavingCriteria,
    SavingSearchResult,
    SavingSortField,
    SortDirection,
)
from services import (
    EXPENSE,
    INCOME,
    AccountService,
    CategoryService,
    HistoryService,
    ImportService,
    NotFoundError,
    OperationKind,
    OperationService,
    SavingSearchService,
    operation_snapshot,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Money Manager")


def _load_app_version() -> str:
    try:
        import tomllib
    except Exception:
        return "unknown"
    try:
        with open("pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except Exception:
        return "unknown"


APP_VERSION = _load_app_version()

KIND_PATHS: dict[str, OperationKind] = {"incomes": INCOME, "expenses": EXPENSE}


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def http_error(exc: ValueError) -> HTTPException:
    status = 404 if isinstance(exc, NotFoundError) else 400
    return HTTPException(status_code=status, detail=str(exc))


def kind_from_path(kind: str) -> OperationKind:
    try:
        return KIND_PATHS[kind]
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=f"Unknown kind '{kind}'") from exc


def require_account(db: Session, account_id: int) -> None:
    try:
        AccountService(db).get(account_id)
    except NotFoundError as exc:
        raise http_error(exc) from exc


def operation_out(txn) -> OperationOut:
    return operation_snapshot(txn).with_overdue(local_today())


@app.get("/api/version")
def api_version():
    return {"version": APP_VERSION}


@app.get("/api/accounts", response_model=list[AccountOut])
def list_accounts(db: Session = Depends(get_db)):
    return [AccountOut.model_validate(a) for a in AccountService(db).list_all()]


@app.post("/api/accounts", response_model=AccountOut)
def create_account(data: AccountIn, db: Session = Depends(get_db)):
    logger.info(f"# Create account: {data}")
    return AccountOut.model_validate(AccountService(db).create(data))


@app.put("/api/accounts/{account_id}", response_model=AccountOut)
def update_account(account_id: int, data: AccountIn, db: Session = Depends(get_db)):
    logger.info(f"# Update account id={account_id}: {data}")
    try:
        account = AccountService(db).update(account_id, data)
    except ValueError as exc:
        raise http_error(exc) from exc
    return AccountOut.model_validate(account)


@app.delete("/api/accounts/{account_id}", status_code=204)
def delete_account(account_id: int, db: Session = Depends(get_db)):
    logger.info(f"# Delete account id={account_id}")
    try:
        AccountService(db).delete(account_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


@app.post(
    "/api/accounts/{account_id}/default-categories", response_model=list[CategoryOut]
)
def create_default_categories(account_id: int, db: Session = Depends(get_db)):
    try:
        created = AccountService(db).create_default_categories(account_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return [CategoryOut.model_validate(c) for c in created]


@app.get("/api/accounts/{account_id}/savings", response_model=SavingSearchResult)
def search_savings(
    account_id: int,
    from_date: Optional[date] = Query(default=None, alias="from"),
    to_date: Optional[date] = Query(default=None, alias="to"),
    sort_by: SavingSortField = SavingSortField.date,
    sort_direction: SortDirection = SortDirection.asc,
    page_num: int = 0,
    page_size: int = 1000,
    group_by: Period = Period.day,
    income_category_ids: list[int] = Query(default=[]),
    expense_category_ids: list[int] = Query(default=[]),
    search_text: Optional[str] = None,
    db: Session = Depends(get_db),
):
    require_account(db, account_id)
    try:
        criteria = SavingCriteria(
            from_date=from_date,
            to_date=to_date,
            sort_by=sort_by,
            sort_direction=sort_direction,
            page_num=page_num,
            page_size=page_size,
            group_by=group_by,
            income_category_ids=income_category_ids,
            expense_category_ids=expense_category_ids,
            search_text=search_text,
        )
    except ValueError as exc:
        raise http_error(exc) from exc
    return SavingSearchService(db, account_id).search(criteria)


@app.get("/api/accounts/{account_id}/history", response_model=list[HistoryActionOut])
def list_history(account_id: int, limit: int = 200, db: Session = Depends(get_db)):
    require_account(db, account_id)
    limit = min(max(limit, 1), 1000)
    return HistoryService(db, account_id).list_all(limit=limit)


@app.post("/api/accounts/{account_id}/import", response_model=ImportResult)
async def import_file(
    account_id: int,
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
):
    require_account(db, account_id)
    content = (await file.read()).decode("utf-8-sig")
    batch, errors = parse_import_csv(content)
    if errors or batch is None:
        raise HTTPException(status_code=400, detail="; ".join(errors))
    logger.info(
        f"# Import into account id={account_id}: "
        f"incomes={len(batch.incomes)} expenses={len(batch.expenses)}"
    )
    try:
        return ImportService(db, account_id).import_batch(batch)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.get("/api/accounts/{account_id}/export.csv")
def export_file(
    account_id: int,
    group_by: Period = Period.day,
    db: Session = Depends(get_db),
):
    require_account(db, account_id)
    criteria = SavingCriteria(
        page_size=get_settings().max_exported_rows, group_by=group_by
    )
    rows = SavingSearchService(db, account_id).search(criteria).result
    if not rows:
        raise HTTPException(
            status_code=400, detail="There is no data in the account to export"
        )
    filename = f"savings_{account_id}_{local_today().isoformat()}.csv"
    return StreamingResponse(
        iter([export_savings(rows)]),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/api/import-template.csv")
def export_template():
    return StreamingResponse(
        iter([import_template()]),
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="template.csv"'},
    )


@app.get("/api/accounts/{account_id}/{kind}/categories", response_model=list[CategoryOut])
def list_categories(account_id: int, kind: str, db: Session = Depends(get_db)):
    op_kind = kind_from_path(kind)
    require_account(db, account_id)
    categories = CategoryService(db, account_id, op_kind.type).list_all()
    return [CategoryOut.model_validate(c) for c in categories]


@app.post("/api/accounts/{account_id}/{kind}/categories", response_model=CategoryOut)
def create_category(
    account_id: int, kind: str, data: CategoryIn, db: Session = Depends(get_db)
):
    op_kind = kind_from_path(kind)
    require_account(db, account_id)
    logger.info(f"# Create {op_kind.type.value} category: {data}")
    try:
        category = CategoryService(db, account_id, op_kind.type).create(data)
    except ValueError as exc:
        raise http_error(exc) from exc
    return CategoryOut.model_validate(category)


@app.put(
    "/api/accounts/{account_id}/{kind}/categories/{category_id}",
    response_model=CategoryOut,
)
def update_category(
    account_id: int,
    kind: str,
    category_id: int,
    data: CategoryIn,
    db: Session = Depends(get_db),
):
    op_kind = kind_from_path(kind)
    logger.info(f"# Update {op_kind.type.value} category id={category_id}: {data}")
    try:
        category = CategoryService(db, account_id, op_kind.type).update(
            category_id, data
        )
    except ValueError as exc:
        raise http_error(exc) from exc
    return CategoryOut.model_validate(category)


@app.delete("/api/accounts/{account_id}/{kind}/categories/{category_id}", status_code=204)
def delete_category(
    account_id: int, kind: str, category_id: int, db: Session = Depends(get_db)
):
    op_kind = kind_from_path(kind)
    logger.info(f"# Delete {op_kind.type.value} category id={category_id}")
    try:
        CategoryService(db, account_id, op_kind.type).delete(category_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


@app.get("/api/accounts/{account_id}/{kind}/{transaction_id}", response_model=OperationOut)
def get_operation(
    account_id: int, kind: str, transaction_id: int, db: Session = Depends(get_db)
):
    op_kind = kind_from_path(kind)
    try:
        txn = OperationService(db, account_id, op_kind).get(transaction_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return operation_out(txn)


@app.post("/api/accounts/{account_id}/{kind}", response_model=OperationOut)
def create_operation(
    account_id: int, kind: str, data: OperationIn, db: Session = Depends(get_db)
):
    op_kind = kind_from_path(kind)
    require_account(db, account_id)
    logger.info(f"# Create {op_kind.type.value} in account id={account_id}: {data}")
    try:
        txn = OperationService(db, account_id, op_kind).create(data)
    except ValueError as exc:
        raise http_error(exc) from exc
    return operation_out(txn)


@app.put("/api/accounts/{account_id}/{kind}/{transaction_id}", response_model=OperationOut)
def update_operation(
    account_id: int,
    kind: str,
    transaction_id: int,
    data: OperationIn,
    db: Session = Depends(get_db),
):
    op_kind = kind_from_path(kind)
    logger.info(
        f"# Update {op_kind.type.value} id={transaction_id} "
        f"in account id={account_id}: {data}"
    )
    try:
        txn = OperationService(db, account_id, op_kind).update(transaction_id, data)
    except ValueError as exc:
        raise http_error(exc) from exc
    return operation_out(txn)


@app.delete("/api/accounts/{account_id}/{kind}/{transaction_id}", status_code=204)
def delete_operation(
    account_id: int, kind: str, transaction_id: int, db: Session = Depends(get_db)
):
    op_kind = kind_from_path(kind)
    logger.info(
        f"# Delete {op_kind.type.value} id={transaction_id} in account id={account_id}"
    )
    try:
        OperationService(db, account_id, op_kind).delete(transaction_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
