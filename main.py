import logging
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from sqlalchemy.orm import Session

from amount_input import cents_to_amount
from database import SessionLocal, session_scope
from ledger import (
    BalanceSummary,
    FinanceEntry,
    Occurrence,
    OccurrenceKind,
    ProjectedFinance,
)
from models import FinanceType
from months import (
    current_month,
    parse_month_token,
    resolve_month,
    resolve_optional_month,
)
from schemas import FinanceIn, FinanceUpdate
from services import (
    AmountMigrationService,
    BalanceService,
    FinanceFilters,
    FinanceService,
    HomeService,
    NotFoundError,
    PermissionDeniedError,
)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(title="HomeHub Finances")


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


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def current_user_id(request: Request) -> int:
    # The upstream gateway authenticates the caller and forwards the id.
    raw = request.headers.get("X-User-Id", "")
    try:
        user_id = int(raw)
    except ValueError:
        user_id = 0
    if user_id <= 0:
        raise HTTPException(status_code=401, detail="Authentication required")
    return user_id


def _raise_http(exc: ValueError) -> None:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    if isinstance(exc, PermissionDeniedError):
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    raise HTTPException(status_code=400, detail=str(exc)) from exc


def type_from_request(request: Request) -> Optional[FinanceType]:
    type_param = request.query_params.get("type")
    if not type_param or type_param == "all":
        return None
    try:
        return FinanceType(type_param)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid type") from exc


def serialize_entry(
    entry: FinanceEntry, occurrence: Optional[Occurrence] = None
) -> dict[str, object]:
    display_date = occurrence.display_date if occurrence else entry.transaction_date
    return {
        "id": entry.id,
        "home_id": entry.home_id,
        "type": entry.type.value,
        "category": entry.category,
        "amount": cents_to_amount(entry.amount_cents),
        "description": entry.description,
        "transaction_date": entry.transaction_date.isoformat(),
        "display_date": display_date.isoformat(),
        "is_projected": bool(
            occurrence and occurrence.kind == OccurrenceKind.recurring
        ),
        "is_recurring": entry.is_recurring,
        "due_date": entry.due_date.isoformat() if entry.due_date else None,
        "payment_months": entry.payment_months,
        "created_by": entry.created_by,
        "visible_to_user_ids": sorted(entry.visible_to_user_ids),
    }


def serialize_projection(row: ProjectedFinance) -> dict[str, object]:
    entry = row.entry
    return {
        "id": row.id,
        "original_finance_id": row.original_finance_id,
        "home_id": entry.home_id,
        "type": entry.type.value,
        "category": entry.category,
        "amount": cents_to_amount(row.amount_cents),
        "total_amount": cents_to_amount(entry.amount_cents),
        "description": entry.description,
        "transaction_date": row.display_date.isoformat(),
        "original_transaction_date": entry.transaction_date.isoformat(),
        "is_recurring": entry.is_recurring,
        "due_date": entry.due_date.isoformat() if entry.due_date else None,
        "payment_months": row.payment_months,
        "payment_month_index": row.payment_month_index,
        "occurrence": row.occurrence.kind.value,
        "created_by": entry.created_by,
        "visible_to_user_ids": sorted(entry.visible_to_user_ids),
    }


def serialize_balance(summary: BalanceSummary) -> dict[str, object]:
    return {
        "month": summary.month,
        "year": summary.year,
        "total_income": cents_to_amount(summary.total_income_cents),
        "total_expenses": cents_to_amount(summary.total_expenses_cents),
        "balance": cents_to_amount(summary.balance_cents),
    }


@app.get("/health")
def health():
    return {"status": "ok", "version": APP_VERSION}


@app.get("/api/homes/{home_id}/finances")
def list_finances(
    home_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        ref = resolve_optional_month(
            request.query_params.get("month"), request.query_params.get("year")
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    filters = FinanceFilters(type=type_from_request(request), month=ref)
    try:
        rows = FinanceService(db, user_id).list(home_id, filters)
    except ValueError as exc:
        _raise_http(exc)
    return [serialize_entry(entry, occurrence) for entry, occurrence in rows]


@app.get("/api/homes/{home_id}/finances/monthly")
def monthly_finances(
    home_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        ref = resolve_optional_month(
            request.query_params.get("month"), request.query_params.get("year")
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    try:
        rows = FinanceService(db, user_id).monthly(
            home_id, ref or current_month(), type_from_request(request)
        )
    except ValueError as exc:
        _raise_http(exc)
    return [serialize_projection(row) for row in rows]


@app.get("/api/homes/{home_id}/finances/balance")
def finance_balance(
    home_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        ref = resolve_month(
            request.query_params.get("month"), request.query_params.get("year")
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    try:
        summary = BalanceService(db, user_id).summary(home_id, ref)
    except ValueError as exc:
        _raise_http(exc)
    return serialize_balance(summary)


@app.get("/api/homes/{home_id}/finances/balance/series")
def finance_balance_series(
    home_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    start_raw = request.query_params.get("start")
    end_raw = request.query_params.get("end")
    if not start_raw or not end_raw:
        raise HTTPException(status_code=400, detail="Start and end are required")
    try:
        start = parse_month_token(start_raw)
        end = parse_month_token(end_raw)
        summaries = BalanceService(db, user_id).series(home_id, start, end)
    except ValueError as exc:
        _raise_http(exc)
    return [serialize_balance(summary) for summary in summaries]


@app.get("/api/homes/{home_id}/finances/{finance_id}")
def get_finance(
    home_id: int,
    finance_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        entry = FinanceService(db, user_id).get(home_id, finance_id)
    except ValueError as exc:
        _raise_http(exc)
    return serialize_entry(entry)


@app.get("/api/homes/{home_id}/finances/{finance_id}/schedule")
def finance_schedule(
    home_id: int,
    finance_id: int,
    months: int = 12,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        occurrences = FinanceService(db, user_id).schedule(home_id, finance_id, months)
    except ValueError as exc:
        _raise_http(exc)
    return [
        {
            "month": ref.month,
            "year": ref.year,
            "date": occurrence.display_date.isoformat(),
            "amount": cents_to_amount(occurrence.amount_cents),
            "occurrence": occurrence.kind.value,
            "payment_month_index": occurrence.plan_index,
        }
        for ref, occurrence in occurrences
    ]


@app.post("/api/homes/{home_id}/finances", status_code=201)
def create_finance(
    home_id: int,
    payload: FinanceIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        entry = FinanceService(db, user_id).create(home_id, payload)
    except ValueError as exc:
        _raise_http(exc)
    return serialize_entry(entry)


@app.put("/api/homes/{home_id}/finances/{finance_id}")
def update_finance(
    home_id: int,
    finance_id: int,
    payload: FinanceUpdate,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        entry = FinanceService(db, user_id).update(home_id, finance_id, payload)
    except ValueError as exc:
        _raise_http(exc)
    return serialize_entry(entry)


@app.delete("/api/homes/{home_id}/finances/{finance_id}", status_code=204)
def delete_finance(
    home_id: int,
    finance_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        FinanceService(db, user_id).delete(home_id, finance_id)
    except ValueError as exc:
        _raise_http(exc)
    return Response(status_code=204)


@app.post("/api/homes/{home_id}/finances/reencode-amounts")
def reencode_home_amounts(
    home_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        home = HomeService(db, user_id).get_owned(home_id)
    except ValueError as exc:
        _raise_http(exc)
    logger.info(f"reencode_requested: home_id={home.id} user_id={user_id}")
    count = AmountMigrationService(db).reencode_all(home_id=home.id)
    return {"reencoded": count}


def reencode_amounts():
    with session_scope() as session:
        count = AmountMigrationService(session).reencode_all()
    print(f"Re-encoded {count} finance amounts")


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
