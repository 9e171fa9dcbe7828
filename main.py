import logging
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import get_settings
from database import SessionLocal
from metrics import MetricsService
from scheduler import SchedulerManager
from schemas import (
    ChartBundle,
    ContributionIn,
    ContributionOut,
    DashboardSummary,
    PlanIn,
    PlanOut,
    ReconciliationOut,
    TransactionListItem,
    TransactionOut,
    TransactionPageOut,
    WithdrawalIn,
    WithdrawalOut,
)
from services import (
    InsufficientBalanceError,
    LedgerError,
    LedgerService,
    NotFoundError,
    PlanService,
    StoreError,
    ValidationError,
)


app = FastAPI(title="Savings Tracker")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    if get_settings().scheduler_enabled:
        scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def http_error(exc: LedgerError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        status_code = 404
    elif isinstance(exc, (ValidationError, InsufficientBalanceError)):
        status_code = 400
    elif isinstance(exc, StoreError):
        status_code = 500
    else:
        status_code = 400
    return HTTPException(status_code=status_code, detail=str(exc))


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
    return JSONResponse(status_code=400, content={"error": message})


@app.get("/api/health")
def health():
    return {"status": "OK", "message": "Savings API is running"}


@app.get("/api/plans", response_model=list[PlanOut])
def list_plans(db: Session = Depends(get_db)):
    return PlanService(db).list_all()


@app.post("/api/plans", response_model=PlanOut, status_code=201)
def create_plan(payload: PlanIn, db: Session = Depends(get_db)):
    try:
        return PlanService(db).create(payload.goal_name, payload.target_amount)
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.get("/api/plans/{plan_id}", response_model=PlanOut)
def get_plan(plan_id: int, db: Session = Depends(get_db)):
    try:
        return PlanService(db).get(plan_id)
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.delete("/api/plans/{plan_id}")
def delete_plan(plan_id: int, db: Session = Depends(get_db)):
    try:
        PlanService(db).delete(plan_id)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return {"message": "Savings plan deleted successfully"}


@app.post("/api/plans/{plan_id}/contribute", response_model=ContributionOut)
def contribute(plan_id: int, payload: ContributionIn, db: Session = Depends(get_db)):
    try:
        entry = LedgerService(db).contribute(
            plan_id, payload.amount, payload.description
        )
    except LedgerError as exc:
        raise http_error(exc) from exc
    return ContributionOut(
        contribution=TransactionOut.model_validate(entry.transaction),
        plan=PlanOut.model_validate(entry.plan),
    )


@app.post("/api/plans/{plan_id}/withdraw", response_model=WithdrawalOut)
def withdraw(plan_id: int, payload: WithdrawalIn, db: Session = Depends(get_db)):
    try:
        entry = LedgerService(db).withdraw(plan_id, payload.amount, payload.description)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return WithdrawalOut(
        withdrawal=TransactionOut.model_validate(entry.transaction),
        plan=PlanOut.model_validate(entry.plan),
    )


@app.get("/api/dashboard", response_model=DashboardSummary)
def dashboard(db: Session = Depends(get_db)):
    try:
        return MetricsService(db).dashboard_summary()
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.get("/api/contributions", response_model=TransactionPageOut)
def list_contributions(
    limit: int = 50,
    offset: int = 0,
    plan_id: Optional[int] = None,
    db: Session = Depends(get_db),
):
    limit = min(max(limit, 1), 100)
    offset = max(offset, 0)
    page = LedgerService(db).list_transactions(
        limit=limit, offset=offset, plan_id=plan_id
    )
    return TransactionPageOut(
        items=[TransactionListItem.model_validate(txn) for txn in page.items],
        total=page.total,
        limit=limit,
        offset=offset,
    )


@app.get("/api/charts", response_model=ChartBundle)
def charts(db: Session = Depends(get_db)):
    return MetricsService(db).chart_bundle()


@app.post("/api/admin/reconcile")
def reconcile(repair: bool = False, db: Session = Depends(get_db)):
    try:
        drifted = LedgerService(db).reconcile_all(repair=repair)
    except LedgerError as exc:
        raise http_error(exc) from exc
    logging.info(f"reconcile_requested: repair={repair} drifted={len(drifted)}")
    return {
        "repaired": repair,
        "drifted": [ReconciliationOut.model_validate(r) for r in drifted],
    }
