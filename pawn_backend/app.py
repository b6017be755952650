from __future__ import annotations

import traceback
from contextlib import asynccontextmanager
from typing import Generator, Optional

from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from . import crud
from .config import LOG_FORMAT, LOG_LEVEL, STOCK_SUMMARY_DEFAULT_LIMIT, STOCK_SUMMARY_MAX_LIMIT, is_production
from .database import engine, init_db
from .exceptions import NotFoundError, PersistenceError, StockSummaryError, ValidationError
from .logging_config import get_logger, setup_logging
from .schemas import (
    DashboardResponse,
    ErrorResponse,
    LoanResponse,
    OverdueSweepResponse,
    ResetResponse,
    StatusUpdate,
    StockSummaryFilters,
    StockSummaryPage,
    SyncResponse,
)
from .timezone_utils import now_local

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(LOG_LEVEL, LOG_FORMAT)
    init_db()
    yield


app = FastAPI(title="Pawn Back-Office API", version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_session() -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session


def _error_response(status_code: int, message: str, exc: Optional[Exception] = None) -> JSONResponse:
    payload = ErrorResponse(message=message)
    if exc is not None:
        payload.error = str(exc)
        if not is_production():
            payload.stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return JSONResponse(status_code=status_code, content=jsonable_encoder(payload, exclude_none=True))


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return _error_response(status.HTTP_404_NOT_FOUND, str(exc))


@app.exception_handler(ValidationError)
async def validation_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return _error_response(status.HTTP_400_BAD_REQUEST, str(exc))


@app.exception_handler(PersistenceError)
async def persistence_handler(request: Request, exc: PersistenceError) -> JSONResponse:
    logger.error("Persistence failure on %s %s: %s", request.method, request.url.path, exc)
    return _error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Error accessing stock summary", exc)


@app.exception_handler(StockSummaryError)
async def stock_summary_error_handler(request: Request, exc: StockSummaryError) -> JSONResponse:
    logger.error("Unhandled stock summary error on %s %s: %s", request.method, request.url.path, exc)
    return _error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Stock summary error", exc)


@app.get("/")
def read_root():
    return {"name": "Pawn Back-Office API", "status": "ok", "time": now_local().isoformat()}


@app.get("/health")
def health(session: Session = Depends(get_session)):
    response = {"status": "OK", "database": "Connected", "timestamp": now_local().isoformat()}
    try:
        session.connection().exec_driver_sql("SELECT 1")
    except SQLAlchemyError as exc:
        response["status"] = "DEGRADED"
        response["database"] = f"Error: {str(exc)[:120]}"
    return response


@app.get("/api/stock-summary", response_model=StockSummaryPage)
def stock_summary_api(
    search: Optional[str] = None,
    date_filter: Optional[str] = Query(default=None, alias="dateFilter"),
    status_filter: Optional[str] = Query(default=None, alias="statusFilter"),
    jewel_type_filter: Optional[str] = Query(default=None, alias="jewelTypeFilter"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=STOCK_SUMMARY_DEFAULT_LIMIT, ge=1, le=STOCK_SUMMARY_MAX_LIMIT),
    session: Session = Depends(get_session),
):
    filters = StockSummaryFilters(
        search=search,
        date_filter=date_filter,
        status_filter=status_filter,
        jewel_type_filter=jewel_type_filter,
    )
    logger.info("Getting stock summary with filters: %s page=%d limit=%d", filters.model_dump(exclude_none=True), page, limit)
    return crud.query_stock_summary(session, filters, page=page, limit=limit)


@app.post("/api/stock-summary/sync", response_model=SyncResponse)
def sync_stock_summary_api(session: Session = Depends(get_session)):
    snapshot = crud.sync_stock_summary(session)
    return SyncResponse(
        message=f"Stock summary created/updated with {len(snapshot.loans)} loans",
        data=crud.to_sync_result(snapshot),
    )


@app.get("/api/stock-summary/dashboard", response_model=DashboardResponse)
def dashboard_api(session: Session = Depends(get_session)):
    return DashboardResponse(data=crud.get_dashboard_stats(session))


@app.post("/api/stock-summary/update-overdue", response_model=OverdueSweepResponse)
def update_overdue_api(session: Session = Depends(get_session)):
    modified = crud.sweep_overdue(session)
    return OverdueSweepResponse(
        message=f"Updated {modified} loans to overdue status",
        modified_count=modified,
    )


@app.delete("/api/stock-summary/reset", response_model=ResetResponse)
def reset_stock_summary_api(session: Session = Depends(get_session)):
    deleted = crud.reset_stock_summary(session)
    return ResetResponse(
        message=f"Deleted {deleted} stock summary records",
        deleted_count=deleted,
    )


@app.get("/api/stock-summary/{loan_id}", response_model=LoanResponse)
def get_loan_api(loan_id: str, session: Session = Depends(get_session)):
    return LoanResponse(data=crud.get_loan(session, loan_id))


@app.put("/api/stock-summary/{loan_id}/status", response_model=LoanResponse)
def update_loan_status_api(loan_id: str, payload: StatusUpdate, session: Session = Depends(get_session)):
    loan = crud.set_loan_status(session, loan_id, payload.status)
    return LoanResponse(message="Loan status updated successfully", data=loan)
