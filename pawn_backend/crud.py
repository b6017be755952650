from __future__ import annotations

import math
from collections import Counter
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm.attributes import flag_modified
from sqlmodel import Session, select

from .config import (
    STOCK_SUMMARY_DATA_VERSION,
    STOCK_SUMMARY_DEFAULT_LIMIT,
    STOCK_SUMMARY_KEY,
    STOCK_SUMMARY_MAX_LIMIT,
)
from .exceptions import (
    InvalidStatusError,
    LoanNotFoundError,
    PersistenceError,
    SnapshotNotFoundError,
    SourceUnavailableError,
    ValidationError,
)
from .loan_sources import read_daybook_loans, read_voucher_loans
from .logging_config import get_logger
from .models import StockSummary
from .schemas import (
    ALLOWED_STATUSES,
    DashboardStats,
    DerivedLoan,
    JewelTypeBucket,
    LoanCustomer,
    LoanListItem,
    LoanStats,
    OverallSummary,
    Pagination,
    SnapshotAggregates,
    StockSummaryFilters,
    StockSummaryPage,
    StockSummarySnapshot,
    SyncResult,
)
from .timezone_utils import days_overdue, ensure_local_datetime, is_past, now_local, parse_day_range, same_calendar_month

logger = get_logger(__name__)

STATUS_FILTERS = ("active", "overdue", "closed")


def _round_amount(value: Optional[float]) -> float:
    try:
        number = float(value or 0.0)
    except (TypeError, ValueError):
        number = 0.0
    return round(number, 2)


def _percent(part: float, whole: float) -> int:
    if whole <= 0:
        return 0
    # half-up, so 12.5 -> 13
    return int(math.floor(part / whole * 100 + 0.5))


def _sum(loans: Sequence[DerivedLoan], attr: str, predicate: Callable[[DerivedLoan], bool] = lambda _: True) -> float:
    return _round_amount(sum(getattr(loan, attr) or 0.0 for loan in loans if predicate(loan)))


def compute_jewel_type_summary(loans: Sequence[DerivedLoan]) -> Dict[str, JewelTypeBucket]:
    buckets: Dict[str, JewelTypeBucket] = {}
    for loan in loans:
        bucket = buckets.setdefault(loan.jewel_type or "gold", JewelTypeBucket())
        if loan.loan_status in STATUS_FILTERS:
            setattr(bucket, loan.loan_status, getattr(bucket, loan.loan_status) + 1)
        bucket.total_amount = _round_amount(bucket.total_amount + (loan.final_loan_amount or 0.0))
        bucket.count += 1
    return buckets


def compute_loan_stats(loans: Sequence[DerivedLoan]) -> LoanStats:
    counts = Counter(loan.loan_status for loan in loans)
    return LoanStats(
        total_loans=len(loans),
        active_loans=counts["active"],
        overdue_loans=counts["overdue"],
        closed_loans=counts["closed"],
        total_loan_amount=_sum(loans, "final_loan_amount"),
        total_active_loan_amount=_sum(loans, "final_loan_amount", lambda loan: loan.loan_status == "active"),
        total_overdue_loan_amount=_sum(loans, "final_loan_amount", lambda loan: loan.loan_status == "overdue"),
        overdue_rate=_percent(counts["overdue"], len(loans)),
    )


def compute_aggregates(loans: Sequence[DerivedLoan]) -> SnapshotAggregates:
    stats = compute_loan_stats(loans)
    total_repaid = _sum(loans, "repaid_amount")
    total_overall = _sum(loans, "overall_loan_amount")
    average = stats.total_loan_amount / stats.total_loans if stats.total_loans else 0.0
    collection_rate = total_repaid / total_overall * 100 if total_overall > 0 else 0.0
    return SnapshotAggregates(
        **stats.model_dump(),
        total_repaid_amount=total_repaid,
        total_balance_amount=_sum(loans, "balance_amount"),
        average_loan_amount=_round_amount(average),
        collection_rate=_round_amount(collection_rate),
        jewel_type_summary=compute_jewel_type_summary(loans),
        record_count=len(loans),
    )


# ---------- store ----------


def _get_row(session: Session) -> Optional[StockSummary]:
    try:
        return session.exec(
            select(StockSummary).order_by(StockSummary.last_updated.desc())
        ).first()
    except SQLAlchemyError as exc:
        session.rollback()
        raise PersistenceError(f"Unable to read stock summary: {exc}") from exc


def _row_loans(row: StockSummary) -> List[DerivedLoan]:
    return [DerivedLoan.model_validate(item) for item in row.loans or []]


def _to_snapshot(row: StockSummary, loans: List[DerivedLoan]) -> StockSummarySnapshot:
    return StockSummarySnapshot(
        loans=loans,
        data_source=row.data_source,
        sync_status=row.sync_status,
        data_version=row.data_version,
        last_synced_at=ensure_local_datetime(row.last_synced_at),
        last_updated=ensure_local_datetime(row.last_updated),
        aggregates=compute_aggregates(loans),
    )


def load_snapshot(session: Session) -> Optional[StockSummarySnapshot]:
    row = _get_row(session)
    if row is None:
        return None
    return _to_snapshot(row, _row_loans(row))


def _require_row(session: Session) -> Tuple[StockSummary, List[DerivedLoan]]:
    row = _get_row(session)
    if row is None:
        raise SnapshotNotFoundError("Stock summary not found")
    return row, _row_loans(row)


def _dump_loans(loans: Sequence[DerivedLoan]) -> List[dict]:
    return [loan.model_dump(mode="json") for loan in loans]


def _commit(session: Session, action: str) -> None:
    try:
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        raise PersistenceError(f"Unable to {action}: {exc}") from exc


def _save_loans(session: Session, row: StockSummary, loans: Sequence[DerivedLoan], now: datetime) -> None:
    row.loans = _dump_loans(loans)
    flag_modified(row, "loans")
    row.last_updated = now
    session.add(row)
    _commit(session, "save stock summary")
    session.refresh(row)


def reset_stock_summary(session: Session) -> int:
    try:
        result = session.exec(delete(StockSummary))
    except SQLAlchemyError as exc:
        session.rollback()
        raise PersistenceError(f"Unable to delete stock summary: {exc}") from exc
    _commit(session, "delete stock summary")
    deleted = int(result.rowcount or 0)
    logger.info("Deleted %d stock summary records", deleted)
    return deleted


# ---------- synchronization ----------


def _collect_loans(session: Session, now: datetime) -> Tuple[List[DerivedLoan], str]:
    loans: List[DerivedLoan] = []
    try:
        loans = read_voucher_loans(session, now)
    except SourceUnavailableError as exc:
        logger.warning("%s; trying day-books as fallback", exc)
    if loans:
        return loans, "voucher"

    logger.info("No vouchers found, syncing from day-books")
    try:
        loans = read_daybook_loans(session, now)
    except SourceUnavailableError as exc:
        logger.warning("%s; writing an empty stock summary", exc)
        return [], "unknown"
    return loans, "daybook" if loans else "unknown"


def sync_stock_summary(session: Session, now: Optional[datetime] = None) -> StockSummarySnapshot:
    """Rebuild the snapshot from vouchers, or from day-books when there are none."""
    now = now or now_local()
    logger.info("Starting stock summary sync")
    loans, source = _collect_loans(session, now)

    try:
        session.exec(delete(StockSummary))
        row = StockSummary(
            key=STOCK_SUMMARY_KEY,
            loans=_dump_loans(loans),
            data_source=source,
            sync_status="synced",
            data_version=STOCK_SUMMARY_DATA_VERSION,
            last_synced_at=now,
            last_updated=now,
        )
        session.add(row)
    except SQLAlchemyError as exc:
        session.rollback()
        raise PersistenceError(f"Unable to replace stock summary: {exc}") from exc
    _commit(session, "save stock summary")
    session.refresh(row)
    logger.info(
        "Stock summary saved with %d loans from %s",
        len(loans),
        source,
        extra={"data_source": source, "loan_count": len(loans)},
    )
    return _to_snapshot(row, loans)


def to_sync_result(snapshot: StockSummarySnapshot) -> SyncResult:
    aggregates = snapshot.aggregates
    return SyncResult(
        total_loans=aggregates.total_loans,
        active_loans=aggregates.active_loans,
        overdue_loans=aggregates.overdue_loans,
        closed_loans=aggregates.closed_loans,
        total_loan_amount=aggregates.total_loan_amount,
        last_updated=snapshot.last_updated,
        record_count=aggregates.record_count,
        data_source=snapshot.data_source,
    )


# ---------- query ----------


def _matches_search(loan: DerivedLoan, search: str) -> bool:
    needle = search.lower()
    for value in (loan.bill_no, loan.customer_name, loan.customer_id):
        if value and needle in value.lower():
            return True
    return bool(loan.customer_phone) and search in loan.customer_phone


def filter_loans(loans: Sequence[DerivedLoan], filters: StockSummaryFilters) -> List[DerivedLoan]:
    filtered = list(loans)

    if filters.search:
        before = len(filtered)
        filtered = [loan for loan in filtered if _matches_search(loan, filters.search)]
        logger.debug("Search filter: %d -> %d loans", before, len(filtered))

    if filters.date_filter:
        try:
            start, end = parse_day_range(filters.date_filter)
        except ValueError as exc:
            raise ValidationError(f"Invalid dateFilter: {filters.date_filter}") from exc
        before = len(filtered)
        filtered = [
            loan
            for loan in filtered
            if loan.disbursement_date is not None
            and start <= ensure_local_datetime(loan.disbursement_date) < end
        ]
        logger.debug("Date filter: %d -> %d loans", before, len(filtered))

    status_filter = filters.status_filter
    if status_filter in STATUS_FILTERS:
        before = len(filtered)
        filtered = [loan for loan in filtered if loan.loan_status == status_filter]
        logger.debug("Status filter (%s): %d -> %d loans", status_filter, before, len(filtered))
    elif status_filter and status_filter != "all":
        logger.debug("Ignoring unrecognised statusFilter: %s", status_filter)

    jewel_type = filters.jewel_type_filter
    if jewel_type and jewel_type != "all":
        before = len(filtered)
        filtered = [loan for loan in filtered if loan.jewel_type == jewel_type]
        logger.debug("Jewel type filter (%s): %d -> %d loans", jewel_type, before, len(filtered))

    return filtered


def to_loan_list_item(loan: DerivedLoan) -> LoanListItem:
    return LoanListItem(
        id=loan.id,
        bill_no=loan.bill_no,
        customer=LoanCustomer(
            id=loan.customer_id,
            full_name=loan.customer_name,
            phone_number=loan.customer_phone,
            address=loan.customer_address,
        ),
        jewel_type=loan.jewel_type,
        gross_weight=loan.gross_weight,
        net_weight=loan.net_weight,
        final_loan_amount=loan.final_loan_amount,
        overall_loan_amount=loan.overall_loan_amount,
        interest_rate=loan.interest_rate,
        disbursement_date=loan.disbursement_date,
        due_date=loan.due_date,
        status=loan.status,
        loan_status=loan.loan_status,
        repaid_amount=loan.repaid_amount,
        balance_amount=loan.balance_amount,
        payment_progress=loan.payment_progress,
        days_overdue=loan.days_overdue,
    )


def _empty_page(limit: int, now: datetime) -> StockSummaryPage:
    return StockSummaryPage(
        data=[],
        pagination=Pagination(current_page=1, total_pages=0, total_items=0, items_per_page=limit),
        summary=LoanStats(),
        jewel_type_summary={},
        overall_summary=OverallSummary(last_updated=now),
        data_source="empty",
    )


def query_stock_summary(
    session: Session,
    filters: StockSummaryFilters,
    *,
    page: int = 1,
    limit: int = STOCK_SUMMARY_DEFAULT_LIMIT,
    now: Optional[datetime] = None,
) -> StockSummaryPage:
    safe_limit = max(1, min(limit, STOCK_SUMMARY_MAX_LIMIT))
    safe_page = max(1, page)
    snapshot = load_snapshot(session)
    if snapshot is None:
        logger.info("Stock summary not found, creating new one")
        try:
            snapshot = sync_stock_summary(session, now=now)
        except PersistenceError:
            logger.exception("Auto-sync failed completely")
            return _empty_page(safe_limit, now or now_local())

    filtered = filter_loans(snapshot.loans, filters)
    total = len(filtered)
    offset = (safe_page - 1) * safe_limit
    page_loans = filtered[offset : offset + safe_limit]
    logger.debug("Pagination: showing %d of %d loans (page %d)", len(page_loans), total, safe_page)

    aggregates = snapshot.aggregates
    return StockSummaryPage(
        data=[to_loan_list_item(loan) for loan in page_loans],
        pagination=Pagination(
            current_page=safe_page,
            total_pages=math.ceil(total / safe_limit),
            total_items=total,
            items_per_page=safe_limit,
        ),
        summary=compute_loan_stats(filtered),
        jewel_type_summary=compute_jewel_type_summary(filtered),
        overall_summary=OverallSummary(
            total_loans=aggregates.total_loans,
            active_loans=aggregates.active_loans,
            overdue_loans=aggregates.overdue_loans,
            closed_loans=aggregates.closed_loans,
            total_loan_amount=aggregates.total_loan_amount,
            overdue_rate=aggregates.overdue_rate,
            last_updated=snapshot.last_updated,
        ),
        data_source="stocksummary",
    )


# ---------- loan lookup & status ----------


def _find_loan_index(loans: Sequence[DerivedLoan], loan_id: str) -> int:
    for index, loan in enumerate(loans):
        if loan.id == loan_id or (loan.voucher_id is not None and loan.voucher_id == loan_id):
            return index
    raise LoanNotFoundError("Loan not found")


def get_loan(session: Session, loan_id: str) -> DerivedLoan:
    _, loans = _require_row(session)
    return loans[_find_loan_index(loans, loan_id)]


def set_loan_status(session: Session, loan_id: str, status: str, now: Optional[datetime] = None) -> DerivedLoan:
    if status not in ALLOWED_STATUSES:
        raise InvalidStatusError("Invalid status provided")
    now = now or now_local()
    row, loans = _require_row(session)
    loan = loans[_find_loan_index(loans, loan_id)]

    loan.status = status
    if status == "Closed":
        loan.loan_status = "closed"
        loan.closed_date = now
        loan.repaid_amount = loan.overall_loan_amount
        loan.balance_amount = 0.0
        loan.payment_progress = 100.0
        loan.days_overdue = 0
    elif status == "Overdue":
        loan.loan_status = "overdue"
        loan.days_overdue = days_overdue(loan.due_date, now)
    else:
        loan.loan_status = "active"
        loan.days_overdue = 0

    _save_loans(session, row, loans, now)
    logger.info("Loan %s status set to %s", loan.bill_no, status)
    return loan


def sweep_overdue(session: Session, now: Optional[datetime] = None) -> int:
    """Flip active loans whose due date has passed to overdue; returns how many changed."""
    now = now or now_local()
    row, loans = _require_row(session)
    modified = 0
    for loan in loans:
        if loan.loan_status == "active" and is_past(loan.due_date, now):
            loan.status = "Overdue"
            loan.loan_status = "overdue"
            loan.days_overdue = days_overdue(loan.due_date, now)
            modified += 1
    if modified:
        _save_loans(session, row, loans, now)
    logger.info("Updated %d loans to overdue status", modified)
    return modified


# ---------- dashboard ----------


def get_dashboard_stats(session: Session, now: Optional[datetime] = None) -> DashboardStats:
    now = now or now_local()
    row = _get_row(session)
    if row is None:
        raise SnapshotNotFoundError("Stock summary not found. Please sync data first.")
    snapshot = _to_snapshot(row, _row_loans(row))
    aggregates = snapshot.aggregates
    loans = snapshot.loans
    return DashboardStats(
        total_loans=aggregates.total_loans,
        active_loans=aggregates.active_loans,
        overdue_loans=aggregates.overdue_loans,
        closed_loans=aggregates.closed_loans,
        total_loan_value=aggregates.total_loan_amount,
        active_loan_value=aggregates.total_active_loan_amount,
        overdue_loan_value=aggregates.total_overdue_loan_amount,
        this_month_loans=sum(1 for loan in loans if same_calendar_month(loan.disbursement_date, now)),
        due_this_month=sum(1 for loan in loans if same_calendar_month(loan.due_date, now)),
        average_loan_amount=aggregates.average_loan_amount,
        jewel_type_distribution=aggregates.jewel_type_summary,
        overdue_rate=aggregates.overdue_rate,
        collection_rate=aggregates.collection_rate,
        total_repaid_amount=aggregates.total_repaid_amount,
        total_balance_amount=aggregates.total_balance_amount,
        last_updated=snapshot.last_updated,
        record_count=aggregates.record_count,
    )
