"""Readers that turn persisted vouchers and day-books into ``DerivedLoan`` records.

Both readers produce the same normalized shape; nothing downstream of this
module branches on ``source_type``. The day-book reader exists for data that
predates vouchers and is only consulted when the voucher table yields nothing.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import selectinload
from sqlmodel import Session, select

from .config import DAYBOOK_LOAN_TERM_MONTHS
from .exceptions import SourceUnavailableError
from .logging_config import get_logger
from .models import DayBook, Voucher
from .schemas import DayBookTransaction, DerivedLoan, LoanStatus
from .timezone_utils import add_months, days_overdue, ensure_local_datetime, is_past

logger = get_logger(__name__)

ACTIVE_STATUSES = ("Active", "Partial")


def classify_loan_status(status: Optional[str], due_date: Any, now: datetime) -> LoanStatus:
    """Derive the machine classification of a source ``status`` at ``now``."""
    if status != "Closed" and is_past(due_date, now):
        return "overdue"
    if status == "Closed":
        return "closed"
    if status in ACTIVE_STATUSES:
        return "active"
    return "inactive"


def _first_present(*values: Optional[str], default: str) -> str:
    for value in values:
        if value is None:
            continue
        text = str(value).strip()
        if text:
            return text
    return default


def voucher_to_loan(voucher: Voucher, now: datetime) -> DerivedLoan:
    customer = voucher.customer
    status = voucher.status or "Active"
    loan_status = classify_loan_status(status, voucher.due_date, now)
    overdue_days = days_overdue(voucher.due_date, now) if loan_status == "overdue" else 0
    balance = voucher.balance_amount
    if balance is None:
        balance = voucher.overall_loan_amount
    return DerivedLoan(
        bill_no=voucher.bill_no,
        voucher_id=str(voucher.id),
        source_id=str(voucher.id),
        source_type="voucher",
        customer_id=_first_present(
            getattr(customer, "customer_code", None),
            str(customer.id) if customer is not None and customer.id is not None else None,
            str(voucher.customer_id) if voucher.customer_id is not None else None,
            default="unknown",
        ),
        customer_name=_first_present(
            getattr(customer, "full_name", None), voucher.customer_name, default="Unknown Customer"
        ),
        customer_phone=_first_present(
            getattr(customer, "phone_number", None), voucher.customer_phone, default="N/A"
        ),
        customer_address=_first_present(getattr(customer, "address", None), default="N/A"),
        jewel_type=voucher.jewel_type or "gold",
        gross_weight=voucher.gross_weight,
        net_weight=voucher.net_weight,
        jewelry_items=list(voucher.jewelry_items or []),
        loan_amount=voucher.loan_amount,
        final_loan_amount=voucher.final_loan_amount,
        overall_loan_amount=voucher.overall_loan_amount,
        interest_rate=voucher.interest_rate,
        interest_amount=voucher.interest_amount,
        repaid_amount=voucher.repaid_amount,
        balance_amount=balance,
        payment_progress=voucher.payment_progress,
        total_interest_paid=voucher.total_interest_paid,
        months_paid=voucher.months_paid,
        disbursement_date=ensure_local_datetime(voucher.disbursement_date),
        due_date=ensure_local_datetime(voucher.due_date),
        closed_date=ensure_local_datetime(voucher.closed_date),
        last_payment_date=ensure_local_datetime(voucher.last_payment_date),
        status=status,
        loan_status=loan_status,
        days_overdue=overdue_days,
    )


def read_voucher_loans(session: Session, now: datetime) -> List[DerivedLoan]:
    try:
        vouchers = session.exec(
            select(Voucher)
            .options(selectinload(Voucher.customer))
            .order_by(Voucher.disbursement_date.desc(), Voucher.id.desc())
        ).all()
    except SQLAlchemyError as exc:
        session.rollback()
        raise SourceUnavailableError(f"voucher source unavailable: {exc}") from exc
    logger.info("Processing %d vouchers", len(vouchers))
    loans: List[DerivedLoan] = []
    for voucher in vouchers:
        try:
            loans.append(voucher_to_loan(voucher, now))
        except (PydanticValidationError, TypeError, ValueError) as exc:
            raise SourceUnavailableError(f"voucher {voucher.bill_no} could not be read: {exc}") from exc
    return loans


def _parse_transactions(raw: Optional[Iterable[Dict[str, Any]]], daybook_id: Any) -> List[DayBookTransaction]:
    parsed: List[DayBookTransaction] = []
    for entry in raw or []:
        try:
            transaction = DayBookTransaction.model_validate(entry)
        except PydanticValidationError as exc:
            logger.warning("Skipping malformed transaction in day-book %s: %s", daybook_id, exc)
            continue
        if transaction.voucher_id and transaction.bill_no:
            parsed.append(transaction)
    return parsed


def _daybook_loan(
    transaction: DayBookTransaction,
    daybook: DayBook,
    **overrides: Any,
) -> DerivedLoan:
    disbursed_at = ensure_local_datetime(transaction.created_at or daybook.date)
    amount = transaction.amount or 0.0
    fields: Dict[str, Any] = dict(
        bill_no=transaction.bill_no,
        voucher_id=transaction.voucher_id,
        source_id=str(daybook.id),
        source_type="daybook",
        customer_id=transaction.customer_id or "unknown",
        customer_name=transaction.customer_name or "Unknown Customer",
        jewel_type=transaction.jewel_type or "gold",
        # day-books only record net weight
        gross_weight=transaction.net_weight,
        net_weight=transaction.net_weight,
        loan_amount=amount,
        final_loan_amount=amount,
        overall_loan_amount=amount,
        interest_rate=transaction.interest_rate,
        disbursement_date=disbursed_at,
        due_date=add_months(disbursed_at, DAYBOOK_LOAN_TERM_MONTHS),
    )
    fields.update(overrides)
    return DerivedLoan(**fields)


def daybook_to_loans(daybook: DayBook, now: datetime) -> List[DerivedLoan]:
    loans: List[DerivedLoan] = []
    for transaction in _parse_transactions(daybook.loans_disbursed, daybook.id):
        loan = _daybook_loan(transaction, daybook, balance_amount=transaction.amount)
        if is_past(loan.due_date, now):
            loan.status = "Overdue"
            loan.loan_status = "overdue"
            loan.days_overdue = days_overdue(loan.due_date, now)
        loans.append(loan)
    for transaction in _parse_transactions(daybook.closed_loans, daybook.id):
        amount = transaction.amount or 0.0
        loans.append(
            _daybook_loan(
                transaction,
                daybook,
                status="Closed",
                loan_status="closed",
                repaid_amount=amount,
                balance_amount=0.0,
                payment_progress=100.0,
                closed_date=ensure_local_datetime(daybook.date),
            )
        )
    return loans


def read_daybook_loans(session: Session, now: datetime) -> List[DerivedLoan]:
    try:
        daybooks = session.exec(select(DayBook).order_by(DayBook.date.desc(), DayBook.id.desc())).all()
    except SQLAlchemyError as exc:
        session.rollback()
        raise SourceUnavailableError(f"day-book source unavailable: {exc}") from exc
    loans: List[DerivedLoan] = []
    for daybook in daybooks:
        loans.extend(daybook_to_loans(daybook, now))
    logger.info("Extracted %d loans from %d day-books", len(loans), len(daybooks))
    return loans
