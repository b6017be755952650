from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

LoanStatus = Literal["active", "overdue", "closed", "inactive"]
SourceType = Literal["voucher", "daybook"]

ALLOWED_STATUSES = ("Active", "Partial", "Overdue", "Closed")


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _zero_if_none(value: Any) -> Any:
    return 0 if value is None else value


class DerivedLoan(CamelModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    bill_no: str
    voucher_id: Optional[str] = None
    source_id: Optional[str] = None
    source_type: SourceType

    customer_id: str = "unknown"
    customer_name: str = "Unknown Customer"
    customer_phone: str = "N/A"
    customer_address: str = "N/A"

    jewel_type: str = "gold"
    gross_weight: float = 0.0
    net_weight: float = 0.0
    jewelry_items: List[Dict[str, Any]] = Field(default_factory=list)

    loan_amount: float = 0.0
    final_loan_amount: float = 0.0
    overall_loan_amount: float = 0.0
    interest_rate: float = 0.0
    interest_amount: float = 0.0
    repaid_amount: float = 0.0
    balance_amount: float = 0.0
    payment_progress: float = 0.0
    total_interest_paid: float = 0.0
    months_paid: int = 0

    disbursement_date: Optional[datetime] = None
    due_date: Optional[datetime] = None
    closed_date: Optional[datetime] = None
    last_payment_date: Optional[datetime] = None

    status: str = "Active"
    loan_status: LoanStatus = "active"
    days_overdue: int = Field(default=0, ge=0)

    @field_validator(
        "gross_weight",
        "net_weight",
        "loan_amount",
        "final_loan_amount",
        "overall_loan_amount",
        "interest_rate",
        "interest_amount",
        "repaid_amount",
        "balance_amount",
        "payment_progress",
        "total_interest_paid",
        "months_paid",
        mode="before",
    )
    @classmethod
    def default_numeric(cls, value: Any) -> Any:
        return _zero_if_none(value)


class DayBookTransaction(BaseModel):
    """One entry of a day-book ``loans_disbursed`` / ``closed_loans`` list."""

    model_config = ConfigDict(extra="ignore")

    voucher_id: Optional[str] = None
    bill_no: Optional[str] = None
    customer_id: Optional[str] = None
    customer_name: Optional[str] = None
    jewel_type: Optional[str] = None
    net_weight: Optional[float] = None
    amount: Optional[float] = None
    interest_rate: Optional[float] = None
    created_at: Optional[datetime] = None

    @field_validator("voucher_id", "bill_no", "customer_id", mode="before")
    @classmethod
    def stringify_reference(cls, value: Any) -> Any:
        if value is None:
            return None
        text = str(value).strip()
        return text or None


class JewelTypeBucket(CamelModel):
    active: int = 0
    overdue: int = 0
    closed: int = 0
    total_amount: float = 0.0
    count: int = 0


class LoanStats(CamelModel):
    total_loans: int = 0
    active_loans: int = 0
    overdue_loans: int = 0
    closed_loans: int = 0
    total_loan_amount: float = 0.0
    total_active_loan_amount: float = 0.0
    total_overdue_loan_amount: float = 0.0
    overdue_rate: int = 0


class SnapshotAggregates(LoanStats):
    total_repaid_amount: float = 0.0
    total_balance_amount: float = 0.0
    average_loan_amount: float = 0.0
    collection_rate: float = 0.0
    jewel_type_summary: Dict[str, JewelTypeBucket] = Field(default_factory=dict)
    record_count: int = 0


class StockSummarySnapshot(CamelModel):
    loans: List[DerivedLoan] = Field(default_factory=list)
    data_source: str = "unknown"
    sync_status: str = "synced"
    data_version: str = "1.0"
    last_synced_at: datetime
    last_updated: datetime
    aggregates: SnapshotAggregates = Field(default_factory=SnapshotAggregates)


class StockSummaryFilters(BaseModel):
    search: Optional[str] = None
    date_filter: Optional[str] = None
    status_filter: Optional[str] = None
    jewel_type_filter: Optional[str] = None


class LoanCustomer(CamelModel):
    id: str
    full_name: str
    phone_number: str
    address: str


class LoanListItem(CamelModel):
    id: str
    bill_no: str
    customer: LoanCustomer
    jewel_type: str
    gross_weight: float
    net_weight: float
    final_loan_amount: float
    overall_loan_amount: float
    interest_rate: float
    disbursement_date: Optional[datetime] = None
    due_date: Optional[datetime] = None
    status: str
    loan_status: LoanStatus
    repaid_amount: float
    balance_amount: float
    payment_progress: float
    days_overdue: int


class Pagination(CamelModel):
    current_page: int
    total_pages: int
    total_items: int
    items_per_page: int


class OverallSummary(CamelModel):
    total_loans: int = 0
    active_loans: int = 0
    overdue_loans: int = 0
    closed_loans: int = 0
    total_loan_amount: float = 0.0
    overdue_rate: int = 0
    last_updated: datetime


class StockSummaryPage(CamelModel):
    success: bool = True
    data: List[LoanListItem]
    pagination: Pagination
    summary: LoanStats
    jewel_type_summary: Dict[str, JewelTypeBucket]
    overall_summary: OverallSummary
    data_source: str


class SyncResult(CamelModel):
    total_loans: int
    active_loans: int
    overdue_loans: int
    closed_loans: int
    total_loan_amount: float
    last_updated: datetime
    record_count: int
    data_source: str


class SyncResponse(CamelModel):
    success: bool = True
    message: str
    data: SyncResult


class DashboardStats(CamelModel):
    total_loans: int
    active_loans: int
    overdue_loans: int
    closed_loans: int
    total_loan_value: float
    active_loan_value: float
    overdue_loan_value: float
    this_month_loans: int
    due_this_month: int
    average_loan_amount: float
    jewel_type_distribution: Dict[str, JewelTypeBucket]
    overdue_rate: int
    collection_rate: float
    total_repaid_amount: float
    total_balance_amount: float
    last_updated: datetime
    record_count: int


class DashboardResponse(CamelModel):
    success: bool = True
    data: DashboardStats


class OverdueSweepResponse(CamelModel):
    success: bool = True
    message: str
    modified_count: int


class ResetResponse(CamelModel):
    success: bool = True
    message: str
    deleted_count: int


class LoanResponse(CamelModel):
    success: bool = True
    message: Optional[str] = None
    data: DerivedLoan


class StatusUpdate(BaseModel):
    status: str


class ErrorResponse(BaseModel):
    success: bool = False
    message: str
    error: Optional[str] = None
    stack: Optional[str] = None
