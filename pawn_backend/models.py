from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Column
from sqlmodel import Field, Relationship, SQLModel

from .timezone_utils import now_local


class Customer(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    customer_code: str = Field(default="", index=True)
    full_name: str
    phone_number: Optional[str] = None
    address: Optional[str] = None
    email: Optional[str] = None
    created_at: datetime = Field(default_factory=now_local)

    vouchers: list["Voucher"] = Relationship(back_populates="customer")


class Voucher(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    bill_no: str = Field(index=True, unique=True)
    customer_id: Optional[int] = Field(default=None, foreign_key="customer.id")
    # copies taken when the voucher was written; used when the customer row is gone
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    jewel_type: Optional[str] = None
    gross_weight: Optional[float] = None
    net_weight: Optional[float] = None
    jewelry_items: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    loan_amount: Optional[float] = None
    final_loan_amount: Optional[float] = None
    interest_rate: Optional[float] = None
    interest_amount: Optional[float] = None
    overall_loan_amount: Optional[float] = None
    disbursement_date: datetime = Field(default_factory=now_local, index=True)
    due_date: Optional[datetime] = None
    status: str = Field(default="Active")
    repaid_amount: Optional[float] = None
    balance_amount: Optional[float] = None
    payment_progress: Optional[float] = None
    last_payment_date: Optional[datetime] = None
    months_paid: Optional[int] = None
    total_interest_paid: Optional[float] = None
    closed_date: Optional[datetime] = None
    created_at: datetime = Field(default_factory=now_local)

    customer: Optional[Customer] = Relationship(back_populates="vouchers")


class DayBook(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    date: datetime = Field(index=True)
    loans_disbursed: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    closed_loans: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=now_local)


class StockSummary(SQLModel, table=True):
    key: str = Field(primary_key=True)
    loans: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    data_source: str = Field(default="unknown")
    sync_status: str = Field(default="synced")
    data_version: str = Field(default="1.0")
    last_synced_at: datetime = Field(default_factory=now_local)
    last_updated: datetime = Field(default_factory=now_local)
