import sys
from datetime import datetime
from pathlib import Path

# Ensure project root is on sys.path so `import pawn_backend` works when running the tests directly
ROOT_DIR = Path(__file__).resolve().parents[2]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from pawn_backend import models  # noqa: F401
from pawn_backend.models import Customer, DayBook, Voucher
from pawn_backend.timezone_utils import LOCAL_TZ


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    return engine


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def now() -> datetime:
    return datetime(2026, 3, 15, 10, 0, tzinfo=LOCAL_TZ)


def add_customer(session: Session, **overrides) -> Customer:
    data = {
        "customer_code": "CUST-001",
        "full_name": "Lakshmi Narayanan",
        "phone_number": "9840012345",
        "address": "12 Car Street, Madurai",
    }
    data.update(overrides)
    customer = Customer(**data)
    session.add(customer)
    session.commit()
    session.refresh(customer)
    return customer


def add_voucher(session: Session, **overrides) -> Voucher:
    data = {
        "bill_no": "B-1001",
        "jewel_type": "gold",
        "gross_weight": 12.5,
        "net_weight": 11.8,
        "loan_amount": 40000,
        "final_loan_amount": 40000,
        "overall_loan_amount": 44800,
        "interest_rate": 1.0,
        "interest_amount": 4800,
        "status": "Active",
    }
    data.update(overrides)
    voucher = Voucher(**data)
    session.add(voucher)
    session.commit()
    session.refresh(voucher)
    return voucher


def add_daybook(session: Session, date: datetime, disbursed=None, closed=None) -> DayBook:
    daybook = DayBook(date=date, loans_disbursed=list(disbursed or []), closed_loans=list(closed or []))
    session.add(daybook)
    session.commit()
    session.refresh(daybook)
    return daybook
