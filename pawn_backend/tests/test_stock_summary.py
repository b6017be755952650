from datetime import datetime, timedelta

import pytest
from sqlmodel import select

from conftest import add_customer, add_daybook, add_voucher
from pawn_backend import crud
from pawn_backend.exceptions import (
    InvalidStatusError,
    LoanNotFoundError,
    SnapshotNotFoundError,
    SourceUnavailableError,
    ValidationError,
)
from pawn_backend.models import StockSummary
from pawn_backend.schemas import StockSummaryFilters
from pawn_backend.timezone_utils import LOCAL_TZ


def _projection(snapshot):
    return [
        (loan.bill_no, loan.final_loan_amount, loan.balance_amount, loan.status, loan.loan_status)
        for loan in snapshot.loans
    ]


def _seed_mixed_portfolio(session, now):
    customer = add_customer(session)
    add_voucher(
        session,
        bill_no="G-1",
        customer_id=customer.id,
        final_loan_amount=10000,
        disbursement_date=now - timedelta(days=5),
        due_date=now + timedelta(days=300),
    )
    add_voucher(
        session,
        bill_no="G-2",
        customer_name="Arun Kumar",
        customer_phone="9123400000",
        final_loan_amount=20000,
        disbursement_date=now - timedelta(days=400),
        due_date=now - timedelta(days=35),
    )
    add_voucher(
        session,
        bill_no="G-3",
        final_loan_amount=30000,
        overall_loan_amount=30000,
        repaid_amount=30000,
        balance_amount=0,
        status="Closed",
        disbursement_date=now - timedelta(days=200),
        due_date=now + timedelta(days=160),
    )
    add_voucher(
        session,
        bill_no="S-1",
        jewel_type="silver",
        final_loan_amount=4000,
        disbursement_date=now - timedelta(days=10),
        due_date=now + timedelta(days=355),
    )
    add_voucher(
        session,
        bill_no="S-2",
        jewel_type="silver",
        final_loan_amount=6000,
        status="Partial",
        disbursement_date=now - timedelta(days=30),
        due_date=now + timedelta(days=335),
    )


def test_empty_sources_produce_empty_snapshot(session, now):
    snapshot = crud.sync_stock_summary(session, now=now)

    assert snapshot.loans == []
    assert snapshot.data_source == "unknown"
    aggregates = snapshot.aggregates
    assert aggregates.total_loans == 0
    assert aggregates.active_loans == 0
    assert aggregates.overdue_loans == 0
    assert aggregates.closed_loans == 0
    assert aggregates.overdue_rate == 0
    assert aggregates.collection_rate == 0
    assert aggregates.average_loan_amount == 0
    assert session.exec(select(StockSummary)).all()[0].key == "current"


def test_sync_prefers_vouchers_and_never_merges(session, now):
    add_voucher(session, bill_no="V-1", due_date=now + timedelta(days=30))
    add_daybook(
        session,
        date=now - timedelta(days=3),
        disbursed=[{"voucher_id": "x", "bill_no": "D-1", "amount": 100}],
    )

    snapshot = crud.sync_stock_summary(session, now=now)

    assert snapshot.data_source == "voucher"
    assert {loan.source_type for loan in snapshot.loans} == {"voucher"}
    assert [loan.bill_no for loan in snapshot.loans] == ["V-1"]


def test_sync_falls_back_to_daybooks_when_no_vouchers(session, now):
    add_daybook(
        session,
        date=now - timedelta(days=3),
        disbursed=[{"voucher_id": "x", "bill_no": "D-1", "amount": 100}],
        closed=[{"voucher_id": "y", "bill_no": "D-2", "amount": 200}],
    )

    snapshot = crud.sync_stock_summary(session, now=now)

    assert snapshot.data_source == "daybook"
    assert {loan.source_type for loan in snapshot.loans} == {"daybook"}
    assert snapshot.aggregates.closed_loans == 1
    assert snapshot.aggregates.active_loans == 1


def test_sync_falls_back_when_voucher_source_unavailable(session, now, monkeypatch):
    add_voucher(session, bill_no="V-1")
    add_daybook(
        session,
        date=now - timedelta(days=3),
        disbursed=[{"voucher_id": "x", "bill_no": "D-1", "amount": 100}],
    )

    def broken_reader(session, now):
        raise SourceUnavailableError("voucher source unavailable")

    monkeypatch.setattr(crud, "read_voucher_loans", broken_reader)

    snapshot = crud.sync_stock_summary(session, now=now)

    assert snapshot.data_source == "daybook"
    assert [loan.bill_no for loan in snapshot.loans] == ["D-1"]


def test_sync_falls_back_when_a_voucher_is_malformed(session, now):
    add_voucher(session, bill_no="V-BAD", jewelry_items=["ring"])
    add_daybook(
        session,
        date=now - timedelta(days=3),
        disbursed=[{"voucher_id": "x", "bill_no": "D-1", "amount": 100}],
    )

    snapshot = crud.sync_stock_summary(session, now=now)

    assert snapshot.data_source == "daybook"
    assert [loan.bill_no for loan in snapshot.loans] == ["D-1"]


def test_query_read_through_survives_malformed_voucher(session, now):
    add_voucher(session, bill_no="V-BAD", jewelry_items=["ring"])

    page = crud.query_stock_summary(session, StockSummaryFilters(), now=now)

    assert page.data == []
    assert page.overall_summary.total_loans == 0


def test_sync_writes_empty_snapshot_when_both_sources_fail(session, now, monkeypatch):
    def broken_reader(session, now):
        raise SourceUnavailableError("down")

    monkeypatch.setattr(crud, "read_voucher_loans", broken_reader)
    monkeypatch.setattr(crud, "read_daybook_loans", broken_reader)

    snapshot = crud.sync_stock_summary(session, now=now)

    assert snapshot.loans == []
    assert crud.load_snapshot(session) is not None


def test_sync_replaces_previous_snapshot_and_is_idempotent(session, now):
    _seed_mixed_portfolio(session, now)

    first = crud.sync_stock_summary(session, now=now)
    second = crud.sync_stock_summary(session, now=now + timedelta(minutes=5))

    assert len(session.exec(select(StockSummary)).all()) == 1
    assert _projection(first) == _projection(second)
    assert {loan.id for loan in first.loans}.isdisjoint({loan.id for loan in second.loans})


def test_snapshot_aggregates_follow_loan_array(session, now):
    _seed_mixed_portfolio(session, now)

    aggregates = crud.sync_stock_summary(session, now=now).aggregates

    assert aggregates.total_loans == 5
    assert aggregates.record_count == 5
    assert aggregates.active_loans == 3
    assert aggregates.overdue_loans == 1
    assert aggregates.closed_loans == 1
    assert aggregates.total_loan_amount == pytest.approx(70000)
    assert aggregates.total_active_loan_amount == pytest.approx(20000)
    assert aggregates.total_overdue_loan_amount == pytest.approx(20000)
    assert aggregates.average_loan_amount == pytest.approx(14000)
    assert aggregates.overdue_rate == 20
    assert aggregates.jewel_type_summary["gold"].count == 3
    assert aggregates.jewel_type_summary["silver"].active == 2


def test_query_read_through_sync(session, now):
    add_voucher(session, bill_no="V-1", due_date=now + timedelta(days=30))

    page = crud.query_stock_summary(session, StockSummaryFilters(), now=now)

    assert page.data_source == "stocksummary"
    assert page.pagination.total_items == 1
    assert crud.load_snapshot(session) is not None


def test_query_jewel_type_filter(session, now):
    _seed_mixed_portfolio(session, now)
    crud.sync_stock_summary(session, now=now)

    page = crud.query_stock_summary(session, StockSummaryFilters(jewel_type_filter="gold"), now=now)

    assert len(page.data) == 3
    assert page.jewel_type_summary["gold"].count == 3
    assert "silver" not in page.jewel_type_summary
    assert page.overall_summary.total_loans == 5


def test_query_filters_compose(session, now):
    _seed_mixed_portfolio(session, now)
    crud.sync_stock_summary(session, now=now)

    page = crud.query_stock_summary(
        session,
        StockSummaryFilters(search="g-", status_filter="active"),
        now=now,
    )

    assert [item.bill_no for item in page.data] == ["G-1"]
    assert page.summary.total_loans == 1
    assert page.summary.active_loans == 1


def test_query_status_all_returns_everything(session, now):
    _seed_mixed_portfolio(session, now)
    crud.sync_stock_summary(session, now=now)

    page = crud.query_stock_summary(session, StockSummaryFilters(status_filter="all"), now=now)

    assert page.pagination.total_items == 5


def test_query_search_matches_name_customer_id_and_phone(session, now):
    _seed_mixed_portfolio(session, now)
    crud.sync_stock_summary(session, now=now)

    by_name = crud.query_stock_summary(session, StockSummaryFilters(search="ARUN"), now=now)
    by_customer = crud.query_stock_summary(session, StockSummaryFilters(search="cust-001"), now=now)
    by_phone = crud.query_stock_summary(session, StockSummaryFilters(search="91234"), now=now)

    assert [item.bill_no for item in by_name.data] == ["G-2"]
    assert [item.bill_no for item in by_customer.data] == ["G-1"]
    assert [item.bill_no for item in by_phone.data] == ["G-2"]


def test_query_date_filter_selects_calendar_day(session, now):
    _seed_mixed_portfolio(session, now)
    crud.sync_stock_summary(session, now=now)
    day = (now - timedelta(days=10)).date().isoformat()

    page = crud.query_stock_summary(session, StockSummaryFilters(date_filter=day), now=now)

    assert [item.bill_no for item in page.data] == ["S-1"]


def test_query_rejects_bad_date_filter(session, now):
    crud.sync_stock_summary(session, now=now)

    with pytest.raises(ValidationError):
        crud.query_stock_summary(session, StockSummaryFilters(date_filter="15/03/2026"), now=now)


def test_query_ignores_unrecognised_status_filter(session, now):
    add_voucher(session, bill_no="PENDING-1", status="Pending", due_date=now + timedelta(days=30))
    add_voucher(session, bill_no="ACTIVE-1", due_date=now + timedelta(days=30))
    crud.sync_stock_summary(session, now=now)

    page = crud.query_stock_summary(session, StockSummaryFilters(status_filter="inactive"), now=now)

    assert {item.bill_no for item in page.data} == {"PENDING-1", "ACTIVE-1"}
    assert page.pagination.total_items == 2


def test_query_pagination_preserves_order(session, now):
    for index in range(7):
        add_voucher(
            session,
            bill_no=f"P-{index}",
            disbursement_date=now - timedelta(days=index),
            due_date=now + timedelta(days=100),
        )
    crud.sync_stock_summary(session, now=now)

    first = crud.query_stock_summary(session, StockSummaryFilters(), page=1, limit=3, now=now)
    last = crud.query_stock_summary(session, StockSummaryFilters(), page=3, limit=3, now=now)
    beyond = crud.query_stock_summary(session, StockSummaryFilters(), page=9, limit=3, now=now)

    assert [item.bill_no for item in first.data] == ["P-0", "P-1", "P-2"]
    assert [item.bill_no for item in last.data] == ["P-6"]
    assert beyond.data == []
    for page in (first, last, beyond):
        assert page.pagination.total_items == 7
        assert page.pagination.total_pages == 3
        assert len(page.data) <= 3


def test_query_degrades_to_empty_when_sync_fails(session, now, monkeypatch):
    def failing_sync(session, now=None):
        raise crud.PersistenceError("disk full")

    monkeypatch.setattr(crud, "sync_stock_summary", failing_sync)

    page = crud.query_stock_summary(session, StockSummaryFilters(), limit=25, now=now)

    assert page.data_source == "empty"
    assert page.data == []
    assert page.pagination.items_per_page == 25
    assert page.overall_summary.total_loans == 0


def test_sweep_only_touches_active_loans_past_due(session, now):
    _seed_mixed_portfolio(session, now)
    crud.sync_stock_summary(session, now=now)

    later = now + timedelta(days=320)
    modified = crud.sweep_overdue(session, now=later)

    assert modified == 1
    loans = {loan.bill_no: loan for loan in crud.load_snapshot(session).loans}
    assert loans["G-1"].status == "Overdue"
    assert loans["G-1"].loan_status == "overdue"
    assert loans["G-1"].days_overdue == 20
    assert loans["G-3"].loan_status == "closed"
    assert loans["G-2"].status == "Active"
    assert crud.sweep_overdue(session, now=later) == 0


def test_sweep_without_snapshot_is_not_found(session, now):
    with pytest.raises(SnapshotNotFoundError):
        crud.sweep_overdue(session, now=now)


def test_set_status_closed_settles_loan(session, now):
    add_voucher(session, bill_no="C-1", overall_loan_amount=44800, repaid_amount=1000, balance_amount=43800)
    loan = crud.sync_stock_summary(session, now=now).loans[0]

    closed_at = now + timedelta(hours=2)
    updated = crud.set_loan_status(session, loan.id, "Closed", now=closed_at)

    assert updated.status == "Closed"
    assert updated.loan_status == "closed"
    assert updated.balance_amount == 0
    assert updated.payment_progress == 100
    assert updated.repaid_amount == 44800
    assert updated.closed_date == closed_at
    stored = crud.get_loan(session, loan.id)
    assert stored.balance_amount == 0


def test_set_status_by_voucher_id_maps_partial_to_active(session, now):
    voucher = add_voucher(session, bill_no="C-2", due_date=now - timedelta(days=3))
    crud.sync_stock_summary(session, now=now)

    updated = crud.set_loan_status(session, str(voucher.id), "Partial", now=now)

    assert updated.status == "Partial"
    assert updated.loan_status == "active"


def test_set_status_errors(session, now):
    with pytest.raises(InvalidStatusError):
        crud.set_loan_status(session, "anything", "Lost", now=now)
    with pytest.raises(SnapshotNotFoundError):
        crud.set_loan_status(session, "anything", "Closed", now=now)
    crud.sync_stock_summary(session, now=now)
    with pytest.raises(LoanNotFoundError):
        crud.set_loan_status(session, "missing", "Closed", now=now)


def test_dashboard_counts_current_calendar_month(session, now):
    add_voucher(
        session,
        bill_no="M-1",
        disbursement_date=datetime(2026, 3, 2, tzinfo=LOCAL_TZ),
        due_date=datetime(2027, 3, 2, tzinfo=LOCAL_TZ),
    )
    add_voucher(
        session,
        bill_no="M-2",
        disbursement_date=datetime(2026, 2, 20, tzinfo=LOCAL_TZ),
        due_date=datetime(2026, 3, 28, tzinfo=LOCAL_TZ),
    )
    add_voucher(
        session,
        bill_no="M-3",
        disbursement_date=datetime(2025, 3, 10, tzinfo=LOCAL_TZ),
        due_date=datetime(2025, 9, 10, tzinfo=LOCAL_TZ),
    )
    crud.sync_stock_summary(session, now=now)

    stats = crud.get_dashboard_stats(session, now=now)

    assert stats.total_loans == 3
    assert stats.this_month_loans == 1
    assert stats.due_this_month == 1
    assert stats.overdue_loans == 1


def test_dashboard_does_not_auto_sync(session, now):
    add_voucher(session)

    with pytest.raises(SnapshotNotFoundError):
        crud.get_dashboard_stats(session, now=now)
    assert crud.load_snapshot(session) is None


def test_reset_deletes_snapshots(session, now):
    crud.sync_stock_summary(session, now=now)

    assert crud.reset_stock_summary(session) == 1
    assert crud.reset_stock_summary(session) == 0
    assert crud.load_snapshot(session) is None
