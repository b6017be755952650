from __future__ import annotations

import argparse
import json
import sys
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from sqlmodel import Session, select

from .. import crud
from ..config import LOG_FORMAT, LOG_LEVEL
from ..database import engine, init_db
from ..exceptions import StockSummaryError
from ..loan_sources import classify_loan_status
from ..logging_config import setup_logging
from ..models import Voucher
from ..timezone_utils import now_local


@dataclass
class SnapshotAuditReport:
    snapshot_loans: int
    voucher_count: int
    missing_from_snapshot: List[str] = field(default_factory=list)
    orphaned_in_snapshot: List[str] = field(default_factory=list)
    stale_status: List[Dict[str, str]] = field(default_factory=list)

    @property
    def issue_count(self) -> int:
        return len(self.missing_from_snapshot) + len(self.orphaned_in_snapshot) + len(self.stale_status)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "snapshot_loans": self.snapshot_loans,
            "voucher_count": self.voucher_count,
            "issue_count": self.issue_count,
            "missing_from_snapshot": self.missing_from_snapshot,
            "orphaned_in_snapshot": self.orphaned_in_snapshot,
            "stale_status": self.stale_status,
        }


def audit_snapshot(session: Session, now: Optional[datetime] = None) -> SnapshotAuditReport:
    """Compare the snapshot against the voucher table and today's overdue rule."""
    now = now or now_local()
    snapshot = crud.load_snapshot(session)
    if snapshot is None:
        raise crud.SnapshotNotFoundError("Stock summary not found. Please sync data first.")
    vouchers = session.exec(select(Voucher)).all()
    report = SnapshotAuditReport(snapshot_loans=len(snapshot.loans), voucher_count=len(vouchers))

    voucher_bills = {voucher.bill_no for voucher in vouchers}
    snapshot_bills = {loan.bill_no for loan in snapshot.loans}
    report.missing_from_snapshot = sorted(voucher_bills - snapshot_bills)
    if snapshot.data_source == "voucher":
        report.orphaned_in_snapshot = sorted(snapshot_bills - voucher_bills)

    for loan in snapshot.loans:
        if loan.loan_status in ("closed", "inactive"):
            continue
        expected = classify_loan_status(loan.status, loan.due_date, now)
        if expected != loan.loan_status:
            report.stale_status.append(
                {"bill_no": loan.bill_no, "cached": loan.loan_status, "expected": expected}
            )
    return report


def _print(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2, default=str))


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Maintain the stock-summary snapshot.")
    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("sync", help="Rebuild the snapshot from vouchers or day-books")
    subparsers.add_parser("sweep", help="Mark active loans past their due date as overdue")
    subparsers.add_parser("reset", help="Delete every snapshot")
    subparsers.add_parser("stats", help="Print dashboard statistics")
    subparsers.add_parser("audit", help="Report snapshot drift against the voucher table")
    return parser


def run(command: str, session: Session) -> int:
    if command == "sync":
        snapshot = crud.sync_stock_summary(session)
        _print(crud.to_sync_result(snapshot).model_dump(by_alias=True, mode="json"))
    elif command == "sweep":
        _print({"modifiedCount": crud.sweep_overdue(session)})
    elif command == "reset":
        _print({"deletedCount": crud.reset_stock_summary(session)})
    elif command == "stats":
        _print(crud.get_dashboard_stats(session).model_dump(by_alias=True, mode="json"))
    elif command == "audit":
        report = audit_snapshot(session)
        _print(report.as_dict())
        return 1 if report.issue_count else 0
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    args = build_arg_parser().parse_args(argv)
    setup_logging(LOG_LEVEL, LOG_FORMAT)
    init_db()
    with Session(engine) as session:
        try:
            return run(args.command, session)
        except StockSummaryError as exc:
            print(f"{args.command} failed: {exc}", file=sys.stderr)
            return 1


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    raise SystemExit(main())
