"""
Reporting Engine Module

Read-only rollups over loans and payments for dashboards: portfolio totals,
overdue buckets, collections and monthly trends.
"""

from decimal import Decimal
from datetime import datetime, timedelta
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import json

from .currency import ZERO, HUNDRED, round_money, round_rate
from .loans import LoanManager, LoanStatus
from .overdue import OVERDUE_BUCKETS, bucket_for
from .payments import PaymentLedger, PaymentStatus, PaymentType, AMORTIZING_TYPES
from .terms import Clock, utc_now, add_months


RECOVERY_WINDOW_DAYS = 30

# Statuses of loans whose principal has been paid out
DISBURSED_STATUSES = (LoanStatus.ACTIVE, LoanStatus.COMPLETED, LoanStatus.DEFAULTED)


@dataclass
class ReportResult:
    """Result of a report execution"""
    report_id: str
    generated_at: datetime
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    data: List[Dict[str, Any]] = field(default_factory=list)
    totals: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'report_id': self.report_id,
            'generated_at': self.generated_at.isoformat(),
            'period_start': self.period_start.isoformat() if self.period_start else None,
            'period_end': self.period_end.isoformat() if self.period_end else None,
            'data': self.data,
            'totals': self.totals,
            'row_count': len(self.data)
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, default=str)


def _sum(values) -> Decimal:
    return round_money(sum(values, ZERO))


def _average(values: List[Decimal]) -> Decimal:
    if not values:
        return ZERO
    return round_money(sum(values, ZERO) / Decimal(len(values)))


def _within(value: Optional[datetime], start: datetime, end: datetime) -> bool:
    return value is not None and start <= value <= end


class ReportingEngine:
    """
    Portfolio and collection reports over the loan book
    """

    def __init__(
        self,
        loan_manager: LoanManager,
        payment_ledger: PaymentLedger,
        clock: Optional[Clock] = None
    ):
        self.loan_manager = loan_manager
        self.payment_ledger = payment_ledger
        self.clock = clock or utc_now

    def portfolio_summary(self) -> ReportResult:
        """
        Portfolio overview: counts by status, disbursed, outstanding and
        collected totals, collateral value and average LTV
        """
        loans = self.loan_manager.find_loans()
        active = [l for l in loans if l.status == LoanStatus.ACTIVE]

        totals = {
            'total_loans': len(loans),
            'total_disbursed': _sum(l.principal_amount for l in loans if l.status in DISBURSED_STATUSES),
            'total_outstanding': _sum(l.outstanding_balance for l in active),
            'total_collected': _sum(l.total_amount_paid for l in loans),
            'active_loans': len(active),
            'completed_loans': sum(1 for l in loans if l.status == LoanStatus.COMPLETED),
            'overdue_loans': sum(1 for l in active if l.is_overdue),
            'defaulted_loans': sum(1 for l in loans if l.status == LoanStatus.DEFAULTED),
            'pending_loans': sum(1 for l in loans if l.status == LoanStatus.PENDING),
            'average_loan_size': _average([l.principal_amount for l in loans]),
            'total_gold_value': _sum(l.total_gold_value for l in loans),
            'average_ltv': round_rate(_average([l.ltv_ratio for l in loans])),
        }

        return ReportResult(
            report_id="portfolio_summary",
            generated_at=self.clock(),
            data=[totals],
            totals=totals
        )

    def overdue_report(self) -> ReportResult:
        """
        Overdue ACTIVE loans by days-overdue bucket, with the recovery rate:
        repayments received in the last 30 days on loans that were overdue
        and are current again, as a percentage of the amount overdue now
        """
        now = self.clock()
        overdue = self.loan_manager.find_loans_where(status=LoanStatus.ACTIVE, is_overdue=True)

        buckets = {label: {'count': 0, 'amount': ZERO} for label, _, _ in OVERDUE_BUCKETS}
        for loan in overdue:
            bucket = buckets[bucket_for(loan.days_overdue)]
            bucket['count'] += 1
            bucket['amount'] = round_money(bucket['amount'] + loan.overdue_amount)

        total_overdue = _sum(l.overdue_amount for l in overdue)

        recovered_loan_ids = {
            l.id for l in self.loan_manager.find_loans()
            if not l.is_overdue and l.overdue_since is not None
        }
        window_start = now - timedelta(days=RECOVERY_WINDOW_DAYS)
        recovered = _sum(
            p.amount for p in self.payment_ledger.list_payments(status=PaymentStatus.COMPLETED)
            if p.loan_id in recovered_loan_ids and p.payment_date >= window_start
            and p.payment_type != PaymentType.DISBURSEMENT
        )
        recovery_rate = round_rate(recovered / total_overdue * HUNDRED) if total_overdue > 0 else ZERO

        totals = {
            'total_overdue_loans': len(overdue),
            'total_overdue_amount': total_overdue,
            'total_penalties': _sum(l.penalty_amount for l in overdue),
            'recovered_last_30_days': recovered,
            'recovery_rate': recovery_rate,
        }
        data = [
            {'bucket': label, 'count': values['count'], 'amount': values['amount']}
            for label, values in buckets.items()
        ]

        return ReportResult(
            report_id="overdue_report",
            generated_at=now,
            data=data,
            totals=totals
        )

    def collection_report(self, start_date: datetime, end_date: datetime) -> ReportResult:
        """Completed payments received in the period, by payment type"""
        payments = self.payment_ledger.list_payments(
            status=PaymentStatus.COMPLETED, start_date=start_date, end_date=end_date
        )
        received = [p for p in payments if p.payment_type != PaymentType.DISBURSEMENT]
        overdue_loan_ids = {
            l.id for l in self.loan_manager.find_loans_where(is_overdue=True)
        }

        data = []
        for payment_type in PaymentType:
            if payment_type == PaymentType.DISBURSEMENT:
                continue
            of_type = [p for p in received if p.payment_type == payment_type]
            data.append({
                'payment_type': payment_type.value,
                'count': len(of_type),
                'amount': _sum(p.amount for p in of_type)
            })

        totals = {
            'total_collections': _sum(p.amount for p in received),
            'repayments': _sum(p.amount for p in received if p.payment_type in AMORTIZING_TYPES),
            'principal_collected': _sum(p.principal_amount for p in received if p.principal_amount),
            'interest_collected': _sum(p.interest_amount for p in received if p.interest_amount),
            'penalty_collected': _sum(p.penalty_amount for p in received if p.penalty_amount),
            'overdue_recovered': _sum(p.amount for p in received if p.loan_id in overdue_loan_ids),
            'payment_count': len(received),
        }

        return ReportResult(
            report_id="collection_report",
            generated_at=self.clock(),
            period_start=start_date,
            period_end=end_date,
            data=data,
            totals=totals
        )

    def loan_performance_report(self, start_date: datetime, end_date: datetime) -> ReportResult:
        """New, disbursed and closed loans and repayments within the period"""
        loans = self.loan_manager.find_loans()
        repayments = [
            p for p in self.payment_ledger.list_payments(
                status=PaymentStatus.COMPLETED, start_date=start_date, end_date=end_date
            )
            if p.payment_type in AMORTIZING_TYPES
        ]

        totals = {
            'period': f"{start_date.date().isoformat()} to {end_date.date().isoformat()}",
            'new_loans': sum(1 for l in loans if _within(l.created_at, start_date, end_date)),
            'disbursed_amount': _sum(
                l.principal_amount for l in loans
                if l.status in DISBURSED_STATUSES and _within(l.disbursement_date, start_date, end_date)
            ),
            'collections_amount': _sum(p.amount for p in repayments),
            'closed_loans': sum(
                1 for l in loans
                if l.status == LoanStatus.COMPLETED and _within(l.updated_at, start_date, end_date)
            ),
            'outstanding_at_end': _sum(
                l.outstanding_balance for l in loans
                if l.status == LoanStatus.ACTIVE and l.created_at <= end_date
            ),
        }

        return ReportResult(
            report_id="loan_performance",
            generated_at=self.clock(),
            period_start=start_date,
            period_end=end_date,
            data=[totals],
            totals=totals
        )

    def monthly_trends(self, months: int = 12) -> ReportResult:
        """Per calendar month, oldest first, ending with the current month"""
        if months < 1:
            raise ValueError("months must be at least 1")

        now = self.clock()
        current_month = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        loans = self.loan_manager.find_loans()
        payments = [
            p for p in self.payment_ledger.list_payments(status=PaymentStatus.COMPLETED)
            if p.payment_type != PaymentType.DISBURSEMENT
        ]

        data = []
        for offset in range(months - 1, -1, -1):
            start = add_months(current_month, -offset)
            end = add_months(start, 1) - timedelta(microseconds=1)

            disbursed = [l for l in loans if _within(l.disbursement_date, start, end)]
            total_disbursed = _sum(l.principal_amount for l in disbursed)
            total_collected = _sum(p.amount for p in payments if _within(p.payment_date, start, end))

            data.append({
                'month': start.strftime('%b'),
                'year': start.year,
                'loans_created': sum(1 for l in loans if _within(l.created_at, start, end)),
                'loans_disbursed': len(disbursed),
                'loans_completed': sum(
                    1 for l in loans
                    if l.status == LoanStatus.COMPLETED and _within(l.updated_at, start, end)
                ),
                'total_disbursed': total_disbursed,
                'total_collected': total_collected,
                'net_outflow': total_disbursed - total_collected,
            })

        return ReportResult(
            report_id="monthly_trends",
            generated_at=now,
            period_start=add_months(current_month, -(months - 1)),
            period_end=now,
            data=data,
            totals={
                'total_disbursed': _sum(row['total_disbursed'] for row in data),
                'total_collected': _sum(row['total_collected'] for row in data),
            }
        )
