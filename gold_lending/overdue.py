"""
Overdue & Penalty Engine

Derives each loan's overdue snapshot (days overdue, overdue installment,
accrued penalty, next due date) from its terms, disbursement date and last
payment, persists it, and escalates long-overdue loans to DEFAULTED.

Only ACTIVE loans can be overdue. The overdue amount is capped at one EMI:
it models the installment currently due, not the balance ultimately owed.
"""

from decimal import Decimal, ROUND_HALF_UP
from datetime import datetime, timedelta
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
import logging

from .currency import ZERO, HUNDRED, round_money, to_decimal
from .audit import AuditTrail, AuditEventType
from .errors import NotFoundError
from .loans import Loan, LoanManager, LoanStatus, PenaltyType
from .logging_config import log_action
from .terms import (
    Clock, utc_now, add_months, with_day_of_month, whole_months_elapsed
)


logger = logging.getLogger(__name__)

DAYS_PER_YEAR = Decimal('365')
DEFAULT_THRESHOLD_DAYS = 90

# A loan with no payments that is this many whole months past disbursement
# has its due date advanced to the current EMI period. Advancing after one
# month would move the due date past a loan that is only days late, so it
# could never read as overdue in its first missed period.
MULTIPLE_EMI_PERIODS = 2

# overdue_since records the first time a loan ever went overdue; recovering
# does not clear it.
RESET_OVERDUE_SINCE_ON_RECOVERY = False

# Days-overdue buckets: (label, lower bound inclusive, upper bound exclusive)
OVERDUE_BUCKETS = [
    ('less_than_30_days', 0, 30),
    ('from_30_to_60_days', 30, 60),
    ('from_60_to_90_days', 60, 90),
    ('more_than_90_days', 90, None),
]


@dataclass
class OverdueStatus:
    """Overdue snapshot of one loan at one instant"""
    is_overdue: bool = False
    days_overdue: int = 0
    overdue_amount: Decimal = ZERO
    penalty_amount: Decimal = ZERO
    next_due_date: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'is_overdue': self.is_overdue,
            'days_overdue': self.days_overdue,
            'overdue_amount': str(self.overdue_amount),
            'penalty_amount': str(self.penalty_amount),
            'next_due_date': self.next_due_date.isoformat() if self.next_due_date else None,
        }


def bucket_for(days_overdue: int) -> str:
    for label, lower, upper in OVERDUE_BUCKETS:
        if days_overdue >= lower and (upper is None or days_overdue < upper):
            return label
    return OVERDUE_BUCKETS[0][0]


def calculate_next_due_date(loan: Loan, now: datetime) -> Optional[datetime]:
    """
    Next EMI due date of a loan, or None before disbursement

    After a payment the next installment falls one month later, on the
    disbursement day-of-month. Without payments the first installment is due
    one month after disbursement; once the loan has run for several EMI
    periods unpaid, the due date moves to the current period, estimated with
    30.44-day months.
    """
    disbursed = loan.disbursement_date
    if not disbursed:
        return None

    if loan.last_payment_date:
        return with_day_of_month(add_months(loan.last_payment_date, 1), disbursed.day)

    first_due = add_months(disbursed, 1)
    if first_due < now:
        elapsed = whole_months_elapsed(disbursed, now)
        if elapsed >= MULTIPLE_EMI_PERIODS:
            return with_day_of_month(add_months(disbursed, elapsed + 1), disbursed.day)
    return first_due


def calculate_penalty(
    overdue_amount: Any,
    penalty_rate: Any,
    penalty_type: PenaltyType,
    days_overdue: int
) -> Decimal:
    """
    Penalty accrued over days_overdue days

    PERCENTAGE: overdue_amount x rate / 100 / 365 x days (annual rate charged
    as simple daily interest). FIXED: rate x days.
    """
    if days_overdue <= 0:
        return ZERO

    rate = to_decimal(penalty_rate)
    days = Decimal(days_overdue)

    if penalty_type == PenaltyType.PERCENTAGE:
        return round_money(to_decimal(overdue_amount) * rate / HUNDRED / DAYS_PER_YEAR * days)
    return round_money(rate * days)


def calculate_overdue_status(loan: Loan, now: datetime) -> OverdueStatus:
    """Overdue snapshot of a loan as of now"""
    if loan.status != LoanStatus.ACTIVE:
        return OverdueStatus()

    next_due = calculate_next_due_date(loan, now)
    if next_due is None or now <= next_due:
        return OverdueStatus(next_due_date=next_due)

    days_overdue = (now - next_due) // timedelta(days=1)
    overdue_amount = round_money(min(loan.emi_amount, loan.outstanding_balance))
    penalty = calculate_penalty(overdue_amount, loan.penalty_rate, loan.penalty_type, days_overdue)

    return OverdueStatus(
        is_overdue=True,
        days_overdue=days_overdue,
        overdue_amount=overdue_amount,
        penalty_amount=penalty,
        next_due_date=next_due
    )


def overdue_since_after(loan: Loan, status: OverdueStatus, now: datetime) -> Optional[datetime]:
    """
    Value of overdue_since once status is applied to loan

    Stamped when the loan first becomes overdue and kept afterwards.
    """
    if status.is_overdue:
        return loan.overdue_since or now
    if RESET_OVERDUE_SINCE_ON_RECOVERY:
        return None
    return loan.overdue_since


class OverdueEngine:
    """
    Maintains the persisted overdue snapshot of loans
    """

    def __init__(
        self,
        loan_manager: LoanManager,
        audit_trail: AuditTrail,
        clock: Optional[Clock] = None,
        default_threshold_days: int = DEFAULT_THRESHOLD_DAYS
    ):
        self.loan_manager = loan_manager
        self.storage = loan_manager.storage
        self.audit_trail = audit_trail
        self.clock = clock or utc_now
        self.default_threshold_days = default_threshold_days

    def calculate_overdue_status(self, loan: Loan) -> OverdueStatus:
        return calculate_overdue_status(loan, self.clock())

    def update_loan_overdue_status(self, loan_id: str) -> Loan:
        """
        Recompute and persist the overdue snapshot of one loan

        Raises:
            NotFoundError: If the loan does not exist
        """
        loan, _ = self._refresh(loan_id)
        return loan

    def update_all_overdue_loans(self) -> Dict[str, int]:
        """
        Refresh every ACTIVE loan

        A failure on one loan is logged and counted; the remaining loans are
        still processed.

        Returns:
            total_processed, new_overdue_count, cleared_overdue_count,
            failed_count
        """
        result = {
            'total_processed': 0,
            'new_overdue_count': 0,
            'cleared_overdue_count': 0,
            'failed_count': 0,
        }

        for loan in self.loan_manager.find_active_loans():
            result['total_processed'] += 1
            try:
                refreshed, was_overdue = self._refresh(loan.id)
            except Exception:
                logger.error("Overdue refresh failed for loan %s", loan.id, exc_info=True)
                result['failed_count'] += 1
                continue

            if not was_overdue and refreshed.is_overdue:
                result['new_overdue_count'] += 1
            if was_overdue and not refreshed.is_overdue:
                result['cleared_overdue_count'] += 1

        log_action(
            logger, "info", "Overdue statuses refreshed",
            action="update_all_overdue_loans", resource="loan", extra=result
        )
        return result

    def get_overdue_loans(
        self,
        min_days_overdue: Optional[int] = None,
        max_days_overdue: Optional[int] = None,
        min_amount: Optional[Any] = None
    ) -> List[Loan]:
        """Overdue ACTIVE loans within the given ranges, most days overdue first"""
        loans = self.loan_manager.find_loans_where(
            status=LoanStatus.ACTIVE,
            is_overdue=True,
            min_days_overdue=min_days_overdue,
            max_days_overdue=max_days_overdue,
            min_overdue_amount=min_amount
        )
        loans.sort(key=lambda l: l.days_overdue, reverse=True)
        return loans

    def get_overdue_statistics(self) -> Dict[str, Any]:
        """Totals and days-overdue buckets over the overdue ACTIVE loans"""
        loans = self.get_overdue_loans()

        buckets = {label: 0 for label, _, _ in OVERDUE_BUCKETS}
        for loan in loans:
            buckets[bucket_for(loan.days_overdue)] += 1

        average_days = 0
        if loans:
            average = Decimal(sum(l.days_overdue for l in loans)) / Decimal(len(loans))
            average_days = int(average.quantize(Decimal('1'), rounding=ROUND_HALF_UP))

        return {
            'total_overdue_loans': len(loans),
            'total_overdue_amount': round_money(sum((l.overdue_amount for l in loans), ZERO)),
            'total_penalties': round_money(sum((l.penalty_amount for l in loans), ZERO)),
            'average_days_overdue': average_days,
            'buckets': buckets,
        }

    def check_and_mark_defaulted(self, loan_id: str, threshold_days: Optional[int] = None) -> bool:
        """
        Escalate an overdue loan to DEFAULTED past the threshold

        Works from the persisted overdue snapshot. A defaulted loan is no
        longer ACTIVE, so its overdue fields are zeroed in the same update.

        Returns:
            True if the loan was marked DEFAULTED by this call

        Raises:
            NotFoundError: If the loan does not exist
        """
        if threshold_days is None:
            threshold_days = self.default_threshold_days

        with self.storage.atomic():
            loan = self.loan_manager.require_loan(loan_id)
            if loan.status != LoanStatus.ACTIVE or not loan.is_overdue:
                return False
            if loan.days_overdue < threshold_days:
                return False

            days_overdue = loan.days_overdue
            self.loan_manager.update_loan(
                loan_id,
                status=LoanStatus.DEFAULTED,
                is_overdue=False,
                days_overdue=0,
                overdue_amount=ZERO,
                penalty_amount=ZERO
            )

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_DEFAULTED,
            entity_type="loan",
            entity_id=loan_id,
            metadata={
                "loan_number": loan.loan_number,
                "days_overdue": days_overdue,
                "threshold_days": threshold_days,
                "outstanding_balance": loan.outstanding_balance
            }
        )
        log_action(
            logger, "warning", f"Loan {loan.loan_number} marked DEFAULTED",
            action="mark_defaulted", resource="loan", loan_id=loan_id,
            extra={"days_overdue": days_overdue, "threshold_days": threshold_days}
        )
        return True

    def _refresh(self, loan_id: str):
        """Recompute inside one transaction; returns (loan, was_overdue)"""
        now = self.clock()

        with self.storage.atomic():
            loan = self.loan_manager.get_loan(loan_id)
            if not loan:
                raise NotFoundError("loan", loan_id)

            was_overdue = loan.is_overdue
            status = calculate_overdue_status(loan, now)
            updated = self.loan_manager.update_loan(
                loan_id,
                is_overdue=status.is_overdue,
                days_overdue=status.days_overdue,
                overdue_amount=status.overdue_amount,
                penalty_amount=status.penalty_amount,
                next_due_date=status.next_due_date,
                overdue_since=overdue_since_after(loan, status, now)
            )

        if was_overdue != status.is_overdue:
            self.audit_trail.log_event(
                event_type=AuditEventType.OVERDUE_STATUS_CHANGED,
                entity_type="loan",
                entity_id=loan_id,
                metadata={
                    "loan_number": loan.loan_number,
                    "is_overdue": status.is_overdue,
                    "days_overdue": status.days_overdue,
                    "overdue_amount": status.overdue_amount,
                    "penalty_amount": status.penalty_amount
                }
            )

        return updated, was_overdue
