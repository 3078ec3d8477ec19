"""
Loan Terms Module

Stateless calculations used at loan origination and when deriving due dates:
EMI, loan-to-value, maturity projection, calendar-month arithmetic and the
reducing-balance repayment schedule.

Calendar months: adding N months keeps the day-of-month and, when that day
does not exist in the target month, rolls the surplus days into the following
month (31 January + 1 month = 2 or 3 March). Due dates and maturity dates rely
on this overflow rule; it is applied explicitly here rather than inherited
from a date library.
"""

from decimal import Decimal
from datetime import datetime, timedelta, timezone
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional
from enum import Enum
import calendar
import uuid

from .currency import ZERO, HUNDRED, round_money, round_rate, to_decimal


# Services take a clock so that due dates can be evaluated at any instant
Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# Average Gregorian month length. Used only to estimate how many whole EMI
# periods have elapsed on a loan with no payments; it drifts from true
# calendar months near month-end.
AVERAGE_DAYS_PER_MONTH = Decimal('30.44')

MONTHS_PER_YEAR = Decimal('12')


def monthly_rate(annual_rate_percent: Any) -> Decimal:
    """Annual percentage rate to a monthly fraction (12% -> 0.01)"""
    return to_decimal(annual_rate_percent) / (MONTHS_PER_YEAR * HUNDRED)


def calculate_emi(principal: Any, annual_rate_percent: Any, tenure_months: int) -> Decimal:
    """
    Calculate the equated monthly installment for a reducing-balance loan

    EMI = P * r * (1 + r)^n / ((1 + r)^n - 1) with r the monthly rate.
    A zero rate amortizes linearly (principal / tenure).

    Args:
        principal: Loan principal
        annual_rate_percent: Annual interest rate in percent (12 for 12%)
        tenure_months: Number of monthly installments

    Returns:
        EMI rounded to 2 decimal places

    Raises:
        ValueError: If tenure is not positive or inputs are negative
    """
    principal = to_decimal(principal)
    rate = to_decimal(annual_rate_percent)

    if tenure_months <= 0:
        raise ValueError("Tenure must be at least one month")
    if principal < 0 or rate < 0:
        raise ValueError("Principal and interest rate cannot be negative")

    if rate == 0:
        return round_money(principal / Decimal(tenure_months))

    r = monthly_rate(rate)
    factor = (Decimal('1') + r) ** tenure_months
    return round_money(principal * r * factor / (factor - Decimal('1')))


def calculate_ltv(loan_amount: Any, collateral_value: Any) -> Decimal:
    """
    Loan-to-value ratio in percent, rounded to 2 dp

    Returns 0 when there is no collateral value to divide by.
    """
    collateral_value = to_decimal(collateral_value)
    if collateral_value <= 0:
        return ZERO
    return round_rate(to_decimal(loan_amount) / collateral_value * HUNDRED)


def value_gold_item(weight_grams: Any, rate_per_gram: Any) -> Decimal:
    """Collateral value of one gold item (weight x rate at pledge)"""
    return round_money(to_decimal(weight_grams) * to_decimal(rate_per_gram))


def _roll_day(value: datetime, year: int, month: int, day: int) -> datetime:
    """Place value on year/month/day, carrying days past month-end forward"""
    last_day = calendar.monthrange(year, month)[1]
    if day <= last_day:
        return value.replace(year=year, month=month, day=day)
    return value.replace(year=year, month=month, day=last_day) + timedelta(days=day - last_day)


def add_months(value: datetime, months: int) -> datetime:
    """
    Add calendar months, rolling over when the day does not exist

    add_months(2024-01-31, 1) -> 2024-03-02
    """
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    return _roll_day(value, year, month, value.day)


def with_day_of_month(value: datetime, day: int) -> datetime:
    """
    Move value to the given day of its own month

    Days past the end of the month roll into the next one, as add_months does.
    """
    return _roll_day(value, value.year, value.month, day)


def calculate_maturity_date(disbursement_date: datetime, tenure_months: int) -> datetime:
    """Maturity is disbursement plus tenure calendar months"""
    return add_months(disbursement_date, tenure_months)


def whole_months_elapsed(start: datetime, now: datetime) -> int:
    """Approximate whole months between two instants (30.44-day months)"""
    elapsed_days = Decimal((now - start).total_seconds()) / Decimal(86400)
    return int(elapsed_days // AVERAGE_DAYS_PER_MONTH)


class InstallmentStatus(Enum):
    """Repayment status of one scheduled installment"""
    PAID = "PAID"
    OVERDUE = "OVERDUE"
    PENDING = "PENDING"


@dataclass
class ScheduledInstallment:
    """One row of a reducing-balance repayment schedule"""
    installment_number: int
    due_date: datetime
    emi_amount: Decimal
    principal_amount: Decimal
    interest_amount: Decimal
    closing_balance: Decimal
    status: Optional[InstallmentStatus] = None
    paid_amount: Decimal = ZERO
    payment_id: Optional[str] = None
    paid_date: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'installment_number': self.installment_number,
            'due_date': self.due_date.isoformat(),
            'emi_amount': str(self.emi_amount),
            'principal_amount': str(self.principal_amount),
            'interest_amount': str(self.interest_amount),
            'closing_balance': str(self.closing_balance),
            'status': self.status.value if self.status else None,
            'paid_amount': str(self.paid_amount),
            'payment_id': self.payment_id,
            'paid_date': self.paid_date.isoformat() if self.paid_date else None,
        }


def generate_repayment_schedule(
    principal: Any,
    annual_rate_percent: Any,
    tenure_months: int,
    disbursement_date: datetime,
    emi_amount: Optional[Any] = None
) -> List[ScheduledInstallment]:
    """
    Generate the reducing-balance repayment schedule

    Installment k falls due k calendar months after disbursement. Interest
    accrues monthly on the opening balance; the final installment absorbs
    the rounding left over so the closing balance ends at exactly zero.

    Args:
        principal: Loan principal
        annual_rate_percent: Annual interest rate in percent
        tenure_months: Number of installments
        disbursement_date: Date the loan was disbursed
        emi_amount: Installment to use instead of recomputing it

    Returns:
        List of ScheduledInstallment, one per month
    """
    principal = round_money(principal)
    emi = round_money(emi_amount) if emi_amount is not None else calculate_emi(
        principal, annual_rate_percent, tenure_months
    )
    r = monthly_rate(annual_rate_percent)

    schedule = []
    balance = principal

    for number in range(1, tenure_months + 1):
        interest = round_money(balance * r)
        principal_part = min(emi - interest, balance)
        payment = emi

        if number == tenure_months or principal_part >= balance:
            principal_part = balance
            payment = principal_part + interest

        balance = balance - principal_part

        schedule.append(ScheduledInstallment(
            installment_number=number,
            due_date=add_months(disbursement_date, number),
            emi_amount=payment,
            principal_amount=principal_part,
            interest_amount=interest,
            closing_balance=balance
        ))

        if balance <= 0:
            break

    return schedule


def schedule_with_payments(
    schedule: List[ScheduledInstallment],
    payments: Iterable[Any],
    now: datetime
) -> List[ScheduledInstallment]:
    """
    Mark each installment PAID, OVERDUE or PENDING

    An installment is PAID when a payment falls in the same calendar month as
    its due date; otherwise it is OVERDUE once the due date has passed and
    PENDING before that. Payments need payment_date, amount and id
    attributes and should already be limited to completed repayments.
    """
    payments = sorted(payments, key=lambda p: p.payment_date)
    used = set()

    for installment in schedule:
        match = None
        for payment in payments:
            if payment.id in used:
                continue
            if (payment.payment_date.year == installment.due_date.year and
                    payment.payment_date.month == installment.due_date.month):
                match = payment
                break

        if match:
            used.add(match.id)
            installment.status = InstallmentStatus.PAID
            installment.paid_amount = match.amount
            installment.payment_id = match.id
            installment.paid_date = match.payment_date
        elif installment.due_date < now:
            installment.status = InstallmentStatus.OVERDUE
        else:
            installment.status = InstallmentStatus.PENDING

    return schedule


def generate_loan_number(now: datetime, sequence: int) -> str:
    """
    Human-readable loan number: GL + yymmdd + 6-digit daily sequence

    generate_loan_number(2024-01-17, 3) -> "GL240117000003"
    """
    return f"GL{now:%y%m%d}{sequence % 1000000:06d}"


def generate_receipt_number(now: datetime) -> str:
    """Unique payment receipt number: RCP + timestamp + random suffix"""
    return f"RCP{now:%Y%m%d%H%M%S}{uuid.uuid4().hex[:6].upper()}"
