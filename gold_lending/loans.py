"""
Loan Module

Handles gold loan origination, approval, rejection, disbursement and loan
queries. Balance and overdue fields are only changed through the payment
ledger and the overdue engine, which use update_loan() for atomic partial
updates of the persisted record.
"""

from decimal import Decimal
from datetime import datetime
from dataclasses import dataclass, fields
from typing import Any, Dict, List, Optional
from enum import Enum
import logging
import uuid

from .config import LendingConfig, get_config
from .currency import ZERO, round_money, to_decimal
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .errors import InvalidStateError, NotFoundError, ValidationError
from .gold_items import GOLD_ITEMS_TABLE, build_gold_item, gold_item_to_dict, summarize_collateral
from .logging_config import log_action
from .terms import (
    Clock, utc_now, calculate_emi, calculate_ltv, calculate_maturity_date,
    generate_loan_number
)


logger = logging.getLogger(__name__)

LOANS_TABLE = "loans"


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "PENDING"        # Application recorded
    APPROVED = "APPROVED"      # Approved, awaiting disbursement
    ACTIVE = "ACTIVE"          # Disbursed and in repayment
    COMPLETED = "COMPLETED"    # Outstanding balance reached zero
    DEFAULTED = "DEFAULTED"    # Escalated after sustained non-payment
    REJECTED = "REJECTED"      # Refused before disbursement


class PenaltyType(Enum):
    """How overdue penalties accrue"""
    PERCENTAGE = "PERCENTAGE"  # % per annum on the overdue installment, charged daily
    FIXED = "FIXED"            # flat amount per day overdue


# Lifecycle transitions performed by LoanManager. COMPLETED is set by the
# payment ledger and DEFAULTED by the overdue engine.
ALLOWED_TRANSITIONS = {
    LoanStatus.PENDING: {LoanStatus.APPROVED, LoanStatus.REJECTED, LoanStatus.ACTIVE},
    LoanStatus.APPROVED: {LoanStatus.REJECTED, LoanStatus.ACTIVE},
    LoanStatus.ACTIVE: {LoanStatus.COMPLETED, LoanStatus.DEFAULTED},
    LoanStatus.COMPLETED: set(),
    LoanStatus.DEFAULTED: set(),
    LoanStatus.REJECTED: set(),
}


@dataclass
class Loan(StorageRecord):
    """Gold loan with terms, collateral aggregate, balances and overdue snapshot"""
    loan_number: str
    customer_id: str

    # Terms
    principal_amount: Decimal
    interest_rate: Decimal              # annual, in percent
    tenure_months: int
    emi_amount: Decimal

    # Collateral aggregate, fixed at the time it was computed
    total_gold_weight: Decimal
    total_gold_value: Decimal
    ltv_ratio: Decimal

    # Balances
    outstanding_balance: Decimal
    total_amount_paid: Decimal

    status: LoanStatus = LoanStatus.PENDING

    # Lifecycle dates
    application_date: Optional[datetime] = None
    approval_date: Optional[datetime] = None
    disbursement_date: Optional[datetime] = None
    maturity_date: Optional[datetime] = None
    last_payment_date: Optional[datetime] = None

    # Overdue snapshot, maintained by the overdue engine
    is_overdue: bool = False
    days_overdue: int = 0
    overdue_amount: Decimal = ZERO
    penalty_amount: Decimal = ZERO
    next_due_date: Optional[datetime] = None
    overdue_since: Optional[datetime] = None

    # Penalty configuration
    penalty_rate: Decimal = Decimal('24')
    penalty_type: PenaltyType = PenaltyType.PERCENTAGE

    purpose: Optional[str] = None
    remarks: Optional[str] = None
    created_by: Optional[str] = None
    approved_by: Optional[str] = None

    @property
    def is_active(self) -> bool:
        """Check if loan is in repayment"""
        return self.status == LoanStatus.ACTIVE

    @property
    def is_closed(self) -> bool:
        return self.status in (LoanStatus.COMPLETED, LoanStatus.DEFAULTED, LoanStatus.REJECTED)


_DECIMAL_FIELDS = {
    'principal_amount', 'interest_rate', 'emi_amount', 'total_gold_weight',
    'total_gold_value', 'ltv_ratio', 'outstanding_balance', 'total_amount_paid',
    'overdue_amount', 'penalty_amount', 'penalty_rate'
}

_DATETIME_FIELDS = {
    'created_at', 'updated_at', 'application_date', 'approval_date',
    'disbursement_date', 'maturity_date', 'last_payment_date', 'next_due_date',
    'overdue_since'
}

LOAN_FIELDS = {f.name for f in fields(Loan)}


def loan_to_dict(loan: Loan) -> Dict[str, Any]:
    """Convert loan to a storage dictionary"""
    return loan.to_dict()


def loan_from_dict(data: Dict[str, Any]) -> Loan:
    """Convert a storage dictionary back into a Loan"""
    values = {}
    for name in LOAN_FIELDS:
        if name not in data:
            continue
        value = data[name]
        if value is None:
            values[name] = None
        elif name in _DECIMAL_FIELDS:
            values[name] = Decimal(value)
        elif name in _DATETIME_FIELDS:
            values[name] = datetime.fromisoformat(value)
        elif name == 'status':
            values[name] = LoanStatus(value)
        elif name == 'penalty_type':
            values[name] = PenaltyType(value)
        else:
            values[name] = value
    return Loan(**values)


class LoanManager:
    """
    Manages gold loans from application through disbursement
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        config: Optional[LendingConfig] = None,
        clock: Optional[Clock] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.config = config or get_config()
        self.clock = clock or utc_now
        self.loans_table = LOANS_TABLE

    def create_loan(
        self,
        customer_id: str,
        principal_amount: Any,
        interest_rate: Any,
        tenure_months: int,
        gold_items: Optional[List[Dict[str, Any]]] = None,
        penalty_rate: Optional[Any] = None,
        penalty_type: Optional[Any] = None,
        purpose: Optional[str] = None,
        created_by: Optional[str] = None
    ) -> Loan:
        """
        Record a new loan application in PENDING status

        Args:
            customer_id: Borrower
            principal_amount: Amount requested
            interest_rate: Annual interest rate in percent
            tenure_months: Repayment period in months
            gold_items: Collateral, each a dict with item_type, weight_grams,
                purity, rate_per_gram and optional description
            penalty_rate: Overrides the configured default penalty rate
            penalty_type: PERCENTAGE or FIXED, defaults to configuration
            purpose: Stated purpose of the loan
            created_by: Staff user recording the application

        Returns:
            Created Loan

        Raises:
            ValidationError: If terms are outside the configured bounds
        """
        if not customer_id:
            raise ValidationError("Customer is required")

        principal, rate = self._validate_terms(principal_amount, interest_rate, tenure_months)
        penalty_rate, penalty_type = self._resolve_penalty(penalty_rate, penalty_type)

        now = self.clock()
        loan_id = str(uuid.uuid4())

        items = [
            build_gold_item(
                loan_id,
                item.get('item_type'),
                item.get('weight_grams'),
                item.get('purity'),
                item.get('rate_per_gram'),
                now=now,
                description=item.get('description')
            )
            for item in (gold_items or [])
        ]
        total_weight, total_value = summarize_collateral(items)

        with self.storage.atomic():
            loan = Loan(
                id=loan_id,
                created_at=now,
                updated_at=now,
                loan_number=self._next_loan_number(now),
                customer_id=customer_id,
                principal_amount=principal,
                interest_rate=rate,
                tenure_months=tenure_months,
                emi_amount=calculate_emi(principal, rate, tenure_months),
                total_gold_weight=total_weight,
                total_gold_value=total_value,
                ltv_ratio=calculate_ltv(principal, total_value),
                outstanding_balance=principal,
                total_amount_paid=ZERO,
                status=LoanStatus.PENDING,
                application_date=now,
                # Provisional; restamped from the actual disbursement date
                maturity_date=calculate_maturity_date(now, tenure_months),
                penalty_rate=penalty_rate,
                penalty_type=penalty_type,
                purpose=purpose,
                created_by=created_by
            )
            self._save_loan(loan)

            for item in items:
                self.storage.save(GOLD_ITEMS_TABLE, item.id, gold_item_to_dict(item))

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_CREATED,
            entity_type="loan",
            entity_id=loan.id,
            metadata={
                "loan_number": loan.loan_number,
                "customer_id": customer_id,
                "principal_amount": principal,
                "interest_rate": rate,
                "tenure_months": tenure_months,
                "emi_amount": loan.emi_amount,
                "ltv_ratio": loan.ltv_ratio,
                "gold_items": len(items)
            },
            user_id=created_by
        )
        log_action(
            logger, "info", f"Loan {loan.loan_number} created",
            action="create_loan", resource="loan", loan_id=loan.id, user_id=created_by,
            extra={"principal_amount": str(principal), "emi_amount": str(loan.emi_amount)}
        )

        return loan

    def approve_loan(
        self,
        loan_id: str,
        approved_by: Optional[str] = None,
        remarks: Optional[str] = None
    ) -> Loan:
        """Approve a PENDING loan"""
        with self.storage.atomic():
            loan = self.require_loan(loan_id)
            if loan.status != LoanStatus.PENDING:
                raise InvalidStateError(
                    f"Only PENDING loans can be approved (loan {loan.loan_number} is {loan.status.value})"
                )
            loan = self.update_loan(
                loan_id,
                status=LoanStatus.APPROVED,
                approval_date=self.clock(),
                approved_by=approved_by,
                remarks=remarks or loan.remarks
            )

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_APPROVED,
            entity_type="loan",
            entity_id=loan_id,
            metadata={"loan_number": loan.loan_number},
            user_id=approved_by
        )
        log_action(logger, "info", f"Loan {loan.loan_number} approved",
                   action="approve_loan", resource="loan", loan_id=loan_id, user_id=approved_by)
        return loan

    def reject_loan(self, loan_id: str, remarks: str, rejected_by: Optional[str] = None) -> Loan:
        """
        Reject a loan that has not been disbursed

        Raises:
            ValidationError: If no remarks are given
            InvalidStateError: If the loan is not PENDING or APPROVED
        """
        if not remarks or not remarks.strip():
            raise ValidationError("Rejection remarks are required")

        with self.storage.atomic():
            loan = self.require_loan(loan_id)
            self._check_transition(loan, LoanStatus.REJECTED)
            loan = self.update_loan(loan_id, status=LoanStatus.REJECTED, remarks=remarks)

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_REJECTED,
            entity_type="loan",
            entity_id=loan_id,
            metadata={"loan_number": loan.loan_number, "remarks": remarks},
            user_id=rejected_by
        )
        log_action(logger, "info", f"Loan {loan.loan_number} rejected",
                   action="reject_loan", resource="loan", loan_id=loan_id, user_id=rejected_by)
        return loan

    def disburse_loan(self, loan_id: str, disbursed_by: Optional[str] = None) -> Loan:
        """
        Move a PENDING or APPROVED loan to ACTIVE

        Stamps the disbursement date and projects maturity from it. The
        DISBURSEMENT payment is recorded by PaymentLedger.disburse_loan,
        which calls this inside its own transaction.
        """
        now = self.clock()

        with self.storage.atomic():
            loan = self.require_loan(loan_id)
            self._check_transition(loan, LoanStatus.ACTIVE)
            changes = {
                'status': LoanStatus.ACTIVE,
                'disbursement_date': now,
                'maturity_date': calculate_maturity_date(now, loan.tenure_months),
            }
            if loan.approval_date is None:
                changes['approval_date'] = now
                changes['approved_by'] = disbursed_by
            loan = self.update_loan(loan_id, **changes)

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_DISBURSED,
            entity_type="loan",
            entity_id=loan_id,
            metadata={
                "loan_number": loan.loan_number,
                "principal_amount": loan.principal_amount,
                "disbursement_date": now,
                "maturity_date": loan.maturity_date
            },
            user_id=disbursed_by
        )
        return loan

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        """Get loan by ID"""
        data = self.storage.load(self.loans_table, loan_id)
        return loan_from_dict(data) if data else None

    def require_loan(self, loan_id: str) -> Loan:
        """Get loan by ID or raise NotFoundError"""
        loan = self.get_loan(loan_id)
        if not loan:
            raise NotFoundError("loan", loan_id)
        return loan

    def get_loan_by_number(self, loan_number: str) -> Optional[Loan]:
        matches = self.storage.find(self.loans_table, {'loan_number': loan_number})
        return loan_from_dict(matches[0]) if matches else None

    def find_loans(
        self,
        status: Optional[LoanStatus] = None,
        customer_id: Optional[str] = None
    ) -> List[Loan]:
        """Find loans by status and/or customer, newest first"""
        filters = {}
        if status:
            filters['status'] = status.value
        if customer_id:
            filters['customer_id'] = customer_id
        loans = [loan_from_dict(d) for d in self.storage.find(self.loans_table, filters)]
        loans.sort(key=lambda l: l.created_at, reverse=True)
        return loans

    def find_active_loans(self) -> List[Loan]:
        return self.find_loans(status=LoanStatus.ACTIVE)

    def find_loans_where(
        self,
        status: Optional[LoanStatus] = None,
        is_overdue: Optional[bool] = None,
        min_days_overdue: Optional[int] = None,
        max_days_overdue: Optional[int] = None,
        min_overdue_amount: Optional[Any] = None
    ) -> List[Loan]:
        """
        Find loans by status and overdue snapshot ranges

        Day bounds are inclusive; min_overdue_amount compares against the
        cached overdue amount.
        """
        loans = self.find_loans(status=status)
        if is_overdue is not None:
            loans = [l for l in loans if l.is_overdue == is_overdue]
        if min_days_overdue is not None:
            loans = [l for l in loans if l.days_overdue >= min_days_overdue]
        if max_days_overdue is not None:
            loans = [l for l in loans if l.days_overdue <= max_days_overdue]
        if min_overdue_amount is not None:
            try:
                threshold = to_decimal(min_overdue_amount)
            except ValueError:
                raise ValidationError(f"Invalid minimum overdue amount: {min_overdue_amount}")
            loans = [l for l in loans if l.overdue_amount >= threshold]
        return loans

    def update_loan(self, loan_id: str, **changes) -> Loan:
        """
        Apply a partial update to the persisted loan atomically

        The record is re-read inside the transaction so that fields not named
        in changes keep their latest persisted values.

        Raises:
            NotFoundError: If the loan does not exist
            ValueError: If a change names an unknown field
        """
        unknown = set(changes) - LOAN_FIELDS
        if unknown:
            raise ValueError(f"Unknown loan fields: {sorted(unknown)}")

        with self.storage.atomic():
            loan = self.require_loan(loan_id)
            for name, value in changes.items():
                setattr(loan, name, value)
            loan.updated_at = self.clock()
            self._save_loan(loan)

        return loan

    def _validate_terms(self, principal_amount: Any, interest_rate: Any, tenure_months: int):
        try:
            principal = round_money(principal_amount)
            rate = to_decimal(interest_rate)
        except ValueError as e:
            raise ValidationError(str(e))

        cfg = self.config
        if principal < to_decimal(cfg.min_principal_amount):
            raise ValidationError(f"Principal amount must be at least {cfg.min_principal_amount}")
        if principal > to_decimal(cfg.max_principal_amount):
            raise ValidationError(f"Principal amount cannot exceed {cfg.max_principal_amount}")
        if rate < to_decimal(cfg.min_interest_rate) or rate > to_decimal(cfg.max_interest_rate):
            raise ValidationError(
                f"Interest rate must be between {cfg.min_interest_rate} and {cfg.max_interest_rate}"
            )
        if not isinstance(tenure_months, int) or isinstance(tenure_months, bool):
            raise ValidationError("Tenure must be a whole number of months")
        if tenure_months < cfg.min_tenure_months or tenure_months > cfg.max_tenure_months:
            raise ValidationError(
                f"Tenure must be between {cfg.min_tenure_months} and {cfg.max_tenure_months} months"
            )
        return principal, rate

    def _resolve_penalty(self, penalty_rate: Optional[Any], penalty_type: Optional[Any]):
        try:
            rate = to_decimal(penalty_rate if penalty_rate is not None else self.config.default_penalty_rate)
            kind = penalty_type or self.config.default_penalty_type
            kind = kind if isinstance(kind, PenaltyType) else PenaltyType(kind)
        except ValueError as e:
            raise ValidationError(str(e))
        if rate < 0:
            raise ValidationError("Penalty rate cannot be negative")
        return rate, kind

    def _check_transition(self, loan: Loan, target: LoanStatus) -> None:
        if target not in ALLOWED_TRANSITIONS[loan.status]:
            raise InvalidStateError(
                f"Loan {loan.loan_number} cannot move from {loan.status.value} to {target.value}"
            )

    def _next_loan_number(self, now: datetime) -> str:
        """Daily sequence: one more than the loans already numbered today"""
        prefix = generate_loan_number(now, 0)[:-6]
        taken = {
            d.get('loan_number') for d in self.storage.load_all(self.loans_table)
            if d.get('loan_number', '').startswith(prefix)
        }
        sequence = len(taken) + 1
        number = generate_loan_number(now, sequence)
        while number in taken:
            sequence += 1
            number = generate_loan_number(now, sequence)
        return number

    def _save_loan(self, loan: Loan) -> None:
        self.storage.save(self.loans_table, loan.id, loan_to_dict(loan))
