"""
Payment Ledger Module

Records payments against loans and keeps the loan's running balance fields
consistent with them.

Balance rules for EMI, PARTIAL and CLOSURE payments, applied in the same
transaction as the payment record and computed from the loan's current
persisted balance:
- outstanding = max(0, outstanding - amount)
- total paid = total paid + amount
- the loan becomes COMPLETED when outstanding reaches 0

After commit the overdue snapshot is refreshed; a failed refresh is logged
and never undoes the payment. Reconciliation recomputes both balance fields
from the full payment history when drift is suspected.
"""

from decimal import Decimal
from datetime import datetime
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
from enum import Enum
import logging
import uuid

from .currency import ZERO, round_money, to_decimal, optional_money
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .errors import (
    InvalidStateError, NotFoundError, ReconciliationDriftError, ValidationError
)
from .loans import Loan, LoanManager, LoanStatus
from .overdue import OverdueEngine
from .logging_config import log_action
from .terms import (
    Clock, utc_now, generate_receipt_number, generate_repayment_schedule,
    schedule_with_payments
)


logger = logging.getLogger(__name__)

PAYMENTS_TABLE = "payments"


class PaymentType(Enum):
    """Kinds of loan payments"""
    DISBURSEMENT = "DISBURSEMENT"
    EMI = "EMI"
    PARTIAL = "PARTIAL"
    INTEREST = "INTEREST"
    PENALTY = "PENALTY"
    CLOSURE = "CLOSURE"


class PaymentStatus(Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


# Payment types that repay principal and move the loan's balance fields
AMORTIZING_TYPES = frozenset({PaymentType.EMI, PaymentType.PARTIAL, PaymentType.CLOSURE})

# Loan statuses that accept repayments; a DEFAULTED loan can still be recovered
PAYABLE_STATUSES = frozenset({LoanStatus.ACTIVE, LoanStatus.DEFAULTED})


@dataclass
class Payment(StorageRecord):
    """A payment against a loan; immutable once COMPLETED"""
    loan_id: str
    amount: Decimal
    payment_type: PaymentType
    payment_method: str
    payment_date: datetime
    receipt_number: str
    status: PaymentStatus = PaymentStatus.COMPLETED
    principal_amount: Optional[Decimal] = None
    interest_amount: Optional[Decimal] = None
    penalty_amount: Optional[Decimal] = None
    due_date: Optional[datetime] = None
    transaction_id: Optional[str] = None
    notes: Optional[str] = None
    created_by: Optional[str] = None

    @property
    def is_amortizing(self) -> bool:
        return self.payment_type in AMORTIZING_TYPES


@dataclass
class ReconciliationReport:
    """Cached loan balances compared with the payment history"""
    loan_id: str
    loan_number: str
    cached_outstanding: Decimal
    expected_outstanding: Decimal
    cached_total_paid: Decimal
    expected_total_paid: Decimal
    payment_count: int
    tolerance: Decimal = ZERO

    @property
    def outstanding_drift(self) -> Decimal:
        return self.cached_outstanding - self.expected_outstanding

    @property
    def total_paid_drift(self) -> Decimal:
        return self.cached_total_paid - self.expected_total_paid

    @property
    def has_drift(self) -> bool:
        return (abs(self.outstanding_drift) > self.tolerance or
                abs(self.total_paid_drift) > self.tolerance)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'loan_id': self.loan_id,
            'loan_number': self.loan_number,
            'cached_outstanding': str(self.cached_outstanding),
            'expected_outstanding': str(self.expected_outstanding),
            'cached_total_paid': str(self.cached_total_paid),
            'expected_total_paid': str(self.expected_total_paid),
            'outstanding_drift': str(self.outstanding_drift),
            'total_paid_drift': str(self.total_paid_drift),
            'payment_count': self.payment_count,
            'has_drift': self.has_drift,
        }


def payment_to_dict(payment: Payment) -> Dict[str, Any]:
    result = payment.to_dict()
    if payment.due_date:
        result['due_date'] = payment.due_date.isoformat()
    return result


def payment_from_dict(data: Dict[str, Any]) -> Payment:
    def get_decimal(name: str) -> Optional[Decimal]:
        return Decimal(data[name]) if data.get(name) is not None else None

    def get_datetime(name: str) -> Optional[datetime]:
        return datetime.fromisoformat(data[name]) if data.get(name) else None

    return Payment(
        id=data['id'],
        created_at=datetime.fromisoformat(data['created_at']),
        updated_at=datetime.fromisoformat(data['updated_at']),
        loan_id=data['loan_id'],
        amount=Decimal(data['amount']),
        payment_type=PaymentType(data['payment_type']),
        payment_method=data['payment_method'],
        payment_date=datetime.fromisoformat(data['payment_date']),
        receipt_number=data['receipt_number'],
        status=PaymentStatus(data['status']),
        principal_amount=get_decimal('principal_amount'),
        interest_amount=get_decimal('interest_amount'),
        penalty_amount=get_decimal('penalty_amount'),
        due_date=get_datetime('due_date'),
        transaction_id=data.get('transaction_id'),
        notes=data.get('notes'),
        created_by=data.get('created_by')
    )


class PaymentLedger:
    """
    Records loan payments and applies them to loan balances
    """

    def __init__(
        self,
        storage: StorageInterface,
        loan_manager: LoanManager,
        overdue_engine: OverdueEngine,
        audit_trail: AuditTrail,
        clock: Optional[Clock] = None,
        reconciliation_tolerance: Any = ZERO
    ):
        self.storage = storage
        self.loan_manager = loan_manager
        self.overdue_engine = overdue_engine
        self.audit_trail = audit_trail
        self.clock = clock or utc_now
        self.reconciliation_tolerance = to_decimal(reconciliation_tolerance)
        self.payments_table = PAYMENTS_TABLE

    def record_payment(
        self,
        loan_id: str,
        amount: Any,
        payment_type: PaymentType,
        payment_method: str = "CASH",
        payment_date: Optional[datetime] = None,
        principal_amount: Optional[Any] = None,
        interest_amount: Optional[Any] = None,
        penalty_amount: Optional[Any] = None,
        due_date: Optional[datetime] = None,
        transaction_id: Optional[str] = None,
        notes: Optional[str] = None,
        created_by: Optional[str] = None
    ) -> Payment:
        """
        Record a completed payment against a loan

        Args:
            loan_id: Loan being paid
            amount: Amount received (must be positive)
            payment_type: Kind of payment; DISBURSEMENT goes through disburse_loan
            payment_method: Cash, UPI, bank transfer, ...
            payment_date: When the money was received (defaults to now)
            principal_amount: Optional principal part of the amount
            interest_amount: Optional interest part of the amount
            penalty_amount: Optional penalty part of the amount
            due_date: Installment due date the payment is for
            transaction_id: External reference
            notes: Free text
            created_by: Staff user recording the payment

        Returns:
            The COMPLETED Payment

        Raises:
            NotFoundError: If the loan does not exist
            ValidationError: If the amount is not positive
            InvalidStateError: If the loan cannot take this payment type
        """
        payment_type = payment_type if isinstance(payment_type, PaymentType) else PaymentType(payment_type)
        amount = self._positive_amount(amount)

        if payment_type == PaymentType.DISBURSEMENT:
            raise InvalidStateError("Disbursements are recorded when the loan is disbursed")

        now = self.clock()
        payment_date = payment_date or now

        with self.storage.atomic():
            loan = self.loan_manager.require_loan(loan_id)
            if loan.status not in PAYABLE_STATUSES:
                raise InvalidStateError(
                    f"Cannot record {payment_type.value} payment on loan {loan.loan_number} "
                    f"in status {loan.status.value}"
                )

            payment = Payment(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_id=loan_id,
                amount=amount,
                payment_type=payment_type,
                payment_method=payment_method,
                payment_date=payment_date,
                receipt_number=self._unique_receipt_number(now),
                status=PaymentStatus.COMPLETED,
                principal_amount=optional_money(principal_amount),
                interest_amount=optional_money(interest_amount),
                penalty_amount=optional_money(penalty_amount),
                due_date=due_date,
                transaction_id=transaction_id,
                notes=notes,
                created_by=created_by
            )
            self._save_payment(payment)

            completed = False
            if payment.is_amortizing:
                loan, completed = self._apply_to_balance(loan, payment)

        self.audit_trail.log_event(
            event_type=AuditEventType.PAYMENT_RECORDED,
            entity_type="payment",
            entity_id=payment.id,
            metadata={
                "loan_id": loan_id,
                "receipt_number": payment.receipt_number,
                "amount": amount,
                "payment_type": payment_type,
                "outstanding_balance": loan.outstanding_balance
            },
            user_id=created_by
        )
        if completed:
            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_COMPLETED,
                entity_type="loan",
                entity_id=loan_id,
                metadata={
                    "loan_number": loan.loan_number,
                    "total_amount_paid": loan.total_amount_paid,
                    "final_payment_id": payment.id
                },
                user_id=created_by
            )

        log_action(
            logger, "info", f"Payment {payment.receipt_number} recorded",
            action="record_payment", resource="payment", loan_id=loan_id, user_id=created_by,
            extra={
                "amount": str(amount),
                "payment_type": payment_type.value,
                "outstanding_balance": str(loan.outstanding_balance)
            }
        )

        self._refresh_overdue_status(loan_id)
        return payment

    def disburse_loan(
        self,
        loan_id: str,
        payment_method: str = "BANK_TRANSFER",
        created_by: Optional[str] = None
    ) -> Tuple[Loan, Payment]:
        """
        Disburse a loan and record the DISBURSEMENT payment in one transaction

        The disbursement is bookkeeping only: the outstanding balance already
        equals the principal from origination.

        Raises:
            NotFoundError: If the loan does not exist
            InvalidStateError: If the loan is not PENDING or APPROVED
        """
        with self.storage.atomic():
            loan = self.loan_manager.disburse_loan(loan_id, disbursed_by=created_by)
            now = self.clock()
            payment = Payment(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_id=loan_id,
                amount=loan.principal_amount,
                payment_type=PaymentType.DISBURSEMENT,
                payment_method=payment_method,
                payment_date=loan.disbursement_date,
                receipt_number=self._unique_receipt_number(now),
                status=PaymentStatus.COMPLETED,
                notes="Loan amount disbursed to customer",
                created_by=created_by
            )
            self._save_payment(payment)

        log_action(
            logger, "info", f"Loan {loan.loan_number} disbursed",
            action="disburse_loan", resource="loan", loan_id=loan_id, user_id=created_by,
            extra={"amount": str(loan.principal_amount), "receipt_number": payment.receipt_number}
        )

        self._refresh_overdue_status(loan_id)
        return loan, payment

    def update_payment_status(
        self,
        payment_id: str,
        status: PaymentStatus,
        notes: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> Payment:
        """
        Change the status of a payment that has not been completed

        Raises:
            NotFoundError: If the payment does not exist
            InvalidStateError: If the payment is already COMPLETED
        """
        status = status if isinstance(status, PaymentStatus) else PaymentStatus(status)

        with self.storage.atomic():
            payment = self.require_payment(payment_id)
            if payment.status == PaymentStatus.COMPLETED:
                raise InvalidStateError(f"Payment {payment.receipt_number} is completed and cannot change")

            previous = payment.status
            payment.status = status
            if notes:
                payment.notes = notes
            payment.updated_at = self.clock()
            self._save_payment(payment)

        self.audit_trail.log_event(
            event_type=AuditEventType.PAYMENT_STATUS_CHANGED,
            entity_type="payment",
            entity_id=payment_id,
            metadata={"from_status": previous, "to_status": status, "notes": notes},
            user_id=user_id
        )
        return payment

    def get_payment(self, payment_id: str) -> Optional[Payment]:
        data = self.storage.load(self.payments_table, payment_id)
        return payment_from_dict(data) if data else None

    def require_payment(self, payment_id: str) -> Payment:
        payment = self.get_payment(payment_id)
        if not payment:
            raise NotFoundError("payment", payment_id)
        return payment

    def get_loan_payments(
        self,
        loan_id: str,
        types: Optional[List[PaymentType]] = None,
        status: Optional[PaymentStatus] = None
    ) -> List[Payment]:
        """Payments of a loan in payment-date order"""
        filters = {'loan_id': loan_id}
        if status:
            filters['status'] = status.value
        payments = [payment_from_dict(d) for d in self.storage.find(self.payments_table, filters)]
        if types:
            payments = [p for p in payments if p.payment_type in types]
        payments.sort(key=lambda p: (p.payment_date, p.created_at))
        return payments

    def list_payments(
        self,
        loan_id: Optional[str] = None,
        payment_type: Optional[PaymentType] = None,
        status: Optional[PaymentStatus] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None
    ) -> List[Payment]:
        """All payments matching the filters, newest first"""
        filters = {}
        if loan_id:
            filters['loan_id'] = loan_id
        if payment_type:
            filters['payment_type'] = payment_type.value
        if status:
            filters['status'] = status.value
        payments = [payment_from_dict(d) for d in self.storage.find(self.payments_table, filters)]
        if start_date:
            payments = [p for p in payments if p.payment_date >= start_date]
        if end_date:
            payments = [p for p in payments if p.payment_date <= end_date]
        payments.sort(key=lambda p: p.payment_date, reverse=True)
        return payments

    def get_repayment_schedule(self, loan_id: str) -> Dict[str, Any]:
        """
        Installment schedule of a disbursed loan with paid installments marked

        Raises:
            NotFoundError: If the loan does not exist
            InvalidStateError: If the loan has not been disbursed
        """
        loan = self.loan_manager.require_loan(loan_id)
        if not loan.disbursement_date:
            raise InvalidStateError(f"Loan {loan.loan_number} has not been disbursed")

        repayments = self._completed_repayments(loan_id)
        schedule = generate_repayment_schedule(
            loan.principal_amount, loan.interest_rate, loan.tenure_months,
            loan.disbursement_date, emi_amount=loan.emi_amount
        )
        schedule_with_payments(schedule, repayments, self.clock())

        total_paid = sum((p.amount for p in repayments), ZERO)
        return {
            'loan_id': loan.id,
            'loan_number': loan.loan_number,
            'emi_amount': loan.emi_amount,
            'total_paid': round_money(total_paid),
            'remaining_amount': round_money(max(ZERO, loan.principal_amount - total_paid)),
            'schedule': schedule,
        }

    def check_reconciliation(self, loan_id: str) -> ReconciliationReport:
        """Compare cached balances with the completed repayment history"""
        loan = self.loan_manager.require_loan(loan_id)
        repayments = self._completed_repayments(loan_id)
        expected_total_paid = round_money(sum((p.amount for p in repayments), ZERO))

        return ReconciliationReport(
            loan_id=loan.id,
            loan_number=loan.loan_number,
            cached_outstanding=loan.outstanding_balance,
            expected_outstanding=round_money(max(ZERO, loan.principal_amount - expected_total_paid)),
            cached_total_paid=loan.total_amount_paid,
            expected_total_paid=expected_total_paid,
            payment_count=len(repayments),
            tolerance=self.reconciliation_tolerance
        )

    def verify_balances(self, loan_id: str) -> ReconciliationReport:
        """
        Check a loan's balances against its history

        Raises:
            ReconciliationDriftError: If the cached balances have drifted
        """
        report = self.check_reconciliation(loan_id)
        if report.has_drift:
            raise ReconciliationDriftError(
                loan_id,
                expected_outstanding=report.expected_outstanding,
                cached_outstanding=report.cached_outstanding,
                expected_total_paid=report.expected_total_paid,
                cached_total_paid=report.cached_total_paid
            )
        return report

    def reconcile_loan_balance(self, loan_id: str, user_id: Optional[str] = None) -> ReconciliationReport:
        """
        Recompute outstanding balance and total paid from the payment history

        total paid = sum of COMPLETED EMI, PARTIAL and CLOSURE payments;
        outstanding = max(0, principal - total paid). Loan status is left
        unchanged.

        Returns:
            The report describing the balances before the repair
        """
        with self.storage.atomic():
            report = self.check_reconciliation(loan_id)
            if report.has_drift:
                self.loan_manager.update_loan(
                    loan_id,
                    outstanding_balance=report.expected_outstanding,
                    total_amount_paid=report.expected_total_paid
                )

        if report.has_drift:
            self.audit_trail.log_event(
                event_type=AuditEventType.BALANCE_RECONCILED,
                entity_type="loan",
                entity_id=loan_id,
                metadata=report.to_dict(),
                user_id=user_id
            )
            log_action(
                logger, "warning", f"Loan {report.loan_number} balances reconciled",
                action="reconcile_loan_balance", resource="loan", loan_id=loan_id, user_id=user_id,
                extra=report.to_dict()
            )

        return report

    def reconcile_all_loans(self, user_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Reconcile every loan

        Returns:
            total_checked, repaired_count, failed_count and the reports of
            the loans that were repaired
        """
        result = {'total_checked': 0, 'repaired_count': 0, 'failed_count': 0, 'repaired': []}

        for loan in self.loan_manager.find_loans():
            result['total_checked'] += 1
            try:
                report = self.reconcile_loan_balance(loan.id, user_id=user_id)
            except Exception:
                logger.error("Reconciliation failed for loan %s", loan.id, exc_info=True)
                result['failed_count'] += 1
                continue
            if report.has_drift:
                result['repaired_count'] += 1
                result['repaired'].append(report)

        return result

    def _apply_to_balance(self, loan: Loan, payment: Payment) -> Tuple[Loan, bool]:
        """Move the loan's balance fields by one repayment; caller holds the transaction"""
        current = self.loan_manager.require_loan(loan.id)
        new_outstanding = max(ZERO, round_money(current.outstanding_balance - payment.amount))

        # The due-date anchor only moves forward; a back-dated receipt keeps the later one
        last_payment_date = payment.payment_date
        if current.last_payment_date and current.last_payment_date > last_payment_date:
            last_payment_date = current.last_payment_date

        changes = {
            'outstanding_balance': new_outstanding,
            'total_amount_paid': round_money(current.total_amount_paid + payment.amount),
            'last_payment_date': last_payment_date,
        }

        completed = new_outstanding == ZERO
        if completed:
            changes.update(
                status=LoanStatus.COMPLETED,
                is_overdue=False,
                days_overdue=0,
                overdue_amount=ZERO,
                penalty_amount=ZERO,
                next_due_date=None
            )

        return self.loan_manager.update_loan(loan.id, **changes), completed

    def _refresh_overdue_status(self, loan_id: str) -> None:
        try:
            self.overdue_engine.update_loan_overdue_status(loan_id)
        except Exception:
            logger.error("Overdue refresh after payment failed for loan %s", loan_id, exc_info=True)

    def _completed_repayments(self, loan_id: str) -> List[Payment]:
        return self.get_loan_payments(
            loan_id, types=list(AMORTIZING_TYPES), status=PaymentStatus.COMPLETED
        )

    def _positive_amount(self, amount: Any) -> Decimal:
        try:
            amount = round_money(amount)
        except ValueError as e:
            raise ValidationError(str(e))
        if amount <= 0:
            raise ValidationError("Payment amount must be greater than 0")
        return amount

    def _unique_receipt_number(self, now: datetime) -> str:
        receipt = generate_receipt_number(now)
        while self.storage.find(self.payments_table, {'receipt_number': receipt}):
            receipt = generate_receipt_number(now)
        return receipt

    def _save_payment(self, payment: Payment) -> None:
        self.storage.save(self.payments_table, payment.id, payment_to_dict(payment))
