"""
Loan endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, status

from .dependencies import get_lending_system
from .schemas import (
    CreateLoanRequest, ApproveLoanRequest, RejectLoanRequest, DisburseLoanRequest,
    encode, parse_enum
)
from ..loans import LoanStatus, PenaltyType
from ..payments import payment_to_dict
from ..system import LendingSystem


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_loan(
    request: CreateLoanRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Record a loan application"""
    loan = system.loan_manager.create_loan(
        customer_id=request.customer_id,
        principal_amount=request.principal_amount,
        interest_rate=request.interest_rate,
        tenure_months=request.tenure_months,
        gold_items=[item.model_dump() for item in request.gold_items],
        penalty_rate=request.penalty_rate,
        penalty_type=parse_enum(PenaltyType, request.penalty_type),
        purpose=request.purpose,
        created_by=request.created_by
    )
    return {"loan": loan.to_dict(), "message": "Loan application created successfully"}


@router.get("")
async def list_loans(
    status: Optional[str] = None,
    customer_id: Optional[str] = None,
    system: LendingSystem = Depends(get_lending_system)
):
    """List loans, newest first"""
    loans = system.loan_manager.find_loans(
        status=parse_enum(LoanStatus, status),
        customer_id=customer_id
    )
    return {"loans": [loan.to_dict() for loan in loans], "total": len(loans)}


@router.get("/{loan_id}")
async def get_loan(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Get loan details with its collateral"""
    loan = system.loan_manager.require_loan(loan_id)
    items = system.gold_item_manager.get_loan_gold_items(loan_id)
    return {"loan": loan.to_dict(), "gold_items": [item.to_dict() for item in items]}


@router.post("/{loan_id}/approve")
async def approve_loan(
    loan_id: str,
    request: ApproveLoanRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    loan = system.loan_manager.approve_loan(
        loan_id, approved_by=request.approved_by, remarks=request.remarks
    )
    return {"loan": loan.to_dict(), "message": "Loan approved successfully"}


@router.post("/{loan_id}/reject")
async def reject_loan(
    loan_id: str,
    request: RejectLoanRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    loan = system.loan_manager.reject_loan(
        loan_id, remarks=request.remarks, rejected_by=request.rejected_by
    )
    return {"loan": loan.to_dict(), "message": "Loan rejected successfully"}


@router.post("/{loan_id}/disburse")
async def disburse_loan(
    loan_id: str,
    request: DisburseLoanRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Disburse the loan and record the disbursement payment"""
    loan, payment = system.payment_ledger.disburse_loan(
        loan_id, payment_method=request.payment_method, created_by=request.disbursed_by
    )
    return {
        "loan": loan.to_dict(),
        "payment": payment_to_dict(payment),
        "message": "Loan disbursed successfully"
    }


@router.get("/{loan_id}/schedule")
async def get_repayment_schedule(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Installment schedule with paid installments marked"""
    schedule = system.payment_ledger.get_repayment_schedule(loan_id)
    schedule["schedule"] = [installment.to_dict() for installment in schedule["schedule"]]
    return encode(schedule)


@router.get("/{loan_id}/reconciliation")
async def check_reconciliation(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Compare cached balances with the payment history"""
    return system.payment_ledger.check_reconciliation(loan_id).to_dict()


@router.post("/{loan_id}/reconcile")
async def reconcile_loan(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Repair cached balances from the payment history"""
    report = system.payment_ledger.reconcile_loan_balance(loan_id)
    loan = system.loan_manager.require_loan(loan_id)
    return {"report": report.to_dict(), "loan": loan.to_dict()}
