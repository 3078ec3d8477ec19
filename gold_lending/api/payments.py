"""
Payment endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, status

from .dependencies import get_lending_system
from .schemas import RecordPaymentRequest, UpdatePaymentStatusRequest, parse_enum, parse_datetime
from ..payments import PaymentType, PaymentStatus, payment_to_dict
from ..system import LendingSystem


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def record_payment(
    request: RecordPaymentRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Record a repayment against an ACTIVE or DEFAULTED loan"""
    payment = system.payment_ledger.record_payment(
        loan_id=request.loan_id,
        amount=request.amount,
        payment_type=parse_enum(PaymentType, request.payment_type),
        payment_method=request.payment_method,
        payment_date=parse_datetime(request.payment_date),
        principal_amount=request.principal_amount,
        interest_amount=request.interest_amount,
        penalty_amount=request.penalty_amount,
        due_date=parse_datetime(request.due_date),
        transaction_id=request.transaction_id,
        notes=request.notes,
        created_by=request.created_by
    )
    loan = system.loan_manager.require_loan(request.loan_id)
    return {
        "payment": payment_to_dict(payment),
        "loan": loan.to_dict(),
        "message": "Payment recorded successfully"
    }


@router.get("")
async def list_payments(
    loan_id: Optional[str] = None,
    payment_type: Optional[str] = None,
    status: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    system: LendingSystem = Depends(get_lending_system)
):
    payments = system.payment_ledger.list_payments(
        loan_id=loan_id,
        payment_type=parse_enum(PaymentType, payment_type),
        status=parse_enum(PaymentStatus, status),
        start_date=parse_datetime(start_date),
        end_date=parse_datetime(end_date)
    )
    return {"payments": [payment_to_dict(p) for p in payments], "total": len(payments)}


@router.get("/loan/{loan_id}")
async def get_loan_payments(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Payment history of one loan, oldest first"""
    system.loan_manager.require_loan(loan_id)
    payments = system.payment_ledger.get_loan_payments(loan_id)
    return {"payments": [payment_to_dict(p) for p in payments], "total": len(payments)}


@router.get("/{payment_id}")
async def get_payment(
    payment_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    payment = system.payment_ledger.require_payment(payment_id)
    return {"payment": payment_to_dict(payment)}


@router.put("/{payment_id}/status")
async def update_payment_status(
    payment_id: str,
    request: UpdatePaymentStatusRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    payment = system.payment_ledger.update_payment_status(
        payment_id,
        parse_enum(PaymentStatus, request.status),
        notes=request.notes
    )
    return {"payment": payment_to_dict(payment), "message": "Payment status updated"}
