"""
Overdue monitoring endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, Query

from .dependencies import get_lending_system
from .schemas import encode
from ..system import LendingSystem


router = APIRouter()


@router.get("/loans")
async def get_overdue_loans(
    min_days_overdue: Optional[int] = Query(None, ge=0),
    max_days_overdue: Optional[int] = Query(None, ge=0),
    min_amount: Optional[str] = None,
    system: LendingSystem = Depends(get_lending_system)
):
    """Overdue ACTIVE loans, most days overdue first"""
    loans = system.overdue_engine.get_overdue_loans(
        min_days_overdue=min_days_overdue,
        max_days_overdue=max_days_overdue,
        min_amount=min_amount
    )
    return {"loans": [loan.to_dict() for loan in loans], "total": len(loans)}


@router.get("/statistics")
async def get_overdue_statistics(system: LendingSystem = Depends(get_lending_system)):
    return encode(system.overdue_engine.get_overdue_statistics())


@router.post("/update-all")
async def update_all_overdue_loans(system: LendingSystem = Depends(get_lending_system)):
    """Run the overdue sweep now, including default escalation"""
    result = system.scheduler.run_now()
    return {"result": result.to_dict(), "message": "Overdue sweep completed"}


@router.post("/update/{loan_id}")
async def update_loan_overdue_status(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    loan = system.overdue_engine.update_loan_overdue_status(loan_id)
    return {"loan": loan.to_dict()}


@router.post("/check-default/{loan_id}")
async def check_and_mark_defaulted(
    loan_id: str,
    threshold_days: Optional[int] = Query(None, ge=1),
    system: LendingSystem = Depends(get_lending_system)
):
    """Escalate the loan to DEFAULTED if it is past the threshold"""
    defaulted = system.overdue_engine.check_and_mark_defaulted(loan_id, threshold_days)
    loan = system.loan_manager.require_loan(loan_id)
    return {"defaulted": defaulted, "loan": loan.to_dict()}
