"""
Reporting and reconciliation endpoints
"""

from datetime import timedelta
from typing import Optional
from fastapi import APIRouter, Depends, Query

from .dependencies import get_lending_system
from .schemas import encode, parse_datetime
from ..errors import ValidationError
from ..system import LendingSystem


router = APIRouter()

DEFAULT_PERIOD_DAYS = 30


def _period(system: LendingSystem, start_date: Optional[str], end_date: Optional[str]):
    end = parse_datetime(end_date) or system.clock()
    start = parse_datetime(start_date) or end - timedelta(days=DEFAULT_PERIOD_DAYS)
    if start > end:
        raise ValidationError("start_date must not be after end_date")
    return start, end


@router.get("/portfolio")
async def portfolio_summary(system: LendingSystem = Depends(get_lending_system)):
    return encode(system.reporting_engine.portfolio_summary().to_dict())


@router.get("/overdue")
async def overdue_report(system: LendingSystem = Depends(get_lending_system)):
    return encode(system.reporting_engine.overdue_report().to_dict())


@router.get("/collection")
async def collection_report(
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    system: LendingSystem = Depends(get_lending_system)
):
    """Collections by payment type; defaults to the last 30 days"""
    start, end = _period(system, start_date, end_date)
    return encode(system.reporting_engine.collection_report(start, end).to_dict())


@router.get("/loan-performance")
async def loan_performance_report(
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    system: LendingSystem = Depends(get_lending_system)
):
    start, end = _period(system, start_date, end_date)
    return encode(system.reporting_engine.loan_performance_report(start, end).to_dict())


@router.get("/monthly-trends")
async def monthly_trends(
    months: int = Query(12, ge=1, le=24),
    system: LendingSystem = Depends(get_lending_system)
):
    return encode(system.reporting_engine.monthly_trends(months).to_dict())


@router.post("/reconciliation/run-all")
async def reconcile_all_loans(system: LendingSystem = Depends(get_lending_system)):
    """Repair drifted balances across the loan book"""
    result = system.payment_ledger.reconcile_all_loans()
    result["repaired"] = [report.to_dict() for report in result["repaired"]]
    return encode(result)
