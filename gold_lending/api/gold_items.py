"""
Gold collateral endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, status

from .dependencies import get_lending_system
from .schemas import AddGoldItemRequest, parse_enum
from ..gold_items import GoldItemStatus
from ..system import LendingSystem


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def add_gold_item(
    request: AddGoldItemRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Pledge an item against a PENDING loan"""
    item = system.gold_item_manager.add_gold_item(
        loan_id=request.loan_id,
        item_type=request.item_type,
        weight_grams=request.weight_grams,
        purity=request.purity,
        rate_per_gram=request.rate_per_gram,
        description=request.description,
        user_id=request.user_id
    )
    loan = system.loan_manager.require_loan(request.loan_id)
    return {"gold_item": item.to_dict(), "loan": loan.to_dict()}


@router.get("/loan/{loan_id}")
async def get_loan_gold_items(
    loan_id: str,
    status: Optional[str] = None,
    system: LendingSystem = Depends(get_lending_system)
):
    system.loan_manager.require_loan(loan_id)
    items = system.gold_item_manager.get_loan_gold_items(
        loan_id, status=parse_enum(GoldItemStatus, status)
    )
    return {"gold_items": [item.to_dict() for item in items], "total": len(items)}


@router.get("/loan/{loan_id}/summary")
async def get_collateral_summary(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    system.loan_manager.require_loan(loan_id)
    return system.gold_item_manager.collateral_summary(loan_id)


@router.put("/loan/{loan_id}/release-all")
async def release_all_gold_items(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Release every pledged item of a COMPLETED loan"""
    items = system.gold_item_manager.release_all_for_loan(loan_id)
    return {
        "gold_items": [item.to_dict() for item in items],
        "message": f"Released {len(items)} gold items"
    }


@router.get("/{item_id}")
async def get_gold_item(
    item_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    item = system.gold_item_manager.require_gold_item(item_id)
    return {"gold_item": item.to_dict()}


@router.delete("/{item_id}")
async def remove_gold_item(
    item_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    system.gold_item_manager.remove_gold_item(item_id)
    return {"message": "Gold item removed successfully"}


@router.put("/{item_id}/release")
async def release_gold_item(
    item_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    item = system.gold_item_manager.release_gold_item(item_id)
    return {"gold_item": item.to_dict(), "message": "Gold item released successfully"}
