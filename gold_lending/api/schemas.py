"""
Pydantic schemas for API requests and response encoding
"""

from decimal import Decimal
from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Optional, Type
from pydantic import BaseModel, Field
from fastapi.encoders import jsonable_encoder

from ..errors import ValidationError


def parse_enum(enum_cls: Type[Enum], value: Optional[str]):
    """Enum member from its value, or ValidationError"""
    if value is None:
        return None
    try:
        return enum_cls(value.upper())
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(f"Invalid {enum_cls.__name__} '{value}'; expected one of: {allowed}")


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    """ISO date or datetime string; naive values are taken as UTC"""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        raise ValidationError(f"Invalid ISO date: {value}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def encode(value: Any) -> Any:
    """JSON-ready value with Decimals kept exact as strings"""
    return jsonable_encoder(value, custom_encoder={Decimal: str})


# Loan schemas
class GoldItemModel(BaseModel):
    item_type: str = Field(..., description="Chain, ring, bangle, coin, ...")
    weight_grams: str  # Decimal as string
    purity: str = Field(..., description="24K, 22K, 20K, 18K or 14K")
    rate_per_gram: str  # Decimal as string
    description: Optional[str] = None


class CreateLoanRequest(BaseModel):
    customer_id: str
    principal_amount: str  # Decimal as string
    interest_rate: str = Field(..., description="Annual interest rate in percent")
    tenure_months: int
    gold_items: List[GoldItemModel] = Field(default_factory=list)
    penalty_rate: Optional[str] = None
    penalty_type: Optional[str] = Field(None, description="PERCENTAGE or FIXED")
    purpose: Optional[str] = None
    created_by: Optional[str] = None


class ApproveLoanRequest(BaseModel):
    approved_by: Optional[str] = None
    remarks: Optional[str] = None


class RejectLoanRequest(BaseModel):
    remarks: str = Field(..., min_length=1, description="Rejection reason")
    rejected_by: Optional[str] = None


class DisburseLoanRequest(BaseModel):
    payment_method: str = "BANK_TRANSFER"
    disbursed_by: Optional[str] = None


# Gold item schemas
class AddGoldItemRequest(GoldItemModel):
    loan_id: str
    user_id: Optional[str] = None


# Payment schemas
class RecordPaymentRequest(BaseModel):
    loan_id: str
    amount: str  # Decimal as string
    payment_type: str = Field(..., description="EMI, PARTIAL, INTEREST, PENALTY or CLOSURE")
    payment_method: str = "CASH"
    payment_date: Optional[str] = None  # ISO datetime string
    principal_amount: Optional[str] = None
    interest_amount: Optional[str] = None
    penalty_amount: Optional[str] = None
    due_date: Optional[str] = None
    transaction_id: Optional[str] = None
    notes: Optional[str] = None
    created_by: Optional[str] = None


class UpdatePaymentStatusRequest(BaseModel):
    status: str = Field(..., description="PENDING, COMPLETED, FAILED or CANCELLED")
    notes: Optional[str] = None
