"""
Error Taxonomy Module

Exceptions raised by the lending services. The HTTP layer translates them
into status codes; everything else propagates them unchanged.
"""

from decimal import Decimal
from typing import Optional


class LendingError(Exception):
    """Base class for all lending errors"""
    pass


class NotFoundError(LendingError):
    """Referenced loan, payment or gold item does not exist"""
    
    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type.replace('_', ' ').capitalize()} {entity_id} not found")


class InvalidStateError(LendingError):
    """Operation is not allowed in the entity's current state"""
    pass


class ValidationError(LendingError, ValueError):
    """Input values are outside accepted bounds"""
    pass


class ReconciliationDriftError(LendingError):
    """Cached loan balances disagree with the payment history"""
    
    def __init__(
        self,
        loan_id: str,
        expected_outstanding: Decimal,
        cached_outstanding: Decimal,
        expected_total_paid: Optional[Decimal] = None,
        cached_total_paid: Optional[Decimal] = None
    ):
        self.loan_id = loan_id
        self.expected_outstanding = expected_outstanding
        self.cached_outstanding = cached_outstanding
        self.expected_total_paid = expected_total_paid
        self.cached_total_paid = cached_total_paid
        super().__init__(
            f"Loan {loan_id} balance drift: outstanding is {cached_outstanding}, "
            f"payment history gives {expected_outstanding}"
        )
