"""
Gold Collateral Module

Gold items pledged against a loan. Each item is valued at pledge time as
weight x rate per gram; the loan keeps the aggregate weight, value and LTV.

Collateral rules:
- items can be added or removed only while the owning loan is PENDING
- items can be released only once the owning loan is COMPLETED
"""

from decimal import Decimal
from datetime import datetime
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple
from enum import Enum
import logging
import uuid

from .currency import ZERO, round_money, to_decimal
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .errors import InvalidStateError, NotFoundError, ValidationError
from .terms import Clock, utc_now, value_gold_item, calculate_ltv


logger = logging.getLogger(__name__)

GOLD_ITEMS_TABLE = "gold_items"


class GoldPurity(Enum):
    """Purity grades accepted as collateral"""
    K24 = "24K"
    K22 = "22K"
    K20 = "20K"
    K18 = "18K"
    K14 = "14K"


class GoldItemStatus(Enum):
    """Custody status of a pledged item"""
    PLEDGED = "PLEDGED"
    RELEASED = "RELEASED"


@dataclass
class GoldItem(StorageRecord):
    """A single pledged gold article"""
    loan_id: str
    item_type: str                      # chain, ring, bangle, coin, ...
    weight_grams: Decimal
    purity: GoldPurity
    rate_per_gram: Decimal              # rate at pledge time
    total_value: Decimal
    status: GoldItemStatus = GoldItemStatus.PLEDGED
    description: Optional[str] = None
    released_at: Optional[datetime] = None

    @property
    def is_pledged(self) -> bool:
        return self.status == GoldItemStatus.PLEDGED


def build_gold_item(
    loan_id: str,
    item_type: str,
    weight_grams: Any,
    purity: Any,
    rate_per_gram: Any,
    now: datetime,
    description: Optional[str] = None
) -> GoldItem:
    """
    Validate item details and value the item

    Raises:
        ValidationError: If weight or rate is not positive, or purity unknown
    """
    if not item_type:
        raise ValidationError("Item type is required")

    try:
        weight = to_decimal(weight_grams)
        rate = to_decimal(rate_per_gram)
    except ValueError as e:
        raise ValidationError(str(e))

    if weight <= 0:
        raise ValidationError("Gold weight must be positive")
    if rate <= 0:
        raise ValidationError("Gold rate per gram must be positive")

    try:
        purity = purity if isinstance(purity, GoldPurity) else GoldPurity(purity)
    except ValueError:
        raise ValidationError(f"Unknown gold purity: {purity}")

    return GoldItem(
        id=str(uuid.uuid4()),
        created_at=now,
        updated_at=now,
        loan_id=loan_id,
        item_type=item_type,
        weight_grams=weight,
        purity=purity,
        rate_per_gram=rate,
        total_value=value_gold_item(weight, rate),
        description=description
    )


def summarize_collateral(items: Iterable[GoldItem]) -> Tuple[Decimal, Decimal]:
    """Total weight and total value of the given items"""
    total_weight = Decimal('0')
    total_value = ZERO
    for item in items:
        total_weight += item.weight_grams
        total_value += item.total_value
    return total_weight, round_money(total_value)


def gold_item_to_dict(item: GoldItem) -> Dict[str, Any]:
    return item.to_dict()


def gold_item_from_dict(data: Dict[str, Any]) -> GoldItem:
    return GoldItem(
        id=data['id'],
        created_at=datetime.fromisoformat(data['created_at']),
        updated_at=datetime.fromisoformat(data['updated_at']),
        loan_id=data['loan_id'],
        item_type=data['item_type'],
        weight_grams=Decimal(data['weight_grams']),
        purity=GoldPurity(data['purity']),
        rate_per_gram=Decimal(data['rate_per_gram']),
        total_value=Decimal(data['total_value']),
        status=GoldItemStatus(data['status']),
        description=data.get('description'),
        released_at=datetime.fromisoformat(data['released_at']) if data.get('released_at') else None
    )


class GoldItemManager:
    """
    Manages collateral items of loans
    """

    def __init__(
        self,
        storage: StorageInterface,
        loan_manager,
        audit_trail: AuditTrail,
        clock: Optional[Clock] = None
    ):
        self.storage = storage
        self.loan_manager = loan_manager
        self.audit_trail = audit_trail
        self.clock = clock or utc_now
        self.table = GOLD_ITEMS_TABLE

    def get_gold_item(self, item_id: str) -> Optional[GoldItem]:
        data = self.storage.load(self.table, item_id)
        return gold_item_from_dict(data) if data else None

    def require_gold_item(self, item_id: str) -> GoldItem:
        item = self.get_gold_item(item_id)
        if not item:
            raise NotFoundError("gold_item", item_id)
        return item

    def get_loan_gold_items(
        self,
        loan_id: str,
        status: Optional[GoldItemStatus] = None
    ) -> List[GoldItem]:
        """Get the items pledged against a loan, optionally by status"""
        filters = {'loan_id': loan_id}
        if status:
            filters['status'] = status.value
        items = [gold_item_from_dict(d) for d in self.storage.find(self.table, filters)]
        items.sort(key=lambda i: i.created_at)
        return items

    def add_gold_item(
        self,
        loan_id: str,
        item_type: str,
        weight_grams: Any,
        purity: Any,
        rate_per_gram: Any,
        description: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> GoldItem:
        """
        Pledge an additional item against a PENDING loan

        The loan's collateral totals and LTV are recomputed in the same
        transaction.

        Raises:
            NotFoundError: If the loan does not exist
            InvalidStateError: If the loan has left PENDING
        """
        from .loans import LoanStatus

        with self.storage.atomic():
            loan = self.loan_manager.require_loan(loan_id)
            if loan.status != LoanStatus.PENDING:
                raise InvalidStateError(
                    f"Cannot add gold items to loan {loan.loan_number} in status {loan.status.value}"
                )

            item = build_gold_item(
                loan_id, item_type, weight_grams, purity, rate_per_gram,
                now=self.clock(), description=description
            )
            self.storage.save(self.table, item.id, gold_item_to_dict(item))
            self._refresh_loan_collateral(loan_id)

        self.audit_trail.log_event(
            event_type=AuditEventType.GOLD_ITEM_ADDED,
            entity_type="gold_item",
            entity_id=item.id,
            metadata={
                "loan_id": loan_id,
                "weight_grams": item.weight_grams,
                "purity": item.purity,
                "total_value": item.total_value
            },
            user_id=user_id
        )
        return item

    def remove_gold_item(self, item_id: str, user_id: Optional[str] = None) -> None:
        """
        Delete an item from a loan that is still PENDING

        Raises:
            NotFoundError: If the item does not exist
            InvalidStateError: If the loan has already been processed
        """
        from .loans import LoanStatus

        with self.storage.atomic():
            item = self.require_gold_item(item_id)
            loan = self.loan_manager.require_loan(item.loan_id)
            if loan.status != LoanStatus.PENDING:
                raise InvalidStateError("Cannot delete gold item. Loan is already processed.")

            self.storage.delete(self.table, item_id)
            self._refresh_loan_collateral(item.loan_id)

        self.audit_trail.log_event(
            event_type=AuditEventType.GOLD_ITEM_REMOVED,
            entity_type="gold_item",
            entity_id=item_id,
            metadata={"loan_id": item.loan_id, "total_value": item.total_value},
            user_id=user_id
        )

    def release_gold_item(self, item_id: str, user_id: Optional[str] = None) -> GoldItem:
        """
        Return a pledged item to the customer

        Raises:
            NotFoundError: If the item does not exist
            InvalidStateError: If already released or the loan is not COMPLETED
        """
        from .loans import LoanStatus

        with self.storage.atomic():
            item = self.require_gold_item(item_id)
            if item.status == GoldItemStatus.RELEASED:
                raise InvalidStateError("Gold item already released")

            loan = self.loan_manager.require_loan(item.loan_id)
            if loan.status != LoanStatus.COMPLETED:
                raise InvalidStateError("Cannot release gold item. Loan must be completed first.")

            self._mark_released(item)

        self._log_release(item, user_id)
        return item

    def release_all_for_loan(self, loan_id: str, user_id: Optional[str] = None) -> List[GoldItem]:
        """
        Release every still-pledged item of a COMPLETED loan

        Returns:
            The items released by this call
        """
        from .loans import LoanStatus

        with self.storage.atomic():
            loan = self.loan_manager.require_loan(loan_id)
            if loan.status != LoanStatus.COMPLETED:
                raise InvalidStateError("Cannot release gold items. Loan must be completed first.")

            items = self.get_loan_gold_items(loan_id, status=GoldItemStatus.PLEDGED)
            for item in items:
                self._mark_released(item)

        for item in items:
            self._log_release(item, user_id)

        logger.info("Released %d gold items for loan %s", len(items), loan.loan_number)
        return items

    def collateral_summary(self, loan_id: str) -> Dict[str, Any]:
        """Counts and totals of a loan's collateral"""
        items = self.get_loan_gold_items(loan_id)
        total_weight, total_value = summarize_collateral(items)
        return {
            'loan_id': loan_id,
            'total_items': len(items),
            'pledged_items': sum(1 for i in items if i.status == GoldItemStatus.PLEDGED),
            'released_items': sum(1 for i in items if i.status == GoldItemStatus.RELEASED),
            'total_weight_grams': str(total_weight),
            'total_value': str(total_value)
        }

    def _mark_released(self, item: GoldItem) -> None:
        now = self.clock()
        item.status = GoldItemStatus.RELEASED
        item.released_at = now
        item.updated_at = now
        self.storage.save(self.table, item.id, gold_item_to_dict(item))

    def _log_release(self, item: GoldItem, user_id: Optional[str]) -> None:
        self.audit_trail.log_event(
            event_type=AuditEventType.GOLD_ITEM_RELEASED,
            entity_type="gold_item",
            entity_id=item.id,
            metadata={"loan_id": item.loan_id, "released_at": item.released_at},
            user_id=user_id
        )

    def _refresh_loan_collateral(self, loan_id: str) -> None:
        """Recompute the loan's collateral aggregate from its items"""
        loan = self.loan_manager.require_loan(loan_id)
        total_weight, total_value = summarize_collateral(self.get_loan_gold_items(loan_id))
        self.loan_manager.update_loan(
            loan_id,
            total_gold_weight=total_weight,
            total_gold_value=total_value,
            ltv_ratio=calculate_ltv(loan.principal_amount, total_value)
        )
