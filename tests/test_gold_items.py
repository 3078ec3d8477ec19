"""
Test suite for gold collateral management
"""

import pytest
from decimal import Decimal

from gold_lending.audit import AuditEventType
from gold_lending.errors import InvalidStateError, NotFoundError, ValidationError
from gold_lending.gold_items import (
    GoldPurity, GoldItemStatus, build_gold_item, summarize_collateral,
    gold_item_to_dict, gold_item_from_dict
)
from gold_lending.payments import PaymentType
from conftest import MutableClock, make_system, gold_chain, utc


class TestBuildGoldItem:
    """Test item validation and valuation"""

    def test_valued_at_pledge_rate(self):
        item = build_gold_item("L1", "bangle", "12.5", "22K", "6000", now=utc(2024, 1, 17))

        assert item.purity == GoldPurity.K22
        assert item.total_value == Decimal('75000.00')
        assert item.status == GoldItemStatus.PLEDGED
        assert item.is_pledged

    def test_round_trip(self):
        item = build_gold_item("L1", "coin", "8", GoldPurity.K24, "6500", now=utc(2024, 1, 17),
                               description="Sovereign")
        assert gold_item_from_dict(gold_item_to_dict(item)) == item

    @pytest.mark.parametrize("weight, rate, purity, message", [
        ("0", "6000", "22K", "weight"),
        ("-1", "6000", "22K", "weight"),
        ("10", "0", "22K", "rate"),
        ("10", "6000", "10K", "purity"),
        ("heavy", "6000", "22K", "Cannot convert"),
    ])
    def test_invalid_items(self, weight, rate, purity, message):
        with pytest.raises(ValidationError, match=message):
            build_gold_item("L1", "ring", weight, purity, rate, now=utc(2024, 1, 17))

    def test_item_type_required(self):
        with pytest.raises(ValidationError, match="Item type"):
            build_gold_item("L1", "", "10", "22K", "6000", now=utc(2024, 1, 17))

    def test_summarize(self):
        items = [
            build_gold_item("L1", "ring", "4.25", "18K", "4800", now=utc(2024, 1, 17)),
            build_gold_item("L1", "chain", "15.75", "22K", "5900", now=utc(2024, 1, 17)),
        ]
        weight, value = summarize_collateral(items)
        assert weight == Decimal('20.00')
        assert value == Decimal('113325.00')


class TestGoldItemManager:
    """Test collateral changes through the loan lifecycle"""

    def setup_method(self):
        self.clock = MutableClock(utc(2024, 1, 17))
        self.system = make_system(self.clock)
        self.items = self.system.gold_item_manager
        self.loan = self.system.loan_manager.create_loan(
            "CUST001", "100000", "12", 12, gold_items=[gold_chain("20", "6250")]
        )

    def _complete_loan(self):
        self.system.payment_ledger.disburse_loan(self.loan.id)
        self.system.payment_ledger.record_payment(self.loan.id, "100000", PaymentType.CLOSURE)

    def test_add_item_recomputes_ltv(self):
        item = self.items.add_gold_item(self.loan.id, "ring", "5", "22K", "5000", user_id="officer1")
        loan = self.system.loan_manager.get_loan(self.loan.id)

        assert item.total_value == Decimal('25000.00')
        assert loan.total_gold_value == Decimal('150000.00')
        assert loan.total_gold_weight == Decimal('25')
        assert loan.ltv_ratio == Decimal('66.67')

        events = self.system.audit_trail.get_events_for_entity("gold_item", item.id)
        assert [e.event_type for e in events] == [AuditEventType.GOLD_ITEM_ADDED]

    def test_add_item_after_disbursement_fails(self):
        self.system.payment_ledger.disburse_loan(self.loan.id)
        with pytest.raises(InvalidStateError, match="Cannot add gold items"):
            self.items.add_gold_item(self.loan.id, "ring", "5", "22K", "5000")

    def test_add_item_to_missing_loan(self):
        with pytest.raises(NotFoundError):
            self.items.add_gold_item("missing", "ring", "5", "22K", "5000")

    def test_invalid_item_leaves_loan_unchanged(self):
        with pytest.raises(ValidationError):
            self.items.add_gold_item(self.loan.id, "ring", "5", "22K", "-1")
        assert len(self.items.get_loan_gold_items(self.loan.id)) == 1

    def test_remove_item_from_pending_loan(self):
        extra = self.items.add_gold_item(self.loan.id, "ring", "5", "22K", "5000")
        self.items.remove_gold_item(extra.id)

        loan = self.system.loan_manager.get_loan(self.loan.id)
        assert loan.total_gold_value == Decimal('125000.00')
        assert loan.ltv_ratio == Decimal('80.00')
        assert self.items.get_gold_item(extra.id) is None

    def test_remove_item_after_approval_fails(self):
        item = self.items.get_loan_gold_items(self.loan.id)[0]
        self.system.loan_manager.approve_loan(self.loan.id)
        with pytest.raises(InvalidStateError, match="already processed"):
            self.items.remove_gold_item(item.id)

    def test_release_requires_completed_loan(self):
        item = self.items.get_loan_gold_items(self.loan.id)[0]
        self.system.payment_ledger.disburse_loan(self.loan.id)
        with pytest.raises(InvalidStateError, match="completed first"):
            self.items.release_gold_item(item.id)

    def test_release_after_completion(self):
        item = self.items.get_loan_gold_items(self.loan.id)[0]
        self._complete_loan()
        self.clock.set(2024, 3, 1)

        released = self.items.release_gold_item(item.id, user_id="officer1")

        assert released.status == GoldItemStatus.RELEASED
        assert released.released_at == utc(2024, 3, 1)
        with pytest.raises(InvalidStateError, match="already released"):
            self.items.release_gold_item(item.id)

    def test_release_all_for_loan(self):
        self.items.add_gold_item(self.loan.id, "ring", "5", "22K", "5000")
        self._complete_loan()

        released = self.items.release_all_for_loan(self.loan.id)
        assert len(released) == 2
        assert self.items.get_loan_gold_items(self.loan.id, status=GoldItemStatus.PLEDGED) == []
        assert self.items.release_all_for_loan(self.loan.id) == []

        released_events = self.system.audit_trail.get_events_by_type(AuditEventType.GOLD_ITEM_RELEASED)
        assert len(released_events) == 2

    def test_collateral_summary(self):
        self.items.add_gold_item(self.loan.id, "ring", "5", "22K", "5000")
        summary = self.items.collateral_summary(self.loan.id)

        assert summary['total_items'] == 2
        assert summary['pledged_items'] == 2
        assert summary['released_items'] == 0
        assert summary['total_weight_grams'] == "25"
        assert summary['total_value'] == "150000.00"
