"""
Shared test helpers: a hand-driven clock and a fully wired lending system
backed by in-memory storage
"""

from datetime import datetime, timedelta, timezone

import pytest

from gold_lending.config import LendingConfig
from gold_lending.storage import InMemoryStorage
from gold_lending.system import LendingSystem


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class MutableClock:
    """Clock that only moves when a test moves it"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, *args) -> None:
        self.now = utc(*args)

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def make_config(**overrides) -> LendingConfig:
    values = {
        'database_url': "memory://",
        'enable_overdue_scheduler': False,
    }
    values.update(overrides)
    return LendingConfig(**values)


def make_system(clock: MutableClock, **overrides) -> LendingSystem:
    return LendingSystem(config=make_config(**overrides), storage=InMemoryStorage(), clock=clock)


def gold_chain(weight: str = "20", rate: str = "6250") -> dict:
    return {
        'item_type': "chain",
        'weight_grams': weight,
        'purity': "22K",
        'rate_per_gram': rate,
        'description': "22K gold chain",
    }


def create_active_loan(system: LendingSystem, clock: MutableClock, disbursed=(2024, 1, 17),
                       principal: str = "100000", rate: str = "12", tenure: int = 12,
                       customer_id: str = "CUST001"):
    """Create a loan with one chain pledged and disburse it on the given date"""
    clock.set(*disbursed)
    loan = system.loan_manager.create_loan(
        customer_id=customer_id,
        principal_amount=principal,
        interest_rate=rate,
        tenure_months=tenure,
        gold_items=[gold_chain()],
        created_by="officer1"
    )
    loan, _ = system.payment_ledger.disburse_loan(loan.id, created_by="officer1")
    return loan


@pytest.fixture
def clock():
    return MutableClock(utc(2024, 1, 10))


@pytest.fixture
def system(clock):
    lending_system = make_system(clock)
    yield lending_system
    lending_system.shutdown()
