"""
Lending system wiring

Builds storage, the audit trail and every service with explicit constructor
injection. Tests pass their own storage and clock.
"""

from typing import Optional
import logging

from .config import LendingConfig, get_config
from .storage import StorageInterface, create_storage
from .audit import AuditTrail
from .loans import LoanManager
from .gold_items import GoldItemManager
from .overdue import OverdueEngine
from .payments import PaymentLedger
from .scheduler import OverdueScheduler
from .reporting import ReportingEngine
from .terms import Clock, utc_now


logger = logging.getLogger(__name__)


class LendingSystem:
    """Gold lending core with all components initialized"""

    def __init__(
        self,
        config: Optional[LendingConfig] = None,
        storage: Optional[StorageInterface] = None,
        clock: Optional[Clock] = None
    ):
        self.config = config or get_config()
        self.clock = clock or utc_now

        # Initialize storage
        self.storage = storage or create_storage(self.config.database_url)

        self.audit_trail = AuditTrail(
            self.storage, enabled=self.config.enable_audit_logging, clock=self.clock
        )
        self.loan_manager = LoanManager(
            self.storage, self.audit_trail, config=self.config, clock=self.clock
        )
        self.gold_item_manager = GoldItemManager(
            self.storage, self.loan_manager, self.audit_trail, clock=self.clock
        )
        self.overdue_engine = OverdueEngine(
            self.loan_manager, self.audit_trail, clock=self.clock,
            default_threshold_days=self.config.default_threshold_days
        )
        self.payment_ledger = PaymentLedger(
            self.storage, self.loan_manager, self.overdue_engine, self.audit_trail,
            clock=self.clock,
            reconciliation_tolerance=self.config.reconciliation_tolerance
        )
        self.scheduler = OverdueScheduler(
            self.overdue_engine,
            audit_trail=self.audit_trail,
            interval_seconds=self.config.overdue_sweep_interval_seconds,
            threshold_days=self.config.default_threshold_days,
            run_on_start=self.config.run_sweep_on_startup,
            clock=self.clock
        )
        self.reporting_engine = ReportingEngine(
            self.loan_manager, self.payment_ledger, clock=self.clock
        )

    def start(self) -> None:
        """Start background work enabled in configuration"""
        if self.config.enable_overdue_scheduler:
            self.scheduler.start()

    def shutdown(self) -> None:
        """Stop background work and close storage"""
        self.scheduler.stop()
        self.storage.close()
        logger.info("Lending system shut down")
