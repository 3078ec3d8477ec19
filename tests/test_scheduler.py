"""
Test suite for the batch overdue scheduler
"""

import time
import pytest

from gold_lending.audit import AuditEventType
from gold_lending.loans import LoanStatus
from gold_lending.payments import PaymentType
from gold_lending.scheduler import OverdueScheduler
from conftest import MutableClock, make_system, create_active_loan, utc


def wait_for(condition, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.01)
    return False


class TestSweep:
    """Test one synchronous sweep"""

    def setup_method(self):
        self.clock = MutableClock(utc(2024, 1, 10))
        self.system = make_system(self.clock)
        self.scheduler = self.system.scheduler

        # Paid once; the installment due 17 March is never paid
        self.late = create_active_loan(self.system, self.clock, disbursed=(2024, 1, 17))
        self.clock.set(2024, 2, 17)
        self.system.payment_ledger.record_payment(self.late.id, "8884.88", PaymentType.EMI)

        self.recent = create_active_loan(self.system, self.clock, disbursed=(2024, 6, 1),
                                         customer_id="CUST002")

    def test_run_now_refreshes_and_defaults(self):
        self.clock.set(2024, 6, 15)   # 90 days after 17 March
        result = self.scheduler.run_now()

        assert result.total_processed == 2
        assert result.new_overdue_count == 1
        assert result.defaulted_count == 1
        assert result.defaulted_loan_ids == [self.late.id]
        assert result.failed_count == 0
        assert result.started_at == utc(2024, 6, 15)
        assert self.scheduler.last_result is result

        assert self.system.loan_manager.get_loan(self.late.id).status == LoanStatus.DEFAULTED
        assert self.system.loan_manager.get_loan(self.recent.id).status == LoanStatus.ACTIVE

    def test_below_threshold_only_marks_overdue(self):
        self.clock.set(2024, 6, 14)
        result = self.scheduler.run_now()

        assert result.new_overdue_count == 1
        assert result.defaulted_count == 0
        assert self.system.loan_manager.get_loan(self.late.id).is_overdue

    def test_sweep_is_audited(self):
        self.clock.set(2024, 6, 15)
        self.scheduler.run_now()

        sweeps = self.system.audit_trail.get_events_by_type(AuditEventType.OVERDUE_SWEEP_COMPLETED)
        assert len(sweeps) == 1
        assert sweeps[0].metadata['defaulted_count'] == 1
        assert sweeps[0].metadata['defaulted_loan_ids'] == [self.late.id]

    def test_default_check_failure_is_counted(self, monkeypatch):
        def broken(loan_id, threshold_days=None):
            raise RuntimeError("storage unavailable")

        monkeypatch.setattr(self.system.overdue_engine, "check_and_mark_defaulted", broken)
        self.clock.set(2024, 6, 15)
        result = self.scheduler.run_now()

        assert result.failed_count == 1
        assert result.defaulted_count == 0

    def test_to_dict(self):
        self.clock.set(2024, 6, 15)
        data = self.scheduler.run_now().to_dict()

        assert data['started_at'] == "2024-06-15T00:00:00+00:00"
        assert data['finished_at'] == "2024-06-15T00:00:00+00:00"
        assert data['total_processed'] == 2


class TestBackgroundThread:
    """Test the periodic sweep thread"""

    def setup_method(self):
        self.clock = MutableClock(utc(2024, 3, 1))
        self.system = make_system(self.clock)

    def test_interval_must_be_positive(self):
        with pytest.raises(ValueError, match="positive"):
            OverdueScheduler(self.system.overdue_engine, interval_seconds=0)

    def test_start_runs_on_start_and_stops(self):
        scheduler = OverdueScheduler(
            self.system.overdue_engine, interval_seconds=3600, run_on_start=True, clock=self.clock
        )
        scheduler.start()
        scheduler.start()   # already running

        try:
            assert scheduler.is_running()
            assert wait_for(lambda: scheduler.last_result is not None)
        finally:
            scheduler.stop()

        assert not scheduler.is_running()

    def test_short_interval_repeats(self):
        scheduler = OverdueScheduler(self.system.overdue_engine, interval_seconds=0.05, clock=self.clock)
        runs = []
        original = scheduler.run_now

        def counting_run():
            runs.append(1)
            return original()

        scheduler.run_now = counting_run
        scheduler.start()
        try:
            assert wait_for(lambda: len(runs) >= 2)
        finally:
            scheduler.stop()

    def test_failed_sweep_does_not_stop_loop(self, monkeypatch, caplog):
        scheduler = OverdueScheduler(self.system.overdue_engine, interval_seconds=3600)

        def broken():
            raise RuntimeError("database locked")

        monkeypatch.setattr(self.system.overdue_engine, "update_all_overdue_loans", broken)
        scheduler._run_safely()

        assert "Overdue sweep failed" in caplog.text

    def test_system_start_and_shutdown(self):
        system = make_system(self.clock, enable_overdue_scheduler=True,
                             overdue_sweep_interval_seconds=3600)
        system.start()
        assert system.scheduler.is_running()

        system.shutdown()
        assert not system.scheduler.is_running()

    def test_scheduler_disabled_by_config(self):
        self.system.start()
        assert not self.system.scheduler.is_running()
