"""
Batch Overdue Scheduler

Periodic sweep over all ACTIVE loans: refresh every overdue snapshot, then
escalate loans overdue past the default threshold. The background thread and
run_now() share the same sweep code path, and sweeps never overlap.
"""

from datetime import datetime
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
import logging
import threading

from .audit import AuditTrail, AuditEventType
from .overdue import OverdueEngine, DEFAULT_THRESHOLD_DAYS
from .logging_config import log_action
from .terms import Clock, utc_now


logger = logging.getLogger(__name__)

ONE_DAY_SECONDS = 24 * 60 * 60


@dataclass
class OverdueSweepResult:
    """Aggregate counters of one sweep"""
    started_at: datetime
    finished_at: Optional[datetime] = None
    total_processed: int = 0
    new_overdue_count: int = 0
    cleared_overdue_count: int = 0
    defaulted_count: int = 0
    failed_count: int = 0
    defaulted_loan_ids: list = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'started_at': self.started_at.isoformat(),
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'total_processed': self.total_processed,
            'new_overdue_count': self.new_overdue_count,
            'cleared_overdue_count': self.cleared_overdue_count,
            'defaulted_count': self.defaulted_count,
            'failed_count': self.failed_count,
            'defaulted_loan_ids': list(self.defaulted_loan_ids),
        }


class OverdueScheduler:
    """
    Runs the overdue sweep on a fixed interval in a daemon thread
    """

    def __init__(
        self,
        overdue_engine: OverdueEngine,
        audit_trail: Optional[AuditTrail] = None,
        interval_seconds: float = ONE_DAY_SECONDS,
        threshold_days: int = DEFAULT_THRESHOLD_DAYS,
        run_on_start: bool = False,
        clock: Optional[Clock] = None
    ):
        if interval_seconds <= 0:
            raise ValueError("Sweep interval must be positive")

        self.overdue_engine = overdue_engine
        self.audit_trail = audit_trail
        self.interval_seconds = interval_seconds
        self.threshold_days = threshold_days
        self.run_on_start = run_on_start
        self.clock = clock or utc_now

        self.last_result: Optional[OverdueSweepResult] = None
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._sweep_lock = threading.Lock()
        self._lock = threading.RLock()

    def run_now(self) -> OverdueSweepResult:
        """
        Run one sweep synchronously

        Waits for a sweep already in progress to finish first.
        """
        with self._sweep_lock:
            result = OverdueSweepResult(started_at=self.clock())

            counts = self.overdue_engine.update_all_overdue_loans()
            result.total_processed = counts['total_processed']
            result.new_overdue_count = counts['new_overdue_count']
            result.cleared_overdue_count = counts['cleared_overdue_count']
            result.failed_count = counts.get('failed_count', 0)

            candidates = self.overdue_engine.get_overdue_loans(min_days_overdue=self.threshold_days)
            for loan in candidates:
                try:
                    if self.overdue_engine.check_and_mark_defaulted(loan.id, self.threshold_days):
                        result.defaulted_count += 1
                        result.defaulted_loan_ids.append(loan.id)
                except Exception:
                    logger.error("Default check failed for loan %s", loan.id, exc_info=True)
                    result.failed_count += 1

            result.finished_at = self.clock()
            self.last_result = result

        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=AuditEventType.OVERDUE_SWEEP_COMPLETED,
                entity_type="system",
                entity_id="overdue_sweep",
                metadata=result.to_dict()
            )

        log_action(
            logger, "info", "Overdue sweep completed",
            action="overdue_sweep", resource="loan", extra=result.to_dict()
        )
        if result.defaulted_count:
            logger.warning("Marked %d loan(s) as DEFAULTED", result.defaulted_count)

        return result

    def start(self) -> None:
        """Start the background sweep thread"""
        with self._lock:
            if self.is_running():
                return
            self._stop_event.clear()
            self._thread = threading.Thread(target=self._run_loop, name="overdue-sweep")
            self._thread.daemon = True
            self._thread.start()

        logger.info("Overdue scheduler started (every %s seconds)", self.interval_seconds)

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the background thread, interrupting the wait between sweeps"""
        with self._lock:
            self._stop_event.set()
            thread = self._thread
            self._thread = None

        if thread:
            thread.join(timeout=timeout)

        logger.info("Overdue scheduler stopped")

    def is_running(self) -> bool:
        """Check if the background thread is alive"""
        return self._thread is not None and self._thread.is_alive()

    def _run_loop(self) -> None:
        if self.run_on_start:
            self._run_safely()

        while not self._stop_event.wait(self.interval_seconds):
            self._run_safely()

    def _run_safely(self) -> None:
        try:
            self.run_now()
        except Exception:
            logger.error("Overdue sweep failed", exc_info=True)
