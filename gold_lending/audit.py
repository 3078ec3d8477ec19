"""
Audit Trail Module

Append-only record of every loan, payment and collateral state change.
Each event stores the SHA-256 hash of its predecessor, so editing or deleting
a stored event breaks the chain and shows up in verify_integrity().
"""

import hashlib
import json
import threading
from datetime import datetime
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
from decimal import Decimal
import uuid

from .storage import StorageInterface, StorageRecord
from .terms import Clock, utc_now


AUDIT_TABLE = "audit_events"


class AuditEventType(Enum):
    """Lending state changes that are audited"""
    # Loan lifecycle
    LOAN_CREATED = "loan_created"
    LOAN_APPROVED = "loan_approved"
    LOAN_REJECTED = "loan_rejected"
    LOAN_DISBURSED = "loan_disbursed"
    LOAN_COMPLETED = "loan_completed"
    LOAN_DEFAULTED = "loan_defaulted"

    # Payments
    PAYMENT_RECORDED = "payment_recorded"
    PAYMENT_STATUS_CHANGED = "payment_status_changed"
    BALANCE_RECONCILED = "balance_reconciled"

    # Overdue engine
    OVERDUE_STATUS_CHANGED = "overdue_status_changed"
    OVERDUE_SWEEP_COMPLETED = "overdue_sweep_completed"

    # Collateral
    GOLD_ITEM_ADDED = "gold_item_added"
    GOLD_ITEM_REMOVED = "gold_item_removed"
    GOLD_ITEM_RELEASED = "gold_item_released"


def _json_safe(value: Any) -> Any:
    """Metadata value as plain JSON: amounts and dates become strings"""
    if isinstance(value, dict):
        return {k: _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


@dataclass
class AuditEvent(StorageRecord):
    """One link of the audit chain"""
    event_type: AuditEventType
    entity_type: str  # loan, payment, gold_item, system
    entity_id: str
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]
    user_id: Optional[str] = None

    def __post_init__(self):
        self.metadata = _json_safe(self.metadata or {})

    def calculate_hash(self) -> str:
        """SHA-256 over the event content and the previous link's hash"""
        content = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
            'user_id': self.user_id,
            'metadata': self.metadata
        }
        canonical = json.dumps(content, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(canonical.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        return self.current_hash == self.calculate_hash()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        values = {k: v for k, v in data.items() if k != 'sequence'}
        values['created_at'] = datetime.fromisoformat(values['created_at'])
        values['updated_at'] = datetime.fromisoformat(values['updated_at'])
        values['event_type'] = AuditEventType(values['event_type'])
        return cls(**values)


class AuditTrail:
    """
    Hash-chained audit log over a storage table

    Events carry a sequence number that fixes their order in the chain.
    Several trails may share one storage; each append re-reads the tail.
    """

    def __init__(
        self,
        storage: StorageInterface,
        table_name: str = AUDIT_TABLE,
        enabled: bool = True,
        clock: Optional[Clock] = None
    ):
        self.storage = storage
        self.table_name = table_name
        self.enabled = enabled
        self.clock = clock or utc_now
        self._lock = threading.Lock()

    def _chain_tail(self):
        """(sequence, hash) of the newest stored event, or (0, "")"""
        records = self.storage.load_all(self.table_name)
        if not records:
            return 0, ""
        newest = max(records, key=lambda r: r.get('sequence', 0))
        return newest.get('sequence', 0), newest.get('current_hash', "")

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None
    ) -> Optional[AuditEvent]:
        """
        Append an event to the chain

        Args:
            event_type: What happened
            entity_type: loan, payment, gold_item or system
            entity_id: ID of the affected record
            metadata: Amounts, numbers and statuses describing the change
            user_id: Staff user who initiated the action

        Returns:
            The stored AuditEvent, or None when auditing is disabled
        """
        if not self.enabled:
            return None

        # Storage first, then the chain lock: callers may already hold a transaction
        with self.storage.atomic(), self._lock:
            sequence, previous_hash = self._chain_tail()
            now = self.clock()

            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=previous_hash,
                current_hash="",
                user_id=user_id,
                metadata=metadata or {}
            )
            event.current_hash = event.calculate_hash()

            record = event.to_dict()
            record['sequence'] = sequence + 1
            self.storage.save(self.table_name, event.id, record)
            return event

    def _ordered_events(self) -> List[AuditEvent]:
        records = sorted(self.storage.load_all(self.table_name), key=lambda r: r.get('sequence', 0))
        return [AuditEvent.from_dict(record) for record in records]

    def get_events_for_entity(
        self,
        entity_type: str,
        entity_id: str,
        limit: Optional[int] = None
    ) -> List[AuditEvent]:
        """
        History of one record, oldest first

        Args:
            entity_type: loan, payment, gold_item or system
            entity_id: ID of the record
            limit: Keep only this many of the most recent events
        """
        events = [
            e for e in self._ordered_events()
            if e.entity_type == entity_type and e.entity_id == entity_id
        ]
        if limit:
            events = events[-limit:]
        return events

    def get_events_by_type(
        self,
        event_type: AuditEventType,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None
    ) -> List[AuditEvent]:
        events = [e for e in self._ordered_events() if e.event_type == event_type]
        if start_time:
            events = [e for e in events if e.created_at >= start_time]
        if end_time:
            events = [e for e in events if e.created_at <= end_time]
        return events

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Walk the chain from the first event

        Returns:
            valid flag, total_events, hash_errors (events whose content no
            longer matches their hash) and chain_breaks (events whose
            previous_hash does not match the event before them)
        """
        events = self._ordered_events()
        hash_errors = []
        chain_breaks = []

        expected_previous = ""
        for position, event in enumerate(events):
            if not event.verify_hash():
                hash_errors.append({'event_id': event.id, 'position': position})
            if event.previous_hash != expected_previous:
                chain_breaks.append({'event_id': event.id, 'position': position})
            expected_previous = event.current_hash

        return {
            'valid': not hash_errors and not chain_breaks,
            'total_events': len(events),
            'hash_errors': hash_errors,
            'chain_breaks': chain_breaks,
        }

    def count_events(self) -> int:
        return self.storage.count(self.table_name)
