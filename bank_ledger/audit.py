"""
Audit Trail Module

Hash-chained immutable audit log with SHA-256 for tamper detection.
Every financial state transition in the system is logged here.
"""

import hashlib
import json
import threading
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
from decimal import Decimal
import uuid

from .storage import StorageInterface, StorageRecord


class AuditEventType(Enum):
    """Types of audit events"""
    # Account events
    ACCOUNT_OPENED = "account_opened"
    ACCOUNT_STATUS_CHANGED = "account_status_changed"
    ACCOUNT_CLOSED = "account_closed"

    # Transaction events
    TRANSACTION_COMPLETED = "transaction_completed"
    TRANSACTION_FAILED = "transaction_failed"
    TRANSACTION_PENDING = "transaction_pending"
    TRANSACTION_CANCELLED = "transaction_cancelled"

    # Loan events
    LOAN_APPLIED = "loan_applied"
    LOAN_PROCESSING = "loan_processing"
    LOAN_APPROVED = "loan_approved"
    LOAN_REJECTED = "loan_rejected"
    LOAN_DISBURSED = "loan_disbursed"
    LOAN_DISBURSEMENT_FAILED = "loan_disbursement_failed"
    LOAN_REPAYMENT = "loan_repayment"
    LOAN_CLOSED = "loan_closed"
    LOAN_FORECLOSED = "loan_foreclosed"
    LOAN_DEFAULTED = "loan_defaulted"

    # DPS events
    DPS_CREATED = "dps_created"
    DPS_INSTALLMENT_PAID = "dps_installment_paid"
    DPS_INSTALLMENT_MISSED = "dps_installment_missed"
    DPS_DEFAULTED = "dps_defaulted"
    DPS_MATURED = "dps_matured"
    DPS_CLOSED = "dps_closed"
    DPS_SUSPENDED = "dps_suspended"
    DPS_RESUMED = "dps_resumed"

    # System events
    SWEEP_COMPLETED = "sweep_completed"
    AUDIT_INTEGRITY_CHECK = "audit_integrity_check"


def _convert_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _convert_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_convert_value(v) for v in value]
    if hasattr(value, 'isoformat'):
        return value.isoformat()
    return value


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    sequence: int
    event_type: AuditEventType
    entity_type: str  # account, transaction, loan, dps
    entity_id: str
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]
    user_id: Optional[str] = None
    correlation_id: Optional[str] = None

    def __post_init__(self):
        if self.metadata:
            self.metadata = {k: _convert_value(v) for k, v in self.metadata.items()}

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this event
        Hash includes all fields except current_hash
        """
        hash_data = {
            'id': self.id,
            'sequence': self.sequence,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
            'user_id': self.user_id,
            'correlation_id': self.correlation_id,
            'metadata': self.metadata
        }

        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['event_type'] = self.event_type.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        data = dict(data)
        if isinstance(data['event_type'], str):
            data['event_type'] = AuditEventType(data['event_type'])
        return super().from_dict(data)


class AuditTrail:
    """
    Hash-chained audit trail for tamper detection.

    Events raised inside an open unit of work are written only after it
    commits, so rolled-back operations leave no trace in the chain.
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events",
                 enabled: bool = True):
        self.storage = storage
        self.table_name = table_name
        self.enabled = enabled
        self._last_hash: str = ""
        self._sequence = 0
        self._lock = threading.Lock()
        self._load_chain_head()

    def _load_chain_head(self) -> None:
        """Load the sequence and hash of the most recent audit event"""
        events = self.storage.load_all(self.table_name)
        if events:
            latest = max(events, key=lambda x: x.get('sequence', 0))
            self._sequence = latest.get('sequence', 0)
            self._last_hash = latest.get('current_hash', "")

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
        out_of_band: bool = False
    ) -> Optional[AuditEvent]:
        """
        Log an audit event with hash chaining

        Args:
            event_type: Type of audit event
            entity_type: Type of entity being audited
            entity_id: ID of the entity
            metadata: Additional event-specific data
            user_id: ID of the actor who initiated the action
            correlation_id: Request correlation identifier
            out_of_band: Write now even inside a unit of work (used for
                failure records that must survive the rollback)

        Returns:
            The created AuditEvent, or None when the write is deferred until
            the surrounding unit of work commits (or auditing is disabled)
        """
        if not self.enabled:
            return None

        if out_of_band:
            return self._append(
                event_type, entity_type, entity_id, metadata or {}, user_id, correlation_id
            )

        written: List[AuditEvent] = []

        def write() -> None:
            written.append(self._append(
                event_type, entity_type, entity_id, metadata or {}, user_id, correlation_id
            ))

        self.storage.on_commit(write)
        return written[0] if written else None

    def _append(self, event_type: AuditEventType, entity_type: str, entity_id: str,
                metadata: Dict[str, Any], user_id: Optional[str],
                correlation_id: Optional[str]) -> AuditEvent:
        with self._lock:
            now = datetime.now(timezone.utc)
            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                sequence=self._sequence + 1,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=self._last_hash,
                current_hash="",
                metadata=metadata,
                user_id=user_id,
                correlation_id=correlation_id
            )
            event.current_hash = event.calculate_hash()

            self.storage.save_out_of_band(self.table_name, event.id, event.to_dict())

            self._sequence = event.sequence
            self._last_hash = event.current_hash
            return event

    def _all_events(self) -> List[AuditEvent]:
        events = [AuditEvent.from_dict(data) for data in self.storage.load_all(self.table_name)]
        events.sort(key=lambda x: x.sequence)
        return events

    def get_events_for_entity(
        self,
        entity_type: str,
        entity_id: str,
        limit: Optional[int] = None
    ) -> List[AuditEvent]:
        """
        History of one account, loan, DPS or transaction in chain order.

        With ``limit`` only the most recent events are returned.
        """
        rows = self.storage.find(
            self.table_name, {'entity_type': entity_type, 'entity_id': entity_id}
        )
        events = sorted((AuditEvent.from_dict(row) for row in rows), key=lambda e: e.sequence)
        return events[-limit:] if limit else events

    def get_events_by_type(self, event_type: AuditEventType) -> List[AuditEvent]:
        """Get audit events of one type in chain order"""
        return [e for e in self._all_events() if e.event_type == event_type]

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Recompute every event hash and walk the previous_hash links.

        ``valid`` is False when any event was altered (``hash_errors``) or an
        event was removed or reordered (``chain_breaks``).
        """
        events = self._all_events()
        hash_errors: List[Dict[str, Any]] = []
        chain_breaks: List[Dict[str, Any]] = []

        expected_previous = ""
        for position, event in enumerate(events):
            if not event.verify_hash():
                hash_errors.append({
                    'event_id': event.id,
                    'sequence': event.sequence,
                    'position': position,
                    'expected_hash': event.calculate_hash(),
                    'actual_hash': event.current_hash
                })
            if event.previous_hash != expected_previous:
                chain_breaks.append({
                    'event_id': event.id,
                    'sequence': event.sequence,
                    'position': position,
                    'expected_previous_hash': expected_previous,
                    'actual_previous_hash': event.previous_hash
                })
            expected_previous = event.current_hash

        return {
            'valid': not hash_errors and not chain_breaks,
            'total_events': len(events),
            'hash_errors': hash_errors,
            'chain_breaks': chain_breaks
        }

    def count_events(self) -> int:
        """Get total number of audit events"""
        return self.storage.count(self.table_name)

    def get_latest_hash(self) -> str:
        """Get the hash of the most recent audit event"""
        return self._last_hash
