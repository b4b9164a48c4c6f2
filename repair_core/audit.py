"""
Audit Trail Module

Hash-chained immutable audit log with SHA-256 for tamper detection.
Every workflow, approval and configuration state change is logged here.
"""

import hashlib
import json
import threading
from datetime import datetime
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum
from decimal import Decimal
import uuid

from .storage import StorageInterface, StorageRecord
from .clock import Clock, SystemClock


class AuditEventType(Enum):
    """Types of audit events"""
    # Definition events
    DEFINITION_CREATED = "definition_created"
    DEFINITION_VERSIONED = "definition_versioned"
    DEFINITION_ACTIVATED = "definition_activated"
    DEFINITION_DEACTIVATED = "definition_deactivated"

    # Configuration selector events
    CONFIGURATION_CREATED = "configuration_created"
    CONFIGURATION_UPDATED = "configuration_updated"
    CONFIGURATION_DELETED = "configuration_deleted"
    CONFIGURATION_MIGRATED = "configuration_migrated"

    # Case workflow instance events
    WORKFLOW_STARTED = "workflow_started"
    STEP_TRANSITIONED = "step_transitioned"
    STEP_SKIPPED = "step_skipped"
    STEP_ESCALATED = "step_escalated"
    CONTEXT_PATCHED = "context_patched"
    BUSINESS_RULE_FIRED = "business_rule_fired"
    ACTION_DISPATCHED = "action_dispatched"
    WORKFLOW_COMPLETED = "workflow_completed"
    WORKFLOW_CANCELLED = "workflow_cancelled"
    WORKFLOW_SUSPENDED = "workflow_suspended"
    WORKFLOW_RESUMED = "workflow_resumed"
    WORKFLOW_FROZEN = "workflow_frozen"

    # Approval events
    APPROVAL_WORKFLOW_CREATED = "approval_workflow_created"
    APPROVAL_WORKFLOW_UPDATED = "approval_workflow_updated"
    APPROVAL_WORKFLOW_DELETED = "approval_workflow_deleted"
    APPROVAL_SUBMITTED = "approval_submitted"
    LEVEL_SKIPPED = "level_skipped"
    LEVEL_ADVANCED = "level_advanced"
    APPROVAL_RECORDED = "approval_recorded"
    APPROVAL_REJECTED = "approval_rejected"
    APPROVAL_COMPLETED = "approval_completed"
    APPROVAL_DELEGATED = "approval_delegated"
    APPROVAL_ESCALATED = "approval_escalated"

    # Document events
    DOCUMENT_CREATED = "document_created"
    DOCUMENT_STATUS_CHANGED = "document_status_changed"
    DOCUMENT_SYNC_FAILED = "document_sync_failed"

    # Notification events
    NOTIFICATION_ABANDONED = "notification_abandoned"
    NOTIFICATIONS_PURGED = "notifications_purged"


def _jsonable(value):
    if isinstance(value, Decimal):
        return str(value)
    elif isinstance(value, datetime):
        return value.isoformat()
    elif isinstance(value, Enum):
        return value.value
    elif isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    elif isinstance(value, (list, tuple, set)):
        return [_jsonable(v) for v in value]
    return value


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection.

    sequence orders the chain; created_at alone is not unique when a
    manual clock stamps many events with the same instant.
    """
    event_type: AuditEventType
    entity_type: str
    entity_id: str
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    user_id: Optional[str] = None
    sequence: int = 0

    def __post_init__(self):
        self.metadata = _jsonable(self.metadata or {})

    def calculate_hash(self) -> str:
        """SHA-256 over every field except current_hash"""
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
            'user_id': self.user_id,
            'sequence': self.sequence,
            'metadata': self.metadata
        }
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['event_type'] = self.event_type.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['event_type'] = AuditEventType(data['event_type'])
        return cls(**data)


class AuditTrail:
    """
    Hash-chained audit trail for tamper detection
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events",
                 clock: Optional[Clock] = None):
        self.storage = storage
        self.table_name = table_name
        self.clock = clock or SystemClock()
        self._last_hash: Optional[str] = None
        self._last_sequence = 0
        self._lock = threading.Lock()
        self._load_chain_head()

    def _load_chain_head(self) -> None:
        """Load the hash and sequence of the most recent audit event"""
        events = self.storage.load_all(self.table_name)
        if events:
            head = max(events, key=lambda e: e.get('sequence', 0))
            self._last_hash = head.get('current_hash')
            self._last_sequence = head.get('sequence', 0)

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None
    ) -> AuditEvent:
        """
        Log an audit event with hash chaining

        Args:
            event_type: Type of audit event
            entity_type: Type of entity being audited (workflow_instance, approval_instance, ...)
            entity_id: ID of the entity
            metadata: Additional event-specific data
            user_id: ID of user (or "system") who initiated the action

        Returns:
            Created AuditEvent
        """
        with self._lock:
            now = self.clock.now()
            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=self._last_hash or "",
                current_hash="",
                metadata=metadata or {},
                user_id=user_id,
                sequence=self._last_sequence + 1
            )
            event.current_hash = event.calculate_hash()

            self.storage.save(self.table_name, event.id, event.to_dict())

            self._last_hash = event.current_hash
            self._last_sequence = event.sequence
            return event

    def _all_events(self) -> List[AuditEvent]:
        events = [AuditEvent.from_dict(data) for data in self.storage.load_all(self.table_name)]
        events.sort(key=lambda e: e.sequence)
        return events

    def get_events_for_entity(self, entity_type: str, entity_id: str,
                              limit: Optional[int] = None) -> List[AuditEvent]:
        """Get the audit events of one entity in chain order"""
        events = [
            AuditEvent.from_dict(data)
            for data in self.storage.find(self.table_name, {
                'entity_type': entity_type,
                'entity_id': entity_id
            })
        ]
        events.sort(key=lambda e: e.sequence)
        if limit:
            events = events[-limit:]
        return events

    def get_events_by_type(self, event_type: AuditEventType,
                           start_time: Optional[datetime] = None,
                           end_time: Optional[datetime] = None) -> List[AuditEvent]:
        """Get audit events of one type, optionally within a time range"""
        events = [e for e in self._all_events() if e.event_type == event_type]
        if start_time:
            events = [e for e in events if e.created_at >= start_time]
        if end_time:
            events = [e for e in events if e.created_at <= end_time]
        return events

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify the integrity of the entire audit chain

        Returns:
            Dictionary with valid flag, event count, hash errors and chain breaks
        """
        result = {
            'valid': True,
            'total_events': 0,
            'hash_errors': [],
            'chain_breaks': []
        }

        events = self._all_events()
        result['total_events'] = len(events)

        previous_hash = ""
        for position, event in enumerate(events):
            if not event.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'event_id': event.id,
                    'position': position,
                    'expected_hash': event.calculate_hash(),
                    'actual_hash': event.current_hash
                })
            if event.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'event_id': event.id,
                    'position': position,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': event.previous_hash
                })
            previous_hash = event.current_hash

        return result
