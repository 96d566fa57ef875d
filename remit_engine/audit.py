"""
Audit Trail Module

Hash-chained immutable audit log with SHA-256 for tamper detection. This is
the audit sink the calling layer writes to after every compliance flag
transition or admin override; the compliance core itself never writes here.
"""

import hashlib
import json
import threading
import uuid
from datetime import datetime, timezone
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Any

from .storage import StorageInterface, StorageRecord, parse_datetime


class AuditAction(Enum):
    """Actions recorded by the back-office"""
    APPROVE_MLRO = "APPROVE_MLRO"
    REJECT_MLRO = "REJECT_MLRO"
    HOLD_MLRO = "HOLD_MLRO"
    RESET_BONUS_CYCLE = "RESET_BONUS_CYCLE"
    ADMIN_OVERRIDE = "ADMIN_OVERRIDE"


def _json_safe(value: Any) -> Any:
    """Convert values to a JSON-serializable form"""
    if isinstance(value, Decimal):
        return str(value)
    elif isinstance(value, datetime):
        return value.isoformat()
    elif isinstance(value, Enum):
        return value.value
    elif isinstance(value, dict):
        return {k: _json_safe(v) for k, v in value.items()}
    elif isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    return value


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    action: str
    resource: str
    resource_id: str
    previous_hash: str
    current_hash: str
    actor_id: Optional[str] = None
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.before = _json_safe(self.before) if self.before is not None else None
        self.after = _json_safe(self.after) if self.after is not None else None
        self.metadata = _json_safe(self.metadata or {})

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this event
        Hash includes all fields except current_hash to prevent circular reference
        """
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'action': self.action,
            'resource': self.resource,
            'resource_id': self.resource_id,
            'previous_hash': self.previous_hash,
            'actor_id': self.actor_id,
            'before': self.before,
            'after': self.after,
            'metadata': self.metadata
        }
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        data = dict(data)
        data['created_at'] = parse_datetime(data['created_at'])
        data['updated_at'] = parse_datetime(data['updated_at'])
        return cls(**data)


class AuditTrail:
    """
    Hash-chained audit trail for tamper detection
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events"):
        self.storage = storage
        self.table_name = table_name
        self._last_hash: Optional[str] = None
        self._lock = threading.Lock()
        self._load_last_hash()

    def _load_last_hash(self) -> None:
        """Load the hash of the most recent audit event"""
        events = self.storage.load_all(self.table_name)
        if events:
            latest = max(events, key=lambda x: (x.get('created_at', ''), x.get('sequence', 0)))
            self._last_hash = latest.get('current_hash')

    def record(
        self,
        action: AuditAction,
        resource: str,
        actor_id: Optional[str],
        before: Optional[Dict[str, Any]],
        after: Optional[Dict[str, Any]],
        resource_id: str = "",
        metadata: Optional[Dict[str, Any]] = None
    ) -> AuditEvent:
        """
        Record an audited action with hash chaining

        Args:
            action: Action performed
            resource: Type of resource acted upon (e.g. "MLRO_FLAG")
            actor_id: Admin user who performed the action
            before: Snapshot of the resource before the action
            after: Snapshot of the resource after the action
            resource_id: ID of the resource
            metadata: Additional action-specific data

        Returns:
            Created AuditEvent
        """
        action_value = action.value if isinstance(action, AuditAction) else str(action)

        with self._lock:
            now = datetime.now(timezone.utc)
            self._load_last_hash()

            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                action=action_value,
                resource=resource,
                resource_id=resource_id,
                previous_hash=self._last_hash or "",
                current_hash="",
                actor_id=actor_id,
                before=before,
                after=after,
                metadata=metadata or {}
            )
            event.current_hash = event.calculate_hash()

            data = event.to_dict()
            # Tie-breaker for events created within the same clock tick
            data['sequence'] = self.storage.count(self.table_name)
            self.storage.insert(self.table_name, event.id, data)

            self._last_hash = event.current_hash
            return event

    def _load_events(self) -> List[AuditEvent]:
        rows = self.storage.load_all(self.table_name)
        rows.sort(key=lambda x: (x.get('created_at', ''), x.get('sequence', 0)))
        events = []
        for row in rows:
            row.pop('sequence', None)
            events.append(AuditEvent.from_dict(row))
        return events

    def get_events_for_resource(
        self,
        resource: str,
        resource_id: str,
        limit: Optional[int] = None
    ) -> List[AuditEvent]:
        """Get all audit events for a specific resource, oldest first"""
        events = [
            e for e in self._load_events()
            if e.resource == resource and e.resource_id == resource_id
        ]
        if limit:
            events = events[-limit:]
        return events

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify the integrity of the entire audit chain

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_events': 0,
            'hash_errors': [],
            'chain_breaks': []
        }

        events = self._load_events()
        result['total_events'] = len(events)

        previous_hash = ""
        for i, event in enumerate(events):
            if not event.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'event_id': event.id,
                    'position': i,
                    'expected_hash': event.calculate_hash(),
                    'actual_hash': event.current_hash
                })
            if event.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'event_id': event.id,
                    'position': i,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': event.previous_hash
                })
            previous_hash = event.current_hash

        return result

    def count_events(self) -> int:
        """Get total number of audit events"""
        return self.storage.count(self.table_name)

    def get_latest_hash(self) -> Optional[str]:
        """Get the hash of the most recent audit event"""
        return self._last_hash
