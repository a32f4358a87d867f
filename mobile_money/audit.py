"""
Audit Trail Module

Hash-chained append-only audit log. Each event stores the SHA-256 hash of
its predecessor so edits or deletions break the chain and are detected by
``verify_integrity``.
"""

import hashlib
import json
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from .storage import StorageInterface, StorageRecord


class AuditEventType(Enum):
    """Types of audit events"""
    ACCOUNT_REGISTERED = "account_registered"
    ACCOUNT_ACTIVATED = "account_activated"
    ACCOUNT_BLOCKED = "account_blocked"

    TRANSFER_SETTLED = "transfer_settled"
    TRANSFER_COMPENSATED = "transfer_compensated"
    TRANSFER_LOG_FAILED = "transfer_log_failed"

    CASH_REQUEST_CREATED = "cash_request_created"
    CASH_REQUEST_APPROVED = "cash_request_approved"
    CASH_REQUEST_REJECTED = "cash_request_rejected"

    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILED = "login_failed"


def _json_safe(value):
    if isinstance(value, (Decimal, datetime)):
        return str(value) if isinstance(value, Decimal) else value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    return value


@dataclass
class AuditEvent(StorageRecord):
    """Immutable audit event chained to its predecessor by hash"""
    event_type: AuditEventType
    entity_type: str
    entity_id: str
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]
    sequence: int = 0
    user_id: Optional[str] = None

    def __post_init__(self):
        self.metadata = _json_safe(self.metadata or {})

    def calculate_hash(self) -> str:
        """SHA-256 over every field except ``current_hash``"""
        payload = {
            "id": self.id,
            "sequence": self.sequence,
            "created_at": self.created_at.isoformat(),
            "event_type": self.event_type.value,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "previous_hash": self.previous_hash,
            "user_id": self.user_id,
            "metadata": self.metadata,
        }
        encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(encoded.encode("utf-8")).hexdigest()

    def verify_hash(self) -> bool:
        return self.current_hash == self.calculate_hash()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditEvent":
        return cls(
            id=data["id"],
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            event_type=AuditEventType(data["event_type"]),
            entity_type=data["entity_type"],
            entity_id=data["entity_id"],
            previous_hash=data["previous_hash"],
            current_hash=data["current_hash"],
            metadata=data.get("metadata", {}),
            sequence=data.get("sequence", 0),
            user_id=data.get("user_id"),
        )


class AuditTrail:
    """
    Hash-chained audit trail for tamper detection
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events",
                 enabled: bool = True):
        self.storage = storage
        self.table_name = table_name
        self.enabled = enabled
        self._lock = threading.Lock()

    def _load_events(self) -> List[AuditEvent]:
        events = [AuditEvent.from_dict(data) for data in self.storage.load_all(self.table_name)]
        events.sort(key=lambda e: e.sequence)
        return events

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None
    ) -> Optional[AuditEvent]:
        """
        Append an event to the chain.

        Returns the stored event, or None when audit logging is disabled.
        """
        if not self.enabled:
            return None

        with self._lock:
            now = datetime.now(timezone.utc)
            events = self._load_events()
            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=events[-1].current_hash if events else "",
                current_hash="",
                metadata=metadata or {},
                sequence=len(events) + 1,
                user_id=user_id,
            )
            event.current_hash = event.calculate_hash()
            self.storage.insert(self.table_name, event.id, event.to_dict())
            return event

    def get_events_for_entity(self, entity_type: str, entity_id: str) -> List[AuditEvent]:
        """Events for one entity, oldest first"""
        rows = self.storage.find(self.table_name, {"entity_type": entity_type, "entity_id": entity_id})
        events = [AuditEvent.from_dict(data) for data in rows]
        events.sort(key=lambda e: e.sequence)
        return events

    def get_events_by_type(self, event_type: AuditEventType) -> List[AuditEvent]:
        return [e for e in self._load_events() if e.event_type == event_type]

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Recompute every hash and walk the chain.

        Returns:
            Dict with ``valid``, ``total_events``, ``hash_errors`` and ``chain_breaks``
        """
        result = {"valid": True, "total_events": 0, "hash_errors": [], "chain_breaks": []}
        events = self._load_events()
        result["total_events"] = len(events)

        previous_hash = ""
        for position, event in enumerate(events):
            if not event.verify_hash():
                result["valid"] = False
                result["hash_errors"].append({"event_id": event.id, "position": position})
            if event.previous_hash != previous_hash:
                result["valid"] = False
                result["chain_breaks"].append({"event_id": event.id, "position": position})
            previous_hash = event.current_hash

        return result
