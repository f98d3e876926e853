"""
Audit Trail Module

Append-only, SHA-256 hash-chained record of ledger activity: account
lifecycle changes, every transaction status transition and reward accruals.
Each event carries a sequence number and the hash of the event before it, so
an edited, removed or reordered event breaks verification.
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

from .storage import StorageInterface, StorageRecord

GENESIS_HASH = ""


class AuditEventType(Enum):
    # Accounts
    ACCOUNT_OPENED = "account_opened"
    ACCOUNT_SEEDED = "account_seeded"
    ACCOUNT_DEACTIVATED = "account_deactivated"

    # Transactions
    TRANSACTION_CREATED = "transaction_created"
    TRANSACTION_COMPLETED = "transaction_completed"
    TRANSACTION_FAILED = "transaction_failed"
    TRANSACTION_CANCELLED = "transaction_cancelled"

    # Rewards
    REWARDS_ACCRUED = "rewards_accrued"
    REWARDS_ACCRUAL_FAILED = "rewards_accrual_failed"


def _plain(value: Any) -> Any:
    """Reduce metadata to JSON types so the hash is stable across storage"""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


@dataclass
class AuditEvent(StorageRecord):
    """One link of the audit chain"""
    sequence: int
    event_type: AuditEventType
    entity_type: str  # account, transaction, rewards
    entity_id: str
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]
    user_id: Optional[str] = None

    def __post_init__(self):
        self.metadata = _plain(self.metadata or {})

    def calculate_hash(self) -> str:
        payload = {
            "id": self.id,
            "sequence": self.sequence,
            "created_at": self.created_at.isoformat(),
            "event_type": self.event_type.value,
            "entity": f"{self.entity_type}:{self.entity_id}",
            "user_id": self.user_id,
            "previous_hash": self.previous_hash,
            "metadata": self.metadata,
        }
        canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def verify_hash(self) -> bool:
        return self.current_hash == self.calculate_hash()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        return cls(
            id=data["id"],
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            sequence=data["sequence"],
            event_type=AuditEventType(data["event_type"]),
            entity_type=data["entity_type"],
            entity_id=data["entity_id"],
            previous_hash=data["previous_hash"],
            current_hash=data["current_hash"],
            metadata=data.get("metadata") or {},
            user_id=data.get("user_id"),
        )


@dataclass
class IntegrityReport:
    """Outcome of walking the whole chain"""
    total_events: int = 0
    hash_errors: List[Dict[str, Any]] = field(default_factory=list)
    chain_breaks: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.hash_errors and not self.chain_breaks


class AuditTrail:
    """
    Hash-chained audit log.

    Appends are serialized; the chain tip (last sequence and hash) is held in
    memory and recovered from storage when the trail is constructed.
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events"):
        self.storage = storage
        self.table_name = table_name
        self._append_lock = threading.Lock()
        self._tip_sequence = 0
        self._tip_hash = GENESIS_HASH

        events = self.storage.load_all(self.table_name)
        if events:
            tip = max(events, key=lambda data: data["sequence"])
            self._tip_sequence = tip["sequence"]
            self._tip_hash = tip["current_hash"]

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None
    ) -> AuditEvent:
        """
        Append an event to the chain.

        Args:
            event_type: What happened
            entity_type: Kind of record affected (account, transaction, rewards)
            entity_id: Id of that record
            metadata: Event details; Decimals and enums are stored as strings
            user_id: User who caused the event, if any

        Returns:
            The stored AuditEvent
        """
        with self._append_lock:
            now = datetime.now(timezone.utc)
            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                sequence=self._tip_sequence + 1,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=self._tip_hash,
                current_hash="",
                metadata=metadata or {},
                user_id=user_id
            )
            event.current_hash = event.calculate_hash()
            self.storage.save(self.table_name, event.id, event.to_dict())

            self._tip_sequence = event.sequence
            self._tip_hash = event.current_hash
        return event

    @staticmethod
    def _in_chain_order(records: List[Dict[str, Any]]) -> List[AuditEvent]:
        return sorted((AuditEvent.from_dict(data) for data in records), key=lambda e: e.sequence)

    def get_events_for_entity(self, entity_type: str, entity_id: str) -> List[AuditEvent]:
        """Events about one record, oldest first"""
        return self._in_chain_order(self.storage.find(self.table_name, {
            "entity_type": entity_type,
            "entity_id": entity_id
        }))

    def get_all_events(self, limit: Optional[int] = None) -> List[AuditEvent]:
        """The chain, oldest first; with limit, only the latest events"""
        events = self._in_chain_order(self.storage.load_all(self.table_name))
        return events[-limit:] if limit else events

    def verify_integrity(self) -> IntegrityReport:
        """Recompute every hash and check each link points at its predecessor"""
        events = self.get_all_events()
        report = IntegrityReport(total_events=len(events))

        expected_previous = GENESIS_HASH
        for event in events:
            if not event.verify_hash():
                report.hash_errors.append({
                    "event_id": event.id,
                    "sequence": event.sequence,
                    "stored_hash": event.current_hash,
                    "computed_hash": event.calculate_hash()
                })
            if event.previous_hash != expected_previous:
                report.chain_breaks.append({
                    "event_id": event.id,
                    "sequence": event.sequence,
                    "expected_previous_hash": expected_previous,
                    "found_previous_hash": event.previous_hash
                })
            expected_previous = event.current_hash

        return report

    def count_events(self) -> int:
        return self.storage.count(self.table_name)
