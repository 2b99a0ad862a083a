"""Approval Workflow Engine - Audit Trail.

Append-only, per-request log with a SHA-256 hash chain. Sequence numbers
are monotonic per request and are assigned by the caller's transition,
which holds the request's exclusive lock, so sequence order is causal
order.
"""

import hashlib
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .config import AuditAction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditEntry:
    """Immutable record of one request transition."""

    request_id: str
    sequence: int
    action: AuditAction
    actor_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    entry_id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])
    previous_hash: str = ""
    entry_hash: str = ""

    def compute_hash(self, previous_hash: str) -> str:
        """hash = SHA-256(previous_hash + request_id + sequence + action + actor
        + timestamp + canonical JSON of details)"""
        payload = (
            f"{previous_hash}{self.request_id}{self.sequence}"
            f"{self.action.value}{self.actor_id or ''}{self.timestamp.isoformat()}"
            f"{json.dumps(self.details, sort_keys=True, default=str)}"
        )
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entry_id": self.entry_id,
            "request_id": self.request_id,
            "sequence": self.sequence,
            "action": self.action.value,
            "actor_id": self.actor_id,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
            "previous_hash": self.previous_hash,
            "entry_hash": self.entry_hash,
        }


class AuditTrail:
    """Appends and reads per-request audit history."""

    def __init__(self, store, hash_chain: bool = True, genesis_hash: str = "genesis"):
        self._store = store
        self._hash_chain = hash_chain
        self._genesis_hash = genesis_hash

    def next_entry(
        self,
        request_id: str,
        action: AuditAction,
        actor_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditEntry:
        """Build, without storing, the entry that follows the request's last one.

        Used by transitions that write the entry together with the request.
        The caller must hold the request's exclusive lock.
        """
        previous = self._store.list_audit_entries(request_id)
        last = previous[-1] if previous else None
        entry = AuditEntry(
            request_id=request_id,
            sequence=last.sequence + 1 if last else 1,
            action=AuditAction(action),
            actor_id=actor_id,
            details=dict(details or {}),
        )
        if self._hash_chain:
            previous_hash = last.entry_hash if last else self._genesis_hash
            entry = _with_hash(entry, previous_hash)
        return entry

    def append(
        self,
        request_id: str,
        action: AuditAction,
        actor_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditEntry:
        """Append the next entry for *request_id*.

        The caller must hold the request's exclusive lock.
        """
        entry = self.next_entry(request_id, action, actor_id, details)
        self._store.insert_audit_entry(entry)
        logger.debug(
            "Audit %s #%d %s by %s",
            request_id, entry.sequence, entry.action.value, actor_id or "system",
        )
        return entry

    def history(self, request_id: str) -> List[AuditEntry]:
        """All entries for *request_id* in sequence order."""
        return sorted(self._store.list_audit_entries(request_id), key=lambda e: e.sequence)

    def verify_integrity(self, request_id: str) -> bool:
        """True if the request's hash chain and sequence are intact."""
        issues = self.find_tampering(request_id)
        for issue in issues:
            logger.error(
                "Audit chain broken for request %s at sequence %s: %s",
                request_id, issue["sequence"], issue["type"],
            )
        return not issues

    def find_tampering(self, request_id: str) -> List[Dict[str, Any]]:
        """Describe every broken link in the request's audit chain."""
        issues: List[Dict[str, Any]] = []
        previous_hash = self._genesis_hash
        for expected_seq, entry in enumerate(self.history(request_id), start=1):
            if entry.sequence != expected_seq:
                issues.append({
                    "sequence": entry.sequence,
                    "expected_sequence": expected_seq,
                    "type": "sequence_gap",
                })
            if self._hash_chain:
                if entry.previous_hash != previous_hash:
                    issues.append({
                        "sequence": entry.sequence,
                        "expected_previous": previous_hash,
                        "actual_previous": entry.previous_hash,
                        "type": "chain_break",
                    })
                expected_hash = entry.compute_hash(previous_hash)
                if entry.entry_hash != expected_hash:
                    issues.append({
                        "sequence": entry.sequence,
                        "expected_hash": expected_hash,
                        "actual_hash": entry.entry_hash,
                        "type": "hash_mismatch",
                    })
                previous_hash = entry.entry_hash
        return issues


def _with_hash(entry: AuditEntry, previous_hash: str) -> AuditEntry:
    return AuditEntry(
        request_id=entry.request_id,
        sequence=entry.sequence,
        action=entry.action,
        actor_id=entry.actor_id,
        details=entry.details,
        timestamp=entry.timestamp,
        entry_id=entry.entry_id,
        previous_hash=previous_hash,
        entry_hash=entry.compute_hash(previous_hash),
    )
