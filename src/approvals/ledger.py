"""Approval Workflow Engine - Decision Ledger."""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .config import DecisionType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Decision:
    """One approver's immutable decision on one step of one request."""

    request_id: str
    step_index: int
    approver_id: str
    decision: DecisionType
    comment: Optional[str] = None
    attachments: Tuple[str, ...] = ()
    decision_id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])
    decided_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def key(self):
        return (self.request_id, self.step_index, self.approver_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "decision_id": self.decision_id,
            "request_id": self.request_id,
            "step_index": self.step_index,
            "approver_id": self.approver_id,
            "decision": self.decision.value,
            "comment": self.comment,
            "attachments": list(self.attachments),
            "decided_at": self.decided_at.isoformat(),
        }


class DecisionLedger:
    """Append-only record of decisions, unique per (request, step, approver).

    Uniqueness is enforced by the store's atomic insert, never by a
    separate lookup, so two racing submissions by the same approver cannot
    both succeed.
    """

    def __init__(self, store):
        self._store = store

    def record(
        self,
        request_id: str,
        step_index: int,
        approver_id: str,
        decision: DecisionType,
        comment: Optional[str] = None,
        attachments: Iterable[str] = (),
    ) -> Decision:
        """Persist a decision.

        *attachments* are opaque references (document ids or URLs) kept
        with the decision; the engine never dereferences them.

        Raises:
            ConflictError: if the approver already decided on this step.
        """
        entry = Decision(
            request_id=request_id,
            step_index=step_index,
            approver_id=approver_id,
            decision=DecisionType(decision),
            comment=comment,
            attachments=tuple(attachments),
        )
        self._store.insert_decision(entry)
        logger.info(
            "Recorded %s by %s on request %s step %d",
            entry.decision.value, approver_id, request_id, step_index,
        )
        return entry

    def decisions_for(
        self, request_id: str, step_index: Optional[int] = None,
    ) -> List[Decision]:
        """Decisions on a request (optionally one step), oldest first."""
        return self._store.list_decisions(request_id, step_index)

    def has_decided(self, request_id: str, step_index: int, approver_id: str) -> bool:
        return any(
            d.approver_id == approver_id
            for d in self._store.list_decisions(request_id, step_index)
        )
