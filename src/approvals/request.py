"""Approval request entities."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from .config import RequestStatus
from .ledger import Decision


@dataclass(frozen=True)
class SubjectRef:
    """Opaque reference to the thing being approved (bid, price, document)."""

    entity_type: str
    entity_id: str
    title: str
    description: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "title": self.title,
            "description": self.description,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SubjectRef":
        return cls(
            entity_type=data["entity_type"],
            entity_id=data["entity_id"],
            title=data["title"],
            description=data.get("description", ""),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class ApprovalRequest:
    """Mutable request state, written only by the lifecycle manager."""

    template_id: str
    requester_id: str
    org_id: str
    subject: SubjectRef
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])
    status: RequestStatus = RequestStatus.DRAFT
    current_step_index: Optional[int] = None
    is_urgent: bool = False
    due_date: Optional[datetime] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    submitted_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    version: int = 0


@dataclass(frozen=True)
class RequestFilters:
    """Filters for listing requests. Unset fields match everything."""

    status: Optional[RequestStatus] = None
    requester_id: Optional[str] = None
    org_id: Optional[str] = None
    entity_type: Optional[str] = None
    template_id: Optional[str] = None
    due_before: Optional[datetime] = None

    def matches(self, request: ApprovalRequest) -> bool:
        if self.status is not None and request.status != self.status:
            return False
        if self.requester_id and request.requester_id != self.requester_id:
            return False
        if self.org_id and request.org_id != self.org_id:
            return False
        if self.entity_type and request.subject.entity_type != self.entity_type:
            return False
        if self.template_id and request.template_id != self.template_id:
            return False
        if self.due_before is not None and (
            request.due_date is None or request.due_date > self.due_before
        ):
            return False
        return True


@dataclass(frozen=True)
class RequestSnapshot:
    """Read-only view of a request returned to callers."""

    request_id: str
    template_id: str
    template_name: str
    requester_id: str
    org_id: str
    subject: SubjectRef
    status: RequestStatus
    current_step_index: Optional[int]
    current_step_name: Optional[str]
    step_count: int
    is_urgent: bool
    due_date: Optional[datetime]
    created_at: datetime
    submitted_at: Optional[datetime]
    completed_at: Optional[datetime]
    version: int
    decisions: Tuple[Decision, ...] = ()
    can_decide: bool = False
    is_requester: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def is_overdue(self) -> bool:
        """Past its due date and still awaiting a final outcome."""
        if self.due_date is None or self.is_terminal:
            return False
        return self.due_date < datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "template_id": self.template_id,
            "template_name": self.template_name,
            "requester_id": self.requester_id,
            "org_id": self.org_id,
            "subject": self.subject.to_dict(),
            "status": self.status.value,
            "current_step_index": self.current_step_index,
            "current_step_name": self.current_step_name,
            "step_count": self.step_count,
            "is_urgent": self.is_urgent,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "is_overdue": self.is_overdue,
            "created_at": self.created_at.isoformat(),
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "version": self.version,
            "decisions": [d.to_dict() for d in self.decisions],
            "can_decide": self.can_decide,
            "is_requester": self.is_requester,
        }
