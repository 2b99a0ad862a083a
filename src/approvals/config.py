"""Approval Workflow Engine - Configuration and enumerations."""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class RequestStatus(str, Enum):
    """Lifecycle status of an approval request."""

    DRAFT = "draft"
    IN_PROGRESS = "in_progress"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            RequestStatus.APPROVED,
            RequestStatus.REJECTED,
            RequestStatus.CANCELLED,
        )


class DecisionType(str, Enum):
    """A single approver's answer on a step."""

    APPROVED = "approved"
    REJECTED = "rejected"
    CHANGES_REQUESTED = "changes_requested"

    @property
    def is_approval(self) -> bool:
        return self is DecisionType.APPROVED


class AggregationPolicy(str, Enum):
    """How per-approver decisions combine into a step verdict."""

    ALL = "all"
    ANY = "any"
    THRESHOLD = "threshold"


class RejectPolicy(str, Enum):
    """What a blocked step does to its request.

    RETURN_TO_PREVIOUS_STEP reopens the earlier step without clearing its
    decisions. Each approver still decides at most once per step, so if
    every eligible approver of the earlier step has already decided, the
    request stays IN_PROGRESS until the role directory adds a new member
    or the requester cancels. On step 0 it rejects the request.
    """

    TERMINATE_REQUEST = "terminate_request"
    RETURN_TO_PREVIOUS_STEP = "return_to_previous_step"


class ApproverKind(str, Enum):
    """Kind of approver specification on a step."""

    USER = "user"
    ROLE = "role"


class Verdict(str, Enum):
    """Step Evaluator output."""

    PENDING = "pending"
    SATISFIED = "satisfied"
    BLOCKED = "blocked"


class AuditAction(str, Enum):
    """Actions recorded in a request's audit trail."""

    CREATED = "created"
    SUBMITTED = "submitted"
    DECISION_RECORDED = "decision_recorded"
    STEP_ADVANCED = "step_advanced"
    STEP_RETURNED = "step_returned"
    REQUEST_APPROVED = "request_approved"
    REQUEST_REJECTED = "request_rejected"
    REQUEST_CANCELLED = "request_cancelled"


# Topic published to the event sink for each audit action.
EVENT_TOPICS = {
    AuditAction.CREATED: "request.created",
    AuditAction.SUBMITTED: "request.submitted",
    AuditAction.DECISION_RECORDED: "decision.recorded",
    AuditAction.STEP_ADVANCED: "step.advanced",
    AuditAction.STEP_RETURNED: "step.returned",
    AuditAction.REQUEST_APPROVED: "request.approved",
    AuditAction.REQUEST_REJECTED: "request.rejected",
    AuditAction.REQUEST_CANCELLED: "request.cancelled",
}


@dataclass
class EngineConfig:
    """Runtime configuration for the approval engine."""

    lock_timeout_seconds: float = 10.0
    audit_hash_chain: bool = True
    genesis_hash: str = "genesis"
    publish_events: bool = True
    default_page_size: int = 50
    max_page_size: int = 500
    max_comment_length: int = 5000

    @classmethod
    def from_settings(cls, settings: Optional[Any] = None) -> "EngineConfig":
        """Build an engine config from the platform settings object."""
        if settings is None:
            from src.settings import get_settings

            settings = get_settings()
        return cls(
            lock_timeout_seconds=settings.lock_timeout_seconds,
            audit_hash_chain=settings.audit_hash_chain,
            publish_events=settings.publish_events,
            default_page_size=settings.default_page_size,
            max_page_size=settings.max_page_size,
            max_comment_length=settings.max_comment_length,
        )
