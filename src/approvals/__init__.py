"""Approval Workflow Engine.

Multi-step, multi-approver sign-off for tender artefacts (bids, pricing,
documents). Templates define ordered steps; requests walk those steps
one at a time as approvers record decisions.
"""

from .config import (
    EVENT_TOPICS,
    AggregationPolicy,
    ApproverKind,
    AuditAction,
    DecisionType,
    EngineConfig,
    RejectPolicy,
    RequestStatus,
    Verdict,
)
from .errors import (
    ERROR_STATUS_MAP,
    ApprovalError,
    AuthorizationError,
    ConflictError,
    DirectoryUnavailableError,
    EngineInfrastructureError,
    ErrorCode,
    InvalidStateError,
    InvalidTemplateError,
    LockTimeoutError,
    NotFoundError,
    StaleStateError,
    StorageError,
    ValidationError,
)
from .templates import (
    ApproverSpec,
    StepDefinition,
    WorkflowCatalog,
    WorkflowTemplate,
    validate_steps,
)
from .request import ApprovalRequest, RequestFilters, RequestSnapshot, SubjectRef
from .resolver import ApproverResolver, InMemoryRoleDirectory, RoleDirectory
from .ledger import Decision, DecisionLedger
from .evaluator import StepEvaluator
from .audit import AuditEntry, AuditTrail
from .comments import CommentThread, RequestComment
from .locks import ReadWriteLock, RequestLockRegistry
from .notifications import (
    ApprovalEvent,
    EventSink,
    LoggingEventSink,
    NullEventSink,
    RecordingEventSink,
    SubscriberEventSink,
    Subscription,
    publish_safely,
)
from .store import ApprovalStore, InMemoryApprovalStore
from .sql_store import SqlAlchemyApprovalStore
from .lifecycle import RequestLifecycleManager, TransitionResult
from .engine import ApprovalEngine

__all__ = [
    # Config
    "EVENT_TOPICS",
    "AggregationPolicy",
    "ApproverKind",
    "AuditAction",
    "DecisionType",
    "EngineConfig",
    "RejectPolicy",
    "RequestStatus",
    "Verdict",
    # Errors
    "ERROR_STATUS_MAP",
    "ApprovalError",
    "AuthorizationError",
    "ConflictError",
    "DirectoryUnavailableError",
    "EngineInfrastructureError",
    "ErrorCode",
    "InvalidStateError",
    "InvalidTemplateError",
    "LockTimeoutError",
    "NotFoundError",
    "StaleStateError",
    "StorageError",
    "ValidationError",
    # Templates
    "ApproverSpec",
    "StepDefinition",
    "WorkflowCatalog",
    "WorkflowTemplate",
    "validate_steps",
    # Requests
    "ApprovalRequest",
    "RequestFilters",
    "RequestSnapshot",
    "SubjectRef",
    # Resolution, decisions, evaluation
    "ApproverResolver",
    "InMemoryRoleDirectory",
    "RoleDirectory",
    "Decision",
    "DecisionLedger",
    "StepEvaluator",
    # Audit & comments
    "AuditEntry",
    "AuditTrail",
    "CommentThread",
    "RequestComment",
    # Concurrency
    "ReadWriteLock",
    "RequestLockRegistry",
    # Notifications
    "ApprovalEvent",
    "EventSink",
    "LoggingEventSink",
    "NullEventSink",
    "RecordingEventSink",
    "SubscriberEventSink",
    "Subscription",
    "publish_safely",
    # Storage
    "ApprovalStore",
    "InMemoryApprovalStore",
    "SqlAlchemyApprovalStore",
    # Core
    "RequestLifecycleManager",
    "TransitionResult",
    "ApprovalEngine",
]
