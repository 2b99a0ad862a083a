"""Approval Workflow Engine - public facade.

Wires the catalog, resolver, ledger, evaluator, lifecycle manager, audit
trail and comment thread over one store, and exposes the operations the
host application's request handlers call.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Union

from src.logging_config import LogContext, log_performance

from .audit import AuditEntry, AuditTrail
from .comments import CommentThread, RequestComment
from .config import DecisionType, EngineConfig, RequestStatus
from .errors import ApprovalError, ValidationError
from .evaluator import StepEvaluator
from .ledger import DecisionLedger
from .lifecycle import RequestLifecycleManager
from .locks import RequestLockRegistry
from .notifications import EventSink
from .request import ApprovalRequest, RequestFilters, RequestSnapshot, SubjectRef
from .resolver import ApproverResolver, InMemoryRoleDirectory, RoleDirectory
from .store import ApprovalStore, InMemoryApprovalStore
from .templates import StepDefinition, WorkflowCatalog, WorkflowTemplate

logger = logging.getLogger(__name__)

_timed = log_performance(expected=(ApprovalError,))


class ApprovalEngine:
    """Entry point for creating templates and driving approval requests."""

    def __init__(
        self,
        store: Optional[ApprovalStore] = None,
        directory: Optional[RoleDirectory] = None,
        event_sink: Optional[EventSink] = None,
        config: Optional[EngineConfig] = None,
    ):
        self.config = config or EngineConfig()
        self.store = store if store is not None else InMemoryApprovalStore()
        self.directory = directory if directory is not None else InMemoryRoleDirectory()
        self.event_sink = event_sink if self.config.publish_events else None

        self.catalog = WorkflowCatalog(self.store)
        self.resolver = ApproverResolver(self.directory)
        self.ledger = DecisionLedger(self.store)
        self.evaluator = StepEvaluator()
        self.audit = AuditTrail(
            self.store,
            hash_chain=self.config.audit_hash_chain,
            genesis_hash=self.config.genesis_hash,
        )
        self.locks = RequestLockRegistry(timeout_seconds=self.config.lock_timeout_seconds)
        self.lifecycle = RequestLifecycleManager(
            store=self.store,
            catalog=self.catalog,
            resolver=self.resolver,
            ledger=self.ledger,
            audit=self.audit,
            locks=self.locks,
            evaluator=self.evaluator,
            event_sink=self.event_sink,
        )
        self.comment_thread = CommentThread(self.store, max_length=self.config.max_comment_length)

    @classmethod
    def from_settings(
        cls,
        settings=None,
        directory: Optional[RoleDirectory] = None,
        event_sink: Optional[EventSink] = None,
    ) -> "ApprovalEngine":
        """Build an engine from platform settings.

        With ``use_database`` set, requests are persisted through SQLAlchemy
        at ``database_url``; otherwise an in-memory store is used.
        """
        if settings is None:
            from src.settings import get_settings

            settings = get_settings()

        store: ApprovalStore
        if settings.use_database:
            from .sql_store import SqlAlchemyApprovalStore

            store = SqlAlchemyApprovalStore.from_url(
                settings.database_url, echo=settings.database_echo,
            )
        else:
            store = InMemoryApprovalStore()

        return cls(
            store=store,
            directory=directory,
            event_sink=event_sink,
            config=EngineConfig.from_settings(settings),
        )

    # ── Workflow catalog ─────────────────────────────────────────────

    @_timed
    def create_template(
        self,
        name: str,
        steps: Iterable[StepDefinition],
        description: str = "",
        created_by: Optional[str] = None,
    ) -> str:
        """Create an immutable template and return its id."""
        with LogContext(operation="create_template", actor_id=created_by):
            return self.catalog.create_template(
                name, steps, description=description, created_by=created_by,
            ).template_id

    @_timed
    def derive_template(
        self,
        base_template_id: str,
        steps: Optional[Iterable[StepDefinition]] = None,
        name: Optional[str] = None,
        description: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> str:
        """Create the next version of a template and return the new id."""
        with LogContext(operation="derive_template", actor_id=created_by):
            return self.catalog.derive_template(
                base_template_id, steps=steps, name=name,
                description=description, created_by=created_by,
            ).template_id

    def get_template(self, template_id: str) -> WorkflowTemplate:
        return self.catalog.get_template(template_id)

    def list_templates(self) -> List[WorkflowTemplate]:
        return self.catalog.list_templates()

    # ── Request lifecycle ────────────────────────────────────────────

    @_timed
    def submit(
        self,
        template_id: str,
        requester_id: str,
        subject: Union[SubjectRef, Dict[str, Any]],
        org_id: str,
        is_urgent: bool = False,
        due_date: Optional[datetime] = None,
    ) -> str:
        """Start approval of *subject*; the request begins at step 0.

        Returns:
            The new request id.
        """
        with LogContext(operation="submit", actor_id=requester_id, org_id=org_id):
            result = self.lifecycle.create_and_submit(
                template_id, requester_id, org_id, _as_subject(subject),
                is_urgent, due_date,
            )
            return result.request.request_id

    @_timed
    def create_draft(
        self,
        template_id: str,
        requester_id: str,
        subject: Union[SubjectRef, Dict[str, Any]],
        org_id: str,
        is_urgent: bool = False,
        due_date: Optional[datetime] = None,
    ) -> str:
        """Create a DRAFT request to be submitted later with ``submit_draft``."""
        with LogContext(operation="create_draft", actor_id=requester_id, org_id=org_id):
            result = self.lifecycle.create_draft(
                template_id, requester_id, org_id, _as_subject(subject),
                is_urgent, due_date,
            )
            return result.request.request_id

    @_timed
    def submit_draft(self, request_id: str, requester_id: str) -> RequestSnapshot:
        with LogContext(operation="submit_draft", approval_request_id=request_id,
                        actor_id=requester_id):
            result = self.lifecycle.submit(request_id, requester_id)
            return self._snapshot(result.request, viewer_id=requester_id)

    @_timed
    def decide(
        self,
        request_id: str,
        approver_id: str,
        decision: Union[DecisionType, str],
        comment: Optional[str] = None,
        step_index: Optional[int] = None,
        attachments: Iterable[str] = (),
    ) -> RequestSnapshot:
        """Record *approver_id*'s decision on the current step.

        *attachments* are document references (ids or URLs) stored with the
        decision as given.

        Raises:
            AuthorizationError, ConflictError, InvalidStateError, ValidationError
        """
        with LogContext(operation="decide", approval_request_id=request_id,
                        actor_id=approver_id):
            result = self.lifecycle.decide(
                request_id, approver_id, _as_decision(decision), comment, step_index,
                _as_attachments(attachments),
            )
            return self._snapshot(result.request, viewer_id=approver_id)

    @_timed
    def cancel(
        self, request_id: str, requester_id: str, reason: Optional[str] = None,
    ) -> RequestSnapshot:
        with LogContext(operation="cancel", approval_request_id=request_id,
                        actor_id=requester_id):
            result = self.lifecycle.cancel(request_id, requester_id, reason)
            return self._snapshot(result.request, viewer_id=requester_id)

    # ── Reads ────────────────────────────────────────────────────────

    def get_request(self, request_id: str, viewer_id: Optional[str] = None) -> RequestSnapshot:
        """Current state, decisions so far, and whether *viewer_id* may decide."""
        return self._snapshot(self.lifecycle.get(request_id), viewer_id=viewer_id)

    def history(self, request_id: str) -> List[AuditEntry]:
        self.lifecycle.get(request_id)
        return self.audit.history(request_id)

    def verify_audit(self, request_id: str) -> bool:
        self.lifecycle.get(request_id)
        return self.audit.verify_integrity(request_id)

    def list_requests(
        self,
        filters: Optional[RequestFilters] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[RequestSnapshot]:
        """Requests matching *filters*, newest first."""
        limit = min(limit or self.config.default_page_size, self.config.max_page_size)
        requests = self.store.list_requests(filters or RequestFilters(), limit, max(0, offset))
        return [self._snapshot(r) for r in requests]

    def pending_for(self, approver_id: str, org_id: Optional[str] = None) -> List[RequestSnapshot]:
        """In-progress requests awaiting a decision from *approver_id*."""
        filters = RequestFilters(status=RequestStatus.IN_PROGRESS, org_id=org_id)
        pending: List[RequestSnapshot] = []
        offset = 0
        page_size = self.config.max_page_size
        while True:
            page = self.store.list_requests(filters, page_size, offset)
            for request in page:
                snapshot = self._snapshot(request, viewer_id=approver_id)
                if snapshot.can_decide:
                    pending.append(snapshot)
            if len(page) < page_size:
                break
            offset += page_size
        return pending

    # ── Comments ─────────────────────────────────────────────────────

    def add_comment(
        self,
        request_id: str,
        author_id: str,
        content: str,
        parent_id: Optional[str] = None,
        mentions: Iterable[str] = (),
    ) -> RequestComment:
        with LogContext(operation="add_comment", approval_request_id=request_id,
                        actor_id=author_id):
            self.lifecycle.get(request_id)
            return self.comment_thread.post(
                request_id, author_id, content, parent_id=parent_id, mentions=mentions,
            )

    def comments(self, request_id: str) -> List[RequestComment]:
        self.lifecycle.get(request_id)
        return self.comment_thread.list(request_id)

    # ── Internals ────────────────────────────────────────────────────

    def _snapshot(
        self, request: ApprovalRequest, viewer_id: Optional[str] = None,
    ) -> RequestSnapshot:
        template = self.catalog.get_template(request.template_id)
        decisions = self.ledger.decisions_for(request.request_id)

        can_decide = False
        if viewer_id and request.status == RequestStatus.IN_PROGRESS:
            _, eligible = self.lifecycle.eligible_for_current_step(request)
            already = any(
                d.approver_id == viewer_id and d.step_index == request.current_step_index
                for d in decisions
            )
            can_decide = viewer_id in eligible and not already

        step_name = None
        if request.current_step_index is not None:
            step_name = template.step(request.current_step_index).display_name

        return RequestSnapshot(
            request_id=request.request_id,
            template_id=request.template_id,
            template_name=template.name,
            requester_id=request.requester_id,
            org_id=request.org_id,
            subject=request.subject,
            status=request.status,
            current_step_index=request.current_step_index,
            current_step_name=step_name,
            step_count=template.step_count,
            is_urgent=request.is_urgent,
            due_date=request.due_date,
            created_at=request.created_at,
            submitted_at=request.submitted_at,
            completed_at=request.completed_at,
            version=request.version,
            decisions=tuple(sorted(decisions, key=lambda d: d.decided_at)),
            can_decide=can_decide,
            is_requester=viewer_id is not None and viewer_id == request.requester_id,
        )


def _as_decision(decision: Union[DecisionType, str]) -> DecisionType:
    try:
        return DecisionType(decision)
    except ValueError as exc:
        allowed = ", ".join(d.value for d in DecisionType)
        raise ValidationError(
            f"Invalid decision {decision!r}; expected one of: {allowed}", field="decision",
        ) from exc


def _as_subject(subject: Union[SubjectRef, Dict[str, Any]]) -> SubjectRef:
    if isinstance(subject, SubjectRef):
        return subject
    try:
        return SubjectRef.from_dict(subject)
    except KeyError as exc:
        field = exc.args[0]
        raise ValidationError(f"subject.{field} is required", field=field) from exc


def _as_attachments(attachments: Iterable[str]) -> List[str]:
    if isinstance(attachments, str):
        raise ValidationError("attachments must be a list of references", field="attachments")
    refs = list(attachments)
    for ref in refs:
        if not isinstance(ref, str) or not ref.strip():
            raise ValidationError(
                "attachment references must be non-empty strings", field="attachments",
            )
    return refs
