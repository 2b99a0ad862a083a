"""Approval Workflow Engine - SQLAlchemy store.

Persists templates, requests, decisions, audit entries and comments in
the ``approval_*`` tables. Decision uniqueness and audit sequence
uniqueness are enforced by database constraints, and request writes are
a conditional UPDATE on the version column committed in the same
transaction as the audit row it produces.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from src.db import (
    ApprovalAuditRow,
    ApprovalCommentRow,
    ApprovalDecisionRow,
    ApprovalRequestRow,
    Base,
    WorkflowTemplateRow,
    create_db_engine,
    get_session_factory,
)

from .audit import AuditEntry
from .comments import RequestComment
from .config import AuditAction, DecisionType, RequestStatus
from .errors import ConflictError, StorageError
from .ledger import Decision
from .request import ApprovalRequest, RequestFilters, SubjectRef
from .templates import StepDefinition, WorkflowTemplate

logger = logging.getLogger(__name__)


class SqlAlchemyApprovalStore:
    """ApprovalStore backed by a relational database."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    @classmethod
    def from_url(
        cls, url: str, echo: bool = False, create_schema: bool = True,
    ) -> "SqlAlchemyApprovalStore":
        """Connect to *url*, creating the tables if *create_schema* is set.

        Production deployments run the alembic migrations instead.
        """
        engine = create_db_engine(url, echo=echo)
        if create_schema:
            Base.metadata.create_all(engine)
        return cls(get_session_factory(engine))

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except IntegrityError:
            session.rollback()
            raise
        except SQLAlchemyError as exc:
            session.rollback()
            logger.error("Approval store operation failed: %s", exc)
            raise StorageError(str(exc)) from exc
        finally:
            session.close()

    # ── Templates ────────────────────────────────────────────────────

    def save_template(self, template: WorkflowTemplate) -> None:
        try:
            with self._session() as session:
                session.add(WorkflowTemplateRow(
                    template_id=template.template_id,
                    name=template.name,
                    description=template.description,
                    steps=[s.to_dict() for s in template.steps],
                    created_by=template.created_by,
                    created_at=template.created_at,
                    version=template.version,
                    parent_template_id=template.parent_template_id,
                ))
        except IntegrityError as exc:
            raise ConflictError(f"Template {template.template_id} already exists") from exc

    def get_template(self, template_id: str) -> Optional[WorkflowTemplate]:
        with self._session() as session:
            row = session.get(WorkflowTemplateRow, template_id)
            return _template_from_row(row) if row is not None else None

    def list_templates(self) -> List[WorkflowTemplate]:
        with self._session() as session:
            rows = session.query(WorkflowTemplateRow).order_by(
                WorkflowTemplateRow.created_at
            ).all()
            return [_template_from_row(r) for r in rows]

    # ── Requests ─────────────────────────────────────────────────────

    def insert_request(
        self, request: ApprovalRequest, audit_entry: Optional[AuditEntry] = None,
    ) -> None:
        try:
            with self._session() as session:
                session.add(_request_to_row(request))
                if audit_entry is not None:
                    session.flush()
                    session.add(_audit_to_row(audit_entry))
        except IntegrityError as exc:
            raise ConflictError(f"Request {request.request_id} already exists") from exc

    def get_request(self, request_id: str) -> Optional[ApprovalRequest]:
        with self._session() as session:
            row = session.get(ApprovalRequestRow, request_id)
            return _request_from_row(row) if row is not None else None

    def list_requests(
        self, filters: RequestFilters, limit: int = 50, offset: int = 0,
    ) -> List[ApprovalRequest]:
        with self._session() as session:
            query = session.query(ApprovalRequestRow)
            if filters.status is not None:
                query = query.filter(ApprovalRequestRow.status == filters.status.value)
            if filters.requester_id:
                query = query.filter(ApprovalRequestRow.requester_id == filters.requester_id)
            if filters.org_id:
                query = query.filter(ApprovalRequestRow.org_id == filters.org_id)
            if filters.entity_type:
                query = query.filter(ApprovalRequestRow.entity_type == filters.entity_type)
            if filters.template_id:
                query = query.filter(ApprovalRequestRow.template_id == filters.template_id)
            if filters.due_before is not None:
                query = query.filter(
                    ApprovalRequestRow.due_date.isnot(None),
                    ApprovalRequestRow.due_date <= filters.due_before,
                )
            rows = query.order_by(
                ApprovalRequestRow.created_at.desc()
            ).offset(offset).limit(limit).all()
            return [_request_from_row(r) for r in rows]

    def commit_transition(
        self, request: ApprovalRequest, expected_version: int, audit_entry: AuditEntry,
    ) -> bool:
        """Conditionally update the request and insert its audit row in one transaction.

        Returns False, writing nothing, if the stored version moved on.

        Raises:
            ConflictError: the audit sequence is taken; the update is rolled back.
        """
        try:
            with self._session() as session:
                written = self._update_if_version(session, request, expected_version)
                if written:
                    session.add(_audit_to_row(audit_entry))
                    session.flush()
                return written
        except IntegrityError as exc:
            raise ConflictError(
                f"Audit sequence {audit_entry.sequence} already used for "
                f"request {audit_entry.request_id}"
            ) from exc

    @staticmethod
    def _update_if_version(
        session: Session, request: ApprovalRequest, expected_version: int,
    ) -> bool:
        result = session.execute(
            update(ApprovalRequestRow)
            .where(
                ApprovalRequestRow.request_id == request.request_id,
                ApprovalRequestRow.version == expected_version,
            )
            .values(
                status=request.status.value,
                current_step_index=request.current_step_index,
                submitted_at=request.submitted_at,
                completed_at=request.completed_at,
                version=request.version,
            )
        )
        return result.rowcount == 1

    # ── Decisions ────────────────────────────────────────────────────

    def insert_decision(self, decision: Decision) -> None:
        try:
            with self._session() as session:
                session.add(ApprovalDecisionRow(
                    decision_id=decision.decision_id,
                    request_id=decision.request_id,
                    step_index=decision.step_index,
                    approver_id=decision.approver_id,
                    decision=decision.decision.value,
                    comment=decision.comment,
                    attachments=list(decision.attachments),
                    decided_at=decision.decided_at,
                ))
        except IntegrityError as exc:
            raise ConflictError(
                f"{decision.approver_id} already decided on step "
                f"{decision.step_index} of request {decision.request_id}"
            ) from exc

    def list_decisions(
        self, request_id: str, step_index: Optional[int] = None,
    ) -> List[Decision]:
        with self._session() as session:
            query = session.query(ApprovalDecisionRow).filter(
                ApprovalDecisionRow.request_id == request_id
            )
            if step_index is not None:
                query = query.filter(ApprovalDecisionRow.step_index == step_index)
            rows = query.order_by(ApprovalDecisionRow.decided_at).all()
            return [
                Decision(
                    request_id=r.request_id,
                    step_index=r.step_index,
                    approver_id=r.approver_id,
                    decision=DecisionType(r.decision),
                    comment=r.comment,
                    attachments=tuple(r.attachments or ()),
                    decision_id=r.decision_id,
                    decided_at=_aware(r.decided_at),
                )
                for r in rows
            ]

    # ── Audit ────────────────────────────────────────────────────────

    def insert_audit_entry(self, entry: AuditEntry) -> None:
        try:
            with self._session() as session:
                session.add(_audit_to_row(entry))
        except IntegrityError as exc:
            raise ConflictError(
                f"Audit sequence {entry.sequence} already used for request {entry.request_id}"
            ) from exc

    def list_audit_entries(self, request_id: str) -> List[AuditEntry]:
        with self._session() as session:
            rows = session.query(ApprovalAuditRow).filter(
                ApprovalAuditRow.request_id == request_id
            ).order_by(ApprovalAuditRow.sequence).all()
            return [
                AuditEntry(
                    request_id=r.request_id,
                    sequence=r.sequence,
                    action=AuditAction(r.action),
                    actor_id=r.actor_id,
                    details=dict(r.details or {}),
                    timestamp=_aware(r.timestamp),
                    entry_id=r.entry_id,
                    previous_hash=r.previous_hash or "",
                    entry_hash=r.entry_hash or "",
                )
                for r in rows
            ]

    # ── Comments ─────────────────────────────────────────────────────

    def insert_comment(self, comment: RequestComment) -> None:
        with self._session() as session:
            session.add(ApprovalCommentRow(
                comment_id=comment.comment_id,
                request_id=comment.request_id,
                author_id=comment.author_id,
                content=comment.content,
                parent_id=comment.parent_id,
                mentions=list(comment.mentions),
                created_at=comment.created_at,
            ))

    def get_comment(self, comment_id: str) -> Optional[RequestComment]:
        with self._session() as session:
            row = session.get(ApprovalCommentRow, comment_id)
            return _comment_from_row(row) if row is not None else None

    def list_comments(self, request_id: str) -> List[RequestComment]:
        with self._session() as session:
            rows = session.query(ApprovalCommentRow).filter(
                ApprovalCommentRow.request_id == request_id
            ).order_by(ApprovalCommentRow.created_at).all()
            return [_comment_from_row(r) for r in rows]


# ── Row conversion ───────────────────────────────────────────────────


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite returns naive datetimes; everything is stored in UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _template_from_row(row: WorkflowTemplateRow) -> WorkflowTemplate:
    steps = sorted(
        (StepDefinition.from_dict(s) for s in row.steps), key=lambda s: s.order,
    )
    return WorkflowTemplate(
        template_id=row.template_id,
        name=row.name,
        steps=tuple(steps),
        description=row.description or "",
        created_by=row.created_by,
        created_at=_aware(row.created_at),
        version=row.version,
        parent_template_id=row.parent_template_id,
    )


def _request_to_row(request: ApprovalRequest) -> ApprovalRequestRow:
    return ApprovalRequestRow(
        request_id=request.request_id,
        template_id=request.template_id,
        requester_id=request.requester_id,
        org_id=request.org_id,
        entity_type=request.subject.entity_type,
        entity_id=request.subject.entity_id,
        title=request.subject.title,
        description=request.subject.description,
        subject_metadata=dict(request.subject.metadata),
        status=request.status.value,
        current_step_index=request.current_step_index,
        is_urgent=request.is_urgent,
        due_date=request.due_date,
        created_at=request.created_at,
        submitted_at=request.submitted_at,
        completed_at=request.completed_at,
        version=request.version,
    )


def _request_from_row(row: ApprovalRequestRow) -> ApprovalRequest:
    return ApprovalRequest(
        template_id=row.template_id,
        requester_id=row.requester_id,
        org_id=row.org_id,
        subject=SubjectRef(
            entity_type=row.entity_type,
            entity_id=row.entity_id,
            title=row.title,
            description=row.description or "",
            metadata=dict(row.subject_metadata or {}),
        ),
        request_id=row.request_id,
        status=RequestStatus(row.status),
        current_step_index=row.current_step_index,
        is_urgent=bool(row.is_urgent),
        due_date=_aware(row.due_date),
        created_at=_aware(row.created_at),
        submitted_at=_aware(row.submitted_at),
        completed_at=_aware(row.completed_at),
        version=row.version,
    )


def _audit_to_row(entry: AuditEntry) -> ApprovalAuditRow:
    return ApprovalAuditRow(
        entry_id=entry.entry_id,
        request_id=entry.request_id,
        sequence=entry.sequence,
        action=entry.action.value,
        actor_id=entry.actor_id,
        details=dict(entry.details),
        timestamp=entry.timestamp,
        previous_hash=entry.previous_hash,
        entry_hash=entry.entry_hash,
    )


def _comment_from_row(row: ApprovalCommentRow) -> RequestComment:
    return RequestComment(
        request_id=row.request_id,
        author_id=row.author_id,
        content=row.content,
        parent_id=row.parent_id,
        mentions=tuple(row.mentions or ()),
        comment_id=row.comment_id,
        created_at=_aware(row.created_at),
    )
