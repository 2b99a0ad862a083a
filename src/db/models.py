"""SQLAlchemy ORM models for the approval engine.

Tables:
- approval_workflow_templates: immutable templates, steps stored as JSON
- approval_requests: request state with an optimistic-lock version column
- approval_decisions: one row per (request, step, approver)
- approval_audit_log: append-only, hash-chained per request
- approval_comments: discussion thread per request
"""

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from src.db.base import Base


class WorkflowTemplateRow(Base):
    """Immutable workflow template. Never updated once inserted."""

    __tablename__ = "approval_workflow_templates"

    template_id = Column(String(32), primary_key=True)
    name = Column(String(200), nullable=False)
    description = Column(Text, default="")
    steps = Column(JSON, nullable=False)
    created_by = Column(String(100))
    created_at = Column(DateTime(timezone=True), nullable=False)
    version = Column(Integer, nullable=False, default=1)
    parent_template_id = Column(String(32), index=True)


class ApprovalRequestRow(Base):
    """Approval request; (status, current_step_index) is the only mutable pair."""

    __tablename__ = "approval_requests"

    request_id = Column(String(32), primary_key=True)
    template_id = Column(
        String(32), ForeignKey("approval_workflow_templates.template_id"), nullable=False,
    )
    requester_id = Column(String(100), nullable=False, index=True)
    org_id = Column(String(100), nullable=False, index=True)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(100), nullable=False)
    title = Column(String(300), nullable=False)
    description = Column(Text, default="")
    subject_metadata = Column(JSON, default=dict)
    status = Column(String(20), nullable=False, index=True)
    current_step_index = Column(Integer)
    is_urgent = Column(Boolean, default=False)
    due_date = Column(DateTime(timezone=True), index=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    submitted_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))
    version = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        CheckConstraint(
            "(status = 'in_progress' AND current_step_index IS NOT NULL) OR "
            "(status <> 'in_progress' AND current_step_index IS NULL)",
            name="ck_approval_requests_step_iff_in_progress",
        ),
        Index("ix_approval_requests_entity", "entity_type", "entity_id"),
    )


class ApprovalDecisionRow(Base):
    """Immutable decision; uniqueness is enforced by the database."""

    __tablename__ = "approval_decisions"

    decision_id = Column(String(32), primary_key=True)
    request_id = Column(
        String(32), ForeignKey("approval_requests.request_id"), nullable=False, index=True,
    )
    step_index = Column(Integer, nullable=False)
    approver_id = Column(String(100), nullable=False)
    decision = Column(String(30), nullable=False)
    comment = Column(Text)
    attachments = Column(JSON, default=list)
    decided_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "request_id", "step_index", "approver_id",
            name="uq_approval_decisions_request_step_approver",
        ),
    )


class ApprovalAuditRow(Base):
    """Append-only audit entry."""

    __tablename__ = "approval_audit_log"

    entry_id = Column(String(32), primary_key=True)
    request_id = Column(
        String(32), ForeignKey("approval_requests.request_id"), nullable=False, index=True,
    )
    sequence = Column(Integer, nullable=False)
    action = Column(String(30), nullable=False)
    actor_id = Column(String(100))
    details = Column(JSON, default=dict)
    timestamp = Column(DateTime(timezone=True), nullable=False)
    previous_hash = Column(String(64), default="")
    entry_hash = Column(String(64), default="")

    __table_args__ = (
        UniqueConstraint("request_id", "sequence", name="uq_approval_audit_request_sequence"),
    )


class ApprovalCommentRow(Base):
    """Discussion comment on a request."""

    __tablename__ = "approval_comments"

    comment_id = Column(String(32), primary_key=True)
    request_id = Column(
        String(32), ForeignKey("approval_requests.request_id"), nullable=False, index=True,
    )
    author_id = Column(String(100), nullable=False)
    content = Column(Text, nullable=False)
    parent_id = Column(String(32), ForeignKey("approval_comments.comment_id"))
    mentions = Column(JSON, default=list)
    created_at = Column(DateTime(timezone=True), nullable=False)
