"""Approval workflow engine tables.

Revision ID: 001
Revises: None
Create Date: 2026-10-19
"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # --- approval_workflow_templates ---
    op.create_table(
        "approval_workflow_templates",
        sa.Column("template_id", sa.String(32), primary_key=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("steps", sa.JSON(), nullable=False),
        sa.Column("created_by", sa.String(100), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("parent_template_id", sa.String(32), nullable=True),
    )
    op.create_index(
        "ix_approval_workflow_templates_parent_template_id",
        "approval_workflow_templates", ["parent_template_id"],
    )

    # --- approval_requests ---
    op.create_table(
        "approval_requests",
        sa.Column("request_id", sa.String(32), primary_key=True),
        sa.Column(
            "template_id", sa.String(32),
            sa.ForeignKey("approval_workflow_templates.template_id"),
            nullable=False,
        ),
        sa.Column("requester_id", sa.String(100), nullable=False),
        sa.Column("org_id", sa.String(100), nullable=False),
        sa.Column("entity_type", sa.String(50), nullable=False),
        sa.Column("entity_id", sa.String(100), nullable=False),
        sa.Column("title", sa.String(300), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("subject_metadata", sa.JSON(), nullable=True),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("current_step_index", sa.Integer(), nullable=True),
        sa.Column("is_urgent", sa.Boolean(), server_default=sa.false()),
        sa.Column("due_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.CheckConstraint(
            "(status = 'in_progress' AND current_step_index IS NOT NULL) OR "
            "(status <> 'in_progress' AND current_step_index IS NULL)",
            name="ck_approval_requests_step_iff_in_progress",
        ),
    )
    op.create_index("ix_approval_requests_requester_id", "approval_requests", ["requester_id"])
    op.create_index("ix_approval_requests_org_id", "approval_requests", ["org_id"])
    op.create_index("ix_approval_requests_status", "approval_requests", ["status"])
    op.create_index("ix_approval_requests_due_date", "approval_requests", ["due_date"])
    op.create_index(
        "ix_approval_requests_entity", "approval_requests", ["entity_type", "entity_id"]
    )

    # --- approval_decisions ---
    op.create_table(
        "approval_decisions",
        sa.Column("decision_id", sa.String(32), primary_key=True),
        sa.Column(
            "request_id", sa.String(32),
            sa.ForeignKey("approval_requests.request_id"), nullable=False,
        ),
        sa.Column("step_index", sa.Integer(), nullable=False),
        sa.Column("approver_id", sa.String(100), nullable=False),
        sa.Column("decision", sa.String(30), nullable=False),
        sa.Column("comment", sa.Text(), nullable=True),
        sa.Column("attachments", sa.JSON(), nullable=True),
        sa.Column("decided_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "request_id", "step_index", "approver_id",
            name="uq_approval_decisions_request_step_approver",
        ),
    )
    op.create_index("ix_approval_decisions_request_id", "approval_decisions", ["request_id"])

    # --- approval_audit_log ---
    op.create_table(
        "approval_audit_log",
        sa.Column("entry_id", sa.String(32), primary_key=True),
        sa.Column(
            "request_id", sa.String(32),
            sa.ForeignKey("approval_requests.request_id"), nullable=False,
        ),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("action", sa.String(30), nullable=False),
        sa.Column("actor_id", sa.String(100), nullable=True),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("previous_hash", sa.String(64), nullable=True),
        sa.Column("entry_hash", sa.String(64), nullable=True),
        sa.UniqueConstraint(
            "request_id", "sequence", name="uq_approval_audit_request_sequence",
        ),
    )
    op.create_index("ix_approval_audit_log_request_id", "approval_audit_log", ["request_id"])

    # --- approval_comments ---
    op.create_table(
        "approval_comments",
        sa.Column("comment_id", sa.String(32), primary_key=True),
        sa.Column(
            "request_id", sa.String(32),
            sa.ForeignKey("approval_requests.request_id"), nullable=False,
        ),
        sa.Column("author_id", sa.String(100), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column(
            "parent_id", sa.String(32),
            sa.ForeignKey("approval_comments.comment_id"), nullable=True,
        ),
        sa.Column("mentions", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_approval_comments_request_id", "approval_comments", ["request_id"])


def downgrade() -> None:
    op.drop_table("approval_comments")
    op.drop_table("approval_audit_log")
    op.drop_table("approval_decisions")
    op.drop_table("approval_requests")
    op.drop_table("approval_workflow_templates")
