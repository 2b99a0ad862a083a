"""Database package for the approval engine."""

from src.db.base import Base
from src.db.engine import create_db_engine, get_session_factory, get_sync_engine, reset_engine
from src.db.models import (
    ApprovalAuditRow,
    ApprovalCommentRow,
    ApprovalDecisionRow,
    ApprovalRequestRow,
    WorkflowTemplateRow,
)

__all__ = [
    "Base",
    "create_db_engine",
    "get_session_factory",
    "get_sync_engine",
    "reset_engine",
    "ApprovalAuditRow",
    "ApprovalCommentRow",
    "ApprovalDecisionRow",
    "ApprovalRequestRow",
    "WorkflowTemplateRow",
]
