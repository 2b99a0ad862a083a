"""Storage contract for the approval engine, plus an in-memory backend.

A backend must provide three atomic primitives the engine relies on:

- ``insert_decision`` is a unique insert on (request_id, step_index,
  approver_id) that raises ``ConflictError`` instead of overwriting;
- ``commit_transition`` writes a request only if the stored version
  still equals ``expected_version``, together with the transition's
  audit entry: both are written or neither is;
- ``insert_request`` with an audit entry stores the new request and its
  first audit entry in one write.
"""

import copy
import logging
import threading
from typing import Dict, List, Optional, Protocol, Tuple

from .audit import AuditEntry
from .comments import RequestComment
from .errors import ConflictError
from .ledger import Decision
from .request import ApprovalRequest, RequestFilters
from .templates import WorkflowTemplate

logger = logging.getLogger(__name__)


class ApprovalStore(Protocol):
    def save_template(self, template: WorkflowTemplate) -> None: ...

    def get_template(self, template_id: str) -> Optional[WorkflowTemplate]: ...

    def list_templates(self) -> List[WorkflowTemplate]: ...

    def insert_request(
        self, request: ApprovalRequest, audit_entry: Optional[AuditEntry] = None,
    ) -> None: ...

    def get_request(self, request_id: str) -> Optional[ApprovalRequest]: ...

    def list_requests(
        self, filters: RequestFilters, limit: int = 50, offset: int = 0,
    ) -> List[ApprovalRequest]: ...

    def commit_transition(
        self, request: ApprovalRequest, expected_version: int, audit_entry: AuditEntry,
    ) -> bool: ...

    def insert_decision(self, decision: Decision) -> None: ...

    def list_decisions(
        self, request_id: str, step_index: Optional[int] = None,
    ) -> List[Decision]: ...

    def insert_audit_entry(self, entry: AuditEntry) -> None: ...

    def list_audit_entries(self, request_id: str) -> List[AuditEntry]: ...

    def insert_comment(self, comment: RequestComment) -> None: ...

    def get_comment(self, comment_id: str) -> Optional[RequestComment]: ...

    def list_comments(self, request_id: str) -> List[RequestComment]: ...


class InMemoryApprovalStore:
    """Thread-safe dict-backed store for tests and single-process hosts.

    Requests are deep-copied on the way in and out, so callers never share
    mutable state (subject metadata included) with the store.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._templates: Dict[str, WorkflowTemplate] = {}
        self._requests: Dict[str, ApprovalRequest] = {}
        self._decisions: Dict[Tuple[str, int, str], Decision] = {}
        self._audit: Dict[str, List[AuditEntry]] = {}
        self._comments: Dict[str, RequestComment] = {}

    # ── Templates ────────────────────────────────────────────────────

    def save_template(self, template: WorkflowTemplate) -> None:
        with self._lock:
            if template.template_id in self._templates:
                raise ConflictError(f"Template {template.template_id} already exists")
            self._templates[template.template_id] = template

    def get_template(self, template_id: str) -> Optional[WorkflowTemplate]:
        with self._lock:
            return self._templates.get(template_id)

    def list_templates(self) -> List[WorkflowTemplate]:
        with self._lock:
            return list(self._templates.values())

    # ── Requests ─────────────────────────────────────────────────────

    def insert_request(
        self, request: ApprovalRequest, audit_entry: Optional[AuditEntry] = None,
    ) -> None:
        with self._lock:
            if request.request_id in self._requests:
                raise ConflictError(f"Request {request.request_id} already exists")
            if audit_entry is not None:
                self._append_audit(audit_entry)
            self._requests[request.request_id] = copy.deepcopy(request)

    def get_request(self, request_id: str) -> Optional[ApprovalRequest]:
        with self._lock:
            stored = self._requests.get(request_id)
            return copy.deepcopy(stored) if stored is not None else None

    def list_requests(
        self, filters: RequestFilters, limit: int = 50, offset: int = 0,
    ) -> List[ApprovalRequest]:
        with self._lock:
            newest_first = reversed(list(self._requests.values()))
            matching = [copy.deepcopy(r) for r in newest_first if filters.matches(r)]
        return matching[offset:offset + limit]

    def commit_transition(
        self, request: ApprovalRequest, expected_version: int, audit_entry: AuditEntry,
    ) -> bool:
        """Write *request* and *audit_entry* together.

        Returns False, writing nothing, if the stored version moved on.

        Raises:
            ConflictError: the audit sequence is taken; nothing is written.
        """
        with self._lock:
            stored = self._requests.get(request.request_id)
            if stored is None or stored.version != expected_version:
                return False
            self._append_audit(audit_entry)
            self._requests[request.request_id] = copy.deepcopy(request)
            return True

    # ── Decisions ────────────────────────────────────────────────────

    def insert_decision(self, decision: Decision) -> None:
        with self._lock:
            if decision.key in self._decisions:
                raise ConflictError(
                    f"{decision.approver_id} already decided on step "
                    f"{decision.step_index} of request {decision.request_id}"
                )
            self._decisions[decision.key] = decision

    def list_decisions(
        self, request_id: str, step_index: Optional[int] = None,
    ) -> List[Decision]:
        with self._lock:
            return [
                d for d in self._decisions.values()
                if d.request_id == request_id
                and (step_index is None or d.step_index == step_index)
            ]

    # ── Audit ────────────────────────────────────────────────────────

    def insert_audit_entry(self, entry: AuditEntry) -> None:
        with self._lock:
            self._append_audit(entry)

    def list_audit_entries(self, request_id: str) -> List[AuditEntry]:
        with self._lock:
            return list(self._audit.get(request_id, ()))

    def _append_audit(self, entry: AuditEntry) -> None:
        # Caller holds self._lock.
        entries = self._audit.setdefault(entry.request_id, [])
        if entries and entries[-1].sequence >= entry.sequence:
            raise ConflictError(
                f"Audit sequence {entry.sequence} already used for "
                f"request {entry.request_id}"
            )
        entries.append(entry)

    # ── Comments ─────────────────────────────────────────────────────

    def insert_comment(self, comment: RequestComment) -> None:
        with self._lock:
            self._comments[comment.comment_id] = comment

    def get_comment(self, comment_id: str) -> Optional[RequestComment]:
        with self._lock:
            return self._comments.get(comment_id)

    def list_comments(self, request_id: str) -> List[RequestComment]:
        with self._lock:
            return [c for c in self._comments.values() if c.request_id == request_id]
