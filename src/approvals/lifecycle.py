"""Approval Workflow Engine - Request Lifecycle Manager.

The only component that writes request status and current step. Every
transition follows the same shape:

1. resolve eligibility (directory call, no lock held);
2. record the decision in the ledger under the request's *shared* lock,
   which only excludes concurrent transitions;
3. under the request's *exclusive* lock, reload the request, evaluate the
   current step, then compare-and-set the new state together with exactly
   one audit entry in a single store write, retrying from the reload if
   another writer got there first;
4. publish the event after the lock is released.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, Iterable, Optional, Tuple

from src.logging_config import PerformanceTimer

from .audit import AuditEntry, AuditTrail
from .config import (
    EVENT_TOPICS,
    AuditAction,
    DecisionType,
    RejectPolicy,
    RequestStatus,
    Verdict,
)
from .errors import (
    AuthorizationError,
    ConflictError,
    DirectoryUnavailableError,
    InvalidStateError,
    NotFoundError,
    StaleStateError,
    ValidationError,
)
from .evaluator import StepEvaluator
from .ledger import Decision, DecisionLedger
from .locks import RequestLockRegistry
from .notifications import ApprovalEvent, EventSink, publish_safely
from .request import ApprovalRequest, SubjectRef
from .resolver import ApproverResolver
from .templates import WorkflowCatalog, WorkflowTemplate

logger = logging.getLogger(__name__)

# Reload-and-retry bound when another writer moves a request under us.
_MAX_TRANSITION_ATTEMPTS = 3


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of one lifecycle operation."""

    request: ApprovalRequest
    audit_entry: AuditEntry
    decision: Optional[Decision] = None
    verdict: Optional[Verdict] = None


class RequestLifecycleManager:
    """Owns request state and serializes transitions per request."""

    def __init__(
        self,
        store,
        catalog: WorkflowCatalog,
        resolver: ApproverResolver,
        ledger: DecisionLedger,
        audit: AuditTrail,
        locks: RequestLockRegistry,
        evaluator: Optional[StepEvaluator] = None,
        event_sink: Optional[EventSink] = None,
    ):
        self._store = store
        self._catalog = catalog
        self._resolver = resolver
        self._ledger = ledger
        self._audit = audit
        self._locks = locks
        self._evaluator = evaluator or StepEvaluator()
        self._sink = event_sink

    # ── Creation ─────────────────────────────────────────────────────

    def create_draft(
        self,
        template_id: str,
        requester_id: str,
        org_id: str,
        subject: SubjectRef,
        is_urgent: bool = False,
        due_date: Optional[datetime] = None,
    ) -> TransitionResult:
        """Create a request in DRAFT. Decisions are not accepted until submitted."""
        request, _ = self._new_request(
            template_id, requester_id, org_id, subject, is_urgent, due_date,
        )
        with self._locks.exclusive(request.request_id):
            entry = self._audit.next_entry(
                request.request_id, AuditAction.CREATED, requester_id,
                _creation_details(request, {"template_id": template_id}),
            )
            self._store.insert_request(request, entry)
        logger.info("Draft request %s created by %s", request.request_id, requester_id)
        self._publish(entry)
        return TransitionResult(request=request, audit_entry=entry)

    def create_and_submit(
        self,
        template_id: str,
        requester_id: str,
        org_id: str,
        subject: SubjectRef,
        is_urgent: bool = False,
        due_date: Optional[datetime] = None,
    ) -> TransitionResult:
        """Create a request directly in IN_PROGRESS at step 0."""
        request, template = self._new_request(
            template_id, requester_id, org_id, subject, is_urgent, due_date,
        )
        now = datetime.now(timezone.utc)
        request.status = RequestStatus.IN_PROGRESS
        request.current_step_index = 0
        request.submitted_at = now
        with self._locks.exclusive(request.request_id):
            entry = self._audit.next_entry(
                request.request_id, AuditAction.SUBMITTED, requester_id,
                _creation_details(request, {
                    "template_id": template_id,
                    "step_index": 0,
                    "step_name": template.step(0).display_name,
                }),
            )
            self._store.insert_request(request, entry)
        logger.info(
            "Request %s submitted by %s on template %s",
            request.request_id, requester_id, template_id,
        )
        self._publish(entry)
        return TransitionResult(request=request, audit_entry=entry)

    # ── Transitions ──────────────────────────────────────────────────

    def submit(self, request_id: str, requester_id: str) -> TransitionResult:
        """DRAFT -> IN_PROGRESS, current step := 0."""
        with self._locks.exclusive(request_id):
            request = self._load(request_id)
            if request.status != RequestStatus.DRAFT:
                raise InvalidStateError(
                    f"Request {request_id} is {request.status.value}, not draft"
                )
            if request.requester_id != requester_id:
                raise AuthorizationError("Only the requester may submit this request")

            template = self._catalog.get_template(request.template_id)
            expected = request.version
            request.status = RequestStatus.IN_PROGRESS
            request.current_step_index = 0
            request.submitted_at = datetime.now(timezone.utc)
            entry = self._audit.next_entry(
                request_id, AuditAction.SUBMITTED, requester_id,
                {"step_index": 0, "step_name": template.step(0).display_name},
            )
            self._commit(request, expected, entry)
        logger.info("Request %s submitted by %s", request_id, requester_id)
        self._publish(entry)
        return TransitionResult(request=request, audit_entry=entry)

    def decide(
        self,
        request_id: str,
        approver_id: str,
        decision: DecisionType,
        comment: Optional[str] = None,
        step_index: Optional[int] = None,
        attachments: Iterable[str] = (),
    ) -> TransitionResult:
        """Record a decision on the current step and act on the new verdict.

        The state write and its audit entry are committed together. If
        another writer moves the request first, the request is reloaded and
        the decision re-evaluated against the new state, a bounded number
        of times.

        A blocked step whose policy is RETURN_TO_PREVIOUS_STEP reopens the
        earlier step with its old decisions intact. Approvers who already
        decided there cannot decide again, so a step with no undecided
        eligible approver left keeps the request IN_PROGRESS until the
        directory changes or the requester cancels.

        Args:
            step_index: The step the caller believes is current. If given
                and different from the actual current step the call is
                rejected rather than applied to another step.
            attachments: Opaque document references kept with the decision.

        Raises:
            InvalidStateError: request not in progress, or not at *step_index*.
            AuthorizationError: approver not currently eligible for the step.
            ConflictError: approver already decided on this step.
            StaleStateError: other writers kept winning the request.
        """
        decision = DecisionType(decision)
        request = self._load(request_id)
        self._require_decidable(request, step_index)

        template = self._catalog.get_template(request.template_id)
        observed_step = request.current_step_index
        eligible = self._resolver.resolve_step(template.step(observed_step), request.org_id)
        if approver_id not in eligible:
            logger.info(
                "Rejected decision by %s on request %s: not eligible for step %d",
                approver_id, request_id, observed_step,
            )
            raise AuthorizationError(
                f"{approver_id} is not an eligible approver for step "
                f"{observed_step} of request {request_id}"
            )

        with self._locks.shared(request_id):
            current = self._load(request_id)
            self._require_decidable(current, observed_step)
            recorded = self._ledger.record(
                request_id, observed_step, approver_id, decision, comment, attachments,
            )

        with self._locks.exclusive(request_id), PerformanceTimer("evaluate_and_transition"):
            for attempt in range(1, _MAX_TRANSITION_ATTEMPTS + 1):
                current = self._load(request_id)
                try:
                    verdict, entry = self._apply(current, template, recorded, eligible)
                    break
                except StaleStateError:
                    if attempt == _MAX_TRANSITION_ATTEMPTS:
                        logger.error(
                            "Decision %s on request %s left unevaluated after %d attempts",
                            recorded.decision_id, request_id, attempt,
                        )
                        raise
                    logger.warning(
                        "Request %s moved during evaluation, retrying (attempt %d)",
                        request_id, attempt,
                    )

        self._publish(entry)
        if entry.action == AuditAction.STEP_RETURNED:
            self._warn_if_stalled(current, template)
        return TransitionResult(
            request=current, audit_entry=entry, decision=recorded, verdict=verdict,
        )

    def cancel(
        self, request_id: str, requester_id: str, reason: Optional[str] = None,
    ) -> TransitionResult:
        """Cancel a DRAFT or IN_PROGRESS request. Only the requester may cancel."""
        with self._locks.exclusive(request_id):
            request = self._load(request_id)
            if request.status not in (RequestStatus.DRAFT, RequestStatus.IN_PROGRESS):
                raise InvalidStateError(
                    f"Request {request_id} is already {request.status.value}"
                )
            if request.requester_id != requester_id:
                logger.info(
                    "Rejected cancel of %s by non-requester %s", request_id, requester_id,
                )
                raise AuthorizationError("Only the requester may cancel this request")

            expected = request.version
            previous_step = request.current_step_index
            request.status = RequestStatus.CANCELLED
            request.current_step_index = None
            request.completed_at = datetime.now(timezone.utc)
            details: Dict[str, Any] = {"step_index": previous_step}
            if reason:
                details["reason"] = reason
            entry = self._audit.next_entry(
                request_id, AuditAction.REQUEST_CANCELLED, requester_id, details,
            )
            self._commit(request, expected, entry)
        logger.info("Request %s cancelled by %s", request_id, requester_id)
        self._publish(entry)
        return TransitionResult(request=request, audit_entry=entry)

    # ── Queries ──────────────────────────────────────────────────────

    def get(self, request_id: str) -> ApprovalRequest:
        return self._load(request_id)

    def eligible_for_current_step(
        self, request: ApprovalRequest,
    ) -> Tuple[Optional[WorkflowTemplate], FrozenSet[str]]:
        """Live eligible set for the request's current step (empty if none)."""
        template = self._catalog.get_template(request.template_id)
        if request.status != RequestStatus.IN_PROGRESS or request.current_step_index is None:
            return template, frozenset()
        step = template.step(request.current_step_index)
        return template, self._resolver.resolve_step(step, request.org_id)

    # ── Internals ────────────────────────────────────────────────────

    def _apply(
        self,
        request: ApprovalRequest,
        template: WorkflowTemplate,
        decision: Decision,
        eligible: FrozenSet[str],
    ) -> Tuple[Optional[Verdict], AuditEntry]:
        """Evaluate and transition. Caller holds the exclusive lock."""
        details: Dict[str, Any] = {
            "step_index": decision.step_index,
            "decision": decision.decision.value,
            "decision_id": decision.decision_id,
        }
        if decision.comment:
            details["comment"] = decision.comment
        if decision.attachments:
            details["attachments"] = list(decision.attachments)

        if (
            request.status != RequestStatus.IN_PROGRESS
            or request.current_step_index != decision.step_index
        ):
            # A concurrent decision already moved the request on.
            details["superseded"] = True
            entry = self._append_only(
                request.request_id, AuditAction.DECISION_RECORDED,
                decision.approver_id, details,
            )
            logger.debug(
                "Decision %s on request %s superseded by a concurrent transition",
                decision.decision_id, request.request_id,
            )
            return None, entry

        index = decision.step_index
        step = template.step(index)
        verdict = self._evaluator.evaluate(
            step, self._ledger.decisions_for(request.request_id, index), eligible,
        )
        details["verdict"] = verdict.value

        if verdict == Verdict.PENDING:
            entry = self._append_only(
                request.request_id, AuditAction.DECISION_RECORDED,
                decision.approver_id, details,
            )
            return verdict, entry

        expected = request.version
        now = datetime.now(timezone.utc)
        if verdict == Verdict.SATISFIED:
            if index >= template.last_step_index:
                request.status = RequestStatus.APPROVED
                request.current_step_index = None
                request.completed_at = now
                action = AuditAction.REQUEST_APPROVED
            else:
                request.current_step_index = index + 1
                details["to_step_index"] = index + 1
                details["to_step_name"] = template.step(index + 1).display_name
                action = AuditAction.STEP_ADVANCED
        elif step.on_reject == RejectPolicy.RETURN_TO_PREVIOUS_STEP and index > 0:
            request.current_step_index = index - 1
            details["to_step_index"] = index - 1
            details["to_step_name"] = template.step(index - 1).display_name
            action = AuditAction.STEP_RETURNED
        else:
            request.status = RequestStatus.REJECTED
            request.current_step_index = None
            request.completed_at = now
            action = AuditAction.REQUEST_REJECTED

        entry = self._audit.next_entry(
            request.request_id, action, decision.approver_id, details,
        )
        self._commit(request, expected, entry)
        logger.info(
            "Request %s: %s at step %d (%s by %s)",
            request.request_id, action.value, index,
            decision.decision.value, decision.approver_id,
        )
        return verdict, entry

    def _warn_if_stalled(
        self, request: ApprovalRequest, template: WorkflowTemplate,
    ) -> None:
        """Warn when a reopened step has nobody left who may decide on it."""
        index = request.current_step_index
        try:
            eligible = self._resolver.resolve_step(template.step(index), request.org_id)
        except DirectoryUnavailableError:
            logger.warning(
                "Could not check reopened step %d of request %s: directory unavailable",
                index, request.request_id,
            )
            return
        decided = {d.approver_id for d in self._ledger.decisions_for(request.request_id, index)}
        if not eligible - decided:
            logger.warning(
                "Request %s returned to step %d, where every eligible approver "
                "has already decided; it cannot progress until approvers change",
                request.request_id, index,
            )

    def _new_request(
        self,
        template_id: str,
        requester_id: str,
        org_id: str,
        subject: SubjectRef,
        is_urgent: bool,
        due_date: Optional[datetime],
    ) -> Tuple[ApprovalRequest, WorkflowTemplate]:
        template = self._catalog.get_template(template_id)
        if not requester_id or not requester_id.strip():
            raise ValidationError("requester_id is required", field="requester_id")
        if not org_id or not org_id.strip():
            raise ValidationError("org_id is required", field="org_id")
        for name in ("entity_type", "entity_id", "title"):
            value = getattr(subject, name)
            if not value or not str(value).strip():
                raise ValidationError(f"subject.{name} is required", field=name)
        if due_date is not None:
            if not isinstance(due_date, datetime):
                raise ValidationError("due_date must be a datetime", field="due_date")
            if due_date.tzinfo is None:
                due_date = due_date.replace(tzinfo=timezone.utc)
        request = ApprovalRequest(
            template_id=template_id,
            requester_id=requester_id,
            org_id=org_id,
            subject=subject,
            is_urgent=is_urgent,
            due_date=due_date,
        )
        return request, template

    def _require_decidable(
        self, request: ApprovalRequest, step_index: Optional[int],
    ) -> None:
        if request.status != RequestStatus.IN_PROGRESS:
            raise InvalidStateError(
                f"Request {request.request_id} is {request.status.value} "
                f"and no longer accepts decisions"
            )
        if step_index is not None and step_index != request.current_step_index:
            raise InvalidStateError(
                f"Request {request.request_id} is at step "
                f"{request.current_step_index}, not step {step_index}"
            )

    def _load(self, request_id: str) -> ApprovalRequest:
        request = self._store.get_request(request_id)
        if request is None:
            raise NotFoundError(
                f"Unknown request: {request_id}",
                resource_type="approval_request",
                resource_id=request_id,
            )
        return request

    def _commit(
        self, request: ApprovalRequest, expected_version: int, entry: AuditEntry,
    ) -> None:
        """Write the new request state and its audit entry as one unit."""
        request.version = expected_version + 1
        try:
            written = self._store.commit_transition(request, expected_version, entry)
        except ConflictError as exc:
            raise StaleStateError(
                f"Audit log of request {request.request_id} moved on during a transition"
            ) from exc
        if not written:
            logger.warning(
                "Lost compare-and-set on request %s at version %d",
                request.request_id, expected_version,
            )
            raise StaleStateError(
                f"Request {request.request_id} changed since version {expected_version}"
            )

    def _append_only(
        self,
        request_id: str,
        action: AuditAction,
        actor_id: str,
        details: Dict[str, Any],
    ) -> AuditEntry:
        try:
            return self._audit.append(request_id, action, actor_id, details)
        except ConflictError as exc:
            raise StaleStateError(
                f"Audit log of request {request_id} moved on during evaluation"
            ) from exc

    def _publish(self, entry: AuditEntry) -> None:
        if self._sink is None:
            return
        details = dict(entry.details)
        details["sequence"] = entry.sequence
        details["actor_id"] = entry.actor_id
        publish_safely(
            self._sink,
            ApprovalEvent(
                event_type=EVENT_TOPICS[entry.action],
                request_id=entry.request_id,
                details=details,
            ),
        )


def _creation_details(request: ApprovalRequest, details: Dict[str, Any]) -> Dict[str, Any]:
    details["title"] = request.subject.title
    if request.is_urgent:
        details["is_urgent"] = True
    if request.due_date is not None:
        details["due_date"] = request.due_date.isoformat()
    return details
