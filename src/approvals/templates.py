"""Approval Workflow Engine - Workflow Catalog.

Templates are immutable once created. A change to a workflow is a new
template (see ``WorkflowCatalog.derive_template``) so requests already in
flight keep the semantics they started with.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .config import AggregationPolicy, ApproverKind, RejectPolicy
from .errors import InvalidTemplateError, NotFoundError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ApproverSpec:
    """Who may decide on a step: one concrete user, or a role in the org."""

    kind: ApproverKind
    value: str

    @classmethod
    def user(cls, user_id: str) -> "ApproverSpec":
        return cls(kind=ApproverKind.USER, value=user_id)

    @classmethod
    def role(cls, role_name: str) -> "ApproverSpec":
        return cls(kind=ApproverKind.ROLE, value=role_name)

    def to_dict(self) -> Dict[str, str]:
        return {"kind": self.kind.value, "value": self.value}

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> "ApproverSpec":
        return cls(kind=ApproverKind(data["kind"]), value=data["value"])


@dataclass(frozen=True)
class StepDefinition:
    """One ordered stage of a workflow template."""

    order: int
    approvers: Tuple[ApproverSpec, ...]
    policy: AggregationPolicy = AggregationPolicy.ALL
    threshold: Optional[int] = None
    on_reject: RejectPolicy = RejectPolicy.TERMINATE_REQUEST
    name: str = ""
    description: str = ""

    def __post_init__(self):
        # Accept any iterable of specs but always store a tuple
        if not isinstance(self.approvers, tuple):
            object.__setattr__(self, "approvers", tuple(self.approvers))

    @property
    def display_name(self) -> str:
        return self.name or f"Step {self.order + 1}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order": self.order,
            "approvers": [a.to_dict() for a in self.approvers],
            "policy": self.policy.value,
            "threshold": self.threshold,
            "on_reject": self.on_reject.value,
            "name": self.name,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StepDefinition":
        return cls(
            order=data["order"],
            approvers=tuple(ApproverSpec.from_dict(a) for a in data["approvers"]),
            policy=AggregationPolicy(data.get("policy", "all")),
            threshold=data.get("threshold"),
            on_reject=RejectPolicy(data.get("on_reject", "terminate_request")),
            name=data.get("name", ""),
            description=data.get("description", ""),
        )


@dataclass(frozen=True)
class WorkflowTemplate:
    """An immutable, ordered list of approval steps."""

    template_id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])
    name: str = ""
    steps: Tuple[StepDefinition, ...] = ()
    description: str = ""
    created_by: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    version: int = 1
    parent_template_id: Optional[str] = None

    @property
    def step_count(self) -> int:
        return len(self.steps)

    @property
    def last_step_index(self) -> int:
        return len(self.steps) - 1

    def step(self, index: int) -> StepDefinition:
        """Return the step at *index* in traversal order."""
        if index < 0 or index >= len(self.steps):
            raise IndexError(f"Template {self.template_id} has no step {index}")
        return self.steps[index]


def validate_steps(steps: Sequence[StepDefinition]) -> List[str]:
    """Validate a step list. Returns a list of error strings."""
    errors: List[str] = []

    if not steps:
        errors.append("Template must define at least one step")
        return errors

    orders = sorted(s.order for s in steps)
    if len(set(orders)) != len(orders):
        errors.append("Step order indices must be unique")
    if orders != list(range(len(orders))):
        errors.append(
            f"Step order indices must be contiguous from 0, got {orders}"
        )

    for step in steps:
        label = f"step {step.order}"
        if not step.approvers:
            errors.append(f"{label}: at least one approver is required")
        for spec in step.approvers:
            if not spec.value or not spec.value.strip():
                errors.append(f"{label}: approver {spec.kind.value} must not be blank")
        if len(set(step.approvers)) != len(step.approvers):
            errors.append(f"{label}: duplicate approver specification")

        if step.policy == AggregationPolicy.THRESHOLD:
            n = step.threshold
            if n is None:
                errors.append(f"{label}: THRESHOLD policy requires a threshold")
            elif n < 1 or n > len(step.approvers):
                errors.append(
                    f"{label}: threshold {n} must be between 1 and "
                    f"{len(step.approvers)} (number of approver specs)"
                )
        elif step.threshold is not None:
            errors.append(
                f"{label}: threshold is only valid with the THRESHOLD policy"
            )

    return errors


class WorkflowCatalog:
    """Creates and serves immutable workflow templates."""

    def __init__(self, store):
        self._store = store

    def create_template(
        self,
        name: str,
        steps: Iterable[StepDefinition],
        description: str = "",
        created_by: Optional[str] = None,
    ) -> WorkflowTemplate:
        """Validate *steps* and persist a new template.

        Raises:
            InvalidTemplateError: on a blank name, malformed step order or
                an impossible threshold.
        """
        return self._build_and_save(
            name=name,
            steps=list(steps),
            description=description,
            created_by=created_by,
        )

    def derive_template(
        self,
        base_template_id: str,
        steps: Optional[Iterable[StepDefinition]] = None,
        name: Optional[str] = None,
        description: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> WorkflowTemplate:
        """Create the next version of an existing template.

        The base template is left untouched.
        """
        base = self.get_template(base_template_id)
        return self._build_and_save(
            name=name if name is not None else base.name,
            steps=list(steps) if steps is not None else list(base.steps),
            description=description if description is not None else base.description,
            created_by=created_by or base.created_by,
            version=base.version + 1,
            parent_template_id=base.template_id,
        )

    def get_template(self, template_id: str) -> WorkflowTemplate:
        tmpl = self._store.get_template(template_id)
        if tmpl is None:
            raise NotFoundError(
                f"Unknown template: {template_id}",
                resource_type="workflow_template",
                resource_id=template_id,
            )
        return tmpl

    def list_templates(self) -> List[WorkflowTemplate]:
        return self._store.list_templates()

    def _build_and_save(
        self,
        name: str,
        steps: List[StepDefinition],
        description: str,
        created_by: Optional[str],
        version: int = 1,
        parent_template_id: Optional[str] = None,
    ) -> WorkflowTemplate:
        errors = validate_steps(steps)
        if not name or not name.strip():
            errors.insert(0, "Template name must not be blank")
        if errors:
            logger.info("Rejected workflow template %r: %s", name, "; ".join(errors))
            raise InvalidTemplateError(
                errors[0],
                details=[{"issue": e} for e in errors],
            )

        ordered = tuple(sorted(steps, key=lambda s: s.order))
        tmpl = WorkflowTemplate(
            name=name.strip(),
            steps=ordered,
            description=description,
            created_by=created_by,
            version=version,
            parent_template_id=parent_template_id,
        )
        self._store.save_template(tmpl)
        logger.info(
            "Created workflow template %s (%s v%d, %d steps)",
            tmpl.template_id, tmpl.name, tmpl.version, tmpl.step_count,
        )
        return tmpl
