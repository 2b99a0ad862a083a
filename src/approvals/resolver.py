"""Approval Workflow Engine - Approver Resolver.

Role membership is read live from the directory on every evaluation.
Nothing here caches: a member removed from a role stops counting on the
next decision, and a member added becomes eligible immediately.
"""

import logging
import threading
from collections import defaultdict
from typing import Dict, FrozenSet, Iterable, Optional, Protocol, Set, Tuple

from .config import ApproverKind
from .errors import DirectoryUnavailableError
from .templates import ApproverSpec, StepDefinition

logger = logging.getLogger(__name__)


class RoleDirectory(Protocol):
    """Principal/role directory owned by the host application."""

    def members_of_role(self, org_id: str, role_name: str) -> Set[str]:
        ...


class InMemoryRoleDirectory:
    """Thread-safe role directory keyed by (org_id, role_name)."""

    def __init__(self, memberships: Optional[Dict[Tuple[str, str], Iterable[str]]] = None):
        self._lock = threading.Lock()
        self._members: Dict[Tuple[str, str], Set[str]] = defaultdict(set)
        for key, principals in (memberships or {}).items():
            self._members[key].update(principals)

    def add_member(self, org_id: str, role_name: str, principal_id: str) -> None:
        with self._lock:
            self._members[(org_id, role_name)].add(principal_id)

    def remove_member(self, org_id: str, role_name: str, principal_id: str) -> None:
        with self._lock:
            self._members[(org_id, role_name)].discard(principal_id)

    def members_of_role(self, org_id: str, role_name: str) -> Set[str]:
        with self._lock:
            return set(self._members.get((org_id, role_name), ()))


class ApproverResolver:
    """Resolves approver specifications to the current set of principals."""

    def __init__(self, directory: RoleDirectory):
        self._directory = directory

    def resolve(self, spec: ApproverSpec, org_id: str) -> FrozenSet[str]:
        """Resolve one approver spec within *org_id*.

        USER specs resolve to themselves; ROLE specs query the directory.

        Raises:
            DirectoryUnavailableError: if the directory lookup fails.
        """
        if spec.kind == ApproverKind.USER:
            return frozenset({spec.value})

        try:
            members = self._directory.members_of_role(org_id, spec.value)
        except Exception as exc:
            logger.error(
                "Role directory lookup failed for %s/%s: %s",
                org_id, spec.value, exc,
            )
            raise DirectoryUnavailableError(
                f"Could not resolve role '{spec.value}' in org '{org_id}'"
            ) from exc
        return frozenset(members or ())

    def resolve_step(self, step: StepDefinition, org_id: str) -> FrozenSet[str]:
        """Union of every approver spec on *step*."""
        eligible: Set[str] = set()
        for spec in step.approvers:
            eligible |= self.resolve(spec, org_id)
        logger.debug(
            "Resolved %d eligible approvers for step %d in org %s",
            len(eligible), step.order, org_id,
        )
        return frozenset(eligible)

    def is_eligible(self, principal_id: str, step: StepDefinition, org_id: str) -> bool:
        return principal_id in self.resolve_step(step, org_id)
