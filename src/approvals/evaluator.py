"""Approval Workflow Engine - Step Evaluator.

Pure functions of (step, decisions, eligible approvers). Calling
``evaluate`` twice with the same inputs always yields the same verdict.
"""

from typing import AbstractSet, Dict, Iterable

from .config import AggregationPolicy, DecisionType, Verdict
from .ledger import Decision
from .templates import StepDefinition


def _counted_decisions(
    decisions: Iterable[Decision], eligible: AbstractSet[str],
) -> Dict[str, DecisionType]:
    # Decisions from principals no longer eligible do not count.
    return {d.approver_id: d.decision for d in decisions if d.approver_id in eligible}


def evaluate_all(counted: Dict[str, DecisionType], eligible: AbstractSet[str]) -> Verdict:
    if any(not d.is_approval for d in counted.values()):
        return Verdict.BLOCKED
    if len(counted) == len(eligible):
        return Verdict.SATISFIED
    return Verdict.PENDING


def evaluate_any(counted: Dict[str, DecisionType], eligible: AbstractSet[str]) -> Verdict:
    if any(d.is_approval for d in counted.values()):
        return Verdict.SATISFIED
    if len(counted) == len(eligible):
        return Verdict.BLOCKED
    return Verdict.PENDING


def evaluate_threshold(
    counted: Dict[str, DecisionType], eligible: AbstractSet[str], threshold: int,
) -> Verdict:
    approved = sum(1 for d in counted.values() if d.is_approval)
    if approved >= threshold:
        return Verdict.SATISFIED
    not_approved = len(counted) - approved
    if len(eligible) - not_approved < threshold:
        return Verdict.BLOCKED
    return Verdict.PENDING


class StepEvaluator:
    """Applies a step's aggregation policy to its recorded decisions."""

    def evaluate(
        self,
        step: StepDefinition,
        decisions: Iterable[Decision],
        eligible_approvers: AbstractSet[str],
    ) -> Verdict:
        """Compute the verdict for *step*.

        An empty eligible set is always PENDING: nobody can decide, so the
        step waits for directory membership to change rather than passing
        or failing vacuously.
        """
        eligible = frozenset(eligible_approvers)
        if not eligible:
            return Verdict.PENDING

        counted = _counted_decisions(decisions, eligible)

        if step.policy == AggregationPolicy.ALL:
            return evaluate_all(counted, eligible)
        if step.policy == AggregationPolicy.ANY:
            return evaluate_any(counted, eligible)
        if step.policy == AggregationPolicy.THRESHOLD:
            return evaluate_threshold(counted, eligible, step.threshold or 1)
        raise ValueError(f"Unknown aggregation policy: {step.policy}")
