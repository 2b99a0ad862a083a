"""Concurrent decisions against the same and different requests."""

import threading

import pytest

from src.approvals import (
    AggregationPolicy,
    ApprovalEngine,
    ApproverSpec,
    AuditAction,
    ConflictError,
    DecisionType,
    EngineConfig,
    InvalidStateError,
    RequestStatus,
    StepDefinition,
    SubjectRef,
)

SUBJECT = SubjectRef(entity_type="bid", entity_id="bid-7", title="Concurrent bid")


def _run_concurrently(*calls):
    """Start every call behind one barrier; return (results, errors) in call order."""
    barrier = threading.Barrier(len(calls))
    results = [None] * len(calls)
    errors = [None] * len(calls)

    def worker(i, fn):
        barrier.wait()
        try:
            results[i] = fn()
        except Exception as exc:
            errors[i] = exc

    threads = [threading.Thread(target=worker, args=(i, fn)) for i, fn in enumerate(calls)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)
    return results, errors


class TestExactlyOneAdvancement:
    def setup_method(self):
        self.engine = ApprovalEngine(config=EngineConfig(lock_timeout_seconds=5.0))
        self.tid = self.engine.create_template("Threshold", [
            StepDefinition(
                order=0,
                approvers=tuple(ApproverSpec.user(u) for u in ("a", "b", "c")),
                policy=AggregationPolicy.THRESHOLD,
                threshold=2,
            ),
            StepDefinition(order=1, approvers=(ApproverSpec.user("d"),)),
            StepDefinition(order=2, approvers=(ApproverSpec.user("e"),)),
        ])

    def test_two_concurrent_approvals_advance_once(self):
        for _ in range(25):
            rid = self.engine.submit(self.tid, "req", SUBJECT, org_id="acme")
            _, errors = _run_concurrently(
                lambda: self.engine.decide(rid, "a", DecisionType.APPROVED),
                lambda: self.engine.decide(rid, "b", DecisionType.APPROVED),
            )
            assert errors == [None, None]

            history = self.engine.history(rid)
            advanced = [e for e in history if e.action == AuditAction.STEP_ADVANCED]
            assert len(advanced) == 1
            assert advanced[0].details["to_step_index"] == 1
            snap = self.engine.get_request(rid)
            assert snap.status == RequestStatus.IN_PROGRESS
            assert snap.current_step_index == 1
            # submit + one entry per decide
            assert len(history) == 3
            assert [e.sequence for e in history] == [1, 2, 3]
            assert self.engine.verify_audit(rid)

    def test_third_approver_after_advance(self):
        rid = self.engine.submit(self.tid, "req", SUBJECT, org_id="acme")
        _run_concurrently(
            lambda: self.engine.decide(rid, "a", DecisionType.APPROVED),
            lambda: self.engine.decide(rid, "b", DecisionType.APPROVED),
        )
        with pytest.raises(InvalidStateError):
            self.engine.decide(rid, "c", DecisionType.APPROVED, step_index=0)
        assert self.engine.get_request(rid).current_step_index == 1


class TestConcurrentDuplicates:
    def test_same_approver_twice_records_once(self):
        engine = ApprovalEngine()
        tid = engine.create_template("T", [
            StepDefinition(order=0, approvers=(ApproverSpec.user("a"), ApproverSpec.user("b"))),
        ])
        rid = engine.submit(tid, "req", SUBJECT, org_id="acme")

        calls = [lambda: engine.decide(rid, "a", DecisionType.APPROVED) for _ in range(6)]
        _, errors = _run_concurrently(*calls)

        assert sum(1 for e in errors if e is None) == 1
        assert all(isinstance(e, ConflictError) for e in errors if e is not None)
        assert len(engine.get_request(rid).decisions) == 1
        assert len(engine.history(rid)) == 2


class TestConcurrentTerminalRace:
    def test_approve_and_cancel_race_leaves_one_outcome(self):
        engine = ApprovalEngine()
        tid = engine.create_template("ANY", [
            StepDefinition(
                order=0,
                approvers=tuple(ApproverSpec.user(u) for u in ("a", "b")),
                policy=AggregationPolicy.ANY,
            ),
        ])
        for _ in range(20):
            rid = engine.submit(tid, "req", SUBJECT, org_id="acme")
            _, errors = _run_concurrently(
                lambda: engine.decide(rid, "a", DecisionType.APPROVED),
                lambda: engine.cancel(rid, "req"),
            )
            status = engine.get_request(rid).status
            assert status in (RequestStatus.APPROVED, RequestStatus.CANCELLED)

            terminal = [
                e for e in engine.history(rid)
                if e.action in (AuditAction.REQUEST_APPROVED, AuditAction.REQUEST_CANCELLED)
            ]
            assert len(terminal) == 1
            for err in errors:
                assert err is None or isinstance(err, InvalidStateError)


class TestIndependentRequests:
    def test_many_requests_in_parallel(self):
        engine = ApprovalEngine()
        tid = engine.create_template("T", [
            StepDefinition(order=0, approvers=(ApproverSpec.user("a"),)),
            StepDefinition(order=1, approvers=(ApproverSpec.user("b"),)),
        ])
        rids = [engine.submit(tid, "req", SUBJECT, org_id="acme") for _ in range(10)]

        def approve_all(rid):
            engine.decide(rid, "a", DecisionType.APPROVED)
            return engine.decide(rid, "b", DecisionType.APPROVED).status

        results, errors = _run_concurrently(*[(lambda r=r: approve_all(r)) for r in rids])
        assert errors == [None] * 10
        assert results == [RequestStatus.APPROVED] * 10
        assert engine.locks.active_count == 0
