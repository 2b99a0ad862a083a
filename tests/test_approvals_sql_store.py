"""Tests for the SQLAlchemy-backed approval store (SQLite in memory)."""

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from src.approvals import (
    AggregationPolicy,
    ApprovalEngine,
    ApprovalRequest,
    ApproverSpec,
    AuditAction,
    AuditEntry,
    ConflictError,
    Decision,
    DecisionType,
    InMemoryRoleDirectory,
    RequestComment,
    RequestFilters,
    RequestStatus,
    SqlAlchemyApprovalStore,
    StaleStateError,
    StepDefinition,
    StorageError,
    SubjectRef,
    WorkflowTemplate,
)

SUBJECT = SubjectRef(
    entity_type="price",
    entity_id="pl-2026",
    title="Price list 2026",
    metadata={"currency": "EUR"},
)


@pytest.fixture
def store():
    return SqlAlchemyApprovalStore.from_url("sqlite://")


@pytest.fixture
def template(store):
    tmpl = WorkflowTemplate(
        name="Pricing",
        steps=(
            StepDefinition(
                order=0,
                approvers=(ApproverSpec.user("a"), ApproverSpec.role("finance")),
                policy=AggregationPolicy.THRESHOLD,
                threshold=2,
                name="Finance",
            ),
            StepDefinition(order=1, approvers=(ApproverSpec.user("ceo"),)),
        ),
        created_by="admin",
    )
    store.save_template(tmpl)
    return tmpl


def _request(template, **kwargs):
    return ApprovalRequest(
        template_id=template.template_id,
        requester_id=kwargs.pop("requester_id", "req"),
        org_id=kwargs.pop("org_id", "acme"),
        subject=SUBJECT,
        **kwargs,
    )


# ── Templates ────────────────────────────────────────────────────────


class TestTemplates:
    def test_round_trip(self, store, template):
        loaded = store.get_template(template.template_id)
        assert loaded == template
        assert loaded.step(0).threshold == 2
        assert loaded.created_at.tzinfo is not None

    def test_missing(self, store):
        assert store.get_template("missing") is None

    def test_duplicate_id(self, store, template):
        with pytest.raises(ConflictError):
            store.save_template(template)

    def test_list(self, store, template):
        assert [t.template_id for t in store.list_templates()] == [template.template_id]


# ── Requests ─────────────────────────────────────────────────────────


class TestRequests:
    def test_insert_and_get(self, store, template):
        req = _request(template, is_urgent=True)
        store.insert_request(req)
        loaded = store.get_request(req.request_id)
        assert loaded.status == RequestStatus.DRAFT
        assert loaded.subject == SUBJECT
        assert loaded.is_urgent is True
        assert loaded.created_at == req.created_at

    def test_insert_with_first_audit_entry(self, store, template):
        req = _request(template)
        store.insert_request(req, AuditEntry(req.request_id, 1, AuditAction.CREATED, "req"))
        assert store.get_request(req.request_id) is not None
        assert [e.action for e in store.list_audit_entries(req.request_id)] == [AuditAction.CREATED]

    def test_commit_transition(self, store, template):
        req = _request(template)
        store.insert_request(req)

        moved = replace(req, status=RequestStatus.IN_PROGRESS, current_step_index=0, version=1)
        entry = AuditEntry(req.request_id, 1, AuditAction.SUBMITTED, "req")
        assert store.commit_transition(moved, 0, entry)

        loaded = store.get_request(req.request_id)
        assert loaded.status == RequestStatus.IN_PROGRESS
        assert loaded.current_step_index == 0
        assert loaded.version == 1
        assert [e.entry_id for e in store.list_audit_entries(req.request_id)] == [entry.entry_id]

    def test_commit_transition_stale_version_writes_nothing(self, store, template):
        req = _request(template)
        store.insert_request(req)
        stale = replace(req, status=RequestStatus.CANCELLED, version=1)
        entry = AuditEntry(req.request_id, 1, AuditAction.REQUEST_CANCELLED, "req")

        assert not store.commit_transition(stale, 3, entry)
        assert store.get_request(req.request_id).status == RequestStatus.DRAFT
        assert store.list_audit_entries(req.request_id) == []

    def test_commit_transition_rolls_back_on_audit_conflict(self, store, template):
        req = _request(template)
        store.insert_request(req, AuditEntry(req.request_id, 1, AuditAction.CREATED, "req"))
        moved = replace(req, status=RequestStatus.IN_PROGRESS, current_step_index=0, version=1)
        reused = AuditEntry(req.request_id, 1, AuditAction.SUBMITTED, "req")

        with pytest.raises(ConflictError):
            store.commit_transition(moved, 0, reused)
        loaded = store.get_request(req.request_id)
        assert loaded.status == RequestStatus.DRAFT
        assert loaded.version == 0
        assert [e.action for e in store.list_audit_entries(req.request_id)] == [AuditAction.CREATED]

    def test_commit_transition_unknown_request(self, store, template):
        entry = AuditEntry("missing", 1, AuditAction.SUBMITTED, "req")
        assert not store.commit_transition(_request(template), 0, entry)

    def test_due_date_round_trip(self, store, template):
        due = datetime(2031, 6, 30, 17, 0, tzinfo=timezone.utc)
        dated = _request(template, due_date=due)
        store.insert_request(dated)
        store.insert_request(_request(template))
        assert store.get_request(dated.request_id).due_date == due

        found = store.list_requests(RequestFilters(due_before=due + timedelta(days=1)))
        assert [r.request_id for r in found] == [dated.request_id]
        assert store.list_requests(RequestFilters(due_before=due - timedelta(days=1))) == []

    def test_subject_metadata_not_shared(self, store, template):
        req = _request(template)
        store.insert_request(req)
        loaded = store.get_request(req.request_id)
        loaded.subject.metadata["currency"] = "USD"
        assert store.get_request(req.request_id).subject.metadata == {"currency": "EUR"}

    def test_list_with_filters(self, store, template):
        store.insert_request(_request(template, requester_id="alice"))
        store.insert_request(_request(template, requester_id="bob", org_id="globex"))
        assert len(store.list_requests(RequestFilters())) == 2
        assert [r.requester_id for r in store.list_requests(RequestFilters(org_id="globex"))] == ["bob"]
        assert store.list_requests(RequestFilters(status=RequestStatus.APPROVED)) == []
        assert len(store.list_requests(RequestFilters(entity_type="price"), limit=1)) == 1


# ── Decisions and audit ──────────────────────────────────────────────


class TestDecisionsAndAudit:
    def test_decision_uniqueness(self, store, template):
        req = _request(template)
        store.insert_request(req)
        store.insert_decision(Decision(req.request_id, 0, "a", DecisionType.APPROVED))
        with pytest.raises(ConflictError):
            store.insert_decision(Decision(req.request_id, 0, "a", DecisionType.REJECTED))
        store.insert_decision(Decision(req.request_id, 1, "a", DecisionType.APPROVED))

        assert len(store.list_decisions(req.request_id)) == 2
        step0 = store.list_decisions(req.request_id, step_index=0)
        assert [d.decision for d in step0] == [DecisionType.APPROVED]

    def test_decision_attachments_round_trip(self, store, template):
        req = _request(template)
        store.insert_request(req)
        store.insert_decision(Decision(
            req.request_id, 0, "a", DecisionType.APPROVED,
            comment="see memo", attachments=("memo-7", "s3://bids/42.pdf"),
        ))
        store.insert_decision(Decision(req.request_id, 0, "b", DecisionType.APPROVED))
        by_approver = {d.approver_id: d for d in store.list_decisions(req.request_id)}
        assert by_approver["a"].attachments == ("memo-7", "s3://bids/42.pdf")
        assert by_approver["b"].attachments == ()

    def test_audit_sequence_uniqueness(self, store, template):
        req = _request(template)
        store.insert_request(req)
        store.insert_audit_entry(AuditEntry(req.request_id, 1, AuditAction.CREATED, "req"))
        with pytest.raises(ConflictError):
            store.insert_audit_entry(AuditEntry(req.request_id, 1, AuditAction.SUBMITTED, "req"))

    def test_audit_entries_ordered_by_sequence(self, store, template):
        req = _request(template)
        store.insert_request(req)
        store.insert_audit_entry(AuditEntry(req.request_id, 2, AuditAction.SUBMITTED, "req"))
        store.insert_audit_entry(AuditEntry(req.request_id, 1, AuditAction.CREATED, "req", {"k": "v"}))
        entries = store.list_audit_entries(req.request_id)
        assert [e.sequence for e in entries] == [1, 2]
        assert entries[0].details == {"k": "v"}


# ── Comments ─────────────────────────────────────────────────────────


class TestComments:
    def test_comment_round_trip(self, store, template):
        req = _request(template)
        store.insert_request(req)
        c = RequestComment(req.request_id, "a", "Please check VAT", mentions=("req",))
        store.insert_comment(c)
        assert store.get_comment(c.comment_id) == c
        assert store.list_comments(req.request_id) == [c]
        assert store.get_comment("missing") is None


# ── Failures ─────────────────────────────────────────────────────────


class TestStorageFailures:
    def test_missing_schema_raises_storage_error(self):
        store = SqlAlchemyApprovalStore.from_url("sqlite://", create_schema=False)
        with pytest.raises(StorageError):
            store.get_template("anything")


# ── Engine on the SQL store ──────────────────────────────────────────


class TestEngineOnSqlStore:
    def setup_method(self):
        directory = InMemoryRoleDirectory({("acme", "finance"): {"fiona", "frank"}})
        self.engine = ApprovalEngine(
            store=SqlAlchemyApprovalStore.from_url("sqlite://"),
            directory=directory,
        )
        self.tid = self.engine.create_template("Pricing", [
            StepDefinition(
                order=0,
                approvers=(ApproverSpec.role("finance"),),
                policy=AggregationPolicy.ANY,
            ),
            StepDefinition(order=1, approvers=(ApproverSpec.user("ceo"),)),
        ])

    def test_full_approval(self):
        rid = self.engine.submit(self.tid, "req", SUBJECT, org_id="acme")
        assert self.engine.decide(rid, "fiona", DecisionType.APPROVED).current_step_index == 1
        snap = self.engine.decide(rid, "ceo", DecisionType.APPROVED)

        assert snap.status == RequestStatus.APPROVED
        assert snap.version == 2
        assert [e.action for e in self.engine.history(rid)] == [
            AuditAction.SUBMITTED,
            AuditAction.STEP_ADVANCED,
            AuditAction.REQUEST_APPROVED,
        ]
        assert self.engine.verify_audit(rid)

    def test_rejection_on_last_step(self):
        rid = self.engine.submit(self.tid, "req", SUBJECT, org_id="acme")
        self.engine.decide(rid, "fiona", DecisionType.APPROVED)
        self.engine.decide(rid, "ceo", DecisionType.REJECTED)
        assert self.engine.get_request(rid).status == RequestStatus.REJECTED

    def test_conflict_on_same_step(self):
        step = StepDefinition(order=0, approvers=(ApproverSpec.user("x"), ApproverSpec.user("y")))
        tid = self.engine.create_template("Pair", [step])
        rid = self.engine.submit(tid, "req", SUBJECT, org_id="acme")
        self.engine.decide(rid, "x", DecisionType.APPROVED)
        with pytest.raises(ConflictError):
            self.engine.decide(rid, "x", DecisionType.APPROVED)

    def test_pending_for_and_comments(self):
        rid = self.engine.submit(self.tid, "req", SUBJECT, org_id="acme")
        assert [s.request_id for s in self.engine.pending_for("frank")] == [rid]
        self.engine.add_comment(rid, "frank", "Margin looks thin")
        assert [c.content for c in self.engine.comments(rid)] == ["Margin looks thin"]

    def test_due_date_and_attachments_through_engine(self):
        due = datetime(2031, 1, 15, 9, 0, tzinfo=timezone.utc)
        rid = self.engine.submit(self.tid, "req", SUBJECT, org_id="acme", due_date=due)
        snap = self.engine.decide(
            rid, "fiona", DecisionType.APPROVED, attachments=["calc-sheet-3"],
        )
        assert snap.due_date == due
        assert snap.decisions[0].attachments == ("calc-sheet-3",)
        assert self.engine.history(rid)[-1].details["attachments"] == ["calc-sheet-3"]


class _LaggingAuditStore(SqlAlchemyApprovalStore):
    """Hides the newest audit row, as a stale read replica would."""

    lagging = False

    def list_audit_entries(self, request_id):
        entries = super().list_audit_entries(request_id)
        return entries[:-1] if self.lagging else entries


class TestEngineAuditConflict:
    def test_conflicting_audit_insert_rolls_back_transition(self):
        store = _LaggingAuditStore.from_url("sqlite://")
        engine = ApprovalEngine(store=store)
        tid = engine.create_template("Solo", [
            StepDefinition(order=0, approvers=(ApproverSpec.user("x"),)),
        ])
        rid = engine.submit(tid, "req", SUBJECT, org_id="acme")

        store.lagging = True
        with pytest.raises(StaleStateError):
            engine.decide(rid, "x", DecisionType.APPROVED)
        store.lagging = False

        snap = engine.get_request(rid)
        assert snap.status == RequestStatus.IN_PROGRESS
        assert snap.version == 0
        assert [e.action for e in engine.history(rid)] == [AuditAction.SUBMITTED]
        assert engine.verify_audit(rid)
