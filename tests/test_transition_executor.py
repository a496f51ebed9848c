from __future__ import annotations

import threading

import pytest

from flows import ADMIN, PROCUREMENT, STEPS_BY_METHOD, SUPPLY, RFQ_STEPS, advance, new_case
from procureflow.config import WorkflowConfig
from procureflow.results import RejectionKind
from procureflow.service import build_workflow
from procureflow.states import CaseState, ProcurementMethod, StageKind
from procureflow.store import InMemoryStore


@pytest.mark.parametrize("method", list(ProcurementMethod))
def test_every_method_reaches_closed(workflow, method):
    case_id = new_case(workflow, method)
    result = advance(workflow, case_id, STEPS_BY_METHOD[method])
    assert result["case"]["current_state"] == "CLOSED"
    verify = workflow.verify_audit(case_id).unwrap()
    assert verify["valid"] is True


def test_rfq_scenario_with_too_few_quotations(workflow):
    case_id = new_case(workflow)
    first = workflow.perform(case_id, StageKind.RFQ, {}, actor=ADMIN).unwrap()
    assert first["case"]["current_state"] == "RFQ_ISSUED"
    assert first["transitioned"] is True

    q1 = workflow.perform(case_id, StageKind.QUOTATION, {"supplier_name": "A", "amount": 10}, actor=ADMIN).unwrap()
    q2 = workflow.perform(case_id, StageKind.QUOTATION, {"supplier_name": "B", "amount": 12}, actor=ADMIN).unwrap()
    assert q1["transitioned"] is True
    assert q1["case"]["current_state"] == "QUOTATION_COLLECTION"
    assert q2["transitioned"] is False

    outcome = workflow.perform(case_id, StageKind.ABSTRACT, {}, actor=ADMIN)
    assert outcome.kind is RejectionKind.PREREQUISITE_NOT_MET
    assert workflow.get_case(case_id).unwrap()["current_state"] == "QUOTATION_COLLECTION"


def test_each_accepted_transition_appends_exactly_one_audit_entry(workflow):
    case_id = new_case(workflow)
    advance(workflow, case_id, RFQ_STEPS[:2])
    timeline = workflow.timeline(case_id).unwrap()
    assert [e["change_type"] for e in timeline] == ["transition", "transition"]
    assert [(e["from_state"], e["to_state"]) for e in timeline] == [
        ("DRAFT", "RFQ_ISSUED"),
        ("RFQ_ISSUED", "QUOTATION_COLLECTION"),
    ]
    assert [e["seq"] for e in timeline] == [1, 2]

    workflow.perform(case_id, StageKind.QUOTATION, {"supplier_name": "B", "amount": 1}, actor=ADMIN).unwrap()
    latest = workflow.timeline(case_id, order="desc").unwrap()[0]
    assert latest["action"] == "add_quotation"
    assert latest["change_type"] == "append"
    assert latest["to_state"] is None


def test_rejected_transition_leaves_no_trace(workflow):
    case_id = new_case(workflow)
    outcome = workflow.transition(case_id, CaseState.AWARDED, {"awarded_to": "X"}, actor=ADMIN)
    assert outcome.kind is RejectionKind.TRANSITION_NOT_ALLOWED
    assert outcome.rejection.details["allowed"] == ["POSTING", "RFQ_ISSUED"]
    assert workflow.timeline(case_id).unwrap() == []
    assert workflow.get_case(case_id).unwrap()["version"] == 1


def test_transition_to_current_state_is_duplicate(workflow):
    case_id = new_case(workflow)
    workflow.perform(case_id, StageKind.RFQ, {}, actor=ADMIN).unwrap()
    outcome = workflow.perform(case_id, StageKind.RFQ, {}, actor=ADMIN)
    assert outcome.kind is RejectionKind.DUPLICATE_REQUEST


def test_transition_back_to_draft_is_not_allowed(workflow):
    case_id = new_case(workflow)
    outcome = workflow.transition(case_id, CaseState.DRAFT, None, actor=ADMIN)
    assert outcome.kind is RejectionKind.TRANSITION_NOT_ALLOWED


def test_unknown_case_is_not_found(workflow):
    outcome = workflow.perform("case_missing", StageKind.RFQ, {}, actor=ADMIN)
    assert outcome.kind is RejectionKind.NOT_FOUND


def test_invalid_payload_is_a_validation_error(workflow):
    case_id = new_case(workflow)
    workflow.perform(case_id, StageKind.RFQ, {}, actor=ADMIN).unwrap()
    outcome = workflow.perform(case_id, StageKind.QUOTATION, {"supplier_name": "A", "amount": -5}, actor=ADMIN)
    assert outcome.kind is RejectionKind.VALIDATION_ERROR
    assert outcome.rejection.details["errors"][0]["loc"] == "amount"
    assert workflow.get_case(case_id).unwrap()["current_state"] == "RFQ_ISSUED"


def test_collection_action_requires_payload(workflow):
    case_id = new_case(workflow)
    outcome = workflow.perform(case_id, StageKind.QUOTATION, None, actor=ADMIN)
    assert outcome.kind is RejectionKind.VALIDATION_ERROR


def test_role_without_create_capability_is_denied(workflow):
    case_id = new_case(workflow)
    outcome = workflow.perform(case_id, StageKind.RFQ, {}, actor=SUPPLY)
    assert outcome.kind is RejectionKind.PERMISSION_DENIED
    assert outcome.rejection.message == "Role SUPPLY_MANAGER cannot create rfq"
    assert "PROCUREMENT_MANAGER" in outcome.rejection.details["allowed_roles"]
    assert workflow.perform(case_id, StageKind.RFQ, {}, actor=PROCUREMENT).ok


def test_posting_window_shorter_than_minimum_is_rejected(workflow):
    case_id = new_case(workflow)
    outcome = workflow.perform(
        case_id,
        StageKind.POSTING,
        {"posting_start_at": "2026-01-01T00:00:00Z", "posting_end_at": "2026-01-03T00:00:00Z"},
        actor=ADMIN,
    )
    assert outcome.kind is RejectionKind.VALIDATION_ERROR
    assert "at least 7 days" in outcome.rejection.message


def test_idempotency_token_is_consumed_once(workflow):
    case_id = new_case(workflow)
    first = workflow.perform(case_id, StageKind.RFQ, {}, actor=ADMIN, idempotency_token="tok-1")
    second = workflow.perform(case_id, StageKind.RFQ, {}, actor=ADMIN, idempotency_token="tok-1")
    assert first.ok
    assert second.kind is RejectionKind.DUPLICATE_REQUEST
    assert second.rejection.message == "Duplicate request"
    assert len(workflow.timeline(case_id).unwrap()) == 1


def test_idempotency_token_is_consumed_even_when_rejected(workflow):
    case_id = new_case(workflow)
    rejected = workflow.perform(case_id, StageKind.ABSTRACT, {}, actor=ADMIN, idempotency_token="tok-2")
    retried = workflow.perform(case_id, StageKind.ABSTRACT, {}, actor=ADMIN, idempotency_token="tok-2")
    assert rejected.kind is RejectionKind.TRANSITION_NOT_ALLOWED
    assert retried.kind is RejectionKind.DUPLICATE_REQUEST


def test_idempotency_token_expires_after_ttl():
    store = InMemoryStore()
    assert store.consume_idempotency_key(scope_key="k", now=1000.0, ttl_seconds=300)
    assert not store.consume_idempotency_key(scope_key="k", now=1299.0, ttl_seconds=300)
    assert store.consume_idempotency_key(scope_key="k", now=1300.0, ttl_seconds=300)


def test_concurrent_identical_requests_commit_once():
    workflow = build_workflow(store=InMemoryStore(), config=WorkflowConfig())
    case_id = new_case(workflow)
    barrier = threading.Barrier(8)
    outcomes = []
    lock = threading.Lock()

    def _worker():
        barrier.wait()
        outcome = workflow.perform(case_id, StageKind.RFQ, {}, actor=ADMIN)
        with lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=_worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    accepted = [o for o in outcomes if o.ok]
    assert len(accepted) == 1
    assert {o.kind for o in outcomes if not o.ok} == {RejectionKind.DUPLICATE_REQUEST}
    assert len(workflow.timeline(case_id).unwrap()) == 1
    assert workflow.get_case(case_id).unwrap()["version"] == 2


def test_failure_inside_transaction_rolls_back(workflow, monkeypatch):
    case_id = new_case(workflow)

    def _boom(*args, **kwargs):
        raise RuntimeError("audit write failed")

    monkeypatch.setattr(workflow.audit_log, "append", _boom)
    with pytest.raises(RuntimeError, match="audit write failed"):
        workflow.perform(case_id, StageKind.RFQ, {}, actor=ADMIN)

    case = workflow.get_case(case_id).unwrap()
    assert case["current_state"] == "DRAFT"
    assert workflow.list_records(case_id, StageKind.RFQ, actor=ADMIN).unwrap() == []
