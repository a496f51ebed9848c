from __future__ import annotations

import logging

from flows import ADMIN, BUDGET, PROCUREMENT, RFQ_STEPS, SUPPLY, advance, new_case
from procureflow.config import WorkflowConfig
from procureflow.mutation_guard import MutationDecisionKind
from procureflow.permissions import Capability, PermissionMatrix, Role
from procureflow.results import RejectionKind
from procureflow.service import build_workflow
from procureflow.states import CaseState, StageKind
from procureflow.store import InMemoryStore


def _quotation_ids(workflow, case_id: str) -> list[str]:
    rows = workflow.list_records(case_id, StageKind.QUOTATION, actor=ADMIN).unwrap()
    return [row["record_id"] for row in rows]


def test_edit_without_downstream_data_is_allowed(workflow, notifier):
    case_id = new_case(workflow)
    advance(workflow, case_id, RFQ_STEPS[:1])

    decision = workflow.validate_edit(case_id, StageKind.RFQ, PROCUREMENT.role)
    assert decision.kind is MutationDecisionKind.ALLOWED

    data = workflow.edit(case_id, StageKind.RFQ, None, {"notes": "fixed typo"}, actor=PROCUREMENT, reason="typo").unwrap()
    assert data["record"]["data"]["notes"] == "fixed typo"
    assert data["record"]["data"]["rfq_number"] == "RFQ-1"
    assert data["override"] is False

    entry = workflow.timeline(case_id, order="desc").unwrap()[0]
    assert entry["change_type"] == "edit"
    assert entry["reason"] == "typo"
    assert entry["payload"]["before"]["notes"] is None
    assert entry["payload"]["after"]["notes"] == "fixed typo"
    assert entry["override"] is False
    assert workflow.get_case(case_id).unwrap()["current_state"] == "RFQ_ISSUED"
    assert notifier.alerts == []


def test_edit_with_downstream_data_needs_override(workflow):
    case_id = new_case(workflow)
    advance(workflow, case_id, RFQ_STEPS[:2])

    decision = workflow.validate_edit(case_id, StageKind.RFQ, PROCUREMENT.role)
    assert decision.kind is MutationDecisionKind.DENIED
    assert decision.rejection.kind is RejectionKind.DOWNSTREAM_BLOCKED
    assert decision.rejection.details == {"downstream": ["quotation"]}

    outcome = workflow.edit(case_id, StageKind.RFQ, None, {"notes": "x"}, actor=PROCUREMENT, reason="late change")
    assert outcome.kind is RejectionKind.DOWNSTREAM_BLOCKED
    assert outcome.rejection.message == "Cannot edit rfq because downstream data exists. Admin override required."


def test_admin_override_edit_is_flagged_and_alerted(workflow, notifier):
    case_id = new_case(workflow)
    advance(workflow, case_id, RFQ_STEPS[:2])

    assert workflow.validate_edit(case_id, StageKind.RFQ, ADMIN.role).kind is MutationDecisionKind.ALLOWED_WITH_OVERRIDE
    data = workflow.edit(case_id, StageKind.RFQ, None, {"notes": "x"}, actor=ADMIN, reason="audit finding").unwrap()

    assert data["override"] is True
    entry = workflow.timeline(case_id, order="desc").unwrap()[0]
    assert entry["override"] is True
    assert len(notifier.alerts) == 1
    alert = notifier.alerts[0]
    assert alert.action == "update"
    assert alert.entity_kind == "RFQ"
    assert alert.summary() == (
        f"User user_admin (ADMIN) performed UPDATE on RFQ for Case {case_id}. Reason: audit finding"
    )


def test_role_without_edit_capability_is_denied(workflow):
    case_id = new_case(workflow)
    advance(workflow, case_id, RFQ_STEPS[:1])
    outcome = workflow.edit(case_id, StageKind.RFQ, None, {"notes": "x"}, actor=SUPPLY, reason="nope")
    assert outcome.kind is RejectionKind.PERMISSION_DENIED
    assert outcome.rejection.message == "Role SUPPLY_MANAGER cannot edit rfq"


def test_reason_is_required(workflow):
    case_id = new_case(workflow)
    advance(workflow, case_id, RFQ_STEPS[:1])
    outcome = workflow.edit(case_id, StageKind.RFQ, None, {"notes": "x"}, actor=ADMIN, reason="   ")
    assert outcome.kind is RejectionKind.VALIDATION_ERROR
    assert workflow.delete(case_id, StageKind.RFQ, None, actor=ADMIN, reason="").kind is RejectionKind.VALIDATION_ERROR


def test_edit_validates_merged_payload(workflow):
    case_id = new_case(workflow)
    advance(workflow, case_id, RFQ_STEPS[:2])
    record_id = _quotation_ids(workflow, case_id)[0]

    outcome = workflow.edit(case_id, StageKind.QUOTATION, record_id, {"amount": -1}, actor=ADMIN, reason="fix")

    assert outcome.kind is RejectionKind.VALIDATION_ERROR
    rows = workflow.list_records(case_id, StageKind.QUOTATION, actor=ADMIN).unwrap()
    assert rows[0]["data"]["amount"] == 1000


def test_collection_edit_requires_record_id(workflow):
    case_id = new_case(workflow)
    advance(workflow, case_id, RFQ_STEPS[:2])
    outcome = workflow.edit(case_id, StageKind.QUOTATION, None, {"amount": 5}, actor=ADMIN, reason="fix")
    assert outcome.kind is RejectionKind.VALIDATION_ERROR
    missing = workflow.edit(case_id, StageKind.QUOTATION, "rec_missing", {"amount": 5}, actor=ADMIN, reason="fix")
    assert missing.kind is RejectionKind.NOT_FOUND


def test_validate_on_unknown_case_is_not_found(workflow):
    decision = workflow.validate_delete("case_missing", StageKind.RFQ, ADMIN.role)
    assert decision.allowed is False
    assert decision.rejection.kind is RejectionKind.NOT_FOUND


def test_deleting_one_of_several_quotations_keeps_state(workflow):
    case_id = new_case(workflow)
    advance(workflow, case_id, RFQ_STEPS[:4])
    record_id = _quotation_ids(workflow, case_id)[1]

    data = workflow.delete(case_id, StageKind.QUOTATION, record_id, actor=PROCUREMENT, reason="withdrawn").unwrap()

    assert data["rolled_back_to"] is None
    assert data["case"]["current_state"] == "QUOTATION_COLLECTION"
    assert len(_quotation_ids(workflow, case_id)) == 2


def test_deleting_last_quotation_rolls_back_to_rfq_issued(workflow):
    case_id = new_case(workflow)
    advance(workflow, case_id, RFQ_STEPS[:2])
    record_id = _quotation_ids(workflow, case_id)[0]

    data = workflow.delete(case_id, StageKind.QUOTATION, record_id, actor=PROCUREMENT, reason="withdrawn").unwrap()

    assert data["rolled_back_to"] == "RFQ_ISSUED"
    entry = workflow.timeline(case_id, order="desc").unwrap()[0]
    assert entry["change_type"] == "delete"
    assert (entry["from_state"], entry["to_state"]) == ("QUOTATION_COLLECTION", "RFQ_ISSUED")
    assert entry["payload"]["before"]["supplier_name"] == "Supplier A"


def test_deleting_abstract_returns_to_quotation_collection(workflow):
    case_id = new_case(workflow)
    advance(workflow, case_id, RFQ_STEPS[:5])
    assert workflow.get_case(case_id).unwrap()["current_state"] == "ABSTRACT_OF_QUOTATIONS"

    data = workflow.delete(case_id, StageKind.ABSTRACT, None, actor=ADMIN, reason="redo abstract").unwrap()

    assert data["case"]["current_state"] == "QUOTATION_COLLECTION"
    assert data["override"] is False


def test_delete_with_downstream_data_is_blocked_without_override(workflow):
    case_id = new_case(workflow)
    advance(workflow, case_id, RFQ_STEPS[:5])
    record_id = _quotation_ids(workflow, case_id)[0]

    outcome = workflow.delete(case_id, StageKind.QUOTATION, record_id, actor=PROCUREMENT, reason="withdrawn")

    assert outcome.kind is RejectionKind.DOWNSTREAM_BLOCKED
    assert "Admin override required to cascade delete" in outcome.rejection.message
    assert len(_quotation_ids(workflow, case_id)) == 3


def test_admin_override_delete_cascades_and_rolls_back(workflow, notifier):
    case_id = new_case(workflow)
    advance(workflow, case_id, RFQ_STEPS, until=CaseState.BAC_RESOLUTION)

    data = workflow.delete(case_id, StageKind.RFQ, None, actor=ADMIN, reason="wrong RFQ").unwrap()

    assert data["override"] is True
    assert data["case"]["current_state"] == "DRAFT"
    assert [c["kind"] for c in data["cascaded"]] == [
        "quotation",
        "quotation",
        "quotation",
        "abstract",
        "bac_resolution",
    ]
    with workflow.store.transaction(case_id) as uow:
        assert uow.records.list(case_id=case_id) == []
    entry = workflow.timeline(case_id, order="desc").unwrap()[0]
    assert (entry["from_state"], entry["to_state"]) == ("BAC_RESOLUTION", "DRAFT")
    assert entry["override"] is True
    assert notifier.alerts[0].action == "delete"
    assert workflow.verify_audit(case_id).unwrap()["valid"] is True


def test_notifier_failure_does_not_undo_mutation(caplog):
    class BrokenNotifier:
        def notify(self, alert):
            raise ConnectionError("webhook down")

    workflow = build_workflow(store=InMemoryStore(), config=WorkflowConfig(), notifier=BrokenNotifier())
    case_id = new_case(workflow)
    advance(workflow, case_id, RFQ_STEPS[:2])

    with caplog.at_level(logging.ERROR, logger="procureflow.mutation_guard"):
        outcome = workflow.edit(case_id, StageKind.RFQ, None, {"notes": "x"}, actor=ADMIN, reason="fix")

    assert outcome.ok
    assert "override_alert_failed" in caplog.text
    rows = workflow.list_records(case_id, StageKind.RFQ, actor=ADMIN).unwrap()
    assert rows[0]["data"]["notes"] == "x"


def test_deleting_ors_returns_case_to_acceptance(workflow):
    case_id = new_case(workflow)
    advance(workflow, case_id, RFQ_STEPS, until=CaseState.ORS)

    data = workflow.delete(case_id, StageKind.ORS, None, actor=ADMIN, reason="wrong fund source").unwrap()

    assert data["override"] is False
    assert data["rolled_back_to"] == "ACCEPTANCE"
    assert workflow.get_case(case_id).unwrap()["current_state"] == "ACCEPTANCE"


def test_deleting_ors_with_dv_present_needs_override(notifier):
    budget_caps = (Capability.VIEW, Capability.CREATE, Capability.EDIT, Capability.DELETE)
    permissions = PermissionMatrix(
        {
            Role.ADMIN: {kind: tuple(Capability) for kind in StageKind},
            Role.BUDGET_MANAGER: {StageKind.ORS: budget_caps},
        }
    )
    workflow = build_workflow(store=InMemoryStore(), config=WorkflowConfig(), permissions=permissions, notifier=notifier)
    case_id = new_case(workflow)
    advance(workflow, case_id, RFQ_STEPS, until=CaseState.DV)

    blocked = workflow.delete(case_id, StageKind.ORS, None, actor=BUDGET, reason="wrong fund source")
    assert blocked.kind is RejectionKind.DOWNSTREAM_BLOCKED
    assert blocked.rejection.details == {"downstream": ["dv"]}
    assert workflow.get_case(case_id).unwrap()["current_state"] == "DV"

    data = workflow.delete(case_id, StageKind.ORS, None, actor=ADMIN, reason="wrong fund source").unwrap()

    assert data["override"] is True
    assert data["case"]["current_state"] == "ACCEPTANCE"
    assert [c["kind"] for c in data["cascaded"]] == ["dv"]
    assert len(notifier.alerts) == 1
