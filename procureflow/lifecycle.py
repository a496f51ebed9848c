from __future__ import annotations

from collections.abc import Iterable, Mapping
from types import MappingProxyType
from typing import Any

from procureflow.states import STATE_LABELS, STATE_MODULES, CaseState, ProcurementMethod, kind_for_state, stage_spec
from procureflow.transition_policy import TransitionPolicy, build_default_policy

_PRE_AWARD = "Next step: continue pre-award actions in Procurement until award and contract signing are completed."
_BEFORE_NTP = (
    "Next step: issue the Notice to Proceed (NTP) in Procurement, then Supply will handle delivery, "
    "inspection, and acceptance."
)
_BIDDING = "Next step: complete the bidding steps in Procurement through post-qualification and BAC resolution."
_DELIVERY = (
    "Stage: Delivery and Inspection. Next step: complete remaining Supply actions, "
    "then move to Budget for ORS preparation."
)
_IMPLEMENTATION = (
    "Stage: Contract implementation. Next step: Procurement records progress billing and the PMT inspection "
    "before acceptance."
)

NEXT_STEPS: Mapping[CaseState, str] = MappingProxyType(
    {
        CaseState.DRAFT: "Next step: set a posting period and start posting this case from the Procurement workspace.",
        CaseState.POSTING: _PRE_AWARD,
        CaseState.RFQ_ISSUED: _PRE_AWARD,
        CaseState.QUOTATION_COLLECTION: _PRE_AWARD,
        CaseState.ABSTRACT_OF_QUOTATIONS: _PRE_AWARD,
        CaseState.BID_BULLETIN: _BIDDING,
        CaseState.PRE_BID_CONF: _BIDDING,
        CaseState.BID_SUBMISSION_OPENING: _BIDDING,
        CaseState.TWG_EVALUATION: _BIDDING,
        CaseState.POST_QUALIFICATION: _BIDDING,
        CaseState.BAC_RESOLUTION: _BEFORE_NTP,
        CaseState.AWARDED: _BEFORE_NTP,
        CaseState.PO_APPROVED: _BEFORE_NTP,
        CaseState.CONTRACT_SIGNED: _BEFORE_NTP,
        CaseState.NTP_ISSUED: (
            "Stage: Contract implementation. Next step: Supply records delivery, inspection, "
            "and acceptance for this case."
        ),
        CaseState.PROGRESS_BILLING: _IMPLEMENTATION,
        CaseState.PMT_INSPECTION: _IMPLEMENTATION,
        CaseState.DELIVERY: _DELIVERY,
        CaseState.INSPECTION: _DELIVERY,
        CaseState.ACCEPTANCE: (
            "Stage: Accepted. Next step: Budget prepares the Obligation Request and Status (ORS) for this case."
        ),
        CaseState.ORS: (
            "Stage: ORS prepared. Next step: Accounting prepares the Disbursement Voucher (DV), "
            "then Cashier issues the check and check advice."
        ),
        CaseState.DV: (
            "Stage: Disbursement Voucher prepared. Next step: Cashier prepares the check in the Cashier workspace."
        ),
        CaseState.CHECK: "Stage: Check prepared. Next step: Cashier issues the check advice and closes the case.",
        CaseState.CLOSED: "This case is fully closed. No further actions are required.",
    }
)


def _first_entry_dates(audit: Iterable[Mapping[str, Any]]) -> dict[str, str]:
    # Audit is read in seq order, so the first hit is the earliest entry into the state.
    dates: dict[str, str] = {}
    for entry in sorted(audit, key=lambda row: int(row.get("seq") or 0)):
        to_state = entry.get("to_state")
        if entry.get("change_type") == "transition" and to_state and to_state not in dates:
            dates[str(to_state)] = str(entry.get("occurred_at") or "")
    return dates


def _record_date(state: CaseState, records: Iterable[Mapping[str, Any]]) -> str | None:
    kind = kind_for_state(state)
    if kind is None:
        return None
    spec = stage_spec(kind)
    for record in records:
        if record.get("kind") != kind.value:
            continue
        data = record.get("data") or {}
        if spec.date_field and data.get(spec.date_field):
            return str(data[spec.date_field])
        return str(record.get("created_at") or "") or None
    return None


def lifecycle_summary(
    case: Mapping[str, Any],
    records: Iterable[Mapping[str, Any]],
    audit: Iterable[Mapping[str, Any]],
    *,
    policy: TransitionPolicy | None = None,
) -> dict[str, Any]:
    """Progress view of a case along its method's stage order.

    A stage counts as completed when it lies at or before the current state
    and the case actually passed through it.
    ``completed_at`` is when the case first entered the stage according to
    the audit log, falling back to the stage record's own date.
    """
    policy = policy or build_default_policy()
    method = ProcurementMethod(case["method"])
    current = CaseState(case["current_state"])
    sequence = policy.sequence(method)
    current_idx = policy.index_of(method, current) or 0
    records = list(records)
    entered = _first_entry_dates(audit)

    stages: list[dict[str, Any]] = []
    for idx, state in enumerate(sequence):
        completed_at = None
        if state is CaseState.DRAFT:
            completed_at = str(case.get("created_at") or "") or None
        elif idx <= current_idx:
            completed_at = entered.get(state.value) or _record_date(state, records)
        # Optional stages the case skipped stay incomplete.
        completed = idx <= current_idx and (state in (CaseState.DRAFT, current) or completed_at is not None)
        stages.append(
            {
                "id": state.value,
                "label": STATE_LABELS[state],
                "module": STATE_MODULES[state].value,
                "completed": completed,
                "completed_at": completed_at,
            }
        )
    return {
        "case_id": case["case_id"],
        "method": method.value,
        "current_state": current.value,
        "current_stage_index": current_idx,
        "current_module": STATE_MODULES[current].value,
        "next_step": NEXT_STEPS.get(current),
        "stages": stages,
    }
