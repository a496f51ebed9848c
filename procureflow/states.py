from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from types import MappingProxyType


class ProcurementMethod(StrEnum):
    SMALL_VALUE_RFQ = "SMALL_VALUE_RFQ"
    PUBLIC_BIDDING = "PUBLIC_BIDDING"
    INFRASTRUCTURE = "INFRASTRUCTURE"


class CaseState(StrEnum):
    DRAFT = "DRAFT"
    POSTING = "POSTING"
    RFQ_ISSUED = "RFQ_ISSUED"
    QUOTATION_COLLECTION = "QUOTATION_COLLECTION"
    ABSTRACT_OF_QUOTATIONS = "ABSTRACT_OF_QUOTATIONS"
    BID_BULLETIN = "BID_BULLETIN"
    PRE_BID_CONF = "PRE_BID_CONF"
    BID_SUBMISSION_OPENING = "BID_SUBMISSION_OPENING"
    TWG_EVALUATION = "TWG_EVALUATION"
    POST_QUALIFICATION = "POST_QUALIFICATION"
    BAC_RESOLUTION = "BAC_RESOLUTION"
    AWARDED = "AWARDED"
    PO_APPROVED = "PO_APPROVED"
    CONTRACT_SIGNED = "CONTRACT_SIGNED"
    NTP_ISSUED = "NTP_ISSUED"
    PROGRESS_BILLING = "PROGRESS_BILLING"
    PMT_INSPECTION = "PMT_INSPECTION"
    DELIVERY = "DELIVERY"
    INSPECTION = "INSPECTION"
    ACCEPTANCE = "ACCEPTANCE"
    ORS = "ORS"
    DV = "DV"
    CHECK = "CHECK"
    CLOSED = "CLOSED"


class StageKind(StrEnum):
    POSTING = "posting"
    RFQ = "rfq"
    QUOTATION = "quotation"
    ABSTRACT = "abstract"
    BID_BULLETIN = "bid_bulletin"
    PRE_BID = "pre_bid"
    BID = "bid"
    TWG = "twg"
    POST_QUALIFICATION = "post_qualification"
    BAC_RESOLUTION = "bac_resolution"
    AWARD = "award"
    PURCHASE_ORDER = "purchase_order"
    CONTRACT = "contract"
    NTP = "ntp"
    PROGRESS_BILLING = "progress_billing"
    PMT_INSPECTION = "pmt_inspection"
    DELIVERY = "delivery"
    INSPECTION = "inspection"
    ACCEPTANCE = "acceptance"
    ORS = "ors"
    DV = "dv"
    CHECK = "check"
    CHECK_ADVICE = "check_advice"


class LifecycleModule(StrEnum):
    PROCUREMENT = "Procurement"
    SUPPLY = "Supply"
    BUDGET = "Budget"
    ACCOUNTING = "Accounting"
    CASHIER = "Cashier"


@dataclass(frozen=True)
class StageSpec:
    """Static description of one stage record kind.

    ``state`` is the case state a record of this kind witnesses. Collection
    kinds accumulate items; every other kind holds at most one record per case.
    ``date_field`` names the payload field that dates the stage for the
    lifecycle view.
    """

    kind: StageKind
    state: CaseState
    entity: str
    collection: bool = False
    date_field: str | None = None


def _stage(
    kind: StageKind,
    state: CaseState,
    entity: str,
    *,
    collection: bool = False,
    date_field: str | None = None,
) -> tuple[StageKind, StageSpec]:
    return kind, StageSpec(kind=kind, state=state, entity=entity, collection=collection, date_field=date_field)


STAGES: Mapping[StageKind, StageSpec] = MappingProxyType(
    dict(
        [
            _stage(StageKind.POSTING, CaseState.POSTING, "Posting", date_field="posting_start_at"),
            _stage(StageKind.RFQ, CaseState.RFQ_ISSUED, "RFQ", date_field="issued_at"),
            _stage(
                StageKind.QUOTATION,
                CaseState.QUOTATION_COLLECTION,
                "Quotation",
                collection=True,
                date_field="submitted_at",
            ),
            _stage(StageKind.ABSTRACT, CaseState.ABSTRACT_OF_QUOTATIONS, "Abstract"),
            _stage(
                StageKind.BID_BULLETIN,
                CaseState.BID_BULLETIN,
                "BidBulletin",
                collection=True,
                date_field="published_at",
            ),
            _stage(StageKind.PRE_BID, CaseState.PRE_BID_CONF, "PreBidConference", date_field="scheduled_at"),
            _stage(
                StageKind.BID,
                CaseState.BID_SUBMISSION_OPENING,
                "Bid",
                collection=True,
                date_field="opened_at",
            ),
            _stage(StageKind.TWG, CaseState.TWG_EVALUATION, "TwgEvaluation", date_field="evaluated_at"),
            _stage(
                StageKind.POST_QUALIFICATION,
                CaseState.POST_QUALIFICATION,
                "PostQualification",
                date_field="completed_at",
            ),
            _stage(StageKind.BAC_RESOLUTION, CaseState.BAC_RESOLUTION, "BACResolution"),
            _stage(StageKind.AWARD, CaseState.AWARDED, "Award", date_field="notice_date"),
            _stage(StageKind.PURCHASE_ORDER, CaseState.PO_APPROVED, "PurchaseOrder", date_field="approved_at"),
            _stage(StageKind.CONTRACT, CaseState.CONTRACT_SIGNED, "Contract", date_field="signed_at"),
            _stage(StageKind.NTP, CaseState.NTP_ISSUED, "NoticeToProceed", date_field="issued_at"),
            _stage(
                StageKind.PROGRESS_BILLING,
                CaseState.PROGRESS_BILLING,
                "ProgressBilling",
                date_field="billed_at",
            ),
            _stage(StageKind.PMT_INSPECTION, CaseState.PMT_INSPECTION, "PmtInspection", date_field="inspected_at"),
            _stage(
                StageKind.DELIVERY,
                CaseState.DELIVERY,
                "Delivery",
                collection=True,
                date_field="delivered_at",
            ),
            _stage(StageKind.INSPECTION, CaseState.INSPECTION, "InspectionReport", date_field="inspected_at"),
            _stage(StageKind.ACCEPTANCE, CaseState.ACCEPTANCE, "Acceptance", date_field="accepted_at"),
            _stage(StageKind.ORS, CaseState.ORS, "ORS", date_field="prepared_at"),
            _stage(StageKind.DV, CaseState.DV, "DV", date_field="prepared_at"),
            _stage(StageKind.CHECK, CaseState.CHECK, "Check", date_field="prepared_at"),
            _stage(StageKind.CHECK_ADVICE, CaseState.CLOSED, "CheckAdvice", date_field="approved_at"),
        ]
    )
)

STATE_KINDS: Mapping[CaseState, StageKind] = MappingProxyType({spec.state: kind for kind, spec in STAGES.items()})

STATE_LABELS: Mapping[CaseState, str] = MappingProxyType(
    {
        CaseState.DRAFT: "Draft",
        CaseState.POSTING: "Posting",
        CaseState.RFQ_ISSUED: "RFQ issued",
        CaseState.QUOTATION_COLLECTION: "Quotations collected",
        CaseState.ABSTRACT_OF_QUOTATIONS: "Abstract of Quotations",
        CaseState.BID_BULLETIN: "Bid bulletin",
        CaseState.PRE_BID_CONF: "Pre-bid conference",
        CaseState.BID_SUBMISSION_OPENING: "Bid submission & opening",
        CaseState.TWG_EVALUATION: "TWG evaluation",
        CaseState.POST_QUALIFICATION: "Post-qualification",
        CaseState.BAC_RESOLUTION: "BAC Resolution",
        CaseState.AWARDED: "Award",
        CaseState.PO_APPROVED: "PO approved",
        CaseState.CONTRACT_SIGNED: "Contract signed",
        CaseState.NTP_ISSUED: "NTP issued",
        CaseState.PROGRESS_BILLING: "Progress billing",
        CaseState.PMT_INSPECTION: "PMT inspection",
        CaseState.DELIVERY: "Delivered",
        CaseState.INSPECTION: "Inspected",
        CaseState.ACCEPTANCE: "Accepted",
        CaseState.ORS: "ORS recorded",
        CaseState.DV: "DV recorded",
        CaseState.CHECK: "Check recorded",
        CaseState.CLOSED: "Closed",
    }
)

_OWNER_OVERRIDES = {
    CaseState.DELIVERY: LifecycleModule.SUPPLY,
    CaseState.INSPECTION: LifecycleModule.SUPPLY,
    CaseState.ACCEPTANCE: LifecycleModule.SUPPLY,
    CaseState.ORS: LifecycleModule.BUDGET,
    CaseState.DV: LifecycleModule.ACCOUNTING,
    CaseState.CHECK: LifecycleModule.CASHIER,
    CaseState.CLOSED: LifecycleModule.CASHIER,
}

# Everything up to PMT inspection belongs to the procurement office.
STATE_MODULES: Mapping[CaseState, LifecycleModule] = MappingProxyType(
    {state: _OWNER_OVERRIDES.get(state, LifecycleModule.PROCUREMENT) for state in CaseState}
)


def stage_spec(kind: StageKind) -> StageSpec:
    return STAGES[kind]


def kind_for_state(state: CaseState) -> StageKind | None:
    """Record kind that witnesses ``state``; ``DRAFT`` has none."""
    return STATE_KINDS.get(state)


def _check_tables() -> None:
    if set(STAGES) != set(StageKind):
        raise RuntimeError("stage table does not cover every StageKind")
    uncovered = set(CaseState) - {CaseState.DRAFT} - set(STATE_KINDS)
    if uncovered or len(STATE_KINDS) != len(STAGES):
        raise RuntimeError(f"stage table must witness every non-draft state once: {sorted(uncovered)}")
    if set(STATE_LABELS) != set(CaseState):
        raise RuntimeError("state label table is incomplete")


_check_tables()
