from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any

from procureflow.results import Rejection, RejectionKind
from procureflow.states import CaseState, ProcurementMethod, StageKind

S = CaseState
K = StageKind

_BIDDING_METHODS = frozenset({ProcurementMethod.PUBLIC_BIDDING, ProcurementMethod.INFRASTRUCTURE})


@dataclass(frozen=True)
class GuardContext:
    """Read-only view of a locked case for prerequisite guards."""

    uow: Any
    case: dict[str, Any]
    method: ProcurementMethod
    target: CaseState
    min_quotations: int

    @property
    def case_id(self) -> str:
        return str(self.case["case_id"])

    def count(self, kind: StageKind) -> int:
        return self.uow.records.count(case_id=self.case_id, kind=kind.value)

    def data(self, kind: StageKind) -> dict[str, Any] | None:
        rows = self.uow.records.list(case_id=self.case_id, kind=kind.value)
        if not rows:
            return None
        return dict(rows[-1].get("data") or {})


Guard = Callable[[GuardContext], Rejection | None]


def _unmet(message: str, *, rule: str, **details: Any) -> Rejection:
    return Rejection(kind=RejectionKind.PREREQUISITE_NOT_MET, message=message, details={"rule": rule, **details})


def _no_prerequisite(ctx: GuardContext) -> Rejection | None:
    return None


def _requires(kind: StageKind, message: str) -> Guard:
    def _guard(ctx: GuardContext) -> Rejection | None:
        if ctx.count(kind) == 0:
            return _unmet(message, rule=f"requires_{kind.value}")
        return None

    return _guard


def _passed_post_qualification(ctx: GuardContext, message: str) -> Rejection | None:
    pq = ctx.data(K.POST_QUALIFICATION)
    if pq is None or not pq.get("passed"):
        return _unmet(message, rule="requires_passed_post_qualification")
    return None


def _passed_pmt(ctx: GuardContext, message: str) -> Rejection | None:
    pmt = ctx.data(K.PMT_INSPECTION)
    if pmt is None or pmt.get("status") != "PASSED":
        return _unmet(message, rule="requires_passed_pmt_inspection")
    return None


def _guard_abstract(ctx: GuardContext) -> Rejection | None:
    count = ctx.count(K.QUOTATION)
    if count < ctx.min_quotations:
        return _unmet(
            f"Need at least {ctx.min_quotations} quotations",
            rule="min_quotations",
            required=ctx.min_quotations,
            actual=count,
        )
    return None


def _guard_bac_resolution(ctx: GuardContext) -> Rejection | None:
    if ctx.method in _BIDDING_METHODS:
        return _passed_post_qualification(ctx, "Post-Qualification must pass before BAC Resolution")
    if ctx.count(K.ABSTRACT) == 0:
        return _unmet("Abstract of Quotations required before BAC Resolution", rule="requires_abstract")
    return None


def _guard_awarded(ctx: GuardContext) -> Rejection | None:
    if ctx.count(K.BAC_RESOLUTION) == 0:
        return _unmet("BAC Resolution required before Award", rule="requires_bac_resolution")
    if ctx.method in _BIDDING_METHODS:
        return _passed_post_qualification(ctx, "Post-Qualification must pass before Award")
    return None


def _guard_contract(ctx: GuardContext) -> Rejection | None:
    if ctx.count(K.AWARD) == 0:
        return _unmet("Award required before Contract", rule="requires_award")
    po = ctx.data(K.PURCHASE_ORDER)
    if po is None or not po.get("approved_at"):
        return _unmet("Approved Purchase Order required before Contract", rule="requires_approved_po")
    return None


def _guard_acceptance(ctx: GuardContext) -> Rejection | None:
    if ctx.method is ProcurementMethod.INFRASTRUCTURE:
        return _passed_pmt(ctx, "PMT inspection must be PASSED before Acceptance")
    inspection = ctx.data(K.INSPECTION)
    if inspection is None or inspection.get("status") != "PASSED":
        return _unmet("Inspection must be PASSED before Acceptance", rule="requires_passed_inspection")
    return None


def _guard_ors(ctx: GuardContext) -> Rejection | None:
    if ctx.count(K.ACCEPTANCE) == 0:
        return _unmet("Acceptance required before ORS", rule="requires_acceptance")
    if ctx.method is ProcurementMethod.INFRASTRUCTURE:
        return _passed_pmt(ctx, "PMT inspection must be PASSED before ORS")
    return None


def default_guards() -> dict[CaseState, Guard]:
    return {
        S.DRAFT: _no_prerequisite,
        S.POSTING: _no_prerequisite,
        S.RFQ_ISSUED: _no_prerequisite,
        S.QUOTATION_COLLECTION: _no_prerequisite,
        S.ABSTRACT_OF_QUOTATIONS: _guard_abstract,
        S.BID_BULLETIN: _no_prerequisite,
        S.PRE_BID_CONF: _no_prerequisite,
        S.BID_SUBMISSION_OPENING: _no_prerequisite,
        S.TWG_EVALUATION: _requires(K.BID, "At least one bid is required before TWG Evaluation"),
        S.POST_QUALIFICATION: _requires(K.TWG, "TWG Evaluation required before Post-Qualification"),
        S.BAC_RESOLUTION: _guard_bac_resolution,
        S.AWARDED: _guard_awarded,
        S.PO_APPROVED: _requires(K.AWARD, "Award required before Purchase Order"),
        S.CONTRACT_SIGNED: _guard_contract,
        S.NTP_ISSUED: _requires(K.CONTRACT, "Contract required before NTP"),
        S.PROGRESS_BILLING: _requires(K.NTP, "NTP required before Progress Billing"),
        S.PMT_INSPECTION: _requires(K.PROGRESS_BILLING, "Progress Billing required before PMT inspection"),
        S.DELIVERY: _requires(K.NTP, "NTP required before Delivery"),
        S.INSPECTION: _requires(K.DELIVERY, "At least one Delivery is required before Inspection"),
        S.ACCEPTANCE: _guard_acceptance,
        S.ORS: _guard_ors,
        S.DV: _requires(K.ORS, "ORS required before DV"),
        S.CHECK: _requires(K.DV, "DV required before Check"),
        S.CLOSED: _requires(K.CHECK, "Check required before closing the case"),
    }


class PrerequisiteValidator:
    """Checks the document prerequisites for entering a state.

    Exactly one guard is registered per ``CaseState``; a table with a missing
    state is rejected at construction so a new state cannot silently skip
    its checks.
    """

    def __init__(self, *, min_quotations: int = 3, guards: Mapping[CaseState, Guard] | None = None) -> None:
        table = dict(default_guards() if guards is None else guards)
        missing = [state.value for state in CaseState if state not in table]
        if missing:
            raise ValueError(f"no prerequisite guard for states: {missing}")
        if min_quotations < 1:
            raise ValueError("min_quotations must be at least 1")
        self._guards: Mapping[CaseState, Guard] = MappingProxyType(table)
        self._min_quotations = min_quotations

    @property
    def min_quotations(self) -> int:
        return self._min_quotations

    def check(self, uow: Any, case: dict[str, Any], target: CaseState) -> Rejection | None:
        ctx = GuardContext(
            uow=uow,
            case=case,
            method=ProcurementMethod(case["method"]),
            target=target,
            min_quotations=self._min_quotations,
        )
        return self._guards[target](ctx)
