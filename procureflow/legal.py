"""Legal citations for case transitions and the procurement regimes they fall under."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from types import MappingProxyType

from procureflow.states import CaseState


class Regime(StrEnum):
    RA9184 = "RA9184"
    RA12009 = "RA12009"


@dataclass(frozen=True)
class RegimeRules:
    posting_days: int
    small_value_threshold: int
    min_quotations: int
    delivery_days_from_po: int


REGIME_RULES: Mapping[Regime, RegimeRules] = MappingProxyType(
    {
        Regime.RA9184: RegimeRules(
            posting_days=7,
            small_value_threshold=1_000_000,
            min_quotations=3,
            delivery_days_from_po=30,
        ),
        Regime.RA12009: RegimeRules(
            posting_days=7,
            small_value_threshold=1_000_000,
            min_quotations=3,
            delivery_days_from_po=30,
        ),
    }
)

# States without an entry carry no citation on their audit entry.
LEGAL_BASIS: Mapping[CaseState, str] = MappingProxyType(
    {
        CaseState.POSTING: "RA 9184 IRR Sec. 21 (Advertising and Posting)",
        CaseState.ABSTRACT_OF_QUOTATIONS: "RA 9184 IRR Sec. 54.2 (Shopping/Small Value Procurement)",
        CaseState.PRE_BID_CONF: "RA 9184 IRR Sec. 22 (Pre-Bid Conference)",
        CaseState.BID_SUBMISSION_OPENING: "RA 9184 IRR Sec. 29-30 (Submission and Opening of Bids)",
        CaseState.TWG_EVALUATION: "RA 9184 IRR Sec. 30-34 (Bid Evaluation)",
        CaseState.POST_QUALIFICATION: "RA 9184 IRR Sec. 34 (Post-Qualification)",
        CaseState.BAC_RESOLUTION: "RA 9184 IRR Sec. 12-14 (BAC functions and Awards)",
        CaseState.AWARDED: "RA 9184 IRR Sec. 37 (Notice and Award of Contract)",
        CaseState.CONTRACT_SIGNED: "RA 9184 IRR Sec. 37 (Contract Signing)",
        CaseState.NTP_ISSUED: "RA 9184 IRR Sec. 37.4 (Notice to Proceed)",
        CaseState.DELIVERY: "RA 9184: Contract Implementation/Delivery",
        CaseState.INSPECTION: "COA Rules: Inspection prior to Acceptance",
        CaseState.ACCEPTANCE: "Property/Supply Acceptance Procedures",
        CaseState.ORS: "PFM: ORS preparation (Budget)",
        CaseState.DV: "PFM: DV preparation (Accounting)",
        CaseState.CHECK: "PFM: Check preparation (Cashier)",
    }
)


def legal_basis_for(target: CaseState) -> str | None:
    return LEGAL_BASIS.get(CaseState(target))


def regime_rules(regime: Regime | str) -> RegimeRules:
    try:
        return REGIME_RULES[Regime(regime)]
    except ValueError:
        raise ValueError(f"unknown procurement regime: {regime}") from None
