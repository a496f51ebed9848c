from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, model_validator

from procureflow.states import CaseState, ProcurementMethod, StageKind


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class StagePayload(BaseModel):
    model_config = ConfigDict(extra="forbid")


class PostingPayload(StagePayload):
    posting_start_at: datetime | None = None
    posting_end_at: datetime | None = None

    @model_validator(mode="after")
    def _check_window(self, info: ValidationInfo) -> "PostingPayload":
        min_days = int((info.context or {}).get("posting_min_days", 7))
        start = _aware(self.posting_start_at or _utcnow())
        end = _aware(self.posting_end_at or start + timedelta(days=min_days))
        if end <= start:
            raise ValueError("posting_end_at must be after posting_start_at")
        if end - start < timedelta(days=min_days):
            raise ValueError(f"posting period must be at least {min_days} days")
        self.posting_start_at = start
        self.posting_end_at = end
        return self


class RfqPayload(StagePayload):
    rfq_number: str | None = Field(default=None, max_length=64)
    issued_at: datetime = Field(default_factory=_utcnow)
    notes: str | None = Field(default=None, max_length=2000)


class QuotationPayload(StagePayload):
    supplier_name: str = Field(min_length=1, max_length=255)
    amount: float = Field(ge=0)
    is_responsive: bool = True
    submitted_at: datetime = Field(default_factory=_utcnow)


class AbstractPayload(StagePayload):
    notes: str | None = Field(default=None, max_length=2000)


class BidBulletinPayload(StagePayload):
    bulletin_no: str | None = Field(default=None, max_length=64)
    published_at: datetime = Field(default_factory=_utcnow)
    notes: str | None = Field(default=None, max_length=2000)


class PreBidPayload(StagePayload):
    scheduled_at: datetime | None = None
    notes: str | None = Field(default=None, max_length=2000)


class BidPayload(StagePayload):
    bidder_name: str = Field(min_length=1, max_length=255)
    amount: float = Field(ge=0)
    is_responsive: bool = True
    submitted_at: datetime = Field(default_factory=_utcnow)
    opened_at: datetime | None = None


class TwgPayload(StagePayload):
    result: str = Field(min_length=1, max_length=255)
    notes: str | None = Field(default=None, max_length=2000)
    evaluated_at: datetime = Field(default_factory=_utcnow)


class PostQualificationPayload(StagePayload):
    lowest_responsive_bidder: str | None = Field(default=None, max_length=255)
    passed: bool = False
    notes: str | None = Field(default=None, max_length=2000)
    completed_at: datetime | None = None


class BacResolutionPayload(StagePayload):
    resolution_no: str | None = Field(default=None, max_length=64)
    notes: str | None = Field(default=None, max_length=2000)


class AwardPayload(StagePayload):
    awarded_to: str = Field(min_length=1, max_length=255)
    notice_date: datetime = Field(default_factory=_utcnow)


class PurchaseOrderPayload(StagePayload):
    po_number: str | None = Field(default=None, max_length=64)
    approved_at: datetime = Field(default_factory=_utcnow)
    approved_by: str | None = Field(default=None, max_length=255)


class ContractPayload(StagePayload):
    contract_no: str = Field(min_length=1, max_length=64)
    signed_at: datetime = Field(default_factory=_utcnow)


class NtpPayload(StagePayload):
    issued_at: datetime = Field(default_factory=_utcnow)
    days_to_comply: int | None = Field(default=None, gt=0)


class ProgressBillingPayload(StagePayload):
    billing_no: str | None = Field(default=None, max_length=64)
    amount: float | None = Field(default=None, ge=0)
    billed_at: datetime = Field(default_factory=_utcnow)


InspectionStatus = Literal["PASSED", "FAILED"]


class PmtInspectionPayload(StagePayload):
    status: InspectionStatus | None = None
    inspected_at: datetime = Field(default_factory=_utcnow)
    notes: str | None = Field(default=None, max_length=2000)


class DeliveryPayload(StagePayload):
    delivered_at: datetime = Field(default_factory=_utcnow)
    notes: str | None = Field(default=None, max_length=2000)


class InspectionPayload(StagePayload):
    status: InspectionStatus | None = None
    inspector: str | None = Field(default=None, max_length=255)
    inspected_at: datetime = Field(default_factory=_utcnow)
    notes: str | None = Field(default=None, max_length=2000)


class AcceptancePayload(StagePayload):
    accepted_at: datetime = Field(default_factory=_utcnow)
    officer: str | None = Field(default=None, max_length=255)


class _DisbursementPayload(StagePayload):
    prepared_at: datetime = Field(default_factory=_utcnow)
    approved_at: datetime | None = None
    approved_by: str | None = Field(default=None, max_length=255)


class OrsPayload(_DisbursementPayload):
    ors_number: str | None = Field(default=None, max_length=64)


class DvPayload(_DisbursementPayload):
    dv_number: str | None = Field(default=None, max_length=64)


class CheckPayload(_DisbursementPayload):
    check_number: str | None = Field(default=None, max_length=64)


class CheckAdvicePayload(StagePayload):
    advice_number: str | None = Field(default=None, max_length=64)
    approved_at: datetime = Field(default_factory=_utcnow)


STAGE_PAYLOAD_MODELS: dict[StageKind, type[StagePayload]] = {
    StageKind.POSTING: PostingPayload,
    StageKind.RFQ: RfqPayload,
    StageKind.QUOTATION: QuotationPayload,
    StageKind.ABSTRACT: AbstractPayload,
    StageKind.BID_BULLETIN: BidBulletinPayload,
    StageKind.PRE_BID: PreBidPayload,
    StageKind.BID: BidPayload,
    StageKind.TWG: TwgPayload,
    StageKind.POST_QUALIFICATION: PostQualificationPayload,
    StageKind.BAC_RESOLUTION: BacResolutionPayload,
    StageKind.AWARD: AwardPayload,
    StageKind.PURCHASE_ORDER: PurchaseOrderPayload,
    StageKind.CONTRACT: ContractPayload,
    StageKind.NTP: NtpPayload,
    StageKind.PROGRESS_BILLING: ProgressBillingPayload,
    StageKind.PMT_INSPECTION: PmtInspectionPayload,
    StageKind.DELIVERY: DeliveryPayload,
    StageKind.INSPECTION: InspectionPayload,
    StageKind.ACCEPTANCE: AcceptancePayload,
    StageKind.ORS: OrsPayload,
    StageKind.DV: DvPayload,
    StageKind.CHECK: CheckPayload,
    StageKind.CHECK_ADVICE: CheckAdvicePayload,
}

if set(STAGE_PAYLOAD_MODELS) != set(StageKind):
    raise RuntimeError("every StageKind needs a payload model")


def parse_stage_payload(kind: StageKind, raw: dict[str, Any], *, posting_min_days: int = 7) -> dict[str, Any]:
    """Validate ``raw`` for ``kind`` and return the JSON-ready record data.

    Raises ``pydantic.ValidationError`` on schema violations.
    """
    model = STAGE_PAYLOAD_MODELS[kind]
    parsed = model.model_validate(raw, context={"posting_min_days": posting_min_days})
    return parsed.model_dump(mode="json")


# ---------------------------------------------------------------------------
# HTTP request models
# ---------------------------------------------------------------------------


class CaseCreateRequest(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    method: ProcurementMethod
    description: str | None = Field(default=None, max_length=4000)
    estimated_budget: float | None = Field(default=None, ge=0)


class StageActionRequest(BaseModel):
    payload: dict[str, Any] | None = None


class TransitionRequest(BaseModel):
    next_state: CaseState
    payload: dict[str, Any] | None = None
    legal_basis: str | None = Field(default=None, max_length=255)


class StageEditRequest(BaseModel):
    reason: str
    data: dict[str, Any] = Field(default_factory=dict)


class StageDeleteRequest(BaseModel):
    reason: str


def success_envelope(data: Any, trace_id: str, message: str = "ok") -> dict[str, Any]:
    return {
        "success": True,
        "data": data,
        "message": message,
        "meta": {
            "trace_id": trace_id,
        },
    }


def error_envelope(
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    trace_id: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "retryable": retryable,
        "class": error_class,
    }
    if details is not None:
        error["details"] = details
    return {
        "success": False,
        "error": error,
        "meta": {
            "trace_id": trace_id,
        },
    }
