from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Header, Query, Request
from fastapi.responses import JSONResponse

from procureflow.routes._deps import actor_from_request, trace_id_from_request, unwrap, workflow_from_request
from procureflow.schemas import (
    CaseCreateRequest,
    StageActionRequest,
    StageDeleteRequest,
    StageEditRequest,
    TransitionRequest,
    success_envelope,
)
from procureflow.states import CaseState, ProcurementMethod, StageKind

router = APIRouter(prefix="/api/v1", tags=["cases"])

# ---------------------------------------------------------------------------
# Cases
# ---------------------------------------------------------------------------


@router.post("/cases")
def create_case(payload: CaseCreateRequest, request: Request):
    case = workflow_from_request(request).create_case(
        title=payload.title,
        method=payload.method,
        actor=actor_from_request(request),
        description=payload.description,
        estimated_budget=payload.estimated_budget,
    )
    return JSONResponse(status_code=201, content=success_envelope(case, trace_id_from_request(request)))


@router.get("/cases")
def list_cases(
    request: Request,
    state: CaseState | None = Query(default=None),
    method: ProcurementMethod | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
):
    items = workflow_from_request(request).list_cases(state=state, method=method, limit=limit, offset=offset)
    return success_envelope({"items": items, "total": len(items)}, trace_id_from_request(request))


@router.get("/cases/{case_id}")
def get_case(case_id: str, request: Request):
    case = unwrap(workflow_from_request(request).get_case(case_id))
    return success_envelope(case, trace_id_from_request(request))


# ---------------------------------------------------------------------------
# Stage actions
# ---------------------------------------------------------------------------


@router.post("/cases/{case_id}/stages/{kind}")
def perform_stage_action(
    case_id: str,
    kind: StageKind,
    request: Request,
    payload: StageActionRequest | None = None,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    data = unwrap(
        workflow_from_request(request).perform(
            case_id,
            kind,
            payload.payload if payload else None,
            actor=actor_from_request(request),
            idempotency_token=idempotency_key,
        )
    )
    return JSONResponse(status_code=201, content=success_envelope(data, trace_id_from_request(request)))


@router.get("/cases/{case_id}/stages/{kind}")
def list_stage_records(case_id: str, kind: StageKind, request: Request):
    items = unwrap(workflow_from_request(request).list_records(case_id, kind, actor=actor_from_request(request)))
    return success_envelope({"items": items, "total": len(items)}, trace_id_from_request(request))


@router.patch("/cases/{case_id}/stages/{kind}")
@router.patch("/cases/{case_id}/stages/{kind}/{record_id}")
def edit_stage_record(
    case_id: str,
    kind: StageKind,
    payload: StageEditRequest,
    request: Request,
    record_id: str | None = None,
):
    data = unwrap(
        workflow_from_request(request).edit(
            case_id,
            kind,
            record_id,
            payload.data,
            actor=actor_from_request(request),
            reason=payload.reason,
        )
    )
    return success_envelope(data, trace_id_from_request(request))


@router.delete("/cases/{case_id}/stages/{kind}")
@router.delete("/cases/{case_id}/stages/{kind}/{record_id}")
def delete_stage_record(
    case_id: str,
    kind: StageKind,
    payload: StageDeleteRequest,
    request: Request,
    record_id: str | None = None,
):
    data = unwrap(
        workflow_from_request(request).delete(
            case_id,
            kind,
            record_id,
            actor=actor_from_request(request),
            reason=payload.reason,
        )
    )
    return success_envelope(data, trace_id_from_request(request))


@router.post("/cases/{case_id}/transition")
def transition_case(
    case_id: str,
    payload: TransitionRequest,
    request: Request,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    data = unwrap(
        workflow_from_request(request).transition(
            case_id,
            payload.next_state,
            payload.payload,
            actor=actor_from_request(request),
            idempotency_token=idempotency_key,
            legal_basis=payload.legal_basis,
        )
    )
    return success_envelope(data, trace_id_from_request(request))


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------


@router.get("/cases/{case_id}/timeline")
def case_timeline(
    case_id: str,
    request: Request,
    order: Literal["asc", "desc"] = Query(default="asc"),
):
    items = unwrap(workflow_from_request(request).timeline(case_id, order=order))
    return success_envelope({"items": items, "total": len(items)}, trace_id_from_request(request))


@router.get("/cases/{case_id}/lifecycle")
def case_lifecycle(case_id: str, request: Request):
    data = unwrap(workflow_from_request(request).lifecycle(case_id))
    return success_envelope(data, trace_id_from_request(request))


@router.get("/cases/{case_id}/audit/verify")
def verify_case_audit(case_id: str, request: Request):
    data = unwrap(workflow_from_request(request).verify_audit(case_id))
    return success_envelope(data, trace_id_from_request(request))
