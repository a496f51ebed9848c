from __future__ import annotations

from datetime import UTC, datetime

from fastapi import APIRouter, Query, Request

from procureflow.routes._deps import actor_from_request, trace_id_from_request, unwrap, workflow_from_request
from procureflow.schemas import success_envelope

router = APIRouter(prefix="/api/v1/reports", tags=["reports"])


@router.get("/workflow")
def workflow_report(request: Request, year: int | None = Query(default=None, ge=2000, le=2100)):
    report_year = year if year is not None else datetime.now(UTC).year
    data = unwrap(workflow_from_request(request).workflow_report(report_year, actor=actor_from_request(request)))
    return success_envelope(data, trace_id_from_request(request))
