from __future__ import annotations

import uuid
from typing import Any, TypeVar

from fastapi import Request
from fastapi.responses import JSONResponse

from procureflow.errors import ApiError
from procureflow.permissions import Actor
from procureflow.results import Outcome
from procureflow.schemas import error_envelope
from procureflow.service import CaseWorkflow

T = TypeVar("T")


def trace_id_from_request(request: Request) -> str:
    trace_id = getattr(request.state, "trace_id", None)
    if trace_id:
        return trace_id
    return uuid.uuid4().hex


def request_id_from_request(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    return f"req_{uuid.uuid4().hex[:12]}"


def actor_from_request(request: Request) -> Actor:
    actor = getattr(request.state, "actor", None)
    if actor is None:
        raise ApiError(
            code="AUTH_UNAUTHORIZED",
            message="caller identity is required",
            error_class="security_sensitive",
            retryable=False,
            http_status=401,
        )
    return actor


def workflow_from_request(request: Request) -> CaseWorkflow:
    return request.app.state.workflow


def unwrap(outcome: Outcome[T]) -> T:
    """Return an accepted value or raise the rejection as an ``ApiError``."""
    return outcome.unwrap()


def error_response(
    request: Request,
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    status_code: int,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    response = JSONResponse(
        status_code=status_code,
        content=error_envelope(
            code=code,
            message=message,
            error_class=error_class,
            retryable=retryable,
            trace_id=trace_id_from_request(request),
            details=details,
        ),
    )
    response.headers["x-trace-id"] = trace_id_from_request(request)
    response.headers["x-request-id"] = request_id_from_request(request)
    return response
