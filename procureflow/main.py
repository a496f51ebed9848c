from __future__ import annotations

import logging
import os
import uuid

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware

from procureflow import __version__
from procureflow.errors import ApiError, StoreUnavailableError
from procureflow.permissions import Actor
from procureflow.routes import cases, reports
from procureflow.routes._deps import error_response, request_id_from_request, trace_id_from_request
from procureflow.schemas import success_envelope
from procureflow.security import (
    JwtSecurityConfig,
    actor_from_headers,
    parse_and_validate_bearer_token,
    redact_sensitive,
)
from procureflow.service import CaseWorkflow, build_workflow
from procureflow.store import store

logger = logging.getLogger(__name__)

_SECURITY_CODES = {"AUTH_UNAUTHORIZED", "PERMISSION_DENIED"}
_PUBLIC_PATHS = {"/api/v1/health"}


def _allowed_origins() -> list[str]:
    raw = os.environ.get("CORS_ALLOW_ORIGINS", "http://127.0.0.1:5173,http://localhost:5173")
    return [x.strip() for x in raw.split(",") if x.strip()]


def _resolve_actor(request: Request, cfg: JwtSecurityConfig) -> Actor | None:
    path = request.url.path
    if not path.startswith("/api/v1/") or path in _PUBLIC_PATHS:
        return None
    if not cfg.enabled:
        return actor_from_headers(request.headers)
    auth = parse_and_validate_bearer_token(authorization=request.headers.get("Authorization"), cfg=cfg)
    return auth.to_actor()


def _api_error_response(request: Request, exc: ApiError):
    return error_response(
        request,
        code=exc.code,
        message=exc.message,
        error_class=exc.error_class,
        retryable=exc.retryable,
        status_code=exc.http_status,
        details=exc.details,
    )


def create_app(workflow: CaseWorkflow | None = None) -> FastAPI:
    app = FastAPI(title="Procurement Case Workflow API", version=__version__)
    app.state.workflow = workflow or build_workflow(store=store)
    security_cfg = JwtSecurityConfig.from_env()
    app.state.security_cfg = security_cfg

    origins = _allowed_origins()
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    def log_blocked(request: Request, exc: ApiError) -> None:
        headers = dict(request.headers.items())
        logger.warning(
            "security_blocked code=%s detail=%s path=%s trace_id=%s headers=%s",
            exc.code,
            exc.message,
            request.url.path,
            trace_id_from_request(request),
            redact_sensitive(headers) if security_cfg.log_redaction_enabled else headers,
        )

    @app.middleware("http")
    async def identity_and_tracing(request: Request, call_next):
        request.state.trace_id = request.headers.get("x-trace-id", "").strip() or uuid.uuid4().hex
        request.state.request_id = request.headers.get("x-request-id") or f"req_{uuid.uuid4().hex[:12]}"
        try:
            request.state.actor = _resolve_actor(request, security_cfg)
        except ApiError as exc:
            log_blocked(request, exc)
            return _api_error_response(request, exc)
        response = await call_next(request)
        response.headers["x-trace-id"] = trace_id_from_request(request)
        response.headers["x-request-id"] = request_id_from_request(request)
        return response

    @app.exception_handler(ApiError)
    async def on_api_error(request: Request, exc: ApiError):
        if exc.code in _SECURITY_CODES:
            log_blocked(request, exc)
        return _api_error_response(request, exc)

    @app.exception_handler(RequestValidationError)
    async def on_request_validation(request: Request, exc: RequestValidationError):
        problems = [
            {"loc": ".".join(str(part) for part in err.get("loc", ())), "msg": str(err.get("msg", ""))}
            for err in exc.errors()
        ]
        return error_response(
            request,
            code="REQ_VALIDATION_FAILED",
            message="invalid payload",
            error_class="validation",
            retryable=False,
            status_code=400,
            details={"errors": problems},
        )

    @app.exception_handler(StarletteHTTPException)
    async def on_http_error(request: Request, exc: StarletteHTTPException):
        not_found = exc.status_code == 404
        return error_response(
            request,
            code="REQ_NOT_FOUND" if not_found else "REQ_HTTP_ERROR",
            message="resource not found" if not_found else str(exc.detail),
            error_class="validation",
            retryable=False,
            status_code=exc.status_code,
        )

    @app.exception_handler(StoreUnavailableError)
    async def on_store_unavailable(request: Request, exc: StoreUnavailableError):
        logger.error("store_unavailable path=%s error=%s", request.url.path, exc)
        return error_response(
            request,
            code="STORE_UNAVAILABLE",
            message="case store is temporarily unavailable",
            error_class="transient",
            retryable=True,
            status_code=503,
        )

    @app.exception_handler(Exception)
    async def on_unexpected(request: Request, exc: Exception):
        logger.exception("unhandled_error path=%s", request.url.path)
        return error_response(
            request,
            code="INTERNAL_ERROR",
            message="internal error",
            error_class="internal",
            retryable=False,
            status_code=500,
        )

    @app.get("/healthz")
    def liveness(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, trace_id_from_request(request))

    @app.get("/api/v1/health")
    def health(request: Request) -> dict[str, object]:
        backend = getattr(app.state.workflow.store, "backend_name", "unknown")
        return success_envelope({"status": "ok", "store_backend": backend}, trace_id_from_request(request))

    app.include_router(cases.router)
    app.include_router(reports.router)
    return app


app = create_app()
