"""
Dimeloc Error Taxonomy

Every domain failure raised by the catalog, visit, feedback, and analysis
layers derives from AppError. The API layer renders them into the standard
JSON envelope: {"success": false, "error": ..., "code": ..., "details": ...}.

ProviderError is the exception: it never reaches a client. The analysis
orchestrator downgrades it into a fallback payload.
"""

from typing import Any

import structlog
from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = structlog.get_logger()


class AppError(Exception):
    """Base exception for Dimeloc domain errors."""

    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_response(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "success": False,
            "error": self.message,
            "code": self.code,
        }
        if self.details:
            body["details"] = self.details
        return body


# ── 400 ────────────────────────────────────────────────────────────────────


class ValidationError(AppError):
    status_code = 400
    code = "validation_error"


class StateError(AppError):
    status_code = 400
    code = "invalid_state"


class InvalidVisitTransition(StateError):
    code = "invalid_visit_transition"


class VisitNotCompleted(StateError):
    code = "visit_not_completed"


# ── 404 ────────────────────────────────────────────────────────────────────


class NotFoundError(AppError):
    status_code = 404
    code = "not_found"


class StoreNotFound(NotFoundError):
    code = "store_not_found"

    def __init__(self, store_id: int):
        super().__init__(f"Store {store_id} not found", {"store_id": store_id})


class VisitNotFound(NotFoundError):
    code = "visit_not_found"

    def __init__(self, visit_id: Any):
        super().__init__(f"Visit {visit_id} not found", {"visit_id": str(visit_id)})


# ── 409 ────────────────────────────────────────────────────────────────────


class ConflictError(AppError):
    status_code = 409
    code = "conflict"


class SchedulingConflict(ConflictError):
    code = "scheduling_conflict"


class VisitAlreadyCompleted(ConflictError):
    code = "visit_already_completed"


# ── 500 ────────────────────────────────────────────────────────────────────


class DataSourceError(AppError):
    status_code = 500
    code = "data_source_error"


class ProviderError(AppError):
    """Text Analysis Provider failure: network, malformed output, missing keys."""

    status_code = 502
    code = "provider_error"


# ── FastAPI handlers ──────────────────────────────────────────────────────


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    log = logger.error if exc.status_code >= 500 else logger.info
    log(
        "api.app_error",
        code=exc.code,
        message=exc.message,
        status_code=exc.status_code,
        path=request.url.path,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_response())


def _field_path(loc: tuple) -> str:
    # Drop the leading "body" / "query" / "path" segment
    parts = [str(p) for p in loc[1:]] if len(loc) > 1 else [str(p) for p in loc]
    return ".".join(parts)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed or incomplete request input, rendered like a domain ValidationError."""
    errors = [
        {"field": _field_path(tuple(err.get("loc", ()))), "message": err.get("msg", ""), "type": err.get("type", "")}
        for err in exc.errors()
    ]
    missing = [e["field"] for e in errors if e["type"] == "missing"]
    details: dict[str, Any] = {"errors": errors}
    if missing:
        details["missing_fields"] = missing
        message = f"Missing required fields: {', '.join(missing)}"
    else:
        message = "Invalid request"
    logger.info("api.request_invalid", path=request.url.path, errors=len(errors))
    return JSONResponse(
        status_code=ValidationError.status_code,
        content=ValidationError(message, details).to_response(),
    )


HTTP_ERROR_CODES = {
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
}


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Framework HTTP errors (auth, unknown routes) in the standard envelope."""
    body = {
        "success": False,
        "error": str(exc.detail),
        "code": HTTP_ERROR_CODES.get(exc.status_code, "http_error"),
    }
    return JSONResponse(status_code=exc.status_code, content=body, headers=getattr(exc, "headers", None))


def register_exception_handlers(app) -> None:
    """Register domain exception handlers with the FastAPI app."""
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
