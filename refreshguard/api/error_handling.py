from __future__ import annotations

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from refreshguard.api.schemas import Envelope, ErrorBody
from refreshguard.config import get_settings
from refreshguard.logging import get_correlation_id, get_logger, sanitize_error_message
from refreshguard.service.errors import ServiceError, TokenError
from refreshguard.storage.errors import ConstraintViolation

logger = get_logger(__name__)

GENERIC_TOKEN_MESSAGE = "invalid or expired session"

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    404: "not_found",
    409: "conflict",
    422: "validation_error",
    500: "server_error",
    503: "storage_error",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
) -> JSONResponse:
    """Create an error response envelope."""
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details)
    envelope = Envelope(status="error", error=error_body)
    if get_correlation_id():
        envelope.request_id = get_correlation_id()
    headers = {"WWW-Authenticate": "Bearer"} if status_code == 401 else None
    return JSONResponse(status_code=status_code, content=envelope.model_dump(), headers=headers)


def _client_view(exc: ServiceError) -> tuple[str, dict | None]:
    """Message and details safe to return for the current environment.

    Production collapses every token failure to one generic message so the
    response never tells an attacker which check failed.
    """
    if get_settings().environment.is_production:
        if isinstance(exc, TokenError):
            return GENERIC_TOKEN_MESSAGE, None
        if exc.status_code >= 500:
            return "service unavailable", None
        return exc.message, None
    return sanitize_error_message(exc.message), exc.detail or None


def register_exception_handlers(app: FastAPI) -> None:
    """Install consistent exception handlers for token and storage errors."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        error_code = getattr(exc, "error_code", None)
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=error_code,
            error_type=type(exc).__name__,
            message=exc.message,
            detail=exc.detail,
        )
        message, details = _client_view(exc)
        return _error_response(exc.status_code, message, details, code=error_code)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        fields = [".".join(str(part) for part in err.get("loc", ())) for err in exc.errors()]
        logger.warning(
            "request_validation_error",
            path=request.url.path,
            method=request.method,
            fields=fields,
        )
        return _error_response(400, "invalid request body", {"fields": fields})

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(exc.status_code, message)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
        )
        return _error_response(500, "internal server error")
