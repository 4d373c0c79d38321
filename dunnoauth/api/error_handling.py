from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from dunnoauth.api.schemas import Envelope, ErrorBody
from dunnoauth.logging import get_logger
from dunnoauth.service.errors import InvalidToken, RateLimited, ServerError, ServiceError
from dunnoauth.storage.errors import ConstraintViolation, StoreUnavailable

logger = get_logger(__name__)

GENERIC_UNAUTHORIZED = "unauthorized"
GENERIC_SERVER_ERROR = "internal server error"


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str = "server_error",
) -> JSONResponse:
    envelope = Envelope(
        status="error", error=ErrorBody(code=code, message=message, details=details)
    )
    return JSONResponse(status_code=status_code, content=envelope.model_dump())


def render_service_error(exc: ServiceError) -> JSONResponse:
    """Map a service error to its client-facing envelope.

    Token failures share one body so a caller cannot tell an expired token
    from a forged or revoked one. Rate limits and server faults carry no
    details.
    """
    if isinstance(exc, InvalidToken):
        return _error_response(exc.status_code, GENERIC_UNAUTHORIZED, code=exc.error_code)
    if isinstance(exc, RateLimited):
        return _error_response(exc.status_code, exc.message, code=exc.error_code)
    if isinstance(exc, ServerError) or exc.status_code >= 500:
        return _error_response(500, GENERIC_SERVER_ERROR, code="server_error")
    return _error_response(exc.status_code, exc.message, exc.detail or None, code=exc.error_code)


def register_exception_handlers(app: FastAPI) -> None:
    """Install envelope-producing handlers for service, storage and uncaught errors."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
        )
        return _error_response(409, exc.message, exc.detail or None, code="conflict")

    @app.exception_handler(StoreUnavailable)
    async def handle_store_unavailable(request: Request, exc: StoreUnavailable):
        logger.error(
            "store_unavailable",
            path=request.url.path,
            method=request.method,
            error=str(exc),
        )
        return _error_response(500, GENERIC_SERVER_ERROR, code="server_error")

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            error_type=type(exc).__name__,
        )
        return render_service_error(exc)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(500, GENERIC_SERVER_ERROR, code="server_error")
