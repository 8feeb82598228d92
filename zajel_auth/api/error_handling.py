from __future__ import annotations

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from zajel_auth.logging import get_logger
from zajel_auth.service.errors import RateLimitedError, ServiceError
from zajel_auth.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    429: "rate_limited",
    500: "server_error",
    503: "channel_unavailable",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    *,
    extra: dict | None = None,
) -> JSONResponse:
    """Flat error body: ``{"message", "code", "details"}`` plus any extra keys."""
    content = {
        "message": message,
        "code": code or _error_code_for_status(status_code),
        "details": details or None,
    }
    if extra:
        content.update(extra)
    return JSONResponse(status_code=status_code, content=content)


def _first_validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request."
    first = errors[0]
    message = str(first.get("msg") or "Invalid request.")
    # pydantic prefixes messages raised from validators
    if message.startswith("Value error, "):
        message = message[len("Value error, "):]
    elif first.get("type") == "missing":
        field = ".".join(str(part) for part in first.get("loc", ())[1:])
        message = f"{field} is required." if field else "Field required."
    return message


def register_exception_handlers(app: FastAPI) -> None:
    """Install the handlers that render every failure as a flat error body."""

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
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
        )
        if isinstance(exc, RateLimitedError):
            response = _error_response(
                exc.status_code,
                exc.message,
                exc.detail,
                code=exc.error_code,
                extra={"remainingSeconds": exc.remaining_seconds},
            )
            response.headers["Retry-After"] = str(exc.remaining_seconds)
            return response
        return _error_response(exc.status_code, exc.message, exc.detail, code=exc.error_code)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        message = _first_validation_message(exc)
        logger.warning(
            "request_validation_error",
            path=request.url.path,
            method=request.method,
            message=message,
        )
        fields = [
            ".".join(str(part) for part in err.get("loc", ())) for err in exc.errors()
        ]
        return _error_response(400, message, {"fields": fields}, code="validation_error")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "HTTP error."
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "http_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            message=message,
        )
        details = exc.detail if isinstance(exc.detail, (dict, list)) else None
        response = _error_response(exc.status_code, message, details)
        if exc.headers:
            response.headers.update(exc.headers)
        return response

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(500, "Internal server error.", code="server_error")
