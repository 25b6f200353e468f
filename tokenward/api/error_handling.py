from __future__ import annotations

from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from tokenward.api.schemas import Envelope, ErrorBody
from tokenward.logging import get_logger
from tokenward.service.errors import ServiceError
from tokenward.storage.errors import ConstraintViolation, StorageUnavailable

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    422: "validation_error",
    500: "server_error",
    503: "unavailable",
}


def _error_response(
    status_code: int,
    message: str,
    details: Any = None,
    code: Optional[str] = None,
) -> JSONResponse:
    error_code = code or _STATUS_TO_CODE.get(status_code, "server_error")
    envelope = Envelope(
        status="error",
        error=ErrorBody(code=error_code, message=message, details=details),
    )
    # 401s tell the client which scheme to retry with
    headers = {"WWW-Authenticate": "Bearer"} if status_code == 401 else None
    return JSONResponse(
        status_code=status_code, content=envelope.model_dump(), headers=headers
    )


def _log_rejection(request: Request, event: str, status_code: int, **fields: Any) -> None:
    log_fn = logger.error if status_code >= 500 else logger.warning
    log_fn(
        event,
        path=request.url.path,
        method=request.method,
        status_code=status_code,
        **fields,
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Render every failure as an error envelope with a stable code."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        _log_rejection(
            request,
            "service_error",
            exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
            reason=exc.reason,
        )
        return _error_response(
            exc.status_code, exc.message, exc.detail or None, code=exc.error_code
        )

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        _log_rejection(request, "constraint_violation", 409, message=exc.message)
        return _error_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(StorageUnavailable)
    async def handle_storage_unavailable(request: Request, exc: StorageUnavailable):
        _log_rejection(
            request, "storage_unavailable", 503, backend=exc.backend, error=exc.message
        )
        return _error_response(
            503, "storage is unavailable", {"backend": exc.backend}, code="unavailable"
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        problems = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")}
            for err in exc.errors()
        ]
        _log_rejection(request, "request_validation_failed", 400, problems=len(problems))
        return _error_response(400, "invalid request", problems, code="validation_error")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        detail = exc.detail
        # Routes raise envelope-shaped details through routes._http_error()
        if isinstance(detail, dict) and isinstance(detail.get("error"), dict):
            error_obj = detail["error"]
            message = error_obj.get("message", "http error")
            code = error_obj.get("code")
            _log_rejection(
                request, "http_error", exc.status_code, error_code=code, message=message
            )
            return _error_response(
                exc.status_code, message, error_obj.get("details"), code=code
            )
        message = detail if isinstance(detail, str) else "http error"
        _log_rejection(request, "http_error", exc.status_code, message=message)
        return _error_response(
            exc.status_code, message, detail if isinstance(detail, dict) else None
        )

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(500, "internal server error", code="server_error")
