"""Uniform JSON error envelope for every failure the API returns.

``{"success": false, "error": {code, message, request_id, session_id, details}}``
where ``session_id`` is filled in for routes under ``/sessions/{session_id}``.
"""
import uuid

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from medquiz.core.logging import DOMAIN_SESSION, get_domain_logger
from medquiz.engine.errors import QuizEngineError

logger = get_domain_logger(__name__, DOMAIN_SESSION)


def get_request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def error_response(
    request: Request,
    *,
    code: str,
    message: str,
    status_code: int,
    details=None,
) -> JSONResponse:
    payload = {
        "success": False,
        "error": {
            "code": code,
            "message": message,
            "request_id": get_request_id(request),
            "session_id": request.path_params.get("session_id"),
            "details": details,
        },
    }
    return JSONResponse(status_code=status_code, content=payload)


async def http_exception_handler(request: Request, exc: HTTPException):
    return error_response(
        request,
        code="http_error",
        message=str(exc.detail),
        status_code=exc.status_code,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    # Keep only what a client can act on; pydantic's ctx may hold non-JSON objects.
    details = [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
        for error in exc.errors()
    ]
    return error_response(
        request,
        code="validation_error",
        message="Request validation failed",
        status_code=422,
        details=details,
    )


async def quiz_engine_exception_handler(request: Request, exc: QuizEngineError):
    logger.info(
        "Rejected %s %s: %s (%s) | request_id=%s",
        request.method,
        request.url.path,
        exc.code,
        exc.message,
        get_request_id(request),
    )
    return error_response(
        request,
        code=exc.code,
        message=exc.message,
        status_code=exc.status_code,
        details=exc.details,
    )


async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception(
        "Unhandled exception on %s %s | request_id=%s",
        request.method,
        request.url.path,
        get_request_id(request),
        exc_info=exc,
    )
    return error_response(
        request,
        code="internal_error",
        message="Internal server error",
        status_code=500,
    )


async def request_id_middleware(request: Request, call_next):
    request.state.request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
    response = await call_next(request)
    response.headers["x-request-id"] = request.state.request_id
    return response
