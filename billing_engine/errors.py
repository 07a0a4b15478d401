"""Error handlers producing the billing API envelope.

    {
        "success": false,
        "error": {"code": "...", "message": "...", "details": null | object},
        "request_id": "..."
    }

Services raise ``HTTPException(detail={"code", "message"})``; the code is
passed through untouched. Bare HTTP errors get a code derived from the status.
"""
from __future__ import annotations

import logging
from typing import Any

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)

_STATUS_CODES = {
    400: "bad_request",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    409: "conflict",
    429: "rate_limit_exceeded",
    503: "service_unavailable",
}


def error_payload(
    code: str, message: str, details: object = None, request_id: str | None = None
) -> dict:
    payload: dict = {
        "success": False,
        "error": {"code": code, "message": message, "details": details},
    }
    if request_id is not None:
        payload["request_id"] = request_id
    return payload


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def _split_detail(status_code: int, detail: Any) -> tuple[str, str, Any]:
    code = _STATUS_CODES.get(status_code, f"http_{status_code}")
    if isinstance(detail, dict):
        return (
            detail.get("code", code),
            detail.get("message", "Request failed"),
            detail.get("details"),
        )
    if isinstance(detail, str):
        return code, detail, None
    return code, "Request failed", detail


def _respond(
    request: Request,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_payload(code, message, details, _request_id(request)),
        headers=headers,
    )


def register_error_handlers(app: Any) -> None:
    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
        request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        code, message, details = _split_detail(exc.status_code, exc.detail)
        if exc.status_code >= 500:
            logger.warning(
                "%s %s answered %s: %s",
                request.method,
                request.url.path,
                exc.status_code,
                code,
                extra={"request_id": _request_id(request)},
            )
        return _respond(
            request, exc.status_code, code, message, details, getattr(exc, "headers", None)
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        errors = jsonable_encoder(exc.errors())
        logger.info(
            "Rejected request body on %s %s",
            request.method,
            request.url.path,
            extra={"request_id": _request_id(request)},
        )
        return _respond(request, 422, "validation_error", "Validation error", errors)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(
            "Unhandled exception on %s %s",
            request.method,
            request.url.path,
            extra={"request_id": _request_id(request)},
        )
        return _respond(request, 500, "internal_error", "Internal server error")
