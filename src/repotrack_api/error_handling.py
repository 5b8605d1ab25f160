"""HTTP error envelope and request correlation.

Every error leaves the API in the same shape::

    {"detail": "...", "error": {"code": "...", "request_id": "...", "details": {...}}}

``code`` is stable and safe to branch on. The request id is taken from the
incoming ``X-Request-ID`` header when present, generated otherwise, and echoed
back on every response.
"""

from __future__ import annotations

import logging
import math
import uuid
from collections.abc import Awaitable, Callable
from typing import Any

from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from repotrack_api.errors import RateLimitedError, RepoTrackError

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

# Codes for errors raised by FastAPI/Starlette themselves
_HTTP_STATUS_CODES = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    502: "EXTERNAL_SERVICE_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def request_id_for(request: Request) -> str:
    """The id assigned by the middleware, or the client's, or a new one."""
    assigned = getattr(request.state, "request_id", None)
    if assigned:
        return str(assigned)
    return request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    detail: str,
    details: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    request_id = request_id_for(request)
    error: dict[str, Any] = {"code": code, "request_id": request_id}
    if details:
        error["details"] = details
    return JSONResponse(
        status_code=status_code,
        content={"detail": detail, "error": error},
        headers={**(headers or {}), REQUEST_ID_HEADER: request_id},
    )


async def _assign_request_id(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    request.state.request_id = request_id_for(request)
    response = await call_next(request)
    response.headers[REQUEST_ID_HEADER] = request.state.request_id
    return response


def install_error_handling(app: FastAPI) -> None:
    """Install the request-id middleware and the exception handlers."""
    app.middleware("http")(_assign_request_id)

    @app.exception_handler(RepoTrackError)
    async def app_error_handler(request: Request, exc: RepoTrackError) -> JSONResponse:
        headers: dict[str, str] = {}
        if isinstance(exc, RateLimitedError) and exc.retry_after_seconds is not None:
            headers["Retry-After"] = str(math.ceil(exc.retry_after_seconds))
        if exc.status_code >= 500:
            logger.warning(
                "%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message
            )
        return error_response(
            request,
            status_code=exc.status_code,
            code=exc.code,
            detail=exc.message,
            details=exc.details,
            headers=headers,
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        return error_response(
            request,
            status_code=exc.status_code,
            code=_HTTP_STATUS_CODES.get(exc.status_code, "HTTP_ERROR"),
            detail=exc.detail if isinstance(exc.detail, str) else str(exc.detail),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        return error_response(
            request,
            status_code=422,
            code="VALIDATION_ERROR",
            detail="Validation error",
            details={"errors": jsonable_encoder(exc.errors())},
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(
            "Unhandled exception on %s %s (request_id=%s)",
            request.method,
            request.url.path,
            request_id_for(request),
        )
        return error_response(
            request, status_code=500, code="INTERNAL_ERROR", detail="Internal server error"
        )
