"""API layer — Request middleware.

- Request ID injection (X-Request-ID header) and log context binding
- Structured access logging
- Global exception handler → clean ErrorResponse

Security errors are rendered with generic messages only.  The specific
reason (expired token, locked account, missing permission) is kept in the
audit trail and the logs, never in the response body.
"""

from __future__ import annotations

import time
import uuid
from typing import Any

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from warden.api.schemas import ErrorResponse
from warden.exceptions import (
    AccountStateError,
    AuthenticationError,
    AuthorizationError,
    CipherError,
    ConfigurationError,
    PersistenceError,
    UserExistsError,
    UserNotFoundError,
    WardenError,
)
from warden.logging import bind_request_context, clear_request_context, get_logger

log = get_logger(__name__)


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Attach a unique X-Request-ID to every request and response."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        request.state.request_id = request_id
        bind_request_context(request_id=request_id)
        try:
            response = await call_next(request)
        finally:
            clear_request_context()
        response.headers["X-Request-ID"] = request_id
        return response


class AccessLogMiddleware(BaseHTTPMiddleware):
    """Log each request with timing information."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        start = time.time()
        response = await call_next(request)
        duration_ms = round((time.time() - start) * 1000, 2)

        log.info(
            "http_request",
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            duration_ms=duration_ms,
            request_id=getattr(request.state, "request_id", None),
        )
        return response


# (status, code, public message, expose context)
def _classify(exc: WardenError) -> tuple[int, str, str, bool]:
    if isinstance(exc, (AuthenticationError, AccountStateError)):
        return 401, "authentication_required", "authentication required", False
    if isinstance(exc, AuthorizationError):
        return 403, "access_denied", "access denied", False
    if isinstance(exc, CipherError):
        return 422, "secret_unavailable", "secret unavailable", False
    if isinstance(exc, PersistenceError):
        return 503, "store_unavailable", "service temporarily unavailable", False
    if isinstance(exc, ConfigurationError):
        return 500, "configuration_error", "service misconfigured", False
    if isinstance(exc, UserNotFoundError):
        return 404, "not_found", exc.message, True
    if isinstance(exc, UserExistsError):
        return 409, "conflict", exc.message, True
    return 500, "internal_error", "internal error", False


def build_error_handler() -> Any:
    """Return a FastAPI exception handler for WardenError subclasses."""

    async def handler(request: Request, exc: WardenError) -> JSONResponse:
        request_id = getattr(request.state, "request_id", None)
        status_code, code, message, expose = _classify(exc)

        if status_code >= 500:
            log.error("request_failed", error=repr(exc), code=code, path=request.url.path)

        body = ErrorResponse(
            error=message,
            code=code,
            detail=(exc.context or None) if expose else None,
            request_id=request_id,
        )
        headers = {"WWW-Authenticate": "Bearer"} if status_code == 401 else None
        return JSONResponse(status_code=status_code, content=body.model_dump(), headers=headers)

    return handler
