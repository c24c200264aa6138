"""
Global middleware and exception mapping.
"""

from __future__ import annotations

import logging
import time

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from connectors.errors import (
    AuthenticationError,
    ConnectorError,
    ConnectorNotFoundError,
    ContentTooLargeError,
    OAuthStateError,
    ProviderError,
    ProviderNotFoundError,
)
from connectors.sanitizer import sanitize_error

logger = logging.getLogger(__name__)

# Most specific first; the first isinstance match wins
_STATUS_BY_ERROR = [
    (ProviderNotFoundError, status.HTTP_404_NOT_FOUND),
    (ConnectorNotFoundError, status.HTTP_404_NOT_FOUND),
    (OAuthStateError, status.HTTP_400_BAD_REQUEST),
    (AuthenticationError, status.HTTP_401_UNAUTHORIZED),
    (ContentTooLargeError, status.HTTP_413_REQUEST_ENTITY_TOO_LARGE),
    (ProviderError, status.HTTP_502_BAD_GATEWAY),
]


def status_for(exc: ConnectorError) -> int:
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def register_middleware(app: FastAPI) -> None:
    """Attach request timing and connector error handling."""

    @app.middleware("http")
    async def request_timer(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start
        response.headers["X-Process-Time"] = f"{elapsed:.4f}"
        logger.debug("%s %s %d — %.3fs", request.method, request.url.path, response.status_code, elapsed)
        return response

    @app.exception_handler(ConnectorError)
    async def connector_error_handler(request: Request, exc: ConnectorError) -> JSONResponse:
        code = status_for(exc)
        detail = sanitize_error(exc)
        if code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, detail)
        else:
            logger.info("%s %s rejected (%d): %s", request.method, request.url.path, code, detail)
        return JSONResponse(status_code=code, content={"detail": detail, "error": type(exc).__name__})

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content={"detail": str(exc)})
