"""Exception handlers enforcing the tokengate error response shape."""

from __future__ import annotations

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from tokengate.exceptions import ConfigurationError, TokenGateError

logger = structlog.get_logger(__name__)


def error_response(status_code: int, detail: str, code: str) -> JSONResponse:
    """Build standardized JSON error payload."""
    return JSONResponse(status_code=status_code, content={"detail": detail, "code": code})


def register_exception_handlers(app: FastAPI) -> None:
    """Register handlers mapping tokengate errors to the error payload contract."""

    @app.exception_handler(TokenGateError)
    async def handle_tokengate_error(request: Request, exc: TokenGateError) -> JSONResponse:
        """Map tokengate errors raised by routes to their status and code."""
        if exc.status_code >= 500:
            logger.error(
                "tokengate_error",
                path=request.url.path,
                method=request.method,
                code=exc.code,
                detail=exc.detail,
            )
        return error_response(status_code=exc.status_code, detail=exc.detail, code=exc.code)

    @app.exception_handler(Exception)
    async def handle_unexpected_exception(request: Request, exc: Exception) -> JSONResponse:
        """Mask internal errors; configuration errors keep their detail so they get fixed."""
        logger.error(
            "unhandled_exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
        )
        if isinstance(exc, ConfigurationError):
            return error_response(status_code=500, detail=exc.detail, code=exc.code)
        return error_response(
            status_code=500, detail="Internal server error.", code="internal_error"
        )
