"""Gatekeeping middleware that verifies, refreshes, and annotates requests."""

from __future__ import annotations

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from tokengate.error_handlers import error_response
from tokengate.events import MISSING_UNAUTHORIZED_HANDLER, AuthEvents, resolve
from tokengate.exceptions import ConfigurationError, TokenGateError
from tokengate.gatekeeper import Defer, Gatekeeper, Grant, Reject
from tokengate.logging import log_request
from tokengate.transport import (
    clear_tokens,
    extract_access_token,
    extract_refresh_token,
    set_tokens,
)

logger = structlog.get_logger(__name__)


class TokenGateMiddleware(BaseHTTPMiddleware):
    """Grant, refresh-then-grant, or reject every non-excluded request."""

    def __init__(self, app, gatekeeper: Gatekeeper, events: AuthEvents) -> None:
        """Initialize middleware with the shared gatekeeper and host callbacks."""
        super().__init__(app)
        self._gatekeeper = gatekeeper
        self._events = events

    async def dispatch(self, request: Request, call_next) -> Response:
        """Route the request according to the gatekeeper decision."""
        if self._gatekeeper.is_excluded(request.url.path):
            return await call_next(request)

        access_token = extract_access_token(request)
        decision = await self._gatekeeper.decide(access_token)

        if isinstance(decision, Defer):
            log_request(f"refresh_deferred_{decision.reason}", access_token, request)
            decision = await self._gatekeeper.refresh(
                decision.access_token, extract_refresh_token(request), decision.claims
            )

        if isinstance(decision, Grant):
            return await self._grant(request, call_next, decision)
        return await self._reject(request, decision, access_token)

    async def _grant(self, request: Request, call_next, decision: Grant) -> Response:
        """Annotate the request with trusted claims and pass it downstream."""
        request.state.access_token = decision.access_token
        request.state.jwt = decision.claims
        log_request("access_granted", decision.access_token, request)

        response = None
        if self._events.on_access_granted is not None:
            response = await resolve(self._events.on_access_granted(request))
        if response is None:
            response = await call_next(request)
        if decision.refreshed:
            set_tokens(response, decision.access_token, decision.refresh_token)
        return response

    async def _reject(
        self, request: Request, decision: Reject, access_token: str | None
    ) -> Response:
        """Surface the failure to the host; never fall through to the endpoint."""
        error = decision.error
        handler = self._events.on_unauthorized_request
        if decision.is_refresh_error:
            log_request(f"refresh_error_{error.code}", access_token, request)
            handler = self._events.on_refresh_error or handler
        else:
            log_request(f"unauthorized_request_{error.code}", access_token, request)

        if handler is None:
            logger.error("missing_unauthorized_handler", path=request.url.path, code=error.code)
            raise ConfigurationError(MISSING_UNAUTHORIZED_HANDLER) from error

        response = await resolve(handler(error, request))
        if response is None:
            response = self._default_rejection(error)
        if decision.is_refresh_error:
            clear_tokens(response)
        return response

    @staticmethod
    def _default_rejection(error: TokenGateError) -> Response:
        status_code = error.status_code if error.status_code < 500 else 401
        return error_response(status_code=status_code, detail=error.detail, code=error.code)
