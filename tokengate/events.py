"""Host application callbacks fired by the gatekeeper and auth routes."""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from starlette.requests import Request
from starlette.responses import Response

from tokengate.exceptions import ConfigurationError, TokenGateError
from tokengate.types import UserProfile

HandlerResult = Response | None | Awaitable[Response | None]

AccessGrantedHandler = Callable[[Request], HandlerResult]
UnauthorizedRequestHandler = Callable[[TokenGateError, Request], HandlerResult]
RefreshErrorHandler = Callable[[TokenGateError, Request], HandlerResult]
UserAuthenticatedHandler = Callable[[UserProfile], None | Awaitable[None]]
TokenRevokedHandler = Callable[[dict[str, Any] | None, str], None | Awaitable[None]]

MISSING_UNAUTHORIZED_HANDLER = (
    'No handler registered for the "unauthorized request" event. '
    "Requests are not secured by tokengate until AuthEvents.on_unauthorized_request is set."
)

T = TypeVar("T")


async def resolve(value: T | Awaitable[T]) -> T:
    """Await handler results that are awaitable; pass plain values through."""
    if inspect.isawaitable(value):
        return await value
    return value


@dataclass
class AuthEvents:
    """Capability interface for host callbacks.

    Handlers may be plain functions or coroutines. Request handlers may return
    a Response to replace tokengate's default behavior for that request.
    """

    on_unauthorized_request: UnauthorizedRequestHandler | None = None
    on_access_granted: AccessGrantedHandler | None = None
    on_refresh_error: RefreshErrorHandler | None = None
    on_user_authenticated: UserAuthenticatedHandler | None = None
    on_token_revoked: TokenRevokedHandler | None = None

    def validate(self) -> None:
        """Raise ConfigurationError when the required handler is missing."""
        if self.on_unauthorized_request is None:
            raise ConfigurationError(MISSING_UNAUTHORIZED_HANDLER)
