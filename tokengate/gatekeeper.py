"""Per-request grant/defer/reject decisions."""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from tokengate.cache import SignatureCache
from tokengate.coordinator import RefreshCoordinator, RefreshFailed
from tokengate.exceptions import (
    ConfigurationError,
    NoRefreshTokenFound,
    RefreshExchangeFailure,
    SignatureUnavailable,
    TokenExpired,
    TokenGateError,
    TokenInvalid,
)
from tokengate.verifier import TokenVerifier, needs_preemptive_refresh

DEFAULT_EXCLUDED_PATHS = ("/login", "/revoke", "/authtoken", "/auth/loading")


@dataclass(frozen=True)
class Grant:
    claims: dict[str, Any]
    access_token: str
    refresh_token: str | None = None
    refreshed: bool = False


@dataclass(frozen=True)
class Defer:
    access_token: str
    reason: str
    claims: dict[str, Any] | None = None


@dataclass(frozen=True)
class Reject:
    error: TokenGateError

    @property
    def is_refresh_error(self) -> bool:
        return isinstance(self.error, RefreshExchangeFailure | NoRefreshTokenFound)


Decision = Grant | Defer | Reject


class Gatekeeper:
    """Tie signature cache, verifier, and refresh coordinator into one decision."""

    def __init__(
        self,
        verifier: TokenVerifier,
        signatures: SignatureCache,
        coordinator: RefreshCoordinator,
        pre_refresh_buffer_ms: int = 250,
        refresh_linger_ms: int = 250,
        excluded_paths: Iterable[str] = DEFAULT_EXCLUDED_PATHS,
        now: Callable[[], float] | None = None,
    ) -> None:
        self._verifier = verifier
        self._signatures = signatures
        self._coordinator = coordinator
        self._pre_refresh_buffer_ms = pre_refresh_buffer_ms
        self._refresh_linger_ms = refresh_linger_ms
        self._excluded_paths = tuple(path.rstrip("/") for path in excluded_paths)
        self._now = now or time.time

    def is_excluded(self, path: str) -> bool:
        """Return True for login/token-exchange/revoke/loading endpoints."""
        return any(
            path == excluded or path.startswith(f"{excluded}/") for excluded in self._excluded_paths
        )

    async def decide(self, access_token: str | None) -> Decision:
        """Decide for one request, fetching the signature first when missing."""
        if not self._signatures.has_signature():
            try:
                await self._signatures.get_signature()
            except SignatureUnavailable as exc:
                error = ConfigurationError(
                    "Unable to verify tokens: identity provider signature unavailable."
                )
                error.__cause__ = exc
                return Reject(error)
        return self.evaluate(access_token)

    def evaluate(self, access_token: str | None) -> Decision:
        """Verify the token and classify it; never suspends."""
        now = self._now()
        try:
            claims = self._verifier.verify(access_token, self._signatures.signature, now)
        except TokenExpired as exc:
            if self.within_linger(now, exc.claims["exp"]):
                return Grant(claims=exc.claims, access_token=access_token or "")
            return Defer(access_token=access_token or "", reason="expired", claims=exc.claims)
        except TokenInvalid as exc:
            return Reject(exc)

        if needs_preemptive_refresh(now * 1000, claims["exp"], self._pre_refresh_buffer_ms):
            return Defer(access_token=access_token or "", reason="pre_refresh", claims=claims)
        return Grant(claims=claims, access_token=access_token or "")

    def within_linger(self, now: float, exp: float) -> bool:
        """Return True while now is inside [exp, exp + REFRESH_LINGER)."""
        return now * 1000 < exp * 1000 + self._refresh_linger_ms

    async def refresh(
        self,
        access_token: str,
        refresh_token_hint: str | None = None,
        claims: dict[str, Any] | None = None,
    ) -> Decision:
        """Wait for the coordinated refresh and replay the decision with the new token.

        ``claims`` are the verified claims of the deferred token. When the refresh
        fails but that token has not expired yet, it is granted as-is.
        """
        outcome = await self._coordinator.refresh(access_token, refresh_token_hint)
        if isinstance(outcome, RefreshFailed):
            if claims is not None and self._now() < claims["exp"]:
                return Grant(claims=claims, access_token=access_token)
            return Reject(outcome.error)

        try:
            refreshed_claims = self._verifier.verify(
                outcome.access_token, self._signatures.signature, self._now()
            )
        except TokenInvalid as exc:
            failure = RefreshExchangeFailure("Refreshed token failed verification.")
            failure.__cause__ = exc
            return Reject(failure)
        except TokenExpired as exc:
            failure = RefreshExchangeFailure("Identity provider issued an expired token.")
            failure.__cause__ = exc
            return Reject(failure)
        return Grant(
            claims=refreshed_claims,
            access_token=outcome.access_token,
            refresh_token=outcome.refresh_token,
            refreshed=True,
        )
