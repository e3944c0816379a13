"""JWT signature and expiry verification against the shared IDP secret."""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any

from jose import jwt
from jose.exceptions import JWTError

from tokengate.exceptions import TokenExpired, TokenInvalid

JWT_ALGORITHMS = ("HS256",)


def needs_preemptive_refresh(now_ms: float, exp: float, buffer_ms: float) -> bool:
    """Return True once now is within buffer_ms of the exp claim (seconds)."""
    return now_ms >= exp * 1000 - buffer_ms


def decode_unverified(token: str) -> dict[str, Any] | None:
    """Return claims without checking the signature; None when undecodable."""
    try:
        return jwt.get_unverified_claims(token)
    except JWTError:
        return None


def claim_expiry(token: str) -> float | None:
    """Read the exp claim without verifying the signature."""
    claims = decode_unverified(token)
    if claims is None:
        return None
    exp = claims.get("exp")
    if isinstance(exp, bool) or not isinstance(exp, int | float):
        return None
    return float(exp)


class TokenVerifier:
    """Verify HS256 access tokens signed with the IDP's shared secret."""

    def __init__(
        self,
        algorithms: tuple[str, ...] = JWT_ALGORITHMS,
        now: Callable[[], float] | None = None,
    ) -> None:
        self._algorithms = list(algorithms)
        self._now = now or time.time

    def verify(
        self, token: str | None, signature: str | None, now: float | None = None
    ) -> dict[str, Any]:
        """Return verified claims, or raise TokenInvalid / TokenExpired.

        Expiry is evaluated against ``now`` (seconds since epoch) rather than
        inside jose so callers can apply their own clock and linger policy.
        """
        if not token:
            raise TokenInvalid("Missing token.")
        if not signature:
            raise TokenInvalid("No signature available to verify token.")

        try:
            claims = jwt.decode(
                token,
                signature,
                algorithms=self._algorithms,
                options={
                    "verify_aud": False,
                    "verify_exp": False,
                },
            )
        except JWTError as exc:
            raise TokenInvalid("Invalid token.") from exc

        exp = claims.get("exp")
        if isinstance(exp, bool) or not isinstance(exp, int | float):
            raise TokenInvalid("Invalid token.")

        current = self._now() if now is None else now
        if current >= exp:
            raise TokenExpired("Token has expired.", claims)
        return claims
