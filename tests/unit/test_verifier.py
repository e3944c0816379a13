"""Unit tests for JWT verification and expiry helpers."""

from __future__ import annotations

import time

import pytest
from jose import jwt

from tokengate.exceptions import TokenExpired, TokenInvalid
from tokengate.verifier import (
    TokenVerifier,
    claim_expiry,
    decode_unverified,
    needs_preemptive_refresh,
)

SECRET = "shared-secret"
NOW = 1_700_000_000.0


def _token(secret: str = SECRET, **claims: object) -> str:
    payload: dict[str, object] = {"sub": "user-1", "exp": int(NOW) + 60}
    payload.update(claims)
    return jwt.encode(payload, secret, algorithm="HS256")


def test_verify_returns_claims_for_valid_token() -> None:
    """Correctly signed, unexpired tokens yield their claims."""
    verifier = TokenVerifier(now=lambda: NOW)

    claims = verifier.verify(_token(), SECRET)

    assert claims["sub"] == "user-1"
    assert claims["exp"] == int(NOW) + 60


def test_verify_raises_token_expired_with_claims() -> None:
    """Expired tokens keep their verified claims for linger evaluation."""
    verifier = TokenVerifier(now=lambda: NOW)

    with pytest.raises(TokenExpired) as exc_info:
        verifier.verify(_token(exp=int(NOW) - 1), SECRET)

    assert exc_info.value.claims["sub"] == "user-1"
    assert exc_info.value.code == "token_expired"


def test_verify_treats_exp_equal_to_now_as_expired() -> None:
    verifier = TokenVerifier()

    with pytest.raises(TokenExpired):
        verifier.verify(_token(exp=int(NOW)), SECRET, now=NOW)


def test_verify_rejects_wrong_signature() -> None:
    verifier = TokenVerifier(now=lambda: NOW)

    with pytest.raises(TokenInvalid):
        verifier.verify(_token(secret="other-secret"), SECRET)


def test_verify_rejects_token_without_exp() -> None:
    verifier = TokenVerifier(now=lambda: NOW)
    token = jwt.encode({"sub": "user-1"}, SECRET, algorithm="HS256")

    with pytest.raises(TokenInvalid):
        verifier.verify(token, SECRET)


@pytest.mark.parametrize("token", [None, "", "not-a-jwt"])
def test_verify_rejects_missing_or_malformed_token(token: str | None) -> None:
    verifier = TokenVerifier(now=lambda: NOW)

    with pytest.raises(TokenInvalid):
        verifier.verify(token, SECRET)


def test_verify_rejects_when_signature_missing() -> None:
    """Without a cached secret nothing can be verified."""
    verifier = TokenVerifier(now=lambda: NOW)

    with pytest.raises(TokenInvalid):
        verifier.verify(_token(), None)


def test_needs_preemptive_refresh_boundaries() -> None:
    exp = NOW + 10
    assert not needs_preemptive_refresh(NOW * 1000, exp, 250)
    assert needs_preemptive_refresh((exp * 1000) - 250, exp, 250)
    assert not needs_preemptive_refresh((exp * 1000) - 251, exp, 250)
    assert needs_preemptive_refresh(exp * 1000, exp, 0)


def test_unverified_helpers_read_claims_without_secret() -> None:
    token = _token(secret="unknown")

    assert decode_unverified(token)["sub"] == "user-1"
    assert claim_expiry(token) == float(int(NOW) + 60)
    assert decode_unverified("garbage") is None
    assert claim_expiry("garbage") is None


def test_expiry_follows_injected_clock_not_wall_clock() -> None:
    """A token expired by real time is still classified as expired, not invalid."""
    real_now = time.time()
    token = jwt.encode({"sub": "user-1", "exp": int(real_now) - 10}, SECRET, algorithm="HS256")

    with pytest.raises(TokenExpired) as exc_info:
        TokenVerifier().verify(token, SECRET, real_now)
    assert exc_info.value.claims["sub"] == "user-1"

    claims = TokenVerifier(now=lambda: real_now - 60).verify(token, SECRET)
    assert claims["exp"] == int(real_now) - 10
