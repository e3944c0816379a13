"""Carry access/refresh tokens in cookies or the Authorization header."""

from __future__ import annotations

import base64
import binascii
import hmac

from starlette.requests import Request
from starlette.responses import Response

ACCESS_TOKEN_COOKIE = "gpoauth-a"
REFRESH_TOKEN_COOKIE = "gpoauth-r"
COOKIE_MAX_AGE_SECONDS = 1000


def _encode_cookie(value: str) -> str:
    return base64.b64encode(value.encode("utf-8")).decode("ascii")


def _decode_cookie(value: str | None) -> str | None:
    """Decode a base64 cookie value; undecodable cookies count as absent."""
    if not value:
        return None
    try:
        decoded = base64.b64decode(value, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    return decoded or None


def extract_bearer_token(request: Request) -> str | None:
    """Extract bearer token from Authorization header."""
    authorization = request.headers.get("authorization", "").strip()
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if not hmac.compare_digest(scheme.lower(), "bearer"):
        return None
    stripped = token.strip()
    return stripped or None


def extract_access_token(request: Request) -> str | None:
    """Return the access token, preferring the cookie over the bearer header."""
    return _decode_cookie(request.cookies.get(ACCESS_TOKEN_COOKIE)) or extract_bearer_token(
        request
    )


def extract_refresh_token(request: Request) -> str | None:
    """Return the refresh token carried in the HTTP-only cookie, if any."""
    return _decode_cookie(request.cookies.get(REFRESH_TOKEN_COOKIE))


def set_tokens(response: Response, access_token: str | None, refresh_token: str | None) -> Response:
    """Persist tokens on the caller via cookies; the refresh cookie is HTTP-only."""
    if access_token:
        response.set_cookie(
            ACCESS_TOKEN_COOKIE,
            _encode_cookie(access_token),
            max_age=COOKIE_MAX_AGE_SECONDS,
            samesite="lax",
        )
    if refresh_token:
        response.set_cookie(
            REFRESH_TOKEN_COOKIE,
            _encode_cookie(refresh_token),
            max_age=COOKIE_MAX_AGE_SECONDS,
            httponly=True,
            samesite="lax",
        )
    return response


def clear_tokens(response: Response) -> Response:
    """Purge both token cookies from the caller."""
    response.delete_cookie(ACCESS_TOKEN_COOKIE)
    response.delete_cookie(REFRESH_TOKEN_COOKIE)
    return response
