"""tokengate data contract types."""

from __future__ import annotations

from typing import Any, Literal, TypedDict

ErrorCode = Literal[
    "configuration_error",
    "signature_unavailable",
    "invalid_token",
    "token_expired",
    "refresh_failed",
    "no_refresh_token",
    "credential_store_unavailable",
    "idp_unavailable",
    "idp_error",
    "invalid_credentials",
    "exchange_failed",
    "profile_failed",
]


class NamedRef(TypedDict):
    """Group or organization reference embedded in access token claims."""

    _id: str
    name: str


class AccessClaims(TypedDict, total=False):
    """Claims carried by IDP-issued access tokens."""

    sub: str
    exp: int
    iat: int
    iss: str
    aud: str
    name: str
    email: str
    username: str
    roles: str | list[str]
    groups: list[NamedRef]
    orgs: list[NamedRef]
    scope: list[str]


class GrantTokenResponse(TypedDict):
    """Token pair returned when exchanging a grant code."""

    access_token: str
    refresh_token: str | None
    expires_in: int | None


class RefreshTokenResponse(TypedDict):
    """Token pair returned when exchanging a refresh token.

    A missing access_token means the refresh token is no longer valid.
    """

    access_token: str | None
    refresh_token: str | None


UserProfile = dict[str, Any]
