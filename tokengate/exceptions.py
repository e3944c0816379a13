"""Exception hierarchy for token verification, refresh, and IDP calls."""

from __future__ import annotations

from typing import Any


class TokenGateError(Exception):
    """Base class for all tokengate exceptions."""

    code = "tokengate_error"
    status_code = 500

    def __init__(self, detail: str, code: str | None = None) -> None:
        """Initialize with user-facing detail and machine-readable code."""
        super().__init__(detail)
        self.detail = detail
        if code is not None:
            self.code = code


class ConfigurationError(TokenGateError):
    """Raised when required configuration or a required event handler is missing."""

    code = "configuration_error"
    status_code = 500


class SignatureUnavailable(TokenGateError):  # noqa: N818
    """Raised when the JWT verification secret has not been fetched yet."""

    code = "signature_unavailable"
    status_code = 500


class TokenInvalid(TokenGateError):  # noqa: N818
    """Raised for malformed tokens or signature mismatches."""

    code = "invalid_token"
    status_code = 401


class TokenExpired(TokenGateError):  # noqa: N818
    """Raised when a correctly signed token is past its exp claim."""

    code = "token_expired"
    status_code = 401

    def __init__(self, detail: str, claims: dict[str, Any]) -> None:
        """Keep verified claims so callers can evaluate the linger window."""
        super().__init__(detail)
        self.claims = claims


class RefreshExchangeFailure(TokenGateError):  # noqa: N818
    """Raised when the refresh exchange fails or yields no new access token."""

    code = "refresh_failed"
    status_code = 401


class NoRefreshTokenFound(TokenGateError):  # noqa: N818
    """Raised when no refresh token is known for an expired access token."""

    code = "no_refresh_token"
    status_code = 401


class CredentialStoreError(TokenGateError):
    """Raised when the credential store backend is unavailable."""

    code = "credential_store_unavailable"
    status_code = 503


class IDPError(TokenGateError):
    """Base class for identity provider client failures."""

    code = "idp_error"
    status_code = 502


class IDPUnavailableError(IDPError):
    """Raised when the identity provider is unreachable."""

    code = "idp_unavailable"


class IDPResponseError(IDPError):
    """Raised when the identity provider returns an error or malformed data."""

    def __init__(self, detail: str, status_code: int | None = None) -> None:
        """Initialize with optional upstream HTTP status code context."""
        super().__init__(detail)
        self.upstream_status_code = status_code


class InvalidCredentialsError(IDPResponseError):
    """Raised when the IDP rejects the application id/secret."""

    code = "invalid_credentials"


class ExchangeError(IDPResponseError):
    """Raised when a grant code or refresh token exchange fails."""

    code = "exchange_failed"


class ProfileError(IDPResponseError):
    """Raised when the user profile cannot be fetched."""

    code = "profile_failed"
