"""Async HTTP client for identity provider token and profile endpoints."""

from __future__ import annotations

import base64
import binascii
from typing import Any

import httpx
import structlog

from tokengate.exceptions import (
    ExchangeError,
    IDPResponseError,
    IDPUnavailableError,
    InvalidCredentialsError,
    ProfileError,
)
from tokengate.types import GrantTokenResponse, RefreshTokenResponse, UserProfile

DEFAULT_TIMEOUT = httpx.Timeout(connect=2.0, read=5.0, write=5.0, pool=5.0)

logger = structlog.get_logger(__name__)


class IDPClient:
    """Async client for signature, token exchange, profile, and revoke calls."""

    def __init__(
        self,
        base_url: str,
        app_id: str,
        app_secret: str,
        token_path: str = "/auth/token",
        signature_path: str = "/api/signature",
        profile_path: str = "/api/profile",
        revoke_path: str = "/auth/revoke",
        timeout: httpx.Timeout | float | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Create client with sane defaults and optional injected transport."""
        self._app_id = app_id
        self._app_secret = app_secret
        self._token_path = token_path
        self._signature_path = signature_path
        self._profile_path = profile_path
        self._revoke_path = revoke_path
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout or DEFAULT_TIMEOUT,
        )

    async def fetch_signature(
        self, app_id: str | None = None, app_secret: str | None = None
    ) -> str:
        """Fetch the JWT verification secret and return it base64-decoded."""
        response = await self._request(
            "POST",
            self._signature_path,
            error_class=InvalidCredentialsError,
            json={
                "client_id": app_id or self._app_id,
                "client_secret": app_secret or self._app_secret,
            },
        )
        payload = self._json_object(response, InvalidCredentialsError)
        secret = payload.get("secret")
        if not isinstance(secret, str) or not secret:
            raise InvalidCredentialsError(
                "Invalid signature response payload.", response.status_code
            )
        try:
            return base64.b64decode(secret, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as exc:
            raise InvalidCredentialsError(
                "Signature is not valid base64.", response.status_code
            ) from exc

    async def exchange_grant_code(self, code: str) -> GrantTokenResponse:
        """Exchange an authorization grant code for an access/refresh pair."""
        response = await self._request(
            "POST",
            self._token_path,
            error_class=ExchangeError,
            json={
                "grant_type": "authorization_code",
                "code": code,
                "client_id": self._app_id,
                "client_secret": self._app_secret,
            },
        )
        payload = self._json_object(response, ExchangeError)
        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise ExchangeError("Grant exchange returned no access token.", response.status_code)
        expires_in = payload.get("expires_in")
        return {
            "access_token": access_token,
            "refresh_token": self._optional_str(payload.get("refresh_token")),
            "expires_in": int(expires_in) if isinstance(expires_in, int | float) else None,
        }

    async def exchange_refresh_token(self, refresh_token: str) -> RefreshTokenResponse:
        """Exchange a refresh token; a missing access_token means it was rejected."""
        response = await self._request(
            "POST",
            self._token_path,
            error_class=ExchangeError,
            json={
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self._app_id,
                "client_secret": self._app_secret,
            },
        )
        payload = self._json_object(response, ExchangeError)
        return {
            "access_token": self._optional_str(payload.get("access_token")),
            "refresh_token": self._optional_str(payload.get("refresh_token")),
        }

    async def fetch_profile(self, access_token: str) -> UserProfile:
        """Fetch the authenticated user's profile."""
        response = await self._request(
            "GET",
            self._profile_path,
            error_class=ProfileError,
            headers={"Authorization": f"Bearer {access_token}"},
        )
        return self._json_object(response, ProfileError)

    async def revoke(self, access_token: str) -> None:
        """Revoke an access token at the identity provider."""
        await self._request(
            "GET",
            self._revoke_path,
            error_class=IDPResponseError,
            headers={"Authorization": f"Bearer {access_token}"},
        )

    async def aclose(self) -> None:
        """Close underlying HTTP client if owned by this instance."""
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> IDPClient:
        """Enter async context manager."""
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        """Exit async context manager and close managed resources."""
        del exc_type, exc, tb
        await self.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        error_class: type[IDPResponseError],
        **kwargs: Any,
    ) -> httpx.Response:
        """Execute request and normalize upstream failures."""
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.RequestError as exc:
            logger.warning("idp_unreachable", method=method, path=path, error=str(exc))
            raise IDPUnavailableError("Identity provider unavailable.") from exc

        if response.status_code >= 500:
            raise IDPUnavailableError("Identity provider unavailable.")
        if response.status_code >= 400:
            raise error_class(
                f"Identity provider request failed with status {response.status_code}.",
                response.status_code,
            )
        return response

    @staticmethod
    def _json_object(
        response: httpx.Response, error_class: type[IDPResponseError]
    ) -> dict[str, Any]:
        """Return response JSON as object."""
        try:
            payload = response.json()
        except ValueError as exc:
            raise error_class(
                "Identity provider returned invalid JSON.", response.status_code
            ) from exc
        if not isinstance(payload, dict):
            raise error_class(
                "Identity provider returned invalid JSON object.", response.status_code
            )
        return payload

    @staticmethod
    def _optional_str(value: Any) -> str | None:
        """Normalize optional token values to non-empty strings."""
        if isinstance(value, str) and value:
            return value
        return None
