"""Login, token exchange, loading, revoke, and token check routes."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Annotated, Any
from urllib.parse import quote, unquote, urlencode

import structlog
from fastapi import APIRouter, Query, Request, Response
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse

from tokengate.error_handlers import error_response
from tokengate.events import resolve
from tokengate.exceptions import CredentialStoreError, IDPError
from tokengate.logging import abbreviate_token
from tokengate.transport import clear_tokens, extract_access_token, set_tokens
from tokengate.verifier import decode_unverified

if TYPE_CHECKING:
    from tokengate.gate import TokenGate

logger = structlog.get_logger(__name__)

LOADING_PAGE = """<!DOCTYPE html>
<html>
  <head><meta charset="utf-8"><title>Signing in</title></head>
  <body>
    <p>Signing in&hellip;</p>
    <script>
      var params = new URLSearchParams(window.location.search);
      var token = params.get("access_token");
      if (token) { window.localStorage.setItem("gpoauth-a", token); }
      if (window.opener) { window.opener.postMessage({access_token: token}, "*"); window.close(); }
    </script>
  </body>
</html>
"""


def token_redirect_url(url: str, access_token: str) -> str:
    """Append access_token, cachebust, and token_type to a redirect URL."""
    prefix = "&" if "?" in url else "?"
    query = urlencode(
        {
            "access_token": access_token,
            "cachebust": int(time.time() * 1000),
            "token_type": "Bearer",
        }
    )
    return f"{url}{prefix}{query}"


def build_router(gate: TokenGate) -> APIRouter:
    """Build the auth router bound to one TokenGate context."""
    router = APIRouter(tags=["auth"])
    settings = gate.settings

    @router.get("/login")
    async def login(redirect_url: Annotated[str | None, Query()] = None) -> Response:
        """Redirect the browser to the IDP authorization endpoint."""
        suffix = quote(redirect_url, safe="") if redirect_url else ""
        query = urlencode(
            {
                "response_type": "code",
                "redirect_uri": f"{settings.app_base_url}/authtoken/{suffix}",
                "scope": settings.scopes,
                "client_id": settings.app_id,
            }
        )
        auth_url = f"{settings.idp_base_url}{settings.idp_auth_url}?{query}"
        logger.debug("login_redirect", auth_url=auth_url, redirect_url=redirect_url)
        return RedirectResponse(url=auth_url, status_code=302)

    @router.get("/authtoken")
    @router.get("/authtoken/{redirect_url:path}")
    async def authtoken(
        code: Annotated[str | None, Query()] = None,
        redirect_url: str | None = None,
    ) -> Response:
        """Exchange the grant code, store the pair, and hand the token to the browser."""
        target = unquote(redirect_url) if redirect_url else "/"
        if not code:
            logger.warning("grant_code_missing", redirect_url=target)
            return RedirectResponse(url=target, status_code=302)

        try:
            tokens = await gate.idp_client.exchange_grant_code(code)
        except IDPError as exc:
            logger.error("grant_exchange_failed", code=exc.code, detail=exc.detail)
            return RedirectResponse(url=target, status_code=302)

        access_token = tokens["access_token"]
        refresh_token = tokens["refresh_token"]
        logger.debug(
            "grant_exchanged",
            access_token=abbreviate_token(access_token),
            refresh_token=abbreviate_token(refresh_token),
            expires_in=tokens["expires_in"],
        )
        if refresh_token:
            try:
                await gate.store.put(access_token, refresh_token, gate.coordinator.record_expiry())
            except CredentialStoreError as exc:
                logger.warning("credential_store_failed", detail=exc.detail)

        if gate.events.on_user_authenticated is not None:
            await _notify_user_authenticated(gate, access_token)

        response = RedirectResponse(url=token_redirect_url(target, access_token), status_code=302)
        set_tokens(response, access_token, refresh_token)
        return response

    @router.get("/auth/loading", response_class=HTMLResponse)
    async def loading() -> HTMLResponse:
        """Serve the page that stores the token client-side after login."""
        return HTMLResponse(LOADING_PAGE)

    @router.get("/revoke")
    async def revoke(request: Request) -> Response:
        """Revoke the caller's token at the IDP and clear local credentials."""
        access_token = extract_access_token(request)
        if not access_token:
            return error_response(status_code=401, detail="Missing token.", code="invalid_token")

        try:
            await gate.idp_client.revoke(access_token)
        except IDPError as exc:
            logger.warning("revoke_failed", code=exc.code, detail=exc.detail)
            return error_response(status_code=502, detail=exc.detail, code=exc.code)

        try:
            await gate.store.remove(access_token)
        except CredentialStoreError as exc:
            logger.warning("credential_remove_failed", detail=exc.detail)
        handler = gate.events.on_token_revoked
        if handler is not None:
            await resolve(handler(decode_unverified(access_token), access_token))
        logger.debug("token_revoked", token=abbreviate_token(access_token))

        response = JSONResponse({"status": "ok"})
        clear_tokens(response)
        return response

    @router.get("/checktoken")
    async def checktoken(request: Request) -> dict[str, Any]:
        """Return the (possibly refreshed) token granted by the middleware."""
        return {"access_token": getattr(request.state, "access_token", None)}

    return router


async def _notify_user_authenticated(gate: TokenGate, access_token: str) -> None:
    """Fetch the profile and emit the user-authenticated event; never blocks login."""
    try:
        profile = await gate.idp_client.fetch_profile(access_token)
    except IDPError as exc:
        logger.error("profile_fetch_failed", code=exc.code, detail=exc.detail)
        return
    handler = gate.events.on_user_authenticated
    if handler is not None:
        await resolve(handler(profile))
