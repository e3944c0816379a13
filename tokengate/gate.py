"""Assemble one tokengate context and attach it to a FastAPI application."""

from __future__ import annotations

import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from redis.asyncio import from_url

from tokengate.cache import SignatureCache
from tokengate.client import IDPClient
from tokengate.config import GatewaySettings
from tokengate.coordinator import RefreshCoordinator
from tokengate.error_handlers import register_exception_handlers
from tokengate.events import MISSING_UNAUTHORIZED_HANDLER, AuthEvents
from tokengate.exceptions import SignatureUnavailable
from tokengate.gatekeeper import Gatekeeper
from tokengate.middleware import TokenGateMiddleware
from tokengate.routes import build_router
from tokengate.store import (
    CredentialStore,
    CredentialSweeper,
    InMemoryCredentialStore,
    RedisCredentialStore,
)
from tokengate.verifier import TokenVerifier

logger = structlog.get_logger(__name__)


def build_credential_store(settings: GatewaySettings) -> CredentialStore:
    """Return a Redis-backed store when REDIS_URL is set, else an in-memory one."""
    if settings.redis_url:
        return RedisCredentialStore(
            from_url(settings.redis_url, decode_responses=True),
            key_prefix=settings.service,
        )
    return InMemoryCredentialStore()


class TokenGate:
    """Owns the signature cache, credential store, and refresh queue for one app."""

    def __init__(
        self,
        settings: GatewaySettings,
        events: AuthEvents,
        store: CredentialStore | None = None,
        idp_client: IDPClient | None = None,
        now: Callable[[], float] | None = None,
        strict_events: bool = False,
    ) -> None:
        if strict_events:
            events.validate()
        elif events.on_unauthorized_request is None:
            logger.warning("missing_unauthorized_handler", detail=MISSING_UNAUTHORIZED_HANDLER)

        self.settings = settings
        self.events = events
        self._now = now or time.time
        self.store = store if store is not None else build_credential_store(settings)
        self.idp_client = idp_client or IDPClient(
            base_url=settings.idp_base_url,
            app_id=settings.app_id,
            app_secret=settings.app_secret.get_secret_value(),
            token_path=settings.idp_token_url,
            signature_path=settings.idp_signature_url,
            profile_path=settings.idp_profile_url,
            revoke_path=settings.idp_revoke_url,
            timeout=settings.idp_timeout_seconds,
        )
        self.signatures = SignatureCache(self.idp_client)
        self.verifier = TokenVerifier(now=self._now)
        self.coordinator = RefreshCoordinator(
            store=self.store,
            exchanger=self.idp_client,
            debounce_ms=settings.refresh_debounce,
            linger_ms=settings.refresh_linger,
            credential_ttl_seconds=settings.credential_ttl_seconds,
            now=self._now,
        )
        self.gatekeeper = Gatekeeper(
            verifier=self.verifier,
            signatures=self.signatures,
            coordinator=self.coordinator,
            pre_refresh_buffer_ms=settings.pre_refresh_buffer,
            refresh_linger_ms=settings.refresh_linger,
            now=self._now,
        )
        self.sweeper = CredentialSweeper(
            self.store,
            interval_seconds=settings.sweep_interval_seconds,
            now=self._now,
        )

    def install(self, app: FastAPI) -> FastAPI:
        """Add the gatekeeping middleware, auth routes, and error handlers to app."""
        app.add_middleware(TokenGateMiddleware, gatekeeper=self.gatekeeper, events=self.events)
        app.include_router(build_router(self))
        register_exception_handlers(app)
        return app

    @asynccontextmanager
    async def lifespan(self, app: FastAPI) -> AsyncIterator[None]:
        """Prefetch the signature and run the sweeper for the app's lifetime."""
        del app
        try:
            await self.signatures.get_signature()
        except SignatureUnavailable:
            # First gated request retries the fetch.
            logger.warning("signature_prefetch_failed")
        self.sweeper.start()
        try:
            yield
        finally:
            await self.sweeper.stop()
            self.coordinator.close()
            await self.idp_client.aclose()
