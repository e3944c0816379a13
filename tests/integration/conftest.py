"""Shared integration fixtures: a mock identity provider and gate factory."""

from __future__ import annotations

import base64
import json
from collections import Counter
from collections.abc import AsyncIterator, Callable
from typing import Any

import httpx
import pytest
from fastapi import FastAPI, Request
from jose import jwt

from tokengate.client import IDPClient
from tokengate.config import load_settings
from tokengate.events import AuthEvents
from tokengate.gate import TokenGate
from tokengate.store import InMemoryCredentialStore

SECRET = "integration-secret"
NOW = 1_700_000_000.0


def _make_token(exp_offset: float, sub: str = "user-1", secret: str = SECRET) -> str:
    """Sign an access token expiring exp_offset seconds from the fixed clock."""
    return jwt.encode({"sub": sub, "exp": NOW + exp_offset}, secret, algorithm="HS256")


class IDPStub:
    """In-process identity provider served through httpx.MockTransport."""

    def __init__(self) -> None:
        self.calls: Counter[str] = Counter()
        self.refresh_tokens_seen: list[str] = []
        self.refreshed_access_token = _make_token(3600, sub="user-1")
        self.refresh_response: dict[str, Any] = {
            "access_token": self.refreshed_access_token,
            "refresh_token": "new-refresh",
        }
        self.grant_response: dict[str, Any] = {
            "access_token": _make_token(3600, sub="user-1"),
            "refresh_token": "grant-refresh",
            "expires_in": 3600,
        }
        self.grant_status = 200
        self.revoke_status = 200
        self.signature_status = 200

    async def handler(self, request: httpx.Request) -> httpx.Response:
        """Dispatch signature, token, profile, and revoke calls."""
        path = request.url.path
        self.calls[path] += 1
        if path == "/api/signature":
            if self.signature_status != 200:
                return httpx.Response(self.signature_status)
            return httpx.Response(200, json={"secret": base64.b64encode(SECRET.encode()).decode()})
        if path == "/auth/token":
            body = json.loads(request.content)
            if body["grant_type"] == "refresh_token":
                self.refresh_tokens_seen.append(body["refresh_token"])
                return httpx.Response(200, json=self.refresh_response)
            return httpx.Response(self.grant_status, json=self.grant_response)
        if path == "/api/profile":
            return httpx.Response(200, json={"sub": "user-1", "email": "user@example.com"})
        if path == "/auth/revoke":
            return httpx.Response(self.revoke_status, json={})
        return httpx.Response(404, json={"detail": "not found"})


@pytest.fixture
def make_token() -> Callable[..., str]:
    """Return the access token signer bound to the shared secret and clock."""
    return _make_token


@pytest.fixture
def idp() -> IDPStub:
    return IDPStub()


@pytest.fixture
async def gate_factory(
    idp: IDPStub,
) -> AsyncIterator[Callable[..., tuple[FastAPI, TokenGate]]]:
    """Build FastAPI apps guarded by a TokenGate talking to the IDP stub."""
    http_clients: list[httpx.AsyncClient] = []
    gates: list[TokenGate] = []

    def _build(
        events: AuthEvents | None = None,
        store: InMemoryCredentialStore | None = None,
        **overrides: Any,
    ) -> tuple[FastAPI, TokenGate]:
        settings = load_settings(
            idp_base_url="https://idp.local",
            app_id="app-1",
            app_secret="app-secret",
            app_base_url="https://app.local",
            **{"refresh_debounce": 20, **overrides},
        )
        http_client = httpx.AsyncClient(
            base_url="https://idp.local", transport=httpx.MockTransport(idp.handler)
        )
        http_clients.append(http_client)
        idp_client = IDPClient(
            base_url="https://idp.local",
            app_id="app-1",
            app_secret="app-secret",
            http_client=http_client,
        )
        gate = TokenGate(
            settings,
            events if events is not None else AuthEvents(),
            store=store if store is not None else InMemoryCredentialStore(),
            idp_client=idp_client,
            now=lambda: NOW,
        )
        gates.append(gate)

        app = FastAPI()
        gate.install(app)

        @app.get("/protected")
        async def protected(request: Request) -> dict[str, Any]:
            return {"sub": request.state.jwt["sub"], "access_token": request.state.access_token}

        return app, gate

    yield _build

    for gate in gates:
        gate.coordinator.close()
    for http_client in http_clients:
        await http_client.aclose()
