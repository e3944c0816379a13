"""Token gatekeeping and coordinated refresh for FastAPI services."""

from tokengate.config import GatewaySettings, configure_structlog, get_settings, load_settings
from tokengate.coordinator import RefreshCoordinator, RefreshFailed, RefreshState, RefreshSucceeded
from tokengate.events import AuthEvents
from tokengate.exceptions import (
    ConfigurationError,
    CredentialStoreError,
    IDPError,
    NoRefreshTokenFound,
    RefreshExchangeFailure,
    SignatureUnavailable,
    TokenExpired,
    TokenGateError,
    TokenInvalid,
)
from tokengate.gate import TokenGate, build_credential_store
from tokengate.gatekeeper import Defer, Gatekeeper, Grant, Reject
from tokengate.middleware import TokenGateMiddleware
from tokengate.store import InMemoryCredentialStore, RedisCredentialStore

__all__ = [
    "AuthEvents",
    "ConfigurationError",
    "CredentialStoreError",
    "Defer",
    "GatewaySettings",
    "Gatekeeper",
    "Grant",
    "IDPError",
    "InMemoryCredentialStore",
    "NoRefreshTokenFound",
    "RedisCredentialStore",
    "RefreshCoordinator",
    "RefreshExchangeFailure",
    "RefreshFailed",
    "RefreshState",
    "RefreshSucceeded",
    "Reject",
    "SignatureUnavailable",
    "TokenExpired",
    "TokenGate",
    "TokenGateError",
    "TokenGateMiddleware",
    "TokenInvalid",
    "build_credential_store",
    "configure_structlog",
    "get_settings",
    "load_settings",
]
