"""Structured logging helpers that never emit raw credentials."""

from __future__ import annotations

from typing import Any

import structlog
from starlette.requests import Request

SENSITIVE_KEYS = {
    "access_token",
    "app_secret",
    "authorization",
    "client_secret",
    "code",
    "cookie",
    "refresh_token",
    "secret",
    "set-cookie",
    "token",
}
REDACTED = "***REDACTED***"
NO_TOKEN = "[No token]"

logger = structlog.get_logger(__name__)


def abbreviate_token(token: str | None) -> str:
    """Render a token as its first and last four characters plus its length."""
    if not token:
        return NO_TOKEN
    return f"{token[:4]}..[{len(token)}]..{token[-4:]}"


def _is_sensitive_key(key: str) -> bool:
    """Return True when key likely carries credential material."""
    normalized = key.lower().replace("-", "_")
    if normalized in SENSITIVE_KEYS:
        return True
    return "token" in normalized or "secret" in normalized


def redact_mapping(values: dict[str, Any]) -> dict[str, Any]:
    """Redact sensitive values from a dictionary."""
    redacted: dict[str, Any] = {}
    for key, value in values.items():
        if _is_sensitive_key(key):
            redacted[key] = REDACTED
        elif isinstance(value, dict):
            redacted[key] = redact_mapping(value)
        elif isinstance(value, list):
            redacted[key] = [
                redact_mapping(item) if isinstance(item, dict) else item for item in value
            ]
        else:
            redacted[key] = value
    return redacted


def log_request(status: str, token: str | None, request: Request) -> None:
    """Emit one debug event describing a gatekeeper decision for a request."""
    logger.debug(
        status,
        token=abbreviate_token(token),
        method=request.method,
        path=request.url.path,
    )
