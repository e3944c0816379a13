"""Gateway settings and logging configuration."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from functools import lru_cache
from typing import Any

import structlog
from pydantic import Field, SecretStr, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from tokengate.exceptions import ConfigurationError

_LOG_CONTEXT: dict[str, str] = {"service": "tokengate"}


class GatewaySettings(BaseSettings):
    """Authentication gateway settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    idp_base_url: str
    app_id: str
    app_secret: SecretStr
    app_base_url: str

    refresh_debounce: int = Field(default=250, ge=0, description="Milliseconds.")
    pre_refresh_buffer: int = Field(default=250, ge=0, description="Milliseconds.")
    refresh_linger: int = Field(default=250, ge=0, description="Milliseconds.")
    auth_debug: bool = False

    idp_token_url: str = "/auth/token"
    idp_auth_url: str = "/auth/authorize"
    idp_signature_url: str = "/api/signature"
    idp_profile_url: str = "/api/profile"
    idp_revoke_url: str = "/auth/revoke"
    idp_timeout_seconds: float = Field(default=5.0, gt=0)
    scopes: str = "read"

    credential_ttl_seconds: int = Field(default=604800, ge=1)
    sweep_interval_seconds: int = Field(default=86400, ge=1)
    redis_url: str | None = None
    service: str = "tokengate"

    @field_validator("idp_base_url", "app_base_url")
    @classmethod
    def validate_http_url(cls, value: str) -> str:
        """Require absolute http(s) base URLs without a trailing slash."""
        if not value.startswith(("http://", "https://")):
            raise ValueError("must start with 'http://' or 'https://'.")
        return value.rstrip("/")

    @field_validator("redis_url")
    @classmethod
    def validate_redis_url(cls, value: str | None) -> str | None:
        """Ensure the Redis URL uses a supported scheme."""
        if value is not None and not value.startswith(("redis://", "rediss://")):
            raise ValueError("redis_url must start with 'redis://' or 'rediss://'.")
        return value


def load_settings(**overrides: Any) -> GatewaySettings:
    """Build settings, reporting missing or invalid fields as ConfigurationError."""
    try:
        return GatewaySettings(**overrides)
    except ValidationError as exc:
        fields = sorted({".".join(str(part) for part in error["loc"]) for error in exc.errors()})
        raise ConfigurationError(
            "Invalid tokengate configuration. Check fields: " + ", ".join(fields)
        ) from exc


def _standard_log_fields(_: Any, __: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Inject required structured logging fields."""
    context_vars = structlog.contextvars.get_contextvars()
    event_dict.setdefault("correlation_id", str(context_vars.get("correlation_id", "unknown")))
    event_dict.setdefault("service", _LOG_CONTEXT["service"])
    event_dict.setdefault("timestamp", datetime.now(UTC).isoformat())
    return event_dict


def configure_structlog(settings: GatewaySettings) -> None:
    """Configure structlog for JSON output; AUTH_DEBUG enables debug events."""
    _LOG_CONTEXT["service"] = settings.service

    log_level = logging.DEBUG if settings.auth_debug else logging.INFO
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            _standard_log_fields,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


@lru_cache
def get_settings() -> GatewaySettings:
    """Load and cache gateway settings from environment variables."""
    return load_settings()
