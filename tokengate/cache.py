"""Signature cache holding the shared JWT verification secret."""

from __future__ import annotations

import asyncio
from typing import Protocol

import structlog

from tokengate.exceptions import IDPError, SignatureUnavailable

logger = structlog.get_logger(__name__)


class SignatureSource(Protocol):
    """Anything able to fetch the verification secret from the IDP."""

    async def fetch_signature(self) -> str: ...


class SignatureCache:
    """Single mutable slot for the verification secret, fetched on demand."""

    def __init__(self, source: SignatureSource) -> None:
        """Create an empty cache backed by the given signature source."""
        self._source = source
        self._signature: str | None = None
        self._lock = asyncio.Lock()

    @property
    def signature(self) -> str | None:
        """Return the cached secret, or None before the first successful fetch."""
        return self._signature

    def has_signature(self) -> bool:
        """Return True once a secret has been cached."""
        return self._signature is not None

    def set(self, signature: str) -> None:
        """Store a secret obtained elsewhere (e.g. at startup)."""
        self._signature = signature

    async def get_signature(self, force_refresh: bool = False) -> str:
        """Return the cached secret or fetch it once, coalescing concurrent callers."""
        if not force_refresh and self._signature is not None:
            return self._signature

        async with self._lock:
            if not force_refresh and self._signature is not None:
                return self._signature
            try:
                signature = await self._source.fetch_signature()
            except IDPError as exc:
                logger.warning("signature_fetch_failed", code=exc.code, detail=exc.detail)
                raise SignatureUnavailable(
                    "Unable to obtain JWT signature from identity provider."
                ) from exc
            self._signature = signature
            logger.debug("signature_fetched")
            return signature
