"""Credential store mapping access tokens to their refresh tokens."""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Callable
from dataclasses import dataclass
from hashlib import sha256
from typing import Protocol

import structlog
from redis.asyncio.client import Redis
from redis.exceptions import RedisError

from tokengate.exceptions import CredentialStoreError
from tokengate.logging import abbreviate_token

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CredentialRecord:
    """Refresh token and record expiry (seconds since epoch) for one access token."""

    access_token: str
    refresh_token: str
    expires_at: float


class CredentialStore(Protocol):
    """Storage contract shared by every credential store backing."""

    async def put(self, access_token: str, refresh_token: str, expires_at: float) -> None: ...

    async def get_refresh_token(self, access_token: str) -> str | None: ...

    async def remove(self, access_token: str) -> None: ...

    async def sweep(self, now: float) -> int: ...


class InMemoryCredentialStore:
    """In-process credential store; one record per access token."""

    def __init__(self) -> None:
        self._records: dict[str, CredentialRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    async def put(self, access_token: str, refresh_token: str, expires_at: float) -> None:
        """Insert or overwrite the record for access_token."""
        self._records[access_token] = CredentialRecord(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
        )

    async def get_refresh_token(self, access_token: str) -> str | None:
        record = self._records.get(access_token)
        return record.refresh_token if record is not None else None

    async def remove(self, access_token: str) -> None:
        self._records.pop(access_token, None)

    async def sweep(self, now: float) -> int:
        """Delete every record whose expiry is before now."""
        expired = [key for key, record in self._records.items() if record.expires_at < now]
        for key in expired:
            del self._records[key]
        return len(expired)


class RedisCredentialStore:
    """Redis-backed credential store that survives process restarts.

    Records are JSON values keyed by the SHA-256 of the access token; a sorted
    set indexed by expiry lets ``sweep`` find stale records without a scan.
    """

    def __init__(self, redis_client: Redis, key_prefix: str = "tokengate") -> None:
        self._redis = redis_client
        self._key_prefix = key_prefix

    async def put(self, access_token: str, refresh_token: str, expires_at: float) -> None:
        """Insert or overwrite the record for access_token."""
        token_hash = self._hash_token(access_token)
        try:
            await self._redis.set(
                self._record_key(token_hash),
                json.dumps({"refresh_token": refresh_token, "expires_at": expires_at}),
            )
            await self._redis.zadd(self._expiry_key(), {token_hash: expires_at})
        except RedisError as exc:
            raise CredentialStoreError("Credential store unavailable.") from exc

    async def get_refresh_token(self, access_token: str) -> str | None:
        """Return the stored refresh token, treating corrupt records as absent."""
        try:
            raw_record = await self._redis.get(self._record_key(self._hash_token(access_token)))
        except RedisError as exc:
            raise CredentialStoreError("Credential store unavailable.") from exc
        if raw_record is None:
            return None
        try:
            record = json.loads(raw_record)
        except json.JSONDecodeError:
            logger.warning("credential_record_corrupt", token=abbreviate_token(access_token))
            return None
        refresh_token = record.get("refresh_token") if isinstance(record, dict) else None
        return refresh_token if isinstance(refresh_token, str) and refresh_token else None

    async def remove(self, access_token: str) -> None:
        token_hash = self._hash_token(access_token)
        try:
            await self._redis.delete(self._record_key(token_hash))
            await self._redis.zrem(self._expiry_key(), token_hash)
        except RedisError as exc:
            raise CredentialStoreError("Credential store unavailable.") from exc

    async def sweep(self, now: float) -> int:
        """Delete every record whose expiry is before now."""
        try:
            expired = await self._redis.zrangebyscore(self._expiry_key(), "-inf", f"({now}")
            if not expired:
                return 0
            hashes = [item.decode("utf-8") if isinstance(item, bytes) else item for item in expired]
            await self._redis.delete(*(self._record_key(token_hash) for token_hash in hashes))
            await self._redis.zrem(self._expiry_key(), *hashes)
        except RedisError as exc:
            raise CredentialStoreError("Credential store unavailable.") from exc
        return len(hashes)

    def _record_key(self, token_hash: str) -> str:
        """Build Redis key for a credential record."""
        return f"{self._key_prefix}:credential:{token_hash}"

    def _expiry_key(self) -> str:
        """Build Redis key for the expiry index."""
        return f"{self._key_prefix}:credential-expiry"

    @staticmethod
    def _hash_token(raw_token: str) -> str:
        """Hash token with SHA-256 so raw access tokens never become Redis keys."""
        return sha256(raw_token.encode("utf-8")).hexdigest()


class CredentialSweeper:
    """Run ``store.sweep`` on a fixed interval, independent of request traffic."""

    def __init__(
        self,
        store: CredentialStore,
        interval_seconds: float,
        now: Callable[[], float] | None = None,
    ) -> None:
        self._store = store
        self._interval_seconds = interval_seconds
        self._now = now or time.time
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the background sweep loop on the running event loop."""
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        """Cancel the sweep loop and wait for it to finish."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def sweep_once(self) -> int:
        """Sweep expired records now and return how many were removed."""
        removed = await self._store.sweep(self._now())
        logger.info("credentials_swept", removed=removed)
        return removed

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval_seconds)
            try:
                await self.sweep_once()
            except CredentialStoreError as exc:
                logger.warning("credential_sweep_failed", detail=exc.detail)
