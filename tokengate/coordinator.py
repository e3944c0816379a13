"""Refresh coordination for expired access tokens.

Every request that presents the same expired access token joins one queue
entry keyed by that token. A debounce timer, re-armed on each arrival, decides
when the single upstream refresh exchange runs; all queued requests then
receive the same outcome in arrival order.

Per-key lifecycle::

    (no entry) -> QUEUED -> IN_FLIGHT -> RESOLVED (lingers) -> (no entry)
                                      \\-> failed           -> (no entry)

Entries are created and mutated synchronously inside ``submit`` so two
interleaved requests can never both observe "no entry" and start two
exchanges.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol

import structlog

from tokengate.exceptions import (
    CredentialStoreError,
    IDPError,
    NoRefreshTokenFound,
    RefreshExchangeFailure,
)
from tokengate.logging import abbreviate_token
from tokengate.store import CredentialStore
from tokengate.types import RefreshTokenResponse

logger = structlog.get_logger(__name__)


class RefreshExchanger(Protocol):
    """Upstream call that trades a refresh token for a new token pair."""

    async def exchange_refresh_token(self, refresh_token: str) -> RefreshTokenResponse: ...


class RefreshState(StrEnum):
    QUEUED = "queued"
    IN_FLIGHT = "in_flight"
    RESOLVED = "resolved"


@dataclass(frozen=True)
class RefreshSucceeded:
    access_token: str
    refresh_token: str


@dataclass(frozen=True)
class RefreshFailed:
    error: RefreshExchangeFailure | NoRefreshTokenFound


RefreshOutcome = RefreshSucceeded | RefreshFailed


@dataclass
class RefreshQueueEntry:
    """Coordination state for one expired access token."""

    state: RefreshState = RefreshState.QUEUED
    queue: list[asyncio.Future[RefreshOutcome]] = field(default_factory=list)
    timer: asyncio.TimerHandle | None = None
    task: asyncio.Task[None] | None = None
    fallback_refresh_token: str | None = None
    outcome: RefreshOutcome | None = None


class RefreshCoordinator:
    """Deduplicate, debounce, and replay refreshes for expired access tokens."""

    def __init__(
        self,
        store: CredentialStore,
        exchanger: RefreshExchanger,
        debounce_ms: int = 250,
        linger_ms: int = 250,
        credential_ttl_seconds: int = 604800,
        now: Callable[[], float] | None = None,
    ) -> None:
        self._store = store
        self._exchanger = exchanger
        self._debounce_seconds = debounce_ms / 1000
        self._linger_seconds = linger_ms / 1000
        self._credential_ttl_seconds = credential_ttl_seconds
        self._now = now or time.time
        self._entries: dict[str, RefreshQueueEntry] = {}
        self._background: set[asyncio.Task[None]] = set()

    def state_of(self, access_token: str) -> RefreshState | None:
        """Return the coordination state for a key, or None when idle."""
        entry = self._entries.get(access_token)
        return entry.state if entry is not None else None

    def queued_count(self, access_token: str) -> int:
        entry = self._entries.get(access_token)
        return len(entry.queue) if entry is not None else 0

    def submit(
        self, access_token: str, refresh_token_hint: str | None = None
    ) -> asyncio.Future[RefreshOutcome]:
        """Queue a request behind the refresh for access_token.

        ``refresh_token_hint`` (e.g. from the refresh cookie) is only used when
        the credential store has no record for the key.
        """
        loop = asyncio.get_running_loop()
        waiter: asyncio.Future[RefreshOutcome] = loop.create_future()

        entry = self._entries.get(access_token)
        if entry is None:
            entry = RefreshQueueEntry(fallback_refresh_token=refresh_token_hint)
            self._entries[access_token] = entry
            logger.debug("refresh_queued", token=abbreviate_token(access_token))
        elif entry.fallback_refresh_token is None:
            entry.fallback_refresh_token = refresh_token_hint

        if entry.state is RefreshState.RESOLVED and entry.outcome is not None:
            # Old token seen again inside the linger window: reuse the outcome.
            waiter.set_result(entry.outcome)
            return waiter

        entry.queue.append(waiter)
        if entry.state is RefreshState.QUEUED:
            if entry.timer is not None:
                entry.timer.cancel()
            entry.timer = loop.call_later(self._debounce_seconds, self._fire, access_token)
        return waiter

    async def refresh(
        self, access_token: str, refresh_token_hint: str | None = None
    ) -> RefreshOutcome:
        """Wait for the coordinated refresh outcome for access_token."""
        return await self.submit(access_token, refresh_token_hint)

    def record_expiry(self) -> float:
        """Expiry instant for a freshly issued credential record."""
        return self._now() + self._credential_ttl_seconds

    def close(self) -> None:
        """Cancel timers and exchanges, failing every request still waiting."""
        for access_token, entry in list(self._entries.items()):
            if entry.timer is not None:
                entry.timer.cancel()
            if entry.task is not None and not entry.task.done():
                entry.task.cancel()
            self._resolve_waiters(
                entry,
                RefreshFailed(RefreshExchangeFailure("Token refresh was cancelled.")),
            )
            del self._entries[access_token]
        for task in list(self._background):
            task.cancel()

    def _fire(self, access_token: str) -> None:
        """Debounce timer callback: move QUEUED to IN_FLIGHT and start the exchange."""
        entry = self._entries.get(access_token)
        if entry is None or entry.state is not RefreshState.QUEUED:
            return
        entry.timer = None
        entry.state = RefreshState.IN_FLIGHT
        logger.debug(
            "refresh_started",
            token=abbreviate_token(access_token),
            queued=len(entry.queue),
        )
        entry.task = asyncio.get_running_loop().create_task(self._run(access_token, entry))

    async def _run(self, access_token: str, entry: RefreshQueueEntry) -> None:
        try:
            outcome = await self._exchange(access_token, entry)
        except Exception:
            logger.exception("refresh_crashed", token=abbreviate_token(access_token))
            outcome = RefreshFailed(RefreshExchangeFailure("Token refresh failed unexpectedly."))

        if isinstance(outcome, RefreshFailed):
            await self._discard_record(access_token)
            self._drop_entry(access_token, entry)
            logger.info(
                "refresh_failed",
                token=abbreviate_token(access_token),
                code=outcome.error.code,
                detail=outcome.error.detail,
            )
            self._resolve_waiters(entry, outcome)
            return

        entry.outcome = outcome
        if self._linger_seconds > 0:
            entry.state = RefreshState.RESOLVED
            asyncio.get_running_loop().call_later(
                self._linger_seconds, self._expire_entry, access_token, entry
            )
        else:
            await self._discard_record(access_token)
            self._drop_entry(access_token, entry)
        logger.info(
            "refresh_succeeded",
            token=abbreviate_token(access_token),
            new_token=abbreviate_token(outcome.access_token),
            replayed=len(entry.queue),
        )
        self._resolve_waiters(entry, outcome)

    async def _exchange(self, access_token: str, entry: RefreshQueueEntry) -> RefreshOutcome:
        """Look up the refresh token and perform the single upstream exchange."""
        try:
            refresh_token = await self._store.get_refresh_token(access_token)
        except CredentialStoreError as exc:
            logger.warning("credential_lookup_failed", detail=exc.detail)
            refresh_token = None
        refresh_token = refresh_token or entry.fallback_refresh_token
        if not refresh_token:
            return RefreshFailed(NoRefreshTokenFound("No refresh token found for access token."))

        try:
            response = await self._exchanger.exchange_refresh_token(refresh_token)
        except IDPError as exc:
            failure = RefreshExchangeFailure(f"Failed to refresh token with IDP: {exc.detail}")
            failure.__cause__ = exc
            return RefreshFailed(failure)

        new_access_token = response.get("access_token")
        new_refresh_token = response.get("refresh_token")
        if not new_access_token or not new_refresh_token:
            return RefreshFailed(
                RefreshExchangeFailure("Identity provider returned no tokens on refresh.")
            )

        try:
            await self._store.put(new_access_token, new_refresh_token, self.record_expiry())
        except CredentialStoreError as exc:
            logger.warning(
                "credential_store_failed",
                token=abbreviate_token(new_access_token),
                detail=exc.detail,
            )
        return RefreshSucceeded(access_token=new_access_token, refresh_token=new_refresh_token)

    def _expire_entry(self, access_token: str, entry: RefreshQueueEntry) -> None:
        """Linger timer callback: forget the entry and the replaced record."""
        if not self._drop_entry(access_token, entry):
            return
        self._spawn(self._discard_record(access_token))

    def _drop_entry(self, access_token: str, entry: RefreshQueueEntry) -> bool:
        if self._entries.get(access_token) is not entry:
            return False
        del self._entries[access_token]
        return True

    async def _discard_record(self, access_token: str) -> None:
        try:
            await self._store.remove(access_token)
        except CredentialStoreError as exc:
            logger.warning(
                "credential_remove_failed",
                token=abbreviate_token(access_token),
                detail=exc.detail,
            )

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    @staticmethod
    def _resolve_waiters(entry: RefreshQueueEntry, outcome: RefreshOutcome) -> None:
        """Hand the outcome to every waiter in arrival order."""
        waiters, entry.queue = entry.queue, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(outcome)
