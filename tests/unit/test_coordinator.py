"""Unit tests for debounced, deduplicated refresh coordination."""

from __future__ import annotations

import asyncio

import pytest

from tokengate.coordinator import (
    RefreshCoordinator,
    RefreshFailed,
    RefreshState,
    RefreshSucceeded,
)
from tokengate.exceptions import (
    CredentialStoreError,
    IDPUnavailableError,
    NoRefreshTokenFound,
    RefreshExchangeFailure,
)
from tokengate.store import InMemoryCredentialStore
from tokengate.types import RefreshTokenResponse


class _ExchangerStub:
    """Refresh exchanger stub counting upstream calls."""

    def __init__(self, response: RefreshTokenResponse | None = None) -> None:
        self.calls: list[str] = []
        self.response = response or {"access_token": "new-access", "refresh_token": "new-refresh"}
        self.error: Exception | None = None
        self.release: asyncio.Event | None = None

    async def exchange_refresh_token(self, refresh_token: str) -> RefreshTokenResponse:
        """Record the call and return the configured response."""
        self.calls.append(refresh_token)
        if self.release is not None:
            await self.release.wait()
        if self.error is not None:
            raise self.error
        return self.response


class _FailingStore(InMemoryCredentialStore):
    """Store whose lookups fail as if the backend were down."""

    async def get_refresh_token(self, access_token: str) -> str | None:
        raise CredentialStoreError("Credential store unavailable.")


async def _store_with(access_token: str = "old-access", refresh_token: str = "old-refresh"):
    store = InMemoryCredentialStore()
    await store.put(access_token, refresh_token, expires_at=10_000_000_000.0)
    return store


async def test_concurrent_requests_share_one_exchange_in_arrival_order() -> None:
    """Every waiter gets the single exchange's outcome, resolved FIFO."""
    store = await _store_with()
    exchanger = _ExchangerStub()
    coordinator = RefreshCoordinator(store, exchanger, debounce_ms=20, linger_ms=0)
    resolved_order: list[int] = []

    waiters = []
    for index in range(4):
        waiter = coordinator.submit("old-access")
        waiter.add_done_callback(lambda _, index=index: resolved_order.append(index))
        waiters.append(waiter)

    assert coordinator.state_of("old-access") is RefreshState.QUEUED
    assert coordinator.queued_count("old-access") == 4
    outcomes = await asyncio.gather(*waiters)

    assert exchanger.calls == ["old-refresh"]
    assert resolved_order == [0, 1, 2, 3]
    assert all(outcome == outcomes[0] for outcome in outcomes)
    assert outcomes[0] == RefreshSucceeded(access_token="new-access", refresh_token="new-refresh")
    assert await store.get_refresh_token("new-access") == "new-refresh"


async def test_same_key_arrivals_rearm_debounce_timer() -> None:
    """Each new arrival while queued postpones the exchange."""
    store = await _store_with()
    exchanger = _ExchangerStub()
    coordinator = RefreshCoordinator(store, exchanger, debounce_ms=100, linger_ms=0)

    first = coordinator.submit("old-access")
    await asyncio.sleep(0.06)
    second = coordinator.submit("old-access")
    await asyncio.sleep(0.06)

    assert coordinator.state_of("old-access") is RefreshState.QUEUED
    assert exchanger.calls == []

    assert await first == await second
    assert len(exchanger.calls) == 1


async def test_arrival_during_exchange_joins_in_flight_refresh() -> None:
    store = await _store_with()
    exchanger = _ExchangerStub()
    exchanger.release = asyncio.Event()
    coordinator = RefreshCoordinator(store, exchanger, debounce_ms=10, linger_ms=0)

    first = coordinator.submit("old-access")
    await asyncio.sleep(0.05)
    assert coordinator.state_of("old-access") is RefreshState.IN_FLIGHT

    late = coordinator.submit("old-access")
    exchanger.release.set()

    assert await first == await late
    assert len(exchanger.calls) == 1


async def test_five_requests_ten_ms_apart_trigger_single_exchange() -> None:
    """Requests spread inside the debounce window all get the same new token."""
    store = await _store_with()
    exchanger = _ExchangerStub()
    coordinator = RefreshCoordinator(store, exchanger, debounce_ms=250, linger_ms=250)

    async def _request(delay: float):
        await asyncio.sleep(delay)
        return await coordinator.refresh("old-access")

    outcomes = await asyncio.gather(*(_request(index * 0.01) for index in range(5)))

    assert len(exchanger.calls) == 1
    assert {outcome.access_token for outcome in outcomes} == {"new-access"}
    coordinator.close()


async def test_different_keys_refresh_independently() -> None:
    store = await _store_with()
    await store.put("other-access", "other-refresh", expires_at=10_000_000_000.0)
    exchanger = _ExchangerStub()
    coordinator = RefreshCoordinator(store, exchanger, debounce_ms=10, linger_ms=0)

    await asyncio.gather(coordinator.refresh("old-access"), coordinator.refresh("other-access"))

    assert sorted(exchanger.calls) == ["old-refresh", "other-refresh"]


async def test_exchange_without_access_token_fails_and_drops_record() -> None:
    """A refresh that yields no token removes the old record and fails every waiter."""
    store = await _store_with()
    exchanger = _ExchangerStub(response={"access_token": None, "refresh_token": None})
    coordinator = RefreshCoordinator(store, exchanger, debounce_ms=10, linger_ms=250)

    outcomes = await asyncio.gather(
        coordinator.refresh("old-access"), coordinator.refresh("old-access")
    )

    assert all(isinstance(outcome, RefreshFailed) for outcome in outcomes)
    assert isinstance(outcomes[0].error, RefreshExchangeFailure)
    assert await store.get_refresh_token("old-access") is None
    assert coordinator.state_of("old-access") is None


async def test_idp_error_becomes_refresh_exchange_failure() -> None:
    store = await _store_with()
    exchanger = _ExchangerStub()
    exchanger.error = IDPUnavailableError("Identity provider unavailable.")
    coordinator = RefreshCoordinator(store, exchanger, debounce_ms=10, linger_ms=0)

    outcome = await coordinator.refresh("old-access")

    assert isinstance(outcome, RefreshFailed)
    assert isinstance(outcome.error, RefreshExchangeFailure)
    assert isinstance(outcome.error.__cause__, IDPUnavailableError)


async def test_unknown_token_without_hint_reports_no_refresh_token() -> None:
    exchanger = _ExchangerStub()
    coordinator = RefreshCoordinator(InMemoryCredentialStore(), exchanger, debounce_ms=10)

    outcome = await coordinator.refresh("unknown-access")

    assert isinstance(outcome, RefreshFailed)
    assert isinstance(outcome.error, NoRefreshTokenFound)
    assert exchanger.calls == []


async def test_refresh_token_hint_used_when_store_has_no_record() -> None:
    exchanger = _ExchangerStub()
    coordinator = RefreshCoordinator(InMemoryCredentialStore(), exchanger, debounce_ms=10)

    outcome = await coordinator.refresh("cookie-access", refresh_token_hint="cookie-refresh")

    assert isinstance(outcome, RefreshSucceeded)
    assert exchanger.calls == ["cookie-refresh"]
    coordinator.close()


async def test_store_lookup_failure_falls_back_to_hint() -> None:
    exchanger = _ExchangerStub()
    coordinator = RefreshCoordinator(_FailingStore(), exchanger, debounce_ms=10, linger_ms=0)

    outcome = await coordinator.refresh("old-access", refresh_token_hint="cookie-refresh")

    assert isinstance(outcome, RefreshSucceeded)
    assert exchanger.calls == ["cookie-refresh"]


async def test_resolved_entry_lingers_then_removes_old_record() -> None:
    """Late arrivals reuse the outcome until the linger window closes."""
    store = await _store_with()
    exchanger = _ExchangerStub()
    coordinator = RefreshCoordinator(store, exchanger, debounce_ms=10, linger_ms=60)

    first = await coordinator.refresh("old-access")
    assert coordinator.state_of("old-access") is RefreshState.RESOLVED
    assert await store.get_refresh_token("old-access") == "old-refresh"

    late = coordinator.submit("old-access")
    assert late.done()
    assert late.result() == first

    await asyncio.sleep(0.1)
    assert coordinator.state_of("old-access") is None
    assert await store.get_refresh_token("old-access") is None
    assert await store.get_refresh_token("new-access") == "new-refresh"
    assert len(exchanger.calls) == 1


async def test_zero_linger_removes_entry_and_old_record_immediately() -> None:
    store = await _store_with()
    coordinator = RefreshCoordinator(store, _ExchangerStub(), debounce_ms=10, linger_ms=0)

    await coordinator.refresh("old-access")

    assert coordinator.state_of("old-access") is None
    assert await store.get_refresh_token("old-access") is None


async def test_close_fails_pending_waiters() -> None:
    store = await _store_with()
    exchanger = _ExchangerStub()
    coordinator = RefreshCoordinator(store, exchanger, debounce_ms=1000)

    waiter = coordinator.submit("old-access")
    coordinator.close()

    outcome = await waiter
    assert isinstance(outcome, RefreshFailed)
    assert coordinator.state_of("old-access") is None
    assert exchanger.calls == []


def test_record_expiry_uses_injected_clock() -> None:
    coordinator = RefreshCoordinator(
        InMemoryCredentialStore(),
        _ExchangerStub(),
        credential_ttl_seconds=60,
        now=lambda: 1000.0,
    )

    assert coordinator.record_expiry() == pytest.approx(1060.0)
