"""
Unit tests for the throttle stores.

The Redis store is exercised against a mocked ``redis.asyncio`` client so
serialization, expiry and lock naming can be asserted without a server.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from unittest.mock import AsyncMock, MagicMock

import pytest

from gxp_compliance.core.rate_limit import AttemptThrottle, ThrottlePolicy
from gxp_compliance.core.throttle_store import (
    InMemoryThrottleStore,
    RedisThrottleStore,
    ThrottleEntry,
)

MINUTE = 60 * 1000


async def _aiter(items: list[bytes]) -> AsyncIterator[bytes]:
    for item in items:
        yield item


def _make_redis() -> MagicMock:
    client = MagicMock()
    client.get = AsyncMock(return_value=None)
    client.set = AsyncMock()
    client.delete = AsyncMock()
    client.lock = MagicMock()
    return client


# --------------------------------------------------------------------------
# ThrottleEntry serialization
# --------------------------------------------------------------------------


def test_entry_json_is_compact() -> None:
    entry = ThrottleEntry(attempts=2, window_start_ms=1000, blocked_until_ms=None)
    assert entry.to_json() == '{"attempts":2,"window_start_ms":1000,"blocked_until_ms":null}'


def test_entry_from_json_accepts_bytes() -> None:
    entry = ThrottleEntry.from_json(b'{"attempts":3,"window_start_ms":5,"blocked_until_ms":9}')
    assert entry == ThrottleEntry(attempts=3, window_start_ms=5, blocked_until_ms=9)


# --------------------------------------------------------------------------
# InMemoryThrottleStore
# --------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_memory_store_put_get_delete() -> None:
    store = InMemoryThrottleStore()
    entry = ThrottleEntry(attempts=1, window_start_ms=0)

    await store.put("login:a", entry, ttl_ms=MINUTE)
    assert await store.get("login:a") == entry
    assert [key async for key, _ in store.entries()] == ["login:a"]

    await store.delete("login:a")
    await store.delete("login:a")
    assert await store.get("login:a") is None
    assert len(store) == 0


# --------------------------------------------------------------------------
# RedisThrottleStore
# --------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_redis_store_writes_prefixed_key_with_expiry() -> None:
    client = _make_redis()
    store = RedisThrottleStore(client, prefix="gxp-throttle")

    await store.put("login:a@example.com", ThrottleEntry(1, 1000), ttl_ms=MINUTE)

    client.set.assert_awaited_once_with(
        "gxp-throttle:login:a@example.com",
        '{"attempts":1,"window_start_ms":1000,"blocked_until_ms":null}',
        px=MINUTE,
    )


@pytest.mark.asyncio
async def test_redis_store_never_writes_non_positive_ttl() -> None:
    client = _make_redis()
    store = RedisThrottleStore(client)

    await store.put("login:a", ThrottleEntry(1, 0), ttl_ms=0)

    assert client.set.await_args.kwargs["px"] == 1


@pytest.mark.asyncio
async def test_redis_store_reads_entry() -> None:
    client = _make_redis()
    client.get.return_value = b'{"attempts":2,"window_start_ms":10,"blocked_until_ms":null}'
    store = RedisThrottleStore(client)

    entry = await store.get("signup:10.0.0.1")

    client.get.assert_awaited_once_with("throttle:signup:10.0.0.1")
    assert entry == ThrottleEntry(attempts=2, window_start_ms=10)


@pytest.mark.asyncio
async def test_redis_store_drops_corrupt_entry() -> None:
    client = _make_redis()
    client.get.return_value = b"not-json"
    store = RedisThrottleStore(client)

    assert await store.get("login:a") is None
    client.delete.assert_awaited_once_with("throttle:login:a")


@pytest.mark.asyncio
async def test_redis_store_iterates_entries_without_prefix() -> None:
    client = _make_redis()
    client.scan_iter = MagicMock(return_value=_aiter([b"throttle:login:a", b"throttle:login:b"]))
    client.get.side_effect = [
        b'{"attempts":1,"window_start_ms":0,"blocked_until_ms":null}',
        None,
    ]
    store = RedisThrottleStore(client)

    entries = [item async for item in store.entries()]

    client.scan_iter.assert_called_once_with(match="throttle:*")
    assert entries == [("login:a", ThrottleEntry(attempts=1, window_start_ms=0))]


@pytest.mark.asyncio
async def test_redis_store_lock_uses_per_key_redis_lock() -> None:
    client = _make_redis()
    store = RedisThrottleStore(client, prefix="throttle")

    async with store.lock("login:a"):
        pass

    client.lock.assert_called_once_with(
        "throttle-lock:login:a",
        timeout=RedisThrottleStore.LOCK_TIMEOUT_SECONDS,
        blocking_timeout=RedisThrottleStore.LOCK_TIMEOUT_SECONDS,
    )
    client.lock.return_value.__aenter__.assert_awaited_once()
    client.lock.return_value.__aexit__.assert_awaited_once()


# --------------------------------------------------------------------------
# Throttle over a self-expiring store
# --------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_throttle_sets_ttl_to_window_then_block_end(ms_clock) -> None:
    client = _make_redis()
    store = RedisThrottleStore(client)
    client.scan_iter = MagicMock()
    throttle = AttemptThrottle(
        ThrottlePolicy(max_attempts=2, window_ms=15 * MINUTE, block_duration_ms=30 * MINUTE),
        store,
        clock=ms_clock,
    )

    await throttle.record_attempt("a@example.com", "login")
    assert client.set.await_args.kwargs["px"] == 15 * MINUTE

    client.get.return_value = client.set.await_args.args[1].encode()
    ms_clock.advance(MINUTE)
    decision = await throttle.record_attempt("a@example.com", "login")

    assert decision.blocked is True
    assert client.set.await_args.kwargs["px"] == 30 * MINUTE
    # Redis evicts on its own; no SCAN sweep
    client.scan_iter.assert_not_called()
