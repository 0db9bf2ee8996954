"""
Keyed stores backing the attempt throttles.

``AttemptThrottle`` performs a read-modify-write on one entry per guarded
call. The store provides the per-key lock that makes that sequence atomic:
an ``asyncio.Lock`` for the process-local store, a Redis lock for the
shared store used when several service instances run side by side.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import asdict, dataclass
from typing import Protocol

import redis.asyncio as redis

from gxp_compliance.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ThrottleEntry:
    """Attempt counter for one ``action:identifier`` key."""

    attempts: int
    window_start_ms: int
    blocked_until_ms: int | None = None

    def to_json(self) -> str:
        return json.dumps(asdict(self), separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: str | bytes) -> ThrottleEntry:
        data = json.loads(raw)
        blocked_until = data.get("blocked_until_ms")
        return cls(
            attempts=int(data["attempts"]),
            window_start_ms=int(data["window_start_ms"]),
            blocked_until_ms=int(blocked_until) if blocked_until is not None else None,
        )


class ThrottleStore(Protocol):
    """Capability the throttle needs from its backing store.

    ``self_expiring`` stores drop entries on their own once the TTL passed to
    ``put`` elapses; the throttle skips its sweep for them.
    """

    self_expiring: bool

    async def get(self, key: str) -> ThrottleEntry | None: ...

    async def put(self, key: str, entry: ThrottleEntry, *, ttl_ms: int) -> None: ...

    async def delete(self, key: str) -> None: ...

    def entries(self) -> AsyncIterator[tuple[str, ThrottleEntry]]: ...

    def lock(self, key: str) -> AbstractAsyncContextManager[None]: ...


class InMemoryThrottleStore:
    """Process-local store. Suitable for tests and single-instance deployments."""

    self_expiring = False

    def __init__(self) -> None:
        self._entries: dict[str, ThrottleEntry] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> ThrottleEntry | None:
        return self._entries.get(key)

    async def put(self, key: str, entry: ThrottleEntry, *, ttl_ms: int) -> None:
        # Expiry is handled by the throttle's sweep
        self._entries[key] = entry

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    async def entries(self) -> AsyncIterator[tuple[str, ThrottleEntry]]:
        for key, entry in list(self._entries.items()):
            yield key, entry

    @asynccontextmanager
    async def lock(self, key: str) -> AsyncIterator[None]:
        async with self._lock:
            yield

    def __len__(self) -> int:
        return len(self._entries)


class RedisThrottleStore:
    """Shared store for multi-instance deployments.

    Entries are JSON strings under ``<prefix>:<key>`` with a millisecond
    expiry, so Redis evicts stale counters even if no sweep visits them.
    """

    self_expiring = True
    LOCK_TIMEOUT_SECONDS = 5.0

    def __init__(self, client: redis.Redis, *, prefix: str = "throttle") -> None:
        self._redis = client
        self._prefix = prefix

    def _entry_key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    async def get(self, key: str) -> ThrottleEntry | None:
        raw = await self._redis.get(self._entry_key(key))
        if raw is None:
            return None
        try:
            return ThrottleEntry.from_json(raw)
        except (ValueError, KeyError, TypeError):
            logger.warning("throttle_entry_corrupt", key=key)
            await self._redis.delete(self._entry_key(key))
            return None

    async def put(self, key: str, entry: ThrottleEntry, *, ttl_ms: int) -> None:
        await self._redis.set(self._entry_key(key), entry.to_json(), px=max(1, ttl_ms))

    async def delete(self, key: str) -> None:
        await self._redis.delete(self._entry_key(key))

    async def entries(self) -> AsyncIterator[tuple[str, ThrottleEntry]]:
        offset = len(self._prefix) + 1
        async for full_key in self._redis.scan_iter(match=f"{self._prefix}:*"):
            name = full_key.decode() if isinstance(full_key, bytes) else str(full_key)
            entry = await self.get(name[offset:])
            if entry is not None:
                yield name[offset:], entry

    @asynccontextmanager
    async def lock(self, key: str) -> AsyncIterator[None]:
        async with self._redis.lock(
            f"{self._prefix}-lock:{key}",
            timeout=self.LOCK_TIMEOUT_SECONDS,
            blocking_timeout=self.LOCK_TIMEOUT_SECONDS,
        ):
            yield
