"""
Attempt throttling for authentication-adjacent actions.

Windows are anchored at the first attempt rather than sliding.

Each ``action:identifier`` key moves through three states:

* unblocked: no entry, or attempts below the limit inside the window
* counting: attempts accumulating inside the window
* blocked: attempts reached the limit; ``blocked_until`` is set

A key returns to unblocked once its block elapses or, with no active
block, once its window expires. Decisions are returned as data so callers
can render a countdown instead of handling an exception.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from functools import lru_cache

import redis.asyncio as redis

from gxp_compliance.core.config import get_settings
from gxp_compliance.core.logging import get_logger
from gxp_compliance.core.throttle_store import (
    InMemoryThrottleStore,
    RedisThrottleStore,
    ThrottleEntry,
    ThrottleStore,
)

logger = get_logger(__name__)

LOGIN_ACTION = "login"
SIGNUP_ACTION = "signup"
RESEND_VERIFICATION_ACTION = "resend-verification"


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class ThrottlePolicy:
    """Limits for one family of guarded actions."""

    max_attempts: int
    window_ms: int
    block_duration_ms: int

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.window_ms <= 0 or self.block_duration_ms <= 0:
            raise ValueError("window_ms and block_duration_ms must be positive")


@dataclass(frozen=True)
class ThrottleDecision:
    """Outcome of recording an attempt."""

    blocked: bool
    attempts_remaining: int
    reset_time_ms: int
    blocked_until_ms: int | None = None


class AttemptThrottle:
    """Counts attempts per ``action:identifier`` and blocks abusive callers."""

    def __init__(
        self,
        policy: ThrottlePolicy,
        store: ThrottleStore | None = None,
        *,
        clock: Callable[[], int] | None = None,
    ) -> None:
        self.policy = policy
        self._store: ThrottleStore = store if store is not None else InMemoryThrottleStore()
        self._clock = clock or _now_ms

    @staticmethod
    def _key(identifier: str, action: str) -> str:
        return f"{action}:{identifier}"

    def _is_expired(self, entry: ThrottleEntry, now: int) -> bool:
        if entry.blocked_until_ms is not None:
            return entry.blocked_until_ms <= now
        return now - entry.window_start_ms > self.policy.window_ms

    def _is_actively_blocked(self, entry: ThrottleEntry, now: int) -> bool:
        return entry.blocked_until_ms is not None and entry.blocked_until_ms > now

    def _ttl_ms(self, entry: ThrottleEntry, now: int) -> int:
        expires_at = entry.window_start_ms + self.policy.window_ms
        if entry.blocked_until_ms is not None:
            expires_at = max(expires_at, entry.blocked_until_ms)
        return expires_at - now

    async def _sweep(self) -> None:
        """Evict entries whose block elapsed or whose window went stale."""
        if self._store.self_expiring:
            return
        now = self._clock()
        stale = [key async for key, entry in self._store.entries() if self._is_expired(entry, now)]
        for key in stale:
            async with self._store.lock(key):
                entry = await self._store.get(key)
                if entry is not None and self._is_expired(entry, now):
                    await self._store.delete(key)

    async def is_blocked(self, identifier: str, action: str) -> bool:
        """Return whether the caller must be turned away right now."""
        await self._sweep()
        key = self._key(identifier, action)
        async with self._store.lock(key):
            entry = await self._store.get(key)
            if entry is None:
                return False

            now = self._clock()
            if self._is_actively_blocked(entry, now):
                return True

            if now - entry.window_start_ms > self.policy.window_ms:
                await self._store.delete(key)
                return False

            return entry.attempts >= self.policy.max_attempts

    async def record_attempt(self, identifier: str, action: str) -> ThrottleDecision:
        """Count one attempt and return the updated decision."""
        await self._sweep()
        key = self._key(identifier, action)
        async with self._store.lock(key):
            now = self._clock()
            entry = await self._store.get(key)

            if entry is None or (
                not self._is_actively_blocked(entry, now)
                and (
                    now - entry.window_start_ms > self.policy.window_ms
                    or entry.blocked_until_ms is not None
                )
            ):
                entry = ThrottleEntry(attempts=1, window_start_ms=now)
            else:
                entry = ThrottleEntry(
                    attempts=entry.attempts + 1,
                    window_start_ms=entry.window_start_ms,
                    blocked_until_ms=entry.blocked_until_ms,
                )

            if entry.attempts >= self.policy.max_attempts:
                entry = ThrottleEntry(
                    attempts=entry.attempts,
                    window_start_ms=entry.window_start_ms,
                    blocked_until_ms=now + self.policy.block_duration_ms,
                )
                logger.info(
                    "throttle_blocked",
                    action=action,
                    attempts=entry.attempts,
                    blocked_until_ms=entry.blocked_until_ms,
                )

            await self._store.put(key, entry, ttl_ms=self._ttl_ms(entry, now))

        return ThrottleDecision(
            blocked=entry.attempts >= self.policy.max_attempts,
            attempts_remaining=max(0, self.policy.max_attempts - entry.attempts),
            reset_time_ms=entry.window_start_ms + self.policy.window_ms,
            blocked_until_ms=entry.blocked_until_ms,
        )

    async def reset(self, identifier: str, action: str) -> None:
        """Forget all attempts for the key, e.g. after a successful login."""
        await self._sweep()
        key = self._key(identifier, action)
        async with self._store.lock(key):
            await self._store.delete(key)

    async def _read(self, identifier: str, action: str) -> ThrottleEntry | None:
        await self._sweep()
        key = self._key(identifier, action)
        async with self._store.lock(key):
            return await self._store.get(key)

    async def get_remaining_time(self, identifier: str, action: str) -> int:
        """Milliseconds until the block lifts; 0 when not blocked."""
        entry = await self._read(identifier, action)
        if entry is None or entry.blocked_until_ms is None:
            return 0
        return max(0, entry.blocked_until_ms - self._clock())

    async def get_attempt_count(self, identifier: str, action: str) -> int:
        entry = await self._read(identifier, action)
        return entry.attempts if entry is not None else 0


def format_remaining_time(ms: int) -> str:
    """Render a wait time for a countdown message, e.g. ``"2 minutes 5 seconds"``."""
    if ms <= 0:
        return "0 seconds"

    minutes = ms // 60_000
    seconds = (ms % 60_000) // 1000
    seconds_text = f"{seconds} second{'s' if seconds != 1 else ''}"
    if minutes > 0:
        return f"{minutes} minute{'s' if minutes != 1 else ''} {seconds_text}"
    return seconds_text


# =============================================================================
# Configured throttles
# =============================================================================

# Module-level Redis connection shared by all throttles
_redis: redis.Redis | None = None


def _get_throttle_redis_url() -> str:
    """Return the Redis URL for throttling (separate DB from any cache use)."""
    settings = get_settings()
    if settings.redis_throttle_url:
        return str(settings.redis_throttle_url)
    base = str(settings.redis_url)
    if base.endswith("/0"):
        return base[:-1] + "1"
    return base


def get_throttle_redis() -> redis.Redis | None:
    """Return the shared throttle Redis client, or None with the memory backend."""
    global _redis
    if get_settings().throttle_backend != "redis":
        return None
    if _redis is None:
        _redis = redis.from_url(_get_throttle_redis_url())  # type: ignore[no-untyped-call]
    return _redis


def _build_store() -> ThrottleStore:
    client = get_throttle_redis()
    if client is not None:
        return RedisThrottleStore(client, prefix=get_settings().throttle_redis_prefix)
    return InMemoryThrottleStore()


@lru_cache
def get_login_throttle() -> AttemptThrottle:
    settings = get_settings()
    return AttemptThrottle(
        ThrottlePolicy(
            max_attempts=settings.login_max_attempts,
            window_ms=settings.login_window_ms,
            block_duration_ms=settings.login_block_duration_ms,
        ),
        _build_store(),
    )


@lru_cache
def get_signup_throttle() -> AttemptThrottle:
    settings = get_settings()
    return AttemptThrottle(
        ThrottlePolicy(
            max_attempts=settings.signup_max_attempts,
            window_ms=settings.signup_window_ms,
            block_duration_ms=settings.signup_block_duration_ms,
        ),
        _build_store(),
    )


@lru_cache
def get_resend_verification_throttle() -> AttemptThrottle:
    settings = get_settings()
    return AttemptThrottle(
        ThrottlePolicy(
            max_attempts=settings.resend_verification_max_attempts,
            window_ms=settings.resend_verification_window_ms,
            block_duration_ms=settings.resend_verification_block_duration_ms,
        ),
        _build_store(),
    )


async def close_throttle_redis() -> None:
    """Close the shared Redis connection (call at shutdown)."""
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None
