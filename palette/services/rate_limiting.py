#!/usr/bin/env python3
"""
Rate Limiting Module
Fixed-window admission counters keyed by ``operation:scope:identifier``.

Counters live in Redis when it is configured and reachable, otherwise in a
process-local map that is swept of expired windows periodically. A check never
raises: Redis errors fall back to the local map for that call.
"""

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from palette.config.usage_limits import RATE_LIMIT_SWEEP_INTERVAL_MS

logger = logging.getLogger(__name__)

SCOPE_USER = "user"
SCOPE_IP = "ip"
SCOPE_GLOBAL = "global"


@dataclass(frozen=True)
class RateLimitConfig:
    """Fixed window limit: at most ``max_requests`` per ``window_ms``"""

    max_requests: int
    window_ms: int


@dataclass
class RateLimitResult:
    """Result of rate limit check"""

    allowed: bool
    remaining: int
    reset_at: int  # Unix epoch milliseconds when the current window closes
    limit: int

    @property
    def retry_after(self) -> int:
        """Seconds until the window resets, rounded up, never below 1"""
        now_ms = int(time.time() * 1000)
        return max(1, -(-(self.reset_at - now_ms) // 1000))


def build_identifier(operation: str, scope: str, raw_id: str) -> str:
    return f"{operation}:{scope}:{raw_id}"


def _now_ms() -> int:
    return int(time.time() * 1000)


class FixedWindowRateLimiter:
    """
    Fixed-window counter.

    The first call for an identifier opens a window of ``window_ms`` with
    count 1. Every call inside the window increments the count and is allowed
    while ``count <= max_requests``. Once the window has elapsed the next call
    starts a fresh window.
    """

    def __init__(
        self,
        redis_client=None,
        clock: Callable[[], int] | None = None,
        sweep_interval_ms: int = RATE_LIMIT_SWEEP_INTERVAL_MS,
        key_prefix: str = "ratelimit",
    ):
        self.redis_client = redis_client
        self.clock = clock or _now_ms
        self.sweep_interval_ms = sweep_interval_ms
        self.key_prefix = key_prefix
        self._entries: dict[str, tuple[int, int]] = {}  # identifier -> (count, reset_at)
        self._lock = threading.Lock()
        self._last_sweep = self.clock()

    def check(self, identifier: str, config: RateLimitConfig) -> RateLimitResult:
        """Count this call against ``identifier`` and report whether it is admitted."""
        if self.redis_client is not None:
            try:
                return self._check_redis(identifier, config)
            except Exception as e:
                logger.warning(f"Redis rate limit check failed for {identifier}, using memory: {e}")
        return self._check_memory(identifier, config)

    def _check_memory(self, identifier: str, config: RateLimitConfig) -> RateLimitResult:
        now = self.clock()
        with self._lock:
            self._maybe_sweep(now)

            count, reset_at = self._entries.get(identifier, (0, 0))
            if reset_at <= now:
                count, reset_at = 0, now + config.window_ms
            count += 1
            self._entries[identifier] = (count, reset_at)

        return self._result(count, reset_at, config)

    def _check_redis(self, identifier: str, config: RateLimitConfig) -> RateLimitResult:
        key = f"{self.key_prefix}:{identifier}"
        pipe = self.redis_client.pipeline()
        pipe.set(key, 0, px=config.window_ms, nx=True)
        pipe.incr(key)
        pipe.pttl(key)
        _, count, ttl_ms = pipe.execute()

        if ttl_ms is None or ttl_ms < 0:
            # Key lost its expiry; restart the window from now
            self.redis_client.pexpire(key, config.window_ms)
            ttl_ms = config.window_ms

        return self._result(int(count), self.clock() + int(ttl_ms), config)

    @staticmethod
    def _result(count: int, reset_at: int, config: RateLimitConfig) -> RateLimitResult:
        return RateLimitResult(
            allowed=count <= config.max_requests,
            remaining=max(0, config.max_requests - count),
            reset_at=reset_at,
            limit=config.max_requests,
        )

    def _maybe_sweep(self, now: int) -> None:
        # Caller holds self._lock
        if now - self._last_sweep < self.sweep_interval_ms:
            return
        expired = [key for key, (_, reset_at) in self._entries.items() if reset_at <= now]
        for key in expired:
            del self._entries[key]
        self._last_sweep = now
        if expired:
            logger.debug(f"Swept {len(expired)} expired rate limit entries")

    def entry_count(self) -> int:
        with self._lock:
            return len(self._entries)

    def reset(self) -> None:
        """Forget all in-memory windows."""
        with self._lock:
            self._entries.clear()
            self._last_sweep = self.clock()


_rate_limiter: FixedWindowRateLimiter | None = None
_rate_limiter_lock = threading.Lock()


def get_rate_limiter() -> FixedWindowRateLimiter:
    """Process-wide limiter, backed by Redis when available."""
    global _rate_limiter
    if _rate_limiter is None:
        with _rate_limiter_lock:
            if _rate_limiter is None:
                redis_client = None
                try:
                    from palette.config.redis_config import get_redis_client

                    redis_client = get_redis_client()
                except Exception as e:
                    logger.debug(f"Redis not available for rate limiting: {e}")
                _rate_limiter = FixedWindowRateLimiter(redis_client=redis_client)
                backend = "redis" if redis_client is not None else "memory"
                logger.info(f"Rate limiter initialized ({backend} backend)")
    return _rate_limiter


def reset_rate_limiter() -> None:
    """Drop the process-wide limiter (next call rebuilds it)."""
    global _rate_limiter
    with _rate_limiter_lock:
        _rate_limiter = None
